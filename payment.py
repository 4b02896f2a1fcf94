# payment.py
import logging
import time
from dataclasses import dataclass
from typing import Callable, List

from errors import (
    InsufficientFunds,
    InvalidNodeState,
    NoTokenAccount,
    NoWalletConnected,
    SubmissionFailed,
    TransactionExpired,
)
from fees import FeeSplit, split_payment, PROTOCOL_FEE_BPS, TOKEN_DECIMALS
from ledger import CreateTokenAccount, LedgerClient, LedgerError, Transaction, TransferChecked
from wallet import is_valid_address

logger = logging.getLogger("neurogrid.payment")

CONFIRMED_STATUSES = ("confirmed", "finalized")


@dataclass(frozen=True)
class PaymentReceipt:
    signature: str
    node_id: str
    payer: str
    split: FeeSplit


class PaymentEngine:
    def __init__(self, ledger: LedgerClient, treasury: str, mint: str,
                 fee_bps: int = PROTOCOL_FEE_BPS, decimals: int = TOKEN_DECIMALS,
                 confirm_timeout: float = 60.0, poll_interval: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.ledger = ledger
        self.treasury = treasury
        self.mint = mint
        self.fee_bps = fee_bps
        self.decimals = decimals
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def quote(self, node) -> FeeSplit:
        return split_payment(node.price_units, self.fee_bps)

    def pay(self, node, signer) -> PaymentReceipt:
        """Returns once the ledger reports the split confirmed; nothing is sent unless the payer can cover it."""
        if signer is None or not is_valid_address(getattr(signer, "address", None)):
            raise NoWalletConnected()
        payer = signer.address
        if not is_valid_address(node.miner_wallet_address):
            raise InvalidNodeState(f"Node {node.id} has no valid payout address")

        # (a) fee split
        split = split_payment(node.price_units, self.fee_bps)

        try:
            # (b) holding accounts
            payer_ata = self.ledger.token_account_address(payer, self.mint)
            miner_ata = self.ledger.token_account_address(node.miner_wallet_address, self.mint)
            treasury_ata = self.ledger.token_account_address(self.treasury, self.mint)

            # (c) balance check before building anything
            payer_account = self.ledger.get_token_account(payer_ata)
            if payer_account is None:
                raise NoTokenAccount()
            if payer_account.amount < split.total:
                raise InsufficientFunds(
                    f"Balance {payer_account.amount} is below the price {split.total}",
                    balance=payer_account.amount, price=split.total,
                )

            # (d) one transaction: account creation (if needed) + both transfers
            blockhash, last_valid = self.ledger.get_latest_blockhash()
            tx = Transaction(fee_payer=payer, recent_blockhash=blockhash, last_valid_block_height=last_valid)
            tx.add(*self._create_missing(payer, [
                (node.miner_wallet_address, miner_ata),
                (self.treasury, treasury_ata),
            ]))
            tx.add(
                TransferChecked(payer_ata, miner_ata, payer, self.mint, split.miner_share, self.decimals),
            )
            if split.treasury_share > 0:
                tx.add(
                    TransferChecked(payer_ata, treasury_ata, payer, self.mint, split.treasury_share, self.decimals),
                )
        except LedgerError as e:
            raise SubmissionFailed(str(e))

        # (e) sign + broadcast
        signer.sign_transaction(tx)
        try:
            signature = self.ledger.send_transaction(tx)
        except LedgerError as e:
            logger.warning("Payment for node %s rejected by ledger: %s", node.id, e)
            raise SubmissionFailed(str(e))
        logger.info("Payment submitted: node=%s payer=%s signature=%s miner=%d treasury=%d",
                    node.id, payer, signature, split.miner_share, split.treasury_share)

        # (f) bounded wait
        self._await_confirmation(signature, tx.last_valid_block_height)
        logger.info("Payment confirmed: node=%s signature=%s", node.id, signature)
        return PaymentReceipt(signature=signature, node_id=node.id, payer=payer, split=split)

    def _create_missing(self, payer: str, parties) -> List[CreateTokenAccount]:
        instructions = []
        for owner, address in parties:
            if self.ledger.get_token_account(address) is None:
                instructions.append(CreateTokenAccount(payer=payer, owner=owner, mint=self.mint, address=address))
        return instructions

    def _await_confirmation(self, signature: str, last_valid_block_height: int) -> None:
        deadline = self._clock() + self.confirm_timeout
        while True:
            try:
                status = self.ledger.get_signature_status(signature)
                if status in CONFIRMED_STATUSES:
                    return
                if status == "failed":
                    raise SubmissionFailed(f"Transaction {signature} failed on the ledger")
                if self.ledger.get_block_height() > last_valid_block_height:
                    raise TransactionExpired(signature=signature)
            except LedgerError as e:
                raise SubmissionFailed(str(e))
            if self._clock() >= deadline:
                raise TransactionExpired(signature=signature)
            self._sleep(self.poll_interval)
