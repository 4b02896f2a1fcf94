# ledger.py
"""Token ledger client and the SQL-backed simulated ledger used by the demo cluster.

A transaction is a list of instructions signed by every account that
authorises one of them. ``send_transaction`` applies all instructions inside
one database transaction, so either every transfer lands or none does.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from models import LedgerTransaction, LedgerTransfer, NativeAccount, TokenAccount
from wallet import verify_signature

logger = logging.getLogger("neurogrid.ledger")

LAMPORTS_PER_SIGNATURE = 5_000
TOKEN_ACCOUNT_RENT = 2_039_280
BLOCKHASH_VALIDITY = 150  # blocks
SLOT_SECONDS = 0.4


class LedgerError(Exception):
    """The ledger refused a transaction (nothing was applied)."""


# ---------- instructions ----------
@dataclass(frozen=True)
class CreateTokenAccount:
    payer: str
    owner: str
    mint: str
    address: str
    program: str = "create_token_account"


@dataclass(frozen=True)
class TransferChecked:
    source: str
    destination: str
    authority: str
    mint: str
    amount: int
    decimals: int
    program: str = "transfer_checked"


@dataclass
class Transaction:
    fee_payer: str
    recent_blockhash: str
    last_valid_block_height: int
    instructions: list = field(default_factory=list)
    signatures: Dict[str, str] = field(default_factory=dict)

    def add(self, *instructions) -> "Transaction":
        self.instructions.extend(instructions)
        return self

    def message_bytes(self) -> bytes:
        message = {
            "fee_payer": self.fee_payer,
            "recent_blockhash": self.recent_blockhash,
            "last_valid_block_height": self.last_valid_block_height,
            "instructions": [asdict(ix) for ix in self.instructions],
        }
        return json.dumps(message, sort_keys=True, separators=(",", ":")).encode()

    def add_signature(self, address: str, signature: str) -> None:
        self.signatures[address] = signature

    def required_signers(self) -> List[str]:
        signers = [self.fee_payer]
        for ix in self.instructions:
            who = ix.authority if isinstance(ix, TransferChecked) else ix.payer
            if who not in signers:
                signers.append(who)
        return signers

    @property
    def signature(self) -> Optional[str]:
        """The fee payer's signature doubles as the transaction reference."""
        return self.signatures.get(self.fee_payer)


@dataclass(frozen=True)
class TokenAccountInfo:
    address: str
    owner: str
    mint: str
    amount: int


@dataclass(frozen=True)
class TransferRecord:
    source: str
    destination: str
    authority: str
    mint: str
    amount: int


@dataclass(frozen=True)
class ConfirmedTransaction:
    signature: str
    fee_payer: str
    status: str
    block_height: int
    transfers: Tuple[TransferRecord, ...]


def derive_token_account(owner: str, mint: str) -> str:
    """Deterministic holding-account address for (owner, mint)."""
    return hashlib.sha256(f"token-account:{owner}:{mint}".encode()).hexdigest()


# =====================================================
# CLIENT INTERFACE
# =====================================================
class LedgerClient:
    def token_account_address(self, owner: str, mint: str) -> str:
        return derive_token_account(owner, mint)

    def get_token_account(self, address: str) -> Optional[TokenAccountInfo]:
        raise NotImplementedError

    def get_native_balance(self, address: str) -> int:
        raise NotImplementedError

    def get_latest_blockhash(self) -> Tuple[str, int]:
        raise NotImplementedError

    def get_block_height(self) -> int:
        raise NotImplementedError

    def send_transaction(self, tx: Transaction) -> str:
        raise NotImplementedError

    def get_signature_status(self, signature: str) -> Optional[str]:
        raise NotImplementedError

    def get_transaction(self, signature: str) -> Optional[ConfirmedTransaction]:
        raise NotImplementedError

    def airdrop(self, owner: str, mint: Optional[str] = None, token_units: int = 0, lamports: int = 0) -> None:
        raise NotImplementedError


# =====================================================
# SIMULATED LEDGER (SQLAlchemy)
# =====================================================
class SimulatedLedger(LedgerClient):
    def __init__(self, session_factory, clock: Callable[[], float] = time.time,
                 slot_seconds: float = SLOT_SECONDS, blockhash_validity: int = BLOCKHASH_VALIDITY):
        self.session_factory = session_factory
        self.clock = clock
        self.slot_seconds = slot_seconds
        self.blockhash_validity = blockhash_validity
        self.genesis = clock()
        self._blockhashes: Dict[str, int] = {}
        self._lock = threading.Lock()

    # ---------- chain clock ----------
    def get_block_height(self) -> int:
        return int((self.clock() - self.genesis) / self.slot_seconds)

    def get_latest_blockhash(self) -> Tuple[str, int]:
        height = self.get_block_height()
        blockhash = hashlib.sha256(f"{self.genesis}:{height}".encode()).hexdigest()
        with self._lock:
            self._blockhashes[blockhash] = height
            # forget hashes that can no longer be used
            for old in [h for h, ht in self._blockhashes.items() if ht + self.blockhash_validity < height]:
                del self._blockhashes[old]
        return blockhash, height + self.blockhash_validity

    # ---------- reads ----------
    def get_token_account(self, address):
        with self.session_factory() as db:
            acct = db.get(TokenAccount, address)
            if acct is None:
                return None
            return TokenAccountInfo(acct.address, acct.owner, acct.mint, int(acct.amount))

    def get_native_balance(self, address):
        with self.session_factory() as db:
            acct = db.get(NativeAccount, address)
            return int(acct.lamports) if acct else 0

    def get_signature_status(self, signature):
        with self.session_factory() as db:
            row = db.get(LedgerTransaction, signature)
            return row.status if row else None

    def get_transaction(self, signature):
        with self.session_factory() as db:
            row = db.get(LedgerTransaction, signature)
            if row is None:
                return None
            transfers = tuple(
                TransferRecord(t.source, t.destination, t.authority, t.mint, int(t.amount))
                for t in row.transfers
            )
            return ConfirmedTransaction(row.signature, row.fee_payer, row.status, int(row.block_height), transfers)

    # ---------- faucet ----------
    def airdrop(self, owner: str, mint: Optional[str] = None, token_units: int = 0, lamports: int = 0) -> None:
        if token_units < 0 or lamports < 0:
            raise ValueError("airdrop amounts must be >= 0")
        with self._lock, self.session_factory() as db:
            try:
                if lamports:
                    native = db.get(NativeAccount, owner)
                    if native is None:
                        native = NativeAccount(address=owner, lamports=0)
                        db.add(native)
                    native.lamports = (native.lamports or 0) + lamports
                if mint is not None:
                    address = derive_token_account(owner, mint)
                    acct = db.get(TokenAccount, address)
                    if acct is None:
                        acct = TokenAccount(address=address, owner=owner, mint=mint, amount=0)
                        db.add(acct)
                    acct.amount = (acct.amount or 0) + token_units
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
        logger.info("Airdrop to %s: %d token units, %d lamports", owner, token_units, lamports)

    # ---------- submission ----------
    def send_transaction(self, tx):
        signature = tx.signature
        if not signature:
            raise LedgerError("Transaction is not signed by its fee payer")
        message = tx.message_bytes()
        for signer in tx.required_signers():
            sig = tx.signatures.get(signer)
            if not sig or not verify_signature(signer, message, sig):
                raise LedgerError(f"Missing or invalid signature for {signer}")

        with self._lock:
            issued_height = self._blockhashes.get(tx.recent_blockhash)
            height = self.get_block_height()
            if issued_height is None or height > tx.last_valid_block_height:
                raise LedgerError("Blockhash not found")
            if tx.last_valid_block_height != issued_height + self.blockhash_validity:
                raise LedgerError("Blockhash not found")

            with self.session_factory() as db:
                try:
                    self._apply(db, tx, signature, height)
                    db.commit()
                except LedgerError:
                    db.rollback()
                    raise
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.exception("Ledger write failed for %s", signature)
                    raise LedgerError(f"Ledger write failed: {e.__class__.__name__}")
        return signature

    def _apply(self, db, tx, signature, height):
        if db.get(LedgerTransaction, signature) is not None:
            raise LedgerError("This transaction has already been processed")

        fee = LAMPORTS_PER_SIGNATURE * len(tx.signatures)
        payer = db.get(NativeAccount, tx.fee_payer)
        if payer is None or payer.lamports < fee:
            raise LedgerError("Attempt to debit an account but found no record of a prior credit")
        payer.lamports -= fee

        row = LedgerTransaction(
            signature=signature,
            fee_payer=tx.fee_payer,
            recent_blockhash=tx.recent_blockhash,
            last_valid_block_height=tx.last_valid_block_height,
            block_height=height,
            fee=fee,
            status="confirmed",
        )
        db.add(row)

        for ix in tx.instructions:
            if isinstance(ix, CreateTokenAccount):
                self._create_account(db, ix)
            elif isinstance(ix, TransferChecked):
                self._transfer(db, ix)
                row.transfers.append(LedgerTransfer(
                    source=ix.source, destination=ix.destination, authority=ix.authority,
                    mint=ix.mint, amount=ix.amount,
                ))
            else:
                raise LedgerError(f"Unknown instruction {ix!r}")
            db.flush()

    def _create_account(self, db, ix):
        if ix.address != derive_token_account(ix.owner, ix.mint):
            raise LedgerError("Provided token account address does not match owner and mint")
        if db.get(TokenAccount, ix.address) is not None:
            return  # idempotent
        payer = db.get(NativeAccount, ix.payer)
        if payer is None or payer.lamports < TOKEN_ACCOUNT_RENT:
            raise LedgerError("Insufficient lamports to create token account")
        payer.lamports -= TOKEN_ACCOUNT_RENT
        db.add(TokenAccount(address=ix.address, owner=ix.owner, mint=ix.mint, amount=0))

    def _transfer(self, db, ix):
        if ix.amount <= 0:
            raise LedgerError("Transfer amount must be positive")
        source = db.get(TokenAccount, ix.source)
        dest = db.get(TokenAccount, ix.destination)
        if source is None or dest is None:
            raise LedgerError("Invalid account data for instruction")
        if source.owner != ix.authority:
            raise LedgerError("Owner does not match")
        if source.mint != ix.mint or dest.mint != ix.mint:
            raise LedgerError("Account not associated with this mint")
        if source.amount < ix.amount:
            raise LedgerError("Insufficient funds")
        source.amount -= ix.amount
        dest.amount += ix.amount
