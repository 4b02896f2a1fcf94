# wallet.py
"""Wallet identities and signers.

Account identities are hex-encoded Ed25519 public keys. A signer adds its
signature over a transaction's message bytes; a declined signature raises
``UserRejected``.
"""

import re
import threading
from typing import Dict, Optional

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError

from errors import UserRejected

_HEX32 = re.compile(r"^[0-9a-f]{64}$")


def is_valid_address(address) -> bool:
    return isinstance(address, str) and bool(_HEX32.match(address))


def verify_signature(address: str, message: bytes, signature_hex: str) -> bool:
    try:
        VerifyKey(bytes.fromhex(address)).verify(message, bytes.fromhex(signature_hex))
        return True
    except (BadSignatureError, ValueError):
        return False


class WalletSigner:
    address: str

    def sign_transaction(self, tx):
        raise NotImplementedError


class LocalWallet(WalletSigner):
    """Custodial demo wallet backed by an in-process Ed25519 key."""

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self._key = signing_key or SigningKey.generate()
        self.address = self._key.verify_key.encode().hex()

    @classmethod
    def from_seed(cls, seed: bytes) -> "LocalWallet":
        return cls(SigningKey(seed))

    def sign_transaction(self, tx):
        tx.add_signature(self.address, self._key.sign(tx.message_bytes()).signature.hex())
        return tx


class DeclinedSigner(WalletSigner):
    """Stands in for a wallet whose owner dismissed the signing prompt."""

    def __init__(self, address: str):
        self.address = address

    def sign_transaction(self, tx):
        raise UserRejected()


class WalletDirectory:
    """Connected demo wallets, keyed by address."""

    def __init__(self):
        self._wallets: Dict[str, LocalWallet] = {}
        self._lock = threading.Lock()

    def create(self) -> LocalWallet:
        wallet = LocalWallet()
        with self._lock:
            self._wallets[wallet.address] = wallet
        return wallet

    def add(self, wallet: LocalWallet) -> LocalWallet:
        with self._lock:
            self._wallets[wallet.address] = wallet
        return wallet

    def get(self, address: str) -> Optional[LocalWallet]:
        return self._wallets.get(address)
