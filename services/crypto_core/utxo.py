# services/crypto_core/utxo.py
from __future__ import annotations

import secrets
from typing import Optional

from solders.pubkey import Pubkey

from services.crypto_core.errors import MissingIndex
from services.crypto_core.field import FIELD_SIZE, IntLike, to_int
from services.crypto_core.keys import SpendingKeypair, Version
from services.crypto_core.poseidon import poseidon

# Native SOL as the circuit sees it. The string is all digits, so it doubles
# as its own field element.
NATIVE_MINT = "11111111111111111111111111111112"
PLAINTEXT_SEPARATOR = "|"


def mint_address_field(mint: str) -> int:
    """Field element the circuit uses for an asset."""
    if mint == NATIVE_MINT:
        return int(NATIVE_MINT)
    return int.from_bytes(bytes(Pubkey.from_string(mint))[:31], "big")


def random_blinding() -> int:
    return int.from_bytes(secrets.token_bytes(31), "big") % FIELD_SIZE


class Utxo:
    """A shielded note: amount owned by a spending keypair, hidden by a blinding."""

    def __init__(
        self,
        keypair: SpendingKeypair,
        amount: IntLike = 0,
        blinding: Optional[IntLike] = None,
        index: Optional[int] = None,
        mint: str = NATIVE_MINT,
        version: Version = "v2",
    ):
        self.amount: int = to_int(amount)
        if self.amount < 0:
            raise ValueError("UTXO amount cannot be negative")
        self.keypair = keypair
        self.blinding: int = random_blinding() if blinding is None else to_int(blinding)
        self.index: Optional[int] = index
        self.mint = mint
        self.version: Version = version
        self._commitment_key: Optional[tuple] = None
        self._commitment: Optional[int] = None
        self._nullifier_key: Optional[tuple] = None
        self._nullifier: Optional[int] = None

    @property
    def mint_field(self) -> int:
        return mint_address_field(self.mint)

    def commitment(self) -> int:
        # memo is keyed on every input so a changed field is never served stale
        key = (self.amount, self.keypair.pubkey, self.blinding, self.mint)
        if self._commitment_key != key:
            self._commitment = poseidon([self.amount, self.keypair.pubkey, self.blinding, self.mint_field])
            self._commitment_key = key
        return self._commitment

    def nullifier(self) -> int:
        if self.index is None:
            raise MissingIndex("UTXO has no tree index; nullifier is undefined")
        commitment = self.commitment()
        key = (commitment, self.index, self.keypair.privkey)
        if self._nullifier_key != key:
            signature = self.keypair.sign(commitment, self.index)
            self._nullifier = poseidon([commitment, self.index, signature])
            self._nullifier_key = key
        return self._nullifier

    def to_plaintext(self) -> str:
        index = 0 if self.index is None else self.index
        return PLAINTEXT_SEPARATOR.join([str(self.amount), str(self.blinding), str(index), self.mint])

    @classmethod
    def from_plaintext(cls, text: str, keypair: SpendingKeypair, version: Version) -> "Utxo":
        parts = text.split(PLAINTEXT_SEPARATOR)
        if len(parts) != 4:
            raise ValueError("invalid UTXO plaintext")
        amount, blinding, index, mint = parts
        return cls(keypair=keypair, amount=int(amount), blinding=int(blinding), index=int(index), mint=mint, version=version)

    def __repr__(self) -> str:
        return f"Utxo(amount={self.amount}, index={self.index}, mint={self.mint}, version={self.version})"


def total_amount(utxos) -> int:
    return sum(u.amount for u in utxos)


__all__ = [
    "NATIVE_MINT",
    "mint_address_field",
    "random_blinding",
    "Utxo",
    "total_amount",
]
