# services/crypto_core/keys.py
from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Literal

from Crypto.Hash import keccak
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey
from solders.pubkey import Pubkey

from services.crypto_core.field import FIELD_SIZE, IntLike
from services.crypto_core.poseidon import poseidon

# Message the client signs locally; its signature seeds every key below.
SIGN_IN_MESSAGE = b"Privacy Money account sign in"

Version = Literal["v1", "v2"]


def keccak256(data: bytes) -> bytes:
    return keccak.new(digest_bits=256, data=data).digest()


class SpendingKeypair:
    """UTXO owner keypair living entirely inside the circuit's scalar field."""

    def __init__(self, seed: bytes | int):
        raw = int.from_bytes(seed, "big") if isinstance(seed, (bytes, bytearray)) else int(seed)
        self.privkey: int = raw % FIELD_SIZE
        self.pubkey: int = poseidon([self.privkey])

    def sign(self, commitment: IntLike, index: IntLike) -> int:
        return poseidon([self.privkey, commitment, index])

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SpendingKeypair) and other.privkey == self.privkey

    def __hash__(self) -> int:
        return hash(self.pubkey)

    def __repr__(self) -> str:
        return f"SpendingKeypair(pubkey={self.pubkey})"


@dataclass(frozen=True)
class DerivedKeys:
    encryption_key_v1: bytes
    encryption_key_v2: bytes
    keypair_v1: SpendingKeypair
    keypair_v2: SpendingKeypair

    def keypair(self, version: Version) -> SpendingKeypair:
        return self.keypair_v1 if version == "v1" else self.keypair_v2


def derive_keys(signature: bytes) -> DerivedKeys:
    """Derive both key generations from the sign-in signature.

    v1 (legacy): the first 31 signature bytes are the symmetric key and
    SHA-256 of that key seeds the spending keypair.
    v2: Keccak-256(signature) is the symmetric key and Keccak-256 of it seeds
    the spending keypair.
    """
    key_v1 = bytes(signature[:31])
    key_v2 = keccak256(bytes(signature))
    return DerivedKeys(
        encryption_key_v1=key_v1,
        encryption_key_v2=key_v2,
        keypair_v1=SpendingKeypair(hashlib.sha256(key_v1).digest()),
        keypair_v2=SpendingKeypair(keccak256(key_v2)),
    )


def decode_signature(signature_b64: str) -> bytes:
    try:
        raw = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"signature is not valid base64: {e}") from e
    if not raw:
        raise ValueError("signature is empty")
    return raw


def verify_sign_in(public_key: str, signature: bytes, message: bytes = SIGN_IN_MESSAGE) -> bool:
    """True when `signature` is the wallet's Ed25519 signature over the sign-in message."""
    try:
        VerifyKey(bytes(Pubkey.from_string(public_key))).verify(message, bytes(signature))
    except (BadSignatureError, ValueError):
        return False
    return True


__all__ = [
    "SIGN_IN_MESSAGE",
    "Version",
    "keccak256",
    "SpendingKeypair",
    "DerivedKeys",
    "derive_keys",
    "decode_signature",
    "verify_sign_in",
]
