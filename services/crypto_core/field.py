# services/crypto_core/field.py
from __future__ import annotations

from typing import Union

# BN254 scalar field (circom / groth16)
FIELD_SIZE: int = 21888242871839275222246405745257275088548364400416034343698204186575808495617

IntLike = Union[int, str]


def to_int(x: IntLike) -> int:
    """Accept ints, decimal strings and 0x-prefixed hex strings."""
    if isinstance(x, int):
        return x
    s = str(x).strip()
    if s.lower().startswith("0x"):
        return int(s, 16)
    return int(s, 10)


def to_field(x: IntLike) -> int:
    return to_int(x) % FIELD_SIZE


def signed_to_field(x: int) -> int:
    """Map a signed amount to its field residue; negatives become p - |x|."""
    return (x + FIELD_SIZE) % FIELD_SIZE


def to_le_bytes(x: IntLike, length: int = 32) -> bytes:
    return to_int(x).to_bytes(length, "little")


def to_be_bytes(x: IntLike, length: int = 32) -> bytes:
    return to_int(x).to_bytes(length, "big")


__all__ = [
    "FIELD_SIZE",
    "to_int",
    "to_field",
    "signed_to_field",
    "to_le_bytes",
    "to_be_bytes",
]
