from __future__ import annotations


class PrivacyCashError(RuntimeError):
    """Base class for every failure raised by the shielded transaction engine."""


class KeyNotDerived(PrivacyCashError):
    """Raised when keys are used before derive_from_signature() ran."""


class MissingIndex(PrivacyCashError):
    """Raised when a nullifier is requested for a UTXO without a tree position."""


class DecryptionMismatch(PrivacyCashError):
    """Raised when an encrypted output does not authenticate under our keys.

    During UTXO reconstruction this simply means "not mine" and is never
    surfaced to callers.
    """


__all__ = [
    "PrivacyCashError",
    "KeyNotDerived",
    "MissingIndex",
    "DecryptionMismatch",
]
