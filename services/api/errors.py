# services/api/errors.py
from __future__ import annotations

from typing import Optional

from services.crypto_core.errors import (
    DecryptionMismatch,
    KeyNotDerived,
    MissingIndex,
    PrivacyCashError,
)


class UnsupportedAsset(PrivacyCashError):
    """Mint is not in the token registry."""


class InvalidSignIn(PrivacyCashError):
    """Signature does not verify against the caller's wallet for the sign-in message."""


class InsufficientBalance(PrivacyCashError):
    """The two largest unspent notes cannot cover amount plus fee."""


class AmountTooLowAfterFees(PrivacyCashError):
    pass


class ProofGenerationFailed(PrivacyCashError):
    pass


class AltNotFound(PrivacyCashError):
    """Address lookup table account does not exist on the configured cluster."""


class RemoteProtocolError(PrivacyCashError):
    """Relayer or RPC answered with a non-2xx status or an unexpected body."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.url = url

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.status}: {self.message}"


__all__ = [
    "PrivacyCashError",
    "KeyNotDerived",
    "MissingIndex",
    "DecryptionMismatch",
    "UnsupportedAsset",
    "InvalidSignIn",
    "InsufficientBalance",
    "AmountTooLowAfterFees",
    "ProofGenerationFailed",
    "AltNotFound",
    "RemoteProtocolError",
]
