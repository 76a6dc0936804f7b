# services/api/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from services.api.errors import UnsupportedAsset
from services.crypto_core.utxo import NATIVE_MINT

# ===== Network =====
IS_PRODUCTION: bool = os.getenv("NODE_ENV", "development") == "production"
NETWORK: str = "mainnet" if IS_PRODUCTION else "devnet"

DEVNET_RPC = "https://api.devnet.solana.com"


def _rpc_url() -> str:
    if IS_PRODUCTION:
        url = os.getenv("MAINNET_RPC_URL")
        if not url:
            raise RuntimeError("MAINNET_RPC_URL is required in production")
        return url
    return os.getenv("SOLANA_RPC_URL") or os.getenv("DEVNET_RPC_URL") or DEVNET_RPC


SOLANA_RPC_URL: str = _rpc_url()
RELAYER_URL: str = os.getenv("RELAYER_URL", "https://api3.privacycash.org").rstrip("/")

# ===== Program =====
PROGRAM_ID: str = os.getenv("PROGRAM_ID", "9fhQBbumKEFuXtMBDw8AaQyAjCorLGJQiS3skWZdQyQD")
ALT_ADDRESS: str = os.getenv("ALT_ADDRESS", "HEN49U2ySJ85Vc78qprSW9y6mFDhs1NczRxyppNHjofe")
FEE_RECIPIENT: str = os.getenv("FEE_RECIPIENT", "AWexibGxNFKTa1b5R5MN4PJr9HWnWRwf8EW9g8cLx3dM")
# Referral wallet credited when the client names none
ADMIN_REFERRAL_WALLET: str = os.getenv("ADMIN_REFERRAL_WALLET", "HKBrbp3h8B9tMCn4ceKCtmF8jWxvpfrb7YNLbCgxLUJL")
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
COMPUTE_UNIT_LIMIT: int = int(os.getenv("COMPUTE_UNIT_LIMIT", "1000000"))

# ===== Prover =====
CIRCUIT_BASE_PATH: str = os.getenv("CIRCUIT_BASE_PATH", "circuit2/transaction2")
SNARKJS_CMD: str = os.getenv("SNARKJS_CMD", "snarkjs")
PROVER_TIMEOUT_SEC: float = float(os.getenv("PROVER_TIMEOUT_SEC", "300"))

# ===== Remote I/O =====
HTTP_TIMEOUT_SEC: float = float(os.getenv("HTTP_TIMEOUT_SEC", "30"))
FETCH_UTXOS_GROUP_SIZE: int = int(os.getenv("FETCH_UTXOS_GROUP_SIZE", "20000"))
CONFIRM_MAX_RETRIES: int = int(os.getenv("CONFIRM_MAX_RETRIES", "10"))
CONFIRM_DELAY_SEC: float = float(os.getenv("CONFIRM_DELAY_SEC", "2.0"))
VERIFY_SIGN_IN: bool = bool(int(os.getenv("VERIFY_SIGN_IN", "1")))


# ===== Tokens =====
@dataclass(frozen=True)
class TokenConfig:
    name: str
    mint: str
    decimals: int

    @property
    def units_per_token(self) -> int:
        return 10 ** self.decimals

    @property
    def symbol(self) -> str:
        return self.name.lower()

    @property
    def is_native(self) -> bool:
        return self.mint == WRAPPED_SOL_MINT

    @property
    def utxo_mint(self) -> str:
        """Mint string stored inside UTXOs of this asset."""
        return NATIVE_MINT if self.is_native else self.mint

    @property
    def tree_token(self) -> Optional[str]:
        """Value of the relayer's ?token= selector; None for the native tree."""
        return None if self.is_native else self.symbol

    def to_base_units(self, amount: Decimal | int | str) -> int:
        return int(Decimal(str(amount)) * self.units_per_token)

    def from_base_units(self, units: int) -> Decimal:
        return Decimal(units) / Decimal(self.units_per_token)


TOKENS: Dict[str, TokenConfig] = {
    "sol": TokenConfig("SOL", WRAPPED_SOL_MINT, 9),
    "usdc": TokenConfig("USDC", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", 6),
    "usdt": TokenConfig("USDT", "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", 6),
    "zec": TokenConfig("ZEC", "A7bdiYdS5GjqGFtxf17ppRHtDKPkkRqbKtR27dxvQXaS", 8),
    "ore": TokenConfig("ORE", "oreoU2P8bN6jkk3jbaiVxYnG1dCXcYxwhwyK9jSybcp", 11),
    "store": TokenConfig("STORE", "sTorERYB6xAZ1SSbwpK3zoK2EEwbBrc7TZAzg1uCGiH", 11),
}
SOL = TOKENS["sol"]


def get_token(symbol: str) -> TokenConfig:
    try:
        return TOKENS[symbol.lower()]
    except KeyError:
        raise UnsupportedAsset(f"Unsupported token: {symbol}") from None


def get_token_by_mint(mint: str) -> TokenConfig:
    if mint == NATIVE_MINT:
        return SOL
    for token in TOKENS.values():
        if token.mint == mint:
            return token
    raise UnsupportedAsset(f"Unsupported token: {mint}")


def all_tokens() -> List[TokenConfig]:
    return list(TOKENS.values())
