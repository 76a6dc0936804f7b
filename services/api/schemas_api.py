from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator
from pydantic.alias_generators import to_camel


def _decimal_from_json(v):
    # floats go through str() so 0.0035 stays 0.0035
    if isinstance(v, float):
        return Decimal(str(v))
    return v


class _Remote(BaseModel):
    """Relayer response contract: unknown keys ignored, missing keys rejected."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


class _Api(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ===== Relayer contracts =====
class TreeState(_Remote):
    root: str = Field(..., description="Current Merkle root (decimal field element).")
    next_index: conint(ge=0) = Field(..., alias="nextIndex", description="Leaf index the next commitment receives.")


class MerklePath(_Remote):
    path_elements: List[str] = Field(..., alias="pathElements", description="Sibling hashes, leaf level first.")
    path_indices: List[int] = Field(..., alias="pathIndices", description="Left/right bits per level.")


class FeeConfig(_Remote):
    withdraw_fee_rate: Decimal = Field(..., description="Fraction of the withdrawn amount kept as fee.")
    withdraw_rent_fee: Decimal = Field(..., description="Fixed SOL rent charged per native withdrawal.")
    deposit_fee_rate: Decimal = Field(Decimal("0"), description="Fraction charged on deposits.")
    rent_fees: Dict[str, Decimal] = Field(default_factory=dict, description="Fixed rent per token symbol, in token units.")
    minimum_withdrawal: Dict[str, Decimal] = Field(default_factory=dict, description="Smallest withdrawal per token symbol, in token units.")

    @field_validator("withdraw_fee_rate", "withdraw_rent_fee", "deposit_fee_rate", mode="before")
    @classmethod
    def _coerce_rates(cls, v):
        return _decimal_from_json(v)

    @field_validator("rent_fees", "minimum_withdrawal", mode="before")
    @classmethod
    def _coerce_maps(cls, v):
        if isinstance(v, dict):
            return {k: _decimal_from_json(x) for k, x in v.items()}
        return v

    def rent_fee(self, symbol: str) -> Decimal:
        if symbol in self.rent_fees:
            return self.rent_fees[symbol]
        if symbol == "sol":
            return self.withdraw_rent_fee
        return Decimal("0")

    def minimum(self, symbol: str) -> Decimal:
        return self.minimum_withdrawal.get(symbol, Decimal("0"))


class LedgerPage(_Remote):
    encrypted_outputs: List[str] = Field(..., description="Hex ciphertexts in tree order.")
    has_more: bool = Field(..., alias="hasMore")
    total: conint(ge=0) = Field(..., description="Total number of outputs in the log.")


class UtxoIndices(_Remote):
    indices: List[Optional[int]] = Field(..., description="Tree index per queried ciphertext, same order.")


class ExistsRes(_Remote):
    exists: bool


class RelayResult(_Remote):
    signature: str = Field(..., description="Transaction signature assigned by the relayer.")
    success: bool = Field(..., description="Relayer-reported outcome.")


class WithdrawParams(_Remote):
    """Submission parameter set the relayer executes on the caller's behalf."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)

    serialized_proof: str = Field(..., description="Instruction payload, base64.")
    tree_account: str
    nullifier0_pda: str = Field(..., alias="nullifier0PDA")
    nullifier1_pda: str = Field(..., alias="nullifier1PDA")
    nullifier2_pda: str = Field(..., alias="nullifier2PDA")
    nullifier3_pda: str = Field(..., alias="nullifier3PDA")
    tree_token_account: str
    global_config_account: str
    recipient: str
    fee_recipient_account: str
    ext_amount: int
    encrypted_output1: str = Field(..., description="First output ciphertext, base64.")
    encrypted_output2: str = Field(..., description="Second output ciphertext, base64.")
    fee: conint(ge=0)
    lookup_table_address: str
    sender_address: str
    referral_wallet_address: Optional[str] = None
    # SPL only
    tree_ata: Optional[str] = None
    recipient_ata: Optional[str] = None
    mint_address: Optional[str] = None
    fee_recipient_token_account: Optional[str] = None

    @property
    def is_spl(self) -> bool:
        return self.mint_address is not None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ===== Results handed to the HTTP layer =====
class DepositMetadata(_Api):
    amount: Decimal = Field(..., description="Requested amount (base units for SOL, token units for SPL).")
    base_units: conint(ge=0) = Field(..., description="Amount moved into the pool, in base units.")
    encrypted_output1: str = Field(..., description="First output ciphertext (hex); used to poll for confirmation.")
    encrypted_output2: str


class PrepareDepositRes(_Api):
    unsigned_transaction: str = Field(..., description="Unsigned v0 transaction, base64.")
    metadata: DepositMetadata


class WithdrawMetadata(_Api):
    amount: conint(gt=0) = Field(..., description="Amount sent to the recipient, base units.")
    fee: conint(ge=0)
    change: conint(ge=0) = Field(..., description="Value returned to the caller's shielded balance.")
    recipient: str
    mint_address: Optional[str] = None


class PrepareWithdrawRes(_Api):
    withdraw_params: WithdrawParams
    metadata: WithdrawMetadata


class SubmitRes(_Api):
    signature: str
    success: bool
    confirmed: bool = Field(False, description="First output observed in the ledger before polling gave up.")


class BalanceRes(_Api):
    balance: Decimal = Field(..., description="Shielded balance in token units.")
    base_units: conint(ge=0)
    token: str
    decimals: int
    utxo_count: conint(ge=0) = 0


__all__ = [
    "TreeState",
    "MerklePath",
    "FeeConfig",
    "LedgerPage",
    "UtxoIndices",
    "ExistsRes",
    "RelayResult",
    "WithdrawParams",
    "DepositMetadata",
    "PrepareDepositRes",
    "WithdrawMetadata",
    "PrepareWithdrawRes",
    "SubmitRes",
    "BalanceRes",
]
