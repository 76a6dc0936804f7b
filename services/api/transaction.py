# services/api/transaction.py
"""
Wire layout and account derivation for the pool's `transact` instructions.

Payload: discriminator(8) | proofA(64) | proofB(128) | proofC(64) | root |
publicAmount | extDataHash | nullifier0 | nullifier1 | commitment0 |
commitment1 (32 each) | extAmount i64 LE | fee u64 LE |
u32 LE len + encryptedOutput1 | u32 LE len + encryptedOutput2
"""
from __future__ import annotations

import base64
import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from services.api import config
from services.api.schemas_api import WithdrawParams
from services.crypto_core.field import FIELD_SIZE, IntLike, to_le_bytes
from services.crypto_core.keys import keccak256
from services.crypto_core.proof import ProofData
from services.crypto_core.utxo import NATIVE_MINT

TRANSACT_IX_DISCRIMINATOR = bytes([217, 149, 130, 143, 221, 52, 252, 119])
TRANSACT_SPL_IX_DISCRIMINATOR = bytes([154, 66, 244, 204, 78, 225, 163, 151])

NULLIFIER_SEEDS = (b"nullifier0", b"nullifier1")


def _pk(x: str | Pubkey) -> Pubkey:
    return x if isinstance(x, Pubkey) else Pubkey.from_string(x)


def program_id() -> Pubkey:
    return Pubkey.from_string(config.PROGRAM_ID)


def find_pda(*seeds: bytes) -> Pubkey:
    return Pubkey.find_program_address(list(seeds), program_id())[0]


@dataclass(frozen=True)
class ProgramAccounts:
    tree: Pubkey
    tree_token: Pubkey
    global_config: Pubkey


def program_accounts(mint: Optional[str] = None) -> ProgramAccounts:
    """Pool accounts; an SPL mint selects that asset's tree."""
    tree = find_pda(b"merkle_tree") if mint is None else find_pda(b"merkle_tree", bytes(_pk(mint)))
    return ProgramAccounts(tree=tree, tree_token=find_pda(b"tree_token"), global_config=find_pda(b"global_config"))


def associated_token_address(owner: str | Pubkey, mint: str | Pubkey) -> Pubkey:
    token_program = Pubkey.from_string(config.TOKEN_PROGRAM_ID)
    ata_program = Pubkey.from_string(config.ASSOCIATED_TOKEN_PROGRAM_ID)
    seeds = [bytes(_pk(owner)), bytes(token_program), bytes(_pk(mint))]
    return Pubkey.find_program_address(seeds, ata_program)[0]


# ---------- nullifier accounts ----------
def nullifier_seed(nullifier: IntLike | bytes) -> bytes:
    """32-byte seed for a nullifier: the little-endian encoding used in the payload."""
    if isinstance(nullifier, (bytes, bytearray)):
        return bytes(nullifier)
    return to_le_bytes(nullifier)


def nullifier_pdas(n0: IntLike | bytes, n1: IntLike | bytes) -> Tuple[Pubkey, Pubkey]:
    return find_pda(NULLIFIER_SEEDS[0], nullifier_seed(n0)), find_pda(NULLIFIER_SEEDS[1], nullifier_seed(n1))


def cross_check_nullifier_pdas(n0: IntLike | bytes, n1: IntLike | bytes) -> Tuple[Pubkey, Pubkey]:
    """Each input's nullifier registered under the other input's prefix."""
    return find_pda(NULLIFIER_SEEDS[0], nullifier_seed(n1)), find_pda(NULLIFIER_SEEDS[1], nullifier_seed(n0))


def spent_markers(nullifier: IntLike) -> List[Pubkey]:
    """Both accounts whose existence means this nullifier was consumed."""
    seed = nullifier_seed(nullifier)
    return [find_pda(prefix, seed) for prefix in NULLIFIER_SEEDS]


# ---------- ext data ----------
@dataclass(frozen=True)
class ExtData:
    recipient: str
    ext_amount: int
    encrypted_output1: bytes
    encrypted_output2: bytes
    fee: int
    fee_recipient: str
    mint: str = NATIVE_MINT

    def mint_pubkey(self) -> Pubkey:
        # the native sentinel is hashed as the wrapped SOL mint
        if not self.mint or self.mint == NATIVE_MINT:
            return Pubkey.from_string(config.WRAPPED_SOL_MINT)
        return Pubkey.from_string(self.mint)

    def ext_amount_bytes(self) -> bytes:
        return self.ext_amount.to_bytes(8, "little", signed=True)

    def fee_bytes(self) -> bytes:
        return self.fee.to_bytes(8, "little")


def ext_data_hash(ext: ExtData) -> int:
    data = b"".join([
        bytes(_pk(ext.recipient)),
        ext.ext_amount_bytes(),
        ext.encrypted_output1,
        ext.encrypted_output2,
        ext.fee_bytes(),
        bytes(_pk(ext.fee_recipient)),
        bytes(ext.mint_pubkey()),
    ])
    return int.from_bytes(keccak256(data), "big") % FIELD_SIZE


def serialize_proof_and_ext_data(proof: ProofData, ext: ExtData, spl: bool = False) -> bytes:
    return b"".join([
        TRANSACT_SPL_IX_DISCRIMINATOR if spl else TRANSACT_IX_DISCRIMINATOR,
        proof.proof_a,
        proof.proof_b,
        proof.proof_c,
        proof.root,
        proof.public_amount,
        proof.ext_data_hash,
        proof.input_nullifiers[0],
        proof.input_nullifiers[1],
        proof.output_commitments[0],
        proof.output_commitments[1],
        ext.ext_amount_bytes(),
        ext.fee_bytes(),
        struct.pack("<I", len(ext.encrypted_output1)),
        ext.encrypted_output1,
        struct.pack("<I", len(ext.encrypted_output2)),
        ext.encrypted_output2,
    ])


# ---------- instructions ----------
def _ro(pk: Pubkey) -> AccountMeta:
    return AccountMeta(pk, is_signer=False, is_writable=False)


def _rw(pk: Pubkey) -> AccountMeta:
    return AccountMeta(pk, is_signer=False, is_writable=True)


def deposit_instruction(signer: str, proof: ProofData, ext: ExtData) -> Instruction:
    accts = program_accounts()
    n0, n1 = nullifier_pdas(*proof.input_nullifiers)
    n2, n3 = cross_check_nullifier_pdas(*proof.input_nullifiers)
    fee_recipient = Pubkey.from_string(config.FEE_RECIPIENT)
    # deposits carry the fee recipient as a placeholder recipient
    metas = [
        _rw(accts.tree), _rw(n0), _rw(n1), _ro(n2), _ro(n3),
        _rw(accts.tree_token), _ro(accts.global_config),
        _rw(fee_recipient), _rw(fee_recipient),
        AccountMeta(_pk(signer), is_signer=True, is_writable=True),
        _ro(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(program_id(), serialize_proof_and_ext_data(proof, ext, spl=False), metas)


def spl_deposit_instruction(signer: str, mint: str, proof: ProofData, ext: ExtData) -> Instruction:
    accts = program_accounts(mint)
    n0, n1 = nullifier_pdas(*proof.input_nullifiers)
    n2, n3 = cross_check_nullifier_pdas(*proof.input_nullifiers)
    mint_pk = _pk(mint)
    placeholder = Pubkey.from_string(config.FEE_RECIPIENT)
    metas = [
        _rw(accts.tree), _rw(n0), _rw(n1), _ro(n2), _ro(n3),
        _ro(accts.global_config),
        AccountMeta(_pk(signer), is_signer=True, is_writable=True),
        _ro(mint_pk),
        _rw(associated_token_address(signer, mint_pk)),
        _rw(placeholder),
        _rw(associated_token_address(placeholder, mint_pk)),
        _rw(associated_token_address(accts.global_config, mint_pk)),
        _rw(associated_token_address(config.FEE_RECIPIENT, mint_pk)),
        _ro(Pubkey.from_string(config.TOKEN_PROGRAM_ID)),
        _ro(Pubkey.from_string(config.ASSOCIATED_TOKEN_PROGRAM_ID)),
        _ro(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(program_id(), serialize_proof_and_ext_data(proof, ext, spl=True), metas)


def deposit_fee_instruction(signer: str, lamports: int, recipient: str = config.FEE_RECIPIENT) -> Instruction:
    return transfer(TransferParams(from_pubkey=_pk(signer), to_pubkey=_pk(recipient), lamports=lamports))


def build_unsigned_transaction(
    signer: str,
    instructions: Sequence[Instruction],
    lookup_table: AddressLookupTableAccount,
    recent_blockhash: Hash,
    compute_unit_limit: int = config.COMPUTE_UNIT_LIMIT,
) -> VersionedTransaction:
    """v0 message with a compute budget prefix; signature slots left empty for the client."""
    ixs = [set_compute_unit_limit(compute_unit_limit), *instructions]
    msg = MessageV0.try_compile(_pk(signer), ixs, [lookup_table], recent_blockhash)
    sigs = [Signature.default()] * msg.header.num_required_signatures
    return VersionedTransaction.populate(msg, sigs)


def serialize_transaction(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode()


def deserialize_transaction(b64: str) -> VersionedTransaction:
    return VersionedTransaction.from_bytes(base64.b64decode(b64))


# ---------- withdrawal ----------
def build_withdraw_params(
    *,
    proof: ProofData,
    ext: ExtData,
    recipient: str,
    sender_address: str,
    referrer: Optional[str] = None,
    mint: Optional[str] = None,
) -> WithdrawParams:
    """Relayer submission for a withdrawal; `mint` set means an SPL withdrawal."""
    accts = program_accounts(mint)
    n0, n1 = nullifier_pdas(*proof.input_nullifiers)
    n2, n3 = cross_check_nullifier_pdas(*proof.input_nullifiers)
    fields = dict(
        serialized_proof=base64.b64encode(serialize_proof_and_ext_data(proof, ext, spl=mint is not None)).decode(),
        tree_account=str(accts.tree),
        nullifier0_pda=str(n0),
        nullifier1_pda=str(n1),
        nullifier2_pda=str(n2),
        nullifier3_pda=str(n3),
        tree_token_account=str(accts.tree_token),
        global_config_account=str(accts.global_config),
        recipient=recipient,
        fee_recipient_account=config.FEE_RECIPIENT,
        ext_amount=ext.ext_amount,
        encrypted_output1=base64.b64encode(ext.encrypted_output1).decode(),
        encrypted_output2=base64.b64encode(ext.encrypted_output2).decode(),
        fee=ext.fee,
        lookup_table_address=config.ALT_ADDRESS,
        sender_address=sender_address,
        referral_wallet_address=referrer,
    )
    if mint is not None:
        fields.update(
            tree_ata=str(associated_token_address(accts.global_config, mint)),
            recipient_ata=str(associated_token_address(recipient, mint)),
            mint_address=mint,
            fee_recipient_token_account=str(associated_token_address(config.FEE_RECIPIENT, mint)),
        )
    return WithdrawParams(**fields)


__all__ = [
    "TRANSACT_IX_DISCRIMINATOR",
    "TRANSACT_SPL_IX_DISCRIMINATOR",
    "ProgramAccounts",
    "program_accounts",
    "associated_token_address",
    "nullifier_seed",
    "nullifier_pdas",
    "cross_check_nullifier_pdas",
    "spent_markers",
    "ExtData",
    "ext_data_hash",
    "serialize_proof_and_ext_data",
    "deposit_instruction",
    "spl_deposit_instruction",
    "deposit_fee_instruction",
    "build_unsigned_transaction",
    "serialize_transaction",
    "deserialize_transaction",
    "build_withdraw_params",
]
