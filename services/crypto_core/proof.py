# services/crypto_core/proof.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from services.crypto_core.field import FIELD_SIZE, IntLike, signed_to_field, to_le_bytes
from services.crypto_core.merkle import MERKLE_TREE_DEPTH, validate_path
from services.crypto_core.utxo import Utxo

# Order of the transaction circuit's public signals.
PUBLIC_SIGNAL_COUNT = 7

CircuitInputs = Dict[str, Any]


def public_amount(ext_amount: int, fee: int) -> int:
    """Signed external amount net of fee, as a field residue."""
    return signed_to_field(ext_amount - fee)


def build_circuit_inputs(
    *,
    root: IntLike,
    inputs: Sequence[Utxo],
    outputs: Sequence[Utxo],
    path_elements: Sequence[Sequence[IntLike]],
    ext_amount: int,
    fee: int,
    ext_data_hash: IntLike,
    mint_field: IntLike,
) -> CircuitInputs:
    """Input map for the 2-in/2-out transaction circuit.

    Keys are inserted in the order the prover's witness calculator reads
    them; every scalar is a decimal string. Input path indices are the leaf
    positions of the inputs (0 for placeholders).
    """
    if len(inputs) != 2 or len(outputs) != 2:
        raise ValueError("transaction circuit takes exactly 2 inputs and 2 outputs")
    if len(path_elements) != len(inputs):
        raise ValueError("one merkle path per input is required")

    return {
        "root": str(root),
        "inputNullifier": [str(u.nullifier()) for u in inputs],
        "outputCommitment": [str(u.commitment()) for u in outputs],
        "publicAmount": str(public_amount(ext_amount, fee)),
        "extDataHash": str(ext_data_hash),
        "inAmount": [str(u.amount) for u in inputs],
        "inPrivateKey": [str(u.keypair.privkey) for u in inputs],
        "inBlinding": [str(u.blinding) for u in inputs],
        "inPathIndices": [str(u.index or 0) for u in inputs],
        "inPathElements": [validate_path(p, MERKLE_TREE_DEPTH) for p in path_elements],
        "outAmount": [str(u.amount) for u in outputs],
        "outBlinding": [str(u.blinding) for u in outputs],
        "outPubkey": [str(u.keypair.pubkey) for u in outputs],
        "mintAddress": str(mint_field),
    }


@dataclass(frozen=True)
class ProofData:
    """Groth16 proof and public signals re-encoded for the on-chain verifier."""

    proof_a: bytes
    proof_b: bytes
    proof_c: bytes
    root: bytes
    public_amount: bytes
    ext_data_hash: bytes
    input_nullifiers: Tuple[bytes, bytes]
    output_commitments: Tuple[bytes, bytes]


def _g1(point: Sequence[IntLike]) -> bytes:
    return to_le_bytes(point[0]) + to_le_bytes(point[1])


def encode_proof(proof: Mapping[str, Any]) -> Tuple[bytes, bytes, bytes]:
    """snarkjs proof JSON -> (A 64 bytes, B 128 bytes, C 64 bytes).

    B is a pair of Fq2 elements; the verifier wants each pair's coordinates
    in (c1, c0) order.
    """
    try:
        pi_a, pi_b, pi_c = proof["pi_a"], proof["pi_b"], proof["pi_c"]
        a = _g1(pi_a)
        b = b"".join(to_le_bytes(pair[1]) + to_le_bytes(pair[0]) for pair in pi_b[:2])
        c = _g1(pi_c)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ValueError(f"malformed proof: {e}") from e
    return a, b, c


def encode_public_signals(signals: Sequence[IntLike]) -> List[bytes]:
    if len(signals) != PUBLIC_SIGNAL_COUNT:
        raise ValueError(f"expected {PUBLIC_SIGNAL_COUNT} public signals, got {len(signals)}")
    return [to_le_bytes(int(s) % FIELD_SIZE) for s in signals]


def to_proof_data(proof: Mapping[str, Any], public_signals: Sequence[IntLike]) -> ProofData:
    a, b, c = encode_proof(proof)
    s = encode_public_signals(public_signals)
    return ProofData(
        proof_a=a,
        proof_b=b,
        proof_c=c,
        root=s[0],
        public_amount=s[1],
        ext_data_hash=s[2],
        input_nullifiers=(s[3], s[4]),
        output_commitments=(s[5], s[6]),
    )


__all__ = [
    "PUBLIC_SIGNAL_COUNT",
    "CircuitInputs",
    "public_amount",
    "build_circuit_inputs",
    "ProofData",
    "encode_proof",
    "encode_public_signals",
    "to_proof_data",
]
