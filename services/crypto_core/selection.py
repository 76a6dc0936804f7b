# services/crypto_core/selection.py
from __future__ import annotations

from typing import List, Sequence

from services.crypto_core.keys import SpendingKeypair
from services.crypto_core.utxo import NATIVE_MINT, Utxo

# The transaction circuit always spends exactly this many inputs.
CIRCUIT_INPUTS = 2


def largest_first(utxos: Sequence[Utxo]) -> List[Utxo]:
    return sorted(utxos, key=lambda u: u.amount, reverse=True)


def placeholder(keypair: SpendingKeypair, mint: str = NATIVE_MINT) -> Utxo:
    """Zero-amount input that only satisfies the circuit's arity."""
    return Utxo(keypair=keypair, amount=0, index=0, mint=mint, version="v2")


def select_inputs(utxos: Sequence[Utxo], keypair: SpendingKeypair, mint: str = NATIVE_MINT) -> List[Utxo]:
    """Pick the consolidation set: the two largest notes, padded with placeholders."""
    chosen = largest_first(utxos)[:CIRCUIT_INPUTS]
    while len(chosen) < CIRCUIT_INPUTS:
        chosen.append(placeholder(keypair, mint))
    return chosen


def covers(inputs: Sequence[Utxo], target: int) -> bool:
    return sum(u.amount for u in inputs) >= target


__all__ = ["CIRCUIT_INPUTS", "largest_first", "placeholder", "select_inputs", "covers"]
