# services/crypto_core/merkle.py
from __future__ import annotations

from functools import lru_cache
from typing import List, Sequence, Tuple

from services.crypto_core.poseidon import poseidon

MERKLE_TREE_DEPTH = 26


@lru_cache(maxsize=None)
def zero_values(depth: int = MERKLE_TREE_DEPTH) -> Tuple[int, ...]:
    """zero[0] = 0, zero[i] = H(zero[i-1], zero[i-1]); depth + 1 entries."""
    zeros = [0]
    for _ in range(depth):
        zeros.append(poseidon([zeros[-1], zeros[-1]]))
    return tuple(zeros)


def empty_root(depth: int = MERKLE_TREE_DEPTH) -> int:
    return zero_values(depth)[depth]


def zero_path(depth: int = MERKLE_TREE_DEPTH) -> Tuple[List[str], int]:
    """Path elements and packed path indices for a placeholder input."""
    return ["0"] * depth, 0


def validate_path(path_elements: Sequence, depth: int = MERKLE_TREE_DEPTH) -> List[str]:
    if len(path_elements) != depth:
        raise ValueError(f"merkle path has {len(path_elements)} elements, expected {depth}")
    return [str(e) for e in path_elements]


def path_indices_from_bits(bits: Sequence[int]) -> int:
    """Pack per-level left/right bits (leaf level first) into the leaf index."""
    value = 0
    for level, bit in enumerate(bits):
        if int(bit):
            value |= 1 << level
    return value


def compute_root(leaf: int, index: int, path_elements: Sequence, depth: int = MERKLE_TREE_DEPTH) -> int:
    node = int(leaf)
    for level in range(depth):
        sibling = int(path_elements[level])
        if (index >> level) & 1:
            node = poseidon([sibling, node])
        else:
            node = poseidon([node, sibling])
    return node


__all__ = [
    "MERKLE_TREE_DEPTH",
    "zero_values",
    "empty_root",
    "zero_path",
    "validate_path",
    "path_indices_from_bits",
    "compute_root",
]
