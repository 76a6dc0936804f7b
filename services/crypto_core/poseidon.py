"""Poseidon hash over the BN254 scalar field, compatible with circomlib.

Round constants and the MDS matrix are not shipped as tables; they are
regenerated on first use from the Grain LFSR exactly as the Poseidon reference
parameter script does (prime field, x^5 S-box, n = 254, R_F = 8). Parameters
are cached per state width, so the cost is paid once per process.
"""
from __future__ import annotations

from collections import deque
from functools import lru_cache
from typing import List, Sequence, Tuple

from services.crypto_core.field import FIELD_SIZE, IntLike, to_field

FULL_ROUNDS = 8
# Partial rounds for t = 2..17 (circomlib N_ROUNDS_P)
PARTIAL_ROUNDS = [56, 57, 56, 60, 60, 63, 64, 63, 60, 66, 60, 65, 70, 60, 64, 68]
MAX_INPUTS = len(PARTIAL_ROUNDS)
_FIELD_BITS = 254


def _bits(value: int, width: int) -> List[int]:
    return [int(c) for c in format(value, "b").zfill(width)]


class _Grain:
    """Self-shrinking Grain LFSR used by the reference parameter generator."""

    def __init__(self, t: int, partial_rounds: int):
        seed = (
            _bits(1, 2)  # prime field
            + _bits(0, 4)  # x^alpha S-box
            + _bits(_FIELD_BITS, 12)
            + _bits(t, 12)
            + _bits(FULL_ROUNDS, 10)
            + _bits(partial_rounds, 10)
            + [1] * 30
        )
        self._state = deque(seed)
        for _ in range(160):
            self._step()

    def _step(self) -> int:
        s = self._state
        bit = s[62] ^ s[51] ^ s[38] ^ s[23] ^ s[13] ^ s[0]
        s.popleft()
        s.append(bit)
        return bit

    def next_bit(self) -> int:
        bit = self._step()
        while bit == 0:
            self._step()
            bit = self._step()
        return self._step()

    def next_int(self, width: int = _FIELD_BITS) -> int:
        v = 0
        for _ in range(width):
            v = (v << 1) | self.next_bit()
        return v

    def next_field_element(self) -> int:
        v = self.next_int()
        while v >= FIELD_SIZE:
            v = self.next_int()
        return v


@lru_cache(maxsize=None)
def _parameters(t: int) -> Tuple[Tuple[int, ...], Tuple[Tuple[int, ...], ...]]:
    partial = PARTIAL_ROUNDS[t - 2]
    grain = _Grain(t, partial)

    constants = tuple(grain.next_field_element() for _ in range((FULL_ROUNDS + partial) * t))

    while True:
        draws = [grain.next_int() % FIELD_SIZE for _ in range(2 * t)]
        if len(set(draws)) != len(draws):
            continue
        xs, ys = draws[:t], draws[t:]
        if any((x + y) % FIELD_SIZE == 0 for x in xs for y in ys):
            continue
        break

    mds = tuple(
        tuple(pow((x + y) % FIELD_SIZE, FIELD_SIZE - 2, FIELD_SIZE) for y in ys)
        for x in xs
    )
    return constants, mds


def _sbox(x: int) -> int:
    return pow(x, 5, FIELD_SIZE)


def poseidon(inputs: Sequence[IntLike]) -> int:
    """Hash 1..16 field elements; returns the first state word."""
    if not inputs:
        raise ValueError("poseidon requires at least one input")
    if len(inputs) > MAX_INPUTS:
        raise ValueError(f"poseidon supports at most {MAX_INPUTS} inputs, got {len(inputs)}")

    t = len(inputs) + 1
    constants, mds = _parameters(t)
    partial = PARTIAL_ROUNDS[t - 2]
    half_full = FULL_ROUNDS // 2

    state = [0] + [to_field(x) for x in inputs]
    for r in range(FULL_ROUNDS + partial):
        state = [(a + constants[r * t + i]) % FIELD_SIZE for i, a in enumerate(state)]
        if r < half_full or r >= half_full + partial:
            state = [_sbox(a) for a in state]
        else:
            state[0] = _sbox(state[0])
        state = [sum(row[j] * state[j] for j in range(t)) % FIELD_SIZE for row in mds]
    return state[0]


def poseidon_str(inputs: Sequence[IntLike]) -> str:
    return str(poseidon(inputs))


__all__ = ["poseidon", "poseidon_str", "MAX_INPUTS"]
