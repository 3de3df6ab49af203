"""
rng.py - Seeded random number generators.

Every randomized step (SimHash hyperplanes, AMS sketch matrices, k-means
initialization) draws from a SeededRandom. Consumers take a *factory*
(seed -> SeededRandom) rather than a concrete generator so the PRNG can be
swapped without touching the algorithms.

Two implementations:

    NumpyRandom               np.random.default_rng (PCG64). Default for the
                              SimHash and AMS matrices.
    LinearCongruentialRandom  The classic 32-bit LCG (Numerical Recipes
                              constants). Default for k-means initialization.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple, Union

import numpy as np

Shape = Union[int, Tuple[int, ...]]


class SeededRandom(ABC):
    """Interface for reproducible uniform / Gaussian draws."""

    @abstractmethod
    def uniform(self, low: float, high: float, size: Shape) -> np.ndarray:
        """Uniform floats in [low, high)."""

    @abstractmethod
    def gaussian(self, size: Shape) -> np.ndarray:
        """Standard normal floats."""

    @abstractmethod
    def integers(self, low: int, high: int, size: Shape) -> np.ndarray:
        """Uniform integers in [low, high)."""

    def signs(self, size: Shape) -> np.ndarray:
        """Random +1.0 / -1.0 values."""
        return np.where(self.integers(0, 2, size) == 1, 1.0, -1.0)


class NumpyRandom(SeededRandom):
    def __init__(self, seed: int) -> None:
        self.seed = int(seed)
        self._rng = np.random.default_rng(self.seed)

    def uniform(self, low: float, high: float, size: Shape) -> np.ndarray:
        return self._rng.uniform(low, high, size)

    def gaussian(self, size: Shape) -> np.ndarray:
        return self._rng.standard_normal(size)

    def integers(self, low: int, high: int, size: Shape) -> np.ndarray:
        return self._rng.integers(low, high, size)


class LinearCongruentialRandom(SeededRandom):
    """
    32-bit linear congruential generator.

        state = (1664525 * state + 1013904223) mod 2**32
        u     = state / 2**32

    Gaussians come from the Box-Muller transform. The first uniform of each
    pair is clamped into [0.01, 0.99] so log() never sees zero.

    Uniform draws jump ahead BLOCK states at a time with precomputed
    (A, C) coefficients, so large draws run in numpy and still reproduce the
    exact one-at-a-time sequence. Gaussians stay scalar; keep them small.
    """

    MULTIPLIER = 1664525
    INCREMENT = 1013904223
    MODULUS = 2**32
    BLOCK = 4096

    # state_{n+k} = A[k] * state_n + C[k] (mod 2**32), k = 1..BLOCK
    _jump: Optional[Tuple[np.ndarray, np.ndarray]] = None

    def __init__(self, seed: int) -> None:
        self.seed = int(seed)
        self._state = self.seed % self.MODULUS

    @classmethod
    def _jump_table(cls) -> Tuple[np.ndarray, np.ndarray]:
        if cls._jump is None:
            mult = np.empty(cls.BLOCK, dtype=np.uint64)
            inc = np.empty(cls.BLOCK, dtype=np.uint64)
            a, c = 1, 0
            for k in range(cls.BLOCK):
                a = (cls.MULTIPLIER * a) % cls.MODULUS
                c = (cls.MULTIPLIER * c + cls.INCREMENT) % cls.MODULUS
                mult[k] = a
                inc[k] = c
            cls._jump = (mult, inc)
        return cls._jump

    def next_float(self) -> float:
        self._state = (self.MULTIPLIER * self._state + self.INCREMENT) % self.MODULUS
        return self._state / self.MODULUS

    def _draw(self, size: Shape) -> np.ndarray:
        count = int(np.prod(size))
        mult, inc = self._jump_table()
        out = np.empty(count, dtype=np.float64)
        for start in range(0, count, self.BLOCK):
            n = min(self.BLOCK, count - start)
            # (2**32 - 1)**2 + 2**32 - 1 < 2**64, so the uint64 sum never wraps.
            states = (mult[:n] * np.uint64(self._state) + inc[:n]) % np.uint64(self.MODULUS)
            out[start : start + n] = states / float(self.MODULUS)
            self._state = int(states[-1])
        return out.reshape(size)

    def uniform(self, low: float, high: float, size: Shape) -> np.ndarray:
        return low + (high - low) * self._draw(size)

    def gaussian(self, size: Shape) -> np.ndarray:
        count = int(np.prod(size))
        out = np.empty(count, dtype=np.float64)
        for i in range(count):
            u = 0.01 + self.next_float() * 0.98
            v = self.next_float()
            out[i] = math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)
        return out.reshape(size)

    def integers(self, low: int, high: int, size: Shape) -> np.ndarray:
        return (low + np.floor(self._draw(size) * (high - low))).astype(np.int64)


RandomFactory = Callable[[int], SeededRandom]
