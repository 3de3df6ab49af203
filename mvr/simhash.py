"""
simhash.py - SimHash partitioning with Gray-coded partition ids.

=============================================================================
HOW PARTITIONING WORKS
=============================================================================

For each repetition r we draw P random hyperplanes through the origin: a
D x P matrix of independent Gaussians seeded with (seed + r). A vector is
mapped to a partition by:

    1. dot the vector with each hyperplane         -> P projections
    2. take the sign of each projection            -> P bits (bit j = plane j)
                                                      (> 0 -> 1, else 0)
    3. convert the resulting code to a Gray code   -> code ^ (code >> 1)

Two vectors that land on the same side of every hyperplane share a partition.
The angle between two vectors controls how likely a random hyperplane is to
separate them, so nearby token embeddings tend to share buckets.

The sign code can always be recovered from a partition id with
gray_to_binary(); crossing one hyperplane flips exactly one bit of that code.

P == 0 is allowed and yields a single partition (id 0).

=============================================================================
"""

from __future__ import annotations

from typing import List

import numpy as np

from mvr.errors import ConfigurationError
from mvr.rng import NumpyRandom, RandomFactory

MAX_SIMHASH_PROJECTIONS = 31


def binary_to_gray(code: int) -> int:
    return code ^ (code >> 1)


def gray_to_binary(gray: int) -> int:
    code = gray
    mask = gray >> 1
    while mask:
        code ^= mask
        mask >>= 1
    return code


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


class SimHashPartitioner:
    """
    Per-repetition random hyperplanes and the partition lookup built on them.

    The matrices are generated once, at construction, from (seed + repetition)
    so every encoder built with the same arguments partitions identically.

    Args:
        dimension: Token embedding dimension D
        num_repetitions: Number of independent repetitions R
        num_projections: Hyperplanes per repetition P (2**P partitions)
        seed: Base seed; repetition r uses seed + r
        rng_factory: seed -> SeededRandom (defaults to NumpyRandom)
    """

    def __init__(
        self,
        dimension: int,
        num_repetitions: int,
        num_projections: int,
        seed: int,
        rng_factory: RandomFactory = NumpyRandom,
    ) -> None:
        if dimension <= 0:
            raise ConfigurationError(f"dimension must be positive, got {dimension}")
        if num_repetitions <= 0:
            raise ConfigurationError(
                f"num_repetitions must be positive, got {num_repetitions}"
            )
        if not 0 <= num_projections < MAX_SIMHASH_PROJECTIONS:
            raise ConfigurationError(
                f"num_simhash_projections must be in [0, {MAX_SIMHASH_PROJECTIONS}), "
                f"got {num_projections}"
            )

        self.dimension = int(dimension)
        self.num_repetitions = int(num_repetitions)
        self.num_projections = int(num_projections)
        self.seed = int(seed)
        self.num_partitions = 2**self.num_projections

        # Weights of each sign bit when packing them into an integer code.
        self._bit_weights = (1 << np.arange(self.num_projections, dtype=np.int64))

        self.matrices: List[np.ndarray] = []
        for rep in range(self.num_repetitions):
            rng = rng_factory(self.seed + rep)
            mat = rng.gaussian((self.dimension, self.num_projections))
            self.matrices.append(np.asarray(mat, dtype=np.float32))

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _check_points(self, points: np.ndarray) -> np.ndarray:
        arr = np.asarray(points, dtype=np.float32)
        if arr.ndim != 2 or arr.shape[1] != self.dimension:
            raise ConfigurationError(
                f"expected vectors of dimension {self.dimension}, got shape {arr.shape}"
            )
        return arr

    def sketch(self, points: np.ndarray, repetition: int) -> np.ndarray:
        """Raw hyperplane projections, shape (n, P)."""
        arr = self._check_points(points)
        return arr @ self.matrices[repetition]

    def sign_codes(self, points: np.ndarray, repetition: int) -> np.ndarray:
        """Binary sign codes (before Gray conversion), shape (n,)."""
        bits = self.sketch(points, repetition) > 0
        return bits.astype(np.int64) @ self._bit_weights

    def partition_indices(self, points: np.ndarray, repetition: int) -> np.ndarray:
        """
        Gray-coded partition id for every row of `points`.

        Args:
            points: Array of shape (n, D)
            repetition: Which repetition's hyperplanes to use

        Returns:
            int64 array of shape (n,), every value in [0, 2**P)
        """
        codes = self.sign_codes(points, repetition)
        return codes ^ (codes >> 1)

    def partition_index(self, vector: np.ndarray, repetition: int) -> int:
        arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1:
            raise ConfigurationError(f"expected a single vector, got shape {arr.shape}")
        return int(self.partition_indices(arr[np.newaxis, :], repetition)[0])

    def hyperplane(self, repetition: int, projection: int) -> np.ndarray:
        """Normal vector of one hyperplane, shape (D,)."""
        return self.matrices[repetition][:, projection]
