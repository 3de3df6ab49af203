"""
fde.py - Fixed Dimensional Encodings (FDEs) for multi-vector embeddings.

=============================================================================
OVERVIEW
=============================================================================

A multi-vector is a variable-size set of token embeddings (n_tokens x D).
Comparing two of them exactly means Chamfer similarity: every query token
looks for its best match in the document. That is expensive and cannot be
served by a standard vector index.

An FDE squeezes a multi-vector into ONE vector of fixed length so that a
plain dot product approximates Chamfer similarity:

    for each repetition r in 0..R-1:
        partition every token with SimHash (2**P buckets)
        bucket[p] = sum of the tokens that fell into p        (queries)
                  = mean of the tokens that fell into p       (documents)
    FDE = concat(bucket[0..2**P-1] for every repetition)

    len(FDE) = R * 2**P * D   (or R * 2**P * projection_dimension with AMS)

WHY SUM FOR QUERIES AND AVERAGE FOR DOCUMENTS?
----------------------------------------------
dot(query_fde, doc_fde) adds, bucket by bucket, each query token times the
*mean* document token that shares its bucket. Tokens that share a bucket are
probably close, so that mean is a stand-in for the token's best match. The
sum over query tokens mirrors the Chamfer sum over query tokens. Keep the
two encodings paired: SUM on the query side, AVERAGE on the document side.

EMPTY BUCKETS
-------------
A document rarely fills every bucket. FillPolicy decides what an empty
document bucket holds:

    ZERO      zeros (default)
    CENTROID  the mean of all the document's tokens
    NEAREST   the token whose sign code is closest (Hamming) to the bucket

Queries always keep empty buckets at zero.

=============================================================================
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy import sparse

from mvr.cooperative import Steps, run_steps, run_steps_async
from mvr.errors import ConfigurationError, EmptyInputError
from mvr.rng import NumpyRandom, RandomFactory
from mvr.simhash import SimHashPartitioner, gray_to_binary, hamming_distance

logger = logging.getLogger(__name__)

# Batch encoding pauses (cooperatively) after this many multi-vectors.
CHECKPOINT_EVERY = 10


# =============================================================================
# CONFIGURATION
# =============================================================================


class EncodingType(str, Enum):
    SUM = "sum"  # queries
    AVERAGE = "average"  # documents


class ProjectionType(str, Enum):
    IDENTITY = "identity"
    AMS_SKETCH = "ams_sketch"


class FillPolicy(str, Enum):
    ZERO = "zero"
    CENTROID = "centroid"
    NEAREST = "nearest"


@dataclass(frozen=True)
class EncodingConfig:
    """
    Everything that determines an FDE.

    Two FDEs are only comparable if they were produced with equal configs.
    Persist this next to any exported FDEs (see mvr.storage).
    """

    dimension: int = 64  # Token embedding dimension D
    num_repetitions: int = 5  # Independent SimHash repetitions R
    num_simhash_projections: int = 4  # Hyperplanes per repetition P (2**P buckets)
    seed: int = 42
    encoding_type: EncodingType = EncodingType.SUM  # default for encode()
    projection_type: ProjectionType = ProjectionType.IDENTITY
    projection_dimension: Optional[int] = None  # required for AMS_SKETCH
    fill_policy: FillPolicy = FillPolicy.ZERO

    def __post_init__(self) -> None:
        # Accept plain strings ("average", "ams_sketch") from CLIs / JSON.
        for name, enum_cls in (
            ("encoding_type", EncodingType),
            ("projection_type", ProjectionType),
            ("fill_policy", FillPolicy),
        ):
            value = getattr(self, name)
            try:
                object.__setattr__(self, name, enum_cls(value))
            except ValueError as exc:
                raise ConfigurationError(f"invalid {name}: {value!r}") from exc

        if self.dimension <= 0:
            raise ConfigurationError(f"dimension must be positive, got {self.dimension}")
        if self.num_repetitions <= 0:
            raise ConfigurationError(
                f"num_repetitions must be positive, got {self.num_repetitions}"
            )
        if not 0 <= self.num_simhash_projections < 31:
            raise ConfigurationError(
                "num_simhash_projections must be in [0, 31), "
                f"got {self.num_simhash_projections}"
            )
        if self.projection_type is ProjectionType.AMS_SKETCH:
            if self.projection_dimension is None:
                raise ConfigurationError(
                    "projection_dimension is required when projection_type=ams_sketch"
                )
            if self.projection_dimension <= 0:
                raise ConfigurationError(
                    f"projection_dimension must be positive, got {self.projection_dimension}"
                )

    @property
    def num_partitions(self) -> int:
        return 2**self.num_simhash_projections

    @property
    def block_dimension(self) -> int:
        """Width of one bucket: D, or projection_dimension under AMS."""
        if self.projection_type is ProjectionType.AMS_SKETCH:
            return int(self.projection_dimension)  # type: ignore[arg-type]
        return self.dimension

    @property
    def fde_dimension(self) -> int:
        return self.num_repetitions * self.num_partitions * self.block_dimension

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["encoding_type"] = self.encoding_type.value
        out["projection_type"] = self.projection_type.value
        out["fill_policy"] = self.fill_policy.value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncodingConfig":
        return cls(**data)


# =============================================================================
# SIMILARITY
# =============================================================================


def similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Inner product of two FDEs. Lengths must match."""
    va = np.asarray(a, dtype=np.float32).ravel()
    vb = np.asarray(b, dtype=np.float32).ravel()
    if va.shape[0] != vb.shape[0]:
        raise ConfigurationError(
            f"FDE length mismatch: {va.shape[0]} vs {vb.shape[0]}"
        )
    return float(np.dot(va.astype(np.float64), vb.astype(np.float64)))


def batch_similarities(query_fde: np.ndarray, fdes: np.ndarray) -> np.ndarray:
    q = np.asarray(query_fde, dtype=np.float32).ravel()
    mat = np.asarray(fdes, dtype=np.float32)
    if mat.ndim != 2 or mat.shape[1] != q.shape[0]:
        raise ConfigurationError(
            f"FDE length mismatch: query {q.shape[0]} vs matrix {mat.shape}"
        )
    return mat @ q


# =============================================================================
# ENCODER
# =============================================================================


class FDEEncoder:
    """
    Turns multi-vectors into FDEs for one EncodingConfig.

    SimHash hyperplanes and (optional) AMS sketch matrices are drawn once in
    the constructor, so encode() is a pure function of its input: the same
    multi-vector always yields a bit-identical FDE.

    Args:
        config: The EncodingConfig shared by every FDE you intend to compare
        rng_factory: seed -> SeededRandom used for the random matrices
    """

    def __init__(
        self,
        config: EncodingConfig,
        rng_factory: RandomFactory = NumpyRandom,
    ) -> None:
        self.config = config
        self.partitioner = SimHashPartitioner(
            dimension=config.dimension,
            num_repetitions=config.num_repetitions,
            num_projections=config.num_simhash_projections,
            seed=config.seed,
            rng_factory=rng_factory,
        )

        # One sparse D x projection_dimension matrix per repetition, exactly
        # one +/-1 entry per row. Seeds start after the SimHash seeds
        # (seed .. seed + R - 1) so the two never share a stream.
        self.ams_matrices: List[sparse.csr_matrix] = []
        if config.projection_type is ProjectionType.AMS_SKETCH:
            proj_dim = config.block_dimension
            rows = np.arange(config.dimension)
            for rep in range(config.num_repetitions):
                rng = rng_factory(config.seed + config.num_repetitions + rep)
                cols = rng.integers(0, proj_dim, config.dimension)
                signs = rng.signs(config.dimension).astype(np.float32)
                self.ams_matrices.append(
                    sparse.csr_matrix(
                        (signs, (rows, cols)), shape=(config.dimension, proj_dim)
                    )
                )

    @property
    def output_dimension(self) -> int:
        return self.config.fde_dimension

    # -------------------------------------------------------------------------
    # Input handling
    # -------------------------------------------------------------------------

    def _as_points(self, multi_vector: Any) -> np.ndarray:
        try:
            arr = np.asarray(multi_vector, dtype=np.float32)
        except ValueError as exc:
            raise ConfigurationError(f"token vectors have inconsistent lengths: {exc}") from exc

        if arr.ndim >= 1 and arr.shape[0] == 0:
            raise EmptyInputError("cannot encode a multi-vector with zero tokens")
        if arr.ndim != 2 or arr.shape[1] != self.config.dimension:
            raise ConfigurationError(
                f"expected token vectors of shape (n, {self.config.dimension}), "
                f"got {arr.shape}"
            )
        return arr

    def _project(self, points: np.ndarray, repetition: int) -> np.ndarray:
        if not self.ams_matrices:
            return points
        ams = self.ams_matrices[repetition]
        # (proj x D sparse) @ (D x n dense) -> (proj x n)
        return np.asarray((ams.T @ points.T).T, dtype=np.float32)

    # -------------------------------------------------------------------------
    # Encoding
    # -------------------------------------------------------------------------

    def encode(
        self,
        multi_vector: Any,
        encoding_type: Optional[EncodingType] = None,
    ) -> np.ndarray:
        """
        Encode one multi-vector.

        Args:
            multi_vector: Token embeddings, shape (n_tokens, D)
            encoding_type: SUM or AVERAGE; defaults to config.encoding_type

        Returns:
            float32 array of shape (output_dimension,)

        Raises:
            EmptyInputError: n_tokens == 0
            ConfigurationError: token dimension != config.dimension
        """
        points = self._as_points(multi_vector)
        kind = EncodingType(encoding_type or self.config.encoding_type)

        cfg = self.config
        num_partitions = cfg.num_partitions
        width = cfg.block_dimension
        block = num_partitions * width
        out = np.zeros(cfg.fde_dimension, dtype=np.float32)

        for rep in range(cfg.num_repetitions):
            part_ids = self.partitioner.partition_indices(points, rep)
            projected = self._project(points, rep)

            rep_fde = np.zeros((num_partitions, width), dtype=np.float32)
            np.add.at(rep_fde, part_ids, projected)

            if kind is EncodingType.AVERAGE:
                counts = np.bincount(part_ids, minlength=num_partitions)
                filled = counts > 0
                rep_fde[filled] /= counts[filled, np.newaxis].astype(np.float32)
                if cfg.fill_policy is not FillPolicy.ZERO and not filled.all():
                    self._fill_empty(rep_fde, ~filled, points, projected, rep)

            out[rep * block : (rep + 1) * block] = rep_fde.reshape(-1)

        return out

    def _fill_empty(
        self,
        rep_fde: np.ndarray,
        empty: np.ndarray,
        points: np.ndarray,
        projected: np.ndarray,
        repetition: int,
    ) -> None:
        if self.config.fill_policy is FillPolicy.CENTROID:
            rep_fde[empty] = projected.mean(axis=0)
            return

        # NEAREST: the token whose sign code differs from the bucket's code in
        # the fewest bits. Ties go to the earliest token.
        codes = self.partitioner.sign_codes(points, repetition)
        for pid in np.flatnonzero(empty):
            target = gray_to_binary(int(pid))
            distances = [hamming_distance(int(c), target) for c in codes]
            rep_fde[pid] = projected[int(np.argmin(distances))]

    def encode_query(self, multi_vector: Any) -> np.ndarray:
        return self.encode(multi_vector, EncodingType.SUM)

    def encode_document(self, multi_vector: Any) -> np.ndarray:
        return self.encode(multi_vector, EncodingType.AVERAGE)

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def encode_batch_steps(
        self,
        multi_vectors: Sequence[Any],
        encoding_type: Optional[EncodingType],
        checkpoint_every: int,
    ) -> Steps[np.ndarray]:
        t0 = time.perf_counter_ns()
        out = np.zeros((len(multi_vectors), self.output_dimension), dtype=np.float32)
        for i, mv in enumerate(multi_vectors):
            try:
                out[i] = self.encode(mv, encoding_type)
            except EmptyInputError:
                raise EmptyInputError(f"multi-vector {i} has zero tokens") from None
            if (i + 1) % checkpoint_every == 0:
                yield

        elapsed_ms = (time.perf_counter_ns() - t0) / 1e6
        logger.debug(
            "encoded %d multi-vectors into %d-dim FDEs in %.2fms",
            len(multi_vectors),
            self.output_dimension,
            elapsed_ms,
        )
        return out

    def encode_batch(
        self,
        multi_vectors: Sequence[Any],
        encoding_type: Optional[EncodingType] = None,
        checkpoint_every: int = CHECKPOINT_EVERY,
    ) -> np.ndarray:
        """
        Encode many multi-vectors.

        Returns:
            float32 array of shape (len(multi_vectors), output_dimension)
        """
        return run_steps(
            self.encode_batch_steps(multi_vectors, encoding_type, checkpoint_every)
        )

    async def encode_batch_async(
        self,
        multi_vectors: Sequence[Any],
        encoding_type: Optional[EncodingType] = None,
        checkpoint_every: int = CHECKPOINT_EVERY,
    ) -> np.ndarray:
        """Same as encode_batch(), yielding to the event loop at checkpoints."""
        return await run_steps_async(
            self.encode_batch_steps(multi_vectors, encoding_type, checkpoint_every)
        )

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def compression_stats(self, num_tokens: int) -> Dict[str, float]:
        """
        Size of a raw multi-vector with `num_tokens` tokens vs. its FDE.

        Ratios below 1.0 mean the FDE is *larger* than the raw token matrix,
        which is normal for short texts and many repetitions.
        """
        original = int(num_tokens) * self.config.dimension
        encoded = self.output_dimension
        return {
            "original_floats": float(original),
            "fde_floats": float(encoded),
            "compression_ratio": float(original / encoded) if encoded else 0.0,
        }

    def __repr__(self) -> str:
        c = self.config
        return (
            f"FDEEncoder(dimension={c.dimension}, repetitions={c.num_repetitions}, "
            f"projections={c.num_simhash_projections}, "
            f"projection_type='{c.projection_type.value}', "
            f"output_dimension={self.output_dimension})"
        )
