"""
quantization.py - Product Quantization (PQ) for FDE compression.

=============================================================================
OVERVIEW
=============================================================================

An FDE is large (R * 2**P * D floats, often several thousand). PQ stores
each one in a handful of bytes:

    1. Split every FDE into M equal, contiguous sub-vectors (the last one is
       zero-padded when N is not divisible by M).
    2. For each sub-vector position, train a codebook of K centroids with
       k-means over a batch of FDEs.
    3. Encode: replace each sub-vector by the index of its nearest centroid.
       With K <= 256 every index fits in one byte, so a document costs M bytes.
    4. Decode: concatenate the chosen centroids. Lossy; good enough for
       approximate scoring, not for exact scores.

    FDE (N floats)  = [ chunk_0 | chunk_1 | ... | chunk_{M-1} ]
    codes (M bytes) = [  c_0    |  c_1    | ... |  c_{M-1}    ]

The codebooks are shared by every document, so their storage is amortized
over the corpus (see CompressionStats.amortized_ratio).

K-MEANS
-------
Plain Lloyd iterations: centroids start uniform in [-1, 1] (seeded), then
{assign each point to its nearest centroid; move each centroid to the mean of
its points} until no assignment changes or max_iterations is hit. A centroid
that receives no points keeps its previous position. This finds a local
optimum only. Nearest-centroid search uses a FAISS flat L2 index.

=============================================================================
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import faiss  # type: ignore
import numpy as np

from mvr.cooperative import Steps, run_steps, run_steps_async
from mvr.errors import ConfigurationError, EmptyInputError, UninitializedStateError
from mvr.rng import LinearCongruentialRandom, RandomFactory, SeededRandom

logger = logging.getLogger(__name__)

MAX_CODEBOOK_SIZE = 256  # one byte per code
INIT_ROWS_PER_STEP = 32  # centroid rows drawn between yields


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class PQConfig:
    num_subvectors: int = 8  # M: bytes per encoded FDE
    codebook_size: int = 256  # K: centroids per sub-vector (<= 256)
    seed: int = 42  # sub-vector s is initialized from seed + s
    max_iterations: int = 50  # k-means iteration cap

    def __post_init__(self) -> None:
        if self.num_subvectors <= 0:
            raise ConfigurationError(
                f"num_subvectors must be positive, got {self.num_subvectors}"
            )
        if not 1 <= self.codebook_size <= MAX_CODEBOOK_SIZE:
            raise ConfigurationError(
                f"codebook_size must be in [1, {MAX_CODEBOOK_SIZE}], got {self.codebook_size}"
            )
        if self.max_iterations <= 0:
            raise ConfigurationError(
                f"max_iterations must be positive, got {self.max_iterations}"
            )


@dataclass(frozen=True)
class CompressionStats:
    """
    Storage cost of one FDE before and after quantization.

    compression_ratio ignores the codebooks. amortized_ratio charges the
    codebooks to the corpus: (n * original) / (n * compressed + codebooks).
    """

    original_bytes: int  # N float32 values
    compressed_bytes: int  # M one-byte codes
    codebook_bytes: int  # M * K * sub_dim float32 values, shared
    compression_ratio: float
    num_documents: Optional[int] = None
    amortized_ratio: Optional[float] = None

    @property
    def memory_reduction(self) -> str:
        ratio = self.amortized_ratio or self.compression_ratio
        return f"{(1.0 - 1.0 / ratio) * 100:.1f}%"


# =============================================================================
# NEAREST CENTROID
# =============================================================================


def nearest_centroids(points: np.ndarray, centroids: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Index of, and squared L2 distance to, the nearest centroid for every point.

    Args:
        points: (n, d) array
        centroids: (k, d) array

    Returns:
        (labels, squared_distances), both of shape (n,)
    """
    pts = np.ascontiguousarray(points, dtype=np.float32)
    cents = np.ascontiguousarray(centroids, dtype=np.float32)
    index = faiss.IndexFlatL2(int(cents.shape[1]))
    index.add(cents)  # type: ignore[call-arg]
    sq_dists, labels = index.search(pts, 1)  # type: ignore[call-arg]
    return labels[:, 0].astype(np.int64), sq_dists[:, 0]


# =============================================================================
# K-MEANS
# =============================================================================


class KMeans:
    """Lloyd's k-means with seeded-uniform initialization."""

    def __init__(self, n_clusters: int, rng: SeededRandom, max_iterations: int = 50) -> None:
        self.n_clusters = int(n_clusters)
        self.rng = rng
        self.max_iterations = int(max_iterations)
        self.centroids: Optional[np.ndarray] = None
        self.labels: Optional[np.ndarray] = None
        self.n_iter = 0
        self.converged = False

    def fit_steps(self, data: np.ndarray) -> Steps[np.ndarray]:
        """Generator form of fit(); pauses while initializing and once per iteration."""
        points = np.ascontiguousarray(data, dtype=np.float32)
        dim = points.shape[1]
        centroids = np.empty((self.n_clusters, dim), dtype=np.float32)
        for start in range(0, self.n_clusters, INIT_ROWS_PER_STEP):
            rows = min(INIT_ROWS_PER_STEP, self.n_clusters - start)
            centroids[start : start + rows] = self.rng.uniform(-1.0, 1.0, (rows, dim))
            yield

        assignments: Optional[np.ndarray] = None
        converged = False
        iteration = 0
        while iteration < self.max_iterations:
            labels, _ = nearest_centroids(points, centroids)
            converged = assignments is not None and np.array_equal(labels, assignments)
            assignments = labels

            sums = np.zeros((self.n_clusters, dim), dtype=np.float64)
            np.add.at(sums, labels, points)
            counts = np.bincount(labels, minlength=self.n_clusters)
            assigned = counts > 0
            # Clusters with no points keep their previous centroid.
            centroids[assigned] = (sums[assigned] / counts[assigned, np.newaxis]).astype(
                np.float32
            )
            iteration += 1
            if converged:
                break
            yield

        self.centroids = centroids
        self.labels = assignments
        self.n_iter = iteration
        self.converged = converged
        return centroids

    def fit(self, data: np.ndarray) -> np.ndarray:
        return run_steps(self.fit_steps(data))

    def predict(self, data: np.ndarray) -> np.ndarray:
        if self.centroids is None:
            raise UninitializedStateError("KMeans not fitted")
        labels, _ = nearest_centroids(data, self.centroids)
        return labels


# =============================================================================
# PRODUCT QUANTIZER
# =============================================================================


class ProductQuantizer:
    """
    Trains per-sub-vector codebooks and maps FDEs to/from byte codes.

    Typical use:

        pq = ProductQuantizer(PQConfig(num_subvectors=8, codebook_size=256))
        pq.train(doc_fdes)                 # (n, N) float32
        codes = pq.encode(doc_fdes[0])     # (8,) uint8
        approx = pq.decode(codes)          # (N,) float32

    Retraining replaces every codebook at once; codes produced by the old
    codebooks are meaningless afterwards.
    """

    def __init__(
        self,
        config: Optional[PQConfig] = None,
        rng_factory: RandomFactory = LinearCongruentialRandom,
    ) -> None:
        self.config = config or PQConfig()
        self.rng_factory = rng_factory

        self.codebooks: List[np.ndarray] = []  # M arrays of shape (K, sub_dim)
        self.dimension = 0  # N, the trained FDE length
        self.subvector_dim = 0
        self.training_spread: Optional[np.ndarray] = None  # (M,) max squared error
        self.iterations: List[int] = []

    @property
    def is_trained(self) -> bool:
        return bool(self.codebooks)

    def _require_trained(self) -> None:
        if not self.is_trained:
            raise UninitializedStateError("codebooks not trained yet; call train() first")

    # -------------------------------------------------------------------------
    # Chunking
    # -------------------------------------------------------------------------

    def _pad(self, fdes: np.ndarray, subvector_dim: int) -> np.ndarray:
        total = self.config.num_subvectors * subvector_dim
        padded = np.zeros((fdes.shape[0], total), dtype=np.float32)
        padded[:, : fdes.shape[1]] = fdes
        return padded

    def _as_matrix(self, fdes: np.ndarray) -> np.ndarray:
        mat = np.asarray(fdes, dtype=np.float32)
        if mat.ndim == 1:
            mat = mat[np.newaxis, :]
        if mat.ndim != 2:
            raise ConfigurationError(f"expected FDEs of shape (n, N), got {mat.shape}")
        return mat

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def train_steps(self, fdes: np.ndarray) -> Steps["ProductQuantizer"]:
        mat = self._as_matrix(fdes)
        if mat.shape[0] == 0:
            raise EmptyInputError("cannot train product quantizer on zero FDEs")

        t0 = time.perf_counter_ns()
        cfg = self.config
        dimension = int(mat.shape[1])
        subvector_dim = math.ceil(dimension / cfg.num_subvectors)
        padded = self._pad(mat, subvector_dim)

        logger.info(
            "training PQ: vectors=%d dim=%d subvectors=%d sub_dim=%d codebook_size=%d",
            mat.shape[0],
            dimension,
            cfg.num_subvectors,
            subvector_dim,
            cfg.codebook_size,
        )

        codebooks: List[np.ndarray] = []
        spread = np.zeros(cfg.num_subvectors, dtype=np.float64)
        iterations: List[int] = []
        for s in range(cfg.num_subvectors):
            chunk = padded[:, s * subvector_dim : (s + 1) * subvector_dim]
            kmeans = KMeans(
                cfg.codebook_size,
                rng=self.rng_factory(cfg.seed + s),
                max_iterations=cfg.max_iterations,
            )
            centroids = yield from kmeans.fit_steps(chunk)
            _, sq_dists = nearest_centroids(chunk, centroids)
            spread[s] = float(sq_dists.max())
            codebooks.append(centroids)
            iterations.append(kmeans.n_iter)
            logger.debug(
                "codebook %d/%d trained in %d iterations (converged=%s)",
                s + 1,
                cfg.num_subvectors,
                kmeans.n_iter,
                kmeans.converged,
            )

        # Swap in the new state only once every codebook is ready.
        self.codebooks = codebooks
        self.dimension = dimension
        self.subvector_dim = subvector_dim
        self.training_spread = spread
        self.iterations = iterations

        logger.info("PQ training complete in %.2fms", (time.perf_counter_ns() - t0) / 1e6)
        return self

    def train(self, fdes: np.ndarray) -> "ProductQuantizer":
        """
        Train (or retrain) every codebook on a batch of FDEs.

        Args:
            fdes: float array of shape (n, N)

        Returns:
            self, for chaining
        """
        return run_steps(self.train_steps(fdes))

    async def train_async(self, fdes: np.ndarray) -> "ProductQuantizer":
        return await run_steps_async(self.train_steps(fdes))

    @property
    def reconstruction_bound(self) -> float:
        """
        Worst-case ||v - decode(encode(v))|| over the training batch.

        Each sub-vector of a training FDE is at most sqrt(training_spread[s])
        from its nearest centroid, so the full reconstruction error of any
        training FDE is at most sqrt(sum(training_spread)).
        """
        self._require_trained()
        return float(np.sqrt(np.sum(self.training_spread)))  # type: ignore[arg-type]

    # -------------------------------------------------------------------------
    # Encode / decode
    # -------------------------------------------------------------------------

    def encode_batch(self, fdes: np.ndarray) -> np.ndarray:
        """Codes for many FDEs, shape (n, M), dtype uint8."""
        self._require_trained()
        mat = self._as_matrix(fdes)
        if mat.shape[1] != self.dimension:
            raise ConfigurationError(
                f"quantizer trained on dimension {self.dimension}, got {mat.shape[1]}"
            )
        padded = self._pad(mat, self.subvector_dim)
        sub = self.subvector_dim
        codes = np.zeros((mat.shape[0], self.config.num_subvectors), dtype=np.uint8)
        for s, codebook in enumerate(self.codebooks):
            labels, _ = nearest_centroids(padded[:, s * sub : (s + 1) * sub], codebook)
            codes[:, s] = labels.astype(np.uint8)
        return codes

    def encode(self, fde: np.ndarray) -> np.ndarray:
        vec = np.asarray(fde, dtype=np.float32)
        if vec.ndim != 1:
            raise ConfigurationError(f"expected a single FDE, got shape {vec.shape}")
        return self.encode_batch(vec)[0]

    def decode(self, codes: np.ndarray) -> np.ndarray:
        """Approximate FDE (length N) from M codes."""
        self._require_trained()
        arr = np.asarray(codes)
        if arr.shape != (self.config.num_subvectors,):
            raise ConfigurationError(
                f"expected {self.config.num_subvectors} codes, got shape {arr.shape}"
            )
        if int(arr.min()) < 0 or int(arr.max()) >= self.config.codebook_size:
            raise ConfigurationError(
                f"codes must be in [0, {self.config.codebook_size}), got {arr.tolist()}"
            )
        parts = [self.codebooks[s][int(c)] for s, c in enumerate(arr)]
        return np.concatenate(parts)[: self.dimension].astype(np.float32)

    def decode_batch(self, codes: np.ndarray) -> np.ndarray:
        self._require_trained()
        arr = np.asarray(codes)
        if len(arr) == 0:
            return np.zeros((0, self.dimension), dtype=np.float32)
        return np.vstack([self.decode(row) for row in arr])

    def quantized_similarity(self, query_fde: np.ndarray, codes: np.ndarray) -> float:
        """Dot product of a full query FDE with a decoded document."""
        q = np.asarray(query_fde, dtype=np.float32).ravel()
        approx = self.decode(codes)
        if q.shape[0] != approx.shape[0]:
            raise ConfigurationError(
                f"FDE length mismatch: {q.shape[0]} vs {approx.shape[0]}"
            )
        return float(np.dot(q, approx))

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def compression_stats(self, num_documents: Optional[int] = None) -> CompressionStats:
        self._require_trained()
        cfg = self.config
        original = self.dimension * 4
        compressed = cfg.num_subvectors
        codebook_bytes = cfg.num_subvectors * cfg.codebook_size * self.subvector_dim * 4

        amortized = None
        if num_documents:
            amortized = (num_documents * original) / (num_documents * compressed + codebook_bytes)

        return CompressionStats(
            original_bytes=original,
            compressed_bytes=compressed,
            codebook_bytes=codebook_bytes,
            compression_ratio=original / compressed,
            num_documents=num_documents,
            amortized_ratio=amortized,
        )
