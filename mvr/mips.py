"""
mips.py - Maximum Inner Product Search (MIPS) over document FDEs.

=============================================================================
OVERVIEW
=============================================================================

Once every document is an FDE, retrieval is a plain MIPS problem: find the
documents whose FDE has the largest dot product with the query FDE. Two
strategies live here:

1. LinearScanMIPS (exact)
   - FAISS IndexFlatIP: compares the query against EVERY indexed FDE.
   - Optional pruning drops rows scoring below similarity_threshold.
   - Deterministic. O(n * dim) per query.

2. NeighborGraphMIPS (approximate)
   - A SINGLE-LAYER neighbor graph. This is not HNSW: there is no hierarchy
     and no entry-point selection, just one flat k-NN graph.
   - Build: link every document to its min(graph_degree, n - 1) highest
     inner-product other documents. The pairwise search is exact and costs
     O(n^2) once.
   - Search: start at a fixed entry point (row 0), repeatedly expand the best
     scored node seen so far, score its unseen neighbors, stop after
     num_candidates nodes have been scored. Sort what was seen, keep k.
   - No recall guarantee: documents the walk never reaches are missed.

MIPSRetriever picks between them. Approximate search only engages when it is
enabled AND the corpus has more than min_corpus_for_approximate documents;
smaller corpora always use the linear scan.

ORDERING
--------
Results are sorted by score descending. Exactly equal scores are ordered by
document id ascending, so output is deterministic.

=============================================================================
"""

from __future__ import annotations

import heapq
import logging
import time
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import faiss  # type: ignore
import numpy as np

from mvr.cooperative import Steps, run_steps, run_steps_async
from mvr.errors import (
    ApproximationQualityWarning,
    ConfigurationError,
    UninitializedStateError,
)

logger = logging.getLogger(__name__)

# Graph construction pauses after this many rows.
GRAPH_BUILD_CHUNK = 64


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class Document:
    """
    One indexed document.

    Only `id` and `fde` are needed for MIPS. `vectors` (the token
    multi-vector) is kept for exact Chamfer re-ranking, `codes` when the
    corpus was product-quantized.
    """

    id: int
    fde: Optional[np.ndarray]
    text: str = ""
    vectors: Optional[np.ndarray] = None
    codes: Optional[np.ndarray] = None


@dataclass(frozen=True)
class SearchResult:
    document_id: int
    score: float  # FDE inner product, or Chamfer similarity after re-ranking
    text: Optional[str] = None
    fde_score: Optional[float] = None  # original FDE score when re-ranked


@dataclass(frozen=True)
class MIPSConfig:
    use_approximate_search: bool = False
    num_candidates: int = 100  # nodes scored per approximate search
    use_pruning: bool = False
    similarity_threshold: float = 0.1  # linear scan drops rows below this
    min_corpus_for_approximate: int = 50
    graph_degree: int = 10

    def __post_init__(self) -> None:
        if self.num_candidates <= 0:
            raise ConfigurationError(
                f"num_candidates must be positive, got {self.num_candidates}"
            )
        if self.graph_degree <= 0:
            raise ConfigurationError(f"graph_degree must be positive, got {self.graph_degree}")
        if self.min_corpus_for_approximate < 0:
            raise ConfigurationError(
                "min_corpus_for_approximate must be >= 0, "
                f"got {self.min_corpus_for_approximate}"
            )


def rank_rows(rows: np.ndarray, scores: np.ndarray, ids: np.ndarray, k: int) -> np.ndarray:
    """
    Order `rows` by score descending, then document id ascending; keep k.

    Args:
        rows: Row positions to rank
        scores: Score of each row in `rows` (same length)
        ids: Document id of every row in the index
        k: How many to keep
    """
    order = np.lexsort((ids[rows], -scores))
    return rows[order][:k]


def _as_query(query_fde: np.ndarray, dimension: int) -> np.ndarray:
    q = np.asarray(query_fde, dtype=np.float32).ravel()
    if q.shape[0] != dimension:
        raise ConfigurationError(
            f"query FDE has length {q.shape[0]}, index expects {dimension}"
        )
    return q


# =============================================================================
# LINEAR SCAN (EXACT)
# =============================================================================


class LinearScanMIPS:
    """Exact MIPS with a FAISS IndexFlatIP."""

    def __init__(self, config: Optional[MIPSConfig] = None) -> None:
        self.config = config or MIPSConfig()
        self.index: Optional[faiss.Index] = None
        self.ids = np.zeros(0, dtype=np.int64)
        self.texts: List[Optional[str]] = []
        self.dimension = 0

    @property
    def size(self) -> int:
        return int(self.ids.shape[0])

    def build(self, ids: np.ndarray, fdes: np.ndarray, texts: Sequence[Optional[str]]) -> None:
        mat = np.ascontiguousarray(fdes, dtype=np.float32)
        index = faiss.IndexFlatIP(int(mat.shape[1]))
        index.add(mat)  # type: ignore[call-arg]

        self.index = index
        self.ids = np.asarray(ids, dtype=np.int64)
        self.texts = list(texts)
        self.dimension = int(mat.shape[1])

    def scores(self, query_fde: np.ndarray) -> np.ndarray:
        """Inner product of the query with every row, in row order."""
        if self.index is None or self.size == 0:
            raise UninitializedStateError("no documents indexed")
        q = _as_query(query_fde, self.dimension)
        # Searching with k = n returns every row; scatter back to row order.
        sims, rows = self.index.search(q[np.newaxis, :], self.size)  # type: ignore[call-arg]
        out = np.empty(self.size, dtype=np.float32)
        out[rows[0]] = sims[0]
        return out

    def search(self, query_fde: np.ndarray, k: int = 10) -> List[SearchResult]:
        all_scores = self.scores(query_fde)
        rows = np.arange(self.size)
        if self.config.use_pruning:
            rows = rows[all_scores >= self.config.similarity_threshold]
        top = rank_rows(rows, all_scores[rows], self.ids, k)
        return [
            SearchResult(
                document_id=int(self.ids[r]),
                score=float(all_scores[r]),
                text=self.texts[r],
            )
            for r in top
        ]


# =============================================================================
# NEIGHBOR GRAPH (APPROXIMATE)
# =============================================================================


class NeighborGraphMIPS:
    """Approximate MIPS over a single-layer k-NN graph (see module docs)."""

    def __init__(self, config: Optional[MIPSConfig] = None) -> None:
        self.config = config or MIPSConfig()
        self.graph: Dict[int, List[int]] = {}
        self.fdes = np.zeros((0, 0), dtype=np.float32)
        self.ids = np.zeros(0, dtype=np.int64)
        self.texts: List[Optional[str]] = []
        self.entry_point = 0

    @property
    def size(self) -> int:
        return int(self.ids.shape[0])

    def build_steps(
        self,
        ids: np.ndarray,
        fdes: np.ndarray,
        texts: Sequence[Optional[str]],
    ) -> Steps[None]:
        t0 = time.perf_counter_ns()
        mat = np.ascontiguousarray(fdes, dtype=np.float32)
        n = int(mat.shape[0])
        degree = min(self.config.graph_degree, n - 1)

        graph: Dict[int, List[int]] = {}
        if n > 0:
            index = faiss.IndexFlatIP(int(mat.shape[1]))
            index.add(mat)  # type: ignore[call-arg]
            # Ask for one extra hit so the row itself can be dropped.
            fetch = min(degree + 1, n)
            for start in range(0, n, GRAPH_BUILD_CHUNK):
                block = mat[start : start + GRAPH_BUILD_CHUNK]
                _, hits = index.search(block, fetch)  # type: ignore[call-arg]
                for offset, neighbors in enumerate(hits):
                    row = start + offset
                    others = [int(j) for j in neighbors if j >= 0 and j != row]
                    graph[row] = others[:degree]
                yield

        self.graph = graph
        self.fdes = mat
        self.ids = np.asarray(ids, dtype=np.int64)
        self.texts = list(texts)
        self.entry_point = 0

        logger.info(
            "neighbor graph built: nodes=%d degree=%d in %.2fms",
            n,
            max(degree, 0),
            (time.perf_counter_ns() - t0) / 1e6,
        )

    def build(self, ids: np.ndarray, fdes: np.ndarray, texts: Sequence[Optional[str]]) -> None:
        run_steps(self.build_steps(ids, fdes, texts))

    def search(self, query_fde: np.ndarray, k: int = 10) -> List[SearchResult]:
        if self.size == 0:
            raise UninitializedStateError("neighbor graph not built")
        q = _as_query(query_fde, int(self.fdes.shape[1]))
        budget = self.config.num_candidates

        seen: Dict[int, float] = {}

        def visit(row: int) -> None:
            seen[row] = float(np.dot(self.fdes[row], q))
            heapq.heappush(frontier, (-seen[row], row))

        frontier: List[Tuple[float, int]] = []
        visit(self.entry_point)
        while frontier and len(seen) < budget:
            _, current = heapq.heappop(frontier)
            for neighbor in self.graph.get(current, []):
                if neighbor in seen:
                    continue
                visit(neighbor)
                if len(seen) >= budget:
                    break

        rows = np.fromiter(seen.keys(), dtype=np.int64, count=len(seen))
        scores = np.fromiter(seen.values(), dtype=np.float64, count=len(seen))
        order = np.lexsort((self.ids[rows], -scores))[:k]
        return [
            SearchResult(
                document_id=int(self.ids[rows[i]]),
                score=float(scores[i]),
                text=self.texts[rows[i]],
            )
            for i in order
        ]


# =============================================================================
# RETRIEVER
# =============================================================================


class MIPSRetriever:
    """
    Holds the indexed (id, FDE) rows and routes searches.

    add_documents() is atomic: the whole batch is validated and the new
    indexes are built on the side before anything visible changes. Between
    calls the index is read-only; rebuilding concurrently with searches needs
    caller-side exclusion.
    """

    def __init__(self, config: Optional[MIPSConfig] = None) -> None:
        self.config = config or MIPSConfig()
        self.linear = LinearScanMIPS(self.config)
        self.approximate: Optional[NeighborGraphMIPS] = None

        self._ids = np.zeros(0, dtype=np.int64)
        self._fdes: Optional[np.ndarray] = None
        self._texts: List[Optional[str]] = []
        self.build_ms = 0.0

    @property
    def size(self) -> int:
        return int(self._ids.shape[0])

    @property
    def dimension(self) -> int:
        return 0 if self._fdes is None else int(self._fdes.shape[1])

    @property
    def uses_approximate(self) -> bool:
        return (
            self.config.use_approximate_search
            and self.size > self.config.min_corpus_for_approximate
        )

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    def _validate(self, documents: Sequence[Document]) -> Tuple[np.ndarray, np.ndarray, List[Optional[str]]]:
        if not documents:
            raise ConfigurationError("add_documents() called with no documents")

        known = set(int(i) for i in self._ids)
        dimension = self.dimension
        ids: List[int] = []
        rows: List[np.ndarray] = []
        texts: List[Optional[str]] = []
        for doc in documents:
            if doc.fde is None:
                raise ConfigurationError(f"document {doc.id} has no FDE")
            fde = np.asarray(doc.fde, dtype=np.float32).ravel()
            if dimension == 0:
                dimension = int(fde.shape[0])
            if fde.shape[0] != dimension:
                raise ConfigurationError(
                    f"document {doc.id} has FDE length {fde.shape[0]}, expected {dimension}"
                )
            if doc.id in known:
                raise ConfigurationError(f"duplicate document id {doc.id}")
            known.add(int(doc.id))
            ids.append(int(doc.id))
            rows.append(fde)
            texts.append(doc.text)
        return np.asarray(ids, dtype=np.int64), np.vstack(rows), texts

    def add_documents_steps(self, documents: Sequence[Document]) -> Steps[None]:
        t0 = time.perf_counter_ns()
        new_ids, new_fdes, new_texts = self._validate(documents)

        if self._fdes is None:
            ids, fdes, texts = new_ids, new_fdes, new_texts
        else:
            ids = np.concatenate([self._ids, new_ids])
            fdes = np.vstack([self._fdes, new_fdes])
            texts = self._texts + new_texts

        linear = LinearScanMIPS(self.config)
        linear.build(ids, fdes, texts)

        approximate: Optional[NeighborGraphMIPS] = None
        if self.config.use_approximate_search and len(ids) > self.config.min_corpus_for_approximate:
            approximate = NeighborGraphMIPS(self.config)
            yield from approximate.build_steps(ids, fdes, texts)

        self.linear = linear
        self.approximate = approximate
        self._ids, self._fdes, self._texts = ids, fdes, texts
        self.build_ms = (time.perf_counter_ns() - t0) / 1e6

        logger.info(
            "MIPS index now holds %d documents (added %d, approximate=%s)",
            self.size,
            len(new_ids),
            approximate is not None,
        )

    def add_documents(self, documents: Sequence[Document]) -> None:
        run_steps(self.add_documents_steps(documents))

    async def add_documents_async(self, documents: Sequence[Document]) -> None:
        await run_steps_async(self.add_documents_steps(documents))

    def clear(self) -> None:
        self.linear = LinearScanMIPS(self.config)
        self.approximate = None
        self._ids = np.zeros(0, dtype=np.int64)
        self._fdes = None
        self._texts = []
        self.build_ms = 0.0

    # -------------------------------------------------------------------------
    # Searching
    # -------------------------------------------------------------------------

    def search(self, query_fde: np.ndarray, k: int = 10) -> List[SearchResult]:
        """
        Top-k documents by FDE inner product.

        Args:
            query_fde: Query FDE (same EncodingConfig as the documents)
            k: Number of results wanted

        Returns:
            Up to k SearchResults, best first. If fewer than min(k, corpus
            size) come back, an ApproximationQualityWarning is emitted.
        """
        if self.size == 0:
            raise UninitializedStateError("no documents indexed; call add_documents() first")
        if k <= 0:
            raise ConfigurationError(f"k must be positive, got {k}")

        if self.uses_approximate and self.approximate is not None:
            logger.debug("approximate MIPS search over %d documents", self.size)
            results = self.approximate.search(query_fde, k)
        else:
            logger.debug("linear MIPS search over %d documents", self.size)
            results = self.linear.search(query_fde, k)

        expected = min(k, self.size)
        if len(results) < expected:
            warnings.warn(
                f"MIPS returned {len(results)} of {expected} requested results",
                ApproximationQualityWarning,
                stacklevel=2,
            )
        return results

    def benchmark(self, query_fde: np.ndarray, k: int = 10) -> Dict[str, Any]:
        """
        Time the linear scan and (if built) the graph search for one query.

        The "approximate" entry is None when no graph exists.
        """
        t0 = time.perf_counter_ns()
        linear_results = self.linear.search(query_fde, k)
        t1 = time.perf_counter_ns()
        report: Dict[str, Any] = {
            "linear": {
                "time_ms": (t1 - t0) / 1e6,
                "results": len(linear_results),
                "avg_score": _mean_score(linear_results),
            },
            "approximate": None,
        }
        if self.approximate is None:
            return report

        t2 = time.perf_counter_ns()
        approx_results = self.approximate.search(query_fde, k)
        t3 = time.perf_counter_ns()

        linear_ids = {r.document_id for r in linear_results}
        overlap = sum(1 for r in approx_results if r.document_id in linear_ids)
        denom = min(len(linear_results), len(approx_results))
        approx_ms = (t3 - t2) / 1e6
        report["approximate"] = {
            "time_ms": approx_ms,
            "results": len(approx_results),
            "avg_score": _mean_score(approx_results),
            "speedup": report["linear"]["time_ms"] / approx_ms if approx_ms > 0 else 0.0,
            "overlap_percent": 100.0 * overlap / denom if denom else 0.0,
        }
        return report

    def get_stats(self) -> Dict[str, Any]:
        avg_len = (
            sum(len(t or "") for t in self._texts) / self.size if self.size else 0.0
        )
        graph_edges = (
            sum(len(v) for v in self.approximate.graph.values()) if self.approximate else 0
        )
        return {
            "num_documents": self.size,
            "fde_dimension": self.dimension,
            "avg_document_length": avg_len,
            "index_size_kb": self.size * self.dimension * 4 / 1024,
            "strategy": "approximate" if self.uses_approximate else "linear",
            "graph_edges": graph_edges,
            "build_ms": self.build_ms,
        }


def _mean_score(results: List[SearchResult]) -> float:
    if not results:
        return 0.0
    return float(sum(r.score for r in results) / len(results))
