"""
bench.py - Latency and search-quality measurement.

=============================================================================
OVERVIEW
=============================================================================

Two questions matter when evaluating FDE retrieval:

1. QUALITY: does FDE search find the same documents exact Chamfer search
   would? We treat exhaustive Chamfer results as ground truth and report
   precision@k, recall@k and a binary-gain NDCG@k.

2. LATENCY: where does the time go? Every RetrievalSystem.search() call
   records a TimingsMs breakdown:
   - encode_ms:  embedding the query tokens + building the query FDE
   - search_ms:  MIPS over the document FDEs
   - rerank_ms:  exact Chamfer over the candidates (0 when disabled)
   - total_ms:   end to end

   We report percentiles (p50, p95, p99) rather than the mean. The mean hides
   the tail, and the tail is what slow callers see.

=============================================================================
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

import numpy as np

# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class TimingsMs:
    """Timing breakdown for a single search call."""

    encode_ms: float
    search_ms: float
    rerank_ms: float
    total_ms: float


@dataclass(frozen=True)
class QualityMetrics:
    """
    Agreement between a result list and a ground-truth list, both cut at k.

    Attributes:
        precision: fraction of retrieved ids that are in the ground truth
        recall: fraction of ground-truth ids that were retrieved
        ndcg: DCG with gain 1 for every ground-truth hit, over the ideal DCG
        overlap: number of shared ids
    """

    precision: float
    recall: float
    ndcg: float
    overlap: int


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def percentile_ms(values: List[float], p: float) -> float:
    """
    Compute a percentile from a list of values.

    Args:
        values: Latency values in milliseconds
        p: Percentile to compute (0-100)

    Returns:
        The p-th percentile value (0.0 for an empty list)
    """
    if not values:
        return 0.0
    arr = np.asarray(values, dtype="float64")
    return float(np.percentile(arr, p))


def latency_percentiles(prefix: str, values: List[float]) -> Dict[str, float]:
    return {
        f"{prefix}_p50_ms": percentile_ms(values, 50),
        f"{prefix}_p95_ms": percentile_ms(values, 95),
        f"{prefix}_p99_ms": percentile_ms(values, 99),
    }


# =============================================================================
# QUALITY METRICS
# =============================================================================


def evaluate_search_quality(
    ground_truth_ids: Sequence[int],
    retrieved_ids: Sequence[int],
    k: int = 10,
) -> QualityMetrics:
    """
    Score `retrieved_ids` against `ground_truth_ids`, both truncated to k.

    Every ground-truth id counts as relevant (binary gain), so the ideal DCG
    is a prefix of 1 / log2(rank + 1) terms as long as the retrieved list.

    Args:
        ground_truth_ids: Ids from the reference search, best first
        retrieved_ids: Ids from the search being evaluated, best first
        k: Cutoff

    Returns:
        QualityMetrics (all zeros if either list is empty)
    """
    truth = set(int(i) for i in list(ground_truth_ids)[:k])
    actual = [int(i) for i in list(retrieved_ids)[:k]]
    if not truth or not actual:
        return QualityMetrics(precision=0.0, recall=0.0, ndcg=0.0, overlap=0)

    hits = sum(1 for i in actual if i in truth)
    precision = hits / min(k, len(actual))
    recall = hits / min(k, len(truth))

    dcg = 0.0
    idcg = 0.0
    for rank, doc_id in enumerate(actual):
        discount = 1.0 / math.log2(rank + 2)
        if doc_id in truth:
            dcg += discount
        idcg += discount

    return QualityMetrics(
        precision=float(precision),
        recall=float(recall),
        ndcg=float(dcg / idcg),
        overlap=hits,
    )


def overlap_percent(reference_ids: Iterable[int], other_ids: Iterable[int], k: int) -> float:
    """Percentage of the top-k `reference_ids` that appear in `other_ids`."""
    ref = set(int(i) for i in list(reference_ids)[:k])
    if not ref:
        return 0.0
    shared = sum(1 for i in list(other_ids)[:k] if int(i) in ref)
    return 100.0 * shared / len(ref)


# =============================================================================
# LATENCY METRICS
# =============================================================================


def summarize_latency(timings: List[TimingsMs]) -> Dict[str, float]:
    """
    Latency percentiles per phase.

    Args:
        timings: TimingsMs records from RetrievalSystem.search()

    Returns:
        Dict with keys like "encode_p50_ms", "search_p95_ms", "total_p99_ms"
    """
    out: Dict[str, float] = {}
    out.update(latency_percentiles("encode", [t.encode_ms for t in timings]))
    out.update(latency_percentiles("search", [t.search_ms for t in timings]))
    out.update(latency_percentiles("rerank", [t.rerank_ms for t in timings]))
    out.update(latency_percentiles("total", [t.total_ms for t in timings]))
    return out
