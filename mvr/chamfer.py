"""
chamfer.py - Exact multi-vector (Chamfer) similarity.

This is the quantity FDEs approximate. It is used for re-ranking a small
candidate set and for exhaustive ground-truth search, never for the first
retrieval stage.

    asymmetric(Q, D) = mean over q in Q of  max over d in D of  q . d
    symmetric(Q, D)  = (asymmetric(Q, D) + asymmetric(D, Q)) / 2
"""

from __future__ import annotations

from typing import Any

import numpy as np

from mvr.errors import ConfigurationError, EmptyInputError


def _as_set(vectors: Any, name: str) -> np.ndarray:
    arr = np.asarray(vectors, dtype=np.float32)
    if arr.ndim >= 1 and arr.shape[0] == 0:
        raise EmptyInputError(f"{name} has zero vectors")
    if arr.ndim != 2:
        raise ConfigurationError(f"{name} must have shape (n, D), got {arr.shape}")
    return arr


def _pairwise(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    if a.shape[1] != b.shape[1]:
        raise ConfigurationError(f"dimension mismatch: {a.shape[1]} vs {b.shape[1]}")
    return a @ b.T


def asymmetric_chamfer(query_vectors: Any, doc_vectors: Any) -> float:
    """Average, over query tokens, of each token's best document match."""
    q = _as_set(query_vectors, "query_vectors")
    d = _as_set(doc_vectors, "doc_vectors")
    return float(_pairwise(q, d).max(axis=1).mean())


def chamfer_similarity(set_a: Any, set_b: Any) -> float:
    """Symmetric Chamfer similarity between two multi-vectors."""
    a = _as_set(set_a, "set_a")
    b = _as_set(set_b, "set_b")
    sims = _pairwise(a, b)
    a_to_b = sims.max(axis=1).mean()
    b_to_a = sims.max(axis=0).mean()
    return float((a_to_b + b_to_a) / 2.0)
