"""
tokens.py - Turning text into multi-vectors (one embedding per token).

=============================================================================
OVERVIEW
=============================================================================

The retrieval system never owns an embedding model. It receives a
TokenEmbedder and calls embed(text) -> (n_tokens, D). Two implementations
ship with the package:

    HashingTokenEmbedder              (this module) no model, no download.
                                      Every distinct word gets a fixed random
                                      unit vector. Equal words -> equal vectors,
                                      so lexical overlap becomes vector overlap.
                                      Used by tests, demos, benchmarks.

    SentenceTransformerTokenEmbedder  (mvr.embedder) contextual token
                                      embeddings from a transformer. Imports
                                      sentence-transformers, so it lives in
                                      its own module.

Whatever you use, documents and queries MUST go through the same embedder.
Vectors from different embedders are not comparable.

=============================================================================
"""

from __future__ import annotations

import functools
import hashlib
import re
from abc import ABC, abstractmethod
from typing import List, Sequence

import numpy as np

from mvr.errors import EmptyInputError

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric word tokens."""
    return _TOKEN_RE.findall(text.lower())


def l2_normalize_rows(x: np.ndarray) -> np.ndarray:
    """
    Normalize each row of a matrix to unit length.

    Token vectors are kept unit length so their dot products are cosine
    similarities, which keeps Chamfer scores in [-1, 1].

    Args:
        x: A 2D numpy array of shape (n_vectors, dim)

    Returns:
        The same array with each row normalized to unit length
    """
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    # Zero rows stay zero.
    norms = np.maximum(norms, 1e-12)
    return x / norms


class TokenEmbedder(ABC):
    """Maps a text to its multi-vector, shape (n_tokens, dimension)."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Per-token embedding dimension D."""

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        """
        Multi-vector for one text.

        Raises:
            EmptyInputError: the text produced no tokens
        """

    def embed_many(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [self.embed(t) for t in texts]


class HashingTokenEmbedder(TokenEmbedder):
    """
    Deterministic per-word random vectors.

    The vector for a word is drawn from a Gaussian seeded with a blake2b
    digest of (seed, word), then normalized. blake2b is stable across
    processes, unlike hash(), so indexes built in one run stay queryable in
    the next.

    Args:
        dimension: Per-token dimension D
        seed: Mixed into every word's digest
        cache_size: Most recently used word vectors kept in memory
    """

    def __init__(self, dimension: int = 64, seed: int = 42, cache_size: int = 65536) -> None:
        self._dimension = int(dimension)
        self.seed = int(seed)
        self.cache_size = int(cache_size)
        self._cached_vector = functools.lru_cache(maxsize=self.cache_size)(self._draw_vector)

    @property
    def dimension(self) -> int:
        return self._dimension

    def _draw_vector(self, token: str) -> np.ndarray:
        digest = hashlib.blake2b(f"{self.seed}:{token}".encode("utf-8"), digest_size=8)
        rng = np.random.default_rng(int.from_bytes(digest.digest(), "little"))
        raw = rng.standard_normal((1, self._dimension))
        return l2_normalize_rows(raw)[0].astype(np.float32)

    def token_vector(self, token: str) -> np.ndarray:
        return self._cached_vector(token)

    def embed(self, text: str) -> np.ndarray:
        tokens = tokenize(text)
        if not tokens:
            raise EmptyInputError(f"text produced no tokens: {text!r}")
        return np.vstack([self.token_vector(t) for t in tokens])

    def __repr__(self) -> str:
        return f"HashingTokenEmbedder(dimension={self._dimension}, seed={self.seed})"
