"""
Shared fixtures for the mvr test suite.
"""

from typing import List

import numpy as np
import pytest

from mvr.fde import EncodingConfig, FDEEncoder
from mvr.retrieval import RetrievalConfig, RetrievalSystem
from mvr.tokens import HashingTokenEmbedder, l2_normalize_rows

# Only the first document shares words with "tallest mountain on Earth".
MOUNTAIN_CORPUS: List[str] = [
    "Mount Everest is the tallest mountain on Earth",
    "The Pacific is the largest ocean",
    "Photosynthesis converts light into chemical energy",
    "Jupiter is the biggest planet in the solar system",
    "Espresso is brewed with hot water and ground coffee",
]

MOUNTAIN_QUERY = "tallest mountain on Earth"


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def unit_rows(rng):
    """Factory for (n, d) float32 matrices of unit-length rows."""

    def make(n: int, d: int) -> np.ndarray:
        return l2_normalize_rows(rng.standard_normal((n, d))).astype(np.float32)

    return make


@pytest.fixture
def small_config():
    return EncodingConfig(dimension=16, num_repetitions=3, num_simhash_projections=3, seed=7)


@pytest.fixture
def encoder(small_config):
    return FDEEncoder(small_config)


@pytest.fixture
def embedder():
    return HashingTokenEmbedder(dimension=64, seed=42)


@pytest.fixture
def retrieval_config():
    return RetrievalConfig(fde=EncodingConfig(dimension=64, num_repetitions=10))


@pytest.fixture
def mountain_system(retrieval_config, embedder):
    system = RetrievalSystem(retrieval_config, embedder)
    system.index_documents(MOUNTAIN_CORPUS)
    return system
