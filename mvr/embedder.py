"""
embedder.py - Contextual token embeddings from a SentenceTransformer model.

=============================================================================
ABOUT THE MODEL
=============================================================================

SentenceTransformer models normally pool their token outputs into one
sentence vector. Multi-vector retrieval wants the *unpooled* outputs, one
vector per wordpiece, which encode() returns when asked for
output_value="token_embeddings".

Default model: all-MiniLM-L6-v2
    - 384-dim token embeddings
    - ~90MB, fast enough on CPU
    - Loading takes a few seconds: build one embedder at startup and reuse it

Special tokens ([CLS], [SEP]) are kept; they behave like any other token in
the FDE. Rows are L2-normalized so token dot products are cosines.

IMPORTANT: the model used at query time MUST match the model used to build
the index.

=============================================================================
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from mvr.errors import ConfigurationError, EmptyInputError
from mvr.tokens import HashingTokenEmbedder, TokenEmbedder, l2_normalize_rows

DEFAULT_MODEL = "all-MiniLM-L6-v2"


class SentenceTransformerTokenEmbedder(TokenEmbedder):
    """
    TokenEmbedder backed by a SentenceTransformer model.

    Args:
        model_name: HuggingFace model name (e.g., "all-MiniLM-L6-v2")
        batch_size: Texts per forward pass in embed_many()
    """

    def __init__(self, model_name: str = DEFAULT_MODEL, batch_size: int = 32) -> None:
        self.model_name = model_name
        self.batch_size = int(batch_size)
        self.model = SentenceTransformer(model_name)

    @property
    def dimension(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())

    def _to_multi_vector(self, emb, text: str) -> np.ndarray:
        arr = np.asarray(emb.cpu() if hasattr(emb, "cpu") else emb, dtype="float32")
        if arr.ndim != 2 or arr.shape[0] == 0:
            raise EmptyInputError(f"model produced no token embeddings for {text!r}")
        return l2_normalize_rows(arr)

    def embed(self, text: str) -> np.ndarray:
        return self.embed_many([text])[0]

    def embed_many(self, texts: Sequence[str]) -> List[np.ndarray]:
        # Token embeddings come back as one (n_tokens, D) tensor per text.
        out = self.model.encode(
            list(texts),
            batch_size=self.batch_size,
            output_value="token_embeddings",
            show_progress_bar=False,
        )
        return [self._to_multi_vector(emb, text) for emb, text in zip(out, texts)]


def build_embedder(kind: str, model_name: str = DEFAULT_MODEL, dimension: int = 64, seed: int = 42) -> TokenEmbedder:
    """
    Embedder factory used by the CLI scripts.

    Args:
        kind: "hashing" or "sentence-transformers"
        model_name: Model for "sentence-transformers"
        dimension: Token dimension for "hashing" (ignored otherwise)
        seed: Seed for "hashing"
    """
    if kind == "hashing":
        return HashingTokenEmbedder(dimension=dimension, seed=seed)
    if kind == "sentence-transformers":
        return SentenceTransformerTokenEmbedder(model_name)
    raise ConfigurationError(f"unknown embedder kind: {kind!r}")
