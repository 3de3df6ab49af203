"""
retrieval.py - Two-stage multi-vector retrieval on top of FDEs.

=============================================================================
OVERVIEW
=============================================================================

RetrievalSystem wires the pieces together:

    INDEXING (index_documents)
        texts --embedder--> multi-vectors --AVERAGE FDE--> document FDEs
              [--PQ train + encode--> codes]
              --> MIPSRetriever

    SEARCH (search)
        query --embedder--> multi-vector --SUM FDE--> query FDE
              --MIPS--> candidates
              [--exact Chamfer over the candidates only--> re-sorted]
              --> top k

The FDE stage is cheap and approximate; Chamfer re-ranking is exact but
only touches max(k, rerank_top_k) documents. exhaustive_search() runs
Chamfer against every document and exists for validation.

QUANTIZATION
------------
With use_quantization the product quantizer is (re)trained on every FDE in
the corpus each time documents are added, and every document carries fresh
codes. With search_quantized the MIPS index holds the *decoded* FDEs, so
search scores reflect quantization error; otherwise it holds the full FDEs
and the codes are only a compact copy.

ATOMICITY
---------
index_documents() builds the new document table, quantizer and MIPS
retriever on the side and swaps them in at the end. If anything raises,
the system is left exactly as it was.

=============================================================================
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from mvr.bench import (
    TimingsMs,
    evaluate_search_quality,
    latency_percentiles,
    overlap_percent,
    summarize_latency,
)
from mvr.chamfer import chamfer_similarity
from mvr.cooperative import Steps, run_steps, run_steps_async
from mvr.errors import ConfigurationError, EmptyInputError, UninitializedStateError
from mvr.fde import CHECKPOINT_EVERY, EncodingConfig, EncodingType, FDEEncoder
from mvr.mips import Document, MIPSConfig, MIPSRetriever, SearchResult
from mvr.quantization import PQConfig, ProductQuantizer
from mvr.storage import load_fdes, save_fdes
from mvr.tokens import TokenEmbedder

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass(frozen=True)
class RetrievalConfig:
    fde: EncodingConfig = field(default_factory=EncodingConfig)
    mips: MIPSConfig = field(default_factory=MIPSConfig)
    pq: Optional[PQConfig] = None  # PQConfig() when use_quantization and unset
    use_quantization: bool = False
    search_quantized: bool = False  # MIPS over decoded FDEs
    enable_reranking: bool = False  # exact Chamfer over the MIPS candidates
    rerank_top_k: int = 20

    def __post_init__(self) -> None:
        if self.rerank_top_k <= 0:
            raise ConfigurationError(f"rerank_top_k must be positive, got {self.rerank_top_k}")
        if self.search_quantized and not self.use_quantization:
            raise ConfigurationError("search_quantized requires use_quantization")

    @property
    def pq_config(self) -> PQConfig:
        return self.pq or PQConfig()


def _rank(results: List[SearchResult]) -> List[SearchResult]:
    return sorted(results, key=lambda r: (-r.score, r.document_id))


# =============================================================================
# RETRIEVAL SYSTEM
# =============================================================================


class RetrievalSystem:
    """
    FDE retrieval with optional PQ and Chamfer re-ranking.

    Args:
        config: RetrievalConfig
        embedder: TokenEmbedder used for documents AND queries. Its dimension
                  must equal config.fde.dimension.
    """

    def __init__(self, config: RetrievalConfig, embedder: TokenEmbedder) -> None:
        if embedder.dimension != config.fde.dimension:
            raise ConfigurationError(
                f"embedder produces {embedder.dimension}-dim tokens, "
                f"EncodingConfig expects {config.fde.dimension}"
            )
        self.config = config
        self.embedder = embedder
        self.encoder = FDEEncoder(config.fde)

        self.documents: Dict[int, Document] = {}
        self.retriever = MIPSRetriever(config.mips)
        self.quantizer: Optional[ProductQuantizer] = None
        self._next_id = 0

        self.search_timings: List[TimingsMs] = []
        self.index_timings: List[Dict[str, float]] = []

    @property
    def size(self) -> int:
        return len(self.documents)

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------

    def _embed_steps(self, texts: Sequence[str]) -> Steps[List[np.ndarray]]:
        out: List[np.ndarray] = []
        for start in range(0, len(texts), CHECKPOINT_EVERY):
            chunk = texts[start : start + CHECKPOINT_EVERY]
            try:
                out.extend(self.embedder.embed_many(chunk))
            except EmptyInputError as exc:
                raise EmptyInputError(
                    f"documents {start}..{start + len(chunk) - 1}: {exc}"
                ) from None
            yield
        return out

    def _build_steps(
        self, documents: List[Document]
    ) -> Steps[Tuple[MIPSRetriever, Optional[ProductQuantizer], Dict[str, float]]]:
        """Quantize (if enabled) and build a fresh retriever over `documents`."""
        timings: Dict[str, float] = {"quantize_ms": 0.0}
        quantizer: Optional[ProductQuantizer] = None
        indexed = documents

        if self.config.use_quantization:
            t0 = time.perf_counter_ns()
            fdes = np.vstack([d.fde for d in documents])
            quantizer = ProductQuantizer(self.config.pq_config)
            yield from quantizer.train_steps(fdes)
            codes = quantizer.encode_batch(fdes)
            for doc, doc_codes in zip(documents, codes):
                doc.codes = doc_codes
            if self.config.search_quantized:
                decoded = quantizer.decode_batch(codes)
                indexed = [
                    Document(id=d.id, fde=row, text=d.text)
                    for d, row in zip(documents, decoded)
                ]
            timings["quantize_ms"] = (time.perf_counter_ns() - t0) / 1e6

        t1 = time.perf_counter_ns()
        retriever = MIPSRetriever(self.config.mips)
        yield from retriever.add_documents_steps(indexed)
        timings["build_ms"] = (time.perf_counter_ns() - t1) / 1e6
        return retriever, quantizer, timings

    def _index_steps(self, texts: Sequence[str]) -> Steps[List[int]]:
        if isinstance(texts, str):
            raise ConfigurationError("index_documents() takes a list of texts, not a string")
        texts = list(texts)
        if not texts:
            raise EmptyInputError("no texts to index")

        t0 = time.perf_counter_ns()
        vectors = yield from self._embed_steps(texts)
        t1 = time.perf_counter_ns()
        fdes = yield from self.encoder.encode_batch_steps(
            vectors, EncodingType.AVERAGE, CHECKPOINT_EVERY
        )
        t2 = time.perf_counter_ns()

        ids = list(range(self._next_id, self._next_id + len(texts)))
        new_docs = [
            Document(id=i, fde=fde, text=text, vectors=mv)
            for i, text, mv, fde in zip(ids, texts, vectors, fdes)
        ]
        # Rebuilt documents are copies so a failed build leaves codes untouched.
        kept = [
            Document(id=d.id, fde=d.fde, text=d.text, vectors=d.vectors, codes=d.codes)
            for d in self.documents.values()
        ]
        all_docs = kept + new_docs
        retriever, quantizer, build_timings = yield from self._build_steps(all_docs)

        # Commit.
        self.documents = {d.id: d for d in all_docs}
        self.retriever = retriever
        self.quantizer = quantizer
        self._next_id = ids[-1] + 1

        timings = {
            "embed_ms": (t1 - t0) / 1e6,
            "encode_ms": (t2 - t1) / 1e6,
            **build_timings,
            "total_ms": (time.perf_counter_ns() - t0) / 1e6,
        }
        self.index_timings.append(timings)
        logger.info(
            "indexed %d documents (corpus=%d) in %.2fms: embed=%.2fms encode=%.2fms "
            "quantize=%.2fms build=%.2fms",
            len(new_docs),
            self.size,
            timings["total_ms"],
            timings["embed_ms"],
            timings["encode_ms"],
            timings["quantize_ms"],
            timings["build_ms"],
        )
        return ids

    def index_documents(self, texts: Sequence[str]) -> List[int]:
        """
        Embed, encode and index a batch of documents.

        Args:
            texts: Document texts

        Returns:
            The ids assigned to the new documents, in input order

        Raises:
            EmptyInputError: the batch is empty or a text has no tokens
        """
        return run_steps(self._index_steps(texts))

    async def aindex_documents(self, texts: Sequence[str]) -> List[int]:
        """index_documents(), yielding to the event loop between chunks."""
        return await run_steps_async(self._index_steps(texts))

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def _require_documents(self) -> None:
        if not self.documents:
            raise UninitializedStateError("no documents indexed; call index_documents() first")

    def _rerank(self, query_vectors: np.ndarray, candidates: List[SearchResult]) -> List[SearchResult]:
        reranked = []
        for c in candidates:
            doc = self.documents[c.document_id]
            reranked.append(
                SearchResult(
                    document_id=c.document_id,
                    score=chamfer_similarity(query_vectors, doc.vectors),
                    text=doc.text,
                    fde_score=c.score,
                )
            )
        return _rank(reranked)

    def search_with_timings(self, query: str, k: int = 10) -> Tuple[List[SearchResult], TimingsMs]:
        self._require_documents()
        if k <= 0:
            raise ConfigurationError(f"k must be positive, got {k}")

        t0 = time.perf_counter_ns()
        query_vectors = self.embedder.embed(query)
        query_fde = self.encoder.encode_query(query_vectors)
        t1 = time.perf_counter_ns()

        rerank = self.config.enable_reranking
        fetch = max(k, self.config.rerank_top_k) if rerank else k
        candidates = self.retriever.search(query_fde, fetch)
        t2 = time.perf_counter_ns()

        if rerank:
            results = self._rerank(query_vectors, candidates)[:k]
        else:
            results = candidates[:k]
        t3 = time.perf_counter_ns()

        timings = TimingsMs(
            encode_ms=(t1 - t0) / 1e6,
            search_ms=(t2 - t1) / 1e6,
            rerank_ms=(t3 - t2) / 1e6 if rerank else 0.0,
            total_ms=(t3 - t0) / 1e6,
        )
        return results, timings

    def search(self, query: str, k: int = 10) -> List[SearchResult]:
        """
        Top-k documents for `query`.

        Scores are FDE inner products, or exact Chamfer similarities when
        re-ranking is enabled (the FDE score is then kept in fde_score).
        """
        results, timings = self.search_with_timings(query, k)
        self.search_timings.append(timings)
        logger.debug(
            "search k=%d results=%d total=%.2fms (encode=%.2f search=%.2f rerank=%.2f)",
            k,
            len(results),
            timings.total_ms,
            timings.encode_ms,
            timings.search_ms,
            timings.rerank_ms,
        )
        return results

    def exhaustive_search(self, query: str, k: int = 10) -> List[SearchResult]:
        """Exact Chamfer similarity against every document. Slow; for validation."""
        self._require_documents()
        query_vectors = self.embedder.embed(query)
        scored = [
            SearchResult(
                document_id=doc.id,
                score=chamfer_similarity(query_vectors, doc.vectors),
                text=doc.text,
            )
            for doc in self.documents.values()
        ]
        return _rank(scored)[:k]

    def compare_with_exhaustive(self, query: str, k: int = 10) -> Dict[str, Any]:
        """
        Run exhaustive Chamfer search and FDE search side by side.

        Returns:
            Dict with "exhaustive" and "fde" sections (time_ms, top results)
            and a "quality" section (overlap, precision, recall, ndcg)
        """
        t0 = time.perf_counter_ns()
        exhaustive = self.exhaustive_search(query, k)
        t1 = time.perf_counter_ns()
        fde_results = self.search(query, k)
        t2 = time.perf_counter_ns()

        exhaustive_ms = (t1 - t0) / 1e6
        fde_ms = (t2 - t1) / 1e6
        truth_ids = [r.document_id for r in exhaustive]
        got_ids = [r.document_id for r in fde_results]
        quality = evaluate_search_quality(truth_ids, got_ids, k)
        return {
            "query": query,
            "exhaustive": {"time_ms": exhaustive_ms, "results": exhaustive[:3]},
            "fde": {
                "time_ms": fde_ms,
                "speedup": exhaustive_ms / fde_ms if fde_ms > 0 else 0.0,
                "results": fde_results[:3],
            },
            "quality": {
                "overlap": quality.overlap,
                "overlap_percent": overlap_percent(truth_ids, got_ids, k),
                "precision": quality.precision,
                "recall": quality.recall,
                "ndcg": quality.ndcg,
            },
        }

    def benchmark(self, queries: Sequence[str], k: int = 10) -> Dict[str, Any]:
        """Run every query once and summarize throughput and latency."""
        if not queries:
            raise EmptyInputError("no queries to benchmark")
        timings: List[TimingsMs] = []
        per_query: List[Dict[str, Any]] = []
        t0 = time.perf_counter_ns()
        for query in queries:
            results, timing = self.search_with_timings(query, k)
            self.search_timings.append(timing)
            timings.append(timing)
            per_query.append(
                {
                    "query": query,
                    "time_ms": timing.total_ms,
                    "num_results": len(results),
                    "avg_score": float(np.mean([r.score for r in results])) if results else 0.0,
                }
            )
        total_ms = (time.perf_counter_ns() - t0) / 1e6
        return {
            "queries": len(queries),
            "total_ms": total_ms,
            "avg_ms_per_query": total_ms / len(queries),
            "throughput_qps": 1000.0 * len(queries) / total_ms if total_ms > 0 else 0.0,
            "latency": summarize_latency(timings),
            "results": per_query,
            "index": self.retriever.get_stats(),
        }

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        token_counts = [len(d.vectors) for d in self.documents.values() if d.vectors is not None]
        avg_tokens = float(np.mean(token_counts)) if token_counts else 0.0

        quantization: Optional[Dict[str, Any]] = None
        if self.quantizer is not None and self.quantizer.is_trained:
            stats = self.quantizer.compression_stats(num_documents=self.size)
            quantization = {
                "original_bytes": stats.original_bytes,
                "compressed_bytes": stats.compressed_bytes,
                "codebook_bytes": stats.codebook_bytes,
                "compression_ratio": stats.compression_ratio,
                "amortized_ratio": stats.amortized_ratio,
                "memory_reduction": stats.memory_reduction,
                "reconstruction_bound": self.quantizer.reconstruction_bound,
            }

        indexing = self.index_timings[-1] if self.index_timings else {}
        return {
            "num_documents": self.size,
            "fde_dimension": self.encoder.output_dimension,
            "encoding": self.config.fde.to_dict(),
            "index": self.retriever.get_stats(),
            "avg_tokens_per_document": avg_tokens,
            "fde_compression": self.encoder.compression_stats(int(round(avg_tokens))),
            "quantization": quantization,
            "reranking_enabled": self.config.enable_reranking,
            "last_indexing_ms": dict(indexing),
            "indexing_total": latency_percentiles(
                "indexing", [t["total_ms"] for t in self.index_timings]
            ),
            "latency": summarize_latency(self.search_timings),
            "searches": len(self.search_timings),
        }

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self, fde_path: str, meta_path: str, extra: Optional[Dict[str, Any]] = None) -> None:
        """Dump document FDEs and metadata (see mvr.storage)."""
        self._require_documents()
        docs = list(self.documents.values())
        save_fdes(
            fde_path,
            meta_path,
            np.vstack([d.fde for d in docs]),
            ids=[d.id for d in docs],
            texts=[d.text for d in docs],
            config=self.config.fde,
            extra={"embedder": repr(self.embedder), **(extra or {})},
        )

    def load(self, fde_path: str, meta_path: str) -> None:
        """
        Replace the corpus with a dump written by save().

        FDEs come from disk. Token vectors (needed for re-ranking and
        exhaustive search) are recomputed with this system's embedder.

        Raises:
            ConfigurationError: the dump was built with a different EncodingConfig
        """
        fdes, meta = load_fdes(fde_path, meta_path, expected_config=self.config.fde)
        run_steps(self._load_steps(fdes, meta))

    def _load_steps(self, fdes: np.ndarray, meta: Dict[str, Any]) -> Steps[None]:
        ids = [int(i) for i in meta["ids"]]
        texts = [str(t) for t in meta["texts"]]
        if not ids:
            raise EmptyInputError("dump contains no documents")

        vectors = yield from self._embed_steps(texts)
        docs = [
            Document(id=i, fde=row, text=text, vectors=mv)
            for i, row, text, mv in zip(ids, fdes, texts, vectors)
        ]
        retriever, quantizer, build_timings = yield from self._build_steps(docs)

        self.documents = {d.id: d for d in docs}
        self.retriever = retriever
        self.quantizer = quantizer
        self._next_id = max(ids) + 1
        logger.info("loaded %d documents from dump (build=%.2fms)", len(docs), build_timings["build_ms"])

    def clear(self) -> None:
        self.documents = {}
        self.retriever = MIPSRetriever(self.config.mips)
        self.quantizer = None
        self._next_id = 0
        self.search_timings = []
        self.index_timings = []

    def __repr__(self) -> str:
        return (
            f"RetrievalSystem(documents={self.size}, fde_dimension={self.encoder.output_dimension}, "
            f"quantization={self.config.use_quantization}, reranking={self.config.enable_reranking})"
        )
