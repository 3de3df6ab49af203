"""
mvr - Multi-vector retrieval through Fixed Dimensional Encodings (FDEs).

=============================================================================
PACKAGE OVERVIEW
=============================================================================

Late-interaction models describe a text with one embedding PER TOKEN. Scoring
a query against a document then means Chamfer similarity (every query token
finds its best document token), which no standard vector index can serve.

This package turns each multi-vector into one fixed-length vector (an FDE)
whose dot product approximates Chamfer similarity, so retrieval becomes plain
Maximum Inner Product Search (MIPS). Candidates can then be re-ranked with
exact Chamfer similarity.

=============================================================================
MODULE STRUCTURE
=============================================================================

mvr/
├── __init__.py       ← You are here.
├── errors.py         ← ConfigurationError, UninitializedStateError, ...
├── rng.py            ← Seeded PRNGs behind one interface
├── cooperative.py    ← Step generators, driven sync or via asyncio
├── simhash.py        ← SimHash partitioner, Gray-code helpers
├── fde.py            ← EncodingConfig, FDEEncoder, similarity()
├── quantization.py   ← k-means + ProductQuantizer
├── mips.py           ← Linear scan / neighbor-graph MIPS, MIPSRetriever
├── chamfer.py        ← Exact Chamfer similarity
├── tokens.py         ← TokenEmbedder interface, HashingTokenEmbedder
├── embedder.py       ← SentenceTransformerTokenEmbedder (not imported here)
├── retrieval.py      ← RetrievalSystem: the two-stage pipeline
├── bench.py          ← Latency percentiles, search-quality metrics
└── storage.py        ← Flat .npy + JSON dump of document FDEs

=============================================================================
TYPICAL USAGE
=============================================================================

Encoding directly:
------------------
    from mvr.fde import EncodingConfig, FDEEncoder, similarity

    enc = FDEEncoder(EncodingConfig(dimension=128, num_repetitions=10))
    q = enc.encode_query(query_tokens)        # (n_q, 128) -> FDE
    d = enc.encode_document(doc_tokens)       # (n_d, 128) -> FDE
    score = similarity(q, d)                  # ~ Chamfer(query, doc)

End to end:
-----------
    from mvr.retrieval import RetrievalConfig, RetrievalSystem
    from mvr.tokens import HashingTokenEmbedder

    system = RetrievalSystem(
        RetrievalConfig(enable_reranking=True),
        HashingTokenEmbedder(dimension=64),
    )
    system.index_documents(["Mount Everest is the tallest mountain", ...])
    for r in system.search("tallest mountain on Earth", k=5):
        print(r.document_id, r.score, r.text)

For real token embeddings use mvr.embedder.SentenceTransformerTokenEmbedder
(and set EncodingConfig.dimension to the model's dimension, 384 for
all-MiniLM-L6-v2).

=============================================================================
"""

from mvr import bench as bench
from mvr import chamfer as chamfer
from mvr import errors as errors
from mvr import fde as fde
from mvr import mips as mips
from mvr import quantization as quantization
from mvr import retrieval as retrieval
from mvr import simhash as simhash
from mvr import storage as storage
from mvr import tokens as tokens

# mvr.embedder is left out so importing mvr does not load sentence-transformers.
__all__ = [
    "bench",
    "chamfer",
    "errors",
    "fde",
    "mips",
    "quantization",
    "retrieval",
    "simhash",
    "storage",
    "tokens",
]
