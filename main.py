"""
main.py - Small end-to-end demo of FDE encoding and retrieval.

=============================================================================
WHAT THIS FILE IS
=============================================================================

Not part of the library. A self-contained walk through the pieces, useful
for demos and quick sanity checks. For the real tooling see:

    - scripts/build_index.py  (encode a corpus, save FDE artifacts)
    - scripts/query.py        (run one query against the artifacts)
    - scripts/bench.py        (quality vs exhaustive Chamfer, latency)

=============================================================================
WHAT THIS SCRIPT DEMONSTRATES
=============================================================================

1. Turning text into multi-vectors (one vector per token)
2. Encoding multi-vectors into FDEs (SUM for queries, AVERAGE for documents)
3. FDE dot products tracking exact Chamfer similarity
4. Two-stage retrieval: FDE search, then exact Chamfer re-ranking

It uses HashingTokenEmbedder, which needs no model download: every word
gets a fixed random vector, so similarity here is lexical overlap. Swap in
mvr.embedder.SentenceTransformerTokenEmbedder for contextual embeddings.

=============================================================================
USAGE
=============================================================================

    uv run python main.py

=============================================================================
"""

import numpy as np

from mvr.chamfer import chamfer_similarity
from mvr.fde import EncodingConfig, FDEEncoder, similarity
from mvr.retrieval import RetrievalConfig, RetrievalSystem
from mvr.tokens import HashingTokenEmbedder


def main():
    print("=" * 60)
    print("FDE + MIPS Demo")
    print("=" * 60)
    print()

    # -------------------------------------------------------------------------
    # Step 1: Embed sentences into multi-vectors
    # -------------------------------------------------------------------------

    embedder = HashingTokenEmbedder(dimension=64)
    sentences = [
        "Mount Everest is the tallest mountain on Earth.",
        "K2 is the second highest mountain in the world.",
        "The Pacific Ocean is the largest ocean.",
        "Photosynthesis converts light into chemical energy.",
        "Jupiter is the largest planet in the solar system.",
        "Espresso is brewed by forcing hot water through coffee.",
    ]

    print("Corpus sentences:")
    for i, s in enumerate(sentences):
        print(f"  [{i}] {s}  ({len(embedder.embed(s))} tokens)")
    print()

    # -------------------------------------------------------------------------
    # Step 2: Encode into FDEs
    # -------------------------------------------------------------------------
    # 10 repetitions x 2**4 buckets x 64 dims = 10240 floats per FDE,
    # whatever the number of tokens.

    config = EncodingConfig(dimension=64, num_repetitions=10, num_simhash_projections=4)
    encoder = FDEEncoder(config)
    print(encoder)
    print()

    query = "tallest mountain on Earth"
    query_vectors = embedder.embed(query)
    query_fde = encoder.encode_query(query_vectors)

    # -------------------------------------------------------------------------
    # Step 3: FDE similarity vs exact Chamfer
    # -------------------------------------------------------------------------
    # The FDE score is on a different scale (it sums over query tokens), but
    # the ordering should broadly agree with Chamfer.

    print(f'Query: "{query}"')
    print(f"  {'doc':>4}  {'FDE score':>10}  {'Chamfer':>8}")
    for i, s in enumerate(sentences):
        doc_vectors = embedder.embed(s)
        fde_score = similarity(query_fde, encoder.encode_document(doc_vectors))
        exact = chamfer_similarity(query_vectors, doc_vectors)
        print(f"  {i:>4}  {fde_score:>10.4f}  {exact:>8.4f}")
    print()

    # -------------------------------------------------------------------------
    # Step 4: Two-stage retrieval
    # -------------------------------------------------------------------------

    system = RetrievalSystem(
        RetrievalConfig(fde=config, enable_reranking=True, rerank_top_k=4),
        embedder,
    )
    system.index_documents(sentences)

    print("=" * 60)
    print("SEARCH RESULTS (FDE candidates, Chamfer re-ranked)")
    print("=" * 60)
    print()
    for q in [query, "largest planet", "how is espresso brewed"]:
        print(f'Query: "{q}"')
        for rank, r in enumerate(system.search(q, k=2)):
            print(f"    [{rank + 1}] id={r.document_id} chamfer={r.score:.4f} fde={r.fde_score:.4f}")
            print(f'        "{r.text}"')
        print()

    stats = system.get_stats()
    print("-" * 60)
    print(f"Documents: {stats['num_documents']}, FDE dimension: {stats['fde_dimension']}")
    print(f"Search p50: {stats['latency']['total_p50_ms']:.3f} ms")
    print(f"Query FDE norm: {np.linalg.norm(query_fde):.3f}")
    print("-" * 60)


if __name__ == "__main__":
    main()
