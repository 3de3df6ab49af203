"""
query.py - Run one query against saved FDE artifacts and show the ranking.

=============================================================================
WHAT THIS SCRIPT DOES
=============================================================================

A debugging and exploration tool. It loads the artifacts written by
build_index.py, runs one query and prints:

    - The top-k documents with their scores
    - With --rerank: the exact Chamfer score next to the FDE score
    - With --compare: the exhaustive Chamfer ranking and how much of it the
      FDE search recovered

Example output:

    TOP 3 RESULTS
      [1] id=0   score=0.5123  text="Mount Everest is the tallest mountain ..."
      [2] id=10  score=0.3011  text="Mauna Kea is taller than Everest ..."
      [3] id=1   score=0.2270  text="K2 is the second highest mountain ..."

How to read this:

    score:      FDE inner product (or Chamfer similarity with --rerank).
                Only the ORDER is meaningful across documents; the absolute
                value grows with the number of query tokens.

    fde_score:  (with --rerank) the first-stage score the document had
                before exact re-ranking moved it.

=============================================================================
USAGE
=============================================================================

    uv run python scripts/query.py "tallest mountain on Earth"
    uv run python scripts/query.py "tallest mountain on Earth" --rerank
    uv run python scripts/query.py "largest ocean" --k 5 --compare
    uv run python scripts/query.py "largest ocean" --approximate

=============================================================================
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from mvr.embedder import build_embedder
from mvr.mips import MIPSConfig
from mvr.retrieval import RetrievalConfig, RetrievalSystem
from mvr.storage import read_meta


def main() -> None:
    # -------------------------------------------------------------------------
    # Argument parsing
    # -------------------------------------------------------------------------

    p = argparse.ArgumentParser(
        description="Run a single query against FDE artifacts and show detailed results.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("query", help="The query text (e.g., 'tallest mountain on Earth')")
    p.add_argument("--artifacts-dir", default="artifacts", help="Directory with fdes.npy")
    p.add_argument("--k", type=int, default=5, help="Number of results")
    p.add_argument("--rerank", action="store_true", help="Re-rank candidates with exact Chamfer")
    p.add_argument("--rerank-top-k", type=int, default=20, help="Candidates fetched for re-ranking")
    p.add_argument(
        "--approximate",
        action="store_true",
        help="Use the neighbor-graph search (only engages above 50 documents)",
    )
    p.add_argument("--compare", action="store_true", help="Also run exhaustive Chamfer search")
    p.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    args = p.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(message)s")

    # -------------------------------------------------------------------------
    # Load artifacts
    # -------------------------------------------------------------------------
    # The metadata says how the FDEs were built. Query time must use the same
    # EncodingConfig and the same embedder, so both come from there.

    artifacts = Path(args.artifacts_dir)
    fde_path = artifacts / "fdes.npy"
    meta_path = artifacts / "fdes_meta.json"
    meta = read_meta(str(meta_path))
    fde_config = meta["encoding"]

    embedder = build_embedder(
        meta.get("embedder_kind", "hashing"),
        meta.get("model_name", ""),
        fde_config.dimension,
        int(meta.get("embedder_seed", 42)),
    )
    config = RetrievalConfig(
        fde=fde_config,
        mips=MIPSConfig(use_approximate_search=bool(args.approximate)),
        enable_reranking=bool(args.rerank),
        rerank_top_k=int(args.rerank_top_k),
    )
    system = RetrievalSystem(config, embedder)
    system.load(str(fde_path), str(meta_path))

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    results, timings = system.search_with_timings(args.query, int(args.k))

    print("")
    print("=" * 60)
    print("QUERY")
    print("=" * 60)
    print(f"query:        {args.query}")
    print(f"documents:    {system.size}")
    print(f"strategy:     {system.retriever.get_stats()['strategy']}")
    print(f"reranking:    {args.rerank}")
    print(
        f"latency:      {timings.total_ms:.3f} ms "
        f"(encode {timings.encode_ms:.3f}, search {timings.search_ms:.3f}, "
        f"rerank {timings.rerank_ms:.3f})"
    )

    print("")
    print("=" * 60)
    print(f"TOP {len(results)} RESULTS")
    print("=" * 60)
    for i, r in enumerate(results):
        extra = f"  fde_score={r.fde_score:.4f}" if r.fde_score is not None else ""
        print(f'  [{i + 1}] id={r.document_id:<4} score={r.score:.4f}{extra}  text="{r.text}"')

    # -------------------------------------------------------------------------
    # Exhaustive comparison
    # -------------------------------------------------------------------------

    if args.compare:
        report = system.compare_with_exhaustive(args.query, int(args.k))
        quality = report["quality"]
        print("")
        print("-" * 60)
        print("Exhaustive Chamfer comparison:")
        print("-" * 60)
        for i, r in enumerate(report["exhaustive"]["results"]):
            print(f'  [{i + 1}] id={r.document_id:<4} chamfer={r.score:.4f}  text="{r.text}"')
        print("")
        print(f"  exhaustive time: {report['exhaustive']['time_ms']:.3f} ms")
        print(f"  FDE time:        {report['fde']['time_ms']:.3f} ms")
        print(f"  speedup:         {report['fde']['speedup']:.1f}x")
        print(f"  overlap@{args.k}:      {quality['overlap']}/{args.k} ({quality['overlap_percent']:.1f}%)")
        print(f"  ndcg@{args.k}:         {quality['ndcg']:.4f}")

    print("")


if __name__ == "__main__":
    main()
