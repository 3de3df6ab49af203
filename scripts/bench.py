"""
bench.py - Benchmark FDE retrieval quality and latency.

=============================================================================
WHAT THIS SCRIPT DOES
=============================================================================

Loads the artifacts written by build_index.py and runs every query in a
JSONL file twice:

    1. Through the FDE pipeline (what production would serve)
    2. Through exhaustive Chamfer search (the exact answer, slow)

and reports how well (1) agrees with (2) plus where the time goes.

QUALITY (averaged over queries, ground truth = exhaustive Chamfer top-k):
    - precision@k / recall@k
    - ndcg@k (binary gain)

LATENCY (p50 / p95 / p99, milliseconds):
    - encode: query tokens -> query FDE
    - search: MIPS
    - rerank: exact Chamfer over candidates (0 unless --rerank)
    - total

With --mips-documents N the script also builds N random unit FDEs and
compares the linear scan against the neighbor graph (time and overlap).

=============================================================================
USAGE
=============================================================================

    uv run python scripts/bench.py
    uv run python scripts/bench.py --k 5 --rerank
    uv run python scripts/bench.py --mips-documents 1000 --json-out bench.json

=============================================================================
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

from mvr.bench import evaluate_search_quality, percentile_ms
from mvr.embedder import build_embedder
from mvr.mips import Document, MIPSConfig, MIPSRetriever
from mvr.retrieval import RetrievalConfig, RetrievalSystem
from mvr.storage import read_jsonl_texts, read_meta
from mvr.tokens import l2_normalize_rows


def bench_mips(num_documents: int, dimension: int, k: int, seed: int) -> Dict[str, Any]:
    """Linear scan vs neighbor graph on random unit vectors."""
    rng = np.random.default_rng(seed)
    fdes = l2_normalize_rows(rng.standard_normal((num_documents, dimension))).astype("float32")
    queries = l2_normalize_rows(rng.standard_normal((20, dimension))).astype("float32")

    retriever = MIPSRetriever(MIPSConfig(use_approximate_search=True))
    retriever.add_documents([Document(id=i, fde=row) for i, row in enumerate(fdes)])

    linear_ms: List[float] = []
    approx_ms: List[float] = []
    overlaps: List[float] = []
    for q in queries:
        report = retriever.benchmark(q, k)
        linear_ms.append(report["linear"]["time_ms"])
        if report["approximate"] is not None:
            approx_ms.append(report["approximate"]["time_ms"])
            overlaps.append(report["approximate"]["overlap_percent"])

    return {
        "documents": num_documents,
        "dimension": dimension,
        "build_ms": retriever.build_ms,
        "linear_p50_ms": percentile_ms(linear_ms, 50),
        "approximate_p50_ms": percentile_ms(approx_ms, 50),
        "mean_overlap_percent": float(np.mean(overlaps)) if overlaps else 0.0,
    }


def main() -> None:
    # -------------------------------------------------------------------------
    # Argument parsing
    # -------------------------------------------------------------------------

    p = argparse.ArgumentParser(
        description="Benchmark FDE retrieval quality and latency.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--queries", default="data/queries.jsonl", help="JSONL file with a 'text' field")
    p.add_argument("--artifacts-dir", default="artifacts", help="Directory with fdes.npy")
    p.add_argument("--k", type=int, default=5, help="Cutoff for results and metrics")
    p.add_argument("--rerank", action="store_true", help="Re-rank candidates with exact Chamfer")
    p.add_argument("--rerank-top-k", type=int, default=20)
    p.add_argument(
        "--mips-documents",
        type=int,
        default=0,
        help="If > 0, also benchmark linear vs graph MIPS on this many random FDEs",
    )
    p.add_argument("--mips-dimension", type=int, default=128)
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--json-out", default="", help="If provided, write results to this JSON file")
    p.add_argument("--verbose", action="store_true", help="Enable INFO logging")
    args = p.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")

    # -------------------------------------------------------------------------
    # Load artifacts
    # -------------------------------------------------------------------------

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
        enable_reranking=bool(args.rerank),
        rerank_top_k=int(args.rerank_top_k),
    )
    system = RetrievalSystem(config, embedder)
    system.load(str(fde_path), str(meta_path))

    queries = read_jsonl_texts(args.queries)
    k = int(args.k)

    # -------------------------------------------------------------------------
    # Warmup
    # -------------------------------------------------------------------------
    # The first searches pay for embedder caches and faiss setup.

    for q in queries[:3]:
        system.search(q, k)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    run = system.benchmark(queries, k)

    precisions: List[float] = []
    recalls: List[float] = []
    ndcgs: List[float] = []
    for q in queries:
        truth = [r.document_id for r in system.exhaustive_search(q, k)]
        got = [r.document_id for r in system.search(q, k)]
        quality = evaluate_search_quality(truth, got, k)
        precisions.append(quality.precision)
        recalls.append(quality.recall)
        ndcgs.append(quality.ndcg)

    latency = run["latency"]

    # -------------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------------

    print("")
    print("=" * 60)
    print("BENCHMARK CONFIGURATION")
    print("=" * 60)
    print(f"Documents:       {system.size}")
    print(f"Queries:         {len(queries)}")
    print(f"FDE dimension:   {system.encoder.output_dimension}")
    print(f"k:               {k}")
    print(f"reranking:       {args.rerank}")

    print("")
    print("=" * 60)
    print(f"QUALITY vs EXHAUSTIVE CHAMFER (@{k})")
    print("=" * 60)
    print(f"precision:       {np.mean(precisions):.4f}")
    print(f"recall:          {np.mean(recalls):.4f}")
    print(f"ndcg:            {np.mean(ndcgs):.4f}")

    print("")
    print("=" * 60)
    print("LATENCY METRICS (milliseconds)")
    print("=" * 60)
    for phase in ("encode", "search", "rerank", "total"):
        print("")
        print(f"  {phase}:")
        print(f"    p50:  {latency[f'{phase}_p50_ms']:7.3f} ms")
        print(f"    p95:  {latency[f'{phase}_p95_ms']:7.3f} ms")
        print(f"    p99:  {latency[f'{phase}_p99_ms']:7.3f} ms")
    print("")
    print(f"  throughput: {run['throughput_qps']:.1f} queries/s")

    mips_report = None
    if args.mips_documents > 0:
        mips_report = bench_mips(
            int(args.mips_documents), int(args.mips_dimension), k, int(args.seed)
        )
        print("")
        print("=" * 60)
        print("MIPS: LINEAR SCAN vs NEIGHBOR GRAPH")
        print("=" * 60)
        print(f"documents:       {mips_report['documents']} x {mips_report['dimension']}")
        print(f"graph build:     {mips_report['build_ms']:.2f} ms")
        print(f"linear p50:      {mips_report['linear_p50_ms']:.3f} ms")
        print(f"graph p50:       {mips_report['approximate_p50_ms']:.3f} ms")
        print(f"top-{k} overlap:   {mips_report['mean_overlap_percent']:.1f}%")

    if args.json_out:
        out = {
            "config": {"k": k, "rerank": bool(args.rerank), "encoding": fde_config.to_dict()},
            "quality": {
                "precision": float(np.mean(precisions)),
                "recall": float(np.mean(recalls)),
                "ndcg": float(np.mean(ndcgs)),
            },
            "latency": latency,
            "throughput_qps": run["throughput_qps"],
            "mips": mips_report,
        }
        with open(args.json_out, "w", encoding="utf-8") as f:
            json.dump(out, f, indent=2)
        print("")
        print(f"Wrote JSON report: {args.json_out}")

    print("")


if __name__ == "__main__":
    main()
