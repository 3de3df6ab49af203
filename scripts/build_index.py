"""
build_index.py - Offline script to encode a corpus into document FDEs.

=============================================================================
WHAT THIS SCRIPT DOES
=============================================================================

    1. Read documents from a JSONL file (one {"text": ...} per line)
    2. Embed every document into token vectors (hashing or a transformer)
    3. Encode every multi-vector into a document FDE (AVERAGE)
    4. Optionally train a product quantizer and report compression
    5. Save the FDE matrix and its metadata to disk

The output artifacts are:

    artifacts/
    ├── fdes.npy           # float32 (n_documents, fde_dimension)
    └── fdes_meta.json     # EncodingConfig, ids, texts, embedder

The MIPS index itself is not written; query.py rebuilds it from fdes.npy,
which is fast compared to embedding.

=============================================================================
USAGE
=============================================================================

    # Hashing embedder, default encoding
    uv run python scripts/build_index.py

    # Transformer token embeddings (384-dim for all-MiniLM-L6-v2)
    uv run python scripts/build_index.py \
        --embedder sentence-transformers \
        --model all-MiniLM-L6-v2 \
        --dimension 384 \
        --repetitions 10 \
        --projections 4

=============================================================================
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from mvr.embedder import DEFAULT_MODEL, build_embedder
from mvr.fde import EncodingConfig
from mvr.quantization import PQConfig
from mvr.retrieval import RetrievalConfig, RetrievalSystem
from mvr.storage import read_jsonl_texts


def main() -> None:
    # -------------------------------------------------------------------------
    # Argument parsing
    # -------------------------------------------------------------------------

    p = argparse.ArgumentParser(
        description="Encode a JSONL corpus into FDE artifacts.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--corpus", default="data/corpus.jsonl", help="JSONL file with a 'text' field")
    p.add_argument("--artifacts-dir", default="artifacts", help="Directory to write artifacts")
    p.add_argument(
        "--embedder",
        choices=["hashing", "sentence-transformers"],
        default="hashing",
        help="Token embedder. Query time MUST use the same one (it is recorded in the metadata).",
    )
    p.add_argument("--model", default=DEFAULT_MODEL, help="SentenceTransformer model name")
    p.add_argument(
        "--dimension",
        type=int,
        default=64,
        help="Token dimension D. Must equal the model's dimension for sentence-transformers.",
    )
    p.add_argument("--repetitions", type=int, default=5, help="SimHash repetitions R")
    p.add_argument("--projections", type=int, default=4, help="Hyperplanes per repetition P")
    p.add_argument(
        "--projection-dim",
        type=int,
        default=0,
        help="If > 0, compress each bucket with an AMS sketch to this many dimensions",
    )
    p.add_argument("--fill-policy", choices=["zero", "centroid", "nearest"], default="zero")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument(
        "--quantize",
        action="store_true",
        help="Train a product quantizer and report compression",
    )
    p.add_argument("--subvectors", type=int, default=8, help="PQ sub-vectors (bytes per document)")
    p.add_argument("--codebook-size", type=int, default=256, help="PQ centroids per sub-vector")
    p.add_argument("--verbose", action="store_true", help="Enable INFO logging")
    args = p.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    artifacts_dir = Path(args.artifacts_dir)
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    texts = read_jsonl_texts(args.corpus)
    print(f"Loaded {len(texts)} documents from {args.corpus}")

    fde_config = EncodingConfig(
        dimension=int(args.dimension),
        num_repetitions=int(args.repetitions),
        num_simhash_projections=int(args.projections),
        seed=int(args.seed),
        projection_type="ams_sketch" if args.projection_dim > 0 else "identity",
        projection_dimension=int(args.projection_dim) if args.projection_dim > 0 else None,
        fill_policy=args.fill_policy,
    )
    config = RetrievalConfig(
        fde=fde_config,
        pq=PQConfig(num_subvectors=int(args.subvectors), codebook_size=int(args.codebook_size)),
        use_quantization=bool(args.quantize),
    )

    print(f"Loading token embedder: {args.embedder}")
    embedder = build_embedder(args.embedder, args.model, int(args.dimension), int(args.seed))

    # -------------------------------------------------------------------------
    # Encode + save
    # -------------------------------------------------------------------------

    system = RetrievalSystem(config, embedder)
    system.index_documents(texts)

    fde_path = artifacts_dir / "fdes.npy"
    meta_path = artifacts_dir / "fdes_meta.json"
    system.save(
        str(fde_path),
        str(meta_path),
        extra={
            "embedder_kind": args.embedder,
            "model_name": args.model,
            "embedder_seed": int(args.seed),
        },
    )
    print(f"  Saved: {fde_path}")
    print(f"  Saved: {meta_path}")

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    stats = system.get_stats()
    timings = stats["last_indexing_ms"]

    print("")
    print("=" * 60)
    print("BUILD COMPLETE")
    print("=" * 60)
    print(f"Documents:        {stats['num_documents']}")
    print(f"FDE dimension:    {stats['fde_dimension']}")
    print(f"Avg tokens/doc:   {stats['avg_tokens_per_document']:.1f}")
    print(f"Index size:       {stats['index']['index_size_kb']:.1f} KB")
    print(f"Embed:            {timings['embed_ms']:.2f} ms")
    print(f"Encode:           {timings['encode_ms']:.2f} ms")
    quant = stats["quantization"]
    if quant is not None:
        print("")
        print("Product quantization:")
        print(f"  {quant['original_bytes']} bytes -> {quant['compressed_bytes']} bytes per document")
        print(f"  compression ratio:    {quant['compression_ratio']:.1f}x")
        print(f"  with codebooks:       {quant['amortized_ratio']:.2f}x ({quant['memory_reduction']})")
        print(f"  reconstruction bound: {quant['reconstruction_bound']:.4f}")
        print(f"  training time:        {timings['quantize_ms']:.2f} ms")
    print("")
    print("Next steps:")
    print("  1. Try a query:    uv run python scripts/query.py 'tallest mountain on Earth'")
    print("  2. Run benchmark:  uv run python scripts/bench.py")
    print("")


if __name__ == "__main__":
    main()
