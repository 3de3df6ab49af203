"""
storage.py - Flat on-disk dump of document FDEs.

Two files, same split as any FAISS artifact pair:

    fdes.npy         float32 matrix (n_documents, fde_dimension), np.save format
    fdes_meta.json   EncodingConfig, document ids and texts, build info

This is NOT an index format. Nothing about the MIPS structures is written;
they are rebuilt from the FDEs on load. The EncodingConfig travels with the
matrix because FDEs are only comparable under the exact config that produced
them: loading into a system with a different config raises
ConfigurationError.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from mvr.errors import ConfigurationError
from mvr.fde import EncodingConfig

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def save_fdes(
    fde_path: str,
    meta_path: str,
    fdes: np.ndarray,
    ids: Sequence[int],
    texts: Sequence[str],
    config: EncodingConfig,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Write the FDE matrix and its metadata.

    Args:
        fde_path: Where to write the .npy matrix
        meta_path: Where to write the JSON metadata
        fdes: (n, fde_dimension) array, row i belongs to ids[i]
        ids: Document ids
        texts: Document texts
        config: The EncodingConfig that produced `fdes`
        extra: Additional JSON-serializable metadata (embedder name, ...)
    """
    mat = np.asarray(fdes, dtype=np.float32)
    if mat.ndim != 2 or mat.shape[0] != len(ids) or len(ids) != len(texts):
        raise ConfigurationError(
            f"fdes {mat.shape}, ids {len(ids)} and texts {len(texts)} do not line up"
        )
    if mat.shape[1] != config.fde_dimension:
        raise ConfigurationError(
            f"FDE length {mat.shape[1]} does not match config ({config.fde_dimension})"
        )

    Path(fde_path).parent.mkdir(parents=True, exist_ok=True)
    Path(meta_path).parent.mkdir(parents=True, exist_ok=True)

    with open(fde_path, "wb") as f:
        np.save(f, mat)

    meta: Dict[str, Any] = {
        "format_version": FORMAT_VERSION,
        "built_at_unix": time.time(),
        "encoding": config.to_dict(),
        "fde_dimension": int(mat.shape[1]),
        "num_documents": int(mat.shape[0]),
        "ids": [int(i) for i in ids],
        "texts": list(texts),
    }
    if extra:
        meta.update(extra)

    with open(meta_path, "w", encoding="utf-8") as f:
        json.dump(meta, f, indent=2)

    logger.info("saved %d FDEs to %s (meta %s)", mat.shape[0], fde_path, meta_path)


def load_fdes(
    fde_path: str,
    meta_path: str,
    expected_config: Optional[EncodingConfig] = None,
) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Read an FDE matrix written by save_fdes().

    Args:
        fde_path: Path to the .npy matrix
        meta_path: Path to the JSON metadata
        expected_config: If given, the stored EncodingConfig must equal it

    Returns:
        (fdes, meta); meta["encoding"] is an EncodingConfig instance
    """
    with open(meta_path, "r", encoding="utf-8") as f:
        meta = json.load(f)

    stored = EncodingConfig.from_dict(meta["encoding"])
    if expected_config is not None and stored != expected_config:
        raise ConfigurationError(
            f"stored FDEs were built with {stored}, not {expected_config}"
        )

    fdes = np.load(fde_path)
    if fdes.shape != (len(meta["ids"]), stored.fde_dimension):
        raise ConfigurationError(
            f"{fde_path} has shape {fdes.shape}, metadata expects "
            f"({len(meta['ids'])}, {stored.fde_dimension})"
        )

    meta["encoding"] = stored
    return fdes.astype(np.float32, copy=False), meta


def read_jsonl_texts(path: str) -> List[str]:
    """
    Read texts from a JSONL file, one {"text": "..."} object per line.

    Blank lines are skipped; other keys on a line are ignored.
    """
    out: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line:
                continue
            obj = json.loads(line)
            out.append(str(obj["text"]))
    return out


def read_meta(meta_path: str) -> Dict[str, Any]:
    """Metadata written by save_fdes(), with "encoding" as an EncodingConfig."""
    with open(meta_path, "r", encoding="utf-8") as f:
        meta = json.load(f)
    meta["encoding"] = EncodingConfig.from_dict(meta["encoding"])
    return meta
