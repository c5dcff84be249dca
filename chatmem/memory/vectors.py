"""Vector helpers: cosine similarity, blob encoding, deterministic fallback."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

import numpy as np

from chatmem.errors import DimensionMismatch

if TYPE_CHECKING:
    from collections.abc import Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Raises DimensionMismatch when the lengths differ. A zero vector has
    similarity 0.0 with everything.
    """
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def normalize(vector: Sequence[float]) -> list[float]:
    arr = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()


def fallback_embedding(text: str, dimension: int) -> list[float]:
    """Deterministic unit vector derived from a hash of *text*.

    Used when the embedding provider is unavailable. Identical text always
    yields the identical vector, so de-duplication still works for exact
    repeats.
    """
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = np.random.default_rng(seed)
    return normalize(rng.standard_normal(dimension))


def to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def from_blob(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype=np.float32).astype(np.float64).tolist()
