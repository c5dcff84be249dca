"""Tests for vector helpers."""

import math

import pytest

from chatmem.errors import DimensionMismatch
from chatmem.memory.vectors import (
    cosine_similarity,
    fallback_embedding,
    from_blob,
    normalize,
    to_blob,
)


def test_cosine_identical_and_orthogonal() -> None:
    assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)


def test_cosine_zero_vector_is_zero() -> None:
    assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0


def test_cosine_dimension_mismatch() -> None:
    with pytest.raises(DimensionMismatch) as exc_info:
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
    assert exc_info.value.expected == 2
    assert exc_info.value.actual == 3


def test_normalize_unit_length() -> None:
    v = normalize([3.0, 4.0])
    assert v == pytest.approx([0.6, 0.8])
    assert normalize([0.0, 0.0]) == [0.0, 0.0]


def test_fallback_embedding_is_deterministic() -> None:
    a = fallback_embedding("hello world", 32)
    b = fallback_embedding("hello world", 32)
    c = fallback_embedding("something else", 32)

    assert a == b
    assert a != c
    assert len(a) == 32
    assert math.sqrt(sum(x * x for x in a)) == pytest.approx(1.0)


def test_blob_keeps_float32_precision() -> None:
    v = [0.1, -0.25, 3.5]
    assert from_blob(to_blob(v)) == pytest.approx(v, abs=1e-6)
