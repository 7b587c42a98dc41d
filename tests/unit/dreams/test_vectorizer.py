"""
Unit tests for SignatureVectorizer.

Verifies:
1. Every encoded fragment is unit length (or the zero fallback).
2. Encoding is deterministic and section layout is respected.
3. Statistics recalibration only happens on large enough batches.
"""

from unittest.mock import patch

import numpy as np
import pytest

from nocturne.base.config import VectorizerConfig
from nocturne.dreams.models import ResourceTiming
from nocturne.dreams.vectorizer import (
    DIMENSIONS,
    PROTOCOL_SLICE,
    TIMING_SLICE,
    SignatureVectorizer,
)


@pytest.fixture
def vectorizer():
    return SignatureVectorizer()


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"friction": 0.0, "latency": 0.0, "trackers": ()},
        {"friction": 5000.0, "latency": 90000.0, "protocol": "http/1.1"},
        {
            "protocol": "h2",
            "resource_timings": [
                ResourceTiming(name=f"https://cdn.example.org/{i}.js", duration=10.0 * (i % 4), protocol="h2")
                for i in range(24)
            ],
        },
    ],
)
def test_vectors_are_unit_length(vectorizer, fragment_factory, kwargs):
    vector = vectorizer.vectorize(fragment_factory("site.example", **kwargs))
    assert vector.shape == (DIMENSIONS,)
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-9)


def test_vectorize_is_deterministic(vectorizer, fragment_factory):
    fragment = fragment_factory("tracker1.com")
    np.testing.assert_array_equal(vectorizer.vectorize(fragment), vectorizer.vectorize(fragment))


def test_internal_failure_returns_zero_vector(vectorizer, fragment_factory):
    with patch.object(SignatureVectorizer, "_encode_trackers", side_effect=RuntimeError("boom")):
        vector = vectorizer.vectorize(fragment_factory("broken.example"))
    assert vector.shape == (DIMENSIONS,)
    assert not vector.any()


def test_protocol_one_hot(vectorizer, fragment_factory):
    h3 = vectorizer.vectorize(fragment_factory("a.example", protocol="h3"))[PROTOCOL_SLICE]
    other = vectorizer.vectorize(fragment_factory("b.example", protocol="spdy"))[PROTOCOL_SLICE]
    assert h3[0] > 0 and not h3[1:].any()
    assert other[3] > 0 and not other[:3].any()


def test_tracker_projection_is_sparse(vectorizer):
    encoded = vectorizer._encode_trackers({"analytics.js", "fingerprint.js", "pixel.gif"})
    assert encoded.shape == (8,)
    assert all(v == 0.0 or v >= 0.3 for v in encoded)
    assert not vectorizer._encode_trackers(set()).any()


def test_tracker_order_does_not_matter(vectorizer, fragment_factory):
    a = vectorizer.vectorize(fragment_factory("x.example", trackers=["b.js", "a.js"]))
    b = vectorizer.vectorize(fragment_factory("x.example", trackers=["a.js", "b.js"]))
    np.testing.assert_allclose(a, b)


def test_timing_section_empty_without_timings(vectorizer, fragment_factory):
    vector = vectorizer.vectorize(fragment_factory("quiet.example"))
    assert not vector[TIMING_SLICE].any()


def test_similar_fragments_resonate(vectorizer, fragment_factory):
    a = vectorizer.vectorize(fragment_factory("tracker1.com", friction=100.0, latency=200.0))
    b = vectorizer.vectorize(fragment_factory("tracker2.net", friction=110.0, latency=210.0))
    assert vectorizer.cosine_similarity(a, b) > 0.95


def test_dissimilar_fragments_do_not_resonate(vectorizer, fragment_factory):
    a = vectorizer.vectorize(fragment_factory("a.example", friction=0.0, trackers=(), protocol="h3"))
    b = vectorizer.vectorize(fragment_factory("b.example", friction=300.0, trackers=(), protocol="h2"))
    assert vectorizer.cosine_similarity(a, b) < 0.85


def test_cosine_similarity_rejects_shape_mismatch(vectorizer):
    with pytest.raises(ValueError):
        vectorizer.cosine_similarity(np.ones(3), np.ones(4))


def test_update_statistics_ignores_small_batches(vectorizer, fragment_factory):
    before = vectorizer.get_statistics()
    changed = vectorizer.update_statistics([fragment_factory(f"d{i}.example", friction=1.0) for i in range(5)])
    assert changed is False
    assert vectorizer.get_statistics() == before


def test_update_statistics_recalibrates(vectorizer, fragment_factory):
    fragments = [
        fragment_factory(f"d{i}.example", friction=float(i * 10), latency=float(i * 20))
        for i in range(10)
    ]
    assert vectorizer.update_statistics(fragments) is True
    stats = vectorizer.get_statistics()
    assert stats["friction_mean"] == pytest.approx(45.0)
    assert stats["latency_mean"] == pytest.approx(90.0)
    assert stats["friction_std"] > 0


def test_update_statistics_never_zeroes_std(fragment_factory):
    vectorizer = SignatureVectorizer(VectorizerConfig(min_calibration_samples=2))
    vectorizer.update_statistics([fragment_factory(f"d{i}.example", friction=42.0) for i in range(4)])
    stats = vectorizer.get_statistics()
    assert stats["friction_mean"] == pytest.approx(42.0)
    assert stats["friction_std"] == pytest.approx(50.0)
