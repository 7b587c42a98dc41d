"""Vector math shared by the vectorizer and the clustering pass."""

from __future__ import annotations

import numpy as np

EPSILON = 1e-12


def l2_norm(vector: np.ndarray) -> float:
    return float(np.linalg.norm(vector))


def normalize(vector: np.ndarray) -> np.ndarray:
    """Return a unit-length copy; zero (or non-finite) vectors come back as zeros."""
    vec = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(vec)
    if not np.isfinite(norm) or norm < EPSILON:
        return np.zeros_like(vec)
    return vec / norm


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    na = np.linalg.norm(a)
    nb = np.linalg.norm(b)
    if na < EPSILON or nb < EPSILON:
        return 0.0
    return float(np.dot(a, b) / (na * nb))
