"""Module __init__: shared helpers for the nocturne engine."""
#
# PURPOSE:
# Small, dependency-light helpers used across the engine.
#
# KEY MODULES:
# - **async_helpers.py**: Safe fire-and-forget tasks and cooperative cancellation
# - **vectors.py**: numpy vector math (normalization, cosine similarity)
#
from .async_helpers import CancellationToken, create_safe_task, checkpoint
from .vectors import cosine_similarity, l2_norm, normalize

__all__ = [
    "CancellationToken",
    "create_safe_task",
    "checkpoint",
    "cosine_similarity",
    "l2_norm",
    "normalize",
]
