import asyncio

import numpy as np
import pytest

from nocturne.utils.async_helpers import CancellationToken, checkpoint, create_safe_task
from nocturne.utils.vectors import cosine_similarity, l2_norm, normalize


@pytest.mark.asyncio
async def test_first_cancellation_reason_wins():
    token = CancellationToken()
    assert not token.cancelled
    assert await checkpoint(token) is False

    token.cancel("first")
    token.cancel("second")

    assert token.cancelled and token.is_set()
    assert token.reason == "first"
    assert await checkpoint(token) is True
    await asyncio.wait_for(token.wait(), timeout=1)


@pytest.mark.asyncio
async def test_checkpoint_without_token():
    assert await checkpoint() is False


@pytest.mark.asyncio
async def test_safe_task_logs_instead_of_raising(caplog):
    async def boom():
        raise RuntimeError("kaput")

    task = create_safe_task(boom(), name="boom")
    await asyncio.gather(task, return_exceptions=True)
    await asyncio.sleep(0)

    assert "kaput" in caplog.text


def test_normalize_and_similarity():
    v = normalize(np.array([3.0, 4.0]))
    assert l2_norm(v) == pytest.approx(1.0)
    assert not normalize(np.zeros(3)).any()
    assert not normalize(np.array([np.inf, 1.0])).any()
    assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 2.0])) == 0.0
    assert cosine_similarity(np.zeros(2), np.ones(2)) == 0.0
    assert cosine_similarity(np.ones(2), np.ones(2) * 5) == pytest.approx(1.0)
