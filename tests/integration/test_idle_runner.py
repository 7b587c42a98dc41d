"""IdleSynthesisRunner turns every run result into an outcome."""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from nocturne.dreams.collector import MemoryFragmentCollector
from nocturne.dreams.processor import DreamProcessor
from nocturne.dreams.scheduler import IdleSynthesisRunner, MinimumIntervalSchedule, OutcomeStatus
from nocturne.dreams.storage import DreamStorage
from nocturne.errors import ErrorCode, PersistenceError

NOW = 1_700_000_010.0


async def _collector(fragment_factory, count=6) -> MemoryFragmentCollector:
    collector = MemoryFragmentCollector(clock=lambda: NOW)
    await collector.import_fragments(fragment_factory(f"tracker{i}.example") for i in range(count))
    return collector


@pytest.mark.asyncio
async def test_completed_run_clears_collector(config, thermal, fragment_factory):
    storage = DreamStorage(config.storage)
    processor = DreamProcessor(config, storage, thermal=thermal)
    collector = await _collector(fragment_factory)
    runner = IdleSynthesisRunner(collector, processor)
    try:
        outcome = await runner.run_now()

        assert outcome.ok
        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.report.fragments_analyzed == 6
        assert collector.export_fragments() == []

        again = await runner.run_now()
        assert again.status == OutcomeStatus.TOO_SOON
        assert again.retry_after > 0
        assert runner.time_until_next_allowed() > 0
    finally:
        processor.dispose()
        await storage.close()


@pytest.mark.asyncio
async def test_busy_processor(config, thermal, fragment_factory):
    storage = MagicMock(spec=DreamStorage)
    processor = DreamProcessor(config, storage, thermal=thermal)
    processor.active_synthesis_id = "running"
    runner = IdleSynthesisRunner(await _collector(fragment_factory), processor)

    outcome = await runner.run_now()

    assert outcome.status == OutcomeStatus.BUSY
    assert outcome.error.details["active_synthesis_id"] == "running"
    storage.commit_synthesis.assert_not_awaited()


@pytest.mark.asyncio
async def test_persistence_failure_keeps_fragments(config, thermal, fragment_factory):
    storage = MagicMock(spec=DreamStorage)
    storage.commit_synthesis = AsyncMock(side_effect=PersistenceError(ErrorCode.STORE_WRITE_FAILED, "disk full"))
    processor = DreamProcessor(config, storage, thermal=thermal)
    collector = await _collector(fragment_factory)
    runner = IdleSynthesisRunner(collector, processor)

    outcome = await runner.run_now()

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error.code == ErrorCode.STORE_WRITE_FAILED
    assert len(collector.export_fragments()) == 6
    assert processor.runs_failed == 1
    assert runner.time_until_next_allowed() == 0


@pytest.mark.asyncio
async def test_unexpected_error_becomes_failed_outcome(config, thermal, fragment_factory):
    storage = MagicMock(spec=DreamStorage)
    processor = DreamProcessor(config, storage, thermal=thermal)
    processor.clustering = MagicMock()
    processor.clustering.cluster = AsyncMock(side_effect=KeyError("centroid"))
    runner = IdleSynthesisRunner(await _collector(fragment_factory), processor)

    outcome = await runner.run_now()

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error.code == ErrorCode.SYNTHESIS_FAILED
    assert not processor.is_processing


@pytest.mark.asyncio
async def test_thermal_abort_outcome(config, thermal, probe, fragment_factory):
    storage = MagicMock(spec=DreamStorage)
    processor = DreamProcessor(config, storage, thermal=thermal)
    runner = IdleSynthesisRunner(await _collector(fragment_factory), processor)
    probe.cpu = 0.95

    outcome = await runner.run_now()

    assert outcome.status == OutcomeStatus.ABORTED
    assert outcome.error.code == ErrorCode.SYNTHESIS_THERMAL_ABORT
    storage.commit_synthesis.assert_not_awaited()


@pytest.mark.asyncio
async def test_schedule_resumes_from_latest_stored_report():
    storage = MagicMock(spec=DreamStorage)
    storage.get_recent_reports = AsyncMock(
        return_value=[MagicMock(start_time=time.time() - 10.0, synthesis_id="abc")]
    )

    schedule = await MinimumIntervalSchedule.from_storage(storage, 60.0)

    storage.get_recent_reports.assert_awaited_once_with(1)
    assert 45.0 < schedule.time_until_next_allowed() <= 50.0


@pytest.mark.asyncio
async def test_schedule_without_reports_allows_a_run():
    storage = MagicMock(spec=DreamStorage)
    storage.get_recent_reports = AsyncMock(return_value=[])

    schedule = await MinimumIntervalSchedule.from_storage(storage, 60.0)

    assert schedule.time_until_next_allowed() == 0.0
