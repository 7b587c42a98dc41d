"""
nocturne/dreams/scheduler.py

The seam between the host's idle/activity manager and the synthesis engine.

The host decides *when* to run; this module decides whether a run is
allowed yet and turns every run result, including rejections and failures,
into a SynthesisOutcome instead of an exception.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from nocturne.dreams.models import DreamReport
from nocturne.errors import (
    NocturneError,
    SynthesisAbortedError,
    SynthesisBusyError,
    SynthesisTooSoonError,
    handle_error,
)

if TYPE_CHECKING:
    from nocturne.dreams.collector import MemoryFragmentCollector
    from nocturne.dreams.processor import DreamProcessor
    from nocturne.dreams.storage import DreamStorage

logger = logging.getLogger(__name__)


class SynthesisSchedule(ABC):
    """Minimum-interval policy between successful run starts."""

    @abstractmethod
    def now(self) -> float:
        ...

    @abstractmethod
    def time_until_next_allowed(self) -> float:
        """Seconds until the next run may start; 0 when one may start now."""

    @abstractmethod
    def record_start(self, at: float) -> None:
        """Remember the start time of a run that completed successfully."""


class MinimumIntervalSchedule(SynthesisSchedule):
    def __init__(self, min_interval_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._last_start: Optional[float] = None

    def now(self) -> float:
        return self._clock()

    def time_until_next_allowed(self) -> float:
        if self._last_start is None:
            return 0.0
        return max(0.0, self._last_start + self.min_interval_seconds - self._clock())

    def record_start(self, at: float) -> None:
        self._last_start = at

    @classmethod
    async def from_storage(cls, storage: "DreamStorage", min_interval_seconds: float) -> "MinimumIntervalSchedule":
        """
        Wall-clock schedule resumed from the newest persisted report, so the
        interval also holds across separate processes sharing one store.
        """
        schedule = cls(min_interval_seconds, clock=time.time)
        reports = await storage.get_recent_reports(1)
        if reports:
            schedule.record_start(reports[0].start_time)
            logger.debug(f"[SynthesisSchedule] Resuming after report {reports[0].synthesis_id}")
        return schedule


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    BUSY = "busy"
    TOO_SOON = "too_soon"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class SynthesisOutcome:
    status: OutcomeStatus
    report: Optional[DreamReport] = None
    error: Optional[NocturneError] = None
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED


class IdleSynthesisRunner:
    """
    Runs a synthesis over the collector's recent fragments on the host's cue.

    run_now() never raises: busy/too-soon rejections, aborts and failures all
    come back as outcomes, each with a log entry.
    """

    def __init__(self, collector: "MemoryFragmentCollector", processor: "DreamProcessor"):
        self.collector = collector
        self.processor = processor

    def time_until_next_allowed(self) -> float:
        return self.processor.time_until_next_allowed()

    async def run_now(self, limit: Optional[int] = None) -> SynthesisOutcome:
        if self.processor.is_processing:
            logger.info("[IdleSynthesisRunner] Synthesis already in progress")
            return SynthesisOutcome(OutcomeStatus.BUSY, error=SynthesisBusyError(self.processor.active_synthesis_id))

        wait = self.time_until_next_allowed()
        if wait > 0:
            logger.info(f"[IdleSynthesisRunner] Too soon, next run allowed in {wait:.1f}s")
            return SynthesisOutcome(OutcomeStatus.TOO_SOON, error=SynthesisTooSoonError(wait), retry_after=wait)

        batch_limit = limit or self.processor.config.synthesis.fragment_batch_limit
        try:
            fragments = await self.collector.get_recent_fragments(batch_limit)
            report = await self.processor.perform_synthesis(fragments)
        except SynthesisBusyError as e:
            logger.info(f"[IdleSynthesisRunner] Rejected: {e}")
            return SynthesisOutcome(OutcomeStatus.BUSY, error=e)
        except SynthesisTooSoonError as e:
            logger.info(f"[IdleSynthesisRunner] Rejected: {e}")
            return SynthesisOutcome(OutcomeStatus.TOO_SOON, error=e, retry_after=e.retry_after)
        except SynthesisAbortedError as e:
            logger.warning(f"[IdleSynthesisRunner] Run aborted: {e.reason}")
            return SynthesisOutcome(OutcomeStatus.ABORTED, error=e)
        except NocturneError as e:
            logger.error(f"[IdleSynthesisRunner] Run failed: {e}")
            return SynthesisOutcome(OutcomeStatus.FAILED, error=e)
        except Exception as e:
            error = handle_error(e, "Synthesis run failed")
            logger.error(f"[IdleSynthesisRunner] Run failed: {error}", exc_info=True)
            return SynthesisOutcome(OutcomeStatus.FAILED, error=error)

        self.collector.clear_processed_fragments(fragments)
        return SynthesisOutcome(OutcomeStatus.COMPLETED, report=report)
