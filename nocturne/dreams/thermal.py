"""
nocturne/dreams/thermal.py

Resource-pressure controller for the CPU-heavy synthesis stages.

Three signals (CPU utilization, process memory, average task latency) are
compared against configurable thresholds; the worst one decides the thermal
level. High and critical levels activate throttling, and a sustained run of
high/critical readings pulls the emergency brake by cancelling every
registered CancellationToken.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from typing import Awaitable, Callable, Deque, Dict, Iterator, List, Optional, Tuple

import psutil

from nocturne.base.config import ThermalConfig
from nocturne.dreams.models import ThermalState, ThermalStatus
from nocturne.observer.bus import EventBus
from nocturne.observer.events import ThermalAlert
from nocturne.utils.async_helpers import CancellationToken

logger = logging.getLogger(__name__)

EMERGENCY_REASON = "Critical thermal state - emergency shutdown"

_MULTIPLIERS = {
    ThermalState.NOMINAL: 1.0,
    ThermalState.FAIR: 1.0,
    ThermalState.HIGH: 2.0,
    ThermalState.CRITICAL: 4.0,
}
EMERGENCY_MULTIPLIER = 10.0

# Task timings older than these windows are ignored
CPU_WINDOW_SECONDS = 1.0
LATENCY_WINDOW_SECONDS = 5.0
LATENCY_SAMPLES = 10

# Event-loop lag probe: this much average delay per yield counts as 100% busy
LOOP_LAG_SATURATION_MS = 50.0
LOOP_LAG_ITERATIONS = 5


class ResourceProbe(ABC):
    """Source of host resource readings."""

    @abstractmethod
    def cpu_utilization(self) -> Optional[float]:
        """Fraction of CPU in use, or None when the host cannot tell."""

    @abstractmethod
    def memory_mb(self) -> float:
        """Resident memory of this process in MB."""


class PsutilProbe(ResourceProbe):
    def __init__(self):
        self._process = psutil.Process()
        # The first cpu_times_percent() call has no baseline and reports zeros
        psutil.cpu_times_percent(interval=None)

    def cpu_utilization(self) -> Optional[float]:
        try:
            times = psutil.cpu_times_percent(interval=None)
        except (psutil.Error, OSError) as e:
            logger.debug(f"[ThermalController] CPU times unavailable: {e}")
            return None
        idle = getattr(times, "idle", None)
        if idle is None:
            return None
        return min(1.0, max(0.0, 1.0 - idle / 100.0))

    def memory_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)


class ThermalThrottlingController:
    def __init__(
        self,
        config: Optional[ThermalConfig] = None,
        probe: Optional[ResourceProbe] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        bus: Optional[EventBus] = None,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self.config = config or ThermalConfig()
        self.probe = probe or PsutilProbe()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._bus = bus
        self._timer = timer

        self.current_state = ThermalState.NOMINAL
        self.throttling_active = False
        self.cooling_multiplier = 1.0
        self.consecutive_high_readings = 0
        self.emergency_active = False

        self._cpu_history: Deque[float] = deque(maxlen=self.config.history_size)
        self._memory_history: Deque[float] = deque(maxlen=self.config.history_size)
        self._task_timings: Deque[Tuple[float, float]] = deque(maxlen=256)
        self._last_measurement: Optional[float] = None
        self._last_status: Optional[ThermalStatus] = None
        self._tokens: List[CancellationToken] = []

        # Per-run metrics, see reset_run_metrics()
        self.thermal_events = 0
        self.peak_memory_mb = 0.0

    # ------------------------------------------------------------------
    # Cancellation wiring
    # ------------------------------------------------------------------

    def register_cancellation(self, token: CancellationToken) -> None:
        if token not in self._tokens:
            self._tokens.append(token)

    def unregister_cancellation(self, token: CancellationToken) -> None:
        if token in self._tokens:
            self._tokens.remove(token)

    # ------------------------------------------------------------------
    # Task timing
    # ------------------------------------------------------------------

    def record_task(self, duration_ms: float) -> None:
        self._task_timings.append((self._clock(), max(0.0, duration_ms)))

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        """Time a block of work and feed it into the CPU and latency estimates."""
        start = self._timer()
        try:
            yield
        finally:
            duration_ms = (self._timer() - start) * 1000.0
            self.record_task(duration_ms)
            if duration_ms > self.config.latency_fair_ms:
                logger.debug(f"[ThermalController] Long task {name}: {duration_ms:.1f}ms")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> ThermalStatus:
        """Current thermal status; at most one fresh measurement per sample interval."""
        now = self._clock()
        if (
            self._last_status is not None
            and self._last_measurement is not None
            and (now - self._last_measurement) * 1000.0 < self.config.sample_interval_ms
        ):
            return self._last_status

        self._last_measurement = now
        cpu = await self._measure_cpu(now)
        memory = self.probe.memory_mb()
        latency = self._task_latency(now)

        self._cpu_history.append(cpu)
        self._memory_history.append(memory)
        self.peak_memory_mb = max(self.peak_memory_mb, memory)

        previous_state = self.current_state
        self.current_state = self._classify(cpu, memory, latency)
        self._update_strategy()

        status = ThermalStatus(
            state=self.current_state,
            cpu_utilization=cpu,
            memory_mb=memory,
            task_latency_ms=latency,
            throttling_active=self.throttling_active,
            cooling_delay_ms=self._cooling_delay(),
            timestamp=now,
        )
        self._last_status = status

        if self.current_state.severity >= ThermalState.HIGH.severity:
            self.thermal_events += 1
            logger.warning(
                f"[ThermalController] Elevated thermal state {self.current_state.value}: "
                f"cpu={cpu:.2f} memory={memory:.0f}MB latency={latency:.0f}ms"
            )
            if previous_state != self.current_state or self.emergency_active:
                self._alert(status)

        return status

    async def apply_cooling(self) -> float:
        """Sleep for the recommended cooling delay. Returns the delay applied in ms."""
        status = await self.get_status()
        if status.cooling_delay_ms > 0:
            logger.debug(
                f"[ThermalController] Applying cooling delay {status.cooling_delay_ms:.0f}ms "
                f"({status.state.value})"
            )
            await self._sleep(status.cooling_delay_ms / 1000.0)
        return status.cooling_delay_ms

    def should_abort(self) -> bool:
        return (
            self.current_state == ThermalState.CRITICAL
            and self.consecutive_high_readings > self.config.abort_readings
        )

    def get_statistics(self) -> Dict[str, object]:
        cpu = list(self._cpu_history)
        memory = list(self._memory_history)
        return {
            "current_state": self.current_state.value,
            "avg_cpu": sum(cpu) / len(cpu) if cpu else 0.0,
            "avg_memory_mb": sum(memory) / len(memory) if memory else 0.0,
            "throttling_active": self.throttling_active,
            "consecutive_high_readings": self.consecutive_high_readings,
            "emergency_active": self.emergency_active,
            "thermal_events": self.thermal_events,
            "peak_memory_mb": self.peak_memory_mb,
        }

    def reset_run_metrics(self) -> None:
        self.thermal_events = 0
        self.peak_memory_mb = 0.0
        self._last_status = None
        self._last_measurement = None

    def dispose(self) -> None:
        self._tokens.clear()
        self._task_timings.clear()
        self._cpu_history.clear()
        self._memory_history.clear()
        self._last_status = None
        self._last_measurement = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _measure_cpu(self, now: float) -> float:
        recent = [d for ts, d in self._task_timings if now - ts <= CPU_WINDOW_SECONDS]
        if recent:
            return min(1.0, sum(recent) / (CPU_WINDOW_SECONDS * 1000.0))

        cpu = self.probe.cpu_utilization()
        if cpu is not None:
            return cpu

        return await self._measure_loop_lag()

    @staticmethod
    async def _measure_loop_lag() -> float:
        delays = []
        for _ in range(LOOP_LAG_ITERATIONS):
            start = time.perf_counter()
            await asyncio.sleep(0)
            delays.append((time.perf_counter() - start) * 1000.0)
        return min(1.0, (sum(delays) / len(delays)) / LOOP_LAG_SATURATION_MS)

    def _task_latency(self, now: float) -> float:
        recent = [d for ts, d in self._task_timings if now - ts <= LATENCY_WINDOW_SECONDS]
        recent = recent[-LATENCY_SAMPLES:]
        return sum(recent) / len(recent) if recent else 0.0

    def _classify(self, cpu: float, memory_mb: float, latency_ms: float) -> ThermalState:
        cfg = self.config
        if cpu >= cfg.cpu_critical or memory_mb >= cfg.memory_critical_mb or latency_ms > cfg.latency_critical_ms:
            return ThermalState.CRITICAL
        if cpu >= cfg.cpu_high or memory_mb >= cfg.memory_high_mb or latency_ms > cfg.latency_high_ms:
            return ThermalState.HIGH
        if cpu >= cfg.cpu_fair or memory_mb >= cfg.memory_fair_mb or latency_ms > cfg.latency_fair_ms:
            return ThermalState.FAIR
        return ThermalState.NOMINAL

    def _update_strategy(self) -> None:
        previously_throttled = self.throttling_active
        state = self.current_state

        self.throttling_active = state in (ThermalState.HIGH, ThermalState.CRITICAL)
        self.cooling_multiplier = _MULTIPLIERS[state]
        if self.throttling_active:
            self.consecutive_high_readings += 1
        elif state == ThermalState.FAIR:
            self.consecutive_high_readings = max(0, self.consecutive_high_readings - 1)
        else:
            self.consecutive_high_readings = 0

        self.emergency_active = self.consecutive_high_readings > self.config.emergency_readings
        if self.emergency_active:
            self.cooling_multiplier = EMERGENCY_MULTIPLIER
            self.throttling_active = True
            logger.error(
                f"[ThermalController] Emergency thermal shutdown triggered after "
                f"{self.consecutive_high_readings} consecutive high readings"
            )
            for token in list(self._tokens):
                token.cancel(EMERGENCY_REASON)

        if self.throttling_active != previously_throttled:
            logger.info(
                f"[ThermalController] Throttling {'enabled' if self.throttling_active else 'disabled'} "
                f"(state={state.value}, multiplier={self.cooling_multiplier})"
            )

    def _cooling_delay(self) -> float:
        if not self.throttling_active:
            return 0.0
        jitter = self._rng.uniform(-self.config.cooling_jitter_ms, self.config.cooling_jitter_ms)
        return float(max(0.0, round(self.config.cooling_base_ms * self.cooling_multiplier + jitter)))

    def _alert(self, status: ThermalStatus) -> None:
        if self._bus is None:
            return
        self._bus.publish(ThermalAlert(
            state=status.state.value,
            cpu_utilization=status.cpu_utilization,
            cooling_delay_ms=status.cooling_delay_ms,
            emergency=self.emergency_active,
        ))
