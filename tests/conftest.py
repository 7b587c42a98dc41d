"""Pytest configuration for nocturne."""
import os
import random
from typing import List, Optional

import pytest

from nocturne.base.config import NocturneConfig, StorageConfig, SynthesisConfig
from nocturne.dreams.models import MemoryFragment
from nocturne.dreams.thermal import ResourceProbe, ThermalThrottlingController


def pytest_configure():
    # Keep the engine quiet during tests.
    os.environ.setdefault("NOCTURNE_LOG_LEVEL", "WARNING")


class FakeProbe(ResourceProbe):
    """Scriptable resource readings."""

    def __init__(self, cpu: Optional[float] = 0.1, memory: float = 64.0):
        self.cpu = cpu
        self.memory = memory

    def cpu_utilization(self) -> Optional[float]:
        return self.cpu

    def memory_mb(self) -> float:
        return self.memory


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SteppingClock(FakeClock):
    """Advances by a fixed step on every read, so rate limits never kick in."""

    def __init__(self, start: float = 1_000.0, step: float = 1.0):
        super().__init__(start)
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def thermal(probe, sleeps) -> ThermalThrottlingController:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return ThermalThrottlingController(
        probe=probe,
        clock=SteppingClock(),
        sleep=fake_sleep,
        rng=random.Random(7),
    )


@pytest.fixture
def config(tmp_path) -> NocturneConfig:
    return NocturneConfig(
        storage=StorageConfig(base_dir=tmp_path / "nocturne"),
        synthesis=SynthesisConfig(min_interval_seconds=60.0),
    )


def make_fragment(
    domain: str,
    trackers=("analytics.js", "fingerprint.js"),
    friction: float = 100.0,
    latency: float = 200.0,
    protocol: str = "h3",
    timestamp: float = 1_700_000_000.0,
    resource_timings=None,
) -> MemoryFragment:
    return MemoryFragment(
        domain=domain,
        timestamp=timestamp,
        friction=friction,
        latency=latency,
        trackers=set(trackers),
        protocol_signature=protocol,
        resource_timings=resource_timings or [],
    )


@pytest.fixture
def fragment_factory():
    return make_fragment


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def probe_factory():
    return FakeProbe


@pytest.fixture
def stepping_clock() -> SteppingClock:
    return SteppingClock()
