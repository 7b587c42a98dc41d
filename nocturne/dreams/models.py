"""
nocturne/dreams/models.py

Data model of the correlation engine: fragments in, signatures and reports out.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProtocolSignature(str, Enum):
    H3 = "h3"
    H2 = "h2"
    HTTP1 = "http1"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "ProtocolSignature":
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.UNKNOWN
        text = str(value).strip().lower().replace("http/", "h").replace("-", "")
        if text in ("h3", "h3q", "quic"):
            return cls.H3
        if text in ("h2", "h2c", "h2.0"):
            return cls.H2
        if text in ("h1", "h1.0", "h1.1", "http1", "http1.1", "http1.0"):
            return cls.HTTP1
        return cls.UNKNOWN


class ResourceTiming(BaseModel):
    name: str
    duration: float = 0.0
    protocol: Optional[str] = None


class MemoryFragment(BaseModel):
    """
    One domain's aggregated observation over a short window.

    Raw capture records may carry negative or missing values; use
    fragment_defect() before letting a fragment anywhere near vectorization.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    domain: str
    timestamp: float
    friction: float = 0.0
    latency: float = 0.0
    trackers: Set[str] = Field(default_factory=set)
    hidden_elements: List[Any] = Field(default_factory=list)
    protocol_signature: ProtocolSignature = ProtocolSignature.UNKNOWN
    resource_timings: List[ResourceTiming] = Field(default_factory=list)

    @field_validator("protocol_signature", mode="before")
    @classmethod
    def normalize_protocol(cls, v: Any) -> ProtocolSignature:
        return ProtocolSignature.parse(v)

    @field_validator("domain")
    @classmethod
    def strip_domain(cls, v: str) -> str:
        return v.strip().lower()


def fragment_defect(fragment: MemoryFragment) -> Optional[str]:
    """Return why a fragment must not be analysed, or None when it is usable."""
    if not fragment.domain:
        return "missing domain"
    if not fragment.timestamp or not math.isfinite(fragment.timestamp) or fragment.timestamp <= 0:
        return "missing timestamp"
    if not math.isfinite(fragment.friction) or fragment.friction < 0:
        return "negative friction"
    if not math.isfinite(fragment.latency) or fragment.latency < 0:
        return "negative latency"
    return None


class SignatureInfrastructure(BaseModel):
    tracker_fingerprint: str = Field(min_length=1)
    protocol_consistency: float = Field(ge=0.0, le=1.0)
    cdn_pattern: Optional[str] = None


class SurveillanceSignature(BaseModel):
    """A committed discovery of domains believed to share tracking infrastructure."""

    id: str = Field(default_factory=lambda: f"sig_{uuid.uuid4().hex}")
    domains: List[str] = Field(min_length=2)
    confidence: float = Field(ge=0.0, le=1.0)
    infrastructure: SignatureInfrastructure
    impact: float = Field(ge=0.0, le=1.0)
    discovered_at: float
    last_seen: float


class DreamReport(BaseModel):
    """Summary of one synthesis run. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    synthesis_id: str
    start_time: float
    end_time: float
    fragments_analyzed: int = Field(ge=0)
    fragments_rejected: int = Field(ge=0, default=0)
    clusters_identified: int = Field(ge=0)
    shadow_entities: List[SurveillanceSignature] = Field(default_factory=list)
    cpu_utilization: float = Field(ge=0.0, le=1.0, default=0.0)
    memory_peak_mb: float = Field(ge=0.0, default=0.0)
    thermal_events: int = Field(ge=0, default=0)

    @property
    def duration_ms(self) -> float:
        return max(0.0, (self.end_time - self.start_time) * 1000.0)


class ThermalState(str, Enum):
    NOMINAL = "nominal"
    FAIR = "fair"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    ThermalState.NOMINAL: 0,
    ThermalState.FAIR: 1,
    ThermalState.HIGH: 2,
    ThermalState.CRITICAL: 3,
}


@dataclass(frozen=True)
class ThermalStatus:
    state: ThermalState
    cpu_utilization: float
    memory_mb: float
    task_latency_ms: float
    throttling_active: bool
    cooling_delay_ms: float
    timestamp: float
