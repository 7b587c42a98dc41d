# ============================================================================
# nocturne/base/config.py
# Engine Configuration Management
# ============================================================================
#
# PURPOSE:
# Every tunable of the correlation engine lives here as a named, validated
# value with a documented default: clustering vigilance, thermal thresholds,
# storage caps, the minimum synthesis interval, and so on.
#
# KEY CONCEPTS:
# 1. Dataclasses: one frozen dataclass per concern
# 2. Environment Variables: NOCTURNE_* overrides (see NocturneConfig.from_env)
# 3. Validation: out-of-range values raise ConfigError at construction time
# 4. Explicit wiring: config objects are passed to components, never looked up
#
# CALIBRATION:
# The clustering and promotion defaults (0.85 vigilance, 0.85 promotion,
# 0.3/0.4/0.3 confidence weights) are hand-tuned. Treat them as starting
# points to calibrate against labeled data.
#
# ============================================================================

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from nocturne.errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)


def _require(condition: bool, message: str, **details) -> None:
    if not condition:
        raise ConfigError(message, details=details or None)


def _unit(name: str, value: float) -> None:
    _require(0.0 <= value <= 1.0, f"{name} must be within [0, 1]", **{name: value})


def _ascending(name: str, *values: float) -> None:
    _require(
        all(a < b for a, b in zip(values, values[1:])),
        f"{name} thresholds must be strictly ascending",
        **{name: list(values)},
    )


# ============================================================================
# Clustering
# ============================================================================

@dataclass(frozen=True)
class ClusteringConfig:
    # Similarity a vector needs to resonate with a cluster centroid
    vigilance: float = 0.85
    # Weight of a new member when moving the centroid
    learning_rate: float = 0.1
    max_iterations: int = 100
    # Hard cap on live clusters during one run
    max_clusters: int = 100
    # Clusters merge when centroid similarity exceeds vigilance + merge_margin
    merge_margin: float = 0.1

    # Pruning cadence and rules
    prune_interval: int = 10
    singleton_grace_iterations: int = 20
    prune_confidence: float = 0.2

    # Output filter
    min_cluster_size: int = 2
    output_min_confidence: float = 0.5

    # Confidence formula
    size_weight: float = 0.3
    recency_weight: float = 0.4
    resonance_weight: float = 0.3
    size_cap: int = 10
    resonance_cap: int = 10
    recency_horizon_seconds: float = 3600.0
    singleton_confidence_cap: float = 0.1

    def __post_init__(self):
        _unit("vigilance", self.vigilance)
        _require(0.0 < self.learning_rate <= 1.0, "learning_rate must be within (0, 1]",
                 learning_rate=self.learning_rate)
        _require(self.max_iterations >= 1, "max_iterations must be positive")
        _require(self.max_clusters >= 1, "max_clusters must be positive")
        _require(self.prune_interval >= 1, "prune_interval must be positive")
        _require(self.min_cluster_size >= 2, "min_cluster_size must be at least 2")
        _unit("merge_margin", self.merge_margin)
        _unit("prune_confidence", self.prune_confidence)
        _unit("output_min_confidence", self.output_min_confidence)
        _unit("singleton_confidence_cap", self.singleton_confidence_cap)
        weights = self.size_weight + self.recency_weight + self.resonance_weight
        _require(abs(weights - 1.0) < 1e-6, "confidence weights must sum to 1",
                 size=self.size_weight, recency=self.recency_weight,
                 resonance=self.resonance_weight)
        _require(self.size_cap >= 1 and self.resonance_cap >= 1, "caps must be positive")
        _require(self.recency_horizon_seconds > 0, "recency_horizon_seconds must be positive")


# ============================================================================
# Vectorizer
# ============================================================================

@dataclass(frozen=True)
class VectorizerConfig:
    # Initial running statistics, replaced by update_statistics()
    friction_mean: float = 100.0
    friction_std: float = 50.0
    latency_mean: float = 200.0
    latency_std: float = 100.0
    # Tracker projection entries below this are zeroed
    tracker_sparsity_threshold: float = 0.3
    # Number of resource durations fed to the DFT
    fft_window: int = 16
    # Batches smaller than this do not recalibrate the statistics
    min_calibration_samples: int = 10

    def __post_init__(self):
        _require(self.friction_std > 0 and self.latency_std > 0, "std defaults must be positive")
        _unit("tracker_sparsity_threshold", self.tracker_sparsity_threshold)
        _require(self.fft_window >= 2, "fft_window must be at least 2")
        _require(self.min_calibration_samples >= 2, "min_calibration_samples must be at least 2")


# ============================================================================
# Thermal Controller
# ============================================================================

@dataclass(frozen=True)
class ThermalConfig:
    # CPU utilization thresholds (fraction of capacity)
    cpu_fair: float = 0.4
    cpu_high: float = 0.6
    cpu_critical: float = 0.8

    # Process memory thresholds in MB
    memory_fair_mb: float = 256.0
    memory_high_mb: float = 512.0
    memory_critical_mb: float = 1024.0

    # Average recent task latency thresholds in ms
    latency_fair_ms: float = 100.0
    latency_high_ms: float = 200.0
    latency_critical_ms: float = 300.0

    # At most one fresh measurement per interval
    sample_interval_ms: float = 100.0
    cooling_base_ms: float = 1000.0
    cooling_jitter_ms: float = 100.0
    # Consecutive high/critical readings before the emergency brake
    emergency_readings: int = 10
    # Consecutive readings after which should_abort() turns true in critical state
    abort_readings: int = 5
    history_size: int = 10

    def __post_init__(self):
        _ascending("cpu", self.cpu_fair, self.cpu_high, self.cpu_critical)
        _ascending("memory", self.memory_fair_mb, self.memory_high_mb, self.memory_critical_mb)
        _ascending("latency", self.latency_fair_ms, self.latency_high_ms, self.latency_critical_ms)
        _require(self.sample_interval_ms >= 0, "sample_interval_ms must not be negative")
        _require(self.cooling_base_ms >= 0, "cooling_base_ms must not be negative")
        _require(0 <= self.cooling_jitter_ms <= self.cooling_base_ms,
                 "cooling_jitter_ms must be within [0, cooling_base_ms]")
        _require(self.emergency_readings >= 1 and self.abort_readings >= 1,
                 "reading counters must be positive")
        _require(self.history_size >= 1, "history_size must be positive")


# ============================================================================
# CDN Whitelist
# ============================================================================

@dataclass(frozen=True)
class CDNConfig:
    max_learned_domains: int = 1000
    eviction_batch: int = 100
    learn_min_confidence: float = 0.8

    def __post_init__(self):
        _require(self.max_learned_domains >= 1, "max_learned_domains must be positive")
        _require(1 <= self.eviction_batch <= self.max_learned_domains,
                 "eviction_batch must be within [1, max_learned_domains]")
        _unit("learn_min_confidence", self.learn_min_confidence)


# ============================================================================
# Fragment Collector
# ============================================================================

@dataclass(frozen=True)
class CollectorConfig:
    max_fragments: int = 1000
    max_age_seconds: float = 3600.0
    aggregation_window_seconds: float = 60.0
    batch_persist_size: int = 100
    eviction_ratio: float = 0.2
    cleanup_interval_seconds: float = 300.0

    def __post_init__(self):
        _require(self.max_fragments >= 1, "max_fragments must be positive")
        _require(self.max_age_seconds > 0, "max_age_seconds must be positive")
        _require(self.aggregation_window_seconds >= 0, "aggregation_window_seconds must not be negative")
        _require(self.batch_persist_size >= 1, "batch_persist_size must be positive")
        _require(0.0 < self.eviction_ratio <= 1.0, "eviction_ratio must be within (0, 1]")
        _require(self.cleanup_interval_seconds > 0, "cleanup_interval_seconds must be positive")


# ============================================================================
# Persistent Store
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    # Base directory for the analysis database (~/.nocturne by default)
    base_dir: Path = field(default_factory=lambda: Path.home() / ".nocturne")
    db_name: str = "dreams.db"

    # Per-table record caps
    max_reports: int = 100
    max_signatures: int = 500
    max_fragments: int = 1000

    # Global ceiling; above it every table loses its oldest half
    max_storage_mb: float = 50.0
    aggressive_cleanup_ratio: float = 0.5
    # Quota re-check cadence, in write operations
    quota_check_every: int = 50

    # Payloads above this size are compressed
    compression_threshold_bytes: int = 100 * 1024

    @property
    def db_path(self) -> Path:
        return self.base_dir / self.db_name

    def __post_init__(self):
        _require(min(self.max_reports, self.max_signatures, self.max_fragments) >= 1,
                 "table caps must be positive")
        _require(self.max_storage_mb > 0, "max_storage_mb must be positive")
        _require(0.0 < self.aggressive_cleanup_ratio <= 1.0,
                 "aggressive_cleanup_ratio must be within (0, 1]")
        _require(self.quota_check_every >= 1, "quota_check_every must be positive")
        _require(self.compression_threshold_bytes >= 0, "compression_threshold_bytes must not be negative")


# ============================================================================
# Synthesis Orchestrator
# ============================================================================

@dataclass(frozen=True)
class SynthesisConfig:
    # Minimum time between successful run starts
    min_interval_seconds: float = 60.0
    # Cluster confidence required to commit a surveillance signature
    promotion_confidence: float = 0.85
    # Thermal re-check cadence during validation (validated fragments)
    thermal_check_every: int = 100
    # Yield/cancellation checkpoint cadence during validation and vectorization
    checkpoint_every: int = 50
    # Fraction of members that must carry a tracker for it to join the fingerprint
    tracker_share_ratio: float = 0.5
    # Default number of fragments a scheduled run pulls from the collector
    fragment_batch_limit: int = 500

    def __post_init__(self):
        _require(self.min_interval_seconds >= 0, "min_interval_seconds must not be negative")
        _unit("promotion_confidence", self.promotion_confidence)
        _require(self.thermal_check_every >= 1, "thermal_check_every must be positive")
        _require(self.checkpoint_every >= 1, "checkpoint_every must be positive")
        _unit("tracker_share_ratio", self.tracker_share_ratio)
        _require(self.fragment_batch_limit >= 1, "fragment_batch_limit must be positive")


# ============================================================================
# Logging
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = False
    file_name: str = "nocturne.log"
    max_file_size_mb: int = 10
    backup_count: int = 5

    def __post_init__(self):
        _require(
            self.level.upper() in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
            "unknown log level",
            level=self.level,
        )


@dataclass(frozen=True)
class NocturneConfig:
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    vectorizer: VectorizerConfig = field(default_factory=VectorizerConfig)
    thermal: ThermalConfig = field(default_factory=ThermalConfig)
    cdn: CDNConfig = field(default_factory=CDNConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls) -> "NocturneConfig":
        try:
            clustering = ClusteringConfig(
                vigilance=float(os.getenv("NOCTURNE_VIGILANCE", "0.85")),
                learning_rate=float(os.getenv("NOCTURNE_LEARNING_RATE", "0.1")),
                max_iterations=int(os.getenv("NOCTURNE_MAX_ITERATIONS", "100")),
            )

            thermal = ThermalConfig(
                cpu_fair=float(os.getenv("NOCTURNE_CPU_FAIR", "0.4")),
                cpu_high=float(os.getenv("NOCTURNE_CPU_HIGH", "0.6")),
                cpu_critical=float(os.getenv("NOCTURNE_CPU_CRITICAL", "0.8")),
                memory_fair_mb=float(os.getenv("NOCTURNE_MEMORY_FAIR_MB", "256")),
                memory_high_mb=float(os.getenv("NOCTURNE_MEMORY_HIGH_MB", "512")),
                memory_critical_mb=float(os.getenv("NOCTURNE_MEMORY_CRITICAL_MB", "1024")),
            )

            base_dir = Path(os.getenv("NOCTURNE_DATA_DIR", str(Path.home() / ".nocturne")))
            storage = StorageConfig(
                base_dir=base_dir,
                max_reports=int(os.getenv("NOCTURNE_MAX_REPORTS", "100")),
                max_signatures=int(os.getenv("NOCTURNE_MAX_SIGNATURES", "500")),
                max_fragments=int(os.getenv("NOCTURNE_MAX_FRAGMENTS", "1000")),
                max_storage_mb=float(os.getenv("NOCTURNE_MAX_STORAGE_MB", "50")),
            )

            synthesis = SynthesisConfig(
                min_interval_seconds=float(os.getenv("NOCTURNE_MIN_INTERVAL", "60")),
            )

            log = LogConfig(
                level=os.getenv("NOCTURNE_LOG_LEVEL", "INFO"),
                file_enabled=os.getenv("NOCTURNE_LOG_FILE", "false").lower() == "true",
            )
        except ValueError as e:
            raise ConfigError(
                f"Malformed NOCTURNE_* environment value: {e}", code=ErrorCode.CONFIG_PARSE_ERROR
            ) from e

        return cls(
            clustering=clustering,
            thermal=thermal,
            storage=storage,
            synthesis=synthesis,
            log=log,
        )


def setup_logging(config: Optional[NocturneConfig] = None) -> None:
    cfg = config or NocturneConfig()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        cfg.storage.base_dir.mkdir(parents=True, exist_ok=True)
        log_path = cfg.storage.base_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, cfg.log.level.upper()),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
