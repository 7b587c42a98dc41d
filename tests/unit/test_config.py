import logging

import pytest

from nocturne.base.config import (
    ClusteringConfig,
    NocturneConfig,
    StorageConfig,
    ThermalConfig,
    setup_logging,
)
from nocturne.errors import ConfigError, ErrorCode


def test_defaults():
    config = NocturneConfig()
    assert config.clustering.vigilance == 0.85
    assert config.clustering.learning_rate == 0.1
    assert config.clustering.max_iterations == 100
    assert config.thermal.cpu_critical == 0.8
    assert config.storage.max_signatures == 500
    assert config.synthesis.min_interval_seconds == 60
    assert config.synthesis.promotion_confidence == 0.85


def test_db_path(tmp_path):
    assert StorageConfig(base_dir=tmp_path).db_path == tmp_path / "dreams.db"


@pytest.mark.parametrize(
    "factory",
    [
        lambda: ClusteringConfig(vigilance=1.5),
        lambda: ClusteringConfig(learning_rate=0.0),
        lambda: ClusteringConfig(size_weight=0.5, recency_weight=0.5, resonance_weight=0.5),
        lambda: ThermalConfig(cpu_fair=0.7, cpu_high=0.6),
        lambda: StorageConfig(max_storage_mb=0),
    ],
)
def test_invalid_values_raise(factory):
    with pytest.raises(ConfigError) as excinfo:
        factory()
    assert excinfo.value.code == ErrorCode.CONFIG_INVALID


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("NOCTURNE_VIGILANCE", "0.9")
    monkeypatch.setenv("NOCTURNE_MAX_ITERATIONS", "25")
    monkeypatch.setenv("NOCTURNE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("NOCTURNE_MIN_INTERVAL", "5")
    monkeypatch.setenv("NOCTURNE_LOG_LEVEL", "DEBUG")

    config = NocturneConfig.from_env()

    assert config.clustering.vigilance == 0.9
    assert config.clustering.max_iterations == 25
    assert config.storage.base_dir == tmp_path
    assert config.synthesis.min_interval_seconds == 5.0
    assert config.log.level == "DEBUG"


def test_from_env_malformed(monkeypatch):
    monkeypatch.setenv("NOCTURNE_MAX_ITERATIONS", "lots")
    with pytest.raises(ConfigError) as excinfo:
        NocturneConfig.from_env()
    assert excinfo.value.code == ErrorCode.CONFIG_PARSE_ERROR


def test_from_env_out_of_range(monkeypatch):
    monkeypatch.setenv("NOCTURNE_VIGILANCE", "2")
    with pytest.raises(ConfigError):
        NocturneConfig.from_env()


def test_setup_logging_sets_level():
    root = logging.getLogger()
    previous_level, previous_handlers = root.level, list(root.handlers)
    try:
        setup_logging(NocturneConfig())
        assert root.level == logging.INFO
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)
