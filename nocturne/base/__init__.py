from .config import (
    CDNConfig,
    ClusteringConfig,
    CollectorConfig,
    LogConfig,
    NocturneConfig,
    StorageConfig,
    SynthesisConfig,
    ThermalConfig,
    VectorizerConfig,
    setup_logging,
)

__all__ = [
    "CDNConfig",
    "ClusteringConfig",
    "CollectorConfig",
    "LogConfig",
    "NocturneConfig",
    "StorageConfig",
    "SynthesisConfig",
    "ThermalConfig",
    "VectorizerConfig",
    "setup_logging",
]
