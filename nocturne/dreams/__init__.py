"""Module __init__: the dream-phase correlation pipeline."""
#
# PURPOSE:
# Everything that runs while the host is idle: fragment collection,
# vectorization, clustering, CDN false-positive suppression, thermal
# throttling, persistence and the orchestrating DreamProcessor.
#
# KEY MODULES:
# - **processor.py**: DreamProcessor, the synthesis pipeline
# - **collector.py**: MemoryFragmentCollector, raw events -> fragments
# - **vectorizer.py** / **clustering.py**: the numeric core
# - **cdn.py**: CDNWhitelist, shared-infrastructure guard
# - **thermal.py**: ThermalThrottlingController
# - **storage.py**: DreamStorage, quota-bounded SQLite store
# - **scheduler.py**: host-facing scheduling seam
#
from .models import (
    DreamReport,
    MemoryFragment,
    ProtocolSignature,
    ResourceTiming,
    SignatureInfrastructure,
    SurveillanceSignature,
    ThermalState,
    ThermalStatus,
    fragment_defect,
)
from .vectorizer import SignatureVectorizer
from .clustering import AdaptiveResonanceClustering, Cluster, ClusterOptions, ClusterResult
from .cdn import CDNWhitelist
from .thermal import PsutilProbe, ResourceProbe, ThermalThrottlingController
from .compression import Compressor, ZlibCompressor
from .storage import DreamStorage
from .collector import MemoryFragmentCollector
from .scheduler import (
    IdleSynthesisRunner,
    MinimumIntervalSchedule,
    OutcomeStatus,
    SynthesisOutcome,
    SynthesisSchedule,
)
from .processor import DreamProcessor

__all__ = [
    "DreamReport",
    "MemoryFragment",
    "ProtocolSignature",
    "ResourceTiming",
    "SignatureInfrastructure",
    "SurveillanceSignature",
    "ThermalState",
    "ThermalStatus",
    "fragment_defect",
    "SignatureVectorizer",
    "AdaptiveResonanceClustering",
    "Cluster",
    "ClusterOptions",
    "ClusterResult",
    "CDNWhitelist",
    "PsutilProbe",
    "ResourceProbe",
    "ThermalThrottlingController",
    "Compressor",
    "ZlibCompressor",
    "DreamStorage",
    "MemoryFragmentCollector",
    "IdleSynthesisRunner",
    "MinimumIntervalSchedule",
    "OutcomeStatus",
    "SynthesisOutcome",
    "SynthesisSchedule",
    "DreamProcessor",
]
