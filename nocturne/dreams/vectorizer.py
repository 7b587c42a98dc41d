"""
nocturne/dreams/vectorizer.py

Turns one MemoryFragment into a fixed-length, unit-length feature vector.
"""
#
# PURPOSE:
# Clustering needs every fragment expressed in the same numeric space. The
# vector is split into named sub-ranges, one per behavioural signal, and the
# whole thing is L2-normalised so cosine similarity compares shape, not scale.
#
# LAYOUT (32 dims):
#   0-2   friction RBF
#   3-9   latency RBF + min/max/mean/std of resource durations
#   10-17 tracker hash projection (sparse)
#   18-21 protocol one-hot (h3, h2, http1, other)
#   22-31 timing pattern: DFT magnitudes, request count, interval stats,
#         protocol diversity flags
#
# Bounded features are squashed with tanh so an absent signal encodes as 0.
#

from __future__ import annotations

import hashlib
import logging
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from nocturne.base.config import VectorizerConfig
from nocturne.dreams.models import MemoryFragment, ProtocolSignature, ResourceTiming
from nocturne.utils.vectors import cosine_similarity as _cosine
from nocturne.utils.vectors import normalize

logger = logging.getLogger(__name__)

FRICTION_DIM = 3
LATENCY_DIM = 7
TRACKER_DIM = 8
PROTOCOL_DIM = 4
TIMING_DIM = 10
DIMENSIONS = FRICTION_DIM + LATENCY_DIM + TRACKER_DIM + PROTOCOL_DIM + TIMING_DIM

FRICTION_SLICE = slice(0, 3)
LATENCY_SLICE = slice(3, 10)
TRACKER_SLICE = slice(10, 18)
PROTOCOL_SLICE = slice(18, 22)
TIMING_SLICE = slice(22, 32)

RBF_CENTERS = np.array([-3.0, 0.0, 3.0])
RBF_WIDTH = 1.0
DFT_COMPONENTS = 4

_PROTOCOL_INDEX = {
    ProtocolSignature.H3: 0,
    ProtocolSignature.H2: 1,
    ProtocolSignature.HTTP1: 2,
}


class SignatureVectorizer:
    """
    Deterministic fragment -> vector encoder.

    The only state is the running friction/latency statistics used for
    normalisation. Recalibrate them between batches with update_statistics(),
    never in the middle of a clustering run.
    """

    def __init__(self, config: Optional[VectorizerConfig] = None):
        self.config = config or VectorizerConfig()
        self.friction_mean = self.config.friction_mean
        self.friction_std = self.config.friction_std
        self.latency_mean = self.config.latency_mean
        self.latency_std = self.config.latency_std

    def vectorize(self, fragment: MemoryFragment) -> np.ndarray:
        """
        Encode a validated fragment.

        Never raises: on an internal failure the zero vector is returned and
        the clustering pass skips it.
        """
        try:
            vector = np.concatenate([
                self._encode_friction(fragment.friction),
                self._encode_latency(fragment.latency, fragment.resource_timings),
                self._encode_trackers(fragment.trackers),
                self._encode_protocol(fragment.protocol_signature),
                self._encode_timing(fragment.resource_timings),
            ])
            if not np.all(np.isfinite(vector)):
                raise ValueError("non-finite feature")
            return normalize(vector)
        except Exception as e:
            logger.error(f"[SignatureVectorizer] Failed to vectorize {fragment.domain!r}: {e}")
            return np.zeros(DIMENSIONS, dtype=np.float64)

    def vectorize_many(self, fragments: Iterable[MemoryFragment]) -> Dict[str, np.ndarray]:
        return {f.domain: self.vectorize(f) for f in fragments}

    @staticmethod
    def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
        if a.shape != b.shape:
            raise ValueError("Vectors must have same length")
        return _cosine(a, b)

    def update_statistics(self, fragments: Sequence[MemoryFragment]) -> bool:
        """
        Recalibrate the friction/latency normalisation from a finished batch.

        Batches smaller than min_calibration_samples are ignored, and a
        degenerate (zero) spread keeps the previous std. Returns True when
        the statistics changed.
        """
        if len(fragments) < self.config.min_calibration_samples:
            logger.debug(
                f"[SignatureVectorizer] Skipping recalibration, only {len(fragments)} samples"
            )
            return False

        frictions = np.array([f.friction for f in fragments], dtype=np.float64)
        latencies = np.array([f.latency for f in fragments], dtype=np.float64)

        self.friction_mean = float(frictions.mean())
        self.latency_mean = float(latencies.mean())
        friction_std = float(frictions.std())
        latency_std = float(latencies.std())
        if friction_std > 1e-6:
            self.friction_std = friction_std
        if latency_std > 1e-6:
            self.latency_std = latency_std

        logger.debug(
            f"[SignatureVectorizer] Statistics updated from {len(fragments)} samples: "
            f"friction={self.friction_mean:.1f}+/-{self.friction_std:.1f} "
            f"latency={self.latency_mean:.1f}+/-{self.latency_std:.1f}"
        )
        return True

    def get_statistics(self) -> Dict[str, float]:
        return {
            "friction_mean": self.friction_mean,
            "friction_std": self.friction_std,
            "latency_mean": self.latency_mean,
            "latency_std": self.latency_std,
        }

    # ------------------------------------------------------------------
    # Encoders
    # ------------------------------------------------------------------

    @staticmethod
    def _rbf(value: float, mean: float, std: float) -> np.ndarray:
        z = float(np.clip((value - mean) / std, -3.0, 3.0))
        return np.exp(-0.5 * ((z - RBF_CENTERS) / RBF_WIDTH) ** 2)

    def _encode_friction(self, friction: float) -> np.ndarray:
        return self._rbf(friction, self.friction_mean, self.friction_std)

    def _encode_latency(self, latency: float, timings: List[ResourceTiming]) -> np.ndarray:
        stats = np.zeros(4)
        durations = _durations(timings)
        if durations.size:
            stats[0] = np.tanh(durations.min() / 100.0)
            stats[1] = np.tanh(durations.max() / 1000.0)
            stats[2] = np.tanh(durations.mean() / 500.0)
            stats[3] = np.tanh(durations.std() / 200.0)
        return np.concatenate([self._rbf(latency, self.latency_mean, self.latency_std), stats])

    def _encode_trackers(self, trackers: Iterable[str]) -> np.ndarray:
        vector = np.zeros(TRACKER_DIM)
        names = sorted(t for t in trackers if t)
        if not names:
            return vector
        digest = hashlib.sha256("|".join(names).encode("utf-8")).digest()
        vector[:] = np.frombuffer(digest[:TRACKER_DIM], dtype=np.uint8) / 255.0
        vector[vector < self.config.tracker_sparsity_threshold] = 0.0
        return vector

    @staticmethod
    def _encode_protocol(protocol: ProtocolSignature) -> np.ndarray:
        vector = np.zeros(PROTOCOL_DIM)
        vector[_PROTOCOL_INDEX.get(protocol, 3)] = 1.0
        return vector

    def _encode_timing(self, timings: List[ResourceTiming]) -> np.ndarray:
        vector = np.zeros(TIMING_DIM)
        durations = _durations(timings)
        if not durations.size:
            return vector

        window = durations[: self.config.fft_window]
        spectrum = np.abs(np.fft.rfft(window))
        usable = min(DFT_COMPONENTS, max(1, window.size // 2))
        vector[:usable] = np.tanh(spectrum[:usable] / (100.0 * window.size))

        vector[4] = np.tanh(durations.size / 50.0)
        if durations.size > 1:
            intervals = np.abs(np.diff(durations))
            vector[5] = np.tanh(intervals.mean() / 100.0)
            vector[6] = np.tanh(intervals.std() / 50.0)

        protocols = {ProtocolSignature.parse(t.protocol) for t in timings if t.protocol}
        vector[7] = 1.0 if ProtocolSignature.H3 in protocols else 0.0
        vector[8] = 1.0 if ProtocolSignature.H2 in protocols else 0.0
        vector[9] = 1.0 if len(protocols) > 1 else 0.0
        return vector


def _durations(timings: List[ResourceTiming]) -> np.ndarray:
    return np.array([max(0.0, t.duration) for t in timings], dtype=np.float64)
