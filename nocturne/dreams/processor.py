"""Module processor: the nocturnal synthesis pipeline."""
#
# PURPOSE:
# During the host's idle periods, turn a batch of memory fragments into
# committed surveillance signatures: sets of unrelated-looking domains that
# behave as if one actor instruments them.
#
# PIPELINE (strictly sequential, one run at a time):
# 1. Thermal precheck        - refuse to start when already critical
# 2. Validate                - drop malformed, negative and CDN fragments
# 3. Vectorize               - newest fragment per domain -> unit vector
# 4. Cluster                 - adaptive resonance clustering
# 5. Promote                 - CDN-adjusted confidence, shared tracker fingerprint
# 6. Commit + notify         - signatures and report in one transaction,
#                              discovery events published fire-and-forget
#
# CANCELLATION:
# Cooperative. Stages yield and check the run's CancellationToken at fixed
# checkpoints. The token is cancelled by cancel() or by the thermal
# controller's emergency brake. An aborted run commits nothing.
#

from __future__ import annotations

import hashlib
import itertools
import logging
import math
import time
import uuid
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

import numpy as np
from pydantic import ValidationError

from nocturne.base.config import NocturneConfig
from nocturne.dreams.cdn import CDNWhitelist
from nocturne.dreams.clustering import AdaptiveResonanceClustering, ClusterOptions, ClusterResult
from nocturne.dreams.models import (
    DreamReport,
    MemoryFragment,
    SignatureInfrastructure,
    SurveillanceSignature,
    ThermalState,
    fragment_defect,
)
from nocturne.dreams.scheduler import MinimumIntervalSchedule, SynthesisSchedule
from nocturne.dreams.storage import DreamStorage
from nocturne.dreams.thermal import EMERGENCY_REASON, ThermalThrottlingController
from nocturne.dreams.vectorizer import SignatureVectorizer
from nocturne.errors import (
    NocturneError,
    SynthesisAbortedError,
    SynthesisBusyError,
    SynthesisTooSoonError,
    handle_error,
)
from nocturne.observer.bus import EventBus
from nocturne.observer.events import DiscoveryEvent, RunCompleted
from nocturne.utils.async_helpers import CancellationToken, checkpoint

logger = logging.getLogger(__name__)

FragmentInput = Union[MemoryFragment, Mapping[str, Any]]


class DreamProcessor:
    def __init__(
        self,
        config: NocturneConfig,
        storage: DreamStorage,
        vectorizer: Optional[SignatureVectorizer] = None,
        clustering: Optional[AdaptiveResonanceClustering] = None,
        cdn: Optional[CDNWhitelist] = None,
        thermal: Optional[ThermalThrottlingController] = None,
        bus: Optional[EventBus] = None,
        schedule: Optional[SynthesisSchedule] = None,
    ):
        self.config = config
        self.storage = storage
        self.bus = bus or EventBus()
        self.vectorizer = vectorizer or SignatureVectorizer(config.vectorizer)
        self.clustering = clustering or AdaptiveResonanceClustering(config.clustering)
        self.cdn = cdn or CDNWhitelist(config.cdn)
        self.thermal = thermal or ThermalThrottlingController(config.thermal, bus=self.bus)
        self.schedule = schedule or MinimumIntervalSchedule(config.synthesis.min_interval_seconds)

        self.active_synthesis_id: Optional[str] = None
        self._token: Optional[CancellationToken] = None
        self.runs_completed = 0
        self.runs_aborted = 0
        self.runs_failed = 0

    @property
    def is_processing(self) -> bool:
        return self.active_synthesis_id is not None

    def time_until_next_allowed(self) -> float:
        return self.schedule.time_until_next_allowed()

    def cancel(self, reason: str = "Cancelled by host") -> bool:
        """Request a cooperative abort of the active run. Returns False when idle."""
        if self._token is None:
            return False
        self._token.cancel(reason)
        logger.info(f"[DreamProcessor] Cancellation requested: {reason}")
        return True

    async def perform_synthesis(self, fragments: Iterable[FragmentInput]) -> DreamReport:
        """
        Run one synthesis over the given fragments.

        Raises:
            SynthesisBusyError: a run is already active (nothing is touched)
            SynthesisTooSoonError: the minimum interval has not elapsed
            SynthesisAbortedError: cancelled or thermal emergency; nothing committed
            NocturneError: any other failure; nothing committed
        """
        if self.active_synthesis_id is not None:
            logger.warning("[DreamProcessor] Synthesis already in progress")
            raise SynthesisBusyError(self.active_synthesis_id)

        wait = self.schedule.time_until_next_allowed()
        if wait > 0:
            logger.info(f"[DreamProcessor] Too soon for next synthesis, retry in {wait:.1f}s")
            raise SynthesisTooSoonError(wait)

        synthesis_id = uuid.uuid4().hex
        token = CancellationToken()
        self.active_synthesis_id = synthesis_id
        self._token = token
        self.thermal.reset_run_metrics()
        self.thermal.register_cancellation(token)

        schedule_start = self.schedule.now()
        start_time = time.time()
        cpu_start = time.process_time()
        wall_start = time.perf_counter()

        logger.info(f"[DreamProcessor] Beginning synthesis {synthesis_id}")
        try:
            await self._precheck_thermal(token)

            valid, rejected = await self._validate(fragments, token)
            latest = self._latest_per_domain(valid)

            signatures = await self._vectorize(latest, token)

            with self.thermal.measure("cluster"):
                clusters = await self.clustering.cluster(
                    signatures, ClusterOptions.from_config(self.config.clustering, token)
                )
            self._raise_if_cancelled(token)

            shadow_entities = self._promote(clusters, latest)
            self._raise_if_cancelled(token)

            wall = max(time.perf_counter() - wall_start, 1e-9)
            report = DreamReport(
                synthesis_id=synthesis_id,
                start_time=start_time,
                end_time=time.time(),
                fragments_analyzed=len(valid),
                fragments_rejected=rejected,
                clusters_identified=len(clusters),
                shadow_entities=shadow_entities,
                cpu_utilization=min(1.0, max(0.0, (time.process_time() - cpu_start) / wall)),
                memory_peak_mb=self.thermal.peak_memory_mb,
                thermal_events=self.thermal.thermal_events,
            )

            await self.storage.commit_synthesis(report)

        except SynthesisAbortedError as e:
            self.runs_aborted += 1
            logger.warning(f"[DreamProcessor] Synthesis {synthesis_id} aborted: {e.reason}")
            raise
        except NocturneError as e:
            self.runs_failed += 1
            logger.error(f"[DreamProcessor] Synthesis {synthesis_id} failed: {e}")
            raise
        except Exception as e:
            self.runs_failed += 1
            error = handle_error(e, f"Synthesis {synthesis_id} failed")
            logger.error(f"[DreamProcessor] {error}", exc_info=True)
            raise error from e
        finally:
            self.thermal.unregister_cancellation(token)
            self.active_synthesis_id = None
            self._token = None

        self.runs_completed += 1
        self.schedule.record_start(schedule_start)
        # Recalibrate between batches, never mid-run
        self.vectorizer.update_statistics(valid)
        self._notify(report)

        logger.info(
            f"[DreamProcessor] Synthesis {synthesis_id} complete: analyzed={report.fragments_analyzed} "
            f"rejected={report.fragments_rejected} clusters={report.clusters_identified} "
            f"signatures={len(report.shadow_entities)} ({report.duration_ms:.0f}ms)"
        )
        return report

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _precheck_thermal(self, token: CancellationToken) -> None:
        status = await self.thermal.get_status()
        if status.state == ThermalState.CRITICAL:
            token.cancel("Critical thermal state before synthesis")
            raise SynthesisAbortedError(token.reason, thermal=True)

    async def _check_thermal(self, token: CancellationToken) -> None:
        status = await self.thermal.get_status()
        self._raise_if_cancelled(token)
        if status.state == ThermalState.CRITICAL and self.thermal.should_abort():
            token.cancel(EMERGENCY_REASON)
            raise SynthesisAbortedError(token.reason, thermal=True)
        if status.throttling_active:
            await self.thermal.apply_cooling()
            self._raise_if_cancelled(token)

    async def _validate(
        self, fragments: Iterable[FragmentInput], token: CancellationToken
    ) -> Tuple[List[MemoryFragment], int]:
        cfg = self.config.synthesis
        pending = list(fragments)
        valid: List[MemoryFragment] = []
        rejected = 0

        for start in range(0, len(pending), cfg.checkpoint_every):
            if await checkpoint(token):
                self._raise_if_cancelled(token)

            checked = len(valid) // cfg.thermal_check_every
            with self.thermal.measure("validate"):
                for raw in pending[start:start + cfg.checkpoint_every]:
                    fragment = self._accept(raw)
                    if fragment is None:
                        rejected += 1
                    else:
                        valid.append(fragment)

            # Cooling sleeps stay outside the measured batch
            for _ in range(len(valid) // cfg.thermal_check_every - checked):
                await self._check_thermal(token)

        if rejected:
            logger.info(f"[DreamProcessor] Validation kept {len(valid)} fragments, rejected {rejected}")
        return valid, rejected

    def _accept(self, raw: FragmentInput) -> Optional[MemoryFragment]:
        fragment = self._coerce(raw)
        if fragment is None:
            return None

        defect = fragment_defect(fragment)
        if defect is not None:
            logger.debug(f"[DreamProcessor] Dropping fragment for {fragment.domain!r}: {defect}")
            return None

        if self.cdn.is_cdn(fragment.domain):
            logger.debug(f"[DreamProcessor] Filtering CDN domain {fragment.domain}")
            return None
        return fragment

    @staticmethod
    def _coerce(raw: FragmentInput) -> Optional[MemoryFragment]:
        if isinstance(raw, MemoryFragment):
            return raw
        try:
            return MemoryFragment.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"[DreamProcessor] Unparseable fragment: {e.error_count()} errors")
            return None

    @staticmethod
    def _latest_per_domain(fragments: Sequence[MemoryFragment]) -> Dict[str, MemoryFragment]:
        latest: Dict[str, MemoryFragment] = {}
        for fragment in fragments:
            current = latest.get(fragment.domain)
            if current is None or fragment.timestamp > current.timestamp:
                latest[fragment.domain] = fragment
        return latest

    async def _vectorize(
        self, fragments: Mapping[str, MemoryFragment], token: CancellationToken
    ) -> Dict[str, np.ndarray]:
        step = self.config.synthesis.checkpoint_every
        items = list(fragments.items())
        signatures: Dict[str, np.ndarray] = {}
        for start in range(0, len(items), step):
            if await checkpoint(token):
                self._raise_if_cancelled(token)
            with self.thermal.measure("vectorize"):
                for domain, fragment in items[start:start + step]:
                    signatures[domain] = self.vectorizer.vectorize(fragment)
        return signatures

    def _promote(
        self, clusters: Sequence[ClusterResult], fragments: Mapping[str, MemoryFragment]
    ) -> List[SurveillanceSignature]:
        cfg = self.config.synthesis
        entities: List[SurveillanceSignature] = []

        for cluster in clusters:
            members = [fragments[d] for d in cluster.domains if d in fragments]
            if len(members) < 2:
                continue

            confidence = self._cdn_adjusted_confidence(cluster.confidence, members)
            if confidence < cfg.promotion_confidence:
                continue

            fingerprint = self._tracker_fingerprint(members)
            if not fingerprint:
                continue

            consistency = self._protocol_consistency(members)
            now = time.time()
            signature = SurveillanceSignature(
                domains=[m.domain for m in members],
                confidence=confidence,
                infrastructure=SignatureInfrastructure(
                    tracker_fingerprint=fingerprint,
                    protocol_consistency=consistency,
                    cdn_pattern=self._shared_cdn_provider(members),
                ),
                impact=self._impact(len(members), confidence, consistency),
                discovered_at=now,
                last_seen=now,
            )
            entities.append(signature)
            logger.warning(
                f"[DreamProcessor] Shadow entity detected {signature.id}: "
                f"{signature.domains[:3]} confidence={confidence:.2f} impact={signature.impact:.2f}"
            )

        return entities

    # ------------------------------------------------------------------
    # Scoring helpers
    # ------------------------------------------------------------------

    def _cdn_adjusted_confidence(self, confidence: float, members: Sequence[MemoryFragment]) -> float:
        adjusted = []
        for a, b in itertools.combinations(members, 2):
            shared = sorted({t.name for t in a.resource_timings} & {t.name for t in b.resource_timings})
            adjusted.append(self.cdn.adjust_correlation_for_cdn(confidence, a.domain, b.domain, shared))
        return float(sum(adjusted) / len(adjusted)) if adjusted else confidence

    def _tracker_fingerprint(self, members: Sequence[MemoryFragment]) -> str:
        """Hash of the trackers carried by enough members, or "" when none qualify."""
        counts = Counter(t for m in members for t in m.trackers)
        required = max(2, math.ceil(self.config.synthesis.tracker_share_ratio * len(members)))
        shared = sorted(t for t, n in counts.items() if n >= required)
        if not shared:
            return ""
        return hashlib.sha256("|".join(shared).encode("utf-8")).hexdigest()[:16]

    @staticmethod
    def _protocol_consistency(members: Sequence[MemoryFragment]) -> float:
        counts = Counter(m.protocol_signature for m in members)
        return counts.most_common(1)[0][1] / len(members)

    def _shared_cdn_provider(self, members: Sequence[MemoryFragment]) -> Optional[str]:
        provider_sets = []
        for member in members:
            providers = set()
            for timing in member.resource_timings:
                host = urlsplit(timing.name).hostname or ""
                provider = self.cdn.identify_cdn(host)
                if provider:
                    providers.add(provider)
            provider_sets.append(providers)
        common = set.intersection(*provider_sets) if provider_sets else set()
        return sorted(common)[0] if common else None

    @staticmethod
    def _impact(size: int, confidence: float, consistency: float) -> float:
        return float(min(1.0, 0.3 * min(1.0, size / 10) + 0.5 * confidence + 0.2 * consistency))

    # ------------------------------------------------------------------
    # Cancellation and notification
    # ------------------------------------------------------------------

    @staticmethod
    def _raise_if_cancelled(token: CancellationToken) -> None:
        if token.cancelled:
            reason = token.reason or "cancelled"
            raise SynthesisAbortedError(reason, thermal=reason == EMERGENCY_REASON)

    def _notify(self, report: DreamReport) -> None:
        for entity in report.shadow_entities:
            self.bus.publish(DiscoveryEvent(
                signature_id=entity.id,
                domain_count=len(entity.domains),
                confidence=entity.confidence,
                impact=entity.impact,
            ))
        self.bus.publish(RunCompleted(
            synthesis_id=report.synthesis_id,
            fragments_analyzed=report.fragments_analyzed,
            signatures_found=len(report.shadow_entities),
            duration_ms=report.duration_ms,
        ))

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "is_processing": self.is_processing,
            "active_synthesis_id": self.active_synthesis_id,
            "runs_completed": self.runs_completed,
            "runs_aborted": self.runs_aborted,
            "runs_failed": self.runs_failed,
            "next_allowed_in": self.time_until_next_allowed(),
            "vectorizer": self.vectorizer.get_statistics(),
            "thermal": self.thermal.get_statistics(),
            "cdn": self.cdn.get_statistics(),
        }

    def dispose(self) -> None:
        if self._token is not None:
            self._token.cancel("Processor disposed")
        self.thermal.dispose()
        self.bus.clear()
