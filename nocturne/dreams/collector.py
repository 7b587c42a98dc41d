"""
nocturne/dreams/collector.py

Aggregates raw capture events into per-domain MemoryFragments.

Events for the same domain inside the aggregation window merge into the
newest fragment for that domain. The in-memory buffer is bounded; fragments
are handed to the persistent store in batches and aged out of memory after
max_age_seconds (they may still live in storage).
"""

from __future__ import annotations

import logging
import time
from collections import Counter, OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from nocturne.base.config import CollectorConfig
from nocturne.dreams.models import MemoryFragment, ProtocolSignature, ResourceTiming
from nocturne.dreams.storage import DreamStorage
from nocturne.errors import NocturneError

logger = logging.getLogger(__name__)

TRACKER_KEYWORDS = ("analytics", "tracking", "gtag", "pixel")


def extract_trackers_from_mutations(mutations: Iterable[Mapping[str, Any]]) -> List[str]:
    """Mutation targets that look like tracker scripts."""
    trackers = []
    for mutation in mutations:
        target = str(mutation.get("target", ""))
        if any(keyword in target for keyword in TRACKER_KEYWORDS):
            trackers.append(target)
    return trackers


def _timings(resource_timings: Iterable[Any]) -> List[ResourceTiming]:
    return [ResourceTiming.model_validate(t) for t in resource_timings]


class MemoryFragmentCollector:
    def __init__(
        self,
        config: Optional[CollectorConfig] = None,
        storage: Optional[DreamStorage] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CollectorConfig()
        self.storage = storage
        self._clock = clock

        self._fragments: "OrderedDict[str, MemoryFragment]" = OrderedDict()
        self._unpersisted: Set[str] = set()
        self._insertions = 0
        self._last_cleanup = clock()

        self.total_collected = 0
        self.total_processed = 0
        self.total_evicted = 0
        self._domain_stats: Counter = Counter()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def collect_dom_resonance(
        self,
        domain: str,
        friction: float,
        mutations: Sequence[Mapping[str, Any]] = (),
        hidden_elements: Sequence[Any] = (),
        detected_at: Optional[float] = None,
        emitted_at: Optional[float] = None,
    ) -> MemoryFragment:
        """
        Record a DOM mutation burst.

        detected_at/emitted_at are epoch seconds; their gap becomes the
        latency estimate when no network measurement exists yet.
        """
        detected = detected_at if detected_at is not None else self._clock()
        emitted = emitted_at if emitted_at is not None else detected
        latency_ms = max(0.0, (emitted - detected) * 1000.0)
        trackers = extract_trackers_from_mutations(mutations)

        existing = self._fragment_for_domain(domain)
        if existing is not None:
            existing.friction = friction
            existing.hidden_elements.extend(hidden_elements)
            existing.trackers.update(trackers)
            if not existing.latency:
                existing.latency = latency_ms
            return self._touched(existing)

        return await self._add(MemoryFragment(
            domain=domain,
            timestamp=detected,
            friction=friction,
            latency=latency_ms,
            trackers=set(trackers),
            hidden_elements=list(hidden_elements),
        ))

    async def collect_network_latency(
        self,
        domain: str,
        latency: float,
        protocol: Any = None,
        resource_timings: Iterable[Any] = (),
        udp_trackers: Iterable[str] = (),
    ) -> MemoryFragment:
        timings = _timings(resource_timings)
        existing = self._fragment_for_domain(domain)
        if existing is not None:
            existing.latency = latency
            existing.protocol_signature = ProtocolSignature.parse(protocol)
            existing.resource_timings = timings
            existing.trackers.update(udp_trackers)
            return self._touched(existing)

        return await self._add(MemoryFragment(
            domain=domain,
            timestamp=self._clock(),
            latency=latency,
            protocol_signature=protocol,
            resource_timings=timings,
            trackers=set(udp_trackers),
        ))

    async def collect_tracker_detection(
        self,
        domain: str,
        trackers: Iterable[str],
        fingerprints: Iterable[str] = (),
    ) -> MemoryFragment:
        detected = set(trackers) | set(fingerprints)
        existing = self._fragment_for_domain(domain)
        if existing is not None:
            existing.trackers.update(detected)
            return self._touched(existing)

        return await self._add(MemoryFragment(
            domain=domain,
            timestamp=self._clock(),
            trackers=detected,
        ))

    def _fragment_for_domain(self, domain: str) -> Optional[MemoryFragment]:
        """Newest buffered fragment for the domain inside the aggregation window."""
        key = domain.strip().lower()
        now = self._clock()
        for fragment in reversed(self._fragments.values()):
            if fragment.domain == key and now - fragment.timestamp < self.config.aggregation_window_seconds:
                return fragment
        return None

    def _touched(self, fragment: MemoryFragment) -> MemoryFragment:
        self._unpersisted.add(fragment.id)
        return fragment.model_copy(deep=True)

    async def _add(self, fragment: MemoryFragment) -> MemoryFragment:
        if len(self._fragments) >= self.config.max_fragments:
            self._evict_oldest()

        self._fragments[fragment.id] = fragment
        self._unpersisted.add(fragment.id)
        self.total_collected += 1
        self._insertions += 1
        self._domain_stats[fragment.domain] += 1

        logger.debug(
            f"[FragmentCollector] Fragment added for {fragment.domain} "
            f"(buffer={len(self._fragments)}, trackers={len(fragment.trackers)})"
        )

        if self._insertions % self.config.batch_persist_size == 0:
            await self._persist_batch()

        if self._clock() - self._last_cleanup >= self.config.cleanup_interval_seconds:
            self.cleanup_old_fragments()

        return fragment.model_copy(deep=True)

    def _evict_oldest(self) -> None:
        to_evict = max(1, int(len(self._fragments) * self.config.eviction_ratio))
        oldest = sorted(self._fragments.values(), key=lambda f: f.timestamp)[:to_evict]
        for fragment in oldest:
            del self._fragments[fragment.id]
            self._unpersisted.discard(fragment.id)
        self.total_evicted += len(oldest)
        logger.debug(
            f"[FragmentCollector] Evicted {len(oldest)} old fragments, {len(self._fragments)} remaining"
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist_batch(self) -> int:
        if self.storage is None:
            return 0
        batch = [
            f for fid, f in self._fragments.items() if fid in self._unpersisted
        ][: self.config.batch_persist_size]
        if not batch:
            return 0
        try:
            await self.storage.store_fragments(batch)
        except NocturneError as e:
            logger.error(f"[FragmentCollector] Failed to persist fragments: {e}")
            return 0
        for fragment in batch:
            self._unpersisted.discard(fragment.id)
        logger.debug(f"[FragmentCollector] Persisted batch of {len(batch)} fragments")
        return len(batch)

    async def flush(self) -> int:
        """Persist every buffered fragment not yet in storage."""
        total = 0
        while self._unpersisted:
            stored = await self._persist_batch()
            if stored == 0:
                break
            total += stored
        return total

    # ------------------------------------------------------------------
    # Retrieval and housekeeping
    # ------------------------------------------------------------------

    async def get_recent_fragments(self, limit: int = 500) -> List[MemoryFragment]:
        """
        Non-expired buffered fragments, topped up from storage when the
        buffer holds fewer than limit. Returned fragments are copies.
        """
        now = self._clock()
        fragments: List[MemoryFragment] = []
        seen: Set[str] = set()

        for fragment in self._fragments.values():
            if len(fragments) >= limit:
                break
            if now - fragment.timestamp < self.config.max_age_seconds:
                fragments.append(fragment.model_copy(deep=True))
                seen.add(fragment.id)

        if len(fragments) < limit and self.storage is not None:
            try:
                stored = await self.storage.get_fragments(limit=limit - len(fragments) + len(seen))
            except NocturneError as e:
                logger.error(f"[FragmentCollector] Failed to load fragments from storage: {e}")
                stored = []
            for fragment in stored:
                if len(fragments) >= limit:
                    break
                if fragment.id not in seen:
                    fragments.append(fragment)
                    seen.add(fragment.id)

        logger.info(
            f"[FragmentCollector] Retrieved {len(fragments)} fragments "
            f"({len({f.domain for f in fragments})} domains, buffer={len(self._fragments)})"
        )
        return fragments

    def clear_processed_fragments(self, fragments: Iterable[MemoryFragment]) -> int:
        """Drop exactly the given fragments from memory; anything else stays."""
        cleared = 0
        for fragment in fragments:
            if self._fragments.pop(fragment.id, None) is not None:
                self._unpersisted.discard(fragment.id)
                cleared += 1
        self.total_processed += cleared
        logger.info(
            f"[FragmentCollector] Cleared {cleared} processed fragments, "
            f"{len(self._fragments)} remaining (total processed {self.total_processed})"
        )
        return cleared

    def cleanup_old_fragments(self) -> int:
        now = self._clock()
        self._last_cleanup = now
        expired = [
            fid for fid, f in self._fragments.items()
            if now - f.timestamp > self.config.max_age_seconds
        ]
        for fid in expired:
            del self._fragments[fid]
            self._unpersisted.discard(fid)
        if expired:
            logger.info(
                f"[FragmentCollector] Cleaned {len(expired)} old fragments, {len(self._fragments)} remaining"
            )
        return len(expired)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "fragments_in_memory": len(self._fragments),
            "unpersisted": len(self._unpersisted),
            "total_collected": self.total_collected,
            "total_processed": self.total_processed,
            "total_evicted": self.total_evicted,
            "unique_domains": len(self._domain_stats),
            "top_domains": [
                {"domain": domain, "count": count}
                for domain, count in self._domain_stats.most_common(10)
            ],
        }

    def export_fragments(self) -> List[MemoryFragment]:
        return [f.model_copy(deep=True) for f in self._fragments.values()]

    async def import_fragments(self, fragments: Iterable[MemoryFragment]) -> int:
        count = 0
        for fragment in fragments:
            await self._add(fragment.model_copy(deep=True))
            count += 1
        return count

    def reset(self) -> None:
        self._fragments.clear()
        self._unpersisted.clear()
        self._domain_stats.clear()
        self._insertions = 0
        self.total_collected = 0
        self.total_processed = 0
        self.total_evicted = 0
        self._last_cleanup = self._clock()
        logger.info("[FragmentCollector] Reset complete")
