"""
nocturne/dreams/clustering.py

Adaptive Resonance Theory style clustering of signature vectors.

Winner-take-all: each vector joins the most similar cluster whose centroid
clears the vigilance threshold ("resonance"), otherwise it seeds a new one.
Centroids drift toward new members at the learning rate and are kept at
unit length. Weak clusters are pruned periodically and near-duplicate
clusters are merged once the loop settles.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set

import numpy as np

from nocturne.base.config import ClusteringConfig
from nocturne.utils.async_helpers import CancellationToken, checkpoint
from nocturne.utils.vectors import EPSILON, cosine_similarity, normalize

logger = logging.getLogger(__name__)


@dataclass
class ClusterOptions:
    vigilance: float = 0.85
    learning_rate: float = 0.1
    max_iterations: int = 100
    cancellation: Optional[CancellationToken] = None

    @classmethod
    def from_config(
        cls, config: ClusteringConfig, cancellation: Optional[CancellationToken] = None
    ) -> "ClusterOptions":
        return cls(
            vigilance=config.vigilance,
            learning_rate=config.learning_rate,
            max_iterations=config.max_iterations,
            cancellation=cancellation,
        )


@dataclass
class Cluster:
    id: str
    domains: List[str]
    centroid: np.ndarray
    confidence: float = 0.0
    resonance_score: int = 0
    last_updated: float = 0.0


@dataclass(frozen=True)
class ClusterResult:
    domains: List[str]
    centroid: np.ndarray
    confidence: float
    resonance_score: int = 0


@dataclass
class _RunState:
    clusters: Dict[str, Cluster] = field(default_factory=dict)
    assignment: Dict[str, str] = field(default_factory=dict)
    retired: Set[str] = field(default_factory=set)
    iteration: int = 0
    resonance_events: int = 0
    next_id: int = 0


class AdaptiveResonanceClustering:
    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ClusteringConfig()
        self._clock = clock
        self._state = _RunState()

    @property
    def clusters(self) -> List[Cluster]:
        return list(self._state.clusters.values())

    async def cluster(
        self,
        signatures: Mapping[str, np.ndarray],
        options: Optional[ClusterOptions] = None,
    ) -> List[ClusterResult]:
        """
        Cluster domain -> vector signatures.

        Returns multi-domain clusters with confidence >= output_min_confidence,
        most confident first. A cancelled run returns an empty list.
        """
        opts = options or ClusterOptions.from_config(self.config)
        self._state = state = _RunState()

        # Zero vectors are the vectorizer's failure fallback and carry no signal
        items = [
            (domain, np.asarray(vector, dtype=np.float64))
            for domain, vector in signatures.items()
            if np.linalg.norm(vector) > EPSILON
        ]
        skipped = len(signatures) - len(items)

        logger.info(
            f"[ARC] Starting clustering of {len(items)} signatures "
            f"(vigilance={opts.vigilance}, lr={opts.learning_rate}, max_iter={opts.max_iterations}, "
            f"skipped_zero={skipped})"
        )

        if not items:
            return []

        self._create_cluster(items[0][0], items[0][1])

        for iteration in range(opts.max_iterations):
            state.iteration = iteration
            if await checkpoint(opts.cancellation):
                logger.info(f"[ARC] Clustering cancelled at iteration {iteration}")
                return []

            changed = False
            for domain, vector in items:
                if self._assign(domain, vector, opts):
                    changed = True

            if not changed:
                logger.info(
                    f"[ARC] Converged at iteration {iteration} with {len(state.clusters)} clusters"
                )
                break

            if iteration > 0 and iteration % self.config.prune_interval == 0:
                self._prune()

        self._refresh_confidence()
        self._merge(opts.vigilance)
        results = self._extract()

        logger.info(
            f"[ARC] Clustering complete: iterations={state.iteration + 1} "
            f"resonance_events={state.resonance_events} clusters={len(state.clusters)} "
            f"emitted={len(results)}"
        )
        return results

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _assign(self, domain: str, vector: np.ndarray, opts: ClusterOptions) -> bool:
        state = self._state
        winner = self._best_match(vector, opts.vigilance)
        current_id = state.assignment.get(domain)

        if winner is None:
            if current_id is not None or domain in state.retired:
                return False
            if len(state.clusters) >= self.config.max_clusters:
                return False
            self._create_cluster(domain, vector)
            return True

        winner.resonance_score += 1
        state.resonance_events += 1

        if current_id == winner.id:
            return False

        if current_id is not None:
            self._detach(domain, current_id)

        winner.domains.append(domain)
        state.assignment[domain] = winner.id
        lr = opts.learning_rate
        winner.centroid = self._unit(winner.centroid * (1.0 - lr) + vector * lr, winner.centroid)
        winner.last_updated = self._clock()
        winner.confidence = self._confidence(winner)
        return True

    def _best_match(self, vector: np.ndarray, vigilance: float) -> Optional[Cluster]:
        best: Optional[Cluster] = None
        best_similarity = -1.0
        for cluster in self._state.clusters.values():
            similarity = cosine_similarity(vector, cluster.centroid)
            if similarity >= vigilance and similarity > best_similarity:
                best_similarity = similarity
                best = cluster
        return best

    def _create_cluster(self, domain: str, vector: np.ndarray) -> Cluster:
        state = self._state
        cluster = Cluster(
            id=f"cluster_{state.next_id}",
            domains=[domain],
            centroid=normalize(vector),
            last_updated=self._clock(),
        )
        cluster.confidence = self._confidence(cluster)
        state.next_id += 1
        state.clusters[cluster.id] = cluster
        state.assignment[domain] = cluster.id
        return cluster

    def _detach(self, domain: str, cluster_id: str) -> None:
        state = self._state
        cluster = state.clusters.get(cluster_id)
        state.assignment.pop(domain, None)
        if cluster is None:
            return
        cluster.domains.remove(domain)
        if not cluster.domains:
            del state.clusters[cluster_id]
        else:
            cluster.confidence = self._confidence(cluster)

    @staticmethod
    def _unit(candidate: np.ndarray, fallback: np.ndarray) -> np.ndarray:
        # Opposite vectors can cancel out; keep the previous direction then
        unit = normalize(candidate)
        return unit if np.linalg.norm(unit) > EPSILON else fallback

    # ------------------------------------------------------------------
    # Confidence, pruning, merging
    # ------------------------------------------------------------------

    def _confidence(self, cluster: Cluster) -> float:
        cfg = self.config
        size_factor = min(1.0, len(cluster.domains) / cfg.size_cap)
        age = max(0.0, self._clock() - cluster.last_updated)
        recency_factor = 1.0 - min(1.0, age / cfg.recency_horizon_seconds)
        resonance_factor = min(1.0, cluster.resonance_score / cfg.resonance_cap)

        confidence = (
            cfg.size_weight * size_factor
            + cfg.recency_weight * recency_factor
            + cfg.resonance_weight * resonance_factor
        )
        if len(cluster.domains) < 2:
            confidence = min(confidence, cfg.singleton_confidence_cap)
        return float(min(1.0, max(0.0, confidence)))

    def _refresh_confidence(self) -> None:
        for cluster in self._state.clusters.values():
            cluster.confidence = self._confidence(cluster)

    def _prune(self) -> None:
        state = self._state
        self._refresh_confidence()
        to_remove = []
        for cluster_id, cluster in state.clusters.items():
            stale_singleton = (
                len(cluster.domains) < 2 and state.iteration > self.config.singleton_grace_iterations
            )
            if stale_singleton or cluster.confidence < self.config.prune_confidence:
                to_remove.append(cluster_id)

        for cluster_id in to_remove:
            cluster = state.clusters.pop(cluster_id)
            for domain in cluster.domains:
                state.assignment.pop(domain, None)
                # Pruned domains may still join a cluster but never seed one again
                state.retired.add(domain)

        if to_remove:
            logger.debug(
                f"[ARC] Pruned {len(to_remove)} weak clusters, {len(state.clusters)} remaining"
            )

    def _merge(self, vigilance: float) -> None:
        state = self._state
        threshold = vigilance + self.config.merge_margin
        merged: Set[str] = set()
        ordered = list(state.clusters.values())

        for i, primary in enumerate(ordered):
            if primary.id in merged:
                continue
            for secondary in ordered[i + 1:]:
                if secondary.id in merged:
                    continue
                if cosine_similarity(primary.centroid, secondary.centroid) <= threshold:
                    continue

                n1 = len(primary.domains)
                n2 = len(secondary.domains)
                weighted = (primary.centroid * n1 + secondary.centroid * n2) / (n1 + n2)
                primary.centroid = self._unit(weighted, primary.centroid)
                for domain in secondary.domains:
                    if domain not in primary.domains:
                        primary.domains.append(domain)
                    state.assignment[domain] = primary.id
                primary.resonance_score += secondary.resonance_score
                primary.last_updated = max(primary.last_updated, secondary.last_updated)
                primary.confidence = self._confidence(primary)
                merged.add(secondary.id)

        for cluster_id in merged:
            del state.clusters[cluster_id]

        if merged:
            logger.debug(
                f"[ARC] Merged {len(merged)} similar clusters, {len(state.clusters)} remaining"
            )

    def _extract(self) -> List[ClusterResult]:
        results = [
            ClusterResult(
                domains=list(cluster.domains),
                centroid=cluster.centroid.copy(),
                confidence=cluster.confidence,
                resonance_score=cluster.resonance_score,
            )
            for cluster in self._state.clusters.values()
            if len(cluster.domains) >= self.config.min_cluster_size
            and cluster.confidence >= self.config.output_min_confidence
        ]
        results.sort(key=lambda r: r.confidence, reverse=True)
        return results

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_distance_matrix(self) -> List[List[float]]:
        """Pairwise 1 - cosine similarity between the last run's centroids."""
        clusters = self.clusters
        n = len(clusters)
        matrix = [[0.0] * n for _ in range(n)]
        for i in range(n):
            for j in range(n):
                if i != j:
                    matrix[i][j] = 1.0 - cosine_similarity(clusters[i].centroid, clusters[j].centroid)
        return matrix

    def get_statistics(self) -> Dict[str, float]:
        state = self._state
        clusters = self.clusters
        total_domains = sum(len(c.domains) for c in clusters)
        count = len(clusters) or 1
        return {
            "cluster_count": len(clusters),
            "total_domains": total_domains,
            "avg_cluster_size": total_domains / count,
            "avg_confidence": sum(c.confidence for c in clusters) / count,
            "iterations": state.iteration + 1 if clusters else 0,
            "resonance_events": state.resonance_events,
            "resonance_rate": state.resonance_events / (state.iteration + 1),
        }
