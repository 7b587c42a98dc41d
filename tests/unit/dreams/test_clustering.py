"""
Unit tests for AdaptiveResonanceClustering.

Verifies:
1. Similar vectors share a cluster; output filtering and ordering.
2. Membership uniqueness and unit-length centroids.
3. Vigilance monotonicity on separated groups, and the split it cannot prevent.
4. Cancellation, zero-vector skipping, merging and introspection.
"""

import numpy as np
import pytest

from nocturne.dreams.clustering import (
    AdaptiveResonanceClustering,
    Cluster,
    ClusterOptions,
    _RunState,
)
from nocturne.dreams.vectorizer import SignatureVectorizer
from nocturne.utils.async_helpers import CancellationToken


def _blobs(groups: int = 3, per_group: int = 4, noise: float = 0.02, seed: int = 3, sizes=None):
    """Tight groups around orthogonal axes, so within-group similarity is ~0.99."""
    rng = np.random.default_rng(seed)
    sizes = sizes or [per_group] * groups
    signatures = {}
    for g, per_group in enumerate(sizes):
        base = np.zeros(32)
        base[g * 8] = 1.0
        for m in range(per_group):
            vec = base + rng.normal(0.0, noise, 32)
            signatures[f"g{g}-m{m}.example"] = vec / np.linalg.norm(vec)
    return signatures


@pytest.mark.asyncio
async def test_two_similar_domains_form_one_cluster(fragment_factory):
    vectorizer = SignatureVectorizer()
    signatures = {
        "tracker1.com": vectorizer.vectorize(fragment_factory("tracker1.com", friction=100.0)),
        "tracker2.net": vectorizer.vectorize(fragment_factory("tracker2.net", friction=105.0)),
    }

    results = await AdaptiveResonanceClustering().cluster(signatures, ClusterOptions(vigilance=0.85))

    assert len(results) == 1
    assert sorted(results[0].domains) == ["tracker1.com", "tracker2.net"]
    assert results[0].confidence >= 0.5


@pytest.mark.asyncio
async def test_membership_unique_and_centroids_unit_length():
    clustering = AdaptiveResonanceClustering()
    results = await clustering.cluster(_blobs(noise=0.05), ClusterOptions(vigilance=0.8))

    for cluster in clustering.clusters:
        assert len(cluster.domains) == len(set(cluster.domains))
        assert np.linalg.norm(cluster.centroid) == pytest.approx(1.0, abs=1e-9)
    for result in results:
        assert len(result.domains) >= 2
        assert result.confidence >= 0.5


@pytest.mark.asyncio
async def test_results_sorted_by_confidence():
    signatures = _blobs(sizes=[2, 8, 4])

    results = await AdaptiveResonanceClustering().cluster(signatures, ClusterOptions(vigilance=0.9))

    confidences = [r.confidence for r in results]
    assert confidences == sorted(confidences, reverse=True)


@pytest.mark.asyncio
async def test_vigilance_monotonicity_on_separated_groups():
    signatures = _blobs()
    counts = []
    for vigilance in (0.5, 0.7, 0.85, 0.95, 0.9999):
        results = await AdaptiveResonanceClustering().cluster(signatures, ClusterOptions(vigilance=vigilance))
        counts.append(sum(1 for r in results if len(r.domains) >= 2))

    assert counts[0] == 3
    assert all(later <= earlier for earlier, later in zip(counts, counts[1:]))
    assert counts[-1] == 0


@pytest.mark.asyncio
async def test_zero_vectors_never_cluster():
    signatures = _blobs(groups=1, per_group=3)
    signatures["broken.example"] = np.zeros(32)

    clustering = AdaptiveResonanceClustering()
    await clustering.cluster(signatures)

    assert all("broken.example" not in c.domains for c in clustering.clusters)


@pytest.mark.asyncio
async def test_empty_input_returns_empty():
    assert await AdaptiveResonanceClustering().cluster({}) == []


@pytest.mark.asyncio
async def test_cancelled_run_returns_empty():
    token = CancellationToken()
    token.cancel("stop")

    results = await AdaptiveResonanceClustering().cluster(_blobs(), ClusterOptions(cancellation=token))

    assert results == []


@pytest.mark.asyncio
async def test_cluster_ids_are_deterministic():
    clustering = AdaptiveResonanceClustering()
    await clustering.cluster(_blobs())
    assert [c.id for c in clustering.clusters] == ["cluster_0", "cluster_1", "cluster_2"]


def test_singleton_confidence_is_capped():
    clustering = AdaptiveResonanceClustering(clock=lambda: 100.0)
    cluster = Cluster(id="c", domains=["solo.example"], centroid=np.eye(32)[0], resonance_score=50, last_updated=100.0)
    assert clustering._confidence(cluster) <= 0.1


def test_confidence_weights():
    clustering = AdaptiveResonanceClustering(clock=lambda: 100.0)
    cluster = Cluster(
        id="c",
        domains=[f"d{i}.example" for i in range(6)],
        centroid=np.eye(32)[0],
        resonance_score=12,
        last_updated=100.0,
    )
    # 0.3 * 0.6 + 0.4 * 1.0 + 0.3 * 1.0
    assert clustering._confidence(cluster) == pytest.approx(0.88)


def test_merge_uses_pre_merge_weights_and_dedupes():
    clustering = AdaptiveResonanceClustering(clock=lambda: 100.0)
    a = np.eye(32)[0]
    b = np.eye(32)[0] * 0.999 + np.eye(32)[1] * 0.0447
    b = b / np.linalg.norm(b)
    clustering._state = _RunState(clusters={
        "cluster_0": Cluster("cluster_0", ["x.example", "y.example", "z.example"], a, resonance_score=3, last_updated=100.0),
        "cluster_1": Cluster("cluster_1", ["z.example", "w.example"], b, resonance_score=2, last_updated=100.0),
    })

    clustering._merge(vigilance=0.85)

    clusters = clustering.clusters
    assert len(clusters) == 1
    assert clusters[0].domains == ["x.example", "y.example", "z.example", "w.example"]
    expected = (a * 3 + b * 2) / 5
    np.testing.assert_allclose(clusters[0].centroid, expected / np.linalg.norm(expected))
    assert np.linalg.norm(clusters[0].centroid) == pytest.approx(1.0)
    assert clusters[0].resonance_score == 5


@pytest.mark.asyncio
async def test_statistics_and_distance_matrix():
    clustering = AdaptiveResonanceClustering()
    await clustering.cluster(_blobs())

    stats = clustering.get_statistics()
    matrix = clustering.get_distance_matrix()

    assert stats["cluster_count"] == 3
    assert stats["total_domains"] == 12
    assert len(matrix) == 3 and all(len(row) == 3 for row in matrix)
    assert all(matrix[i][i] == 0.0 for i in range(3))
    assert matrix[0][1] == pytest.approx(matrix[1][0])


def _separated_groups(seed: int):
    """2-4 groups of 2-5 noisy members around random orthonormal axes."""
    rng = np.random.default_rng(seed)
    groups = int(rng.integers(2, 5))
    axes, _ = np.linalg.qr(rng.normal(size=(32, groups)))
    signatures = {}
    for g in range(groups):
        for m in range(int(rng.integers(2, 6))):
            vec = axes[:, g] + rng.normal(0.0, 0.02, 32)
            signatures[f"g{g}-m{m}.example"] = vec / np.linalg.norm(vec)
    return groups, signatures


def _similarity_bounds(signatures):
    """(smallest within-group, largest cross-group, largest overall) similarity."""
    names = list(signatures)
    within, across, closest = 1.0, -1.0, -1.0
    for i, a in enumerate(names):
        for b in names[i + 1:]:
            similarity = float(signatures[a] @ signatures[b])
            closest = max(closest, similarity)
            if a.split("-")[0] == b.split("-")[0]:
                within = min(within, similarity)
            else:
                across = max(across, similarity)
    return within, across, closest


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(25))
async def test_vigilance_monotonicity_inside_separation_band(seed):
    groups, signatures = _separated_groups(seed)
    within, across, closest = _similarity_bounds(signatures)
    low = max(across, 0.0) / within + 0.02
    high = within - 0.01
    assert low < high

    vigilances = list(np.linspace(low, high, 4)) + [(closest + 1.0) / 2.0]
    counts = []
    for vigilance in vigilances:
        results = await AdaptiveResonanceClustering().cluster(signatures, ClusterOptions(vigilance=vigilance))
        counts.append(sum(1 for r in results if len(r.domains) >= 2))

    assert counts == [groups] * 4 + [0]
    assert all(later <= earlier for earlier, later in zip(counts, counts[1:]))


@pytest.mark.asyncio
async def test_raising_vigilance_can_split_a_loose_group():
    e = np.eye(32)
    near = 0.8 * e[0] + 0.6 * e[1]
    signatures = {
        "a1.example": e[0],
        "a2.example": (e[0] + 0.05 * e[2]) / np.linalg.norm(e[0] + 0.05 * e[2]),
        "b1.example": near,
        "b2.example": (near + 0.05 * e[3]) / np.linalg.norm(near + 0.05 * e[3]),
    }

    loose = await AdaptiveResonanceClustering().cluster(signatures, ClusterOptions(vigilance=0.6))
    tight = await AdaptiveResonanceClustering().cluster(signatures, ClusterOptions(vigilance=0.9))

    assert [sorted(r.domains) for r in loose] == [["a1.example", "a2.example", "b1.example", "b2.example"]]
    assert sorted(sorted(r.domains) for r in tight) == [
        ["a1.example", "a2.example"],
        ["b1.example", "b2.example"],
    ]


def test_prune_applies_confidence_floor_to_every_cluster():
    clustering = AdaptiveResonanceClustering(clock=lambda: 100.0)
    axis = np.eye(32)[0]
    clustering._state = _RunState(
        clusters={
            "cluster_0": Cluster("cluster_0", ["solo.example"], axis, last_updated=100.0),
            "cluster_1": Cluster("cluster_1", ["old1.example", "old2.example"], axis, last_updated=100.0 - 3600.0),
            "cluster_2": Cluster("cluster_2", ["new1.example", "new2.example"], axis, last_updated=100.0),
        },
        assignment={
            "solo.example": "cluster_0",
            "old1.example": "cluster_1",
            "old2.example": "cluster_1",
            "new1.example": "cluster_2",
            "new2.example": "cluster_2",
        },
        iteration=10,
    )

    clustering._prune()

    assert [c.id for c in clustering.clusters] == ["cluster_2"]
    assert clustering._state.retired == {"solo.example", "old1.example", "old2.example"}
    assert set(clustering._state.assignment) == {"new1.example", "new2.example"}
