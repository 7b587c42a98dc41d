"""
nocturne/dreams/cdn.py

False-positive guard: recognises shared infrastructure (CDNs, shared hosting,
common analytics/font hosts) so domains are not correlated merely because
they sit behind the same provider.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence, Set
from urllib.parse import urlsplit

from nocturne.base.config import CDNConfig

logger = logging.getLogger(__name__)

CDN_PROVIDERS: Dict[str, List[str]] = {
    "cloudflare": ["cloudflare.com", "cloudflare-dns.com", "cloudflaressl.com", "cf-ipfs.com"],
    "akamai": ["akamai.net", "akamaihd.net", "akamaiedge.net", "akamaitechnologies.com"],
    "fastly": ["fastly.net", "fastlylb.net", "fsly.net"],
    "cloudfront": ["cloudfront.net", "amazonaws.com", "aws.amazon.com"],
    "google": [
        "googleapis.com",
        "gstatic.com",
        "googleusercontent.com",
        "googlevideo.com",
        "google-analytics.com",
    ],
    "microsoft": ["azure.com", "azureedge.net", "msecnd.net", "windows.net"],
    "stackpath": ["stackpath.com", "stackpathcdn.com", "bootstrapcdn.com"],
    "bunnycdn": ["bunnycdn.com", "b-cdn.net"],
    "jsdelivr": ["jsdelivr.net", "jsdelivr.com"],
    "unpkg": ["unpkg.com"],
    "cdnjs": ["cdnjs.cloudflare.com", "cdnjs.com"],
    "facebook": ["fbcdn.net", "facebook.com", "fbsbx.com"],
}

SHARED_INFRASTRUCTURE: List[str] = [
    # Shared hosting
    "github.io",
    "gitlab.io",
    "netlify.app",
    "vercel.app",
    "herokuapp.com",
    "surge.sh",
    # Common analytics
    "googletagmanager.com",
    "segment.com",
    "amplitude.com",
    # Fonts and assets
    "typekit.net",
    "use.fontawesome.com",
    "fonts.googleapis.com",
]


def _clean(domain: Optional[str]) -> str:
    return (domain or "").strip().lower().rstrip(".")


def _matches(domain: str, suffix: str) -> bool:
    return domain == suffix or domain.endswith("." + suffix)


def base_domain(domain: str) -> str:
    """Last two DNS labels (no public-suffix awareness)."""
    parts = _clean(domain).split(".")
    return ".".join(parts[-2:]) if len(parts) > 2 else ".".join(parts)


class CDNWhitelist:
    def __init__(self, config: Optional[CDNConfig] = None):
        self.config = config or CDNConfig()
        # Insertion ordered so the oldest learned entries are evicted first
        self._learned: "OrderedDict[str, float]" = OrderedDict()

    def is_cdn(self, domain: str) -> bool:
        domain = _clean(domain)
        if not domain:
            return False
        if any(_matches(domain, learned) for learned in self._learned):
            return True
        if self.identify_cdn(domain) is not None:
            return True
        return any(_matches(domain, suffix) for suffix in SHARED_INFRASTRUCTURE)

    def identify_cdn(self, domain: str) -> Optional[str]:
        domain = _clean(domain)
        if not domain:
            return None
        for provider, suffixes in CDN_PROVIDERS.items():
            if any(_matches(domain, suffix) for suffix in suffixes):
                return provider
        return None

    def is_cdn_url(self, url: str) -> bool:
        try:
            host = urlsplit(url).hostname
        except ValueError:
            return False
        return bool(host) and self.is_cdn(host)

    def shares_cdn_only(self, domain_a: str, domain_b: str) -> bool:
        """Different base domains that both resolve to the same CDN provider."""
        if base_domain(domain_a) == base_domain(domain_b):
            return False
        provider = self.identify_cdn(domain_a)
        return provider is not None and provider == self.identify_cdn(domain_b)

    def adjust_correlation_for_cdn(
        self,
        correlation: float,
        domain_a: str,
        domain_b: str,
        shared_resource_urls: Sequence[str] = (),
    ) -> float:
        """
        Discount a correlation score for shared infrastructure.

        Halved when the two domains only share a CDN provider, then reduced by
        up to a further 50% in proportion to the share of CDN-hosted URLs
        among the resources the two domains have in common.
        """
        adjusted = correlation
        if self.shares_cdn_only(domain_a, domain_b):
            adjusted *= 0.5

        if shared_resource_urls:
            cdn_count = sum(1 for url in shared_resource_urls if self.is_cdn_url(url))
            cdn_ratio = cdn_count / len(shared_resource_urls)
            adjusted *= 1.0 - 0.5 * cdn_ratio

        return adjusted

    def analyze_cdn_usage(self, resource_domains: Iterable[str]) -> Dict[str, object]:
        providers: Set[str] = set()
        total = 0
        cdn_resources = 0
        for domain in resource_domains:
            total += 1
            provider = self.identify_cdn(domain)
            if provider:
                cdn_resources += 1
                providers.add(provider)
        return {
            "cdn_resources": cdn_resources,
            "total_resources": total,
            "cdn_providers": sorted(providers),
            "cdn_percentage": (cdn_resources / total) * 100.0 if total else 0.0,
        }

    def filter_non_cdn(self, domains: Iterable[str]) -> List[str]:
        return [d for d in domains if not self.is_cdn(d)]

    def learn_cdn_pattern(self, domain: str, confidence: float) -> bool:
        """Remember a domain as shared infrastructure. Only high-confidence observations are kept."""
        domain = _clean(domain)
        if not domain or confidence < self.config.learn_min_confidence:
            return False
        if self.is_cdn(domain):
            return False
        self._remember(domain, confidence)
        logger.info(
            f"[CDNWhitelist] Learned new CDN pattern {domain} "
            f"(confidence={confidence:.2f}, cache={len(self._learned)})"
        )
        return True

    def export_learned_patterns(self) -> List[str]:
        return list(self._learned)

    def import_learned_patterns(self, patterns: Iterable[str]) -> int:
        count = 0
        for pattern in patterns:
            domain = _clean(pattern)
            if domain:
                self._remember(domain, 1.0)
                count += 1
        logger.info(f"[CDNWhitelist] Imported {count} learned patterns")
        return count

    def get_statistics(self) -> Dict[str, int]:
        return {
            "known_providers": len(CDN_PROVIDERS),
            "learned_domains": len(self._learned),
            "patterns": sum(len(p) for p in CDN_PROVIDERS.values()) + len(SHARED_INFRASTRUCTURE),
        }

    def reset(self) -> None:
        self._learned.clear()
        logger.info("[CDNWhitelist] Reset to default patterns")

    def _remember(self, domain: str, confidence: float) -> None:
        self._learned.pop(domain, None)
        self._learned[domain] = confidence
        if len(self._learned) > self.config.max_learned_domains:
            for _ in range(self.config.eviction_batch):
                self._learned.popitem(last=False)
