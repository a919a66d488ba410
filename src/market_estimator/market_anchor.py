"""
Rank distribution model and the keyword-level market anchor cache.

A market anchor is the total monthly unit/revenue estimate for a keyword's
first page plus the share of that demand captured by each rank bucket.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from dateutil import parser as dateparser

from .models import RANK_BUCKETS, MarketAnchor, RankDistribution
from .normalize import normalize_keyword

logger = logging.getLogger(__name__)

DECAY_CONSTANT = 0.45
ORGANIC_PCT = 85.0
SPONSORED_PCT = 15.0
DEFAULT_ANCHOR_TTL = timedelta(hours=24)
CACHE_KEY_PREFIX = "keyword"
CACHE_KEY_SUFFIX = "market_anchor"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Distribution ──────────────────────────────────────────────────────────────

def rank_bucket(rank: int | None) -> str:
    """Map an organic rank to its bucket; ``None`` means a sponsored slot."""
    if rank is None:
        return "sponsored"
    if rank <= 1:
        return "rank_1"
    if rank <= 3:
        return "rank_2_3"
    if rank <= 10:
        return "rank_4_10"
    if rank <= 20:
        return "rank_11_20"
    return "rank_21_plus"


def compute_rank_distribution(organic_count: int, sponsored_count: int) -> RankDistribution:
    """
    Percent of page demand per rank bucket.

    Organic rank ``r`` is weighted ``exp(-0.45 * (r - 1))``; organic weights
    are normalised and share 85%, sponsored slots get a flat 15%. With no
    organic listings at all the whole page is attributed to sponsored.
    """
    organic_count = max(0, int(organic_count or 0))
    if organic_count == 0:
        return RankDistribution(sponsored=100.0)

    weights = [math.exp(-DECAY_CONSTANT * (r - 1)) for r in range(1, organic_count + 1)]
    total = sum(weights)
    buckets = {name: 0.0 for name in RANK_BUCKETS}
    for rank, weight in enumerate(weights, start=1):
        buckets[rank_bucket(rank)] += weight / total * ORGANIC_PCT
    buckets["sponsored"] = SPONSORED_PCT
    return RankDistribution(**buckets)


def compute_market_anchor(
    market_units: float,
    avg_price: float,
    organic_count: int,
    sponsored_count: int,
    *,
    now: datetime | None = None,
    ttl: timedelta = DEFAULT_ANCHOR_TTL,
) -> MarketAnchor:
    computed_at = now or _utcnow()
    return MarketAnchor(
        estimated_market_units=market_units,
        estimated_market_revenue=round(market_units * avg_price),
        rank_distribution=compute_rank_distribution(organic_count, sponsored_count),
        computed_at=computed_at,
        expires_at=computed_at + ttl,
    )


def market_anchor_cache_key(keyword: str, marketplace: str = "US") -> str:
    return f"{CACHE_KEY_PREFIX}:{marketplace}:{normalize_keyword(keyword)}:{CACHE_KEY_SUFFIX}"


# ── Serialisation ─────────────────────────────────────────────────────────────

def _parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = dateparser.isoparse(str(value))
        except (ValueError, OverflowError):
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def anchor_from_document(doc: Any, expires_at: Any = None) -> MarketAnchor | None:
    """
    Rebuild a :class:`MarketAnchor` from a cached JSON document.

    Accepts either ``{"market_anchor": {...}}`` or the anchor itself.
    Anything structurally invalid yields ``None`` (treated as a miss).
    """
    if not isinstance(doc, dict):
        return None
    anchor = doc.get("market_anchor", doc)
    if not isinstance(anchor, dict):
        return None
    dist = anchor.get("rank_distribution")
    if not anchor.get("estimated_market_units") or not isinstance(dist, dict):
        return None
    try:
        distribution = RankDistribution(**{k: float(dist.get(k) or 0.0) for k in RANK_BUCKETS})
        computed_at = _parse_ts(anchor.get("computed_at"))
        expiry = _parse_ts(expires_at) or _parse_ts(anchor.get("expires_at"))
        if expiry is None:
            return None
        return MarketAnchor(
            estimated_market_units=float(anchor["estimated_market_units"]),
            estimated_market_revenue=float(anchor.get("estimated_market_revenue") or 0.0),
            rank_distribution=distribution,
            computed_at=computed_at or expiry - DEFAULT_ANCHOR_TTL,
            expires_at=expiry,
        )
    except (TypeError, ValueError):
        return None


# ── Cache ─────────────────────────────────────────────────────────────────────

class AnchorStore(Protocol):
    def get(self, cache_key: str) -> dict[str, Any] | None: ...

    def upsert(
        self, cache_key: str, data: dict[str, Any], expires_at: datetime, created_at: datetime
    ) -> None: ...


class InMemoryAnchorStore:
    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, cache_key: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(cache_key)
            return dict(row) if row else None

    def upsert(
        self, cache_key: str, data: dict[str, Any], expires_at: datetime, created_at: datetime
    ) -> None:
        with self._lock:
            self._rows[cache_key] = {
                "cache_key": cache_key,
                "data": data,
                "expires_at": expires_at,
                "created_at": created_at,
            }


@dataclass(frozen=True)
class AnchorLookup:
    anchor: MarketAnchor | None
    source: str  # "cache" | "computed"
    age_seconds: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "anchor": self.anchor.as_dict() if self.anchor else None,
            "source": self.source,
            "age_seconds": self.age_seconds,
        }


class MarketAnchorCache:
    """Read-through anchor cache keyed by marketplace + normalised keyword."""

    def __init__(
        self,
        store: AnchorStore,
        *,
        ttl: timedelta = DEFAULT_ANCHOR_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock

    def get(self, keyword: str, marketplace: str = "US") -> AnchorLookup:
        key = market_anchor_cache_key(keyword, marketplace)
        try:
            row = self.store.get(key)
        except Exception as exc:
            logger.warning("Market anchor cache read failed for %s: %s", key, exc)
            return AnchorLookup(anchor=None, source="computed")
        if not row:
            logger.debug("Market anchor cache miss: %s", key)
            return AnchorLookup(anchor=None, source="computed")

        now = self._clock()
        anchor = anchor_from_document(row.get("data"), row.get("expires_at"))
        if anchor is None or anchor.is_expired(now):
            return AnchorLookup(anchor=None, source="computed")

        created = _parse_ts(row.get("created_at")) or anchor.computed_at
        age = max(0, int((now - created).total_seconds()))
        return AnchorLookup(anchor=anchor, source="cache", age_seconds=age)

    def put(self, keyword: str, marketplace: str, anchor: MarketAnchor) -> None:
        key = market_anchor_cache_key(keyword, marketplace)
        try:
            self.store.upsert(
                key,
                {"market_anchor": anchor.as_dict()},
                expires_at=anchor.expires_at,
                created_at=anchor.computed_at,
            )
        except Exception as exc:
            logger.warning("Market anchor cache write failed for %s: %s", key, exc)

    def get_or_compute(
        self,
        keyword: str,
        marketplace: str,
        market_units: float,
        avg_price: float,
        organic_count: int,
        sponsored_count: int,
    ) -> AnchorLookup:
        cached = self.get(keyword, marketplace)
        if cached.anchor is not None:
            return cached
        anchor = compute_market_anchor(
            market_units,
            avg_price,
            organic_count,
            sponsored_count,
            now=self._clock(),
            ttl=self.ttl,
        )
        self.put(keyword, marketplace, anchor)
        return AnchorLookup(anchor=anchor, source="computed")
