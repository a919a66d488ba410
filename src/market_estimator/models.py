"""Data model shared by the page-one builder, fee waterfall and margin engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

# ── Vocabularies ──────────────────────────────────────────────────────────────

SOURCING_MODELS = (
    "private_label",
    "wholesale_arbitrage",
    "retail_arbitrage",
    "dropshipping",
    "not_sure",
)

CONFIDENCE_ESTIMATED = "ESTIMATED"
CONFIDENCE_REFINED = "REFINED"
CONFIDENCE_EXACT = "EXACT"

FEE_SOURCE_LIVE = "live_quote"
FEE_SOURCE_ESTIMATE = "category_estimate"
FEE_SOURCE_UNKNOWN = "unknown"

RANK_BUCKETS = ("rank_1", "rank_2_3", "rank_4_10", "rank_11_20", "rank_21_plus", "sponsored")


# ── Inputs ────────────────────────────────────────────────────────────────────

@dataclass
class ParsedListing:
    """One scraped search-result row. Every field may be missing."""

    asin: str | None = None
    title: str | None = None
    price: float | None = None
    rating: float | None = None
    reviews: int | None = None
    bsr: int | None = None
    fulfillment: str | None = None
    brand: str | None = None
    seller_country: str | None = None
    is_sponsored: bool = False


@dataclass
class KeywordMarketSnapshot:
    """Keyword-level aggregate the canonical page must reconcile to."""

    avg_price: float | None = None
    avg_rating: float | None = None
    avg_reviews: float | None = None
    est_total_monthly_units_min: float | None = None
    est_total_monthly_units_max: float | None = None
    est_total_monthly_revenue_min: float | None = None
    est_total_monthly_revenue_max: float | None = None

    @property
    def total_units(self) -> float | None:
        return _midpoint(self.est_total_monthly_units_min, self.est_total_monthly_units_max)

    @property
    def total_revenue(self) -> float | None:
        return _midpoint(self.est_total_monthly_revenue_min, self.est_total_monthly_revenue_max)


def _midpoint(low: float | None, high: float | None) -> float | None:
    values = [v for v in (low, high) if v is not None and v > 0]
    if not values:
        return None
    return sum(values) / len(values)


# ── Page-one output ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CanonicalProduct:
    rank: int
    asin: str
    title: str
    price: float
    rating: float
    review_count: int
    bsr: int | None
    estimated_monthly_units: int
    estimated_monthly_revenue: float
    revenue_share_pct: float
    fulfillment: str
    brand: str | None
    seller_country: str
    snapshot_inferred: bool
    snapshot_inferred_fields: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["snapshot_inferred_fields"] = list(self.snapshot_inferred_fields)
        return result


# ── Market anchor ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RankDistribution:
    """Percent of page demand per rank bucket. The six buckets sum to 100."""

    rank_1: float = 0.0
    rank_2_3: float = 0.0
    rank_4_10: float = 0.0
    rank_11_20: float = 0.0
    rank_21_plus: float = 0.0
    sponsored: float = 0.0

    @property
    def total(self) -> float:
        return sum(getattr(self, name) for name in RANK_BUCKETS)

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in RANK_BUCKETS}


@dataclass(frozen=True)
class MarketAnchor:
    estimated_market_units: float
    estimated_market_revenue: float
    rank_distribution: RankDistribution
    computed_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def as_dict(self) -> dict[str, Any]:
        return {
            "estimated_market_units": self.estimated_market_units,
            "estimated_market_revenue": self.estimated_market_revenue,
            "rank_distribution": self.rank_distribution.as_dict(),
            "computed_at": self.computed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


# ── Fees ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FeeQuote:
    """Fee breakdown returned by the live quote endpoint (components may be missing)."""

    fulfillment_fee: float | None
    referral_fee: float | None
    total_fee: float | None = None
    currency: str = "USD"

    @property
    def is_usable(self) -> bool:
        return self.fulfillment_fee is not None and self.referral_fee is not None

    @property
    def resolved_total(self) -> float | None:
        if self.total_fee is not None:
            return self.total_fee
        if self.is_usable:
            return round(self.fulfillment_fee + self.referral_fee, 2)  # type: ignore[operator]
        return None


@dataclass(frozen=True)
class FeeCacheKey:
    asin: str
    price: float
    marketplace: str
    is_amazon_fulfilled: bool = True


@dataclass(frozen=True)
class FeeCacheEntry:
    key: FeeCacheKey
    fulfillment_fee: float | None
    referral_fee: float | None
    total_fee: float | None
    currency: str
    fetched_at: datetime
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    def is_usable(self) -> bool:
        return self.fulfillment_fee is not None and self.referral_fee is not None

    def to_quote(self) -> FeeQuote:
        return FeeQuote(
            fulfillment_fee=self.fulfillment_fee,
            referral_fee=self.referral_fee,
            total_fee=self.total_fee,
            currency=self.currency,
        )


@dataclass(frozen=True)
class FeeResolution:
    """Outcome of the cache -> live lookup. ``quote`` is None when no usable quote exists."""

    quote: FeeQuote | None
    source: str  # "cache" | "live" | "none"

    @property
    def found(self) -> bool:
        return self.quote is not None


# ── Margins ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CostOverride:
    """User-supplied costs that supersede the engine's assumptions."""

    cogs_min: float | None = None
    cogs_max: float | None = None
    fee: float | None = None

    @classmethod
    def exact(cls, cogs: float | None = None, fee: float | None = None) -> "CostOverride":
        return cls(cogs_min=cogs, cogs_max=cogs, fee=fee)

    @property
    def has_cogs(self) -> bool:
        return _positive(self.cogs_min) or _positive(self.cogs_max)

    @property
    def has_fee(self) -> bool:
        return _positive(self.fee)

    @property
    def is_empty(self) -> bool:
        return not (self.has_cogs or self.has_fee)


def _positive(value: float | None) -> bool:
    return value is not None and value > 0


@dataclass
class MarginSnapshot:
    mode: str
    assumed_price: float
    price_source: str
    estimated_cogs_min: float | None
    estimated_cogs_max: float | None
    estimated_fba_fee: float | None
    fba_fee_source: str
    net_margin_min_pct: float | None
    net_margin_max_pct: float | None
    breakeven_price_min: float | None
    breakeven_price_max: float | None
    confidence_tier: str
    cogs_source: str = "assumption_engine"
    assumptions: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
