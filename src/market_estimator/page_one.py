"""
Canonical Page-1 builder.

Merges whatever organic listings were scraped with generated filler rows so
a keyword always has a full page of products whose revenue reconciles to the
keyword snapshot's total.
"""

from __future__ import annotations

import logging
import random
from collections import Counter
from dataclasses import replace
from typing import Any

from .models import CanonicalProduct, KeywordMarketSnapshot, ParsedListing

logger = logging.getLogger(__name__)

PAGE_SIZE = 20
BSR_DUPLICATE_THRESHOLD = 8
FALLBACK_PRICE = 25.0
FALLBACK_RATING = 4.3
FALLBACK_REVIEWS = 500.0
MIN_REVIEWS = 10
UNIT_WEIGHT_EXPONENT = 1.35
SYNTHETIC_BRAND = "Generic"
MIN_PRICE = 0.01
SYNTHETIC_ASIN_PREFIX = "SYNTH-"
MISSING_ASIN_PREFIX = "NOASIN-"

# (first rank, last rank, multiplier at first rank, multiplier at last rank)
_PRICE_TIERS = [
    (1, 3, 1.17, 1.10),
    (4, 7, 1.08, 1.00),
    (8, 12, 0.98, 0.90),
    (13, 20, 0.89, 0.80),
]
_RATING_ADJUSTMENT = (0.15, 0.05, -0.05, -0.15)
_REVIEW_MULTIPLIER = (1.5, 1.1, 0.8, 0.6)

_CHINA_BRAND_TOKENS = (
    "shenzhen",
    "guangzhou",
    "yiwu",
    "dongguan",
    "hangzhou",
    "ningbo",
    "co., ltd",
    "co.,ltd",
    "trading",
    "technology co",
)

OBSERVABLE_FIELDS = (
    "asin",
    "title",
    "price",
    "rating",
    "review_count",
    "fulfillment",
    "brand",
    "seller_country",
)
SYNTHETIC_FIELDS = OBSERVABLE_FIELDS + ("bsr",)

# ── Market demand fallback ────────────────────────────────────────────────────

DURABLE = "DURABLE"
HYBRID = "HYBRID"

_BASE_UNITS_PER_LISTING = {DURABLE: 300, HYBRID: 800}


def detect_market_shape(avg_price: float) -> str:
    return DURABLE if avg_price >= 300 else HYBRID


def demand_price_multiplier(avg_price: float) -> float:
    if avg_price < 10:
        return 1.5
    if avg_price < 25:
        return 1.2
    if avg_price > 100:
        return 0.6
    if avg_price > 50:
        return 0.8
    return 1.0


def estimate_market_demand(avg_price: float, listing_count: int) -> int:
    """Total monthly page units when the snapshot carries no totals."""
    base = _BASE_UNITS_PER_LISTING[detect_market_shape(avg_price)]
    return round(listing_count * base * demand_price_multiplier(avg_price))


# ── Field synthesis ───────────────────────────────────────────────────────────

def _tier_index(rank: int) -> int:
    if rank <= 3:
        return 0
    if rank <= 7:
        return 1
    if rank <= 12:
        return 2
    return 3


def price_multiplier(rank: int) -> float:
    """Interpolated within each tier, non-increasing in rank."""
    for first, last, high, low in _PRICE_TIERS:
        if first <= rank <= last:
            return high - (high - low) * (rank - first) / (last - first)
    return _PRICE_TIERS[-1][3]


def synthesize_price(rank: int, avg_price: float) -> float:
    return max(MIN_PRICE, round(avg_price * price_multiplier(rank), 2))


def synthesize_rating(rank: int, avg_rating: float, rng: random.Random) -> float:
    value = avg_rating + _RATING_ADJUSTMENT[_tier_index(rank)] + rng.uniform(-0.1, 0.1)
    return round(min(5.0, max(3.0, value)), 1)


def synthesize_reviews(rank: int, avg_reviews: float, rating: float, rng: random.Random) -> int:
    if rating >= 4.5:
        boost = 1.2
    elif rating >= 4.0:
        boost = 1.0
    else:
        boost = 0.8
    value = avg_reviews * _REVIEW_MULTIPLIER[_tier_index(rank)] * boost * rng.uniform(0.7, 1.3)
    return max(MIN_REVIEWS, round(value))


def default_fulfillment(rank: int) -> str:
    return "FBA" if rank <= 5 else "FBM"


def infer_seller_country(brand: str | None) -> str:
    if not brand:
        return "Unknown"
    text = brand.lower()
    if any(token in text for token in _CHINA_BRAND_TOKENS):
        return "CN"
    return "US"


def is_synthetic(product: CanonicalProduct) -> bool:
    """True for filler rows that have no observed listing behind them."""
    return product.asin.startswith(SYNTHETIC_ASIN_PREFIX)


def unit_weights(page_size: int) -> list[float]:
    raw = [(page_size + 1 - r) ** UNIT_WEIGHT_EXPONENT for r in range(1, page_size + 1)]
    total = sum(raw)
    return [w / total for w in raw]


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _positive(value: Any) -> bool:
    return value is not None and value > 0


# ── Builder ───────────────────────────────────────────────────────────────────

class CanonicalPageOneBuilder:
    """
    Builds exactly ``page_size`` canonical products per keyword.

    Jitter comes from ``rng``; pass a seeded ``random.Random`` for
    reproducible output.
    """

    def __init__(
        self,
        page_size: int = PAGE_SIZE,
        bsr_duplicate_threshold: int = BSR_DUPLICATE_THRESHOLD,
        rng: random.Random | None = None,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.page_size = page_size
        self.bsr_duplicate_threshold = bsr_duplicate_threshold
        self.rng = rng or random.Random()

    def build(
        self,
        listings: list[ParsedListing] | None,
        snapshot: KeywordMarketSnapshot | None,
        keyword: str,
        marketplace: str = "US",
    ) -> list[CanonicalProduct]:
        listings = listings or []
        snapshot = snapshot or KeywordMarketSnapshot()
        n = self.page_size

        organic = [l for l in listings if not l.is_sponsored][:n]
        observed_prices = [l.price for l in listings if _positive(l.price)]
        observed_ratings = [l.rating for l in listings if _positive(l.rating)]
        observed_reviews = [float(l.reviews) for l in listings if _positive(l.reviews)]

        avg_price = (
            snapshot.avg_price
            if _positive(snapshot.avg_price)
            else _mean(observed_prices) or FALLBACK_PRICE
        )
        avg_rating = (
            snapshot.avg_rating
            if _positive(snapshot.avg_rating)
            else _mean(observed_ratings) or FALLBACK_RATING
        )
        avg_reviews = (
            snapshot.avg_reviews
            if _positive(snapshot.avg_reviews)
            else _mean(observed_reviews) or FALLBACK_REVIEWS
        )

        total_units, total_revenue = self._targets(snapshot, avg_price, n)
        weights = unit_weights(n)

        rows: list[dict[str, Any]] = []
        for rank in range(1, n + 1):
            listing = organic[rank - 1] if rank <= len(organic) else None
            row = (
                self._real_row(rank, listing, keyword, avg_price, avg_rating, avg_reviews)
                if listing is not None
                else self._synthetic_row(rank, keyword, avg_price, avg_rating, avg_reviews)
            )
            row["units"] = total_units * weights[rank - 1]
            rows.append(row)

        products = self._normalize(rows, total_revenue)
        products = self.dedupe_bsr(products)
        logger.debug(
            "Built page one for %r/%s: %d real, %d synthetic, revenue %.2f",
            keyword,
            marketplace,
            len(organic),
            n - len(organic),
            sum(p.estimated_monthly_revenue for p in products),
        )
        return products

    def _targets(
        self, snapshot: KeywordMarketSnapshot, avg_price: float, n: int
    ) -> tuple[float, float]:
        units = snapshot.total_units
        revenue = snapshot.total_revenue
        if units is None and revenue is None:
            units = float(estimate_market_demand(avg_price, n))
            logger.info("Snapshot has no demand totals; estimated %d page units", units)
        if revenue is None:
            revenue = units * avg_price  # type: ignore[operator]
        if units is None:
            units = revenue / avg_price
        return units, revenue

    def _real_row(
        self,
        rank: int,
        listing: ParsedListing,
        keyword: str,
        avg_price: float,
        avg_rating: float,
        avg_reviews: float,
    ) -> dict[str, Any]:
        inferred: list[str] = []

        def pick(name: str, observed: Any, fallback: Any) -> Any:
            if observed is None or observed == "":
                inferred.append(name)
                return fallback() if callable(fallback) else fallback
            return observed

        price = pick(
            "price",
            listing.price if _positive(listing.price) else None,
            lambda: synthesize_price(rank, avg_price),
        )
        rating = pick(
            "rating",
            listing.rating if _positive(listing.rating) else None,
            lambda: synthesize_rating(rank, avg_rating, self.rng),
        )
        row = {
            "rank": rank,
            "asin": pick("asin", listing.asin, f"{MISSING_ASIN_PREFIX}{rank:02d}"),
            "title": pick("title", listing.title, f"{keyword} (estimated listing #{rank})"),
            "price": price,
            "rating": rating,
            "review_count": pick(
                "review_count",
                listing.reviews,
                lambda: synthesize_reviews(rank, avg_reviews, rating, self.rng),
            ),
            "bsr": listing.bsr,
            "fulfillment": pick("fulfillment", listing.fulfillment, default_fulfillment(rank)),
            "brand": pick("brand", listing.brand, SYNTHETIC_BRAND),
            "seller_country": pick(
                "seller_country",
                listing.seller_country,
                lambda: infer_seller_country(listing.brand),
            ),
        }
        row["inferred"] = tuple(f for f in OBSERVABLE_FIELDS if f in inferred)
        return row

    def _synthetic_row(
        self,
        rank: int,
        keyword: str,
        avg_price: float,
        avg_rating: float,
        avg_reviews: float,
    ) -> dict[str, Any]:
        rating = synthesize_rating(rank, avg_rating, self.rng)
        return {
            "rank": rank,
            "asin": f"{SYNTHETIC_ASIN_PREFIX}{rank:02d}",
            "title": f"{keyword} (estimated listing #{rank})",
            "price": synthesize_price(rank, avg_price),
            "rating": rating,
            "review_count": synthesize_reviews(rank, avg_reviews, rating, self.rng),
            "bsr": None,
            "fulfillment": default_fulfillment(rank),
            "brand": SYNTHETIC_BRAND,
            "seller_country": "Unknown",
            "inferred": SYNTHETIC_FIELDS,
        }

    def _normalize(self, rows: list[dict[str, Any]], total_revenue: float) -> list[CanonicalProduct]:
        """Scale row revenue to the target total, then re-derive units from price."""
        raw = [row["units"] * row["price"] for row in rows]
        raw_total = sum(raw)
        ratio = total_revenue / raw_total if raw_total > 0 else 0.0

        revenues = [round(r * ratio, 2) for r in raw]
        page_total = sum(revenues)

        products = []
        for row, revenue in zip(rows, revenues):
            if page_total > 0:
                share = round(revenue / page_total * 100, 2)
            else:
                share = round(100 / len(rows), 2)
            products.append(
                CanonicalProduct(
                    rank=row["rank"],
                    asin=row["asin"],
                    title=row["title"],
                    price=row["price"],
                    rating=row["rating"],
                    review_count=int(row["review_count"]),
                    bsr=row["bsr"],
                    estimated_monthly_units=round(revenue / row["price"]) if row["price"] > 0 else 0,
                    estimated_monthly_revenue=revenue,
                    revenue_share_pct=share,
                    fulfillment=row["fulfillment"],
                    brand=row["brand"],
                    seller_country=row["seller_country"],
                    snapshot_inferred=bool(row["inferred"]),
                    snapshot_inferred_fields=tuple(row["inferred"]),
                )
            )
        return products

    def dedupe_bsr(self, products: list[CanonicalProduct]) -> list[CanonicalProduct]:
        """Null out any BSR value shared by ``bsr_duplicate_threshold`` or more rows."""
        counts = Counter(p.bsr for p in products if p.bsr is not None)
        duplicated = {bsr for bsr, count in counts.items() if count >= self.bsr_duplicate_threshold}
        if not duplicated:
            return products
        logger.info(
            "Nullifying duplicated BSR values %s (%d rows)",
            sorted(duplicated),
            sum(counts[b] for b in duplicated),
        )
        return [replace(p, bsr=None) if p.bsr in duplicated else p for p in products]


def build_page_one(
    listings: list[ParsedListing] | None,
    snapshot: KeywordMarketSnapshot | None,
    keyword: str,
    marketplace: str = "US",
    *,
    seed: int | None = None,
    page_size: int = PAGE_SIZE,
) -> list[CanonicalProduct]:
    builder = CanonicalPageOneBuilder(page_size=page_size, rng=random.Random(seed))
    return builder.build(listings, snapshot, keyword, marketplace)
