"""
Category and size based fee heuristics.

Used whenever no live quote is available: referral fee is a category
percentage of price, fulfillment fee a fixed estimate per size tier.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_REFERRAL_PCT = 15.0

# Ordered: first keyword match wins.
_REFERRAL_BUCKETS: list[tuple[str, float, tuple[str, ...]]] = [
    ("electronics", 8.0, ("electronic", "tech", "computer", "camera", "phone")),
    ("beauty", 8.5, ("beauty", "cosmetic", "skincare")),
    ("home_kitchen", 15.0, ("home", "kitchen", "household")),
    ("clothing", 17.0, ("clothing", "apparel", "fashion")),
    ("automotive", 12.0, ("automotive", "car ", "vehicle")),
    ("jewelry", 20.0, ("jewelry", "jewellery")),
]

SMALL_STANDARD = "small_standard"
LARGE_STANDARD = "large_standard"
OVERSIZE = "oversize"

SIZE_TIER_FEES: dict[str, float] = {
    SMALL_STANDARD: 3.50,
    LARGE_STANDARD: 5.40,
    OVERSIZE: 12.00,
}

_SIZE_TIER_LABELS = {
    SMALL_STANDARD: "small standard-size",
    LARGE_STANDARD: "large standard-size",
    OVERSIZE: "oversize",
}

_OVERSIZE_HINTS = ("furniture", "appliance", "mattress", "exercise equipment", "fitness equipment")
_SMALL_HINTS = ("jewelry", "beauty", "cosmetic", "phone case", "supplement", "accessor")


@dataclass
class FeeEstimate:
    referral_pct: float
    referral_fee: float
    fulfillment_fee: float
    size_tier: str
    assumptions: list[str] = field(default_factory=list)

    @property
    def total_fee(self) -> float:
        return round(self.referral_fee + self.fulfillment_fee, 2)

    def fee_lines(self) -> list[dict[str, Any]]:
        return [
            {"name": "Referral", "amount": self.referral_fee},
            {"name": "FBA fulfillment", "amount": self.fulfillment_fee},
        ]

    def as_dict(self) -> dict[str, Any]:
        return {
            "referral_pct": self.referral_pct,
            "referral_fee": self.referral_fee,
            "fulfillment_fee": self.fulfillment_fee,
            "total_fee": self.total_fee,
            "size_tier": self.size_tier,
            "assumptions": list(self.assumptions),
        }


def referral_bucket(category: str | None) -> tuple[str, float]:
    """Return ``(bucket_name, percent)`` for a free-text category."""
    if not category:
        return "default", DEFAULT_REFERRAL_PCT
    text = category.lower().strip() + " "
    for name, pct, keywords in _REFERRAL_BUCKETS:
        if any(k in text for k in keywords):
            return name, pct
    return "default", DEFAULT_REFERRAL_PCT


def size_tier_from_dimensions(weight_lbs: float, dims_inches: list[float]) -> str:
    """Classify a package by weight and longest/median/shortest side."""
    l, w, h = sorted(dims_inches, reverse=True)
    if weight_lbs <= 1 and l <= 15 and w <= 12 and h <= 0.75:
        return SMALL_STANDARD
    elif weight_lbs <= 20 and l <= 18 and w <= 14 and h <= 8:
        return LARGE_STANDARD
    else:
        return OVERSIZE


def size_tier_from_category(category: str | None) -> str | None:
    if not category:
        return None
    text = category.lower()
    if any(k in text for k in _OVERSIZE_HINTS):
        return OVERSIZE
    if any(k in text for k in _SMALL_HINTS):
        return SMALL_STANDARD
    return None


def size_tier_from_price(price: float) -> str:
    if price < 15:
        return SMALL_STANDARD
    if price < 75:
        return LARGE_STANDARD
    return OVERSIZE


def estimate_fulfillment_fee(
    price: float,
    category: str | None = None,
    weight_lbs: float | None = None,
    dims_inches: list[float] | None = None,
) -> tuple[float, str, str]:
    """
    Return ``(fee, size_tier, basis)``.

    Dimensions win when known; then category hints; the price bucket
    table is the last resort.
    """
    if weight_lbs is not None and dims_inches and len(dims_inches) == 3:
        tier = size_tier_from_dimensions(weight_lbs, dims_inches)
        basis = "package dimensions"
    else:
        tier = size_tier_from_category(category)
        basis = "category"
        if tier is None:
            tier = size_tier_from_price(price)
            basis = "price bucket"
    return SIZE_TIER_FEES[tier], tier, basis


def estimate_fees(
    price: float,
    category: str | None = None,
    weight_lbs: float | None = None,
    dims_inches: list[float] | None = None,
) -> FeeEstimate:
    """Deterministic fee breakdown for when no live quote is available."""
    bucket, pct = referral_bucket(category)
    referral = round(price * pct / 100, 2)
    fulfillment, tier, basis = estimate_fulfillment_fee(price, category, weight_lbs, dims_inches)

    assumptions = []
    if bucket == "default":
        assumptions.append(f"Referral: {pct:g}% default (category unknown).")
    else:
        assumptions.append(f"Referral: {pct:g}% from category.")
    assumptions.append(
        f"FBA fulfillment: {_SIZE_TIER_LABELS[tier]} estimate ${fulfillment:.2f} from {basis}."
    )
    return FeeEstimate(
        referral_pct=pct,
        referral_fee=referral,
        fulfillment_fee=fulfillment,
        size_tier=tier,
        assumptions=assumptions,
    )
