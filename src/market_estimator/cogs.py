"""Cost-of-goods ranges by sourcing model."""

from __future__ import annotations

from dataclasses import dataclass

NOT_SURE = "not_sure"

# sourcing model -> (low %, high %) of selling price
_COGS_PCT: dict[str, tuple[float, float]] = {
    "private_label": (25.0, 35.0),
    "wholesale_arbitrage": (55.0, 75.0),
    "retail_arbitrage": (60.0, 80.0),
    "dropshipping": (70.0, 85.0),
    NOT_SURE: (40.0, 65.0),
}

# Private label only: category changes the landed-cost ratio noticeably.
_PRIVATE_LABEL_CATEGORY_PCT: dict[str, tuple[float, float]] = {
    "electronics": (30.0, 45.0),
    "home_kitchen": (20.0, 30.0),
}

_LABELS = {
    "private_label": "Private Label",
    "wholesale_arbitrage": "Wholesale",
    "retail_arbitrage": "Retail Arbitrage",
    "dropshipping": "Dropshipping",
    NOT_SURE: "Unknown sourcing model",
}

_ELECTRONICS_HINTS = ("electronic", "tech", "computer", "phone", "tablet", "audio", "camera")
_HOME_KITCHEN_HINTS = ("home", "kitchen", "household", "cookware", "appliance", "decor")


@dataclass(frozen=True)
class CogsRange:
    low: float
    high: float
    pct_low: float
    pct_high: float
    confidence: str
    rationale: str


def normalize_sourcing_model(model: str | None) -> str:
    """Unknown or empty models collapse to ``not_sure``."""
    if not model:
        return NOT_SURE
    key = str(model).strip().lower().replace("-", "_").replace(" ", "_")
    return key if key in _COGS_PCT else NOT_SURE


def cogs_category(category: str | None) -> str:
    if not category:
        return "default"
    text = category.lower().strip()
    if any(k in text for k in _ELECTRONICS_HINTS):
        return "electronics"
    if any(k in text for k in _HOME_KITCHEN_HINTS):
        return "home_kitchen"
    return "default"


def estimate_cogs_range(price: float, sourcing_model: str | None, category: str | None = None) -> CogsRange:
    model = normalize_sourcing_model(sourcing_model)
    pct_low, pct_high = _COGS_PCT[model]
    bucket = "default"
    if model == "private_label":
        bucket = cogs_category(category)
        pct_low, pct_high = _PRIVATE_LABEL_CATEGORY_PCT.get(bucket, (pct_low, pct_high))

    label = _LABELS[model]
    if bucket != "default":
        label = f"{label} ({bucket.replace('_', ' ')})"
    rationale = f"COGS {pct_low:g}-{pct_high:g}% of price ({label})"
    return CogsRange(
        low=price * pct_low / 100,
        high=price * pct_high / 100,
        pct_low=pct_low,
        pct_high=pct_high,
        confidence="low" if model == NOT_SURE else "medium",
        rationale=rationale,
    )
