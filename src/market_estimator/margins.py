"""
Margin assumption engine.

Turns a selling price, a sourcing model and a fee into net-margin and
breakeven ranges tagged with a confidence tier. ``compute_margin_snapshot``
never raises: bad input degrades to a null snapshot, internal faults to a
conservative default.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any

from .cogs import NOT_SURE, estimate_cogs_range, normalize_sourcing_model
from .fee_estimates import estimate_fees
from .models import (
    CONFIDENCE_ESTIMATED,
    CONFIDENCE_EXACT,
    CONFIDENCE_REFINED,
    FEE_SOURCE_ESTIMATE,
    FEE_SOURCE_LIVE,
    FEE_SOURCE_UNKNOWN,
    CostOverride,
    MarginSnapshot,
)

logger = logging.getLogger(__name__)

CONSERVATIVE_COGS_PCT = (40.0, 65.0)
CONSERVATIVE_FEE = 10.0
MAX_REASONABLE_FEE = 100.0


def _coerce_price(price: Any) -> float | None:
    if price is None or isinstance(price, bool):
        return None
    try:
        value = float(price)
    except (TypeError, ValueError):
        return None
    if value != value or value <= 0:  # NaN or non-positive
        return None
    return value


def margin_ranges(
    price: float, cogs_min: float, cogs_max: float, fee: float
) -> tuple[float, float, float, float]:
    """
    Return ``(net_margin_min_pct, net_margin_max_pct, breakeven_min, breakeven_max)``.

    The worst case pairs the high COGS with the fee; percentages are
    floored at zero.
    """
    low = price - cogs_max - fee
    high = price - cogs_min - fee
    return (
        round(max(0.0, low / price * 100), 2),
        round(max(0.0, high / price * 100), 2),
        round(cogs_min + fee, 2),
        round(cogs_max + fee, 2),
    )


def _default_price_source(mode: str) -> str:
    return "asin_price" if str(mode).upper() == "ASIN" else "page1_avg"


def null_price_snapshot(mode: str) -> MarginSnapshot:
    return MarginSnapshot(
        mode=mode,
        assumed_price=0.0,
        price_source="fallback",
        estimated_cogs_min=None,
        estimated_cogs_max=None,
        estimated_fba_fee=None,
        fba_fee_source=FEE_SOURCE_UNKNOWN,
        net_margin_min_pct=None,
        net_margin_max_pct=None,
        breakeven_price_min=None,
        breakeven_price_max=None,
        confidence_tier=CONFIDENCE_ESTIMATED,
        assumptions=["Selling price unavailable"],
    )


def conservative_snapshot(mode: str, price: float, price_source: str | None = None) -> MarginSnapshot:
    """Fixed wide-band estimate used when the engine itself fails."""
    cogs_min = round(price * CONSERVATIVE_COGS_PCT[0] / 100, 2)
    cogs_max = round(price * CONSERVATIVE_COGS_PCT[1] / 100, 2)
    min_pct, max_pct, be_min, be_max = margin_ranges(price, cogs_min, cogs_max, CONSERVATIVE_FEE)
    return MarginSnapshot(
        mode=mode,
        assumed_price=round(price, 2),
        price_source=price_source or _default_price_source(mode),
        estimated_cogs_min=cogs_min,
        estimated_cogs_max=cogs_max,
        estimated_fba_fee=CONSERVATIVE_FEE,
        fba_fee_source=FEE_SOURCE_ESTIMATE,
        net_margin_min_pct=min_pct,
        net_margin_max_pct=max_pct,
        breakeven_price_min=be_min,
        breakeven_price_max=be_max,
        confidence_tier=CONFIDENCE_ESTIMATED,
        assumptions=[
            "Conservative default: COGS 40-65% of price, FBA fee $10.00",
        ],
    )


def compute_margin_snapshot(
    mode: str,
    price: Any,
    category_hint: str | None = None,
    sourcing_model: str | None = NOT_SURE,
    live_fee: float | None = None,
    override: CostOverride | None = None,
    price_source: str | None = None,
) -> MarginSnapshot:
    """
    Build a margin snapshot for one selling price.

    ``live_fee`` is a total fee from a live quote; without it the
    category/size heuristic is used. Confidence: ``EXACT`` needs a live fee
    and a known sourcing model, ``REFINED`` a known model, anything else is
    ``ESTIMATED``. A non-empty ``override`` replaces the matching values and
    forces ``REFINED``.
    """
    value = _coerce_price(price)
    if value is None:
        return null_price_snapshot(mode)
    try:
        snapshot = _compute(mode, value, category_hint, sourcing_model, live_fee, price_source)
        if override is not None and not override.is_empty:
            snapshot = refine_margin_snapshot(snapshot, override)
        return snapshot
    except Exception:
        logger.warning("Margin computation failed; using conservative default", exc_info=True)
        return conservative_snapshot(mode, value, price_source)


def _compute(
    mode: str,
    price: float,
    category_hint: str | None,
    sourcing_model: str | None,
    live_fee: float | None,
    price_source: str | None,
) -> MarginSnapshot:
    model = normalize_sourcing_model(sourcing_model)
    assumptions: list[str] = []

    cogs = estimate_cogs_range(price, model, category_hint)
    cogs_min, cogs_max = round(cogs.low, 2), round(cogs.high, 2)
    assumptions.append(cogs.rationale)

    if live_fee is not None and live_fee > 0:
        fee = round(float(live_fee), 2)
        fee_source = FEE_SOURCE_LIVE
        assumptions.append("FBA fees from Amazon SP-API")
    else:
        est = estimate_fees(price, category_hint)
        fee = est.total_fee
        fee_source = FEE_SOURCE_ESTIMATE
        assumptions.extend(est.assumptions)

    min_pct, max_pct, be_min, be_max = margin_ranges(price, cogs_min, cogs_max, fee)

    if model == NOT_SURE:
        tier = CONFIDENCE_ESTIMATED
    elif fee_source == FEE_SOURCE_LIVE:
        tier = CONFIDENCE_EXACT
    else:
        tier = CONFIDENCE_REFINED

    return MarginSnapshot(
        mode=mode,
        assumed_price=round(price, 2),
        price_source=price_source or _default_price_source(mode),
        estimated_cogs_min=cogs_min,
        estimated_cogs_max=cogs_max,
        estimated_fba_fee=fee,
        fba_fee_source=fee_source,
        net_margin_min_pct=min_pct,
        net_margin_max_pct=max_pct,
        breakeven_price_min=be_min,
        breakeven_price_max=be_max,
        confidence_tier=tier,
        assumptions=assumptions,
    )


def refine_margin_snapshot(snapshot: MarginSnapshot, override: CostOverride) -> MarginSnapshot:
    """Apply user-supplied costs to an existing snapshot and recompute margins."""
    if override.is_empty:
        return snapshot
    updated = replace(snapshot, assumptions=list(snapshot.assumptions))

    if override.has_cogs:
        low = override.cogs_min if override.cogs_min and override.cogs_min > 0 else override.cogs_max
        high = override.cogs_max if override.cogs_max and override.cogs_max > 0 else override.cogs_min
        low, high = sorted((float(low), float(high)))  # type: ignore[arg-type]
        updated.estimated_cogs_min = round(low, 2)
        updated.estimated_cogs_max = round(high, 2)
        updated.cogs_source = "user_override"
        if low == high:
            updated.assumptions.append(f"COGS refined to ${low:.2f} (user-provided)")
        else:
            updated.assumptions.append(f"COGS refined to ${low:.2f}-${high:.2f} (user-provided)")

    if override.has_fee:
        updated.estimated_fba_fee = round(float(override.fee), 2)  # type: ignore[arg-type]
        if updated.fba_fee_source == FEE_SOURCE_UNKNOWN:
            updated.fba_fee_source = FEE_SOURCE_ESTIMATE
        updated.assumptions.append(f"FBA fees refined to ${override.fee:.2f} (user-provided)")

    if (
        updated.assumed_price > 0
        and updated.estimated_cogs_min is not None
        and updated.estimated_cogs_max is not None
        and updated.estimated_fba_fee is not None
    ):
        (
            updated.net_margin_min_pct,
            updated.net_margin_max_pct,
            updated.breakeven_price_min,
            updated.breakeven_price_max,
        ) = margin_ranges(
            updated.assumed_price,
            updated.estimated_cogs_min,
            updated.estimated_cogs_max,
            updated.estimated_fba_fee,
        )

    updated.confidence_tier = CONFIDENCE_REFINED
    return updated


# ── Chat-driven overrides ─────────────────────────────────────────────────────

_NUMBER = r"\$?([\d,]+\.?\d*)"

_COGS_PATTERNS = [
    re.compile(r"\b(?:my\s+)?(?:cogs?|cost)\s+(?:is|are)\s+" + _NUMBER),
    re.compile(r"\b(?:cogs?|cost)\s+of\s+" + _NUMBER),
    re.compile(_NUMBER + r"\s+(?:for\s+)?(?:cogs?|cost)\b"),
]

_FEE_PATTERNS = [
    re.compile(r"\b(?:fba|fulfillment)\s+fees?\s+(?:is|are)\s+" + _NUMBER),
    re.compile(r"\b(?:fba|fulfillment)\s+fees?\s+of\s+" + _NUMBER),
    re.compile(_NUMBER + r"\s+(?:for\s+)?(?:fba|fulfillment)\s+fees?\b"),
]

_FULFILLMENT_PATTERNS = [
    re.compile(r"\b(?:i\s+)?(?:ship|fulfill|use)\s+(?:with\s+)?(fba|fbm)\b"),
    re.compile(r"\bfulfillment\s+(?:model\s+)?is\s+(fba|fbm)\b"),
]


@dataclass
class ParsedCostOverrides:
    cogs: float | None = None
    fba_fee: float | None = None
    fulfillment_model: str | None = None
    validation_error: str | None = None

    def to_override(self) -> CostOverride:
        return CostOverride.exact(cogs=self.cogs, fee=self.fba_fee)


def _to_number(text: str) -> float | None:
    try:
        return float(text.replace(",", ""))
    except ValueError:
        return None


def parse_cost_overrides(message: str, selling_price: float | None = None) -> ParsedCostOverrides | None:
    """
    Detect "my COGS is $22", "FBA fee is 9.40" or "I ship FBM" style statements.

    Returns ``None`` when nothing is recognised. A COGS at or above the
    selling price comes back with only ``validation_error`` set.
    """
    text = (message or "").lower().strip()
    result = ParsedCostOverrides()
    found = False

    for pattern in _COGS_PATTERNS:
        match = pattern.search(text)
        value = _to_number(match.group(1)) if match else None
        if value is not None and value > 0:
            if selling_price is not None and value >= selling_price:
                result.validation_error = (
                    f"COGS (${value:.2f}) cannot be greater than or equal to "
                    f"selling price (${selling_price:.2f})"
                )
                return result
            result.cogs = value
            found = True
            break

    for pattern in _FEE_PATTERNS:
        match = pattern.search(text)
        value = _to_number(match.group(1)) if match else None
        if value is not None and 0 < value < MAX_REASONABLE_FEE:
            result.fba_fee = value
            found = True
            break

    for pattern in _FULFILLMENT_PATTERNS:
        match = pattern.search(text)
        if match:
            result.fulfillment_model = match.group(1).upper()
            found = True
            break

    return result if found else None
