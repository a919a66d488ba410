"""Tests for margins.py and cogs.py"""

import pytest

from market_estimator.cogs import estimate_cogs_range, normalize_sourcing_model
from market_estimator.margins import (
    compute_margin_snapshot,
    margin_ranges,
    null_price_snapshot,
    parse_cost_overrides,
    refine_margin_snapshot,
)
from market_estimator.models import CostOverride

NUMERIC_FIELDS = (
    "estimated_cogs_min",
    "estimated_cogs_max",
    "estimated_fba_fee",
    "net_margin_min_pct",
    "net_margin_max_pct",
    "breakeven_price_min",
    "breakeven_price_max",
)


def test_margin_ranges_worked_example():
    assert margin_ranges(20, 6, 10, 4) == (30.0, 50.0, 10.0, 14.0)


def test_margin_percent_floored_at_zero():
    low, high, _, _ = margin_ranges(10, 8, 9, 5)
    assert low == 0.0
    assert high == 0.0


@pytest.mark.parametrize("price", [0, None, -5, "abc", float("nan")])
def test_missing_price_gives_null_snapshot(price):
    snap = compute_margin_snapshot("KEYWORD", price, sourcing_model="private_label", live_fee=4.0)
    assert snap.assumed_price == 0.0
    assert snap.price_source == "fallback"
    assert snap.confidence_tier == "ESTIMATED"
    assert snap.fba_fee_source == "unknown"
    for name in NUMERIC_FIELDS:
        assert getattr(snap, name) is None
    assert snap.assumptions == ["Selling price unavailable"]


def test_not_sure_is_never_above_estimated():
    heuristic = compute_margin_snapshot("ASIN", 30.0, sourcing_model="not_sure")
    live = compute_margin_snapshot("ASIN", 30.0, sourcing_model="not_sure", live_fee=7.5)
    assert heuristic.confidence_tier == "ESTIMATED"
    assert live.confidence_tier == "ESTIMATED"
    assert live.fba_fee_source == "live_quote"


def test_unknown_model_treated_as_not_sure():
    snap = compute_margin_snapshot("ASIN", 30.0, sourcing_model="white label")
    assert snap.confidence_tier == "ESTIMATED"


def test_known_model_with_live_fee_is_exact():
    snap = compute_margin_snapshot("ASIN", 30.0, sourcing_model="private_label", live_fee=7.5)
    assert snap.confidence_tier == "EXACT"
    assert snap.estimated_fba_fee == 7.5
    assert snap.price_source == "asin_price"
    assert "FBA fees from Amazon SP-API" in snap.assumptions


def test_known_model_with_heuristic_fee_is_refined():
    snap = compute_margin_snapshot("KEYWORD", 20.0, sourcing_model="wholesale_arbitrage")
    assert snap.confidence_tier == "REFINED"
    assert snap.fba_fee_source == "category_estimate"
    assert snap.estimated_fba_fee == 8.4
    assert snap.price_source == "page1_avg"
    assert snap.estimated_cogs_min == 11.0
    assert snap.estimated_cogs_max == 15.0


def test_margin_values_follow_formula():
    snap = compute_margin_snapshot("ASIN", 40.0, sourcing_model="private_label", live_fee=10.0)
    # private label 25-35% -> COGS 10.00-14.00
    assert snap.estimated_cogs_min == 10.0
    assert snap.estimated_cogs_max == 14.0
    assert snap.net_margin_min_pct == 40.0
    assert snap.net_margin_max_pct == 50.0
    assert snap.breakeven_price_min == 20.0
    assert snap.breakeven_price_max == 24.0


def test_override_forces_refined():
    override = CostOverride(cogs_min=6, cogs_max=10, fee=4)
    snap = compute_margin_snapshot("ASIN", 20.0, sourcing_model="not_sure", override=override)
    assert snap.confidence_tier == "REFINED"
    assert snap.cogs_source == "user_override"
    assert snap.net_margin_min_pct == 30.0
    assert snap.net_margin_max_pct == 50.0
    assert snap.breakeven_price_min == 10.0
    assert snap.breakeven_price_max == 14.0
    assert snap.fba_fee_source == "category_estimate"


def test_override_downgrades_exact_to_refined():
    snap = compute_margin_snapshot(
        "ASIN", 40.0, sourcing_model="private_label", live_fee=10.0, override=CostOverride.exact(cogs=12)
    )
    assert snap.confidence_tier == "REFINED"
    assert snap.fba_fee_source == "live_quote"
    assert snap.estimated_cogs_min == snap.estimated_cogs_max == 12.0


def test_empty_override_is_ignored():
    snap = compute_margin_snapshot("ASIN", 40.0, sourcing_model="private_label", override=CostOverride())
    assert snap.cogs_source == "assumption_engine"


def test_internal_failure_returns_conservative_default(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("table corrupted")

    monkeypatch.setattr("market_estimator.margins.estimate_cogs_range", boom)
    snap = compute_margin_snapshot("KEYWORD", 50.0, sourcing_model="private_label")
    assert snap.confidence_tier == "ESTIMATED"
    assert snap.estimated_cogs_min == 20.0
    assert snap.estimated_cogs_max == 32.5
    assert snap.estimated_fba_fee == 10.0


def test_refine_null_snapshot_keeps_margins_null():
    snap = refine_margin_snapshot(null_price_snapshot("ASIN"), CostOverride.exact(fee=5.0))
    assert snap.estimated_fba_fee == 5.0
    assert snap.fba_fee_source == "category_estimate"
    assert snap.net_margin_min_pct is None
    assert snap.confidence_tier == "REFINED"


def test_refine_does_not_mutate_input():
    original = compute_margin_snapshot("ASIN", 20.0, sourcing_model="private_label")
    before = list(original.assumptions)
    refine_margin_snapshot(original, CostOverride.exact(cogs=5.0))
    assert original.assumptions == before
    assert original.cogs_source == "assumption_engine"


# ── COGS table ────────────────────────────────────────────────────────────────

def test_sourcing_model_normalization():
    assert normalize_sourcing_model("Private Label") == "private_label"
    assert normalize_sourcing_model("retail-arbitrage") == "retail_arbitrage"
    assert normalize_sourcing_model(None) == "not_sure"
    assert normalize_sourcing_model("unknown thing") == "not_sure"


def test_private_label_category_adjustment():
    electronics = estimate_cogs_range(100.0, "private_label", "Electronics")
    assert (electronics.pct_low, electronics.pct_high) == (30.0, 45.0)
    assert electronics.rationale == "COGS 30-45% of price (Private Label (electronics))"
    other = estimate_cogs_range(100.0, "dropshipping", "Electronics")
    assert (other.pct_low, other.pct_high) == (70.0, 85.0)


# ── Override parsing ──────────────────────────────────────────────────────────

def test_parse_cogs_and_fee():
    parsed = parse_cost_overrides("My COGS is $22 and FBA fee is 9.40", selling_price=40)
    assert parsed.cogs == 22.0
    assert parsed.fba_fee == 9.4
    assert parsed.fulfillment_model is None
    assert parsed.to_override() == CostOverride(cogs_min=22.0, cogs_max=22.0, fee=9.4)


def test_parse_alternative_phrasings():
    assert parse_cost_overrides("landed at 1,250 cost").cogs == 1250.0
    assert parse_cost_overrides("fulfillment fees of $6").fba_fee == 6.0


def test_parse_fulfillment_model():
    parsed = parse_cost_overrides("I ship FBM")
    assert parsed.fulfillment_model == "FBM"
    assert parsed.cogs is None


def test_cogs_above_price_is_validation_error():
    parsed = parse_cost_overrides("my cost is 50", selling_price=30)
    assert parsed.cogs is None
    assert "cannot be greater than or equal to" in parsed.validation_error


def test_unreasonable_fee_ignored():
    assert parse_cost_overrides("fba fee is 150") is None


def test_nothing_recognised():
    assert parse_cost_overrides("what about the competition?") is None
    assert parse_cost_overrides("") is None
