"""Tests for market_anchor.py"""

from datetime import datetime, timedelta, timezone

import pytest

from market_estimator.market_anchor import (
    InMemoryAnchorStore,
    MarketAnchorCache,
    anchor_from_document,
    compute_market_anchor,
    compute_rank_distribution,
    market_anchor_cache_key,
    rank_bucket,
)

NOW = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start=NOW):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class BrokenStore:
    def get(self, cache_key):
        raise RuntimeError("db down")

    def upsert(self, cache_key, data, expires_at, created_at):
        raise RuntimeError("db down")


def test_distribution_sums_to_100_with_flat_sponsored_share():
    dist = compute_rank_distribution(10, 2)
    assert dist.total == pytest.approx(100.0, abs=0.1)
    assert dist.sponsored == 15.0
    assert dist.rank_11_20 == 0.0
    assert dist.rank_21_plus == 0.0


def test_distribution_decays_with_rank():
    dist = compute_rank_distribution(20, 0)
    assert dist.rank_1 > dist.rank_2_3 / 2
    assert dist.rank_4_10 > dist.rank_11_20
    assert dist.total == pytest.approx(100.0, abs=0.1)


def test_distribution_covers_ranks_past_20():
    dist = compute_rank_distribution(30, 4)
    assert dist.rank_21_plus > 0
    assert dist.total == pytest.approx(100.0, abs=0.1)


def test_distribution_without_organic_listings():
    dist = compute_rank_distribution(0, 3)
    assert dist.sponsored == 100.0
    assert dist.rank_1 == 0.0


def test_rank_bucket():
    assert rank_bucket(None) == "sponsored"
    assert rank_bucket(1) == "rank_1"
    assert rank_bucket(3) == "rank_2_3"
    assert rank_bucket(10) == "rank_4_10"
    assert rank_bucket(11) == "rank_11_20"
    assert rank_bucket(21) == "rank_21_plus"


def test_compute_market_anchor():
    anchor = compute_market_anchor(1000, 25.5, 20, 0, now=NOW)
    assert anchor.estimated_market_units == 1000
    assert anchor.estimated_market_revenue == 25500
    assert anchor.computed_at == NOW
    assert anchor.expires_at == NOW + timedelta(hours=24)
    assert not anchor.is_expired(NOW + timedelta(hours=23))
    assert anchor.is_expired(NOW + timedelta(hours=24))


def test_cache_key_uses_normalized_keyword():
    assert market_anchor_cache_key("  Yoga   MAT ", "US") == "keyword:US:yoga mat:market_anchor"


def test_anchor_from_document_round_trip_strings():
    doc = {"market_anchor": compute_market_anchor(800, 10.0, 5, 1, now=NOW).as_dict()}
    anchor = anchor_from_document(doc)
    assert anchor.estimated_market_units == 800
    assert anchor.expires_at == NOW + timedelta(hours=24)
    assert anchor.rank_distribution.sponsored == 15.0


@pytest.mark.parametrize(
    "doc",
    [
        None,
        "not a dict",
        {"market_anchor": {"estimated_market_units": 0, "rank_distribution": {}}},
        {"market_anchor": {"estimated_market_units": 100, "rank_distribution": "bad"}},
        {"market_anchor": {"estimated_market_units": 100, "rank_distribution": {}, "expires_at": "yesterday-ish"}},
    ],
)
def test_invalid_documents_are_misses(doc):
    assert anchor_from_document(doc) is None


def test_read_through_cache():
    clock = FakeClock()
    cache = MarketAnchorCache(InMemoryAnchorStore(), clock=clock)

    first = cache.get_or_compute("yoga mat", "US", 5000, 20.0, 20, 2)
    assert first.source == "computed"
    assert first.anchor.estimated_market_revenue == 100000

    clock.advance(hours=2)
    second = cache.get_or_compute("Yoga Mat", "US", 9999, 99.0, 5, 0)
    assert second.source == "cache"
    assert second.anchor.estimated_market_units == 5000
    assert second.age_seconds == 7200

    clock.advance(hours=22)
    third = cache.get_or_compute("yoga mat", "US", 6000, 20.0, 20, 2)
    assert third.source == "computed"
    assert third.anchor.estimated_market_units == 6000


def test_marketplaces_cached_separately():
    cache = MarketAnchorCache(InMemoryAnchorStore(), clock=FakeClock())
    cache.get_or_compute("yoga mat", "US", 5000, 20.0, 20, 2)
    assert cache.get("yoga mat", "UK").anchor is None


def test_invalid_cached_document_is_recomputed():
    store = InMemoryAnchorStore()
    key = market_anchor_cache_key("yoga mat", "US")
    store.upsert(key, {"market_anchor": {"estimated_market_units": None}}, NOW + timedelta(hours=1), NOW)
    cache = MarketAnchorCache(store, clock=FakeClock())
    assert cache.get_or_compute("yoga mat", "US", 100, 10.0, 10, 0).source == "computed"
    assert store.get(key)["data"]["market_anchor"]["estimated_market_units"] == 100


def test_store_failures_fall_back_to_compute():
    cache = MarketAnchorCache(BrokenStore(), clock=FakeClock())
    lookup = cache.get_or_compute("yoga mat", "US", 100, 10.0, 10, 0)
    assert lookup.source == "computed"
    assert lookup.as_dict()["anchor"]["estimated_market_units"] == 100
