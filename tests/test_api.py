"""Tests for api.py (FastAPI TestClient, in-memory services)"""

import pytest
from fastapi.testclient import TestClient

from market_estimator.api import app, set_services
from market_estimator.config import AppConfig
from market_estimator.services import build_services

SAMPLE_PAYLOAD = {
    "keyword": "yoga mat",
    "marketplace": "US",
    "listings": [
        {"asin": "B0ABC12345", "title": "Yoga mat", "price": "$24.99", "rating": 4.6, "reviews": "1,204"},
        {"asin": "B0ABC67890", "title": "Thick yoga mat", "price": 31.5, "is_sponsored": True},
        {"asin": "B0XYZ00001", "price": {"value": 19.99}, "fulfillment": "FBM"},
    ],
    "snapshot": {
        "avg_price": 25.0,
        "avg_rating": 4.4,
        "avg_reviews": 700,
        "est_total_monthly_revenue_min": 40000,
        "est_total_monthly_revenue_max": 60000,
    },
}


@pytest.fixture(autouse=True)
def services():
    cfg = AppConfig()
    cfg.estimator.random_seed = 5
    built = build_services(cfg)
    set_services(built)
    yield built
    set_services(None)


client = TestClient(app)


def test_health():
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["live_fees"] is False


def test_page_one():
    resp = client.post("/page-one", json=SAMPLE_PAYLOAD)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["products"]) == 20
    assert body["total_revenue"] == pytest.approx(50000, rel=0.01)
    assert body["products"][0]["asin"] == "B0ABC12345"
    assert body["products"][1]["asin"] == "B0XYZ00001"
    assert body["products"][2]["snapshot_inferred_fields"][0] == "asin"


def test_page_one_without_snapshot():
    payload = {"keyword": "yoga mat", "listings": SAMPLE_PAYLOAD["listings"]}
    resp = client.post("/page-one", json=payload)
    assert resp.status_code == 200
    assert len(resp.json()["products"]) == 20


def test_page_one_requires_keyword():
    resp = client.post("/page-one", json={"listings": []})
    assert resp.status_code == 422


def test_page_one_rejects_bad_listings():
    resp = client.post("/page-one", json={"keyword": "x", "listings": "nope"})
    assert resp.status_code == 422


def test_fees_estimate_without_credentials():
    resp = client.get("/fees/b0abc12345", params={"price": 20, "category": "kitchen"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "fees_result"
    assert body["source"] == "estimate"
    assert body["asin"] == "B0ABC12345"
    assert body["cta_connect"] is True
    assert body["total_fees"] == 8.4
    assert "warning" not in body


def test_fees_invalid_asin():
    assert client.get("/fees/not-an-asin", params={"price": 20}).status_code == 422


def test_fees_requires_positive_price():
    assert client.get("/fees/B0ABC12345", params={"price": 0}).status_code == 422


def test_margin_with_overrides():
    resp = client.get(
        "/margin",
        params={"price": 20, "sourcing_model": "private_label", "cogs": 8, "fee": 4},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["confidence_tier"] == "REFINED"
    assert body["cogs_source"] == "user_override"
    assert body["net_margin_min_pct"] == 40.0
    assert body["breakeven_price_max"] == 12.0


def test_margin_without_price():
    body = client.get("/margin").json()
    assert body["assumed_price"] == 0.0
    assert body["confidence_tier"] == "ESTIMATED"


def test_margin_with_asin_and_no_live_fees():
    body = client.get(
        "/margin", params={"price": 30, "asin": "B0ABC12345", "sourcing_model": "wholesale_arbitrage", "mode": "ASIN"}
    ).json()
    assert body["confidence_tier"] == "REFINED"
    assert body["fba_fee_source"] == "category_estimate"
    assert body["price_source"] == "asin_price"


def test_margin_rejects_bad_mode():
    assert client.get("/margin", params={"mode": "SKU"}).status_code == 422


def test_market_anchor_read_through():
    params = {"keyword": "yoga mat", "avg_price": 25, "units": 1000}
    first = client.get("/market-anchor", params=params).json()
    assert first["source"] == "computed"
    assert first["anchor"]["estimated_market_revenue"] == 25000
    assert first["anchor"]["rank_distribution"]["sponsored"] == 15.0

    second = client.get("/market-anchor", params=params).json()
    assert second["source"] == "cache"
