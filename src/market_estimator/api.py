"""FastAPI Web API for the market estimator."""

from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .config import ConfigError, resolve_config
from .fees import get_fees_result
from .margins import compute_margin_snapshot
from .models import SOURCING_MODELS, CostOverride
from .normalize import listings_from_records, normalize_asin, snapshot_from_listings, snapshot_from_record
from .page_one import estimate_market_demand
from .services import Services, build_services

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Market Estimator API",
    description=(
        "Canonical Page-1 estimates, marketplace fee resolution "
        "and margin snapshots for product research."
    ),
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(resolve_config())
    return _services


def set_services(services: Services | None) -> None:
    """Replace the process-wide services (used by tests and embedding apps)."""
    global _services
    _services = services


@app.on_event("startup")
def startup() -> None:
    try:
        get_services()
        logger.info("Market Estimator API started.")
    except ConfigError as e:
        logger.warning("Configuration invalid, services will be built on first request: %s", e)


@app.on_event("shutdown")
def shutdown() -> None:
    from .db import close_pool
    close_pool()


# ── Health ───────────────────────────────────────────────────────────────────

@app.get("/health", tags=["meta"])
def health() -> dict[str, Any]:
    """Returns 200 OK when the API is up; reports whether live fee quotes are configured."""
    return {
        "status": "ok",
        "version": VERSION,
        "live_fees": get_services().fees.live_enabled,
    }


# ── Page one ─────────────────────────────────────────────────────────────────

@app.post("/page-one", tags=["market"])
def page_one(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """
    Build the canonical Page-1 for a keyword.

    Body: ``{"keyword": str, "marketplace": str, "listings": [...], "snapshot": {...}}``.
    ``snapshot`` is optional; without it averages are derived from the listings
    and total demand is estimated.
    """
    keyword = str(payload.get("keyword") or "").strip()
    if not keyword:
        raise HTTPException(status_code=422, detail="'keyword' is required")
    raw_listings = payload.get("listings") or []
    if not isinstance(raw_listings, list) or not all(isinstance(r, dict) for r in raw_listings):
        raise HTTPException(status_code=422, detail="'listings' must be a list of objects")
    raw_snapshot = payload.get("snapshot")
    if raw_snapshot is not None and not isinstance(raw_snapshot, dict):
        raise HTTPException(status_code=422, detail="'snapshot' must be an object")

    marketplace = str(payload.get("marketplace") or "US")
    listings = listings_from_records(raw_listings)
    snapshot = snapshot_from_record(raw_snapshot) if raw_snapshot else snapshot_from_listings(listings)

    products = get_services().page_builder.build(listings, snapshot, keyword, marketplace)
    return {
        "keyword": keyword,
        "marketplace": marketplace,
        "total_revenue": round(sum(p.estimated_monthly_revenue for p in products), 2),
        "total_units": sum(p.estimated_monthly_units for p in products),
        "products": [p.as_dict() for p in products],
    }


# ── Fees ─────────────────────────────────────────────────────────────────────

@app.get("/fees/{asin}", tags=["fees"])
def fees(
    asin: str,
    price: float = Query(gt=0, description="Listing price to quote fees for"),
    marketplace: str | None = Query(default=None, description="Marketplace id (default: config)"),
    category: str | None = Query(default=None, description="Category hint for the fallback estimate"),
) -> dict[str, Any]:
    """Fee breakdown via cache, live quote, or category estimate. Never fails on upstream errors."""
    normalized = normalize_asin(asin)
    if not normalized:
        raise HTTPException(status_code=422, detail=f"Invalid ASIN: {asin!r}")
    services = get_services()
    result = get_fees_result(
        services.fees,
        normalized,
        price,
        marketplace or services.config.sp_api.default_marketplace,
        category,
    )
    return result.as_dict()


# ── Margin ───────────────────────────────────────────────────────────────────

@app.get("/margin", tags=["fees"])
def margin(
    price: float | None = Query(default=None, description="Selling price; omitted means unknown"),
    sourcing_model: str = Query(default="not_sure", description="|".join(SOURCING_MODELS)),
    category: str | None = Query(default=None),
    mode: str = Query(default="KEYWORD", pattern="^(ASIN|KEYWORD)$"),
    asin: str | None = Query(default=None, description="Look up a live fee for this ASIN"),
    marketplace: str | None = Query(default=None),
    cogs: float | None = Query(default=None, gt=0, description="User-supplied unit COGS"),
    fee: float | None = Query(default=None, gt=0, description="User-supplied FBA fee"),
) -> dict[str, Any]:
    """Margin snapshot with confidence tier; overrides force REFINED."""
    services = get_services()
    live_fee = None
    if asin and price and price > 0:
        normalized = normalize_asin(asin)
        if not normalized:
            raise HTTPException(status_code=422, detail=f"Invalid ASIN: {asin!r}")
        resolution = services.fees.resolve_fees(
            normalized, price, marketplace or services.config.sp_api.default_marketplace
        )
        if resolution.quote is not None:
            live_fee = resolution.quote.resolved_total

    override = CostOverride.exact(cogs=cogs, fee=fee)
    snapshot = compute_margin_snapshot(
        mode,
        price,
        category_hint=category,
        sourcing_model=sourcing_model,
        live_fee=live_fee,
        override=override,
    )
    return snapshot.as_dict()


# ── Market anchor ────────────────────────────────────────────────────────────

@app.get("/market-anchor", tags=["market"])
def market_anchor(
    keyword: str = Query(min_length=1),
    marketplace: str = Query(default="US"),
    avg_price: float = Query(gt=0),
    units: float | None = Query(default=None, gt=0, description="Total page units if known"),
    organic_count: int = Query(default=20, ge=0, le=100),
    sponsored_count: int = Query(default=0, ge=0, le=100),
) -> dict[str, Any]:
    """Read-through cached market anchor (24h TTL)."""
    market_units = units or estimate_market_demand(avg_price, max(organic_count, 1))
    lookup = get_services().anchors.get_or_compute(
        keyword, marketplace, market_units, avg_price, organic_count, sponsored_count
    )
    return lookup.as_dict()
