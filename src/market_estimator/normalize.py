"""Field cleaning for scraped listing data."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

import pandas as pd

from .models import KeywordMarketSnapshot, ParsedListing

logger = logging.getLogger(__name__)

_ASIN_RE = re.compile(r"^[A-Z0-9]{10}$")
_NUMBER_RE = re.compile(r"[^0-9.]")
_WHITESPACE_RE = re.compile(r"\s+")

_FULFILLMENT_ALIASES: dict[str, str] = {
    "AMZ": "AMZ",
    "AMAZON": "AMZ",
    "AMAZON.COM": "AMZ",
    "FBA": "FBA",
    "PRIME": "FBA",
    "FULFILLED BY AMAZON": "FBA",
    "FBM": "FBM",
    "MERCHANT": "FBM",
    "SELLER": "FBM",
}

_SELLER_COUNTRY_ALIASES: dict[str, str] = {
    "US": "US",
    "USA": "US",
    "UNITED STATES": "US",
    "CN": "CN",
    "CHINA": "CN",
}


def _is_missing(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, float) and pd.isna(raw):
        return True
    return isinstance(raw, str) and not raw.strip()


def normalize_asin(raw: str | None) -> str | None:
    """
    Upper-case and strip an ASIN.

    Returns ``None`` for empty input or anything that is not a 10-character
    alphanumeric identifier.
    """
    if _is_missing(raw):
        return None
    cleaned = str(raw).strip().upper()
    return cleaned if _ASIN_RE.match(cleaned) else None


def normalize_keyword(raw: str | None) -> str:
    """Lower-case a search keyword and collapse internal whitespace."""
    if _is_missing(raw):
        return ""
    return _WHITESPACE_RE.sub(" ", str(raw)).strip().lower()


def parse_price(raw: Any) -> float | None:
    """
    Parse a listing price.

    Accepts numbers, strings such as ``"$1,299.99"``, and the
    ``{"value": ...}`` / ``{"raw": ...}`` shapes returned by search scrapers.
    Non-positive or unparseable values return ``None``.
    """
    if isinstance(raw, dict):
        raw = raw.get("value") if not _is_missing(raw.get("value")) else raw.get("raw")
    if _is_missing(raw) or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = _NUMBER_RE.sub("", str(raw))
        try:
            value = float(text)
        except ValueError:
            return None
    return round(value, 2) if value > 0 else None


def parse_reviews(raw: Any) -> int | None:
    """Parse a review count from an int, ``"12,345"`` or ``{"count": ...}``."""
    if isinstance(raw, dict):
        raw = raw.get("count")
    if _is_missing(raw) or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return max(0, int(raw))
    digits = str(raw).replace(",", "").strip()
    try:
        return max(0, int(float(digits)))
    except ValueError:
        return None


def parse_rating(raw: Any) -> float | None:
    """Parse a star rating, rejecting anything outside 0-5."""
    if _is_missing(raw) or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if 0 < value <= 5 else None


def parse_bsr(raw: Any) -> int | None:
    if isinstance(raw, dict):
        raw = raw.get("rank")
    value = parse_reviews(raw)
    return value if value else None


def normalize_fulfillment(raw: str | None) -> str | None:
    """Map scraped fulfillment labels onto ``AMZ`` / ``FBA`` / ``FBM``."""
    if _is_missing(raw):
        return None
    return _FULFILLMENT_ALIASES.get(str(raw).strip().upper())


def normalize_seller_country(raw: str | None) -> str | None:
    """``US`` / ``CN`` / ``Other``; ``None`` when the scraper gave nothing."""
    if _is_missing(raw) or not str(raw).strip():
        return None
    return _SELLER_COUNTRY_ALIASES.get(str(raw).strip().upper(), "Other")


def clean_text(raw: str | None) -> str | None:
    """Collapse multiple whitespace characters into single spaces."""
    if _is_missing(raw):
        return None
    return _WHITESPACE_RE.sub(" ", str(raw)).strip()


def listing_from_record(record: dict[str, Any]) -> ParsedListing:
    """Build a :class:`ParsedListing` from one raw scraper record."""
    sponsored = record.get("is_sponsored", record.get("sponsored", False))
    return ParsedListing(
        asin=normalize_asin(record.get("asin")),
        title=clean_text(record.get("title")),
        price=parse_price(record.get("price")),
        rating=parse_rating(record.get("rating")),
        reviews=parse_reviews(record.get("reviews", record.get("review_count"))),
        bsr=parse_bsr(record.get("bsr")),
        fulfillment=normalize_fulfillment(record.get("fulfillment")),
        brand=clean_text(record.get("brand")),
        seller_country=normalize_seller_country(record.get("seller_country")),
        is_sponsored=bool(sponsored) and not _is_missing(sponsored),
    )


def listings_from_records(records: Iterable[dict[str, Any]]) -> list[ParsedListing]:
    return [listing_from_record(r) for r in records]


def listings_from_frame(df: pd.DataFrame) -> list[ParsedListing]:
    """Convert a tabular export (one listing per row) into parsed listings."""
    if df is None or df.empty:
        return []
    df = df.copy()
    df.columns = [str(c).strip().lower().replace(" ", "_") for c in df.columns]
    records = df.astype(object).where(df.notna(), None).to_dict(orient="records")
    listings = listings_from_records(records)
    logger.debug("Parsed %d listings from %d-column frame", len(listings), len(df.columns))
    return listings


def snapshot_from_record(record: dict[str, Any] | None) -> KeywordMarketSnapshot:
    record = record or {}

    def _num(name: str) -> float | None:
        value = record.get(name)
        if _is_missing(value):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    return KeywordMarketSnapshot(
        avg_price=_num("avg_price"),
        avg_rating=_num("avg_rating"),
        avg_reviews=_num("avg_reviews"),
        est_total_monthly_units_min=_num("est_total_monthly_units_min"),
        est_total_monthly_units_max=_num("est_total_monthly_units_max"),
        est_total_monthly_revenue_min=_num("est_total_monthly_revenue_min"),
        est_total_monthly_revenue_max=_num("est_total_monthly_revenue_max"),
    )


def snapshot_from_listings(listings: list[ParsedListing]) -> KeywordMarketSnapshot:
    """
    Derive a keyword snapshot (averages only) from observed listings.

    Used when the upstream aggregate is absent. Totals stay ``None`` so the
    page-one builder falls back to its demand heuristic.
    """

    def _avg(values: list[float]) -> float | None:
        return round(sum(values) / len(values), 2) if values else None

    return KeywordMarketSnapshot(
        avg_price=_avg([l.price for l in listings if l.price]),
        avg_rating=_avg([l.rating for l in listings if l.rating]),
        avg_reviews=_avg([float(l.reviews) for l in listings if l.reviews]),
    )
