"""
Fee waterfall: persistent cache -> signed live quote -> category heuristic.

``FeeResolutionService.resolve_fees`` covers the first two steps and returns
``FeeResolution(quote=None, source="none")`` when no usable quote exists.
``get_fees_result`` adds the heuristic fallback for callers that always need
a number.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

import requests

from . import http
from .cache import InMemoryTTLCache, KeyedLocks
from .fee_estimates import estimate_fees
from .models import FeeCacheEntry, FeeCacheKey, FeeQuote, FeeResolution
from .normalize import normalize_asin
from .signing import RequestSigner, SigningCredentials
from .tokens import AccessTokenCache

logger = logging.getLogger(__name__)

DEFAULT_MARKETPLACE = "ATVPDKIKX0DER"
DEFAULT_FEE_TTL = timedelta(hours=24)
DEFAULT_FAILURE_TTL_SECONDS = 7 * 60
DEFAULT_LIVE_TIMEOUT = 2.0

FEES_PATH = "/products/fees/v0/items/{asin}/feesEstimate"

_NA = ("sellingpartnerapi-na.amazon.com", "us-east-1")
_EU = ("sellingpartnerapi-eu.amazon.com", "eu-west-1")

# marketplace id -> (host, signing region)
MARKETPLACE_ROUTES: dict[str, tuple[str, str]] = {
    "ATVPDKIKX0DER": _NA,  # US
    "A1PA6795UKMFR9": _EU,  # DE
    "A1RKKUPIHCS9HS": _EU,  # ES
    "A13V1IB3VIYZZH": _EU,  # FR
    "APJ6JRA9NG5V4": _EU,  # IT
    "A1F83G8C2ARO7P": _EU,  # UK
    "A1VC38T7YXB528": ("sellingpartnerapi-fe.amazon.com", "us-west-2"),  # JP
    "A19VAU5U5O7RUS": ("sellingpartnerapi-fe.amazon.com", "us-east-1"),  # CA
}

FULFILLMENT_FEE_TYPES = ("FBAFulfillmentFee", "FBAPerOrderFulfillmentFee", "FBAFulfillmentFeePerUnit")
REFERRAL_FEE_TYPE = "ReferralFee"

LIVE_UNAVAILABLE_WARNING = (
    "Couldn't access Amazon fees right now, showing estimated fees instead. "
    "Reconnect Amazon to restore exact fees."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def route_for_marketplace(marketplace: str | None) -> tuple[str, str]:
    """Return ``(host, region)``; unknown marketplaces route to North America."""
    return MARKETPLACE_ROUTES.get(marketplace or DEFAULT_MARKETPLACE, _NA)


# ── Response parsing ──────────────────────────────────────────────────────────

def _amount(node: Any) -> float | None:
    if not isinstance(node, dict):
        return None
    raw = node.get("Amount")
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def extract_fees(data: Any) -> FeeQuote:
    """
    Pull fulfillment, referral and total fees out of a ``getMyFeesEstimateForASIN`` body.

    ``FeesEstimateResult`` may be a single object or a list (one entry per
    fulfillment program; the first is used). Missing pieces come back as
    ``None``; the caller decides whether the quote is usable.
    """
    payload = data.get("payload", data) if isinstance(data, dict) else None
    result = payload.get("FeesEstimateResult") if isinstance(payload, dict) else None
    if isinstance(result, list):
        result = result[0] if result else None
    estimate = result.get("FeesEstimate") if isinstance(result, dict) else None
    if not isinstance(estimate, dict):
        return FeeQuote(fulfillment_fee=None, referral_fee=None)

    fulfillment: float | None = None
    referral: float | None = None
    currency = "USD"
    for detail in estimate.get("FeeDetailList") or []:
        if not isinstance(detail, dict):
            continue
        amount = _amount(detail.get("FeeAmount"))
        if amount is None:
            continue
        fee_type = detail.get("FeeType")
        if fee_type in FULFILLMENT_FEE_TYPES and fulfillment is None:
            fulfillment = amount
            currency = detail["FeeAmount"].get("CurrencyCode") or currency
        elif fee_type == REFERRAL_FEE_TYPE and referral is None:
            referral = amount

    total = _amount(estimate.get("TotalFeesEstimate"))
    if total is None and fulfillment is not None and referral is not None:
        total = round(fulfillment + referral, 2)
    return FeeQuote(
        fulfillment_fee=fulfillment, referral_fee=referral, total_fee=total, currency=currency
    )


def build_fees_request(
    asin: str,
    price: float,
    marketplace: str,
    *,
    is_amazon_fulfilled: bool = True,
    currency: str = "USD",
    identifier: str,
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "MarketplaceId": marketplace,
        "IsAmazonFulfilled": is_amazon_fulfilled,
        "PriceToEstimateFees": {
            "ListingPrice": {"CurrencyCode": currency, "Amount": round(price, 2)},
            "Shipping": {"CurrencyCode": currency, "Amount": 0.0},
            "Points": {
                "PointsNumber": 0,
                "PointsMonetaryValue": {"CurrencyCode": currency, "Amount": 0.0},
            },
        },
        "Identifier": identifier,
    }
    if is_amazon_fulfilled:
        request["OptionalFulfillmentProgram"] = "FBA_CORE"
    return {"FeesEstimateRequest": request}


# ── Live client ───────────────────────────────────────────────────────────────

class SpApiFeesClient:
    """
    Signed ``getMyFeesEstimateForASIN`` calls.

    ``fetch_quote`` returns ``None`` for a non-2xx answer. Transport and
    token failures raise; the resolution service treats both the same way.
    """

    def __init__(
        self,
        tokens: AccessTokenCache,
        signing: SigningCredentials,
        *,
        identity: str | None = None,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_LIVE_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.tokens = tokens
        self.signing = signing
        self.identity = identity
        self._session = session
        self._timeout = timeout
        self._clock = clock

    def fetch_quote(
        self,
        asin: str,
        price: float,
        marketplace: str,
        is_amazon_fulfilled: bool = True,
    ) -> FeeQuote | None:
        token = self.tokens.get_access_token(self.identity)
        host, region = route_for_marketplace(marketplace)
        now = self._clock()
        body = json.dumps(
            build_fees_request(
                asin,
                price,
                marketplace,
                is_amazon_fulfilled=is_amazon_fulfilled,
                identifier=f"fees-estimate-{asin}-{int(now.timestamp() * 1000)}",
            )
        )
        signed = RequestSigner(self.signing, region).sign(
            "POST",
            host,
            FEES_PATH.format(asin=asin),
            body=body,
            access_token=token,
            content_type="application/json",
            now=now,
        )
        resp = http.post(
            signed.url,
            data=signed.body,
            headers=signed.headers,
            timeout=self._timeout,
            retries=1,
            check_status=False,
            session=self._session,
        )
        if resp.status_code >= 400:
            logger.warning(
                "Fees estimate for %s rejected: HTTP %s (request id %s)",
                asin,
                resp.status_code,
                resp.headers.get("x-amzn-RequestId", "?"),
            )
            if resp.status_code in (401, 403):
                self.tokens.invalidate(self.identity)
            return None
        return extract_fees(http.decode_json(resp))


# ── Cache stores ──────────────────────────────────────────────────────────────

class FeeStore(Protocol):
    def get(self, key: FeeCacheKey) -> FeeCacheEntry | None: ...

    def upsert(self, entry: FeeCacheEntry) -> None: ...


class InMemoryFeeStore:
    """Dict-backed fee cache with upsert-on-key semantics."""

    def __init__(self) -> None:
        self._rows: dict[FeeCacheKey, FeeCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: FeeCacheKey) -> FeeCacheEntry | None:
        with self._lock:
            return self._rows.get(key)

    def upsert(self, entry: FeeCacheEntry) -> None:
        with self._lock:
            self._rows[entry.key] = entry

    def __len__(self) -> int:
        return len(self._rows)


# ── Resolution service ────────────────────────────────────────────────────────

def make_cache_key(
    asin: str, price: float, marketplace: str | None, is_amazon_fulfilled: bool = True
) -> FeeCacheKey:
    return FeeCacheKey(
        asin=normalize_asin(asin) or asin.strip().upper(),
        price=round(float(price), 2),
        marketplace=marketplace or DEFAULT_MARKETPLACE,
        is_amazon_fulfilled=is_amazon_fulfilled,
    )


class FeeResolutionService:
    """
    Cache-first fee resolver.

    Only quotes carrying both a fulfillment and a referral fee are cached
    or returned. A "no quote" outcome is remembered in-process for
    ``failure_ttl_seconds`` so the same key is not hammered; nothing is
    written to the persistent store for it.
    """

    def __init__(
        self,
        store: FeeStore,
        client: SpApiFeesClient | None = None,
        *,
        fee_ttl: timedelta = DEFAULT_FEE_TTL,
        failure_ttl_seconds: float = DEFAULT_FAILURE_TTL_SECONDS,
        negative_cache: InMemoryTTLCache[bool] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.client = client
        self.fee_ttl = fee_ttl
        self.failure_ttl_seconds = failure_ttl_seconds
        self._negative: InMemoryTTLCache[bool] = (
            negative_cache if negative_cache is not None else InMemoryTTLCache()
        )
        self._locks = KeyedLocks()
        self._clock = clock

    @property
    def live_enabled(self) -> bool:
        return self.client is not None

    def resolve_fees(
        self,
        asin: str,
        price: float,
        marketplace: str | None = None,
        is_amazon_fulfilled: bool = True,
    ) -> FeeResolution:
        try:
            key = make_cache_key(asin, price, marketplace, is_amazon_fulfilled)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Invalid fee lookup input asin=%r price=%r: %s", asin, price, exc)
            return FeeResolution(quote=None, source="none")
        if key.price <= 0 or not key.asin:
            return FeeResolution(quote=None, source="none")

        cached = self._lookup(key)
        if cached is not None:
            return FeeResolution(quote=cached, source="cache")

        if self.client is None:
            logger.info("SP-API credentials not configured; no live fee for %s", key.asin)
            return FeeResolution(quote=None, source="none")

        if self._negative.get(key):
            logger.debug("Recent failed quote for %s @ %.2f; skipping live call", key.asin, key.price)
            return FeeResolution(quote=None, source="none")

        with self._locks.hold(key):
            cached = self._lookup(key)
            if cached is not None:
                return FeeResolution(quote=cached, source="cache")
            if self._negative.get(key):
                return FeeResolution(quote=None, source="none")
            return self._fetch_live(key)

    def _lookup(self, key: FeeCacheKey) -> FeeQuote | None:
        try:
            entry = self.store.get(key)
        except Exception as exc:
            logger.warning("Fee cache read failed for %s: %s", key.asin, exc)
            return None
        if entry is None:
            logger.debug("Fee cache miss: %s @ %.2f", key.asin, key.price)
            return None
        if not entry.is_usable():
            return None
        if not entry.is_fresh(self._clock()):
            logger.debug("Fee cache entry expired: %s @ %.2f", key.asin, key.price)
            return None
        logger.debug("Fee cache hit: %s @ %.2f", key.asin, key.price)
        return entry.to_quote()

    def _fetch_live(self, key: FeeCacheKey) -> FeeResolution:
        assert self.client is not None
        try:
            quote = self.client.fetch_quote(
                key.asin, key.price, key.marketplace, key.is_amazon_fulfilled
            )
        except Exception as exc:
            logger.warning("Live fee quote failed for %s: %s", key.asin, exc)
            quote = None

        if quote is None or not quote.is_usable:
            self._negative.set(key, True, self.failure_ttl_seconds)
            return FeeResolution(quote=None, source="none")

        now = self._clock()
        entry = FeeCacheEntry(
            key=key,
            fulfillment_fee=quote.fulfillment_fee,
            referral_fee=quote.referral_fee,
            total_fee=quote.resolved_total,
            currency=quote.currency,
            fetched_at=now,
            expires_at=now + self.fee_ttl,
        )
        try:
            self.store.upsert(entry)
        except Exception as exc:
            logger.warning("Fee cache write failed for %s: %s", key.asin, exc)
        return FeeResolution(quote=entry.to_quote(), source="live")


# ── Unified result ────────────────────────────────────────────────────────────

@dataclass
class FeesResult:
    source: str  # "sp_api" | "estimate"
    asin: str
    marketplace_id: str
    price_used: float | None
    currency: str
    total_fees: float | None
    fee_lines: list[dict[str, Any]]
    fetched_at: str
    cached: bool = False
    cta_connect: bool = False
    assumptions: list[str] = field(default_factory=list)
    warning: str | None = None

    def as_dict(self) -> dict[str, Any]:
        result = {
            "type": "fees_result",
            "source": self.source,
            "asin": self.asin,
            "marketplace_id": self.marketplace_id,
            "price_used": self.price_used,
            "currency": self.currency,
            "total_fees": self.total_fees,
            "fee_lines": self.fee_lines,
            "fetched_at": self.fetched_at,
            "cached": self.cached,
            "cta_connect": self.cta_connect,
            "assumptions": list(self.assumptions),
        }
        if self.warning:
            result["warning"] = self.warning
        return result


def get_fees_result(
    service: FeeResolutionService,
    asin: str,
    price: float,
    marketplace: str | None = None,
    category: str | None = None,
) -> FeesResult:
    """Full fee waterfall. Always returns a usable breakdown, never raises."""
    asin = (asin or "").strip().upper()
    marketplace = (marketplace or "").strip() or DEFAULT_MARKETPLACE
    now = _utcnow().isoformat()

    resolution = FeeResolution(quote=None, source="none")
    try:
        resolution = service.resolve_fees(asin, price, marketplace)
    except Exception as exc:
        logger.warning("Fee resolution failed for %s: %s", asin, exc)

    if resolution.quote is not None:
        quote = resolution.quote
        return FeesResult(
            source="sp_api",
            asin=asin,
            marketplace_id=marketplace,
            price_used=price,
            currency=quote.currency,
            total_fees=quote.resolved_total,
            fee_lines=[
                {"name": "Referral", "amount": quote.referral_fee},
                {"name": "FBA fulfillment", "amount": quote.fulfillment_fee},
            ],
            fetched_at=now,
            cached=resolution.source == "cache",
        )

    try:
        price_value = float(price) if price is not None else 0.0
    except (TypeError, ValueError):
        price_value = 0.0
    est = estimate_fees(max(price_value, 0.0), category)
    return FeesResult(
        source="estimate",
        asin=asin,
        marketplace_id=marketplace,
        price_used=price_value if price_value > 0 else None,
        currency="USD",
        total_fees=est.total_fee,
        fee_lines=est.fee_lines(),
        fetched_at=now,
        cta_connect=True,
        assumptions=est.assumptions,
        warning=LIVE_UNAVAILABLE_WARNING if service.live_enabled else None,
    )
