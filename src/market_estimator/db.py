"""PostgreSQL connection pool and cache-table access (fee cache, market anchors)."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from .models import FeeCacheEntry, FeeCacheKey

logger = logging.getLogger(__name__)

_pool: ThreadedConnectionPool | None = None

# ── Connection pool ──────────────────────────────────────────────────────────

def _dsn() -> str:
    """Build DSN from DATABASE_URL or the PG* environment variables."""
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    return (
        f"host={os.environ.get('PGHOST', 'localhost')} "
        f"port={os.environ.get('PGPORT', '5432')} "
        f"dbname={os.environ.get('PGDATABASE', 'market_estimator')} "
        f"user={os.environ.get('PGUSER', 'estimator')} "
        f"password={os.environ.get('PGPASSWORD', 'estimator')}"
    )


def init_pool(minconn: int = 1, maxconn: int = 10, dsn: str | None = None) -> None:
    """Initialise the global connection pool. Call once at application startup."""
    global _pool
    if _pool is not None:
        return
    _pool = ThreadedConnectionPool(minconn, maxconn, dsn=dsn or _dsn())
    logger.info("PostgreSQL pool initialised (min=%d max=%d)", minconn, maxconn)


def close_pool() -> None:
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn() -> Generator[psycopg2.extensions.connection, None, None]:
    """Yield a connection from the pool, auto-commit or rollback on exit."""
    if _pool is None:
        init_pool()
    assert _pool is not None
    conn = _pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _pool.putconn(conn)


# ── Schema bootstrap ─────────────────────────────────────────────────────────

def apply_schema() -> None:
    """Create tables if they don't exist (idempotent)."""
    sql = (Path(__file__).parent / "schema.sql").read_text(encoding="utf-8")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql)
    logger.info("Schema applied.")


# ── Row mapping ──────────────────────────────────────────────────────────────

def _float(value: Any) -> float | None:
    return float(value) if value is not None else None


def fee_row_params(entry: FeeCacheEntry) -> dict[str, Any]:
    return {
        "asin": entry.key.asin,
        "price": round(entry.key.price, 2),
        "marketplace_id": entry.key.marketplace,
        "is_amazon_fulfilled": entry.key.is_amazon_fulfilled,
        "fulfillment_fee": entry.fulfillment_fee,
        "referral_fee": entry.referral_fee,
        "total_fee": entry.total_fee,
        "currency": entry.currency,
        "fetched_at": entry.fetched_at,
        "expires_at": entry.expires_at,
    }


def fee_entry_from_row(row: dict[str, Any]) -> FeeCacheEntry:
    return FeeCacheEntry(
        key=FeeCacheKey(
            asin=row["asin"],
            price=float(row["price"]),
            marketplace=row["marketplace_id"],
            is_amazon_fulfilled=bool(row["is_amazon_fulfilled"]),
        ),
        fulfillment_fee=_float(row.get("fulfillment_fee")),
        referral_fee=_float(row.get("referral_fee")),
        total_fee=_float(row.get("total_fee")),
        currency=row.get("currency") or "USD",
        fetched_at=row["fetched_at"],
        expires_at=row["expires_at"],
    )


# ── Fee cache ────────────────────────────────────────────────────────────────

class PostgresFeeStore:
    """``fee_cache`` table keyed by asin + price + marketplace + fulfillment flag."""

    def get(self, key: FeeCacheKey) -> FeeCacheEntry | None:
        sql = """
            SELECT asin, price, marketplace_id, is_amazon_fulfilled,
                   fulfillment_fee, referral_fee, total_fee, currency,
                   fetched_at, expires_at
            FROM fee_cache
            WHERE asin = %(asin)s
              AND price = %(price)s
              AND marketplace_id = %(marketplace_id)s
              AND is_amazon_fulfilled = %(is_amazon_fulfilled)s
        """
        params = {
            "asin": key.asin,
            "price": round(key.price, 2),
            "marketplace_id": key.marketplace,
            "is_amazon_fulfilled": key.is_amazon_fulfilled,
        }
        with get_conn() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
        return fee_entry_from_row(dict(row)) if row else None

    def upsert(self, entry: FeeCacheEntry) -> None:
        sql = """
            INSERT INTO fee_cache (
                asin, price, marketplace_id, is_amazon_fulfilled,
                fulfillment_fee, referral_fee, total_fee, currency,
                fetched_at, expires_at
            ) VALUES (
                %(asin)s, %(price)s, %(marketplace_id)s, %(is_amazon_fulfilled)s,
                %(fulfillment_fee)s, %(referral_fee)s, %(total_fee)s, %(currency)s,
                %(fetched_at)s, %(expires_at)s
            )
            ON CONFLICT (asin, price, marketplace_id, is_amazon_fulfilled) DO UPDATE SET
                fulfillment_fee = EXCLUDED.fulfillment_fee,
                referral_fee    = EXCLUDED.referral_fee,
                total_fee       = EXCLUDED.total_fee,
                currency        = EXCLUDED.currency,
                fetched_at      = EXCLUDED.fetched_at,
                expires_at      = EXCLUDED.expires_at
        """
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, fee_row_params(entry))


# ── Market anchor cache ──────────────────────────────────────────────────────

class PostgresAnchorStore:
    """``keyword_analysis_cache`` rows holding ``{"market_anchor": {...}}`` documents."""

    def get(self, cache_key: str) -> dict[str, Any] | None:
        sql = """
            SELECT cache_key, data, expires_at, created_at
            FROM keyword_analysis_cache
            WHERE cache_key = %(cache_key)s
        """
        with get_conn() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, {"cache_key": cache_key})
                row = cur.fetchone()
        return dict(row) if row else None

    def upsert(
        self,
        cache_key: str,
        data: dict[str, Any],
        expires_at: datetime,
        created_at: datetime,
    ) -> None:
        sql = """
            INSERT INTO keyword_analysis_cache (cache_key, data, expires_at, created_at)
            VALUES (%(cache_key)s, %(data)s, %(expires_at)s, %(created_at)s)
            ON CONFLICT (cache_key) DO UPDATE SET
                data       = EXCLUDED.data,
                expires_at = EXCLUDED.expires_at,
                created_at = EXCLUDED.created_at
        """
        params = {
            "cache_key": cache_key,
            "data": psycopg2.extras.Json(data),
            "expires_at": expires_at,
            "created_at": created_at,
        }
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
