"""Wires config into the fee service, anchor cache and page builder."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta

from .config import AppConfig
from .fees import FeeResolutionService, FeeStore, InMemoryFeeStore, SpApiFeesClient
from .market_anchor import AnchorStore, InMemoryAnchorStore, MarketAnchorCache
from .page_one import CanonicalPageOneBuilder
from .signing import SigningCredentials
from .tokens import AccessTokenCache, LwaCredentials

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    fees: FeeResolutionService
    anchors: MarketAnchorCache
    page_builder: CanonicalPageOneBuilder


def _stores(cfg: AppConfig) -> tuple[FeeStore, AnchorStore]:
    if cfg.storage.backend == "postgres":
        try:
            from .db import PostgresAnchorStore, PostgresFeeStore, apply_schema, init_pool

            init_pool(dsn=cfg.storage.database_url)
            apply_schema()
            logger.info("Using PostgreSQL cache tables.")
            return PostgresFeeStore(), PostgresAnchorStore()
        except Exception as exc:
            logger.warning("PostgreSQL not available, using in-memory caches: %s", exc)
    return InMemoryFeeStore(), InMemoryAnchorStore()


def build_fee_client(cfg: AppConfig) -> SpApiFeesClient | None:
    sp = cfg.sp_api
    if not sp.is_ready():
        logger.info("SP-API credentials incomplete; live fee quotes disabled.")
        return None
    tokens = AccessTokenCache(
        LwaCredentials(sp.client_id, sp.client_secret, sp.refresh_token),
        token_url=sp.token_url,
        expiry_buffer=cfg.cache.token_expiry_buffer_seconds,
        timeout=cfg.runtime.live_timeout_seconds,
    )
    return SpApiFeesClient(
        tokens,
        SigningCredentials(sp.aws_access_key_id or "", sp.aws_secret_access_key or ""),
        timeout=cfg.runtime.live_timeout_seconds,
    )


def build_services(cfg: AppConfig) -> Services:
    fee_store, anchor_store = _stores(cfg)
    fees = FeeResolutionService(
        fee_store,
        build_fee_client(cfg),
        fee_ttl=timedelta(hours=cfg.cache.fee_ttl_hours),
        failure_ttl_seconds=cfg.cache.fee_failure_ttl_seconds,
    )
    anchors = MarketAnchorCache(anchor_store, ttl=timedelta(hours=cfg.cache.anchor_ttl_hours))
    builder = CanonicalPageOneBuilder(
        page_size=cfg.estimator.page_size,
        bsr_duplicate_threshold=cfg.estimator.bsr_duplicate_threshold,
        rng=random.Random(cfg.estimator.random_seed),
    )
    return Services(config=cfg, fees=fees, anchors=anchors, page_builder=builder)
