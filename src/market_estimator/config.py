"""Configuration loader with ENV:VAR_NAME resolution."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "MARKET_ESTIMATOR_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""


def _resolve(value: Any) -> Any:
    """Recursively resolve ENV:VAR_NAME references."""
    if isinstance(value, str) and value.startswith("ENV:"):
        var = value[4:]
        resolved = os.environ.get(var)
        if resolved is None:
            logger.debug("Environment variable %s not set (value stays None)", var)
        return resolved
    if isinstance(value, dict):
        return {k: _resolve(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(v) for v in value]
    return value


@dataclass
class SpApiConfig:
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    token_url: str = "https://api.amazon.com/auth/o2/token"
    default_marketplace: str = "ATVPDKIKX0DER"

    def is_ready(self) -> bool:
        return bool(
            self.client_id
            and self.client_secret
            and self.refresh_token
            and self.aws_access_key_id
            and self.aws_secret_access_key
        )


@dataclass
class CacheConfig:
    fee_ttl_hours: float = 24
    fee_failure_ttl_seconds: float = 420
    anchor_ttl_hours: float = 24
    token_expiry_buffer_seconds: float = 300


@dataclass
class EstimatorConfig:
    page_size: int = 20
    random_seed: int | None = None
    bsr_duplicate_threshold: int = 8


@dataclass
class StorageConfig:
    backend: str = "memory"
    database_url: str | None = None
    snapshots_dir: str = "snapshots"
    retain_snapshots: int = 12


@dataclass
class RuntimeConfig:
    timezone: str = "UTC"
    log_level: str = "INFO"
    live_timeout_seconds: float = 2.0


@dataclass
class AppConfig:
    sp_api: SpApiConfig = field(default_factory=SpApiConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)


def _optional_int(value: Any, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _number(value: Any, default: float, name: str) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _build(raw: dict[str, Any]) -> AppConfig:
    cfg = AppConfig()

    sp = raw.get("sp_api") or {}
    cfg.sp_api = SpApiConfig(
        client_id=sp.get("client_id"),
        client_secret=sp.get("client_secret"),
        refresh_token=sp.get("refresh_token"),
        aws_access_key_id=sp.get("aws_access_key_id"),
        aws_secret_access_key=sp.get("aws_secret_access_key"),
        token_url=sp.get("token_url") or SpApiConfig.token_url,
        default_marketplace=sp.get("default_marketplace") or SpApiConfig.default_marketplace,
    )

    ca = raw.get("cache") or {}
    cfg.cache = CacheConfig(
        fee_ttl_hours=_number(ca.get("fee_ttl_hours"), 24, "cache.fee_ttl_hours"),
        fee_failure_ttl_seconds=_number(
            ca.get("fee_failure_ttl_seconds"), 420, "cache.fee_failure_ttl_seconds"
        ),
        anchor_ttl_hours=_number(ca.get("anchor_ttl_hours"), 24, "cache.anchor_ttl_hours"),
        token_expiry_buffer_seconds=_number(
            ca.get("token_expiry_buffer_seconds"), 300, "cache.token_expiry_buffer_seconds"
        ),
    )

    es = raw.get("estimator") or {}
    cfg.estimator = EstimatorConfig(
        page_size=_optional_int(es.get("page_size"), "estimator.page_size") or 20,
        random_seed=_optional_int(es.get("random_seed"), "estimator.random_seed"),
        bsr_duplicate_threshold=_optional_int(
            es.get("bsr_duplicate_threshold"), "estimator.bsr_duplicate_threshold"
        )
        or 8,
    )

    sto = raw.get("storage") or {}
    backend = str(sto.get("backend") or "memory").lower()
    if backend not in ("memory", "postgres"):
        raise ConfigError(f"storage.backend must be 'memory' or 'postgres', got {backend!r}")
    cfg.storage = StorageConfig(
        backend=backend,
        database_url=sto.get("database_url"),
        snapshots_dir=sto.get("snapshots_dir", "snapshots"),
        retain_snapshots=_optional_int(sto.get("retain_snapshots"), "storage.retain_snapshots")
        or 12,
    )

    rt = raw.get("runtime") or {}
    cfg.runtime = RuntimeConfig(
        timezone=rt.get("timezone", "UTC"),
        log_level=rt.get("log_level", "INFO"),
        live_timeout_seconds=_number(
            rt.get("live_timeout_seconds"), 2.0, "runtime.live_timeout_seconds"
        ),
    )
    return cfg


def load_config(path: str | Path) -> AppConfig:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")

    cfg = _build(_resolve(raw))
    logging.basicConfig(level=getattr(logging, cfg.runtime.log_level.upper(), logging.INFO))
    return cfg


def default_config() -> AppConfig:
    """Configuration from environment variables alone (no file)."""
    return _build(
        {
            "sp_api": {
                "client_id": os.environ.get("SP_API_CLIENT_ID"),
                "client_secret": os.environ.get("SP_API_CLIENT_SECRET"),
                "refresh_token": os.environ.get("SP_API_REFRESH_TOKEN"),
                "aws_access_key_id": os.environ.get("SP_API_AWS_ACCESS_KEY_ID"),
                "aws_secret_access_key": os.environ.get("SP_API_AWS_SECRET_ACCESS_KEY"),
            },
            "storage": {
                "backend": os.environ.get("MARKET_ESTIMATOR_STORAGE", "memory"),
                "database_url": os.environ.get("DATABASE_URL"),
            },
        }
    )


def resolve_config(path: str | Path | None = None) -> AppConfig:
    """Load ``path``, else ``$MARKET_ESTIMATOR_CONFIG``, else ``config.yaml`` if present, else env."""
    candidate = path or os.environ.get(CONFIG_ENV_VAR)
    if candidate:
        return load_config(candidate)
    if Path(DEFAULT_CONFIG_PATH).exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return default_config()
