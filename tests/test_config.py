"""Tests for config.py and services.py"""

import pytest

from market_estimator.config import (
    AppConfig,
    ConfigError,
    default_config,
    load_config,
    resolve_config,
)
from market_estimator.fees import InMemoryFeeStore
from market_estimator.services import build_fee_client, build_services

SAMPLE_YAML = """
sp_api:
  client_id: ENV:TEST_SP_CLIENT_ID
  client_secret: ENV:TEST_SP_CLIENT_SECRET
  refresh_token: literal-refresh
  aws_access_key_id: AKIDEXAMPLE
  aws_secret_access_key: ENV:TEST_SP_UNSET
cache:
  fee_ttl_hours: 720
estimator:
  page_size: 20
  random_seed: 11
storage:
  backend: memory
  snapshots_dir: /tmp/snaps
runtime:
  log_level: DEBUG
"""

SP_ENV_VARS = (
    "SP_API_CLIENT_ID",
    "SP_API_CLIENT_SECRET",
    "SP_API_REFRESH_TOKEN",
    "SP_API_AWS_ACCESS_KEY_ID",
    "SP_API_AWS_SECRET_ACCESS_KEY",
    "MARKET_ESTIMATOR_STORAGE",
    "MARKET_ESTIMATOR_CONFIG",
    "DATABASE_URL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in SP_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_resolves_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_SP_CLIENT_ID", "amzn1.client")
    monkeypatch.setenv("TEST_SP_CLIENT_SECRET", "shh")
    monkeypatch.delenv("TEST_SP_UNSET", raising=False)

    cfg = load_config(_write(tmp_path, SAMPLE_YAML))
    assert cfg.sp_api.client_id == "amzn1.client"
    assert cfg.sp_api.refresh_token == "literal-refresh"
    assert cfg.sp_api.aws_secret_access_key is None
    assert cfg.sp_api.is_ready() is False
    assert cfg.cache.fee_ttl_hours == 720
    assert cfg.cache.fee_failure_ttl_seconds == 420
    assert cfg.estimator.random_seed == 11
    assert cfg.storage.snapshots_dir == "/tmp/snaps"
    assert cfg.sp_api.default_marketplace == "ATVPDKIKX0DER"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml")


def test_invalid_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "sp_api: [unclosed"))


def test_root_must_be_mapping(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "- just\n- a list\n"))


def test_invalid_backend(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "storage:\n  backend: redis\n"))


def test_invalid_number(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "cache:\n  fee_ttl_hours: forever\n"))


def test_default_config_from_env(clean_env):
    for name, value in (
        ("SP_API_CLIENT_ID", "id"),
        ("SP_API_CLIENT_SECRET", "secret"),
        ("SP_API_REFRESH_TOKEN", "refresh"),
        ("SP_API_AWS_ACCESS_KEY_ID", "AKID"),
        ("SP_API_AWS_SECRET_ACCESS_KEY", "aws-secret"),
    ):
        clean_env.setenv(name, value)
    cfg = default_config()
    assert cfg.sp_api.is_ready() is True
    assert cfg.storage.backend == "memory"


def test_resolve_config_prefers_env_path(tmp_path, clean_env):
    path = _write(tmp_path, "estimator:\n  page_size: 12\n")
    clean_env.setenv("MARKET_ESTIMATOR_CONFIG", str(path))
    assert resolve_config().estimator.page_size == 12


def test_resolve_config_falls_back_to_env_only(tmp_path, clean_env):
    clean_env.chdir(tmp_path)
    cfg = resolve_config()
    assert cfg.storage.backend == "memory"
    assert cfg.sp_api.is_ready() is False


def test_services_without_credentials_are_heuristic_only():
    cfg = AppConfig()
    assert build_fee_client(cfg) is None
    services = build_services(cfg)
    assert services.fees.live_enabled is False
    assert isinstance(services.fees.store, InMemoryFeeStore)
    assert services.page_builder.page_size == 20


def test_services_with_credentials_enable_live_quotes():
    cfg = AppConfig()
    cfg.sp_api.client_id = "id"
    cfg.sp_api.client_secret = "secret"
    cfg.sp_api.refresh_token = "refresh"
    cfg.sp_api.aws_access_key_id = "AKID"
    cfg.sp_api.aws_secret_access_key = "aws-secret"
    services = build_services(cfg)
    assert services.fees.live_enabled is True


def test_postgres_unavailable_falls_back_to_memory(monkeypatch):
    def refuse(*args, **kwargs):
        raise RuntimeError("connection refused")

    monkeypatch.setattr("market_estimator.db.init_pool", refuse)
    cfg = AppConfig()
    cfg.storage.backend = "postgres"
    services = build_services(cfg)
    assert isinstance(services.fees.store, InMemoryFeeStore)
