"""
Tests for configuration management in `carewatch/config.py`.

Covers:
- Environment parsing and debug defaults
- Logging level coercion to the expected Literal
- Polling, triage and map settings from the environment
- LOG_NEW_ALERTS boolean parsing
- get_config cache behavior
- AppConfig validation (debug only allowed in development)
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from pydantic import ValidationError

from carewatch.config import (
    AppConfig,
    GeoConfig,
    PollingConfig,
    get_config,
    load_config_from_env,
    print_config_summary,
)


@pytest.fixture(autouse=True)
def clear_config_cache() -> Iterator[None]:
    """Ensure get_config cache is cleared before and after each test."""
    get_config.cache_clear()
    yield
    get_config.cache_clear()


def test_load_config_dev_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("OVERVIEW_INTERVAL_SECONDS", raising=False)
    monkeypatch.delenv("LOG_NEW_ALERTS", raising=False)

    config = load_config_from_env()

    assert config.environment == "development"
    assert config.debug is True
    assert config.logging.format == "console"
    assert config.polling.overview_interval_seconds == 10.0
    assert config.triage.display_cap == 50
    assert config.triage.log_new_alerts is True


def test_production_uses_json_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")

    config = load_config_from_env()

    assert config.debug is False
    assert config.logging.format == "json"


def test_logging_level_literal_coercion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "staging")

    # Unknown level should coerce to INFO
    monkeypatch.setenv("LOG_LEVEL", "unknown")
    config = load_config_from_env()
    assert config.logging.level == "INFO"

    monkeypatch.setenv("LOG_LEVEL", "error")
    config = load_config_from_env()
    assert config.logging.level == "ERROR"


def test_polling_and_map_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("OVERVIEW_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("ROSTER_LIMIT", "250")
    monkeypatch.setenv("ALERT_DISPLAY_CAP", "20")
    monkeypatch.setenv("TRIAGE_ACTOR", "Nurse Station 3")
    monkeypatch.setenv("MAP_BASE_LATITUDE", "35.1796")
    monkeypatch.setenv("MAP_BASE_LONGITUDE", "129.0756")

    config = load_config_from_env()

    assert config.polling.overview_interval_seconds == 5.0
    assert config.polling.roster_limit == 250
    assert config.triage.display_cap == 20
    assert config.triage.actor == "Nurse Station 3"
    assert config.geo.base_latitude == 35.1796
    assert config.geo.base_longitude == 129.0756


@pytest.mark.parametrize(
    "raw,expected",
    [("false", False), ("0", False), ("no", False), ("1", True), ("TRUE", True), ("on", True)],
)
def test_log_new_alerts_parsing(
    monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool
) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("LOG_NEW_ALERTS", raw)

    assert load_config_from_env().triage.log_new_alerts is expected


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("OVERVIEW_INTERVAL_SECONDS", "0")

    with pytest.raises(ValidationError):
        load_config_from_env()


def test_component_bounds() -> None:
    with pytest.raises(ValidationError):
        PollingConfig(roster_limit=0)
    with pytest.raises(ValidationError):
        GeoConfig(base_latitude=91.0)


def test_get_config_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "development")

    c1 = get_config()
    c2 = get_config()
    assert c1 is c2  # same object due to lru_cache


def test_print_config_summary(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("ALERT_DISPLAY_CAP", "30")

    print_config_summary()

    out = capsys.readouterr().out
    assert "Environment: production" in out
    assert "Display Cap: 30" in out


def test_app_config_debug_only_in_dev_validation() -> None:
    with pytest.raises(ValueError, match="debug mode is only allowed"):
        AppConfig(environment="production", debug=True)
