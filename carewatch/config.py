"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Clinical constants stay in code, operational knobs come from the environment
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()


class PollingConfig(BaseModel):
    """Polling cadence for the monitoring API."""

    overview_interval_seconds: float = Field(
        default=10.0, gt=0.0, description="Interval between dashboard overview polls"
    )
    roster_interval_seconds: float = Field(
        default=15.0, gt=0.0, description="Interval between roster polls while tracking"
    )
    search_debounce_seconds: float = Field(
        default=0.5, ge=0.0, description="Quiet period before a notification search is sent"
    )
    roster_limit: int = Field(default=100, gt=0, description="Patients requested per roster poll")
    alert_page_size: int = Field(default=10, gt=0, description="Alerts per notification page")
    alert_window_days: int = Field(default=14, gt=0, description="Default alert search window")


class TriageConfig(BaseModel):
    """Alert triage settings."""

    display_cap: int = Field(default=50, gt=0, description="Maximum alerts shown at once")
    actor: str = Field(default="Admin", description="Actor stamped on acknowledge/resolve")
    system_name: str = Field(
        default="Radar Monitoring System", description="Actor system written to the audit log"
    )
    log_new_alerts: bool = Field(
        default=True, description="Append an audit entry the first time an alert is seen"
    )


class GeoConfig(BaseModel):
    """Live map and geolocation settings."""

    base_latitude: float = Field(default=37.5665, ge=-90.0, le=90.0)
    base_longitude: float = Field(default=126.9780, ge=-180.0, le=180.0)
    notice_clear_seconds: float = Field(
        default=5.0, gt=0.0, description="How long a location notice stays visible"
    )
    request_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="One-shot position request timeout"
    )
    search_result_limit: int = Field(default=8, gt=0, description="Device search results shown")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    polling: PollingConfig = Field(default_factory=PollingConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    geo: GeoConfig = Field(default_factory=GeoConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    polling_config = PollingConfig(
        overview_interval_seconds=float(os.getenv("OVERVIEW_INTERVAL_SECONDS", "10.0")),
        roster_interval_seconds=float(os.getenv("ROSTER_INTERVAL_SECONDS", "15.0")),
        search_debounce_seconds=float(os.getenv("SEARCH_DEBOUNCE_SECONDS", "0.5")),
        roster_limit=int(os.getenv("ROSTER_LIMIT", "100")),
    )

    triage_config = TriageConfig(
        display_cap=int(os.getenv("ALERT_DISPLAY_CAP", "50")),
        actor=os.getenv("TRIAGE_ACTOR", "Admin"),
        system_name=os.getenv("AUDIT_SYSTEM_NAME", "Radar Monitoring System"),
        log_new_alerts=_parse_bool(os.getenv("LOG_NEW_ALERTS"), True),
    )

    geo_config = GeoConfig(
        base_latitude=float(os.getenv("MAP_BASE_LATITUDE", "37.5665")),
        base_longitude=float(os.getenv("MAP_BASE_LONGITUDE", "126.9780")),
        notice_clear_seconds=float(os.getenv("LOCATION_NOTICE_SECONDS", "5.0")),
    )

    # Logging config
    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        polling=polling_config,
        triage=triage_config,
        geo=geo_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nPOLLING")
    print(f"Overview Interval: {config.polling.overview_interval_seconds}s")
    print(f"Roster Interval: {config.polling.roster_interval_seconds}s")
    print(f"Search Debounce: {config.polling.search_debounce_seconds}s")

    print("\nTRIAGE")
    print(f"Display Cap: {config.triage.display_cap}")
    print(f"Actor: {config.triage.actor}")
    print(f"Audit System: {config.triage.system_name}")
