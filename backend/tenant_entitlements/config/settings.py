"""
Engine settings.

Resolution order (later wins):
1. Dataclass defaults
2. YAML file named by ENTITLEMENT_CONFIG_FILE (optional)
3. ENTITLEMENT_* environment variables, plus DATABASE_URL and REDIS_URL

Usage:
    from tenant_entitlements.config.settings import get_settings

    settings = get_settings()
    settings.grace_period  # timedelta(days=7)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Optional

import yaml

from tenant_entitlements.entitlements.errors import ConfigurationError
from tenant_entitlements.models.subscription import SubscriptionTier

logger = logging.getLogger(__name__)

ENV_PREFIX = "ENTITLEMENT_"

# Billing price id -> tier. Override per deployment with the real price ids.
DEFAULT_PRICE_TIERS = {
    "price_starter_monthly": "starter",
    "price_starter_annual": "starter",
    "price_professional_monthly": "professional",
    "price_professional_annual": "professional",
    "price_business_monthly": "business",
    "price_business_annual": "business",
}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineSettings:
    """Tunable behaviour of the entitlement engine."""

    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    catalog_path: Optional[str] = None

    trial_days: int = 30
    trial_expiry_grace_seconds: int = 0
    grace_period_days: int = 7
    cancelled_read_only_access: bool = True

    rate_limit_window_seconds: int = 60

    audit_fail_closed: bool = False
    audit_max_retries: int = 3
    audit_retry_base_delay: float = 0.05
    audit_retry_max_delay: float = 1.0
    audit_buffer_size: int = 1000

    persistence_max_retries: int = 2
    persistence_retry_base_delay: float = 0.05
    persistence_retry_max_delay: float = 0.5

    sweep_batch_size: int = 100
    sweep_interval_seconds: int = 300

    price_tiers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PRICE_TIERS))

    @property
    def trial_period(self) -> timedelta:
        return timedelta(days=self.trial_days)

    @property
    def trial_expiry_grace(self) -> timedelta:
        return timedelta(seconds=self.trial_expiry_grace_seconds)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    def resolved_price_tiers(self) -> Dict[str, SubscriptionTier]:
        try:
            return {price: SubscriptionTier.parse(tier) for price, tier in self.price_tiers.items()}
        except ValueError as e:
            raise ConfigurationError(f"Invalid price_tiers mapping: {e}") from e

    def validate(self) -> "EngineSettings":
        for name in (
            "trial_days",
            "grace_period_days",
            "rate_limit_window_seconds",
            "audit_buffer_size",
            "sweep_batch_size",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        for name in ("trial_expiry_grace_seconds", "audit_max_retries", "persistence_max_retries"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        self.resolved_price_tiers()
        return self

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "EngineSettings":
        """Build settings from a plain mapping, coercing each value to its field type."""
        settings = cls()
        known = {f.name: f for f in fields(cls)}
        for key, raw in values.items():
            if key not in known:
                raise ConfigurationError(f"Unknown setting: {key}")
            setattr(settings, key, _coerce(getattr(settings, key), raw, key))
        return settings.validate()

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        config_file: Optional[str] = None,
    ) -> "EngineSettings":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        config_file = config_file or environ.get(f"{ENV_PREFIX}CONFIG_FILE")
        if config_file:
            values.update(load_yaml_settings(config_file))

        field_names = {f.name for f in fields(cls)}
        for name in field_names:
            env_key = f"{ENV_PREFIX}{name.upper()}"
            if env_key in environ and name != "price_tiers":
                values[name] = environ[env_key]

        if environ.get("DATABASE_URL"):
            values["database_url"] = environ["DATABASE_URL"]
        if environ.get("REDIS_URL"):
            values["redis_url"] = environ["REDIS_URL"]

        return cls.from_mapping(values)


def _coerce(current: Any, raw: Any, key: str) -> Any:
    try:
        if isinstance(current, bool):
            return _parse_bool(raw)
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        if isinstance(current, dict):
            if not isinstance(raw, Mapping):
                raise ValueError("expected a mapping")
            return {str(k): str(v) for k, v in raw.items()}
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {key}: {raw!r} ({e})") from e
    return None if raw in (None, "") else str(raw)


def load_yaml_settings(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read settings file {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {config_path} must contain a mapping")
    section = data.get("entitlements", data)
    logger.info("Loaded settings file", extra={"path": str(config_path)})
    return dict(section)


_settings: Optional[EngineSettings] = None
_settings_lock = Lock()


def get_settings() -> EngineSettings:
    """Process-wide settings, loaded from the environment on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = EngineSettings.from_env()
    return _settings


def reset_settings() -> None:
    """
    Reset cached settings (for testing).

    WARNING: Only use in tests!
    """
    global _settings
    _settings = None
