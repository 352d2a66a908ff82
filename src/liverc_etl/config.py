"""liverc_etl.config

Explicit runtime settings, constructed once at process start and passed
to every component that needs them.

Settings may be loaded from an optional YAML file:

    base_origin: https://live.liverc.com/
    request_timeout_seconds: 15
    max_retries: 3
    poll_interval_seconds: 1.0

Unknown keys and values of the wrong type raise SettingsValidationError.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_BASE_ORIGIN = "https://live.liverc.com/"
DEFAULT_RESULTS_BASE_URL = "https://liverc.com/results"
DEFAULT_USER_AGENT = "liverc-etl/0.1 (+https://liverc.com)"


class SettingsValidationError(ValueError):
    """Raised when a settings file or override fails validation."""


@dataclass(frozen=True)
class Settings:
    # Scraping client
    base_origin: str = DEFAULT_BASE_ORIGIN
    results_base_url: str = DEFAULT_RESULTS_BASE_URL
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout_seconds: float = 15.0
    max_retries: int = 3
    initial_retry_delay_seconds: float = 0.75
    max_retry_delay_seconds: float = 5.0
    jitter_ratio: float = 0.35
    min_request_interval_seconds: float = 1.0
    # Job queue
    poll_interval_seconds: float = 1.0
    processing_delay_seconds: float = 0.25
    # Discovery
    discovery_max_range_days: int = 7
    discovery_default_limit: int = 40
    discovery_max_limit: int = 100
    # Plan / apply guardrails
    max_events_per_plan: int = 12
    max_total_estimated_laps: int = 10_000
    include_existing_events: bool = False
    # Persistence
    provider: str = "liverc"
    db_dsn: str | None = None

    def replace(self, **changes: Any) -> "Settings":
        return _validated(dataclasses.replace(self, **changes))


_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    f.name: (
        (int, float) if f.type in ("float",)
        else (int,) if f.type in ("int",)
        else (bool,) if f.type in ("bool",)
        else (str, type(None)) if f.type in ("str | None",)
        else (str,)
    )
    for f in dataclasses.fields(Settings)
}


def _validated(settings: Settings) -> Settings:
    for name, kinds in _FIELD_TYPES.items():
        value = getattr(settings, name)
        # bool is an int subclass; only accept it for bool fields
        if isinstance(value, bool) and bool not in kinds:
            raise SettingsValidationError(f"Setting '{name}' must not be a boolean.")
        if not isinstance(value, kinds):
            raise SettingsValidationError(
                f"Setting '{name}' has invalid value {value!r}."
            )
    if settings.max_retries < 0:
        raise SettingsValidationError("'max_retries' must be >= 0.")
    if settings.request_timeout_seconds <= 0:
        raise SettingsValidationError("'request_timeout_seconds' must be > 0.")
    if not 0 <= settings.jitter_ratio <= 1:
        raise SettingsValidationError("'jitter_ratio' must be between 0 and 1.")
    if settings.max_retry_delay_seconds < settings.initial_retry_delay_seconds:
        raise SettingsValidationError(
            "'max_retry_delay_seconds' must be >= 'initial_retry_delay_seconds'."
        )
    if settings.discovery_max_range_days < 1:
        raise SettingsValidationError("'discovery_max_range_days' must be >= 1.")
    return settings


def load_settings(
    path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Build Settings from defaults, an optional YAML file, then overrides.

    Override values of None are ignored so click options can be passed
    through unchanged.
    """
    data: dict[str, Any] = {}
    if path is not None:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise SettingsValidationError("YAML root must be a mapping.")
        data.update(raw)
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    unknown = set(data) - set(_FIELD_TYPES)
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")
    return _validated(Settings(**data))
