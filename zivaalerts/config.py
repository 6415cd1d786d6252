"""
Settings loading.

``config/settings.yaml`` is merged over the built-in defaults, an optional
rules/override file is merged on top, and the result is validated against
``config/schema.settings.yaml``. Secrets never live in these files; they come
from the environment (see ``.env``).
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import yaml

from .infrastructure.error_handling import ConfigurationError
from .models import ReportWindow
from .utils import DEFAULT_TZ, require_tz

logger = logging.getLogger(__name__)

SETTINGS_PATH_DEFAULT = "config/settings.yaml"
SCHEMA_PATH_DEFAULT = "config/schema.settings.yaml"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "health": {
        "interval_minutes": 60,
        "probe_concurrency": 5,
        "revoke_after": 3,
        "unknown_weight": 0.5,
        "deadline_seconds": 300,
        "graph_api_version": "v18.0",
        "request_timeout": 20,
    },
    "thresholds": {
        "low_ctr": 0.01,
        "high_cpc": 5.0,
        "budget_usage": 90,
        "frequency_cap": 3.0,
        "spend_limit": 100.0,
    },
    "evaluation": {
        "staleness_hours": 24,
        "interval_minutes": 60,
    },
    "dispatch": {
        "per_minute": 20,
        "per_hour": 250,
        "max_attempts": 5,
        "backoff_base": 1.0,
        "backoff_factor": 2.0,
        "backoff_max": 300,
        "rate_limit_delay": 5,
        "send_concurrency": 4,
        "poll_seconds": 1.0,
    },
    "sessions": {
        "window_hours": 24,
    },
    "reports": {
        "timezone": DEFAULT_TZ,
        "windows": {"morning": "06:00", "afternoon": "12:00", "evening": "18:00"},
        "generation_concurrency": 3,
        "deadline_seconds": 600,
        "model": "gpt-4o-mini",
    },
    "storage": {
        "backend": "sql",
        "url": "data/zivaalerts.sqlite",
    },
    "slack": {
        "enabled": True,
    },
}


def load_yaml(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.debug(f"Config file {path} not found; using defaults")
        return {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def validate_settings(settings: Dict[str, Any], schema: Optional[Dict[str, Any]]) -> None:
    if not schema:
        return
    try:
        jsonschema.validate(instance=settings, schema=schema)
    except jsonschema.ValidationError as e:
        where = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Settings invalid at {where}: {e.message}") from e


def load_cfg(
    settings_path: Optional[str] = SETTINGS_PATH_DEFAULT,
    rules_path: Optional[str] = None,
    schema_path: Optional[str] = SCHEMA_PATH_DEFAULT,
) -> Dict[str, Any]:
    settings = deep_merge(DEFAULT_SETTINGS, load_yaml(settings_path))
    if rules_path:
        settings = deep_merge(settings, load_yaml(rules_path))
    storage_url = os.getenv("DATABASE_URL")
    if storage_url:
        settings["storage"]["url"] = storage_url
    validate_settings(settings, load_yaml(schema_path))
    return settings


# -----------------------
# Typed views
# -----------------------
@dataclass(frozen=True)
class HealthSettings:
    interval_minutes: int = 60
    probe_concurrency: int = 5
    revoke_after: float = 3.0
    unknown_weight: float = 0.5
    deadline_seconds: float = 300.0
    graph_api_version: str = "v18.0"
    request_timeout: float = 20.0


@dataclass(frozen=True)
class DispatchSettings:
    per_minute: int = 20
    per_hour: int = 250
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 300.0
    rate_limit_delay: float = 5.0
    send_concurrency: int = 4
    poll_seconds: float = 1.0


@dataclass(frozen=True)
class ReportSettings:
    timezone: str = DEFAULT_TZ
    windows: Dict[ReportWindow, Tuple[int, int]] = field(default_factory=lambda: {
        ReportWindow.MORNING: (6, 0),
        ReportWindow.AFTERNOON: (12, 0),
        ReportWindow.EVENING: (18, 0),
    })
    generation_concurrency: int = 3
    deadline_seconds: float = 600.0
    model: str = "gpt-4o-mini"

    def start_time(self, window: ReportWindow) -> str:
        hour, minute = self.windows[window]
        return f"{hour:02d}:{minute:02d}"


def _parse_hhmm(value: str) -> Tuple[int, int]:
    try:
        hour, minute = (int(p) for p in str(value).split(":", 1))
    except ValueError as e:
        raise ConfigurationError(f"Report window start {value!r} is not HH:MM") from e
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ConfigurationError(f"Report window start {value!r} is out of range")
    return hour, minute


@dataclass(frozen=True)
class PipelineSettings:
    health: HealthSettings
    dispatch: DispatchSettings
    reports: ReportSettings
    thresholds: Dict[str, Any]
    staleness_hours: float = 24.0
    evaluation_interval_minutes: int = 60
    session_window_hours: float = 24.0
    storage_backend: str = "sql"
    storage_url: str = "data/zivaalerts.sqlite"
    slack_enabled: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, settings: Dict[str, Any]) -> "PipelineSettings":
        s = deep_merge(DEFAULT_SETTINGS, settings or {})
        h, d, r = s["health"], s["dispatch"], s["reports"]
        windows = {ReportWindow(name): _parse_hhmm(start) for name, start in (r.get("windows") or {}).items()}
        missing: List[str] = [w.value for w in ReportWindow if w not in windows]
        if missing:
            raise ConfigurationError(f"Report windows missing a start time: {', '.join(missing)}")
        tz_name = os.getenv("ACCOUNT_TIMEZONE") or r.get("timezone") or DEFAULT_TZ
        try:
            require_tz(tz_name)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        return cls(
            health=HealthSettings(
                interval_minutes=int(h["interval_minutes"]),
                probe_concurrency=int(h["probe_concurrency"]),
                revoke_after=float(h["revoke_after"]),
                unknown_weight=float(h["unknown_weight"]),
                deadline_seconds=float(h["deadline_seconds"]),
                graph_api_version=str(h["graph_api_version"]),
                request_timeout=float(h["request_timeout"]),
            ),
            dispatch=DispatchSettings(
                per_minute=int(d["per_minute"]),
                per_hour=int(d["per_hour"]),
                max_attempts=int(d["max_attempts"]),
                backoff_base=float(d["backoff_base"]),
                backoff_factor=float(d["backoff_factor"]),
                backoff_max=float(d["backoff_max"]),
                rate_limit_delay=float(d["rate_limit_delay"]),
                send_concurrency=int(d["send_concurrency"]),
                poll_seconds=float(d["poll_seconds"]),
            ),
            reports=ReportSettings(
                timezone=tz_name,
                windows=windows,
                generation_concurrency=int(r["generation_concurrency"]),
                deadline_seconds=float(r["deadline_seconds"]),
                model=str(r["model"]),
            ),
            thresholds=dict(s["thresholds"]),
            staleness_hours=float(s["evaluation"]["staleness_hours"]),
            evaluation_interval_minutes=int(s["evaluation"]["interval_minutes"]),
            session_window_hours=float(s["sessions"]["window_hours"]),
            storage_backend=str(s["storage"]["backend"]),
            storage_url=str(s["storage"]["url"]),
            slack_enabled=bool(s["slack"]["enabled"]),
            raw=s,
        )
