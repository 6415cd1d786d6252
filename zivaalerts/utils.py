from __future__ import annotations

import os
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytz

DEFAULT_TZ = "Africa/Harare"


# -----------------------
# Clock primitives
# -----------------------
class Clock:
    def now_utc(self) -> datetime:
        raise NotImplementedError


class RealClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """A clock that only moves when told to; used for simulations and tests."""

    def __init__(self, dt_utc: datetime):
        if dt_utc.tzinfo is None:
            dt_utc = dt_utc.replace(tzinfo=timezone.utc)
        self._dt = dt_utc.astimezone(timezone.utc)

    @staticmethod
    def from_env(var: str = "NOW_UTC") -> Optional["FixedClock"]:
        val = os.getenv(var)
        if not val:
            return None
        return FixedClock(parse_any_datetime(val))

    def now_utc(self) -> datetime:
        return self._dt

    def advance(self, **kwargs: float) -> datetime:
        self._dt = self._dt + timedelta(**kwargs)
        return self._dt

    def set(self, dt_utc: datetime) -> None:
        if dt_utc.tzinfo is None:
            dt_utc = dt_utc.replace(tzinfo=timezone.utc)
        self._dt = dt_utc.astimezone(timezone.utc)


def default_clock() -> Clock:
    return FixedClock.from_env() or RealClock()


def parse_any_datetime(s: str) -> datetime:
    s = s.strip()
    if re.fullmatch(r"\d{10}", s):
        return datetime.fromtimestamp(int(s), tz=timezone.utc)
    if re.fullmatch(r"\d{13}", s):
        return datetime.fromtimestamp(int(s) / 1000.0, tz=timezone.utc)
    s = s.replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"Invalid datetime: {s!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def require_tz(name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(name)
    except Exception as e:
        raise ValueError(f"Invalid IANA timezone: {name!r}") from e


def account_tz_name() -> str:
    return os.getenv("ACCOUNT_TIMEZONE") or os.getenv("TIMEZONE") or DEFAULT_TZ


def now_local(tz_name: str, clock: Optional[Clock] = None) -> datetime:
    tz = require_tz(tz_name)
    return (clock or RealClock()).now_utc().astimezone(tz)


# -----------------------
# Env helpers
# -----------------------
def getenv_f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def getenv_i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def getenv_b(name: str, default: bool = False) -> bool:
    return (os.getenv(name, str(int(default))) or "").lower() in ("1", "true", "yes", "y")


# -----------------------
# Phone numbers
# -----------------------
ZIMBABWE_CC = "263"
SOUTH_AFRICA_CC = "27"


def normalize_phone(phone: str) -> str:
    """Digits-only international form used as the WhatsApp recipient key.

    Numbers already carrying the Zimbabwe (263) or South Africa (27) prefix are
    kept; a 9-digit local number starting with 7 is Zimbabwean; anything else
    defaults to South Africa. A leading trunk ``0`` is dropped first.
    """
    cleaned = re.sub(r"\D", "", phone or "")
    if not cleaned:
        raise ValueError(f"Invalid phone number: {phone!r}")
    if cleaned.startswith(ZIMBABWE_CC) or cleaned.startswith(SOUTH_AFRICA_CC):
        return cleaned
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if len(cleaned) == 9 and cleaned.startswith("7"):
        return ZIMBABWE_CC + cleaned
    return SOUTH_AFRICA_CC + cleaned


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "<none>"
    return f"{phone[:4]}***{phone[-3:]}" if len(phone) > 7 else "***"


def truncate(s: str, limit: int) -> str:
    return s if len(s) <= limit else (s[: max(0, limit - 1)] + "…")
