from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class AccountState(Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    REVOKED = "revoked"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Direction(Enum):
    BELOW = "below"
    ABOVE = "above"


class DispatchOutcome(Enum):
    SENT = "sent"
    FAILED = "failed"
    DEFERRED = "deferred"


class ReportWindow(Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


@dataclass
class Account:
    """A stored ad-platform credential plus its lifecycle state."""
    id: str
    user_id: str
    external_account_id: str
    access_token: str
    token_expires_at: Optional[datetime] = None
    name: str = ""
    state: AccountState = AccountState.ACTIVE
    last_probed_at: Optional[datetime] = None
    consecutive_failures: float = 0.0


# Meta delivery statuses that are still spending
LIVE_CAMPAIGN_STATUSES = ("ACTIVE", "LEARNING")


@dataclass
class Campaign:
    id: str
    account_id: str
    user_id: str
    name: str
    status: str = "ACTIVE"
    daily_budget: Optional[float] = None
    lifetime_budget: Optional[float] = None

    @property
    def budget(self) -> Optional[float]:
        return self.daily_budget or self.lifetime_budget

    @property
    def is_live(self) -> bool:
        return (self.status or "").upper() in LIVE_CAMPAIGN_STATUSES


@dataclass(frozen=True)
class MetricSnapshot:
    campaign_id: str
    captured_at: datetime
    impressions: float = 0.0
    clicks: float = 0.0
    ctr: Optional[float] = None
    cpc: Optional[float] = None
    spend: float = 0.0
    frequency: Optional[float] = None
    reach: float = 0.0


@dataclass(frozen=True)
class Threshold:
    name: str
    metric: str
    limit: float
    direction: Direction
    inclusive: bool = False
    enabled: bool = True


@dataclass
class ThresholdConfig:
    user_id: Optional[str]
    thresholds: Dict[str, Threshold] = field(default_factory=dict)

    def enabled(self) -> List[Threshold]:
        return [t for t in self.thresholds.values() if t.enabled]

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "ThresholdConfig":
        """Return a copy with user overrides applied.

        An override is either a bare number (the new limit) or a mapping with
        any of ``limit``, ``direction``, ``enabled``. ``None`` keeps the default.
        """
        merged = dict(self.thresholds)
        for name, value in (overrides or {}).items():
            base = merged.get(name)
            if base is None or value is None:
                continue
            if isinstance(value, dict):
                limit = value.get("limit")
                direction = value.get("direction")
                merged[name] = replace(
                    base,
                    limit=float(limit) if limit is not None else base.limit,
                    direction=Direction(direction) if direction else base.direction,
                    enabled=bool(value.get("enabled", base.enabled)),
                )
            else:
                merged[name] = replace(base, limit=float(value))
        return ThresholdConfig(user_id=self.user_id, thresholds=merged)


@dataclass(frozen=True)
class CandidateAlert:
    """An unpersisted alert proposal, subject to deduplication."""
    campaign_id: str
    user_id: str
    kind: str
    severity: Severity
    message: str
    observed: Optional[float] = None
    limit: Optional[float] = None


@dataclass
class Alert:
    id: str
    campaign_id: str
    user_id: str
    kind: str
    severity: Severity
    message: str
    created_at: datetime
    observed: Optional[float] = None
    limit: Optional[float] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


@dataclass
class NotificationSession:
    phone: str
    first_contact_at: datetime
    last_inbound_at: datetime
    message_count: int = 0
    active: bool = True
    opted_out: bool = False
    first_message: str = ""


@dataclass(frozen=True)
class DispatchAttempt:
    subject_type: str
    subject_id: str
    channel: str
    attempt_number: int
    outcome: DispatchOutcome
    created_at: datetime
    recipient: Optional[str] = None
    reason: Optional[str] = None
    provider_code: Optional[int] = None
    message_id: Optional[str] = None


@dataclass
class Report:
    user_id: str
    window: ReportWindow
    content: str
    summary: str
    recommendations: List[str] = field(default_factory=list)
    should_send_alert: bool = False
    campaign_count: int = 0
    total_spend: float = 0.0
    id: Optional[str] = None
    generated_at: Optional[datetime] = None


@dataclass
class UserPreferences:
    user_id: str
    phone: Optional[str] = None
    report_windows: List[ReportWindow] = field(
        default_factory=lambda: [ReportWindow.MORNING, ReportWindow.AFTERNOON, ReportWindow.EVENING]
    )
    alerts_enabled: bool = True
