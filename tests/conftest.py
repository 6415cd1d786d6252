from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from zivaalerts.alerts import AlertStore
from zivaalerts.config import PipelineSettings
from zivaalerts.infrastructure.rate_limit_manager import RateLimitManager
from zivaalerts.infrastructure.storage import Store
from zivaalerts.integrations import slack
from zivaalerts.models import (
    Account,
    AccountState,
    Campaign,
    CandidateAlert,
    MetricSnapshot,
    Report,
    Severity,
    UserPreferences,
)
from zivaalerts.notifications.dispatcher import Dispatcher, DispatchPolicy
from zivaalerts.notifications.sessions import SessionTracker
from zivaalerts.pipeline import AlertPipeline
from zivaalerts.utils import FixedClock

T0 = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
PHONE = "0771234567"
PHONE_KEY = "263771234567"


class ScriptedProber:
    """Probe double: per-account queue of outcomes (an exception to raise, or None for success)."""

    def __init__(self, script: Optional[Dict[str, List[Any]]] = None) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def push(self, account_id: str, *outcomes: Any) -> None:
        with self._lock:
            self.script.setdefault(account_id, []).extend(outcomes)

    def probe(self, account: Account) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(account.id)
            queue = self.script.get(account.id) or []
            outcome = queue.pop(0) if queue else None
        if isinstance(outcome, BaseException):
            raise outcome
        return {"data": []}


class FakeChannel:
    """Messaging channel double: each send consumes the next scripted outcome."""

    channel = "whatsapp"

    def __init__(self, outcomes: Optional[List[Any]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: List[tuple] = []
        self._lock = threading.Lock()
        self._n = 0

    def send_text(self, phone: str, body: str) -> str:
        with self._lock:
            self.calls.append((phone, body))
            outcome = self.outcomes.pop(0) if self.outcomes else None
            self._n += 1
            n = self._n
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome or f"wamid.{n}"

    @property
    def bodies(self) -> List[str]:
        return [b for _, b in self.calls]


class FakeGenerator:
    """Report generator double keyed by user id: a Report-field dict, an exception, or None."""

    def __init__(self, behaviour: Optional[Dict[str, Any]] = None) -> None:
        self.behaviour = behaviour or {}
        self.calls: List[tuple] = []

    def generate(self, user_id, window, summary):
        self.calls.append((user_id, window, summary))
        outcome = self.behaviour.get(user_id, {})
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return None
        return Report(
            user_id=user_id,
            window=window,
            content=outcome.get("content", f"Report for {user_id}"),
            summary=outcome.get("summary", "All good"),
            recommendations=outcome.get("recommendations", ["Keep going"]),
            should_send_alert=outcome.get("should_send_alert", False),
            campaign_count=summary.campaign_count,
            total_spend=summary.spend,
        )


@pytest.fixture(autouse=True)
def quiet_slack():
    slack.configure(slack.SlackClient(webhook_url="", enabled=False))
    yield
    slack.configure(None)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def store(tmp_path) -> Store:
    s = Store(str(tmp_path / "alerts.sqlite"))
    yield s
    s.close()


@pytest.fixture
def alert_store(store, clock) -> AlertStore:
    return AlertStore(store, clock)


@pytest.fixture
def sessions(store, clock) -> SessionTracker:
    return SessionTracker(store, clock)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_dispatcher(store, clock, sessions):
    created: List[Dispatcher] = []

    def _make(channel, per_minute: int = 100, per_hour: int = 1000, **policy: Any) -> Dispatcher:
        d = Dispatcher(
            store,
            channel,
            sessions,
            RateLimitManager.for_messaging(per_minute, per_hour, clock),
            clock,
            DispatchPolicy(**policy),
            sleep=lambda s: clock.advance(seconds=s),
        )
        created.append(d)
        return d

    yield _make
    for d in created:
        d.close()


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings.from_dict({})


@pytest.fixture
def prober() -> ScriptedProber:
    return ScriptedProber()


@pytest.fixture
def pipeline(settings, store, prober, channel, clock) -> AlertPipeline:
    p = AlertPipeline(settings, store, prober, channel, FakeGenerator(), clock)
    yield p
    if p.dispatcher is not None:
        p.dispatcher.close()


def add_account(store: Store, account_id: str = "acc-1", user_id: str = "user-1",
                state: AccountState = AccountState.ACTIVE, failures: float = 0.0) -> Account:
    account = Account(
        id=account_id,
        user_id=user_id,
        external_account_id=f"ext-{account_id}",
        access_token="token",
        state=state,
        consecutive_failures=failures,
    )
    store.upsert_account(account)
    return account


def add_campaign(store: Store, campaign_id: str = "cmp-1", account_id: str = "acc-1",
                 user_id: str = "user-1", daily_budget: Optional[float] = 50.0,
                 status: str = "ACTIVE") -> Campaign:
    campaign = Campaign(id=campaign_id, account_id=account_id, user_id=user_id,
                        name=f"Campaign {campaign_id}", status=status, daily_budget=daily_budget)
    store.upsert_campaign(campaign)
    return campaign


def snapshot(campaign_id: str = "cmp-1", at: datetime = T0, **metrics: Any) -> MetricSnapshot:
    base: Dict[str, Any] = dict(impressions=10000, clicks=200, ctr=0.02, cpc=1.0, spend=20.0,
                                frequency=1.5, reach=6000)
    base.update(metrics)
    return MetricSnapshot(campaign_id=campaign_id, captured_at=at, **base)


def candidate(campaign_id: str = "cmp-1", kind: str = "high_cpc", severity: Severity = Severity.MEDIUM,
              user_id: str = "user-1") -> CandidateAlert:
    return CandidateAlert(campaign_id=campaign_id, user_id=user_id, kind=kind, severity=severity,
                          message=f"{kind} on {campaign_id}", observed=6.0, limit=5.0)


def set_phone(store: Store, user_id: str = "user-1", phone: Optional[str] = PHONE, **kwargs: Any) -> None:
    store.set_user_preferences(UserPreferences(user_id=user_id, phone=phone, **kwargs))
