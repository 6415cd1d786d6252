from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from postgrest.exceptions import APIError

from zivaalerts.infrastructure import supabase_storage
from zivaalerts.infrastructure.error_handling import ConfigurationError
from zivaalerts.infrastructure.supabase_storage import SupabaseStore
from zivaalerts.models import (
    AccountState,
    Alert,
    DispatchOutcome,
    NotificationSession,
    ReportWindow,
    Severity,
)

from conftest import T0

BUILDER_METHODS = ("select", "eq", "neq", "in_", "order", "limit", "insert", "update", "upsert")


def builder(*results):
    """A postgrest query builder whose ``execute()`` returns ``results`` in order."""
    b = MagicMock()
    for name in BUILDER_METHODS:
        getattr(b, name).return_value = b
    b.execute.side_effect = [r if isinstance(r, BaseException) else SimpleNamespace(data=r) for r in results]
    return b


@pytest.fixture
def tables():
    return {}


@pytest.fixture
def store(tables):
    client = MagicMock()
    client.table.side_effect = lambda name: tables.setdefault(name, builder())
    return SupabaseStore(client)


def alert_row(alert_id="a-1", campaign_id="cmp-1", kind="high_cpc", resolved=False):
    return {
        "id": alert_id,
        "campaign_id": campaign_id,
        "user_id": "user-1",
        "kind": kind,
        "severity": "medium",
        "message": "CPC is above 5",
        "created_at": "2024-05-01T08:00:00+00:00",
        "observed": 6.0,
        "limit_value": 5.0,
        "resolved": resolved,
        "resolved_at": None,
        "resolved_by": None,
    }


@pytest.fixture
def alert():
    return Alert(id="a-new", campaign_id="cmp-1", user_id="user-1", kind="high_cpc", severity=Severity.MEDIUM,
                 message="CPC is above 5", created_at=T0, observed=6.0, limit=5.0)


# ---------------- Alerts ----------------
def test_insert_alert_when_none_outstanding(store, tables, alert):
    tables["alerts"] = builder([], [{"id": alert.id}])

    stored, created = store.insert_alert_unless_outstanding(alert)

    assert created
    assert stored is alert
    row = tables["alerts"].insert.call_args[0][0]
    assert row["resolved"] is False
    assert row["limit_value"] == alert.limit
    assert row["created_at"].startswith("2024-05-01T08:00:00")


def test_insert_alert_dedups_on_outstanding(store, tables, alert):
    tables["alerts"] = builder([alert_row("a-existing")])

    stored, created = store.insert_alert_unless_outstanding(alert)

    assert not created
    assert stored.id == "a-existing"
    assert stored.severity is Severity.MEDIUM
    tables["alerts"].insert.assert_not_called()


def test_insert_alert_lost_race_returns_winner(store, tables, alert):
    duplicate = APIError({"code": "23505", "message": "duplicate key value violates unique constraint"})
    tables["alerts"] = builder([], duplicate, [alert_row("a-winner")])

    stored, created = store.insert_alert_unless_outstanding(alert)

    assert not created
    assert stored.id == "a-winner"


def test_insert_alert_other_errors_propagate(store, tables, alert):
    tables["alerts"] = builder([], APIError({"code": "42501", "message": "permission denied"}))

    with pytest.raises(APIError):
        store.insert_alert_unless_outstanding(alert)


def test_unique_violation_detection():
    assert supabase_storage._is_unique_violation(APIError({"code": "23505", "message": "dup"}))
    assert supabase_storage._is_unique_violation(Exception({"code": "23505"}))
    assert not supabase_storage._is_unique_violation(Exception("23505"))


def test_undispatched_alerts_skip_tried_ones(store, tables):
    tables["alerts"] = builder([alert_row("a-1"), alert_row("a-2", kind="low_ctr"), alert_row("a-3", kind="spend_limit")])
    tables["dispatch_attempts"] = builder([{"subject_id": "a-2"}])

    pending = store.list_undispatched_alerts()

    assert [a.id for a in pending] == ["a-1", "a-3"]
    tables["dispatch_attempts"].eq.assert_called_with("subject_type", "alert")
    tables["dispatch_attempts"].in_.assert_called_with("subject_id", ["a-1", "a-2", "a-3"])


def test_undispatched_alerts_without_outstanding_alerts(store, tables):
    tables["alerts"] = builder([])

    assert store.list_undispatched_alerts() == []
    assert "dispatch_attempts" not in tables


# ---------------- Campaigns ----------------
def test_evaluable_campaigns_filter_revoked_accounts_and_status(store, tables):
    tables["accounts"] = builder([{"id": "acc-1"}, {"id": "acc-3"}])
    tables["campaigns"] = builder([{
        "id": "cmp-1", "account_id": "acc-1", "user_id": "user-1", "name": "Spring Sale",
        "status": "ACTIVE", "daily_budget": 50.0, "lifetime_budget": None,
    }])

    [campaign] = store.list_evaluable_campaigns()

    assert campaign.budget == 50.0
    tables["accounts"].neq.assert_called_with("state", AccountState.REVOKED.value)
    in_calls = [c[0] for c in tables["campaigns"].in_.call_args_list]
    assert ("account_id", ["acc-1", "acc-3"]) in in_calls
    assert ("status", ["ACTIVE", "LEARNING"]) in in_calls


def test_evaluable_campaigns_with_every_account_revoked(store, tables):
    tables["accounts"] = builder([])

    assert store.list_evaluable_campaigns() == []
    assert "campaigns" not in tables


# ---------------- Sessions ----------------
def session(**kwargs):
    base = dict(phone="263771234567", first_contact_at=T0, last_inbound_at=T0, message_count=1,
                active=True, opted_out=False, first_message="Hi ZivaAds")
    base.update(kwargs)
    return NotificationSession(**base)


def test_upsert_session_inserts_first_contact(store, tables):
    tables["notification_sessions"] = builder([], [])

    store.upsert_session(session())

    row = tables["notification_sessions"].insert.call_args[0][0]
    assert row["first_message"] == "Hi ZivaAds"
    assert row["first_contact_at"].startswith("2024-05-01T08:00:00")
    tables["notification_sessions"].update.assert_not_called()


def test_upsert_session_updates_without_touching_first_contact(store, tables):
    existing = {
        "phone": "263771234567", "first_contact_at": "2024-04-01T10:00:00+00:00",
        "last_inbound_at": "2024-04-30T10:00:00+00:00", "message_count": 4, "active": True,
        "opted_out": False, "first_message": "hello",
    }
    tables["notification_sessions"] = builder([existing], [])

    store.upsert_session(session(message_count=5, opted_out=True))

    data = tables["notification_sessions"].update.call_args[0][0]
    assert data["message_count"] == 5
    assert data["opted_out"] is True
    assert "first_contact_at" not in data
    assert "first_message" not in data
    tables["notification_sessions"].insert.assert_not_called()


# ---------------- jsonb columns ----------------
def test_preferences_read_jsonb_windows(store, tables):
    tables["user_preferences"] = builder([
        {"user_id": "user-1", "phone": "0771234567", "report_windows": ["morning", "evening"], "alerts_enabled": True},
        {"user_id": "user-2", "phone": None, "report_windows": ["afternoon"], "alerts_enabled": False},
    ])

    users = store.get_users_for_report(ReportWindow.EVENING)

    assert [u.user_id for u in users] == ["user-1"]
    assert users[0].report_windows == [ReportWindow.MORNING, ReportWindow.EVENING]


def test_threshold_overrides_as_jsonb_or_text(store, tables):
    tables["user_thresholds"] = builder([{"overrides": {"high_cpc": 8}}], [{"overrides": '{"low_ctr": 0.02}'}], [])

    assert store.get_threshold_overrides("user-1") == {"high_cpc": 8}
    assert store.get_threshold_overrides("user-1") == {"low_ctr": 0.02}
    assert store.get_threshold_overrides("user-2") == {}


def test_job_runs_round_trip_counts(store, tables):
    tables["job_runs"] = builder([], [{
        "job_name": "evaluate", "status": "partial", "counts": {"campaigns": 3, "failed": 1},
        "error_message": "cmp-2: boom", "started_at": "2024-05-01T08:00:00+00:00",
        "completed_at": "2024-05-01T08:00:05+00:00",
    }])

    store.record_job_run("evaluate", "partial", {"campaigns": 3, "failed": 1}, "cmp-2: boom", T0, T0)
    [run] = store.list_job_runs("evaluate")

    assert tables["job_runs"].insert.call_args[0][0]["counts"] == {"campaigns": 3, "failed": 1}
    assert run["counts"]["failed"] == 1
    assert run["completed_at"].second == 5


def test_dispatch_attempts_convert(store, tables):
    tables["dispatch_attempts"] = builder([{
        "subject_type": "alert", "subject_id": "a-1", "channel": "whatsapp", "attempt_number": 2,
        "outcome": "deferred", "created_at": "2024-05-01T08:00:00+00:00", "recipient": "263771234567",
        "reason": "session-expired", "provider_code": 131047, "message_id": None,
    }])

    [attempt] = store.list_dispatch_attempts("alert", "a-1")

    assert attempt.outcome is DispatchOutcome.DEFERRED
    assert attempt.provider_code == 131047


# ---------------- Errors & setup ----------------
def test_read_errors_are_logged_and_raised(store, tables, caplog):
    tables["accounts"] = builder(APIError({"code": "PGRST301", "message": "JWT expired"}))

    with pytest.raises(APIError):
        store.get_account("acc-1")
    assert "SUPABASE ERROR [accounts.select]" in caplog.text


def test_from_env_requires_credentials(monkeypatch):
    for var in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY"):
        monkeypatch.delenv(var, raising=False)
    with pytest.raises(ConfigurationError):
        SupabaseStore.from_env()

    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
    with patch.object(supabase_storage, "create_client") as create:
        store = SupabaseStore.from_env()
    create.assert_called_once_with("https://project.supabase.co", "service-key")
    assert store.client is create.return_value
