from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from zivaalerts.models import (
    AccountState,
    Alert,
    DispatchAttempt,
    DispatchOutcome,
    NotificationSession,
    ReportWindow,
    Severity,
    UserPreferences,
)

from conftest import T0, add_account, add_campaign, snapshot


def make_alert(alert_id, campaign_id="cmp-1", kind="high_cpc", at=T0):
    return Alert(id=alert_id, campaign_id=campaign_id, user_id="user-1", kind=kind, severity=Severity.HIGH,
                 message="CPC too high", created_at=at, observed=12.0, limit=5.0)


def test_account_roundtrip_and_state_updates(store):
    add_account(store, "acc-1")
    store.update_account_state("acc-1", AccountState.DEGRADED, consecutive_failures=1.0, last_probed_at=T0)

    account = store.get_account("acc-1")
    assert account.state is AccountState.DEGRADED
    assert account.consecutive_failures == 1.0
    assert account.last_probed_at == T0
    assert [a.id for a in store.get_accounts_by_state(AccountState.DEGRADED)] == ["acc-1"]
    assert store.get_account("missing") is None


def test_reauthorize_restores_revoked_account(store):
    add_account(store, "acc-1", state=AccountState.REVOKED, failures=3.0)
    store.reauthorize_account("acc-1", "new-token", T0 + timedelta(days=60))

    account = store.get_account("acc-1")
    assert account.state is AccountState.ACTIVE
    assert account.consecutive_failures == 0
    assert account.access_token == "new-token"


def test_evaluable_campaigns_skip_revoked_accounts(store):
    add_account(store, "acc-1")
    add_account(store, "acc-2", state=AccountState.REVOKED)
    add_campaign(store, "cmp-1", "acc-1")
    add_campaign(store, "cmp-2", "acc-2")

    assert [c.id for c in store.list_evaluable_campaigns()] == ["cmp-1"]


def test_evaluable_campaigns_are_live_only(store):
    add_account(store, "acc-1")
    add_campaign(store, "cmp-1", "acc-1", status="ACTIVE")
    add_campaign(store, "cmp-2", "acc-1", status="PAUSED")
    add_campaign(store, "cmp-3", "acc-1", status="LEARNING")
    add_campaign(store, "cmp-4", "acc-1", status="ARCHIVED")
    add_campaign(store, "cmp-5", "acc-1", status="active")

    assert [c.id for c in store.list_evaluable_campaigns()] == ["cmp-1", "cmp-3", "cmp-5"]


def test_latest_snapshot_wins(store):
    store.add_snapshot(snapshot(cpc=1.0, at=T0 - timedelta(hours=2)))
    store.add_snapshot(snapshot(cpc=7.0, at=T0))
    store.add_snapshot(snapshot(cpc=3.0, at=T0 - timedelta(hours=1)))

    assert store.get_latest_snapshot("cmp-1").cpc == 7.0
    assert store.get_latest_snapshot("cmp-x") is None


def test_outstanding_alert_is_unique_per_campaign_and_kind(store):
    stored, created = store.insert_alert_unless_outstanding(make_alert("a1"))
    assert created
    stored, created = store.insert_alert_unless_outstanding(make_alert("a2"))
    assert not created
    assert stored.id == "a1"
    assert stored.observed == 12.0


def test_partial_index_rejects_direct_duplicate(store):
    store.insert_alert_unless_outstanding(make_alert("a1"))
    with pytest.raises(IntegrityError):
        with store.eng.begin() as c:
            c.exec_driver_sql(
                "INSERT INTO alerts(id, campaign_id, user_id, kind, severity, message, created_at, resolved) "
                "VALUES('a2', 'cmp-1', 'user-1', 'high_cpc', 'high', 'dup', '2024-05-01T08:00:00+00:00', 0)"
            )


def test_resolved_alert_frees_the_slot(store):
    store.insert_alert_unless_outstanding(make_alert("a1"))
    store.mark_alert_resolved("a1", "user-1", T0)
    _, created = store.insert_alert_unless_outstanding(make_alert("a2"))

    assert created
    assert store.get_alert("a1").resolved_by == "user-1"
    assert [a.id for a in store.list_alerts("user-1", unresolved_only=True)] == ["a2"]


def test_undispatched_alerts(store):
    store.insert_alert_unless_outstanding(make_alert("a1", kind="high_cpc"))
    store.insert_alert_unless_outstanding(make_alert("a2", kind="low_ctr", at=T0 + timedelta(minutes=1)))
    store.insert_alert_unless_outstanding(make_alert("a3", kind="spend_limit", at=T0 + timedelta(minutes=2)))
    store.mark_alert_resolved("a3", "user-1", T0)
    store.add_dispatch_attempt(DispatchAttempt(
        subject_type="alert", subject_id="a1", channel="whatsapp", attempt_number=1,
        outcome=DispatchOutcome.SENT, created_at=T0,
    ))

    assert [a.id for a in store.list_undispatched_alerts()] == ["a2"]


def test_session_upsert_keeps_first_contact(store):
    store.upsert_session(NotificationSession(phone="263771234567", first_contact_at=T0, last_inbound_at=T0,
                                             message_count=1, first_message="hello"))
    later = T0 + timedelta(hours=3)
    store.upsert_session(NotificationSession(phone="263771234567", first_contact_at=later, last_inbound_at=later,
                                             message_count=2, opted_out=True, first_message="ignored"))

    session = store.get_session("263771234567")
    assert session.first_contact_at == T0
    assert session.first_message == "hello"
    assert session.last_inbound_at == later
    assert session.message_count == 2
    assert session.opted_out


def test_preferences_and_report_audience(store):
    store.set_user_preferences(UserPreferences(user_id="u1", phone="0771234567"))
    store.set_user_preferences(UserPreferences(user_id="u2", report_windows=[ReportWindow.EVENING]))
    store.set_user_preferences(UserPreferences(user_id="u3", report_windows=[]))

    assert [p.user_id for p in store.get_users_for_report(ReportWindow.MORNING)] == ["u1"]
    assert [p.user_id for p in store.get_users_for_report(ReportWindow.EVENING)] == ["u1", "u2"]
    assert store.get_user_preferences("u1").phone == "0771234567"
    assert store.get_user_preferences("nobody") is None


def test_threshold_overrides(store):
    assert store.get_threshold_overrides("u1") == {}
    store.set_threshold_overrides("u1", {"high_cpc": 8, "low_ctr": {"enabled": False}})
    assert store.get_threshold_overrides("u1") == {"high_cpc": 8, "low_ctr": {"enabled": False}}


def test_job_runs(store):
    store.record_job_run("health", "success", {"probed": 2}, None, T0, T0 + timedelta(seconds=3))
    store.record_job_run("evaluate", "error", None, "db locked", T0, T0)

    [health] = store.list_job_runs("health")
    assert health["counts"] == {"probed": 2}
    assert health["completed_at"] == T0 + timedelta(seconds=3)
    assert len(store.list_job_runs()) == 2


def test_row_converters_accept_plain_mappings():
    from zivaalerts.infrastructure.storage import Store
    alert = Store._alert({
        "id": "a1", "campaign_id": "c", "user_id": "u", "kind": "low_ctr", "severity": "low",
        "message": "m", "created_at": "2024-05-01T08:00:00Z", "observed": None, "limit_value": 0.01,
        "resolved": False, "resolved_at": None, "resolved_by": None,
    })
    assert alert.created_at == T0
    assert alert.severity is Severity.LOW
