import pytest

from zivaalerts.infrastructure.error_handling import ConfigurationError, ProviderError
from zivaalerts.models import AccountState, DispatchOutcome, ReportWindow, Severity
from zivaalerts.pipeline import build_pipeline

from conftest import PHONE, add_account, add_campaign, candidate, set_phone, snapshot


@pytest.fixture
def world(store, pipeline):
    add_account(store, "acc-1", user_id="user-1")
    add_account(store, "acc-2", user_id="user-2")
    add_campaign(store, "cmp-1", account_id="acc-1", user_id="user-1")
    add_campaign(store, "cmp-2", account_id="acc-2", user_id="user-2")
    store.add_snapshot(snapshot("cmp-1", cpc=9.0))
    store.add_snapshot(snapshot("cmp-2", cpc=6.0))
    set_phone(store, "user-2", PHONE)
    pipeline.record_inbound(PHONE, "Hi ZivaAds")
    return pipeline


def test_expired_token_revokes_account_after_three_runs(world, prober, store, clock):
    for _ in range(3):
        prober.push("acc-1", ProviderError("token expired", http_status=400, code=190))

    states = []
    for _ in range(3):
        result = world.run_health_check()
        states.append(store.get_account("acc-1").state)
        clock.advance(hours=1)

    assert states == [AccountState.DEGRADED, AccountState.DEGRADED, AccountState.REVOKED]
    assert result.to_sql() == "UPDATE accounts SET state = 'revoked' WHERE id IN ('acc-1');"
    assert store.get_account("acc-2").state is AccountState.ACTIVE
    runs = store.list_job_runs("health")
    assert [r["status"] for r in runs] == ["success"] * 3

    # campaigns under the revoked credential are no longer evaluated
    assert world.evaluate_campaign("cmp-1") == []
    assert {r.alert.campaign_id for r in world.evaluate_all()} == {"cmp-2"}


def test_alert_lifecycle_with_delivery(world, store, channel):
    [first] = world.evaluate_campaign("cmp-2")
    assert first.created
    assert first.alert.kind == "high_cpc"
    assert first.alert.severity is Severity.MEDIUM
    assert world.drain_dispatch() == 1
    assert len(channel.calls) == 1

    [again] = world.evaluate_campaign("cmp-2")
    assert not again.created
    assert again.alert.id == first.alert.id
    assert world.drain_dispatch() == 0

    world.resolve(first.alert.id, "user-2")
    [third] = world.evaluate_campaign("cmp-2")
    assert third.created
    assert world.drain_dispatch() == 1
    assert len(channel.calls) == 2

    sent = store.list_dispatch_attempts("alert")
    assert [a.outcome for a in sent] == [DispatchOutcome.SENT, DispatchOutcome.SENT]
    assert {a.subject_id for a in sent} == {first.alert.id, third.alert.id}


def test_evaluate_unknown_campaign(world):
    with pytest.raises(KeyError):
        world.evaluate_campaign("cmp-404")


def test_evaluate_all_records_job_and_queues_undelivered(world, store):
    results = world.evaluate_all()
    assert sorted(r.alert.campaign_id for r in results) == ["cmp-1", "cmp-2"]

    [run] = store.list_job_runs("evaluate")
    assert run["status"] == "success"
    assert run["counts"] == {"campaigns": 2, "created": 2, "deduped": 0, "failed": 0}

    # user-1 has no phone: deferred up front, so only user-2's alert is in the queue
    assert world.dispatcher.pending() == 1
    world.drain_dispatch()
    assert world.enqueue_undispatched() == 0


def test_enqueue_undispatched_picks_up_never_tried_alerts(world, store):
    result = world.alerts.submit(
        candidate(campaign_id="cmp-2", user_id="user-2", kind="spend_limit")
    )
    assert world.dispatcher.pending() == 0

    assert world.enqueue_undispatched() == 1
    assert world.drain_dispatch(wait=True) == 1
    assert store.list_dispatch_attempts("alert", result.alert.id)[0].outcome is DispatchOutcome.SENT


def test_reports_flow_through_pipeline(world, store, channel):
    world.generator.behaviour = {"user-2": {"should_send_alert": True}}

    result = world.run_reports(ReportWindow.MORNING)
    world.drain_dispatch()

    assert result.status == "success"
    assert result.enqueued == 1
    assert len(channel.calls) == 1
    assert store.list_job_runs("reports:morning")[0]["status"] == "success"


def test_build_pipeline_without_channel_or_generator(monkeypatch, settings, store, prober, clock):
    monkeypatch.delenv("WHATSAPP_ACCESS_TOKEN", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    pipeline = build_pipeline(settings, clock=clock, store=store, prober=prober)

    assert pipeline.dispatcher is None
    add_account(store)
    add_campaign(store)
    store.add_snapshot(snapshot(cpc=20.0))
    [res] = pipeline.evaluate_campaign("cmp-1")
    assert res.created
    assert res.alert.severity is Severity.HIGH
    assert pipeline.drain_dispatch() == 0
    with pytest.raises(ConfigurationError):
        pipeline.run_reports(ReportWindow.MORNING)


def test_paused_campaigns_raise_no_alerts(world, store):
    add_campaign(store, "cmp-3", account_id="acc-2", user_id="user-2", status="PAUSED")
    store.add_snapshot(snapshot("cmp-3", ctr=0.001))

    assert world.evaluate_campaign("cmp-3") == []
    assert "cmp-3" not in {r.alert.campaign_id for r in world.evaluate_all()}
    assert [a for a in store.list_alerts("user-2") if a.campaign_id == "cmp-3"] == []
