import threading
from unittest.mock import Mock, patch

import pytest

from zivaalerts.health.account_health import AccountHealthMonitor, HealthPolicy, next_state
from zivaalerts.infrastructure.error_handling import Action, NetworkError, ProviderError, SchedulerFatalError
from zivaalerts.integrations import slack
from zivaalerts.models import Account, AccountState

from conftest import ScriptedProber, add_account


def expired_token():
    return ProviderError("Error validating access token", http_status=400, code=190)


def test_reauth_failures_walk_active_to_revoked(store, clock):
    add_account(store, "acc-1")
    prober = ScriptedProber({"acc-1": [expired_token(), expired_token(), expired_token()]})
    monitor = AccountHealthMonitor(store, prober, clock)

    states = []
    with patch.object(slack, "alert_account_revoked") as revoked_alert:
        for _ in range(3):
            monitor.run()
            states.append(store.get_account("acc-1").state)
            clock.advance(hours=1)

    assert states == [AccountState.DEGRADED, AccountState.DEGRADED, AccountState.REVOKED]
    revoked_alert.assert_called_once()
    assert revoked_alert.call_args[0][:2] == ("acc-1", "ext-acc-1")


def test_revoked_account_is_not_probed_again(store, clock):
    add_account(store, "acc-1", state=AccountState.REVOKED, failures=3.0)
    prober = ScriptedProber()

    result = AccountHealthMonitor(store, prober, clock).run()

    assert prober.calls == []
    assert result.probed == 0


def test_permission_denied_revokes_immediately(store, clock):
    add_account(store, "acc-1")
    prober = ScriptedProber({"acc-1": [ProviderError(http_status=400, code=100, subcode=33)]})

    result = AccountHealthMonitor(store, prober, clock).run()

    assert store.get_account("acc-1").state is AccountState.REVOKED
    assert [c.account_id for c in result.revoked] == ["acc-1"]
    assert result.to_sql() == "UPDATE accounts SET state = 'revoked' WHERE id IN ('acc-1');"


@pytest.mark.parametrize("error", [
    NetworkError("connection reset"),
    ProviderError(http_status=400, code=17),
    ProviderError(http_status=503),
])
def test_transient_failures_are_not_penalized(store, clock, error):
    add_account(store, "acc-1", state=AccountState.DEGRADED, failures=2.0)
    prober = ScriptedProber({"acc-1": [error]})

    result = AccountHealthMonitor(store, prober, clock).run()

    account = store.get_account("acc-1")
    assert account.state is AccountState.DEGRADED
    assert account.consecutive_failures == 2.0
    assert account.last_probed_at == clock.now_utc()
    assert result.retryable == 1
    assert result.changes == []


def test_success_resets_degraded_account(store, clock):
    add_account(store, "acc-1", state=AccountState.DEGRADED, failures=2.0)

    result = AccountHealthMonitor(store, ScriptedProber(), clock).run()

    account = store.get_account("acc-1")
    assert account.state is AccountState.ACTIVE
    assert account.consecutive_failures == 0.0
    assert result.changes[0].from_state is AccountState.DEGRADED
    assert result.to_sql() is None


def test_unknown_errors_carry_lower_weight(store, clock):
    add_account(store, "acc-1")
    prober = ScriptedProber({"acc-1": [ProviderError(http_status=400, code=1234)] * 6})
    monitor = AccountHealthMonitor(store, prober, clock)

    for _ in range(5):
        monitor.run()
    account = store.get_account("acc-1")
    assert account.state is AccountState.DEGRADED
    assert account.consecutive_failures == 2.5

    monitor.run()
    assert store.get_account("acc-1").state is AccountState.REVOKED


def test_crashing_prober_is_not_held_against_account(store, clock):
    add_account(store, "acc-1")
    prober = Mock()
    prober.probe.side_effect = RuntimeError("bug in prober")

    result = AccountHealthMonitor(store, prober, clock).run()

    assert store.get_account("acc-1").state is AccountState.ACTIVE
    assert result.retryable == 1


def test_one_account_failing_does_not_stop_others(store, clock):
    for account_id in ("acc-1", "acc-2", "acc-3"):
        add_account(store, account_id)
    prober = ScriptedProber({"acc-2": [ProviderError(http_status=400, code=100, subcode=33)]})

    result = AccountHealthMonitor(store, prober, clock).run()

    assert sorted(prober.calls) == ["acc-1", "acc-2", "acc-3"]
    assert result.counts()["probed"] == 3
    assert result.counts()["revoked"] == 1
    assert store.get_account("acc-1").state is AccountState.ACTIVE
    assert store.get_account("acc-3").state is AccountState.ACTIVE


def test_deadline_abandons_slow_probes(store, clock):
    add_account(store, "acc-fast")
    add_account(store, "acc-slow")
    release = threading.Event()

    class SlowProber(ScriptedProber):
        def probe(self, account):
            if account.id == "acc-slow":
                release.wait(5)
            return super().probe(account)

    monitor = AccountHealthMonitor(store, SlowProber(), clock, HealthPolicy(deadline_seconds=0.2))
    try:
        result = monitor.run()
    finally:
        release.set()

    assert result.abandoned == ["acc-slow"]
    assert result.healthy == 1
    assert store.get_account("acc-slow").last_probed_at is None


def test_unreachable_store_aborts_run(clock):
    store = Mock()
    store.get_accounts_by_state.side_effect = ConnectionError("db down")

    with pytest.raises(SchedulerFatalError):
        AccountHealthMonitor(store, ScriptedProber(), clock).run()


def test_next_state_table():
    policy = HealthPolicy()
    fresh = Account(id="a", user_id="u", external_account_id="x", access_token="t")
    worn = Account(id="a", user_id="u", external_account_id="x", access_token="t",
                   state=AccountState.DEGRADED, consecutive_failures=2.0)

    assert next_state(fresh, None, policy) == (AccountState.ACTIVE, 0.0)
    assert next_state(fresh, Action.NEEDS_REAUTH, policy) == (AccountState.DEGRADED, 1.0)
    assert next_state(worn, Action.NEEDS_REAUTH, policy) == (AccountState.REVOKED, 3.0)
    assert next_state(worn, Action.RETRYABLE, policy) == (AccountState.DEGRADED, 2.0)
    assert next_state(fresh, Action.PERMISSION_DENIED, policy)[0] is AccountState.REVOKED
