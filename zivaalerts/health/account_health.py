"""
Account health monitor.

Probes every active or degraded ad account with one cheap Graph call, runs the
result through the error classifier and walks the account along
active -> degraded -> revoked. Revoked accounts are never probed again until
they are re-authorized.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter

from ..infrastructure.error_handling import Action, NetworkError, ProviderError, SchedulerFatalError, classify
from ..integrations import slack
from ..models import Account, AccountState
from ..utils import Clock, RealClock

logger = logging.getLogger(__name__)

PROBES = Counter("health_probes_total", "Account probes by result", ["result"])
TRANSITIONS = Counter("account_state_transitions_total", "Account state transitions", ["from_state", "to_state"])

PROBE_OK = "ok"
PROBE_ABANDONED = "abandoned"


@dataclass(frozen=True)
class HealthPolicy:
    revoke_after: float = 3.0
    reauth_weight: float = 1.0
    unknown_weight: float = 0.5
    probe_concurrency: int = 5
    deadline_seconds: float = 300.0


@dataclass(frozen=True)
class AccountStateChange:
    account_id: str
    external_account_id: str
    user_id: str
    from_state: AccountState
    to_state: AccountState
    reason: str


@dataclass
class HealthRunResult:
    started_at: datetime
    completed_at: Optional[datetime] = None
    probed: int = 0
    healthy: int = 0
    retryable: int = 0
    penalized: int = 0
    abandoned: List[str] = field(default_factory=list)
    changes: List[AccountStateChange] = field(default_factory=list)

    @property
    def revoked(self) -> List[AccountStateChange]:
        return [c for c in self.changes if c.to_state is AccountState.REVOKED]

    def counts(self) -> Dict[str, int]:
        return {
            "probed": self.probed,
            "healthy": self.healthy,
            "retryable": self.retryable,
            "penalized": self.penalized,
            "abandoned": len(self.abandoned),
            "revoked": len(self.revoked),
            "changed": len(self.changes),
        }

    def to_sql(self) -> Optional[str]:
        """The UPDATE statement that retires the accounts revoked in this run."""
        ids = sorted({c.account_id for c in self.revoked})
        if not ids:
            return None
        quoted = ", ".join("'" + i.replace("'", "''") + "'" for i in ids)
        return f"UPDATE accounts SET state = 'revoked' WHERE id IN ({quoted});"


def next_state(
    account: Account,
    action: Optional[Action],
    policy: HealthPolicy,
) -> Tuple[AccountState, float]:
    """New (state, failure score) for a probe outcome. ``action`` is None on success."""
    if action is None:
        return AccountState.ACTIVE, 0.0
    if action is Action.RETRYABLE:
        return account.state, account.consecutive_failures
    if action is Action.PERMISSION_DENIED:
        return AccountState.REVOKED, account.consecutive_failures + policy.reauth_weight
    weight = policy.reauth_weight if action is Action.NEEDS_REAUTH else policy.unknown_weight
    score = account.consecutive_failures + weight
    if score >= policy.revoke_after:
        return AccountState.REVOKED, score
    return AccountState.DEGRADED, score


class AccountHealthMonitor:
    """Runs one health cycle over the stored credentials.

    ``prober`` is any object with ``probe(account)`` that returns on success and
    raises ``ProviderError``/``NetworkError`` otherwise. Probes run on a bounded
    pool; state updates are applied on the calling thread, one row at a time.
    """

    def __init__(
        self,
        store: Any,
        prober: Any,
        clock: Optional[Clock] = None,
        policy: Optional[HealthPolicy] = None,
    ) -> None:
        self.store = store
        self.prober = prober
        self.clock = clock or RealClock()
        self.policy = policy or HealthPolicy()

    def _load_accounts(self) -> List[Account]:
        try:
            accounts = []
            for state in (AccountState.ACTIVE, AccountState.DEGRADED):
                accounts.extend(self.store.get_accounts_by_state(state))
            return accounts
        except Exception as e:
            raise SchedulerFatalError(f"Cannot load accounts for health check: {e}") from e

    def _probe(self, account: Account) -> Tuple[Optional[Action], Optional[Exception]]:
        try:
            self.prober.probe(account)
            return None, None
        except (ProviderError, NetworkError) as e:
            return classify(e), e

    def run(self) -> HealthRunResult:
        result = HealthRunResult(started_at=self.clock.now_utc())
        accounts = self._load_accounts()
        if not accounts:
            logger.info("Health check: no accounts to probe")
            result.completed_at = self.clock.now_utc()
            return result

        logger.info(f"Health check: probing {len(accounts)} account(s)")
        pool = ThreadPoolExecutor(max_workers=max(1, self.policy.probe_concurrency), thread_name_prefix="probe")
        try:
            futures = {pool.submit(self._probe, a): a for a in accounts}
            done, not_done = wait(futures, timeout=self.policy.deadline_seconds)
            for fut in not_done:
                fut.cancel()
                account = futures[fut]
                result.abandoned.append(account.id)
                PROBES.labels(PROBE_ABANDONED).inc()
            if not_done:
                logger.warning(
                    f"Health check deadline of {self.policy.deadline_seconds}s hit; "
                    f"{len(not_done)} probe(s) abandoned until next run"
                )
            for fut in done:
                account = futures[fut]
                try:
                    action, error = fut.result()
                except Exception as e:
                    # local failure outside the provider error model, never held against the account
                    logger.error(f"Probe of account {account.id} crashed: {e}")
                    action, error = Action.RETRYABLE, e
                self._apply(account, action, error, result)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        result.completed_at = self.clock.now_utc()
        logger.info(f"Health check done: {result.counts()}")
        return result

    def _apply(self, account: Account, action: Optional[Action], error: Optional[Exception],
               result: HealthRunResult) -> None:
        result.probed += 1
        PROBES.labels(action.value if action else PROBE_OK).inc()
        if action is None:
            result.healthy += 1
        elif action is Action.RETRYABLE:
            result.retryable += 1
            logger.info(f"Account {account.id}: transient probe failure, not penalized ({error})")
        else:
            result.penalized += 1
            logger.warning(f"Account {account.id}: probe failed as {action.value} ({error})")

        state, score = next_state(account, action, self.policy)
        now = self.clock.now_utc()
        try:
            self.store.update_account_state(account.id, state, consecutive_failures=score, last_probed_at=now)
        except Exception as e:
            logger.error(f"Could not update account {account.id}: {e}")
            return

        if state is account.state:
            return
        reason = "probe succeeded" if action is None else f"{action.value}: {error}"
        change = AccountStateChange(
            account_id=account.id,
            external_account_id=account.external_account_id,
            user_id=account.user_id,
            from_state=account.state,
            to_state=state,
            reason=reason,
        )
        result.changes.append(change)
        TRANSITIONS.labels(account.state.value, state.value).inc()
        logger.info(f"Account {account.id}: {account.state.value} -> {state.value} ({reason})")
        if state is AccountState.REVOKED:
            slack.alert_account_revoked(account.id, account.external_account_id, reason)
