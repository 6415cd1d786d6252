"""
Facade over the alert pipeline.

``AlertPipeline`` wires the store, the health monitor, the threshold
evaluator, the alert store, the session tracker, the dispatcher and the report
scheduler together and exposes the operations callers use. ``build_pipeline``
assembles one from settings and the environment.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Any, List, Optional, Union

from .alerts import AlertStore, SubmitResult
from .config import PipelineSettings
from .health.account_health import AccountHealthMonitor, HealthPolicy, HealthRunResult
from .infrastructure.error_handling import ConfigurationError, RetryConfig, SchedulerFatalError
from .infrastructure.rate_limit_manager import RateLimitManager
from .integrations import slack
from .models import Alert, AccountState, NotificationSession, Report, ReportWindow
from .notifications.dispatcher import Dispatcher, DispatchPolicy, OutboundMessage
from .notifications.sessions import SessionTracker
from .reporting import ReportRunResult, ReportScheduler
from .rules.thresholds import ThresholdEvaluator, default_threshold_config
from .utils import Clock, RealClock

logger = logging.getLogger(__name__)

JOB_HEALTH = "health"
JOB_EVALUATE = "evaluate"


class AlertPipeline:
    def __init__(
        self,
        settings: PipelineSettings,
        store: Any,
        prober: Any,
        channel: Optional[Any] = None,
        generator: Optional[Any] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.clock = clock or RealClock()
        self.alerts = AlertStore(store, self.clock)
        self.evaluator = ThresholdEvaluator(staleness=timedelta(hours=settings.staleness_hours))
        self.sessions = SessionTracker(store, self.clock, window=timedelta(hours=settings.session_window_hours))
        h = settings.health
        self.health = AccountHealthMonitor(
            store,
            prober,
            self.clock,
            HealthPolicy(
                revoke_after=h.revoke_after,
                unknown_weight=h.unknown_weight,
                probe_concurrency=h.probe_concurrency,
                deadline_seconds=h.deadline_seconds,
            ),
        )
        self.dispatcher: Optional[Dispatcher] = None
        if channel is not None:
            d = settings.dispatch
            self.dispatcher = Dispatcher(
                store,
                channel,
                self.sessions,
                RateLimitManager.for_messaging(d.per_minute, d.per_hour, self.clock),
                self.clock,
                DispatchPolicy(
                    max_attempts=d.max_attempts,
                    backoff=RetryConfig(
                        max_attempts=d.max_attempts,
                        initial_delay=d.backoff_base,
                        exponential_base=d.backoff_factor,
                        max_delay=d.backoff_max,
                        jitter=False,
                    ),
                    rate_limit_delay=d.rate_limit_delay,
                    send_concurrency=d.send_concurrency,
                    poll_seconds=d.poll_seconds,
                ),
            )
        self.generator = generator
        self.reports = ReportScheduler(store, generator, self.dispatcher, self.clock, settings.reports)

    # ---------------- Account health ----------------
    def run_health_check(self) -> HealthRunResult:
        started = self.clock.now_utc()
        try:
            result = self.health.run()
        except SchedulerFatalError as e:
            self._record_job(JOB_HEALTH, "error", None, str(e), started)
            slack.alert_error(f"Health check aborted: {e}")
            raise
        self._record_job(JOB_HEALTH, "success" if not result.abandoned else "partial",
                         result.counts(), None, started)
        sql = result.to_sql()
        if sql:
            logger.info(f"Accounts revoked this run:\n{sql}")
        return result

    # ---------------- Evaluation ----------------
    def evaluate_campaign(self, campaign_id: str, now: Optional[datetime] = None) -> List[SubmitResult]:
        """Evaluate one campaign and submit its candidates; new alerts are enqueued."""
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None:
            raise KeyError(campaign_id)
        account = self.store.get_account(campaign.account_id)
        if account is not None and account.state is AccountState.REVOKED:
            logger.debug(f"Campaign {campaign_id} belongs to revoked account {account.id}; skipped")
            return []
        if not campaign.is_live:
            logger.debug(f"Campaign {campaign_id} is {campaign.status}; skipped")
            return []
        config = default_threshold_config(self.settings.thresholds).with_overrides(
            self.store.get_threshold_overrides(campaign.user_id)
        )
        snapshot = self.store.get_latest_snapshot(campaign_id)
        candidates = self.evaluator.evaluate(campaign, snapshot, config, now or self.clock.now_utc())
        results = [self.alerts.submit(c) for c in candidates]
        for res in results:
            if res.created:
                self.enqueue(res.alert)
        return results

    def evaluate_all(self) -> List[SubmitResult]:
        started = self.clock.now_utc()
        try:
            campaigns = self.store.list_evaluable_campaigns()
        except Exception as e:
            self._record_job(JOB_EVALUATE, "error", None, str(e), started)
            raise SchedulerFatalError(f"Cannot list campaigns: {e}") from e
        results: List[SubmitResult] = []
        errors: List[str] = []
        for campaign in campaigns:
            try:
                results.extend(self.evaluate_campaign(campaign.id, now=started))
            except Exception as e:
                logger.error(f"Evaluation of campaign {campaign.id} failed: {e}")
                errors.append(f"{campaign.id}: {e}")
        created = sum(1 for r in results if r.created)
        status = "success" if not errors else ("partial" if len(errors) < len(campaigns) else "error")
        self._record_job(
            JOB_EVALUATE,
            status,
            {"campaigns": len(campaigns), "created": created, "deduped": len(results) - created,
             "failed": len(errors)},
            "; ".join(errors) or None,
            started,
        )
        logger.info(f"Evaluated {len(campaigns)} campaign(s): {created} new alert(s)")
        return results

    # ---------------- Alerts & dispatch ----------------
    def enqueue(self, item: Union[Alert, Report]) -> Optional[OutboundMessage]:
        if self.dispatcher is None:
            logger.warning(f"Messaging channel not configured; {type(item).__name__.lower()} {item.id} kept in-app only")
            return None
        return self.dispatcher.enqueue(item)

    def enqueue_undispatched(self) -> int:
        """Queue unresolved alerts that have never been tried."""
        count = 0
        for alert in self.store.list_undispatched_alerts():
            if self.enqueue(alert) is not None:
                count += 1
        return count

    def resolve(self, alert_id: str, user_id: str) -> Alert:
        return self.alerts.resolve(alert_id, user_id)

    def drain_dispatch(self, wait: bool = False) -> int:
        if self.dispatcher is None:
            return 0
        return len(self.dispatcher.drain(wait=wait))

    # ---------------- Sessions ----------------
    def record_inbound(self, phone: str, message: str = "") -> NotificationSession:
        return self.sessions.record_inbound(phone, message)

    # ---------------- Reports ----------------
    def run_reports(self, window: Optional[ReportWindow] = None) -> ReportRunResult:
        if self.generator is None:
            raise ConfigurationError("No report generator configured (set OPENAI_API_KEY)")
        return self.reports.run(window)

    # ---------------- Misc ----------------
    def _record_job(self, job: str, status: str, counts: Optional[dict], error: Optional[str],
                    started: datetime) -> None:
        try:
            self.store.record_job_run(job, status, counts, error, started, self.clock.now_utc())
        except Exception as e:
            logger.error(f"Could not record {job} job run: {e}")

    def close(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.close()
        close = getattr(self.store, "close", None)
        if close:
            close()


def _build_store(settings: PipelineSettings) -> Any:
    if settings.storage_backend == "supabase":
        from .infrastructure.supabase_storage import SupabaseStore
        return SupabaseStore.from_env()
    from .infrastructure.storage import Store
    return Store(settings.storage_url)


def build_pipeline(
    settings: PipelineSettings,
    clock: Optional[Clock] = None,
    store: Optional[Any] = None,
    prober: Optional[Any] = None,
    channel: Optional[Any] = None,
    generator: Optional[Any] = None,
) -> AlertPipeline:
    """Assemble a pipeline; collaborators not passed in are built from the environment."""
    from .integrations.meta_client import ClientConfig, GraphProbeClient
    from .integrations.report_generator import OpenAIReportGenerator
    from .integrations.whatsapp import WhatsAppClient, WhatsAppConfig

    slack.configure(slack.SlackClient(enabled=settings.slack_enabled))
    store = store if store is not None else _build_store(settings)
    if prober is None:
        prober = GraphProbeClient(ClientConfig(
            api_version=settings.health.graph_api_version, timeout=settings.health.request_timeout,
        ))
    if channel is None and os.getenv("WHATSAPP_ACCESS_TOKEN"):
        channel = WhatsAppClient(WhatsAppConfig.from_env())
    if channel is None:
        logger.warning("WHATSAPP_ACCESS_TOKEN not set; alerts will not be delivered")
    if generator is None and os.getenv("OPENAI_API_KEY"):
        generator = OpenAIReportGenerator(model=settings.reports.model)
    return AlertPipeline(settings, store, prober, channel, generator, clock)
