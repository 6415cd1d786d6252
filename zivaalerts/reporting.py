from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from prometheus_client import Counter

from .analytics.metrics import AccountSummary, aggregate_snapshots
from .config import ReportSettings
from .infrastructure.error_handling import SchedulerFatalError
from .models import Report, ReportWindow
from .utils import Clock, RealClock, now_local

logger = logging.getLogger(__name__)

REPORTS = Counter("reports_total", "Report generations by result", ["window", "result"])

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"


def window_for(local_dt: datetime) -> ReportWindow:
    """Morning is [06:00, 12:00), afternoon [12:00, 18:00), evening the rest of the day."""
    if 6 <= local_dt.hour < 12:
        return ReportWindow.MORNING
    if 12 <= local_dt.hour < 18:
        return ReportWindow.AFTERNOON
    return ReportWindow.EVENING


@dataclass
class ReportRunResult:
    window: ReportWindow
    started_at: datetime
    completed_at: Optional[datetime] = None
    users: int = 0
    generated: int = 0
    empty: int = 0
    enqueued: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    abandoned: List[str] = field(default_factory=list)
    reports: List[Report] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.failures and not self.abandoned:
            return STATUS_SUCCESS
        if self.generated or self.empty:
            return STATUS_PARTIAL
        return STATUS_ERROR

    def counts(self) -> Dict[str, int]:
        return {
            "users": self.users,
            "generated": self.generated,
            "empty": self.empty,
            "enqueued": self.enqueued,
            "failed": len(self.failures),
            "abandoned": len(self.abandoned),
        }


class ReportScheduler:
    """Generates one narrative report per opted-in user for a time window.

    Generation runs on a bounded pool with a per-run deadline. A failing user is
    recorded and skipped; the rest of the batch carries on. Urgent reports go to
    ``dispatcher.enqueue``.
    """

    def __init__(
        self,
        store: Any,
        generator: Any,
        dispatcher: Optional[Any] = None,
        clock: Optional[Clock] = None,
        settings: Optional[ReportSettings] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.dispatcher = dispatcher
        self.clock = clock or RealClock()
        self.settings = settings or ReportSettings()

    def current_window(self) -> ReportWindow:
        return window_for(now_local(self.settings.timezone, self.clock))

    def summarize(self, user_id: str) -> AccountSummary:
        campaigns = self.store.get_campaigns_for_user(user_id)
        return aggregate_snapshots(user_id, ((c, self.store.get_latest_snapshot(c.id)) for c in campaigns))

    def _generate(self, user_id: str, window: ReportWindow) -> Optional[Report]:
        summary = self.summarize(user_id)
        return self.generator.generate(user_id, window, summary)

    def run(self, window: Optional[ReportWindow] = None) -> ReportRunResult:
        window = window or self.current_window()
        result = ReportRunResult(window=window, started_at=self.clock.now_utc())
        try:
            users = self.store.get_users_for_report(window)
        except Exception as e:
            logger.error(f"Cannot load users for {window.value} reports: {e}")
            result.failures["*"] = str(e)
            self._finish(result)
            raise SchedulerFatalError(f"Report run for {window.value} aborted: {e}") from e
        result.users = len(users)
        logger.info(f"Generating {window.value} reports for {len(users)} user(s)")

        if users:
            pool = ThreadPoolExecutor(
                max_workers=max(1, self.settings.generation_concurrency), thread_name_prefix="report"
            )
            try:
                futures = {pool.submit(self._generate, p.user_id, window): p.user_id for p in users}
                done, not_done = wait(futures, timeout=self.settings.deadline_seconds)
                for fut in not_done:
                    fut.cancel()
                    result.abandoned.append(futures[fut])
                    REPORTS.labels(window.value, "abandoned").inc()
                if not_done:
                    logger.warning(f"Report deadline hit; {len(not_done)} generation(s) abandoned")
                for fut in done:
                    self._collect(futures[fut], fut, result)
            finally:
                pool.shutdown(wait=False, cancel_futures=True)

        self._finish(result)
        return result

    def _collect(self, user_id: str, fut: Any, result: ReportRunResult) -> None:
        window = result.window
        try:
            report = fut.result()
        except Exception as e:
            logger.warning(f"{window.value} report for user {user_id} failed: {e}")
            result.failures[user_id] = str(e)
            REPORTS.labels(window.value, "failed").inc()
            return
        if report is None:
            result.empty += 1
            REPORTS.labels(window.value, "empty").inc()
            return

        report.generated_at = report.generated_at or self.clock.now_utc()
        try:
            report.id = self.store.insert_report(report)
        except Exception as e:
            logger.error(f"Could not persist report for user {user_id}: {e}")
            result.failures[user_id] = str(e)
            REPORTS.labels(window.value, "failed").inc()
            return
        result.generated += 1
        result.reports.append(report)
        REPORTS.labels(window.value, "generated").inc()

        if report.should_send_alert and self.dispatcher is not None:
            try:
                if self.dispatcher.enqueue(report) is not None:
                    result.enqueued += 1
            except Exception as e:
                logger.error(f"Could not enqueue report {report.id}: {e}")
                result.failures[user_id] = str(e)

    def _finish(self, result: ReportRunResult) -> None:
        result.completed_at = self.clock.now_utc()
        error = "; ".join(f"{u}: {m}" for u, m in sorted(result.failures.items())) or None
        try:
            self.store.record_job_run(
                f"reports:{result.window.value}",
                result.status,
                result.counts(),
                error,
                result.started_at,
                result.completed_at,
            )
        except Exception as e:
            logger.error(f"Could not record report job run: {e}")
        logger.info(f"{result.window.value} reports {result.status}: {result.counts()}")
