from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import schedule

from ..integrations.slack import alert_error, notify
from ..models import ReportWindow
from .error_handling import SchedulerFatalError

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    """Drives the pipeline's periodic jobs on a daemon thread.

    Health checks and evaluation sweeps run on fixed intervals; reports run
    daily at each window's start in the configured timezone. The dispatcher runs
    its own worker thread and is started and stopped alongside.
    """

    def __init__(self, pipeline: Any, tick_seconds: float = 30.0) -> None:
        self.pipeline = pipeline
        self.settings = pipeline.settings
        self.tick_seconds = tick_seconds
        self.scheduler = schedule.Scheduler()
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.alert_cooldowns: Dict[str, float] = {}

    def _register_jobs(self) -> None:
        self.scheduler.clear()
        health_minutes = max(1, self.settings.health.interval_minutes)
        if health_minutes % 60 == 0:
            self.scheduler.every(health_minutes // 60).hours.do(self._run_health)
        else:
            self.scheduler.every(health_minutes).minutes.do(self._run_health)
        self.scheduler.every(max(1, self.settings.evaluation_interval_minutes)).minutes.do(self._run_evaluation)
        reports = self.settings.reports
        for window in ReportWindow:
            self.scheduler.every().day.at(reports.start_time(window), reports.timezone).do(self._run_reports, window)

    def start(self) -> None:
        if self.running:
            return
        self._register_jobs()
        self.running = True
        if self.pipeline.dispatcher is not None:
            self.pipeline.dispatcher.start()
        self.thread = threading.Thread(target=self._run_scheduler, name="scheduler", daemon=True)
        self.thread.start()
        notify(
            f"🤖 Alert scheduler started - health every {self.settings.health.interval_minutes}m, "
            f"evaluation every {self.settings.evaluation_interval_minutes}m, "
            f"reports at {', '.join(self.settings.reports.start_time(w) for w in ReportWindow)} "
            f"({self.settings.reports.timezone})"
        )

    def stop(self) -> None:
        self.running = False
        if self.thread:
            self.thread.join(timeout=5)
            self.thread = None
        if self.pipeline.dispatcher is not None:
            self.pipeline.dispatcher.stop()
        self.scheduler.clear()
        notify("🛑 Alert scheduler stopped")

    def _run_scheduler(self) -> None:
        while self.running:
            try:
                self.scheduler.run_pending()
            except Exception as e:
                alert_error(f"Scheduler loop error: {e}")
            time.sleep(self.tick_seconds)

    def run_all_now(self) -> None:
        self._run_health()
        self._run_evaluation()

    # ---------------- Jobs ----------------
    def _run_health(self) -> None:
        result = self._run_stage_safely(self.pipeline.run_health_check, "Health check")
        if result is not None and result.revoked:
            logger.info(f"{len(result.revoked)} account(s) revoked this run")

    def _run_evaluation(self) -> None:
        self._run_stage_safely(self.pipeline.evaluate_all, "Threshold evaluation")

    def _run_reports(self, window: ReportWindow) -> None:
        result = self._run_stage_safely(self.pipeline.run_reports, f"{window.value} reports", window)
        if result is not None and result.failures and self._check_alert_cooldown(f"reports:{window.value}", hours=6):
            notify(f"⚠️ {len(result.failures)} {window.value} report(s) failed to generate", severity="warn")
            self._set_alert_cooldown(f"reports:{window.value}")

    def _run_stage_safely(self, stage_func: Callable[..., Any], stage_name: str, *args: Any) -> Any:
        try:
            return stage_func(*args)
        except SchedulerFatalError as e:
            logger.error(f"{stage_name} aborted: {e}")
            if self._check_alert_cooldown(stage_name, hours=1):
                alert_error(f"{stage_name} aborted: {e}")
                self._set_alert_cooldown(stage_name)
        except Exception as e:
            logger.exception(f"{stage_name} failed")
            alert_error(f"{stage_name} failed: {e}")
        return None

    def _check_alert_cooldown(self, alert_key: str, hours: float = 1) -> bool:
        last_alert = self.alert_cooldowns.get(alert_key)
        if last_alert is None:
            return True
        return time.time() - last_alert >= hours * 3600

    def _set_alert_cooldown(self, alert_key: str) -> None:
        self.alert_cooldowns[alert_key] = time.time()
