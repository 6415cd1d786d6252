"""
Supabase-backed store.

Same method set as ``Store`` for deployments that keep the dashboard's Supabase
database. Tables and columns match the SQL schema in ``storage.py``; JSON
columns are ``jsonb`` and flags are ``boolean``.
"""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from supabase import create_client

from ..models import (
    Account,
    AccountState,
    Alert,
    LIVE_CAMPAIGN_STATUSES,
    Campaign,
    DispatchAttempt,
    MetricSnapshot,
    NotificationSession,
    Report,
    ReportWindow,
    UserPreferences,
)
from ..utils import iso
from .error_handling import ConfigurationError
from .storage import Store, _from_json

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def _log_supabase_error(operation: str, table: str, error: Any) -> None:
    code = getattr(error, "code", None)
    details = getattr(error, "details", None) or getattr(error, "hint", None)
    logger.error(f"SUPABASE ERROR [{table}.{operation}] code={code or 'unknown'} message={error} details={details or 'n/a'}")


def _is_unique_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code is None and error.args and isinstance(error.args[0], dict):
        code = error.args[0].get("code")
    return str(code) == UNIQUE_VIOLATION


class SupabaseStore:
    def __init__(self, supabase_client: Any) -> None:
        self.client = supabase_client

    @classmethod
    def from_env(cls) -> "SupabaseStore":
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY")
        if not (url and key):
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for the supabase backend")
        return cls(create_client(url, key))

    def close(self) -> None:
        pass

    def _rows(self, query: Any, table: str, operation: str = "select") -> List[Dict[str, Any]]:
        try:
            return query.execute().data or []
        except Exception as e:
            _log_supabase_error(operation, table, e)
            raise

    def _write(self, query: Any, table: str, operation: str) -> None:
        self._rows(query, table, operation)

    # ---------------- Accounts ----------------
    def upsert_account(self, account: Account) -> None:
        self._write(self.client.table("accounts").upsert({
            "id": account.id,
            "user_id": account.user_id,
            "external_account_id": account.external_account_id,
            "access_token": account.access_token,
            "token_expires_at": iso(account.token_expires_at),
            "name": account.name,
            "state": account.state.value,
            "last_probed_at": iso(account.last_probed_at),
            "consecutive_failures": account.consecutive_failures,
        }, on_conflict="id"), "accounts", "upsert")

    def get_account(self, account_id: str) -> Optional[Account]:
        rows = self._rows(self.client.table("accounts").select("*").eq("id", account_id).limit(1), "accounts")
        return Store._account(rows[0]) if rows else None

    def get_accounts_by_state(self, state: AccountState) -> List[Account]:
        rows = self._rows(
            self.client.table("accounts").select("*").eq("state", state.value).order("id"), "accounts"
        )
        return [Store._account(r) for r in rows]

    def update_account_state(
        self,
        account_id: str,
        state: AccountState,
        consecutive_failures: Optional[float] = None,
        last_probed_at: Optional[datetime] = None,
    ) -> None:
        data: Dict[str, Any] = {"state": state.value}
        if consecutive_failures is not None:
            data["consecutive_failures"] = consecutive_failures
        if last_probed_at is not None:
            data["last_probed_at"] = iso(last_probed_at)
        self._write(self.client.table("accounts").update(data).eq("id", account_id), "accounts", "update")

    def reauthorize_account(self, account_id: str, access_token: str, expires_at: Optional[datetime] = None) -> None:
        self._write(self.client.table("accounts").update({
            "access_token": access_token,
            "token_expires_at": iso(expires_at),
            "state": AccountState.ACTIVE.value,
            "consecutive_failures": 0,
        }).eq("id", account_id), "accounts", "update")

    # ---------------- Campaigns & metrics ----------------
    def upsert_campaign(self, campaign: Campaign) -> None:
        self._write(self.client.table("campaigns").upsert({
            "id": campaign.id,
            "account_id": campaign.account_id,
            "user_id": campaign.user_id,
            "name": campaign.name,
            "status": campaign.status,
            "daily_budget": campaign.daily_budget,
            "lifetime_budget": campaign.lifetime_budget,
        }, on_conflict="id"), "campaigns", "upsert")

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        rows = self._rows(self.client.table("campaigns").select("*").eq("id", campaign_id).limit(1), "campaigns")
        return Store._campaign(rows[0]) if rows else None

    def get_campaigns_for_user(self, user_id: str) -> List[Campaign]:
        rows = self._rows(
            self.client.table("campaigns").select("*").eq("user_id", user_id).order("id"), "campaigns"
        )
        return [Store._campaign(r) for r in rows]

    def list_evaluable_campaigns(self) -> List[Campaign]:
        accounts = self._rows(
            self.client.table("accounts").select("id").neq("state", AccountState.REVOKED.value), "accounts"
        )
        ids = [a["id"] for a in accounts]
        if not ids:
            return []
        rows = self._rows(
            self.client.table("campaigns").select("*").in_("account_id", ids)
            .in_("status", list(LIVE_CAMPAIGN_STATUSES)).order("id"), "campaigns"
        )
        return [Store._campaign(r) for r in rows]

    def add_snapshot(self, snapshot: MetricSnapshot) -> None:
        self._write(self.client.table("metric_snapshots").insert({
            "id": str(uuid.uuid4()),
            "campaign_id": snapshot.campaign_id,
            "captured_at": iso(snapshot.captured_at),
            "impressions": snapshot.impressions,
            "clicks": snapshot.clicks,
            "ctr": snapshot.ctr,
            "cpc": snapshot.cpc,
            "spend": snapshot.spend,
            "frequency": snapshot.frequency,
            "reach": snapshot.reach,
        }), "metric_snapshots", "insert")

    def get_latest_snapshot(self, campaign_id: str) -> Optional[MetricSnapshot]:
        rows = self._rows(
            self.client.table("metric_snapshots").select("*").eq("campaign_id", campaign_id)
            .order("captured_at", desc=True).limit(1),
            "metric_snapshots",
        )
        return Store._snapshot(rows[0]) if rows else None

    # ---------------- Users ----------------
    def get_threshold_overrides(self, user_id: str) -> Dict[str, Any]:
        rows = self._rows(
            self.client.table("user_thresholds").select("overrides").eq("user_id", user_id).limit(1),
            "user_thresholds",
        )
        return (_from_json(rows[0].get("overrides")) if rows else None) or {}

    def set_threshold_overrides(self, user_id: str, overrides: Dict[str, Any]) -> None:
        self._write(
            self.client.table("user_thresholds").upsert({"user_id": user_id, "overrides": overrides},
                                                        on_conflict="user_id"),
            "user_thresholds", "upsert",
        )

    def get_user_preferences(self, user_id: str) -> Optional[UserPreferences]:
        rows = self._rows(
            self.client.table("user_preferences").select("*").eq("user_id", user_id).limit(1), "user_preferences"
        )
        return Store._prefs(rows[0]) if rows else None

    def set_user_preferences(self, prefs: UserPreferences) -> None:
        self._write(self.client.table("user_preferences").upsert({
            "user_id": prefs.user_id,
            "phone": prefs.phone,
            "report_windows": [w.value for w in prefs.report_windows],
            "alerts_enabled": prefs.alerts_enabled,
        }, on_conflict="user_id"), "user_preferences", "upsert")

    def get_users_for_report(self, window: ReportWindow) -> List[UserPreferences]:
        rows = self._rows(self.client.table("user_preferences").select("*").order("user_id"), "user_preferences")
        return [p for p in (Store._prefs(r) for r in rows) if window in p.report_windows]

    # ---------------- Alerts ----------------
    def find_unresolved_alert(self, campaign_id: str, kind: str) -> Optional[Alert]:
        rows = self._rows(
            self.client.table("alerts").select("*").eq("campaign_id", campaign_id).eq("kind", kind)
            .eq("resolved", False).limit(1),
            "alerts",
        )
        return Store._alert(rows[0]) if rows else None

    def insert_alert_unless_outstanding(self, alert: Alert) -> Tuple[Alert, bool]:
        existing = self.find_unresolved_alert(alert.campaign_id, alert.kind)
        if existing is not None:
            return existing, False
        try:
            self.client.table("alerts").insert({
                "id": alert.id,
                "campaign_id": alert.campaign_id,
                "user_id": alert.user_id,
                "kind": alert.kind,
                "severity": alert.severity.value,
                "message": alert.message,
                "observed": alert.observed,
                "limit_value": alert.limit,
                "created_at": iso(alert.created_at),
                "resolved": False,
            }).execute()
        except Exception as e:
            # lost the race against another evaluator; the partial unique index decides
            if not _is_unique_violation(e):
                _log_supabase_error("insert", "alerts", e)
                raise
            existing = self.find_unresolved_alert(alert.campaign_id, alert.kind)
            if existing is None:
                raise
            return existing, False
        return alert, True

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        rows = self._rows(self.client.table("alerts").select("*").eq("id", alert_id).limit(1), "alerts")
        return Store._alert(rows[0]) if rows else None

    def mark_alert_resolved(self, alert_id: str, resolved_by: str, resolved_at: datetime) -> None:
        self._write(self.client.table("alerts").update({
            "resolved": True,
            "resolved_at": iso(resolved_at),
            "resolved_by": resolved_by,
        }).eq("id", alert_id).eq("resolved", False), "alerts", "update")

    def list_alerts(self, user_id: str, unresolved_only: bool = False) -> List[Alert]:
        query = self.client.table("alerts").select("*").eq("user_id", user_id)
        if unresolved_only:
            query = query.eq("resolved", False)
        rows = self._rows(query.order("created_at", desc=True), "alerts")
        return [Store._alert(r) for r in rows]

    def list_undispatched_alerts(self) -> List[Alert]:
        rows = self._rows(
            self.client.table("alerts").select("*").eq("resolved", False).order("created_at"), "alerts"
        )
        if not rows:
            return []
        tried = self._rows(
            self.client.table("dispatch_attempts").select("subject_id").eq("subject_type", "alert")
            .in_("subject_id", [r["id"] for r in rows]),
            "dispatch_attempts",
        )
        seen = {t["subject_id"] for t in tried}
        return [Store._alert(r) for r in rows if r["id"] not in seen]

    # ---------------- Sessions ----------------
    def get_session(self, phone: str) -> Optional[NotificationSession]:
        rows = self._rows(
            self.client.table("notification_sessions").select("*").eq("phone", phone).limit(1),
            "notification_sessions",
        )
        return Store._session(rows[0]) if rows else None

    def upsert_session(self, session: NotificationSession) -> None:
        data = {
            "phone": session.phone,
            "last_inbound_at": iso(session.last_inbound_at),
            "message_count": session.message_count,
            "active": session.active,
            "opted_out": session.opted_out,
        }
        if self.get_session(session.phone) is None:
            data.update({"first_contact_at": iso(session.first_contact_at), "first_message": session.first_message})
            self._write(self.client.table("notification_sessions").insert(data), "notification_sessions", "insert")
        else:
            self._write(
                self.client.table("notification_sessions").update(data).eq("phone", session.phone),
                "notification_sessions", "update",
            )

    # ---------------- Dispatch log ----------------
    def add_dispatch_attempt(self, attempt: DispatchAttempt) -> None:
        self._write(self.client.table("dispatch_attempts").insert({
            "id": str(uuid.uuid4()),
            "subject_type": attempt.subject_type,
            "subject_id": attempt.subject_id,
            "channel": attempt.channel,
            "attempt_number": attempt.attempt_number,
            "outcome": attempt.outcome.value,
            "recipient": attempt.recipient,
            "reason": attempt.reason,
            "provider_code": attempt.provider_code,
            "message_id": attempt.message_id,
            "created_at": iso(attempt.created_at),
        }), "dispatch_attempts", "insert")

    def list_dispatch_attempts(self, subject_type: Optional[str] = None,
                               subject_id: Optional[str] = None) -> List[DispatchAttempt]:
        query = self.client.table("dispatch_attempts").select("*")
        if subject_type:
            query = query.eq("subject_type", subject_type)
        if subject_id:
            query = query.eq("subject_id", subject_id)
        rows = self._rows(query.order("created_at").order("attempt_number"), "dispatch_attempts")
        return [Store._attempt(r) for r in rows]

    # ---------------- Reports & job log ----------------
    def insert_report(self, report: Report) -> str:
        report_id = report.id or str(uuid.uuid4())
        self._write(self.client.table("reports").insert({
            "id": report_id,
            "user_id": report.user_id,
            "report_window": report.window.value,
            "content": report.content,
            "summary": report.summary,
            "recommendations": list(report.recommendations),
            "should_send_alert": report.should_send_alert,
            "campaign_count": report.campaign_count,
            "total_spend": report.total_spend,
            "generated_at": iso(report.generated_at),
        }), "reports", "insert")
        return report_id

    def list_reports(self, user_id: str) -> List[Report]:
        rows = self._rows(
            self.client.table("reports").select("*").eq("user_id", user_id).order("generated_at"), "reports"
        )
        return [Store._report(r) for r in rows]

    def record_job_run(
        self,
        job_name: str,
        status: str,
        counts: Optional[Dict[str, Any]],
        error_message: Optional[str],
        started_at: datetime,
        completed_at: datetime,
    ) -> None:
        self._write(self.client.table("job_runs").insert({
            "id": str(uuid.uuid4()),
            "job_name": job_name,
            "status": status,
            "counts": counts,
            "error_message": error_message,
            "started_at": iso(started_at),
            "completed_at": iso(completed_at),
        }), "job_runs", "insert")

    def list_job_runs(self, job_name: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.client.table("job_runs").select("*")
        if job_name:
            query = query.eq("job_name", job_name)
        rows = self._rows(query.order("started_at"), "job_runs")
        return [Store._job_run(r) for r in rows]
