from __future__ import annotations

import json
import logging
import os
import random
import time
import uuid
from collections import defaultdict
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

from prometheus_client import Counter, Histogram
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from ..models import (
    Account,
    AccountState,
    Alert,
    LIVE_CAMPAIGN_STATUSES,
    Campaign,
    DispatchAttempt,
    DispatchOutcome,
    MetricSnapshot,
    NotificationSession,
    Report,
    ReportWindow,
    Severity,
    UserPreferences,
)
from ..utils import iso, parse_any_datetime

logger = logging.getLogger(__name__)

DB_OPS = Counter("store_db_ops_total", "DB operations", ["op"])
DB_ERRORS = Counter("store_db_errors_total", "DB errors", ["op"])
DB_LAT = Histogram("store_db_latency_seconds", "DB latencies", ["op"])


def _jitter(base: float) -> float:
    return base * (0.8 + 0.4 * random.random())


def _to_json(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _from_json(s: Any) -> Optional[Any]:
    if not s:
        return None
    if not isinstance(s, (str, bytes)):
        return s
    try:
        return json.loads(s)
    except ValueError:
        return None


def _dt(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return parse_any_datetime(v.isoformat())
    return parse_any_datetime(str(v))


def _retry_sql(retries: int = 5, base_sleep: float = 0.03, max_sleep: float = 0.5) -> Callable:
    def deco(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            state = self._cb[fn.__name__]
            now = time.time()
            if state["open_until"] and now < state["open_until"]:
                raise OperationalError("circuit_open", None, None)
            last_exc: Optional[Exception] = None
            for i in range(retries):
                t0 = time.perf_counter()
                try:
                    DB_OPS.labels(fn.__name__).inc()
                    out = fn(self, *args, **kwargs)
                    DB_LAT.labels(fn.__name__).observe(time.perf_counter() - t0)
                    state["n"] = 0
                    return out
                except OperationalError as e:
                    last_exc = e
                    DB_ERRORS.labels(fn.__name__).inc()
                    time.sleep(min(max_sleep, _jitter(base_sleep * (2 ** i))))
                except Exception:
                    DB_ERRORS.labels(fn.__name__).inc()
                    raise
            state["n"] += 1
            if state["n"] >= 3:
                state["open_until"] = time.time() + 2.0
            assert last_exc is not None
            raise last_exc
        return wrapper
    return deco


_SCHEMA = [
    """CREATE TABLE IF NOT EXISTS accounts(
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        external_account_id TEXT NOT NULL,
        access_token TEXT NOT NULL,
        token_expires_at TEXT,
        name TEXT NOT NULL DEFAULT '',
        state TEXT NOT NULL DEFAULT 'active',
        last_probed_at TEXT,
        consecutive_failures REAL NOT NULL DEFAULT 0
    )""",
    "CREATE INDEX IF NOT EXISTS ix_accounts_state ON accounts(state)",
    """CREATE TABLE IF NOT EXISTS campaigns(
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        daily_budget REAL,
        lifetime_budget REAL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_campaigns_user ON campaigns(user_id)",
    """CREATE TABLE IF NOT EXISTS metric_snapshots(
        id TEXT PRIMARY KEY,
        campaign_id TEXT NOT NULL,
        captured_at TEXT NOT NULL,
        impressions REAL NOT NULL DEFAULT 0,
        clicks REAL NOT NULL DEFAULT 0,
        ctr REAL,
        cpc REAL,
        spend REAL NOT NULL DEFAULT 0,
        frequency REAL,
        reach REAL NOT NULL DEFAULT 0
    )""",
    "CREATE INDEX IF NOT EXISTS ix_snapshots_campaign ON metric_snapshots(campaign_id, captured_at)",
    """CREATE TABLE IF NOT EXISTS user_thresholds(
        user_id TEXT PRIMARY KEY,
        overrides TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS user_preferences(
        user_id TEXT PRIMARY KEY,
        phone TEXT,
        report_windows TEXT,
        alerts_enabled INTEGER NOT NULL DEFAULT 1
    )""",
    """CREATE TABLE IF NOT EXISTS alerts(
        id TEXT PRIMARY KEY,
        campaign_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        severity TEXT NOT NULL,
        message TEXT NOT NULL,
        observed REAL,
        limit_value REAL,
        created_at TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TEXT,
        resolved_by TEXT
    )""",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_alerts_outstanding ON alerts(campaign_id, kind) WHERE resolved = 0",
    "CREATE INDEX IF NOT EXISTS ix_alerts_user ON alerts(user_id, resolved)",
    """CREATE TABLE IF NOT EXISTS notification_sessions(
        phone TEXT PRIMARY KEY,
        first_contact_at TEXT NOT NULL,
        last_inbound_at TEXT NOT NULL,
        message_count INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1,
        opted_out INTEGER NOT NULL DEFAULT 0,
        first_message TEXT NOT NULL DEFAULT ''
    )""",
    """CREATE TABLE IF NOT EXISTS dispatch_attempts(
        id TEXT PRIMARY KEY,
        subject_type TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        channel TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        outcome TEXT NOT NULL,
        recipient TEXT,
        reason TEXT,
        provider_code INTEGER,
        message_id TEXT,
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_attempts_subject ON dispatch_attempts(subject_type, subject_id)",
    """CREATE TABLE IF NOT EXISTS reports(
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        report_window TEXT NOT NULL,
        content TEXT NOT NULL,
        summary TEXT NOT NULL,
        recommendations TEXT,
        should_send_alert INTEGER NOT NULL DEFAULT 0,
        campaign_count INTEGER NOT NULL DEFAULT 0,
        total_spend REAL NOT NULL DEFAULT 0,
        generated_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS job_runs(
        id TEXT PRIMARY KEY,
        job_name TEXT NOT NULL,
        status TEXT NOT NULL,
        counts TEXT,
        error_message TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT NOT NULL
    )""",
]


class Store:
    """Relational store for accounts, alerts, sessions and the dispatch log.

    Works on any SQLAlchemy URL; a bare path is treated as a SQLite file.
    Every write touches a single row.
    """

    def __init__(self, url: str):
        if "://" not in url:
            os.makedirs(os.path.dirname(url) or ".", exist_ok=True)
            url = f"sqlite:///{url}"
        self.url = url
        connect_args: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.eng: Engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        self._cb: defaultdict = defaultdict(lambda: {"n": 0, "open_until": 0.0})
        self._init_db()

    def close(self) -> None:
        self.eng.dispose()

    def _init_db(self) -> None:
        with self.eng.begin() as c:
            if self.url.startswith("sqlite"):
                c.exec_driver_sql("PRAGMA journal_mode=WAL;")
                c.exec_driver_sql("PRAGMA busy_timeout=30000;")
            for stmt in _SCHEMA:
                c.exec_driver_sql(stmt)

    # ---------------- Accounts ----------------
    @staticmethod
    def _account(row: Any) -> Account:
        m = getattr(row, "_mapping", row)
        return Account(
            id=m["id"],
            user_id=m["user_id"],
            external_account_id=m["external_account_id"],
            access_token=m["access_token"],
            token_expires_at=_dt(m["token_expires_at"]),
            name=m["name"] or "",
            state=AccountState(m["state"]),
            last_probed_at=_dt(m["last_probed_at"]),
            consecutive_failures=float(m["consecutive_failures"] or 0.0),
        )

    @_retry_sql()
    def upsert_account(self, account: Account) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO accounts(id, user_id, external_account_id, access_token, token_expires_at,
                                     name, state, last_probed_at, consecutive_failures)
                VALUES(:id, :user_id, :ext, :token, :exp, :name, :state, :probed, :fails)
                ON CONFLICT(id) DO UPDATE SET
                    user_id=excluded.user_id,
                    external_account_id=excluded.external_account_id,
                    access_token=excluded.access_token,
                    token_expires_at=excluded.token_expires_at,
                    name=excluded.name,
                    state=excluded.state,
                    last_probed_at=excluded.last_probed_at,
                    consecutive_failures=excluded.consecutive_failures
            """), {
                "id": account.id,
                "user_id": account.user_id,
                "ext": account.external_account_id,
                "token": account.access_token,
                "exp": iso(account.token_expires_at),
                "name": account.name,
                "state": account.state.value,
                "probed": iso(account.last_probed_at),
                "fails": account.consecutive_failures,
            })

    @_retry_sql()
    def get_account(self, account_id: str) -> Optional[Account]:
        with self.eng.begin() as c:
            row = c.execute(text("SELECT * FROM accounts WHERE id=:id"), {"id": account_id}).fetchone()
        return self._account(row) if row else None

    @_retry_sql()
    def get_accounts_by_state(self, state: AccountState) -> List[Account]:
        with self.eng.begin() as c:
            rows = c.execute(
                text("SELECT * FROM accounts WHERE state=:s ORDER BY id"), {"s": state.value}
            ).fetchall()
        return [self._account(r) for r in rows]

    @_retry_sql()
    def update_account_state(
        self,
        account_id: str,
        state: AccountState,
        consecutive_failures: Optional[float] = None,
        last_probed_at: Optional[datetime] = None,
    ) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                UPDATE accounts SET
                    state=:state,
                    consecutive_failures=COALESCE(:fails, consecutive_failures),
                    last_probed_at=COALESCE(:probed, last_probed_at)
                WHERE id=:id
            """), {
                "id": account_id,
                "state": state.value,
                "fails": consecutive_failures,
                "probed": iso(last_probed_at),
            })

    @_retry_sql()
    def reauthorize_account(self, account_id: str, access_token: str, expires_at: Optional[datetime] = None) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                UPDATE accounts SET access_token=:token, token_expires_at=:exp,
                    state='active', consecutive_failures=0
                WHERE id=:id
            """), {"id": account_id, "token": access_token, "exp": iso(expires_at)})

    # ---------------- Campaigns & metrics ----------------
    @staticmethod
    def _campaign(row: Any) -> Campaign:
        m = getattr(row, "_mapping", row)
        return Campaign(
            id=m["id"],
            account_id=m["account_id"],
            user_id=m["user_id"],
            name=m["name"],
            status=m["status"],
            daily_budget=m["daily_budget"],
            lifetime_budget=m["lifetime_budget"],
        )

    @_retry_sql()
    def upsert_campaign(self, campaign: Campaign) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO campaigns(id, account_id, user_id, name, status, daily_budget, lifetime_budget)
                VALUES(:id, :account_id, :user_id, :name, :status, :daily, :lifetime)
                ON CONFLICT(id) DO UPDATE SET
                    account_id=excluded.account_id, user_id=excluded.user_id, name=excluded.name,
                    status=excluded.status, daily_budget=excluded.daily_budget,
                    lifetime_budget=excluded.lifetime_budget
            """), {
                "id": campaign.id,
                "account_id": campaign.account_id,
                "user_id": campaign.user_id,
                "name": campaign.name,
                "status": campaign.status,
                "daily": campaign.daily_budget,
                "lifetime": campaign.lifetime_budget,
            })

    @_retry_sql()
    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self.eng.begin() as c:
            row = c.execute(text("SELECT * FROM campaigns WHERE id=:id"), {"id": campaign_id}).fetchone()
        return self._campaign(row) if row else None

    @_retry_sql()
    def get_campaigns_for_user(self, user_id: str) -> List[Campaign]:
        with self.eng.begin() as c:
            rows = c.execute(
                text("SELECT * FROM campaigns WHERE user_id=:u ORDER BY id"), {"u": user_id}
            ).fetchall()
        return [self._campaign(r) for r in rows]

    @_retry_sql()
    def list_evaluable_campaigns(self) -> List[Campaign]:
        """Live campaigns whose account has not been revoked."""
        statuses = ", ".join(f"'{s}'" for s in LIVE_CAMPAIGN_STATUSES)
        with self.eng.begin() as c:
            rows = c.execute(text(f"""
                SELECT c.* FROM campaigns c JOIN accounts a ON a.id = c.account_id
                WHERE a.state != 'revoked' AND UPPER(c.status) IN ({statuses})
                ORDER BY c.id
            """)).fetchall()
        return [self._campaign(r) for r in rows]

    @_retry_sql()
    def add_snapshot(self, snapshot: MetricSnapshot) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO metric_snapshots(id, campaign_id, captured_at, impressions, clicks,
                                             ctr, cpc, spend, frequency, reach)
                VALUES(:id, :cid, :at, :impr, :clicks, :ctr, :cpc, :spend, :freq, :reach)
            """), {
                "id": str(uuid.uuid4()),
                "cid": snapshot.campaign_id,
                "at": iso(snapshot.captured_at),
                "impr": snapshot.impressions,
                "clicks": snapshot.clicks,
                "ctr": snapshot.ctr,
                "cpc": snapshot.cpc,
                "spend": snapshot.spend,
                "freq": snapshot.frequency,
                "reach": snapshot.reach,
            })

    @_retry_sql()
    def get_latest_snapshot(self, campaign_id: str) -> Optional[MetricSnapshot]:
        with self.eng.begin() as c:
            row = c.execute(text("""
                SELECT * FROM metric_snapshots WHERE campaign_id=:cid
                ORDER BY captured_at DESC LIMIT 1
            """), {"cid": campaign_id}).fetchone()
        return self._snapshot(row) if row else None

    @staticmethod
    def _snapshot(row: Any) -> MetricSnapshot:
        m = getattr(row, "_mapping", row)
        return MetricSnapshot(
            campaign_id=m["campaign_id"],
            captured_at=_dt(m["captured_at"]),
            impressions=m["impressions"] or 0.0,
            clicks=m["clicks"] or 0.0,
            ctr=m["ctr"],
            cpc=m["cpc"],
            spend=m["spend"] or 0.0,
            frequency=m["frequency"],
            reach=m["reach"] or 0.0,
        )

    # ---------------- Users ----------------
    @_retry_sql()
    def get_threshold_overrides(self, user_id: str) -> Dict[str, Any]:
        with self.eng.begin() as c:
            row = c.execute(
                text("SELECT overrides FROM user_thresholds WHERE user_id=:u"), {"u": user_id}
            ).fetchone()
        return (_from_json(row[0]) if row else None) or {}

    @_retry_sql()
    def set_threshold_overrides(self, user_id: str, overrides: Dict[str, Any]) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO user_thresholds(user_id, overrides) VALUES(:u, :o)
                ON CONFLICT(user_id) DO UPDATE SET overrides=excluded.overrides
            """), {"u": user_id, "o": _to_json(overrides)})

    @staticmethod
    def _prefs(row: Any) -> UserPreferences:
        m = getattr(row, "_mapping", row)
        windows = _from_json(m["report_windows"])
        prefs = UserPreferences(user_id=m["user_id"], phone=m["phone"], alerts_enabled=bool(m["alerts_enabled"]))
        if windows is not None:
            prefs.report_windows = [ReportWindow(w) for w in windows]
        return prefs

    @_retry_sql()
    def get_user_preferences(self, user_id: str) -> Optional[UserPreferences]:
        with self.eng.begin() as c:
            row = c.execute(
                text("SELECT * FROM user_preferences WHERE user_id=:u"), {"u": user_id}
            ).fetchone()
        return self._prefs(row) if row else None

    @_retry_sql()
    def set_user_preferences(self, prefs: UserPreferences) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO user_preferences(user_id, phone, report_windows, alerts_enabled)
                VALUES(:u, :phone, :windows, :enabled)
                ON CONFLICT(user_id) DO UPDATE SET phone=excluded.phone,
                    report_windows=excluded.report_windows, alerts_enabled=excluded.alerts_enabled
            """), {
                "u": prefs.user_id,
                "phone": prefs.phone,
                "windows": _to_json([w.value for w in prefs.report_windows]),
                "enabled": int(prefs.alerts_enabled),
            })

    @_retry_sql()
    def get_users_for_report(self, window: ReportWindow) -> List[UserPreferences]:
        with self.eng.begin() as c:
            rows = c.execute(text("SELECT * FROM user_preferences ORDER BY user_id")).fetchall()
        return [p for p in (self._prefs(r) for r in rows) if window in p.report_windows]

    # ---------------- Alerts ----------------
    @staticmethod
    def _alert(row: Any) -> Alert:
        m = getattr(row, "_mapping", row)
        return Alert(
            id=m["id"],
            campaign_id=m["campaign_id"],
            user_id=m["user_id"],
            kind=m["kind"],
            severity=Severity(m["severity"]),
            message=m["message"],
            created_at=_dt(m["created_at"]),
            observed=m["observed"],
            limit=m["limit_value"],
            resolved=bool(m["resolved"]),
            resolved_at=_dt(m["resolved_at"]),
            resolved_by=m["resolved_by"],
        )

    @_retry_sql()
    def find_unresolved_alert(self, campaign_id: str, kind: str) -> Optional[Alert]:
        with self.eng.begin() as c:
            row = c.execute(text("""
                SELECT * FROM alerts WHERE campaign_id=:cid AND kind=:k AND resolved=0
            """), {"cid": campaign_id, "k": kind}).fetchone()
        return self._alert(row) if row else None

    @_retry_sql()
    def insert_alert_unless_outstanding(self, alert: Alert) -> Tuple[Alert, bool]:
        """Insert ``alert`` unless an unresolved one exists for (campaign, kind).

        Returns the stored alert and whether it was created. The partial unique
        index settles races between concurrent evaluators.
        """
        try:
            with self.eng.begin() as c:
                row = c.execute(text("""
                    SELECT * FROM alerts WHERE campaign_id=:cid AND kind=:k AND resolved=0
                """), {"cid": alert.campaign_id, "k": alert.kind}).fetchone()
                if row:
                    return self._alert(row), False
                c.execute(text("""
                    INSERT INTO alerts(id, campaign_id, user_id, kind, severity, message, observed,
                                       limit_value, created_at, resolved)
                    VALUES(:id, :cid, :uid, :k, :sev, :msg, :obs, :lim, :at, 0)
                """), {
                    "id": alert.id,
                    "cid": alert.campaign_id,
                    "uid": alert.user_id,
                    "k": alert.kind,
                    "sev": alert.severity.value,
                    "msg": alert.message,
                    "obs": alert.observed,
                    "lim": alert.limit,
                    "at": iso(alert.created_at),
                })
            return alert, True
        except IntegrityError:
            existing = self.find_unresolved_alert(alert.campaign_id, alert.kind)
            if existing is None:
                raise
            return existing, False

    @_retry_sql()
    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self.eng.begin() as c:
            row = c.execute(text("SELECT * FROM alerts WHERE id=:id"), {"id": alert_id}).fetchone()
        return self._alert(row) if row else None

    @_retry_sql()
    def mark_alert_resolved(self, alert_id: str, resolved_by: str, resolved_at: datetime) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                UPDATE alerts SET resolved=1, resolved_at=:at, resolved_by=:by
                WHERE id=:id AND resolved=0
            """), {"id": alert_id, "at": iso(resolved_at), "by": resolved_by})

    @_retry_sql()
    def list_alerts(self, user_id: str, unresolved_only: bool = False) -> List[Alert]:
        sql = "SELECT * FROM alerts WHERE user_id=:u"
        if unresolved_only:
            sql += " AND resolved=0"
        sql += " ORDER BY created_at DESC"
        with self.eng.begin() as c:
            rows = c.execute(text(sql), {"u": user_id}).fetchall()
        return [self._alert(r) for r in rows]

    @_retry_sql()
    def list_undispatched_alerts(self) -> List[Alert]:
        with self.eng.begin() as c:
            rows = c.execute(text("""
                SELECT a.* FROM alerts a
                WHERE a.resolved=0 AND NOT EXISTS (
                    SELECT 1 FROM dispatch_attempts d
                    WHERE d.subject_type='alert' AND d.subject_id=a.id
                )
                ORDER BY a.created_at
            """)).fetchall()
        return [self._alert(r) for r in rows]

    # ---------------- Sessions ----------------
    @_retry_sql()
    def get_session(self, phone: str) -> Optional[NotificationSession]:
        with self.eng.begin() as c:
            row = c.execute(
                text("SELECT * FROM notification_sessions WHERE phone=:p"), {"p": phone}
            ).fetchone()
        return self._session(row) if row else None

    @staticmethod
    def _session(row: Any) -> NotificationSession:
        m = getattr(row, "_mapping", row)
        return NotificationSession(
            phone=m["phone"],
            first_contact_at=_dt(m["first_contact_at"]),
            last_inbound_at=_dt(m["last_inbound_at"]),
            message_count=int(m["message_count"] or 0),
            active=bool(m["active"]),
            opted_out=bool(m["opted_out"]),
            first_message=m["first_message"] or "",
        )

    @_retry_sql()
    def upsert_session(self, session: NotificationSession) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO notification_sessions(phone, first_contact_at, last_inbound_at,
                                                  message_count, active, opted_out, first_message)
                VALUES(:p, :first, :last, :n, :active, :opted_out, :msg)
                ON CONFLICT(phone) DO UPDATE SET
                    last_inbound_at=excluded.last_inbound_at,
                    message_count=excluded.message_count,
                    active=excluded.active,
                    opted_out=excluded.opted_out
            """), {
                "p": session.phone,
                "first": iso(session.first_contact_at),
                "last": iso(session.last_inbound_at),
                "n": session.message_count,
                "active": int(session.active),
                "opted_out": int(session.opted_out),
                "msg": session.first_message,
            })

    # ---------------- Dispatch log ----------------
    @_retry_sql()
    def add_dispatch_attempt(self, attempt: DispatchAttempt) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO dispatch_attempts(id, subject_type, subject_id, channel, attempt_number,
                                              outcome, recipient, reason, provider_code, message_id, created_at)
                VALUES(:id, :st, :sid, :ch, :n, :outcome, :rcpt, :reason, :code, :mid, :at)
            """), {
                "id": str(uuid.uuid4()),
                "st": attempt.subject_type,
                "sid": attempt.subject_id,
                "ch": attempt.channel,
                "n": attempt.attempt_number,
                "outcome": attempt.outcome.value,
                "rcpt": attempt.recipient,
                "reason": attempt.reason,
                "code": attempt.provider_code,
                "mid": attempt.message_id,
                "at": iso(attempt.created_at),
            })

    @_retry_sql()
    def list_dispatch_attempts(self, subject_type: Optional[str] = None,
                               subject_id: Optional[str] = None) -> List[DispatchAttempt]:
        sql = "SELECT * FROM dispatch_attempts WHERE 1=1"
        params: Dict[str, Any] = {}
        if subject_type:
            sql += " AND subject_type=:st"
            params["st"] = subject_type
        if subject_id:
            sql += " AND subject_id=:sid"
            params["sid"] = subject_id
        sql += " ORDER BY created_at, attempt_number"
        with self.eng.begin() as c:
            rows = c.execute(text(sql), params).fetchall()
        return [self._attempt(r) for r in rows]

    @staticmethod
    def _attempt(row: Any) -> DispatchAttempt:
        m = getattr(row, "_mapping", row)
        return DispatchAttempt(
            subject_type=m["subject_type"],
            subject_id=m["subject_id"],
            channel=m["channel"],
            attempt_number=int(m["attempt_number"]),
            outcome=DispatchOutcome(m["outcome"]),
            created_at=_dt(m["created_at"]),
            recipient=m["recipient"],
            reason=m["reason"],
            provider_code=m["provider_code"],
            message_id=m["message_id"],
        )

    # ---------------- Reports & job log ----------------
    @_retry_sql()
    def insert_report(self, report: Report) -> str:
        report_id = report.id or str(uuid.uuid4())
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO reports(id, user_id, report_window, content, summary, recommendations,
                                    should_send_alert, campaign_count, total_spend, generated_at)
                VALUES(:id, :u, :w, :content, :summary, :recs, :send, :count, :spend, :at)
            """), {
                "id": report_id,
                "u": report.user_id,
                "w": report.window.value,
                "content": report.content,
                "summary": report.summary,
                "recs": _to_json(list(report.recommendations)),
                "send": int(report.should_send_alert),
                "count": report.campaign_count,
                "spend": report.total_spend,
                "at": iso(report.generated_at),
            })
        return report_id

    @_retry_sql()
    def list_reports(self, user_id: str) -> List[Report]:
        with self.eng.begin() as c:
            rows = c.execute(
                text("SELECT * FROM reports WHERE user_id=:u ORDER BY generated_at"), {"u": user_id}
            ).fetchall()
        return [self._report(r) for r in rows]

    @staticmethod
    def _report(row: Any) -> Report:
        m = getattr(row, "_mapping", row)
        return Report(
            id=m["id"],
            user_id=m["user_id"],
            window=ReportWindow(m["report_window"]),
            content=m["content"],
            summary=m["summary"],
            recommendations=_from_json(m["recommendations"]) or [],
            should_send_alert=bool(m["should_send_alert"]),
            campaign_count=int(m["campaign_count"] or 0),
            total_spend=float(m["total_spend"] or 0.0),
            generated_at=_dt(m["generated_at"]),
        )

    @_retry_sql()
    def record_job_run(
        self,
        job_name: str,
        status: str,
        counts: Optional[Dict[str, Any]],
        error_message: Optional[str],
        started_at: datetime,
        completed_at: datetime,
    ) -> None:
        with self.eng.begin() as c:
            c.execute(text("""
                INSERT INTO job_runs(id, job_name, status, counts, error_message, started_at, completed_at)
                VALUES(:id, :job, :status, :counts, :err, :start, :end)
            """), {
                "id": str(uuid.uuid4()),
                "job": job_name,
                "status": status,
                "counts": _to_json(counts),
                "err": error_message,
                "start": iso(started_at),
                "end": iso(completed_at),
            })

    @_retry_sql()
    def list_job_runs(self, job_name: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM job_runs"
        params: Dict[str, Any] = {}
        if job_name:
            sql += " WHERE job_name=:job"
            params["job"] = job_name
        sql += " ORDER BY started_at"
        with self.eng.begin() as c:
            rows = c.execute(text(sql), params).fetchall()
        return [self._job_run(r) for r in rows]

    @staticmethod
    def _job_run(row: Any) -> Dict[str, Any]:
        m = getattr(row, "_mapping", row)
        return {
            "job_name": m["job_name"],
            "status": m["status"],
            "counts": _from_json(m["counts"]) or {},
            "error_message": m["error_message"],
            "started_at": _dt(m["started_at"]),
            "completed_at": _dt(m["completed_at"]),
        }
