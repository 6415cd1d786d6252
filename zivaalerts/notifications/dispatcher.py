"""
Outbound WhatsApp dispatch.

Alerts that survived deduplication and urgent reports are queued here. Each
recipient gets its own FIFO lane: only the head of a lane is ever in flight, so
a message waiting on a retry holds back later messages for the same person
while other recipients keep moving. Every try is appended to the dispatch log.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, List, Optional, Tuple, Union

from prometheus_client import Counter, Histogram

from ..infrastructure.error_handling import (
    Action,
    NetworkError,
    ProviderError,
    REENGAGEMENT_REQUIRED_CODE,
    RetryConfig,
    classify,
)
from ..infrastructure.rate_limit_manager import RateLimitManager
from ..integrations import slack
from ..models import Alert, DispatchAttempt, DispatchOutcome, Report
from ..utils import Clock, RealClock, mask_phone, normalize_phone, truncate
from .sessions import SessionTracker

logger = logging.getLogger(__name__)

DISPATCH_ATTEMPTS = Counter("dispatch_attempts_total", "Dispatch attempts by outcome", ["subject", "outcome"])
SEND_LATENCY = Histogram("dispatch_send_latency_seconds", "Messaging channel send latency")

SUBJECT_ALERT = "alert"
SUBJECT_REPORT = "report"

REASON_NO_RECIPIENT = "no-recipient"
REASON_SESSION_EXPIRED = "session-expired"
REASON_OPTED_OUT = "opted-out"
REASON_ALERTS_DISABLED = "alerts-disabled"
REASON_RETRYING = "retrying"
REASON_GAVE_UP = "gave-up"

MAX_BODY_LEN = 4096

_SEVERITY_ICON = {"high": "🔴", "medium": "🟠", "low": "🟡"}


def format_alert(alert: Alert) -> str:
    icon = _SEVERITY_ICON.get(alert.severity.value, "⚠️")
    return (
        f"⚠️ *ZivaAds Alert*\n"
        f"{icon} {alert.severity.value.upper()} · {alert.kind.replace('_', ' ')}\n"
        f"{alert.message}\n\n"
        f"Open the dashboard to review and resolve this alert."
    )


def format_report(report: Report) -> str:
    lines = [f"📊 *ZivaAds {report.window.value.capitalize()} Report*"]
    if report.summary:
        lines.append(report.summary)
    if report.content:
        lines.extend(["", report.content])
    if report.recommendations:
        lines.extend(["", "*Recommendations:*"])
        lines.extend(f"• {r}" for r in report.recommendations)
    return truncate("\n".join(lines), MAX_BODY_LEN)


@dataclass
class OutboundMessage:
    subject_type: str
    subject_id: str
    user_id: str
    recipient: str
    body: str
    not_before: datetime
    attempts: int = 0
    queued_at: Optional[datetime] = None


class _Step(Enum):
    DONE = "done"
    WAIT = "wait"


@dataclass
class _StepResult:
    step: _Step
    attempt: Optional[DispatchAttempt] = None
    delay: float = 0.0


@dataclass
class DispatchPolicy:
    max_attempts: int = 5
    backoff: RetryConfig = field(default_factory=lambda: RetryConfig(
        max_attempts=5, initial_delay=1.0, exponential_base=2.0, max_delay=300.0, jitter=False,
    ))
    rate_limit_delay: float = 5.0
    send_concurrency: int = 4
    poll_seconds: float = 1.0


class Dispatcher:
    def __init__(
        self,
        store: Any,
        channel: Any,
        sessions: SessionTracker,
        limiter: RateLimitManager,
        clock: Optional[Clock] = None,
        policy: Optional[DispatchPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.channel = channel
        self.sessions = sessions
        self.limiter = limiter
        self.clock = clock or RealClock()
        self.policy = policy or DispatchPolicy()
        self._sleep = sleep
        self._lanes: "OrderedDict[str, Deque[OutboundMessage]]" = OrderedDict()
        self._in_flight: set = set()
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, self.policy.send_concurrency), thread_name_prefix="dispatch"
        )
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------------- Queue ----------------
    def enqueue(self, item: Union[Alert, Report]) -> Optional[OutboundMessage]:
        """Queue an alert or a report for its owner's phone.

        Returns the queued message, or ``None`` when it was deferred up front
        (no recipient configured, or alerts switched off by the user).
        """
        if isinstance(item, Alert):
            subject_type, subject_id, body = SUBJECT_ALERT, item.id, format_alert(item)
        elif isinstance(item, Report):
            if not item.id:
                item.id = self.store.insert_report(item)
            subject_type, subject_id, body = SUBJECT_REPORT, item.id, format_report(item)
        else:
            raise TypeError(f"Cannot dispatch {type(item).__name__}")

        now = self.clock.now_utc()
        prefs = self.store.get_user_preferences(item.user_id)
        if subject_type == SUBJECT_ALERT and prefs is not None and not prefs.alerts_enabled:
            self._record(subject_type, subject_id, 1, DispatchOutcome.DEFERRED, now, reason=REASON_ALERTS_DISABLED)
            return None

        recipient = None
        if prefs is not None and prefs.phone:
            try:
                recipient = normalize_phone(prefs.phone)
            except ValueError:
                recipient = None
        if not recipient:
            logger.info(f"No recipient configured for user {item.user_id}; {subject_type} {subject_id} deferred")
            self._record(subject_type, subject_id, 1, DispatchOutcome.DEFERRED, now, reason=REASON_NO_RECIPIENT)
            return None

        message = OutboundMessage(
            subject_type=subject_type,
            subject_id=subject_id,
            user_id=item.user_id,
            recipient=recipient,
            body=body,
            not_before=now,
            queued_at=now,
        )
        with self._lock:
            self._lanes.setdefault(recipient, deque()).append(message)
        logger.debug(f"Queued {subject_type} {subject_id} for {mask_phone(recipient)}")
        return message

    def pending(self) -> int:
        with self._lock:
            return sum(len(lane) for lane in self._lanes.values())

    def next_due(self) -> Optional[datetime]:
        with self._lock:
            heads = [lane[0].not_before for lane in self._lanes.values() if lane]
        return min(heads) if heads else None

    # ---------------- Processing ----------------
    def process_due(self) -> List[DispatchAttempt]:
        """Run one pass: the due head of every idle lane, recipients in parallel.

        Returns the attempts logged during the pass.
        """
        now = self.clock.now_utc()
        batch: List[Tuple[str, OutboundMessage]] = []
        with self._lock:
            for recipient, lane in self._lanes.items():
                if lane and recipient not in self._in_flight and lane[0].not_before <= now:
                    self._in_flight.add(recipient)
                    batch.append((recipient, lane[0]))
        if not batch:
            return []

        futures = [(recipient, msg, self._pool.submit(self._process, msg)) for recipient, msg in batch]
        attempts: List[DispatchAttempt] = []
        for recipient, msg, fut in futures:
            try:
                result = fut.result()
            except Exception as e:
                result = self._on_unexpected_error(msg, e)
            self._settle(recipient, msg, result)
            if result.attempt is not None:
                attempts.append(result.attempt)
        return attempts

    def drain(self, wait: bool = False, max_passes: int = 1000) -> List[DispatchAttempt]:
        """Process until nothing is due. With ``wait`` also sleep through backoff delays."""
        attempts: List[DispatchAttempt] = []
        for _ in range(max_passes):
            done = self.process_due()
            attempts.extend(done)
            if done:
                continue
            due = self.next_due()
            if due is None or not wait:
                break
            delay = (due - self.clock.now_utc()).total_seconds()
            if delay > 0:
                self._sleep(delay)
        return attempts

    def _settle(self, recipient: str, msg: OutboundMessage, result: _StepResult) -> None:
        with self._lock:
            self._in_flight.discard(recipient)
            lane = self._lanes.get(recipient)
            if not lane or lane[0] is not msg:
                return
            if result.step is _Step.DONE:
                lane.popleft()
                if not lane:
                    del self._lanes[recipient]
            else:
                msg.not_before = self.clock.now_utc() + timedelta(seconds=result.delay)

    def _process(self, msg: OutboundMessage) -> _StepResult:
        now = self.clock.now_utc()
        phone = msg.recipient
        next_number = msg.attempts + 1

        if self.sessions.is_opted_out(phone):
            return _StepResult(_Step.DONE, self._record(
                msg.subject_type, msg.subject_id, next_number, DispatchOutcome.DEFERRED, now,
                recipient=phone, reason=REASON_OPTED_OUT,
            ))
        if not self.sessions.can_send_freeform(phone, now):
            logger.info(f"Session closed for {mask_phone(phone)}; {msg.subject_type} {msg.subject_id} deferred")
            return _StepResult(_Step.DONE, self._record(
                msg.subject_type, msg.subject_id, next_number, DispatchOutcome.DEFERRED, now,
                recipient=phone, reason=REASON_SESSION_EXPIRED,
            ))
        if not self.limiter.try_acquire():
            logger.debug(f"Rate limited; {msg.subject_type} {msg.subject_id} requeued")
            return _StepResult(_Step.WAIT, delay=self.policy.rate_limit_delay)

        msg.attempts = next_number
        t0 = time.perf_counter()
        try:
            message_id = self.channel.send_text(phone, msg.body)
        except (ProviderError, NetworkError) as e:
            SEND_LATENCY.observe(time.perf_counter() - t0)
            return self._on_send_error(msg, e, now)
        except Exception as e:
            # channel bug or unwrapped transport error: retry under the same cap
            SEND_LATENCY.observe(time.perf_counter() - t0)
            logger.exception(f"Channel raised unexpectedly for {msg.subject_type} {msg.subject_id}")
            return self._on_send_error(msg, NetworkError(f"{type(e).__name__}: {e}"), now)
        SEND_LATENCY.observe(time.perf_counter() - t0)
        logger.info(f"Sent {msg.subject_type} {msg.subject_id} to {mask_phone(phone)} (attempt {msg.attempts})")
        try:
            attempt = self._record(
                msg.subject_type, msg.subject_id, msg.attempts, DispatchOutcome.SENT, now,
                recipient=phone, message_id=message_id,
            )
        except Exception:
            logger.error(
                f"{msg.subject_type} {msg.subject_id} was delivered as {message_id} but the attempt "
                f"could not be recorded; it may be sent again"
            )
            raise
        return _StepResult(_Step.DONE, attempt)

    def _on_unexpected_error(self, msg: OutboundMessage, error: Exception) -> _StepResult:
        """Store failures outside the send path: keep the item unless its attempts are spent."""
        if msg.attempts < self.policy.max_attempts:
            logger.error(f"Dispatch of {msg.subject_type} {msg.subject_id} errored: {error}")
            return _StepResult(_Step.WAIT, delay=self.policy.rate_limit_delay)
        logger.error(
            f"Giving up on {msg.subject_type} {msg.subject_id} after {msg.attempts} attempts; last error: {error}"
        )
        try:
            attempt = self._record(
                msg.subject_type, msg.subject_id, msg.attempts, DispatchOutcome.FAILED, self.clock.now_utc(),
                recipient=msg.recipient, reason=REASON_GAVE_UP,
            )
        except Exception as e:
            logger.error(f"Could not record give-up for {msg.subject_type} {msg.subject_id}: {e}")
            attempt = None
        return _StepResult(_Step.DONE, attempt)

    def _on_send_error(self, msg: OutboundMessage, error: Exception, now: datetime) -> _StepResult:
        code = getattr(error, "code", None)
        phone = msg.recipient
        if code == REENGAGEMENT_REQUIRED_CODE:
            return _StepResult(_Step.DONE, self._record(
                msg.subject_type, msg.subject_id, msg.attempts, DispatchOutcome.DEFERRED, now,
                recipient=phone, reason=REASON_SESSION_EXPIRED, provider_code=code,
            ))

        action = classify(error)
        if action is Action.RETRYABLE:
            if msg.attempts < self.policy.max_attempts:
                delay = self.policy.backoff.delay_for(msg.attempts)
                logger.warning(
                    f"Send of {msg.subject_type} {msg.subject_id} failed ({error}); "
                    f"retry {msg.attempts + 1}/{self.policy.max_attempts} in {delay:.1f}s"
                )
                attempt = self._record(
                    msg.subject_type, msg.subject_id, msg.attempts, DispatchOutcome.FAILED, now,
                    recipient=phone, reason=REASON_RETRYING, provider_code=code,
                )
                return _StepResult(_Step.WAIT, attempt, delay)
            logger.error(f"Giving up on {msg.subject_type} {msg.subject_id} after {msg.attempts} attempts: {error}")
            return _StepResult(_Step.DONE, self._record(
                msg.subject_type, msg.subject_id, msg.attempts, DispatchOutcome.FAILED, now,
                recipient=phone, reason=REASON_GAVE_UP, provider_code=code,
            ))

        if action in (Action.NEEDS_REAUTH, Action.PERMISSION_DENIED):
            logger.error(f"Messaging credential problem sending {msg.subject_type} {msg.subject_id}: {error}")
            slack.alert_dispatch_needs_attention(
                f"{msg.subject_type} {msg.subject_id}", mask_phone(phone), f"{action.value}: {error}"
            )
        else:
            logger.error(f"Unclassified send failure for {msg.subject_type} {msg.subject_id}: {error}")
        return _StepResult(_Step.DONE, self._record(
            msg.subject_type, msg.subject_id, msg.attempts, DispatchOutcome.FAILED, now,
            recipient=phone, reason=action.value, provider_code=code,
        ))

    def _record(
        self,
        subject_type: str,
        subject_id: str,
        attempt_number: int,
        outcome: DispatchOutcome,
        at: datetime,
        recipient: Optional[str] = None,
        reason: Optional[str] = None,
        provider_code: Optional[int] = None,
        message_id: Optional[str] = None,
    ) -> DispatchAttempt:
        attempt = DispatchAttempt(
            subject_type=subject_type,
            subject_id=subject_id,
            channel=getattr(self.channel, "channel", "whatsapp"),
            attempt_number=attempt_number,
            outcome=outcome,
            created_at=at,
            recipient=recipient,
            reason=reason,
            provider_code=provider_code,
            message_id=message_id,
        )
        self.store.add_dispatch_attempt(attempt)
        DISPATCH_ATTEMPTS.labels(subject_type, outcome.value).inc()
        return attempt

    # ---------------- Worker ----------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="dispatcher", daemon=True)
        self._thread.start()
        logger.info("Dispatcher worker started")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info(f"Dispatcher worker stopped ({self.pending()} message(s) still queued)")

    def close(self) -> None:
        self.stop()
        self._pool.shutdown(wait=True)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.process_due()
            except Exception as e:
                logger.error(f"Dispatcher pass failed: {e}")
            self._stop.wait(self.policy.poll_seconds)
