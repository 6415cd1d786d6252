"""Operator notifications over a Slack incoming webhook."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

import requests

from ..infrastructure.error_handling import RetryConfig, RetryHandler
from ..utils import getenv_b, getenv_f, getenv_i, truncate

logger = logging.getLogger(__name__)

SLACK_TIMEOUT = getenv_f("SLACK_TIMEOUT", 10.0)
SLACK_RETRY_MAX = getenv_i("SLACK_RETRY_MAX", 3)
SLACK_DEDUP_WINDOW_S = getenv_i("SLACK_DEDUP_WINDOW_SEC", 900)
MAX_TEXT_LEN = 38000


def _sanitize_for_dedup(s: str) -> str:
    s = re.sub(r"\s+", " ", s or "")
    s = re.sub(r"https?://\S+", "<url>", s)
    return s.strip().lower()


@dataclass
class SlackMessage:
    text: str
    severity: Literal["info", "warn", "error"] = "info"
    meta: Dict[str, Any] = field(default_factory=dict)

    def dedup_key(self) -> str:
        base = f"{self.severity}|{_sanitize_for_dedup(self.text)}"
        return hashlib.sha256(base.encode("utf-8")).hexdigest()


class SlackClient:
    def __init__(self, webhook_url: Optional[str] = None, enabled: Optional[bool] = None,
                 session: Optional[requests.Session] = None) -> None:
        self.webhook_url = webhook_url if webhook_url is not None else os.getenv("SLACK_WEBHOOK_URL", "")
        if enabled is None:
            enabled = getenv_b("SLACK_ENABLED", True)
        self.enabled = bool(self.webhook_url) and enabled
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.retry = RetryHandler(RetryConfig(max_attempts=max(1, SLACK_RETRY_MAX), initial_delay=0.4, max_delay=8.0, jitter=True))
        self._recent: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _seen_recently(self, key: str) -> bool:
        now = time.time()
        with self._lock:
            for k in [k for k, t in self._recent.items() if now - t > SLACK_DEDUP_WINDOW_S]:
                del self._recent[k]
            if key in self._recent:
                return True
            self._recent[key] = now
            return False

    def _post(self, payload: Dict[str, Any]) -> None:
        resp = self.session.post(self.webhook_url, json=payload, timeout=SLACK_TIMEOUT)
        if resp.status_code >= 500 or resp.status_code == 429:
            raise requests.HTTPError(f"Slack webhook returned {resp.status_code}", response=resp)
        if resp.status_code >= 400:
            logger.warning(f"Slack webhook rejected message: {resp.status_code} {resp.text[:200]}")

    def notify(self, msg: SlackMessage) -> bool:
        """Post a message; never raises. Returns whether it went out."""
        log = logger.error if msg.severity == "error" else logger.warning if msg.severity == "warn" else logger.info
        log(f"[operator] {msg.text}")
        if not self.enabled:
            return False
        if self._seen_recently(msg.dedup_key()):
            return False
        try:
            self.retry.execute(
                self._post,
                {"text": truncate(msg.text, MAX_TEXT_LEN)},
                retryable_exceptions=(requests.RequestException,),
            )
            return True
        except requests.RequestException as e:
            logger.error(f"Slack notification failed: {e}")
            return False


_client: Optional[SlackClient] = None
_client_lock = threading.Lock()


def client() -> SlackClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = SlackClient()
        return _client


def configure(slack_client: Optional[SlackClient]) -> None:
    global _client
    with _client_lock:
        _client = slack_client


def notify(text: str, severity: Literal["info", "warn", "error"] = "info") -> bool:
    return client().notify(SlackMessage(text=text, severity=severity))


def alert_error(error_msg: str) -> bool:
    return client().notify(SlackMessage(text=f"🚨 Alert pipeline error: {error_msg}", severity="error"))


def alert_account_revoked(account_id: str, external_id: str, reason: str) -> bool:
    text = (
        f"🔒 Ad account {external_id} ({account_id}) revoked\n"
        f"Reason: {reason}\nThe owner must reconnect Facebook to resume syncing."
    )
    return client().notify(SlackMessage(text=text, severity="warn"))


def alert_dispatch_needs_attention(subject: str, recipient: str, reason: str) -> bool:
    text = f"📵 WhatsApp delivery of {subject} to {recipient} failed permanently: {reason}"
    return client().notify(SlackMessage(text=text, severity="error"))

