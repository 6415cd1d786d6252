from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from ..models import NotificationSession
from ..utils import Clock, RealClock, ensure_utc, mask_phone, normalize_phone

logger = logging.getLogger(__name__)

SESSION_WINDOW = timedelta(hours=24)
OPT_OUT_KEYWORDS = ("stop", "unsubscribe")


class SessionState(Enum):
    UNKNOWN = "unknown"
    SUBSCRIBED = "subscribed"
    SESSION_EXPIRED = "session_expired"


class SessionTracker:
    """WhatsApp customer service window per recipient.

    Free-form messages may only be sent within ``window`` of the recipient's
    last inbound message. Session records are created by inbound messages only;
    the dispatcher reads them.
    """

    def __init__(self, store: Any, clock: Optional[Clock] = None, window: timedelta = SESSION_WINDOW) -> None:
        self.store = store
        self.clock = clock or RealClock()
        self.window = window

    def record_inbound(self, phone: str, message: str = "", at: Optional[datetime] = None) -> NotificationSession:
        key = normalize_phone(phone)
        now = ensure_utc(at) if at else self.clock.now_utc()
        session = self.store.get_session(key)
        if session is None:
            session = NotificationSession(
                phone=key,
                first_contact_at=now,
                last_inbound_at=now,
                message_count=1,
                active=True,
                first_message=(message or "")[:500],
            )
            logger.info(f"New WhatsApp subscriber {mask_phone(key)}")
        else:
            session.last_inbound_at = max(ensure_utc(session.last_inbound_at), now)
            session.message_count += 1
            session.active = True
            session.opted_out = False
        if (message or "").strip().lower() in OPT_OUT_KEYWORDS:
            session.opted_out = True
            logger.info(f"Recipient {mask_phone(key)} opted out")
        self.store.upsert_session(session)
        return session

    def opt_out(self, phone: str) -> None:
        key = normalize_phone(phone)
        session = self.store.get_session(key)
        if session is None:
            return
        session.opted_out = True
        self.store.upsert_session(session)

    def is_opted_out(self, phone: str) -> bool:
        session = self.store.get_session(normalize_phone(phone))
        return bool(session and session.opted_out)

    def can_send_freeform(self, phone: str, at: Optional[datetime] = None) -> bool:
        session = self.store.get_session(normalize_phone(phone))
        if session is None:
            return False
        now = ensure_utc(at) if at else self.clock.now_utc()
        return now - ensure_utc(session.last_inbound_at) <= self.window

    def state(self, phone: str, at: Optional[datetime] = None) -> SessionState:
        session = self.store.get_session(normalize_phone(phone))
        if session is None:
            return SessionState.UNKNOWN
        if self.can_send_freeform(phone, at):
            return SessionState.SUBSCRIBED
        return SessionState.SESSION_EXPIRED

    def expires_at(self, phone: str) -> Optional[datetime]:
        session = self.store.get_session(normalize_phone(phone))
        if session is None:
            return None
        return ensure_utc(session.last_inbound_at) + self.window
