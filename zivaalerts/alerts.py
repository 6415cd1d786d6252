"""
Alert deduplication and lifecycle.

At most one unresolved alert exists per (campaign, kind). A candidate that
arrives while one is outstanding is dropped, whatever its severity; a new alert
of that kind can only be raised after someone resolves the old one.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter as Tally
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from prometheus_client import Counter

from .models import Alert, CandidateAlert
from .utils import Clock, RealClock

logger = logging.getLogger(__name__)

ALERTS_SUBMITTED = Counter("alerts_submitted_total", "Candidate alerts by result", ["kind", "result"])
ALERTS_RESOLVED = Counter("alerts_resolved_total", "Alerts resolved")

CREATED = "created"
DEDUPED = "deduped"


class AlertNotFound(KeyError):
    pass


@dataclass(frozen=True)
class SubmitResult:
    status: str
    alert: Alert

    @property
    def created(self) -> bool:
        return self.status == CREATED


class AlertStore:
    def __init__(self, store: Any, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or RealClock()

    def submit(self, candidate: CandidateAlert) -> SubmitResult:
        alert = Alert(
            id=str(uuid.uuid4()),
            campaign_id=candidate.campaign_id,
            user_id=candidate.user_id,
            kind=candidate.kind,
            severity=candidate.severity,
            message=candidate.message,
            created_at=self.clock.now_utc(),
            observed=candidate.observed,
            limit=candidate.limit,
        )
        stored, created = self.store.insert_alert_unless_outstanding(alert)
        status = CREATED if created else DEDUPED
        ALERTS_SUBMITTED.labels(candidate.kind, status).inc()
        if created:
            logger.info(
                f"Alert {stored.id} raised: {candidate.kind} ({candidate.severity.value}) "
                f"on campaign {candidate.campaign_id}"
            )
        else:
            logger.debug(
                f"Alert {candidate.kind} on campaign {candidate.campaign_id} deduped "
                f"against outstanding {stored.id}"
            )
        return SubmitResult(status=status, alert=stored)

    def resolve(self, alert_id: str, resolving_user: str) -> Alert:
        """Mark an alert resolved. Resolving an already-resolved alert is a no-op."""
        alert = self.store.get_alert(alert_id)
        if alert is None or alert.user_id != resolving_user:
            raise AlertNotFound(alert_id)
        if alert.resolved:
            return alert
        self.store.mark_alert_resolved(alert_id, resolving_user, self.clock.now_utc())
        ALERTS_RESOLVED.inc()
        logger.info(f"Alert {alert_id} resolved by {resolving_user}")
        return self.store.get_alert(alert_id)

    def list_alerts(self, user_id: str, unresolved_only: bool = False) -> List[Alert]:
        return self.store.list_alerts(user_id, unresolved_only=unresolved_only)

    def stats(self, user_id: str) -> Dict[str, Any]:
        alerts = self.store.list_alerts(user_id)
        open_alerts = [a for a in alerts if not a.resolved]
        return {
            "total": len(alerts),
            "unresolved": len(open_alerts),
            "resolved": len(alerts) - len(open_alerts),
            "by_severity": dict(Tally(a.severity.value for a in open_alerts)),
            "by_kind": dict(Tally(a.kind for a in open_alerts)),
        }
