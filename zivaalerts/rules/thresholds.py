from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..analytics.metrics import is_fresh
from ..models import (
    Campaign,
    CandidateAlert,
    Direction,
    MetricSnapshot,
    Severity,
    Threshold,
    ThresholdConfig,
)

logger = logging.getLogger(__name__)

HIGH_RATIO = 2.0
MEDIUM_RATIO = 1.2

# name -> (metric, default limit, direction, inclusive)
DEFAULT_THRESHOLDS: Dict[str, tuple] = {
    "low_ctr": ("ctr", 0.01, Direction.BELOW, False),
    "high_cpc": ("cpc", 5.0, Direction.ABOVE, False),
    "budget_usage": ("budget_usage_pct", 90.0, Direction.ABOVE, True),
    "frequency_cap": ("frequency", 3.0, Direction.ABOVE, False),
    "spend_limit": ("spend", 100.0, Direction.ABOVE, False),
}


def default_threshold_config(limits: Optional[Dict[str, Any]] = None) -> ThresholdConfig:
    """Built-in thresholds, with limits optionally replaced from settings."""
    thresholds = {
        name: Threshold(name=name, metric=metric, limit=limit, direction=direction, inclusive=inclusive)
        for name, (metric, limit, direction, inclusive) in DEFAULT_THRESHOLDS.items()
    }
    return ThresholdConfig(user_id=None, thresholds=thresholds).with_overrides(limits)


def metric_value(metric: str, campaign: Campaign, snapshot: MetricSnapshot) -> Optional[float]:
    if metric == "budget_usage_pct":
        budget = campaign.budget
        if not budget:
            return None
        return snapshot.spend / budget * 100.0
    return getattr(snapshot, metric, None)


def breached(value: float, threshold: Threshold) -> bool:
    if threshold.direction is Direction.BELOW:
        return value <= threshold.limit if threshold.inclusive else value < threshold.limit
    return value >= threshold.limit if threshold.inclusive else value > threshold.limit


def distance_ratio(value: float, threshold: Threshold) -> float:
    """How many times past the limit the metric sits (>= 1 once breached)."""
    if threshold.direction is Direction.BELOW:
        return math.inf if value <= 0 else threshold.limit / value
    if threshold.limit <= 0:
        return math.inf
    return value / threshold.limit


def severity_for(ratio: float) -> Severity:
    if ratio >= HIGH_RATIO:
        return Severity.HIGH
    if ratio >= MEDIUM_RATIO:
        return Severity.MEDIUM
    return Severity.LOW


def _format_value(metric: str, value: float) -> str:
    if metric == "ctr":
        return f"{value * 100:.2f}%"
    if metric == "budget_usage_pct":
        return f"{value:.1f}%"
    if metric in ("cpc", "spend"):
        return f"${value:,.2f}"
    return f"{value:.2f}"


_MESSAGES = {
    "low_ctr": 'Campaign "{name}" has low CTR: {value} (threshold {limit})',
    "high_cpc": 'Campaign "{name}" has high CPC: {value} (threshold {limit})',
    "budget_usage": 'Campaign "{name}" has used {value} of its budget (threshold {limit})',
    "frequency_cap": 'Campaign "{name}" has high frequency: {value} (threshold {limit})',
    "spend_limit": 'Campaign "{name}" has spent {value} (limit {limit})',
}


class ThresholdEvaluator:
    """Compares a campaign's latest snapshot with its owner's thresholds."""

    def __init__(self, staleness: timedelta = timedelta(hours=24)) -> None:
        self.staleness = staleness

    def evaluate(
        self,
        campaign: Campaign,
        snapshot: Optional[MetricSnapshot],
        config: ThresholdConfig,
        now: datetime,
    ) -> List[CandidateAlert]:
        if not is_fresh(snapshot, now, self.staleness):
            logger.debug(f"No fresh metrics for campaign {campaign.id}; skipping evaluation")
            return []
        candidates: List[CandidateAlert] = []
        for threshold in config.enabled():
            value = metric_value(threshold.metric, campaign, snapshot)
            if value is None or not breached(value, threshold):
                continue
            ratio = distance_ratio(value, threshold)
            template = _MESSAGES.get(threshold.name, 'Campaign "{name}": {value} breached {limit}')
            candidates.append(CandidateAlert(
                campaign_id=campaign.id,
                user_id=campaign.user_id,
                kind=threshold.name,
                severity=severity_for(ratio),
                message=template.format(
                    name=campaign.name,
                    value=_format_value(threshold.metric, value),
                    limit=_format_value(threshold.metric, threshold.limit),
                ),
                observed=value,
                limit=threshold.limit,
            ))
        return candidates
