from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models import Campaign, MetricSnapshot
from ..utils import ensure_utc, parse_any_datetime


def _to_float(x: Any, default: Optional[float] = 0.0) -> Optional[float]:
    try:
        if x is None:
            return default
        if isinstance(x, (int, float)):
            return float(x)
        s = str(x).strip().replace(",", "")
        if s == "":
            return default
        return float(s)
    except (TypeError, ValueError):
        return default


def _safe_div(n: Optional[float], d: Optional[float], default: Optional[float] = None) -> Optional[float]:
    if n is None or d in (None, 0):
        return default
    return n / d


def snapshot_from_row(
    campaign_id: str,
    row: Dict[str, Any],
    captured_at: Optional[datetime] = None,
    ctr_in_percent: bool = True,
) -> MetricSnapshot:
    """Build a snapshot from an insights-style row.

    CTR is stored as a fraction. It is computed from clicks/impressions when
    impressions are present; otherwise the row's ``ctr`` is used, divided by
    100 when it is in percent (the Graph insights convention).
    """
    impressions = _to_float(row.get("impressions")) or 0.0
    clicks = _to_float(row.get("clicks")) or 0.0
    spend = _to_float(row.get("spend")) or 0.0
    ctr = _safe_div(clicks, impressions)
    if ctr is None:
        raw_ctr = _to_float(row.get("ctr"), None)
        if raw_ctr is not None:
            ctr = raw_ctr / 100.0 if ctr_in_percent else raw_ctr
    cpc = _to_float(row.get("cpc"), None)
    if cpc is None:
        cpc = _safe_div(spend, clicks)
    at = captured_at
    if at is None:
        raw = row.get("captured_at") or row.get("date_stop") or row.get("updated_at")
        if not raw:
            raise ValueError(f"Metrics row for campaign {campaign_id} has no timestamp")
        at = parse_any_datetime(str(raw))
    return MetricSnapshot(
        campaign_id=campaign_id,
        captured_at=ensure_utc(at),
        impressions=impressions,
        clicks=clicks,
        ctr=ctr,
        cpc=cpc,
        spend=spend,
        frequency=_to_float(row.get("frequency"), None),
        reach=_to_float(row.get("reach")) or 0.0,
    )


def is_fresh(snapshot: Optional[MetricSnapshot], now: datetime, staleness: timedelta) -> bool:
    if snapshot is None:
        return False
    return ensure_utc(now) - ensure_utc(snapshot.captured_at) <= staleness


@dataclass
class AccountSummary:
    """Aggregated metrics for one user, the input handed to report generation."""
    user_id: str
    campaign_count: int = 0
    active_campaigns: int = 0
    spend: float = 0.0
    impressions: float = 0.0
    clicks: float = 0.0
    reach: float = 0.0
    ctr: Optional[float] = None
    cpc: Optional[float] = None
    avg_frequency: Optional[float] = None
    campaigns: Optional[List[Dict[str, Any]]] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def aggregate_snapshots(
    user_id: str,
    pairs: Iterable[Tuple[Campaign, Optional[MetricSnapshot]]],
) -> AccountSummary:
    summary = AccountSummary(user_id=user_id, campaigns=[])
    freqs: List[float] = []
    for campaign, snap in pairs:
        summary.campaign_count += 1
        if campaign.is_live:
            summary.active_campaigns += 1
        entry: Dict[str, Any] = {"id": campaign.id, "name": campaign.name, "status": campaign.status}
        if snap is not None:
            summary.spend += snap.spend
            summary.impressions += snap.impressions
            summary.clicks += snap.clicks
            summary.reach += snap.reach
            if snap.frequency is not None:
                freqs.append(snap.frequency)
            entry.update({"spend": snap.spend, "ctr": snap.ctr, "cpc": snap.cpc, "frequency": snap.frequency})
        summary.campaigns.append(entry)
    summary.ctr = _safe_div(summary.clicks, summary.impressions)
    summary.cpc = _safe_div(summary.spend, summary.clicks)
    summary.avg_frequency = (sum(freqs) / len(freqs)) if freqs else None
    return summary
