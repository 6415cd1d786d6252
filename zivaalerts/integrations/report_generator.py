from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from openai import OpenAI

from ..analytics.metrics import AccountSummary
from ..infrastructure.error_handling import ConfigurationError
from ..models import Report, ReportWindow

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

_SYSTEM_PROMPT = (
    "You are an advertising analyst for small businesses running Facebook ads. "
    "Given aggregated campaign metrics, reply with a JSON object with keys "
    "content (string), summary (string), recommendations (array of strings) and "
    "should_send_alert (boolean, true only when something needs attention today)."
)

_WINDOW_INTRO = {
    ReportWindow.MORNING: "This is the morning report, to start the day.",
    ReportWindow.AFTERNOON: "This is the afternoon check-in on today's delivery.",
    ReportWindow.EVENING: "This is the evening wrap-up of the day's performance.",
}


class OpenAIReportGenerator:
    """Narrative report collaborator backed by the OpenAI chat completions API.

    The narrative itself is opaque to the pipeline; only the four fields of the
    JSON answer are used.
    """

    def __init__(self, client: Optional[Any] = None, model: str = DEFAULT_MODEL) -> None:
        if client is None:
            if not os.getenv("OPENAI_API_KEY"):
                raise ConfigurationError("OPENAI_API_KEY must be set for report generation")
            client = OpenAI()
        self.client = client
        self.model = model

    def generate(self, user_id: str, window: ReportWindow, summary: AccountSummary) -> Optional[Report]:
        if summary.campaign_count == 0:
            return None
        prompt = f"{_WINDOW_INTRO[window]}\nMetrics:\n{json.dumps(summary.as_dict(), default=str)}"
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.4,
        )
        raw = completion.choices[0].message.content or "{}"
        data = json.loads(raw)
        recommendations = data.get("recommendations") or []
        if isinstance(recommendations, str):
            recommendations = [recommendations]
        return Report(
            user_id=user_id,
            window=window,
            content=str(data.get("content") or ""),
            summary=str(data.get("summary") or ""),
            recommendations=[str(r) for r in recommendations],
            should_send_alert=bool(data.get("should_send_alert", data.get("shouldSendAlert", False))),
            campaign_count=summary.campaign_count,
            total_spend=summary.spend,
        )
