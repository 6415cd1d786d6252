from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ..infrastructure.error_handling import NetworkError, ProviderError
from ..models import Account

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"


@dataclass(frozen=True)
class ClientConfig:
    api_version: str = "v18.0"
    timeout: float = 20.0


def _act(account_id: str) -> str:
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class GraphProbeClient:
    """Cheap read-only Graph API call used to check that a credential still works."""

    def __init__(self, cfg: Optional[ClientConfig] = None, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg or ClientConfig()
        self.session = session or requests.Session()

    def probe(self, account: Account) -> Dict[str, Any]:
        """List at most one campaign id. Raises ``ProviderError`` or ``NetworkError``."""
        url = f"{GRAPH_BASE_URL}/{self.cfg.api_version}/{_act(account.external_account_id)}/campaigns"
        params = {"fields": "id", "limit": 1, "access_token": account.access_token}
        try:
            resp = self.session.get(url, params=params, timeout=self.cfg.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Graph probe for {account.external_account_id} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code >= 400 or (isinstance(data, dict) and data.get("error")):
            raise ProviderError.from_response(resp.status_code, data)
        if not isinstance(data, dict):
            raise NetworkError(f"Unreadable Graph response body (status {resp.status_code})")
        return data
