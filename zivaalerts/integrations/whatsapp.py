from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ..infrastructure.error_handling import ConfigurationError, NetworkError, ProviderError
from ..utils import getenv_f, mask_phone, normalize_phone, truncate

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v18.0"
MAX_BODY_LEN = 4096


@dataclass(frozen=True)
class WhatsAppConfig:
    phone_number_id: str
    access_token: str
    api_version: str = DEFAULT_API_VERSION
    timeout: float = 15.0

    @staticmethod
    def from_env() -> "WhatsAppConfig":
        phone_id = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
        token = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
        if not phone_id or not token:
            raise ConfigurationError("WHATSAPP_PHONE_NUMBER_ID and WHATSAPP_ACCESS_TOKEN must be set")
        version = os.getenv("WHATSAPP_API_VERSION") or DEFAULT_API_VERSION
        if not version.startswith("v"):
            version = f"v{version}"
        return WhatsAppConfig(phone_id, token, version, getenv_f("WHATSAPP_TIMEOUT", 15.0))


class WhatsAppClient:
    """WhatsApp Cloud API text channel.

    ``send_text`` returns the provider message id, raises ``ProviderError`` for
    an error answered by the API and ``NetworkError`` when no answer came back.
    """

    channel = "whatsapp"

    def __init__(self, config: WhatsAppConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self.config.api_version}/{self.config.phone_number_id}/messages"

    def _payload(self, phone: str, body: str) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(phone),
            "type": "text",
            "text": {"preview_url": False, "body": truncate(body, MAX_BODY_LEN)},
        }

    def send_text(self, phone: str, body: str) -> str:
        payload = self._payload(phone, body)
        try:
            resp = self.session.post(
                self.messages_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"WhatsApp send failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code >= 400 or (isinstance(data, dict) and data.get("error")):
            err = ProviderError.from_response(resp.status_code, data)
            logger.warning(
                f"WhatsApp API error for {mask_phone(payload['to'])}: "
                f"status={err.http_status} code={err.code} subcode={err.subcode} {err.message}"
            )
            raise err

        messages = (data or {}).get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not message_id:
            raise ProviderError("WhatsApp response carried no message id", http_status=resp.status_code)
        logger.debug(f"WhatsApp message {message_id} sent to {mask_phone(payload['to'])}")
        return message_id
