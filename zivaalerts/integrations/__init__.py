"""
External service integrations

This package contains:
- meta_client: Graph API credential probe
- whatsapp: WhatsApp Cloud API text channel
- report_generator: OpenAI narrative reports
- slack: operator notifications
"""

from .meta_client import ClientConfig, GraphProbeClient
from .whatsapp import WhatsAppClient, WhatsAppConfig
from .report_generator import OpenAIReportGenerator
from .slack import (
    SlackClient, SlackMessage, notify, alert_error, alert_account_revoked,
    alert_dispatch_needs_attention,
)

__all__ = [
    'ClientConfig', 'GraphProbeClient', 'WhatsAppClient', 'WhatsAppConfig', 'OpenAIReportGenerator',
    'SlackClient', 'SlackMessage', 'notify', 'alert_error', 'alert_account_revoked',
    'alert_dispatch_needs_attention',
]
