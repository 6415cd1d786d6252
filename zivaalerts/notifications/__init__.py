"""WhatsApp session tracking and outbound dispatch."""

from .sessions import SessionState, SessionTracker
from .dispatcher import Dispatcher, DispatchPolicy, OutboundMessage, format_alert, format_report
