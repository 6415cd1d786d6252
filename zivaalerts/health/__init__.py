"""Account health subsystem."""

from .account_health import (
    AccountHealthMonitor,
    AccountStateChange,
    HealthPolicy,
    HealthRunResult,
    next_state,
)
