"""
Core infrastructure

This package contains:
- error_handling: provider error classification and retry policy
- rate_limit_manager: process-wide send limiter
- storage: SQL persistence
- supabase_storage: Supabase persistence
- scheduler: background job scheduling
"""

from .error_handling import (
    Action, PipelineError, ProviderError, TransientProviderError, CredentialError,
    AccountPermissionError, ConfigurationError, NetworkError, SchedulerFatalError,
    classify, exception_for, RetryConfig, RetryHandler,
)
from .rate_limit_manager import RateLimitConfig, RateLimitManager
from .storage import Store

__all__ = [
    'Action', 'PipelineError', 'ProviderError', 'TransientProviderError', 'CredentialError',
    'AccountPermissionError', 'ConfigurationError', 'NetworkError', 'SchedulerFatalError',
    'classify', 'exception_for', 'RetryConfig', 'RetryHandler',
    'RateLimitConfig', 'RateLimitManager', 'Store',
]
