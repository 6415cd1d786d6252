"""
Metrics parsing and aggregation

This package contains:
- metrics: snapshot parsing, freshness and per-user aggregation
"""

from .metrics import AccountSummary, aggregate_snapshots, is_fresh, snapshot_from_row

__all__ = ['AccountSummary', 'aggregate_snapshots', 'is_fresh', 'snapshot_from_row']
