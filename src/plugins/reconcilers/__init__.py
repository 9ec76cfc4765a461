"""
Reconciler plugins package.

Reconciler plugins own the reconciliation logic for one or more resource types
and run their own reconciliation loops.
"""

from plugins.reconcilers.base import (
    Backoff,
    DEFAULT_RETRY,
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
    retry_on_conflict,
)

__all__ = [
    "Backoff",
    "DEFAULT_RETRY",
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileResult",
    "retry_on_conflict",
]
