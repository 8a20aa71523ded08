"""Core sync orchestration package."""

from .reconciler import Delta, DeltaCounts, SyncStateReconciler
from .sync_engine import SyncEngine, SyncState, SyncSummary, describe_error

__all__ = [
    "SyncEngine",
    "SyncState",
    "SyncSummary",
    "SyncStateReconciler",
    "Delta",
    "DeltaCounts",
    "describe_error",
]
