"""Shared schema exports."""

from .account import AccountDeleted, AccountDeletionScheduled, DeletionReason
from .dispatch import DispatchCompleted, DispatchState
from .insights import InsightsPayload, WeightSeries

__all__ = [
    "AccountDeleted",
    "AccountDeletionScheduled",
    "DeletionReason",
    "DispatchCompleted",
    "DispatchState",
    "InsightsPayload",
    "WeightSeries",
]
