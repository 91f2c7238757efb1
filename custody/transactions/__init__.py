"""Transaction lifecycle: limits, recipients, state machine and reconciliation."""

from .limits import KYC_LIMITS, LimitCheck, LimitPolicy, TierLimits
from .reconciler import ReconcileSummary, StatusReconciler
from .recipients import RecipientResolver, ResolvedRecipient
from .service import (
    ConfirmationHandle,
    ExecutionResult,
    TransactionPage,
    TransactionService,
    TransactionView,
)

__all__ = [
    "ConfirmationHandle",
    "ExecutionResult",
    "KYC_LIMITS",
    "LimitCheck",
    "LimitPolicy",
    "ReconcileSummary",
    "RecipientResolver",
    "ResolvedRecipient",
    "StatusReconciler",
    "TierLimits",
    "TransactionPage",
    "TransactionService",
    "TransactionView",
]
