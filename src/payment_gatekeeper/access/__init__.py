"""Access layer - gated channel membership reconciliation."""

from payment_gatekeeper.access.reconciler import (
    GRANT_JOB,
    REVOKE_JOB,
    AccessReconciler,
    ChannelReconciliation,
    ReconciliationOutcome,
    ReconciliationResult,
)

__all__ = [
    "GRANT_JOB",
    "REVOKE_JOB",
    "AccessReconciler",
    "ChannelReconciliation",
    "ReconciliationOutcome",
    "ReconciliationResult",
]
