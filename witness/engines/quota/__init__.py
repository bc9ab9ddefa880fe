"""
Quota & Credit Governor

Multi-window AI rate limiting per user and operation, with a signed credit
ledger per project.
"""

from witness.engines.quota.governor import (
    QuotaGovernor,
    QuotaStatus,
    TierLimits,
    WINDOWS,
    evaluate_windows,
    free_tier,
)

__all__ = [
    "QuotaGovernor",
    "QuotaStatus",
    "TierLimits",
    "WINDOWS",
    "evaluate_windows",
    "free_tier",
]
