"""
Record Engine

Record payloads, field-level verification, validation issues and review locks.
"""

from witness.engines.records.record_store import (
    EDITABLE_STATUSES,
    RecordStore,
    compute_data_hash,
    is_verified,
    quote_requirement_problems,
    unverified_publish_fields,
)
from witness.engines.records.review_lock import (
    LockStatus,
    ReviewLockService,
    ensure_not_locked,
    lock_status,
)

__all__ = [
    "EDITABLE_STATUSES",
    "LockStatus",
    "RecordStore",
    "ReviewLockService",
    "compute_data_hash",
    "ensure_not_locked",
    "is_verified",
    "lock_status",
    "quote_requirement_problems",
    "unverified_publish_fields",
]
