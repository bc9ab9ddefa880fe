"""
Third-party Audit Engine

Independent verification requests on published records, and the
verification level derived from them.
"""

from witness.engines.audit.audit_service import AuditService, AuditItemResult, month_bounds
from witness.engines.audit.verification_level import (
    LEVEL_NAMES,
    VerificationLevelService,
    audit_passed,
    compute_verification_level,
)

__all__ = [
    "AuditService",
    "AuditItemResult",
    "month_bounds",
    "LEVEL_NAMES",
    "VerificationLevelService",
    "audit_passed",
    "compute_verification_level",
]
