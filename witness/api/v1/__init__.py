"""
API v1 routes.
"""

from fastapi import APIRouter

from witness.api.v1 import audits, edit_suggestions, evidence, projects, quota, records
from witness.schemas.common import ErrorResponse

# Every core error shares one body shape; document it once for all routes.
_ERRORS = {
    code: {"model": ErrorResponse}
    for code in (400, 402, 403, 404, 409, 429)
}

router = APIRouter(responses=_ERRORS)

router.include_router(projects.router, prefix="/projects", tags=["Projects"])
router.include_router(quota.router, prefix="/projects", tags=["AI Quota"])
router.include_router(records.router, tags=["Records"])
router.include_router(evidence.router, tags=["Evidence"])
router.include_router(edit_suggestions.router, tags=["Edit Suggestions"])
router.include_router(audits.router, tags=["Third-party Verification"])
