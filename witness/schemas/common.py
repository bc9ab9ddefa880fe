"""
Response shapes shared by every router.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorResponse(BaseModel):
    """
    Body of every core error.

    `code` is the stable machine-readable error kind; error-specific details
    (window, limit, reset_at, missing items, ...) ride along as extra keys.
    """

    model_config = ConfigDict(extra="allow")

    detail: str
    code: str
    request_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    database: str
