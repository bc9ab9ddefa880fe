"""
Bearer tokens.

Users are provisioned and signed in by the external identity provider, which
signs HS256 access tokens with the secret it shares with this service. The core
only decodes them; `create_access_token` mints the same shape for tests and
operator tooling.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from witness.config import get_settings

TOKEN_TYPE = "access"


class AccessTokenPayload(BaseModel):
    sub: uuid.UUID
    exp: datetime
    iat: datetime
    jti: str
    type: str = TOKEN_TYPE

    @property
    def user_id(self) -> uuid.UUID:
        return self.sub


def create_access_token(user_id: uuid.UUID, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    issued = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {
        "sub": str(user_id),
        "iat": issued,
        "exp": issued + lifetime,
        "jti": uuid.uuid4().hex,
        "type": TOKEN_TYPE,
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def verify_access_token(token: str) -> Optional[AccessTokenPayload]:
    """
    Decode and check a bearer token.

    Returns None for a bad signature, an expired token, a token of another type
    or one whose subject is not a user id.
    """
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        payload = AccessTokenPayload.model_validate(claims)
    except (JWTError, ValidationError):
        return None
    if payload.type != TOKEN_TYPE:
        return None
    return payload
