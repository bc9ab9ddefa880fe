"""
Identity: bearer tokens from the identity provider and the Actor value passed
into every core operation.
"""

from witness.kernel.identity.actor import Actor
from witness.kernel.identity.jwt import AccessTokenPayload, create_access_token, verify_access_token

__all__ = ["Actor", "AccessTokenPayload", "create_access_token", "verify_access_token"]
