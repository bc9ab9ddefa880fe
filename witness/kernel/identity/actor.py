"""
The explicit acting identity passed into every core operation.
"""

import uuid
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Actor:
    """
    Who is performing an operation, and in what capacity.

    `role` is the actor's project role (None for users who are not members,
    e.g. independent verifiers acting on a project they do not belong to).
    """

    id: uuid.UUID
    role: Optional[str] = None
    project_id: Optional[uuid.UUID] = None
    is_verifier: bool = False

    def has_role(self, *roles: str) -> bool:
        return self.role is not None and self.role in roles
