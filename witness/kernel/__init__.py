"""
Stable Kernel Layer

Foundational components shared by every engine:
- Persistence models
- Immutable Event Log (all mutations logged in their own transaction)
- Identity (bearer token verification, Actor)
- Permissions (project roles and what they grant)
"""

from witness.kernel.models import (
    User,
    Project,
    ProjectMember,
    ProjectRole,
    RecordType,
    FieldDefinition,
    Record,
    RecordStatus,
    EventLog,
    EventType,
)
from witness.kernel.identity.actor import Actor

__all__ = [
    "User",
    "Project",
    "ProjectMember",
    "ProjectRole",
    "RecordType",
    "FieldDefinition",
    "Record",
    "RecordStatus",
    "EventLog",
    "EventType",
    "Actor",
]
