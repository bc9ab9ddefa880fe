"""
Append-only event log writer and reader.

Mutations record their event on the same session that performs them, so an
event exists exactly when its change was committed. Payload values are
normalized to JSON (uuids and datetimes as strings, enums by value).
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from witness.kernel.models.event_log import EventLog, EventType
from witness.logging_config import get_request_id


def _to_json(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json(item) for item in value]
    return value


class EventStore:
    """
    Usage:
        await EventStore(session).log(
            EventType.QUOTE_LINKED,
            "record",
            record.id,
            user_id=actor.id,
            payload={"quote_id": quote.id, "field_slug": slug},
        )
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        event_type: EventType,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> EventLog:
        """
        Add an event to the caller's session. Nothing is flushed here.

        `user_id` is None for system events (auto-promotion, level
        recomputation after an audit).
        """
        event = EventLog(
            event_type=EventType(event_type).value,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            payload=_to_json(payload or {}),
            request_id=get_request_id(),
        )
        self.session.add(event)
        return event

    async def get_entity_history(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        event_types: Optional[Sequence[EventType]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EventLog]:
        """Events of one entity, newest first, including ones still pending in this session."""
        await self.session.flush()
        query = select(EventLog).where(
            EventLog.entity_type == entity_type,
            EventLog.entity_id == entity_id,
        )
        if event_types:
            query = query.where(EventLog.event_type.in_([EventType(e).value for e in event_types]))
        query = query.order_by(EventLog.created_at.desc()).offset(offset).limit(limit)
        return list((await self.session.scalars(query)).all())
