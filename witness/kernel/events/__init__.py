"""
Event sourcing infrastructure.

Provides append-only audit logging with immutable events.
"""

from witness.kernel.events.event_store import EventStore

__all__ = [
    "EventStore",
]
