"""Orchestration layer - record workflow and edit-suggestion review."""

from witness.orchestration.state_machine import (
    RecordAction,
    WorkflowEngine,
    can_transition,
    valid_transitions,
)
from witness.orchestration.edit_suggestions import EditSuggestionService
from witness.kernel.models.record import RecordStatus, EditSuggestionStatus

__all__ = [
    "RecordAction",
    "WorkflowEngine",
    "can_transition",
    "valid_transitions",
    "EditSuggestionService",
    "RecordStatus",
    "EditSuggestionStatus",
]
