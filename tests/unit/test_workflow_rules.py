"""Unit tests for the transition table and role permissions."""

import uuid

import pytest

from witness.errors import PermissionDeniedError
from witness.kernel.identity.actor import Actor
from witness.kernel.permissions.permission_service import (
    Permission,
    has_permission,
    require_permission,
)
from witness.orchestration.state_machine import can_transition, valid_transitions


class TestTransitionTable:
    def test_review_stage_path(self):
        assert valid_transitions("pending_review") == ["first_review", "rejected"]
        assert valid_transitions("first_review") == ["rejected", "second_review"]

    def test_validation_stage_can_return_to_review(self):
        assert "first_review" in valid_transitions("pending_validation")
        assert valid_transitions("first_validation") == ["first_review", "rejected", "verified"]

    def test_terminal_statuses_have_no_exits(self):
        assert valid_transitions("verified") == []
        assert valid_transitions("rejected") == []

    def test_promotion_is_system_only(self):
        assert valid_transitions("second_review") == ["pending_validation", "rejected"]
        assert can_transition("owner", "second_review", "pending_validation") is False

    def test_reviewer_cannot_validate(self):
        assert can_transition("reviewer", "pending_review", "first_review") is True
        assert can_transition("reviewer", "first_validation", "verified") is False
        assert can_transition("validator", "first_validation", "verified") is True

    def test_validator_cannot_approve_review(self):
        assert can_transition("validator", "pending_review", "first_review") is False
        assert can_transition("validator", "pending_review", "rejected") is True

    def test_viewer_and_outsider(self):
        assert can_transition("viewer", "pending_review", "first_review") is False
        assert can_transition(None, "draft", "pending_review") is False
        assert can_transition("viewer", "draft", "pending_review") is True

    def test_skipping_stages_is_invalid(self):
        assert can_transition("owner", "pending_review", "verified") is False


class TestPermissions:
    def test_role_grants(self):
        assert has_permission("owner", Permission.MANAGE_PROJECT) is True
        assert has_permission("admin", Permission.MANAGE_PROJECT) is False
        assert has_permission("admin", Permission.MANAGE_CREDITS) is True
        assert has_permission("validator", Permission.REQUEST_AUDIT) is True
        assert has_permission("analyst", Permission.REQUEST_AUDIT) is False
        assert has_permission(None, Permission.VIEW) is False
        assert has_permission("ghost", Permission.VIEW) is False

    def test_require_permission_any_of(self):
        project_id = uuid.uuid4()
        actor = Actor(id=uuid.uuid4(), role="validator", project_id=project_id)
        require_permission(actor, Permission.REVIEW, Permission.VALIDATE, project_id=project_id)

    def test_role_from_another_project_grants_nothing(self):
        actor = Actor(id=uuid.uuid4(), role="owner", project_id=uuid.uuid4())
        with pytest.raises(PermissionDeniedError) as exc_info:
            require_permission(actor, Permission.VIEW, project_id=uuid.uuid4())
        assert exc_info.value.message == "Not a member of this project"

    def test_denial_names_the_permission(self):
        project_id = uuid.uuid4()
        actor = Actor(id=uuid.uuid4(), role="viewer", project_id=project_id)
        with pytest.raises(PermissionDeniedError) as exc_info:
            require_permission(actor, Permission.REVIEW, project_id=project_id)
        assert exc_info.value.details["required"] == ["review"]
        assert exc_info.value.status_code == 403
