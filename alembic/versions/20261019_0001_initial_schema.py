"""Initial schema - Witness Ledger verification core

Revision ID: 0001
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), unique=True, nullable=False, index=True),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, default=True),
        sa.Column('ai_tier', sa.String(50), nullable=False, server_default='free'),
        sa.Column('is_verifier', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verifier_max_concurrent', sa.Integer(), nullable=False, server_default='5'),
        *_timestamps(),
    )

    # Projects and membership
    op.create_table(
        'projects',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('slug', sa.String(100), unique=True, nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('owner_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('require_different_validator', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('audit_quota_monthly', sa.Integer(), nullable=False, server_default='5'),
        *_timestamps(),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'project_members',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('role', sa.String(50), nullable=False, server_default='viewer'),
        sa.Column('invited_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('can_request_verification', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('verification_quota_override', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'user_id', name='uq_project_members_project_user'),
    )

    # Schema registry
    op.create_table(
        'record_types',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('name_plural', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('require_quotes_for_review', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('require_sources_for_quotes', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('require_all_fields_verified', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('quote_bypass_roles', sa.JSON(), nullable=False),
        sa.Column('validation_bypass_roles', sa.JSON(), nullable=False),
        sa.Column('guest_form_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'slug', name='uq_record_types_project_slug'),
    )

    op.create_table(
        'field_groups',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_type_id', sa.Uuid(), sa.ForeignKey('record_types.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('collapsed_by_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('show_in_review_form', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint('record_type_id', 'slug', name='uq_field_groups_type_slug'),
    )

    op.create_table(
        'field_definitions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_type_id', sa.Uuid(), sa.ForeignKey('record_types.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('field_group_id', sa.Uuid(), sa.ForeignKey('field_groups.id', ondelete='SET NULL'), nullable=True),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('field_type', sa.String(50), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('is_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('requires_quote', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('requires_source_for_quote', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('require_verified_for_publish', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('show_in_guest_form', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('show_in_review_form', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('show_in_validation_form', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('show_in_public_view', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('width', sa.String(10), nullable=False, server_default='full'),
        *_timestamps(),
        sa.UniqueConstraint('record_type_id', 'slug', name='uq_field_definitions_type_slug'),
    )

    # Records
    op.create_table(
        'records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_type_id', sa.Uuid(), sa.ForeignKey('record_types.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending_review', index=True),
        sa.Column('verified_fields', sa.JSON(), nullable=False),
        sa.Column('submitted_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('guest_name', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('first_verified_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('first_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_review_notes', sa.Text(), nullable=True),
        sa.Column('second_verified_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('second_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('second_review_notes', sa.Text(), nullable=True),
        sa.Column('first_validated_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('first_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('second_validated_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('second_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('validation_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('rejected_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('review_cycle', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('validation_session', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verified_data_hash', sa.String(64), nullable=True),
        sa.Column('verification_level', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lock_expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_records_project_status', 'records', ['project_id', 'status'])

    op.create_table(
        'validation_issues',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_id', sa.Uuid(), sa.ForeignKey('records.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('session_number', sa.Integer(), nullable=False),
        sa.Column('item_type', sa.String(20), nullable=False),
        sa.Column('item_id', sa.String(255), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('created_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'edit_suggestions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_id', sa.Uuid(), sa.ForeignKey('records.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('field_slug', sa.String(100), nullable=False),
        sa.Column('current_value', sa.JSON(), nullable=True),
        sa.Column('suggested_value', sa.JSON(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
        sa.Column('suggested_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('first_reviewed_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('first_reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_review_notes', sa.Text(), nullable=True),
        sa.Column('second_reviewed_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('second_reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('second_review_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # Evidence
    op.create_table(
        'sources',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_id', sa.Uuid(), sa.ForeignKey('records.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('source_type', sa.String(20), nullable=False, server_default='other'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True, index=True),
        *_timestamps(),
    )

    op.create_table(
        'quotes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_id', sa.Uuid(), sa.ForeignKey('records.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('source_id', sa.Uuid(), sa.ForeignKey('sources.id', ondelete='SET NULL'), nullable=True),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('linked_fields', sa.JSON(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
    )

    # Third-party verification
    op.create_table(
        'verification_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('record_id', sa.Uuid(), sa.ForeignKey('records.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('scope', sa.String(10), nullable=False),
        sa.Column('items_to_verify', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('priority', sa.String(10), nullable=False, server_default='normal'),
        sa.Column('request_notes', sa.Text(), nullable=True),
        sa.Column('requested_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('assigned_to', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outcome', sa.String(10), nullable=True),
        sa.Column('verifier_notes', sa.Text(), nullable=True),
        sa.Column('issues_found', sa.JSON(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_verification_requests_record_status', 'verification_requests', ['record_id', 'status'])
    op.create_index('ix_verification_requests_project_time', 'verification_requests', ['project_id', 'requested_at'])

    op.create_table(
        'verification_results',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('request_id', sa.Uuid(), sa.ForeignKey('verification_requests.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('record_id', sa.Uuid(), sa.ForeignKey('records.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('item_type', sa.String(10), nullable=False),
        sa.Column('item_id', sa.String(255), nullable=True),
        sa.Column('verified', sa.Boolean(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('caveats', sa.Text(), nullable=True),
        sa.Column('issues', sa.JSON(), nullable=False),
        sa.Column('verified_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('unverified_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('unverified_at', sa.DateTime(timezone=True), nullable=True),
    )

    # AI quota and credits
    op.create_table(
        'rate_limit_tiers',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tier_name', sa.String(50), unique=True, nullable=False),
        sa.Column('requests_per_hour', sa.Integer(), nullable=False),
        sa.Column('requests_per_day', sa.Integer(), nullable=False),
        sa.Column('requests_per_month', sa.Integer(), nullable=False),
        sa.Column('requires_credits', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('credits_per_request', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'ai_usage',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('operation_type', sa.String(50), nullable=False),
        sa.Column('record_type_id', sa.Uuid(), nullable=True),
        sa.Column('model_name', sa.String(100), nullable=True),
        sa.Column('input_tokens', sa.Integer(), nullable=True),
        sa.Column('output_tokens', sa.Integer(), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('was_free_tier', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_ai_usage_user_op_time', 'ai_usage', ['user_id', 'operation_type', 'created_at'])

    op.create_table(
        'project_credits',
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_purchased', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_used', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('transaction_type', sa.String(30), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('ai_usage_id', sa.Uuid(), sa.ForeignKey('ai_usage.id'), nullable=True),
        sa.Column('created_by', sa.Uuid(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    # Append-only audit trail
    op.create_table(
        'event_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False, index=True),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('user_id', sa.Uuid(), nullable=True, index=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('request_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, index=True),
    )
    op.create_index('ix_event_logs_entity', 'event_logs', ['entity_type', 'entity_id'])
    op.create_index('ix_event_logs_user_time', 'event_logs', ['user_id', 'created_at'])
    op.create_index('ix_event_logs_type_time', 'event_logs', ['event_type', 'created_at'])


def downgrade() -> None:
    op.drop_table('event_logs')
    op.drop_table('credit_transactions')
    op.drop_table('project_credits')
    op.drop_table('ai_usage')
    op.drop_table('rate_limit_tiers')
    op.drop_table('verification_results')
    op.drop_table('verification_requests')
    op.drop_table('quotes')
    op.drop_table('sources')
    op.drop_table('edit_suggestions')
    op.drop_table('validation_issues')
    op.drop_table('records')
    op.drop_table('field_definitions')
    op.drop_table('field_groups')
    op.drop_table('record_types')
    op.drop_table('project_members')
    op.drop_table('projects')
    op.drop_table('users')
