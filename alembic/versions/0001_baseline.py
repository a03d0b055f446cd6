"""Baseline migration - tenants, form templates, invitations, responses, quotas

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
ACTIVE_STATUS = sa.text("status IN ('pending', 'sent', 'viewed')")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Tenancy
    # ==========================================================================
    op.create_table(
        'organizations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        _ts('created_at'),
    )

    op.create_table(
        'recruiters',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(50), nullable=False, server_default='recruiter'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('token_version', sa.Integer(), nullable=False, server_default='1'),
        _ts('created_at'),
    )
    op.create_index('idx_recruiters_org', 'recruiters', ['organization_id'])

    op.create_table(
        'applications',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('candidate_name', sa.String(255), nullable=False),
        sa.Column('candidate_email', sa.String(255), nullable=False),
        sa.Column('job_title', sa.String(255), nullable=True),
        _ts('created_at'),
    )
    op.create_index('idx_applications_org', 'applications', ['organization_id'])

    # ==========================================================================
    # Form templates
    # ==========================================================================
    op.create_table(
        'form_templates',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_by_user_id', sa.Uuid(), sa.ForeignKey('recruiters.id', ondelete='SET NULL'), nullable=True),
        sa.Column('updated_by_user_id', sa.Uuid(), sa.ForeignKey('recruiters.id', ondelete='SET NULL'), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('idx_form_templates_org', 'form_templates', ['organization_id'])
    op.create_index('idx_form_templates_org_published', 'form_templates', ['organization_id', 'is_published'])

    op.create_table(
        'form_fields',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('form_id', sa.Uuid(), sa.ForeignKey('form_templates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('label', sa.String(500), nullable=False),
        sa.Column('required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('options', JSON_TYPE, nullable=True),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.UniqueConstraint('form_id', 'order', name='uq_form_field_order'),
    )
    op.create_index('idx_form_fields_form', 'form_fields', ['form_id'])

    # ==========================================================================
    # Invitations
    # ==========================================================================
    op.create_table(
        'form_invitations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('application_id', sa.Uuid(), sa.ForeignKey('applications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('form_id', sa.Uuid(), sa.ForeignKey('form_templates.id', ondelete='SET NULL'), nullable=True),
        sa.Column('token', sa.String(255), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        _ts('sent_at', nullable=True),
        _ts('viewed_at', nullable=True),
        _ts('answered_at', nullable=True),
        _ts('reminder_sent_at', nullable=True),
        sa.Column('sent_by_user_id', sa.Uuid(), sa.ForeignKey('recruiters.id', ondelete='SET NULL'), nullable=True),
        sa.Column('field_snapshot', JSON_TYPE, nullable=False),
        sa.Column('custom_message', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('resent_from_id', sa.Uuid(), sa.ForeignKey('form_invitations.id', ondelete='SET NULL'), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('token', name='uq_form_invitation_token'),
    )
    op.create_index('idx_form_invitations_org', 'form_invitations', ['organization_id'])
    op.create_index('idx_form_invitations_application', 'form_invitations', ['application_id'])
    op.create_index('idx_form_invitations_status_expiry', 'form_invitations', ['status', 'expires_at'])
    op.create_index('idx_form_invitations_sender_created', 'form_invitations', ['sent_by_user_id', 'created_at'])
    # At most one active invitation per (application, form)
    op.create_index(
        'uq_form_invitations_active_pair',
        'form_invitations',
        ['application_id', 'form_id'],
        unique=True,
        postgresql_where=ACTIVE_STATUS,
        sqlite_where=ACTIVE_STATUS,
    )

    # ==========================================================================
    # Responses
    # ==========================================================================
    op.create_table(
        'form_responses',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('invitation_id', sa.Uuid(), sa.ForeignKey('form_invitations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('application_id', sa.Uuid(), sa.ForeignKey('applications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('form_id', sa.Uuid(), sa.ForeignKey('form_templates.id', ondelete='SET NULL'), nullable=True),
        _ts('submitted_at'),
        sa.UniqueConstraint('invitation_id', name='uq_form_response_invitation'),
    )
    op.create_index('idx_form_responses_org_submitted', 'form_responses', ['organization_id', 'submitted_at'])
    op.create_index('idx_form_responses_application', 'form_responses', ['application_id'])
    op.create_index('idx_form_responses_form', 'form_responses', ['form_id'])

    op.create_table(
        'form_response_answers',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('response_id', sa.Uuid(), sa.ForeignKey('form_responses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('field_id', sa.Uuid(), nullable=False),
        sa.Column('question', sa.String(500), nullable=False),
        sa.Column('field_type', sa.String(20), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('answer', sa.Text(), nullable=True),
        sa.Column('file_url', sa.String(1000), nullable=True),
        sa.UniqueConstraint('response_id', 'field_id', name='uq_form_response_answer_field'),
    )
    op.create_index('idx_form_response_answers_response', 'form_response_answers', ['response_id'])

    # ==========================================================================
    # Quotas
    # ==========================================================================
    op.create_table(
        'quota_counters',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('recruiter_id', sa.Uuid(), nullable=False),
        sa.Column('bucket_date', sa.Date(), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('used', sa.Integer(), nullable=False, server_default='0'),
        _ts('updated_at'),
        sa.UniqueConstraint('recruiter_id', 'bucket_date', 'kind', name='uq_quota_counter_bucket'),
    )


def downgrade() -> None:
    op.drop_table('quota_counters')
    op.drop_table('form_response_answers')
    op.drop_table('form_responses')
    op.drop_index('uq_form_invitations_active_pair', table_name='form_invitations')
    op.drop_table('form_invitations')
    op.drop_table('form_fields')
    op.drop_table('form_templates')
    op.drop_table('applications')
    op.drop_table('recruiters')
    op.drop_table('organizations')
