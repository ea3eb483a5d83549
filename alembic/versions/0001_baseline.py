"""Baseline migration - forms, submissions, uploads and audit events

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create form, submission, staged upload and audit tables."""

    # ==========================================================================
    # Forms
    # ==========================================================================
    op.create_table(
        'forms',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('schema_json', sa.JSON(), nullable=False),
        sa.Column('settings_json', sa.JSON()),
        sa.Column('share_link', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_forms_share_link', 'forms', ['share_link'], unique=True)

    # ==========================================================================
    # Submissions and their files
    # ==========================================================================
    op.create_table(
        'submissions',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('form_id', sa.String(36), sa.ForeignKey('forms.id', ondelete='CASCADE'), nullable=False),
        sa.Column('submission_data', sa.JSON(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ip_address', sa.String(45)),
        sa.Column('user_agent', sa.String(500)),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
    )
    op.create_index('idx_submissions_form_submitted', 'submissions', ['form_id', 'submitted_at'])
    op.create_index('ix_submissions_ip_address', 'submissions', ['ip_address'])

    op.create_table(
        'submission_files',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'submission_id', sa.String(40),
            sa.ForeignKey('submissions.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('field_id', sa.String(100), nullable=False),
        sa.Column('original_filename', sa.String(255), nullable=False),
        sa.Column('stored_filename', sa.String(255), nullable=False, unique=True),
        sa.Column('relative_path', sa.String(500), nullable=False),
        sa.Column('size_bytes', sa.Integer(), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('checksum_sha256', sa.String(64)),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_submission_files_submission_id', 'submission_files', ['submission_id'])

    # ==========================================================================
    # Staged uploads (quarantined until consumed or expired)
    # ==========================================================================
    op.create_table(
        'staged_files',
        sa.Column('temp_id', sa.String(40), primary_key=True),
        sa.Column('stored_name', sa.String(60), nullable=False),
        sa.Column('original_name', sa.String(255), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('size_bytes', sa.Integer(), nullable=False),
        sa.Column('client_ip', sa.String(45)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_staged_files_created_at', 'staged_files', ['created_at'])

    # ==========================================================================
    # Audit events
    # ==========================================================================
    op.create_table(
        'audit_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('form_id', sa.String(36)),
        sa.Column('submission_id', sa.String(40)),
        sa.Column('client_ip', sa.String(45)),
        sa.Column('user_agent', sa.String(500)),
        sa.Column('details', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_audit_event_created', 'audit_events', ['event_type', 'created_at'])
    op.create_index('idx_audit_severity_created', 'audit_events', ['severity', 'created_at'])
    op.create_index('ix_audit_events_created_at', 'audit_events', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_table('staged_files')
    op.drop_table('submission_files')
    op.drop_table('submissions')
    op.drop_table('forms')
