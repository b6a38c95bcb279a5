"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.sql import func

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table('sync_runs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
    sa.Column('sync_type', sa.String(20), nullable=False, server_default='manual'),
    sa.Column('project_keys', JSON, nullable=False),
    sa.Column('options', JSON, nullable=False),
    sa.Column('triggered_by', sa.String(100), nullable=True),
    sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('duration_seconds', sa.Integer(), nullable=True),
    sa.Column('total_projects', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('processed_projects', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('total_issues', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('processed_issues', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('total_worklogs', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('processed_worklogs', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('total_users', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('processed_users', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('current_operation', sa.Text(), nullable=True),
    sa.Column('progress_percentage', sa.Float(), nullable=False, server_default='0'),
    sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('error_details', JSON, nullable=True),
    sa.Column('validation_results', JSON, nullable=True),
    sa.Column('completeness_score', sa.Float(), nullable=True),
    *_timestamps(),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_runs_id'), 'sync_runs', ['id'], unique=False)
    op.create_index(op.f('ix_sync_runs_status'), 'sync_runs', ['status'], unique=False)

    op.create_table('sync_logs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('sync_run_id', sa.Integer(), nullable=False),
    sa.Column('timestamp', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    sa.Column('level', sa.String(10), nullable=False),
    sa.Column('message', sa.Text(), nullable=False),
    sa.Column('context', JSON, nullable=True),
    sa.Column('entity_type', sa.String(50), nullable=True),
    sa.Column('entity_id', sa.String(100), nullable=True),
    sa.Column('operation', sa.String(100), nullable=True),
    sa.ForeignKeyConstraint(['sync_run_id'], ['sync_runs.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_logs_id'), 'sync_logs', ['id'], unique=False)
    op.create_index('ix_sync_logs_run_level', 'sync_logs', ['sync_run_id', 'level'], unique=False)

    op.create_table('sync_checkpoints',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('sync_run_id', sa.Integer(), nullable=False),
    sa.Column('project_key', sa.String(50), nullable=False),
    sa.Column('checkpoint_type', sa.String(20), nullable=False, server_default='project_sync'),
    sa.Column('status', sa.String(20), nullable=False, server_default='active'),
    sa.Column('checkpoint_data', JSON, nullable=False),
    sa.Column('version', sa.Integer(), nullable=False),
    *_timestamps(),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(['sync_run_id'], ['sync_runs.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_checkpoints_id'), 'sync_checkpoints', ['id'], unique=False)
    op.create_index('ix_sync_checkpoints_run_project', 'sync_checkpoints', ['sync_run_id', 'project_key'], unique=False)
    op.create_index('ix_sync_checkpoints_status', 'sync_checkpoints', ['status'], unique=False)

    op.create_table('project_sync_statuses',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('project_key', sa.String(50), nullable=False),
    sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('last_sync_status', sa.String(20), nullable=True),
    sa.Column('issues_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('worklogs_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('last_error', sa.Text(), nullable=True),
    sa.Column('last_validation_status', sa.String(20), nullable=True),
    sa.Column('last_completeness_score', sa.Float(), nullable=True),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_project_sync_statuses_id'), 'project_sync_statuses', ['id'], unique=False)
    op.create_index(op.f('ix_project_sync_statuses_project_key'), 'project_sync_statuses', ['project_key'], unique=True)

    op.create_table('jira_projects',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('jira_id', sa.String(50), nullable=False),
    sa.Column('project_key', sa.String(50), nullable=False),
    sa.Column('name', sa.String(255), nullable=False),
    *_timestamps(),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_jira_projects_id'), 'jira_projects', ['id'], unique=False)
    op.create_index(op.f('ix_jira_projects_jira_id'), 'jira_projects', ['jira_id'], unique=True)
    op.create_index(op.f('ix_jira_projects_project_key'), 'jira_projects', ['project_key'], unique=True)

    op.create_table('jira_users',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('account_id', sa.String(128), nullable=False),
    sa.Column('display_name', sa.String(255), nullable=False),
    sa.Column('email_address', sa.String(255), nullable=True),
    *_timestamps(),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_jira_users_id'), 'jira_users', ['id'], unique=False)
    op.create_index(op.f('ix_jira_users_account_id'), 'jira_users', ['account_id'], unique=True)

    op.create_table('jira_issues',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('jira_id', sa.String(50), nullable=False),
    sa.Column('issue_key', sa.String(50), nullable=False),
    sa.Column('jira_project_id', sa.Integer(), nullable=False),
    sa.Column('summary', sa.String(1000), nullable=False),
    sa.Column('status', sa.String(100), nullable=False),
    sa.Column('labels', JSON, nullable=False),
    sa.Column('epic_key', sa.String(50), nullable=True),
    sa.Column('assignee_user_id', sa.Integer(), nullable=True),
    sa.Column('original_estimate_seconds', sa.Integer(), nullable=True),
    sa.Column('remote_created_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('remote_updated_at', sa.DateTime(timezone=True), nullable=True),
    *_timestamps(),
    sa.ForeignKeyConstraint(['jira_project_id'], ['jira_projects.id']),
    sa.ForeignKeyConstraint(['assignee_user_id'], ['jira_users.id']),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_jira_issues_id'), 'jira_issues', ['id'], unique=False)
    op.create_index(op.f('ix_jira_issues_jira_id'), 'jira_issues', ['jira_id'], unique=True)
    op.create_index(op.f('ix_jira_issues_issue_key'), 'jira_issues', ['issue_key'], unique=True)
    op.create_index(op.f('ix_jira_issues_jira_project_id'), 'jira_issues', ['jira_project_id'], unique=False)

    op.create_table('jira_worklogs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('jira_id', sa.String(50), nullable=False),
    sa.Column('jira_issue_id', sa.Integer(), nullable=False),
    sa.Column('author_user_id', sa.Integer(), nullable=True),
    sa.Column('time_spent_seconds', sa.Integer(), nullable=False),
    sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('resource_type', sa.String(50), nullable=False, server_default='development'),
    sa.Column('remote_created_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('remote_updated_at', sa.DateTime(timezone=True), nullable=True),
    *_timestamps(),
    sa.ForeignKeyConstraint(['jira_issue_id'], ['jira_issues.id']),
    sa.ForeignKeyConstraint(['author_user_id'], ['jira_users.id']),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_jira_worklogs_id'), 'jira_worklogs', ['id'], unique=False)
    op.create_index(op.f('ix_jira_worklogs_jira_id'), 'jira_worklogs', ['jira_id'], unique=True)
    op.create_index(op.f('ix_jira_worklogs_jira_issue_id'), 'jira_worklogs', ['jira_issue_id'], unique=False)
    op.create_index('ix_jira_worklogs_natural_key', 'jira_worklogs', ['jira_issue_id', 'author_user_id', 'started_at'], unique=False)

    op.create_table('jira_settings',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('jira_host', sa.String(255), nullable=False),
    sa.Column('jira_email', sa.String(255), nullable=False),
    sa.Column('api_token', sa.Text(), nullable=False),
    sa.Column('api_version', sa.Integer(), nullable=False, server_default='3'),
    sa.Column('project_keys', JSON, nullable=False),
    *_timestamps(),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_jira_settings_id'), 'jira_settings', ['id'], unique=False)

    op.create_table('schedules',
    sa.Column('id', sa.Integer(), primary_key=True, index=True),
    sa.Column('cron', sa.String(100), nullable=False),
    sa.Column('timezone', sa.String(50), nullable=False, server_default='UTC'),
    sa.Column('concurrency', sa.String(20), nullable=False, server_default='skip'),
    sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=func.now(), nullable=False)
    )


def downgrade() -> None:
    op.drop_table('schedules')
    op.drop_table('jira_settings')
    op.drop_table('jira_worklogs')
    op.drop_table('jira_issues')
    op.drop_table('jira_users')
    op.drop_table('jira_projects')
    op.drop_table('project_sync_statuses')
    op.drop_table('sync_checkpoints')
    op.drop_table('sync_logs')
    op.drop_table('sync_runs')
