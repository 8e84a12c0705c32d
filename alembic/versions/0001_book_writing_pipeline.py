"""Book writing pipeline schema

Revision ID: book_writing_pipeline
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'book_writing_pipeline'
down_revision = None
branch_labels = None
depends_on = None

WRITING_STATUSES = (
    'idle', 'queued', 'generating_outlines', 'writing',
    'paused', 'completed', 'failed', 'incomplete',
)
JOB_STATUSES = ('pending', 'processing', 'paused', 'completed', 'failed')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),

        # Word credits
        sa.Column('monthly_word_limit', sa.Integer(), nullable=False, server_default='5000'),
        sa.Column('extra_words_balance', sa.Integer(), nullable=False, server_default='0'),

        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('is_superuser', sa.Boolean(), server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'projects',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('genre', sa.String(100), nullable=True),
        sa.Column('subgenre', sa.String(100), nullable=True),
        sa.Column('story_idea', sa.Text(), nullable=True),
        sa.Column('target_audience', sa.String(100), nullable=True),
        sa.Column('story_structure', postgresql.JSONB(), nullable=True),
        sa.Column('target_word_count', sa.Integer(), nullable=True),
        sa.Column('word_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.Enum('active', 'archived', name='projectstatus'), nullable=True),

        # Writing pipeline state
        sa.Column('writing_status', sa.Enum(*WRITING_STATUSES, name='writingstatus'),
                  nullable=False, server_default='idle'),
        sa.Column('writing_error', sa.Text(), nullable=True),
        sa.Column('writing_run_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('total_scenes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_scenes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_scenes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('writing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('writing_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='0'),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_projects_owner_id', 'projects', ['owner_id'])

    op.create_table(
        'chapters',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scene_outline', postgresql.JSONB(), nullable=True),
        sa.Column('scenes_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('word_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('writing_status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('generation_status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('writing_error', sa.Text(), nullable=True),

        # Scene claim lease
        sa.Column('claim_token', sa.String(64), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='0'),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('scenes_completed >= 0', name='ck_chapters_scenes_completed_nonneg'),
    )
    op.create_index('ix_chapters_project_id', 'chapters', ['project_id'])

    op.create_table(
        'blocks',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('chapter_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chapters.id'), nullable=False),
        sa.Column('block_type', sa.String(50), nullable=False, server_default='paragraph'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('scene_index', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_blocks_chapter_id', 'blocks', ['chapter_id'])

    op.create_table(
        'writing_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('chapter_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chapters.id'), nullable=False),
        sa.Column('job_type', sa.Enum('write_scene', name='jobtype'), nullable=False),
        sa.Column('scene_index', sa.Integer(), nullable=False),
        sa.Column('scene_outline', postgresql.JSONB(), nullable=True),
        sa.Column('status', sa.Enum(*JOB_STATUSES, name='jobstatus'), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('locked_by', sa.String(64), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_writing_jobs_project_id', 'writing_jobs', ['project_id'])

    op.create_table(
        'user_usage',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('month', sa.String(7), nullable=False),
        sa.Column('words_generated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'month', name='uq_user_usage_user_month'),
    )
    op.create_index('ix_user_usage_user_id', 'user_usage', ['user_id'])

    op.create_table(
        'credit_debits',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=True),
        sa.Column('words', sa.Integer(), nullable=False),
        sa.Column('from_monthly', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('from_extra', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('month', sa.String(7), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_credit_debits_user_id', 'credit_debits', ['user_id'])

    op.create_table(
        'notifications',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=True),
        sa.Column('notification_type', sa.Enum('BOOK_COMPLETED', name='notificationtype'), nullable=False),
        sa.Column('channel', sa.Enum('IN_APP', 'EMAIL', name='notificationchannel'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('dedupe_key', sa.String(255), nullable=False),
        sa.Column('is_sent', sa.Boolean(), server_default=sa.false()),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
    )


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_index('ix_credit_debits_user_id', table_name='credit_debits')
    op.drop_table('credit_debits')
    op.drop_index('ix_user_usage_user_id', table_name='user_usage')
    op.drop_table('user_usage')
    op.drop_index('ix_writing_jobs_project_id', table_name='writing_jobs')
    op.drop_table('writing_jobs')
    op.drop_index('ix_blocks_chapter_id', table_name='blocks')
    op.drop_table('blocks')
    op.drop_index('ix_chapters_project_id', table_name='chapters')
    op.drop_table('chapters')
    op.drop_index('ix_projects_owner_id', table_name='projects')
    op.drop_table('projects')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    for enum_name in ('notificationchannel', 'notificationtype', 'jobstatus', 'jobtype',
                      'writingstatus', 'projectstatus'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
