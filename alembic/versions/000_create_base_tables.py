"""Create base tables (users, shops, jobs, rules, tokens, counters, snapshots)

Revision ID: 000_create_base_tables
Revises:
Create Date: 2026-10-19

Note: users.shop_id and shops.manager_id reference each other, so the
users -> shops key is added after both tables exist.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '000_create_base_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create base tables."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('certifications', sa.JSON(), nullable=False),
        sa.Column('shop_id', sa.Integer(), nullable=True),
        sa.Column('membership_status', sa.String(20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        # Incentive totals
        sa.Column('weekly_earnings', sa.Numeric(10, 2), nullable=False),
        sa.Column('weekly_bonus_goal', sa.Numeric(10, 2), nullable=False),
        sa.Column('bonus_multiplier', sa.Numeric(4, 2), nullable=False),
        sa.Column('total_jobs_completed', sa.Integer(), nullable=False),
        sa.Column('total_time_saved', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_shop_id', 'users', ['shop_id'])

    op.create_table(
        'shops',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('code', sa.String(20), nullable=False),
        sa.Column('address', sa.String(255)),
        sa.Column('phone', sa.String(30)),
        sa.Column(
            'manager_id',
            sa.Integer(),
            sa.ForeignKey('users.id', name='fk_shops_manager_id'),
            unique=True,
            nullable=False,
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_shops_id', 'shops', ['id'])
    op.create_index('ix_shops_code', 'shops', ['code'], unique=True)

    op.create_foreign_key('fk_users_shop_id', 'users', 'shops', ['shop_id'], ['id'])

    op.create_table(
        'jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('service_order_number', sa.String(20), unique=True, nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('vehicle_make', sa.String(100)),
        sa.Column('vehicle_model', sa.String(100)),
        sa.Column('vehicle_year', sa.Integer()),
        sa.Column('vehicle_vin', sa.String(32)),
        sa.Column('required_cert', sa.String(30), nullable=False),
        sa.Column('book_time', sa.Integer(), nullable=False),
        sa.Column('actual_time', sa.Integer()),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('priority', sa.String(20), nullable=False),
        sa.Column('shop_id', sa.Integer(), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('assigned_tech_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('started_at', sa.DateTime()),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('incentive_earned', sa.Numeric(10, 2), nullable=False),
        sa.Column('time_saved', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text()),
        # Request / approval workflow
        sa.Column('assignment_type', sa.String(20), nullable=False),
        sa.Column('requested_by_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('request_status', sa.String(20), nullable=False),
        sa.Column('approved_by_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('approved_at', sa.DateTime()),
        sa.Column('rejected_reason', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_jobs_id', 'jobs', ['id'])
    op.create_index('ix_jobs_shop_id', 'jobs', ['shop_id'])
    op.create_index('ix_jobs_assigned_tech_id', 'jobs', ['assigned_tech_id'])
    op.create_index('ix_jobs_status_required_cert', 'jobs', ['status', 'required_cert'])
    op.create_index('ix_jobs_assigned_tech_status', 'jobs', ['assigned_tech_id', 'status'])

    op.create_table(
        'job_audit_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(30), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('actor_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('changes', sa.JSON()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_job_audit_log_id', 'job_audit_log', ['id'])
    op.create_index('ix_job_audit_log_job_id', 'job_audit_log', ['job_id'])
    op.create_index('ix_job_audit_log_action', 'job_audit_log', ['action'])

    op.create_table(
        'incentive_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('shop_id', sa.Integer(), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('time_saved_threshold', sa.Integer(), nullable=False),
        sa.Column('bonus_per_unit', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('applicable_certs', sa.JSON(), nullable=False),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('effective_from', sa.DateTime(), nullable=False),
        sa.Column('effective_until', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_incentive_rules_id', 'incentive_rules', ['id'])
    op.create_index('ix_incentive_rules_shop_id', 'incentive_rules', ['shop_id'])

    op.create_table(
        'capability_tokens',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('token', sa.String(64), nullable=False),
        sa.Column('subject_type', sa.String(20), nullable=False),
        sa.Column('subject_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime()),
        sa.Column('revoked_at', sa.DateTime()),
    )
    op.create_index('ix_capability_tokens_id', 'capability_tokens', ['id'])
    op.create_index('ix_capability_tokens_token', 'capability_tokens', ['token'], unique=True)
    op.create_index('ix_capability_tokens_subject', 'capability_tokens', ['subject_type', 'subject_id'])

    op.create_table(
        'counters',
        sa.Column('name', sa.String(50), primary_key=True),
        sa.Column('value', sa.Integer(), nullable=False),
    )

    op.create_table(
        'efficiency_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('week_start_date', sa.DateTime(), nullable=False),
        sa.Column('flagged_minutes', sa.Integer(), nullable=False),
        sa.Column('clocked_minutes', sa.Integer(), nullable=False),
        sa.Column('efficiency_ratio', sa.Float(), nullable=False),
        sa.Column('bonus_earned', sa.Numeric(10, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_efficiency_snapshots_id', 'efficiency_snapshots', ['id'])
    op.create_index('ix_efficiency_snapshots_user_id', 'efficiency_snapshots', ['user_id'])


def downgrade():
    """Drop base tables."""
    op.drop_table('efficiency_snapshots')
    op.drop_table('counters')
    op.drop_table('capability_tokens')
    op.drop_table('incentive_rules')
    op.drop_table('job_audit_log')
    op.drop_table('jobs')
    op.drop_constraint('fk_users_shop_id', 'users', type_='foreignkey')
    op.drop_table('shops')
    op.drop_table('users')
