"""baseline

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), unique=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('avatar', sa.String(), nullable=True),
        sa.Column('date_of_birth', sa.DateTime(), nullable=True),
        sa.Column('gender', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('partners', sa.JSON(), nullable=False),
        sa.Column('ex_partners', sa.JSON(), nullable=False),
        sa.Column('pending_requests', sa.JSON(), nullable=False),
    )

    # --- partner_requests ---
    op.create_table(
        'partner_requests',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('from_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('pair_key', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('message', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_partner_requests_from_to_status', 'partner_requests', ['from_user_id', 'to_user_id', 'status'])
    op.create_index('ix_partner_requests_to_status', 'partner_requests', ['to_user_id', 'status'])
    op.create_index('ix_partner_requests_status_created', 'partner_requests', ['status', 'created_at'])
    op.create_index(
        'uq_partner_requests_pending_pair', 'partner_requests', ['pair_key'],
        unique=True, postgresql_where=sa.text("status = 'pending'"),
    )

    # --- partners ---
    op.create_table(
        'partners',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('user1_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user2_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('pair_key', sa.String(), nullable=False),
        sa.Column('request_id', sa.String(32), sa.ForeignKey('partner_requests.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('restored', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_by', sa.Integer(), nullable=True),
        sa.Column('ended_reason', sa.Text(), nullable=True),
        sa.Column('data_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('restored_into_id', sa.String(32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_partners_pair', 'partners', ['pair_key'])
    op.create_index('ix_partners_user1_status', 'partners', ['user1_id', 'status'])
    op.create_index('ix_partners_user2_status', 'partners', ['user2_id', 'status'])
    op.create_index('ix_partners_status_ended', 'partners', ['status', 'ended_at'])
    op.create_index(
        'uq_partners_active_pair', 'partners', ['pair_key'],
        unique=True, postgresql_where=sa.text("status = 'active'"),
    )

    # --- breakup_requests ---
    op.create_table(
        'breakup_requests',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('from_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('pair_key', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_breakup_requests_from_status', 'breakup_requests', ['from_user_id', 'status'])
    op.create_index('ix_breakup_requests_to_status', 'breakup_requests', ['to_user_id', 'status'])
    op.create_index(
        'uq_breakup_requests_pending_pair', 'breakup_requests', ['pair_key'],
        unique=True, postgresql_where=sa.text("status = 'pending'"),
    )

    # --- partner_history ---
    op.create_table(
        'partner_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('partner_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_partner_history_user_id', 'partner_history', ['user_id'])
    op.create_index('ix_partner_history_partner_id', 'partner_history', ['partner_id'])
    op.create_index('ix_partner_history_action', 'partner_history', ['action'])

    # --- activity_logs ---
    op.create_table(
        'activity_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('target_user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('details', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_activity_logs_user_id', 'activity_logs', ['user_id'])
    op.create_index('ix_activity_logs_target_user_id', 'activity_logs', ['target_user_id'])
    op.create_index('ix_activity_user_action_ts', 'activity_logs', ['user_id', 'action', 'timestamp'])
    op.create_index('ix_activity_action_ts', 'activity_logs', ['action', 'timestamp'])
    op.create_index('ix_activity_severity_ts', 'activity_logs', ['severity', 'timestamp'])
    op.create_index('ix_activity_expires_at', 'activity_logs', ['expires_at'])

    # --- notifications ---
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_notifications_user_read', 'notifications', ['user_id', 'is_read'])
    op.create_index('ix_notifications_created', 'notifications', ['created_at'])

    # --- push_subscriptions ---
    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subscription_json', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_push_subscriptions_user_id', 'push_subscriptions', ['user_id'])


def downgrade() -> None:
    op.drop_table('push_subscriptions')
    op.drop_table('notifications')
    op.drop_table('activity_logs')
    op.drop_table('partner_history')
    op.drop_table('breakup_requests')
    op.drop_table('partners')
    op.drop_table('partner_requests')
    op.drop_table('users')
