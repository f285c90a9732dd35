"""initial tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa


revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'devices',
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('ip', sa.String(), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('device_id'),
    )
    op.create_index('ix_devices_device_id', 'devices', ['device_id'])
    op.create_index('ix_devices_last_seen_at', 'devices', ['last_seen_at'])
    op.create_index('ix_devices_status', 'devices', ['status'])

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=False),
        sa.Column('card_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('device_id', 'user_id', name='uq_device_user'),
    )
    op.create_index('ix_users_device_id', 'users', ['device_id'])

    op.create_table(
        'access_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('user_name', sa.String(), nullable=False),
        sa.Column('card_id', sa.String(), nullable=True),
        sa.Column('granted', sa.Boolean(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_access_logs_device_id', 'access_logs', ['device_id'])
    op.create_index('ix_access_logs_timestamp', 'access_logs', ['timestamp'])
    op.create_index('ix_access_device_timestamp', 'access_logs', ['device_id', 'timestamp'])

    op.create_table(
        'system_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_system_logs_device_id', 'system_logs', ['device_id'])
    op.create_index('ix_system_logs_category', 'system_logs', ['category'])
    op.create_index('ix_system_logs_timestamp', 'system_logs', ['timestamp'])
    op.create_index('ix_system_device_timestamp', 'system_logs', ['device_id', 'timestamp'])

    op.create_table(
        'templates',
        sa.Column('template_id', sa.String(), nullable=False),
        sa.Column('data', sa.LargeBinary(), nullable=False),
        sa.Column('digest', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('template_id'),
    )
    op.create_index('ix_templates_digest', 'templates', ['digest'])


def downgrade() -> None:
    op.drop_index('ix_templates_digest', table_name='templates')
    op.drop_table('templates')
    op.drop_index('ix_system_device_timestamp', table_name='system_logs')
    op.drop_index('ix_system_logs_timestamp', table_name='system_logs')
    op.drop_index('ix_system_logs_category', table_name='system_logs')
    op.drop_index('ix_system_logs_device_id', table_name='system_logs')
    op.drop_table('system_logs')
    op.drop_index('ix_access_device_timestamp', table_name='access_logs')
    op.drop_index('ix_access_logs_timestamp', table_name='access_logs')
    op.drop_index('ix_access_logs_device_id', table_name='access_logs')
    op.drop_table('access_logs')
    op.drop_index('ix_users_device_id', table_name='users')
    op.drop_table('users')
    op.drop_index('ix_devices_status', table_name='devices')
    op.drop_index('ix_devices_last_seen_at', table_name='devices')
    op.drop_index('ix_devices_device_id', table_name='devices')
    op.drop_table('devices')
