"""initial_device_sync_schema

Revision ID: b41c7e9d2a10
Revises:
Create Date: 2026-10-19 09:00:00.000000

Devices, employees, device command log, scheduled reports + run history.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = 'b41c7e9d2a10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- devices ---
    op.create_table(
        'devices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('serial', sa.String(64), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('status', sa.Enum('online', 'offline', name='devicestatus'), nullable=False),
        sa.Column('last_activity', sa.DateTime(), nullable=True),
        sa.Column('direction', sa.Enum('IN', 'OUT', 'BOTH', name='devicedirection'), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_devices'),
        sa.UniqueConstraint('serial', name='uq_devices_serial'),
    )

    # --- employees ---
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_code', sa.String(32), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('privilege', sa.Integer(), nullable=False),
        sa.Column('password', sa.String(32), nullable=True),
        sa.Column('card_number', sa.String(32), nullable=True),
        sa.Column('department_id', sa.Integer(), nullable=True),
        sa.Column('area_id', sa.Integer(), nullable=True),
        sa.Column('designation', sa.String(100), nullable=True),
        sa.Column('status', sa.Enum('active', 'resigned', name='employeestatus'), nullable=False),
        sa.Column('resigned_at', sa.DateTime(), nullable=True),
        sa.Column('resignation_reason', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_employees'),
        sa.UniqueConstraint('employee_code', name='uq_employees_employee_code'),
    )

    # --- device_commands ---
    op.create_table(
        'device_commands',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'device_serial', sa.String(64),
            sa.ForeignKey('devices.serial', ondelete='RESTRICT',
                          name='fk_device_commands_device_serial_devices'),
            nullable=False,
        ),
        sa.Column('kind', sa.String(32), nullable=True),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column(
            'status',
            sa.Enum('pending', 'success', 'failed', 'dead_letter', name='commandstatus'),
            nullable=False,
        ),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('response', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_device_commands'),
    )
    op.create_index('ix_device_commands_device_status', 'device_commands', ['device_serial', 'status'])
    op.create_index('ix_device_commands_device_created', 'device_commands', ['device_serial', 'created_at'])

    # --- scheduled_reports ---
    op.create_table(
        'scheduled_reports',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('report_type', sa.String(50), nullable=False),
        sa.Column('schedule_type', sa.Enum('daily', 'weekly', 'monthly', name='scheduletype'), nullable=False),
        sa.Column('schedule_time', sa.Time(), nullable=False),
        sa.Column('schedule_day', sa.Integer(), nullable=True),
        sa.Column('recipients', sa.JSON(), nullable=False),
        sa.Column('filters', sa.JSON(), nullable=False),
        sa.Column('format', sa.String(10), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('next_run_at', sa.DateTime(), nullable=False),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('last_run_status', sa.Enum('success', 'failed', name='runstatus'), nullable=True),
        sa.Column('running_since', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_scheduled_reports'),
    )
    op.create_index('ix_scheduled_reports_due', 'scheduled_reports', ['is_active', 'next_run_at'])

    # --- report_history ---
    op.create_table(
        'report_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'job_id', sa.Integer(),
            sa.ForeignKey('scheduled_reports.id', ondelete='SET NULL',
                          name='fk_report_history_job_id_scheduled_reports'),
            nullable=True,
        ),
        sa.Column('report_type', sa.String(50), nullable=False),
        sa.Column('recipients', sa.JSON(), nullable=False),
        sa.Column(
            'status',
            postgresql.ENUM('success', 'failed', name='runstatus', create_type=False),
            nullable=False,
        ),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_report_history'),
    )
    op.create_index('ix_report_history_job_sent', 'report_history', ['job_id', 'sent_at'])


def downgrade() -> None:
    op.drop_index('ix_report_history_job_sent', table_name='report_history')
    op.drop_table('report_history')
    op.drop_index('ix_scheduled_reports_due', table_name='scheduled_reports')
    op.drop_table('scheduled_reports')
    op.drop_index('ix_device_commands_device_created', table_name='device_commands')
    op.drop_index('ix_device_commands_device_status', table_name='device_commands')
    op.drop_table('device_commands')
    op.drop_table('employees')
    op.drop_table('devices')
    for enum_name in ('runstatus', 'scheduletype', 'commandstatus', 'employeestatus',
                      'devicedirection', 'devicestatus'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
