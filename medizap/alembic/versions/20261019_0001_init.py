"""init schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261019_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
ACTIVE_SLOT = sa.text("status IN ('pending', 'confirmed')")


def upgrade() -> None:
    op.create_table('clinics',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('website', sa.String(length=255), nullable=True),
        sa.Column('slug', sa.String(length=255), nullable=False, unique=True),
        sa.Column('subscription_plan', sa.String(length=32), nullable=False, server_default='basic'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table('departments',
        sa.Column('id', sa.String(length=16), primary_key=True),
        sa.Column('clinic_id', sa.String(length=36), sa.ForeignKey('clinics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('clinic_id', 'name', name='uq_department_clinic_name'),
    )

    op.create_table('doctors',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('clinic_id', sa.String(length=36), sa.ForeignKey('clinics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('department_id', sa.String(length=16), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('specialization', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('available_days', json_type, nullable=True),
        sa.Column('available_times', json_type, nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table('appointments',
        sa.Column('id', sa.String(length=16), primary_key=True),
        sa.Column('clinic_id', sa.String(length=36), sa.ForeignKey('clinics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('doctor_id', sa.String(length=36), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('department_id', sa.String(length=16), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('patient_name', sa.String(length=255), nullable=False),
        sa.Column('phone_number', sa.String(length=32), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('appointment_date', sa.Date(), nullable=False),
        sa.Column('appointment_time', sa.String(length=5), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint("status IN ('pending', 'confirmed', 'cancelled', 'completed')", name='ck_appointment_status'),
    )
    # one live booking per (doctor, date, time); cancelled/completed rows do not count
    op.create_index(
        'ux_appointments_active_slot', 'appointments',
        ['doctor_id', 'appointment_date', 'appointment_time'],
        unique=True, postgresql_where=ACTIVE_SLOT, sqlite_where=ACTIVE_SLOT,
    )
    op.create_index('ix_appointments_clinic_date', 'appointments', ['clinic_id', 'appointment_date'])

    op.create_table('walk_ins',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('clinic_id', sa.String(length=36), sa.ForeignKey('clinics.id', ondelete='SET NULL'), nullable=True),
        sa.Column('patient_name', sa.String(length=255), nullable=False),
        sa.Column('reference_number', sa.String(length=16), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('gender', sa.String(length=32), nullable=True),
        sa.Column('contact_number', sa.String(length=32), nullable=True),
        sa.Column('reason_for_visit', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='waiting'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table('clinic_users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('clinic_id', sa.String(length=36), sa.ForeignKey('clinics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='staff'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('clinic_id', 'user_id', name='uq_clinic_user'),
        sa.CheckConstraint("role IN ('admin', 'staff', 'doctor')", name='ck_clinic_user_role'),
    )
    op.create_index('ix_clinic_users_user', 'clinic_users', ['user_id'])

    counters = op.create_table('id_counters',
        sa.Column('name', sa.String(length=32), primary_key=True),
        sa.Column('value', sa.Integer(), nullable=False, server_default='0'),
    )
    op.bulk_insert(counters, [
        {'name': 'appointment', 'value': 0},
        {'name': 'department', 'value': 0},
        {'name': 'walkin', 'value': 0},
    ])

    op.create_table('conversation_sessions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('clinic_id', sa.String(length=36), sa.ForeignKey('clinics.id', ondelete='CASCADE'), nullable=False),
        sa.Column('step', sa.String(length=32), nullable=False, server_default='greeting'),
        sa.Column('intent', sa.String(length=32), nullable=True),
        sa.Column('collected_data', json_type, nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_activity', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table('conversation_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(length=36), sa.ForeignKey('conversation_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('clinic_id', sa.String(length=36), nullable=False),
        sa.Column('step', sa.String(length=32), nullable=False),
        sa.Column('user_input', sa.Text(), nullable=True),
        sa.Column('agent_response', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversation_logs_session', 'conversation_logs', ['session_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_conversation_logs_session', table_name='conversation_logs')
    op.drop_table('conversation_logs')
    op.drop_table('conversation_sessions')
    op.drop_table('id_counters')
    op.drop_index('ix_clinic_users_user', table_name='clinic_users')
    op.drop_table('clinic_users')
    op.drop_table('walk_ins')
    op.drop_index('ix_appointments_clinic_date', table_name='appointments')
    op.drop_index('ux_appointments_active_slot', table_name='appointments')
    op.drop_table('appointments')
    op.drop_table('doctors')
    op.drop_table('departments')
    op.drop_table('clinics')
