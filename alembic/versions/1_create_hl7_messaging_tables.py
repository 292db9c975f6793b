"""create hl7 messaging tables

Revision ID: 1
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1'
down_revision = None
branch_labels = None
depends_on = None


gender = sa.Enum('MALE', 'FEMALE', 'OTHER', name='gender')
visit_type = sa.Enum('ROUTINE_CHECKUP', 'ILLNESS', 'INJURY', 'EMERGENCY', 'FOLLOW_UP', 'SCREENING', name='visit_type')
hl7_environment = sa.Enum('test', 'production', name='hl7_environment')
hl7_message_type = sa.Enum('ADMIT_UPDATE', 'OBSERVATION_RESULT', name='hl7_message_type')
hl7_message_status = sa.Enum('PENDING', 'SENT', 'FAILED', name='hl7_message_status')


def upgrade():
    op.create_table(
        'schools',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_schools_id', 'schools', ['id'])

    op.create_table(
        'school_hl7_configs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=False, unique=True),
        sa.Column('sending_application', sa.String(100), nullable=True),
        sa.Column('sending_facility', sa.String(100), nullable=True),
        sa.Column('receiving_application', sa.String(100), nullable=True),
        sa.Column('receiving_facility', sa.String(100), nullable=True),
        sa.Column('hl7_version', sa.String(10), nullable=True),
        sa.Column('environment', hl7_environment, nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=True),
        sa.Column('auto_send', sa.Boolean(), nullable=True),
        sa.Column('auto_send_message_types', sa.JSON(), nullable=True),
        sa.Column('retry_attempts', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_school_hl7_configs_id', 'school_hl7_configs', ['id'])

    op.create_table(
        'students',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_number', sa.String(50), nullable=True),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('date_of_birth', sa.Date(), nullable=False),
        sa.Column('gender', gender, nullable=True),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_students_id', 'students', ['id'])
    op.create_index('idx_students_school', 'students', ['school_id'])

    op.create_table(
        'clinical_visits',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('visit_type', visit_type, nullable=False),
        sa.Column('visit_date', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('chief_complaint', sa.Text(), nullable=True),
        sa.Column('diagnosis', sa.Text(), nullable=True),
        sa.Column('treatment', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_clinical_visits_id', 'clinical_visits', ['id'])
    op.create_index('idx_visits_student_date', 'clinical_visits', ['student_id', 'visit_date'])
    op.create_index('idx_visits_school_date', 'clinical_visits', ['school_id', 'visit_date'])

    op.create_table(
        'clinical_assessments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('visit_id', sa.Integer(), sa.ForeignKey('clinical_visits.id'), nullable=False, unique=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('temperature', sa.Numeric(4, 1), nullable=True),
        sa.Column('blood_pressure_systolic', sa.Integer(), nullable=True),
        sa.Column('blood_pressure_diastolic', sa.Integer(), nullable=True),
        sa.Column('heart_rate', sa.Integer(), nullable=True),
        sa.Column('respiratory_rate', sa.Integer(), nullable=True),
        sa.Column('oxygen_saturation', sa.Integer(), nullable=True),
        sa.Column('height', sa.Numeric(5, 2), nullable=True),
        sa.Column('weight', sa.Numeric(5, 2), nullable=True),
        sa.Column('bmi', sa.Numeric(4, 2), nullable=True),
        sa.Column('right_eye', sa.String(20), nullable=True),
        sa.Column('left_eye', sa.String(20), nullable=True),
        sa.Column('right_eye_with_correction', sa.String(20), nullable=True),
        sa.Column('left_eye_with_correction', sa.String(20), nullable=True),
        sa.Column('vision_screening_result', sa.String(100), nullable=True),
        sa.Column('color_blindness', sa.String(100), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_clinical_assessments_id', 'clinical_assessments', ['id'])

    op.create_table(
        'hl7_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('message_type', hl7_message_type, nullable=False),
        sa.Column('message_control_id', sa.String(64), nullable=False),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('visit_id', sa.Integer(), sa.ForeignKey('clinical_visits.id'), nullable=True),
        sa.Column('school_id', sa.Integer(), sa.ForeignKey('schools.id'), nullable=False),
        sa.Column('message_content', sa.Text(), nullable=False),
        sa.Column('status', hl7_message_status, nullable=False, server_default='PENDING'),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_hl7_messages_id', 'hl7_messages', ['id'])
    op.create_index('ix_hl7_messages_message_control_id', 'hl7_messages', ['message_control_id'], unique=True)
    op.create_index('ix_hl7_messages_student_id', 'hl7_messages', ['student_id'])
    op.create_index('ix_hl7_messages_visit_id', 'hl7_messages', ['visit_id'])
    op.create_index('idx_hl7_messages_school_created', 'hl7_messages', ['school_id', 'created_at'])
    op.create_index('idx_hl7_messages_status_created', 'hl7_messages', ['status', 'created_at'])


def downgrade():
    op.drop_table('hl7_messages')
    op.drop_table('clinical_assessments')
    op.drop_table('clinical_visits')
    op.drop_table('students')
    op.drop_table('school_hl7_configs')
    op.drop_table('schools')
    for enum_type in (hl7_message_status, hl7_message_type, hl7_environment, visit_type, gender):
        enum_type.drop(op.get_bind(), checkfirst=True)
