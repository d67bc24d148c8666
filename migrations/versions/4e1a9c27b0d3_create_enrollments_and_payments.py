"""create enrollments and payments

Revision ID: 4e1a9c27b0d3
Revises:
Create Date: 2026-10-19 10:12:31.418220
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4e1a9c27b0d3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'enrollments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('course_id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('payment_verified', sa.Boolean(), nullable=False),
        sa.Column('progress', sa.Numeric(5, 2), nullable=False),
        sa.Column('enrolled_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        # One enrollment per student and course; activation upserts on this.
        sa.UniqueConstraint('student_id', 'course_id', name='uq_enrollments_student_course'),
    )
    op.create_index('ix_enrollments_student_id', 'enrollments', ['student_id'])
    op.create_index('ix_enrollments_course_id', 'enrollments', ['course_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('course_id', sa.String(length=36), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('city', sa.String(length=128), nullable=True),
        sa.Column('state', sa.String(length=128), nullable=True),
        sa.Column('country', sa.String(length=128), nullable=True),
        sa.Column('postal_code', sa.String(length=32), nullable=True),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('original_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('original_currency', sa.String(length=8), nullable=False),
        sa.Column('exchange_rate', sa.Numeric(18, 6), nullable=False),
        sa.Column('rate_source', sa.String(length=16), nullable=False),
        sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('paystack_reference', sa.String(length=255), nullable=True),
        sa.Column('paystack_access_code', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('enrollment_id', sa.String(length=36), nullable=True),
        sa.ForeignKeyConstraint(['enrollment_id'], ['enrollments.id'], name='fk_payments_enrollment_id'),
    )
    op.create_index('ix_payments_student_id', 'payments', ['student_id'])
    op.create_index('ix_payments_course_id', 'payments', ['course_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_stripe_session_id', 'payments', ['stripe_session_id'])
    op.create_index('ix_payments_paystack_reference', 'payments', ['paystack_reference'])
    op.create_index('ix_payments_student_status', 'payments', ['student_id', 'status'])


def downgrade() -> None:
    op.drop_table('payments')
    op.drop_table('enrollments')
