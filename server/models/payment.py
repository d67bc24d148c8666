# server/models/payment.py
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import validates

from server.db.base_class import Base


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod:
    CARD = "card"
    MOBILE_BANK = "mobile_bank"

    ALL = (CARD, MOBILE_BANK)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Owner and target never change after insert
    student_id = Column(String(36), nullable=False, index=True)
    course_id = Column(String(36), nullable=False, index=True)

    # Buyer profile as it was at checkout time
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(64), nullable=True)
    address = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(128), nullable=True)
    country = Column(String(128), nullable=True)
    postal_code = Column(String(32), nullable=True)

    payment_method = Column(String(16), nullable=False)

    # What was actually charged (after conversion)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(8), nullable=False)

    # What the student asked to pay, kept for disputes and reconciliation
    original_amount = Column(Numeric(14, 2), nullable=False)
    original_currency = Column(String(8), nullable=False)
    exchange_rate = Column(Numeric(18, 6), nullable=False, default=1)
    rate_source = Column(String(16), nullable=False, default="identity")

    # Processor correlation ids, NULL until the processor accepted the charge
    stripe_session_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    paystack_reference = Column(String(255), nullable=True, index=True)
    paystack_access_code = Column(String(255), nullable=True)

    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    enrollment_id = Column(String(36), ForeignKey("enrollments.id"), nullable=True)

    __table_args__ = (
        Index("ix_payments_student_status", "student_id", "status"),
    )

    @validates("student_id", "course_id")
    def _immutable_once_set(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"Payment.{key} cannot be changed once set")
        return value

    @validates("payment_method")
    def _known_method(self, key, value):
        if value not in PaymentMethod.ALL:
            raise ValueError(f"Unknown payment method: {value!r}")
        return value
