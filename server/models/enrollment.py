import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Numeric, String, UniqueConstraint

from server.db.base_class import Base


class EnrollmentStatus:
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DROPPED = "dropped"


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id = Column(String(36), nullable=False, index=True)
    course_id = Column(String(36), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=EnrollmentStatus.PENDING)
    payment_verified = Column(Boolean, nullable=False, default=False)
    # Owned by progress tracking; the payment flow never writes it.
    progress = Column(Numeric(5, 2), nullable=False, default=0)
    enrolled_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="uq_enrollments_student_course"),
    )
