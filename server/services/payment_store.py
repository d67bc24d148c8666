"""Persistence for :class:`Payment` rows.

Ownership is always enforced here by filtering on ``student_id``; nothing
relies on the database to hide other students' payments. Status changes are
conditional updates on ``status = 'pending'`` so a payment can never move
backwards, and write-once columns are only written while still NULL.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from server.models.payment import Payment, PaymentStatus
from server.services.errors import NotFound, PersistenceError

CORRELATION_FIELDS = (
    "stripe_session_id",
    "stripe_payment_intent_id",
    "paystack_reference",
    "paystack_access_code",
)


async def create_payment(db: AsyncSession, **fields) -> Payment:
    """Insert and commit a new ``pending`` payment."""
    payment = Payment(status=PaymentStatus.PENDING, **fields)
    db.add(payment)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logging.exception("Failed to insert payment for student %s", fields.get("student_id"))
        raise PersistenceError() from exc
    return payment


async def get_owned_payment(db: AsyncSession, payment_id: str, student_id: str) -> Payment:
    try:
        result = await db.execute(
            select(Payment).filter_by(id=payment_id, student_id=student_id)
        )
    except SQLAlchemyError as exc:
        logging.exception("Failed to load payment %s", payment_id)
        raise PersistenceError("Could not load payment") from exc
    payment = result.scalars().first()
    if payment is None:
        raise NotFound()
    return payment


async def _update(db: AsyncSession, payment_id: str, *criteria, **values) -> bool:
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, *criteria)
        .values(updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        logging.exception("Failed to update payment %s with %s", payment_id, sorted(values))
        raise PersistenceError() from exc
    return result.rowcount == 1


async def attach_processor_refs(db: AsyncSession, payment_id: str, refs: Dict[str, str]) -> None:
    """Store processor correlation ids on a payment and commit.

    Only known correlation columns are written; empty values are skipped.
    """
    values = {k: v for k, v in refs.items() if k in CORRELATION_FIELDS and v}
    if not values:
        return
    try:
        await _update(db, payment_id, **values)
        await db.commit()
    except PersistenceError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logging.exception("Failed to commit processor refs for payment %s", payment_id)
        raise PersistenceError() from exc


async def mark_completed(
    db: AsyncSession,
    payment_id: str,
    completed_at: datetime,
    extra: Optional[Dict[str, str]] = None,
) -> bool:
    """Move ``pending -> completed``. Returns False if the row was not pending.

    Does not commit; the caller commits together with enrollment activation.
    """
    values = {k: v for k, v in (extra or {}).items() if k in CORRELATION_FIELDS and v}
    return await _update(
        db,
        payment_id,
        Payment.status == PaymentStatus.PENDING,
        status=PaymentStatus.COMPLETED,
        completed_at=completed_at,
        **values,
    )


async def mark_failed(db: AsyncSession, payment_id: str) -> bool:
    """Move ``pending -> failed``. Returns False if the row was not pending."""
    return await _update(
        db,
        payment_id,
        Payment.status == PaymentStatus.PENDING,
        status=PaymentStatus.FAILED,
    )


async def link_enrollment(db: AsyncSession, payment_id: str, enrollment_id: str) -> bool:
    """Set ``enrollment_id`` if it is still empty."""
    return await _update(
        db,
        payment_id,
        Payment.enrollment_id.is_(None),
        enrollment_id=enrollment_id,
    )


async def reload(db: AsyncSession, payment: Payment) -> Payment:
    try:
        await db.refresh(payment)
    except SQLAlchemyError as exc:
        raise PersistenceError("Could not load payment") from exc
    return payment
