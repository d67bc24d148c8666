"""Activation of :class:`Enrollment` rows after a verified payment."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from server.models.enrollment import Enrollment, EnrollmentStatus
from server.services.errors import PersistenceError

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_ACTIVE = {"status": EnrollmentStatus.ACTIVE, "payment_verified": True}


def _new_row(student_id: str, course_id: str) -> dict:
    return {
        "id": str(uuid.uuid4()),
        "student_id": student_id,
        "course_id": course_id,
        "progress": 0,
        "enrolled_at": datetime.utcnow(),
        **_ACTIVE,
    }


async def _upsert(db: AsyncSession, insert, student_id: str, course_id: str) -> str:
    stmt = insert(Enrollment).values(**_new_row(student_id, course_id))
    stmt = stmt.on_conflict_do_update(
        index_elements=["student_id", "course_id"],
        set_=_ACTIVE,
    ).returning(Enrollment.id)
    result = await db.execute(stmt)
    return result.scalar_one()


async def _insert_or_update(db: AsyncSession, student_id: str, course_id: str) -> str:
    """Portable path for dialects without ``ON CONFLICT``.

    The insert runs in a SAVEPOINT so that losing the race on the unique
    constraint only rolls back the insert.
    """
    try:
        async with db.begin_nested():
            enrollment = Enrollment(**_new_row(student_id, course_id))
            db.add(enrollment)
        return enrollment.id
    except IntegrityError:
        pass

    await db.execute(
        update(Enrollment)
        .filter_by(student_id=student_id, course_id=course_id)
        .values(**_ACTIVE)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(Enrollment.id).filter_by(student_id=student_id, course_id=course_id)
    )
    return result.scalar_one()


async def activate_enrollment(db: AsyncSession, student_id: str, course_id: str) -> str:
    """Create or reactivate the enrollment for ``(student_id, course_id)``.

    Sets ``status='active'`` and ``payment_verified=True`` and leaves every
    other column (notably ``progress``) alone. Safe to call any number of
    times, concurrently included. Does not commit.
    """
    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    try:
        if insert is not None:
            enrollment_id = await _upsert(db, insert, student_id, course_id)
        else:
            enrollment_id = await _insert_or_update(db, student_id, course_id)
    except SQLAlchemyError as exc:
        logging.exception(
            "Failed to activate enrollment student=%s course=%s", student_id, course_id
        )
        raise PersistenceError("Could not activate enrollment") from exc

    logging.info(
        "Enrollment %s active for student=%s course=%s", enrollment_id, student_id, course_id
    )
    return enrollment_id
