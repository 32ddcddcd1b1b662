"""
Enrollment coordinator: validates and applies enroll/drop/complete across the subject
catalog, the enrollment ledger and the audit trail in one transaction, then generates
pending fees for new enrollments outside that transaction.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coaching.api.v1.billing import service as billing_service
from coaching.api.v1.subjects import service as subjects_service
from coaching.api.v1.subjects.schemas import SubjectResponse
from coaching.core.config import settings
from coaching.core.enums import EnrollmentAction, EnrollmentStatus
from coaching.core.models import EnrollmentAudit, StudentEnrollment, Subject
from coaching.core.timeutils import deadline_passed, ensure_utc, utc_now

from . import audit_service
from .schedule import find_schedule_conflict
from .schemas import (
    DropResult,
    EnrollmentAuditResponse,
    EnrollmentResponse,
    EnrollResult,
    StudentEnrollmentsResponse,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENROLLMENT_FAILED_MESSAGE = "Failed to process enrollment"
DROP_FAILED_MESSAGE = "Failed to drop subject"
COMPLETE_FAILED_MESSAGE = "Failed to complete subject"

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def _is_conflict_abort(exc: DBAPIError) -> bool:
    """
    True for aborts a rerun can resolve. asyncpg surfaces deadlocks and serialization
    failures as a plain DBAPIError, so those are recognised by the driver SQLSTATE.
    """
    if isinstance(exc, (IntegrityError, OperationalError)):
        return True
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return code in RETRYABLE_SQLSTATES


async def _run_in_transaction(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    description: str,
) -> Optional[T]:
    """
    Run work() and commit. A conflict abort (see _is_conflict_abort) rolls back
    and reruns the whole unit, up to settings.enrollment_max_attempts times. Returns None
    when every attempt failed or a non-conflict database error occurred.
    """
    attempts = settings.enrollment_max_attempts
    for attempt in range(1, attempts + 1):
        try:
            result = await work()
            await db.commit()
            return result
        except DBAPIError as exc:
            await db.rollback()
            if not _is_conflict_abort(exc):
                logger.exception("%s failed", description)
                return None
            if attempt < attempts:
                logger.warning(
                    "%s aborted on attempt %s/%s, retrying",
                    description,
                    attempt,
                    attempts,
                    exc_info=True,
                )
                continue
            logger.exception("%s failed after %s attempts", description, attempts)
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("%s failed", description)
            return None
    return None


async def _enrollments_with_status(
    db: AsyncSession,
    student_id: str,
    status: EnrollmentStatus,
) -> List[StudentEnrollment]:
    result = await db.execute(
        select(StudentEnrollment).where(
            StudentEnrollment.student_id == student_id,
            StudentEnrollment.status == status.value,
        )
    )
    return list(result.scalars().all())


async def _find_active_enrollment(
    db: AsyncSession,
    student_id: str,
    subject_id: UUID,
) -> Optional[StudentEnrollment]:
    result = await db.execute(
        select(StudentEnrollment)
        .where(
            StudentEnrollment.student_id == student_id,
            StudentEnrollment.subject_id == subject_id,
            StudentEnrollment.status == EnrollmentStatus.enrolled.value,
        )
        .with_for_update(of=StudentEnrollment)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


# --- Enroll ---
def _failed_enrollment() -> EnrollResult:
    return EnrollResult(success=False, errors=[ENROLLMENT_FAILED_MESSAGE], enrolled_subjects=[])


async def _enroll_in_transaction(
    db: AsyncSession,
    student_id: str,
    subject_ids: List[UUID],
    max_enrollment_limit: int,
    now: datetime,
) -> EnrollResult:
    errors: List[str] = []
    enrolled_subjects: List[UUID] = []

    held = await _enrollments_with_status(db, student_id, EnrollmentStatus.enrolled)
    if len(held) + len(subject_ids) > max_enrollment_limit:
        errors.append(f"Enrollment limit exceeded. Maximum {max_enrollment_limit} subjects allowed.")
        return EnrollResult(success=False, errors=errors, enrolled_subjects=enrolled_subjects)

    held_subject_ids: Set[UUID] = {e.subject_id for e in held}
    # Schedules to check against; grows as subjects in this batch are approved
    held_subjects: List[Subject] = await subjects_service.get_subjects_by_ids(db, held_subject_ids)
    completed_subject_ids: Optional[Set[str]] = None

    for subject_id in subject_ids:
        if subject_id in held_subject_ids:
            errors.append(f"Already enrolled in subject {subject_id}")
            continue

        subject = await subjects_service.get_subject_by_id(db, subject_id, for_update=True)
        if subject is None:
            errors.append(f"Subject {subject_id} not found")
            continue
        if not subject.is_active:
            errors.append(f"Subject {subject.name} is not active")
            continue
        if deadline_passed(now, subject.add_drop_deadline):
            errors.append(f"Add/drop deadline has passed for {subject.name}")
            continue
        if subject.current_enrollment >= subject.max_capacity:
            errors.append(f"Subject {subject.name} is at full capacity")
            continue

        if subject.prerequisites:
            if completed_subject_ids is None:
                completed = await _enrollments_with_status(db, student_id, EnrollmentStatus.completed)
                completed_subject_ids = {str(e.subject_id) for e in completed}
            missing = [p for p in subject.prerequisites if str(p) not in completed_subject_ids]
            if missing:
                errors.append(f"Missing prerequisites for {subject.name}: {', '.join(missing)}")
                continue

        conflicting = find_schedule_conflict(subject, held_subjects)
        if conflicting is not None:
            logger.info(
                "Schedule conflict student=%s subject=%s overlaps=%s",
                student_id,
                subject.id,
                conflicting.id,
            )
            errors.append(f"Schedule conflict between {subject.name} and {conflicting.name}")
            continue

        db.add(
            StudentEnrollment(
                student_id=student_id,
                subject_id=subject.id,
                enrollment_date=now,
                status=EnrollmentStatus.enrolled.value,
                credits=subject.credits or 0,
                created_at=now,
                updated_at=now,
            )
        )
        subject.current_enrollment = subject.current_enrollment + 1
        subject.updated_at = now
        audit_service.log_enrollment_audit(
            db,
            student_id,
            subject.id,
            EnrollmentAction.enroll,
            performed_by=student_id,
            timestamp=now,
        )

        held_subject_ids.add(subject.id)
        held_subjects.append(subject)
        enrolled_subjects.append(subject.id)

    return EnrollResult(
        success=len(enrolled_subjects) > 0,
        errors=errors,
        enrolled_subjects=enrolled_subjects,
    )


async def _generate_enrollment_fees(
    db: AsyncSession,
    student_id: str,
    subject_ids: List[UUID],
    enrolled_at: datetime,
) -> None:
    """One pending fee per newly enrolled subject that carries a monthly fee, due at enrollment time."""
    for subject_id in subject_ids:
        try:
            subject = await subjects_service.get_subject_by_id(db, subject_id)
            if subject is None or not subject.monthly_fee_amount:
                continue
            await billing_service.create_pending_fee(
                db,
                student_id,
                subject.id,
                subject.monthly_fee_amount,
                enrolled_at,
                fee_structure_name=subject.name,
            )
        except Exception:
            # The committed enrollment stands; the fee is left missing
            await db.rollback()
            logger.exception(
                "Error creating student fee student=%s subject=%s",
                student_id,
                subject_id,
            )


async def enroll_student_in_subjects(
    db: AsyncSession,
    student_id: str,
    subject_ids: List[UUID],
    max_enrollment_limit: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> EnrollResult:
    """
    Enroll a student in subjects, in input order, within one transaction.

    Subjects failing validation are skipped and reported in errors; the rest are
    committed together. Exceeding the enrollment limit rejects the whole batch.
    """
    limit = max_enrollment_limit if max_enrollment_limit is not None else settings.max_enrollment_limit
    now = ensure_utc(now) if now is not None else utc_now()
    subject_ids = list(subject_ids)

    result = await _run_in_transaction(
        db,
        lambda: _enroll_in_transaction(db, student_id, subject_ids, limit, now),
        f"Enrollment of student {student_id}",
    )
    if result is None:
        return _failed_enrollment()

    logger.info(
        "Enrollment student=%s requested=%s enrolled=%s rejected=%s",
        student_id,
        len(subject_ids),
        len(result.enrolled_subjects),
        len(result.errors),
    )
    for error in result.errors:
        logger.info("Enrollment rejected student=%s: %s", student_id, error)

    if result.enrolled_subjects:
        await _generate_enrollment_fees(db, student_id, result.enrolled_subjects, now)
    return result


# --- Drop / complete ---
async def _drop_in_transaction(
    db: AsyncSession,
    student_id: str,
    subject_id: UUID,
    reason: Optional[str],
    now: datetime,
) -> DropResult:
    enrollment = await _find_active_enrollment(db, student_id, subject_id)
    if enrollment is None:
        return DropResult(success=False, error="Enrollment not found")

    subject = await subjects_service.get_subject_by_id(db, subject_id, for_update=True)
    if subject is None:
        return DropResult(success=False, error="Subject not found")

    if deadline_passed(now, subject.add_drop_deadline):
        return DropResult(success=False, error="Add/drop deadline has passed")

    enrollment.status = EnrollmentStatus.dropped.value
    enrollment.updated_at = now
    subject.current_enrollment = max(0, subject.current_enrollment - 1)
    subject.updated_at = now
    audit_service.log_enrollment_audit(
        db,
        student_id,
        subject_id,
        EnrollmentAction.drop,
        performed_by=student_id,
        reason=reason,
        timestamp=now,
    )
    return DropResult(success=True)


async def drop_subject(
    db: AsyncSession,
    student_id: str,
    subject_id: UUID,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> DropResult:
    """Move the student's active enrollment to dropped and release the seat. Blocked after the deadline."""
    now = ensure_utc(now) if now is not None else utc_now()
    result = await _run_in_transaction(
        db,
        lambda: _drop_in_transaction(db, student_id, subject_id, reason, now),
        f"Drop of subject {subject_id} by student {student_id}",
    )
    if result is None:
        return DropResult(success=False, error=DROP_FAILED_MESSAGE)
    if result.success:
        logger.info("Dropped subject=%s student=%s reason=%s", subject_id, student_id, reason)
    else:
        logger.info("Drop rejected subject=%s student=%s: %s", subject_id, student_id, result.error)
    return result


async def _complete_in_transaction(
    db: AsyncSession,
    student_id: str,
    subject_id: UUID,
    performed_by: str,
    grade: Optional[str],
    now: datetime,
) -> DropResult:
    enrollment = await _find_active_enrollment(db, student_id, subject_id)
    if enrollment is None:
        return DropResult(success=False, error="Enrollment not found")

    subject = await subjects_service.get_subject_by_id(db, subject_id, for_update=True)
    if subject is None:
        return DropResult(success=False, error="Subject not found")

    enrollment.status = EnrollmentStatus.completed.value
    enrollment.grade = grade
    enrollment.updated_at = now
    subject.current_enrollment = max(0, subject.current_enrollment - 1)
    subject.updated_at = now
    audit_service.log_enrollment_audit(
        db,
        student_id,
        subject_id,
        EnrollmentAction.complete,
        performed_by=performed_by,
        timestamp=now,
    )
    return DropResult(success=True)


async def complete_subject(
    db: AsyncSession,
    student_id: str,
    subject_id: UUID,
    *,
    performed_by: str,
    grade: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DropResult:
    """Mark the student's active enrollment completed. Completed subjects satisfy prerequisites."""
    now = ensure_utc(now) if now is not None else utc_now()
    result = await _run_in_transaction(
        db,
        lambda: _complete_in_transaction(db, student_id, subject_id, performed_by, grade, now),
        f"Completion of subject {subject_id} by student {student_id}",
    )
    if result is None:
        return DropResult(success=False, error=COMPLETE_FAILED_MESSAGE)
    if result.success:
        logger.info("Completed subject=%s student=%s by=%s", subject_id, student_id, performed_by)
    return result


# --- Read models ---
async def get_student_enrollments(db: AsyncSession, student_id: str) -> StudentEnrollmentsResponse:
    result = await db.execute(
        select(StudentEnrollment)
        .where(
            StudentEnrollment.student_id == student_id,
            StudentEnrollment.status == EnrollmentStatus.enrolled.value,
        )
        .order_by(StudentEnrollment.enrollment_date.desc(), StudentEnrollment.created_at.desc())
    )
    enrollments = []
    total_credits = 0
    for e in result.unique().scalars().all():
        if e.subject is None:
            continue
        enrollments.append(
            EnrollmentResponse(
                id=e.id,
                student_id=e.student_id,
                subject_id=e.subject_id,
                enrollment_date=ensure_utc(e.enrollment_date),
                status=e.status,
                grade=e.grade,
                credits=e.credits,
                created_at=ensure_utc(e.created_at),
                updated_at=ensure_utc(e.updated_at),
                subject=subjects_service.to_subject_response(e.subject),
            )
        )
        total_credits += e.credits or 0
    return StudentEnrollmentsResponse(enrollments=enrollments, total_credits=total_credits)


async def get_enrollment_audit(db: AsyncSession, student_id: str) -> List[EnrollmentAuditResponse]:
    result = await db.execute(
        select(EnrollmentAudit)
        .where(EnrollmentAudit.student_id == student_id)
        .order_by(EnrollmentAudit.timestamp.desc())
    )
    return [
        EnrollmentAuditResponse(
            id=a.id,
            student_id=a.student_id,
            subject_id=a.subject_id,
            action=a.action,
            timestamp=ensure_utc(a.timestamp),
            reason=a.reason,
            performed_by=a.performed_by,
        )
        for a in result.scalars().all()
    ]


async def get_available_subjects(
    db: AsyncSession,
    student_id: str,
    *,
    now: Optional[datetime] = None,
) -> List[SubjectResponse]:
    """Active subjects the student does not hold, with a free seat and an open add/drop window."""
    now = ensure_utc(now) if now is not None else utc_now()
    held = await _enrollments_with_status(db, student_id, EnrollmentStatus.enrolled)
    held_subject_ids = {e.subject_id for e in held}
    return [
        subjects_service.to_subject_response(s)
        for s in await subjects_service.list_subject_rows(db, active_only=True)
        if s.id not in held_subject_ids
        and s.current_enrollment < s.max_capacity
        and not deadline_passed(now, s.add_drop_deadline)
    ]
