"""Subject catalog: admin CRUD plus the accessors used by the enrollment coordinator."""

import logging
import uuid
from typing import Iterable, List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coaching.core.exceptions import ServiceError
from coaching.core.models import StudentEnrollment, Subject, SubjectScheduleSlot
from coaching.core.timeutils import ensure_utc

from .schemas import ScheduleSlot, ScheduleSlotResponse, SubjectCreate, SubjectResponse, SubjectUpdate

logger = logging.getLogger(__name__)


def to_subject_response(s: Subject) -> SubjectResponse:
    return SubjectResponse(
        id=s.id,
        name=s.name,
        code=s.code,
        description=s.description or "",
        credits=s.credits,
        max_capacity=s.max_capacity,
        current_enrollment=s.current_enrollment,
        prerequisites=[UUID(str(p)) for p in (s.prerequisites or [])],
        faculty=s.faculty or "",
        schedule=[ScheduleSlotResponse.model_validate(slot) for slot in s.schedule],
        is_active=s.is_active,
        add_drop_deadline=ensure_utc(s.add_drop_deadline),
        monthly_fee_amount=s.monthly_fee_amount,
        created_at=ensure_utc(s.created_at),
        updated_at=ensure_utc(s.updated_at),
    )


def _build_schedule(slots: Iterable[ScheduleSlot]) -> List[SubjectScheduleSlot]:
    out = []
    for position, slot in enumerate(slots):
        if slot.end_time <= slot.start_time:
            raise ServiceError(
                f"Schedule slot on {slot.day.value}: end time must be after start time",
                status.HTTP_400_BAD_REQUEST,
            )
        out.append(
            SubjectScheduleSlot(
                position=position,
                day=slot.day.value,
                start_time=slot.start_time,
                end_time=slot.end_time,
                room=slot.room.strip(),
            )
        )
    return out


async def _existing_with_code(
    db: AsyncSession,
    code: str,
    exclude_subject_id: Optional[UUID] = None,
) -> Optional[Subject]:
    stmt = select(Subject).where(Subject.code == code)
    if exclude_subject_id is not None:
        stmt = stmt.where(Subject.id != exclude_subject_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def create_subject(db: AsyncSession, payload: SubjectCreate) -> SubjectResponse:
    code = payload.code.strip().upper()
    existing = await _existing_with_code(db, code)
    if existing:
        raise ServiceError(
            f"Subject code '{code}' already exists (existing: name='{existing.name}', id={existing.id})",
            status.HTTP_409_CONFLICT,
        )
    try:
        obj = Subject(
            id=uuid.uuid4(),
            name=payload.name.strip(),
            code=code,
            description=payload.description,
            credits=payload.credits,
            max_capacity=payload.max_capacity,
            current_enrollment=0,
            prerequisites=[str(p) for p in dict.fromkeys(payload.prerequisites)],
            faculty=payload.faculty.strip(),
            schedule=_build_schedule(payload.schedule),
            is_active=payload.is_active,
            add_drop_deadline=ensure_utc(payload.add_drop_deadline),
            monthly_fee_amount=payload.monthly_fee_amount,
        )
        db.add(obj)
        await db.commit()
        await db.refresh(obj)
    except IntegrityError:
        await db.rollback()
        raise ServiceError(f"Subject code '{code}' already exists", status.HTTP_409_CONFLICT)
    logger.info("Created subject id=%s code=%s capacity=%s", obj.id, obj.code, obj.max_capacity)
    return to_subject_response(obj)


async def list_subjects(db: AsyncSession, active_only: bool = True) -> List[SubjectResponse]:
    return [to_subject_response(s) for s in await list_subject_rows(db, active_only=active_only)]


async def list_subject_rows(db: AsyncSession, active_only: bool = True) -> List[Subject]:
    stmt = select(Subject)
    if active_only:
        stmt = stmt.where(Subject.is_active.is_(True))
    stmt = stmt.order_by(Subject.name)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_subject(db: AsyncSession, subject_id: UUID) -> Optional[SubjectResponse]:
    obj = await get_subject_by_id(db, subject_id)
    return to_subject_response(obj) if obj else None


async def get_subject_by_id(
    db: AsyncSession,
    subject_id: UUID,
    *,
    for_update: bool = False,
) -> Optional[Subject]:
    """Load a subject row. for_update locks it until the surrounding transaction ends."""
    stmt = select(Subject).where(Subject.id == subject_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_subjects_by_ids(db: AsyncSession, subject_ids: Iterable[UUID]) -> List[Subject]:
    ids = list(dict.fromkeys(subject_ids))
    if not ids:
        return []
    result = await db.execute(select(Subject).where(Subject.id.in_(ids)))
    return list(result.scalars().all())


async def update_subject(
    db: AsyncSession,
    subject_id: UUID,
    payload: SubjectUpdate,
) -> Optional[SubjectResponse]:
    obj = await get_subject_by_id(db, subject_id)
    if not obj:
        return None
    if payload.name is not None:
        obj.name = payload.name.strip()
    if payload.code is not None:
        code = payload.code.strip().upper()
        existing = await _existing_with_code(db, code, exclude_subject_id=subject_id)
        if existing:
            message = f"Subject code '{code}' already exists (existing: name='{existing.name}', id={existing.id})"
            await db.rollback()
            raise ServiceError(message, status.HTTP_409_CONFLICT)
        obj.code = code
    if payload.description is not None:
        obj.description = payload.description
    if payload.credits is not None:
        obj.credits = payload.credits
    if payload.max_capacity is not None:
        current = obj.current_enrollment
        if payload.max_capacity < current:
            await db.rollback()
            raise ServiceError(
                f"max_capacity cannot be lower than current enrollment ({current})",
                status.HTTP_400_BAD_REQUEST,
            )
        obj.max_capacity = payload.max_capacity
    if payload.prerequisites is not None:
        if subject_id in payload.prerequisites:
            await db.rollback()
            raise ServiceError("A subject cannot be its own prerequisite", status.HTTP_400_BAD_REQUEST)
        obj.prerequisites = [str(p) for p in dict.fromkeys(payload.prerequisites)]
    if payload.faculty is not None:
        obj.faculty = payload.faculty.strip()
    if payload.schedule is not None:
        obj.schedule = _build_schedule(payload.schedule)
    if payload.is_active is not None:
        obj.is_active = payload.is_active
    if payload.add_drop_deadline is not None:
        obj.add_drop_deadline = ensure_utc(payload.add_drop_deadline)
    if "monthly_fee_amount" in payload.model_fields_set:
        obj.monthly_fee_amount = payload.monthly_fee_amount
    try:
        await db.commit()
        await db.refresh(obj)
    except IntegrityError:
        await db.rollback()
        raise ServiceError("Subject update violates a catalog constraint", status.HTTP_409_CONFLICT)
    return to_subject_response(obj)


async def deactivate_subject(db: AsyncSession, subject_id: UUID) -> Optional[SubjectResponse]:
    """Soft retire: the subject stops being offered but existing enrollments keep pointing at it."""
    obj = await get_subject_by_id(db, subject_id)
    if not obj:
        return None
    obj.is_active = False
    await db.commit()
    await db.refresh(obj)
    logger.info("Deactivated subject id=%s", subject_id)
    return to_subject_response(obj)


async def delete_subject(db: AsyncSession, subject_id: UUID) -> bool:
    """Hard delete, refused while any enrollment row (in any status) references the subject."""
    obj = await get_subject_by_id(db, subject_id)
    if not obj:
        return False
    referenced = (
        await db.execute(
            select(StudentEnrollment.id).where(StudentEnrollment.subject_id == subject_id).limit(1)
        )
    ).scalar_one_or_none()
    if referenced is not None:
        raise ServiceError(
            "Subject has enrollment history and cannot be deleted; deactivate it instead",
            status.HTTP_409_CONFLICT,
        )
    await db.delete(obj)
    await db.commit()
    logger.info("Deleted subject id=%s", subject_id)
    return True
