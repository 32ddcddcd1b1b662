"""
Enrollment router. Enroll, drop and complete always answer 200: validation
failures are reported in the result body, not as HTTP errors.
"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coaching.api.v1.subjects.schemas import SubjectResponse
from coaching.db.session import get_db

from .schemas import (
    CompleteRequest,
    DropRequest,
    DropResult,
    EnrollmentAuditResponse,
    EnrollRequest,
    EnrollResult,
    StudentEnrollmentsResponse,
)
from . import service

router = APIRouter(prefix="/api/v1/enrollments", tags=["enrollments"])


@router.post("/students/{student_id}", response_model=EnrollResult)
async def enroll_student(
    student_id: str,
    payload: EnrollRequest,
    db: AsyncSession = Depends(get_db),
) -> EnrollResult:
    return await service.enroll_student_in_subjects(
        db,
        student_id,
        payload.subject_ids,
        payload.max_enrollment_limit,
    )


@router.post("/students/{student_id}/drop", response_model=DropResult)
async def drop_subject(
    student_id: str,
    payload: DropRequest,
    db: AsyncSession = Depends(get_db),
) -> DropResult:
    return await service.drop_subject(db, student_id, payload.subject_id, payload.reason)


@router.post("/students/{student_id}/complete", response_model=DropResult)
async def complete_subject(
    student_id: str,
    payload: CompleteRequest,
    db: AsyncSession = Depends(get_db),
) -> DropResult:
    return await service.complete_subject(
        db,
        student_id,
        payload.subject_id,
        performed_by=payload.performed_by,
        grade=payload.grade,
    )


@router.get("/students/{student_id}", response_model=StudentEnrollmentsResponse)
async def get_student_enrollments(
    student_id: str,
    db: AsyncSession = Depends(get_db),
) -> StudentEnrollmentsResponse:
    return await service.get_student_enrollments(db, student_id)


@router.get("/students/{student_id}/audit", response_model=List[EnrollmentAuditResponse])
async def get_enrollment_audit(
    student_id: str,
    db: AsyncSession = Depends(get_db),
) -> List[EnrollmentAuditResponse]:
    return await service.get_enrollment_audit(db, student_id)


@router.get("/students/{student_id}/available-subjects", response_model=List[SubjectResponse])
async def get_available_subjects(
    student_id: str,
    db: AsyncSession = Depends(get_db),
) -> List[SubjectResponse]:
    return await service.get_available_subjects(db, student_id)
