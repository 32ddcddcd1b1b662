from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from coaching.api.v1.subjects.schemas import SubjectResponse
from coaching.core.enums import EnrollmentAction, EnrollmentStatus


class EnrollRequest(BaseModel):
    subject_ids: List[UUID] = Field(..., description="Processed in order; duplicates are rejected individually")
    max_enrollment_limit: Optional[int] = Field(None, gt=0, description="Defaults to MAX_ENROLLMENT_LIMIT")


class EnrollResult(BaseModel):
    """success is true iff at least one subject was enrolled; errors lists the rejected ones."""

    success: bool
    errors: List[str] = Field(default_factory=list)
    enrolled_subjects: List[UUID] = Field(default_factory=list)


class DropRequest(BaseModel):
    subject_id: UUID
    reason: Optional[str] = Field(None, max_length=1000)


class CompleteRequest(BaseModel):
    subject_id: UUID
    performed_by: str = Field(..., min_length=1, max_length=100)
    grade: Optional[str] = Field(None, max_length=10)


class DropResult(BaseModel):
    success: bool
    error: Optional[str] = None


class EnrollmentResponse(BaseModel):
    id: UUID
    student_id: str
    subject_id: UUID
    enrollment_date: datetime
    status: EnrollmentStatus
    grade: Optional[str] = None
    credits: int
    created_at: datetime
    updated_at: datetime
    subject: SubjectResponse


class StudentEnrollmentsResponse(BaseModel):
    enrollments: List[EnrollmentResponse]
    total_credits: int


class EnrollmentAuditResponse(BaseModel):
    id: UUID
    student_id: str
    subject_id: UUID
    action: EnrollmentAction
    timestamp: datetime
    reason: Optional[str] = None
    performed_by: str

    class Config:
        from_attributes = True
