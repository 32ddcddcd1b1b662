"""Billing router: student fees and payments."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from coaching.core.exceptions import ServiceError
from coaching.core.timeutils import utc_now
from coaching.db.session import get_db

from .schemas import MonthlyFeeGenerationResult, PaymentCreate, PaymentResponse, StudentFeeResponse
from . import service

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.get(
    "/students/{student_id}/fees",
    response_model=List[StudentFeeResponse],
)
async def get_student_fees(
    student_id: str,
    db: AsyncSession = Depends(get_db),
) -> List[StudentFeeResponse]:
    return await service.get_student_fees(db, student_id)


@router.post(
    "/fees/{fee_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_payment(
    fee_id: UUID,
    payload: PaymentCreate,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    try:
        return await service.record_payment(db, fee_id, payload)
    except ServiceError as e:
        raise e.to_http_exception()


@router.get(
    "/payments",
    response_model=List[PaymentResponse],
)
async def list_payments(
    student_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[PaymentResponse]:
    return await service.get_fee_payments(db, student_id=student_id)


@router.get(
    "/subjects/{subject_id}/fees",
    response_model=List[StudentFeeResponse],
)
async def get_subject_fees(
    subject_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> List[StudentFeeResponse]:
    return await service.get_subject_fees(db, subject_id)


@router.post(
    "/monthly-fees",
    response_model=MonthlyFeeGenerationResult,
)
async def generate_monthly_fees(
    db: AsyncSession = Depends(get_db),
) -> MonthlyFeeGenerationResult:
    """Raise the current month's fees for active enrollments. Safe to call more than once a month."""
    billing_month, _ = service.month_window(utc_now())
    generated = await service.generate_monthly_fees(db, now=billing_month)
    return MonthlyFeeGenerationResult(billing_month=f"{billing_month:%Y-%m}", generated_count=generated)
