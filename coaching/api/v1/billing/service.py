"""Billing: pending fee generation for enrollments, fee reads, payments."""

import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import status
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from coaching.core.enums import EnrollmentStatus, StudentFeeStatus
from coaching.core.exceptions import ServiceError
from coaching.core.models import FeePayment, StudentEnrollment, StudentFee, Subject
from coaching.core.timeutils import ensure_utc, utc_now

from .schemas import PaymentCreate, PaymentResponse, StudentFeeResponse

logger = logging.getLogger(__name__)

SYSTEM_CREATOR = "system"


def _to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    return val if isinstance(val, Decimal) else Decimal(str(val))


def _fee_to_response(fee: StudentFee) -> StudentFeeResponse:
    return StudentFeeResponse(
        id=fee.id,
        student_id=fee.student_id,
        subject_id=fee.subject_id,
        fee_structure_name=fee.fee_structure_name,
        amount=_to_decimal(fee.amount),
        original_amount=_to_decimal(fee.original_amount),
        total_amount=_to_decimal(fee.total_amount),
        due_date=ensure_utc(fee.due_date),
        status=fee.status,
        paid_amount=_to_decimal(fee.paid_amount),
        remaining_amount=_to_decimal(fee.remaining_amount),
        created_by=fee.created_by,
        created_at=ensure_utc(fee.created_at),
        updated_at=ensure_utc(fee.updated_at),
    )


def _payment_to_response(p: FeePayment, fee: Optional[StudentFee] = None) -> PaymentResponse:
    return PaymentResponse(
        id=p.id,
        student_fee_id=p.student_fee_id,
        student_id=p.student_id,
        amount=_to_decimal(p.amount),
        payment_method=p.payment_method,
        payment_date=ensure_utc(p.payment_date),
        transaction_id=p.transaction_id,
        receipt_number=p.receipt_number,
        notes=p.notes,
        created_by=p.created_by,
        created_at=ensure_utc(p.created_at),
        fee_status=fee.status if fee is not None else None,
        fee_remaining_amount=_to_decimal(fee.remaining_amount) if fee is not None else None,
    )


def _fee_status(amount: Decimal, paid: Decimal) -> StudentFeeStatus:
    if amount - paid <= 0:
        return StudentFeeStatus.paid
    if paid > 0:
        return StudentFeeStatus.partially_paid
    return StudentFeeStatus.pending


def _generate_receipt_number(when: datetime) -> str:
    return f"RCP-{when:%Y%m%d}-{secrets.token_hex(3).upper()}"


def _pending_fee(
    student_id: str,
    subject_id: Optional[UUID],
    amount: Decimal,
    due_date: datetime,
    fee_structure_name: str,
) -> StudentFee:
    return StudentFee(
        student_id=student_id,
        subject_id=subject_id,
        fee_structure_name=fee_structure_name,
        amount=amount,
        original_amount=amount,
        total_amount=amount,
        due_date=ensure_utc(due_date),
        status=StudentFeeStatus.pending.value,
        paid_amount=Decimal("0"),
        remaining_amount=amount,
        created_by=SYSTEM_CREATOR,
    )


def month_window(now: datetime) -> Tuple[datetime, datetime]:
    """[first instant of now's UTC month, first instant of the next month)."""
    now = ensure_utc(now)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


async def create_pending_fee(
    db: AsyncSession,
    student_id: str,
    subject_id: Optional[UUID],
    amount,
    due_date: datetime,
    *,
    fee_structure_name: str,
) -> UUID:
    """
    Materialize a pending fee for a student and commit it. Returns the fee id.

    There is no idempotency key: calling this twice for the same enrollment
    creates two pending fees.
    """
    amount = _to_decimal(amount)
    if amount < 0:
        raise ServiceError("Fee amount cannot be negative", status.HTTP_400_BAD_REQUEST)
    fee = _pending_fee(student_id, subject_id, amount, due_date, fee_structure_name)
    db.add(fee)
    await db.commit()
    logger.info(
        "Created pending fee id=%s student=%s subject=%s amount=%s",
        fee.id,
        student_id,
        subject_id,
        amount,
    )
    return fee.id


async def get_student_fees(db: AsyncSession, student_id: str) -> List[StudentFeeResponse]:
    result = await db.execute(
        select(StudentFee)
        .where(StudentFee.student_id == student_id)
        .order_by(StudentFee.due_date, StudentFee.created_at)
    )
    return [_fee_to_response(f) for f in result.scalars().all()]


async def record_payment(
    db: AsyncSession,
    fee_id: UUID,
    payload: PaymentCreate,
) -> PaymentResponse:
    """Apply a payment to a fee and recompute paid/remaining/status in one commit."""
    fee = (
        await db.execute(
            select(StudentFee)
            .where(StudentFee.id == fee_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not fee:
        await db.rollback()
        raise ServiceError("Student fee not found", status.HTTP_404_NOT_FOUND)
    if fee.status == StudentFeeStatus.paid.value:
        await db.rollback()
        raise ServiceError("Fee is already fully paid", status.HTTP_400_BAD_REQUEST)

    amount = _to_decimal(payload.amount)
    fee_amount = _to_decimal(fee.amount)
    paid = _to_decimal(fee.paid_amount) + amount
    if paid > fee_amount:
        remaining = _to_decimal(fee.remaining_amount)
        await db.rollback()
        raise ServiceError(
            f"Payment exceeds remaining amount ({remaining})",
            status.HTTP_400_BAD_REQUEST,
        )

    payment_date = ensure_utc(payload.payment_date) if payload.payment_date else utc_now()
    payment = FeePayment(
        student_fee_id=fee.id,
        student_id=fee.student_id,
        amount=amount,
        payment_method=payload.payment_method.value,
        payment_date=payment_date,
        transaction_id=payload.transaction_id,
        receipt_number=payload.receipt_number or _generate_receipt_number(payment_date),
        notes=payload.notes,
        created_by=payload.created_by,
    )
    db.add(payment)
    fee.paid_amount = paid
    fee.remaining_amount = max(Decimal("0"), fee_amount - paid)
    fee.status = _fee_status(fee_amount, paid).value
    await db.commit()
    logger.info(
        "Recorded payment id=%s fee=%s amount=%s status=%s",
        payment.id,
        fee.id,
        amount,
        fee.status,
    )
    return _payment_to_response(payment, fee)


async def get_fee_payments(db: AsyncSession, student_id: Optional[str] = None) -> List[PaymentResponse]:
    stmt = select(FeePayment)
    if student_id is not None:
        stmt = stmt.where(FeePayment.student_id == student_id)
    stmt = stmt.order_by(FeePayment.payment_date.desc())
    result = await db.execute(stmt)
    return [_payment_to_response(p) for p in result.scalars().all()]


async def get_subject_fees(db: AsyncSession, subject_id: UUID) -> List[StudentFeeResponse]:
    result = await db.execute(
        select(StudentFee)
        .where(StudentFee.subject_id == subject_id)
        .order_by(StudentFee.due_date, StudentFee.student_id)
    )
    return [_fee_to_response(f) for f in result.scalars().all()]


async def generate_monthly_fees(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """
    Create this month's pending fee for every active enrollment whose subject carries a
    monthly fee, due on the first of the month. A student/subject pair that already has a
    fee due inside the month (including the one raised at enrollment) is skipped, so
    running the job again in the same month creates nothing. Returns the number created.
    """
    start, end = month_window(now if now is not None else utc_now())

    billable = await db.execute(
        select(StudentEnrollment.student_id, Subject.id, Subject.name, Subject.monthly_fee_amount)
        .join(Subject, Subject.id == StudentEnrollment.subject_id)
        .where(
            StudentEnrollment.status == EnrollmentStatus.enrolled.value,
            Subject.monthly_fee_amount.is_not(None),
            Subject.monthly_fee_amount > 0,
        )
        .order_by(StudentEnrollment.student_id, Subject.name)
    )
    already_billed = {
        (student_id, subject_id)
        for student_id, subject_id in (
            await db.execute(
                select(StudentFee.student_id, StudentFee.subject_id).where(
                    and_(StudentFee.due_date >= start, StudentFee.due_date < end)
                )
            )
        ).all()
    }

    created = 0
    for student_id, subject_id, subject_name, monthly_fee in billable.all():
        if (student_id, subject_id) in already_billed:
            continue
        db.add(_pending_fee(student_id, subject_id, _to_decimal(monthly_fee), start, subject_name))
        already_billed.add((student_id, subject_id))
        created += 1

    await db.commit()
    logger.info("Monthly fee generation for %s created %s fees", f"{start:%Y-%m}", created)
    return created
