"""Billing schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from coaching.core.enums import PaymentMethod, StudentFeeStatus


class StudentFeeResponse(BaseModel):
    id: UUID
    student_id: str
    subject_id: Optional[UUID] = None
    fee_structure_name: str
    amount: Decimal
    original_amount: Decimal
    total_amount: Decimal
    due_date: datetime
    status: StudentFeeStatus
    paid_amount: Decimal
    remaining_amount: Decimal
    created_by: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_date: Optional[datetime] = Field(None, description="Defaults to now")
    transaction_id: Optional[str] = Field(None, max_length=100)
    receipt_number: Optional[str] = Field(None, max_length=50, description="Generated when omitted")
    notes: Optional[str] = None
    created_by: str = Field(..., min_length=1, max_length=100)


class PaymentResponse(BaseModel):
    id: UUID
    student_fee_id: UUID
    student_id: str
    amount: Decimal
    payment_method: PaymentMethod
    payment_date: datetime
    transaction_id: Optional[str] = None
    receipt_number: str
    notes: Optional[str] = None
    created_by: str
    created_at: datetime
    fee_status: Optional[StudentFeeStatus] = Field(None, description="Fee status after this payment")
    fee_remaining_amount: Optional[Decimal] = None

    class Config:
        from_attributes = True


class MonthlyFeeGenerationResult(BaseModel):
    billing_month: str = Field(..., description="YYYY-MM of the generated fees")
    generated_count: int
