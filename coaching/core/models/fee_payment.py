"""Payment made against a student fee."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship

from coaching.core.timeutils import utc_now
from coaching.db.session import Base


class FeePayment(Base):
    __tablename__ = "fee_payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_fee_payment_amount"),
        CheckConstraint(
            "payment_method IN ('cash','card','upi','bank_transfer','cheque')",
            name="chk_fee_payment_method",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_fee_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("student_fees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    student_id = Column(String(100), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(20), nullable=False)
    payment_date = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    transaction_id = Column(String(100), nullable=True)
    receipt_number = Column(String(50), nullable=False, unique=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    student_fee = relationship("StudentFee", back_populates="payments")
