"""Student fee (billing record). Enrollment-generated rows start pending and are owned by billing afterwards."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from coaching.core.enums import StudentFeeStatus
from coaching.core.timeutils import utc_now
from coaching.db.session import Base


class StudentFee(Base):
    """
    amount, original_amount and total_amount are equal at creation.
    paid_amount + remaining_amount tracks payments against amount.
    """

    __tablename__ = "student_fees"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','partially_paid','paid','overdue')",
            name="chk_student_fee_status",
        ),
        CheckConstraint("amount >= 0", name="chk_student_fee_amount"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(String(100), nullable=False, index=True)
    # Not a foreign key: the fee outlives any change to the catalog
    subject_id = Column(Uuid(as_uuid=True), nullable=True)
    fee_structure_name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    original_amount = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=StudentFeeStatus.pending.value)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    remaining_amount = Column(Numeric(12, 2), nullable=False)
    created_by = Column(String(100), nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    payments = relationship("FeePayment", back_populates="student_fee", order_by="FeePayment.payment_date")
