"""Subject catalog: offered courses with capacity, weekly schedule, prerequisites and fee metadata."""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    Uuid,
)
from sqlalchemy.orm import relationship

from coaching.core.timeutils import utc_now
from coaching.db.session import Base


class Subject(Base):
    """
    current_enrollment is only ever changed inside the enroll/drop/complete
    transactions and must stay within [0, max_capacity].
    """

    __tablename__ = "subjects"
    __table_args__ = (
        CheckConstraint("max_capacity > 0", name="chk_subject_max_capacity"),
        CheckConstraint(
            "current_enrollment >= 0 AND current_enrollment <= max_capacity",
            name="chk_subject_current_enrollment",
        ),
        CheckConstraint("credits >= 0", name="chk_subject_credits"),
        CheckConstraint(
            "monthly_fee_amount IS NULL OR monthly_fee_amount >= 0",
            name="chk_subject_monthly_fee_amount",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")
    credits = Column(Integer, nullable=False, default=0)
    max_capacity = Column(Integer, nullable=False)
    current_enrollment = Column(Integer, nullable=False, default=0)
    # List of subject id strings; order is irrelevant
    prerequisites = Column(JSON, nullable=False, default=list)
    faculty = Column(String(255), nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    add_drop_deadline = Column(DateTime(timezone=True), nullable=False)
    monthly_fee_amount = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    schedule = relationship(
        "SubjectScheduleSlot",
        back_populates="subject",
        order_by="SubjectScheduleSlot.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class SubjectScheduleSlot(Base):
    """One weekly meeting of a subject."""

    __tablename__ = "subject_schedule_slots"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="chk_schedule_slot_time_range"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_id = Column(Uuid(as_uuid=True), ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    day = Column(String(10), nullable=False)  # Monday .. Sunday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    room = Column(String(100), nullable=False, default="")

    subject = relationship("Subject", back_populates="schedule")
