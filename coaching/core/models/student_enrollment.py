"""Student enrollment ledger. Rows are never deleted; only status transitions."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Uuid, text
from sqlalchemy.orm import relationship

from coaching.core.enums import EnrollmentStatus
from coaching.core.timeutils import utc_now
from coaching.db.session import Base


class StudentEnrollment(Base):
    __tablename__ = "student_enrollments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('enrolled','dropped','completed')",
            name="chk_student_enrollment_status",
        ),
        # At most one active enrollment per (student, subject)
        Index(
            "uq_student_enrollment_active",
            "student_id",
            "subject_id",
            unique=True,
            postgresql_where=text("status = 'enrolled'"),
            sqlite_where=text("status = 'enrolled'"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(String(100), nullable=False, index=True)
    subject_id = Column(Uuid(as_uuid=True), ForeignKey("subjects.id", ondelete="RESTRICT"), nullable=False)
    enrollment_date = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    status = Column(String(20), nullable=False, default=EnrollmentStatus.enrolled.value)
    grade = Column(String(10), nullable=True)
    credits = Column(Integer, nullable=False, default=0)  # copied from subject at enroll time
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    subject = relationship("Subject", lazy="joined")
