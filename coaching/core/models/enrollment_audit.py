"""
Append-only audit trail of enrollment state transitions (enroll, drop, complete).
Correlated to enrollments by (student_id, subject_id), not by foreign key.
"""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, String, Text, Uuid

from coaching.core.timeutils import utc_now
from coaching.db.session import Base


class EnrollmentAudit(Base):
    __tablename__ = "enrollment_audits"
    __table_args__ = (
        CheckConstraint(
            "action IN ('enroll','drop','complete')",
            name="chk_enrollment_audit_action",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(String(100), nullable=False, index=True)
    subject_id = Column(Uuid(as_uuid=True), nullable=False)
    action = Column(String(20), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    reason = Column(Text, nullable=True)
    performed_by = Column(String(100), nullable=False)
