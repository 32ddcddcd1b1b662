"""
Audit logging for enrollment state changes. Call on every enroll, drop and complete.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from coaching.core.enums import EnrollmentAction
from coaching.core.models import EnrollmentAudit
from coaching.core.timeutils import utc_now


def log_enrollment_audit(
    db: AsyncSession,
    student_id: str,
    subject_id: UUID,
    action: EnrollmentAction,
    *,
    performed_by: str,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> EnrollmentAudit:
    """Append one audit entry to the current transaction. Caller must commit."""
    entry = EnrollmentAudit(
        student_id=student_id,
        subject_id=subject_id,
        action=action.value,
        reason=reason,
        performed_by=performed_by,
        timestamp=timestamp or utc_now(),
    )
    db.add(entry)
    return entry
