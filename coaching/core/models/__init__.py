from coaching.core.models.subject import Subject, SubjectScheduleSlot
from coaching.core.models.student_enrollment import StudentEnrollment
from coaching.core.models.enrollment_audit import EnrollmentAudit
from coaching.core.models.student_fee import StudentFee
from coaching.core.models.fee_payment import FeePayment

__all__ = [
    "Subject",
    "SubjectScheduleSlot",
    "StudentEnrollment",
    "EnrollmentAudit",
    "StudentFee",
    "FeePayment",
]
