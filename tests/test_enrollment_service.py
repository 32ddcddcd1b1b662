import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coaching.api.v1.enrollments import service
from coaching.core.config import settings
from coaching.core.exceptions import ServiceError
from coaching.core.models import EnrollmentAudit, StudentEnrollment, StudentFee
from coaching.core.timeutils import utc_now


async def _active_rows(db: AsyncSession, student_id: str, subject_id) -> int:
    return (
        await db.execute(
            select(func.count(StudentEnrollment.id)).where(
                StudentEnrollment.student_id == student_id,
                StudentEnrollment.subject_id == subject_id,
                StudentEnrollment.status == "enrolled",
            )
        )
    ).scalar_one()


async def _fees_for(db: AsyncSession, student_id: str):
    result = await db.execute(select(StudentFee).where(StudentFee.student_id == student_id))
    return result.scalars().all()


@pytest.mark.asyncio
async def test_enroll_last_seat_creates_enrollment_audit_and_pending_fee(db_session, subject_factory) -> None:
    math = await subject_factory("Math", max_capacity=30, current_enrollment=29, monthly_fee_amount=Decimal("500"))

    result = await service.enroll_student_in_subjects(db_session, "S1", [math.id])

    assert result.success is True
    assert result.errors == []
    assert result.enrolled_subjects == [math.id]

    await db_session.refresh(math)
    assert math.current_enrollment == 30

    enrollment = (
        await db_session.execute(select(StudentEnrollment).where(StudentEnrollment.student_id == "S1"))
    ).scalar_one()
    assert enrollment.status == "enrolled"
    assert enrollment.credits == math.credits

    audits = (await db_session.execute(select(EnrollmentAudit))).scalars().all()
    assert [(a.action, a.performed_by) for a in audits] == [("enroll", "S1")]

    fees = await _fees_for(db_session, "S1")
    assert len(fees) == 1
    fee = fees[0]
    assert fee.status == "pending"
    assert Decimal(fee.amount) == Decimal("500")
    assert Decimal(fee.remaining_amount) == Decimal("500")
    assert Decimal(fee.paid_amount) == Decimal("0")
    assert fee.fee_structure_name == "Math"
    assert fee.subject_id == math.id

    # The seat is gone for the next student
    second = await service.enroll_student_in_subjects(db_session, "S2", [math.id])
    assert second.success is False
    assert second.errors == ["Subject Math is at full capacity"]
    assert second.enrolled_subjects == []


@pytest.mark.asyncio
async def test_capacity_is_never_exceeded(db_session, subject_factory) -> None:
    physics = await subject_factory("Physics", max_capacity=2)

    outcomes = [
        await service.enroll_student_in_subjects(db_session, f"S{i}", [physics.id])
        for i in range(5)
    ]

    assert [o.success for o in outcomes] == [True, True, False, False, False]
    for rejected in outcomes[2:]:
        assert rejected.errors == ["Subject Physics is at full capacity"]
    await db_session.refresh(physics)
    assert physics.current_enrollment == physics.max_capacity == 2


@pytest.mark.asyncio
async def test_subject_without_fee_creates_no_billing_record(db_session, subject_factory) -> None:
    art = await subject_factory("Art", monthly_fee_amount=None)

    result = await service.enroll_student_in_subjects(db_session, "S1", [art.id])

    assert result.success is True
    assert await _fees_for(db_session, "S1") == []


@pytest.mark.asyncio
async def test_already_enrolled_subject_rejected_individually(db_session, subject_factory) -> None:
    chem = await subject_factory("Chemistry")
    bio = await subject_factory("Biology", schedule=[("Friday", "09:00", "10:00")])
    await service.enroll_student_in_subjects(db_session, "S1", [chem.id])

    result = await service.enroll_student_in_subjects(db_session, "S1", [chem.id, bio.id])

    assert result.success is True
    assert result.enrolled_subjects == [bio.id]
    assert result.errors == [f"Already enrolled in subject {chem.id}"]
    assert await _active_rows(db_session, "S1", chem.id) == 1


@pytest.mark.asyncio
async def test_duplicate_id_in_one_batch_enrolls_once(db_session, subject_factory) -> None:
    chem = await subject_factory("Chemistry")

    result = await service.enroll_student_in_subjects(db_session, "S1", [chem.id, chem.id])

    assert result.enrolled_subjects == [chem.id]
    assert result.errors == [f"Already enrolled in subject {chem.id}"]
    await db_session.refresh(chem)
    assert chem.current_enrollment == 1
    assert await _active_rows(db_session, "S1", chem.id) == 1


@pytest.mark.asyncio
async def test_missing_and_inactive_subjects_are_reported(db_session, subject_factory) -> None:
    retired = await subject_factory("Latin", is_active=False)
    unknown = uuid.uuid4()

    result = await service.enroll_student_in_subjects(db_session, "S1", [unknown, retired.id])

    assert result.success is False
    assert result.errors == [f"Subject {unknown} not found", "Subject Latin is not active"]
    assert result.enrolled_subjects == []


@pytest.mark.asyncio
async def test_enroll_then_drop_restores_count_and_leaves_two_audit_rows(db_session, subject_factory) -> None:
    history = await subject_factory("History", current_enrollment=4)
    t0 = utc_now()

    enrolled = await service.enroll_student_in_subjects(db_session, "S1", [history.id], now=t0)
    assert enrolled.success is True

    dropped = await service.drop_subject(
        db_session, "S1", history.id, "Timetable clash at school", now=t0 + timedelta(minutes=5)
    )
    assert dropped.success is True
    assert dropped.error is None

    await db_session.refresh(history)
    assert history.current_enrollment == 4
    assert await _active_rows(db_session, "S1", history.id) == 0

    audit = await service.get_enrollment_audit(db_session, "S1")
    assert [a.action.value for a in audit] == ["drop", "enroll"]
    assert audit[0].reason == "Timetable clash at school"
    assert audit[1].reason is None

    # Status transition only: the row is kept as dropped
    row = (
        await db_session.execute(select(StudentEnrollment).where(StudentEnrollment.student_id == "S1"))
    ).scalar_one()
    assert row.status == "dropped"


@pytest.mark.asyncio
async def test_drop_without_enrollment_fails(db_session, subject_factory) -> None:
    geo = await subject_factory("Geography")

    result = await service.drop_subject(db_session, "S1", geo.id)

    assert result.success is False
    assert result.error == "Enrollment not found"


@pytest.mark.asyncio
async def test_drop_clamps_enrollment_count_at_zero(db_session, subject_factory) -> None:
    geo = await subject_factory("Geography")
    await service.enroll_student_in_subjects(db_session, "S1", [geo.id])
    geo.current_enrollment = 0
    await db_session.commit()

    result = await service.drop_subject(db_session, "S1", geo.id)

    assert result.success is True
    await db_session.refresh(geo)
    assert geo.current_enrollment == 0


@pytest.mark.asyncio
async def test_deadline_boundary_for_enroll_and_drop(db_session, subject_factory) -> None:
    deadline = utc_now().replace(microsecond=0) + timedelta(days=1)
    econ = await subject_factory("Economics", add_drop_deadline=deadline)
    after = deadline + timedelta(microseconds=1)

    at_deadline = await service.enroll_student_in_subjects(db_session, "S1", [econ.id], now=deadline)
    assert at_deadline.success is True

    too_late_drop = await service.drop_subject(db_session, "S1", econ.id, now=after)
    assert too_late_drop.success is False
    assert too_late_drop.error == "Add/drop deadline has passed"

    drop_at_deadline = await service.drop_subject(db_session, "S1", econ.id, now=deadline)
    assert drop_at_deadline.success is True

    too_late_enroll = await service.enroll_student_in_subjects(db_session, "S2", [econ.id], now=after)
    assert too_late_enroll.success is False
    assert too_late_enroll.errors == ["Add/drop deadline has passed for Economics"]


@pytest.mark.asyncio
async def test_enrollment_limit_rejects_whole_batch(db_session, subject_factory) -> None:
    days = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
    held = [await subject_factory(f"Held{i}", schedule=[(day, "08:00", "09:00")]) for i, day in enumerate(days)]
    first = await service.enroll_student_in_subjects(db_session, "S1", [s.id for s in held])
    assert len(first.enrolled_subjects) == 5

    extra_a = await subject_factory("ExtraA", schedule=[("Saturday", "10:00", "11:00")])
    extra_b = await subject_factory("ExtraB", schedule=[("Sunday", "10:00", "11:00")])

    result = await service.enroll_student_in_subjects(
        db_session, "S1", [extra_a.id, extra_b.id], max_enrollment_limit=6
    )

    assert result.success is False
    assert result.enrolled_subjects == []
    assert result.errors == ["Enrollment limit exceeded. Maximum 6 subjects allowed."]
    await db_session.refresh(extra_a)
    await db_session.refresh(extra_b)
    assert extra_a.current_enrollment == 0
    assert extra_b.current_enrollment == 0


@pytest.mark.asyncio
async def test_default_limit_comes_from_settings(db_session, subject_factory, monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_enrollment_limit", 1)
    a = await subject_factory("Alpha")
    b = await subject_factory("Beta", schedule=[("Monday", "12:00", "13:00")])

    result = await service.enroll_student_in_subjects(db_session, "S1", [a.id, b.id])

    assert result.errors == ["Enrollment limit exceeded. Maximum 1 subjects allowed."]


@pytest.mark.asyncio
async def test_schedule_conflict_rejects_only_overlapping_subject(db_session, subject_factory) -> None:
    a = await subject_factory("A", schedule=[("Monday", "09:00", "10:30")])
    b = await subject_factory("B", schedule=[("Monday", "10:00", "11:00")])
    c = await subject_factory("C", schedule=[("Tuesday", "09:00", "10:00")])
    await service.enroll_student_in_subjects(db_session, "S1", [a.id])

    result = await service.enroll_student_in_subjects(db_session, "S1", [b.id, c.id])

    assert result.success is True
    assert result.enrolled_subjects == [c.id]
    assert result.errors == ["Schedule conflict between B and A"]


@pytest.mark.asyncio
async def test_schedule_conflict_with_subject_approved_earlier_in_batch(db_session, subject_factory) -> None:
    first = await subject_factory("First", schedule=[("Wednesday", "14:00", "15:00")])
    clash = await subject_factory("Clash", schedule=[("Wednesday", "14:30", "15:30")])
    adjacent = await subject_factory("Adjacent", schedule=[("Wednesday", "15:00", "16:00")])

    result = await service.enroll_student_in_subjects(db_session, "S1", [first.id, clash.id, adjacent.id])

    assert result.enrolled_subjects == [first.id, adjacent.id]
    assert result.errors == ["Schedule conflict between Clash and First"]


@pytest.mark.asyncio
async def test_prerequisite_gate(db_session, subject_factory) -> None:
    basics = await subject_factory("Basics", schedule=[("Monday", "09:00", "10:00")])
    advanced = await subject_factory(
        "Advanced", prerequisites=[basics], schedule=[("Monday", "09:00", "10:00")]
    )

    blocked = await service.enroll_student_in_subjects(db_session, "S1", [advanced.id])
    assert blocked.success is False
    assert blocked.errors == [f"Missing prerequisites for Advanced: {basics.id}"]

    # Being enrolled in the prerequisite is not enough; it must be completed
    await service.enroll_student_in_subjects(db_session, "S1", [basics.id])
    still_blocked = await service.enroll_student_in_subjects(db_session, "S1", [advanced.id])
    assert still_blocked.success is False

    completed = await service.complete_subject(db_session, "S1", basics.id, performed_by="admin", grade="A")
    assert completed.success is True

    allowed = await service.enroll_student_in_subjects(db_session, "S1", [advanced.id])
    assert allowed.success is True
    assert allowed.enrolled_subjects == [advanced.id]


@pytest.mark.asyncio
async def test_complete_releases_seat_and_is_audited(db_session, subject_factory) -> None:
    music = await subject_factory("Music", max_capacity=1)
    await service.enroll_student_in_subjects(db_session, "S1", [music.id])

    result = await service.complete_subject(db_session, "S1", music.id, performed_by="faculty-7", grade="B+")

    assert result.success is True
    await db_session.refresh(music)
    assert music.current_enrollment == 0
    row = (
        await db_session.execute(select(StudentEnrollment).where(StudentEnrollment.student_id == "S1"))
    ).scalar_one()
    assert row.status == "completed"
    assert row.grade == "B+"
    audit = await service.get_enrollment_audit(db_session, "S1")
    assert audit[0].action.value == "complete"
    assert audit[0].performed_by == "faculty-7"

    missing = await service.complete_subject(db_session, "S1", music.id, performed_by="faculty-7")
    assert missing.error == "Enrollment not found"


@pytest.mark.asyncio
async def test_billing_failure_keeps_enrollment(db_session, subject_factory, monkeypatch) -> None:
    paid = await subject_factory("Paid", monthly_fee_amount=Decimal("750"))
    # The failed fee insert rolls the session back and expires loaded rows
    paid_id = paid.id

    async def _broken(*args, **kwargs):
        raise ServiceError("billing unavailable")

    monkeypatch.setattr(service.billing_service, "create_pending_fee", _broken)

    result = await service.enroll_student_in_subjects(db_session, "S1", [paid_id])

    assert result.success is True
    assert result.enrolled_subjects == [paid_id]
    assert result.errors == []
    assert await _active_rows(db_session, "S1", paid_id) == 1
    assert await _fees_for(db_session, "S1") == []


@pytest.mark.asyncio
async def test_drop_does_not_touch_existing_fee(db_session, subject_factory) -> None:
    paid = await subject_factory("Paid", monthly_fee_amount=Decimal("300"))
    await service.enroll_student_in_subjects(db_session, "S1", [paid.id])

    result = await service.drop_subject(db_session, "S1", paid.id)

    assert result.success is True
    fees = await _fees_for(db_session, "S1")
    assert [f.status for f in fees] == ["pending"]


@pytest.mark.asyncio
async def test_conflict_abort_is_retried(db_session, subject_factory, monkeypatch) -> None:
    yoga = await subject_factory("Yoga")
    original = service._enroll_in_transaction
    calls = {"n": 0}

    async def _flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("UPDATE subjects", {}, Exception("could not serialize access"))
        return await original(*args, **kwargs)

    monkeypatch.setattr(service, "_enroll_in_transaction", _flaky)

    result = await service.enroll_student_in_subjects(db_session, "S1", [yoga.id])

    assert calls["n"] == 2
    assert result.success is True
    await db_session.refresh(yoga)
    assert yoga.current_enrollment == 1


@pytest.mark.asyncio
async def test_transaction_failure_returns_generic_error(db_session, subject_factory, monkeypatch) -> None:
    yoga_id = (await subject_factory("Yoga")).id
    monkeypatch.setattr(settings, "enrollment_max_attempts", 2)
    calls = {"n": 0}

    async def _always_conflicts(*args, **kwargs):
        calls["n"] += 1
        raise OperationalError("UPDATE subjects", {}, Exception("deadlock detected"))

    monkeypatch.setattr(service, "_enroll_in_transaction", _always_conflicts)

    result = await service.enroll_student_in_subjects(db_session, "S1", [yoga_id])

    assert calls["n"] == 2
    assert result.success is False
    assert result.errors == ["Failed to process enrollment"]
    assert result.enrolled_subjects == []
    assert await _active_rows(db_session, "S1", yoga_id) == 0


@pytest.mark.asyncio
async def test_non_conflict_database_error_is_not_retried(db_session, subject_factory, monkeypatch) -> None:
    yoga = await subject_factory("Yoga")
    calls = {"n": 0}

    async def _broken(*args, **kwargs):
        calls["n"] += 1
        raise SQLAlchemyError("connection reset")

    monkeypatch.setattr(service, "_enroll_in_transaction", _broken)

    result = await service.enroll_student_in_subjects(db_session, "S1", [yoga.id])

    assert calls["n"] == 1
    assert result.errors == ["Failed to process enrollment"]


class _DriverError(Exception):
    """Stands in for a driver exception carrying a PostgreSQL SQLSTATE."""

    def __init__(self, sqlstate: str) -> None:
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


@pytest.mark.asyncio
@pytest.mark.parametrize("sqlstate", ["40P01", "40001"])
async def test_deadlock_and_serialization_failures_are_retried(
    db_session, subject_factory, monkeypatch, sqlstate
) -> None:
    yoga_id = (await subject_factory("Yoga")).id
    original = service._enroll_in_transaction
    calls = {"n": 0}

    async def _aborts_once(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise DBAPIError("SELECT subjects FOR UPDATE", {}, _DriverError(sqlstate))
        return await original(*args, **kwargs)

    monkeypatch.setattr(service, "_enroll_in_transaction", _aborts_once)

    result = await service.enroll_student_in_subjects(db_session, "S1", [yoga_id])

    assert calls["n"] == 2
    assert result.success is True
    assert result.enrolled_subjects == [yoga_id]


@pytest.mark.asyncio
async def test_other_driver_errors_are_not_retried(db_session, subject_factory, monkeypatch) -> None:
    yoga_id = (await subject_factory("Yoga")).id
    calls = {"n": 0}

    async def _undefined_table(*args, **kwargs):
        calls["n"] += 1
        raise DBAPIError("SELECT subjects", {}, _DriverError("42P01"))

    monkeypatch.setattr(service, "_enroll_in_transaction", _undefined_table)

    result = await service.enroll_student_in_subjects(db_session, "S1", [yoga_id])

    assert calls["n"] == 1
    assert result.errors == ["Failed to process enrollment"]


@pytest.mark.asyncio
async def test_database_allows_one_active_enrollment_per_student_and_subject(db_session, subject_factory) -> None:
    art_id = (await subject_factory("Art")).id
    db_session.add(StudentEnrollment(student_id="S1", subject_id=art_id, status="dropped", credits=3))
    db_session.add(StudentEnrollment(student_id="S1", subject_id=art_id, status="completed", credits=3))
    db_session.add(StudentEnrollment(student_id="S1", subject_id=art_id, status="enrolled", credits=3))
    db_session.add(StudentEnrollment(student_id="S2", subject_id=art_id, status="enrolled", credits=3))
    await db_session.commit()

    db_session.add(StudentEnrollment(student_id="S1", subject_id=art_id, status="enrolled", credits=3))
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()

    assert await _active_rows(db_session, "S1", art_id) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_enrollment_is_retried_and_reported(
    db_session, subject_factory, monkeypatch
) -> None:
    art_id = (await subject_factory("Art")).id
    original = service._enroll_in_transaction
    calls = {"n": 0}

    def _competing_row(student_id: str) -> StudentEnrollment:
        return StudentEnrollment(student_id=student_id, subject_id=art_id, status="enrolled", credits=3)

    async def _racing(db, student_id, subject_ids, limit, now):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another request's insert for the same seat lands in the same commit
            result = await original(db, student_id, subject_ids, limit, now)
            db.add(_competing_row(student_id))
            return result
        # By the rerun the other request has committed
        db.add(_competing_row(student_id))
        await db.commit()
        return await original(db, student_id, subject_ids, limit, now)

    monkeypatch.setattr(service, "_enroll_in_transaction", _racing)

    result = await service.enroll_student_in_subjects(db_session, "S1", [art_id])

    assert calls["n"] == 2
    assert result.success is False
    assert result.errors == [f"Already enrolled in subject {art_id}"]
    assert await _active_rows(db_session, "S1", art_id) == 1
    audit = await service.get_enrollment_audit(db_session, "S1")
    assert audit == []
