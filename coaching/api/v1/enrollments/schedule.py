"""Weekly schedule overlap checks between subjects."""

from typing import Iterable, Optional

from coaching.core.models import Subject, SubjectScheduleSlot


def slots_overlap(a: SubjectScheduleSlot, b: SubjectScheduleSlot) -> bool:
    """Same day and half-open [start, end) ranges intersect; back-to-back slots do not overlap."""
    if a.day != b.day:
        return False
    return a.start_time < b.end_time and a.end_time > b.start_time


def find_schedule_conflict(candidate: Subject, held: Iterable[Subject]) -> Optional[Subject]:
    """Return the first held subject whose schedule overlaps the candidate's, if any."""
    for other in held:
        if other.id == candidate.id:
            continue
        for new_slot in candidate.schedule:
            for existing_slot in other.schedule:
                if slots_overlap(new_slot, existing_slot):
                    return other
    return None
