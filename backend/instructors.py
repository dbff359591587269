"""
Instructor-facing scheduling rules: availability ranking and lab booking limits.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Iterable, Optional

from scheduler import (
    CLASS_TYPE, LAB_TYPE, LAB_LOOKAHEAD_DAYS,
    Booking, BookingStore, CalendarOracle, Catalog, LabLimitExceededError,
    RecurrenceRequest, ScheduleOutcome,
    book_dates, canonical_id, generate_dates, narrow_weekdays, parse_date,
    resolve_allowed_weekdays,
)

logger = logging.getLogger(__name__)

SUPERVISION = 'SUPERVISION'
INSTRUCTOR = 'INSTRUCTOR'

DEFAULT_LAB_BOOKING_LIMIT = 5
SUPERVISION_BATCH_LIMIT = 60
DEFAULT_LAB_TITLE = 'Uso de Laboratório'

# Monthly hour capacity by workload; matched as a substring of the workload id,
# first match wins
DEFAULT_CAPACITY = 176
WORKLOAD_CAPACITY = {
    'w3': 0,   # Not teaching
    'w1': 88,  # Part-time
}

CLASS_LOAD = 4  # Hours counted per class session
ACTIVITY_LOAD = 1  # Hours counted per any other activity


@dataclass
class Instructor:
    id: str
    name: str = ''
    competency_ids: list = field(default_factory=list)
    workload_id: Optional[str] = None

    def __post_init__(self):
        self.id = canonical_id(self.id)


@dataclass
class InstructorRank:
    instructor: Instructor
    is_busy: bool
    has_competence: bool
    load: int
    capacity: int

    def to_dict(self) -> dict:
        return {
            'id': self.instructor.id,
            'name': self.instructor.name,
            'isBusy': self.is_busy,
            'hasCompetence': self.has_competence,
            'load': self.load,
            'capacity': self.capacity,
        }


def workload_capacity(workload_id: Optional[str]) -> int:
    if workload_id:
        for key, capacity in WORKLOAD_CAPACITY.items():
            if key in workload_id:
                return capacity
    return DEFAULT_CAPACITY


def instructor_loads(bookings: Iterable[Booking]) -> dict[str, int]:
    loads: dict[str, int] = {}
    for b in bookings:
        if not b.instructor_id:
            continue
        loads[b.instructor_id] = loads.get(b.instructor_id, 0) + (CLASS_LOAD if b.is_class else ACTIVITY_LOAD)
    return loads


def rank_instructors(instructors: Iterable[Instructor], bookings: Iterable[Booking], day, shift: str,
                     activity_type: str = CLASS_TYPE,
                     required_competency_ids: Optional[list] = None,
                     exclude_id=None) -> list[InstructorRank]:
    """Order instructors for a booking form: free first, then competent, then least loaded.

    Only classes are ranked; for any other activity type everyone is listed as
    free and competent with zero load.

    Args:
        instructors: Candidate instructors
        bookings: Active bookings
        day: Date being booked
        shift: Shift being booked
        activity_type: Booking type of the form
        required_competency_ids: Competencies of the subject, if any
        exclude_id: Booking being edited (not counted as busy)
    """
    instructors = list(instructors)
    if activity_type != CLASS_TYPE:
        return [InstructorRank(instructor=i, is_busy=False, has_competence=True, load=0, capacity=0)
                for i in instructors]

    bookings = list(bookings)
    target_day = parse_date(day)
    excluded = canonical_id(exclude_id)
    busy = {
        b.instructor_id for b in bookings
        if b.date == target_day and b.shift == shift and b.id != excluded
    }
    loads = instructor_loads(bookings)
    required = set(required_competency_ids or [])

    ranks = []
    for instructor in instructors:
        has_competence = bool(required & set(instructor.competency_ids)) if required else True
        ranks.append(InstructorRank(
            instructor=instructor,
            is_busy=instructor.id in busy,
            has_competence=has_competence,
            load=loads.get(instructor.id, 0),
            capacity=workload_capacity(instructor.workload_id),
        ))

    ranks.sort(key=lambda r: (r.is_busy, not r.has_competence, r.load))
    return ranks


def batch_limit(role: str, lab_booking_limit: int = DEFAULT_LAB_BOOKING_LIMIT,
                supervision_batch_limit: int = SUPERVISION_BATCH_LIMIT) -> int:
    """Maximum occurrences a single lab request may ask for."""
    return lab_booking_limit if role == INSTRUCTOR else supervision_batch_limit


def active_lab_bookings(bookings: Iterable[Booking], instructor_id, shift: str, today: date) -> list[Booking]:
    """Lab bookings of an instructor in a shift from today onward."""
    instructor = canonical_id(instructor_id)
    return [
        b for b in bookings
        if b.type == LAB_TYPE and b.instructor_id == instructor and b.shift == shift and b.date >= today
    ]


def book_lab(template: Booking, recurrence: RecurrenceRequest, store: BookingStore, oracle: CalendarOracle,
             catalog: Catalog, role: str,
             lab_booking_limit: int = DEFAULT_LAB_BOOKING_LIMIT,
             supervision_batch_limit: int = SUPERVISION_BATCH_LIMIT,
             today: Optional[date] = None,
             max_lookahead_days: int = LAB_LOOKAHEAD_DAYS) -> ScheduleOutcome:
    """Book a lab for one or more dates.

    Instructors are held to two limits: the number of occurrences per request
    and the number of upcoming lab bookings they hold in the same shift.
    Supervision only has the (larger) per-request limit.

    Raises:
        LabLimitExceededError: either limit would be exceeded
        ValueError: no room or no instructor given
    """
    if not template.room_id or not template.instructor_id:
        raise ValueError("Lab bookings require a room and an instructor")

    limit = batch_limit(role, lab_booking_limit, supervision_batch_limit)
    if recurrence.target_count > limit:
        raise LabLimitExceededError(
            f"The limit for role {role} is {limit} occurrences per request",
            limit=limit,
            requested=recurrence.target_count,
        )

    group = catalog.get_class_group(template.class_group_id) if template.class_group_id else None
    allowed = resolve_allowed_weekdays(LAB_TYPE, class_group=group)
    mode, weekdays = narrow_weekdays(recurrence.mode, recurrence.allowed_weekdays, allowed)
    expansion = generate_dates(recurrence.start_date, mode, weekdays, recurrence.target_count, oracle,
                               max_lookahead_days)

    if role == INSTRUCTOR:
        active = active_lab_bookings(store.all(), template.instructor_id, template.shift, today or date.today())
        if len(active) + len(expansion.accepted) > lab_booking_limit:
            raise LabLimitExceededError(
                f"Instructor already holds {len(active)} upcoming lab bookings in shift {template.shift}; "
                f"adding {len(expansion.accepted)} exceeds the limit of {lab_booking_limit}",
                limit=lab_booking_limit,
                active=len(active),
                requested=len(expansion.accepted),
            )

    lab = replace(template, type=LAB_TYPE, subject=None, title=group.name if group and group.name else DEFAULT_LAB_TITLE)
    created, rejected = book_dates(lab, expansion.accepted, store, oracle, created_by=role)

    logger.info(f"Lab {lab.room_id}: {len(created)} booked, {len(rejected)} rejected, {len(expansion.skipped)} days off skipped")
    return ScheduleOutcome(
        created=created,
        rejected=rejected,
        skipped=expansion.skipped,
        requested=recurrence.target_count,
        target=recurrence.target_count,
    )
