"""
Class Scheduling Engine - conflict validation, recurrence and holiday reallocation

Validates activity bookings against double-booking and calendar blackout rules,
expands a single booking request into a multi-date recurrence, tracks how many
sessions a curriculum subject may still receive, and relocates classes that a
newly declared holiday displaced.

Every operation works on in-memory collections handed in by the caller.
Nothing here persists state; the caller stores whatever comes back.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

# Constants
SHIFTS = ['MANHA', 'TARDE', 'NOITE']
CLASS_TYPE = 'AULA'
LAB_TYPE = 'LAB_USO'
SYSTEM_ROLE = 'SYSTEM'

CONSECUTIVE = 'CONSECUTIVE'
SPECIFIC_DAYS = 'SPECIFIC_DAYS'
RECURRENCE_MODES = (CONSECUTIVE, SPECIFIC_DAYS)

DEFAULT_WEEK_DAYS = [1, 2, 3, 4, 5]  # 0 = Sunday ... 6 = Saturday
REMOTE_SUBJECT_PREFIX = 'EAD - '
REMOTE_WEEK_DAYS = [5]  # Remote subjects run on Fridays only

# Safety bounds for date walking (days visited, not wall-clock time)
CLASS_LOOKAHEAD_DAYS = 730
LAB_LOOKAHEAD_DAYS = 365
REALLOCATION_LOOKAHEAD_DAYS = 365

# Rejection / drop reasons
HOLIDAY = 'HOLIDAY'
CONFLICT = 'CONFLICT'
QUOTA_EXHAUSTED = 'QUOTA_EXHAUSTED'
UNRESOLVED_GROUP = 'UNRESOLVED_GROUP'
NO_SLOT_FOUND = 'NO_SLOT_FOUND'
LAB_LIMIT_EXCEEDED = 'LAB_LIMIT_EXCEEDED'
NOT_FOUND = 'NOT_FOUND'


class SchedulingError(Exception):
    """Base class for recoverable scheduling rejections."""

    code = 'SCHEDULING_ERROR'

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class HolidayError(SchedulingError):
    """Target date is a non-instructional day."""

    code = HOLIDAY


class ConflictError(SchedulingError):
    """Instructor, room or class group already busy in that shift."""

    code = CONFLICT


class QuotaExhaustedError(SchedulingError):
    """The subject's planned hours are already fully scheduled."""

    code = QUOTA_EXHAUSTED


class LabLimitExceededError(SchedulingError):
    """Lab booking exceeds the batch or accumulated limit for the role."""

    code = LAB_LIMIT_EXCEEDED


class NotFoundError(SchedulingError):
    code = NOT_FOUND


# Utility functions
def canonical_id(value) -> Optional[str]:
    """Normalize an identifier so numeric and string ids compare equal."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_date(value) -> date:
    """Accept a date, a datetime or an ISO 'YYYY-MM-DD' string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def week_day(day: date) -> int:
    """Weekday number with 0 = Sunday, 1 = Monday ... 6 = Saturday."""
    return day.isoweekday() % 7


def new_booking_id() -> str:
    return uuid.uuid4().hex[:12]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Booking:
    type: str  # 'AULA', 'LAB_USO', 'REUNIÃO', ...
    title: str
    date: date
    shift: str  # 'MANHA', 'TARDE' or 'NOITE'
    instructor_id: Optional[str] = None
    room_id: Optional[str] = None
    class_group_id: Optional[str] = None
    subject: Optional[str] = None  # Subject name, classes only
    id: Optional[str] = None
    created_at: Optional[str] = None
    created_by: Optional[str] = None  # Role of the creator or 'SYSTEM'

    def __post_init__(self):
        self.id = canonical_id(self.id)
        self.date = parse_date(self.date)
        self.instructor_id = canonical_id(self.instructor_id)
        self.room_id = canonical_id(self.room_id)
        self.class_group_id = canonical_id(self.class_group_id)

    @property
    def is_class(self) -> bool:
        return self.type == CLASS_TYPE

    @classmethod
    def from_dict(cls, data: dict) -> 'Booking':
        return cls(
            id=data.get('id'),
            type=data.get('type', CLASS_TYPE),
            title=data.get('title', ''),
            date=data['date'],
            shift=data['shift'],
            instructor_id=data.get('instructorId'),
            room_id=data.get('roomId'),
            class_group_id=data.get('classGroupId'),
            subject=data.get('subject'),
            created_at=data.get('createdAt'),
            created_by=data.get('createdBy'),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'date': self.date.isoformat(),
            'shift': self.shift,
            'instructorId': self.instructor_id,
            'roomId': self.room_id,
            'classGroupId': self.class_group_id,
            'subject': self.subject,
            'createdAt': self.created_at,
            'createdBy': self.created_by,
        }


@dataclass
class BlackoutEntry:
    date: date
    title: str = ''
    is_day_off: bool = True  # Only this flag affects scheduling
    category: str = 'HOLIDAY'  # Presentational

    def __post_init__(self):
        self.date = parse_date(self.date)

    @classmethod
    def from_dict(cls, data: dict) -> 'BlackoutEntry':
        return cls(
            date=data['date'],
            title=data.get('title', ''),
            is_day_off=bool(data.get('isDayOff', True)),
            category=data.get('category') or data.get('type') or 'HOLIDAY',
        )

    def to_dict(self) -> dict:
        return {
            'date': self.date.isoformat(),
            'title': self.title,
            'isDayOff': self.is_day_off,
            'category': self.category,
        }


@dataclass
class Subject:
    name: str
    hours: float
    competency_ids: list = field(default_factory=list)


@dataclass
class Course:
    id: str
    name: str = ''
    subjects: list = field(default_factory=list)  # list[Subject]
    total_classes: Optional[int] = None

    def __post_init__(self):
        self.id = canonical_id(self.id)


@dataclass
class ClassGroup:
    id: str
    name: str = ''
    course_id: Optional[str] = None
    shift: Optional[str] = None
    classes_per_day: int = 5
    week_days: list = field(default_factory=list)  # Empty means Mon-Fri

    def __post_init__(self):
        self.id = canonical_id(self.id)
        self.course_id = canonical_id(self.course_id)

    @property
    def effective_week_days(self) -> list[int]:
        return sorted(self.week_days) if self.week_days else list(DEFAULT_WEEK_DAYS)


class Catalog:
    """Read-only view of class groups and courses owned by course management."""

    def __init__(self, class_groups: Iterable[ClassGroup] = (), courses: Iterable[Course] = ()):
        self._groups = {g.id: g for g in class_groups}
        self._courses = {c.id: c for c in courses}

    def get_class_group(self, class_group_id) -> Optional[ClassGroup]:
        return self._groups.get(canonical_id(class_group_id))

    def get_course(self, course_id) -> Optional[Course]:
        return self._courses.get(canonical_id(course_id))

    def get_course_subjects(self, course_id) -> list[Subject]:
        course = self.get_course(course_id)
        return list(course.subjects) if course else []


# =============================================================================
# Calendar Oracle
# =============================================================================

class CalendarOracle:
    """Answers whether a date is a non-instructional day, and why.

    Entries are indexed by date; a date holds at most one entry and inserting
    a new entry for an existing date replaces it.
    """

    def __init__(self, entries: Iterable[BlackoutEntry] = ()):
        self._entries: dict[date, BlackoutEntry] = {}
        for entry in entries:
            self.upsert(entry)

    def lookup(self, day) -> Optional[BlackoutEntry]:
        return self._entries.get(parse_date(day))

    def is_day_off(self, day) -> bool:
        entry = self.lookup(day)
        return entry is not None and entry.is_day_off

    def upsert(self, entry: BlackoutEntry) -> Optional[BlackoutEntry]:
        previous = self._entries.get(entry.date)
        self._entries[entry.date] = entry
        return previous

    def remove(self, day) -> Optional[BlackoutEntry]:
        return self._entries.pop(parse_date(day), None)

    def entries(self) -> list[BlackoutEntry]:
        return [self._entries[d] for d in sorted(self._entries)]

    def with_extra_day_offs(self, days: Iterable, title: str = 'Bloqueio') -> 'CalendarOracle':
        """Copy of this calendar where the given dates are also days off."""
        overlay = CalendarOracle(self._entries.values())
        for day in days:
            existing = overlay.lookup(day)
            if existing is not None and existing.is_day_off:
                continue
            overlay.upsert(BlackoutEntry(
                date=day,
                title=existing.title if existing and existing.title else title,
                is_day_off=True,
                category=existing.category if existing else 'HOLIDAY',
            ))
        return overlay

    def __contains__(self, day) -> bool:
        return parse_date(day) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# Booking store
# =============================================================================

class BookingStore:
    """Bookings keyed by id, with a (date, shift) index for conflict lookups.

    Iteration follows insertion order; replacing a booking keeps its position.
    """

    def __init__(self, bookings: Iterable[Booking] = ()):
        self._by_id: dict[str, Booking] = {}
        self._by_slot: dict[tuple, dict[str, Booking]] = {}
        for booking in bookings:
            self.add(booking)

    def _index(self, booking: Booking) -> None:
        self._by_slot.setdefault((booking.date, booking.shift), {})[booking.id] = booking

    def _unindex(self, booking: Booking) -> None:
        slot = (booking.date, booking.shift)
        bucket = self._by_slot.get(slot)
        if bucket is None:
            return
        bucket.pop(booking.id, None)
        if not bucket:
            del self._by_slot[slot]

    def add(self, booking: Booking) -> Booking:
        if booking.id is None:
            booking.id = new_booking_id()
        if booking.id in self._by_id:
            raise ValueError(f"Duplicate booking id: {booking.id}")
        self._by_id[booking.id] = booking
        self._index(booking)
        return booking

    def get(self, booking_id) -> Optional[Booking]:
        return self._by_id.get(canonical_id(booking_id))

    def replace(self, booking: Booking) -> Booking:
        """Swap in a new version of an existing booking. Returns the old one."""
        previous = self._by_id.get(booking.id)
        if previous is None:
            raise NotFoundError(f"Booking {booking.id} not found", booking_id=booking.id)
        self._unindex(previous)
        self._by_id[booking.id] = booking
        self._index(booking)
        return previous

    def remove(self, booking_id) -> Optional[Booking]:
        booking = self._by_id.pop(canonical_id(booking_id), None)
        if booking is not None:
            self._unindex(booking)
        return booking

    def replace_all(self, bookings: Iterable[Booking]) -> None:
        """Replace the whole collection at once (used after reallocation)."""
        staged = BookingStore(bookings)
        self._by_id = staged._by_id
        self._by_slot = staged._by_slot

    def at(self, day, shift: str) -> list[Booking]:
        return list(self._by_slot.get((parse_date(day), shift), {}).values())

    def all(self) -> list[Booking]:
        return list(self._by_id.values())

    def __iter__(self):
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, booking_id) -> bool:
        return canonical_id(booking_id) in self._by_id


# =============================================================================
# Conflict Validator
# =============================================================================

@dataclass
class ValidationResult:
    ok: bool
    reason: Optional[str] = None  # HOLIDAY or CONFLICT when rejected
    blackout: Optional[BlackoutEntry] = None
    conflicting: Optional[Booking] = None
    resource: Optional[str] = None  # 'instructor', 'room' or 'classGroup'

    @property
    def message(self) -> str:
        if self.ok:
            return 'ok'
        if self.reason == HOLIDAY:
            title = self.blackout.title if self.blackout else ''
            return f"{self.blackout.date.isoformat()} is a non-instructional day ({title})"
        return (
            f"Schedule conflict: {self.resource} already booked on "
            f"{self.conflicting.date.isoformat()} {self.conflicting.shift} "
            f"(booking {self.conflicting.id})"
        )

    def to_error(self) -> SchedulingError:
        if self.reason == HOLIDAY:
            return HolidayError(self.message, date=self.blackout.date.isoformat())
        return ConflictError(
            self.message,
            resource=self.resource,
            conflictingId=self.conflicting.id if self.conflicting else None,
        )

    def to_dict(self) -> dict:
        return {
            'ok': self.ok,
            'reason': self.reason,
            'message': self.message,
            'resource': self.resource,
            'conflictingId': self.conflicting.id if self.conflicting else None,
            'blackout': self.blackout.to_dict() if self.blackout else None,
        }


def find_clash(candidate: Booking, other: Booking) -> Optional[str]:
    """Which resource the two same-shift bookings both claim, if any.

    Missing identifiers never clash.
    """
    if candidate.instructor_id and other.instructor_id == candidate.instructor_id:
        return 'instructor'
    if candidate.room_id and other.room_id == candidate.room_id:
        return 'room'
    if candidate.class_group_id and other.class_group_id == candidate.class_group_id:
        return 'classGroup'
    return None


def validate_booking(candidate: Booking, store: BookingStore, oracle: CalendarOracle,
                     exclude_id=None) -> ValidationResult:
    """Accept or reject a candidate booking.

    A day off rejects with HOLIDAY before any booking is looked at. Otherwise
    any other booking in the same date and shift that shares the instructor,
    the room or (when set) the class group rejects with CONFLICT.

    Args:
        candidate: Proposed booking
        store: Active bookings
        oracle: Calendar blackout lookup
        exclude_id: Booking id to ignore (the prior version of an update)
    """
    blackout = oracle.lookup(candidate.date)
    if blackout is not None and blackout.is_day_off:
        return ValidationResult(ok=False, reason=HOLIDAY, blackout=blackout)

    excluded = canonical_id(exclude_id)
    for other in store.at(candidate.date, candidate.shift):
        if excluded is not None and other.id == excluded:
            continue
        resource = find_clash(candidate, other)
        if resource:
            return ValidationResult(ok=False, reason=CONFLICT, conflicting=other, resource=resource)

    return ValidationResult(ok=True)


def book(candidate: Booking, store: BookingStore, oracle: CalendarOracle,
         created_by: Optional[str] = None) -> Booking:
    """Validate and append a new booking, raising HolidayError / ConflictError."""
    result = validate_booking(candidate, store, oracle)
    if not result.ok:
        logger.debug(f"Booking rejected on {candidate.date}: {result.message}")
        raise result.to_error()

    booking = replace(
        candidate,
        id=candidate.id or new_booking_id(),
        created_at=candidate.created_at or utc_now_iso(),
        created_by=created_by or candidate.created_by or SYSTEM_ROLE,
    )
    return store.add(booking)


def rebook(booking: Booking, store: BookingStore, oracle: CalendarOracle) -> Booking:
    """Replace an existing booking by id after re-validating it.

    The booking's own prior version is excluded from the conflict check.
    """
    previous = store.get(booking.id)
    if previous is None:
        raise NotFoundError(f"Booking {booking.id} not found", booking_id=booking.id)

    result = validate_booking(booking, store, oracle, exclude_id=booking.id)
    if not result.ok:
        raise result.to_error()

    updated = replace(
        booking,
        created_at=booking.created_at or previous.created_at,
        created_by=booking.created_by or previous.created_by,
    )
    store.replace(updated)
    return updated


# =============================================================================
# Recurrence Generator
# =============================================================================

@dataclass
class SkippedDate:
    date: date
    title: str

    def to_dict(self) -> dict:
        return {'date': self.date.isoformat(), 'title': self.title}


@dataclass
class RecurrenceResult:
    accepted: list  # list[date]
    skipped: list  # list[SkippedDate]
    requested: int

    @property
    def is_complete(self) -> bool:
        """False when the lookahead bound ran out before the target count."""
        return len(self.accepted) >= self.requested

    def to_dict(self) -> dict:
        return {
            'accepted': [d.isoformat() for d in self.accepted],
            'skipped': [s.to_dict() for s in self.skipped],
            'requested': self.requested,
            'isComplete': self.is_complete,
        }


def matches_pattern(day: date, mode: str, allowed_weekdays) -> bool:
    if mode == CONSECUTIVE:
        return True
    # Empty selection means any day
    return not allowed_weekdays or week_day(day) in allowed_weekdays


def generate_dates(start, mode: str, allowed_weekdays, target_count: int,
                   oracle: CalendarOracle,
                   max_lookahead_days: int = CLASS_LOOKAHEAD_DAYS) -> RecurrenceResult:
    """Expand a recurrence into concrete dates, skipping days off.

    Walks forward one day at a time from `start` (inclusive). Days that match
    the pattern but are blackouts are reported in `skipped` and do not count
    toward the target. The walk visits at most `max_lookahead_days` days and stops at
    `date.max`, so fewer dates than requested may come back; that is not an error.

    Args:
        start: First candidate date
        mode: CONSECUTIVE or SPECIFIC_DAYS
        allowed_weekdays: Weekday numbers (0 = Sunday) for SPECIFIC_DAYS
        target_count: Number of dates wanted
        oracle: Calendar blackout lookup
        max_lookahead_days: Safety bound on days visited

    Returns:
        RecurrenceResult with accepted dates and skipped blackout days
    """
    if mode not in RECURRENCE_MODES:
        raise ValueError(f"Unknown recurrence mode: {mode}")

    accepted: list[date] = []
    skipped: list[SkippedDate] = []
    if target_count <= 0:
        return RecurrenceResult(accepted=accepted, skipped=skipped, requested=max(target_count, 0))

    weekdays = set(allowed_weekdays or [])
    current = parse_date(start)

    for _ in range(max_lookahead_days):
        if len(accepted) >= target_count:
            break
        if matches_pattern(current, mode, weekdays):
            entry = oracle.lookup(current)
            if entry is not None and entry.is_day_off:
                skipped.append(SkippedDate(date=current, title=entry.title))
            else:
                accepted.append(current)
        if current == date.max:
            break
        current += timedelta(days=1)

    if len(accepted) < target_count:
        logger.info(
            f"Recurrence from {parse_date(start)} found {len(accepted)}/{target_count} dates "
            f"within {max_lookahead_days} days"
        )

    return RecurrenceResult(accepted=accepted, skipped=skipped, requested=target_count)


def resolve_allowed_weekdays(booking_type: str, subject: Optional[str] = None,
                             class_group: Optional[ClassGroup] = None) -> Optional[list[int]]:
    """Weekdays a booking may fall on, or None when any day is allowed.

    Remote ('EAD - ') classes are Friday only regardless of the class group.
    Classes and lab sessions tied to a class group follow its configured days.
    """
    if booking_type == CLASS_TYPE and subject and subject.startswith(REMOTE_SUBJECT_PREFIX):
        return list(REMOTE_WEEK_DAYS)
    if booking_type in (CLASS_TYPE, LAB_TYPE) and class_group and class_group.week_days:
        return sorted(class_group.week_days)
    return None


# =============================================================================
# Subject Quota Calculator
# =============================================================================

def hours_per_lesson_day(classes_per_day: int) -> float:
    """Instructional hours in one lesson day: 4 -> 4h, 6 -> 5h, else 0.75h per class."""
    if classes_per_day <= 0:
        raise ValueError(f"classes_per_day must be positive, got {classes_per_day}")
    if classes_per_day == 4:
        return 4.0
    if classes_per_day == 6:
        return 5.0
    return classes_per_day * 0.75


def hours_per_lesson(classes_per_day: int) -> float:
    """Length of a single lesson in hours (4 -> 1h, 6 -> 5/6h, else 0.75h)."""
    if classes_per_day <= 0:
        raise ValueError(f"classes_per_day must be positive, got {classes_per_day}")
    if classes_per_day == 4:
        return 1.0
    if classes_per_day == 6:
        return 5.0 / 6.0
    return 0.75


def total_lesson_days_needed(subject_hours: float, classes_per_day: int) -> int:
    return math.ceil(subject_hours / hours_per_lesson_day(classes_per_day))


def count_scheduled_sessions(bookings: Iterable[Booking], class_group_id, subject: str,
                             exclude_id=None) -> int:
    group_id = canonical_id(class_group_id)
    excluded = canonical_id(exclude_id)
    return sum(
        1 for b in bookings
        if b.is_class
        and b.class_group_id == group_id
        and b.subject == subject
        and (excluded is None or b.id != excluded)
    )


class QuotaCalculator:
    """Remaining-session budget per class group and subject.

    `catalog` must provide get_class_group(id) and get_course_subjects(course_id).
    """

    def __init__(self, bookings, catalog):
        self.bookings = bookings
        self.catalog = catalog

    def resolve(self, class_group_id, subject_name: str) -> tuple:
        group = self.catalog.get_class_group(class_group_id)
        if group is None:
            return None, None
        for subject in self.catalog.get_course_subjects(group.course_id):
            if subject.name == subject_name:
                return group, subject
        return group, None

    def lessons_needed(self, class_group_id, subject_name: str) -> Optional[int]:
        group, subject = self.resolve(class_group_id, subject_name)
        if group is None or subject is None:
            return None
        return total_lesson_days_needed(subject.hours, group.classes_per_day)

    def remaining_quota(self, class_group_id, subject_name: str, exclude_booking_id=None) -> Optional[int]:
        """Sessions still schedulable for the subject, or None when uncapped.

        The quota is uncapped when the class group or the subject cannot be
        resolved from the catalog.
        """
        needed = self.lessons_needed(class_group_id, subject_name)
        if needed is None:
            return None
        scheduled = count_scheduled_sessions(self.bookings, class_group_id, subject_name, exclude_booking_id)
        return max(0, needed - scheduled)

    def ensure_quota(self, class_group_id, subject_name: str, exclude_booking_id=None) -> Optional[int]:
        remaining = self.remaining_quota(class_group_id, subject_name, exclude_booking_id)
        if remaining == 0:
            raise QuotaExhaustedError(
                f"Subject '{subject_name}' already reached its planned hours for class group {class_group_id}",
                classGroupId=canonical_id(class_group_id),
                subject=subject_name,
            )
        return remaining


@dataclass
class GroupProgress:
    class_group_id: str
    total_hours: float
    expected_lessons: int
    scheduled_days: int
    scheduled_lessons: int
    progress_percent: float
    remaining_days: int

    def to_dict(self) -> dict:
        return {
            'classGroupId': self.class_group_id,
            'totalHours': self.total_hours,
            'expectedLessons': self.expected_lessons,
            'scheduledDays': self.scheduled_days,
            'scheduledLessons': self.scheduled_lessons,
            'progressPercent': round(self.progress_percent, 2),
            'remainingDays': self.remaining_days,
        }


def group_progress(group: ClassGroup, course: Optional[Course], bookings: Iterable[Booking]) -> GroupProgress:
    """Planned versus scheduled lessons for a whole class group."""
    total_hours = sum(s.hours for s in course.subjects) if course else 0
    computed_lessons = math.ceil(total_hours / hours_per_lesson(group.classes_per_day))
    expected = (course.total_classes if course and course.total_classes else None) or computed_lessons

    scheduled_days = sum(1 for b in bookings if b.is_class and b.class_group_id == group.id)
    scheduled_lessons = scheduled_days * group.classes_per_day

    percent = min(scheduled_lessons / expected * 100, 100.0) if expected > 0 else 0.0
    missing_lessons = max(0, expected - scheduled_lessons)

    return GroupProgress(
        class_group_id=group.id,
        total_hours=total_hours,
        expected_lessons=expected,
        scheduled_days=scheduled_days,
        scheduled_lessons=scheduled_lessons,
        progress_percent=percent,
        remaining_days=math.ceil(missing_lessons / group.classes_per_day),
    )


def lesson_number(bookings: Iterable[Booking], booking_id) -> Optional[tuple]:
    """1-based position of a class among its group+subject sessions, and the total."""
    bookings = list(bookings)
    target_id = canonical_id(booking_id)
    target = next((b for b in bookings if b.id == target_id), None)
    if target is None or not target.is_class or not target.class_group_id or not target.subject:
        return None

    sessions = sorted(
        (b for b in bookings
         if b.is_class and b.class_group_id == target.class_group_id and b.subject == target.subject),
        key=lambda b: b.date,
    )
    index = next(i for i, b in enumerate(sessions) if b.id == target_id)
    return index + 1, len(sessions)


# =============================================================================
# Holiday Reallocator
# =============================================================================

@dataclass
class Relocation:
    original: Booking
    relocated: Booking

    def to_dict(self) -> dict:
        return {
            'originalId': self.original.id,
            'originalDate': self.original.date.isoformat(),
            'newId': self.relocated.id,
            'newDate': self.relocated.date.isoformat(),
        }


@dataclass
class DroppedBooking:
    booking: Booking
    reason: str  # UNRESOLVED_GROUP or NO_SLOT_FOUND

    def to_dict(self) -> dict:
        return {'booking': self.booking.to_dict(), 'reason': self.reason}


@dataclass
class ReallocationResult:
    bookings: list  # Replacement collection for the caller to persist
    moved: list = field(default_factory=list)  # list[Relocation]
    dropped: list = field(default_factory=list)  # list[DroppedBooking]

    @property
    def moved_count(self) -> int:
        return len(self.moved)

    @property
    def dropped_count(self) -> int:
        return len(self.dropped)

    @property
    def changed(self) -> bool:
        return bool(self.moved or self.dropped)


def last_session_date(bookings: Iterable[Booking], class_group_id, subject: Optional[str]) -> Optional[date]:
    dates = [
        b.date for b in bookings
        if b.is_class and b.class_group_id == canonical_id(class_group_id) and b.subject == subject
    ]
    return max(dates) if dates else None


def reallocate(bookings: Iterable[Booking], new_blackout_dates: Iterable,
               oracle: CalendarOracle,
               get_class_group: Callable[[str], Optional[ClassGroup]],
               max_lookahead_days: int = REALLOCATION_LOOKAHEAD_DAYS,
               id_factory: Callable[[], str] = new_booking_id) -> ReallocationResult:
    """Move classes displaced by newly declared blackout dates.

    Each displaced class is re-homed after the latest remaining session of the
    same class group and subject, on the first day that follows the group's
    weekdays and is not a day off under either the existing calendar or the
    new blackout dates.

    Displaced classes are processed in input order and each relocation is
    visible to the next one, so the final layout depends on that order.

    Args:
        bookings: Current booking collection (left untouched)
        new_blackout_dates: Dates just declared non-instructional
        oracle: Calendar as it was before the new dates
        get_class_group: Lookup for the class group of a booking
        max_lookahead_days: Safety bound on the search for a new date
        id_factory: Generates ids for relocated bookings

    Returns:
        ReallocationResult whose `bookings` replaces the caller's collection
    """
    bookings = list(bookings)
    blocked = {parse_date(d) for d in new_blackout_dates}

    def displaced(b: Booking) -> bool:
        return b.is_class and b.date in blocked

    conflicting = [b for b in bookings if displaced(b)]
    if not conflicting:
        return ReallocationResult(bookings=bookings)

    working = [b for b in bookings if not displaced(b)]
    calendar = oracle.with_extra_day_offs(blocked)
    result = ReallocationResult(bookings=working)

    for booking in conflicting:
        group = get_class_group(booking.class_group_id) if booking.class_group_id else None
        if group is None:
            logger.warning(f"Dropping class {booking.id} on {booking.date}: class group {booking.class_group_id} not found")
            result.dropped.append(DroppedBooking(booking=booking, reason=UNRESOLVED_GROUP))
            continue

        base = last_session_date(working, booking.class_group_id, booking.subject) or booking.date
        found = generate_dates(
            base + timedelta(days=1),
            SPECIFIC_DAYS,
            group.effective_week_days,
            1,
            calendar,
            max_lookahead_days=max_lookahead_days,
        ) if base < date.max else None
        if found is None or not found.accepted:
            logger.warning(
                f"Dropping class {booking.id} on {booking.date}: no free day within "
                f"{max_lookahead_days} days after {base}"
            )
            result.dropped.append(DroppedBooking(booking=booking, reason=NO_SLOT_FOUND))
            continue

        relocated = replace(booking, id=id_factory(), date=found.accepted[0])
        working.append(relocated)
        result.moved.append(Relocation(original=booking, relocated=relocated))
        logger.debug(f"Moved class {booking.id} ({booking.subject}) from {booking.date} to {relocated.date}")

    logger.info(f"Reallocation: {result.moved_count} moved, {result.dropped_count} dropped")
    return result


def declare_blackouts(entries: Iterable[BlackoutEntry], oracle: CalendarOracle, store: BookingStore,
                      get_class_group: Callable[[str], Optional[ClassGroup]],
                      max_lookahead_days: int = REALLOCATION_LOOKAHEAD_DAYS) -> ReallocationResult:
    """Record calendar entries and relocate classes on the new days off.

    The store is swapped for the reallocated collection in one step.
    """
    entries = list(entries)
    previous = CalendarOracle(oracle.entries())
    for entry in entries:
        oracle.upsert(entry)

    day_offs = [e.date for e in entries if e.is_day_off]
    result = reallocate(store.all(), day_offs, previous, get_class_group, max_lookahead_days)
    if result.changed:
        store.replace_all(result.bookings)
    return result


# =============================================================================
# Request flow
# =============================================================================

@dataclass
class RecurrenceRequest:
    start_date: date
    mode: str = CONSECUTIVE
    allowed_weekdays: list = field(default_factory=list)
    target_count: int = 1

    def __post_init__(self):
        self.start_date = parse_date(self.start_date)


@dataclass
class BookingRejection:
    date: date
    reason: str
    message: str

    def to_dict(self) -> dict:
        return {'date': self.date.isoformat(), 'reason': self.reason, 'message': self.message}


@dataclass
class ScheduleOutcome:
    created: list  # list[Booking]
    rejected: list  # list[BookingRejection]
    skipped: list  # list[SkippedDate]
    requested: int
    target: int  # Requested count after the quota cap
    remaining_quota: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return len(self.created) >= self.target

    @property
    def status(self) -> str:
        if not self.created:
            return 'empty'
        return 'ok' if self.is_complete else 'partial'

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'created': [b.to_dict() for b in self.created],
            'rejected': [r.to_dict() for r in self.rejected],
            'skipped': [s.to_dict() for s in self.skipped],
            'requested': self.requested,
            'target': self.target,
            'remainingQuota': self.remaining_quota,
            'isComplete': self.is_complete,
        }


def narrow_weekdays(mode: str, requested, allowed: Optional[list]) -> tuple:
    """Apply a weekday restriction to the requested recurrence pattern."""
    if allowed is None:
        return mode, list(requested or [])
    selected = [d for d in (requested or []) if d in allowed]
    return SPECIFIC_DAYS, selected or list(allowed)


def book_dates(template: Booking, dates: Iterable[date], store: BookingStore, oracle: CalendarOracle,
               created_by: Optional[str] = None) -> tuple:
    """Validate and append one booking per date; returns (created, rejected)."""
    created = []
    rejected = []
    for day in dates:
        candidate = replace(template, id=None, date=day, created_at=None)
        try:
            created.append(book(candidate, store, oracle, created_by=created_by))
        except (HolidayError, ConflictError) as e:
            rejected.append(BookingRejection(date=day, reason=e.code, message=e.message))
    return created, rejected


def schedule_recurring(template: Booking, recurrence: RecurrenceRequest, store: BookingStore,
                       oracle: CalendarOracle, catalog: Catalog,
                       created_by: Optional[str] = None,
                       max_lookahead_days: int = CLASS_LOOKAHEAD_DAYS) -> ScheduleOutcome:
    """Turn one booking request into validated bookings.

    Flow: quota cap (classes only) -> weekday restriction -> recurrence
    expansion -> per-date validation -> append to the store.

    Raises:
        QuotaExhaustedError: the subject has no sessions left
        ValueError: a class without an instructor, or an invalid recurrence
    """
    if template.is_class and not template.instructor_id:
        raise ValueError("Classes require an instructor")

    requested = recurrence.target_count
    target = requested
    remaining = None
    group = catalog.get_class_group(template.class_group_id) if template.class_group_id else None

    if template.is_class and template.subject and template.class_group_id:
        remaining = QuotaCalculator(store.all(), catalog).ensure_quota(template.class_group_id, template.subject)
        if remaining is not None:
            target = min(requested, remaining)

    allowed = resolve_allowed_weekdays(template.type, template.subject, group)
    mode, weekdays = narrow_weekdays(recurrence.mode, recurrence.allowed_weekdays, allowed)

    expansion = generate_dates(recurrence.start_date, mode, weekdays, target, oracle, max_lookahead_days)
    created, rejected = book_dates(template, expansion.accepted, store, oracle, created_by)

    logger.info(
        f"Scheduled {len(created)}/{requested} '{template.title}' ({template.type}), "
        f"{len(rejected)} rejected, {len(expansion.skipped)} days off skipped"
    )
    return ScheduleOutcome(
        created=created,
        rejected=rejected,
        skipped=expansion.skipped,
        requested=requested,
        target=target,
        remaining_quota=remaining,
    )
