"""
FastAPI service for the class scheduling engine.

Stateless: every request carries the bookings, calendar and class data it
works on, and responses return the collections the caller should persist.
Designed for deployment on Google Cloud Run.
"""

import os
import time
import logging
from datetime import date
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional, Union

from scheduler import (
    CLASS_TYPE, CONSECUTIVE, CONFLICT, HOLIDAY, NOT_FOUND, SYSTEM_ROLE,
    BlackoutEntry, Booking, BookingStore, CalendarOracle, Catalog, ClassGroup, Course,
    NotFoundError, RecurrenceRequest, SchedulingError, Subject, QuotaCalculator,
    declare_blackouts, generate_dates, group_progress, lesson_number, rebook,
    reallocate, schedule_recurring, validate_booking,
)
from instructors import Instructor, book_lab, rank_instructors
from national_holidays import missing_national_holidays

# Configure logging
DEBUG_SCHEDULER = os.environ.get("DEBUG_SCHEDULER", "").lower() in ("1", "true", "yes")
logging.basicConfig(
    level=logging.DEBUG if DEBUG_SCHEDULER else logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

if DEBUG_SCHEDULER:
    logger.info("DEBUG_SCHEDULER is enabled - verbose logging active")

# Safety bounds and limits (days visited / occurrences)
CLASS_LOOKAHEAD_DAYS = int(os.environ.get("CLASS_LOOKAHEAD_DAYS", 730))
LAB_LOOKAHEAD_DAYS = int(os.environ.get("LAB_LOOKAHEAD_DAYS", 365))
REALLOCATION_LOOKAHEAD_DAYS = int(os.environ.get("REALLOCATION_LOOKAHEAD_DAYS", 365))
LAB_BOOKING_LIMIT = int(os.environ.get("LAB_BOOKING_LIMIT", 5))
SUPERVISION_BATCH_LIMIT = int(os.environ.get("SUPERVISION_BATCH_LIMIT", 60))

app = FastAPI(
    title="Class Scheduling API",
    description="Conflict validation, recurrence and holiday reallocation for class scheduling",
    version="1.0.0"
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]

# Also allow origin from environment variable
if os.environ.get("FRONTEND_URL"):
    ALLOWED_ORIGINS.append(os.environ["FRONTEND_URL"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rejections the caller can fix by adjusting the request
ERROR_STATUS = {
    HOLIDAY: 409,
    CONFLICT: 409,
    NOT_FOUND: 404,
}

Identifier = Union[str, int]


class BookingModel(BaseModel):
    id: Optional[Identifier] = None
    type: str = CLASS_TYPE
    title: str = ""
    date: str
    shift: str
    instructorId: Optional[Identifier] = None
    roomId: Optional[Identifier] = None
    classGroupId: Optional[Identifier] = None
    subject: Optional[str] = None
    createdAt: Optional[str] = None
    createdBy: Optional[str] = None


class ActivityModel(BaseModel):
    """A booking request without a date; dates come from the recurrence."""
    type: str = CLASS_TYPE
    title: str = ""
    shift: str
    instructorId: Optional[Identifier] = None
    roomId: Optional[Identifier] = None
    classGroupId: Optional[Identifier] = None
    subject: Optional[str] = None


class BlackoutModel(BaseModel):
    date: str
    title: str = ""
    isDayOff: bool = True
    category: str = "HOLIDAY"


class SubjectModel(BaseModel):
    name: str
    hours: float
    competencyIds: list[str] = []


class CourseModel(BaseModel):
    id: Identifier
    name: str = ""
    subjects: list[SubjectModel] = []
    totalClasses: Optional[int] = None


class ClassGroupModel(BaseModel):
    id: Identifier
    name: str = ""
    courseId: Optional[Identifier] = None
    shift: Optional[str] = None
    classesPerDay: int = 5
    weekDays: Optional[list[int]] = None  # None/empty = Mon-Fri


class InstructorModel(BaseModel):
    id: Identifier
    name: str = ""
    competencyIds: list[str] = []
    workloadId: Optional[str] = None


class RecurrenceModel(BaseModel):
    startDate: str
    mode: str = CONSECUTIVE
    allowedWeekdays: list[int] = []
    targetCount: int = 1


class ScheduleState(BaseModel):
    """Collections the engine reads; shared by most requests."""
    bookings: list[BookingModel] = []
    calendar: list[BlackoutModel] = []
    classGroups: list[ClassGroupModel] = []
    courses: list[CourseModel] = []


class ValidateRequest(ScheduleState):
    candidate: BookingModel
    excludeId: Optional[Identifier] = None


class RecurrencePreviewRequest(ScheduleState):
    recurrence: RecurrenceModel
    maxLookaheadDays: Optional[int] = Field(None, gt=0, le=CLASS_LOOKAHEAD_DAYS)


class QuotaRequest(ScheduleState):
    classGroupId: Identifier
    subject: str
    excludeBookingId: Optional[Identifier] = None


class ScheduleRequest(ScheduleState):
    activity: ActivityModel
    recurrence: RecurrenceModel
    role: Optional[str] = None


class UpdateRequest(ScheduleState):
    booking: BookingModel


class ReallocateRequest(ScheduleState):
    newBlackoutDates: list[str]


class NationalHolidaysRequest(ScheduleState):
    year: int


class CalendarEntriesRequest(ScheduleState):
    entries: list[BlackoutModel]


class LabBookingRequest(ScheduleState):
    activity: ActivityModel
    recurrence: RecurrenceModel
    role: str = "INSTRUCTOR"
    today: Optional[str] = None


class RankRequest(ScheduleState):
    instructors: list[InstructorModel]
    date: str
    shift: str
    type: str = CLASS_TYPE
    requiredCompetencyIds: list[str] = []
    excludeId: Optional[Identifier] = None


class ProgressRequest(ScheduleState):
    classGroupId: Identifier


class LessonNumberRequest(ScheduleState):
    bookingId: Identifier


class ScheduleResponse(BaseModel):
    status: str
    created: list
    rejected: list
    skipped: list
    requested: int
    target: int
    remainingQuota: Optional[int] = None
    isComplete: bool
    bookings: list
    elapsedSeconds: float


class ReallocationResponse(BaseModel):
    movedCount: int
    droppedCount: int
    moved: list
    dropped: list
    bookings: list
    calendar: list = []
    added: list = []


# Conversions between request models and engine types
def to_store(state: ScheduleState) -> BookingStore:
    return BookingStore(Booking.from_dict(b.model_dump()) for b in state.bookings)


def to_oracle(state: ScheduleState) -> CalendarOracle:
    return CalendarOracle(BlackoutEntry.from_dict(c.model_dump()) for c in state.calendar)


def to_catalog(state: ScheduleState) -> Catalog:
    groups = [
        ClassGroup(
            id=g.id,
            name=g.name,
            course_id=g.courseId,
            shift=g.shift,
            classes_per_day=g.classesPerDay,
            week_days=list(g.weekDays or []),
        )
        for g in state.classGroups
    ]
    courses = [
        Course(
            id=c.id,
            name=c.name,
            subjects=[Subject(name=s.name, hours=s.hours, competency_ids=list(s.competencyIds)) for s in c.subjects],
            total_classes=c.totalClasses,
        )
        for c in state.courses
    ]
    return Catalog(groups, courses)


def to_template(activity: ActivityModel, start: str) -> Booking:
    return Booking(
        type=activity.type,
        title=activity.title,
        date=start,
        shift=activity.shift,
        instructor_id=activity.instructorId,
        room_id=activity.roomId,
        class_group_id=activity.classGroupId,
        subject=activity.subject if activity.type == CLASS_TYPE else None,
    )


def to_recurrence(model: RecurrenceModel) -> RecurrenceRequest:
    return RecurrenceRequest(
        start_date=model.startDate,
        mode=model.mode,
        allowed_weekdays=list(model.allowedWeekdays),
        target_count=model.targetCount,
    )


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    logger.warning(f"{request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, 422),
        content={"status": "error", "code": exc.code, "message": exc.message, "details": exc.details},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning(f"{request.url.path} invalid request: {exc}")
    return JSONResponse(
        status_code=422,
        content={"status": "error", "code": "INVALID_REQUEST", "message": str(exc)},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"{request.url.path} ERROR: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "code": "INTERNAL_ERROR", "message": str(exc)},
    )


@app.get("/")
async def root():
    return {"message": "Class Scheduling API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run."""
    return {"status": "healthy", "timestamp": time.time()}


@app.post("/validate")
async def validate(request: ValidateRequest):
    """Accept or reject one candidate booking against the current bookings and calendar."""
    candidate = Booking.from_dict(request.candidate.model_dump())
    result = validate_booking(candidate, to_store(request), to_oracle(request), exclude_id=request.excludeId)
    if not result.ok:
        logger.debug(f"Validation rejected {candidate.date} {candidate.shift}: {result.message}")
    return result.to_dict()


@app.post("/recurrence")
async def preview_recurrence(request: RecurrencePreviewRequest):
    """Expand a recurrence into dates, skipping days off, without booking anything."""
    recurrence = to_recurrence(request.recurrence)
    result = generate_dates(
        recurrence.start_date,
        recurrence.mode,
        recurrence.allowed_weekdays,
        recurrence.target_count,
        to_oracle(request),
        max_lookahead_days=request.maxLookaheadDays or CLASS_LOOKAHEAD_DAYS,
    )
    return result.to_dict()


@app.post("/quota")
async def remaining_quota(request: QuotaRequest):
    """Sessions a subject may still receive in a class group (null = uncapped)."""
    calculator = QuotaCalculator(to_store(request).all(), to_catalog(request))
    return {
        "classGroupId": str(request.classGroupId),
        "subject": request.subject,
        "lessonsNeeded": calculator.lessons_needed(request.classGroupId, request.subject),
        "remainingQuota": calculator.remaining_quota(request.classGroupId, request.subject, request.excludeBookingId),
    }


@app.post("/schedule", response_model=ScheduleResponse)
async def schedule(request: ScheduleRequest):
    """
    Book an activity on every date of a recurrence.

    Classes are capped by the subject's remaining quota; dates on days off are
    skipped and dates that clash with existing bookings are rejected.
    """
    start_time = time.time()
    store = to_store(request)

    logger.info(
        f"=== SCHEDULE REQUEST === {request.activity.type} '{request.activity.title}', "
        f"count: {request.recurrence.targetCount}, existing bookings: {len(store)}"
    )
    if DEBUG_SCHEDULER:
        logger.debug(f"Recurrence: {request.recurrence.model_dump()}")

    outcome = schedule_recurring(
        to_template(request.activity, request.recurrence.startDate),
        to_recurrence(request.recurrence),
        store,
        to_oracle(request),
        to_catalog(request),
        created_by=request.role or SYSTEM_ROLE,
        max_lookahead_days=CLASS_LOOKAHEAD_DAYS,
    )

    elapsed = time.time() - start_time
    logger.info(f"=== SCHEDULE RESULT === Status: {outcome.status}, Created: {len(outcome.created)}, Time: {elapsed:.3f}s")

    return ScheduleResponse(
        **outcome.to_dict(),
        bookings=[b.to_dict() for b in store.all()],
        elapsedSeconds=elapsed,
    )


@app.post("/bookings/update")
async def update_booking(request: UpdateRequest):
    """Replace a booking by id after re-validating it against everything else."""
    store = to_store(request)
    updated = rebook(Booking.from_dict(request.booking.model_dump()), store, to_oracle(request))
    return {"booking": updated.to_dict(), "bookings": [b.to_dict() for b in store.all()]}


@app.post("/reallocate", response_model=ReallocationResponse)
async def reallocate_classes(request: ReallocateRequest):
    """Move classes that fall on newly declared blackout dates to the end of their subject."""
    catalog = to_catalog(request)
    result = reallocate(
        [Booking.from_dict(b.model_dump()) for b in request.bookings],
        request.newBlackoutDates,
        to_oracle(request),
        catalog.get_class_group,
        max_lookahead_days=REALLOCATION_LOOKAHEAD_DAYS,
    )
    if result.dropped:
        logger.warning(f"Reallocation dropped {result.dropped_count} classes")

    return ReallocationResponse(
        movedCount=result.moved_count,
        droppedCount=result.dropped_count,
        moved=[m.to_dict() for m in result.moved],
        dropped=[d.to_dict() for d in result.dropped],
        bookings=[b.to_dict() for b in result.bookings],
    )


@app.post("/calendar/national-holidays", response_model=ReallocationResponse)
async def import_holidays(request: NationalHolidaysRequest):
    """Add the year's national holidays and relocate the classes they displace."""
    oracle = to_oracle(request)
    store = to_store(request)
    catalog = to_catalog(request)

    added = missing_national_holidays(oracle, request.year)
    result = declare_blackouts(added, oracle, store, catalog.get_class_group,
                               max_lookahead_days=REALLOCATION_LOOKAHEAD_DAYS)
    return calendar_update_response(result, store, oracle, added)


@app.post("/calendar/entries", response_model=ReallocationResponse)
async def save_calendar_entries(request: CalendarEntriesRequest):
    """Record calendar entries and relocate the classes on any new day off."""
    oracle = to_oracle(request)
    store = to_store(request)
    catalog = to_catalog(request)

    entries = [BlackoutEntry.from_dict(e.model_dump()) for e in request.entries]
    logger.info(f"=== CALENDAR SAVE === {len(entries)} entries, {sum(e.is_day_off for e in entries)} days off")
    result = declare_blackouts(entries, oracle, store, catalog.get_class_group,
                               max_lookahead_days=REALLOCATION_LOOKAHEAD_DAYS)
    return calendar_update_response(result, store, oracle, entries)


def calendar_update_response(result, store: BookingStore, oracle: CalendarOracle,
                             added: list) -> ReallocationResponse:
    return ReallocationResponse(
        movedCount=result.moved_count,
        droppedCount=result.dropped_count,
        moved=[m.to_dict() for m in result.moved],
        dropped=[d.to_dict() for d in result.dropped],
        bookings=[b.to_dict() for b in store.all()],
        calendar=[e.to_dict() for e in oracle.entries()],
        added=[e.to_dict() for e in added],
    )


@app.post("/labs/book", response_model=ScheduleResponse)
async def book_laboratory(request: LabBookingRequest):
    """Book a lab over a recurrence, enforcing per-role limits."""
    start_time = time.time()
    store = to_store(request)

    outcome = book_lab(
        to_template(request.activity, request.recurrence.startDate),
        to_recurrence(request.recurrence),
        store,
        to_oracle(request),
        to_catalog(request),
        role=request.role,
        lab_booking_limit=LAB_BOOKING_LIMIT,
        supervision_batch_limit=SUPERVISION_BATCH_LIMIT,
        today=date.fromisoformat(request.today) if request.today else None,
        max_lookahead_days=LAB_LOOKAHEAD_DAYS,
    )

    return ScheduleResponse(
        **outcome.to_dict(),
        bookings=[b.to_dict() for b in store.all()],
        elapsedSeconds=time.time() - start_time,
    )


@app.post("/instructors/rank")
async def rank(request: RankRequest):
    """Instructors ordered by availability, competence and load for a date and shift."""
    instructors = [
        Instructor(id=i.id, name=i.name, competency_ids=list(i.competencyIds), workload_id=i.workloadId)
        for i in request.instructors
    ]
    ranks = rank_instructors(
        instructors,
        to_store(request).all(),
        request.date,
        request.shift,
        activity_type=request.type,
        required_competency_ids=request.requiredCompetencyIds,
        exclude_id=request.excludeId,
    )
    return {"instructors": [r.to_dict() for r in ranks]}


@app.post("/groups/progress")
async def progress(request: ProgressRequest):
    """Planned versus scheduled lessons for a class group."""
    catalog = to_catalog(request)
    group = catalog.get_class_group(request.classGroupId)
    if group is None:
        raise NotFoundError(f"Class group {request.classGroupId} not found", classGroupId=str(request.classGroupId))
    return group_progress(group, catalog.get_course(group.course_id), to_store(request).all()).to_dict()


@app.post("/bookings/lesson-number")
async def booking_lesson_number(request: LessonNumberRequest):
    """Position of a class among its subject's sessions (e.g. lesson 3 of 11)."""
    position = lesson_number(to_store(request).all(), request.bookingId)
    if position is None:
        return {"bookingId": str(request.bookingId), "lesson": None, "total": None}
    return {"bookingId": str(request.bookingId), "lesson": position[0], "total": position[1]}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
