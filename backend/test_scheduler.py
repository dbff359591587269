"""
Tests for the scheduling engine: validation, recurrence, quotas and reallocation.
"""
from datetime import date
from itertools import count

import pytest

from scheduler import (
    CLASS_TYPE, CONFLICT, CONSECUTIVE, HOLIDAY, LAB_TYPE, NO_SLOT_FOUND, SPECIFIC_DAYS,
    UNRESOLVED_GROUP,
    BlackoutEntry, Booking, BookingStore, CalendarOracle, Catalog, ClassGroup, ConflictError,
    Course, HolidayError, NotFoundError, QuotaCalculator, QuotaExhaustedError, RecurrenceRequest,
    Subject,
    book, declare_blackouts, generate_dates, group_progress, hours_per_lesson_day, lesson_number,
    reallocate, rebook, resolve_allowed_weekdays, schedule_recurring, total_lesson_days_needed,
    validate_booking, week_day,
)


def aula(day, shift='NOITE', instructor='I1', room='R1', group='G1', subject='Math', booking_id=None):
    return Booking(
        id=booking_id,
        type=CLASS_TYPE,
        title='Turma G1',
        date=day,
        shift=shift,
        instructor_id=instructor,
        room_id=room,
        class_group_id=group,
        subject=subject,
    )


def day_off(day, title='Feriado'):
    return BlackoutEntry(date=day, title=title, is_day_off=True)


@pytest.fixture
def catalog():
    course = Course(id='C1', name='Mecatrônica', subjects=[
        Subject(name='Math', hours=40),
        Subject(name='Physics', hours=20),
        Subject(name='EAD - Math', hours=8),
    ])
    group = ClassGroup(id='G1', name='Turma G1', course_id='C1', shift='NOITE',
                       classes_per_day=5, week_days=[1, 2, 3, 4, 5])
    return Catalog([group], [course])


@pytest.fixture
def ids():
    counter = count(1)
    return lambda: f'new-{next(counter)}'


def assert_unique(bookings):
    seen = set()
    for b in bookings:
        keys = [('instructor', b.date, b.shift, b.instructor_id), ('room', b.date, b.shift, b.room_id)]
        if b.class_group_id:
            keys.append(('group', b.date, b.shift, b.class_group_id))
        for key in keys:
            assert key not in seen, f"duplicate {key}"
            seen.add(key)


# --- Calendar Oracle ---

def test_oracle_lookup_and_replace_by_date():
    oracle = CalendarOracle([BlackoutEntry(date='2024-03-06', title='Reunião', is_day_off=False)])
    assert oracle.lookup('2024-03-05') is None
    assert not oracle.is_day_off('2024-03-06')

    oracle.upsert(day_off('2024-03-06', 'Recesso'))
    assert len(oracle) == 1
    assert oracle.is_day_off(date(2024, 3, 6))
    assert oracle.lookup('2024-03-06').title == 'Recesso'


def test_oracle_overlay_does_not_touch_original():
    oracle = CalendarOracle([day_off('2024-03-06')])
    overlay = oracle.with_extra_day_offs([date(2024, 3, 7)])
    assert overlay.is_day_off('2024-03-07')
    assert overlay.is_day_off('2024-03-06')
    assert not oracle.is_day_off('2024-03-07')


# --- Conflict Validator ---

def test_holiday_rejected_before_conflicts():
    store = BookingStore([aula('2024-03-06', booking_id='1')])
    oracle = CalendarOracle([day_off('2024-03-06', 'Carnaval')])
    result = validate_booking(aula('2024-03-06', instructor='I9', room='R9', group='G9'), store, oracle)
    assert not result.ok
    assert result.reason == HOLIDAY
    assert result.blackout.title == 'Carnaval'


def test_non_day_off_entry_does_not_block():
    oracle = CalendarOracle([BlackoutEntry(date='2024-03-06', title='Prova', is_day_off=False)])
    assert validate_booking(aula('2024-03-06'), BookingStore(), oracle).ok


def test_same_instructor_same_shift_conflicts():
    """Same date and shift, same instructor, different room."""
    store = BookingStore([aula('2024-03-04', booking_id='1', instructor='I1', room='R1')])
    candidate = aula('2024-03-04', instructor='I1', room='R2', group='G2')
    result = validate_booking(candidate, store, CalendarOracle())
    assert result.reason == CONFLICT
    assert result.resource == 'instructor'
    assert result.conflicting.id == '1'


@pytest.mark.parametrize('candidate,resource', [
    (dict(instructor='I2', room='R1', group='G2'), 'room'),
    (dict(instructor='I2', room='R2', group='G1'), 'classGroup'),
])
def test_room_and_group_conflicts(candidate, resource):
    store = BookingStore([aula('2024-03-04', booking_id='1')])
    result = validate_booking(aula('2024-03-04', **candidate), store, CalendarOracle())
    assert result.reason == CONFLICT
    assert result.resource == resource


def test_different_shift_or_date_is_free():
    store = BookingStore([aula('2024-03-04', booking_id='1')])
    assert validate_booking(aula('2024-03-04', shift='MANHA'), store, CalendarOracle()).ok
    assert validate_booking(aula('2024-03-05'), store, CalendarOracle()).ok


def test_activity_without_group_ignores_group_rule():
    meeting = Booking(type='REUNIÃO', title='Reunião', date='2024-03-04', shift='NOITE',
                      instructor_id='I2', room_id='R2')
    store = BookingStore([aula('2024-03-04', booking_id='1')])
    assert validate_booking(meeting, store, CalendarOracle()).ok


def test_ids_compared_as_strings():
    store = BookingStore([Booking(id=5, type=CLASS_TYPE, title='T', date='2024-03-04', shift='NOITE',
                                  instructor_id=7, room_id=3)])
    candidate = Booking(type=CLASS_TYPE, title='T', date='2024-03-04', shift='NOITE',
                        instructor_id='7', room_id='99')
    assert validate_booking(candidate, store, CalendarOracle()).reason == CONFLICT
    assert validate_booking(candidate, store, CalendarOracle(), exclude_id='5').ok
    assert validate_booking(candidate, store, CalendarOracle(), exclude_id=5).ok


def test_book_raises_typed_errors():
    store = BookingStore([aula('2024-03-04', booking_id='1')])
    oracle = CalendarOracle([day_off('2024-03-05')])
    with pytest.raises(ConflictError):
        book(aula('2024-03-04'), store, oracle)
    with pytest.raises(HolidayError):
        book(aula('2024-03-05'), store, oracle)

    created = book(aula('2024-03-07'), store, oracle, created_by='SUPERVISION')
    assert created.id is not None
    assert created.created_by == 'SUPERVISION'
    assert created.created_at is not None
    assert len(store) == 2


def test_rebook_excludes_its_own_identity():
    store = BookingStore([aula('2024-03-04', booking_id='1'), aula('2024-03-05', booking_id='2')])
    oracle = CalendarOracle()

    # Same slot as before: only clashes with itself
    updated = rebook(aula('2024-03-04', booking_id='1', room='R7'), store, oracle)
    assert store.get('1').room_id == 'R7'
    assert updated.id == '1'

    with pytest.raises(ConflictError):
        rebook(aula('2024-03-05', booking_id='1'), store, oracle)
    assert store.get('1').date == date(2024, 3, 4)

    with pytest.raises(NotFoundError):
        rebook(aula('2024-03-06', booking_id='404'), store, oracle)


def test_store_reindexes_on_replace_and_remove():
    store = BookingStore([aula('2024-03-04', booking_id='1')])
    store.replace(aula('2024-03-08', booking_id='1'))
    assert store.at('2024-03-04', 'NOITE') == []
    assert [b.id for b in store.at('2024-03-08', 'NOITE')] == ['1']

    removed = store.remove(1)
    assert removed.id == '1'
    assert store.at('2024-03-08', 'NOITE') == []
    assert len(store) == 0


def test_store_rejects_duplicate_ids():
    with pytest.raises(ValueError):
        BookingStore([aula('2024-03-04', booking_id='1'), aula('2024-03-05', booking_id='1')])


# --- Recurrence Generator ---

def test_specific_days_skips_holiday():
    oracle = CalendarOracle([day_off('2024-03-06', 'Recesso')])
    result = generate_dates('2024-03-04', SPECIFIC_DAYS, [1, 2, 3, 4, 5], 5, oracle)

    assert result.accepted == [
        date(2024, 3, 4), date(2024, 3, 5), date(2024, 3, 7), date(2024, 3, 8), date(2024, 3, 11),
    ]
    assert [(s.date, s.title) for s in result.skipped] == [(date(2024, 3, 6), 'Recesso')]
    assert result.is_complete


def test_consecutive_includes_weekends():
    result = generate_dates('2024-03-08', CONSECUTIVE, [1], 3, CalendarOracle())
    assert result.accepted == [date(2024, 3, 8), date(2024, 3, 9), date(2024, 3, 10)]


def test_empty_weekday_selection_matches_any_day():
    result = generate_dates('2024-03-08', SPECIFIC_DAYS, [], 2, CalendarOracle())
    assert result.accepted == [date(2024, 3, 8), date(2024, 3, 9)]


def test_lookahead_bound_returns_partial_result():
    result = generate_dates('2024-03-04', SPECIFIC_DAYS, [1], 5, CalendarOracle(), max_lookahead_days=14)
    assert result.accepted == [date(2024, 3, 4), date(2024, 3, 11)]
    assert result.requested == 5
    assert not result.is_complete


def test_non_positive_target_is_empty():
    result = generate_dates('2024-03-04', CONSECUTIVE, [], 0, CalendarOracle())
    assert result.accepted == []
    assert result.skipped == []


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        generate_dates('2024-03-04', 'WEEKLY', [], 1, CalendarOracle())


def test_recurrence_is_deterministic():
    oracle = CalendarOracle([day_off('2024-03-06'), day_off('2024-03-13')])
    first = generate_dates('2024-03-04', SPECIFIC_DAYS, [1, 3], 6, oracle)
    second = generate_dates('2024-03-04', SPECIFIC_DAYS, [1, 3], 6, oracle)
    assert first == second
    assert all(week_day(d) in (1, 3) for d in first.accepted)


def test_allowed_weekdays_resolution(catalog):
    group = catalog.get_class_group('G1')
    assert resolve_allowed_weekdays(CLASS_TYPE, 'EAD - Math', group) == [5]
    assert resolve_allowed_weekdays(CLASS_TYPE, 'Math', group) == [1, 2, 3, 4, 5]
    assert resolve_allowed_weekdays(LAB_TYPE, None, group) == [1, 2, 3, 4, 5]
    assert resolve_allowed_weekdays('REUNIÃO', None, group) is None
    assert resolve_allowed_weekdays(CLASS_TYPE, 'Math', ClassGroup(id='G2')) is None


# --- Subject Quota Calculator ---

@pytest.mark.parametrize('classes_per_day,hours', [(4, 4.0), (5, 3.75), (6, 5.0), (8, 6.0), (2, 1.5)])
def test_hours_per_lesson_day_table(classes_per_day, hours):
    assert hours_per_lesson_day(classes_per_day) == hours


def test_hours_per_lesson_day_requires_positive_classes():
    with pytest.raises(ValueError):
        hours_per_lesson_day(0)


def test_forty_hours_at_five_classes_needs_eleven_days(catalog):
    assert total_lesson_days_needed(40, 5) == 11

    store = BookingStore()
    for day in range(4, 15):
        store.add(aula(date(2024, 3, day), booking_id=f'b{day}'))
    calculator = QuotaCalculator(store.all(), catalog)
    assert calculator.remaining_quota('G1', 'Math') == 0

    request = RecurrenceRequest(start_date='2024-04-01', mode=SPECIFIC_DAYS, allowed_weekdays=[1, 2, 3, 4, 5],
                                target_count=1)
    with pytest.raises(QuotaExhaustedError):
        schedule_recurring(aula('2024-04-01'), request, store, CalendarOracle(), catalog)


def test_quota_decreases_by_one_per_booking(catalog):
    store = BookingStore()
    previous = QuotaCalculator(store.all(), catalog).remaining_quota('G1', 'Physics')
    assert previous == 6  # ceil(20 / 3.75)

    for i in range(8):
        store.add(aula(date(2024, 3, 1 + i), subject='Physics', booking_id=f'p{i}'))
        remaining = QuotaCalculator(store.all(), catalog).remaining_quota('G1', 'Physics')
        assert remaining == max(0, previous - 1)
        assert remaining >= 0
        previous = remaining


def test_quota_ignores_other_types_and_excluded_booking(catalog):
    bookings = [
        aula('2024-03-04', booking_id='1'),
        aula('2024-03-05', booking_id='2'),
        Booking(id='3', type=LAB_TYPE, title='Lab', date='2024-03-06', shift='NOITE',
                room_id='LAB1', instructor_id='I1', class_group_id='G1', subject='Math'),
    ]
    calculator = QuotaCalculator(bookings, catalog)
    assert calculator.remaining_quota('G1', 'Math') == 9
    assert calculator.remaining_quota('G1', 'Math', exclude_booking_id='2') == 10


def test_unresolved_subject_is_uncapped(catalog):
    calculator = QuotaCalculator([], catalog)
    assert calculator.remaining_quota('G1', 'History') is None
    assert calculator.remaining_quota('G404', 'Math') is None


def test_group_progress(catalog):
    group = catalog.get_class_group('G1')
    course = catalog.get_course('C1')
    bookings = [aula(date(2024, 3, d), booking_id=str(d)) for d in (4, 5, 6, 7)]

    progress = group_progress(group, course, bookings)
    assert progress.total_hours == 68
    assert progress.expected_lessons == 91  # ceil(68 / 0.75)
    assert progress.scheduled_lessons == 20
    assert progress.remaining_days == 15  # ceil(71 / 5)


def test_lesson_number_orders_by_date():
    bookings = [
        aula('2024-03-11', booking_id='c'),
        aula('2024-03-04', booking_id='a'),
        aula('2024-03-06', booking_id='b', room='R2', instructor='I2'),
        aula('2024-03-05', booking_id='x', subject='Physics'),
    ]
    assert lesson_number(bookings, 'b') == (2, 3)
    assert lesson_number(bookings, 'x') == (1, 1)
    assert lesson_number(bookings, 'missing') is None


# --- Request flow ---

def test_schedule_recurring_books_valid_dates(catalog):
    store = BookingStore()
    oracle = CalendarOracle([day_off('2024-03-06', 'Recesso')])
    request = RecurrenceRequest(start_date='2024-03-04', mode=SPECIFIC_DAYS,
                                allowed_weekdays=[1, 2, 3, 4, 5], target_count=5)

    outcome = schedule_recurring(aula('2024-03-04'), request, store, oracle, catalog, created_by='SUPERVISION')

    assert [b.date.day for b in outcome.created] == [4, 5, 7, 8, 11]
    assert [s.date for s in outcome.skipped] == [date(2024, 3, 6)]
    assert outcome.status == 'ok'
    assert outcome.remaining_quota == 11
    assert len(store) == 5
    assert all(b.created_by == 'SUPERVISION' for b in store)
    assert_unique(store.all())
    assert not any(oracle.is_day_off(b.date) for b in store if b.is_class)


def test_schedule_recurring_caps_count_by_quota(catalog):
    store = BookingStore([aula(date(2024, 2, d), booking_id=f'f{d}') for d in (5, 6, 7, 8, 9, 12, 13, 14, 15)])
    request = RecurrenceRequest(start_date='2024-03-04', mode=CONSECUTIVE, target_count=10)

    outcome = schedule_recurring(aula('2024-03-04'), request, store, CalendarOracle(), catalog)
    assert outcome.target == 2
    assert len(outcome.created) == 2
    assert outcome.is_complete


def test_schedule_recurring_reports_conflicting_dates(catalog):
    store = BookingStore([Booking(id='m', type='REUNIÃO', title='Reunião', date='2024-03-05', shift='NOITE',
                                  instructor_id='I1', room_id='R9')])
    request = RecurrenceRequest(start_date='2024-03-04', mode=CONSECUTIVE, target_count=3)

    outcome = schedule_recurring(aula('2024-03-04'), request, store, CalendarOracle(), catalog)
    assert [b.date.day for b in outcome.created] == [4, 6]
    assert [(r.date.day, r.reason) for r in outcome.rejected] == [(5, CONFLICT)]
    assert outcome.status == 'partial'


def test_remote_subject_runs_on_fridays(catalog):
    store = BookingStore()
    request = RecurrenceRequest(start_date='2024-03-04', mode=CONSECUTIVE, target_count=2)
    outcome = schedule_recurring(aula('2024-03-04', subject='EAD - Math'), request, store, CalendarOracle(), catalog)
    assert [b.date for b in outcome.created] == [date(2024, 3, 8), date(2024, 3, 15)]


def test_group_weekdays_narrow_the_request(catalog):
    catalog = Catalog(
        [ClassGroup(id='G1', course_id='C1', classes_per_day=5, week_days=[2, 4])],
        [catalog.get_course('C1')],
    )
    request = RecurrenceRequest(start_date='2024-03-04', mode=CONSECUTIVE, target_count=3)
    outcome = schedule_recurring(aula('2024-03-04'), request, BookingStore(), CalendarOracle(), catalog)
    assert [b.date.day for b in outcome.created] == [5, 7, 12]


def test_class_requires_instructor(catalog):
    request = RecurrenceRequest(start_date='2024-03-04')
    with pytest.raises(ValueError):
        schedule_recurring(aula('2024-03-04', instructor=None), request, BookingStore(), CalendarOracle(), catalog)


# --- Holiday Reallocator ---

def test_relocates_after_last_session(catalog, ids):
    """Class on the new holiday moves to the next weekday after the remaining session."""
    earlier = aula('2024-03-11', booking_id='a')
    displaced = aula('2024-03-14', booking_id='b')
    oracle = CalendarOracle([day_off('2024-03-12')])

    result = reallocate([earlier, displaced], ['2024-03-14'], oracle, catalog.get_class_group, id_factory=ids)

    assert result.moved_count == 1
    moved = result.moved[0].relocated
    assert moved.date == date(2024, 3, 13)
    assert moved.id == 'new-1'
    assert moved.subject == 'Math'
    assert [b.id for b in result.bookings] == ['a', 'new-1']
    assert result.bookings[0] is earlier


def test_relocation_skips_new_blackout_dates(catalog, ids):
    bookings = [aula('2024-03-11', booking_id='a'), aula('2024-03-14', booking_id='b')]
    result = reallocate(bookings, ['2024-03-12', '2024-03-14'], CalendarOracle(), catalog.get_class_group,
                        id_factory=ids)
    assert result.moved[0].relocated.date == date(2024, 3, 13)


def test_relocation_appends_after_latest_session(catalog, ids):
    bookings = [
        aula('2024-03-11', booking_id='a'),
        aula('2024-03-14', booking_id='b'),
        aula('2024-03-22', booking_id='c'),  # Friday
    ]
    result = reallocate(bookings, ['2024-03-14'], CalendarOracle(), catalog.get_class_group, id_factory=ids)
    assert result.moved[0].relocated.date == date(2024, 3, 25)  # Next Monday


def test_relocations_see_earlier_relocations(catalog, ids):
    bookings = [
        aula('2024-03-11', booking_id='a'),
        aula('2024-03-12', booking_id='b', room='R2', instructor='I2'),
        aula('2024-03-13', booking_id='c', room='R3', instructor='I3'),
    ]
    result = reallocate(bookings, ['2024-03-12', '2024-03-13'], CalendarOracle(), catalog.get_class_group,
                        id_factory=ids)
    assert [(m.original.id, m.relocated.date.day) for m in result.moved] == [('b', 14), ('c', 15)]


def test_relocation_without_other_sessions_uses_own_date(catalog, ids):
    bookings = [aula('2024-03-08', booking_id='a')]  # Friday
    result = reallocate(bookings, ['2024-03-08'], CalendarOracle(), catalog.get_class_group, id_factory=ids)
    assert result.moved[0].relocated.date == date(2024, 3, 11)


def test_orphan_class_is_dropped(catalog, ids):
    bookings = [aula('2024-03-14', booking_id='a', group='G404'), aula('2024-03-15', booking_id='b')]
    result = reallocate(bookings, ['2024-03-14'], CalendarOracle(), catalog.get_class_group, id_factory=ids)
    assert result.moved_count == 0
    assert [(d.booking.id, d.reason) for d in result.dropped] == [('a', UNRESOLVED_GROUP)]
    assert [b.id for b in result.bookings] == ['b']
    assert result.changed


def test_no_free_day_within_bound_is_dropped(ids):
    sundays_only = Catalog([ClassGroup(id='G1', week_days=[0])])
    bookings = [aula('2024-03-04', booking_id='a')]
    result = reallocate(bookings, ['2024-03-04'], CalendarOracle(), sundays_only.get_class_group,
                        max_lookahead_days=3, id_factory=ids)
    assert result.dropped[0].reason == NO_SLOT_FOUND
    assert result.bookings == []


def test_non_class_bookings_stay_put(catalog, ids):
    lab = Booking(id='l', type=LAB_TYPE, title='Lab', date='2024-03-14', shift='NOITE',
                  instructor_id='I1', room_id='LAB1', class_group_id='G1')
    bookings = [lab, aula('2024-03-11', booking_id='a')]

    for dates in ([], ['2024-03-14'], ['2024-12-25']):
        result = reallocate(bookings, dates, CalendarOracle(), catalog.get_class_group, id_factory=ids)
        assert result.moved_count == 0
        assert not result.changed
        assert result.bookings == bookings


def test_declare_blackouts_updates_calendar_and_store(catalog):
    store = BookingStore([aula('2024-03-11', booking_id='a'), aula('2024-03-14', booking_id='b')])
    oracle = CalendarOracle()

    result = declare_blackouts([day_off('2024-03-14', 'Feriado municipal')], oracle, store,
                               catalog.get_class_group)

    assert result.moved_count == 1
    assert oracle.is_day_off('2024-03-14')
    assert 'b' not in store
    assert sorted(b.date.day for b in store) == [11, 12]
    assert not any(oracle.is_day_off(b.date) for b in store if b.is_class)


def test_declaring_a_working_day_moves_nothing(catalog):
    store = BookingStore([aula('2024-03-14', booking_id='b')])
    oracle = CalendarOracle()
    entry = BlackoutEntry(date='2024-03-14', title='Feira de profissões', is_day_off=False)

    result = declare_blackouts([entry], oracle, store, catalog.get_class_group)
    assert result.moved_count == 0
    assert 'b' in store
    assert oracle.lookup('2024-03-14') is entry


def test_walk_stops_at_last_representable_date():
    result = generate_dates('9999-12-30', CONSECUTIVE, [], 5, CalendarOracle())
    assert result.accepted == [date(9999, 12, 30), date(9999, 12, 31)]
    assert not result.is_complete


def test_relocation_after_last_representable_date_is_dropped(ids):
    anyday = Catalog([ClassGroup(id='G1', week_days=[0, 1, 2, 3, 4, 5, 6])])
    bookings = [aula('9999-12-30', booking_id='a'), aula('9999-12-31', booking_id='b', room='R2', instructor='I2')]
    result = reallocate(bookings, ['9999-12-30'], CalendarOracle(), anyday.get_class_group, id_factory=ids)
    assert [(d.booking.id, d.reason) for d in result.dropped] == [('a', NO_SLOT_FOUND)]
    assert [b.id for b in result.bookings] == ['b']


def test_missing_rooms_do_not_clash():
    store = BookingStore([Booking(id='1', type='REUNIÃO', title='Reunião', date='2024-03-04', shift='NOITE',
                                  instructor_id='I1')])
    other = Booking(type='REUNIÃO', title='Reunião', date='2024-03-04', shift='NOITE', instructor_id='I2')
    assert validate_booking(other, store, CalendarOracle()).ok
