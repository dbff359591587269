"""
Brazilian national holidays for the academic calendar.

Fixed-date holidays plus the movable ones derived from Easter Sunday
(Carnival, Good Friday and Corpus Christi).
"""

import logging
from datetime import date, timedelta

from dateutil.easter import easter

from scheduler import BlackoutEntry, CalendarOracle

logger = logging.getLogger(__name__)

HOLIDAY_CATEGORY = 'HOLIDAY'

FIXED_HOLIDAYS = [
    (1, 1, 'Confraternização Universal'),
    (4, 21, 'Tiradentes'),
    (5, 1, 'Dia do Trabalho'),
    (9, 7, 'Independência do Brasil'),
    (10, 12, 'Nossa Sr.ª Aparecida'),
    (11, 2, 'Finados'),
    (11, 15, 'Proclamação da República'),
    (12, 25, 'Natal'),
]

# Offsets in days from Easter Sunday
EASTER_HOLIDAYS = [
    (-47, 'Carnaval'),
    (-2, 'Sexta-feira Santa'),
    (60, 'Corpus Christi'),
]


def national_holidays(year: int) -> list[tuple[date, str]]:
    """(date, title) pairs for the given year, ordered by date."""
    easter_sunday = easter(year)
    holidays = [(date(year, month, day), title) for month, day, title in FIXED_HOLIDAYS]
    holidays += [(easter_sunday + timedelta(days=offset), title) for offset, title in EASTER_HOLIDAYS]
    return sorted(holidays)


def missing_national_holidays(oracle: CalendarOracle, year: int) -> list[BlackoutEntry]:
    """Day-off entries for the year's holidays not yet on the calendar.

    Dates that already have a calendar entry, day off or not, are left alone.
    The oracle is not modified; pass the result to declare_blackouts.
    """
    missing = [
        BlackoutEntry(date=day, title=title, is_day_off=True, category=HOLIDAY_CATEGORY)
        for day, title in national_holidays(year)
        if day not in oracle
    ]
    logger.info(f"{len(missing)} national holidays for {year} not yet on the calendar")
    return missing
