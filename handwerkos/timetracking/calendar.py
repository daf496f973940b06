from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

MONTH_NAMES = [
    "Januar",
    "Februar",
    "März",
    "April",
    "Mai",
    "Juni",
    "Juli",
    "August",
    "September",
    "Oktober",
    "November",
    "Dezember",
]


def _month_days(year: int, month: int) -> List[date]:
    last = calendar.monthrange(year, month)[1]
    return [date(year, month, d) for d in range(1, last + 1)]


def working_days_in_month(year: int, month: int) -> int:
    """Montag bis Freitag; ``month`` ist 1-12."""
    return sum(1 for d in _month_days(year, month) if d.weekday() < 5)


def max_working_hours_in_month(year: int, month: int, hours_per_day: float = 8) -> float:
    return working_days_in_month(year, month) * hours_per_day


def easter_sunday(year: int) -> date:
    # Gregorianischer Kalender (Meeus/Jones/Butcher)
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


def german_holidays(year: int) -> Dict[date, str]:
    easter = easter_sunday(year)
    holidays = {
        date(year, 1, 1): "Neujahr",
        date(year, 1, 6): "Heilige Drei Könige",
        date(year, 5, 1): "Tag der Arbeit",
        date(year, 10, 3): "Tag der Deutschen Einheit",
        date(year, 12, 25): "1. Weihnachtstag",
        date(year, 12, 26): "2. Weihnachtstag",
        easter - timedelta(days=2): "Karfreitag",
        easter + timedelta(days=1): "Ostermontag",
        easter + timedelta(days=39): "Christi Himmelfahrt",
        easter + timedelta(days=50): "Pfingstmontag",
    }
    return dict(sorted(holidays.items()))


def working_days_in_month_with_holidays(
    year: int, month: int, include_holidays: bool = False
) -> int:
    days = working_days_in_month(year, month)
    if include_holidays:
        for holiday in german_holidays(year):
            if holiday.month == month and holiday.weekday() < 5:
                days -= 1
    return max(0, days)


def month_work_info(day: Optional[date] = None) -> Dict[str, Any]:
    d = day or date.today()
    working_days = working_days_in_month(d.year, d.month)
    return {
        "year": d.year,
        "month": d.month,
        "month_name": MONTH_NAMES[d.month - 1],
        "working_days": working_days,
        "max_hours": working_days * 8,
        "start_date": date(d.year, d.month, 1).isoformat(),
        "end_date": date(d.year, d.month, calendar.monthrange(d.year, d.month)[1]).isoformat(),
    }


def format_minutes_to_time(minutes: int) -> str:
    hours, mins = divmod(int(minutes), 60)
    return f"{hours:02d}:{mins:02d}"


def format_duration(minutes: int) -> str:
    hours, mins = divmod(int(minutes), 60)
    if hours == 0:
        return f"{mins}m"
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"


def format_live_duration(seconds: int) -> str:
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def calculate_duration(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def parse_time_to_minutes(value: str) -> int:
    parts = (value or "").split(":")
    try:
        hours = int(parts[0]) if parts[0] else 0
        minutes = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    except ValueError:
        return 0
    return hours * 60 + minutes


def is_within_business_hours(value: str, start_hour: int = 8, end_hour: int = 18) -> bool:
    minutes = parse_time_to_minutes(value)
    return start_hour * 60 <= minutes <= end_hour * 60
