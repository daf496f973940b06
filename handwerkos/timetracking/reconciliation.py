"""
Abgleich von Anwesenheit (Kommen/Gehen) mit gebuchten Zeiten auf Projekte und
Kostenstellen. Liefert Abdeckung, Ampelstatus und Lücken je Tag und Woche.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..db import fetch_all, fetch_one
from ..records import get_record
from .rules import (
    DateLike,
    TimeRules,
    get_rules,
    minutes_between,
    parse_day,
    parse_dt,
    week_start,
)

logger = logging.getLogger("handwerkos.timetracking")

MIN_GAP_MINUTES = 5
LUNCH_HOURS = (11, 14)
LUNCH_GAP_MINUTES = (15, 60)


@dataclass
class ReconciliationResult:
    date: str
    employee_id: str
    attendance_minutes: int = 0
    project_minutes: int = 0
    cost_center_minutes: int = 0
    break_minutes: int = 0
    total_accounted_minutes: int = 0
    coverage_percent: int = 0
    difference_minutes: int = 0
    is_within_tolerance: bool = False
    status: str = "no_attendance"
    attendance_id: Optional[str] = None
    has_gaps: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GapPeriod:
    gap_start: str
    gap_end: str
    gap_minutes: int
    suggested_cost_center: Optional[str]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _load_day(
    db_path: Path, company_id: str, employee_id: str, day: date
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    attendance = fetch_all(
        db_path,
        """
        SELECT * FROM attendance
        WHERE company_id=? AND employee_id=? AND date=? AND clock_out IS NOT NULL
        ORDER BY clock_in
        """,
        (company_id, employee_id, day.isoformat()),
    )
    entries = fetch_all(
        db_path,
        """
        SELECT * FROM time_entries
        WHERE company_id=? AND employee_id=? AND end_time IS NOT NULL
          AND substr(start_time, 1, 10)=?
        ORDER BY start_time
        """,
        (company_id, employee_id, day.isoformat()),
    )
    return attendance, entries


def _status_for(coverage: int, rules: TimeRules) -> str:
    if coverage >= rules.coverage_green_min:
        return "green"
    if coverage >= rules.coverage_yellow_min:
        return "yellow"
    return "red"


def _gaps_from(
    attendance: List[Dict[str, Any]], entries: List[Dict[str, Any]]
) -> List[GapPeriod]:
    booked = sorted(
        (parse_dt(e["start_time"]), parse_dt(e["end_time"])) for e in entries
    )
    gaps: List[GapPeriod] = []
    for shift in attendance:
        cursor = parse_dt(shift["clock_in"])
        shift_end = parse_dt(shift["clock_out"])
        open_spans: List[Tuple[datetime, datetime]] = []
        for start, end in booked:
            if end <= cursor or start >= shift_end:
                continue
            if start > cursor:
                open_spans.append((cursor, start))
            cursor = max(cursor, end)
        if cursor < shift_end:
            open_spans.append((cursor, shift_end))

        for start, end in open_spans:
            minutes = minutes_between(start, end)
            if minutes < MIN_GAP_MINUTES:
                continue
            lunch = (
                LUNCH_HOURS[0] <= start.hour <= LUNCH_HOURS[1]
                and LUNCH_GAP_MINUTES[0] <= minutes <= LUNCH_GAP_MINUTES[1]
            )
            gaps.append(
                GapPeriod(
                    gap_start=start.isoformat(timespec="minutes"),
                    gap_end=end.isoformat(timespec="minutes"),
                    gap_minutes=minutes,
                    suggested_cost_center="PAUSE" if lunch else None,
                    reason="Mögliche Pause" if lunch else "Nicht erfasste Zeit",
                )
            )
    return gaps


def detect_gaps(
    db_path: Path, *, company_id: str, employee_id: str, day: DateLike
) -> List[GapPeriod]:
    get_record(db_path, "employee", company_id, employee_id)
    attendance, entries = _load_day(db_path, company_id, employee_id, parse_day(day))
    return _gaps_from(attendance, entries)


def calculate_coverage(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    day: DateLike,
    rules: Optional[TimeRules] = None,
) -> ReconciliationResult:
    get_record(db_path, "employee", company_id, employee_id)
    d = parse_day(day)
    rules = rules or get_rules(db_path, company_id)
    attendance, entries = _load_day(db_path, company_id, employee_id, d)
    result = ReconciliationResult(date=d.isoformat(), employee_id=employee_id)
    if not attendance:
        return result

    result.attendance_id = attendance[0]["id"]
    result.attendance_minutes = sum(
        minutes_between(a["clock_in"], a["clock_out"]) for a in attendance
    )
    result.break_minutes = sum(int(a["break_minutes"] or 0) for a in attendance)
    for entry in entries:
        net = max(0, minutes_between(entry["start_time"], entry["end_time"]) - int(entry["break_minutes"] or 0))
        if entry["entry_type"] == "cost_center":
            result.cost_center_minutes += net
        else:
            result.project_minutes += net

    total = result.project_minutes + result.cost_center_minutes + result.break_minutes
    result.total_accounted_minutes = total
    result.difference_minutes = result.attendance_minutes - total
    if result.attendance_minutes > 0:
        result.coverage_percent = _round_half_up(total / result.attendance_minutes * 100)
        tolerance = result.attendance_minutes * rules.reconciliation_tolerance_percent / 100
        result.is_within_tolerance = abs(result.difference_minutes) <= tolerance
        result.status = _status_for(result.coverage_percent, rules)
    else:
        result.status = "red"
    result.has_gaps = bool(_gaps_from(attendance, entries))
    return result


def get_week_reconciliation(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    week_start_date: DateLike,
    rules: Optional[TimeRules] = None,
) -> Dict[str, Any]:
    start = week_start(week_start_date)
    rules = rules or get_rules(db_path, company_id)
    days = [
        calculate_coverage(
            db_path,
            company_id=company_id,
            employee_id=employee_id,
            day=start + timedelta(days=i),
            rules=rules,
        )
        for i in range(7)
    ]
    attendance = sum(d.attendance_minutes for d in days)
    project = sum(d.project_minutes for d in days)
    cost_center = sum(d.cost_center_minutes for d in days)
    breaks = sum(d.break_minutes for d in days)
    coverage = (
        _round_half_up((project + cost_center + breaks) / attendance * 100) if attendance else 0
    )
    if coverage >= 95:
        status = "green"
    elif coverage >= 90:
        status = "yellow"
    else:
        status = "red"
    return {
        "week_start": start.isoformat(),
        "days": [d.to_dict() for d in days],
        "total_attendance_minutes": attendance,
        "total_project_minutes": project,
        "total_cost_center_minutes": cost_center,
        "total_break_minutes": breaks,
        "week_coverage_percent": coverage,
        "week_status": status,
    }


def suggest_cost_centers(gaps: List[GapPeriod]) -> List[Dict[str, Any]]:
    out = []
    for gap in gaps:
        suggestions: List[str] = []
        if gap.suggested_cost_center:
            suggestions.append(gap.suggested_cost_center)
        hour = parse_dt(gap.gap_start).hour
        if hour < 9 and gap.gap_minutes > 30:
            suggestions.append("WERKSTATT")
        if hour >= 17:
            suggestions.append("WERKSTATT")
        if gap.gap_minutes > 120:
            suggestions.append("SCHULUNG")
        out.append({"gap": gap, "suggestions": list(dict.fromkeys(suggestions))})
    return out


def suggest_gap_filling(
    db_path: Path, *, company_id: str, employee_id: str, day: DateLike
) -> List[Dict[str, Any]]:
    gaps = detect_gaps(db_path, company_id=company_id, employee_id=employee_id, day=day)
    return [
        {
            "gap": item["gap"].to_dict(),
            "suggested_entry": {
                "employee_id": employee_id,
                "entry_type": "cost_center",
                "cost_center_code": (item["suggestions"] or ["WERKSTATT"])[0],
                "start_time": item["gap"].gap_start,
                "end_time": item["gap"].gap_end,
                "description": f"Auto-suggested: {item['gap'].reason}",
            },
        }
        for item in suggest_cost_centers(gaps)
    ]


def is_week_ready_for_submission(
    db_path: Path, *, company_id: str, employee_id: str, week_start_date: DateLike
) -> Dict[str, Any]:
    get_record(db_path, "employee", company_id, employee_id)
    reasons: List[str] = []
    rules = get_rules(db_path, company_id)
    start = week_start(week_start_date)

    if rules.require_reconciliation:
        week = get_week_reconciliation(
            db_path,
            company_id=company_id,
            employee_id=employee_id,
            week_start_date=start,
            rules=rules,
        )
        for day in week["days"]:
            if day["status"] == "no_attendance":
                continue
            if day["status"] == "red":
                reasons.append(f"{day['date']}: Coverage too low ({day['coverage_percent']}%)")
            if not day["is_within_tolerance"]:
                reasons.append(
                    f"{day['date']}: Time difference ({day['difference_minutes']} min) exceeds tolerance"
                )
            if day["has_gaps"]:
                reasons.append(f"{day['date']}: Has unaccounted time gaps")

    open_shift = fetch_one(
        db_path,
        """
        SELECT 1 AS found FROM attendance
        WHERE company_id=? AND employee_id=? AND date>=? AND clock_out IS NULL LIMIT 1
        """,
        (company_id, employee_id, start.isoformat()),
    )
    if open_shift:
        reasons.append("Some shifts are not clocked out yet")

    return {"ready": not reasons, "reasons": reasons}


def get_summary(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    start_date: DateLike,
    end_date: DateLike,
) -> Dict[str, int]:
    get_record(db_path, "employee", company_id, employee_id)
    rules = get_rules(db_path, company_id)
    current, last = parse_day(start_date), parse_day(end_date)
    days: List[ReconciliationResult] = []
    while current <= last:
        days.append(
            calculate_coverage(
                db_path, company_id=company_id, employee_id=employee_id, day=current, rules=rules
            )
        )
        current += timedelta(days=1)

    attended = [d for d in days if d.status != "no_attendance"]
    average = (
        _round_half_up(sum(d.coverage_percent for d in attended) / len(attended)) if attended else 0
    )
    return {
        "total_days": len(days),
        "days_with_attendance": len(attended),
        "green_days": sum(1 for d in days if d.status == "green"),
        "yellow_days": sum(1 for d in days if d.status == "yellow"),
        "red_days": sum(1 for d in days if d.status == "red"),
        "average_coverage": average,
        "total_gaps": sum(1 for d in days if d.has_gaps),
    }
