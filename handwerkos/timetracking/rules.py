"""
Regelwerk der Zeiterfassung: Rundung, Auto-Pause, Überschneidungen,
Höchstarbeitszeiten und Wochensperren.
"""
from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..db import connect, now_iso, run_write_txn
from ..eventlog import event_append
from ..records import get_record

logger = logging.getLogger("handwerkos.timetracking")

DateLike = Union[str, date, datetime]

# Pausenprüfung greift erst ab 6 Stunden Arbeitszeit.
BREAK_CHECK_MIN_WORK_MINUTES = 360


class TimeRules(BaseModel):
    model_config = ConfigDict(extra="ignore")

    round_to_minutes: int = Field(default=1, ge=0, le=60)
    round_direction: Literal["up", "down", "nearest"] = "nearest"
    min_work_duration_minutes: int = Field(default=0, ge=0)
    min_break_duration_minutes: int = Field(default=15, ge=0)
    auto_break_after_minutes: Optional[int] = Field(default=360, ge=0)
    auto_break_duration_minutes: Optional[int] = Field(default=30, ge=0)
    reconciliation_tolerance_percent: float = Field(default=5, ge=0, le=100)
    require_reconciliation: bool = True
    min_breaks_minutes: int = Field(default=30, ge=0)
    overtime_daily_minutes: int = Field(default=480, ge=0)
    overtime_weekly_minutes: int = Field(default=2400, ge=0)
    max_work_day_minutes: int = Field(default=600, ge=0)
    max_work_week_minutes: int = Field(default=2880, ge=0)
    coverage_green_min: float = Field(default=95, ge=0, le=100)
    coverage_yellow_min: float = Field(default=90, ge=0, le=100)


@dataclass(frozen=True)
class OverlapCheck:
    has_overlap: bool
    conflicting_entry: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class OvertimeCheck:
    violates_daily: bool
    violates_weekly: bool
    daily_limit: int
    weekly_limit: int
    daily_total: int
    weekly_total: int
    daily_overtime: int
    weekly_overtime: int


def parse_dt(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    # Gespeichert wird lokale Zeit ohne Zeitzone.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def parse_day(value: DateLike) -> date:
    if isinstance(value, datetime):
        return parse_dt(value).date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) > 10:
        return parse_dt(text).date()
    return date.fromisoformat(text)


def week_start(value: DateLike) -> date:
    day = parse_day(value)
    return day - timedelta(days=day.weekday())


def minutes_between(start: DateLike, end: DateLike) -> int:
    delta = parse_dt(end) - parse_dt(start)
    return int(math.floor(delta.total_seconds() / 60))


def get_rules(db_path: Path, company_id: str) -> TimeRules:
    con = connect(db_path)
    try:
        row = con.execute(
            "SELECT rules_json FROM time_rules WHERE company_id=?", (company_id,)
        ).fetchone()
    finally:
        con.close()
    if row is None:
        return TimeRules()
    return TimeRules.model_validate_json(row["rules_json"])


def save_rules(db_path: Path, company_id: str, rules: TimeRules) -> TimeRules:
    def _tx(con: sqlite3.Connection) -> None:
        con.execute(
            """
            INSERT INTO time_rules(company_id, rules_json, updated_at) VALUES (?,?,?)
            ON CONFLICT(company_id) DO UPDATE SET
              rules_json=excluded.rules_json, updated_at=excluded.updated_at
            """,
            (company_id, rules.model_dump_json(), now_iso()),
        )

    run_write_txn(db_path, _tx)
    return rules


def apply_rounding(minutes: int, round_to: int, direction: str) -> int:
    if round_to <= 1:
        return minutes
    if direction == "up":
        return int(math.ceil(minutes / round_to) * round_to)
    if direction == "down":
        return int(math.floor(minutes / round_to) * round_to)
    return int(math.floor(minutes / round_to + 0.5) * round_to)


def calculate_auto_break(clock_in: DateLike, clock_out: DateLike, rules: TimeRules) -> int:
    if not rules.auto_break_after_minutes or not rules.auto_break_duration_minutes:
        return 0
    if minutes_between(clock_in, clock_out) >= rules.auto_break_after_minutes:
        return rules.auto_break_duration_minutes
    return 0


def validate_min_break(work_minutes: int, break_minutes: int, rules: TimeRules) -> Dict[str, Any]:
    required = rules.min_breaks_minutes
    return {
        "is_valid": break_minutes >= required,
        "required": required,
        "actual": break_minutes,
    }


def validate_min_work_duration(work_minutes: int, rules: TimeRules) -> bool:
    return work_minutes >= rules.min_work_duration_minutes


def ranges_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    return (
        (b_start <= a_start < b_end)
        or (b_start < a_end <= b_end)
        or (a_start <= b_start and a_end >= b_end)
    )


def check_overlap(
    db_path: Path,
    employee_id: str,
    start: DateLike,
    end: DateLike,
    exclude_entry_id: Optional[str] = None,
) -> OverlapCheck:
    new_start, new_end = parse_dt(start), parse_dt(end)
    con = connect(db_path)
    try:
        rows = con.execute(
            """
            SELECT id, start_time, end_time, project_id, cost_center_code FROM time_entries
            WHERE employee_id=? AND end_time IS NOT NULL AND id<>?
            ORDER BY start_time
            """,
            (employee_id, exclude_entry_id or ""),
        ).fetchall()
    finally:
        con.close()
    for row in rows:
        if ranges_overlap(new_start, new_end, parse_dt(row["start_time"]), parse_dt(row["end_time"])):
            return OverlapCheck(True, dict(row))
    return OverlapCheck(False)


def _worked_minutes_between(
    con: sqlite3.Connection,
    employee_id: str,
    first: date,
    last: date,
    exclude_entry_id: Optional[str],
) -> int:
    rows = con.execute(
        """
        SELECT start_time, end_time, break_minutes FROM time_entries
        WHERE employee_id=? AND end_time IS NOT NULL AND id<>?
          AND substr(start_time, 1, 10) BETWEEN ? AND ?
        """,
        (employee_id, exclude_entry_id or "", first.isoformat(), last.isoformat()),
    ).fetchall()
    total = 0
    for row in rows:
        total += max(0, minutes_between(row["start_time"], row["end_time"]) - int(row["break_minutes"] or 0))
    return total


def check_overtime_limits(
    db_path: Path,
    employee_id: str,
    day: DateLike,
    work_minutes: int,
    rules: TimeRules,
    exclude_entry_id: Optional[str] = None,
) -> OvertimeCheck:
    d = parse_day(day)
    monday = week_start(d)
    con = connect(db_path)
    try:
        daily = _worked_minutes_between(con, employee_id, d, d, exclude_entry_id) + work_minutes
        weekly = (
            _worked_minutes_between(con, employee_id, monday, monday + timedelta(days=6), exclude_entry_id)
            + work_minutes
        )
    finally:
        con.close()
    return OvertimeCheck(
        violates_daily=daily > rules.max_work_day_minutes,
        violates_weekly=weekly > rules.max_work_week_minutes,
        daily_limit=rules.max_work_day_minutes,
        weekly_limit=rules.max_work_week_minutes,
        daily_total=daily,
        weekly_total=weekly,
        daily_overtime=max(0, daily - rules.overtime_daily_minutes),
        weekly_overtime=max(0, weekly - rules.overtime_weekly_minutes),
    )


def is_week_locked(db_path: Path, employee_id: str, day: DateLike) -> bool:
    con = connect(db_path)
    try:
        row = con.execute(
            "SELECT 1 FROM week_locks WHERE employee_id=? AND week_start=?",
            (employee_id, week_start(day).isoformat()),
        ).fetchone()
        return row is not None
    finally:
        con.close()


def lock_week(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    day: DateLike,
    locked_by: Optional[str] = None,
) -> str:
    monday = week_start(day).isoformat()

    def _tx(con: sqlite3.Connection) -> None:
        con.execute(
            """
            INSERT OR IGNORE INTO week_locks(company_id, employee_id, week_start, locked_by, locked_at)
            VALUES (?,?,?,?,?)
            """,
            (company_id, employee_id, monday, locked_by, now_iso()),
        )
        event_append(con, "week_locked", "employee", employee_id, {"week_start": monday, "by": locked_by})

    run_write_txn(db_path, _tx)
    logger.info(f"Week {monday} locked for employee {employee_id}")
    return monday


def unlock_week(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    day: DateLike,
    unlocked_by: Optional[str] = None,
) -> bool:
    monday = week_start(day).isoformat()

    def _tx(con: sqlite3.Connection) -> bool:
        cur = con.execute(
            "DELETE FROM week_locks WHERE company_id=? AND employee_id=? AND week_start=?",
            (company_id, employee_id, monday),
        )
        if cur.rowcount:
            event_append(
                con, "week_unlocked", "employee", employee_id, {"week_start": monday, "by": unlocked_by}
            )
        return bool(cur.rowcount)

    return run_write_txn(db_path, _tx)


def validate_time_entry(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    start: DateLike,
    end: DateLike,
    break_minutes: int = 0,
    exclude_entry_id: Optional[str] = None,
    rules: Optional[TimeRules] = None,
) -> Dict[str, Any]:
    get_record(db_path, "employee", company_id, employee_id)
    errors: list[str] = []
    warnings: list[str] = []
    rules = rules or get_rules(db_path, company_id)

    start_dt, end_dt = parse_dt(start), parse_dt(end)
    if is_week_locked(db_path, employee_id, start_dt):
        errors.append("Week is locked. Cannot modify time entries.")
        return {"is_valid": False, "errors": errors, "warnings": warnings}

    if end_dt <= start_dt:
        errors.append("End time must be after start time")
        return {"is_valid": False, "errors": errors, "warnings": warnings}

    work_minutes = minutes_between(start_dt, end_dt) - int(break_minutes or 0)

    overlap = check_overlap(db_path, employee_id, start_dt, end_dt, exclude_entry_id)
    if overlap.has_overlap:
        errors.append("Time entry overlaps with existing entry")

    if not validate_min_work_duration(work_minutes, rules):
        warnings.append(
            f"Work duration ({work_minutes} min) is below minimum "
            f"({rules.min_work_duration_minutes} min)"
        )

    breaks = validate_min_break(work_minutes, int(break_minutes or 0), rules)
    if not breaks["is_valid"] and work_minutes >= BREAK_CHECK_MIN_WORK_MINUTES:
        warnings.append(
            f"Break duration ({breaks['actual']} min) is below minimum ({breaks['required']} min)"
        )

    overtime = check_overtime_limits(
        db_path, employee_id, start_dt, work_minutes, rules, exclude_entry_id
    )
    if overtime.violates_daily:
        warnings.append(
            f"Daily work time ({overtime.daily_total} min) exceeds limit ({overtime.daily_limit} min)"
        )
    if overtime.violates_weekly:
        warnings.append(
            f"Weekly work time ({overtime.weekly_total} min) exceeds limit ({overtime.weekly_limit} min)"
        )

    return {"is_valid": not errors, "errors": errors, "warnings": warnings}
