from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from handwerkos.db import ensure_schema
from handwerkos.errors import ResourceNotFoundError
from handwerkos.records import create_employee, create_project
from handwerkos.timetracking import TimeRules, get_rules, save_rules, time_entry_create
from handwerkos.timetracking.rules import (
    apply_rounding,
    calculate_auto_break,
    check_overlap,
    check_overtime_limits,
    is_week_locked,
    lock_week,
    parse_day,
    parse_dt,
    ranges_overlap,
    unlock_week,
    validate_min_break,
    validate_min_work_duration,
    validate_time_entry,
    week_start,
)

COMPANY = "FIRMA_A"


def _init_db(tmp_path: Path):
    db = tmp_path / "core.sqlite3"
    ensure_schema(db)
    employee = create_employee(db, company_id=COMPANY, first_name="Lena", last_name="Voss", hourly_rate=40)
    project = create_project(db, company_id=COMPANY, name="Dachstuhl")
    return db, employee, project


def _book(db: Path, employee: str, project: str, start: str, end: str, break_minutes: int = 0) -> dict:
    return time_entry_create(
        db,
        company_id=COMPANY,
        employee_id=employee,
        start=start,
        end=end,
        project_id=project,
        break_minutes=break_minutes,
    )["entry"]


@pytest.mark.parametrize(
    "minutes,round_to,direction,expected",
    [
        (7, 1, "up", 7),
        (7, 0, "nearest", 7),
        (7, 15, "up", 15),
        (16, 15, "down", 15),
        (22, 15, "nearest", 15),
        (23, 15, "nearest", 30),
        (0, 15, "up", 0),
    ],
)
def test_apply_rounding(minutes: int, round_to: int, direction: str, expected: int) -> None:
    assert apply_rounding(minutes, round_to, direction) == expected


def test_rounding_half_way_goes_up() -> None:
    assert apply_rounding(30, 20, "nearest") == 40
    assert apply_rounding(10, 20, "nearest") == 20


def test_auto_break() -> None:
    rules = TimeRules()
    assert calculate_auto_break("2025-06-02T07:00:00", "2025-06-02T13:00:00", rules) == 30
    assert calculate_auto_break("2025-06-02T07:00:00", "2025-06-02T12:59:00", rules) == 0
    disabled = TimeRules(auto_break_after_minutes=None)
    assert calculate_auto_break("2025-06-02T07:00:00", "2025-06-02T17:00:00", disabled) == 0


def test_min_break_and_work_duration() -> None:
    rules = TimeRules(min_work_duration_minutes=30)
    assert validate_min_break(400, 15, rules) == {"is_valid": False, "required": 30, "actual": 15}
    assert validate_min_break(400, 30, rules)["is_valid"] is True
    assert validate_min_work_duration(29, rules) is False
    assert validate_min_work_duration(30, rules) is True


def test_ranges_overlap() -> None:
    def d(hour: int) -> datetime:
        return datetime(2025, 6, 2, hour)

    assert ranges_overlap(d(8), d(10), d(9), d(11)) is True
    assert ranges_overlap(d(9), d(11), d(8), d(10)) is True
    assert ranges_overlap(d(7), d(12), d(8), d(10)) is True
    assert ranges_overlap(d(8), d(10), d(10), d(12)) is False
    assert ranges_overlap(d(10), d(12), d(8), d(10)) is False


def test_rules_default_and_persisted(tmp_path: Path) -> None:
    db, _employee, _project = _init_db(tmp_path)
    assert get_rules(db, COMPANY) == TimeRules()
    save_rules(db, COMPANY, TimeRules(round_to_minutes=15, round_direction="up"))
    stored = get_rules(db, COMPANY)
    assert stored.round_to_minutes == 15
    assert stored.round_direction == "up"
    assert get_rules(db, "FIRMA_B").round_to_minutes == 1


def test_overlap_with_stored_entry(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    entry = _book(db, employee, project, "2025-06-02T08:00:00", "2025-06-02T12:00:00")

    hit = check_overlap(db, employee, "2025-06-02T11:00:00", "2025-06-02T13:00:00")
    assert hit.has_overlap is True
    assert hit.conflicting_entry["id"] == entry["id"]

    assert check_overlap(db, employee, "2025-06-02T12:00:00", "2025-06-02T13:00:00").has_overlap is False
    excluded = check_overlap(db, employee, "2025-06-02T09:00:00", "2025-06-02T10:00:00", entry["id"])
    assert excluded.has_overlap is False


def test_overtime_limits_day_and_week(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    for day in ("02", "03", "04", "05"):
        _book(db, employee, project, f"2025-06-{day}T06:00:00", f"2025-06-{day}T17:30:00", 30)

    check = check_overtime_limits(db, employee, "2025-06-05", 60, TimeRules())
    assert check.daily_total == 660 + 60
    assert check.violates_daily is True
    assert check.weekly_total == 4 * 660 + 60
    assert check.violates_weekly is False
    assert check.daily_overtime == 720 - 480
    assert check.weekly_overtime == 2700 - 2400

    next_week = check_overtime_limits(db, employee, "2025-06-09", 60, TimeRules())
    assert next_week.weekly_total == 60


def test_week_lock_blocks_validation(tmp_path: Path) -> None:
    db, employee, _project = _init_db(tmp_path)
    assert week_start("2025-06-05").isoformat() == "2025-06-02"
    assert lock_week(db, company_id=COMPANY, employee_id=employee, day="2025-06-05", locked_by="chef") == "2025-06-02"
    assert is_week_locked(db, employee, "2025-06-08T10:00:00") is True
    assert is_week_locked(db, employee, "2025-06-09") is False

    result = validate_time_entry(
        db,
        company_id=COMPANY,
        employee_id=employee,
        start="2025-06-03T08:00:00",
        end="2025-06-03T07:00:00",
    )
    assert result == {
        "is_valid": False,
        "errors": ["Week is locked. Cannot modify time entries."],
        "warnings": [],
    }

    assert unlock_week(db, company_id=COMPANY, employee_id=employee, day="2025-06-02") is True
    assert unlock_week(db, company_id=COMPANY, employee_id=employee, day="2025-06-02") is False


def test_validate_time_entry_errors_and_warnings(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    reversed_times = validate_time_entry(
        db, company_id=COMPANY, employee_id=employee, start="2025-06-02T10:00:00", end="2025-06-02T09:00:00"
    )
    assert reversed_times["errors"] == ["End time must be after start time"]

    _book(db, employee, project, "2025-06-02T06:00:00", "2025-06-02T10:00:00")
    overlapping = validate_time_entry(
        db, company_id=COMPANY, employee_id=employee, start="2025-06-02T09:00:00", end="2025-06-02T16:00:00"
    )
    assert overlapping["is_valid"] is False
    assert "Time entry overlaps with existing entry" in overlapping["errors"]

    long_day = validate_time_entry(
        db,
        company_id=COMPANY,
        employee_id=employee,
        start="2025-06-02T10:00:00",
        end="2025-06-02T17:00:00",
        break_minutes=10,
    )
    assert long_day["is_valid"] is True
    assert long_day["warnings"] == [
        "Break duration (10 min) is below minimum (30 min)",
        "Daily work time (650 min) exceeds limit (600 min)",
    ]


def test_short_entry_without_break_has_no_break_warning(tmp_path: Path) -> None:
    db, employee, _project = _init_db(tmp_path)
    result = validate_time_entry(
        db,
        company_id=COMPANY,
        employee_id=employee,
        start="2025-06-02T08:00:00",
        end="2025-06-02T13:59:00",
        rules=TimeRules(min_work_duration_minutes=400),
    )
    assert result["is_valid"] is True
    assert result["warnings"] == ["Work duration (359 min) is below minimum (400 min)"]


def test_parse_dt_converts_offsets_to_local_time() -> None:
    local = datetime(2025, 3, 3, 11, 0)
    parsed = parse_dt(local.astimezone().isoformat())
    assert parsed == local
    assert parsed.tzinfo is None

    utc = parse_dt("2025-03-03T11:00:00Z")
    assert utc == datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    assert utc.tzinfo is None
    assert parse_day(local.astimezone().isoformat()).isoformat() == "2025-03-03"


def test_validate_time_entry_other_company(tmp_path: Path) -> None:
    db, employee, _project = _init_db(tmp_path)
    with pytest.raises(ResourceNotFoundError):
        validate_time_entry(
            db,
            company_id="FIRMA_B",
            employee_id=employee,
            start="2025-03-03T08:00:00",
            end="2025-03-03T10:00:00",
        )
