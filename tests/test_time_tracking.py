from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from handwerkos.db import ensure_schema
from handwerkos.errors import ConflictError, ResourceNotFoundError, ValidationError
from handwerkos.eventlog import event_get_history
from handwerkos.records import create_employee, create_project
from handwerkos.timetracking import (
    TimeRules,
    auto_stop_forgotten_entries,
    clock_in,
    clock_out,
    save_rules,
    time_entry_create,
    time_entry_start,
    time_entry_stop,
)
from handwerkos.timetracking.rules import lock_week

COMPANY = "FIRMA_A"


def _init_db(tmp_path: Path):
    db = tmp_path / "core.sqlite3"
    ensure_schema(db)
    employee = create_employee(db, company_id=COMPANY, first_name="Ali", last_name="Kaya", hourly_rate=45)
    project = create_project(db, company_id=COMPANY, name="Küche Weber")
    return db, employee, project


def test_clock_in_and_out_with_auto_break(tmp_path: Path) -> None:
    db, employee, _project = _init_db(tmp_path)
    shift = clock_in(db, company_id=COMPANY, employee_id=employee, at="2025-06-02T07:00:00")
    assert shift["clock_out"] is None
    assert shift["date"] == "2025-06-02"

    with pytest.raises(ConflictError):
        clock_in(db, company_id=COMPANY, employee_id=employee, at="2025-06-02T08:00:00")

    closed = clock_out(db, company_id=COMPANY, employee_id=employee, at="2025-06-02T15:00:00")
    assert closed["clock_out"] == "2025-06-02T15:00:00"
    assert closed["break_minutes"] == 30
    assert closed["work_minutes"] == 450

    with pytest.raises(ResourceNotFoundError):
        clock_out(db, company_id=COMPANY, employee_id=employee)


def test_clock_out_applies_rounding_and_explicit_break(tmp_path: Path) -> None:
    db, employee, _project = _init_db(tmp_path)
    save_rules(db, COMPANY, TimeRules(round_to_minutes=15, round_direction="up"))
    clock_in(db, company_id=COMPANY, employee_id=employee, at="2025-06-02T07:00:00")
    closed = clock_out(
        db, company_id=COMPANY, employee_id=employee, at="2025-06-02T15:07:00", break_minutes=45
    )
    assert closed["break_minutes"] == 45
    assert closed["work_minutes"] == 495 - 45


def test_clock_in_unknown_employee(tmp_path: Path) -> None:
    db, _employee, _project = _init_db(tmp_path)
    with pytest.raises(ResourceNotFoundError):
        clock_in(db, company_id=COMPANY, employee_id="ghost")


def test_time_entry_create_returns_warnings(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    result = time_entry_create(
        db,
        company_id=COMPANY,
        employee_id=employee,
        start="2025-06-02T07:00:00",
        end="2025-06-02T14:00:00",
        project_id=project,
        description="Montage",
    )
    entry = result["entry"]
    assert entry["status"] == "completed"
    assert entry["project_id"] == project
    assert entry["cost_center_code"] is None
    assert result["warnings"] == ["Break duration (0 min) is below minimum (30 min)"]

    with pytest.raises(ValidationError) as exc:
        time_entry_create(
            db,
            company_id=COMPANY,
            employee_id=employee,
            start="2025-06-02T13:00:00",
            end="2025-06-02T15:00:00",
            project_id=project,
        )
    assert exc.value.details["errors"] == ["Time entry overlaps with existing entry"]


def test_time_entry_create_needs_target(tmp_path: Path) -> None:
    db, employee, _project = _init_db(tmp_path)
    with pytest.raises(ValidationError) as exc:
        time_entry_create(
            db,
            company_id=COMPANY,
            employee_id=employee,
            start="2025-06-02T07:00:00",
            end="2025-06-02T08:00:00",
        )
    assert exc.value.details["field"] == "project_id"

    result = time_entry_create(
        db,
        company_id=COMPANY,
        employee_id=employee,
        start="2025-06-02T07:00:00",
        end="2025-06-02T08:00:00",
        entry_type="cost_center",
        cost_center_code="WERKSTATT",
    )
    assert result["entry"]["entry_type"] == "cost_center"
    assert result["entry"]["project_id"] is None


def test_one_running_timer(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    entry = time_entry_start(
        db, company_id=COMPANY, employee_id=employee, project_id=project, at="2025-06-02T08:00:00"
    )
    assert entry["end_time"] is None
    assert entry["status"] == "active"
    with pytest.raises(ConflictError):
        time_entry_start(db, company_id=COMPANY, employee_id=employee, project_id=project)

    stopped = time_entry_stop(
        db, company_id=COMPANY, employee_id=employee, at="2025-06-02T10:30:00", break_minutes=0
    )
    assert stopped["entry"]["id"] == entry["id"]
    assert stopped["entry"]["end_time"] == "2025-06-02T10:30:00"
    assert stopped["entry"]["status"] == "completed"

    with pytest.raises(ResourceNotFoundError):
        time_entry_stop(db, company_id=COMPANY, employee_id=employee)


def test_timer_start_in_locked_week(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    lock_week(db, company_id=COMPANY, employee_id=employee, day="2025-06-02")
    with pytest.raises(ValidationError):
        time_entry_start(
            db, company_id=COMPANY, employee_id=employee, project_id=project, at="2025-06-04T08:00:00"
        )


def test_auto_stop_forgotten_entries(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    other = create_employee(db, company_id=COMPANY, first_name="Eva", last_name="Lang")
    forgotten = time_entry_start(
        db, company_id=COMPANY, employee_id=employee, project_id=project, at="2025-06-02T06:00:00"
    )
    time_entry_start(
        db, company_id=COMPANY, employee_id=other, project_id=project, at="2025-06-02T10:00:00"
    )

    stopped = auto_stop_forgotten_entries(
        db, company_id=COMPANY, max_hours=12, now=datetime(2025, 6, 2, 19, 0)
    )
    assert stopped == [
        {"id": forgotten["id"], "employee_id": employee, "end_time": "2025-06-02T18:00:00"}
    ]
    history = event_get_history(db, "time_entry", forgotten["id"])
    assert history[0]["event_type"] == "time_entry_auto_stopped"
    assert history[0]["payload"]["max_hours"] == 12

    assert auto_stop_forgotten_entries(db, max_hours=12, now=datetime(2025, 6, 2, 19, 0)) == []


def test_time_entry_create_with_offset_timestamps(tmp_path: Path) -> None:
    db, employee, project = _init_db(tmp_path)
    time_entry_create(
        db,
        company_id=COMPANY,
        employee_id=employee,
        start="2025-06-02T08:00:00",
        end="2025-06-02T10:00:00",
        project_id=project,
    )
    start = datetime(2025, 6, 2, 11, 0).astimezone().isoformat()
    end = datetime(2025, 6, 2, 12, 0).astimezone().isoformat()
    entry = time_entry_create(
        db, company_id=COMPANY, employee_id=employee, start=start, end=end, project_id=project
    )["entry"]
    assert entry["start_time"] == "2025-06-02T11:00:00"
    assert entry["end_time"] == "2025-06-02T12:00:00"

    overlapping = datetime(2025, 6, 2, 9, 0).astimezone().isoformat()
    with pytest.raises(ValidationError) as exc:
        time_entry_create(
            db, company_id=COMPANY, employee_id=employee, start=overlapping, end=end, project_id=project
        )
    assert "Time entry overlaps with existing entry" in exc.value.details["errors"]
