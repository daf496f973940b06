from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import Config
from ..db import connect, new_id, now_iso, run_write_txn
from ..errors import ConflictError, ResourceNotFoundError, ValidationError
from ..eventlog import event_append
from ..records import get_record
from .rules import (
    DateLike,
    apply_rounding,
    calculate_auto_break,
    get_rules,
    is_week_locked,
    minutes_between,
    parse_dt,
    validate_time_entry,
)

logger = logging.getLogger("handwerkos.timetracking")

ENTRY_TYPES = {"project", "cost_center"}


def _ts(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat()


def _moment(at: Optional[DateLike]) -> datetime:
    return parse_dt(at) if at is not None else datetime.now().replace(microsecond=0)


def _check_target(
    con: sqlite3.Connection,
    company_id: str,
    entry_type: str,
    project_id: Optional[str],
    cost_center_code: Optional[str],
) -> None:
    if entry_type not in ENTRY_TYPES:
        raise ValidationError(f"Unbekannter Buchungstyp: {entry_type}", field="entry_type")
    if entry_type == "project":
        if not project_id:
            raise ValidationError("Projekt fehlt.", field="project_id")
        get_record(con, "project", company_id, project_id)
    elif not (cost_center_code or "").strip():
        raise ValidationError("Kostenstelle fehlt.", field="cost_center_code")


def clock_in(
    db_path: Path, *, company_id: str, employee_id: str, at: Optional[DateLike] = None
) -> Dict[str, Any]:
    moment = _moment(at)
    aid = new_id()

    def _tx(con: sqlite3.Connection) -> Dict[str, Any]:
        get_record(con, "employee", company_id, employee_id)
        open_row = con.execute(
            "SELECT id FROM attendance WHERE employee_id=? AND clock_out IS NULL",
            (employee_id,),
        ).fetchone()
        if open_row:
            raise ConflictError(
                "Mitarbeiter ist bereits eingestempelt.", {"attendance_id": open_row["id"]}
            )
        now = now_iso()
        con.execute(
            """
            INSERT INTO attendance(id, company_id, employee_id, date, clock_in,
              break_minutes, created_at, updated_at)
            VALUES (?,?,?,?,?,0,?,?)
            """,
            (aid, company_id, employee_id, moment.date().isoformat(), _ts(moment), now, now),
        )
        event_append(con, "clock_in", "employee", employee_id, {"attendance_id": aid})
        row = con.execute("SELECT * FROM attendance WHERE id=?", (aid,)).fetchone()
        return dict(row)

    return run_write_txn(db_path, _tx)


def clock_out(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    at: Optional[DateLike] = None,
    break_minutes: Optional[int] = None,
) -> Dict[str, Any]:
    moment = _moment(at)
    rules = get_rules(db_path, company_id)

    def _tx(con: sqlite3.Connection) -> Dict[str, Any]:
        row = con.execute(
            """
            SELECT * FROM attendance
            WHERE company_id=? AND employee_id=? AND clock_out IS NULL
            """,
            (company_id, employee_id),
        ).fetchone()
        if row is None:
            raise ResourceNotFoundError("Offene Anwesenheit", employee_id)
        started = parse_dt(row["clock_in"])
        if moment <= started:
            raise ValidationError("Gehen muss nach Kommen liegen.", field="clock_out")

        worked = apply_rounding(
            minutes_between(started, moment), rules.round_to_minutes, rules.round_direction
        )
        breaks = int(break_minutes or 0)
        if not breaks:
            breaks = calculate_auto_break(started, moment, rules)
        con.execute(
            """
            UPDATE attendance SET clock_out=?, break_minutes=?, work_minutes=?, updated_at=?
            WHERE id=?
            """,
            (_ts(moment), breaks, max(0, worked - breaks), now_iso(), row["id"]),
        )
        event_append(
            con,
            "clock_out",
            "employee",
            employee_id,
            {"attendance_id": row["id"], "work_minutes": max(0, worked - breaks), "break_minutes": breaks},
        )
        return dict(con.execute("SELECT * FROM attendance WHERE id=?", (row["id"],)).fetchone())

    return run_write_txn(db_path, _tx)


def time_entry_create(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    start: DateLike,
    end: DateLike,
    entry_type: str = "project",
    project_id: Optional[str] = None,
    cost_center_code: Optional[str] = None,
    break_minutes: int = 0,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    start_dt, end_dt = parse_dt(start), parse_dt(end)
    if int(break_minutes or 0) < 0:
        raise ValidationError("Pause darf nicht negativ sein.", field="break_minutes")
    check = validate_time_entry(
        db_path,
        company_id=company_id,
        employee_id=employee_id,
        start=start_dt,
        end=end_dt,
        break_minutes=int(break_minutes or 0),
    )
    if not check["is_valid"]:
        raise ValidationError(
            "Zeiteintrag ist ungültig.",
            field="time_entry",
            details={"errors": check["errors"], "warnings": check["warnings"]},
        )
    eid = new_id()

    def _tx(con: sqlite3.Connection) -> Dict[str, Any]:
        get_record(con, "employee", company_id, employee_id)
        _check_target(con, company_id, entry_type, project_id, cost_center_code)
        now = now_iso()
        con.execute(
            """
            INSERT INTO time_entries(id, company_id, employee_id, entry_type, project_id,
              cost_center_code, start_time, end_time, break_minutes, description, status,
              created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,'completed',?,?)
            """,
            (
                eid,
                company_id,
                employee_id,
                entry_type,
                project_id if entry_type == "project" else None,
                cost_center_code if entry_type == "cost_center" else None,
                _ts(start_dt),
                _ts(end_dt),
                int(break_minutes or 0),
                description,
                now,
                now,
            ),
        )
        event_append(con, "time_entry_created", "time_entry", eid, {"employee_id": employee_id})
        return dict(con.execute("SELECT * FROM time_entries WHERE id=?", (eid,)).fetchone())

    entry = run_write_txn(db_path, _tx)
    return {"entry": entry, "warnings": check["warnings"]}


def time_entry_start(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    entry_type: str = "project",
    project_id: Optional[str] = None,
    cost_center_code: Optional[str] = None,
    description: Optional[str] = None,
    at: Optional[DateLike] = None,
) -> Dict[str, Any]:
    moment = _moment(at)
    if is_week_locked(db_path, employee_id, moment):
        raise ValidationError("Woche ist gesperrt.", field="start_time")
    eid = new_id()

    def _tx(con: sqlite3.Connection) -> Dict[str, Any]:
        get_record(con, "employee", company_id, employee_id)
        _check_target(con, company_id, entry_type, project_id, cost_center_code)
        running = con.execute(
            "SELECT id FROM time_entries WHERE employee_id=? AND end_time IS NULL",
            (employee_id,),
        ).fetchone()
        if running:
            raise ConflictError("Es läuft bereits ein Timer.", {"entry_id": running["id"]})
        now = now_iso()
        con.execute(
            """
            INSERT INTO time_entries(id, company_id, employee_id, entry_type, project_id,
              cost_center_code, start_time, break_minutes, description, status,
              created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,0,?,'active',?,?)
            """,
            (
                eid,
                company_id,
                employee_id,
                entry_type,
                project_id if entry_type == "project" else None,
                cost_center_code if entry_type == "cost_center" else None,
                _ts(moment),
                description,
                now,
                now,
            ),
        )
        return dict(con.execute("SELECT * FROM time_entries WHERE id=?", (eid,)).fetchone())

    return run_write_txn(db_path, _tx)


def time_entry_stop(
    db_path: Path,
    *,
    company_id: str,
    employee_id: str,
    at: Optional[DateLike] = None,
    break_minutes: int = 0,
) -> Dict[str, Any]:
    moment = _moment(at)

    def _running(con: sqlite3.Connection) -> sqlite3.Row:
        row = con.execute(
            """
            SELECT * FROM time_entries
            WHERE company_id=? AND employee_id=? AND end_time IS NULL
            """,
            (company_id, employee_id),
        ).fetchone()
        if row is None:
            raise ResourceNotFoundError("Laufender Timer", employee_id)
        return row

    con = connect(db_path)
    try:
        entry = dict(_running(con))
    finally:
        con.close()
    check = validate_time_entry(
        db_path,
        company_id=company_id,
        employee_id=employee_id,
        start=entry["start_time"],
        end=moment,
        break_minutes=int(break_minutes or 0),
        exclude_entry_id=entry["id"],
    )
    if not check["is_valid"]:
        raise ValidationError(
            "Zeiteintrag ist ungültig.",
            field="time_entry",
            details={"errors": check["errors"], "warnings": check["warnings"]},
        )

    def _tx(con: sqlite3.Connection) -> Dict[str, Any]:
        row = _running(con)
        if row["id"] != entry["id"]:
            raise ConflictError("Timer wurde zwischenzeitlich geändert.", {"entry_id": entry["id"]})
        con.execute(
            """
            UPDATE time_entries SET end_time=?, break_minutes=?, status='completed', updated_at=?
            WHERE id=?
            """,
            (_ts(moment), int(break_minutes or 0), now_iso(), row["id"]),
        )
        event_append(con, "time_entry_stopped", "time_entry", row["id"], {"employee_id": employee_id})
        return dict(con.execute("SELECT * FROM time_entries WHERE id=?", (row["id"],)).fetchone())

    return {"entry": run_write_txn(db_path, _tx), "warnings": check["warnings"]}


def auto_stop_forgotten_entries(
    db_path: Path,
    *,
    company_id: Optional[str] = None,
    max_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Beendet Timer, die länger als ``max_hours`` laufen, bei Start + max_hours."""
    hours = Config.AUTO_STOP_HOURS if max_hours is None else int(max_hours)
    current = now or datetime.now()
    cutoff = current - timedelta(hours=hours)

    def _tx(con: sqlite3.Connection) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM time_entries WHERE end_time IS NULL"
        params: list[Any] = []
        if company_id:
            sql += " AND company_id=?"
            params.append(company_id)
        stopped = []
        for row in con.execute(sql, params).fetchall():
            started = parse_dt(row["start_time"])
            if started > cutoff:
                continue
            stop_at = started + timedelta(hours=hours)
            con.execute(
                """
                UPDATE time_entries SET end_time=?, status='auto_stopped', updated_at=?
                WHERE id=?
                """,
                (_ts(stop_at), now_iso(), row["id"]),
            )
            event_append(
                con,
                "time_entry_auto_stopped",
                "time_entry",
                row["id"],
                {"employee_id": row["employee_id"], "max_hours": hours},
            )
            stopped.append(
                {"id": row["id"], "employee_id": row["employee_id"], "end_time": _ts(stop_at)}
            )
        return stopped

    stopped = run_write_txn(db_path, _tx)
    if stopped:
        logger.info(f"Auto-stopped {len(stopped)} time entries after {hours}h")
    return stopped
