from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .db import connect, new_id, now_iso, run_write_txn
from .errors import ResourceNotFoundError, ValidationError
from .eventlog import event_append
from .statuses import KIND_TABLES, assert_transition

logger = logging.getLogger("handwerkos.records")

RECORD_TABLES = {
    **KIND_TABLES,
    "customer": "customers",
    "employee": "employees",
}

RESOURCE_NAMES = {
    "quote": "Angebot",
    "order": "Auftrag",
    "project": "Projekt",
    "invoice": "Rechnung",
    "customer": "Kunde",
    "employee": "Mitarbeiter",
}

NUMBER_COLUMNS = {
    "quotes": "quote_number",
    "orders": "order_number",
    "invoices": "invoice_number",
}


def _require(value: Any, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"Pflichtfeld fehlt: {field}", field=field)
    return text


def next_number(con: sqlite3.Connection, table: str, company_id: str, prefix: str) -> str:
    """Nächste fortlaufende Belegnummer, z.B. ``AUF-000003``."""
    column = NUMBER_COLUMNS[table]
    rows = con.execute(
        f"SELECT {column} AS nr FROM {table} WHERE company_id=? AND {column} LIKE ?",
        (company_id, f"{prefix}-%"),
    ).fetchall()
    highest = 0
    for row in rows:
        suffix = str(row["nr"]).split("-", 1)[-1]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}-{highest + 1:06d}"


def get_record(
    con_or_path: Union[sqlite3.Connection, Path],
    kind: str,
    company_id: str,
    record_id: str,
) -> Dict[str, Any]:
    table = RECORD_TABLES.get(kind)
    if table is None:
        raise ValidationError(f"Unbekannter Datensatztyp: {kind}", field="kind")
    resource = RESOURCE_NAMES[kind]
    if isinstance(con_or_path, sqlite3.Connection):
        row = con_or_path.execute(
            f"SELECT * FROM {table} WHERE id=? AND company_id=?",
            (record_id, company_id),
        ).fetchone()
    else:
        con = connect(con_or_path)
        try:
            row = con.execute(
                f"SELECT * FROM {table} WHERE id=? AND company_id=?",
                (record_id, company_id),
            ).fetchone()
        finally:
            con.close()
    if row is None:
        raise ResourceNotFoundError(resource, record_id)
    return dict(row)


def create_customer(
    db_path: Path,
    *,
    company_id: str,
    company_name: str,
    contact_person: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    customer_type: str = "b2c",
) -> str:
    name = _require(company_name, "company_name")
    if customer_type not in {"b2b", "b2c"}:
        raise ValidationError("Kundentyp muss b2b oder b2c sein.", field="customer_type")
    cid = new_id()
    now = now_iso()

    def _tx(con: sqlite3.Connection) -> str:
        con.execute(
            """
            INSERT INTO customers(id, company_id, company_name, contact_person, email,
              address, customer_type, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (cid, company_id, name, contact_person, email, address, customer_type, now, now),
        )
        event_append(con, "customer_created", "customer", cid, {"company_id": company_id})
        return cid

    return run_write_txn(db_path, _tx)


def create_employee(
    db_path: Path,
    *,
    company_id: str,
    first_name: str,
    last_name: str,
    email: Optional[str] = None,
    hourly_rate: float = 0.0,
) -> str:
    first = _require(first_name, "first_name")
    last = _require(last_name, "last_name")
    if float(hourly_rate) < 0:
        raise ValidationError("Stundensatz darf nicht negativ sein.", field="hourly_rate")
    eid = new_id()
    now = now_iso()

    def _tx(con: sqlite3.Connection) -> str:
        con.execute(
            """
            INSERT INTO employees(id, company_id, first_name, last_name, email,
              hourly_rate, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (eid, company_id, first, last, email, float(hourly_rate), now, now),
        )
        return eid

    return run_write_txn(db_path, _tx)


def create_quote(
    db_path: Path,
    *,
    company_id: str,
    customer_id: str,
    title: str,
    total_amount: float,
    description: Optional[str] = None,
    valid_until: Optional[str] = None,
    currency: str = "EUR",
) -> str:
    if float(total_amount) < 0:
        raise ValidationError("Betrag darf nicht negativ sein.", field="total_amount")
    qid = new_id()
    now = now_iso()

    def _tx(con: sqlite3.Connection) -> str:
        get_record(con, "customer", company_id, customer_id)
        number = next_number(con, "quotes", company_id, "ANG")
        con.execute(
            """
            INSERT INTO quotes(id, company_id, customer_id, quote_number, title,
              description, status, valid_until, total_amount, currency,
              created_at, updated_at)
            VALUES (?,?,?,?,?,?,'draft',?,?,?,?,?)
            """,
            (
                qid,
                company_id,
                customer_id,
                number,
                title,
                description,
                valid_until,
                float(total_amount),
                currency or "EUR",
                now,
                now,
            ),
        )
        event_append(con, "quote_created", "quote", qid, {"quote_number": number})
        return qid

    return run_write_txn(db_path, _tx)


def create_project(
    db_path: Path,
    *,
    company_id: str,
    name: str,
    customer_id: Optional[str] = None,
    status: str = "geplant",
    budget: float = 0.0,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    planned_hours: Optional[float] = None,
    target_revenue: Optional[float] = None,
    project_manager_id: Optional[str] = None,
    description: Optional[str] = None,
) -> str:
    """Projekt ohne Auftrag anlegen, z.B. für Kleinaufträge oder Anfragen."""
    pname = _require(name, "name")
    if status not in {"anfrage", "besichtigung", "geplant", "in_bearbeitung", "abgeschlossen"}:
        raise ValidationError(f"Unbekannter Projektstatus: {status}", field="status")
    pid = new_id()
    now = now_iso()

    def _tx(con: sqlite3.Connection) -> str:
        if customer_id:
            get_record(con, "customer", company_id, customer_id)
        con.execute(
            """
            INSERT INTO projects(id, company_id, customer_id, name, description, status,
              start_date, end_date, budget, planned_hours, target_revenue,
              project_manager_id, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                pid,
                company_id,
                customer_id,
                pname,
                description,
                status,
                start_date,
                end_date,
                float(budget or 0),
                planned_hours,
                target_revenue,
                project_manager_id,
                now,
                now,
            ),
        )
        event_append(con, "project_created", "project", pid, {"status": status})
        return pid

    return run_write_txn(db_path, _tx)


def create_material_entry(
    db_path: Path,
    *,
    company_id: str,
    project_id: str,
    name: str,
    quantity: float = 1.0,
    unit_price: float = 0.0,
) -> str:
    mname = _require(name, "name")
    if float(quantity) <= 0:
        raise ValidationError("Menge muss größer als 0 sein.", field="quantity")
    mid = new_id()
    total = round(float(quantity) * float(unit_price), 2)

    def _tx(con: sqlite3.Connection) -> str:
        get_record(con, "project", company_id, project_id)
        con.execute(
            """
            INSERT INTO material_entries(id, company_id, project_id, name, quantity,
              unit_price, total_cost, created_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (mid, company_id, project_id, mname, float(quantity), float(unit_price), total, now_iso()),
        )
        return mid

    return run_write_txn(db_path, _tx)


def apply_status(
    con: sqlite3.Connection,
    kind: str,
    record: Dict[str, Any],
    status: str,
    *,
    actor: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Statuswechsel innerhalb einer offenen Schreibtransaktion."""
    current = str(record.get("status") or "")
    assert_transition(kind, current, status)
    table = RECORD_TABLES[kind]
    assignments = ["status=?", "updated_at=?"]
    params: list[Any] = [status, now_iso()]
    for column, value in (extra or {}).items():
        assignments.append(f"{column}=?")
        params.append(value)
    params.append(record["id"])
    con.execute(f"UPDATE {table} SET {', '.join(assignments)} WHERE id=?", params)
    record["status"] = status
    if current != status:
        event_append(
            con,
            f"{kind}_status_changed",
            kind,
            record["id"],
            {"from": current, "to": status, "actor": actor},
        )


def set_status(
    db_path: Path,
    *,
    company_id: str,
    kind: str,
    record_id: str,
    status: str,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    new_status = _require(status, "status")

    def _tx(con: sqlite3.Connection) -> Dict[str, Any]:
        record = get_record(con, kind, company_id, record_id)
        apply_status(con, kind, record, new_status, actor=actor)
        return record

    record = run_write_txn(db_path, _tx)
    logger.info(f"{kind} {record_id} -> {new_status}")
    return record
