from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from .errors import ConflictError

logger = logging.getLogger("handwerkos.db")

SCHEMA_VERSION = 1

T = TypeVar("T")

_DB_LOCK = threading.Lock()
_WRITE_BACKOFF = [0.05, 0.1, 0.2, 0.4, 0.8]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_id() -> str:
    return uuid.uuid4().hex


def connect(db_path: Path) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(str(db_path), timeout=5.0)
    con.row_factory = sqlite3.Row
    try:
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")
    except sqlite3.DatabaseError:
        pass
    con.execute("PRAGMA foreign_keys=ON;")
    con.execute("PRAGMA busy_timeout=5000;")
    return con


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS schema_meta(
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS customers(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      company_name TEXT NOT NULL,
      contact_person TEXT,
      email TEXT,
      address TEXT,
      customer_type TEXT NOT NULL DEFAULT 'b2c',
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS employees(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      first_name TEXT NOT NULL,
      last_name TEXT NOT NULL,
      email TEXT,
      hourly_rate REAL NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotes(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      customer_id TEXT NOT NULL REFERENCES customers(id),
      quote_number TEXT NOT NULL,
      title TEXT,
      description TEXT,
      status TEXT NOT NULL DEFAULT 'draft',
      valid_until TEXT,
      total_amount REAL NOT NULL DEFAULT 0,
      currency TEXT NOT NULL DEFAULT 'EUR',
      workflow_target_type TEXT,
      workflow_target_id TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE(company_id, quote_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      customer_id TEXT NOT NULL REFERENCES customers(id),
      order_number TEXT NOT NULL,
      title TEXT NOT NULL,
      description TEXT,
      order_date TEXT NOT NULL,
      due_date TEXT,
      status TEXT NOT NULL DEFAULT 'created',
      priority TEXT NOT NULL DEFAULT 'medium',
      total_amount REAL NOT NULL DEFAULT 0,
      currency TEXT NOT NULL DEFAULT 'EUR',
      notes TEXT,
      workflow_origin_type TEXT,
      workflow_origin_id TEXT,
      workflow_target_type TEXT,
      workflow_target_id TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE(company_id, order_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      customer_id TEXT REFERENCES customers(id),
      name TEXT NOT NULL,
      description TEXT,
      status TEXT NOT NULL DEFAULT 'geplant',
      start_date TEXT,
      end_date TEXT,
      location TEXT,
      budget REAL NOT NULL DEFAULT 0,
      planned_hours REAL,
      target_revenue REAL,
      project_manager_id TEXT,
      workflow_origin_type TEXT,
      workflow_origin_id TEXT,
      workflow_target_type TEXT,
      workflow_target_id TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoices(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      customer_id TEXT REFERENCES customers(id),
      project_id TEXT REFERENCES projects(id),
      invoice_number TEXT NOT NULL,
      issue_date TEXT NOT NULL,
      due_date TEXT,
      status TEXT NOT NULL DEFAULT 'draft',
      total_amount REAL NOT NULL DEFAULT 0,
      currency TEXT NOT NULL DEFAULT 'EUR',
      description TEXT,
      notes TEXT,
      workflow_origin_type TEXT,
      workflow_origin_id TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE(company_id, invoice_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS material_entries(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      project_id TEXT NOT NULL REFERENCES projects(id),
      name TEXT NOT NULL,
      quantity REAL NOT NULL DEFAULT 1,
      unit_price REAL NOT NULL DEFAULT 0,
      total_cost REAL NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_chains(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      customer_id TEXT,
      quote_id TEXT,
      order_id TEXT,
      project_id TEXT,
      invoice_id TEXT,
      current_step TEXT NOT NULL,
      metadata_json TEXT NOT NULL DEFAULT '{}',
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS time_rules(
      company_id TEXT PRIMARY KEY,
      rules_json TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS attendance(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      employee_id TEXT NOT NULL,
      date TEXT NOT NULL,
      clock_in TEXT NOT NULL,
      clock_out TEXT,
      break_minutes INTEGER NOT NULL DEFAULT 0,
      work_minutes INTEGER,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS time_entries(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      employee_id TEXT NOT NULL,
      entry_type TEXT NOT NULL DEFAULT 'project',
      project_id TEXT REFERENCES projects(id),
      cost_center_code TEXT,
      start_time TEXT NOT NULL,
      end_time TEXT,
      break_minutes INTEGER NOT NULL DEFAULT 0,
      description TEXT,
      status TEXT NOT NULL DEFAULT 'active',
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS week_locks(
      company_id TEXT NOT NULL,
      employee_id TEXT NOT NULL,
      week_start TEXT NOT NULL,
      locked_by TEXT,
      locked_at TEXT NOT NULL,
      PRIMARY KEY(employee_id, week_start)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS emails(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      message_id TEXT,
      rfc_message_id TEXT,
      thread_id TEXT,
      direction TEXT NOT NULL DEFAULT 'inbound',
      subject TEXT,
      sender_email TEXT,
      sender_name TEXT,
      recipient_email TEXT,
      content TEXT,
      content_type TEXT NOT NULL DEFAULT 'text',
      has_attachments INTEGER NOT NULL DEFAULT 0,
      in_reply_to TEXT,
      received_at TEXT NOT NULL,
      is_read INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL,
      UNIQUE(company_id, message_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_connections(
      id TEXT PRIMARY KEY,
      company_id TEXT NOT NULL,
      user_id TEXT NOT NULL,
      provider TEXT NOT NULL DEFAULT 'gmail',
      email_address TEXT NOT NULL,
      access_token_enc TEXT NOT NULL,
      refresh_token_enc TEXT NOT NULL,
      token_expires_at TEXT NOT NULL,
      is_active INTEGER NOT NULL DEFAULT 1,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE(user_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events(
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      ts TEXT NOT NULL,
      event_type TEXT NOT NULL,
      entity_type TEXT NOT NULL,
      entity_id TEXT NOT NULL,
      payload_json TEXT NOT NULL,
      prev_hash TEXT NOT NULL,
      hash TEXT NOT NULL UNIQUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_quotes_company ON quotes(company_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_company ON orders(company_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_projects_company ON projects(company_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_invoices_company ON invoices(company_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_chains_quote ON workflow_chains(quote_id)",
    "CREATE INDEX IF NOT EXISTS idx_chains_order ON workflow_chains(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_chains_project ON workflow_chains(project_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_time_entries_employee
    ON time_entries(employee_id, start_time)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_attendance_employee
    ON attendance(employee_id, date)
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_entity ON events(entity_type, entity_id, id DESC)",
]


def ensure_schema(db_path: Path) -> None:
    con = connect(db_path)
    try:
        for stmt in _SCHEMA:
            con.execute(stmt)
        con.execute(
            "INSERT OR IGNORE INTO schema_meta(key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        con.commit()
    finally:
        con.close()


def get_schema_version(db_path: Path) -> int:
    ensure_schema(db_path)
    con = connect(db_path)
    try:
        row = con.execute(
            "SELECT value FROM schema_meta WHERE key='schema_version'"
        ).fetchone()
        return int(row["value"]) if row else 0
    finally:
        con.close()


def _is_locked_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "database is busy" in msg


def run_write_txn(db_path: Path, fn: Callable[[sqlite3.Connection], T]) -> T:
    for idx, wait in enumerate(_WRITE_BACKOFF, start=1):
        with _DB_LOCK:
            con = connect(db_path)
            try:
                con.execute("BEGIN IMMEDIATE")
                result = fn(con)
                con.commit()
                return result
            except sqlite3.OperationalError as exc:
                con.rollback()
                if not _is_locked_error(exc):
                    raise
                if idx == len(_WRITE_BACKOFF):
                    raise ConflictError("Datenbank ist gesperrt.", {"reason": "db_locked"})
                logger.warning(f"DB locked, retry {idx}/{len(_WRITE_BACKOFF)}")
            except Exception:
                con.rollback()
                raise
            finally:
                con.close()
        time.sleep(wait)
    raise ConflictError("Datenbank ist gesperrt.", {"reason": "db_locked"})


def fetch_all(db_path: Path, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
    con = connect(db_path)
    try:
        return [dict(r) for r in con.execute(sql, params).fetchall()]
    finally:
        con.close()


def fetch_one(db_path: Path, sql: str, params: tuple = ()) -> dict[str, Any] | None:
    con = connect(db_path)
    try:
        row = con.execute(sql, params).fetchone()
        return dict(row) if row else None
    finally:
        con.close()
