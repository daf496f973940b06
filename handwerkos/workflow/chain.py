"""
Durchgängiger Geschäftsprozess: Angebot -> Auftrag -> Projekt -> Rechnung.

Jeder Schritt läuft in einer Schreibtransaktion: Zielbeleg anlegen, Quellbeleg
weiterschalten, Workflow-Kette pflegen und ein Event schreiben.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import Config
from ..db import connect, new_id, now_iso, run_write_txn
from ..errors import ConflictError, ValidationError
from ..eventlog import event_append
from ..records import apply_status, get_record, next_number
from ..statuses import assert_transition

logger = logging.getLogger("handwerkos.workflow")

CHAIN_KINDS = ("quote", "order", "project", "invoice")


def _today(today: Optional[date]) -> date:
    return today or date.today()


def _ensure_not_converted(kind: str, record: Dict[str, Any]) -> None:
    if record.get("workflow_target_id"):
        raise ConflictError(
            "Beleg wurde bereits weiterverarbeitet.",
            {
                "kind": kind,
                "id": record["id"],
                "target_type": record.get("workflow_target_type"),
                "target_id": record.get("workflow_target_id"),
            },
        )


def _chain_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    item = dict(row)
    try:
        item["metadata"] = json.loads(item.pop("metadata_json") or "{}")
    except ValueError:
        item["metadata"] = {}
    return item


def _find_chain(
    con: sqlite3.Connection, company_id: str, kind: str, entity_id: str
) -> Optional[Dict[str, Any]]:
    if kind not in CHAIN_KINDS:
        raise ValidationError(f"Unbekannter Workflow-Schritt: {kind}", field="kind")
    row = con.execute(
        f"SELECT * FROM workflow_chains WHERE company_id=? AND {kind}_id=?",
        (company_id, entity_id),
    ).fetchone()
    return _chain_row_to_dict(row) if row else None


def _upsert_chain(
    con: sqlite3.Connection,
    company_id: str,
    *,
    lookup_kind: str,
    lookup_id: str,
    current_step: str,
    customer_id: Optional[str],
    links: Dict[str, str],
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    now = now_iso()
    existing = _find_chain(con, company_id, lookup_kind, lookup_id)
    if existing:
        merged = dict(existing.get("metadata") or {})
        merged.update(metadata or {})
        merged["updated_at"] = now
        assignments = ["current_step=?", "metadata_json=?", "updated_at=?"]
        params: list[Any] = [current_step, json.dumps(merged, sort_keys=True), now]
        for kind, value in links.items():
            assignments.append(f"{kind}_id=?")
            params.append(value)
        params.append(existing["id"])
        con.execute(
            f"UPDATE workflow_chains SET {', '.join(assignments)} WHERE id=?", params
        )
        return existing["id"]

    chain_id = new_id()
    meta = dict(metadata or {})
    meta.setdefault("created_at", now)
    meta["updated_at"] = now
    ids = {f"{k}_id": None for k in CHAIN_KINDS}
    ids[f"{lookup_kind}_id"] = lookup_id
    for kind, value in links.items():
        ids[f"{kind}_id"] = value
    con.execute(
        """
        INSERT INTO workflow_chains(id, company_id, customer_id, quote_id, order_id,
          project_id, invoice_id, current_step, metadata_json, created_at, updated_at)
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            chain_id,
            company_id,
            customer_id,
            ids["quote_id"],
            ids["order_id"],
            ids["project_id"],
            ids["invoice_id"],
            current_step,
            json.dumps(meta, sort_keys=True),
            now,
            now,
        ),
    )
    return chain_id


def create_order_from_quote(
    db_path: Path,
    *,
    company_id: str,
    quote_id: str,
    actor: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    day = _today(today)

    def _tx(con: sqlite3.Connection) -> str:
        quote = get_record(con, "quote", company_id, quote_id)
        _ensure_not_converted("quote", quote)
        assert_transition("quote", str(quote["status"]), "accepted")

        order_id = new_id()
        order_number = next_number(con, "orders", company_id, "AUF")
        now = now_iso()
        con.execute(
            """
            INSERT INTO orders(id, company_id, customer_id, order_number, title, description,
              order_date, due_date, status, priority, total_amount, currency, notes,
              workflow_origin_type, workflow_origin_id, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,'confirmed','medium',?,?,?,'quote',?,?,?)
            """,
            (
                order_id,
                company_id,
                quote["customer_id"],
                order_number,
                quote.get("title") or "Auftrag aus Angebot",
                quote.get("description"),
                day.isoformat(),
                quote.get("valid_until"),
                float(quote.get("total_amount") or 0),
                quote.get("currency") or "EUR",
                f"Automatisch erstellt aus Angebot {quote['quote_number']}",
                quote_id,
                now,
                now,
            ),
        )
        apply_status(
            con,
            "quote",
            quote,
            "accepted",
            actor=actor,
            extra={"workflow_target_type": "order", "workflow_target_id": order_id},
        )
        _upsert_chain(
            con,
            company_id,
            lookup_kind="quote",
            lookup_id=quote_id,
            current_step="order",
            customer_id=quote["customer_id"],
            links={"order": order_id},
            metadata={
                "title": quote.get("title") or "Neuer Workflow",
                "total_amount": quote.get("total_amount"),
            },
        )
        event_append(
            con,
            "order_created_from_quote",
            "order",
            order_id,
            {"quote_id": quote_id, "order_number": order_number, "actor": actor},
        )
        return order_id

    order_id = run_write_txn(db_path, _tx)
    logger.info(f"Order {order_id} created from quote {quote_id}")
    return order_id


def create_project_from_order(
    db_path: Path,
    *,
    company_id: str,
    order_id: str,
    actor: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    day = _today(today)

    def _tx(con: sqlite3.Connection) -> str:
        order = get_record(con, "order", company_id, order_id)
        _ensure_not_converted("order", order)
        assert_transition("order", str(order["status"]), "in_progress")

        project_id = new_id()
        now = now_iso()
        description = (
            f"Automatisch erstellt aus Auftrag {order['order_number']}. "
            f"{order.get('description') or ''}"
        ).strip()
        con.execute(
            """
            INSERT INTO projects(id, company_id, customer_id, name, description, status,
              start_date, end_date, location, budget, workflow_origin_type,
              workflow_origin_id, created_at, updated_at)
            VALUES (?,?,?,?,?,'geplant',?,?,NULL,?,'order',?,?,?)
            """,
            (
                project_id,
                company_id,
                order["customer_id"],
                order["title"],
                description,
                day.isoformat(),
                order.get("due_date"),
                float(order.get("total_amount") or 0),
                order_id,
                now,
                now,
            ),
        )
        apply_status(
            con,
            "order",
            order,
            "in_progress",
            actor=actor,
            extra={"workflow_target_type": "project", "workflow_target_id": project_id},
        )
        _upsert_chain(
            con,
            company_id,
            lookup_kind="order",
            lookup_id=order_id,
            current_step="project",
            customer_id=order["customer_id"],
            links={"project": project_id},
            metadata={"title": order["title"], "total_amount": order.get("total_amount")},
        )
        event_append(
            con,
            "project_created_from_order",
            "project",
            project_id,
            {"order_id": order_id, "actor": actor},
        )
        return project_id

    project_id = run_write_txn(db_path, _tx)
    logger.info(f"Project {project_id} created from order {order_id}")
    return project_id


def _advance_origin_order(
    con: sqlite3.Connection, company_id: str, project: Dict[str, Any], actor: Optional[str]
) -> None:
    if project.get("workflow_origin_type") != "order" or not project.get("workflow_origin_id"):
        return
    order = get_record(con, "order", company_id, project["workflow_origin_id"])
    status = str(order["status"])
    if status == "in_progress":
        apply_status(con, "order", order, "completed", actor=actor)
        status = "completed"
    if status == "completed":
        apply_status(con, "order", order, "invoiced", actor=actor)
    elif status != "invoiced":
        logger.warning(f"Order {order['id']} stays in status {status} after invoicing")


def create_invoice_from_project(
    db_path: Path,
    *,
    company_id: str,
    project_id: str,
    actor: Optional[str] = None,
    due_days: Optional[int] = None,
    today: Optional[date] = None,
) -> str:
    day = _today(today)
    days = Config.INVOICE_DUE_DAYS if due_days is None else int(due_days)

    def _tx(con: sqlite3.Connection) -> str:
        project = get_record(con, "project", company_id, project_id)
        if project["status"] != "abgeschlossen":
            raise ValidationError(
                "Rechnung kann nur für abgeschlossene Projekte erstellt werden",
                field="status",
                details={"status": project["status"]},
            )
        _ensure_not_converted("project", project)

        invoice_id = new_id()
        invoice_number = next_number(con, "invoices", company_id, "RG")
        now = now_iso()
        con.execute(
            """
            INSERT INTO invoices(id, company_id, customer_id, project_id, invoice_number,
              issue_date, due_date, status, total_amount, currency, description, notes,
              workflow_origin_type, workflow_origin_id, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,'draft',?,'EUR',?,?,'project',?,?,?)
            """,
            (
                invoice_id,
                company_id,
                project.get("customer_id"),
                project_id,
                invoice_number,
                day.isoformat(),
                (day + timedelta(days=days)).isoformat(),
                float(project.get("budget") or 0),
                f"Rechnung für Projekt: {project['name']}",
                f"Automatisch erstellt aus Projekt {project['name']}",
                project_id,
                now,
                now,
            ),
        )
        con.execute(
            """
            UPDATE projects SET workflow_target_type='invoice', workflow_target_id=?,
              updated_at=? WHERE id=?
            """,
            (invoice_id, now, project_id),
        )
        _advance_origin_order(con, company_id, project, actor)
        _upsert_chain(
            con,
            company_id,
            lookup_kind="project",
            lookup_id=project_id,
            current_step="invoice",
            customer_id=project.get("customer_id"),
            links={"invoice": invoice_id},
            metadata={"title": project["name"]},
        )
        event_append(
            con,
            "invoice_created_from_project",
            "invoice",
            invoice_id,
            {"project_id": project_id, "invoice_number": invoice_number, "actor": actor},
        )
        return invoice_id

    invoice_id = run_write_txn(db_path, _tx)
    logger.info(f"Invoice {invoice_id} created from project {project_id}")
    return invoice_id


def get_workflow_chain(
    db_path: Path, *, company_id: str, entity_id: str, kind: str
) -> Optional[Dict[str, Any]]:
    con = connect(db_path)
    try:
        return _find_chain(con, company_id, kind, entity_id)
    finally:
        con.close()
