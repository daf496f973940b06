from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from handwerkos.db import ensure_schema, fetch_one
from handwerkos.errors import (
    ConflictError,
    InvalidTransitionError,
    ResourceNotFoundError,
    ValidationError,
)
from handwerkos.eventlog import event_get_history, event_verify_chain
from handwerkos.records import create_customer, create_quote, get_record, set_status
from handwerkos.workflow import (
    create_invoice_from_project,
    create_order_from_quote,
    create_project_from_order,
    get_workflow_chain,
)

COMPANY = "FIRMA_A"
TODAY = date(2025, 3, 10)


def _init_db(tmp_path: Path) -> Path:
    db = tmp_path / "core.sqlite3"
    ensure_schema(db)
    return db


def _sent_quote(db: Path, *, company_id: str = COMPANY, amount: float = 4800.0) -> str:
    customer = create_customer(db, company_id=company_id, company_name="Müller GmbH", customer_type="b2b")
    quote = create_quote(
        db,
        company_id=company_id,
        customer_id=customer,
        title="Badsanierung",
        total_amount=amount,
        description="Fliesen und Sanitär",
        valid_until="2025-04-30",
    )
    set_status(db, company_id=company_id, kind="quote", record_id=quote, status="sent")
    return quote


def test_full_chain_quote_to_invoice(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    quote_id = _sent_quote(db)

    order_id = create_order_from_quote(db, company_id=COMPANY, quote_id=quote_id, actor="dev", today=TODAY)
    order = get_record(db, "order", COMPANY, order_id)
    assert order["order_number"] == "AUF-000001"
    assert order["status"] == "confirmed"
    assert order["priority"] == "medium"
    assert order["title"] == "Badsanierung"
    assert order["order_date"] == "2025-03-10"
    assert order["due_date"] == "2025-04-30"
    assert order["total_amount"] == 4800.0
    assert order["currency"] == "EUR"
    assert order["notes"] == "Automatisch erstellt aus Angebot ANG-000001"
    assert order["workflow_origin_type"] == "quote"
    assert order["workflow_origin_id"] == quote_id

    quote = get_record(db, "quote", COMPANY, quote_id)
    assert quote["status"] == "accepted"
    assert quote["workflow_target_type"] == "order"
    assert quote["workflow_target_id"] == order_id

    project_id = create_project_from_order(db, company_id=COMPANY, order_id=order_id, today=TODAY)
    project = get_record(db, "project", COMPANY, project_id)
    assert project["name"] == "Badsanierung"
    assert project["status"] == "geplant"
    assert project["start_date"] == "2025-03-10"
    assert project["end_date"] == "2025-04-30"
    assert project["budget"] == 4800.0
    assert project["description"] == "Automatisch erstellt aus Auftrag AUF-000001. Fliesen und Sanitär"
    assert get_record(db, "order", COMPANY, order_id)["status"] == "in_progress"

    set_status(db, company_id=COMPANY, kind="project", record_id=project_id, status="in_bearbeitung")
    set_status(db, company_id=COMPANY, kind="project", record_id=project_id, status="abgeschlossen")

    invoice_id = create_invoice_from_project(db, company_id=COMPANY, project_id=project_id, today=TODAY)
    invoice = get_record(db, "invoice", COMPANY, invoice_id)
    assert invoice["invoice_number"] == "RG-000001"
    assert invoice["status"] == "draft"
    assert invoice["issue_date"] == "2025-03-10"
    assert invoice["due_date"] == "2025-03-24"
    assert invoice["total_amount"] == 4800.0
    assert invoice["description"] == "Rechnung für Projekt: Badsanierung"
    assert invoice["project_id"] == project_id
    assert get_record(db, "order", COMPANY, order_id)["status"] == "invoiced"

    chain = get_workflow_chain(db, company_id=COMPANY, entity_id=invoice_id, kind="invoice")
    assert chain is not None
    assert chain["quote_id"] == quote_id
    assert chain["order_id"] == order_id
    assert chain["project_id"] == project_id
    assert chain["invoice_id"] == invoice_id
    assert chain["current_step"] == "invoice"
    assert chain["metadata"]["total_amount"] == 4800.0
    assert "created_at" in chain["metadata"]

    assert event_verify_chain(db) == (True, None, None)
    history = event_get_history(db, "order", order_id)
    assert {e["event_type"] for e in history} >= {"order_created_from_quote", "order_status_changed"}


def test_order_numbers_are_sequential_per_company(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    first = create_order_from_quote(db, company_id=COMPANY, quote_id=_sent_quote(db))
    second = create_order_from_quote(db, company_id=COMPANY, quote_id=_sent_quote(db))
    other = create_order_from_quote(db, company_id="FIRMA_B", quote_id=_sent_quote(db, company_id="FIRMA_B"))
    assert get_record(db, "order", COMPANY, first)["order_number"] == "AUF-000001"
    assert get_record(db, "order", COMPANY, second)["order_number"] == "AUF-000002"
    assert get_record(db, "order", "FIRMA_B", other)["order_number"] == "AUF-000001"


def test_quote_cannot_be_converted_twice(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    quote_id = _sent_quote(db)
    create_order_from_quote(db, company_id=COMPANY, quote_id=quote_id)
    with pytest.raises(ConflictError):
        create_order_from_quote(db, company_id=COMPANY, quote_id=quote_id)
    count = fetch_one(db, "SELECT COUNT(*) AS n FROM orders")
    assert count == {"n": 1}


def test_rejected_quote_cannot_become_order(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    quote_id = _sent_quote(db)
    set_status(db, company_id=COMPANY, kind="quote", record_id=quote_id, status="rejected")
    with pytest.raises(InvalidTransitionError):
        create_order_from_quote(db, company_id=COMPANY, quote_id=quote_id)


def test_quote_of_other_company_is_not_found(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    quote_id = _sent_quote(db)
    with pytest.raises(ResourceNotFoundError):
        create_order_from_quote(db, company_id="FIRMA_B", quote_id=quote_id)


def test_invoice_requires_completed_project(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    order_id = create_order_from_quote(db, company_id=COMPANY, quote_id=_sent_quote(db))
    project_id = create_project_from_order(db, company_id=COMPANY, order_id=order_id)
    with pytest.raises(ValidationError) as exc:
        create_invoice_from_project(db, company_id=COMPANY, project_id=project_id)
    assert exc.value.message == "Rechnung kann nur für abgeschlossene Projekte erstellt werden"
    assert fetch_one(db, "SELECT COUNT(*) AS n FROM invoices") == {"n": 0}


def test_invoice_due_days_override(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    order_id = create_order_from_quote(db, company_id=COMPANY, quote_id=_sent_quote(db))
    project_id = create_project_from_order(db, company_id=COMPANY, order_id=order_id)
    set_status(db, company_id=COMPANY, kind="project", record_id=project_id, status="in_bearbeitung")
    set_status(db, company_id=COMPANY, kind="project", record_id=project_id, status="abgeschlossen")
    invoice_id = create_invoice_from_project(
        db, company_id=COMPANY, project_id=project_id, due_days=30, today=TODAY
    )
    assert get_record(db, "invoice", COMPANY, invoice_id)["due_date"] == "2025-04-09"
    with pytest.raises(ConflictError):
        create_invoice_from_project(db, company_id=COMPANY, project_id=project_id)


def test_workflow_chain_missing_and_unknown_kind(tmp_path: Path) -> None:
    db = _init_db(tmp_path)
    assert get_workflow_chain(db, company_id=COMPANY, entity_id="nope", kind="quote") is None
    with pytest.raises(ValidationError):
        get_workflow_chain(db, company_id=COMPANY, entity_id="nope", kind="lieferschein")
