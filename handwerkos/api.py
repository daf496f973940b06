from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Type, TypeVar

from flask import Blueprint, current_app, g, jsonify, request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .db import get_schema_version
from .errors import ResourceNotFoundError, ValidationError
from .eventlog import event_verify_chain
from .mail import parse_email_content
from .projects import calculate_project_health
from .records import set_status
from .statuses import KIND_TABLES
from .timetracking.rules import parse_day, parse_dt
from .timetracking import (
    calculate_coverage,
    get_week_reconciliation,
    is_week_ready_for_submission,
    time_entry_create,
    validate_time_entry,
)
from .workflow import (
    create_invoice_from_project,
    create_order_from_quote,
    create_project_from_order,
    get_dashboard_critical_data,
    get_workflow_chain,
)

bp = Blueprint("api", __name__, url_prefix="/api")

M = TypeVar("M", bound=BaseModel)

# URL-Segmente wie /api/quotes/... auf interne Belegarten abbilden.
KIND_SEGMENTS = {table: kind for kind, table in KIND_TABLES.items()}
KIND_SEGMENTS.update({kind: kind for kind in KIND_TABLES})


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ActorBody(StrictModel):
    actor: Optional[str] = Field(default=None, max_length=200)


class InvoiceBody(ActorBody):
    due_days: Optional[int] = Field(default=None, ge=0, le=365)


class StatusBody(ActorBody):
    status: str = Field(min_length=1, max_length=50)


class EntryWindow(StrictModel):
    employee_id: str = Field(min_length=1)
    start: datetime
    end: datetime
    break_minutes: int = Field(default=0, ge=0)

    @field_validator("start", "end")
    @classmethod
    def _local_time(cls, value: datetime) -> datetime:
        # Zeiterfassung rechnet mit lokaler Zeit ohne Zeitzone.
        return parse_dt(value)


class TimeValidateBody(EntryWindow):
    exclude_entry_id: Optional[str] = None


class TimeEntryBody(EntryWindow):
    entry_type: str = Field(default="project", pattern="^(project|cost_center)$")
    project_id: Optional[str] = None
    cost_center_code: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=2000)


class MailParseBody(StrictModel):
    raw: str = Field(min_length=1)


def _db():
    return current_app.config["CORE_DB"]


def _company() -> str:
    return getattr(g, "company_id", None) or str(current_app.config["COMPANY_DEFAULT"])


def _body(model: Type[M]) -> M:
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("JSON-Objekt erwartet.", field="body")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        field = errors[0]["field"] if errors else None
        raise ValidationError("Ungültige Eingabe.", field=field, details={"errors": errors})


def _kind(segment: str) -> str:
    kind = KIND_SEGMENTS.get(segment)
    if not kind:
        raise ResourceNotFoundError("Belegart", segment)
    return kind


@bp.get("/ping")
def ping():
    return jsonify(ok=True)


@bp.get("/health")
def health():
    db_path = _db()
    ok, bad_id, reason = event_verify_chain(db_path)
    return jsonify(
        ok=True,
        schema_version=get_schema_version(db_path),
        db_path=str(db_path),
        company_id=_company(),
        event_chain={"ok": ok, "bad_id": bad_id, "reason": reason},
    )


@bp.post("/quotes/<quote_id>/order")
def quote_to_order(quote_id: str):
    body = _body(ActorBody)
    order_id = create_order_from_quote(
        _db(), company_id=_company(), quote_id=quote_id, actor=body.actor
    )
    return jsonify(ok=True, order_id=order_id), 201


@bp.post("/orders/<order_id>/project")
def order_to_project(order_id: str):
    body = _body(ActorBody)
    project_id = create_project_from_order(
        _db(), company_id=_company(), order_id=order_id, actor=body.actor
    )
    return jsonify(ok=True, project_id=project_id), 201


@bp.post("/projects/<project_id>/invoice")
def project_to_invoice(project_id: str):
    body = _body(InvoiceBody)
    invoice_id = create_invoice_from_project(
        _db(),
        company_id=_company(),
        project_id=project_id,
        actor=body.actor,
        due_days=body.due_days,
    )
    return jsonify(ok=True, invoice_id=invoice_id), 201


@bp.post("/<segment>/<record_id>/status")
def change_status(segment: str, record_id: str):
    kind = _kind(segment)
    body = _body(StatusBody)
    record = set_status(
        _db(),
        company_id=_company(),
        kind=kind,
        record_id=record_id,
        status=body.status,
        actor=body.actor,
    )
    return jsonify(ok=True, kind=kind, record=record)


@bp.get("/workflow/<segment>/<entity_id>")
def workflow_chain(segment: str, entity_id: str):
    kind = _kind(segment)
    chain = get_workflow_chain(_db(), company_id=_company(), entity_id=entity_id, kind=kind)
    if chain is None:
        raise ResourceNotFoundError("Workflow-Kette", entity_id)
    return jsonify(ok=True, chain=chain)


@bp.get("/dashboard/critical")
def dashboard_critical():
    threshold = request.args.get("threshold", type=float)
    data = get_dashboard_critical_data(
        _db(), company_id=_company(), threshold_percent=threshold
    )
    return jsonify(ok=True, **data)


@bp.get("/projects/<project_id>/health")
def project_health(project_id: str):
    result = calculate_project_health(_db(), company_id=_company(), project_id=project_id)
    if result is None:
        raise ResourceNotFoundError("Projekt", project_id)
    return jsonify(ok=True, health=result)


@bp.post("/time/validate")
def time_validate():
    body = _body(TimeValidateBody)
    result = validate_time_entry(
        _db(),
        company_id=_company(),
        employee_id=body.employee_id,
        start=body.start,
        end=body.end,
        break_minutes=body.break_minutes,
        exclude_entry_id=body.exclude_entry_id,
    )
    return jsonify(ok=True, **result)


@bp.post("/time/entries")
def time_entries_create():
    body = _body(TimeEntryBody)
    result = time_entry_create(_db(), company_id=_company(), **body.model_dump())
    return jsonify(ok=True, **result), 201


@bp.get("/time/reconciliation/<employee_id>/<day>")
def reconciliation_day(employee_id: str, day: str):
    result = calculate_coverage(
        _db(), company_id=_company(), employee_id=employee_id, day=_parse_url_day(day)
    )
    return jsonify(ok=True, reconciliation=result.to_dict())


@bp.get("/time/reconciliation/<employee_id>/week/<week_start>")
def reconciliation_week(employee_id: str, week_start: str):
    start = _parse_url_day(week_start)
    week: Dict[str, Any] = get_week_reconciliation(
        _db(), company_id=_company(), employee_id=employee_id, week_start_date=start
    )
    readiness = is_week_ready_for_submission(
        _db(), company_id=_company(), employee_id=employee_id, week_start_date=start
    )
    return jsonify(ok=True, week=week, submission=readiness)


@bp.post("/mail/parse")
def mail_parse():
    body = _body(MailParseBody)
    parsed = parse_email_content(body.raw)
    return jsonify(ok=True, email=parsed.to_dict())


def _parse_url_day(value: str) -> str:
    try:
        return parse_day(value).isoformat()
    except ValueError:
        raise ValidationError(f"Ungültiges Datum: {value}", field="date")
