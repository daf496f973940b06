"""
Projekt-Gesundheit (Ampel) aus Soll-Werten und Ist-Werten.

Das Signal wird nie gespeichert, sondern bei jedem Aufruf neu berechnet.
"""
from __future__ import annotations

import math
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..db import connect

THRESHOLDS = {
    "time_yellow_pct_over": 0.10,
    "time_red_pct_over": 0.25,
    "cost_yellow_pct_over": 0.05,
    "cost_red_pct_over": 0.15,
    "deadline_yellow_days": 7,
    "deadline_red_days": 3,
}

REASON_TEXTS = {
    "MISSING_TARGETS": "Soll-Werte fehlen",
    "NO_TIME_ENTRIES": "Keine Zeiteinträge",
    "NO_PROJECT_MANAGER": "Kein Projektleiter",
    "TIME_OVER_PLANNED": "Stundenüberschreitung",
    "COST_OVER_TARGET": "Kostenüberschreitung",
    "DEADLINE_RISK": "Deadline-Risiko",
    "MISSING_INVOICE": "Rechnung fehlt",
}

NEXT_ACTIONS: Dict[str, Dict[str, Any]] = {
    "SET_TARGETS": {
        "priority": 1,
        "title": "Soll-Werte festlegen",
        "description": "Geplante Stunden, Ziel-Umsatz und Enddatum definieren",
        "cta_label": "Projekt bearbeiten",
        "cta_route": "/projects/{id}/edit",
    },
    "BOOK_FIRST_TIME": {
        "priority": 2,
        "title": "Erste Zeit buchen",
        "description": "Arbeitszeit für dieses Projekt erfassen",
        "cta_label": "Zeit erfassen",
        "cta_route": "/projects/{id}?tab=time",
    },
    "ASSIGN_MANAGER": {
        "priority": 3,
        "title": "Projektleiter zuweisen",
        "description": "Einen verantwortlichen Projektleiter festlegen",
        "cta_label": "Team bearbeiten",
        "cta_route": "/projects/{id}/edit",
    },
    "REVIEW_DEADLINE": {
        "priority": 4,
        "title": "Deadline prüfen",
        "description": "Das Enddatum liegt in Kürze - Fortschritt prüfen",
        "cta_label": "Projekt ansehen",
        "cta_route": "/projects/{id}",
    },
    "CREATE_INVOICE": {
        "priority": 5,
        "title": "Rechnung erstellen",
        "description": "Projekt ist abgeschlossen - Rechnung erstellen",
        "cta_label": "Rechnung erstellen",
        "cta_route": "/invoices/new?project={id}",
    },
    "ADD_MATERIAL": {
        "priority": 6,
        "title": "Material erfassen",
        "description": "Verwendete Materialien zum Projekt hinzufügen",
        "cta_label": "Material hinzufügen",
        "cta_route": "/projects/{id}?tab=materials",
    },
}

REASON_TO_ACTION = {
    "MISSING_TARGETS": "SET_TARGETS",
    "NO_TIME_ENTRIES": "BOOK_FIRST_TIME",
    "NO_PROJECT_MANAGER": "ASSIGN_MANAGER",
    "DEADLINE_RISK": "REVIEW_DEADLINE",
    "MISSING_INVOICE": "CREATE_INVOICE",
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _fmt(value: Any) -> str:
    return f"{float(value):g}"


def _reason(code: str, severity: str, detail: str) -> Dict[str, str]:
    return {"code": code, "severity": severity, "title": REASON_TEXTS[code], "detail": detail}


def days_until_deadline(end_date: Optional[str], today: Optional[date] = None) -> Optional[int]:
    if not end_date:
        return None
    end = date.fromisoformat(str(end_date)[:10])
    return (end - (today or date.today())).days


def check_missing_targets(project: Dict[str, Any]) -> Optional[Dict[str, str]]:
    missing = []
    if not project.get("planned_hours"):
        missing.append("geplante Stunden")
    if not project.get("target_revenue"):
        missing.append("Ziel-Umsatz")
    if not project.get("end_date"):
        missing.append("Enddatum")
    if missing:
        return _reason("MISSING_TARGETS", "yellow", f"Fehlend: {', '.join(missing)}")
    return None


def check_no_time_entries(aggregates: Dict[str, Any]) -> Optional[Dict[str, str]]:
    if aggregates["actual_hours"] == 0:
        return _reason(
            "NO_TIME_ENTRIES", "yellow", "Es wurden noch keine Arbeitsstunden erfasst."
        )
    return None


def check_no_project_manager(project: Dict[str, Any]) -> Optional[Dict[str, str]]:
    if not project.get("project_manager_id"):
        return _reason("NO_PROJECT_MANAGER", "yellow", "Bitte einen Projektleiter zuweisen.")
    return None


def check_time_over_planned(
    project: Dict[str, Any], aggregates: Dict[str, Any]
) -> Optional[Dict[str, str]]:
    planned = project.get("planned_hours")
    if not planned or planned <= 0:
        return None
    over = (aggregates["actual_hours"] - planned) / planned
    if over > THRESHOLDS["time_red_pct_over"]:
        severity = "red"
    elif over > THRESHOLDS["time_yellow_pct_over"]:
        severity = "yellow"
    else:
        return None
    detail = (
        f"{aggregates['actual_hours']:.1f}h von {_fmt(planned)}h geplant "
        f"({_round_half_up(over * 100)}% über Plan)"
    )
    return _reason("TIME_OVER_PLANNED", severity, detail)


def check_cost_over_target(
    project: Dict[str, Any], aggregates: Dict[str, Any]
) -> Optional[Dict[str, str]]:
    target = project.get("target_revenue")
    if not target or target <= 0:
        return None
    over = (aggregates["actual_costs"] - target) / target
    if over > THRESHOLDS["cost_red_pct_over"]:
        severity = "red"
    elif over > THRESHOLDS["cost_yellow_pct_over"]:
        severity = "yellow"
    else:
        return None
    detail = (
        f"{aggregates['actual_costs']:.0f}€ Kosten bei {_fmt(target)}€ Ziel-Umsatz "
        f"({_round_half_up(over * 100)}% über Plan)"
    )
    return _reason("COST_OVER_TARGET", severity, detail)


def check_deadline_risk(
    project: Dict[str, Any], today: Optional[date] = None
) -> Optional[Dict[str, str]]:
    days_left = days_until_deadline(project.get("end_date"), today)
    # Überschrittene Deadlines meldet das Dashboard (verzögerte Projekte).
    if days_left is None or days_left < 0:
        return None
    if days_left <= THRESHOLDS["deadline_red_days"]:
        suffix = "e" if days_left != 1 else ""
        return _reason(
            "DEADLINE_RISK", "red", f"Nur noch {days_left} Tag{suffix} bis zum geplanten Ende."
        )
    if days_left <= THRESHOLDS["deadline_yellow_days"]:
        return _reason(
            "DEADLINE_RISK", "yellow", f"Nur noch {days_left} Tage bis zum geplanten Ende."
        )
    return None


def check_missing_invoice(
    project: Dict[str, Any], aggregates: Dict[str, Any]
) -> Optional[Dict[str, str]]:
    if project.get("status") == "abgeschlossen" and not aggregates["has_invoice"]:
        return _reason(
            "MISSING_INVOICE",
            "yellow",
            "Projekt ist abgeschlossen, aber keine Rechnung verknüpft.",
        )
    return None


def determine_next_action(
    project_id: str, aggregates: Dict[str, Any], reasons: List[Dict[str, str]]
) -> Optional[Dict[str, str]]:
    candidates: List[str] = []
    for reason in reasons:
        key = REASON_TO_ACTION.get(reason["code"])
        if key and key not in candidates:
            candidates.append(key)
    if not candidates and aggregates["actual_hours"] == 0:
        candidates.append("BOOK_FIRST_TIME")
    if not candidates and aggregates["actual_costs"] == 0:
        candidates.append("ADD_MATERIAL")
    if not candidates:
        return None

    key = min(candidates, key=lambda k: NEXT_ACTIONS[k]["priority"])
    action = NEXT_ACTIONS[key]
    return {
        "key": key,
        "title": action["title"],
        "description": action["description"],
        "cta_label": action["cta_label"],
        "cta_route": action["cta_route"].replace("{id}", project_id),
    }


def determine_status(reasons: List[Dict[str, str]]) -> str:
    if any(r["severity"] == "red" for r in reasons):
        return "red"
    if any(r["severity"] == "yellow" for r in reasons):
        return "yellow"
    return "green"


def calculate_economy(project: Dict[str, Any], aggregates: Dict[str, Any]) -> Dict[str, Any]:
    target = project.get("target_revenue")
    costs = aggregates["actual_costs"]
    gross_profit = None
    gross_margin_pct = None
    if target is not None and target > 0:
        gross_profit = round(target - costs, 2)
        gross_margin_pct = _round_half_up((target - costs) / target * 100)
    return {
        "target_revenue": target,
        "actual_costs": costs,
        "gross_profit": gross_profit,
        "gross_margin_pct": gross_margin_pct,
    }


def _entry_hours(start: str, end: str, break_minutes: Optional[int]) -> float:
    delta = datetime.fromisoformat(end) - datetime.fromisoformat(start)
    hours = delta.total_seconds() / 3600 - (break_minutes or 0) / 60
    return max(0.0, hours)


def _aggregates(con: sqlite3.Connection, company_id: str, project_id: str) -> Dict[str, Any]:
    rows = con.execute(
        """
        SELECT t.start_time, t.end_time, t.break_minutes, COALESCE(e.hourly_rate, 0) AS rate
        FROM time_entries t
        LEFT JOIN employees e ON e.id = t.employee_id
        WHERE t.company_id=? AND t.project_id=? AND t.end_time IS NOT NULL
        """,
        (company_id, project_id),
    ).fetchall()
    hours = 0.0
    labour = 0.0
    for row in rows:
        entry_hours = _entry_hours(row["start_time"], row["end_time"], row["break_minutes"])
        hours += entry_hours
        labour += entry_hours * float(row["rate"] or 0)

    mat = con.execute(
        "SELECT COALESCE(SUM(total_cost), 0) AS total FROM material_entries WHERE company_id=? AND project_id=?",
        (company_id, project_id),
    ).fetchone()
    material = float(mat["total"] or 0)

    inv = con.execute(
        "SELECT 1 FROM invoices WHERE company_id=? AND project_id=? LIMIT 1",
        (company_id, project_id),
    ).fetchone()
    return {
        "actual_hours": round(hours, 1),
        "material_costs": round(material, 2),
        "labour_costs": round(labour, 2),
        "actual_costs": round(material + labour, 2),
        "has_invoice": inv is not None,
    }


def project_aggregates(db_path: Path, company_id: str, project_id: str) -> Dict[str, Any]:
    con = connect(db_path)
    try:
        return _aggregates(con, company_id, project_id)
    finally:
        con.close()


def calculate_project_health(
    db_path: Path, *, company_id: str, project_id: str, today: Optional[date] = None
) -> Optional[Dict[str, Any]]:
    con = connect(db_path)
    try:
        row = con.execute(
            """
            SELECT id, status, planned_hours, target_revenue, end_date,
              project_manager_id, budget
            FROM projects WHERE id=? AND company_id=?
            """,
            (project_id, company_id),
        ).fetchone()
        if row is None:
            return None
        project = dict(row)
        aggregates = _aggregates(con, company_id, project_id)
    finally:
        con.close()

    checks = [
        check_missing_targets(project),
        check_no_time_entries(aggregates),
        check_no_project_manager(project),
        check_time_over_planned(project, aggregates),
        check_cost_over_target(project, aggregates),
        check_deadline_risk(project, today),
        check_missing_invoice(project, aggregates),
    ]
    reasons = [r for r in checks if r]
    return {
        "project_id": project_id,
        "status": determine_status(reasons),
        "reasons": reasons,
        "next_action": determine_next_action(project_id, aggregates, reasons),
        "economy": calculate_economy(project, aggregates),
        "aggregates": aggregates,
        "computed_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }
