from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import Config
from ..db import fetch_all
from ..projects.health import project_aggregates
from ..statuses import ACTIVE_PROJECT_STATUSES

logger = logging.getLogger("handwerkos.workflow")


def check_budget_warnings(
    db_path: Path, *, company_id: str, threshold_percent: Optional[float] = None
) -> List[Dict[str, Any]]:
    threshold = Config.BUDGET_WARNING_PERCENT if threshold_percent is None else threshold_percent
    rows = fetch_all(
        db_path,
        f"""
        SELECT id, name, budget FROM projects
        WHERE company_id=? AND budget > 0
          AND status IN ({",".join("?" for _ in ACTIVE_PROJECT_STATUSES)})
        ORDER BY name
        """,
        (company_id, *ACTIVE_PROJECT_STATUSES),
    )

    warnings = []
    for row in rows:
        budget = float(row["budget"])
        used = project_aggregates(db_path, company_id, row["id"])["actual_costs"]
        usage = round(used / budget * 100, 1)
        if usage >= threshold:
            warnings.append(
                {
                    "project_id": row["id"],
                    "project_name": row["name"],
                    "budget": budget,
                    "used_budget": used,
                    "usage_percentage": usage,
                    "type": "budget_warning",
                }
            )
    if warnings:
        logger.info(f"{len(warnings)} budget warnings for company {company_id}")
    return warnings


def get_pending_quotes(db_path: Path, *, company_id: str) -> List[Dict[str, Any]]:
    return fetch_all(
        db_path,
        """
        SELECT q.*, c.company_name AS customer_name
        FROM quotes q LEFT JOIN customers c ON c.id = q.customer_id
        WHERE q.company_id=? AND q.status='sent'
        ORDER BY q.created_at DESC, q.quote_number DESC
        """,
        (company_id,),
    )


def get_delayed_projects(
    db_path: Path, *, company_id: str, today: Optional[date] = None
) -> List[Dict[str, Any]]:
    day = (today or date.today()).isoformat()
    rows = fetch_all(
        db_path,
        f"""
        SELECT * FROM projects
        WHERE company_id=? AND end_date IS NOT NULL AND end_date < ?
          AND status IN ({",".join("?" for _ in ACTIVE_PROJECT_STATUSES)})
        ORDER BY end_date
        """,
        (company_id, day, *ACTIVE_PROJECT_STATUSES),
    )
    return [{**row, "type": "delayed_project"} for row in rows]


def get_overdue_invoices(
    db_path: Path, *, company_id: str, today: Optional[date] = None
) -> List[Dict[str, Any]]:
    day = (today or date.today()).isoformat()
    return fetch_all(
        db_path,
        """
        SELECT i.*, c.company_name AS customer_name
        FROM invoices i LEFT JOIN customers c ON c.id = i.customer_id
        WHERE i.company_id=? AND i.status IN ('sent', 'overdue')
          AND i.due_date IS NOT NULL AND i.due_date < ?
        ORDER BY i.due_date
        """,
        (company_id, day),
    )


def get_dashboard_critical_data(
    db_path: Path,
    *,
    company_id: str,
    threshold_percent: Optional[float] = None,
    today: Optional[date] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    budget_warnings = check_budget_warnings(
        db_path, company_id=company_id, threshold_percent=threshold_percent
    )
    delayed = get_delayed_projects(db_path, company_id=company_id, today=today)
    return {
        "overdue_tasks": [*budget_warnings, *delayed],
        "budget_warnings": budget_warnings,
        "pending_quotes": get_pending_quotes(db_path, company_id=company_id),
        "delayed_projects": delayed,
        "overdue_invoices": get_overdue_invoices(db_path, company_id=company_id, today=today),
    }
