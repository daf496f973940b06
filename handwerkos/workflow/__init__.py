from .chain import (
    create_invoice_from_project,
    create_order_from_quote,
    create_project_from_order,
    get_workflow_chain,
)
from .dashboard import (
    check_budget_warnings,
    get_dashboard_critical_data,
    get_delayed_projects,
    get_overdue_invoices,
    get_pending_quotes,
)

__all__ = [
    "create_order_from_quote",
    "create_project_from_order",
    "create_invoice_from_project",
    "get_workflow_chain",
    "check_budget_warnings",
    "get_pending_quotes",
    "get_delayed_projects",
    "get_overdue_invoices",
    "get_dashboard_critical_data",
]
