"""
Erlaubte Statuswechsel für Angebote, Aufträge, Projekte und Rechnungen.
Gleicher Status ist immer erlaubt; unbekannte Status nie.
"""
from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import InvalidTransitionError, ValidationError

QUOTE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "draft": frozenset({"sent", "cancelled"}),
    "sent": frozenset({"accepted", "rejected", "expired", "cancelled"}),
    "accepted": frozenset(),
    "rejected": frozenset(),
    "expired": frozenset(),
    "cancelled": frozenset(),
}

ORDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    # Altbestand: "open" stammt aus importierten Daten.
    "open": frozenset({"created", "confirmed", "cancelled"}),
    "created": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "completed": frozenset({"invoiced"}),
    "invoiced": frozenset(),
    "cancelled": frozenset(),
}

PROJECT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "anfrage": frozenset({"besichtigung", "geplant"}),
    "besichtigung": frozenset({"geplant"}),
    "geplant": frozenset({"in_bearbeitung"}),
    "in_bearbeitung": frozenset({"abgeschlossen"}),
    "abgeschlossen": frozenset(),
}

INVOICE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "draft": frozenset({"sent", "cancelled"}),
    "sent": frozenset({"paid", "overdue", "void"}),
    "overdue": frozenset({"paid", "void"}),
    "paid": frozenset(),
    "void": frozenset(),
    "cancelled": frozenset(),
}

TRANSITIONS: Dict[str, Dict[str, FrozenSet[str]]] = {
    "quote": QUOTE_TRANSITIONS,
    "order": ORDER_TRANSITIONS,
    "project": PROJECT_TRANSITIONS,
    "invoice": INVOICE_TRANSITIONS,
}

KIND_TABLES = {
    "quote": "quotes",
    "order": "orders",
    "project": "projects",
    "invoice": "invoices",
}

ACTIVE_PROJECT_STATUSES = ("geplant", "in_bearbeitung")


def _table_for(kind: str) -> Dict[str, FrozenSet[str]]:
    table = TRANSITIONS.get(kind)
    if table is None:
        raise ValidationError(f"Unbekannter Datensatztyp: {kind}", field="kind")
    return table


def can_transition(kind: str, current: str, new: str) -> bool:
    table = _table_for(kind)
    if current not in table or new not in table:
        return False
    if current == new:
        return True
    return new in table[current]


def assert_transition(kind: str, current: str, new: str) -> None:
    if not can_transition(kind, current, new):
        raise InvalidTransitionError(kind, current, new)


def allowed_next(kind: str, current: str) -> list[str]:
    return sorted(_table_for(kind).get(current, frozenset()))
