from .reconciliation import (
    calculate_coverage,
    detect_gaps,
    get_summary,
    get_week_reconciliation,
    is_week_ready_for_submission,
    suggest_cost_centers,
    suggest_gap_filling,
)
from .rules import TimeRules, get_rules, save_rules, validate_time_entry
from .store import (
    auto_stop_forgotten_entries,
    clock_in,
    clock_out,
    time_entry_create,
    time_entry_start,
    time_entry_stop,
)

__all__ = [
    "TimeRules",
    "get_rules",
    "save_rules",
    "validate_time_entry",
    "clock_in",
    "clock_out",
    "time_entry_create",
    "time_entry_start",
    "time_entry_stop",
    "auto_stop_forgotten_entries",
    "calculate_coverage",
    "detect_gaps",
    "get_week_reconciliation",
    "suggest_cost_centers",
    "suggest_gap_filling",
    "is_week_ready_for_submission",
    "get_summary",
]
