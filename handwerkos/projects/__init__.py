from .health import calculate_project_health, project_aggregates

__all__ = ["calculate_project_health", "project_aggregates"]
