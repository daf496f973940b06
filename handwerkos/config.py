from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

from platformdirs import user_data_dir

logger = logging.getLogger("handwerkos.config")

REQUIRED_KEYS = [
    "USER_DATA_ROOT",
    "CORE_DB",
    "SECRET_KEY",
]


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


class Config:
    BASE_DIR = Path(__file__).resolve().parent.parent
    PORT = int(_env("PORT", "5061"))
    SECRET_KEY = _env("HANDWERKOS_SECRET", "handwerkos-dev-secret-change-me")

    USER_DATA_ROOT = Path(
        _env(
            "HANDWERKOS_USER_DATA_ROOT",
            user_data_dir("HandwerkOS", appauthor=False),
        )
    )
    USER_DATA_ROOT.mkdir(parents=True, exist_ok=True)

    LOG_DIR = USER_DATA_ROOT / "logs"
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    CORE_DB = Path(_env("HANDWERKOS_CORE_DB", str(USER_DATA_ROOT / "core.sqlite3")))

    COMPANY_DEFAULT = _env("HANDWERKOS_COMPANY_DEFAULT", "default")
    COMPANY_NAME = _env("HANDWERKOS_COMPANY_NAME", "HandwerkOS")

    # Workflow
    INVOICE_DUE_DAYS = int(_env("HANDWERKOS_INVOICE_DUE_DAYS", "14"))
    BUDGET_WARNING_PERCENT = int(_env("HANDWERKOS_BUDGET_WARNING_PERCENT", "90"))

    # Zeiterfassung: laufende Timer nach X Stunden automatisch stoppen
    AUTO_STOP_HOURS = int(_env("HANDWERKOS_AUTO_STOP_HOURS", "12"))

    # Gmail Integration
    GOOGLE_CLIENT_ID = _env("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET = _env("GOOGLE_CLIENT_SECRET", "")
    PUBLIC_BASE_URL = _env("HANDWERKOS_PUBLIC_BASE_URL", "http://127.0.0.1:5061")
    EMAIL_ENCRYPTION_KEY = _env("EMAIL_ENCRYPTION_KEY", "")


def validate_config(config: Dict[str, Any]) -> bool:
    """Validates the application configuration mapping."""
    is_valid = True

    for key in REQUIRED_KEYS:
        if key not in config or not config[key]:
            logger.critical(f"Config validation failed: Missing required key '{key}'")
            is_valid = False

    data_root = config.get("USER_DATA_ROOT")
    if data_root:
        path = Path(data_root)
        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.critical(
                    f"Config validation failed: Cannot create USER_DATA_ROOT at {path}. Error: {e}"
                )
                is_valid = False

    if is_valid:
        logger.info("Config validation passed.")
    return is_valid
