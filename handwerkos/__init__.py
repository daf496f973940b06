from __future__ import annotations

import logging as py_logging
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, g, request

from .config import Config, validate_config
from .db import ensure_schema
from .errors import handle_error
from .logging import init_request_logging

__version__ = "0.3.0"

logger = py_logging.getLogger("handwerkos")


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    app.secret_key = app.config["SECRET_KEY"]
    app.config["CORE_DB"] = Path(app.config["CORE_DB"])

    init_request_logging(app)
    if not validate_config(app.config):
        raise RuntimeError("Ungültige Konfiguration, siehe Log.")

    ensure_schema(app.config["CORE_DB"])

    from . import api

    app.register_blueprint(api.bp)
    app.register_error_handler(Exception, handle_error)

    @app.before_request
    def _resolve_company():
        company = (request.headers.get("X-Company-Id") or "").strip()
        g.company_id = company or str(app.config["COMPANY_DEFAULT"])

    logger.info(f"HandwerkOS {__version__} bereit, DB: {app.config['CORE_DB']}")
    return app
