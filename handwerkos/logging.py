from __future__ import annotations

import uuid

from flask import g, request

from .logging_utils import setup_secure_logging


def init_request_logging(app) -> None:
    setup_secure_logging()

    @app.before_request
    def _assign_request_id():
        rid = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        g.request_id = rid

    @app.after_request
    def _attach_request_id(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-Id"] = rid
        return response
