"""
Zentrales Error-Handling für HandwerkOS.
Kontrollierte Fehler tragen Code, Request-ID und Zeitstempel; alles andere wird
als unknown_error beantwortet und mit Traceback geloggt.
"""
import logging
import uuid
from datetime import datetime, timezone

from flask import jsonify, render_template_string, request

logger = logging.getLogger("handwerkos.errors")


class HandwerkError(Exception):
    """Base-Exception für alle kontrollierten HandwerkOS-Fehler."""

    status_code = 500

    def __init__(self, message: str, error_code: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.request_id = str(uuid.uuid4())
        self.timestamp = datetime.now(timezone.utc).isoformat()


class ValidationError(HandwerkError):
    status_code = 400

    def __init__(self, message: str, field: str = None, details: dict = None):
        payload = {"field": field}
        payload.update(details or {})
        super().__init__(message, "validation_error", payload)


class ResourceNotFoundError(HandwerkError):
    status_code = 404

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} nicht gefunden.",
            "not_found",
            {"type": resource_type, "id": resource_id},
        )


class InvalidTransitionError(HandwerkError):
    status_code = 409

    def __init__(self, entity: str, from_status: str, to_status: str):
        super().__init__(
            f"Statuswechsel {from_status} -> {to_status} ist für {entity} nicht erlaubt.",
            "invalid_transition",
            {"entity": entity, "from": from_status, "to": to_status},
        )


class ConflictError(HandwerkError):
    status_code = 409

    def __init__(self, message: str, details: dict = None):
        super().__init__(message, "conflict", details)


class IntegrationError(HandwerkError):
    status_code = 502

    def __init__(self, message: str, service: str, details: dict = None):
        payload = {"service": service}
        payload.update(details or {})
        super().__init__(message, "integration_error", payload)


def handle_error(error: Exception):
    """Zentraler Flask Error Handler mit Content-Negotiation."""
    from werkzeug.exceptions import HTTPException

    details: dict = {}
    if isinstance(error, HandwerkError):
        rid = error.request_id
        code = error.error_code
        msg = error.message
        status = error.status_code
        details = error.details
        logger.warning(f"{code}: {msg}")
    elif isinstance(error, HTTPException):
        rid = str(uuid.uuid4())
        code = {400: "validation_error", 403: "forbidden", 404: "not_found"}.get(
            error.code or 500, "http_error"
        )
        msg = str(error.description or error.name)
        status = error.code or 500
    else:
        rid = str(uuid.uuid4())
        code = "unknown_error"
        msg = "Unerwarteter Systemfehler."
        status = 500
        logger.exception(f"Unhandled exception [{rid[:8]}]: {error}")

    if request.path.startswith("/api/") or request.accept_mimetypes.best == "application/json":
        return jsonify(
            {
                "error": {
                    "code": code,
                    "message": msg,
                    "details": details,
                    "request_id": rid,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            }
        ), status
    return render_template_string(
        HTML_ERROR_PAGE, error_code=code, message=msg, request_id=rid, status=status
    ), status



HTML_ERROR_PAGE = """
<!DOCTYPE html>
<html lang="de">
<body>
    <div style="max-width:600px; margin:80px auto; font-family:sans-serif;">
        <h1>Fehler {{ status }}</h1>
        <p>{{ message }}</p>
        <p>Fehlercode: <code>{{ error_code }}</code></p>
        <small>Request-ID: {{ request_id }}</small>
    </div>
</body>
</html>
"""
