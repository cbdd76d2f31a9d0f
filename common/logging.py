from __future__ import annotations

import contextvars
import json
import logging
import time
import uuid
from datetime import datetime, timezone

_current_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

REQUEST_FIELDS = (
    "request_id",
    "path",
    "method",
    "status_code",
    "duration_ms",
    "remote_addr",
    "user_id",
)

# Fields the ledger, payment and movement services pass through ``extra=``.
LEDGER_FIELDS = (
    "branch_id",
    "due_type",
    "due_id",
    "payment_id",
    "stock_movement_id",
    "movement_type",
    "amount",
    "status",
)


def current_request_id() -> str | None:
    return _current_request_id.get()


class RequestIdFilter(logging.Filter):
    """Stamps records emitted while a request is being served with its id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _current_request_id.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line with request and ledger context."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in REQUEST_FIELDS + LEDGER_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class RequestLogMiddleware:
    """Assigns the request id, exposes it to service loggers and logs the access line."""

    def __init__(self, get_response):
        self.get_response = get_response
        self.logger = logging.getLogger("api.request")

    def __call__(self, request):
        started_at = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.request_id = request_id
        token = _current_request_id.set(request_id)

        try:
            response = self.get_response(request)
        finally:
            _current_request_id.reset(token)

        user = getattr(request, "user", None)
        authenticated = user is not None and getattr(user, "is_authenticated", False)
        level = logging.ERROR if response.status_code >= 500 else logging.INFO
        self.logger.log(
            level,
            "request_completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started_at) * 1000, 2),
                "remote_addr": request.META.get("REMOTE_ADDR"),
                "user_id": str(user.id) if authenticated else None,
                "branch_id": str(user.branch_id) if authenticated and getattr(user, "branch_id", None) else None,
            },
        )
        response["X-Request-ID"] = request_id
        return response
