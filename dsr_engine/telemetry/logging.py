"""Structured logging configuration.

Configures structlog with JSON output in production and console rendering
in development, plus request tracking for the API.

Features:
- JSON-formatted logs in production (human-readable in dev)
- Request ID propagation through middleware (honours an inbound
  ``X-Request-ID`` header)
- Business ID and actor in all log entries of a request
- ISO8601 timestamps with timezone

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "event": "workflow.transition_applied",
        "request_id": "req_789...",
        "business_id": "business_uuid",
        "actor": "dpo@example.com",
        "logger": "dsr_engine.compliance.workflow"
    }

Subject contact data (emails, phone numbers, names) is never passed to the
logger; services log ids and masked contacts only.
"""

from __future__ import annotations

import logging
import re
import sys
import uuid
from typing import Any

import structlog
from structlog.types import Processor

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{8,64}$")


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Request ID Middleware
# ------------------------------------------------------------------ #


class RequestIdMiddleware:
    """Middleware that generates and propagates request IDs.

    Adds a request_id to each request's context variables, which are then
    included in all log entries for that request. A well-formed inbound
    ``X-Request-ID`` is reused; otherwise a new id is generated.

    The request_id is also added as a response header for correlation.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _inbound_request_id(scope) or f"req_{uuid.uuid4().hex[:16]}"

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_with_request_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_request_id)


def _inbound_request_id(scope: dict[str, Any]) -> str | None:
    for name, value in scope.get("headers", []):
        if name == b"x-request-id":
            candidate = value.decode("latin-1")
            return candidate if _REQUEST_ID_RE.match(candidate) else None
    return None


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_business_context(business_id: str | uuid.UUID) -> None:
    """Bind the business the current request acts for."""
    structlog.contextvars.bind_contextvars(business_id=str(business_id))


def bind_actor_context(actor: str) -> None:
    structlog.contextvars.bind_contextvars(actor=actor)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
