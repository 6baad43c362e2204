"""Telemetry package for observability.

This package contains:
- Structured logging with request and business correlation
"""

from __future__ import annotations

from dsr_engine.telemetry.logging import (
    RequestIdMiddleware,
    bind_actor_context,
    bind_business_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_actor_context",
    "bind_business_context",
    "clear_context",
    "configure_logging",
]
