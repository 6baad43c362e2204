"""Health check endpoints.

/health/live   - Liveness probe: is the process up?
/health/ready  - Readiness probe: can we serve traffic? (DB reachable,
                 audit ledger not backed up)

These are public endpoints - no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Request

from dsr_engine.database import ping_database

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(request: Request) -> dict:
    """Readiness probe - store connectivity plus the unflushed audit backlog."""
    registry = request.app.state.registry
    db_status = "in_memory" if registry.settings.use_in_memory_store else await ping_database()
    pending_audit_events = registry.ledger.pending_count()
    is_ready = db_status in ("ok", "in_memory")
    return {
        "status": "ready" if is_ready else "not_ready",
        "database": db_status,
        "pending_audit_events": pending_audit_events,
        "timestamp": datetime.now(UTC).isoformat(),
    }
