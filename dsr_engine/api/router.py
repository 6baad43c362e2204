"""Main API router - aggregates all sub-routers.

All routes are versioned under /api/v1 except health checks.
"""

from __future__ import annotations

from fastapi import APIRouter

from dsr_engine.api import compliance, dsr, dsr_admin, health

# Public router (no auth required)
public_router = APIRouter()
public_router.include_router(health.router)

# Versioned API router. Data-subject routes are public; business routes
# authenticate per route through require_business_access.
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(dsr.router)
api_v1_router.include_router(dsr_admin.router)
api_v1_router.include_router(compliance.router)
