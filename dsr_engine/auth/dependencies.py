"""FastAPI dependencies for authentication and authorization.

Key dependencies:
- get_current_operator: Validate the Bearer token -> Operator
- require_business_access: Assert the token's business matches the path
- require_role: Assert the operator has one of the allowed roles
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import structlog
from fastapi import Depends, HTTPException, Request, status

from dsr_engine.auth.oidc import TokenValidationError, validate_token
from dsr_engine.config import Settings, get_settings
from dsr_engine.telemetry.logging import bind_actor_context, bind_business_context

log = structlog.get_logger(__name__)


class OperatorRole(StrEnum):
    BUSINESS_ADMIN = "business_admin"
    DPO = "dpo"


class Operator:
    """Lightweight container passed to route handlers."""

    def __init__(self, claims: dict[str, Any]) -> None:
        self.claims = claims

    @property
    def subject(self) -> str:
        return str(self.claims["sub"])

    @property
    def business_id(self) -> uuid.UUID:
        return uuid.UUID(str(self.claims["business_id"]))

    @property
    def role(self) -> str:
        return str(self.claims["role"])


def _settings(request: Request) -> Settings:
    # The app may be built with explicit settings (tests); fall back to the env.
    return getattr(request.app.state, "settings", None) or get_settings()


async def get_current_operator(request: Request) -> Operator:
    """Extract the Bearer token and validate it. Raises HTTP 401 on failure."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header.removeprefix("Bearer ").strip()
    try:
        claims = await validate_token(token, _settings(request))
    except TokenValidationError as exc:
        log.info("auth.token_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    operator = Operator(claims)
    bind_actor_context(operator.subject)
    return operator


async def require_business_access(
    business_id: uuid.UUID,
    operator: Operator = Depends(get_current_operator),
) -> Operator:
    """The token must have been issued for the business named in the path."""
    if operator.business_id != business_id:
        log.warning(
            "auth.business_mismatch",
            token_business_id=str(operator.business_id),
            path_business_id=str(business_id),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not grant access to this business",
        )
    bind_business_context(business_id)
    return operator


def require_role(*allowed_roles: OperatorRole) -> Callable[..., Any]:
    """Dependency factory asserting the operator has one of the allowed roles.

    Usage:
        @router.post("/business/{business_id}/secure-deletion/{id}/approve")
        async def approve(operator: Operator = Depends(require_role(OperatorRole.DPO))):
            ...
    """

    async def _check_role(operator: Operator = Depends(require_business_access)) -> Operator:
        if operator.role not in {str(r) for r in allowed_roles}:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this action",
            )
        return operator

    return _check_role
