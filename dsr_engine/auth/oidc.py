"""OIDC discovery and token validation for the business API.

In production mode:
- Fetches JWKS from the OIDC discovery document
- Validates JWT signature against the public key set
- Caches JWKS with a TTL (5 minutes) to avoid hammering the IdP

In dev/test mode (ENVIRONMENT=dev|test):
- Validates JWTs using the symmetric DEV_JWT_SECRET
- Skips JWKS fetch entirely
- Logs a loud warning once

Required JWT claims:
  - sub: string - external id of the operator (business admin or DPO)
  - business_id: string UUID - the business this token grants access to
  - role: string - business_admin | dpo
  - exp: int - expiration timestamp
  - aud: string|list - must include OIDC_AUDIENCE

The public data-subject endpoints are unauthenticated; the subject proves
identity through the verification challenges instead.
"""

from __future__ import annotations

import time
import uuid
from datetime import UTC, datetime
from typing import Any

import httpx
import jwt
import structlog
from jwt.exceptions import DecodeError, InvalidTokenError

from dsr_engine.config import Settings

log = structlog.get_logger(__name__)

# JWKS cache: dict of kid -> key material, plus a fetch timestamp
_jwks_cache: dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL_SECONDS = 300

REQUIRED_CLAIMS = ("sub", "business_id", "role")
OPERATOR_ROLES = frozenset({"business_admin", "dpo"})


class TokenValidationError(Exception):
    """Raised when a JWT cannot be validated."""


async def _fetch_jwks(issuer_url: str, timeout: float) -> dict[str, Any]:
    discovery_url = f"{issuer_url.rstrip('/')}/.well-known/openid-configuration"
    async with httpx.AsyncClient(timeout=timeout) as client:
        discovery = await client.get(discovery_url)
        discovery.raise_for_status()
        jwks_uri = discovery.json()["jwks_uri"]

        jwks_response = await client.get(jwks_uri)
        jwks_response.raise_for_status()
        return jwks_response.json()  # type: ignore[no-any-return]


async def _get_jwks(settings: Settings) -> dict[str, Any]:
    """Return cached JWKS or fetch a fresh copy."""
    global _jwks_cache, _jwks_fetched_at
    now = time.monotonic()
    if not _jwks_cache or (now - _jwks_fetched_at) > _JWKS_TTL_SECONDS:
        try:
            raw = await _fetch_jwks(settings.oidc_issuer_url, settings.external_call_timeout_seconds)
        except httpx.HTTPError as exc:
            raise TokenValidationError(f"Cannot fetch JWKS: {exc}") from exc
        _jwks_cache = {key["kid"]: key for key in raw.get("keys", []) if "kid" in key}
        _jwks_fetched_at = now
        log.info("oidc.jwks_refreshed", key_count=len(_jwks_cache))
    return _jwks_cache


async def validate_token(token: str, settings: Settings) -> dict[str, Any]:
    """Validate a JWT and return its claims.

    Raises TokenValidationError if the token is invalid, expired, or
    has incorrect audience/issuer.
    """
    if settings.is_dev:
        return _validate_dev_token(token, settings)

    try:
        header = jwt.get_unverified_header(token)
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Cannot decode token header: {exc}") from exc

    jwks = await _get_jwks(settings)
    kid = header.get("kid")
    if kid and kid in jwks:
        key_data = jwks[kid]
    elif len(jwks) == 1:
        key_data = next(iter(jwks.values()))
    else:
        raise TokenValidationError("No matching JWKS key")

    try:
        signing_key = jwt.PyJWK(key_data)
        claims: dict[str, Any] = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience=settings.oidc_audience,
            issuer=settings.oidc_issuer_url,
            options={"verify_exp": True, "verify_iat": True},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Token validation failed: {exc}") from exc

    _assert_operator_claims(claims)
    return claims


_dev_mode_warned = False


def _validate_dev_token(token: str, settings: Settings) -> dict[str, Any]:
    """Validate JWT using symmetric secret (dev only)."""
    global _dev_mode_warned
    if not _dev_mode_warned:
        log.warning(
            "oidc.dev_mode_validation",
            message="Using symmetric JWT secret - NOT for production",
        )
        _dev_mode_warned = True
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.dev_jwt_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.oidc_audience,
            options={"verify_exp": True, "verify_aud": True},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Dev token validation failed: {exc}") from exc

    _assert_operator_claims(claims)
    return claims


def _assert_operator_claims(claims: dict[str, Any]) -> None:
    missing = [c for c in REQUIRED_CLAIMS if not claims.get(c)]
    if missing:
        raise TokenValidationError(f"Missing required JWT claims: {missing}")
    if claims["role"] not in OPERATOR_ROLES:
        raise TokenValidationError(f"Unknown operator role: {claims['role']!r}")
    try:
        uuid.UUID(str(claims["business_id"]))
    except ValueError as exc:
        raise TokenValidationError("business_id claim is not a UUID") from exc


def create_dev_token(
    *,
    sub: str,
    business_id: str,
    secret: str,
    audience: str,
    role: str = "business_admin",
    expires_in: int = 3600,
) -> str:
    """Create a dev JWT for testing purposes.

    Never call this in production code.
    """
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": sub,
        "business_id": business_id,
        "role": role,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")
