"""Shared helpers for the route modules.

- get_registry: the ServiceRegistry built in the app lifespan
- respond: turn a ``Result`` into a JSON response
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from dsr_engine.core.errors import ErrorKind, Result, ServiceError
from dsr_engine.services.registry import ServiceRegistry

T = TypeVar("T")


def get_registry(request: Request) -> ServiceRegistry:
    return request.app.state.registry  # type: ignore[no-any-return]


def error_response(error: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=error.http_status, content=jsonable_encoder(error.to_dict()))


def respond(
    result: Result[T],
    render: Callable[[T], Any] | None = None,
    *,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    """Render a successful value (``to_dict`` by default) or the structured error."""
    if not result.success:
        return error_response(result.error)  # type: ignore[arg-type]
    value = result.unwrap()
    if render is not None:
        body = render(value)
    elif hasattr(value, "to_dict"):
        body = value.to_dict()
    else:
        body = value
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def not_found(message: str) -> JSONResponse:
    return error_response(ServiceError(kind=ErrorKind.NOT_FOUND, message=message))
