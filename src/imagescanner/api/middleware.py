"""Middleware: API key authentication, session cookies and domain error mapping."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from imagescanner.errors import ImageScannerError

if TYPE_CHECKING:
    from fastapi import FastAPI

    from imagescanner.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

SESSION_COOKIE = "imagescanner_session"


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="strict")


def _attach_new_session(request: Request, response: Response) -> Response:
    """Carry a session cookie minted during the request onto an error response."""
    token: str | None = getattr(request.state, "session_token", None)
    if token is not None:
        set_session_cookie(response, token)
    return response


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token on /api/v1 routes.

    Without IMAGESCANNER_API_KEY every request passes; with it, requests
    must send 'Authorization: Bearer <key>'.
    """
    settings: Settings = request.app.state.settings
    expected = settings.api_key
    if expected is None:
        return

    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def handle_image_scanner_error(request: Request, exc: ImageScannerError) -> Response:
    """Turn a recoverable domain error into a JSON error body."""
    logger.info("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc.message)
    response = JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
    return _attach_new_session(request, response)


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> Response:
    response = await http_exception_handler(request, exc)
    return _attach_new_session(request, response)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ImageScannerError, handle_image_scanner_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, handle_http_error)  # type: ignore[arg-type]
