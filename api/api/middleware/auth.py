"""Authentication middleware that extracts and validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
it via :class:`TokenManager`, and populates ``request.state`` with
``agency_id``, ``sub`` (user identity), ``email`` and ``role``.

When the token omits a role claim, the least-privileged ``"agent"`` role
is applied.  Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication;
the Stripe webhook authenticates with its own signature instead.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": detail, "code": "unauthenticated"})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public (health, docs, webhook) and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``agency_id``, ``sub``, ``email`` and ``role`` on ``request.state``.
    5. Returns a 401 JSON response on failure.
    """

    def __init__(self, app: Any, token_manager: TokenManager | None = None) -> None:
        super().__init__(app)
        if token_manager is None:
            from api.dependencies import get_settings

            settings = get_settings()
            token_manager = TokenManager(settings.jwt_secret, settings.token_ttl_seconds)
        self._token_manager = token_manager
        logger.info("AuthenticationMiddleware initialised")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if _is_public_path(path) or request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return _unauthorized("Missing Authorization header")

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return _unauthorized("Authorization header must use Bearer scheme")

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            logger.info("Rejected bearer token on %s: %s", path, exc)
            if "expired" in str(exc).lower():
                return _unauthorized("Token has expired")
            return _unauthorized("Invalid token")

        request.state.sub = claims.sub
        request.state.email = claims.email
        request.state.agency_id = claims.agency_id
        request.state.role = claims.role or "agent"

        return await call_next(request)
