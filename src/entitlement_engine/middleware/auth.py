"""Bearer token validation.

The identity provider issues the JWT; this service only verifies it and
takes the subscriber id from the `sub` claim.
"""

from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = structlog.get_logger()

# (path, is_prefix)
PUBLIC_PATHS: list[tuple[str, bool]] = [
    ("/health", False),
    ("/api/v1/webhooks", True),  # Stripe webhooks authenticate by signature
    ("/docs", True),
    ("/openapi.json", False),
]


def _is_public_path(request_path: str) -> bool:
    for path, is_prefix in PUBLIC_PATHS:
        if request_path == path:
            return True
        if is_prefix and request_path.startswith(path + "/"):
            return True
    return False


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


class AuthMiddleware(BaseHTTPMiddleware):
    """Sets request.state.subscriber_id from a verified bearer token."""

    def __init__(self, app: ASGIApp, secret_key: str, algorithm: str = "HS256") -> None:
        super().__init__(app)
        self._secret_key = secret_key
        self._algorithm = algorithm

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        token = _bearer_token(request)
        if not token:
            return JSONResponse(status_code=401, content={"detail": "Authentication required"})

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as e:
            logger.warning("JWT validation failed", error=str(e))
            return JSONResponse(status_code=401, content={"detail": "Invalid or expired token"})

        subscriber_id = payload.get("sub")
        if not subscriber_id:
            logger.warning("JWT payload missing subject")
            return JSONResponse(
                status_code=401, content={"detail": "Invalid token - missing subject"}
            )

        request.state.subscriber_id = str(subscriber_id)
        request.state.email = payload.get("email")
        return await call_next(request)
