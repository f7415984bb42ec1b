"""Rate limiting using slowapi."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from entitlement_engine.config import settings


def get_client_identifier(request: Request) -> str:
    """Rate limit per subscriber when authenticated, per client IP otherwise."""
    subscriber_id = getattr(request.state, "subscriber_id", None)
    if subscriber_id:
        return f"subscriber:{subscriber_id}"
    return f"ip:{get_remote_address(request)}"


def _storage_uri() -> str:
    # Shared counters across instances need Redis; local runs count in memory
    if settings.ENVIRONMENT in ("development", "test") or not settings.REDIS_URL:
        return "memory://"
    return settings.REDIS_URL


limiter = Limiter(
    key_func=get_client_identifier,
    storage_uri=_storage_uri(),
    strategy="fixed-window",
    enabled=settings.RATE_LIMIT_ENABLED,
)

RATE_LIMIT_DOWNLOADS = settings.RATE_LIMIT_DOWNLOADS
RATE_LIMIT_STANDARD = settings.RATE_LIMIT_STANDARD
