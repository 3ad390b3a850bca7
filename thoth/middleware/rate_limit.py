"""Rate limiting middleware using slowapi."""
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.requests import Request

from thoth.config import settings


def portal_or_remote_address(request: Request) -> str:
    """Limit per portal when the caller names one, otherwise per IP."""
    for key in ("integration_id", "member_id", "domain"):
        value = request.query_params.get(key)
        if value:
            return f"{key}:{value}"
    return get_remote_address(request)


def is_placement_callback(request: Request) -> bool:
    """True once the route has parsed a body carrying ``PLACEMENT``."""
    payload = getattr(request.state, "payload", None) or {}
    return bool(payload.get("PLACEMENT"))


limiter = Limiter(
    key_func=portal_or_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=None,  # In-memory storage
)


def setup_rate_limiting(app):
    """Configure rate limiting for the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
