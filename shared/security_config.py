import html
import re
from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from shared.utils import settings


# --- Rate Limiting ---
def shopper_key(request: Request) -> str:
    """Signed-in customers share one budget across devices; guests are limited per address."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"customer:{user_id}"
    return get_remote_address(request)

limiter = Limiter(key_func=shopper_key, enabled=settings.RATE_LIMIT_ENABLED)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# --- Response headers ---
# JSON only: nothing here should ever be framed, sniffed or cached by a proxy,
# since carts and prices differ per customer.
API_RESPONSE_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in API_RESPONSE_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


# --- Input Sanitization ---
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_CACHE_PATTERN_RE = re.compile(r"^[A-Za-z0-9_:\-\.\*\?\[\]@]{1,200}$")

def sanitize_input(text):
    """Strip, drop control characters and HTML-escape free text shown back to buyers."""
    if not isinstance(text, str):
        return text
    return html.escape(_CONTROL_CHARS_RE.sub("", text.strip()))

def validate_cache_pattern(pattern: str) -> bool:
    """
    Admin clears take a Redis MATCH glob. Tag sets are off limits: dropping
    one would leave its keys alive past the next price change.
    """
    if not pattern or not _CACHE_PATTERN_RE.match(pattern):
        return False
    return not pattern.startswith("tag:")
