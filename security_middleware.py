"""
HTTP hardening for the DonorMatch API: rate limiting, response security
headers, payload screening and the optional admin allowlist.
"""

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable, Iterable
import ipaddress
import json
import logging
import re

from config import Config

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, enabled=Config.RATE_LIMIT_ENABLED)

# The API only serves JSON and certificate files, never pages
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none';",
}

# Endpoints that accept multipart certificate uploads
UPLOAD_PATHS = ("/api/institutions", "/api/investors", "/api/certificates")
JSON_BODY_LIMIT = 256 * 1024


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response


def _too_large(limit: int) -> JSONResponse:
    return JSONResponse(
        status_code=413,
        content={"detail": f"Request payload too large. Maximum size is {limit // 1024}KB."}
    )


# Message bodies and donation notes are stored and returned verbatim as JSON
FREE_TEXT_FIELDS = frozenset({"content", "message"})


def _screened_strings(value):
    """String values of a JSON document, skipping free-text fields."""
    if isinstance(value, dict):
        for child_key, child in value.items():
            if child_key in FREE_TEXT_FIELDS:
                continue
            yield from _screened_strings(child)
    elif isinstance(value, list):
        for child in value:
            yield from _screened_strings(child)
    elif isinstance(value, str):
        yield value


class RequestValidationMiddleware(BaseHTTPMiddleware):
    """
    Size limits per kind of body, and script-injection screening for JSON.

    Certificate uploads may use the full upload limit; JSON bodies (chat
    messages, profile edits, donations) are held to a much smaller one.
    Structured fields such as names and addresses are screened; chat
    messages and donation notes are free text and pass untouched. Queries
    are parameterized by the ORM, so nothing is screened for SQL keywords.
    """

    SCRIPT_PATTERNS = [
        r"<script[^>]*>.*?</script>",
        r"javascript:",
        r"\bon\w+\s*=",
        r"<(iframe|object|embed)[^>]*>",
    ]

    def __init__(self, app, max_size: int = Config.MAX_REQUEST_SIZE, json_limit: int = JSON_BODY_LIMIT):
        super().__init__(app)
        self.max_size = max_size
        self.json_limit = min(json_limit, max_size)
        self.script_re = re.compile("|".join(self.SCRIPT_PATTERNS), re.IGNORECASE | re.DOTALL)

    def _limit_for(self, request: Request) -> int:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("multipart/form-data") and request.url.path.startswith(UPLOAD_PATHS):
            return self.max_size
        if content_type.startswith("application/json"):
            return self.json_limit
        return self.max_size

    def has_script(self, body: bytes) -> bool:
        try:
            document = json.loads(body)
        except ValueError:
            # Malformed JSON is rejected by request validation downstream
            return False
        return any(self.script_re.search(text) for text in _screened_strings(document))

    async def dispatch(self, request: Request, call_next: Callable):
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return await call_next(request)

        limit = self._limit_for(request)
        content_length = request.headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > limit:
            logger.info(f"Rejected {content_length}-byte body on {request.url.path}")
            return _too_large(limit)

        if request.headers.get("content-type", "").startswith("application/json"):
            if self.has_script(await request.body()):
                logger.warning(f"Blocked script payload on {request.url.path} from {get_remote_address(request)}")
                return JSONResponse(status_code=400, content={"detail": "Invalid input detected"})

        return await call_next(request)


def _parse_networks(entries: Iterable[str]) -> list:
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            # Non-address entries (e.g. a test client's host name) match literally
            networks.append(entry)
    return networks


class IPWhitelistMiddleware(BaseHTTPMiddleware):
    """
    Restrict /api/admin to configured addresses or CIDR ranges
    (ADMIN_IP_WHITELIST, comma separated).
    """

    def __init__(self, app, whitelist: list = None):
        super().__init__(app)
        self.allowed = _parse_networks(whitelist or [])

    def is_allowed(self, client_ip: str) -> bool:
        try:
            address = ipaddress.ip_address(client_ip)
        except ValueError:
            address = None
        for allowed in self.allowed:
            if isinstance(allowed, str):
                if allowed == client_ip:
                    return True
            elif address is not None and address.version == allowed.version and address in allowed:
                return True
        return False

    async def dispatch(self, request: Request, call_next: Callable):
        if self.allowed and request.url.path.startswith("/api/admin"):
            client_ip = get_remote_address(request)
            if not self.is_allowed(client_ip):
                logger.warning(f"Denied admin request from {client_ip}")
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Access denied from this IP address"}
                )

        return await call_next(request)


def setup_rate_limits(app):
    """Attach the shared limiter and its 429 handler to the app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    return limiter
