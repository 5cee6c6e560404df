from __future__ import annotations

import hmac
import secrets
import time
from typing import Any, Mapping, Optional, Tuple, Union

from starlette.requests import Request
from starlette.responses import Response

from farmgate.config import Settings
from farmgate.logging import get_logger
from farmgate.service.audit import AuditService
from farmgate.storage.cache import Cache
from farmgate.storage.memory import MemoryStore
from farmgate.storage.models import SYSTEM_ACTOR

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60

SUSPICIOUS_PATTERNS = (
    "script",
    "select",
    "union",
    "drop",
    "delete",
    "insert",
    "../",
    "..\\",
    "<script>",
    "javascript:",
    "vbscript:",
    "onload=",
    "onerror=",
    "eval(",
    "alert(",
)

BLOCKED_USER_AGENTS = (
    "sqlmap",
    "nikto",
    "burp",
    "nessus",
    "openvas",
    "wget",
    "curl",
    "python-requests",
    "bot",
    "crawler",
)

REQUIRED_HEADERS = ("user-agent", "accept")

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; img-src 'self' data:; font-src 'self'; "
        "connect-src 'self'; frame-ancestors 'none';"
    ),
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


async def check_rate_limit(
    cache: Cache,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Fixed-window counter check against the shared cache.

    Args:
        cache: Cache holding the counters
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = RATE_LIMIT_WINDOW_SECONDS
    count = await cache.increment(key, window_seconds)
    allowed = count <= limit
    if not return_remaining:
        return allowed
    reset_seconds = await cache.ttl(key) or window_seconds
    return (allowed, max(0, limit - count), reset_seconds)


class SecurityService:
    """Per-request security checks shared by the gateway middleware and auth flows."""

    def __init__(
        self,
        settings: Settings,
        cache: Cache,
        store: MemoryStore,
        audit: AuditService,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.store = store
        self.audit = audit

    @staticmethod
    def client_ip(request: Request) -> str:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
        if request.client and request.client.host:
            return request.client.host
        return "unknown"

    def validate_transport(self, request: Request) -> bool:
        if self.settings.allow_http_dev:
            return True
        scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
        return scheme.split(",")[0].strip().lower() == "https"

    def validate_headers(self, request: Request) -> bool:
        for header in REQUIRED_HEADERS:
            if header not in request.headers:
                return False
        user_agent = request.headers.get("user-agent", "").strip().lower()
        if not user_agent:
            return False
        return not any(agent in user_agent for agent in BLOCKED_USER_AGENTS)

    async def check_rate_limit(self, identifier: str) -> bool:
        """Count a request for ``identifier``; the first rejection per window is logged."""
        limit = self.settings.rate_limit_requests_per_minute
        if limit <= 0:
            return True
        count = await self.cache.increment(
            f"rate_limit_{identifier}", RATE_LIMIT_WINDOW_SECONDS
        )
        if count == limit + 1:
            self.log_security_event(
                "RateLimitExceeded", f"Rate limit exceeded for: {identifier}"
            )
        return count <= limit

    async def detect_suspicious(self, request: Request) -> bool:
        target = f"{request.url.path} {request.url.query}".lower()
        if any(pattern in target for pattern in SUSPICIOUS_PATTERNS):
            return True
        # Secondary volume heuristic, independent of the gateway ceiling
        threshold = self.settings.suspicious_requests_per_minute
        if threshold > 0:
            count = await self.cache.increment(
                f"ip_requests_{self.client_ip(request)}", RATE_LIMIT_WINDOW_SECONDS
            )
            if count > threshold:
                return True
        return False

    @staticmethod
    def apply_security_headers(response: Response) -> None:
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        if "server" in response.headers:
            del response.headers["server"]

    def validate_user_session(self, claims: Mapping[str, Any]) -> bool:
        user_id = claims.get("sub")
        user = self.store.get_user(user_id) if user_id else None
        if not user or not user.is_active:
            self.log_security_event(
                "InvalidSession", "Invalid or inactive user session", user_id
            )
            return False
        exp = claims.get("exp")
        if exp is not None:
            try:
                expired = float(exp) <= time.time() - self.settings.jwt_clock_skew_seconds
            except (TypeError, ValueError):
                expired = True
            if expired:
                self.log_security_event("ExpiredToken", "Token has expired", user_id)
                return False
        return True

    def log_security_event(
        self, event_type: str, details: str, user_id: Optional[str] = None
    ) -> None:
        logger.warning(
            "security_event", event_type=event_type, details=details, user_id=user_id
        )
        self.audit.log_action(
            user_id or SYSTEM_ACTOR, event_type, "Security", user_id, details
        )

    async def issue_csrf_token(self) -> str:
        token = secrets.token_urlsafe(32)
        await self.cache.set(
            f"csrf:{token}", token, self.settings.csrf_token_ttl_seconds
        )
        return token

    async def validate_csrf_token(self, token: Optional[str]) -> bool:
        if not token:
            return False
        stored = await self.cache.get(f"csrf:{token}")
        if stored is None or not hmac.compare_digest(stored, token):
            self.log_security_event("InvalidCSRFToken", "CSRF token validation failed")
            return False
        return True
