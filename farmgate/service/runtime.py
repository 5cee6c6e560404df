from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from farmgate.config import get_settings, reset_settings_cache
from farmgate.logging import get_logger
from farmgate.service.audit import AuditService
from farmgate.service.auth import AuthService
from farmgate.service.email import EmailService
from farmgate.service.otp import OtpEngine
from farmgate.service.registration import PendingRegistrations
from farmgate.service.security import SecurityService
from farmgate.service.token_crypto import TokenCipher
from farmgate.service.tokens import TokenIssuer
from farmgate.storage.cache import Cache, MemoryCache
from farmgate.storage.memory import MemoryStore
from farmgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            persist_memory_store=self.settings.persist_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                persist=self.settings.persist_memory_store,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Cache = self._build_cache()

        self.audit = AuditService(self.store)
        self.otp = OtpEngine(self.store, ttl_minutes=self.settings.otp_ttl_minutes)
        self.registrations = PendingRegistrations(
            self.store, ttl_minutes=self.settings.pending_registration_ttl_minutes
        )
        self.issuer = TokenIssuer(self.settings)
        self.cipher = TokenCipher(
            self.settings.token_cipher_key_bytes, self.settings.token_cipher_iv_bytes
        )
        self.security = SecurityService(self.settings, self.cache, self.store, self.audit)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
            dev_log_fallback=self.settings.test_mode or self.settings.email_dev_log,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            otp=self.otp,
            registrations=self.registrations,
            issuer=self.issuer,
            cipher=self.cipher,
            security=self.security,
            audit=self.audit,
            mailer=self.email,
        )

        logger.info(
            "runtime_initialized",
            cache_backend=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            allow_http_dev=self.settings.allow_http_dev,
        )

    def _build_cache(self) -> Cache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync Redis client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits and CSRF tokens; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate-limit counters and "
                "CSRF tokens are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, (RedisCache, SyncRedisCache)):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
