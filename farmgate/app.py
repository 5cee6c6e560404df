from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from farmgate.api.error_handling import (
    error_response,
    register_exception_handlers,
    unhandled_error_response,
)
from farmgate.api.routes import router
from farmgate.config import get_settings
from farmgate.logging import get_logger, set_correlation_id
from farmgate.service.errors import DecryptionError
from farmgate.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    runtime = get_runtime()
    logger.info("app_started", version=__version__, cache=type(runtime.cache).__name__)
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def decrypt_bearer_token(request: Request, call_next):
    """Replace the encrypted bearer with verified claims on request.state.

    A token that decrypts but fails verification leaves the request anonymous;
    protected routes reject it on their own.
    """
    ciphertext = _bearer_token(request)
    if ciphertext is None:
        return await call_next(request)

    runtime = get_runtime()
    try:
        token = runtime.cipher.decrypt(ciphertext)
    except DecryptionError:
        return error_response(401, "Invalid token")

    if not runtime.cipher.validate_integrity(token):
        logger.warning("token_integrity_failed", path=request.url.path)
        return error_response(401, "Invalid token format")

    # Expiry is left to the session check so lapsed tokens are recorded
    claims = runtime.issuer.decode(token, verify_exp=False)
    if claims is not None:
        if not runtime.security.validate_user_session(claims):
            return error_response(401, "Invalid session.")
        request.state.claims = claims
    return await call_next(request)


async def enforce_csrf_token(request: Request, call_next):
    settings = get_settings()
    if not settings.require_csrf or request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    if request.headers.get("Authorization"):
        return await call_next(request)
    runtime = get_runtime()
    if not await runtime.security.validate_csrf_token(request.headers.get("X-CSRF-Token")):
        return error_response(403, "missing or invalid CSRF token")
    return await call_next(request)


async def security_gateway(request: Request, call_next):
    runtime = get_runtime()
    security = runtime.security
    client_ip = security.client_ip(request)

    if not security.validate_transport(request) or not security.validate_headers(request):
        logger.warning(
            "security_validation_failed", path=request.url.path, client_ip=client_ip
        )
        response = error_response(400, "Security validation failed.")
    elif not await security.check_rate_limit(client_ip):
        response = error_response(429, "Rate limit exceeded. Please try again later.")
    elif await security.detect_suspicious(request):
        security.log_security_event(
            "SuspiciousActivity",
            f"Suspicious request from {client_ip}: {request.method} {request.url.path}",
        )
        response = error_response(400, "Request rejected.")
    else:
        try:
            response = await call_next(request)
        except Exception as exc:
            response = unhandled_error_response(request, exc)

    security.apply_security_headers(response)
    return response


async def add_correlation_id(request: Request, call_next):
    """Honour a client X-Request-ID or mint one, and echo it on the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def health() -> Dict[str, Any]:
    """Report cache and filesystem health."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {"store": {"status": "healthy", "type": "memory"}}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "backend": type(runtime.cache).__name__,
    }

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_probe() -> None:
        if not fs_path.exists() or not fs_path.is_dir():
            raise FileNotFoundError(fs_path)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    return {
        "status": "healthy" if cache_ok and fs_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }


def _allowed_origins() -> List[str]:
    return get_settings().cors_allow_origins or ["http://localhost:3000"]


def create_app() -> FastAPI:
    app = FastAPI(title="Farmgate Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    # Starlette runs the last registered middleware first
    app.middleware("http")(decrypt_bearer_token)
    app.middleware("http")(enforce_csrf_token)
    app.middleware("http")(security_gateway)
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"])
    return app


app = create_app()
