from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from farmgate.api.schemas import (
    AssignRoleRequest,
    AuditEventListResponse,
    AuditEventResponse,
    AuthResponse,
    ConfirmEmailRequest,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    RegisterRequest,
    ResendOtpRequest,
    ResetPasswordRequest,
    UserListResponse,
    UserResponse,
)
from farmgate.logging import get_logger
from farmgate.service.auth import AuthContext, AuthResult
from farmgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ValidationError,
)
from farmgate.service.results import ErrorKind, Outcome
from farmgate.service.runtime import get_runtime
from farmgate.service.security import check_rate_limit
from farmgate.storage.models import AuditEvent, OtpPurpose, Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60

_ERROR_KIND_TO_EXCEPTION: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.INVALID_OTP: ValidationError,
    ErrorKind.EXPIRED: ValidationError,
    ErrorKind.UNCONFIRMED: ValidationError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.UNAUTHORIZED: AuthenticationError,
    ErrorKind.INACTIVE: AuthenticationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.INTERNAL: ServerError,
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _raise_for_outcome(outcome: Outcome) -> None:
    """Translate a failed service outcome into the matching ServiceError."""
    if outcome.ok:
        return
    exc_cls = _ERROR_KIND_TO_EXCEPTION.get(outcome.error, ServerError)
    raise exc_cls(outcome.message, detail=dict(outcome.detail))


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a per-subject rate limit and optionally apply headers to response.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime.cache, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)

    return info


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        message=result.message,
        token=result.token,
        requires_email_confirmation=result.requires_email_confirmation,
        user_name=result.user_name,
        email_delivered=result.email_delivered,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        roles=[role.value for role in user.roles],
        email_confirmed=user.email_confirmed,
        is_active=user.is_active,
        created_at=user.created_at,
    )


def _audit_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        actor_id=event.actor_id,
        action=event.action,
        entity_name=event.entity_name,
        entity_id=event.entity_id,
        details=event.details,
        created_at=event.created_at,
    )


async def get_user(request: Request) -> AuthContext:
    """Principal from the bearer claims verified by the token middleware."""
    claims = getattr(request.state, "claims", None)
    if not claims:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    ctx = get_runtime().auth.context_from_claims(claims)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.has_role(Role.SUPER_ADMIN):
        raise ForbiddenError("SuperAdmin role required")
    return principal


# -- auth ------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Start a two-phase signup.

    Stores a pending registration and mails an EmailConfirmation code. The
    account only exists after /auth/confirm-email succeeds.

    Raises:
        400: If the email already has an account or a live pending registration
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    outcome = await runtime.auth.register(
        email=body.email,
        username=body.username,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_auth_response(outcome.value))


@router.post("/auth/confirm-email", response_model=Envelope, tags=["auth"])
async def confirm_email(body: ConfirmEmailRequest):
    """Redeem the EmailConfirmation code and create the account.

    Raises:
        400: If the code is invalid/expired or the registration has expired
        404: If no pending registration exists for the email
    """
    runtime = get_runtime()
    outcome = await runtime.auth.confirm_email(body.email, body.otp_code)
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_auth_response(outcome.value))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Check credentials. Never returns a token; use /auth/get-token for that.

    Raises:
        400: If the email is not confirmed (details.requires_email_confirmation)
        401: If credentials are invalid or the account is deactivated
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    outcome = await runtime.auth.login(body.email, body.password)
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_auth_response(outcome.value))


@router.post("/auth/get-token", response_model=Envelope, tags=["auth"])
async def get_token(body: LoginRequest, response: Response):
    """Check credentials and return an encrypted bearer token.

    Raises:
        400: If the email is not confirmed (details.requires_email_confirmation)
        401: If credentials are invalid or the account is deactivated
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    outcome = await runtime.auth.get_token(body.email, body.password)
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_auth_response(outcome.value))


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOtpRequest, response: Response):
    """Issue a fresh code, invalidating the previous one for the same purpose.

    Raises:
        400: If the pending registration expired or the email is already confirmed
        404: If neither a pending registration nor an account exists
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    outcome = await runtime.auth.resend_otp(body.email, OtpPurpose(body.purpose))
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_auth_response(outcome.value))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, response: Response):
    """Set a new password using a PasswordReset code from /auth/resend-otp.

    Raises:
        400: If the code is invalid or expired
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    outcome = await runtime.auth.reset_password(
        body.email, body.otp_code, body.new_password
    )
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_auth_response(outcome.value))


@router.get("/auth/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token():
    runtime = get_runtime()
    token = await runtime.security.issue_csrf_token()
    return Envelope(status="ok", data=CsrfTokenResponse(csrf_token=token))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=_user_response(user))


# -- admin -----------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_response(u) for u in users])
    )


@router.post("/admin/users/assign-data-entry", response_model=Envelope, tags=["admin"])
async def admin_assign_data_entry(
    body: AssignRoleRequest, principal: AuthContext = Depends(get_admin_user)
):
    """Grant DataEntry to a confirmed user; Customer is removed.

    Raises:
        400: If the user is unconfirmed or already has the role
        404: If no user has this email
    """
    runtime = get_runtime()
    outcome = await runtime.auth.assign_data_entry_role(body.email, principal.user_id)
    _raise_for_outcome(outcome)
    return Envelope(
        status="ok",
        data={"message": outcome.message, "user": _user_response(outcome.value)},
    )


@router.post("/admin/users/{user_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_user(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    outcome = await runtime.auth.set_user_active(user_id, True, principal.user_id)
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_user_response(outcome.value))


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    if user_id == principal.user_id:
        logger.warning("admin_self_deactivate_blocked", user_id=user_id)
        raise _http_error("validation_error", "cannot deactivate yourself", status_code=400)
    outcome = await runtime.auth.set_user_active(user_id, False, principal.user_id)
    _raise_for_outcome(outcome)
    return Envelope(status="ok", data=_user_response(outcome.value))


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def admin_audit_events(
    limit: int = Query(100, ge=1, le=1000),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    events = runtime.auth.list_audit_events(limit=limit)
    return Envelope(
        status="ok",
        data=AuditEventListResponse(items=[_audit_response(e) for e in events]),
    )
