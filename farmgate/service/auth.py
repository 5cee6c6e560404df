from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from farmgate.config import Settings
from farmgate.logging import get_logger
from farmgate.service.audit import AuditService
from farmgate.service.email import EmailService
from farmgate.service.otp import OtpEngine
from farmgate.service.registration import USER_EXISTS_MESSAGE, PendingRegistrations
from farmgate.service.results import ErrorKind, Outcome
from farmgate.service.security import SecurityService
from farmgate.service.token_crypto import TokenCipher
from farmgate.service.tokens import TokenIssuer
from farmgate.storage.errors import ConstraintViolation
from farmgate.storage.memory import MemoryStore
from farmgate.storage.models import (
    SYSTEM_ACTOR,
    AuditEvent,
    OtpPurpose,
    PendingEmail,
    RealUser,
    Role,
    SubjectRef,
    User,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
INACTIVE_MESSAGE = "Account is deactivated"
UNCONFIRMED_MESSAGE = "Email not confirmed. Please confirm your email first."
INVALID_OTP_MESSAGE = "Invalid or expired OTP"
REGISTRATION_EXPIRED_MESSAGE = "Registration has expired. Please register again."


@dataclass
class AuthContext:
    user_id: str
    email: str
    roles: List[Role]
    token_id: Optional[str] = None

    def has_role(self, role: Role) -> bool:
        return role in self.roles


@dataclass
class AuthResult:
    message: str
    token: str = ""
    requires_email_confirmation: bool = False
    user_name: Optional[str] = None
    email_delivered: bool = True
    user: Optional[User] = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, confirmation, login and token flows over the store.

    Every flow returns an ``Outcome``; failures carry an ``ErrorKind`` and a
    message that is safe to show to the caller.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        otp: OtpEngine,
        registrations: PendingRegistrations,
        issuer: TokenIssuer,
        cipher: TokenCipher,
        security: SecurityService,
        audit: AuditService,
        mailer: EmailService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.otp = otp
        self.registrations = registrations
        self.issuer = issuer
        self.cipher = cipher
        self.security = security
        self.audit = audit
        self.mailer = mailer
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- helpers -----------------------------------------------------------

    async def _deliver_otp(self, email: str, code: str, purpose: OtpPurpose) -> bool:
        # A failed send leaves the persisted code valid; callers report it softly
        try:
            delivered = await asyncio.to_thread(
                self.mailer.send_otp_email, email, code, purpose.value
            )
        except Exception as exc:
            self.logger.error(
                "otp_email_failed", purpose=purpose.value, error=str(exc)
            )
            return False
        if not delivered:
            self.logger.warning("otp_email_not_delivered", purpose=purpose.value)
        return bool(delivered)

    def _check_credentials(
        self,
        email: str,
        password: str,
        *,
        failed_event: str,
        inactive_event: str,
    ) -> Outcome[User]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            self.security.log_security_event(
                failed_event, f"Failed attempt for: {email}", user.id if user else None
            )
            return Outcome.failure(ErrorKind.UNAUTHORIZED, INVALID_CREDENTIALS_MESSAGE)
        if not user.is_active:
            self.security.log_security_event(
                inactive_event, f"Inactive user attempt: {email}", user.id
            )
            return Outcome.failure(ErrorKind.INACTIVE, INACTIVE_MESSAGE)
        if not user.email_confirmed:
            return Outcome.failure(
                ErrorKind.UNCONFIRMED,
                UNCONFIRMED_MESSAGE,
                requires_email_confirmation=True,
            )
        return Outcome.success(user)

    # -- flows -------------------------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> Outcome[AuthResult]:
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            self.security.log_security_event(
                "DuplicateRegistration", f"Registration attempt for existing email: {email}"
            )
            return Outcome.failure(ErrorKind.CONFLICT, USER_EXISTS_MESSAGE)

        pwd_hash, _ = self._hash_password(password)
        created = self.registrations.create(email, username, first_name, last_name, pwd_hash)
        if not created.ok:
            if created.detail.get("reason") == "user_exists":
                self.security.log_security_event(
                    "DuplicateRegistration",
                    f"Registration attempt for existing email: {email}",
                )
            return Outcome.failure(created.error, created.message)
        pending = created.value

        code = self.otp.generate(PendingEmail(email), OtpPurpose.EMAIL_CONFIRMATION)
        delivered = await self._deliver_otp(email, code, OtpPurpose.EMAIL_CONFIRMATION)
        self.audit.log_action(
            SYSTEM_ACTOR,
            "RegisterInitiated",
            "PendingRegistration",
            pending.id,
            f"Registration initiated for: {email}",
        )
        return Outcome.success(
            AuthResult(
                message=(
                    "Registration initiated. Please check your email for the "
                    "verification code to complete your registration."
                ),
                requires_email_confirmation=True,
                email_delivered=delivered,
            )
        )

    async def confirm_email(self, email: str, code: str) -> Outcome[AuthResult]:
        email = normalize_email(email)
        pending = self.registrations.get(email)
        if pending is None:
            # Accounts created outside signup (seeded, imported) confirm against their user id
            existing = self.store.get_user_by_email(email)
            if existing and not existing.email_confirmed:
                return self._confirm_existing_user(existing, code)

        if not self.otp.validate(PendingEmail(email), code, OtpPurpose.EMAIL_CONFIRMATION):
            self.security.log_security_event("InvalidOTP", f"Invalid OTP attempt for: {email}")
            return Outcome.failure(ErrorKind.INVALID_OTP, INVALID_OTP_MESSAGE)

        confirmed = self.registrations.confirm(email)
        if not confirmed.ok:
            return Outcome.failure(confirmed.error, confirmed.message)
        record = confirmed.value

        try:
            user = self.store.activate_pending_registration(
                email,
                role=Role.CUSTOMER,
                farm_name=f"{record.first_name} {record.last_name}'s Farm",
                password_algo=PASSWORD_ALGO,
            )
        except ConstraintViolation as exc:
            self.logger.warning("pending_activation_conflict", error=exc.message)
            return Outcome.failure(ErrorKind.CONFLICT, USER_EXISTS_MESSAGE)

        self.audit.log_action(
            user.id,
            "EmailConfirmed",
            "User",
            user.id,
            "Email confirmed and user created successfully",
        )
        return Outcome.success(
            AuthResult(
                message="Email confirmed successfully! Your account has been created.",
                user_name=user.full_name,
                user=user,
            )
        )

    def _confirm_existing_user(self, user: User, code: str) -> Outcome[AuthResult]:
        if not self.otp.validate(RealUser(user.id), code, OtpPurpose.EMAIL_CONFIRMATION):
            self.security.log_security_event(
                "InvalidOTP", f"Invalid OTP attempt for: {user.email}", user.id
            )
            return Outcome.failure(ErrorKind.INVALID_OTP, INVALID_OTP_MESSAGE)
        self.store.mark_email_confirmed(user.id)
        self.audit.log_action(
            user.id, "EmailConfirmed", "User", user.id, "Email confirmed for existing user"
        )
        return Outcome.success(
            AuthResult(
                message="Email confirmed successfully!",
                user_name=user.display_name,
                user=user,
            )
        )

    async def login(self, email: str, password: str) -> Outcome[AuthResult]:
        """Check credentials only; the token field is always empty."""
        email = normalize_email(email)
        checked = self._check_credentials(
            email, password, failed_event="FailedLogin", inactive_event="InactiveUserLogin"
        )
        if not checked.ok:
            return Outcome.failure(checked.error, checked.message, **checked.detail)
        user = checked.value
        self.audit.log_action(user.id, "Login", "User", user.id, "User logged in")
        return Outcome.success(
            AuthResult(message="Login successful", user_name=user.display_name, user=user)
        )

    async def get_token(self, email: str, password: str) -> Outcome[AuthResult]:
        email = normalize_email(email)
        checked = self._check_credentials(
            email,
            password,
            failed_event="FailedTokenRequest",
            inactive_event="InactiveUserTokenRequest",
        )
        if not checked.ok:
            return Outcome.failure(checked.error, checked.message, **checked.detail)
        user = checked.value
        token = self.cipher.encrypt(self.issuer.issue(user))
        self.audit.log_action(user.id, "TokenGenerated", "User", user.id, "Bearer token issued")
        return Outcome.success(
            AuthResult(
                message="Token generated successfully",
                token=token,
                user_name=user.display_name,
                user=user,
            )
        )

    async def resend_otp(
        self, email: str, purpose: OtpPurpose = OtpPurpose.EMAIL_CONFIRMATION
    ) -> Outcome[AuthResult]:
        email = normalize_email(email)
        subject: Optional[SubjectRef] = None
        if purpose == OtpPurpose.EMAIL_CONFIRMATION:
            pending = self.registrations.get(email)
            if pending is not None:
                if self.registrations.is_expired(pending):
                    self.registrations.discard(email)
                    return Outcome.failure(ErrorKind.EXPIRED, REGISTRATION_EXPIRED_MESSAGE)
                subject = PendingEmail(email)
        if subject is None:
            user = self.store.get_user_by_email(email)
            if not user:
                return Outcome.failure(
                    ErrorKind.NOT_FOUND, "No registration found for this email"
                )
            if purpose == OtpPurpose.EMAIL_CONFIRMATION and user.email_confirmed:
                return Outcome.failure(ErrorKind.VALIDATION, "Email is already confirmed")
            subject = RealUser(user.id)

        code = self.otp.generate(subject, purpose)
        delivered = await self._deliver_otp(email, code, purpose)
        self.audit.log_action(
            SYSTEM_ACTOR, "OTPResent", "Email", None, f"OTP resent to: {email}"
        )
        return Outcome.success(
            AuthResult(message="OTP sent successfully", email_delivered=delivered)
        )

    async def reset_password(
        self, email: str, code: str, new_password: str
    ) -> Outcome[AuthResult]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user or not self.otp.validate(
            RealUser(user.id), code, OtpPurpose.PASSWORD_RESET
        ):
            self.security.log_security_event(
                "InvalidOTP", f"Invalid password reset attempt for: {email}",
                user.id if user else None,
            )
            return Outcome.failure(ErrorKind.INVALID_OTP, INVALID_OTP_MESSAGE)
        self.save_password(user.id, new_password)
        self.audit.log_action(user.id, "PasswordReset", "User", user.id, "Password reset via OTP")
        return Outcome.success(AuthResult(message="Password reset successfully", user=user))

    def context_from_claims(self, claims: dict) -> Optional[AuthContext]:
        """Resolve verified claims to the current user; roles come from the store."""
        user = self.store.get_user(claims.get("sub", ""))
        if not user or not user.is_active:
            return None
        return AuthContext(
            user_id=user.id,
            email=user.email,
            roles=list(user.roles),
            token_id=claims.get("jti"),
        )

    # -- administration ----------------------------------------------------

    async def assign_data_entry_role(self, email: str, actor_id: str) -> Outcome[User]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found with this email")
        if not user.email_confirmed:
            return Outcome.failure(ErrorKind.VALIDATION, "User email is not confirmed")
        if user.has_role(Role.DATA_ENTRY):
            return Outcome.failure(ErrorKind.CONFLICT, "User already has DataEntry role")
        self.store.remove_user_role(user.id, Role.CUSTOMER)
        updated = self.store.add_user_role(user.id, Role.DATA_ENTRY)
        self.audit.log_action(
            actor_id,
            "AssignDataEntryRole",
            "User",
            user.id,
            f"Assigned DataEntry role to {email}",
        )
        return Outcome.success(
            updated, message=f"DataEntry role assigned successfully to {email}"
        )

    async def set_user_active(
        self, user_id: str, is_active: bool, actor_id: str
    ) -> Outcome[User]:
        user = self.store.set_user_active(user_id, is_active)
        if not user:
            return Outcome.failure(ErrorKind.NOT_FOUND, "User not found")
        action = "UserActivated" if is_active else "UserDeactivated"
        self.audit.log_action(actor_id, action, "User", user.id, f"{action} by admin")
        return Outcome.success(user, message=f"User {'activated' if is_active else 'deactivated'}")

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def list_audit_events(self, limit: int = 100) -> List[AuditEvent]:
        return self.store.list_audit_events(limit=limit)

    async def seed_super_admin(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: str = "Super",
        last_name: str = "Admin",
    ) -> Outcome[User]:
        """Create the SuperAdmin account with its farm; a no-op when it already exists."""
        email = normalize_email(email)
        existing = self.store.get_user_by_email(email)
        if existing:
            if not existing.has_role(Role.SUPER_ADMIN):
                existing = self.store.add_user_role(existing.id, Role.SUPER_ADMIN)
            return Outcome.success(existing, message="SuperAdmin already exists")
        user = self.store.create_user(
            email,
            username,
            first_name=first_name,
            last_name=last_name,
            roles=[Role.SUPER_ADMIN],
            email_confirmed=True,
            is_active=True,
        )
        self.save_password(user.id, password)
        self.store.create_farm("Admin Farm", user.id)
        self.audit.log_action(
            SYSTEM_ACTOR, "SeedSuperAdmin", "User", user.id, "SuperAdmin account created"
        )
        self.logger.info("super_admin_seeded", user_id=user.id)
        return Outcome.success(user, message="SuperAdmin created")
