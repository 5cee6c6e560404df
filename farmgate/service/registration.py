from __future__ import annotations

from datetime import datetime
from typing import Optional

from farmgate.logging import get_logger
from farmgate.service.results import ErrorKind, Outcome
from farmgate.storage.errors import ConstraintViolation
from farmgate.storage.memory import MemoryStore
from farmgate.storage.models import PendingRegistration, utcnow

logger = get_logger(__name__)

USER_EXISTS_MESSAGE = "User already exists"
ALREADY_PENDING_MESSAGE = (
    "A registration for this email is already pending. Please check your email "
    "for OTP or wait for it to expire."
)
NOT_FOUND_MESSAGE = "No pending registration found for this email"
EXPIRED_MESSAGE = "Registration has expired. Please register again."


class PendingRegistrations:
    """Unconfirmed signups held outside the user table until OTP confirmation."""

    def __init__(self, store: MemoryStore, *, ttl_minutes: int = 30) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes

    def _now(self) -> datetime:
        return utcnow()

    def create(
        self,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        password_hash: str,
    ) -> Outcome[PendingRegistration]:
        record = PendingRegistration.new(
            email,
            username,
            first_name,
            last_name,
            password_hash,
            ttl_minutes=self.ttl_minutes,
            now=self._now(),
        )
        try:
            stored = self.store.put_pending_registration(record, now=self._now())
        except ConstraintViolation as exc:
            if exc.detail.get("reason") == "user_exists":
                return Outcome.failure(ErrorKind.CONFLICT, USER_EXISTS_MESSAGE, reason="user_exists")
            return Outcome.failure(ErrorKind.CONFLICT, ALREADY_PENDING_MESSAGE, reason="pending")
        logger.info("pending_registration_created", pending_id=stored.id)
        return Outcome.success(stored)

    def get(self, email: str) -> Optional[PendingRegistration]:
        return self.store.get_pending_registration(email)

    def is_expired(self, record: PendingRegistration) -> bool:
        return record.is_expired(self._now())

    def confirm(self, email: str) -> Outcome[PendingRegistration]:
        """Return the live pending record for ``email``; expired records are purged."""
        record = self.store.get_pending_registration(email)
        if record is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, NOT_FOUND_MESSAGE)
        if self.is_expired(record):
            self.store.delete_pending_registration(email)
            logger.info("pending_registration_expired", pending_id=record.id)
            return Outcome.failure(ErrorKind.EXPIRED, EXPIRED_MESSAGE)
        return Outcome.success(record)

    def discard(self, email: str) -> bool:
        return self.store.delete_pending_registration(email)
