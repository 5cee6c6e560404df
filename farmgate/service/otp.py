from __future__ import annotations

import secrets
from datetime import datetime

from farmgate.logging import get_logger
from farmgate.storage.memory import MemoryStore
from farmgate.storage.models import OneTimeCode, OtpPurpose, SubjectRef, utcnow

logger = get_logger(__name__)

OTP_DIGITS = 6


class OtpEngine:
    """Issues and redeems single-use numeric codes per (subject, purpose)."""

    def __init__(self, store: MemoryStore, *, ttl_minutes: int = 15) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes

    def _now(self) -> datetime:
        return utcnow()

    def generate(self, subject: SubjectRef, purpose: OtpPurpose) -> str:
        """Create a fresh code, invalidating any unused code for the same pair."""
        code = f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"
        record = OneTimeCode.new(
            subject, code, purpose, ttl_minutes=self.ttl_minutes, now=self._now()
        )
        self.store.replace_otp(record)
        logger.info(
            "otp_generated",
            subject_kind=type(subject).__name__,
            purpose=purpose.value,
            expires_at=record.expires_at.isoformat(),
        )
        return code

    def validate(self, subject: SubjectRef, code: str, purpose: OtpPurpose) -> bool:
        """Consume a matching live code. Failure reasons are not distinguished."""
        if not code or len(code) != OTP_DIGITS or not code.isdigit():
            return False
        consumed = self.store.consume_otp(subject, code, purpose, now=self._now())
        if not consumed:
            logger.info(
                "otp_rejected",
                subject_kind=type(subject).__name__,
                purpose=purpose.value,
            )
        return consumed
