from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Union

SYSTEM_ACTOR = "System"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SUPER_ADMIN = "SuperAdmin"
    DATA_ENTRY = "DataEntry"
    CUSTOMER = "Customer"


class OtpPurpose(str, Enum):
    EMAIL_CONFIRMATION = "EmailConfirmation"
    PASSWORD_RESET = "PasswordReset"


@dataclass(frozen=True)
class RealUser:
    """OTP subject backed by an existing user record."""

    user_id: str


@dataclass(frozen=True)
class PendingEmail:
    """OTP subject for an address that has not completed registration."""

    email: str


SubjectRef = Union[RealUser, PendingEmail]


def subject_to_dict(subject: SubjectRef) -> dict:
    if isinstance(subject, RealUser):
        return {"kind": "user", "value": subject.user_id}
    return {"kind": "pending", "value": subject.email}


def subject_from_dict(data: dict) -> SubjectRef:
    if data.get("kind") == "user":
        return RealUser(data["value"])
    return PendingEmail(data["value"])


@dataclass
class User:
    id: str
    email: str
    username: str
    first_name: str = ""
    last_name: str = ""
    email_confirmed: bool = False
    is_active: bool = True
    roles: List[Role] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def display_name(self) -> str:
        return self.full_name or self.username

    def has_role(self, role: Role) -> bool:
        return role in self.roles


@dataclass
class Farm:
    id: str
    name: str
    owner_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PendingRegistration:
    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    password_hash: str
    created_at: datetime
    expires_at: datetime
    confirmed: bool = False

    @classmethod
    def new(
        cls,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        password_hash: str,
        *,
        ttl_minutes: int = 30,
        now: Optional[datetime] = None,
    ) -> "PendingRegistration":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class OneTimeCode:
    id: str
    subject: SubjectRef
    code: str
    purpose: OtpPurpose
    created_at: datetime
    expires_at: datetime
    used: bool = False

    @classmethod
    def new(
        cls,
        subject: SubjectRef,
        code: str,
        purpose: OtpPurpose,
        *,
        ttl_minutes: int = 15,
        now: Optional[datetime] = None,
    ) -> "OneTimeCode":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            subject=subject,
            code=code,
            purpose=purpose,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
        )


@dataclass
class AuditEvent:
    id: str
    actor_id: str
    action: str
    entity_name: str
    entity_id: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
