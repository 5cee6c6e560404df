from __future__ import annotations

import hmac
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from farmgate.logging import get_logger
from farmgate.storage.errors import ConstraintViolation
from farmgate.storage.models import (
    AuditEvent,
    Farm,
    OneTimeCode,
    OtpPurpose,
    PendingEmail,
    PendingRegistration,
    RealUser,
    Role,
    SubjectRef,
    User,
    subject_from_dict,
    subject_to_dict,
    utcnow,
)


class MemoryStore:
    """In-process backing store for users, pending signups, codes and audit events.

    Every mutation runs under a single re-entrant lock, which is what makes the
    OTP replace/consume and pending-registration check-and-insert operations
    atomic. When ``persist`` is set the full state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after each write; audit events are
    appended to ``<fs_root>/state/audit_events.jsonl`` instead.
    """

    def __init__(self, fs_root: str = "/tmp/farmgate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.farms: Dict[str, Farm] = {}
        self.pending_registrations: Dict[str, PendingRegistration] = {}
        self.one_time_codes: Dict[str, OneTimeCode] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so composite operations can call the single-record helpers
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()
            self._load_audit_log()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _audit_log_path(self) -> Path:
        return self._state_path().parent / "audit_events.jsonl"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        *,
        first_name: str = "",
        last_name: str = "",
        roles: Optional[List[Role]] = None,
        email_confirmed: bool = False,
        is_active: bool = True,
    ) -> User:
        email = self._normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                first_name=first_name,
                last_name=last_name,
                email_confirmed=email_confirmed,
                is_active=is_active,
                roles=list(roles or []),
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = self._normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at)[:limit]

    def add_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if role not in user.roles:
                user.roles.append(role)
            self._persist_state()
            return user

    def remove_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = [r for r in user.roles if r != role]
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def mark_email_confirmed(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_confirmed = True
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- farms -------------------------------------------------------------

    def create_farm(self, name: str, owner_id: str) -> Farm:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("farm owner not found", {"owner_id": owner_id})
            farm = Farm(id=str(uuid.uuid4()), name=name, owner_id=owner_id)
            self.farms[farm.id] = farm
            self._persist_state()
            return farm

    def list_farms(self, owner_id: str) -> List[Farm]:
        with self._data_lock:
            return [f for f in self.farms.values() if f.owner_id == owner_id]

    # -- pending registrations ---------------------------------------------

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._data_lock:
            return self.pending_registrations.get(self._normalize_email(email))

    def put_pending_registration(
        self, record: PendingRegistration, *, now: datetime
    ) -> PendingRegistration:
        """Insert a pending signup, replacing an expired one for the same email.

        Raises ConstraintViolation when the email belongs to an existing user or
        an unexpired pending signup.
        """
        record.email = self._normalize_email(record.email)
        with self._data_lock:
            owner = self.get_user_by_email(record.email)
            if owner:
                raise ConstraintViolation(
                    "email already registered", {"field": "email", "reason": "user_exists"}
                )
            existing = self.pending_registrations.get(record.email)
            if existing and not existing.is_expired(now):
                raise ConstraintViolation(
                    "registration already pending", {"field": "email", "reason": "pending"}
                )
            if existing:
                self.logger.info("pending_registration_replaced", pending_id=existing.id)
            self.pending_registrations[record.email] = record
            self._persist_state()
            return record

    def delete_pending_registration(self, email: str) -> bool:
        with self._data_lock:
            removed = self.pending_registrations.pop(self._normalize_email(email), None)
            if removed:
                self._persist_state()
            return removed is not None

    def activate_pending_registration(
        self, email: str, *, role: Role, farm_name: str, password_algo: str = "argon2id"
    ) -> User:
        """Turn a pending signup into a confirmed user with its farm, in one step."""
        email = self._normalize_email(email)
        with self._data_lock:
            pending = self.pending_registrations.get(email)
            if not pending:
                raise ConstraintViolation("no pending registration", {"field": "email"})
            user = self.create_user(
                pending.email,
                pending.username,
                first_name=pending.first_name,
                last_name=pending.last_name,
                roles=[role],
                email_confirmed=True,
                is_active=True,
            )
            self.credentials[user.id] = (pending.password_hash, password_algo)
            farm = Farm(id=str(uuid.uuid4()), name=farm_name, owner_id=user.id)
            self.farms[farm.id] = farm
            pending.confirmed = True
            self.pending_registrations.pop(email, None)
            self._persist_state()
            return user

    # -- one-time codes ----------------------------------------------------

    def _subject_matches_email(self, subject: SubjectRef, email: str) -> bool:
        if isinstance(subject, PendingEmail):
            return subject.email == email
        user = self.users.get(subject.user_id)
        return bool(user and user.email == email)

    def replace_otp(self, record: OneTimeCode) -> OneTimeCode:
        """Store ``record`` after deleting prior codes for the same subject and purpose.

        A pending-email subject also clears codes of the same purpose held by a
        user account registered under that email. Used and lapsed codes are
        swept from the table on every write.
        """
        if isinstance(record.subject, PendingEmail):
            record.subject = PendingEmail(self._normalize_email(record.subject.email))
        with self._data_lock:
            stale = []
            for code_id, existing in self.one_time_codes.items():
                if existing.used or existing.expires_at <= record.created_at:
                    stale.append(code_id)
                    continue
                if existing.purpose != record.purpose:
                    continue
                if existing.subject == record.subject:
                    stale.append(code_id)
                elif isinstance(record.subject, PendingEmail) and isinstance(
                    existing.subject, RealUser
                ):
                    if self._subject_matches_email(existing.subject, record.subject.email):
                        stale.append(code_id)
            for code_id in stale:
                self.one_time_codes.pop(code_id, None)
            self.one_time_codes[record.id] = record
            self._persist_state()
            return record

    def consume_otp(
        self, subject: SubjectRef, code: str, purpose: OtpPurpose, *, now: datetime
    ) -> bool:
        """Mark the matching live code used; False when nothing matches."""
        if isinstance(subject, PendingEmail):
            subject = PendingEmail(self._normalize_email(subject.email))
        with self._data_lock:
            for record in self.one_time_codes.values():
                if (
                    record.subject == subject
                    and record.purpose == purpose
                    and not record.used
                    and record.expires_at > now
                    and hmac.compare_digest(record.code, code)
                ):
                    record.used = True
                    self.one_time_codes.pop(record.id, None)
                    self._persist_state()
                    return True
            return False

    def list_otps(self, subject: SubjectRef) -> List[OneTimeCode]:
        with self._data_lock:
            return [r for r in self.one_time_codes.values() if r.subject == subject]

    # -- audit -------------------------------------------------------------

    def append_audit_event(
        self,
        actor_id: str,
        action: str,
        entity_name: str,
        entity_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> AuditEvent:
        with self._data_lock:
            event = AuditEvent(
                id=str(uuid.uuid4()),
                actor_id=actor_id,
                action=action,
                entity_name=entity_name,
                entity_id=entity_id,
                details=details,
            )
            self.audit_events.append(event)
            self._append_audit_log(event)
            return event

    def list_audit_events(
        self, limit: int = 100, *, action: Optional[str] = None
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [e for e in self.audit_events if not action or e.action == action]
            return list(reversed(events))[:limit]

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "farms": [self._serialize_farm(f) for f in self.farms.values()],
            "pending_registrations": [
                self._serialize_pending(p) for p in self.pending_registrations.values()
            ],
            "one_time_codes": [
                self._serialize_otp(c) for c in self.one_time_codes.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.farms = {f["id"]: self._deserialize_farm(f) for f in data.get("farms", [])}
        self.pending_registrations = {
            p["email"]: self._deserialize_pending(p)
            for p in data.get("pending_registrations", [])
        }
        self.one_time_codes = {
            c["id"]: self._deserialize_otp(c) for c in data.get("one_time_codes", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def _append_audit_log(self, event: AuditEvent) -> None:
        if not self.persist:
            return
        try:
            with self._audit_log_path().open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(self._serialize_audit(event)) + "\n")
        except OSError as exc:
            raise RuntimeError(f"failed to append audit event: {exc}") from exc

    def _load_audit_log(self) -> None:
        path = self._audit_log_path()
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        events = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                events.append(self._deserialize_audit(json.loads(line)))
            except (ValueError, KeyError, TypeError) as exc:
                self.logger.warning(
                    "audit_log_line_skipped", line=lineno, error=str(exc), path=str(path)
                )
        self.audit_events = events

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email_confirmed": user.email_confirmed,
            "is_active": user.is_active,
            "roles": [role.value for role in user.roles],
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data.get("username", data["email"]),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email_confirmed=data.get("email_confirmed", False),
            is_active=data.get("is_active", True),
            roles=[Role(r) for r in data.get("roles", [])],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_farm(self, farm: Farm) -> dict:
        return {
            "id": farm.id,
            "name": farm.name,
            "owner_id": farm.owner_id,
            "created_at": self._serialize_datetime(farm.created_at),
        }

    def _deserialize_farm(self, data: dict) -> Farm:
        return Farm(
            id=data["id"],
            name=data["name"],
            owner_id=data["owner_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_pending(self, pending: PendingRegistration) -> dict:
        return {
            "id": pending.id,
            "email": pending.email,
            "username": pending.username,
            "first_name": pending.first_name,
            "last_name": pending.last_name,
            "password_hash": pending.password_hash,
            "created_at": self._serialize_datetime(pending.created_at),
            "expires_at": self._serialize_datetime(pending.expires_at),
            "confirmed": pending.confirmed,
        }

    def _deserialize_pending(self, data: dict) -> PendingRegistration:
        return PendingRegistration(
            id=data["id"],
            email=data["email"],
            username=data["username"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            password_hash=data["password_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            confirmed=data.get("confirmed", False),
        )

    def _serialize_otp(self, record: OneTimeCode) -> dict:
        return {
            "id": record.id,
            "subject": subject_to_dict(record.subject),
            "code": record.code,
            "purpose": record.purpose.value,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "used": record.used,
        }

    def _deserialize_otp(self, data: dict) -> OneTimeCode:
        return OneTimeCode(
            id=data["id"],
            subject=subject_from_dict(data["subject"]),
            code=data["code"],
            purpose=OtpPurpose(data["purpose"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
        )

    def _serialize_audit(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "actor_id": event.actor_id,
            "action": event.action,
            "entity_name": event.entity_name,
            "entity_id": event.entity_id,
            "details": event.details,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            actor_id=data["actor_id"],
            action=data["action"],
            entity_name=data["entity_name"],
            entity_id=data.get("entity_id"),
            details=data.get("details"),
            created_at=self._deserialize_datetime(data.get("created_at") or utcnow().isoformat()),
        )
