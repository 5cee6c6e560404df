from __future__ import annotations

import base64
import binascii
import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from farmgate.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32
AES_KEY_SIZES = (16, 24, 32)
AES_BLOCK_BYTES = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _decode_b64(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"{name} must be valid base64") from exc


class Settings(BaseModel):
    """Runtime settings for the marketplace auth core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/farmgate", "SHARED_FS_ROOT")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Snapshot the in-process store to SHARED_FS_ROOT/state",
    )
    # Email service settings; without SMTP_HOST codes are only logged
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Farm Management System", "EMAIL_FROM_NAME")
    email_dev_log: bool = env_field(
        False,
        "EMAIL_DEV_LOG",
        description="Log outgoing mail, codes included, when SMTP is not configured.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process cache, runtime resets).",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("farmgate", "JWT_ISSUER")
    jwt_audience: str = env_field("farmgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    jwt_clock_skew_seconds: int = env_field(0, "JWT_CLOCK_SKEW_SECONDS", ge=0)
    token_encryption_key: str | None = env_field(
        None,
        "TOKEN_ENCRYPTION_KEY",
        description="Base64 AES key (16, 24 or 32 bytes) for bearer token encryption",
    )
    token_encryption_iv: str | None = env_field(
        None,
        "TOKEN_ENCRYPTION_IV",
        description="Base64 16-byte CBC IV for bearer token encryption",
    )
    otp_ttl_minutes: int = env_field(15, "OTP_TTL_MINUTES", gt=0)
    pending_registration_ttl_minutes: int = env_field(
        30, "PENDING_REGISTRATION_TTL_MINUTES", gt=0
    )
    # Gateway limits are per client address, endpoint limits are per email
    rate_limit_requests_per_minute: int = env_field(100, "RATE_LIMIT_REQUESTS_PER_MINUTE")
    suspicious_requests_per_minute: int = env_field(500, "SUSPICIOUS_REQUESTS_PER_MINUTE")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(5, "OTP_RATE_LIMIT_PER_MINUTE")
    allow_http_dev: bool = env_field(
        False,
        "ALLOW_HTTP_DEV",
        description="Accept plaintext HTTP; development only",
    )
    require_csrf: bool = env_field(False, "REQUIRE_CSRF")
    csrf_token_ttl_seconds: int = env_field(3600, "CSRF_TOKEN_TTL_SECONDS", gt=0)
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value or len(value.strip()) < MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_secret_invalid", min_length=MIN_JWT_SECRET_LENGTH)
            raise ValueError(
                f"JWT_SECRET must be set to at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _ensure_token_cipher_material(self) -> "Settings":
        key, iv = self.token_encryption_key, self.token_encryption_iv
        if bool(key) != bool(iv):
            raise ValueError(
                "TOKEN_ENCRYPTION_KEY and TOKEN_ENCRYPTION_IV must be configured together"
            )
        if not key:
            key, iv = _load_or_create_cipher_material(Path(self.shared_fs_root))
            self.token_encryption_key = key
            self.token_encryption_iv = iv
        if len(_decode_b64(key, "TOKEN_ENCRYPTION_KEY")) not in AES_KEY_SIZES:
            raise ValueError("TOKEN_ENCRYPTION_KEY must decode to 16, 24 or 32 bytes")
        if len(_decode_b64(iv, "TOKEN_ENCRYPTION_IV")) != AES_BLOCK_BYTES:
            raise ValueError("TOKEN_ENCRYPTION_IV must decode to 16 bytes")
        return self

    @property
    def token_cipher_key_bytes(self) -> bytes:
        return base64.b64decode(self.token_encryption_key or "")

    @property
    def token_cipher_iv_bytes(self) -> bytes:
        return base64.b64decode(self.token_encryption_iv or "")


def _load_or_create_cipher_material(fs_root: Path) -> tuple[str, str]:
    """Return the persisted key/IV pair, generating and persisting one if absent.

    Tokens encrypted with a generated pair stay valid across restarts only
    because the pair is written to ``SHARED_FS_ROOT/.token_cipher``.
    """
    material_path = fs_root / ".token_cipher"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("token_cipher_dir_setup", error=str(exc), path=str(fs_root))

    if material_path.exists() and not material_path.is_symlink():
        try:
            persisted = json.loads(material_path.read_text())
            if not isinstance(persisted, dict):
                raise ValueError("token cipher material is not a JSON object")
            if persisted.get("key") and persisted.get("iv"):
                return persisted["key"], persisted["iv"]
        except (OSError, ValueError) as exc:
            logger.error(
                "token_cipher_read_failed", error=str(exc), path=str(material_path)
            )

    key = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
    iv = base64.b64encode(secrets.token_bytes(AES_BLOCK_BYTES)).decode("ascii")
    tmp_path = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".token_cipher_", suffix=".tmp"
        )
        try:
            os.write(fd, json.dumps({"key": key, "iv": iv}).encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(material_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error(
            "token_cipher_persist_failed", error=str(exc), path=str(material_path)
        )
        raise RuntimeError(
            "Unable to persist token cipher material; set TOKEN_ENCRYPTION_KEY/"
            "TOKEN_ENCRYPTION_IV or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning(
        "token_cipher_material_generated",
        path=str(material_path),
        message=(
            "Generated bearer encryption key/IV; configure TOKEN_ENCRYPTION_KEY "
            "and TOKEN_ENCRYPTION_IV for multi-host deployments"
        ),
    )
    return key, iv


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
