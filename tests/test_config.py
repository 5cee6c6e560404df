"""Tests for settings validation and token cipher material handling."""

import base64
import json
import os

import pytest
from pydantic import ValidationError

from farmgate.config import Settings

SECRET = "s" * 32


def _b64(size: int) -> str:
    return base64.b64encode(os.urandom(size)).decode()


class TestJwtSecret:
    def test_missing_secret_fails(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(shared_fs_root=str(tmp_path))

    def test_short_secret_fails(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="short", shared_fs_root=str(tmp_path))

    def test_env_secret_is_read(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        assert Settings.from_env().jwt_secret == SECRET


class TestTokenCipherMaterial:
    def test_generated_material_is_persisted(self, tmp_path):
        first = Settings(jwt_secret=SECRET, shared_fs_root=str(tmp_path))
        material = json.loads((tmp_path / ".token_cipher").read_text())

        assert material == {"key": first.token_encryption_key, "iv": first.token_encryption_iv}
        assert len(first.token_cipher_key_bytes) == 32
        assert len(first.token_cipher_iv_bytes) == 16
        assert (tmp_path / ".token_cipher").stat().st_mode & 0o777 == 0o600

    def test_persisted_material_is_reused(self, tmp_path):
        first = Settings(jwt_secret=SECRET, shared_fs_root=str(tmp_path))
        second = Settings(jwt_secret=SECRET, shared_fs_root=str(tmp_path))
        assert first.token_encryption_key == second.token_encryption_key
        assert first.token_encryption_iv == second.token_encryption_iv

    @pytest.mark.parametrize("content", ["[]", '"key"', "null", "{not json"])
    def test_unusable_material_file_is_replaced(self, tmp_path, content):
        (tmp_path / ".token_cipher").write_text(content)

        settings = Settings(jwt_secret=SECRET, shared_fs_root=str(tmp_path))

        material = json.loads((tmp_path / ".token_cipher").read_text())
        assert material == {
            "key": settings.token_encryption_key,
            "iv": settings.token_encryption_iv,
        }

    def test_configured_material_is_used(self, tmp_path):
        key, iv = _b64(16), _b64(16)
        settings = Settings(
            jwt_secret=SECRET,
            shared_fs_root=str(tmp_path),
            token_encryption_key=key,
            token_encryption_iv=iv,
        )
        assert settings.token_encryption_key == key
        assert not (tmp_path / ".token_cipher").exists()

    def test_key_without_iv_fails(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(
                jwt_secret=SECRET, shared_fs_root=str(tmp_path), token_encryption_key=_b64(32)
            )

    @pytest.mark.parametrize("key_size,iv_size", [(20, 16), (32, 12)])
    def test_wrong_sizes_fail(self, tmp_path, key_size, iv_size):
        with pytest.raises(ValidationError):
            Settings(
                jwt_secret=SECRET,
                shared_fs_root=str(tmp_path),
                token_encryption_key=_b64(key_size),
                token_encryption_iv=_b64(iv_size),
            )

    def test_invalid_base64_fails(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(
                jwt_secret=SECRET,
                shared_fs_root=str(tmp_path),
                token_encryption_key="not base64!",
                token_encryption_iv=_b64(16),
            )


class TestCorsOrigins:
    def test_comma_separated_origins(self, tmp_path):
        settings = Settings(
            jwt_secret=SECRET,
            shared_fs_root=str(tmp_path),
            cors_allow_origins="https://farm.example, https://admin.farm.example",
        )
        assert settings.cors_allow_origins == [
            "https://farm.example",
            "https://admin.farm.example",
        ]
