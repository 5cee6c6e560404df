from __future__ import annotations

import base64
import binascii
import re

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from farmgate.logging import get_logger
from farmgate.service.errors import DecryptionError

logger = get_logger(__name__)

# Standard and URL-safe alphabets, optional trailing padding; empty allowed
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9+/_-]*={0,2}$")


class TokenCipher:
    """AES-CBC/PKCS7 wrapper applied to signed bearer tokens.

    The key/IV pair is fixed by configuration, so encryption is deterministic
    for a given token.
    """

    def __init__(self, key: bytes, iv: bytes) -> None:
        if len(key) not in (16, 24, 32):
            raise ValueError("token cipher key must be 16, 24 or 32 bytes")
        if len(iv) != 16:
            raise ValueError("token cipher IV must be 16 bytes")
        self._key = key
        self._iv = iv

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(self._iv))

    def encrypt(self, token: str) -> str:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(token.encode("utf-8")) + padder.finalize()
        encryptor = self._cipher().encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(ciphertext).decode("ascii")

    def decrypt(self, ciphertext_b64: str) -> str:
        try:
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
            decryptor = self._cipher().decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.info("token_decrypt_failed", error_type=type(exc).__name__)
            raise DecryptionError("Invalid token") from exc

    @staticmethod
    def validate_integrity(token: str) -> bool:
        """Structural check only: three base64 segments, no signature verification."""
        parts = token.split(".")
        if len(parts) != 3:
            return False
        for part in parts:
            if not _SEGMENT_RE.match(part):
                return False
            padded = part + "=" * (-len(part) % 4)
            try:
                base64.b64decode(padded.replace("-", "+").replace("_", "/"), validate=True)
            except (binascii.Error, ValueError):
                return False
        return True
