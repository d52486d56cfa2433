from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from typing import Any, Protocol

from cryptography.fernet import Fernet, InvalidToken

from .errors import CodecError

logger = logging.getLogger(__name__)


class ValueCodec(Protocol):
    """Reversible transform applied to variables stored with ``encrypted=True``."""

    def encode(self, value: Any) -> str: ...

    def decode(self, token: str) -> Any: ...


class Base64JsonCodec:
    """JSON + base64. Obfuscation only, not encryption."""

    def __init__(self) -> None:
        self._warned = False

    def encode(self, value: Any) -> str:
        if not self._warned:
            logger.warning("Encrypted variables use base64 encoding; configure an encryption key for real secrets")
            self._warned = True
        raw = json.dumps(value, default=str).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    def decode(self, token: str) -> Any:
        try:
            return json.loads(base64.b64decode(token.encode("ascii"), validate=True))
        except (binascii.Error, ValueError, UnicodeError, AttributeError):
            logger.warning("Could not decode encrypted variable value; returning the stored token")
            return token


class FernetCodec:
    """Authenticated encryption (AES-CBC + HMAC) keyed from arbitrary key material."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise CodecError("Encryption key material must not be empty")
        self._fernet = Fernet(self.derive_key(key_material))

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encode(self, value: Any) -> str:
        raw = json.dumps(value, default=str).encode("utf-8")
        return self._fernet.encrypt(raw).decode("ascii")

    def decode(self, token: str) -> Any:
        try:
            raw = self._fernet.decrypt(token.encode("ascii"))
        except (InvalidToken, AttributeError) as exc:
            raise CodecError("Unable to decrypt variable value") from exc
        return json.loads(raw)


def build_codec(key_material: str | None) -> ValueCodec:
    if key_material:
        return FernetCodec(key_material)
    return Base64JsonCodec()
