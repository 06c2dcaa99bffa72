from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

MIN_KEY_LENGTH = 32
INSECURE_KEYS = {"default-key-change-in-production"}


class ContactCipher:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("LEADFLOW_ENCRYPTION_KEY is not set")
        if secret in INSECURE_KEYS:
            raise ValueError("LEADFLOW_ENCRYPTION_KEY uses a known insecure default")
        if len(secret.encode("utf-8")) < MIN_KEY_LENGTH:
            raise ValueError(f"LEADFLOW_ENCRYPTION_KEY must be at least {MIN_KEY_LENGTH} bytes")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, value: str | None) -> str | None:
        if not value:
            return None
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str | None) -> str | None:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("contact field could not be decrypted with the configured key") from exc
