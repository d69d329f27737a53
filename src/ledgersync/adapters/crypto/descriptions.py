"""At-rest encryption for transaction descriptions."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger


class DescriptionCipher:
    """Fernet wrapper used by the DB facade for the description column.

    Without a key descriptions pass through unchanged. Decryption of a value
    that is not a Fernet token (plain text written before a key was
    configured) returns it as-is.
    """

    def __init__(self, key: str | bytes | None = None) -> None:
        if isinstance(key, str):
            key = key.encode("utf-8")
        self._fernet = Fernet(key) if key else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, plaintext: str | None) -> str | None:
        if plaintext is None or self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, stored: str | None) -> str | None:
        if stored is None or self._fernet is None:
            return stored
        try:
            return self._fernet.decrypt(stored.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.bind(length=len(stored)).debug(
                "Description is not an encrypted token, treating as plain text"
            )
            return stored
