"""Symmetric encryption of the health values Nudge stores.

Only two columns hold ciphertext: ``metric_readings.value_enc`` (the
reading payload, e.g. ``{"systolic": 150, "diastolic": 95}``) and
``prompt_deliveries.context_enc`` (the rendering snapshot). Participant
IDs, metric kinds and timestamps stay queryable in the clear.
"""

from __future__ import annotations

import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken


class EncryptionError(Exception):
    """A payload could not be sealed or opened with the configured key."""


class FieldEncryptor:
    """Seals JSON values into Fernet tokens and opens them again.

    An absent value maps to ``""`` on the way in and back to ``None`` on
    the way out, so optional columns need no special casing.
    """

    def __init__(self, key: str) -> None:
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, data: Any) -> str:
        if data is None:
            return ""
        try:
            body = json.dumps(data, separators=(",", ":"), default=str)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Payload is not JSON-serializable: {exc}") from exc
        return self._fernet.encrypt(body.encode()).decode()

    def decrypt(self, token: str) -> Any:
        """Return the stored value.

        Raises:
            EncryptionError: On a tampered token, a different key or a
                body that is not JSON.
        """
        if not token:
            return None
        try:
            body = self._fernet.decrypt(token.encode())
        except InvalidToken as exc:
            raise EncryptionError("Cannot decrypt payload: invalid token or wrong key") from exc
        try:
            return json.loads(body)
        except ValueError as exc:
            raise EncryptionError(f"Decrypted payload is not JSON: {exc}") from exc

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()
