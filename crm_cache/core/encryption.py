"""Backup payload encryption.

Payloads are JSON-serialized and sealed with Fernet (AES-128-CBC plus an
HMAC-SHA256 tag), so a modified token fails before any data is read. The
Fernet key is derived from the configured passphrase with PBKDF2 over a salt
persisted in the durable tier; the same passphrase and salt always yield the
same key across restarts.
"""

import base64
import json
import os
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from crm_cache.core.logging import get_logger

logger = get_logger(__name__)


class EncryptionService:
    """Passphrase-keyed Fernet cipher for backup payloads.

    Call initialize() once at startup with the passphrase and the salt from
    Database.get_or_create_salt(); every other method needs it.
    """

    DEFAULT_ITERATIONS = 600_000
    SALT_BYTES = 32

    def __init__(self, iterations: int = DEFAULT_ITERATIONS):
        self.iterations = iterations
        self._fernet: Optional[Fernet] = None

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(EncryptionService.SALT_BYTES)

    def derive_key_from_password(self, password: str, salt: bytes) -> bytes:
        """PBKDF2-SHA256 into a 32-byte key, urlsafe-base64 encoded for Fernet."""
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt,
                         iterations=self.iterations)
        return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))

    def initialize(self, password: str, salt: bytes) -> None:
        self._fernet = Fernet(self.derive_key_from_password(password, salt))
        logger.debug("Backup cipher ready", kdf_iterations=self.iterations)

    def is_initialized(self) -> bool:
        return self._fernet is not None

    def clear(self) -> None:
        """Forget the derived key."""
        self._fernet = None

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            raise RuntimeError("Backup cipher used before initialize()")
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        return self._cipher().encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Raises ValueError when the token was altered or sealed with another key."""
        cipher = self._cipher()
        try:
            return cipher.decrypt(token.encode("utf-8")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            logger.error("Backup token rejected", token_length=len(token))
            raise ValueError("Decryption failed - invalid key or corrupted data") from e

    def encrypt_payload(self, data: Any) -> str:
        return self.encrypt(json.dumps(data, separators=(",", ":")))

    def decrypt_payload(self, token: str) -> Any:
        if not isinstance(token, str):
            raise ValueError(f"Encrypted payload must be a string token, got {type(token).__name__}")
        return json.loads(self.decrypt(token))
