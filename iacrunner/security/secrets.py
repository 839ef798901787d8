"""
Secret decryption and masking.

Stored secrets carry the ``secret:`` prefix followed by a Fernet token.
Values without the prefix are plain text and pass through unchanged.
Decrypted sensitive values are registered with a masker so they can be
replaced by ``***`` in step messages and log records.
"""

import logging
import re
from typing import Any, Dict, Optional, Set, Union

from cryptography.fernet import Fernet, InvalidToken

from ..exceptions import SecretError

SECRET_VALUE_PREFIX = "secret:"


class SecretCipher:
    """Encrypts and decrypts stored secret values with a Fernet key."""

    def __init__(self, key: Optional[Union[str, bytes]] = None):
        self._fernet: Optional[Fernet] = None
        if key:
            try:
                self._fernet = Fernet(key)
            except (TypeError, ValueError) as e:
                raise SecretError(f"invalid secret key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    @staticmethod
    def is_encrypted(value: str) -> bool:
        return bool(value) and value.startswith(SECRET_VALUE_PREFIX)

    def encrypt(self, plain: str) -> str:
        if self._fernet is None:
            raise SecretError("no secret key configured")
        token = self._fernet.encrypt(plain.encode("utf-8")).decode("ascii")
        return SECRET_VALUE_PREFIX + token

    def decrypt_var(self, value: str) -> str:
        """Decrypt a stored value; plain values are returned as-is."""
        if not self.is_encrypted(value):
            return value
        if self._fernet is None:
            raise SecretError("encrypted value found but no secret key configured")

        token = value[len(SECRET_VALUE_PREFIX):]
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise SecretError("failed to decrypt secret value") from e


class SecretsMasker:
    """
    Tracks plaintext secrets and masks them in text.

    Masking is best-effort: longer values are replaced first so a secret
    that contains another secret is not partially revealed.
    """

    def __init__(self):
        self._masked_values: Set[str] = set()

    def register(self, value: Optional[str]):
        # Empty strings are never masked
        if value:
            self._masked_values.add(value)

    def mask_text(self, text: str) -> str:
        if not text or not self._masked_values:
            return text

        masked = text
        for secret_value in sorted(self._masked_values, key=len, reverse=True):
            if secret_value in masked:
                masked = re.sub(re.escape(secret_value), '***', masked)
        return masked

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively mask secrets in a dictionary (step errors, info files)."""
        if not data or not self._masked_values:
            return data

        masked = {}
        for key, value in data.items():
            if isinstance(value, str):
                masked[key] = self.mask_text(value)
            elif isinstance(value, dict):
                masked[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked[key] = [
                    self.mask_text(item) if isinstance(item, str) else item
                    for item in value
                ]
            else:
                masked[key] = value
        return masked

    def clear(self):
        self._masked_values.clear()


class SecretsMaskingFilter(logging.Filter):
    """Logging filter masking registered secrets in log records."""

    def __init__(self, masker: SecretsMasker):
        super().__init__()
        self.masker = masker

    def filter(self, record):
        if hasattr(record, 'msg'):
            record.msg = self.masker.mask_text(str(record.msg))

        if hasattr(record, 'args') and record.args:
            if isinstance(record.args, dict):
                record.args = self.masker.mask_dict(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self.masker.mask_text(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True
