"""At-rest encryption for the API key stored in the settings file."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

__all__ = ["SecretVault"]

LOGGER = logging.getLogger(__name__)


class SecretVault:
    """Fernet-backed vault whose key lives next to the settings file.

    Ciphertexts are prefixed with the scheme name (``fernet:...``) so the
    format can change without guessing at old values.
    """

    scheme = "fernet"

    def __init__(self, key_path: Path) -> None:
        self._key_path = key_path
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.scheme}:{token}"

    def decrypt(self, ciphertext: str | None) -> str:
        """Return the plain secret.

        Raises:
            ValueError: for an unknown scheme or a token this key cannot open.
        """

        if not ciphertext:
            return ""
        scheme, _, token = ciphertext.partition(":")
        if scheme != self.scheme or not token:
            raise ValueError(f"Unsupported secret format {scheme!r}")
        try:
            return self._cipher().decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Stored secret cannot be decrypted with the current key") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._read_or_create_key())
        return self._fernet

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        staging = self._key_path.with_suffix(".key.tmp")
        staging.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - platform specific
            os.chmod(staging, 0o600)
        staging.replace(self._key_path)
        LOGGER.info("Created settings encryption key at %s", self._key_path)
        return key
