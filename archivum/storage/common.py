"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from archivum.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper encrypting 2FA secrets at rest.

    Key material comes from the explicit argument, then ``MFA_SECRET_KEY``,
    then ``JWT_SECRET``; failing all three a random key is generated and
    persisted at ``<fs_root>/.mfa_key``.
    """

    def __init__(self, key_material: Optional[str] = None, *, fs_root: Optional[Path] = None):
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            material = self._load_or_create_key(fs_root or Path("/tmp/archivum"))
        self._fernet = Fernet(self._derive_key(material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @staticmethod
    def _load_or_create_key(fs_root: Path) -> str:
        key_path = fs_root / ".mfa_key"
        try:
            return key_path.read_text().strip()
        except FileNotFoundError:
            pass
        generated = secrets.token_urlsafe(64)
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            key_path.write_text(generated)
            os.chmod(key_path, 0o600)
        except OSError as exc:
            raise RuntimeError("Unable to persist MFA encryption key") from exc
        return generated

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold the raw secret
            logger.warning("mfa_secret_decrypt_failed")
            return secret


def normalize_email(email: str) -> str:
    return email.strip().lower()
