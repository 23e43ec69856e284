"""Helpers shared by the memory and Postgres stores."""

from __future__ import annotations

import base64
import hashlib
import uuid
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from accountcore.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness and lookups."""
    return (email or "").strip().lower()


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit() or ch == "+")
    return digits or None


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("two-factor encryption key material is required")
        try:
            self._fernet = Fernet(derive_cipher_key(key_material))
        except (ValueError, TypeError) as exc:
            raise RuntimeError("Unable to initialize two-factor secret cipher") from exc

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
            # rows written before encryption was enabled hold the raw base32 secret
            logger.warning("two_factor_secret_decrypt_failed")
            return secret


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())
