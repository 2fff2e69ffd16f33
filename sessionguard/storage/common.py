"""Helpers shared between the memory and postgres store implementations.

Both backends normalise identities the same way and encrypt two-factor
secrets with the same Fernet key, so a secret written by one backend can be
read by the other after a migration.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from sessionguard.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    """Usernames are unique case-insensitively; this is the comparison key."""
    return username.strip().lower()


class SecretBox:
    """Fernet wrapper used to keep two-factor secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("two-factor encryption key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold the raw base32 secret
            logger.warning("two_factor_secret_decrypt_failed")
            return token


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a metadata column stored either as JSON text or as a dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def page_slice(items: List[T], limit: int, offset: int) -> Tuple[List[T], int]:
    """Return one page of ``items`` plus the unpaged total."""
    return items[offset : offset + limit], len(items)
