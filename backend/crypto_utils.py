"""Fernet encryption for stored CRM credentials.

crm_connections.credentials holds a JSON object whose sensitive fields
(access tokens, refresh tokens, API keys) are encrypted individually, so the
rest of the object stays queryable.

Usage:
    from crypto_utils import encrypt_credentials, decrypt_credentials

    row["credentials"] = encrypt_credentials({"access_token": token})
    credentials = decrypt_credentials(row["credentials"])

Requires ENCRYPTION_KEY env var (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
"""
import os
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = frozenset({"access_token", "refresh_token", "api_key", "client_secret"})

_is_production = (os.environ.get("APP_ENV") or "").strip().lower() == "production"


def _load_fernet() -> Optional[Fernet]:
    key = (os.environ.get("ENCRYPTION_KEY") or "").strip()
    if not key:
        if _is_production:
            raise RuntimeError(
                "ENCRYPTION_KEY is required in production. CRM credentials cannot be stored unencrypted."
            )
        logger.warning("ENCRYPTION_KEY not set, credentials will be stored unencrypted (development only)")
        return None

    try:
        fernet = Fernet(key.encode())
    except ValueError as e:
        logger.error(f"Invalid ENCRYPTION_KEY: {e}")
        if _is_production:
            raise RuntimeError("ENCRYPTION_KEY is set but invalid. Cannot start in production.")
        return None

    logger.info("Encryption key loaded successfully")
    return fernet


_fernet = _load_fernet()


def encrypt_value(plaintext: str) -> str:
    """Encrypt a plaintext string. Returns plaintext unchanged if no key configured (dev only)."""
    if not _fernet or not plaintext:
        return plaintext
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a ciphertext string. Returns input unchanged if not encrypted or no key."""
    if not _fernet or not ciphertext:
        return ciphertext
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Rows written before a key was configured are stored in the clear
        return ciphertext


def encrypt_credentials(credentials: dict) -> dict:
    """Copy of credentials with every sensitive field encrypted."""
    return {
        key: encrypt_value(str(val)) if val and key in SENSITIVE_KEYS else val
        for key, val in (credentials or {}).items()
    }


def decrypt_credentials(credentials: dict) -> dict:
    """Copy of credentials with every sensitive field decrypted."""
    return {
        key: decrypt_value(str(val)) if val and key in SENSITIVE_KEYS else val
        for key, val in (credentials or {}).items()
    }
