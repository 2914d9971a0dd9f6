"""Fernet encryption for sensitive configuration values and Monday.com API tokens.

Plain strings (integration tokens) go through encrypt_value / decrypt_value.
Configuration values can be any JSON value, so encrypt_json serializes first and
tags the ciphertext with ENCRYPTED_PREFIX; decrypt_json passes untagged values
through, which keeps rows written before a key was configured readable.

ENCRYPTION_KEY must be a urlsafe base64 Fernet key. It is mandatory once the
service runs with a public URL (RENDER_EXTERNAL_URL or BACKEND_PUBLIC_URL).
"""
import json
import os
import logging
from pathlib import Path
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

MASK = "********"
ENCRYPTED_PREFIX = "enc:"


def _running_in_production() -> bool:
    return any(
        (os.environ.get(name) or '').strip()
        for name in ('RENDER_EXTERNAL_URL', 'BACKEND_PUBLIC_URL')
    )


def _load_fernet() -> Optional[Fernet]:
    key = (os.environ.get('ENCRYPTION_KEY') or '').strip()
    production = _running_in_production()

    if not key:
        if production:
            raise RuntimeError(
                "ENCRYPTION_KEY is required in production; configuration secrets and API tokens "
                "cannot be stored in plaintext"
            )
        logger.warning("ENCRYPTION_KEY not set, sensitive values are stored unencrypted (development only)")
        return None

    try:
        fernet = Fernet(key.encode())
    except ValueError as e:
        logger.error(f"Invalid ENCRYPTION_KEY: {e}")
        if production:
            raise RuntimeError("ENCRYPTION_KEY is not a valid Fernet key") from e
        return None

    logger.info("Encryption key loaded")
    return fernet


_fernet = _load_fernet()


def encrypt_value(plaintext: str) -> str:
    """Encrypt a token. Without a key (dev) the input comes back unchanged."""
    if not _fernet or not plaintext:
        return plaintext
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    if not _fernet or not ciphertext:
        return ciphertext
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Stored before encryption was enabled
        return ciphertext


def encrypt_json(value: Any) -> Any:
    """Encrypt an arbitrary JSON value into a prefixed string.

    Without a key the value is returned as-is so it stays queryable in dev.
    """
    if not _fernet or value is None:
        return value
    return ENCRYPTED_PREFIX + encrypt_value(json.dumps(value))


def decrypt_json(value: Any) -> Any:
    """Inverse of encrypt_json; non-prefixed values pass through."""
    if not isinstance(value, str) or not value.startswith(ENCRYPTED_PREFIX):
        return value
    plaintext = decrypt_value(value[len(ENCRYPTED_PREFIX):])
    try:
        return json.loads(plaintext)
    except json.JSONDecodeError:
        logger.warning("Encrypted value could not be decoded, returning masked value")
        return MASK


def mask_value(value: Any) -> Any:
    """Mask a sensitive value for logs and audit state."""
    if value is None:
        return None
    return MASK
