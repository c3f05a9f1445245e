# flint/crypto.py
"""
Encryption at rest for provider credentials (Teller access tokens,
SnapTrade user secrets). Values are Fernet tokens in Mongo and plaintext
only in memory.
"""
import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from flint.errors import NotConnected
from flint.settings import settings


def _fernet() -> Fernet:
    key = settings.encryption_key
    if not key:
        # dev fallback: a stable key derived from the session secret
        key = base64.urlsafe_b64encode(hashlib.sha256(settings.session_secret.encode()).digest()).decode()
    return Fernet(key)


def encrypt_secret(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    return _fernet().encrypt(value.encode()).decode()


def decrypt_secret(token: Optional[str]) -> Optional[str]:
    if not token:
        return token
    try:
        return _fernet().decrypt(token.encode()).decode()
    except InvalidToken:
        raise NotConnected("Stored credentials could not be read; please reconnect")
