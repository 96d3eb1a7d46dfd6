from __future__ import annotations
import binascii
import logging
from functools import lru_cache
from base64 import urlsafe_b64decode
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from gmail_link.core.config import settings
from gmail_link.core.errors import DecryptionError

logger = logging.getLogger(__name__)

class EncryptionKeyError(RuntimeError):
    pass

def generate_key() -> str:
    """Fresh key suitable for ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("ascii")

@lru_cache(maxsize=8)
def get_fernet(key_str: Optional[str] = None) -> Fernet:
    """
    Build a Fernet instance from `key_str`, or from ENCRYPTION_KEY when omitted.
    Key must be a urlsafe base64 string that decodes to 32 bytes.
    """
    key_str = (settings.ENCRYPTION_KEY if key_str is None else key_str).strip()
    if not key_str:
        raise EncryptionKeyError("ENCRYPTION_KEY is empty. Set it in .env")

    try:
        raw = urlsafe_b64decode(key_str.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise EncryptionKeyError("Invalid ENCRYPTION_KEY format (must be urlsafe base64 of 32 bytes)") from e
    if len(raw) != 32:
        raise EncryptionKeyError("ENCRYPTION_KEY must decode to exactly 32 bytes")

    return Fernet(key_str.encode("ascii"))

def encrypt_str(plaintext: str, key: Optional[str] = None) -> str:
    """
    Encrypt a UTF-8 string and return a Fernet token (str). Never log the result.
    Every call uses a fresh IV, so equal inputs give different tokens.
    """
    if plaintext is None:
        raise ValueError("plaintext required")
    token = get_fernet(key).encrypt(plaintext.encode("utf-8"))
    return token.decode("utf-8")

def decrypt_str(token: str, key: Optional[str] = None) -> str:
    """
    Decrypt a Fernet token back to a string.

    Raises DecryptionError when the token is empty, truncated, tampered with or
    was produced under another key; a partial plaintext is never returned.
    """
    if not token:
        raise DecryptionError("No ciphertext stored")
    try:
        out = get_fernet(key).decrypt(token.encode("utf-8"))
    except InvalidToken as e:
        logger.error("credential ciphertext failed authentication")
        raise DecryptionError() from e
    return out.decode("utf-8")
