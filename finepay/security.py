"""
Security utilities: Fernet encryption, JWT tokens, and gateway signatures.

Three concerns are handled here:

1. FERNET ENCRYPTION (AES-128-CBC + HMAC-SHA256)
   - ILS passwords for library cards are stored encrypted, not hashed:
     registration may happen hours after the patron paid, and the engine
     must log the patron back into the ILS with the stored password.
   - The encryption key is loaded from the environment, never hardcoded.

2. JWT TOKENS
   - After an ILS login the patron receives a signed JWT carrying the
     local user id in "sub".
   - Tokens expire after ACCESS_TOKEN_EXPIRE_MINUTES.

3. GATEWAY SIGNATURES (HMAC-SHA256)
   - The payment gateway signs its callback body with the shared
     GATEWAY_SECRET; callbacks failing the check are rejected before any
     transaction is touched.
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from jose import jwt

from finepay.config import settings


# ---------------------------------------------------------------------------
# 1. Fernet Encryption (for stored ILS passwords)
# ---------------------------------------------------------------------------

_fernet = Fernet(settings.CARD_ENCRYPTION_KEY.encode())


def encrypt_value(plaintext: str) -> bytes:
    """
    Encrypt a string value using Fernet.

    Args:
        plaintext: The sensitive value to encrypt (an ILS password).

    Returns:
        Encrypted bytes suitable for storing in a LargeBinary column.
    """
    return _fernet.encrypt(plaintext.encode())


def decrypt_value(ciphertext: bytes) -> str:
    """
    Decrypt a Fernet-encrypted value back to plaintext.

    Raises:
        cryptography.fernet.InvalidToken: If the data is corrupted or
            the encryption key doesn't match.
    """
    return _fernet.decrypt(ciphertext).decode()


# ---------------------------------------------------------------------------
# 2. JWT Tokens
# ---------------------------------------------------------------------------

def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Create a signed JWT access token.

    Args:
        data: Dictionary of claims to encode (must include "sub").
        expires_delta: Optional custom expiration time. Defaults to
                       ACCESS_TOKEN_EXPIRE_MINUTES from settings.
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.

    Raises:
        JWTError: If the token is expired, tampered with, or invalid.
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


# ---------------------------------------------------------------------------
# 3. Gateway signatures
# ---------------------------------------------------------------------------

def sign_payload(payload: bytes, secret: str | None = None) -> str:
    """Hex HMAC-SHA256 of a callback body."""
    key = (secret or settings.GATEWAY_SECRET).encode()
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str | None = None) -> bool:
    """Constant-time check of a gateway callback signature."""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature.lower())
