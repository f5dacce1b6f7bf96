import hashlib
import secrets
from datetime import datetime, timezone

import bcrypt
import jwt

from ..config import settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
REFRESH_SECRET_BYTES = 32
BCRYPT_MAX_PASSWORD_BYTES = 72


def generate_refresh_secret() -> str:
    """256-bit random opaque secret, hex encoded."""
    return secrets.token_hex(REFRESH_SECRET_BYTES)


def hash_refresh_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    pwd_bytes = password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]
    return bcrypt.hashpw(pwd_bytes, bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    plain_bytes = password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]
    try:
        return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: str, *, now: datetime | None = None) -> str:
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + settings.access_token_ttl,
    }
    return jwt.encode(payload, settings.jwt_access_secret, algorithm=settings.jwt_algorithm)


def create_refresh_token(
    user_id: str, secret: str, expires_at: datetime, *, now: datetime | None = None
) -> str:
    """Sign the envelope handed to clients around an opaque refresh secret.

    Only ``hash_refresh_secret(secret)`` is ever persisted.
    """
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "type": REFRESH_TOKEN_TYPE,
        "secret": secret,
        "iat": issued_at,
        "exp": expires_at,
    }
    return jwt.encode(payload, settings.jwt_refresh_secret, algorithm=settings.jwt_algorithm)
