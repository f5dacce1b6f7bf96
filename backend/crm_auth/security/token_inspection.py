from dataclasses import dataclass
from typing import Any, Dict

import jwt

from ..config import settings
from ..utils.security import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE


class InvalidTokenError(Exception):
    """Raised when a token cannot be parsed, is malformed or has the wrong type."""


class ExpiredTokenError(Exception):
    """Raised when a token has expired."""


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    secret: str


def _parse_token_payload(token: str, key: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise ExpiredTokenError from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidTokenError from exc


def _require_str_claim(payload: Dict[str, Any], claim: str) -> str:
    value = payload.get(claim)
    if not isinstance(value, str) or not value:
        raise InvalidTokenError(f"missing {claim} claim")
    return value


def validate_access_token(token: str) -> str:
    """Return the user id asserted by a signed, unexpired access token."""
    if not token or not isinstance(token, str):
        raise InvalidTokenError()
    payload = _parse_token_payload(token, settings.jwt_access_secret)
    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise InvalidTokenError("not an access token")
    return _require_str_claim(payload, "userId")


def validate_refresh_token(token: str) -> RefreshClaims:
    """Check the refresh envelope signature before any store lookup."""
    if not token or not isinstance(token, str):
        raise InvalidTokenError()
    payload = _parse_token_payload(token, settings.jwt_refresh_secret)
    if payload.get("type") != REFRESH_TOKEN_TYPE:
        raise InvalidTokenError("not a refresh token")
    return RefreshClaims(
        user_id=_require_str_claim(payload, "userId"),
        secret=_require_str_claim(payload, "secret"),
    )
