"""Outcomes of refresh token operations.

Rotation and validation return one of these values instead of raising, so a
caller has to tell a replayed token apart from a merely unusable one.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union

from .ports.token import RefreshTokenData
from .ports.user import UserData


class InvalidReason(str, Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class IssuedToken:
    secret: str
    record: RefreshTokenData


@dataclass(frozen=True)
class InvalidToken:
    reason: InvalidReason = InvalidReason.NOT_FOUND


@dataclass(frozen=True)
class ReuseDetected:
    family_id: str
    user_id: str
    revoked_count: int = 0


@dataclass(frozen=True)
class TokenFamily:
    family_id: str
    user_id: str
    tokens: list[RefreshTokenData]


RotationResult = Union[IssuedToken, InvalidToken, ReuseDetected]
ValidationResult = Union[RefreshTokenData, InvalidToken, ReuseDetected]


@dataclass(frozen=True)
class SessionTokens:
    """Credentials handed to a client after login or rotation."""

    user: UserData
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
