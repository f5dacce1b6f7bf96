from __future__ import annotations

from datetime import datetime
from typing import Protocol


class TokenStoreError(Exception):
    """The refresh token store could not complete an operation."""


class DuplicateSecretHashError(TokenStoreError):
    """Two records ended up with the same secret hash."""


class RefreshTokenData(Protocol):
    id: str
    family_id: str
    user_id: str
    secret_hash: str
    expires_at: datetime
    rotated_to: str | None
    revoked_at: datetime | None
    ip: str | None
    user_agent: str | None
    created_at: datetime
    updated_at: datetime


class RefreshTokenStore(Protocol):
    async def create(
        self,
        *,
        record_id: str,
        family_id: str,
        user_id: str,
        secret_hash: str,
        expires_at: datetime,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshTokenData:
        ...

    async def get_by_hash(
        self, secret_hash: str, user_id: str
    ) -> RefreshTokenData | None:
        """Record with this hash owned by ``user_id``, whatever its state."""
        ...

    async def claim_rotation(self, record_id: str, successor_id: str) -> bool:
        """Set ``rotated_to`` only if it is still null and the record is not revoked."""
        ...

    async def revoke(self, record_id: str, now: datetime) -> int:
        ...

    async def revoke_family(self, family_id: str, now: datetime) -> int:
        ...

    async def revoke_user(self, user_id: str, now: datetime) -> int:
        ...

    async def delete_expired(self, now: datetime) -> int:
        ...

    async def list_family(self, family_id: str) -> list[RefreshTokenData]:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...

