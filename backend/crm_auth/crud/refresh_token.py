from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.ports.token import (
    DuplicateSecretHashError,
    RefreshTokenData,
    RefreshTokenStore,
    TokenStoreError,
)
from ..models.refresh_token import RefreshToken

T = TypeVar("T")


async def create_refresh_token(
    session: AsyncSession,
    *,
    record_id: str,
    family_id: str,
    user_id: str,
    secret_hash: str,
    expires_at: datetime,
    ip: str | None = None,
    user_agent: str | None = None,
) -> RefreshToken:
    refresh_token = RefreshToken(
        id=record_id,
        family_id=family_id,
        user_id=user_id,
        secret_hash=secret_hash,
        expires_at=expires_at,
        ip=ip,
        user_agent=user_agent,
    )
    session.add(refresh_token)
    await session.flush()
    return refresh_token


async def get_refresh_token_by_hash(
    session: AsyncSession, secret_hash: str, user_id: str
) -> RefreshToken | None:
    stmt = (
        select(RefreshToken)
        .where(RefreshToken.secret_hash == secret_hash, RefreshToken.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def claim_refresh_token_rotation(
    session: AsyncSession, record_id: str, successor_id: str
) -> bool:
    stmt = (
        update(RefreshToken)
        .where(
            RefreshToken.id == record_id,
            RefreshToken.rotated_to.is_(None),
            RefreshToken.revoked_at.is_(None),
        )
        .values(rotated_to=successor_id)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def _revoke_matching(session: AsyncSession, criterion, now: datetime) -> int:
    stmt = (
        update(RefreshToken)
        .where(criterion, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def revoke_refresh_token(session: AsyncSession, record_id: str, now: datetime) -> int:
    return await _revoke_matching(session, RefreshToken.id == record_id, now)


async def revoke_refresh_token_family(
    session: AsyncSession, family_id: str, now: datetime
) -> int:
    return await _revoke_matching(session, RefreshToken.family_id == family_id, now)


async def revoke_user_refresh_tokens(
    session: AsyncSession, user_id: str, now: datetime
) -> int:
    return await _revoke_matching(session, RefreshToken.user_id == user_id, now)


async def delete_expired_refresh_tokens(session: AsyncSession, now: datetime) -> int:
    stmt = (
        delete(RefreshToken)
        .where(RefreshToken.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def list_refresh_token_family(
    session: AsyncSession, family_id: str
) -> list[RefreshToken]:
    stmt = (
        select(RefreshToken)
        .where(RefreshToken.family_id == family_id)
        .order_by(RefreshToken.created_at.desc())
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


class RefreshTokenRepository(RefreshTokenStore):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except IntegrityError as exc:
            if "secret_hash" in str(exc.orig).lower():
                raise DuplicateSecretHashError(str(exc.orig)) from exc
            raise TokenStoreError(str(exc)) from exc
        except SQLAlchemyError as exc:
            raise TokenStoreError(str(exc)) from exc

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
        return await self._call(
            lambda: create_refresh_token(
                self._session,
                record_id=record_id,
                family_id=family_id,
                user_id=user_id,
                secret_hash=secret_hash,
                expires_at=expires_at,
                ip=ip,
                user_agent=user_agent,
            )
        )

    async def get_by_hash(
        self, secret_hash: str, user_id: str
    ) -> RefreshTokenData | None:
        return await self._call(
            lambda: get_refresh_token_by_hash(self._session, secret_hash, user_id)
        )

    async def claim_rotation(self, record_id: str, successor_id: str) -> bool:
        return await self._call(
            lambda: claim_refresh_token_rotation(self._session, record_id, successor_id)
        )

    async def revoke(self, record_id: str, now: datetime) -> int:
        return await self._call(lambda: revoke_refresh_token(self._session, record_id, now))

    async def revoke_family(self, family_id: str, now: datetime) -> int:
        return await self._call(
            lambda: revoke_refresh_token_family(self._session, family_id, now)
        )

    async def revoke_user(self, user_id: str, now: datetime) -> int:
        return await self._call(
            lambda: revoke_user_refresh_tokens(self._session, user_id, now)
        )

    async def delete_expired(self, now: datetime) -> int:
        return await self._call(lambda: delete_expired_refresh_tokens(self._session, now))

    async def list_family(self, family_id: str) -> list[RefreshTokenData]:
        return await self._call(
            lambda: list_refresh_token_family(self._session, family_id)
        )

    async def commit(self) -> None:
        await self._call(self._session.commit)

    async def rollback(self) -> None:
        await self._call(self._session.rollback)
