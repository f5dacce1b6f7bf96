"""Refresh token issuance, rotation and reuse detection.

Tokens descending from one login share a ``family_id`` and form a chain
through ``rotated_to``. Presenting a secret whose record already points at a
successor means the secret was replayed, so the whole family is revoked.

Two rotations racing on the same record are settled by the store's
conditional claim: the request that loses the claim is handled exactly like
a replay.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, NoReturn

from ..domain.ports.token import (
    DuplicateSecretHashError,
    RefreshTokenData,
    RefreshTokenStore,
    TokenStoreError,
)
from ..domain.tokens import (
    InvalidReason,
    InvalidToken,
    IssuedToken,
    ReuseDetected,
    RotationResult,
    TokenFamily,
    ValidationResult,
)
from ..errors import InternalError
from ..utils.security import generate_refresh_secret, hash_refresh_secret

DEFAULT_REFRESH_TTL = timedelta(days=30)

logger = logging.getLogger("crm.tokens")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class RefreshTokenService:
    """Sole writer of refresh token records; holds no state besides its store."""

    def __init__(
        self,
        store: RefreshTokenStore,
        *,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._refresh_ttl = refresh_ttl
        self._clock = clock

    async def issue(
        self,
        user_id: str,
        family_id: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedToken:
        """Issue a token; omitting ``family_id`` starts a new family (a fresh login)."""
        try:
            issued = await self._create(
                user_id, family_id or _new_id(), _new_id(), ip, user_agent
            )
            await self._store.commit()
        except TokenStoreError as exc:
            await self._fail(exc, "issue")
        return issued

    async def rotate(
        self,
        old_secret: str,
        user_id: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> RotationResult:
        try:
            current = await self._lookup(old_secret, user_id)
            if isinstance(current, (InvalidToken, ReuseDetected)):
                return current

            successor_id = _new_id()
            if not await self._store.claim_rotation(current.id, successor_id):
                return await self._lost_claim(old_secret, user_id, current)

            issued = await self._create(
                user_id, current.family_id, successor_id, ip, user_agent
            )
            await self._store.commit()
        except TokenStoreError as exc:
            await self._fail(exc, "rotate")

        logger.debug(
            "Refresh token rotated family_id=%s old_id=%s new_id=%s",
            current.family_id,
            current.id,
            issued.record.id,
        )
        return issued

    async def validate(self, secret: str, user_id: str) -> ValidationResult:
        try:
            return await self._lookup(secret, user_id)
        except TokenStoreError as exc:
            await self._fail(exc, "validate")

    async def revoke(self, record_id: str) -> int:
        return await self._revoke_where("revoke", self._store.revoke, record_id)

    async def revoke_family(self, family_id: str) -> int:
        return await self._revoke_where(
            "revoke_family", self._store.revoke_family, family_id
        )

    async def revoke_all_for_user(self, user_id: str) -> int:
        return await self._revoke_where("revoke_all_for_user", self._store.revoke_user, user_id)

    async def revoke_secret(self, secret: str, user_id: str) -> bool:
        """End the session behind ``secret`` if ``user_id`` owns it (logout).

        Revokes the whole family, successors included.
        """
        if not secret:
            return False
        try:
            record = await self._store.get_by_hash(hash_refresh_secret(secret), user_id)
            if record is None:
                return False
            await self._store.revoke_family(record.family_id, self._clock())
            await self._store.commit()
        except TokenStoreError as exc:
            await self._fail(exc, "revoke_secret")
        return True

    async def cleanup_expired(self) -> int:
        try:
            removed = await self._store.delete_expired(self._clock())
            await self._store.commit()
        except TokenStoreError as exc:
            await self._fail(exc, "cleanup_expired")
        logger.info("Expired refresh tokens removed count=%d", removed)
        return removed

    async def get_family(self, family_id: str) -> TokenFamily | None:
        try:
            tokens = await self._store.list_family(family_id)
        except TokenStoreError as exc:
            await self._fail(exc, "get_family")
        if not tokens:
            return None
        return TokenFamily(family_id=family_id, user_id=tokens[0].user_id, tokens=tokens)

    async def _create(
        self,
        user_id: str,
        family_id: str,
        record_id: str,
        ip: str | None,
        user_agent: str | None,
    ) -> IssuedToken:
        secret = generate_refresh_secret()
        try:
            record = await self._store.create(
                record_id=record_id,
                family_id=family_id,
                user_id=user_id,
                secret_hash=hash_refresh_secret(secret),
                expires_at=self._clock() + self._refresh_ttl,
                ip=ip,
                user_agent=user_agent,
            )
        except DuplicateSecretHashError:
            logger.error(
                "Refresh secret hash collision user_id=%s family_id=%s", user_id, family_id
            )
            raise
        return IssuedToken(secret=secret, record=record)

    async def _lookup(
        self, secret: str, user_id: str
    ) -> RefreshTokenData | InvalidToken | ReuseDetected:
        if not secret or not user_id:
            return InvalidToken(InvalidReason.MALFORMED)

        record = await self._store.get_by_hash(hash_refresh_secret(secret), user_id)
        if record is None:
            return InvalidToken(InvalidReason.NOT_FOUND)
        if record.expires_at <= self._clock():
            return InvalidToken(InvalidReason.EXPIRED)
        if record.rotated_to is not None:
            return await self._reuse_detected(record)
        if record.revoked_at is not None:
            return InvalidToken(InvalidReason.REVOKED)
        return record

    async def _lost_claim(
        self, secret: str, user_id: str, stale: RefreshTokenData
    ) -> InvalidToken | ReuseDetected:
        # Someone else changed the record between our read and our claim.
        current = await self._store.get_by_hash(hash_refresh_secret(secret), user_id)
        if current is not None and current.rotated_to is not None:
            return await self._reuse_detected(current)
        await self._store.rollback()
        logger.info(
            "Refresh token revoked during rotation family_id=%s record_id=%s",
            stale.family_id,
            stale.id,
        )
        return InvalidToken(InvalidReason.REVOKED)

    async def _reuse_detected(self, record: RefreshTokenData) -> ReuseDetected:
        revoked = await self._store.revoke_family(record.family_id, self._clock())
        await self._store.commit()
        logger.warning(
            "Refresh token reuse detected user_id=%s family_id=%s record_id=%s revoked=%d",
            record.user_id,
            record.family_id,
            record.id,
            revoked,
        )
        return ReuseDetected(
            family_id=record.family_id, user_id=record.user_id, revoked_count=revoked
        )

    async def _revoke_where(
        self, operation: str, revoke: Callable, key: str
    ) -> int:
        try:
            count = await revoke(key, self._clock())
            await self._store.commit()
        except TokenStoreError as exc:
            await self._fail(exc, operation)
        logger.info("Refresh tokens revoked operation=%s key=%s count=%d", operation, key, count)
        return count

    async def _fail(self, exc: TokenStoreError, operation: str) -> NoReturn:
        logger.error("Refresh token store failure operation=%s error=%s", operation, exc)
        try:
            await self._store.rollback()
        except TokenStoreError:
            logger.exception("Refresh token store rollback failed operation=%s", operation)
        raise InternalError() from exc
