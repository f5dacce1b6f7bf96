from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from crm_auth.crud import refresh_token as refresh_token_crud
from crm_auth.crud import user as user_crud
from crm_auth.crud.refresh_token import RefreshTokenRepository
from crm_auth.crud.user import UserRepository
from crm_auth.domain.ports.token import DuplicateSecretHashError, TokenStoreError

NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


class DummySession:
    def __init__(self) -> None:
        self.added = None
        self.flushed = False
        self.committed = False
        self.rolled_back = False

    def add(self, instance) -> None:  # type: ignore[no-untyped-def]
        self.added = instance

    async def flush(self) -> None:
        self.flushed = True

    async def commit(self) -> None:
        self.committed = True

    async def rollback(self) -> None:
        self.rolled_back = True


@pytest.mark.anyio
async def test_user_repository_get_by_email_delegates(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    session = DummySession()
    sentinel = object()

    async def fake_get_user_by_email(session_arg, email):  # type: ignore[no-untyped-def]
        assert session_arg is session
        assert email == "user@example.com"
        return sentinel

    monkeypatch.setattr(user_crud, "get_user_by_email", fake_get_user_by_email)

    repo = UserRepository(session)

    result = await repo.get_by_email("user@example.com")

    assert result is sentinel


@pytest.mark.anyio
async def test_user_repository_create_normalizes_and_flushes() -> None:
    session = DummySession()
    repo = UserRepository(session)

    user = await repo.create(" User@Example.com ", "hash")

    assert session.added is user
    assert session.flushed is True
    assert user.email == "user@example.com"
    assert user.password_hash == "hash"


@pytest.mark.anyio
async def test_refresh_token_repository_delegates(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    session = DummySession()
    create_sentinel = object()
    get_sentinel = object()

    async def fake_create(session_arg, **kwargs):  # type: ignore[no-untyped-def]
        assert session_arg is session
        assert kwargs["record_id"] == "rec-1"
        assert kwargs["family_id"] == "fam-1"
        assert kwargs["user_id"] == "user-1"
        assert kwargs["secret_hash"] == "secret-hash"
        assert kwargs["expires_at"] == NOW
        return create_sentinel

    async def fake_get(session_arg, secret_hash, user_id):  # type: ignore[no-untyped-def]
        assert session_arg is session
        assert (secret_hash, user_id) == ("secret-hash", "user-1")
        return get_sentinel

    async def fake_claim(session_arg, record_id, successor_id):  # type: ignore[no-untyped-def]
        assert (record_id, successor_id) == ("rec-1", "rec-2")
        return True

    async def fake_revoke_family(session_arg, family_id, now):  # type: ignore[no-untyped-def]
        assert (family_id, now) == ("fam-1", NOW)
        return 3

    async def fake_delete_expired(session_arg, now):  # type: ignore[no-untyped-def]
        assert now == NOW
        return 7

    monkeypatch.setattr(refresh_token_crud, "create_refresh_token", fake_create)
    monkeypatch.setattr(refresh_token_crud, "get_refresh_token_by_hash", fake_get)
    monkeypatch.setattr(refresh_token_crud, "claim_refresh_token_rotation", fake_claim)
    monkeypatch.setattr(
        refresh_token_crud, "revoke_refresh_token_family", fake_revoke_family
    )
    monkeypatch.setattr(
        refresh_token_crud, "delete_expired_refresh_tokens", fake_delete_expired
    )

    repo = RefreshTokenRepository(session)

    assert (
        await repo.create(
            record_id="rec-1",
            family_id="fam-1",
            user_id="user-1",
            secret_hash="secret-hash",
            expires_at=NOW,
        )
        is create_sentinel
    )
    assert await repo.get_by_hash("secret-hash", "user-1") is get_sentinel
    assert await repo.claim_rotation("rec-1", "rec-2") is True
    assert await repo.revoke_family("fam-1", NOW) == 3
    assert await repo.delete_expired(NOW) == 7

    await repo.commit()
    await repo.rollback()

    assert session.committed is True
    assert session.rolled_back is True


@pytest.mark.anyio
async def test_refresh_token_repository_translates_database_errors(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    session = DummySession()

    async def duplicate(*_args, **_kwargs):  # type: ignore[no-untyped-def]
        raise IntegrityError(
            "INSERT", {}, Exception("UNIQUE constraint failed: refresh_tokens.secret_hash")
        )

    async def unavailable(*_args, **_kwargs):  # type: ignore[no-untyped-def]
        raise OperationalError("UPDATE", {}, Exception("connection refused"))

    monkeypatch.setattr(refresh_token_crud, "create_refresh_token", duplicate)
    monkeypatch.setattr(refresh_token_crud, "revoke_refresh_token", unavailable)

    repo = RefreshTokenRepository(session)

    with pytest.raises(DuplicateSecretHashError):
        await repo.create(
            record_id="rec-1",
            family_id="fam-1",
            user_id="user-1",
            secret_hash="secret-hash",
            expires_at=NOW,
        )
    with pytest.raises(TokenStoreError) as exc_info:
        await repo.revoke("rec-1", NOW)
    assert not isinstance(exc_info.value, DuplicateSecretHashError)
