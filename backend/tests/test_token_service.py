import asyncio
from datetime import timedelta

import pytest

from crm_auth.domain.ports.token import DuplicateSecretHashError, TokenStoreError
from crm_auth.domain.tokens import InvalidReason, InvalidToken, IssuedToken, ReuseDetected
from crm_auth.errors import InternalError
from crm_auth.services import token_service as token_service_module
from crm_auth.services.token_service import RefreshTokenService
from crm_auth.utils.security import hash_refresh_secret

from token_helpers import FrozenClock, InMemoryTokenStore

USER_ID = "user-1"


def make_service(
    store: InMemoryTokenStore | None = None, clock: FrozenClock | None = None
) -> tuple[RefreshTokenService, InMemoryTokenStore, FrozenClock]:
    store = store or InMemoryTokenStore()
    clock = clock or FrozenClock()
    return RefreshTokenService(store, refresh_ttl=timedelta(days=30), clock=clock), store, clock


@pytest.mark.anyio
async def test_issue_stores_only_the_hash_and_starts_a_family() -> None:
    service, store, clock = make_service()

    issued = await service.issue(USER_ID, ip="10.0.0.1", user_agent="pytest")

    record = store.records[issued.record.id]
    assert record.secret_hash == hash_refresh_secret(issued.secret)
    assert issued.secret not in {r.secret_hash for r in store.records.values()}
    assert len(issued.secret) == 64
    assert record.expires_at == clock.now + timedelta(days=30)
    assert record.family_id
    assert record.ip == "10.0.0.1"
    assert record.user_agent == "pytest"
    assert store.commits == 1


@pytest.mark.anyio
async def test_issue_without_family_creates_distinct_families() -> None:
    service, _, _ = make_service()

    first = await service.issue(USER_ID)
    second = await service.issue(USER_ID)

    assert first.record.family_id != second.record.family_id
    assert first.secret != second.secret


@pytest.mark.anyio
async def test_issue_with_family_appends_to_it() -> None:
    service, _, _ = make_service()
    first = await service.issue(USER_ID)

    second = await service.issue(USER_ID, family_id=first.record.family_id)

    assert second.record.family_id == first.record.family_id


@pytest.mark.anyio
async def test_validate_after_issue_returns_unrotated_record() -> None:
    service, _, _ = make_service()
    issued = await service.issue(USER_ID)

    result = await service.validate(issued.secret, USER_ID)

    assert not isinstance(result, (InvalidToken, ReuseDetected))
    assert result.id == issued.record.id
    assert result.rotated_to is None


@pytest.mark.anyio
async def test_validate_is_scoped_to_user() -> None:
    service, _, _ = make_service()
    issued = await service.issue(USER_ID)

    result = await service.validate(issued.secret, "someone-else")

    assert result == InvalidToken(InvalidReason.NOT_FOUND)


@pytest.mark.anyio
async def test_validate_rejects_empty_input_without_store_access() -> None:
    service, store, _ = make_service()

    assert await service.validate("", USER_ID) == InvalidToken(InvalidReason.MALFORMED)
    assert await service.rotate("secret", "") == InvalidToken(InvalidReason.MALFORMED)
    assert store.calls == []


@pytest.mark.anyio
async def test_rotate_links_old_record_to_successor() -> None:
    service, store, _ = make_service()
    issued = await service.issue(USER_ID)

    rotated = await service.rotate(issued.secret, USER_ID, ip="10.0.0.2")

    assert isinstance(rotated, IssuedToken)
    old = store.records[issued.record.id]
    assert old.rotated_to == rotated.record.id
    assert old.revoked_at is None
    assert rotated.record.family_id == issued.record.family_id
    assert rotated.record.ip == "10.0.0.2"
    assert rotated.secret != issued.secret


@pytest.mark.anyio
async def test_rotation_chain_is_linear_and_only_tail_is_usable() -> None:
    service, store, _ = make_service()
    issued = await service.issue(USER_ID)
    current = issued

    for _ in range(4):
        current = await service.rotate(current.secret, USER_ID)
        assert isinstance(current, IssuedToken)

    family = store.family(issued.record.family_id)
    assert len(family) == 5

    successors = {r.id: r.rotated_to for r in family}
    tail = [r for r in family if r.rotated_to is None]
    assert len(tail) == 1
    assert tail[0].id == current.record.id
    assert len(set(v for v in successors.values() if v)) == 4

    node = issued.record.id
    visited = [node]
    while successors[node] is not None:
        node = successors[node]
        visited.append(node)
    assert len(visited) == 5
    assert visited[-1] == current.record.id


@pytest.mark.anyio
async def test_replaying_rotated_secret_revokes_family() -> None:
    service, store, _ = make_service()
    t0 = await service.issue(USER_ID)
    t1 = await service.rotate(t0.secret, USER_ID)
    assert isinstance(t1, IssuedToken)

    replay = await service.rotate(t0.secret, USER_ID)

    assert isinstance(replay, ReuseDetected)
    assert replay.family_id == t0.record.family_id
    assert replay.user_id == USER_ID
    assert replay.revoked_count == 2
    assert all(r.revoked_at is not None for r in store.family(t0.record.family_id))

    # the legitimate holder of t1 is locked out as well
    follow_up = await service.rotate(t1.secret, USER_ID)
    assert follow_up == InvalidToken(InvalidReason.REVOKED)


@pytest.mark.anyio
async def test_replay_leaves_other_families_untouched() -> None:
    service, store, _ = make_service()
    stolen = await service.issue(USER_ID)
    other_device = await service.issue(USER_ID)
    await service.rotate(stolen.secret, USER_ID)

    await service.rotate(stolen.secret, USER_ID)

    assert store.records[other_device.record.id].revoked_at is None
    result = await service.validate(other_device.secret, USER_ID)
    assert not isinstance(result, (InvalidToken, ReuseDetected))


@pytest.mark.anyio
async def test_validate_of_rotated_secret_is_reuse() -> None:
    service, store, _ = make_service()
    t0 = await service.issue(USER_ID)
    await service.rotate(t0.secret, USER_ID)

    result = await service.validate(t0.secret, USER_ID)

    assert isinstance(result, ReuseDetected)
    assert all(r.revoked_at is not None for r in store.family(t0.record.family_id))


@pytest.mark.anyio
async def test_expired_record_never_validates() -> None:
    service, store, clock = make_service()
    issued = await service.issue(USER_ID)

    clock.advance(timedelta(days=30))

    assert await service.validate(issued.secret, USER_ID) == InvalidToken(InvalidReason.EXPIRED)
    assert await service.rotate(issued.secret, USER_ID) == InvalidToken(InvalidReason.EXPIRED)
    assert store.records[issued.record.id].rotated_to is None


@pytest.mark.anyio
async def test_revoke_family_invalidates_every_member() -> None:
    service, _, _ = make_service()
    t0 = await service.issue(USER_ID)
    t1 = await service.rotate(t0.secret, USER_ID)
    t2 = await service.rotate(t1.secret, USER_ID)

    revoked = await service.revoke_family(t0.record.family_id)

    assert revoked == 3
    assert isinstance(await service.validate(t0.secret, USER_ID), ReuseDetected)
    assert isinstance(await service.validate(t1.secret, USER_ID), ReuseDetected)
    assert await service.validate(t2.secret, USER_ID) == InvalidToken(InvalidReason.REVOKED)


@pytest.mark.anyio
async def test_revocations_are_idempotent() -> None:
    service, store, clock = make_service()
    issued = await service.issue(USER_ID)
    await service.issue(USER_ID)

    assert await service.revoke(issued.record.id) == 1
    first_revoked_at = store.records[issued.record.id].revoked_at
    clock.advance(timedelta(minutes=5))

    assert await service.revoke(issued.record.id) == 0
    assert await service.revoke_family(issued.record.family_id) == 0
    assert store.records[issued.record.id].revoked_at == first_revoked_at
    assert await service.revoke_all_for_user(USER_ID) == 1
    assert await service.revoke_all_for_user(USER_ID) == 0


@pytest.mark.anyio
async def test_revoke_secret_ends_the_session_family() -> None:
    service, store, _ = make_service()
    t0 = await service.issue(USER_ID)
    t1 = await service.rotate(t0.secret, USER_ID)

    assert await service.revoke_secret(t1.secret, USER_ID) is True
    assert all(r.revoked_at is not None for r in store.family(t0.record.family_id))
    assert await service.revoke_secret(t1.secret, "someone-else") is False
    assert await service.revoke_secret("", USER_ID) is False


@pytest.mark.anyio
async def test_cleanup_removes_exactly_the_expired_records() -> None:
    service, store, clock = make_service()
    old = await service.issue(USER_ID)
    clock.advance(timedelta(days=10))
    fresh = await service.issue(USER_ID)
    clock.advance(timedelta(days=25))

    assert await service.cleanup_expired() == 1
    assert set(store.records) == {fresh.record.id}
    assert old.record.id not in store.records
    assert await service.cleanup_expired() == 0


@pytest.mark.anyio
async def test_get_family_lists_members() -> None:
    service, _, _ = make_service()
    t0 = await service.issue(USER_ID)
    t1 = await service.rotate(t0.secret, USER_ID)

    family = await service.get_family(t0.record.family_id)

    assert family is not None
    assert family.user_id == USER_ID
    assert {r.id for r in family.tokens} == {t0.record.id, t1.record.id}
    assert await service.get_family("missing") is None


@pytest.mark.anyio
async def test_concurrent_rotation_loser_is_treated_as_reuse() -> None:
    service, store, _ = make_service()
    issued = await service.issue(USER_ID)

    results = await asyncio.gather(
        service.rotate(issued.secret, USER_ID),
        service.rotate(issued.secret, USER_ID),
    )

    winners = [r for r in results if isinstance(r, IssuedToken)]
    losers = [r for r in results if isinstance(r, ReuseDetected)]
    assert len(winners) == 1
    assert len(losers) == 1

    family = store.family(issued.record.family_id)
    assert len(family) == 2
    assert all(r.revoked_at is not None for r in family)
    assert store.records[issued.record.id].rotated_to == winners[0].record.id


@pytest.mark.anyio
async def test_losing_claim_on_revoked_record_is_invalid() -> None:
    service, store, clock = make_service()
    issued = await service.issue(USER_ID)
    original_get = store.get_by_hash

    async def get_then_revoke(secret_hash, user_id):  # type: ignore[no-untyped-def]
        record = await original_get(secret_hash, user_id)
        if record is not None and record.revoked_at is None:
            # logout lands between lookup and claim
            snapshot = type(record)(**vars(record))
            record.revoked_at = clock()
            return snapshot
        return record

    store.get_by_hash = get_then_revoke  # type: ignore[method-assign]

    result = await service.rotate(issued.secret, USER_ID)

    assert result == InvalidToken(InvalidReason.REVOKED)
    assert len(store.records) == 1
    assert store.rollbacks == 1


@pytest.mark.anyio
async def test_store_failure_surfaces_as_internal_error() -> None:
    service, store, _ = make_service()
    store.fail_with = TokenStoreError("connection refused")

    with pytest.raises(InternalError):
        await service.issue(USER_ID)
    with pytest.raises(InternalError):
        await service.rotate("secret", USER_ID)
    with pytest.raises(InternalError):
        await service.cleanup_expired()

    assert store.rollbacks == 3


@pytest.mark.anyio
async def test_secret_hash_collision_is_internal_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service, store, _ = make_service()
    monkeypatch.setattr(token_service_module, "generate_refresh_secret", lambda: "fixed")
    await service.issue(USER_ID)

    with pytest.raises(InternalError) as exc_info:
        await service.issue(USER_ID)

    assert isinstance(exc_info.value.__cause__, DuplicateSecretHashError)
    assert len(store.records) == 1
