import asyncio
import threading
from datetime import timedelta

import pytest

from clinauth.storage.base import REASON_LOGOUT, REASON_REVOKED, REASON_ROTATED
from clinauth.storage.errors import ConstraintViolation
from clinauth.storage.memory import MemoryCredentialStore
from clinauth.storage.models import Session

TTL = 3600


def _session(clock, user_id="u1"):
    return Session.new(user_id, ip_address="10.0.0.1", now=clock())


async def test_create_then_get(sessions, clock):
    session = _session(clock)
    await sessions.create(session, TTL)

    loaded = await sessions.get(session.id)

    assert loaded.id == session.id
    assert loaded.user_id == "u1"
    assert loaded is not session


async def test_missing_and_expired_sessions_read_as_none(sessions, clock):
    session = _session(clock)
    await sessions.create(session, TTL)

    assert await sessions.get("nope") is None
    clock.advance(seconds=TTL)
    assert await sessions.get(session.id) is None


async def test_update_rewrites_ttl_only_for_live_sessions(sessions, clock):
    session = _session(clock)
    await sessions.create(session, TTL)

    clock.advance(seconds=TTL - 10)
    session.last_activity = clock()
    assert await sessions.update(session, TTL)
    clock.advance(seconds=60)
    assert (await sessions.get(session.id)).last_activity == session.last_activity

    assert not await sessions.update(_session(clock), TTL)


async def test_invalidate_leaves_reason_and_is_idempotent(sessions, clock):
    session = _session(clock)
    await sessions.create(session, TTL)

    assert await sessions.invalidate(session.id)
    assert not await sessions.invalidate(session.id)
    assert await sessions.get(session.id) is None
    assert await sessions.invalidation_reason(session.id) == REASON_LOGOUT


async def test_claim_has_exactly_one_winner(sessions, clock):
    session = _session(clock)
    await sessions.create(session, TTL)

    results = await asyncio.gather(*(sessions.claim(session.id) for _ in range(5)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert await sessions.invalidation_reason(session.id) == REASON_ROTATED


async def test_claim_skips_inactive_sessions(sessions, clock):
    session = _session(clock)
    session.is_active = False
    await sessions.create(session, TTL)

    assert await sessions.claim(session.id) is None


async def test_session_ids_are_never_reused(sessions, clock):
    session = _session(clock)
    await sessions.create(session, TTL)
    await sessions.invalidate(session.id)

    with pytest.raises(ConstraintViolation):
        await sessions.create(session, TTL)


async def test_invalidate_all_for_user(sessions, clock):
    mine = [_session(clock) for _ in range(3)]
    other = _session(clock, user_id="u2")
    for s in mine + [other]:
        await sessions.create(s, TTL)

    assert await sessions.invalidate_all_for_user("u1") == 3

    assert await sessions.list_for_user("u1") == []
    assert [s.id for s in await sessions.list_for_user("u2")] == [other.id]
    assert await sessions.invalidation_reason(mine[0].id) == REASON_REVOKED


async def test_tombstones_expire(sessions, clock):
    session = _session(clock)
    await sessions.create(session, TTL)
    await sessions.invalidate(session.id)

    clock.advance(seconds=sessions.tombstone_ttl_seconds + 1)

    assert await sessions.invalidation_reason(session.id) is None


async def test_expired_tombstones_are_swept_on_later_invalidations(sessions, clock):
    first = _session(clock)
    await sessions.create(first, TTL)
    await sessions.invalidate(first.id)
    clock.advance(seconds=sessions.tombstone_ttl_seconds + 1)

    second = _session(clock)
    await sessions.create(second, TTL)
    await sessions.invalidate(second.id)

    assert first.id not in sessions._tombstones
    assert second.id in sessions._tombstones


def test_credential_store_email_lookup_is_case_insensitive():
    store = MemoryCredentialStore()
    user = store.create_user("Alice@Example.com", "hash", role="patient")

    assert store.get_user_by_email("alice@example.com").id == user.id
    with pytest.raises(ConstraintViolation):
        store.create_user("ALICE@example.com", "hash", role="patient")


def test_credential_store_returns_copies():
    store = MemoryCredentialStore()
    user = store.create_user("bob@example.com", "hash", role="patient")

    user.role = "admin"

    assert store.get_user(user.id).role == "patient"


def test_credential_store_lock_state_roundtrip(clock):
    store = MemoryCredentialStore()
    user = store.create_user("bob@example.com", "hash", role="patient")

    store.update_lock_state(user.id, 5, clock(), last_login_at=None)

    saved = store.get_user(user.id)
    assert saved.failed_login_attempts == 5
    assert saved.locked_until == clock()


def test_credential_store_counts_failures_under_one_lock(clock):
    store = MemoryCredentialStore()
    user = store.create_user("bob@example.com", "hash", role="patient")
    deadline = clock() + timedelta(minutes=30)

    def _fail():
        store.record_failed_login(user.id, threshold=5, lock_until=deadline, now=clock())

    threads = [threading.Thread(target=_fail) for _ in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    saved = store.get_user(user.id)
    assert saved.failed_login_attempts == 50
    assert saved.locked_until == deadline


def test_credential_store_failure_after_elapsed_lock_restarts_count(clock):
    store = MemoryCredentialStore()
    user = store.create_user("bob@example.com", "hash", role="patient")
    store.update_lock_state(user.id, 5, clock())

    clock.advance(minutes=1)
    counted = store.record_failed_login(
        user.id, threshold=5, lock_until=clock() + timedelta(minutes=30), now=clock()
    )

    assert counted.failed_login_attempts == 1
    assert counted.locked_until is None
    assert store.record_failed_login(
        "missing", threshold=5, lock_until=clock(), now=clock()
    ) is None
