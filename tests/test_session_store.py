"""Unit tests for the dual-write session store and the memory user store."""

from datetime import timedelta

import pytest

from parcelhub.service.errors import NotFoundError, UpstreamError
from parcelhub.storage.errors import ConstraintViolation
from parcelhub.storage.memory import MemoryStore
from parcelhub.storage.models import Session, utcnow
from parcelhub.storage.redis_cache import MemoryCache, sessions_key, snapshot_key
from parcelhub.storage.session_store import SessionStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def sessions(cache, store, settings):
    return SessionStore(cache, store, settings)


@pytest.fixture
def user(store):
    return store.create_user("Ada.Okafor@example.com", "ada.okafor@example.com", given_name="Ada")


class TestMemoryStore:
    def test_duplicate_email_is_a_constraint_violation(self, store, user):
        with pytest.raises(ConstraintViolation):
            store.create_user("other@example.com", user.normalized_email)
        with pytest.raises(ConstraintViolation):
            store.create_user(user.email, "different@example.com")

    def test_lookup_by_email_or_normalized(self, store, user):
        assert store.find_by_email_or_normalized(user.email, "nope").id == user.id
        assert store.find_by_email_or_normalized("nope", user.normalized_email).id == user.id
        assert store.find_by_email_or_normalized("x@y.z", "x@y.z") is None

    def test_returned_users_are_copies(self, store, user):
        fetched = store.get_user(user.id)
        fetched.role = "admin"
        assert store.get_user(user.id).role == "customer"

    def test_link_auth_provider_once(self, store, user):
        assert store.link_auth_provider(user.id, "google", {"email": user.email})
        assert not store.link_auth_provider(user.id, "google", {"email": user.email})
        assert store.get_user(user.id).has_provider("google")

    def test_password_reset_round(self, store, user):
        store.set_password_reset(user.id, "digest", utcnow() + timedelta(minutes=10))
        assert store.find_by_reset_token("digest").id == user.id
        store.update_password(user.id, "new-hash")
        updated = store.get_user(user.id)
        assert updated.password_hash == "new-hash"
        assert updated.password_reset_token is None
        assert updated.password_changed_at is not None
        assert store.find_by_reset_token("digest") is None


class TestSessionStore:
    """Cache-first dual writes and their durable history."""

    async def test_add_writes_cache_and_history(self, sessions, cache, store, user):
        await sessions.add(user, Session.new("hash-1"))
        is_member, snapshot = await sessions.lookup(user.id, "hash-1")
        assert is_member
        assert snapshot["id"] == user.id
        assert [s.token for s in store.list_sessions(user.id)] == ["hash-1"]

    async def test_unknown_hash_is_not_live(self, sessions, user):
        await sessions.add(user, Session.new("hash-1"))
        is_member, snapshot = await sessions.lookup(user.id, "hash-x")
        assert not is_member
        assert snapshot is not None

    async def test_rotation_is_idempotent(self, sessions, cache, store, user):
        await sessions.add(user, Session.new("hash-1"))
        assert await sessions.rotate(user.id, "hash-1", "hash-2") == 1
        assert await sessions.rotate(user.id, "hash-1", "hash-2") == 0
        assert await cache.session_members(user.id) == {"hash-2"}
        history = store.list_sessions(user.id)
        assert len(history) == 1
        assert history[0].token == "hash-2"

    async def test_revoke_one_keeps_history(self, sessions, store, user):
        await sessions.add(user, Session.new("hash-1"))
        await sessions.add(user, Session.new("hash-2"))
        await sessions.revoke_one(user.id, "hash-1")
        is_member, _ = await sessions.lookup(user.id, "hash-1")
        assert not is_member
        by_token = {s.token: s for s in store.list_sessions(user.id)}
        assert by_token["hash-1"].status is False
        assert by_token["hash-1"].revoked_at is not None
        assert by_token["hash-2"].status is True

    async def test_revoke_missing_session_is_an_error(self, sessions, user):
        await sessions.add(user, Session.new("hash-1"))
        with pytest.raises(NotFoundError):
            await sessions.revoke_one(user.id, "hash-unknown")

    async def test_revoke_all_others(self, sessions, cache, store, user):
        for token in ("hash-1", "hash-2", "hash-3"):
            await sessions.add(user, Session.new(token))
        pruned = await sessions.revoke_all_others(user.id, "hash-2")
        assert pruned == 2
        assert await cache.session_members(user.id) == {"hash-2"}
        assert [s.token for s in store.list_sessions(user.id)] == ["hash-2"]

    async def test_revoke_all_drops_snapshot(self, sessions, cache, store, user):
        await sessions.add(user, Session.new("hash-1"))
        await sessions.revoke_all(user.id)
        is_member, snapshot = await sessions.lookup(user.id, "hash-1")
        assert not is_member
        assert snapshot is None
        assert store.list_sessions(user.id) == []

    async def test_history_is_newest_first(self, sessions, user):
        older = Session.new("hash-old")
        older.logged_in_at = utcnow() - timedelta(hours=2)
        await sessions.add(user, older)
        await sessions.add(user, Session.new("hash-new"))
        history = await sessions.history(user.id)
        assert [s.token for s in history] == ["hash-new", "hash-old"]

    async def test_reconcile_marks_evicted_sessions_inactive(self, sessions, cache, store, user):
        await sessions.add(user, Session.new("hash-1"))
        await sessions.add(user, Session.new("hash-2"))
        await cache.remove_session(user.id, "hash-1")
        assert await sessions.reconcile(user.id) == 1
        by_token = {s.token: s for s in store.list_sessions(user.id)}
        assert by_token["hash-1"].status is False
        assert by_token["hash-2"].status is True
        assert await sessions.reconcile(user.id) == 0

    async def test_snapshot_refresh_reflects_role_change(self, sessions, store, user):
        await sessions.add(user, Session.new("hash-1"))
        store.set_role(user.id, "agent")
        await sessions.refresh_snapshot(store.get_user(user.id))
        _, snapshot = await sessions.lookup(user.id, "hash-1")
        assert snapshot["role"] == "agent"

    async def test_rotated_hash_stays_refreshable_while_successor_lives(self, sessions, cache, user):
        await sessions.add(user, Session.new("hash-1"))
        await sessions.rotate(user.id, "hash-1", "hash-2")
        is_live, snapshot = await sessions.lookup_for_refresh(user.id, "hash-1")
        assert is_live
        assert snapshot["id"] == user.id

        # a sibling tab swaps the same old hash: cache only, durable no-op
        assert await sessions.rotate(user.id, "hash-1", "hash-3") == 0
        assert await cache.session_members(user.id) == {"hash-2", "hash-3"}

        await sessions.revoke_one(user.id, "hash-3")
        is_live, _ = await sessions.lookup_for_refresh(user.id, "hash-1")
        assert not is_live

    async def test_signed_out_hash_is_not_refreshable(self, sessions, user):
        await sessions.add(user, Session.new("hash-1"))
        await sessions.add(user, Session.new("hash-2"))
        await sessions.revoke_one(user.id, "hash-1")
        is_live, snapshot = await sessions.lookup_for_refresh(user.id, "hash-1")
        assert not is_live
        assert snapshot is not None

    async def test_durable_failure_surfaces_as_upstream_error(self, sessions, store, user, monkeypatch):
        def _boom(*args):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "push_session", _boom)
        with pytest.raises(UpstreamError):
            await sessions.add(user, Session.new("hash-1"))
        # the cache write already happened and is not rolled back
        is_member, _ = await sessions.lookup(user.id, "hash-1")
        assert is_member

    async def test_unknown_user_is_not_found(self, sessions):
        with pytest.raises(NotFoundError):
            await sessions.rotate("missing-user", "a", "b")


class TestMemoryCache:
    async def test_expired_keys_disappear(self, cache):
        await cache.add_session("u-1", "hash-1", {"id": "u-1"}, ttl_seconds=60)
        assert sessions_key("u-1") in cache._expiry
        cache._expiry[sessions_key("u-1")] = 0
        cache._expiry[snapshot_key("u-1")] = 0
        is_member, snapshot = await cache.session_state("u-1", "hash-1")
        assert not is_member
        assert snapshot is None

    async def test_oauth_state_is_single_use(self, cache):
        await cache.set_oauth_state("state-1", "google", 600)
        assert await cache.pop_oauth_state("state-1") == "google"
        assert await cache.pop_oauth_state("state-1") is None

    async def test_reads_for_unknown_users_leave_no_entries(self, cache):
        assert await cache.session_members("u-unknown") == set()
        assert await cache.session_state("u-unknown", "hash-1") == (False, None)
        assert await cache.remove_session("u-unknown", "hash-1") == 0
        assert cache._sets == {}
