from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis

from parcelhub.logging import get_logger

logger = get_logger(__name__)


def sessions_key(user_id: str) -> str:
    return f"auth:sessions:{user_id}"


def snapshot_key(user_id: str) -> str:
    return f"auth:user:{user_id}"


def oauth_key(state: str) -> str:
    return f"auth:oauth:{state}"


def rotated_key(user_id: str, token_hash: str) -> str:
    return f"auth:rotated:{user_id}:{token_hash}"


def _ttl(seconds: int) -> int:
    # Redis rejects zero or negative expiries
    return max(1, int(seconds))


class RedisCache:
    """Session cache: per-user session-hash sets and user snapshots.

    Every multi-command operation goes through a ``MULTI/EXEC`` pipeline so a
    concurrent reader never sees a set without its TTL or a half-swapped
    rotation.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def add_session(
        self, user_id: str, token_hash: str, snapshot: Dict[str, Any], ttl_seconds: int
    ) -> None:
        ttl = _ttl(ttl_seconds)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.sadd(sessions_key(user_id), token_hash)
            pipe.expire(sessions_key(user_id), ttl)
            pipe.set(snapshot_key(user_id), json.dumps(snapshot), ex=ttl)
            await pipe.execute()

    async def rotate_session(
        self, user_id: str, old_hash: str, new_hash: str, ttl_seconds: int, grace_seconds: int
    ) -> None:
        ttl = _ttl(ttl_seconds)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.srem(sessions_key(user_id), old_hash)
            pipe.sadd(sessions_key(user_id), new_hash)
            pipe.expire(sessions_key(user_id), ttl)
            pipe.expire(snapshot_key(user_id), ttl)
            pipe.set(rotated_key(user_id, old_hash), new_hash, ex=_ttl(grace_seconds))
            await pipe.execute()

    async def rotation_successor(self, user_id: str, token_hash: str) -> Optional[str]:
        """Hash that replaced ``token_hash`` in a rotation within the grace window."""
        return await self.client.get(rotated_key(user_id, token_hash))

    async def remove_session(self, user_id: str, token_hash: str) -> int:
        return int(await self.client.srem(sessions_key(user_id), token_hash))

    async def replace_sessions(self, user_id: str, keep_hash: str, ttl_seconds: int) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(sessions_key(user_id))
            pipe.sadd(sessions_key(user_id), keep_hash)
            pipe.expire(sessions_key(user_id), _ttl(ttl_seconds))
            await pipe.execute()

    async def clear_user(self, user_id: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(sessions_key(user_id))
            pipe.delete(snapshot_key(user_id))
            await pipe.execute()

    async def session_state(
        self, user_id: str, token_hash: str
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Return (hash is a live member, cached user snapshot)."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.sismember(sessions_key(user_id), token_hash)
            pipe.get(snapshot_key(user_id))
            is_member, raw = await pipe.execute()
        snapshot = None
        if raw:
            try:
                snapshot = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                logger.warning("session_snapshot_corrupt", user_id=user_id)
        return bool(is_member), snapshot

    async def session_members(self, user_id: str) -> Set[str]:
        return set(await self.client.smembers(sessions_key(user_id)))

    async def set_snapshot(
        self, user_id: str, snapshot: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(snapshot_key(user_id), json.dumps(snapshot), ex=_ttl(ttl_seconds))

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        await self.client.set(
            oauth_key(state), json.dumps({"provider": provider}), ex=_ttl(ttl_seconds)
        )

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        """Atomically consume OAuth state so a callback cannot be replayed."""
        cached = await self.client.getdel(oauth_key(state))
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted data - already deleted
            return None
        return data.get("provider")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` used in tests and local dev.

    A single lock makes each operation atomic, matching the transaction
    guarantee of the Redis pipelines. Expiry is evaluated lazily on access.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sets: Dict[str, Set[str]] = {}
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}

    def verify_connection(self) -> None:
        return None

    def _expire_if_needed(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._sets.pop(key, None)
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def _set_ttl(self, key: str, ttl_seconds: int) -> None:
        if key in self._sets or key in self._values:
            self._expiry[key] = time.monotonic() + _ttl(ttl_seconds)

    def _delete(self, key: str) -> None:
        self._sets.pop(key, None)
        self._values.pop(key, None)
        self._expiry.pop(key, None)

    def _members(self, key: str) -> Set[str]:
        self._expire_if_needed(key)
        return self._sets.get(key, set())

    def _writable_members(self, key: str) -> Set[str]:
        self._expire_if_needed(key)
        return self._sets.setdefault(key, set())

    async def add_session(
        self, user_id: str, token_hash: str, snapshot: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._writable_members(sessions_key(user_id)).add(token_hash)
            self._set_ttl(sessions_key(user_id), ttl_seconds)
            self._values[snapshot_key(user_id)] = json.dumps(snapshot)
            self._set_ttl(snapshot_key(user_id), ttl_seconds)

    async def rotate_session(
        self, user_id: str, old_hash: str, new_hash: str, ttl_seconds: int, grace_seconds: int
    ) -> None:
        with self._lock:
            members = self._writable_members(sessions_key(user_id))
            members.discard(old_hash)
            members.add(new_hash)
            self._set_ttl(sessions_key(user_id), ttl_seconds)
            self._expire_if_needed(snapshot_key(user_id))
            self._set_ttl(snapshot_key(user_id), ttl_seconds)
            self._values[rotated_key(user_id, old_hash)] = new_hash
            self._set_ttl(rotated_key(user_id, old_hash), grace_seconds)

    async def rotation_successor(self, user_id: str, token_hash: str) -> Optional[str]:
        with self._lock:
            self._expire_if_needed(rotated_key(user_id, token_hash))
            return self._values.get(rotated_key(user_id, token_hash))

    async def remove_session(self, user_id: str, token_hash: str) -> int:
        with self._lock:
            members = self._members(sessions_key(user_id))
            if token_hash not in members:
                return 0
            members.discard(token_hash)
            return 1

    async def replace_sessions(self, user_id: str, keep_hash: str, ttl_seconds: int) -> None:
        with self._lock:
            self._sets[sessions_key(user_id)] = {keep_hash}
            self._set_ttl(sessions_key(user_id), ttl_seconds)

    async def clear_user(self, user_id: str) -> None:
        with self._lock:
            self._delete(sessions_key(user_id))
            self._delete(snapshot_key(user_id))

    async def session_state(
        self, user_id: str, token_hash: str
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        with self._lock:
            is_member = token_hash in self._members(sessions_key(user_id))
            self._expire_if_needed(snapshot_key(user_id))
            raw = self._values.get(snapshot_key(user_id))
        return is_member, json.loads(raw) if raw else None

    async def session_members(self, user_id: str) -> Set[str]:
        with self._lock:
            return set(self._members(sessions_key(user_id)))

    async def set_snapshot(
        self, user_id: str, snapshot: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._values[snapshot_key(user_id)] = json.dumps(snapshot)
            self._set_ttl(snapshot_key(user_id), ttl_seconds)

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[oauth_key(state)] = provider
            self._set_ttl(oauth_key(state), ttl_seconds)

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        with self._lock:
            self._expire_if_needed(oauth_key(state))
            provider = self._values.get(oauth_key(state))
            self._delete(oauth_key(state))
        return provider

    async def close(self) -> None:
        with self._lock:
            self._sets.clear()
            self._values.clear()
            self._expiry.clear()
