from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from redis.exceptions import RedisError

from parcelhub.config import Settings
from parcelhub.logging import get_logger
from parcelhub.service.errors import NotFoundError, UpstreamError
from parcelhub.storage.errors import NotFoundInStore
from parcelhub.storage.memory import MemoryStore
from parcelhub.storage.models import Session, User
from parcelhub.storage.postgres import PostgresStore
from parcelhub.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)

UserStore = Union[MemoryStore, PostgresStore]
SessionCache = Union[RedisCache, MemoryCache]

# How long a rotated-away hash may still be refreshed by a sibling tab
ROTATION_GRACE_SECONDS = 60


class SessionStore:
    """Dual-write adapter over the session cache and the durable user store.

    The cache is the authority for request-time checks; the durable store
    keeps the per-device history. There is no distributed transaction: the
    cache is written first, and a durable failure afterwards is logged and
    surfaced without rolling the cache back.
    """

    def __init__(self, cache: SessionCache, users: UserStore, settings: Settings) -> None:
        self.cache = cache
        self.users = users
        self.ttl_seconds = int(timedelta(days=settings.refresh_token_expire).total_seconds())

    async def _cache_call(self, action: str, user_id: str, func: Callable, *args: Any) -> Any:
        try:
            return await func(*args)
        except (RedisError, OSError) as exc:
            logger.error("session_cache_failed", action=action, user_id=user_id, error=str(exc))
            raise UpstreamError(f"session cache {action} failed") from exc

    async def _durable_call(self, action: str, user_id: str, func: Callable, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except NotFoundInStore as exc:
            raise NotFoundError("User not found.") from exc
        except Exception as exc:
            logger.error(
                "session_durable_write_failed", action=action, user_id=user_id, error=str(exc)
            )
            raise UpstreamError(f"durable session {action} failed") from exc

    async def add(self, user: User, session: Session) -> None:
        await self._cache_call(
            "add", user.id, self.cache.add_session, user.id, session.token, user.to_snapshot(), self.ttl_seconds
        )
        await self._durable_call("add", user.id, self.users.push_session, user.id, session)
        logger.info("session_added", user_id=user.id, device=session.device_info.device_type)

    async def rotate(self, user_id: str, old_hash: str, new_hash: str) -> int:
        """Swap ``old_hash`` for ``new_hash``; the durable history never grows here."""
        await self._cache_call(
            "rotate",
            user_id,
            self.cache.rotate_session,
            user_id,
            old_hash,
            new_hash,
            self.ttl_seconds,
            ROTATION_GRACE_SECONDS,
        )
        matched = await self._durable_call(
            "rotate", user_id, self.users.update_session_token, user_id, old_hash, new_hash
        )
        if not matched:
            # A concurrent refresh already moved this element; the cache swap still stands
            logger.info("session_rotation_no_durable_match", user_id=user_id)
        return matched

    async def revoke_one(self, user_id: str, token_hash: str) -> None:
        removed = await self._cache_call(
            "revoke", user_id, self.cache.remove_session, user_id, token_hash
        )
        if removed != 1:
            raise NotFoundError("Session not found or already signed out.")
        await self._durable_call(
            "revoke", user_id, self.users.set_session_status, user_id, token_hash, False
        )
        logger.info("session_revoked", user_id=user_id)

    async def revoke_all_others(self, user_id: str, keep_hash: str) -> int:
        await self._cache_call(
            "revoke_others", user_id, self.cache.replace_sessions, user_id, keep_hash, self.ttl_seconds
        )
        pruned = await self._durable_call(
            "revoke_others", user_id, self.users.prune_sessions, user_id, keep_hash
        )
        logger.info("sessions_revoked_except_current", user_id=user_id, pruned=pruned)
        return pruned

    async def revoke_all(self, user_id: str) -> None:
        await self._cache_call("revoke_all", user_id, self.cache.clear_user, user_id)
        await self._durable_call("revoke_all", user_id, self.users.clear_sessions, user_id)
        logger.info("sessions_revoked_all", user_id=user_id)

    async def refresh_snapshot(self, user: User) -> None:
        await self._cache_call(
            "snapshot", user.id, self.cache.set_snapshot, user.id, user.to_snapshot(), self.ttl_seconds
        )

    async def lookup(self, user_id: str, token_hash: str) -> Tuple[bool, Optional[Dict[str, Any]]]:
        return await self._cache_call(
            "lookup", user_id, self.cache.session_state, user_id, token_hash
        )

    async def lookup_for_refresh(
        self, user_id: str, token_hash: str
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Like :meth:`lookup`, but a hash rotated away moments ago counts as live
        while the hash that replaced it is still live.

        Two tabs sharing one refresh cookie can both refresh: the second swap lands
        in the cache and its durable update matches nothing. A hash that was signed
        out, pruned or wiped has no live successor and stays dead.
        """
        is_member, snapshot = await self.lookup(user_id, token_hash)
        if is_member:
            return is_member, snapshot
        successor = await self._cache_call(
            "lookup", user_id, self.cache.rotation_successor, user_id, token_hash
        )
        if not successor:
            return False, snapshot
        return await self.lookup(user_id, successor)

    async def history(self, user_id: str) -> List[Session]:
        sessions = await self._durable_call("history", user_id, self.users.list_sessions, user_id)
        return sorted(sessions, key=lambda s: s.logged_in_at, reverse=True)

    async def reconcile(self, user_id: str) -> int:
        """Mark durable sessions the cache no longer knows about as inactive."""
        live = await self._cache_call("reconcile", user_id, self.cache.session_members, user_id)
        sessions = await self._durable_call("reconcile", user_id, self.users.list_sessions, user_id)
        stale = [s.token for s in sessions if s.status and s.token not in live]
        for token in stale:
            await self._durable_call(
                "reconcile", user_id, self.users.set_session_status, user_id, token, False
            )
        if stale:
            logger.info("sessions_reconciled", user_id=user_id, count=len(stale))
        return len(stale)
