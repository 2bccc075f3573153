from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from parcelhub.logging import get_logger
from parcelhub.storage.errors import ConstraintViolation, NotFoundInStore
from parcelhub.storage.models import (
    DEFAULT_ROLE,
    AuthProvider,
    Session,
    TwoFactor,
    User,
    utcnow,
)


class MemoryStore:
    """In-process user store for tests and local development.

    Returned users are copies; callers never hold a reference into the
    store, so concurrent requests observe the same isolation a database
    would give them.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def _require(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundInStore("user not found", {"user_id": user_id})
        return user

    def create_user(
        self,
        email: str,
        normalized_email: str,
        *,
        phone: Optional[str] = None,
        family_name: Optional[str] = None,
        given_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        password_hash: Optional[str] = None,
        verified: bool = False,
        role: str = DEFAULT_ROLE,
        auth: Optional[List[AuthProvider]] = None,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email or existing.normalized_email == normalized_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=User.new_id(),
                email=email,
                normalized_email=normalized_email,
                phone=phone,
                family_name=family_name,
                given_name=given_name,
                avatar_url=avatar_url,
                role=role,
                verified=verified,
                password_hash=password_hash,
                auth=list(auth or []),
                password_changed_at=utcnow() if password_hash else None,
            )
            self.users[user.id] = user
            self.logger.info("user_created", user_id=user.id, role=role)
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return copy.deepcopy(user)
        return None

    def find_by_email_or_normalized(self, email: str, normalized_email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email or user.normalized_email == normalized_email:
                    return copy.deepcopy(user)
        return None

    def link_auth_provider(self, user_id: str, provider: str, profile: Dict[str, Any]) -> bool:
        with self._data_lock:
            user = self._require(user_id)
            if user.has_provider(provider):
                return False
            user.auth.append(AuthProvider(provider=provider, profile=dict(profile)))
            return True

    def set_two_factor(
        self, user_id: str, enabled: bool, secret: Optional[Dict[str, str]]
    ) -> None:
        with self._data_lock:
            user = self._require(user_id)
            user.two_factor = TwoFactor(enabled=enabled, secret=dict(secret) if secret else None)

    def set_role(self, user_id: str, role: str) -> None:
        with self._data_lock:
            self._require(user_id).role = role

    def push_session(self, user_id: str, session: Session) -> None:
        with self._data_lock:
            self._require(user_id).sessions.append(copy.deepcopy(session))

    def update_session_token(self, user_id: str, old_token: str, new_token: str) -> int:
        with self._data_lock:
            user = self._require(user_id)
            for session in user.sessions:
                if session.token == old_token:
                    session.token = new_token
                    session.last_activity_at = utcnow()
                    return 1
        return 0

    def set_session_status(self, user_id: str, token: str, status: bool) -> int:
        with self._data_lock:
            user = self._require(user_id)
            matched = 0
            for session in user.sessions:
                if session.token == token:
                    session.status = status
                    session.revoked = not status
                    session.revoked_at = None if status else utcnow()
                    matched += 1
            return matched

    def prune_sessions(self, user_id: str, keep_token: str) -> int:
        with self._data_lock:
            user = self._require(user_id)
            before = len(user.sessions)
            user.sessions = [s for s in user.sessions if s.token == keep_token]
            return before - len(user.sessions)

    def clear_sessions(self, user_id: str) -> None:
        with self._data_lock:
            self._require(user_id).sessions = []

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user.sessions) if user else []

    def set_password_reset(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._data_lock:
            user = self._require(user_id)
            user.password_reset_token = token_hash
            user.password_reset_expires = expires_at

    def find_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.password_reset_token and user.password_reset_token == token_hash:
                    return copy.deepcopy(user)
        return None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self._require(user_id)
            user.password_hash = password_hash
            user.password_changed_at = utcnow()
            user.password_reset_token = None
            user.password_reset_expires = None
