from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from parcelhub.logging import get_logger
from parcelhub.storage.errors import ConstraintViolation, NotFoundInStore
from parcelhub.storage.models import (
    DEFAULT_ROLE,
    AuthProvider,
    DeviceInfo,
    Location,
    Session,
    TwoFactor,
    User,
    utcnow,
)

_USER_COLUMNS = (
    "id, email, normalized_email, phone, family_name, given_name, avatar_url, role, "
    "verified, password_hash, two_factor_enabled, two_factor_secret, password_reset_token, "
    "password_reset_expires, password_changed_at, created_at"
)


class PostgresStore:
    """Durable user store: users, linked providers and per-device session history."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = ["app_user", "user_auth_provider", "user_session"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            token=row["token"],
            device_info=DeviceInfo(**(row.get("device_info") or {})),
            location=Location(**(row.get("location") or {})),
            ip=row.get("ip"),
            logged_in_at=row.get("logged_in_at") or utcnow(),
            expires_at=row.get("expires_at") or utcnow(),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            last_activity_at=row.get("last_activity_at") or utcnow(),
            status=bool(row.get("status", True)),
            risk_score=int(row.get("risk_score") or 0),
            trusted_device=bool(row.get("trusted_device", False)),
        )

    def _user_from_row(self, conn, row: Dict[str, Any]) -> User:
        user_id = str(row["id"])
        providers = conn.execute(
            "SELECT provider, linked_at, profile FROM user_auth_provider WHERE user_id = %s ORDER BY linked_at",
            (user_id,),
        ).fetchall()
        sessions = conn.execute(
            "SELECT * FROM user_session WHERE user_id = %s ORDER BY logged_in_at",
            (user_id,),
        ).fetchall()
        return User(
            id=user_id,
            email=row["email"],
            normalized_email=row["normalized_email"],
            phone=row.get("phone"),
            family_name=row.get("family_name"),
            given_name=row.get("given_name"),
            avatar_url=row.get("avatar_url"),
            role=row.get("role") or DEFAULT_ROLE,
            verified=bool(row.get("verified", False)),
            password_hash=row.get("password_hash"),
            two_factor=TwoFactor(
                enabled=bool(row.get("two_factor_enabled", False)),
                secret=row.get("two_factor_secret"),
            ),
            auth=[
                AuthProvider(
                    provider=p["provider"],
                    linked_at=p.get("linked_at") or utcnow(),
                    profile=p.get("profile") or {},
                )
                for p in providers
            ],
            sessions=[self._session_from_row(s) for s in sessions],
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where} LIMIT 1", params
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(conn, row)

    def _require_updated(self, cursor, user_id: str) -> None:
        if cursor.rowcount == 0:
            raise NotFoundInStore("user not found", {"user_id": user_id})

    # users
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
        user_id = User.new_id()
        now = utcnow()
        password_changed_at = now if password_hash else None
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, normalized_email, phone, family_name, given_name,
                                          avatar_url, role, verified, password_hash, password_changed_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        email,
                        normalized_email,
                        phone,
                        family_name,
                        given_name,
                        avatar_url,
                        role,
                        verified,
                        password_hash,
                        password_changed_at,
                        now,
                    ),
                )
                for entry in auth or []:
                    conn.execute(
                        "INSERT INTO user_auth_provider (user_id, provider, linked_at, profile) VALUES (%s, %s, %s, %s)",
                        (user_id, entry.provider, entry.linked_at, json.dumps(entry.profile)),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        self.logger.info("user_created", user_id=user_id, role=role)
        return User(
            id=user_id,
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
            password_changed_at=password_changed_at,
            created_at=now,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def find_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email,))

    def find_by_email_or_normalized(self, email: str, normalized_email: str) -> Optional[User]:
        return self._fetch_user("email = %s OR normalized_email = %s", (email, normalized_email))

    def link_auth_provider(self, user_id: str, provider: str, profile: Dict[str, Any]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO user_auth_provider (user_id, provider, linked_at, profile)
                VALUES (%s, %s, now(), %s)
                ON CONFLICT (user_id, provider) DO NOTHING
                """,
                (user_id, provider, json.dumps(profile)),
            )
            return cur.rowcount > 0

    def set_two_factor(
        self, user_id: str, enabled: bool, secret: Optional[Dict[str, str]]
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET two_factor_enabled = %s, two_factor_secret = %s WHERE id = %s",
                (enabled, json.dumps(secret) if secret else None, user_id),
            )
            self._require_updated(cur, user_id)

    def set_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            cur = conn.execute("UPDATE app_user SET role = %s WHERE id = %s", (role, user_id))
            self._require_updated(cur, user_id)

    # sessions
    def push_session(self, user_id: str, session: Session) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_session (user_id, token, device_info, location, ip, logged_in_at,
                                          expires_at, revoked, revoked_at, last_activity_at, status,
                                          risk_score, trusted_device)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user_id,
                    session.token,
                    json.dumps(asdict(session.device_info)),
                    json.dumps(asdict(session.location)),
                    session.ip,
                    session.logged_in_at,
                    session.expires_at,
                    session.revoked,
                    session.revoked_at,
                    session.last_activity_at,
                    session.status,
                    session.risk_score,
                    session.trusted_device,
                ),
            )

    def update_session_token(self, user_id: str, old_token: str, new_token: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session SET token = %s, last_activity_at = now()
                WHERE user_id = %s AND token = %s
                """,
                (new_token, user_id, old_token),
            )
            return cur.rowcount

    def set_session_status(self, user_id: str, token: str, status: bool) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session
                SET status = %s, revoked = %s, revoked_at = CASE WHEN %s THEN NULL ELSE now() END
                WHERE user_id = %s AND token = %s
                """,
                (status, not status, status, user_id, token),
            )
            return cur.rowcount

    def prune_sessions(self, user_id: str, keep_token: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_session WHERE user_id = %s AND token <> %s",
                (user_id, keep_token),
            )
            return cur.rowcount

    def clear_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_session WHERE user_id = %s", (user_id,))

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_session WHERE user_id = %s ORDER BY logged_in_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # password reset
    def set_password_reset(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_reset_token = %s, password_reset_expires = %s WHERE id = %s",
                (token_hash, expires_at, user_id),
            )
            self._require_updated(cur, user_id)

    def find_by_reset_token(self, token_hash: str) -> Optional[User]:
        return self._fetch_user("password_reset_token = %s", (token_hash,))

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_changed_at = now(),
                    password_reset_token = NULL, password_reset_expires = NULL
                WHERE id = %s
                """,
                (password_hash, user_id),
            )
            self._require_updated(cur, user_id)
