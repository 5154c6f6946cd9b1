from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.identity import check_new_identity, check_update_fields
from tokenward.storage.models import (
    ExternalIdentityLink,
    Identity,
    normalize_email,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT,
        password_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_provider (
        provider TEXT NOT NULL,
        provider_uid TEXT NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, provider_uid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def create_pool(dsn: str, *, timeout: float = 5.0) -> ConnectionPool:
    return ConnectionPool(
        dsn,
        min_size=2,
        max_size=10,
        timeout=timeout,
        kwargs={"row_factory": dict_row, "autocommit": False},
        open=True,
    )


class PostgresStore:
    """Postgres-backed identity store."""

    backend = "postgres"

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or create_pool(dsn)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _links_for(self, conn, user_id: str) -> List[ExternalIdentityLink]:
        rows = conn.execute(
            "SELECT provider, provider_uid, user_id, created_at FROM user_auth_provider WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        ).fetchall()
        return [
            ExternalIdentityLink(
                provider=row["provider"],
                provider_id=row["provider_uid"],
                user_id=str(row["user_id"]),
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]

    def _to_identity(self, conn, row: Optional[Dict[str, Any]]) -> Optional[Identity]:
        if not row:
            return None
        user_id = str(row["id"])
        return Identity(
            id=user_id,
            email=row["email"],
            name=row.get("name"),
            password_hash=row.get("password_hash"),
            links=self._links_for(conn, user_id),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def find_by_id(self, user_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            return self._to_identity(conn, row)

    def find_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
            return self._to_identity(conn, row)

    def find_by_link(self, provider: str, provider_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT u.* FROM user_auth_provider p JOIN app_user u ON u.id = p.user_id WHERE p.provider = %s AND p.provider_uid = %s",
                (provider, provider_id),
            ).fetchone()
            return self._to_identity(conn, row)

    @staticmethod
    def _constraint_error(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        if "email" in constraint:
            return ConstraintViolation("email already exists", {"field": "email"})
        return ConstraintViolation(
            "external identity already linked", {"field": "provider_id"}
        )

    def create(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        link: Optional[tuple[str, str]] = None,
    ) -> Identity:
        check_new_identity(password_hash, link)
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_hash)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalize_email(email), name, password_hash),
                ).fetchone()
                if link:
                    conn.execute(
                        "INSERT INTO user_auth_provider (user_id, provider, provider_uid) VALUES (%s, %s, %s)",
                        (user_id, link[0], link[1]),
                    )
                return self._to_identity(conn, row)
        except errors.UniqueViolation as exc:
            raise self._constraint_error(exc) from exc

    def update(self, user_id: str, fields: dict[str, Any]) -> Optional[Identity]:
        check_update_fields(fields)
        changes = dict(fields)
        if not changes:
            return self.find_by_id(user_id)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(key), sql.Placeholder())
            for key in changes
        )
        query = sql.SQL(
            "UPDATE app_user SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments)
        try:
            with self._connect() as conn:
                if "password_hash" in changes and not changes["password_hash"]:
                    if not self._links_for(conn, user_id):
                        raise ConstraintViolation(
                            "identity requires a password hash or an external link",
                            {"field": "password_hash"},
                        )
                row = conn.execute(query, (*changes.values(), user_id)).fetchone()
                return self._to_identity(conn, row)
        except errors.UniqueViolation as exc:
            raise self._constraint_error(exc) from exc

    def delete(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def add_link(self, user_id: str, provider: str, provider_id: str) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
                if not row:
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
                conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, provider_uid) DO NOTHING
                    """,
                    (user_id, provider, provider_id),
                )
                owner = conn.execute(
                    "SELECT user_id FROM user_auth_provider WHERE provider = %s AND provider_uid = %s",
                    (provider, provider_id),
                ).fetchone()
                if owner and str(owner["user_id"]) != user_id:
                    raise ConstraintViolation(
                        "external identity already linked", {"field": "provider_id"}
                    )
                return self._to_identity(conn, row)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc


class PostgresTokenStore:
    """Durable-strategy refresh store on the ``refresh_token`` table.

    The table is keyed by ``user_id`` so a second live record for a subject
    cannot exist. Rotation deletes the presented token and inserts its
    replacement in one transaction; concurrent rotations block on the row lock
    and only the first one finds the row to delete.
    """

    backend = "postgres"
    supports_revocation = True

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._owns_pool = pool is None
        self.pool = pool or create_pool(dsn)

    def _connect(self):
        return self.pool.connection()

    def _put(self, subject: str, token: str, ttl: timedelta) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (user_id, token, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET token = EXCLUDED.token, expires_at = EXCLUDED.expires_at
                """,
                (subject, token, utcnow() + ttl),
            )

    def _validate(self, subject: str, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM refresh_token WHERE user_id = %s AND token = %s AND expires_at > now()",
                (subject, token),
            ).fetchone()
        return row is not None

    def _rotate(
        self, subject: str, old_token: str, new_token: str, ttl: timedelta
    ) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                deleted = conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s AND token = %s AND expires_at > now()",
                    (subject, old_token),
                )
                if deleted.rowcount != 1:
                    return False
                conn.execute(
                    "INSERT INTO refresh_token (user_id, token, expires_at) VALUES (%s, %s, %s)",
                    (subject, new_token, utcnow() + ttl),
                )
                return True

    def _revoke(self, subject: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (subject,))

    def _ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    async def put(self, subject: str, token: str, ttl: timedelta) -> None:
        await asyncio.to_thread(self._put, subject, token, ttl)

    async def validate(self, subject: str, token: str) -> bool:
        return await asyncio.to_thread(self._validate, subject, token)

    async def rotate(
        self, subject: str, old_token: str, new_token: str, ttl: timedelta
    ) -> bool:
        return await asyncio.to_thread(self._rotate, subject, old_token, new_token, ttl)

    async def revoke(self, subject: str) -> None:
        await asyncio.to_thread(self._revoke, subject)

    async def verify_connection(self) -> None:
        await asyncio.to_thread(self._ping)

    async def close(self) -> None:
        if self._owns_pool:
            await asyncio.to_thread(self.pool.close)
