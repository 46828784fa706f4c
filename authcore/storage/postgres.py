from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StorageError
from authcore.storage.models import (
    REVOCATION_BACKDATE,
    Identity,
    Provider,
    Role,
    Session,
    normalize_email,
    utcnow,
)

_IDENTITY_COLUMNS = (
    "id, email, name, role, provider, password_hash, provider_id, avatar, "
    "email_verified, created_at, updated_at"
)
_SESSION_COLUMNS = "id, user_id, refresh_token, expires_at, created_at, updated_at"


def _aware(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return utcnow()


class PostgresStore:
    """Postgres-backed identity and session store.

    The database is the single source of truth for both tables. Statements
    run under ``statement_timeout``; lost connections, pool exhaustion and
    cancelled statements surface as ``StorageError``.
    """

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 5000) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
            timeout=max(statement_timeout_ms / 1000.0, 1.0),
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            # Covers PoolTimeout and QueryCanceled from statement_timeout
            self.logger.error(
                "postgres_operation_failed", error_type=type(exc).__name__
            )
            raise StorageError("database unavailable") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the identity and session tables exist before serving requests."""

        required_tables = ["app_user", "auth_session"]
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

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # identities
    def _identity_from_row(self, row: dict) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=Role(row.get("role") or Role.USER.value),
            provider=Provider(row.get("provider") or Provider.LOCAL.value),
            password_hash=row.get("password_hash"),
            provider_id=row.get("provider_id"),
            avatar=row.get("avatar"),
            email_verified=bool(row.get("email_verified", False)),
            created_at=_aware(row.get("created_at")),
            updated_at=_aware(row.get("updated_at")),
        )

    def create_identity(self, identity: Identity) -> Identity:
        email = normalize_email(identity.email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user ({_IDENTITY_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_IDENTITY_COLUMNS}
                    """,
                    (
                        identity.id,
                        email,
                        identity.name,
                        identity.role.value,
                        identity.provider.value,
                        identity.password_hash,
                        identity.provider_id,
                        identity.avatar,
                        identity.email_verified,
                        identity.created_at,
                        identity.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identity already exists", {"constraint": exc.diag.constraint_name}
            ) from exc
        return self._identity_from_row(row)

    def get_identity(self, user_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_provider(
        self, provider: Provider, provider_id: str
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_IDENTITY_COLUMNS} FROM app_user
                WHERE provider = %s AND provider_id = %s
                """,
                (provider.value, provider_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def update_identity(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user
                    SET email = %s, name = %s, role = %s, provider = %s,
                        password_hash = %s, provider_id = %s, avatar = %s,
                        email_verified = %s, updated_at = %s
                    WHERE id = %s
                    RETURNING {_IDENTITY_COLUMNS}
                    """,
                    (
                        normalize_email(identity.email),
                        identity.name,
                        identity.role.value,
                        identity.provider.value,
                        identity.password_hash,
                        identity.provider_id,
                        identity.avatar,
                        identity.email_verified,
                        identity.updated_at,
                        identity.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identity already exists", {"constraint": exc.diag.constraint_name}
            ) from exc
        if not row:
            raise ConstraintViolation("identity does not exist", {"user_id": identity.id})
        return self._identity_from_row(row)

    def delete_identity(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def list_identities(self, limit: int = 10, offset: int = 0) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_IDENTITY_COLUMNS} FROM app_user
                ORDER BY created_at DESC, id
                LIMIT %s OFFSET %s
                """,
                (limit, offset),
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    def count_identities(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0

    # sessions
    def _session_from_row(self, row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            expires_at=_aware(row["expires_at"]),
            created_at=_aware(row.get("created_at")),
            updated_at=_aware(row.get("updated_at")),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO auth_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.expires_at,
                        session.created_at,
                        session.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            ) from exc
        return session

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE refresh_token = %s",
                (token,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE user_id = %s
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_session_by_token(self, token: str) -> bool:
        """Delete the session row; True only for the caller whose DELETE hit it."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token = %s RETURNING id",
                (token,),
            ).fetchone()
        return row is not None

    def claim_session(self, token: str) -> bool:
        """Delete the row only if it is unexpired and unrevoked, in one statement."""
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM auth_session
                WHERE refresh_token = %s AND expires_at > %s
                RETURNING id
                """,
                (token, utcnow()),
            ).fetchone()
        return row is not None

    def revoke_user_sessions(self, user_id: str) -> int:
        now = utcnow()
        revoked_at = now - REVOCATION_BACKDATE
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET expires_at = %s, updated_at = %s
                WHERE user_id = %s AND expires_at > %s
                """,
                (revoked_at, now, user_id, revoked_at),
            )
            return result.rowcount

    def is_session_active(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS active FROM auth_session
                WHERE refresh_token = %s AND expires_at > %s
                """,
                (token, utcnow()),
            ).fetchone()
        return row is not None

    def purge_expired_sessions(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (utcnow(),)
            )
            count = result.rowcount
        self.logger.info("expired_sessions_purged", count=count)
        return count
