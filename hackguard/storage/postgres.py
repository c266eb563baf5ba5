from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from hackguard.config import PARTITION_ORDER
from hackguard.logging import get_logger
from hackguard.storage.errors import ConstraintViolation, PartitionUnavailable
from hackguard.storage.models import SessionRecord, User, utcnow

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        password_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (role, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        user_email TEXT NOT NULL,
        user_name TEXT NOT NULL,
        user_role TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        absolute_expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
)


class PostgresStore:
    """Postgres-backed users and sessions, one connection pool per database.

    Each role partition names its own DSN. Partitions that share a DSN share
    a pool, and token lookups that fan out across partitions query each
    distinct database only once; when every partition points at the same
    database the fan-out collapses to a single query.
    """

    def __init__(
        self,
        dsns: Mapping[str, Optional[str]],
        *,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        missing = [role for role in PARTITION_ORDER if not dsns.get(role)]
        if missing:
            raise ValueError(f"database url missing for partitions: {', '.join(missing)}")
        self.logger = get_logger(__name__)
        self.pools: Dict[str, ConnectionPool] = {}
        self._partition_dsn: Dict[str, str] = {}
        # First partition served by each distinct database, in partition order
        self._lookup_partitions: List[str] = []
        for role in PARTITION_ORDER:
            dsn = dsns[role]
            if dsn not in self.pools:
                self.pools[dsn] = ConnectionPool(
                    dsn,
                    min_size=min_size,
                    max_size=max_size,
                    kwargs={"row_factory": dict_row, "autocommit": False},
                )
                self._lookup_partitions.append(role)
            self._partition_dsn[role] = dsn
        self._ensure_schema()

    def partitions(self) -> Sequence[str]:
        return PARTITION_ORDER

    def lookup_partitions(self) -> Sequence[str]:
        return tuple(self._lookup_partitions)

    @contextmanager
    def _connect(self, partition: str) -> Iterator[psycopg.Connection]:
        dsn = self._partition_dsn.get(partition)
        if dsn is None:
            raise ValueError(f"unknown partition: {partition}")
        try:
            with self.pools[dsn].connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise PartitionUnavailable(partition, str(exc)) from exc

    def _ensure_schema(self) -> None:
        for partition in self._lookup_partitions:
            with self._connect(partition) as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)

    def close(self) -> None:
        for pool in self.pools.values():
            pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=row["role"],
            status=row.get("status", "active"),
            password_hash=row.get("password_hash"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> SessionRecord:
        return SessionRecord(
            token=row["token"],
            user_id=str(row["user_id"]),
            user_email=row["user_email"],
            user_name=row["user_name"],
            user_role=row["user_role"],
            fingerprint=row["fingerprint"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            absolute_expires_at=row["absolute_expires_at"],
        )

    # users
    def create_user(
        self,
        role: str,
        email: str,
        name: str,
        password_hash: str,
        *,
        status: str = "active",
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            role=role,
            status=status,
            password_hash=password_hash,
        )
        try:
            with self._connect(role) as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, role, email, name, status, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        role,
                        user.email,
                        name,
                        status,
                        password_hash,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"email": user.email})
        return user

    def get_user_by_email(self, role: str, email: str) -> Optional[User]:
        with self._connect(role) as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE role = %s AND email = %s",
                (role, email.strip().lower()),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_status(self, role: str, email: str, status: str) -> None:
        with self._connect(role) as conn:
            conn.execute(
                "UPDATE app_user SET status = %s WHERE role = %s AND email = %s",
                (status, role, email.strip().lower()),
            )

    # sessions
    def create_session(self, partition: str, record: SessionRecord) -> SessionRecord:
        try:
            with self._connect(partition) as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (token, user_id, user_email, user_name, user_role,
                        fingerprint, created_at, expires_at, absolute_expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.user_id,
                        record.user_email,
                        record.user_name,
                        record.user_role,
                        record.fingerprint,
                        record.created_at,
                        record.expires_at,
                        record.absolute_expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists")
        return record

    def get_session(self, partition: str, token: str) -> Optional[SessionRecord]:
        with self._connect(partition) as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s AND user_role = %s",
                (token, partition),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session_expiry(self, partition: str, token: str, expires_at) -> bool:
        # Plain UPDATE: a session deleted concurrently stays deleted
        with self._connect(partition) as conn:
            result = conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE token = %s AND user_role = %s",
                (expires_at, token, partition),
            )
            return result.rowcount > 0

    def delete_session(self, partition: str, token: str) -> bool:
        with self._connect(partition) as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE token = %s AND user_role = %s",
                (token, partition),
            )
            return result.rowcount > 0

    def delete_user_sessions(self, partition: str, user_id: str) -> int:
        with self._connect(partition) as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s AND user_role = %s",
                (user_id, partition),
            )
            return result.rowcount

    # fan-out, one statement per distinct database
    def _each_database(
        self, operation: str, action: Callable[[psycopg.Connection], Optional[T]]
    ) -> Iterator[T]:
        for partition in self._lookup_partitions:
            try:
                with self._connect(partition) as conn:
                    result = action(conn)
            except PartitionUnavailable as exc:
                self.logger.warning(
                    "session_partition_unavailable",
                    partition=exc.partition,
                    operation=operation,
                )
                continue
            if result is not None:
                yield result

    def find_session_any_partition(
        self, token: str
    ) -> Optional[tuple[SessionRecord, str]]:
        rows = self._each_database(
            "find",
            lambda conn: conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone(),
        )
        for row in rows:
            record = self._session_from_row(row)
            return record, record.user_role
        return None

    def delete_session_everywhere(self, token: str) -> int:
        return sum(
            self._each_database(
                "delete",
                lambda conn: conn.execute(
                    "DELETE FROM auth_session WHERE token = %s", (token,)
                ).rowcount,
            )
        )

    def delete_user_sessions_everywhere(self, user_id: str) -> int:
        return sum(
            self._each_database(
                "delete_user",
                lambda conn: conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                ).rowcount,
            )
        )
