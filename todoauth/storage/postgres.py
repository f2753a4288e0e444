from __future__ import annotations

import uuid
from typing import List

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from todoauth.logging import get_logger
from todoauth.storage.common import parse_user_id, row_to_identity, row_to_user
from todoauth.storage.errors import ConstraintViolation, RecordNotFound
from todoauth.storage.models import (
    AuthIdentity,
    CreateAuthIdentityParams,
    CreateUserParams,
    Role,
    UpdateUserParams,
    User,
)

REQUIRED_TABLES = ("app_user", "auth_identity")


class PostgresStore:
    """Postgres-backed user and identity repositories.

    Expects the ``app_user`` table (unique ``email``) and the
    ``auth_identity`` table (primary key ``auth_id``, ``user_id`` referencing
    ``app_user`` with ``ON DELETE CASCADE``).
    """

    def __init__(self, dsn: str, *, min_conns: int = 1, max_conns: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_conns,
            max_size=max_conns,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the user and identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            self.logger.error("postgres_schema_missing", tables=sorted(missing_tables))
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, params: CreateUserParams) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (uuid.uuid4(), params.name, params.email, params.role.value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return row_to_user(row)

    def get_user(self, user_id: uuid.UUID) -> User:
        user_id = parse_user_id(user_id)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            raise RecordNotFound("user", user_id)
        return row_to_user(row)

    def get_user_by_email(self, email: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            raise RecordNotFound("user", email)
        return row_to_user(row)

    def get_user_by_auth_id(self, auth_id: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT u.* FROM auth_identity i JOIN app_user u ON u.id = i.user_id WHERE i.auth_id = %s",
                (auth_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound("user", auth_id)
        return row_to_user(row)

    def list_users(self, limit: int, offset: int) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at, id LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [row_to_user(row) for row in rows]

    def update_user(self, params: UpdateUserParams) -> User:
        user_id = parse_user_id(params.id)
        role = params.role.value if params.role is not None else None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET name = COALESCE(%s, name),
                        email = COALESCE(%s, email),
                        role = COALESCE(%s, role),
                        updated_at = GREATEST(now(), updated_at)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (params.name, params.email, role, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise RecordNotFound("user", user_id)
        return row_to_user(row)

    def delete_user(self, user_id: uuid.UUID) -> int:
        user_id = parse_user_id(user_id)
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount

    # identities
    def create_auth_identity(self, params: CreateAuthIdentityParams) -> AuthIdentity:
        user_id = parse_user_id(params.user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_identity (auth_id, provider, user_id, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (params.auth_id, params.provider, user_id, params.role.value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("auth_id already exists", {"field": "auth_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return row_to_identity(row)

    def get_auth_identity(self, auth_id: str) -> AuthIdentity:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE auth_id = %s", (auth_id,)
            ).fetchone()
        if not row:
            raise RecordNotFound("auth_identity", auth_id)
        return row_to_identity(row)

    def list_auth_identities(self, user_id: uuid.UUID) -> List[AuthIdentity]:
        user_id = parse_user_id(user_id)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_identity WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [row_to_identity(row) for row in rows]

    def update_auth_identity_role(self, auth_id: str, role: Role) -> AuthIdentity:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET role = %s, updated_at = GREATEST(now(), updated_at)
                WHERE auth_id = %s
                RETURNING *
                """,
                (role.value, auth_id),
            ).fetchone()
        if not row:
            raise RecordNotFound("auth_identity", auth_id)
        return row_to_identity(row)

    def delete_auth_identity(self, auth_id: str, user_id: uuid.UUID) -> int:
        user_id = parse_user_id(user_id)
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_identity WHERE auth_id = %s AND user_id = %s",
                (auth_id, user_id),
            )
            return result.rowcount
