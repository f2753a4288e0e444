import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from todoauth.storage.errors import ConstraintViolation, RecordNotFound
from todoauth.storage.models import (
    CreateAuthIdentityParams,
    CreateUserParams,
    Role,
    UpdateUserParams,
)
from todoauth.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows, rowcount=None):
        self.rows = rows
        self.rowcount = len(rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Scripted connection: each execute pops the next response."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.dsn = "postgresql://unit-test"
    store.logger = None

    @contextmanager
    def _connect():
        yield conn

    store._connect = _connect
    return store


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "name": "Ada",
        "email": "ada@example.com",
        "role": "user",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _identity_row(user_id, **overrides):
    row = {
        "auth_id": "ext-1",
        "provider": "google",
        "user_id": user_id,
        "role": "user",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_create_user_maps_row():
    row = _user_row()
    conn = FakeConnection([FakeResult([row])])

    user = _store(conn).create_user(CreateUserParams(name="Ada", email="ada@example.com"))

    assert user.id == row["id"]
    assert user.role == Role.USER
    sql, params = conn.executed[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params[1:] == ("Ada", "ada@example.com", "user")


def test_create_user_unique_violation_becomes_constraint():
    conn = FakeConnection([errors.UniqueViolation("duplicate key")])

    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).create_user(CreateUserParams(name="Ada", email="ada@example.com"))
    assert exc_info.value.field == "email"


def test_get_user_missing_row_raises():
    conn = FakeConnection([FakeResult([])])

    with pytest.raises(RecordNotFound):
        _store(conn).get_user(uuid.uuid4())


def test_update_user_passes_nulls_for_unchanged_fields():
    row = _user_row(name="Ada L.")
    conn = FakeConnection([FakeResult([row])])

    updated = _store(conn).update_user(UpdateUserParams(id=row["id"], name="Ada L."))

    assert updated.name == "Ada L."
    sql, params = conn.executed[0]
    assert "COALESCE" in sql
    assert "GREATEST(now(), updated_at)" in sql
    assert params == ("Ada L.", None, None, row["id"])


def test_update_missing_user_raises():
    conn = FakeConnection([FakeResult([])])

    with pytest.raises(RecordNotFound):
        _store(conn).update_user(UpdateUserParams(id=uuid.uuid4(), role=Role.ADMIN))


def test_delete_user_returns_rowcount():
    conn = FakeConnection([FakeResult([], rowcount=1), FakeResult([], rowcount=0)])
    store = _store(conn)
    user_id = uuid.uuid4()

    assert store.delete_user(user_id) == 1
    assert store.delete_user(user_id) == 0


def test_list_users_orders_and_pages():
    rows = [_user_row(email="a@example.com"), _user_row(email="b@example.com")]
    conn = FakeConnection([FakeResult(rows)])

    users = _store(conn).list_users(2, 4)

    assert [u.email for u in users] == ["a@example.com", "b@example.com"]
    sql, params = conn.executed[0]
    assert "ORDER BY created_at, id" in sql
    assert params == (2, 4)


def test_get_user_by_auth_id_joins_identity():
    row = _user_row()
    conn = FakeConnection([FakeResult([row])])

    user = _store(conn).get_user_by_auth_id("ext-1")

    assert user.id == row["id"]
    assert "JOIN app_user" in conn.executed[0][0]


def test_create_identity_conflicts():
    user_id = uuid.uuid4()
    params = CreateAuthIdentityParams(auth_id="ext-1", provider="google", user_id=user_id)
    conn = FakeConnection(
        [errors.UniqueViolation("dup"), errors.ForeignKeyViolation("fk")]
    )
    store = _store(conn)

    with pytest.raises(ConstraintViolation) as dup:
        store.create_auth_identity(params)
    with pytest.raises(ConstraintViolation) as fk:
        store.create_auth_identity(params)

    assert dup.value.field == "auth_id"
    assert fk.value.field == "user_id"


def test_identity_reads():
    user_id = uuid.uuid4()
    conn = FakeConnection(
        [
            FakeResult([_identity_row(user_id)]),
            FakeResult([_identity_row(user_id), _identity_row(user_id, auth_id="ext-2")]),
            FakeResult([]),
        ]
    )
    store = _store(conn)

    assert store.get_auth_identity("ext-1").user_id == user_id
    assert [i.auth_id for i in store.list_auth_identities(user_id)] == ["ext-1", "ext-2"]
    with pytest.raises(RecordNotFound):
        store.get_auth_identity("missing")


def test_update_identity_role_and_delete():
    user_id = uuid.uuid4()
    conn = FakeConnection(
        [FakeResult([_identity_row(user_id, role="admin")]), FakeResult([], rowcount=1)]
    )
    store = _store(conn)

    assert store.update_auth_identity_role("ext-1", Role.ADMIN).role == Role.ADMIN
    assert store.delete_auth_identity("ext-1", user_id) == 1
    assert conn.executed[1][1] == ("ext-1", user_id)


def test_schema_verification_reports_missing_tables():
    class RecordingLogger:
        def __init__(self):
            self.events = []

        def error(self, event, **kwargs):
            self.events.append((event, kwargs))

    conn = FakeConnection([FakeResult([{"oid": "app_user"}]), FakeResult([{"oid": None}])])
    store = _store(conn)
    store.logger = RecordingLogger()

    with pytest.raises(RuntimeError, match="auth_identity"):
        store._verify_required_schema()
    assert store.logger.events == [("postgres_schema_missing", {"tables": ["auth_identity"]})]
