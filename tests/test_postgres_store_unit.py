import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import psycopg
import pytest
from psycopg_pool import PoolTimeout

from credvault.logging import get_logger
from credvault.service.errors import TransientStoreFailure
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import RefreshTokenRecord
from credvault.storage.postgres import PostgresStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FailingPool:
    def __init__(self, exc):
        self.exc = exc

    def connection(self):
        raise self.exc


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class FakeConnection:
    def __init__(self, cursors):
        self.cursors = list(cursors)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.cursors.pop(0)


class ScriptedPool:
    def __init__(self, *cursors):
        self.conn = FakeConnection(cursors)
        self.opened = 0

    @contextmanager
    def connection(self):
        self.opened += 1
        yield self.conn


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store.logger = get_logger("tests.postgres")
    return store


def _record(**overrides) -> RefreshTokenRecord:
    values = dict(
        id=str(uuid.uuid4()),
        user_id=str(uuid.uuid4()),
        token_digest="d" * 64,
        expires_at=NOW + timedelta(days=7),
        created_at=NOW,
    )
    values.update(overrides)
    return RefreshTokenRecord(**values)


@pytest.mark.parametrize(
    "exc", [psycopg.OperationalError("connection refused"), PoolTimeout("pool exhausted")]
)
def test_connection_failures_are_transient(tmp_path, exc):
    store = _store(tmp_path, FailingPool(exc))
    with pytest.raises(TransientStoreFailure):
        store.get_user("u-1")


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("app_user_email_key", "email"),
        ("app_user_username_lower_idx", "username"),
        ("app_user_provider_idx", "provider_id"),
        ("refresh_token_digest_key", "token_digest"),
        ("something_else", "unknown"),
    ],
)
def test_unique_constraints_map_to_fields(constraint, field):
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))
    violation = PostgresStore._constraint_violation(exc)
    assert isinstance(violation, ConstraintViolation)
    assert violation.fields == [field]


def test_row_to_user_normalises_ids(tmp_path):
    user_id = uuid.uuid4()
    user = PostgresStore._row_to_user(
        {"id": user_id, "email": "a@example.com", "username": "a", "is_email_verified": None}
    )
    assert user.id == str(user_id)
    assert user.role == "user"
    assert user.is_email_verified is False
    assert user.created_at is not None


def test_row_to_refresh_stringifies_successor():
    successor = uuid.uuid4()
    record = PostgresStore._row_to_refresh(
        {
            "id": uuid.uuid4(),
            "user_id": uuid.uuid4(),
            "token_digest": "d" * 64,
            "expires_at": NOW,
            "revoked": True,
            "revoked_reason": "rotated",
            "replaced_by": successor,
        }
    )
    assert record.replaced_by == str(successor)
    assert record.state.value == "rotated"


def test_rotation_loser_inserts_nothing(tmp_path):
    pool = ScriptedPool(FakeCursor(row=None))
    store = _store(tmp_path, pool)
    assert store.rotate_refresh_token("d" * 64, _record(token_digest="e" * 64), NOW) is None
    assert len(pool.conn.statements) == 1
    assert pool.conn.statements[0][0].startswith("UPDATE refresh_token")


def test_rotation_winner_inserts_successor(tmp_path):
    pool = ScriptedPool(FakeCursor(row={"id": "old"}), FakeCursor())
    store = _store(tmp_path, pool)
    successor = _record(token_digest="e" * 64)
    assert store.rotate_refresh_token("d" * 64, successor, NOW) is successor
    update_sql, update_params = pool.conn.statements[0]
    insert_sql, insert_params = pool.conn.statements[1]
    assert "revoked = FALSE" in update_sql
    assert update_params == (NOW, successor.id, "d" * 64, NOW)
    assert insert_sql.startswith("INSERT INTO refresh_token")
    assert insert_params[0] == successor.id


def test_set_temporary_token_for_missing_user(tmp_path):
    store = _store(tmp_path, ScriptedPool(FakeCursor(rowcount=0)))
    with pytest.raises(ConstraintViolation):
        store.set_temporary_token("missing", "password_reset", "f" * 64, NOW)


def test_revoke_user_tokens_reports_rowcount(tmp_path):
    store = _store(tmp_path, ScriptedPool(FakeCursor(rowcount=3)))
    assert store.revoke_user_refresh_tokens("u-1", "logout", NOW) == 3


def test_password_record_without_hash(tmp_path):
    store = _store(tmp_path, ScriptedPool(FakeCursor(row={"password_hash": None})))
    assert store.get_password_record("u-1") is None


def test_unit_store_never_touches_a_real_pool(tmp_path):
    store = _store(tmp_path, DummyPool())
    assert PostgresStore._row_to_user({"id": "x", "email": "x@example.com"}).id == "x"
    with pytest.raises(AssertionError):
        store.verify_connection()


def test_password_account_is_written_in_one_transaction(tmp_path):
    user_id = uuid.uuid4()
    pool = ScriptedPool(
        FakeCursor(row={"id": user_id, "email": "bob@example.com", "username": "bobby"}),
        FakeCursor(rowcount=1),
    )
    store = _store(tmp_path, pool)

    user = store.create_password_user(
        "Bob@Example.com",
        "bobby",
        "$argon2id$digest",
        "argon2id",
        verification_digest="v" * 64,
        verification_expires_at=NOW,
    )

    assert user.id == str(user_id)
    assert pool.opened == 1
    (user_sql, user_params), (cred_sql, cred_params) = pool.conn.statements
    assert user_sql.startswith("INSERT INTO app_user")
    assert user_params == ("bob@example.com", "bobby", "v" * 64, NOW)
    assert cred_sql.startswith("INSERT INTO user_auth_credential")
    assert cred_params == (user_id, "$argon2id$digest", "argon2id")
