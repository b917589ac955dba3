import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from turnstile.logging import get_logger
from turnstile.storage.errors import ConstraintViolation
from turnstile.storage.models import TwoFactorDisabled, TwoFactorEnabled, TwoFactorPending
from turnstile.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _Result:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class ScriptedConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return self

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        outcome = self.pool.outcomes.pop(0) if self.pool.outcomes else _Result()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ScriptedPool:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.statements = []

    def connection(self):
        return ScriptedConnection(self)


def _unique_violation(constraint):
    class _Violation(errors.UniqueViolation):
        diag = SimpleNamespace(constraint_name=constraint)

    return _Violation("duplicate key value violates unique constraint")


def _store(pool, cipher):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.cipher = cipher
    store.logger = get_logger("test")
    return store


def _user_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "hash",
        "google_id": None,
        "avatar": None,
        "two_factor_status": "disabled",
        "two_factor_secret": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_invalid_uuid_never_hits_database(cipher):
    store = _store(DummyPool(), cipher)

    assert store.get_user("not-a-uuid") is None


def test_create_user_maps_returned_row(cipher):
    row = _user_row()
    pool = ScriptedPool(_Result([row]))
    store = _store(pool, cipher)

    user = store.create_user("alice", "alice@example.com", password_hash="hash")

    assert user.id == str(row["id"])
    assert user.username == "alice"
    sql, params = pool.statements[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params[1:4] == ("alice", "alice@example.com", "hash")


@pytest.mark.parametrize(
    "constraint, field, message",
    [
        ("app_user_username_key", "username", "username or email already in use"),
        ("app_user_email_key", "email", "username or email already in use"),
        ("app_user_google_id_key", "google_id", "google account already linked"),
    ],
)
def test_unique_violations_are_translated(cipher, constraint, field, message):
    store = _store(ScriptedPool(_unique_violation(constraint)), cipher)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("alice", "alice@example.com")

    assert excinfo.value.detail == {"field": field}
    assert excinfo.value.message == message


def test_unrecognised_unique_violation_is_not_reported_as_email(cipher):
    store = _store(ScriptedPool(_unique_violation("app_user_handle_key")), cipher)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("alice", "alice@example.com")

    assert excinfo.value.detail == {"constraint": "app_user_handle_key"}
    assert excinfo.value.message == "duplicate value"


def test_two_factor_secret_decrypted_from_row(cipher):
    encrypted = cipher.encrypt("JBSWY3DPEHPK3PXP")
    row = _user_row(two_factor_status="enabled", two_factor_secret=encrypted)
    store = _store(ScriptedPool(_Result([row])), cipher)

    user = store.get_user_by_username("alice")

    assert user.two_factor == TwoFactorEnabled("JBSWY3DPEHPK3PXP")


def test_set_two_factor_compare_and_set(cipher):
    pool = ScriptedPool(_Result([{"two_factor_status": "disabled", "two_factor_secret": None}]))
    store = _store(pool, cipher)

    changed = store.set_two_factor(
        "user-1", TwoFactorPending("JBSWY3DPEHPK3PXP"), expected=TwoFactorDisabled()
    )

    assert changed is True
    select_sql, select_params = pool.statements[0]
    assert select_sql.endswith("FOR UPDATE")
    assert select_params == ("user-1",)
    sql, params = pool.statements[1]
    assert sql.startswith("UPDATE app_user SET two_factor_status")
    assert params[0] == "pending"
    assert params[1] != "JBSWY3DPEHPK3PXP"
    assert cipher.decrypt(params[1]) == "JBSWY3DPEHPK3PXP"
    assert params[2] == "user-1"


def test_set_two_factor_rejects_replaced_pending_secret(cipher):
    stored = {"two_factor_status": "pending", "two_factor_secret": cipher.encrypt("SECONDSECRET")}
    pool = ScriptedPool(_Result([stored]))
    store = _store(pool, cipher)

    changed = store.set_two_factor(
        "user-1", TwoFactorEnabled("FIRSTSECRET"), expected=TwoFactorPending("FIRSTSECRET")
    )

    assert changed is False
    # No UPDATE was issued
    assert len(pool.statements) == 1


def test_set_two_factor_unknown_user(cipher):
    pool = ScriptedPool(_Result())
    store = _store(pool, cipher)

    assert store.set_two_factor("user-1", TwoFactorDisabled()) is False
    assert len(pool.statements) == 1


def test_heartbeat_upsert_keeps_latest(cipher):
    pool = ScriptedPool()
    store = _store(pool, cipher)

    store.upsert_heartbeat("user-1", datetime.now(timezone.utc))

    sql, _ = pool.statements[0]
    assert "ON CONFLICT (user_id) DO UPDATE" in sql
    assert "GREATEST" in sql


def test_heartbeat_for_missing_user(cipher):
    store = _store(ScriptedPool(errors.ForeignKeyViolation("fk")), cipher)

    with pytest.raises(ConstraintViolation):
        store.upsert_heartbeat("user-1", datetime.now(timezone.utc))


def test_friend_violations_carry_reason(cipher):
    store = _store(
        ScriptedPool(errors.UniqueViolation("dup"), errors.ForeignKeyViolation("fk")), cipher
    )

    with pytest.raises(ConstraintViolation) as duplicate:
        store.add_friend("a", "b")
    with pytest.raises(ConstraintViolation) as missing:
        store.add_friend("a", "c")

    assert duplicate.value.detail["reason"] == "duplicate"
    assert missing.value.detail["reason"] == "missing"


def test_delete_user_tokens_returns_rowcount(cipher):
    store = _store(ScriptedPool(_Result(rowcount=3)), cipher)

    assert store.delete_user_tokens("user-1") == 3


def test_token_owner_lookup(cipher):
    owner = uuid.uuid4()
    store = _store(ScriptedPool(_Result([{"user_id": owner}]), _Result()), cipher)

    assert store.get_token_owner("token-a") == str(owner)
    assert store.get_token_owner("token-b") is None
