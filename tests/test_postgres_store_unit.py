"""PostgresStore unit tests against a scripted connection; no database needed."""

import contextlib
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
from psycopg import errors

from intelliguard.storage.errors import ConstraintViolation
from intelliguard.storage.models import Account, AccountStatus, RefreshToken, Role
from intelliguard.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows: Optional[List[dict]] = None, rowcount: int = 0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and answers them from a queue of scripted results."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.statements: List[tuple] = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeResult()
        if isinstance(response, Exception):
            raise response
        return response

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class ScriptedPool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def create_test_store(responses=()) -> tuple:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(list(responses))
    store.pool = ScriptedPool(conn)
    store.dsn = "postgresql://test"
    return store, conn


def account_row(**overrides) -> dict:
    row = {
        "id": "acct-1",
        "email": "a@x.com",
        "password_hash": "hash",
        "role_id": "role-1",
        "role_name": "VIEWER",
        "first_name": None,
        "last_name": None,
        "status": "PENDING_VERIFICATION",
        "email_verified": False,
        "email_verification_token": "verify",
        "failed_login_attempts": 0,
        "locked_until": None,
        "password_reset_token": None,
        "password_reset_expires_at": None,
        "last_password_change_at": None,
        "created_at": NOW,
        "updated_at": NOW,
        "last_login_at": None,
        "deleted_at": None,
        "version": 3,
    }
    row.update(overrides)
    return row


def new_account() -> Account:
    return Account.new(
        "a@x.com", "hash", Role(id="role-1", name="VIEWER"), verification_token="v", now=NOW
    )


def test_dummy_pool_guards_against_database_access():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()

    with pytest.raises(AssertionError):
        store.get_account("acct-1")


class TestRowMapping:
    def test_account_row_resolves_role(self):
        account = PostgresStore._row_to_account(
            account_row(status="ACTIVE", email_verified=True, locked_until=NOW)
        )

        assert account.role == Role(id="role-1", name="VIEWER")
        assert account.status == AccountStatus.ACTIVE
        assert account.is_active
        assert account.locked_until == NOW
        assert account.version == 3

    def test_get_account_joins_role(self):
        store, conn = create_test_store([FakeResult([account_row()])])

        account = store.get_account("acct-1")

        assert account.id == "acct-1"
        sql, params = conn.statements[0]
        assert "JOIN role r ON r.id = a.role_id" in sql
        assert params == ("acct-1",)

    def test_missing_account(self):
        store, _ = create_test_store([FakeResult([])])

        assert store.get_account("nope") is None

    def test_active_listing_filters_verified_and_live(self):
        store, conn = create_test_store([FakeResult([])])

        assert store.list_active_accounts() == []
        sql, params = conn.statements[0]
        assert "a.email_verified AND a.deleted_at IS NULL" in sql
        assert params == ("ACTIVE", 100)

    def test_empty_token_lookups_skip_the_database(self):
        store, conn = create_test_store()

        assert store.get_account_by_verification_token("") is None
        assert store.get_account_by_reset_token("") is None
        assert conn.statements == []


class TestSaveAccount:
    def test_upsert_returns_stored_version(self):
        store, conn = create_test_store([FakeResult([{"created_at": NOW, "version": 4}])])
        account = new_account()

        saved = store.save_account(account)

        assert saved.version == 4
        assert saved is not account
        sql, params = conn.statements[0]
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert "version = app_account.version + 1" in sql
        assert "created_at = EXCLUDED.created_at" not in sql
        assert params["status"] == "PENDING_VERIFICATION"

    def test_unique_violation_maps_to_email(self):
        store, _ = create_test_store([errors.UniqueViolation("duplicate key")])

        with pytest.raises(ConstraintViolation) as exc_info:
            store.save_account(new_account())
        assert exc_info.value.field == "email"

    def test_foreign_key_violation_maps_to_role(self):
        store, _ = create_test_store([errors.ForeignKeyViolation("missing role")])

        with pytest.raises(ConstraintViolation) as exc_info:
            store.save_account(new_account())
        assert exc_info.value.field == "role_id"

    def test_versioned_save_is_conditional(self):
        store, conn = create_test_store([FakeResult([{"created_at": NOW, "version": 4}])])
        account = new_account()

        saved = store.save_account(account, expected_version=3)

        assert saved.version == 4
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE app_account")
        assert "WHERE id = %(id)s AND version = %(expected_version)s" in sql
        assert "ON CONFLICT" not in sql
        assert params["expected_version"] == 3

    def test_stale_versioned_save_raises(self):
        store, _ = create_test_store([FakeResult([])])

        with pytest.raises(ConstraintViolation) as exc_info:
            store.save_account(new_account(), expected_version=3)
        assert exc_info.value.field == "version"


class TestCompareAndSetLockout:
    def test_version_mismatch_returns_none(self):
        store, conn = create_test_store([FakeResult(rowcount=0)])

        result = store.compare_and_set_lockout(
            "acct-1", expected_version=3, failed_login_attempts=1, locked_until=None, now=NOW
        )

        assert result is None
        sql, params = conn.statements[0]
        assert "WHERE id = %s AND version = %s" in sql
        assert params[-2:] == ("acct-1", 3)
        assert len(conn.statements) == 1

    def test_match_returns_updated_account(self):
        locked = NOW + timedelta(minutes=15)
        store, _ = create_test_store(
            [
                FakeResult(rowcount=1),
                FakeResult([account_row(failed_login_attempts=5, locked_until=locked, version=4)]),
            ]
        )

        result = store.compare_and_set_lockout(
            "acct-1", expected_version=3, failed_login_attempts=5, locked_until=locked, now=NOW
        )

        assert result.failed_login_attempts == 5
        assert result.locked_until == locked


class TestTokenUnits:
    def test_rotate_locks_account_then_inserts(self):
        store, conn = create_test_store(
            [FakeResult([{"id": "acct-1"}]), FakeResult(rowcount=1), FakeResult()]
        )
        replacement = RefreshToken.new("acct-1", "new", now=NOW, ttl=timedelta(days=7))

        assert store.rotate_token("old", replacement, NOW) is True

        assert conn.transactions == 1
        statements = [sql for sql, _ in conn.statements]
        assert "FOR UPDATE" in statements[0]
        assert "revoked = FALSE AND expires_at > %s" in statements[1]
        assert statements[2].startswith("INSERT INTO refresh_token")

    def test_rotate_lost_race_inserts_nothing(self):
        store, conn = create_test_store([FakeResult([{"id": "acct-1"}]), FakeResult(rowcount=0)])
        replacement = RefreshToken.new("acct-1", "new", now=NOW, ttl=timedelta(days=7))

        assert store.rotate_token("old", replacement, NOW) is False
        assert not any(sql.startswith("INSERT") for sql, _ in conn.statements)

    def test_replace_account_tokens_counts_revoked(self):
        store, conn = create_test_store(
            [FakeResult([{"id": "acct-1"}]), FakeResult(rowcount=2), FakeResult()]
        )
        token = RefreshToken.new("acct-1", "new", now=NOW, ttl=timedelta(days=7))

        assert store.replace_account_tokens("acct-1", token, NOW) == 2
        assert conn.transactions == 1

    def test_replace_for_missing_account(self):
        store, _ = create_test_store([FakeResult([])])
        token = RefreshToken.new("ghost", "new", now=NOW, ttl=timedelta(days=7))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.replace_account_tokens("ghost", token, NOW)
        assert exc_info.value.field == "account_id"

    def test_token_collision_maps_to_token_field(self):
        store, _ = create_test_store([errors.UniqueViolation("duplicate key")])
        token = RefreshToken.new("acct-1", "dup", now=NOW, ttl=timedelta(days=7))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.save_refresh_token(token)
        assert exc_info.value.field == "token"

    def test_delete_expired_uses_strict_comparison(self):
        store, conn = create_test_store([FakeResult(rowcount=3)])

        assert store.delete_expired_tokens(NOW) == 3
        assert "expires_at < %s" in conn.statements[0][0]


class TestRecordLogin:
    def test_updates_account_and_replaces_tokens_in_one_transaction(self):
        store, conn = create_test_store(
            [
                FakeResult([{"id": "acct-1"}]),
                FakeResult(rowcount=1),
                FakeResult(),
                FakeResult([account_row(last_login_at=NOW, version=4)]),
            ]
        )
        token = RefreshToken.new("acct-1", "new", now=NOW, ttl=timedelta(days=7))

        account, revoked = store.record_login("acct-1", token, NOW, password_hash="rehashed")

        assert revoked == 1
        assert account.last_login_at == NOW
        assert account.version == 4
        assert conn.transactions == 1
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE app_account")
        assert "deleted_at IS NULL" in sql
        assert "locked_until IS NULL OR locked_until < %s" in sql
        assert params[2] == "rehashed"
        assert conn.statements[2][0].startswith("INSERT INTO refresh_token")

    def test_deleted_or_locked_account_writes_nothing(self):
        store, conn = create_test_store([FakeResult([])])
        token = RefreshToken.new("acct-1", "new", now=NOW, ttl=timedelta(days=7))

        assert store.record_login("acct-1", token, NOW) is None
        assert len(conn.statements) == 1
