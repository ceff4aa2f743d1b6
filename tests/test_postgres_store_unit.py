from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from identitycore.logging import get_logger
from identitycore.storage.errors import ConstraintViolation
from identitycore.storage.postgres import (
    PostgresStore,
    _foreign_key_violation,
    _unique_violation,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [] if self.row is None else [self.row]


class FakeConnection:
    """Replays queued results and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def make_store(pool):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger(__name__)
    store.pool = pool
    return store


def violation(base, constraint):
    cls = type(base.__name__, (base,), {"diag": SimpleNamespace(constraint_name=constraint)})
    return cls("violation")


def token_row(**overrides):
    row = {
        "id": 2,
        "token": "new",
        "account_id": 7,
        "expires_at": NOW + timedelta(days=1),
        "family_id": "fam",
        "generation": 1,
        "mobile": False,
        "identifier": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_unstubbed_access_fails_loudly():
    store = make_store(DummyPool())

    with pytest.raises(AssertionError):
        store.get_token("anything")


class TestConstraintMapping:
    """Tests for translating psycopg errors."""

    @pytest.mark.parametrize(
        "constraint, field",
        [
            ("account_email_key", "email"),
            ("account_username_key", "username"),
            ("role_name_key", "name"),
            ("auth_token_token_key", "token"),
        ],
    )
    def test_unique_violation_names_field(self, constraint, field):
        exc = _unique_violation(SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint)))

        assert isinstance(exc, ConstraintViolation)
        assert exc.field == field

    def test_foreign_key_violation_picks_matching_column(self):
        exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="account_role_role_id_fkey"))

        mapped = _foreign_key_violation(exc, account_id=1, role_id=2)

        assert mapped.detail == {"role_id": 2}
        assert str(mapped) == "role does not exist"

    def test_foreign_key_violation_defaults_to_first(self):
        exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=None))

        assert _foreign_key_violation(exc, account_id=9).detail == {"account_id": 9}


class TestAtomicUnits:
    """Statement flow of the transactional operations."""

    def test_rotate_token_claims_then_inserts(self):
        conn = FakeConnection([FakeResult({"account_id": 7}), FakeResult(token_row())])
        store = make_store(FakePool(conn))

        token = store.rotate_token(
            "old", token="new", expires_at=NOW + timedelta(days=1), family_id="fam", generation=1
        )

        assert token.account_id == 7
        assert token.generation == 1
        assert conn.transactions == 1
        assert conn.statements[0][0].startswith("DELETE FROM auth_token WHERE token = %s RETURNING")
        assert conn.statements[1][1][:2] == ("new", 7)

    def test_rotate_token_lost_race(self):
        conn = FakeConnection([FakeResult(None)])
        store = make_store(FakePool(conn))

        assert (
            store.rotate_token("old", token="new", expires_at=NOW, family_id="fam", generation=1)
            is None
        )
        assert len(conn.statements) == 1

    def test_redeem_invitation_requires_pending_claim(self):
        conn = FakeConnection([FakeResult(None)])
        store = make_store(FakePool(conn))

        result = store.redeem_invitation(
            3, email="new@x.com", password_hash="h", role_id=1, when=NOW
        )

        assert result is None
        sql, params = conn.statements[0]
        assert "state = 'pending' AND expires_at > %s" in sql
        assert params == (NOW, NOW, 3, NOW)

    def test_redeem_invitation_duplicate_email(self):
        conn = FakeConnection(
            [FakeResult({"id": 3}), violation(errors.UniqueViolation, "account_email_key")]
        )
        store = make_store(FakePool(conn))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.redeem_invitation(3, email="a@x.com", password_hash="h", role_id=1, when=NOW)
        assert exc_info.value.field == "email"

    def test_redeem_reset_token_updates_and_revokes(self):
        conn = FakeConnection(
            [FakeResult({"account_id": 7}), FakeResult(rowcount=1), FakeResult(rowcount=2)]
        )
        store = make_store(FakePool(conn))

        assert store.redeem_reset_token(5, "new-hash", NOW) == 7
        assert conn.statements[1][1] == ("new-hash", 7)
        assert conn.statements[2][0] == "DELETE FROM auth_token WHERE account_id = %s"

    def test_create_token_missing_account(self):
        conn = FakeConnection([violation(errors.ForeignKeyViolation, "auth_token_account_id_fkey")])
        store = make_store(FakePool(conn))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_token(99, "t", NOW, family_id="fam")
        assert exc_info.value.detail == {"account_id": 99}

    def test_latest_family_generation_empty(self):
        conn = FakeConnection([FakeResult({"generation": None})])
        store = make_store(FakePool(conn))

        assert store.latest_family_generation("fam") is None
