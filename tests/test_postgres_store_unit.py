from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authsvc.logging import get_logger
from authsvc.storage.errors import ConstraintViolation
from authsvc.storage.models import AccountTier, IdentityProvider, RevocationEntry, User
from authsvc.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class RecordingConnection:
    def __init__(self, responses):
        self.responses = responses
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class RecordingPool:
    def __init__(self, *responses):
        self.conn = RecordingConnection(list(responses))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    row = {
        "id": "u-1",
        "email": "row@example.com",
        "password_digest": "digest",
        "first_name": "Ro",
        "last_name": "W",
        "enabled": True,
        "account_tier": "VIP",
        "identity_provider": "LOCAL",
        "external_provider_id": None,
        "profile_picture_url": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_unit_store_never_touches_database():
    store = _store(DummyPool())
    with pytest.raises(AssertionError):
        store.find_by_email("a@example.com")


def test_find_by_email_normalizes_and_maps_row():
    pool = RecordingPool(FakeCursor([_row()]))
    user = _store(pool).find_by_email("  ROW@Example.com ")

    sql, params = pool.conn.executed[0]
    assert "WHERE email = %s" in sql
    assert params == ("row@example.com",)
    assert user.id == "u-1"
    assert user.account_tier == AccountTier.VIP


def test_legacy_provider_value_maps_to_external():
    pool = RecordingPool(FakeCursor([_row(identity_provider="GOOGLE")]))
    user = _store(pool).get_user("u-1")
    assert user.identity_provider == IdentityProvider.EXTERNAL


def test_exists_by_email():
    pool = RecordingPool(FakeCursor([{"?column?": 1}]), FakeCursor([]))
    store = _store(pool)
    assert store.exists_by_email("row@example.com") is True
    assert store.exists_by_email("none@example.com") is False


def test_save_upserts_by_id():
    pool = RecordingPool(FakeCursor([_row(account_tier="STANDARD")]))
    user = User.new("Row@Example.com", password_digest="digest")
    saved = _store(pool).save(user)

    sql, params = pool.conn.executed[0]
    assert "ON CONFLICT (id) DO UPDATE" in sql
    assert params[0] == user.id
    assert params[1] == "row@example.com"
    assert saved.email == "row@example.com"


def test_save_maps_unique_violation():
    pool = RecordingPool(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(pool).save(User.new("dup@example.com"))
    assert excinfo.value.detail == {"field": "email"}


def test_revocation_queries():
    expires = datetime.now(timezone.utc) + timedelta(minutes=5)
    pool = RecordingPool(FakeCursor(), FakeCursor([{"?column?": 1}]), FakeCursor(rowcount=3))
    store = _store(pool)

    store.insert_revocation(RevocationEntry("tok", "a@example.com", expires))
    assert store.revocation_exists("tok") is True
    assert store.purge_expired_revocations() == 3

    insert_sql, insert_params = pool.conn.executed[0]
    assert "ON CONFLICT (token_id) DO NOTHING" in insert_sql
    assert insert_params[:3] == ("tok", "a@example.com", expires)
    assert "expires_at > now()" in pool.conn.executed[1][0]
    assert pool.conn.executed[2][0].startswith("DELETE FROM revoked_token")
