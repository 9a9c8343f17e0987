from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from coursegate.logging import get_logger
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import Customer, OAuthIdentity, Staff
from coursegate.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    async def fetchone(self):
        return self._row


class RecordingConnection:
    """Records every statement; answers from queued rows and rowcounts."""

    def __init__(self, pool):
        self.pool = pool

    async def execute(self, query, params=None):
        text = query if isinstance(query, str) else repr(query)
        self.pool.executed.append((text, params))
        if self.pool.raise_on_execute is not None:
            exc, self.pool.raise_on_execute = self.pool.raise_on_execute, None
            raise exc
        row = self.pool.rows.pop(0) if self.pool.rows else None
        rowcount = self.pool.rowcounts.pop(0) if self.pool.rowcounts else 0
        return FakeCursor(row, rowcount)

    @asynccontextmanager
    async def transaction(self):
        self.pool.transactions += 1
        yield


class RecordingPool:
    def __init__(self, rows=None, rowcounts=None):
        self.rows = list(rows or [])
        self.rowcounts = list(rowcounts or [])
        self.executed = []
        self.connections = 0
        self.transactions = 0
        self.raise_on_execute = None

    @asynccontextmanager
    async def connection(self):
        self.connections += 1
        yield RecordingConnection(self)


def _store(pool: RecordingPool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger("test")
    return store


NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_revoke_session_targets_track_table():
    """Staff revocations hit staff_sessions and only unrevoked rows."""
    pool = RecordingPool(rowcounts=[1])
    store = _store(pool)

    assert await store.revoke_session("staff", "sid") is True

    text, params = pool.executed[0]
    assert "staff_sessions" in text
    assert "revoked_at IS NULL" in text
    assert params == ("sid",)


@pytest.mark.asyncio
async def test_revoke_session_already_revoked_returns_false():
    """Zero updated rows means the session was already revoked or unknown."""
    pool = RecordingPool(rowcounts=[0])
    assert await _store(pool).revoke_session("customer", "sid") is False


@pytest.mark.asyncio
async def test_revoke_all_sessions_uses_principal_column():
    """Customer bulk revocation filters on customer_id."""
    pool = RecordingPool(rowcounts=[3])
    revoked = await _store(pool).revoke_all_sessions("customer", "c1")

    text, params = pool.executed[0]
    assert revoked == 3
    assert "'sessions'" in text and "customer_id" in text
    assert params == ("c1",)


@pytest.mark.asyncio
async def test_unknown_track_is_rejected_before_io():
    """An unknown track never reaches the database."""
    pool = RecordingPool()
    with pytest.raises(ValueError):
        await _store(pool).revoke_session("partner", "sid")
    assert pool.executed == []


@pytest.mark.asyncio
async def test_cleanup_revoked_runs_batches_until_short():
    """Batches repeat, one connection each, until a batch comes back short."""
    pool = RecordingPool(rowcounts=[1000, 1000, 5])
    deleted = await _store(pool).cleanup_revoked_sessions("customer", 7, 1000)

    assert deleted == 2005
    assert pool.connections == 3
    for text, params in pool.executed:
        assert "DELETE FROM" in text and "LIMIT" in text
        assert params == (7, 1000)


@pytest.mark.asyncio
async def test_cleanup_expired_adds_one_day_slack():
    """Expired cleanup deletes rows older than max age plus one day."""
    pool = RecordingPool(rowcounts=[0])
    deleted = await _store(pool).cleanup_expired_sessions("staff", 30, 500)

    assert deleted == 0
    text, params = pool.executed[0]
    assert "staff_sessions" in text
    assert params == (31, 500)


@pytest.mark.asyncio
async def test_create_customer_unique_violation_maps_to_constraint():
    """A duplicate email surfaces as ConstraintViolation('email')."""
    pool = RecordingPool()
    pool.raise_on_execute = errors.UniqueViolation("duplicate key")

    with pytest.raises(ConstraintViolation) as exc_info:
        await _store(pool).create_customer("Dup@Example.com", "hash")
    assert exc_info.value.constraint == "email"
    assert pool.executed[0][1][1] == "dup@example.com"


@pytest.mark.asyncio
async def test_create_session_missing_principal_maps_to_constraint():
    """A foreign key failure surfaces as ConstraintViolation('principal')."""
    pool = RecordingPool()
    pool.raise_on_execute = errors.ForeignKeyViolation("fk")

    with pytest.raises(ConstraintViolation) as exc_info:
        await _store(pool).create_session("customer", "missing")
    assert exc_info.value.constraint == "principal"


@pytest.mark.asyncio
async def test_find_active_session_maps_joined_row():
    """The joined row becomes a Session plus the track's principal type."""
    row = {
        "id": "sid",
        "principal_id": "st1",
        "created_at": NOW,
        "revoked_at": None,
        "p_id": "st1",
        "p_email": "staff@example.com",
        "p_password_hash": "hash",
        "p_name": "Ops",
        "p_role": "admin",
        "p_is_active": False,
        "p_created_at": NOW,
    }
    pool = RecordingPool(rows=[row])

    found = await _store(pool).find_active_session("staff", "sid", 30)

    assert found is not None
    session, principal = found
    assert session.id == "sid"
    assert isinstance(principal, Staff)
    assert principal.role == "admin"
    assert principal.is_active is False
    text, params = pool.executed[0]
    assert "make_interval" in text
    assert params == ("sid", 30)


@pytest.mark.asyncio
async def test_find_active_session_miss():
    """No row means no active session."""
    pool = RecordingPool(rows=[None])
    assert await _store(pool).find_active_session("customer", "sid", 30) is None


@pytest.mark.asyncio
async def test_oauth_existing_link_short_circuits():
    """A linked account is returned without inserting anything."""
    linked = {
        "id": "c1",
        "email": "oauth@example.com",
        "password_hash": None,
        "first_name": "Ada",
        "last_name": None,
        "avatar_url": None,
        "requires_password_reset": False,
        "created_at": NOW,
    }
    # advisory lock, then the link lookup
    pool = RecordingPool(rows=[None, linked])
    identity = OAuthIdentity(
        provider="google", provider_account_id="g-1", email="OAuth@example.com"
    )

    customer, is_new = await _store(pool).find_or_create_oauth_customer(identity)

    assert isinstance(customer, Customer)
    assert customer.id == "c1"
    assert is_new is False
    assert pool.transactions == 1
    assert "pg_advisory_xact_lock" in pool.executed[0][0]
    assert pool.executed[0][1] == ("oauth:oauth@example.com",)
    assert not any("INSERT" in text for text, _ in pool.executed)


@pytest.mark.asyncio
async def test_oauth_new_customer_inserts_customer_and_link():
    """No link and no email match creates both rows."""
    pool = RecordingPool(rows=[None, None, None])
    identity = OAuthIdentity(
        provider="google", provider_account_id="g-2", email="new@example.com"
    )

    customer, is_new = await _store(pool).find_or_create_oauth_customer(identity)

    assert is_new is True
    assert customer.password_hash is None
    inserts = [text for text, _ in pool.executed if "INSERT" in text]
    assert len(inserts) == 2
    assert "INSERT INTO customers" in inserts[0]
    assert "INSERT INTO oauth_accounts" in inserts[1]


@pytest.mark.asyncio
async def test_verify_required_schema_reports_missing_tables():
    """Startup fails loudly when migrations were not applied."""
    present = {"oid": 1}
    pool = RecordingPool(rows=[present, present, None, present, None])

    with pytest.raises(RuntimeError) as exc_info:
        await _store(pool)._verify_required_schema()
    assert "oauth_accounts" in str(exc_info.value)
    assert "staff" in str(exc_info.value)
