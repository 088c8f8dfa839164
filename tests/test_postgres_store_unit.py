import contextlib
from datetime import datetime, timezone

import pytest
from psycopg import errors

from classgate.logging import get_logger
from classgate.storage.errors import ConstraintViolation, StorageError
from classgate.storage.models import (
    AccountStatus,
    LockoutReason,
    LoginMethod,
    RiskLevel,
    Role,
    SecurityEventType,
    Session,
)
from classgate.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class FakeConnection:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        return FakeCursor(self.row, self.rowcount)


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://stub"
    store.logger = get_logger(__name__)
    return store


def test_user_row_mapping_attaches_utc():
    naive = datetime(2024, 5, 1, 12, 0, 0)
    user = PostgresStore._user_from_row(
        {
            "id": "3f0c4f9e-1111-4222-8333-444455556666",
            "email": "row@example.com",
            "username": None,
            "role": "teacher",
            "account_status": "suspended",
            "login_attempts": None,
            "email_verified": True,
            "first_name": "Ro",
            "last_name": None,
            "created_at": naive,
            "updated_at": naive,
            "last_login": None,
            "meta": '{"source": "import"}',
        }
    )
    assert user.role == Role.TEACHER
    assert user.account_status == AccountStatus.SUSPENDED
    assert user.login_attempts == 0
    assert user.created_at.tzinfo == timezone.utc
    assert user.meta == {"source": "import"}


def test_session_and_lockout_row_mapping():
    now = datetime.now(timezone.utc)
    session = PostgresStore._session_from_row(
        {
            "id": "s1",
            "user_id": "u1",
            "token": "tok",
            "refresh_token": None,
            "expires_at": now,
            "refresh_expires_at": None,
            "created_at": now,
            "last_activity": now,
            "login_method": "sso",
            "is_active": False,
            "ip_address": "2001:0db8::0001",
            "user_agent": "ua",
        }
    )
    assert session.login_method == LoginMethod.SSO
    assert not session.is_active
    assert session.ip_address == "2001:db8::1"

    lockout = PostgresStore._lockout_from_row(
        {
            "id": "l1",
            "user_id": "u1",
            "reason": "admin_action",
            "locked_at": now,
            "locked_until": None,
            "locked_by": "admin-1",
            "is_active": True,
        }
    )
    assert lockout.reason == LockoutReason.ADMIN_ACTION
    assert lockout.is_in_force(now)


def test_audit_row_mapping():
    entry = PostgresStore._audit_from_row(
        {
            "id": "a1",
            "event_type": "access_denied",
            "event_category": "authorization",
            "description": "Insufficient permissions for users:delete",
            "success": False,
            "risk_level": "medium",
            "created_at": datetime(2024, 1, 1),
            "user_id": None,
            "session_id": None,
            "metadata": {"role": "student"},
        }
    )
    assert entry.event_type == SecurityEventType.ACCESS_DENIED
    assert entry.risk_level == RiskLevel.MEDIUM
    assert entry.user_id is None
    assert entry.metadata == {"role": "student"}


def test_unique_violation_maps_to_constraint_violation():
    store = _store(FakePool(error=errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.get_user("u1")


@pytest.mark.parametrize(
    "constraint, field",
    [
        ("user_account_email_key", "email"),
        ("user_account_username_key", "username"),
        ("user_session_refresh_token_key", "refresh_token"),
        ("user_session_token_key", "token"),
        ("permission_name_key", "name"),
        ("role_permission_permission_id_fkey", None),
        (None, None),
    ],
)
def test_constraint_name_identifies_field(constraint, field):
    assert ConstraintViolation("unique constraint violated", {"constraint": constraint}).field == field


def test_driver_failure_maps_to_storage_error():
    store = _store(FakePool(error=errors.OperationalError("connection refused")))
    with pytest.raises(StorageError):
        store.get_user("u1")


def test_update_user_validates_fields_before_connecting():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.update_user("u1", password_hash="nope")


def test_update_user_builds_assignments():
    conn = FakeConnection(row=None)
    store = _store(FakePool(conn))
    assert store.update_user("u1", role=Role.ADMIN, email="MiXed@Example.com") is None
    sql, params = conn.executed[0]
    assert "email = %s" in sql and "role = %s" in sql
    assert params == ("mixed@example.com", "admin", "u1")


def test_increment_login_attempts_is_a_single_statement():
    conn = FakeConnection(row={"login_attempts": 3})
    store = _store(FakePool(conn))
    assert store.increment_login_attempts("u1") == 3
    assert len(conn.executed) == 1
    assert "login_attempts + 1" in conn.executed[0][0]


def test_increment_login_attempts_unknown_user():
    store = _store(FakePool(FakeConnection(row=None)))
    with pytest.raises(ConstraintViolation):
        store.increment_login_attempts("missing")


def test_create_session_stores_refresh_expiry():
    session = Session.new("u1", "tok", 15, refresh_token="ref", refresh_ttl_minutes=60)
    row = {
        "id": session.id,
        "user_id": "u1",
        "token": "tok",
        "refresh_token": "ref",
        "expires_at": session.expires_at,
        "refresh_expires_at": session.refresh_expires_at,
        "login_method": "password",
        "is_active": True,
    }
    conn = FakeConnection(row=row)
    stored = _store(FakePool(conn)).create_session(session)

    sql, params = conn.executed[0]
    assert "refresh_expires_at" in sql
    assert sql.count("%s") == len(params)
    assert session.refresh_expires_at in params
    assert stored.retained_until == session.refresh_expires_at


def test_expired_session_purge_honours_refresh_window():
    conn = FakeConnection(rowcount=2)
    now = datetime.now(timezone.utc)
    assert _store(FakePool(conn)).delete_expired_sessions(now) == 2
    sql, params = conn.executed[0]
    assert "NOT is_active" in sql
    assert "refresh_expires_at" in sql
    assert params == (now,)
