import threading
from datetime import timedelta

import pytest

from classgate.storage import memory as memory_module
from classgate.storage.common import permission_id_for
from classgate.storage.errors import ConstraintViolation
from classgate.storage.memory import MemoryStore
from classgate.storage.models import (
    AccountLockout,
    AccountStatus,
    EventCategory,
    FailedLoginAttempt,
    FailureReason,
    LockoutReason,
    Role,
    SecurityAuditLog,
    SecurityEventType,
    Session,
    utcnow,
)


def test_memory_store_persists_accounts_sessions_and_grants(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "Persist@Example.com",
        username="persist",
        role=Role.TEACHER,
        first_name="Per",
    )
    store.save_password(user.id, "$argon2id$fake", "argon2id")
    session = store.create_session(
        Session.new(
            user.id,
            "tok-1",
            15,
            refresh_token="ref-1",
            refresh_ttl_minutes=60,
            ip_address="2001:db8::1",
        )
    )
    store.grant_user_permission(
        user.id, permission_id_for("system:admin"), "admin-1", utcnow() + timedelta(hours=1)
    )
    store.create_lockout(
        AccountLockout(id="lock-1", user_id=user.id, reason=LockoutReason.ADMIN_ACTION)
    )
    store.append_audit_log(
        SecurityAuditLog(
            id="audit-1",
            event_type=SecurityEventType.LOGIN_SUCCESS,
            event_category=EventCategory.AUTHENTICATION,
            description="Login succeeded",
            success=True,
            user_id=user.id,
            metadata={"remember_me": False},
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.email == "persist@example.com"
    assert reloaded_user.role == Role.TEACHER
    assert reloaded_user.first_name == "Per"
    assert reloaded.get_password_record(user.id).password_algo == "argon2id"

    reloaded_session = reloaded.get_session_by_token("tok-1")
    assert reloaded_session.id == session.id
    assert reloaded_session.ip_address == "2001:db8::1"
    assert reloaded_session.expires_at == session.expires_at
    assert reloaded_session.refresh_expires_at == session.refresh_expires_at

    grants = reloaded.get_user_permissions(user.id)
    assert [perm.name for _, perm in grants] == ["system:admin"]
    assert grants[0][0].expires_at is not None
    assert reloaded.get_active_lockout(user.id).id == "lock-1"
    assert reloaded.list_audit_logs(user_id=user.id)[0].metadata == {"remember_me": False}


def test_default_catalog_is_seeded(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    names = {p.name for p in store.get_role_permissions(Role.STUDENT)}
    assert names == {"courses:read", "quizzes:take", "profile:read", "profile:write"}
    assert store.get_permission(permission_id_for("system:admin")).name == "system:admin"


def test_email_and_username_are_unique(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    first = store.create_user("dup@example.com", username="dup")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("DUP@example.com")
    assert exc_info.value.field == "email"
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("other@example.com", username="dup")
    assert exc_info.value.field == "username"
    other = store.create_user("other@example.com")
    with pytest.raises(ConstraintViolation):
        store.update_user(other.id, email="dup@example.com")
    assert store.get_user_by_username("dup").id == first.id


def test_update_user_rejects_unknown_fields(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("fields@example.com")
    with pytest.raises(ValueError):
        store.update_user(user.id, password_hash="nope")
    assert store.update_user("missing", role=Role.ADMIN) is None


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("copy@example.com")
    user.account_status = AccountStatus.SUSPENDED
    assert store.get_user(user.id).account_status == AccountStatus.ACTIVE


def test_increment_login_attempts_is_atomic(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("race@example.com")
    results = []
    results_lock = threading.Lock()

    def worker():
        value = store.increment_login_attempts(user.id)
        with results_lock:
            results.append(value)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == list(range(1, 21))
    with pytest.raises(ConstraintViolation):
        store.increment_login_attempts("missing")


def test_snapshot_is_replaced_atomically(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("first@example.com")
    snapshot = tmp_path / "state" / "auth_store.json"
    before = snapshot.read_text()
    assert snapshot.stat().st_mode & 0o777 == 0o600

    def fail_replace(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(memory_module.os, "replace", fail_replace)
    with pytest.raises(RuntimeError):
        store.create_user("second@example.com")

    assert snapshot.read_text() == before
    assert list(snapshot.parent.glob("*.tmp")) == []


def test_session_lifecycle(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("sess@example.com")
    store.create_session(Session.new(user.id, "tok-a", 15, refresh_token="ref-a"))
    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new(user.id, "tok-a", 15))
    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new("ghost", "tok-z", 15))

    assert store.touch_session("tok-a", utcnow())
    assert store.invalidate_session("tok-a")
    assert not store.invalidate_session("tok-a")
    assert store.touch_session("tok-a", utcnow()) is None
    assert not store.invalidate_session_by_refresh_token("ref-a")

    store.create_session(Session.new(user.id, "tok-b", 15))
    store.create_session(Session.new(user.id, "tok-c", 15))
    assert store.invalidate_user_sessions(user.id) == 2
    assert store.delete_expired_sessions(utcnow()) == 3
    assert not store.sessions


def test_delete_expired_sessions_keeps_refresh_window(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("window@example.com")
    refreshable = store.create_session(
        Session.new(user.id, "tok-r", 15, refresh_token="ref-r", refresh_ttl_minutes=60)
    )
    store.create_session(Session.new(user.id, "tok-n", 15))

    later = utcnow() + timedelta(minutes=30)
    assert store.delete_expired_sessions(later) == 1
    assert refreshable.id in store.sessions
    assert store.delete_expired_sessions(later + timedelta(hours=1)) == 1
    assert not store.sessions


def test_permission_grants(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("perm@example.com")
    perm = store.create_permission("grades:read", "grades", "read", "View grades")
    with pytest.raises(ConstraintViolation):
        store.create_permission("grades:read", "grades", "read")
    with pytest.raises(ConstraintViolation):
        store.create_permission("blank", "", "read")

    store.grant_role_permission(Role.PARENT, perm.id)
    store.grant_role_permission(Role.PARENT, perm.id)
    assert [p.name for p in store.get_role_permissions(Role.PARENT)].count("grades:read") == 1
    with pytest.raises(ConstraintViolation):
        store.grant_role_permission(Role.PARENT, "missing")

    first_expiry = utcnow() + timedelta(hours=1)
    store.grant_user_permission(user.id, perm.id, expires_at=first_expiry)
    store.grant_user_permission(user.id, perm.id)
    grants = store.get_user_permissions(user.id)
    assert len(grants) == 1
    assert grants[0][0].expires_at is None
    with pytest.raises(ConstraintViolation):
        store.grant_user_permission("ghost", perm.id)

    assert store.revoke_user_permission(user.id, perm.id)
    assert not store.revoke_user_permission(user.id, perm.id)
    assert store.revoke_role_permission(Role.PARENT, perm.id)
    assert not store.revoke_role_permission(Role.PARENT, perm.id)


def test_failed_attempt_counts(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    for identifier, ip in (("a@x.com", "10.0.0.1"), ("b@x.com", "10.0.0.1"), ("a@x.com", "10.0.0.2")):
        store.record_failed_attempt(
            FailedLoginAttempt.new(identifier, ip, FailureReason.INVALID_CREDENTIALS)
        )
    since = utcnow() - timedelta(minutes=1)
    assert store.count_failed_attempts(since=since, ip_address="10.0.0.1") == 2
    assert store.count_failed_attempts(since=since, identifier="a@x.com") == 2
    assert store.count_failed_attempts(since=utcnow() + timedelta(seconds=1)) == 0


def test_single_active_lockout(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("lock@example.com")
    store.create_lockout(AccountLockout(id="l1", user_id=user.id, reason=LockoutReason.FAILED_ATTEMPTS))
    store.create_lockout(AccountLockout(id="l2", user_id=user.id, reason=LockoutReason.ADMIN_ACTION))
    assert store.get_active_lockout(user.id).id == "l2"
    assert store.clear_lockout(user.id)
    assert store.get_active_lockout(user.id) is None
    assert not store.clear_lockout(user.id)
    with pytest.raises(ConstraintViolation):
        store.create_lockout(AccountLockout(id="l3", user_id="ghost", reason=LockoutReason.ADMIN_ACTION))


def test_audit_log_filters(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    for idx, event in enumerate((SecurityEventType.LOGIN_SUCCESS, SecurityEventType.LOGOUT)):
        store.append_audit_log(
            SecurityAuditLog(
                id=f"a{idx}",
                event_type=event,
                event_category=EventCategory.AUTHENTICATION,
                description=event.value,
                success=True,
                user_id="u1",
            )
        )
    assert [e.id for e in store.list_audit_logs(event_type=SecurityEventType.LOGOUT)] == ["a1"]
    assert len(store.list_audit_logs(user_id="u1")) == 2
    assert len(store.list_audit_logs(user_id="u1", limit=1)) == 1
    assert store.list_audit_logs(category=EventCategory.AUTHORIZATION) == []
