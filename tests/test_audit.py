import pytest
from pydantic import ValidationError

from classgate.schemas import LoginRequest, RegisterRequest, validate_email, validate_username
from classgate.service.audit import AuditLog
from classgate.storage.models import EventCategory, RiskLevel, SecurityEventType


async def test_record_redacts_sensitive_metadata(memory_store):
    audit = AuditLog(memory_store)
    entry = await audit.record(
        SecurityEventType.PASSWORD_RESET_REQUEST,
        EventCategory.AUTHENTICATION,
        "Password reset requested",
        success=True,
        user_id="u1",
        ip_address="10.0.0.9",
        metadata={"reset_token": "abc", "new_password": "x", "client_secret": "s", "via": "email"},
    )
    assert entry is not None
    assert entry.metadata == {
        "reset_token": "[REDACTED]",
        "new_password": "[REDACTED]",
        "client_secret": "[REDACTED]",
        "via": "email",
    }
    stored = memory_store.list_audit_logs(user_id="u1")[0]
    assert stored.metadata["reset_token"] == "[REDACTED]"
    assert stored.ip_address == "10.0.0.9"
    assert stored.risk_level == RiskLevel.LOW


async def test_record_swallows_append_failure(memory_store, monkeypatch):
    def broken(entry):
        raise RuntimeError("disk full")

    monkeypatch.setattr(memory_store, "append_audit_log", broken)
    audit = AuditLog(memory_store)
    result = await audit.record(
        SecurityEventType.LOGIN_FAILURE,
        EventCategory.AUTHENTICATION,
        "Login failed",
        success=False,
        risk_level=RiskLevel.HIGH,
    )
    assert result is None


async def test_list_events_filters(memory_store):
    audit = AuditLog(memory_store)
    await audit.record(
        SecurityEventType.LOGIN_SUCCESS, EventCategory.AUTHENTICATION, "ok", success=True, user_id="u1"
    )
    await audit.record(
        SecurityEventType.ACCESS_DENIED,
        EventCategory.AUTHORIZATION,
        "denied",
        success=False,
        risk_level=RiskLevel.MEDIUM,
        user_id="u1",
    )
    await audit.record(
        SecurityEventType.LOGIN_SUCCESS, EventCategory.AUTHENTICATION, "ok", success=True, user_id="u2"
    )

    assert len(await audit.list_events(user_id="u1")) == 2
    denied = await audit.list_events(category=EventCategory.AUTHORIZATION)
    assert [e.event_type for e in denied] == [SecurityEventType.ACCESS_DENIED]
    logins = await audit.list_events(event_type=SecurityEventType.LOGIN_SUCCESS, limit=1)
    assert len(logins) == 1


class TestSchemas:
    def test_email_is_normalized(self):
        assert validate_email("  Mixed.Case@Example.COM ") == "mixed.case@example.com"

    def test_zero_width_characters_are_stripped(self):
        assert validate_email("ab\u200bc@example.com") == "abc@example.com"
        assert validate_username("jo\u200dhn") == "john"

    @pytest.mark.parametrize(
        "value", ["no-at-sign", "@example.com", "user@", "user@localhost", "a b@example.com"]
    )
    def test_invalid_email(self, value):
        with pytest.raises(ValueError):
            validate_email(value)

    @pytest.mark.parametrize("value", ["ab", "x" * 65, "bad name", "semi;colon"])
    def test_invalid_username(self, value):
        with pytest.raises(ValueError):
            validate_username(value)

    def test_register_request_validation(self):
        request = RegisterRequest(
            email="New@Example.com", password="pw", username="new.user", first_name="  "
        )
        assert request.email == "new@example.com"
        assert request.first_name is None
        with pytest.raises(ValidationError):
            RegisterRequest(email="broken", password="pw")
        with pytest.raises(ValidationError):
            RegisterRequest(email="ok@example.com", password="")

    def test_login_identifier(self):
        by_email = LoginRequest(identifier=" User@Example.com ", password="pw")
        assert by_email.identifier == "user@example.com"
        assert by_email.is_email
        by_name = LoginRequest(identifier="UserName", password="pw")
        assert by_name.identifier == "UserName"
        assert not by_name.is_email
