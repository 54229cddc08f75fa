"""Tests for the security audit logger."""

from dataclasses import FrozenInstanceError

import pytest

from roastauth.service.audit import AuditEvent, ClientInfo, Severity


class TestSecurityAuditLogger:
    def test_record_appends_to_sink(self, audit, memory_store, client_info):
        entry = audit.record(AuditEvent.LOGIN, Severity.LOW, client_info, user_id="user-1")

        stored = memory_store.list_audit_events()
        assert stored == [entry]
        assert entry.event == "login"
        assert entry.severity == "low"
        assert entry.ip_address == "203.0.113.7"
        assert entry.user_id == "user-1"

    def test_user_supplied_strings_are_escaped(self, audit, client_info):
        entry = audit.record(
            AuditEvent.FAILED_LOGIN,
            Severity.MEDIUM,
            client_info,
            email="<script>alert(1)</script>@example.com",
        )

        assert entry.additional_data["email"] == (
            "&lt;script&gt;alert(1)&lt;&#x2F;script&gt;@example.com"
        )

    def test_none_values_are_dropped(self, audit, client_info):
        entry = audit.record(
            AuditEvent.OAUTH_LOGIN,
            Severity.LOW,
            client_info,
            oauth_provider="google",
            separateAccount=None,
            isNewUser=True,
        )

        assert entry.additional_data == {"isNewUser": True}
        assert entry.oauth_provider == "google"

    def test_user_agent_is_escaped(self, audit):
        client = ClientInfo(ip_address="198.51.100.4", user_agent='Mozilla/5.0 "><img>')

        entry = audit.record(AuditEvent.CSRF_VIOLATION, Severity.HIGH, client)

        assert "<" not in entry.user_agent
        assert "&quot;" in entry.user_agent

    def test_entries_are_immutable(self, audit, client_info):
        entry = audit.record(AuditEvent.LOGOUT, Severity.LOW, client_info)

        with pytest.raises(FrozenInstanceError):
            entry.event = "login"

    def test_rejects_unknown_event(self, audit, client_info):
        with pytest.raises(ValueError):
            audit.record("password_sprayed", Severity.LOW, client_info)

    def test_audit_trail_survives_reload(self, audit, memory_store, client_info):
        from roastauth.storage.memory import MemoryStore

        audit.record(AuditEvent.REGISTRATION, Severity.LOW, client_info, user_id="user-9")

        reloaded = MemoryStore(fs_root=str(memory_store.fs_root))

        events = reloaded.list_audit_events(event="registration")
        assert len(events) == 1
        assert events[0].user_id == "user-9"
