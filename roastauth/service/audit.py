from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from roastauth.logging import get_logger, sanitize_for_log
from roastauth.storage.models import SecurityAuditEvent


class AuditEvent(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    FAILED_LOGIN = "failed_login"
    OAUTH_LOGIN = "oauth_login"
    OAUTH_CALLBACK = "oauth_callback"
    ACCOUNT_LINKED = "account_linked"
    CSRF_VIOLATION = "csrf_violation"
    OAUTH_STATE_MISMATCH = "oauth_state_mismatch"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    REGISTRATION = "registration"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, as far as the edge proxy tells us."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"


class AuditSink(Protocol):
    def append_audit_event(self, event: SecurityAuditEvent) -> None: ...


# Values under these keys come straight from request input
_ESCAPED_KEYS = {"email", "name", "firstName", "lastName", "errorDescription", "userAgent"}


class SecurityAuditLogger:
    """Append-only recorder for authentication events.

    Each call writes one immutable :class:`SecurityAuditEvent` to the sink and
    mirrors it as a ``security_audit`` structlog line whose level follows the
    severity.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink
        self.logger = get_logger("roastauth.audit")

    def record(
        self,
        event: AuditEvent,
        severity: Severity,
        client: ClientInfo,
        *,
        user_id: Optional[str] = None,
        oauth_provider: Optional[str] = None,
        **additional_data: Any,
    ) -> SecurityAuditEvent:
        data = {
            key: sanitize_for_log(value) if key in _ESCAPED_KEYS and isinstance(value, str) else value
            for key, value in additional_data.items()
            if value is not None
        }
        entry = SecurityAuditEvent(
            timestamp=datetime.now(timezone.utc),
            event=AuditEvent(event).value,
            severity=Severity(severity).value,
            ip_address=client.ip_address or "unknown",
            user_agent=sanitize_for_log(client.user_agent or "unknown", max_length=512),
            user_id=user_id,
            oauth_provider=oauth_provider,
            additional_data=data,
        )
        self.sink.append_audit_event(entry)

        log_fn = {
            Severity.LOW.value: self.logger.info,
            Severity.MEDIUM.value: self.logger.warning,
        }.get(entry.severity, self.logger.error)
        log_fn(
            "security_audit",
            audit_event=entry.event,
            severity=entry.severity,
            user_id=entry.user_id,
            ip_address=entry.ip_address,
            oauth_provider=entry.oauth_provider,
            additional_data=entry.additional_data,
        )
        return entry
