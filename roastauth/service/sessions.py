from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from roastauth.config import Settings
from roastauth.logging import get_logger
from roastauth.service.audit import AuditEvent, ClientInfo, SecurityAuditLogger, Severity
from roastauth.service.errors import (
    AuthenticationError,
    CsrfViolationError,
    SessionExpiredError,
)
from roastauth.service.validation import is_well_formed_csrf_token
from roastauth.storage.models import LinkedAccount, Session, User

logger = get_logger(__name__)

CSRF_TOKEN_BYTES = 32


def new_csrf_token() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(CSRF_TOKEN_BYTES)


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        csrf_token: str,
        ttl: timedelta = ...,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        auth_method: str = "email",
        oauth_provider: str | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(
        self,
        session_id: str,
        *,
        expires_at: Optional[datetime] = None,
        csrf_token: Optional[str] = None,
        last_validated: Optional[datetime] = None,
    ) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> None: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_linked_accounts(self, user_id: str) -> List[LinkedAccount]: ...


@dataclass
class UserSession:
    session_id: str
    user: User
    auth_method: str
    csrf_token: str
    expires_at: datetime
    last_validated: Optional[datetime]
    oauth_provider: Optional[str] = None
    linked_accounts: List[LinkedAccount] = field(default_factory=list)
    is_authenticated: bool = True


@dataclass
class SessionValidation:
    valid: bool
    session: Optional[UserSession] = None
    reason: Optional[str] = None


class SessionManager:
    """Creates, validates, refreshes and ends sessions.

    Expiry is checked lazily on every access; nothing sweeps sessions in the
    background.
    """

    def __init__(
        self, store: SessionStore, audit: SecurityAuditLogger, settings: Settings
    ) -> None:
        self.store = store
        self.audit = audit
        self.ttl = timedelta(days=settings.session_ttl_days)
        self.refresh_threshold = timedelta(minutes=settings.session_refresh_threshold_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def describe(self, session: Session, user: User) -> UserSession:
        return UserSession(
            session_id=session.id,
            user=user,
            auth_method=session.auth_method,
            csrf_token=session.csrf_token,
            expires_at=session.expires_at,
            last_validated=session.last_validated,
            oauth_provider=session.oauth_provider,
            linked_accounts=self.store.list_linked_accounts(user.id),
        )

    def start(
        self,
        user: User,
        client: ClientInfo,
        *,
        auth_method: str = "email",
        oauth_provider: Optional[str] = None,
    ) -> UserSession:
        """Open a session with a freshly minted CSRF token."""
        session = self.store.create_session(
            user.id,
            new_csrf_token(),
            ttl=self.ttl,
            user_agent=client.user_agent,
            ip_addr=client.ip_address,
            auth_method=auth_method,
            oauth_provider=oauth_provider,
        )
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            auth_method=auth_method,
            oauth_provider=oauth_provider,
        )
        return self.describe(session, user)

    def validate(self, session_id: Optional[str], client: ClientInfo) -> SessionValidation:
        """Fail-closed check of the caller's session; never raises for invalidity."""
        if not session_id:
            return SessionValidation(valid=False, reason="no_session")
        session = self.store.get_session(session_id)
        if session is None:
            return SessionValidation(valid=False, reason="no_session")
        now = self._now()
        if session.is_expired(now):
            self.audit.record(
                AuditEvent.FAILED_LOGIN,
                Severity.LOW,
                client,
                user_id=session.user_id,
                failureReason="session_expired",
            )
            return SessionValidation(valid=False, reason="session_expired")
        user = self.store.get_user(session.user_id)
        if user is None or not user.id or not user.email:
            logger.warning("session_user_missing", session_id=session.id)
            return SessionValidation(valid=False, reason="invalid_session_data")
        session = self.store.update_session(session.id, last_validated=now) or session
        return SessionValidation(valid=True, session=self.describe(session, user))

    def _require_csrf(
        self, csrf_token: Optional[str], client: ClientInfo, *, action: str, user_id: Optional[str] = None
    ) -> str:
        if not csrf_token or not is_well_formed_csrf_token(csrf_token):
            self.audit.record(
                AuditEvent.CSRF_VIOLATION,
                Severity.HIGH,
                client,
                user_id=user_id,
                action=action,
                reason="missing" if not csrf_token else "malformed",
            )
            raise CsrfViolationError("Invalid security token. Please refresh the page.")
        return csrf_token

    def _require_bound_csrf(
        self, session: Session, csrf_token: str, client: ClientInfo, *, action: str
    ) -> None:
        if not hmac.compare_digest(session.csrf_token, csrf_token):
            self.audit.record(
                AuditEvent.CSRF_VIOLATION,
                Severity.HIGH,
                client,
                user_id=session.user_id,
                action=action,
                reason="token_mismatch",
            )
            raise CsrfViolationError("Invalid security token. Please refresh the page.")

    def refresh(
        self, session_id: Optional[str], csrf_token: Optional[str], client: ClientInfo
    ) -> tuple[UserSession, bool]:
        """Extend a session close to expiry.

        Returns the (possibly unchanged) session and whether it was refreshed.
        """
        csrf_token = self._require_csrf(csrf_token, client, action="session_refresh")
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            raise AuthenticationError("No active session found")
        now = self._now()
        if session.is_expired(now):
            self.audit.record(
                AuditEvent.FAILED_LOGIN,
                Severity.LOW,
                client,
                user_id=session.user_id,
                failureReason="session_expired",
            )
            raise SessionExpiredError("Session has expired. Please log in again.")
        self._require_bound_csrf(session, csrf_token, client, action="session_refresh")
        user = self.store.get_user(session.user_id)
        if user is None:
            raise AuthenticationError("No active session found")

        if session.expires_at - now > self.refresh_threshold:
            return self.describe(session, user), False

        new_expiry = max(now + self.ttl, session.expires_at + timedelta(microseconds=1))
        session = self.store.update_session(
            session.id,
            expires_at=new_expiry,
            csrf_token=new_csrf_token(),
            last_validated=now,
        )
        if session is None:
            raise AuthenticationError("No active session found")
        self.audit.record(
            AuditEvent.LOGIN,
            Severity.LOW,
            client,
            user_id=user.id,
            oauth_provider=session.oauth_provider,
            refreshedSession=True,
        )
        return self.describe(session, user), True

    def end(
        self, session_id: Optional[str], csrf_token: Optional[str], client: ClientInfo
    ) -> bool:
        """Log out. Returns False when there was no session to end."""
        csrf_token = self._require_csrf(csrf_token, client, action="logout")
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            return False
        self._require_bound_csrf(session, csrf_token, client, action="logout")
        self.store.delete_session(session.id)
        self.audit.record(
            AuditEvent.LOGOUT,
            Severity.LOW,
            client,
            user_id=session.user_id,
            oauth_provider=session.oauth_provider,
        )
        return True
