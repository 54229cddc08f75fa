from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from roastauth.logging import get_logger
from roastauth.storage.errors import ConstraintViolation, DuplicateProviderLink
from roastauth.storage.models import (
    LinkedAccount,
    OAuthState,
    PendingLink,
    RateLimitHit,
    RateLimitRecord,
    SecurityAuditEvent,
    Session,
    User,
    _dt,
    _iso,
    register_attempt,
    utcnow,
)


def _copy_record(record: RateLimitRecord) -> RateLimitRecord:
    return RateLimitRecord(record.count, record.reset_time, record.locked_until)


class MemoryStore:
    """In-memory user, session, linked-account and audit store.

    When ``fs_root`` is given the whole store is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on start,
    which is enough for single-node deployments and for the operations CLI.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.linked_accounts: List[LinkedAccount] = []
        self.audit_events: List[SecurityAuditEvent] = []
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users / credentials
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        auth_method: str = "email",
        allow_duplicate_email: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if not allow_duplicate_email and any(
                existing.email == email for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                avatar=avatar,
                auth_method=auth_method,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Return the oldest account for ``email``.

        Several accounts may share an address once a user declines account
        linking; the original (usually password based) account wins.
        """
        matches = self.list_users_by_email(email)
        return matches[0] if matches else None

    def list_users_by_email(self, email: str) -> List[User]:
        with self._data_lock:
            matches = [u for u in self.users.values() if u.email == email]
            return sorted(matches, key=lambda u: u.created_at)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def update_login_attempt(self, user_id: str, success: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            if success:
                user.failed_login_attempts = 0
                user.last_login_at = now
            else:
                user.failed_login_attempts += 1
                user.last_failed_login = now
            self._persist_state()
            return user

    def set_user_locked(self, user_id: str, locked: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_locked = locked
            if not locked:
                user.failed_login_attempts = 0
            self._persist_state()
            return user

    # sessions
    def create_session(
        self,
        user_id: str,
        csrf_token: str,
        ttl: timedelta = timedelta(days=7),
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        auth_method: str = "email",
        oauth_provider: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                csrf_token,
                ttl=ttl,
                user_agent=user_agent,
                ip_addr=ip_addr,
                auth_method=auth_method,
                oauth_provider=oauth_provider,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def update_session(
        self,
        session_id: str,
        *,
        expires_at: Optional[datetime] = None,
        csrf_token: Optional[str] = None,
        last_validated: Optional[datetime] = None,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if expires_at is not None:
                if expires_at <= sess.expires_at:
                    raise ConstraintViolation(
                        "session expiry may only move forward", {"session_id": session_id}
                    )
                sess.expires_at = expires_at
            if csrf_token is not None:
                sess.csrf_token = csrf_token
            if last_validated is not None:
                sess.last_validated = last_validated
            self._persist_state()
            return sess

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    # linked provider identities
    def link_account(
        self, user_id: str, provider: str, provider_id: str, email: str
    ) -> LinkedAccount:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.linked_accounts:
                if existing.provider == provider and existing.provider_id == provider_id:
                    if existing.user_id == user_id:
                        return existing
                    raise DuplicateProviderLink(
                        "provider identity already linked to another account",
                        {"field": "provider_id", "provider": provider},
                    )
                if existing.user_id == user_id and existing.provider == provider:
                    raise DuplicateProviderLink(
                        "account already linked to this provider",
                        {"field": "provider", "provider": provider},
                    )
            account = LinkedAccount(
                user_id=user_id, provider=provider, provider_id=provider_id, email=email
            )
            self.linked_accounts.append(account)
            self._persist_state()
            return account

    def create_linked_user(
        self,
        email: str,
        provider: str,
        provider_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        allow_duplicate_email: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        """Create an OAuth user together with its provider link, or neither."""
        with self._data_lock:
            if any(
                existing.provider == provider and existing.provider_id == provider_id
                for existing in self.linked_accounts
            ):
                raise DuplicateProviderLink(
                    "provider identity already linked to another account",
                    {"field": "provider_id", "provider": provider},
                )
            if not allow_duplicate_email and any(
                existing.email == email for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                avatar=avatar,
                auth_method="oauth",
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self.linked_accounts.append(
                LinkedAccount(user_id=user.id, provider=provider, provider_id=provider_id, email=email)
            )
            self._persist_state()
            return user

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            for account in self.linked_accounts:
                if account.provider == provider and account.provider_id == provider_id:
                    return self.users.get(account.user_id)
            return None

    def list_linked_accounts(self, user_id: str) -> List[LinkedAccount]:
        with self._data_lock:
            return [a for a in self.linked_accounts if a.user_id == user_id]

    # audit trail
    def append_audit_event(self, event: SecurityAuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()

    def list_audit_events(
        self, *, event: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[SecurityAuditEvent]:
        with self._data_lock:
            return [
                e
                for e in self.audit_events
                if (event is None or e.event == event)
                and (user_id is None or e.user_id == user_id)
            ]

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "linked_accounts": [
                self._serialize_linked_account(a) for a in self.linked_accounts
            ],
            "audit_events": [e.to_dict() for e in self.audit_events],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        self.users = {
            u.id: u for u in (self._deserialize_user(raw) for raw in data.get("users", []))
        }
        self.credentials = {
            raw["user_id"]: (raw["password_hash"], raw["password_algo"])
            for raw in data.get("credentials", [])
        }
        self.sessions = {
            s.id: s
            for s in (self._deserialize_session(raw) for raw in data.get("sessions", []))
        }
        self.linked_accounts = [
            self._deserialize_linked_account(raw) for raw in data.get("linked_accounts", [])
        ]
        self.audit_events = [
            SecurityAuditEvent.from_dict(raw) for raw in data.get("audit_events", [])
        ]
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "avatar": user.avatar,
            "auth_method": user.auth_method,
            "created_at": _iso(user.created_at),
            "is_locked": user.is_locked,
            "failed_login_attempts": user.failed_login_attempts,
            "last_failed_login": _iso(user.last_failed_login),
            "last_login_at": _iso(user.last_login_at),
            "meta": user.meta,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            avatar=data.get("avatar"),
            auth_method=data.get("auth_method", "email"),
            created_at=_dt(data.get("created_at")) or utcnow(),
            is_locked=bool(data.get("is_locked", False)),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            last_failed_login=_dt(data.get("last_failed_login")),
            last_login_at=_dt(data.get("last_login_at")),
            meta=data.get("meta"),
        )

    @staticmethod
    def _serialize_session(session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": _iso(session.created_at),
            "expires_at": _iso(session.expires_at),
            "csrf_token": session.csrf_token,
            "auth_method": session.auth_method,
            "oauth_provider": session.oauth_provider,
            "last_validated": _iso(session.last_validated),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "meta": session.meta,
        }

    @staticmethod
    def _deserialize_session(data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=_dt(data["created_at"]),
            expires_at=_dt(data["expires_at"]),
            csrf_token=data["csrf_token"],
            auth_method=data.get("auth_method", "email"),
            oauth_provider=data.get("oauth_provider"),
            last_validated=_dt(data.get("last_validated")),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            meta=data.get("meta"),
        )

    @staticmethod
    def _serialize_linked_account(account: LinkedAccount) -> dict:
        return {
            "user_id": account.user_id,
            "provider": account.provider,
            "provider_id": account.provider_id,
            "email": account.email,
            "linked_at": _iso(account.linked_at),
        }

    @staticmethod
    def _deserialize_linked_account(data: dict) -> LinkedAccount:
        return LinkedAccount(
            user_id=data["user_id"],
            provider=data["provider"],
            provider_id=data["provider_id"],
            email=data["email"],
            linked_at=_dt(data.get("linked_at")) or utcnow(),
        )


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Holds rate-limit records, OAuth states and pending account links. Entries
    carrying an expiry are purged lazily whenever the maps are touched.
    """

    def __init__(self) -> None:
        self._rate_limits: Dict[str, RateLimitRecord] = {}
        self._oauth_states: Dict[tuple[str, str], OAuthState] = {}
        self._pending_links: Dict[str, PendingLink] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired_states = [k for k, v in self._oauth_states.items() if v.is_expired(now)]
        for key in expired_states:
            del self._oauth_states[key]
        expired_links = [k for k, v in self._pending_links.items() if v.is_expired(now)]
        for key in expired_links:
            del self._pending_links[key]
        expired_limits = [k for k, v in self._rate_limits.items() if v.is_expired(now)]
        for key in expired_limits:
            del self._rate_limits[key]
        return len(expired_states) + len(expired_links) + len(expired_limits)

    # RateLimitStore
    async def hit_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window: timedelta,
        lockout: Optional[timedelta],
        *,
        now: Optional[datetime] = None,
    ) -> RateLimitHit:
        now = now or utcnow()
        with self._lock:
            self._purge_expired(now)
            hit = register_attempt(self._rate_limits.get(key), now, max_attempts, window, lockout)
            self._rate_limits[key] = hit.record
            return RateLimitHit(hit.allowed, _copy_record(hit.record), hit.lockout_started)

    async def get_rate_limit(self, key: str) -> Optional[RateLimitRecord]:
        with self._lock:
            record = self._rate_limits.get(key)
            return _copy_record(record) if record is not None else None

    async def delete_rate_limit(self, key: str) -> None:
        with self._lock:
            self._rate_limits.pop(key, None)

    # OAuthStateStore
    async def get_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]:
        with self._lock:
            self._purge_expired()
            return self._oauth_states.get((client_id, provider))

    async def put_oauth_state(self, oauth_state: OAuthState) -> bool:
        """Store a state unless one is already in flight for the client/provider."""
        key = (oauth_state.client_id, oauth_state.provider)
        with self._lock:
            self._purge_expired()
            if key in self._oauth_states:
                return False
            self._oauth_states[key] = oauth_state
            return True

    async def pop_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]:
        with self._lock:
            stored = self._oauth_states.pop((client_id, provider), None)
            self._purge_expired()
            return stored

    # Pending account links
    async def put_pending_link(self, pending: PendingLink) -> None:
        with self._lock:
            self._purge_expired()
            self._pending_links[pending.token] = pending

    async def pop_pending_link(self, token: str) -> Optional[PendingLink]:
        with self._lock:
            pending = self._pending_links.pop(token, None)
            self._purge_expired()
            return pending
