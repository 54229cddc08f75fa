from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    auth_method: str = "email"
    created_at: datetime = field(default_factory=utcnow)
    is_locked: bool = False
    failed_login_attempts: int = 0
    last_failed_login: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    csrf_token: str
    auth_method: str = "email"
    oauth_provider: Optional[str] = None
    last_validated: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        csrf_token: str,
        ttl: timedelta = timedelta(days=7),
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        auth_method: str = "email",
        oauth_provider: str | None = None,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
            csrf_token=csrf_token,
            auth_method=auth_method,
            oauth_provider=oauth_provider,
            last_validated=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class LinkedAccount:
    user_id: str
    provider: str
    provider_id: str
    email: str
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthIdentity:
    """Normalized identity returned by a provider after the code exchange."""

    provider: str
    provider_id: str
    email: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    email_verified: bool = False


@dataclass
class OAuthState:
    state: str
    code_verifier: str
    code_challenge: str
    redirect_uri: str
    provider: str
    client_id: str
    timestamp: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "code_verifier": self.code_verifier,
            "code_challenge": self.code_challenge,
            "redirect_uri": self.redirect_uri,
            "provider": self.provider,
            "client_id": self.client_id,
            "timestamp": _iso(self.timestamp),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthState":
        return cls(
            state=data["state"],
            code_verifier=data["code_verifier"],
            code_challenge=data["code_challenge"],
            redirect_uri=data["redirect_uri"],
            provider=data["provider"],
            client_id=data["client_id"],
            timestamp=_dt(data["timestamp"]),
            expires_at=_dt(data["expires_at"]),
        )


@dataclass
class PendingLink:
    """An OAuth identity whose email collided with an existing account."""

    token: str
    provider: str
    provider_id: str
    email: str
    existing_user_id: str
    csrf_token: str
    created_at: datetime
    expires_at: datetime
    name: Optional[str] = None
    avatar: Optional[str] = None
    requires_verification: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def identity(self) -> OAuthIdentity:
        return OAuthIdentity(
            provider=self.provider,
            provider_id=self.provider_id,
            email=self.email,
            name=self.name,
            avatar=self.avatar,
            email_verified=not self.requires_verification,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "provider": self.provider,
            "provider_id": self.provider_id,
            "email": self.email,
            "existing_user_id": self.existing_user_id,
            "csrf_token": self.csrf_token,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "name": self.name,
            "avatar": self.avatar,
            "requires_verification": self.requires_verification,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingLink":
        return cls(
            token=data["token"],
            provider=data["provider"],
            provider_id=data["provider_id"],
            email=data["email"],
            existing_user_id=data["existing_user_id"],
            csrf_token=data["csrf_token"],
            created_at=_dt(data["created_at"]),
            expires_at=_dt(data["expires_at"]),
            name=data.get("name"),
            avatar=data.get("avatar"),
            requires_verification=bool(data.get("requires_verification", False)),
        )


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


@dataclass
class RateLimitRecord:
    count: int
    reset_time: datetime
    locked_until: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once both the window and any lockout have passed."""
        now = now or utcnow()
        if self.locked_until is not None and now < self.locked_until:
            return False
        return now > self.reset_time

    def to_hash(self) -> Dict[str, int]:
        """Redis hash layout: epoch milliseconds, ``locked`` is 0 when unset."""
        return {
            "count": self.count,
            "reset": _epoch_ms(self.reset_time),
            "locked": _epoch_ms(self.locked_until) if self.locked_until else 0,
        }

    @classmethod
    def from_hash(cls, data: Dict[str, Any]) -> Optional["RateLimitRecord"]:
        if not data or "count" not in data or "reset" not in data:
            return None
        locked = int(data.get("locked") or 0)
        return cls(
            count=int(data["count"]),
            reset_time=_from_epoch_ms(data["reset"]),
            locked_until=_from_epoch_ms(locked) if locked else None,
        )


@dataclass
class RateLimitHit:
    allowed: bool
    record: RateLimitRecord
    lockout_started: bool = False


def register_attempt(
    record: Optional[RateLimitRecord],
    now: datetime,
    max_attempts: int,
    window: timedelta,
    lockout: Optional[timedelta],
) -> RateLimitHit:
    """Count one attempt against ``record``; the caller stores ``hit.record``.

    RedisCache runs the same transition as a Lua script.
    """
    if record is not None and record.locked_until and now < record.locked_until:
        return RateLimitHit(False, record)
    if record is None or now > record.reset_time:
        return RateLimitHit(True, RateLimitRecord(count=1, reset_time=now + window))
    if record.count >= max_attempts:
        if lockout is None:
            return RateLimitHit(False, record)
        locked = RateLimitRecord(record.count, record.reset_time, now + lockout)
        return RateLimitHit(False, locked, lockout_started=True)
    return RateLimitHit(True, RateLimitRecord(record.count + 1, record.reset_time, record.locked_until))


@dataclass(frozen=True)
class SecurityAuditEvent:
    timestamp: datetime
    event: str
    severity: str
    ip_address: str
    user_agent: str
    user_id: Optional[str] = None
    oauth_provider: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "event": self.event,
            "severity": self.severity,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "user_id": self.user_id,
            "oauth_provider": self.oauth_provider,
            "additional_data": dict(self.additional_data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityAuditEvent":
        return cls(
            timestamp=_dt(data["timestamp"]),
            event=data["event"],
            severity=data["severity"],
            ip_address=data.get("ip_address") or "unknown",
            user_agent=data.get("user_agent") or "unknown",
            user_id=data.get("user_id"),
            oauth_provider=data.get("oauth_provider"),
            additional_data=data.get("additional_data") or {},
        )
