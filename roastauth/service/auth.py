from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from roastauth.config import Settings
from roastauth.logging import get_logger, sanitize_for_log
from roastauth.service.audit import AuditEvent, ClientInfo, SecurityAuditLogger, Severity
from roastauth.service.errors import (
    AccountLockedError,
    ConflictError,
    CsrfViolationError,
    ForbiddenError,
    InvalidCredentialsError,
    RateLimitExceededError,
    ValidationError,
)
from roastauth.service import validation
from roastauth.service.rate_limit import RateLimitDecision, RateLimiter
from roastauth.service.sessions import SessionManager, UserSession, new_csrf_token
from roastauth.storage.errors import ConstraintViolation
from roastauth.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
GENERIC_VALIDATION_MESSAGE = "Please check your input and try again."


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        auth_method: str = "email",
        allow_duplicate_email: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def update_login_attempt(self, user_id: str, success: bool) -> Optional[User]: ...


@dataclass
class LoginResult:
    session: UserSession
    rate_limit: RateLimitDecision


@dataclass
class RegistrationResult:
    user: User
    rate_limit: RateLimitDecision


class AuthService:
    """Email/password login and registration.

    Every login runs the same ordered gauntlet: rate limit, input validation,
    CSRF presence, user lookup, account lock, password check. Unknown emails and
    wrong passwords are indistinguishable to the caller.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        audit: SecurityAuditLogger,
        settings: Settings,
        *,
        login_limiter: RateLimiter,
        register_limiter: RateLimiter,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.audit = audit
        self.settings = settings
        self.login_limiter = login_limiter
        self.register_limiter = register_limiter
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    async def login(
        self,
        email: Any,
        password: Any,
        csrf_token: Optional[str],
        client: ClientInfo,
    ) -> LoginResult:
        decision = await self.login_limiter.check(client.ip_address)
        if not decision.allowed:
            self._reject_rate_limited(decision, client, action="login")

        try:
            normalized_email = validation.normalize_email(email)
            validation.check_login_password(password)
        except ValueError as exc:
            logger.info("login_validation_failed", reason=str(exc))
            raise ValidationError(GENERIC_VALIDATION_MESSAGE) from exc

        self._require_csrf(csrf_token, client, action="login", email=normalized_email)

        user = self.store.get_user_by_email(normalized_email)
        if user is None:
            # Burn comparable time so response latency does not reveal the miss
            self._verify_dummy(password)
            self._record_failed_login(client, normalized_email, "user_not_found")
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        if user.is_locked:
            self._record_failed_login(client, normalized_email, "account_locked", user_id=user.id)
            raise AccountLockedError(
                "This account has been locked. Please contact support."
            )

        if not self.verify_password(user.id, password):
            self.store.update_login_attempt(user.id, success=False)
            self._record_failed_login(client, normalized_email, "invalid_password", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        await self.login_limiter.reset(client.ip_address)
        self.store.update_login_attempt(user.id, success=True)
        session = self.sessions.start(user, client, auth_method="email")
        self.audit.record(
            AuditEvent.LOGIN,
            Severity.LOW,
            client,
            user_id=user.id,
            email=normalized_email,
        )
        return LoginResult(session=session, rate_limit=decision)

    async def register(
        self,
        *,
        email: Any,
        password: Any,
        first_name: Any,
        last_name: Any,
        terms_accepted: Any,
        marketing_consent: bool = False,
        csrf_token: Optional[str],
        client: ClientInfo,
    ) -> RegistrationResult:
        decision = await self.register_limiter.check(client.ip_address)
        if not decision.allowed:
            self._reject_rate_limited(decision, client, action="register")

        if not self.settings.allow_signup:
            raise ForbiddenError("Registration is currently disabled.")

        normalized_email, first, last, invalid = self._validate_registration(
            email, password, first_name, last_name, terms_accepted
        )
        if invalid:
            raise ValidationError(GENERIC_VALIDATION_MESSAGE, detail={"fields": invalid})

        self._require_csrf(csrf_token, client, action="register", email=normalized_email)

        if self.store.get_user_by_email(normalized_email) is not None:
            self._record_failed_login(client, normalized_email, "email_exists", action="register")
            raise ConflictError("An account with this email already exists")

        try:
            user = self.store.create_user(
                normalized_email,
                name=f"{first} {last}",
                auth_method="email",
                meta={
                    "first_name": first,
                    "last_name": last,
                    "marketing_consent": bool(marketing_consent),
                    "terms_accepted": True,
                },
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise ConflictError("An account with this email already exists") from exc
        self.save_password(user.id, password)

        self.audit.record(
            AuditEvent.REGISTRATION,
            Severity.LOW,
            client,
            user_id=user.id,
            email=normalized_email,
            marketingConsent=bool(marketing_consent),
        )
        logger.info("user_registered", user_id=user.id)
        return RegistrationResult(user=user, rate_limit=decision)

    def _validate_registration(
        self, email: Any, password: Any, first_name: Any, last_name: Any, terms_accepted: Any
    ) -> Tuple[str, str, str, List[str]]:
        invalid: List[str] = []
        normalized_email = first = last = ""
        try:
            normalized_email = validation.normalize_email(email)
        except ValueError:
            invalid.append("email")
        try:
            validation.check_password_strength(password)
        except ValueError:
            invalid.append("password")
        try:
            first = validation.check_person_name(first_name, "firstName")
        except ValueError:
            invalid.append("firstName")
        try:
            last = validation.check_person_name(last_name, "lastName")
        except ValueError:
            invalid.append("lastName")
        if terms_accepted is not True:
            invalid.append("termsAccepted")
        return normalized_email, first, last, invalid

    def _reject_rate_limited(
        self, decision: RateLimitDecision, client: ClientInfo, *, action: str
    ) -> None:
        self.audit.record(
            AuditEvent.RATE_LIMIT_EXCEEDED,
            Severity.HIGH,
            client,
            action=action,
            lockedUntil=decision.locked_until.isoformat() if decision.locked_until else None,
        )
        retry_after = decision.retry_after_seconds()
        raise RateLimitExceededError(
            "Too many attempts. Please try again later.",
            headers=decision.headers(),
            detail={
                "retryAfter": retry_after,
                "resetTime": decision.reset_time.isoformat(),
                "lockedUntil": decision.locked_until.isoformat()
                if decision.locked_until
                else None,
            },
        )

    def _require_csrf(
        self, csrf_token: Optional[str], client: ClientInfo, *, action: str, email: str
    ) -> None:
        if csrf_token and validation.is_well_formed_csrf_token(csrf_token):
            return
        self.audit.record(
            AuditEvent.CSRF_VIOLATION,
            Severity.HIGH,
            client,
            action=action,
            email=email,
            reason="missing" if not csrf_token else "malformed",
        )
        raise CsrfViolationError("Invalid security token. Please refresh the page.")

    def _record_failed_login(
        self,
        client: ClientInfo,
        email: str,
        reason: str,
        *,
        user_id: Optional[str] = None,
        action: str = "login",
    ) -> None:
        self.audit.record(
            AuditEvent.FAILED_LOGIN,
            Severity.MEDIUM,
            client,
            user_id=user_id,
            email=email,
            failureReason=reason,
            action=action,
        )
        logger.info(
            "login_failed", reason=reason, email_hint=sanitize_for_log(email)[:3] + "***"
        )

    def issue_csrf_token(self) -> str:
        return new_csrf_token()

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            # OAuth-only accounts have no password
            self._verify_dummy(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _verify_dummy(self, password: Any) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("dummy-password-for-timing")
        try:
            self._pwd_hasher.verify(self._dummy_hash, str(password))
        except VerificationError:
            pass
