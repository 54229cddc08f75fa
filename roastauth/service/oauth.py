from __future__ import annotations

import base64
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import httpx

from roastauth.config import Settings
from roastauth.logging import get_logger
from roastauth.service import validation
from roastauth.service.audit import AuditEvent, ClientInfo, SecurityAuditLogger, Severity
from roastauth.service.errors import (
    AccountLinkingError,
    ConflictError,
    CsrfViolationError,
    ForbiddenError,
    NotFoundError,
    OAuthAccessDeniedError,
    OAuthCallbackError,
    OAuthNetworkError,
    OAuthStateMismatchError,
    ServerError,
    ValidationError,
)
from roastauth.service.pkce import CODE_CHALLENGE_METHOD, PKCEGenerationError, generate_pkce_pair
from roastauth.service.sessions import SessionManager, UserSession, new_csrf_token
from roastauth.storage.errors import ConstraintViolation
from roastauth.storage.models import (
    LinkedAccount,
    OAuthIdentity,
    OAuthState,
    PendingLink,
    User,
)

OAUTH_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "google": {
        "display_name": "Google",
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "email profile",
        "extra_params": {"prompt": "select_account"},
    },
    "github": {
        "display_name": "GitHub",
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "user:email",
        "extra_params": {},
    },
    "apple": {
        "display_name": "Apple",
        "auth_url": "https://appleid.apple.com/auth/authorize",
        "token_url": "https://appleid.apple.com/auth/token",
        "userinfo_url": None,
        "scope": "name email",
        # Apple only returns requested scopes through a form POST callback
        "extra_params": {"response_mode": "form_post"},
    },
    "microsoft": {
        "display_name": "Microsoft",
        "auth_url": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/oidc/userinfo",
        "scope": "openid profile email",
        "extra_params": {"response_mode": "query"},
    },
}

_PLATFORM_PREFERENCES = {
    "ios": ("apple", "google"),
    "android": ("google",),
    "desktop": (),
}

logger = get_logger(__name__)


def detect_platform(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if any(marker in ua for marker in ("iphone", "ipad", "ipod")):
        return "ios"
    if "android" in ua:
        return "android"
    return "desktop"


def sort_providers_for_platform(providers: List[str], user_agent: Optional[str]) -> List[str]:
    """Order providers for display; iOS favours Apple then Google, Android Google.

    Only affects presentation. Providers keep their relative order otherwise.
    """
    preferred = _PLATFORM_PREFERENCES[detect_platform(user_agent)]
    rank = {name: index for index, name in enumerate(preferred)}
    return sorted(providers, key=lambda name: rank.get(name, len(preferred)))


class FlowState(str, Enum):
    RECEIVED_CALLBACK = "received_callback"
    STATE_VERIFIED = "state_verified"
    CODE_EXCHANGED = "code_exchanged"
    SESSION_CREATED = "session_created"
    AWAITING_USER_CHOICE = "awaiting_user_choice"
    LINKED = "linked"
    SEPARATE_CREATED = "separate_created"


class LinkDecision(str, Enum):
    LINK = "link"
    SEPARATE = "separate"


class OAuthStateStore(Protocol):
    async def get_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]: ...

    async def put_oauth_state(self, oauth_state: OAuthState) -> bool: ...

    async def pop_oauth_state(self, client_id: str, provider: str) -> Optional[OAuthState]: ...

    async def put_pending_link(self, pending: PendingLink) -> None: ...

    async def pop_pending_link(self, token: str) -> Optional[PendingLink]: ...


class OAuthUserStore(Protocol):
    def create_linked_user(
        self,
        email: str,
        provider: str,
        provider_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        allow_duplicate_email: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    def link_account(
        self, user_id: str, provider: str, provider_id: str, email: Optional[str] = None
    ) -> LinkedAccount: ...

    def list_linked_accounts(self, user_id: str) -> List[LinkedAccount]: ...


@dataclass
class AuthorizationRequest:
    provider: str
    url: str
    expires_at: datetime


@dataclass
class AccountLinkingData:
    """What the UI needs to ask the user whether to link or keep accounts apart."""

    link_token: str
    csrf_token: str
    oauth_provider: str
    oauth_email: str
    oauth_name: Optional[str]
    existing_user_id: str
    existing_user_email: str
    existing_auth_methods: List[str]
    requires_verification: bool
    expires_at: datetime


@dataclass
class CallbackOutcome:
    state: FlowState
    session: Optional[UserSession] = None
    linking: Optional[AccountLinkingData] = None
    is_new_user: bool = False


class OAuthService:
    """PKCE authorization-code flows against the configured providers.

    ``begin_flow`` stores one single-use :class:`OAuthState` per client and
    provider, and ``handle_callback`` walks the callback through
    RECEIVED_CALLBACK, STATE_VERIFIED and CODE_EXCHANGED before either opening a
    session or parking a :class:`PendingLink` for ``resolve_link``.
    """

    def __init__(
        self,
        store: OAuthUserStore,
        state_store: OAuthStateStore,
        sessions: SessionManager,
        audit: SecurityAuditLogger,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.state_store = state_store
        self.sessions = sessions
        self.audit = audit
        self.settings = settings
        self.state_ttl = timedelta(minutes=settings.oauth_state_ttl_minutes)
        self.flow_guard = timedelta(seconds=settings.oauth_flow_guard_seconds)
        self._transport = transport

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        return (
            getattr(self.settings, f"oauth_{provider}_client_id", None),
            getattr(self.settings, f"oauth_{provider}_client_secret", None),
        )

    def _endpoint(self, provider: str, key: str) -> Optional[str]:
        url = OAUTH_PROVIDERS[provider].get(key)
        if url and provider == "microsoft":
            return url.format(tenant=self.settings.oauth_microsoft_tenant_id)
        return url

    def _redirect_uri(self, provider: str) -> str:
        return f"{self.settings.oauth_callback_base}/v1/auth/oauth/{provider}/callback"

    def available_providers(self, user_agent: Optional[str] = None) -> List[str]:
        if not self.settings.oauth_enabled:
            return []
        configured = [
            name for name in OAUTH_PROVIDERS if all(self._credentials(name))
        ]
        return sort_providers_for_platform(configured, user_agent)

    def _require_provider(self, provider: str) -> None:
        if not self.settings.oauth_enabled:
            raise ForbiddenError("OAuth sign-in is disabled", error_code="OAUTH_DISABLED")
        if provider not in OAUTH_PROVIDERS or not all(self._credentials(provider)):
            logger.warning("oauth_provider_unavailable", provider=provider)
            raise NotFoundError("Unknown or unavailable OAuth provider", error_code="OAUTH_PROVIDER_UNAVAILABLE")

    def _transition(self, provider: str, new_state: FlowState, **fields: Any) -> None:
        logger.info("oauth_transition", provider=provider, flow_state=new_state.value, **fields)

    def _fail(
        self,
        error: Exception,
        client: ClientInfo,
        provider: str,
        reason: str,
        **data: Any,
    ) -> Exception:
        self.audit.record(
            AuditEvent.OAUTH_CALLBACK,
            Severity.MEDIUM,
            client,
            oauth_provider=provider,
            failureReason=reason,
            **data,
        )
        return error

    async def begin_flow(
        self, provider: str, client_id: str, client: ClientInfo
    ) -> AuthorizationRequest:
        """Store fresh PKCE state for the client and build the provider redirect."""
        self._require_provider(provider)

        now = self._now()
        in_flight = await self.state_store.get_oauth_state(client_id, provider)
        if in_flight is not None:
            if now - in_flight.timestamp < self.flow_guard:
                raise ConflictError(
                    "Sign-in with this provider is already in progress",
                    error_code="OAUTH_FLOW_IN_PROGRESS",
                )
            # stale attempt the user walked away from
            await self.state_store.pop_oauth_state(client_id, provider)

        try:
            pkce = generate_pkce_pair()
        except PKCEGenerationError as exc:
            logger.error("oauth_pkce_generation_failed", provider=provider, error=str(exc))
            raise self._fail(
                ServerError(
                    "Secure sign-in is temporarily unavailable. Please try again.",
                    status_code=503,
                    error_code="SECURE_RANDOM_UNAVAILABLE",
                ),
                client,
                provider,
                "secure_random_unavailable",
            ) from exc

        redirect_uri = self._redirect_uri(provider)
        oauth_state = OAuthState(
            state=pkce.state,
            code_verifier=pkce.verifier,
            code_challenge=pkce.challenge,
            redirect_uri=redirect_uri,
            provider=provider,
            client_id=client_id,
            timestamp=now,
            expires_at=now + self.state_ttl,
        )
        if not await self.state_store.put_oauth_state(oauth_state):
            raise ConflictError(
                "Sign-in with this provider is already in progress",
                error_code="OAUTH_FLOW_IN_PROGRESS",
            )

        config = OAUTH_PROVIDERS[provider]
        oauth_client_id, _ = self._credentials(provider)
        params = {
            "client_id": oauth_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": pkce.state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
            **config["extra_params"],
        }
        logger.info("oauth_flow_started", provider=provider, expires_at=oauth_state.expires_at.isoformat())
        return AuthorizationRequest(
            provider=provider,
            url=f"{self._endpoint(provider, 'auth_url')}?{urlencode(params)}",
            expires_at=oauth_state.expires_at,
        )

    async def handle_callback(
        self,
        provider: str,
        client_id: Optional[str],
        client: ClientInfo,
        *,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        apple_user: Optional[str] = None,
    ) -> CallbackOutcome:
        self._require_provider(provider)
        self._transition(provider, FlowState.RECEIVED_CALLBACK)

        # Consumed here whatever happens next
        stored = await self.state_store.pop_oauth_state(client_id, provider) if client_id else None
        if (
            stored is None
            or not state
            or stored.is_expired(self._now())
            or not hmac.compare_digest(stored.state, state)
        ):
            if stored is None:
                reason = "missing_state"
            elif stored.is_expired(self._now()):
                reason = "expired_state"
            else:
                reason = "state_mismatch"
            self.audit.record(
                AuditEvent.OAUTH_STATE_MISMATCH,
                Severity.HIGH,
                client,
                oauth_provider=provider,
                reason=reason,
            )
            raise OAuthStateMismatchError("Sign-in could not be verified. Please start again.")
        self._transition(provider, FlowState.STATE_VERIFIED)

        if error:
            if error == "access_denied":
                raise self._fail(
                    OAuthAccessDeniedError("Sign-in was cancelled at the provider."),
                    client,
                    provider,
                    "access_denied",
                    errorDescription=error_description,
                )
            raise self._fail(
                OAuthCallbackError("The provider reported an error. Please try again."),
                client,
                provider,
                "provider_error",
                providerError=validation.normalize_unicode(error)[:64],
                errorDescription=error_description,
            )
        if not code:
            raise self._fail(
                OAuthCallbackError("The provider did not return an authorization code."),
                client,
                provider,
                "missing_code",
            )

        identity = await self._exchange_code(provider, code, stored, client, apple_user=apple_user)
        self.audit.record(
            AuditEvent.OAUTH_CALLBACK,
            Severity.LOW,
            client,
            oauth_provider=provider,
            stage=FlowState.CODE_EXCHANGED.value,
        )
        self._transition(provider, FlowState.CODE_EXCHANGED)

        linked_user = self.store.get_user_by_provider(provider, identity.provider_id)
        if linked_user is not None:
            session = self.sessions.start(linked_user, client, auth_method="oauth", oauth_provider=provider)
            self.audit.record(
                AuditEvent.OAUTH_LOGIN, Severity.LOW, client, user_id=linked_user.id, oauth_provider=provider
            )
            self._transition(provider, FlowState.SESSION_CREATED, user_id=linked_user.id)
            return CallbackOutcome(state=FlowState.SESSION_CREATED, session=session)

        existing = self.store.get_user_by_email(identity.email)
        if existing is None:
            return self._create_oauth_account(identity, client, FlowState.SESSION_CREATED)

        pending = PendingLink(
            token=secrets.token_urlsafe(32),
            provider=provider,
            provider_id=identity.provider_id,
            email=identity.email,
            existing_user_id=existing.id,
            csrf_token=new_csrf_token(),
            created_at=self._now(),
            expires_at=self._now() + self.state_ttl,
            name=identity.name,
            avatar=identity.avatar,
            requires_verification=not identity.email_verified,
        )
        await self.state_store.put_pending_link(pending)
        self.audit.record(
            AuditEvent.OAUTH_CALLBACK,
            Severity.LOW,
            client,
            user_id=existing.id,
            oauth_provider=provider,
            accountLinkingAttempt=True,
            result=FlowState.AWAITING_USER_CHOICE.value,
        )
        self._transition(provider, FlowState.AWAITING_USER_CHOICE, user_id=existing.id)
        return CallbackOutcome(
            state=FlowState.AWAITING_USER_CHOICE,
            linking=self._linking_data(pending, existing),
        )

    def _linking_data(self, pending: PendingLink, existing: User) -> AccountLinkingData:
        methods = [existing.auth_method] + [
            account.provider for account in self.store.list_linked_accounts(existing.id)
        ]
        return AccountLinkingData(
            link_token=pending.token,
            csrf_token=pending.csrf_token,
            oauth_provider=pending.provider,
            oauth_email=pending.email,
            oauth_name=pending.name,
            existing_user_id=existing.id,
            existing_user_email=existing.email,
            existing_auth_methods=list(dict.fromkeys(methods)),
            requires_verification=pending.requires_verification,
            expires_at=pending.expires_at,
        )

    def _create_oauth_account(
        self,
        identity: OAuthIdentity,
        client: ClientInfo,
        outcome: FlowState,
        *,
        allow_duplicate_email: bool = False,
    ) -> CallbackOutcome:
        try:
            user = self.store.create_linked_user(
                identity.email,
                identity.provider,
                identity.provider_id,
                name=identity.name,
                avatar=identity.avatar,
                allow_duplicate_email=allow_duplicate_email,
                meta={"oauth_provider": identity.provider},
            )
        except ConstraintViolation as exc:
            raise self._fail(
                AccountLinkingError("This account could not be created. Please try again.", status_code=409),
                client,
                identity.provider,
                "account_conflict",
                field=exc.field,
            ) from exc
        session = self.sessions.start(user, client, auth_method="oauth", oauth_provider=identity.provider)
        self.audit.record(
            AuditEvent.OAUTH_LOGIN,
            Severity.LOW,
            client,
            user_id=user.id,
            oauth_provider=identity.provider,
            isNewUser=True,
            separateAccount=True if outcome == FlowState.SEPARATE_CREATED else None,
        )
        self._transition(identity.provider, outcome, user_id=user.id)
        return CallbackOutcome(state=outcome, session=session, is_new_user=True)

    async def resolve_link(
        self,
        link_token: Optional[str],
        decision: Optional[str],
        csrf_token: Optional[str],
        client: ClientInfo,
        *,
        current_session_id: Optional[str] = None,
    ) -> CallbackOutcome:
        """Apply the user's link/separate choice to a parked identity."""
        try:
            choice = LinkDecision(decision)
        except ValueError as exc:
            raise ValidationError(
                "decision must be 'link' or 'separate'", detail={"field": "decision"}
            ) from exc

        pending = await self.state_store.pop_pending_link(link_token) if link_token else None
        if pending is None or pending.is_expired(self._now()):
            self.audit.record(
                AuditEvent.OAUTH_CALLBACK,
                Severity.MEDIUM,
                client,
                oauth_provider=pending.provider if pending else None,
                failureReason="link_expired",
            )
            raise AccountLinkingError(
                "This account linking request has expired. Please sign in again.",
                error_code="LINK_EXPIRED",
            )

        if not csrf_token or not hmac.compare_digest(pending.csrf_token, csrf_token):
            self.audit.record(
                AuditEvent.CSRF_VIOLATION,
                Severity.HIGH,
                client,
                user_id=pending.existing_user_id,
                oauth_provider=pending.provider,
                action="account_linking",
            )
            raise CsrfViolationError("Invalid security token. Please refresh the page.")

        existing = self.store.get_user(pending.existing_user_id)
        if existing is None:
            raise self._fail(
                AccountLinkingError("The account to link no longer exists."),
                client,
                pending.provider,
                "existing_user_missing",
            )

        if choice is LinkDecision.LINK:
            return self._link_existing(pending, existing, client, current_session_id)
        return self._keep_separate(pending, client)

    def _link_existing(
        self,
        pending: PendingLink,
        existing: User,
        client: ClientInfo,
        current_session_id: Optional[str],
    ) -> CallbackOutcome:
        if pending.requires_verification and not self._session_owns(current_session_id, existing.id):
            raise self._fail(
                AccountLinkingError(
                    "Sign in to your existing account first to link this provider.",
                    error_code="LINK_REQUIRES_VERIFICATION",
                ),
                client,
                pending.provider,
                "email_unverified",
                userId=existing.id,
            )
        try:
            self.store.link_account(existing.id, pending.provider, pending.provider_id, pending.email)
        except ConstraintViolation as exc:
            raise self._fail(
                AccountLinkingError("This provider account is already linked elsewhere."),
                client,
                pending.provider,
                "duplicate_provider_link",
                field=exc.field,
            ) from exc
        session = self.sessions.start(existing, client, auth_method="oauth", oauth_provider=pending.provider)
        self.audit.record(
            AuditEvent.ACCOUNT_LINKED,
            Severity.LOW,
            client,
            user_id=existing.id,
            oauth_provider=pending.provider,
        )
        self._transition(pending.provider, FlowState.LINKED, user_id=existing.id)
        return CallbackOutcome(state=FlowState.LINKED, session=session)

    def _keep_separate(self, pending: PendingLink, client: ClientInfo) -> CallbackOutcome:
        if not self.settings.allow_shared_email_accounts:
            raise self._fail(
                AccountLinkingError(
                    "An account with this email already exists. Link it or sign in with your password.",
                    status_code=409,
                    error_code="EMAIL_ALREADY_REGISTERED",
                ),
                client,
                pending.provider,
                "email_conflict",
            )
        return self._create_oauth_account(
            pending.identity(),
            client,
            FlowState.SEPARATE_CREATED,
            allow_duplicate_email=True,
        )

    def _session_owns(self, session_id: Optional[str], user_id: str) -> bool:
        if not session_id:
            return False
        session = self.sessions.store.get_session(session_id)
        return bool(session and session.user_id == user_id and not session.is_expired(self._now()))

    async def _exchange_code(
        self,
        provider: str,
        code: str,
        stored: OAuthState,
        client: ClientInfo,
        *,
        apple_user: Optional[str] = None,
    ) -> OAuthIdentity:
        oauth_client_id, client_secret = self._credentials(provider)
        token_data = {
            "client_id": oauth_client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": stored.redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": stored.code_verifier,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as http:
                token_response = await http.post(
                    self._endpoint(provider, "token_url"),
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_result = self._json_or_fail(token_response, provider, client, "token")
                access_token = token_result.get("access_token")
                if not access_token:
                    raise self._fail(
                        OAuthCallbackError("The provider did not return an access token."),
                        client,
                        provider,
                        "no_access_token",
                    )

                if provider == "apple":
                    return self._parse_apple_identity(token_result, apple_user, client)

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await http.get(self._endpoint(provider, "userinfo_url"), headers=headers)
                userinfo = self._json_or_fail(userinfo_response, provider, client, "userinfo")
                identity = self._parse_userinfo(provider, userinfo)

                if provider == "github" and (not identity.get("email") or not identity.get("email_verified")):
                    emails_response = await http.get(OAUTH_PROVIDERS["github"]["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        primary = next(
                            (
                                entry
                                for entry in emails_response.json()
                                if isinstance(entry, dict) and entry.get("primary") and entry.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            identity["email"] = primary["email"]
                            identity["email_verified"] = True
        except httpx.TimeoutException as exc:
            logger.warning("oauth_exchange_timeout", provider=provider)
            raise self._fail(
                OAuthNetworkError("The provider took too long to respond. Please try again."),
                client,
                provider,
                "timeout",
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("oauth_exchange_transport_error", provider=provider, error=str(exc))
            raise self._fail(
                OAuthNetworkError("Could not reach the provider. Please try again."),
                client,
                provider,
                "network_error",
            ) from exc
        except ValueError as exc:
            raise self._fail(
                OAuthCallbackError("The provider returned an unreadable response."),
                client,
                provider,
                "invalid_response",
            ) from exc

        return self._finalize_identity(provider, identity, client)

    def _json_or_fail(
        self, response: httpx.Response, provider: str, client: ClientInfo, step: str
    ) -> dict:
        if response.status_code >= 500:
            logger.warning("oauth_provider_unavailable", provider=provider, step=step, status_code=response.status_code)
            raise self._fail(
                OAuthNetworkError("The provider is temporarily unavailable. Please try again."),
                client,
                provider,
                "provider_unavailable",
                statusCode=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            payload = None
        error_code = payload.get("error") if isinstance(payload, dict) else None
        if response.status_code >= 400 or error_code:
            logger.warning("oauth_provider_error", provider=provider, step=step, status_code=response.status_code, error=error_code)
            if error_code == "access_denied":
                raise self._fail(
                    OAuthAccessDeniedError("Sign-in was cancelled at the provider."),
                    client,
                    provider,
                    "access_denied",
                )
            raise self._fail(
                OAuthCallbackError("Sign-in with the provider failed. Please try again."),
                client,
                provider,
                error_code if isinstance(error_code, str) else f"{step}_http_{response.status_code}",
            )
        if not isinstance(payload, dict):
            raise ValueError(f"{step} response is not a JSON object")
        return payload

    def _parse_userinfo(self, provider: str, userinfo: dict) -> dict:
        """Map provider-specific userinfo payloads onto one shape."""
        if provider == "google":
            return {
                "provider_id": userinfo.get("id") or userinfo.get("sub"),
                "email": userinfo.get("email"),
                "email_verified": bool(userinfo.get("verified_email", userinfo.get("email_verified", False))),
                "name": userinfo.get("name"),
                "avatar": userinfo.get("picture"),
            }
        if provider == "github":
            return {
                "provider_id": userinfo.get("id"),
                "email": userinfo.get("email"),
                "email_verified": False,
                "name": userinfo.get("name") or userinfo.get("login"),
                "avatar": userinfo.get("avatar_url"),
            }
        # microsoft OIDC userinfo; the email claim is not verified by the tenant
        return {
            "provider_id": userinfo.get("sub"),
            "email": userinfo.get("email") or userinfo.get("preferred_username"),
            "email_verified": False,
            "name": userinfo.get("name"),
            "avatar": None,
        }

    def _parse_apple_identity(
        self, token_result: dict, apple_user: Optional[str], client: ClientInfo
    ) -> OAuthIdentity:
        # id_token came straight from Apple's token endpoint over TLS
        claims = _decode_jwt_claims(token_result.get("id_token"))
        if claims is None:
            raise self._fail(
                OAuthCallbackError("The provider returned an unreadable identity."),
                client,
                "apple",
                "invalid_id_token",
            )
        name = None
        if apple_user:
            try:
                user_payload = json.loads(apple_user)
            except ValueError:
                user_payload = {}
            name_parts = user_payload.get("name") if isinstance(user_payload, dict) else None
            if isinstance(name_parts, dict):
                name = " ".join(
                    part for part in (name_parts.get("firstName"), name_parts.get("lastName")) if part
                ) or None
        identity = {
            "provider_id": claims.get("sub"),
            "email": claims.get("email"),
            "email_verified": str(claims.get("email_verified", "")).lower() == "true",
            "name": name,
            "avatar": None,
        }
        return self._finalize_identity("apple", identity, client)

    def _finalize_identity(self, provider: str, identity: dict, client: ClientInfo) -> OAuthIdentity:
        provider_id = identity.get("provider_id")
        if provider_id in (None, ""):
            raise self._fail(
                OAuthCallbackError("The provider did not return an account identifier."),
                client,
                provider,
                "missing_provider_id",
            )
        try:
            email = validation.normalize_email(identity.get("email"))
        except ValueError as exc:
            raise self._fail(
                OAuthCallbackError("The provider did not share a usable email address."),
                client,
                provider,
                "missing_email",
            ) from exc
        logger.info("oauth_exchange_success", provider=provider, provider_id=str(provider_id))
        return OAuthIdentity(
            provider=provider,
            provider_id=str(provider_id),
            email=email,
            name=identity.get("name"),
            avatar=identity.get("avatar"),
            email_verified=bool(identity.get("email_verified")),
        )


def _decode_jwt_claims(token: Optional[str]) -> Optional[dict]:
    if not token or token.count(".") != 2:
        return None
    payload = token.split(".")[1]
    try:
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        claims = json.loads(raw)
    except ValueError:
        return None
    return claims if isinstance(claims, dict) else None
