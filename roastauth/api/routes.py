from __future__ import annotations

import secrets
from typing import Optional

from fastapi import APIRouter, Form, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from roastauth.api.schemas import (
    AccountLinkingResponse,
    CsrfRequest,
    CsrfResponse,
    Envelope,
    ExistingAccount,
    LinkDecisionRequest,
    LinkedAccountSummary,
    LoginRequest,
    LogoutResponse,
    OAuthCompletionResponse,
    ProviderInfo,
    ProvidersResponse,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    SessionResponse,
    UserSummary,
    ValidateResponse,
)
from roastauth.logging import get_logger
from roastauth.service.audit import ClientInfo
from roastauth.service.oauth import (
    OAUTH_PROVIDERS,
    CallbackOutcome,
    FlowState,
    detect_platform,
)
from roastauth.service.runtime import get_runtime
from roastauth.service.sessions import UserSession

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"
OAUTH_CLIENT_COOKIE = "oauth_client"

NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def client_info_from_request(request: Request) -> ClientInfo:
    """Client address from the first X-Forwarded-For hop, then X-Real-IP, then the peer."""
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = None
    if forwarded:
        ip_address = forwarded.split(",")[0].strip() or None
    if not ip_address:
        ip_address = (request.headers.get("x-real-ip") or "").strip() or None
    if not ip_address and request.client:
        ip_address = request.client.host
    return ClientInfo(
        ip_address=ip_address or "unknown",
        user_agent=request.headers.get("user-agent") or "unknown",
    )


def _session_id_from_request(request: Request) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE) or request.headers.get("session_id")


def _apply_no_store(response: Response) -> None:
    for name, value in NO_STORE_HEADERS.items():
        response.headers[name] = value


def _apply_session_cookie(response: Response, session: UserSession) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session.session_id,
        httponly=True,
        secure=get_runtime().settings.cookie_secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        secure=get_runtime().settings.cookie_secure,
        samesite="lax",
    )


def _user_summary(session: UserSession) -> UserSummary:
    user = session.user
    return UserSummary(
        id=user.id,
        email=user.email,
        name=user.name,
        avatar=user.avatar,
        oauth_provider=session.oauth_provider,
    )


def _session_payload(session: UserSession) -> dict:
    return dict(
        user=_user_summary(session),
        auth_method=session.auth_method,
        csrf_token=session.csrf_token,
        expires_at=session.expires_at,
        last_validated=session.last_validated,
        oauth_provider=session.oauth_provider,
        linked_accounts=[
            LinkedAccountSummary(provider=acct.provider, email=acct.email, linked_at=acct.linked_at)
            for acct in session.linked_accounts
        ],
        is_authenticated=session.is_authenticated,
    )


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf(response: Response):
    """Hand out a fresh CSRF token for the login and registration forms."""
    runtime = get_runtime()
    _apply_no_store(response)
    return Envelope(status="ok", data=CsrfResponse(csrf_token=runtime.auth.issue_csrf_token()))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, body.csrf_token, client_info_from_request(request)
    )
    for name, value in result.rate_limit.headers().items():
        response.headers[name] = value
    _apply_no_store(response)
    _apply_session_cookie(response, result.session)
    return Envelope(status="ok", data=SessionResponse(**_session_payload(result.session)))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        terms_accepted=body.terms_accepted,
        marketing_consent=bool(body.marketing_consent),
        csrf_token=body.csrf_token,
        client=client_info_from_request(request),
    )
    for name, value in result.rate_limit.headers().items():
        response.headers[name] = value
    _apply_no_store(response)
    user = result.user
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=UserSummary(id=user.id, email=user.email, name=user.name, avatar=user.avatar),
            csrf_token=runtime.auth.issue_csrf_token(),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: CsrfRequest, request: Request, response: Response):
    runtime = get_runtime()
    ended = runtime.sessions.end(
        _session_id_from_request(request), body.csrf_token, client_info_from_request(request)
    )
    _apply_no_store(response)
    _clear_session_cookie(response)
    return Envelope(status="ok", data=LogoutResponse(logged_out=ended))


@router.get("/auth/session/validate", response_model=Envelope, tags=["auth"])
async def validate_session(request: Request, response: Response):
    """Report whether the caller's session is usable; invalid sessions still get 200."""
    runtime = get_runtime()
    result = runtime.sessions.validate(
        _session_id_from_request(request), client_info_from_request(request)
    )
    _apply_no_store(response)
    if not result.valid or result.session is None:
        return Envelope(status="ok", data=ValidateResponse(valid=False, reason=result.reason))
    return Envelope(
        status="ok",
        data=ValidateResponse(
            valid=True,
            user=_user_summary(result.session),
            expires_at=result.session.expires_at,
            provider=result.session.oauth_provider,
        ),
    )


@router.post("/auth/session/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(body: CsrfRequest, request: Request, response: Response):
    runtime = get_runtime()
    session, refreshed = runtime.sessions.refresh(
        _session_id_from_request(request), body.csrf_token, client_info_from_request(request)
    )
    _apply_no_store(response)
    if refreshed:
        _apply_session_cookie(response, session)
    return Envelope(
        status="ok",
        data=RefreshResponse(refreshed=refreshed, **_session_payload(session)),
    )


@router.get("/auth/providers", response_model=Envelope, tags=["auth"])
async def list_providers(request: Request):
    runtime = get_runtime()
    user_agent = request.headers.get("user-agent")
    providers = runtime.oauth.available_providers(user_agent)
    return Envelope(
        status="ok",
        data=ProvidersResponse(
            providers=[
                ProviderInfo(id=name, name=OAUTH_PROVIDERS[name]["display_name"]) for name in providers
            ],
            platform=detect_platform(user_agent),
        ),
    )


@router.get("/auth/oauth/{provider}/start", tags=["auth"])
async def oauth_start(request: Request, provider: str = Path(..., max_length=32)):
    """Start a PKCE authorization-code flow and redirect to the provider."""
    runtime = get_runtime()
    client_id = request.cookies.get(OAUTH_CLIENT_COOKIE) or secrets.token_urlsafe(32)
    start = await runtime.oauth.begin_flow(provider, client_id, client_info_from_request(request))
    redirect = RedirectResponse(start.url, status_code=302, headers=NO_STORE_HEADERS)
    redirect.set_cookie(
        OAUTH_CLIENT_COOKIE,
        client_id,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        # Apple posts the callback cross-site
        samesite="none" if runtime.settings.cookie_secure else "lax",
        max_age=runtime.settings.oauth_state_ttl_minutes * 60,
        path="/v1/auth/oauth",
    )
    return redirect


def _callback_response(outcome: CallbackOutcome, response: Response) -> Envelope:
    _apply_no_store(response)
    if outcome.state == FlowState.AWAITING_USER_CHOICE and outcome.linking is not None:
        linking = outcome.linking
        return Envelope(
            status="ok",
            data=AccountLinkingResponse(
                link_token=linking.link_token,
                csrf_token=linking.csrf_token,
                oauth_provider=linking.oauth_provider,
                oauth_email=linking.oauth_email,
                oauth_name=linking.oauth_name,
                existing_user=ExistingAccount(
                    id=linking.existing_user_id,
                    email=linking.existing_user_email,
                    auth_methods=linking.existing_auth_methods,
                ),
                requires_verification=linking.requires_verification,
                expires_at=linking.expires_at,
            ),
        )
    session = outcome.session
    _apply_session_cookie(response, session)
    return Envelope(
        status="ok",
        data=OAuthCompletionResponse(
            status=outcome.state.value,
            is_new_user=outcome.is_new_user,
            **_session_payload(session),
        ),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
    error_description: Optional[str] = Query(None, max_length=1024),
):
    runtime = get_runtime()
    outcome = await runtime.oauth.handle_callback(
        provider,
        request.cookies.get(OAUTH_CLIENT_COOKIE),
        client_info_from_request(request),
        code=code,
        state=state,
        error=error,
        error_description=error_description,
    )
    return _callback_response(outcome, response)


@router.post("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback_form_post(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Form(None, max_length=2048),
    state: Optional[str] = Form(None, max_length=128),
    error: Optional[str] = Form(None, max_length=256),
    user: Optional[str] = Form(None, max_length=4096),
):
    """Form-post variant of the callback used by Sign in with Apple."""
    runtime = get_runtime()
    outcome = await runtime.oauth.handle_callback(
        provider,
        request.cookies.get(OAUTH_CLIENT_COOKIE),
        client_info_from_request(request),
        code=code,
        state=state,
        error=error,
        apple_user=user,
    )
    return _callback_response(outcome, response)


@router.post("/auth/oauth/link", response_model=Envelope, tags=["auth"])
async def resolve_account_link(body: LinkDecisionRequest, request: Request, response: Response):
    """Apply the user's link-or-separate choice after an email collision."""
    runtime = get_runtime()
    outcome = await runtime.oauth.resolve_link(
        body.link_token,
        body.decision,
        body.csrf_token,
        client_info_from_request(request),
        current_session_id=_session_id_from_request(request),
    )
    return _callback_response(outcome, response)
