from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_TYPES = frozenset({
    "validation_error",
    "rate_limit_exceeded",
    "csrf_violation",
    "oauth_state_mismatch",
    "oauth_access_denied",
    "oauth_network_error",
    "oauth_callback_error",
    "account_linking_error",
    "session_expired",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error half of the envelope; ``type`` is one of the stable taxonomy values."""

    type: str
    code: str
    message: str
    recoverable: bool = True
    retryable: bool = True
    details: Optional[Any] = None

    @field_validator("type")
    @classmethod
    def _validate_error_type(cls, value: str) -> str:
        if value not in _VALID_ERROR_TYPES:
            raise ValueError(
                f"Invalid error type '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_TYPES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request bodies stay loosely typed: the services validate them only after
# rate limiting so malformed floods still count against the caller.
class LoginRequest(_CamelModel):
    email: Optional[Any] = None
    password: Optional[Any] = None
    csrf_token: Optional[str] = None


class RegisterRequest(_CamelModel):
    email: Optional[Any] = None
    password: Optional[Any] = None
    first_name: Optional[Any] = None
    last_name: Optional[Any] = None
    terms_accepted: Optional[Any] = None
    marketing_consent: Optional[Any] = None
    csrf_token: Optional[str] = None


class CsrfRequest(_CamelModel):
    csrf_token: Optional[str] = None


class LinkDecisionRequest(_CamelModel):
    link_token: Optional[str] = None
    decision: Optional[str] = None
    csrf_token: Optional[str] = None


class UserSummary(_CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    oauth_provider: Optional[str] = None


class LinkedAccountSummary(_CamelModel):
    provider: str
    email: Optional[str] = None
    linked_at: datetime


class SessionResponse(_CamelModel):
    user: UserSummary
    auth_method: str
    csrf_token: str
    expires_at: datetime
    last_validated: Optional[datetime] = None
    oauth_provider: Optional[str] = None
    linked_accounts: List[LinkedAccountSummary] = Field(default_factory=list)
    is_authenticated: bool = True


class RefreshResponse(SessionResponse):
    refreshed: bool


class ValidateResponse(_CamelModel):
    valid: bool
    user: Optional[UserSummary] = None
    expires_at: Optional[datetime] = None
    provider: Optional[str] = None
    reason: Optional[str] = None


class RegisterResponse(_CamelModel):
    user: UserSummary
    csrf_token: str


class CsrfResponse(_CamelModel):
    csrf_token: str


class LogoutResponse(_CamelModel):
    logged_out: bool


class ProviderInfo(_CamelModel):
    id: str
    name: str


class ProvidersResponse(_CamelModel):
    providers: List[ProviderInfo]
    platform: str


class ExistingAccount(_CamelModel):
    id: str
    email: str
    auth_methods: List[str]


class AccountLinkingResponse(_CamelModel):
    status: str = "awaiting_user_choice"
    link_token: str
    csrf_token: str
    oauth_provider: str
    oauth_email: str
    oauth_name: Optional[str] = None
    existing_user: ExistingAccount
    requires_verification: bool
    expires_at: datetime


class OAuthCompletionResponse(SessionResponse):
    status: str
    is_new_user: bool = False
