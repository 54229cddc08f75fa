from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_EMAIL_LENGTH = 254

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[ '\-][^\W\d_]+)*$")
_SPECIAL_CHARS = set("!@#$%^&*()_+-=[]{}|;':\",./<>?`~\\")
# Tokens we issue are 64 hex chars; accept any sane url-safe opaque token.
_CSRF_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{16,256}$")


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: Any) -> str:
    """Trim, lowercase and syntax-check an email address.

    Raises:
        ValueError: if the address is structurally invalid
    """
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    if local.startswith(".") or local.endswith(".") or ".." in local:
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def check_login_password(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError("password is required")
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError("password too short")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError("password too long")
    return value


def check_password_strength(value: Any) -> str:
    """Registration rule: 8-128 chars with an uppercase letter, a digit and a symbol."""
    password = check_login_password(value)
    if not any(c.isupper() for c in password):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.isdigit() for c in password):
        raise ValueError("password must contain a number")
    if not any(c in _SPECIAL_CHARS for c in password):
        raise ValueError("password must contain a special character")
    return password


def check_person_name(value: Any, field: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field} is required")
    cleaned = normalize_unicode(value.strip())
    if not cleaned or len(cleaned) > 50:
        raise ValueError(f"{field} must be 1-50 characters")
    if not _NAME_PATTERN.match(cleaned):
        raise ValueError(f"{field} contains invalid characters")
    return cleaned


def is_well_formed_csrf_token(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(_CSRF_TOKEN_PATTERN.match(value))
