from __future__ import annotations

import html
import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

# Audit payloads carry escaped emails on purpose; only credentials are masked.
_SECRET_KEY_FRAGMENTS = ("password", "secret", "token", "verifier", "authorization", "cookie")


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Use the caller's X-Request-ID (or a fresh uuid) for every log line of this request."""
    rid = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid)
    return rid


def _mask_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(fragment in key.lower() for fragment in _SECRET_KEY_FRAGMENTS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Set up structlog; ``fmt`` is ``json`` for production or ``console`` locally."""
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _mask_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "json").lower())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def sanitize_for_log(value: Optional[str], *, max_length: int = 320) -> str:
    """HTML-entity-escape user supplied text before it reaches logs.

    Log viewers frequently render HTML, so anything echoed from a request body
    (emails, names, provider error descriptions) goes through here first.
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    escaped = html.escape(value.strip(), quote=True).replace("/", "&#x2F;")
    if len(escaped) > max_length:
        escaped = escaped[: max_length - 3] + "..."
    return escaped


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    from urllib.parse import urlparse, urlunparse

    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )
