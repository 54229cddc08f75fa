"""PKCE (RFC 7636) material for OAuth authorization requests.

Everything here draws from :mod:`secrets`. When the operating system cannot
provide secure randomness the helpers raise :class:`PKCEGenerationError`
instead of degrading, and the OAuth flow refuses to start.
"""
from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

CODE_CHALLENGE_METHOD = "S256"
VERIFIER_BYTES = 32
STATE_BYTES = 16


class PKCEGenerationError(RuntimeError):
    """Secure random source unavailable; OAuth must not proceed."""


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _random_bytes(count: int) -> bytes:
    try:
        return secrets.token_bytes(count)
    except (NotImplementedError, OSError) as exc:
        raise PKCEGenerationError("secure random source unavailable") from exc


def generate_verifier() -> str:
    """32 random bytes, base64url without padding (43 characters)."""
    return _b64url(_random_bytes(VERIFIER_BYTES))


def generate_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(ascii(verifier))) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    """16 random bytes, hex encoded."""
    return _random_bytes(STATE_BYTES).hex()


@dataclass(frozen=True)
class PKCEPair:
    verifier: str
    challenge: str
    state: str
    method: str = CODE_CHALLENGE_METHOD


def generate_pkce_pair() -> PKCEPair:
    verifier = generate_verifier()
    return PKCEPair(verifier=verifier, challenge=generate_challenge(verifier), state=generate_state())
