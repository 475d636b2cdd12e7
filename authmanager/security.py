"""Flow security material.

State and nonce generation, PKCE (RFC 7636, S256) and unverified
ID token claim decoding.
"""

from __future__ import annotations

import base64
import hashlib
import json
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass
from typing import Any

from .types import OAuthSecurityContext


_BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


def generate_secure_token(num_bytes: int = 32) -> str:
    """Return ``num_bytes`` uniformly chosen base62 characters."""
    return "".join(secrets.choice(_BASE62) for _ in range(num_bytes))


def generate_security_context() -> OAuthSecurityContext:
    """Create fresh state and nonce values for one authorization attempt."""
    return OAuthSecurityContext(state=generate_secure_token(), nonce=generate_secure_token())


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge.

    Attributes
    ----------
    verifier : str
        High-entropy random string sent with the token request.
    challenge : str
        base64url(SHA-256(verifier)) without padding.
    method : str
        Always ``"S256"``.
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, num_bytes: int = 64) -> PKCEPair:
        """Generate a verifier of ``num_bytes`` random bytes and its challenge."""
        verifier = secrets.token_urlsafe(num_bytes)
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return cls(verifier=verifier, challenge=urlsafe_b64encode(digest).rstrip(b"=").decode("ascii"))


def decode_id_token_claims(id_token: str) -> dict[str, Any]:
    """Decode the payload of a JWT without verifying its signature.

    The result is for display and nonce comparison only. It must not be
    used for authorization decisions.

    Parameters
    ----------
    id_token : str
        A compact JWS (``header.payload.signature``).

    Returns
    -------
    dict
        The payload claims, or an empty dict if the token is malformed.
    """
    parts = id_token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeError):
        return {}
    return claims if isinstance(claims, dict) else {}
