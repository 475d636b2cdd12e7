"""Type definitions for authmanager.

Shared data types passed between the state manager, the registry,
the providers and the credential store.
"""

from __future__ import annotations

import time

from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def now_iso() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProviderUserInfo:
    """Per-provider identity attached to an AuthUser."""

    provider_id: str
    uid: str | None = None
    display_name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    photo_url: str | None = None


@dataclass
class UserMetadata:
    """Account timestamps (ISO-8601 strings)."""

    creation_time: str | None = None
    last_sign_in_time: str | None = None


@dataclass
class AuthUser:
    """An authenticated identity.

    Attributes
    ----------
    uid : str
        Stable identifier for the (provider, external id) pair.
    email : str or None
        Primary email address.
    display_name : str or None
        Human-readable name.
    photo_url : str or None
        Avatar URL.
    phone_number : str or None
        E.164 phone number, when known.
    email_verified : bool
        Whether the provider vouches for the email address.
    is_anonymous : bool
        Always False for provider-backed users.
    provider_data : list[ProviderUserInfo]
        Identities from each linked provider.
    metadata : UserMetadata
        Creation and last sign-in timestamps.
    refresh_token : str or None
        Refresh token of the current session, if any.
    custom_claims : dict[str, Any]
        Provider-specific profile fields.
    """

    uid: str
    email: str | None = None
    display_name: str | None = None
    photo_url: str | None = None
    phone_number: str | None = None
    email_verified: bool = False
    is_anonymous: bool = False
    provider_data: list[ProviderUserInfo] = field(default_factory=list)
    metadata: UserMetadata = field(default_factory=UserMetadata)
    refresh_token: str | None = None
    custom_claims: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthUser:
        """Rebuild a user from ``to_dict`` output."""
        return cls(
            uid=data["uid"],
            email=data.get("email"),
            display_name=data.get("display_name"),
            photo_url=data.get("photo_url"),
            phone_number=data.get("phone_number"),
            email_verified=bool(data.get("email_verified", False)),
            is_anonymous=bool(data.get("is_anonymous", False)),
            provider_data=[ProviderUserInfo(**p) for p in data.get("provider_data") or []],
            metadata=UserMetadata(**(data.get("metadata") or {})),
            refresh_token=data.get("refresh_token"),
            custom_claims=dict(data.get("custom_claims") or {}),
        )


@dataclass
class AuthCredential:
    """Token material for one provider session.

    Attributes
    ----------
    provider_id : str
        The provider that issued the tokens.
    sign_in_method : str
        ``"oauth"``, ``"sms"``, ``"password"``, ``"magic_link"``...
    access_token : str or None
        The access token.
    id_token : str or None
        OIDC ID token (JWT), untrusted on the client.
    refresh_token : str or None
        Refresh token. Without one no refresh is ever scheduled.
    expires_at : int or None
        Absolute expiry as epoch milliseconds. None means unknown/never.
    scope : str or None
        Space-separated granted scopes.
    token_type : str
        Token type, typically "Bearer".
    """

    provider_id: str
    sign_in_method: str = "oauth"
    access_token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None
    expires_at: int | None = None
    scope: str | None = None
    token_type: str = "Bearer"  # noqa: S105

    def is_expired(self, at_ms: int | None = None) -> bool:
        """Check whether the access token is past its expiry."""
        if self.expires_at is None:
            return False
        return (now_ms() if at_ms is None else at_ms) >= self.expires_at

    def should_refresh(self, buffer_ms: int, at_ms: int | None = None) -> bool:
        """Check whether the token is within ``buffer_ms`` of expiring."""
        if self.expires_at is None:
            return False
        return (now_ms() if at_ms is None else at_ms) >= self.expires_at - buffer_ms

    def refresh_due_at(self, buffer_ms: int) -> int | None:
        """Epoch ms at which a proactive refresh should run, if schedulable."""
        if self.expires_at is None or not self.refresh_token:
            return None
        return self.expires_at - buffer_ms

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthCredential:
        """Rebuild a credential from ``to_dict`` output."""
        expires_at = data.get("expires_at")
        return cls(
            provider_id=data.get("provider_id", ""),
            sign_in_method=data.get("sign_in_method", "oauth"),
            access_token=data.get("access_token"),
            id_token=data.get("id_token"),
            refresh_token=data.get("refresh_token"),
            expires_at=int(expires_at) if expires_at is not None else None,
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )


@dataclass
class AdditionalUserInfo:
    """Extra information returned alongside an AuthResult."""

    provider_id: str
    is_new_user: bool = False
    pending: bool = False
    message: str | None = None
    profile: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthResult:
    """Outcome of a provider sign-in or refresh.

    ``user`` is None only for the pending first step of a two-step flow
    (SMS code or magic link sent); such a result never authenticates.
    """

    user: AuthUser | None
    credential: AuthCredential | None
    additional_user_info: AdditionalUserInfo | None = None
    operation_type: Literal["sign_in", "link", "reauthenticate", "refresh"] = "sign_in"

    @property
    def is_pending(self) -> bool:
        """True if the flow needs a second step before it is complete."""
        info = self.additional_user_info
        return self.user is None or bool(info and info.pending)


@dataclass(frozen=True)
class AuthState:
    """Immutable snapshot of the current session.

    ``is_authenticated`` is True exactly when ``user`` is set, and
    ``provider`` is only set while a user is.
    """

    user: AuthUser | None = None
    is_loading: bool = False
    is_authenticated: bool = False
    provider: str | None = None

    def evolve(self, **changes: Any) -> AuthState:
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "user": self.user.to_dict() if self.user else None,
            "is_loading": self.is_loading,
            "is_authenticated": self.is_authenticated,
            "provider": self.provider,
        }


AuthStateListener = Callable[[AuthState], Any]


@dataclass
class SignInOptions:
    """Caller-supplied options for a sign-in.

    Attributes
    ----------
    provider : str or None
        Provider name when options are passed instead of a name.
    scopes : list[str] or None
        Overrides the configured scopes for OAuth providers.
    custom_parameters : dict[str, str]
        Extra authorization URL parameters, passed through verbatim.
    login_hint : str or None
        Forwarded as ``login_hint``.
    prompt : str or None
        Forwarded as ``prompt``.
    credentials : dict[str, Any]
        Provider-specific inputs (email, password, phone_number, code, token).
    extra : dict[str, Any]
        Free-form options forwarded to the provider untouched.
    """

    provider: str | None = None
    scopes: list[str] | None = None
    custom_parameters: dict[str, str] = field(default_factory=dict)
    login_hint: str | None = None
    prompt: str | None = None
    credentials: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class SignOutOptions:
    """Caller-supplied options for a sign-out."""

    provider: str | None = None
    revoke_token: bool = False


@dataclass
class PendingVerification:
    """Second step of an SMS or magic-link flow.

    Attributes
    ----------
    session_id : str
        Backend session id (SMS) or the link token (magic link).
    target : str
        Phone number or email address the code/link was sent to.
    expires_at : int
        Epoch ms after which the verification is void.
    attempts : int
        Failed verification attempts so far; only ever increases.
    last_sent_at : int or None
        Epoch ms of the last send, for resend throttling.
    """

    session_id: str
    target: str
    expires_at: int
    attempts: int = 0
    last_sent_at: int | None = None

    def is_expired(self, at_ms: int | None = None) -> bool:
        """Check whether the verification window has passed."""
        return (now_ms() if at_ms is None else at_ms) > self.expires_at


@dataclass(frozen=True)
class OAuthSecurityContext:
    """Per-flow CSRF material. Single use."""

    state: str
    nonce: str


@dataclass
class AuthorizationResponse:
    """Parameters delivered to the redirect URI."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> AuthorizationResponse:
        """Build from a flat mapping of callback query parameters."""
        known = {"code", "state", "error", "error_description"}
        return cls(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
            extra={k: v for k, v in params.items() if k not in known},
        )


class HandshakeState(str, Enum):
    """State of an authorization handshake."""

    STARTED = "started"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


Platform = Literal["desktop", "web", "ios", "android"]
Persistence = Literal["local", "session", "memory", "redis"]
