"""Provider base class.

Every provider owns its slice of the shared CredentialStore (keys prefixed
with the provider name), an HTTP client, and a bus announcing changes to
its current user. Only the AuthStateManager turns provider results into
session state.
"""

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, ClassVar

import httpx

from ..config import ProviderOptions, parse_provider_options
from ..events import EventBus
from ..exceptions import AuthError, AuthErrorCode
from ..storage import CredentialStore
from ..types import (
    AuthCredential,
    AuthResult,
    AuthUser,
    ProviderUserInfo,
    SignInOptions,
    SignOutOptions,
    UserMetadata,
    now_iso,
    now_ms,
)


logger = logging.getLogger(__name__)

UserListener = Callable[[AuthUser | None], Any]


class AuthProvider(ABC):
    """Abstract base class for identity providers.

    Parameters
    ----------
    options : ProviderOptions or dict, optional
        Provider configuration. Dicts are validated against the options
        model registered for ``provider_id``.
    store : CredentialStore
        Shared credential store.
    http_client : httpx.AsyncClient, optional
        Client to use for network calls. When omitted the provider creates
        (and later closes) its own.
    """

    provider_id: ClassVar[str] = "custom"
    sign_in_method: ClassVar[str] = "custom"

    def __init__(
        self,
        options: ProviderOptions | dict[str, Any] | None,
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not isinstance(options, ProviderOptions):
            options = parse_provider_options(self.provider_id, options)
        self.options = options
        self.store = store
        self._http_client = http_client
        self._owns_client = http_client is None
        self._current_user: AuthUser | None = None
        self._user_events: EventBus[AuthUser | None] = EventBus(f"{self.provider_id} user")
        self._initialized = False

    @property
    def name(self) -> str:
        """Provider name; also the namespace of its storage keys."""
        return self.provider_id

    @property
    def is_initialized(self) -> bool:
        """True once ``initialize()`` has completed."""
        return self._initialized

    @property
    def current_user(self) -> AuthUser | None:
        """The user this provider last signed in, without I/O."""
        return self._current_user

    async def initialize(self) -> None:
        """Load the provider's persisted user."""
        self._current_user = await self._load_current_user()
        self._initialized = True
        logger.debug("Provider %s initialized (user=%s)", self.name, bool(self._current_user))

    @abstractmethod
    async def sign_in(self, options: SignInOptions | None = None) -> AuthResult:
        """Authenticate the user.

        Returns
        -------
        AuthResult
            The signed-in user and credential, or a pending result for the
            first step of a two-step flow.
        """

    @abstractmethod
    async def sign_out(self, options: SignOutOptions | None = None) -> None:
        """End the provider session and clear its stored data."""

    @abstractmethod
    async def refresh_token(self) -> AuthResult:
        """Exchange the stored refresh token for fresh credentials."""

    @abstractmethod
    async def revoke_access(self) -> None:
        """Revoke tokens at the provider (best effort) and clear local state."""

    def is_supported(self) -> bool:
        """Return True if the provider can run in this environment."""
        return True

    async def get_current_user(self) -> AuthUser | None:
        """Return the provider's current user, or None."""
        return self._current_user

    def add_user_listener(self, listener: UserListener) -> Callable[[], None]:
        """Subscribe to current-user changes. Returns an unsubscribe callable."""
        return self._user_events.subscribe(listener)

    async def dispose(self) -> None:
        """Release network resources and listeners."""
        self._user_events.clear()
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None
        self._initialized = False

    # ── Helpers ──────────────────────────────────────────────────────

    def _key(self, suffix: str) -> str:
        return f"{self.name}_{suffix}"

    def _error(self, code: AuthErrorCode, message: str, details: Any = None) -> AuthError:
        return AuthError.for_code(code, message, provider=self.name, details=details)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            msg = f"Provider {self.name} is not initialized"
            raise self._error(AuthErrorCode.PROVIDER_NOT_INITIALIZED, msg)

    def _require_option(self, field: str) -> Any:
        value = getattr(self.options, field, None)
        if not value:
            msg = f"{self.name} provider requires '{field}'"
            raise self._error(AuthErrorCode.MISSING_CONFIGURATION, msg)
        return value

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=30.0)
            self._owns_client = True
        return self._http_client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, converting transport failures to NETWORK_ERROR."""
        client = await self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            msg = f"Request to {url} failed: {exc}"
            raise self._error(AuthErrorCode.NETWORK_ERROR, msg, details=exc) from exc

    def _error_from_response(
        self,
        response: httpx.Response,
        default_code: AuthErrorCode,
        message: str | None = None,
    ) -> AuthError:
        """Classify an unsuccessful backend response."""
        body = _json_body(response)
        reported = AuthErrorCode.parse(body.get("code")) or AuthErrorCode.parse(body.get("error"))
        if response.status_code == 429:
            code = AuthErrorCode.TOO_MANY_REQUESTS
        elif reported is not None:
            code = reported
        elif response.status_code >= 500:
            code = AuthErrorCode.SERVER_ERROR
        else:
            code = default_code
        text = body.get("message") or body.get("error_description") or message
        return self._error(code, str(text or f"Request failed with status {response.status_code}"), details=body)

    async def _set_current_user(self, user: AuthUser | None) -> None:
        self._current_user = user
        if user is None:
            await self.store.remove(self._key("current_user"))
        else:
            await self.store.set(self._key("current_user"), user.to_dict())
        self._user_events.emit(user)

    async def _load_current_user(self) -> AuthUser | None:
        data = await self.store.get(self._key("current_user"))
        if not isinstance(data, dict):
            return None
        try:
            return AuthUser.from_dict(data)
        except (KeyError, TypeError) as exc:
            logger.warning("Discarding unreadable stored user for %s: %s", self.name, exc)
            await self.store.remove(self._key("current_user"))
            return None

    async def _save_credential(self, credential: AuthCredential) -> None:
        await self.store.set(self._key("credential"), credential.to_dict())

    async def _load_credential(self) -> AuthCredential | None:
        data = await self.store.get(self._key("credential"))
        if not isinstance(data, dict):
            return None
        return AuthCredential.from_dict(data)

    async def _clear_stored_data(self) -> None:
        await self.store.remove(self._key("credential"))
        await self._set_current_user(None)


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _pick(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def credential_from_backend(provider_id: str, sign_in_method: str, data: dict[str, Any]) -> AuthCredential:
    """Build a credential from a backend response (snake or camel case keys).

    ``expires_at`` is taken as epoch ms; ``expires_in`` as seconds from now.
    """
    expires_at = _pick(data, "expires_at", "expiresAt")
    if expires_at is None:
        expires_in = _pick(data, "expires_in", "expiresIn")
        if expires_in is not None:
            expires_at = now_ms() + int(float(expires_in) * 1000)
    return AuthCredential(
        provider_id=provider_id,
        sign_in_method=sign_in_method,
        access_token=_pick(data, "access_token", "accessToken", "token"),
        id_token=_pick(data, "id_token", "idToken"),
        refresh_token=_pick(data, "refresh_token", "refreshToken"),
        expires_at=int(expires_at) if expires_at is not None else None,
        scope=data.get("scope"),
        token_type=_pick(data, "token_type", "tokenType") or "Bearer",
    )


def user_from_backend(provider_id: str, data: dict[str, Any], **fallback: Any) -> AuthUser:
    """Build an AuthUser from a backend user payload.

    ``fallback`` supplies values (uid, email, phone_number...) the payload
    may omit.
    """
    user_data = data.get("user") if isinstance(data.get("user"), dict) else data
    uid = _pick(user_data, "uid", "id", "sub") or fallback.get("uid")
    if not uid:
        msg = "Backend response did not include a user id"
        raise AuthError.for_code(AuthErrorCode.INTERNAL_ERROR, msg, provider=provider_id, details=data)

    email = _pick(user_data, "email") or fallback.get("email")
    display_name = _pick(user_data, "display_name", "displayName", "name") or fallback.get("display_name")
    photo_url = _pick(user_data, "photo_url", "photoURL", "photoUrl", "picture")
    phone_number = _pick(user_data, "phone_number", "phoneNumber") or fallback.get("phone_number")
    signed_in_at = now_iso()
    return AuthUser(
        uid=str(uid),
        email=email,
        display_name=display_name,
        photo_url=photo_url,
        phone_number=phone_number,
        email_verified=bool(_pick(user_data, "email_verified", "emailVerified") or fallback.get("email_verified")),
        provider_data=[
            ProviderUserInfo(
                provider_id=provider_id,
                uid=str(uid),
                display_name=display_name,
                email=email,
                phone_number=phone_number,
                photo_url=photo_url,
            )
        ],
        metadata=UserMetadata(
            creation_time=_pick(user_data, "created_at", "createdAt", "creation_time") or signed_in_at,
            last_sign_in_time=signed_in_at,
        ),
    )
