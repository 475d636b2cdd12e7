"""authmanager exception hierarchy.

All authmanager-specific exceptions inherit from AuthManagerException.
Authentication failures are AuthError instances carrying a stable
AuthErrorCode, so callers can branch on ``error.code`` regardless of
which provider raised it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class AuthErrorCode(str, Enum):
    """Stable error codes shared by every provider."""

    # Configuration
    MISSING_CONFIGURATION = "auth/missing-configuration"
    UNSUPPORTED_PROVIDER = "auth/unsupported-provider"
    PROVIDER_INIT_FAILED = "auth/provider-init-failed"
    PROVIDER_NOT_INITIALIZED = "auth/provider-not-initialized"
    OPERATION_NOT_SUPPORTED = "auth/operation-not-supported"
    MISSING_REDIRECT_URL = "auth/missing-redirect-url"

    # Flow security
    INVALID_STATE = "auth/invalid-state"
    INVALID_NONCE = "auth/invalid-nonce"
    MISSING_NONCE = "auth/missing-nonce"
    MISSING_CODE_VERIFIER = "auth/missing-code-verifier"

    # User initiated
    USER_CANCELLED = "auth/user-cancelled"
    POPUP_CLOSED_BY_USER = "auth/popup-closed-by-user"
    POPUP_BLOCKED = "auth/popup-blocked"
    REDIRECT_CANCELLED_BY_USER = "auth/redirect-cancelled-by-user"
    AUTH_TIMEOUT = "auth/timeout"

    # Network / remote
    NETWORK_ERROR = "auth/network-error"
    SERVER_ERROR = "auth/server-error"
    TEMPORARILY_UNAVAILABLE = "auth/temporarily-unavailable"
    TOO_MANY_REQUESTS = "auth/too-many-requests"

    # OAuth vocabulary
    INVALID_REQUEST = "auth/invalid-request"
    ACCESS_DENIED = "auth/access-denied"
    APP_NOT_AUTHORIZED = "auth/app-not-authorized"
    UNSUPPORTED_GRANT_TYPE = "auth/unsupported-grant-type"
    INVALID_SCOPE = "auth/invalid-scope"
    CLIENT_NOT_FOUND = "auth/client-not-found"
    INTERACTION_REQUIRED = "auth/interaction-required"
    LOGIN_REQUIRED = "auth/login-required"
    CONSENT_REQUIRED = "auth/consent-required"

    # Credentials
    INVALID_CREDENTIALS = "auth/invalid-credentials"
    INVALID_GRANT = "auth/invalid-grant"
    TOKEN_EXPIRED = "auth/token-expired"
    TOKEN_REFRESH_FAILED = "auth/token-refresh-failed"
    NO_AUTH_SESSION = "auth/no-auth-session"
    USER_NOT_FOUND = "auth/user-not-found"
    EMAIL_ALREADY_IN_USE = "auth/email-already-in-use"
    USERNAME_ALREADY_IN_USE = "auth/username-already-in-use"
    WEAK_PASSWORD = "auth/weak-password"
    INVALID_EMAIL = "auth/invalid-email"
    INVALID_USERNAME = "auth/invalid-username"
    INVALID_PHONE_NUMBER = "auth/invalid-phone-number"
    INVALID_VERIFICATION_CODE = "auth/invalid-verification-code"
    EXPIRED_ACTION_CODE = "auth/expired-action-code"

    # Catch-all
    SIGN_IN_FAILED = "auth/sign-in-failed"
    SIGN_OUT_FAILED = "auth/sign-out-failed"
    INTERNAL_ERROR = "auth/internal-error"

    @classmethod
    def parse(cls, value: Any) -> AuthErrorCode | None:
        """Return the member matching ``value`` (by value or name), if any."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            pass
        return cls.__members__.get(value.upper().replace("-", "_"))


class AuthManagerException(Exception):
    """Base exception for all authmanager errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize authmanager exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, key, backend, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        ctx = {k: v for k, v in self.context.items() if v is not None}
        if ctx:
            return f"{self.message} ({', '.join(f'{k}={v!r}' for k, v in ctx.items())})"
        return self.message


class StorageError(AuthManagerException):
    """Credential storage backend failed."""


class AuthError(AuthManagerException):
    """Base exception for all authentication failures.

    Parameters
    ----------
    code : AuthErrorCode or str
        Stable taxonomy code. Unknown strings collapse to ``INTERNAL_ERROR``.
    message : str
        Human-readable error message.
    provider : str, optional
        The provider name (e.g. ``"google"``).
    details : Any, optional
        Raw provider payload or the underlying exception.
    """

    default_code = AuthErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        code: AuthErrorCode | str | None,
        message: str,
        provider: str | None = None,
        details: Any = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error."""
        super().__init__(message, provider=provider, **context)
        self.code = AuthErrorCode.parse(code) or self.default_code
        self.provider = provider
        self.details = details

    def __str__(self) -> str:
        """Prefix the message with the error code."""
        return f"[{self.code.value}] {super().__str__()}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for display or transport."""
        details = self.details
        if isinstance(details, BaseException):
            details = repr(details)
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "provider": self.provider,
            "details": details,
        }

    @classmethod
    def for_code(
        cls,
        code: AuthErrorCode,
        message: str,
        provider: str | None = None,
        details: Any = None,
    ) -> AuthError:
        """Construct the AuthError subclass matching the code's category."""
        error_cls = _CODE_CLASSES.get(code, AuthError)
        return error_cls(code, message, provider=provider, details=details)

    @classmethod
    def from_exception(cls, exc: BaseException, provider: str | None = None) -> AuthError:
        """Normalize any exception into the AuthError taxonomy.

        Already classified errors pass through unchanged. Otherwise the
        exception type and message are inspected for network, cancellation
        and timeout failures, then a provider-reported ``code`` attribute is
        adopted if it names a known code, and finally ``INTERNAL_ERROR``.
        """
        if isinstance(exc, AuthError):
            return exc

        message = str(exc) or type(exc).__name__
        lowered = message.lower()

        code: AuthErrorCode | None = None
        if isinstance(exc, (httpx.TransportError, TimeoutError)):
            code = AuthErrorCode.NETWORK_ERROR
        elif "network" in lowered:
            code = AuthErrorCode.NETWORK_ERROR
        elif "cancelled" in lowered or "canceled" in lowered:
            code = AuthErrorCode.USER_CANCELLED
        elif "timeout" in lowered:
            code = AuthErrorCode.NETWORK_ERROR
        else:
            code = AuthErrorCode.parse(getattr(exc, "code", None))

        return cls.for_code(
            code or AuthErrorCode.INTERNAL_ERROR,
            message,
            provider=provider,
            details=exc,
        )


class ConfigurationError(AuthError):
    """Provider is unknown, unsupported here, or not configured."""

    default_code = AuthErrorCode.MISSING_CONFIGURATION


class FlowSecurityError(AuthError):
    """The state or nonce bound to an authorization flow did not match.

    Raised before any token exchange is attempted.
    """

    default_code = AuthErrorCode.INVALID_STATE


class AuthFlowCancelled(AuthError):
    """Authentication flow was cancelled.

    Raised when the user closes the authorization window, the popup is
    blocked, or the flow is explicitly aborted.
    """

    default_code = AuthErrorCode.USER_CANCELLED


class AuthFlowTimeout(AuthError):
    """Authentication flow timed out waiting for the callback."""

    default_code = AuthErrorCode.AUTH_TIMEOUT

    def __init__(
        self,
        code: AuthErrorCode | str | None,
        message: str,
        provider: str | None = None,
        details: Any = None,
        timeout: float | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        code : AuthErrorCode or str
            Taxonomy code (normally ``AUTH_TIMEOUT``).
        message : str
            Human-readable error message.
        provider : str, optional
            The provider name.
        details : Any, optional
            Additional details.
        timeout : float, optional
            The timeout value in seconds.
        **context : Any
            Additional context.
        """
        super().__init__(code, message, provider=provider, details=details, timeout=timeout, **context)
        self.timeout = timeout


class NetworkError(AuthError):
    """A remote endpoint was unreachable or answered with a server failure."""

    default_code = AuthErrorCode.NETWORK_ERROR


class TokenError(AuthError):
    """Base exception for token and credential failures."""

    default_code = AuthErrorCode.INVALID_CREDENTIALS


class TokenRefreshError(TokenError):
    """Token refresh failed."""

    default_code = AuthErrorCode.TOKEN_REFRESH_FAILED


_CODE_CLASSES: dict[AuthErrorCode, type[AuthError]] = {
    AuthErrorCode.MISSING_CONFIGURATION: ConfigurationError,
    AuthErrorCode.UNSUPPORTED_PROVIDER: ConfigurationError,
    AuthErrorCode.PROVIDER_INIT_FAILED: ConfigurationError,
    AuthErrorCode.PROVIDER_NOT_INITIALIZED: ConfigurationError,
    AuthErrorCode.MISSING_REDIRECT_URL: ConfigurationError,
    AuthErrorCode.CLIENT_NOT_FOUND: ConfigurationError,
    AuthErrorCode.INVALID_STATE: FlowSecurityError,
    AuthErrorCode.INVALID_NONCE: FlowSecurityError,
    AuthErrorCode.MISSING_NONCE: FlowSecurityError,
    AuthErrorCode.MISSING_CODE_VERIFIER: FlowSecurityError,
    AuthErrorCode.USER_CANCELLED: AuthFlowCancelled,
    AuthErrorCode.POPUP_CLOSED_BY_USER: AuthFlowCancelled,
    AuthErrorCode.POPUP_BLOCKED: AuthFlowCancelled,
    AuthErrorCode.REDIRECT_CANCELLED_BY_USER: AuthFlowCancelled,
    AuthErrorCode.AUTH_TIMEOUT: AuthFlowTimeout,
    AuthErrorCode.NETWORK_ERROR: NetworkError,
    AuthErrorCode.SERVER_ERROR: NetworkError,
    AuthErrorCode.TEMPORARILY_UNAVAILABLE: NetworkError,
    AuthErrorCode.INVALID_CREDENTIALS: TokenError,
    AuthErrorCode.INVALID_GRANT: TokenError,
    AuthErrorCode.TOKEN_EXPIRED: TokenError,
    AuthErrorCode.NO_AUTH_SESSION: TokenError,
    AuthErrorCode.TOKEN_REFRESH_FAILED: TokenRefreshError,
}


def is_auth_error(error: Any) -> bool:
    """Return True if ``error`` is a classified AuthError."""
    return isinstance(error, AuthError)
