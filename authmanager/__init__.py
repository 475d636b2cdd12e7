"""authmanager - provider-agnostic authentication state for Python applications.

Signs users in through OAuth2/OIDC providers, SMS codes, magic links or
email/password behind one ``AuthStateManager`` API, persists the session,
and refreshes tokens before they expire.
"""

from __future__ import annotations

from .config import (
    AuthManagerSettings,
    CustomProviderOptions,
    EmailPasswordOptions,
    FacebookOptions,
    GitHubOptions,
    GoogleOptions,
    LinkedInOptions,
    MagicLinkOptions,
    MicrosoftOptions,
    OAuthProviderOptions,
    OIDCOptions,
    ProviderOptions,
    SlackOptions,
    SMSOptions,
    clear_settings,
    get_settings,
    parse_provider_options,
)
from .events import EventBus
from .exceptions import (
    AuthError,
    AuthErrorCode,
    AuthFlowCancelled,
    AuthFlowTimeout,
    AuthManagerException,
    ConfigurationError,
    FlowSecurityError,
    NetworkError,
    StorageError,
    TokenError,
    TokenRefreshError,
    is_auth_error,
)
from .handshake import (
    AuthorizationHandshake,
    Authorizer,
    CallbackAuthorizer,
    LoopbackAuthorizer,
    parse_callback,
)
from .log import configure_logging, get_logger, redact_sensitive_data
from .manager import AuthStateManager
from .platform import detect_platform
from .providers import AuthProvider, OAuthEndpoints, OAuthFlowEngine
from .registry import ProviderManifest, ProviderRegistry
from .storage import (
    CredentialStore,
    FileBackend,
    MemoryBackend,
    RedisBackend,
    SessionBackend,
    StorageBackend,
    create_credential_store,
)
from .types import (
    AdditionalUserInfo,
    AuthCredential,
    AuthResult,
    AuthState,
    AuthUser,
    PendingVerification,
    SignInOptions,
    SignOutOptions,
)


__version__ = "0.1.0"

# Package records stay silent until logging is enabled
get_logger()

__all__ = [
    "AdditionalUserInfo",
    "AuthCredential",
    "AuthError",
    "AuthErrorCode",
    "AuthFlowCancelled",
    "AuthFlowTimeout",
    "AuthManagerException",
    "AuthManagerSettings",
    "AuthProvider",
    "AuthResult",
    "AuthState",
    "AuthStateManager",
    "AuthUser",
    "AuthorizationHandshake",
    "Authorizer",
    "CallbackAuthorizer",
    "ConfigurationError",
    "CredentialStore",
    "CustomProviderOptions",
    "EmailPasswordOptions",
    "EventBus",
    "FacebookOptions",
    "FileBackend",
    "FlowSecurityError",
    "GitHubOptions",
    "GoogleOptions",
    "LinkedInOptions",
    "LoopbackAuthorizer",
    "MagicLinkOptions",
    "MemoryBackend",
    "MicrosoftOptions",
    "NetworkError",
    "OAuthEndpoints",
    "OAuthFlowEngine",
    "OAuthProviderOptions",
    "OIDCOptions",
    "PendingVerification",
    "ProviderManifest",
    "ProviderOptions",
    "ProviderRegistry",
    "RedisBackend",
    "SMSOptions",
    "SessionBackend",
    "SignInOptions",
    "SignOutOptions",
    "SlackOptions",
    "StorageBackend",
    "StorageError",
    "TokenError",
    "TokenRefreshError",
    "__version__",
    "clear_settings",
    "configure_logging",
    "create_credential_store",
    "detect_platform",
    "get_settings",
    "is_auth_error",
    "parse_callback",
    "parse_provider_options",
    "redact_sensitive_data",
]
