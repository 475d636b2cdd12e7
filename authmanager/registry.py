"""Provider registry.

Maps provider names to manifests (display metadata, setup instructions,
supported platforms) and to factories, resolves providers lazily, and
caches one initialized instance per name.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import importlib
import logging
import textwrap

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import AuthError, AuthErrorCode, ConfigurationError
from .platform import detect_platform
from .storage import CredentialStore


if TYPE_CHECKING:
    from .config import ProviderOptions
    from .providers.base import AuthProvider
    from .types import Platform


logger = logging.getLogger(__name__)

ProviderFactory = Callable[["ProviderOptions | dict[str, Any] | None", CredentialStore], "AuthProvider"]
ProviderLoader = Callable[[], ProviderFactory]


@dataclass(frozen=True)
class ProviderManifest:
    """Static description of a provider.

    Attributes
    ----------
    name : str
        Registry key (e.g. ``"google"``).
    display_name : str
        Human-readable name.
    setup_instructions : str
        Shown when the provider is requested but cannot be used.
    platforms : tuple[str, ...]
        Platforms the provider runs on. Empty means every platform.
    config_schema : dict
        Option name to ``{"type": ..., "required": bool}``.
    package_name : str or None
        Distribution to install when the provider's module is missing.
    """

    name: str
    display_name: str
    setup_instructions: str = ""
    platforms: tuple[str, ...] = ()
    config_schema: dict[str, dict[str, Any]] = field(default_factory=dict)
    package_name: str | None = None

    @property
    def requires_config(self) -> bool:
        """True if any option in the schema is required."""
        return any(spec.get("required") for spec in self.config_schema.values())

    def supports(self, platform: str) -> bool:
        """Return True if the provider runs on ``platform``."""
        return not self.platforms or platform in self.platforms


class ProviderRegistry:
    """Catalog and cache of providers.

    Parameters
    ----------
    store : CredentialStore, optional
        Store handed to every provider the registry constructs.
    platform : str, optional
        Current platform; detected when omitted.
    include_builtins : bool
        Register the built-in catalog (default True).
    """

    def __init__(
        self,
        store: CredentialStore | None = None,
        platform: Platform | None = None,
        include_builtins: bool = True,
    ) -> None:
        self.store = store if store is not None else CredentialStore()
        self.platform: str = platform or detect_platform()
        self._manifests: dict[str, ProviderManifest] = {}
        self._loaders: dict[str, ProviderLoader] = {}
        self._factories: dict[str, ProviderFactory] = {}
        self._providers: dict[str, AuthProvider] = {}
        self._pending: dict[str, asyncio.Future[AuthProvider]] = {}
        if include_builtins:
            register_builtin_providers(self)

    # ── Registration ─────────────────────────────────────────────────

    def register_manifest(self, manifest: ProviderManifest) -> None:
        """Add or replace a manifest."""
        self._manifests[manifest.name] = manifest

    def register_loader(self, name: str, loader: ProviderLoader) -> None:
        """Register a zero-argument callable returning the provider factory.

        Replaces any factory registered for ``name`` with ``register_provider``.
        """
        self._factories.pop(name, None)
        self._loaders[name] = loader

    def register_provider(
        self,
        name: str,
        factory: ProviderFactory,
        manifest: ProviderManifest | None = None,
    ) -> None:
        """Register a provider factory directly (plugin API).

        Replaces any earlier registration for ``name``; a cached instance
        is kept until ``clear_provider`` is called.
        """
        self._loaders.pop(name, None)
        self._factories[name] = factory
        if manifest is not None:
            self.register_manifest(manifest)
        elif name not in self._manifests:
            self.register_manifest(ProviderManifest(name=name, display_name=name))
        logger.debug("Registered provider %s", name)

    def get_manifest(self, name: str) -> ProviderManifest | None:
        """Return the manifest for ``name``, if any."""
        return self._manifests.get(name)

    # ── Resolution ───────────────────────────────────────────────────

    def is_loaded(self, name: str) -> bool:
        """True if an initialized instance of ``name`` is cached."""
        return name in self._providers

    def get_loaded(self, name: str) -> AuthProvider | None:
        """Return the cached instance of ``name`` without loading it."""
        return self._providers.get(name)

    async def get_provider(self, name: str, options: ProviderOptions | dict[str, Any] | None = None) -> AuthProvider:
        """Return the initialized provider for ``name``, loading it once.

        Concurrent calls for the same name share a single load.

        Raises
        ------
        ConfigurationError
            ``UNSUPPORTED_PROVIDER`` for unknown names or the wrong
            platform, ``MISSING_CONFIGURATION`` when the provider cannot be
            constructed, ``PROVIDER_INIT_FAILED`` when ``initialize`` fails.
        """
        cached = self._providers.get(name)
        if cached is not None:
            return cached

        pending = self._pending.get(name)
        if pending is None or pending.done():
            pending = asyncio.ensure_future(self._load(name, options))
            self._pending[name] = pending
            pending.add_done_callback(lambda fut: self._forget_pending(name, fut))
        return await asyncio.shield(pending)

    def _forget_pending(self, name: str, future: asyncio.Future[AuthProvider]) -> None:
        if self._pending.get(name) is future:
            del self._pending[name]

    def _resolve_factory(self, name: str) -> ProviderFactory:
        manifest = self._manifests.get(name)
        if manifest is not None and not manifest.supports(self.platform):
            msg = f"Provider '{name}' is not supported on {self.platform}"
            raise ConfigurationError(AuthErrorCode.UNSUPPORTED_PROVIDER, msg, provider=name)

        factory = self._factories.get(name)
        if factory is not None:
            return factory

        loader = self._loaders.get(name)
        if loader is None:
            if manifest is not None:
                instructions = manifest.setup_instructions or f"Please configure the {manifest.display_name} provider."
                msg = f"Provider '{name}' is not loaded.\n\n{instructions}"
                raise ConfigurationError(AuthErrorCode.MISSING_CONFIGURATION, msg, provider=name)
            raise ConfigurationError(AuthErrorCode.UNSUPPORTED_PROVIDER, f"Unknown provider: {name}", provider=name)

        try:
            return loader()
        except ImportError as exc:
            display = manifest.display_name if manifest else name
            package = (manifest.package_name if manifest else None) or getattr(exc, "name", None) or name
            msg = (
                f"Missing dependency for {display} provider.\n\n"
                f"Install the required package:\n    pip install {package}"
            )
            if manifest and manifest.setup_instructions:
                msg = f"{msg}\n\n{manifest.setup_instructions}"
            raise ConfigurationError(AuthErrorCode.MISSING_CONFIGURATION, msg, provider=name, details=exc) from exc

    async def _load(self, name: str, options: ProviderOptions | dict[str, Any] | None) -> AuthProvider:
        factory = self._resolve_factory(name)
        try:
            provider = factory(options, self.store)
        except AuthError:
            raise
        except Exception as exc:
            manifest = self._manifests.get(name)
            msg = f"Invalid configuration for provider '{name}': {exc}"
            if manifest and manifest.setup_instructions:
                msg = f"{msg}\n\n{manifest.setup_instructions}"
            raise ConfigurationError(AuthErrorCode.MISSING_CONFIGURATION, msg, provider=name, details=exc) from exc
        try:
            await provider.initialize()
        except Exception as exc:
            await provider.dispose()
            if isinstance(exc, AuthError):
                raise
            msg = f"Failed to initialize provider '{name}': {exc}"
            raise ConfigurationError(AuthErrorCode.PROVIDER_INIT_FAILED, msg, provider=name, details=exc) from exc
        self._providers[name] = provider
        logger.debug("Loaded provider %s", name)
        return provider

    async def clear_provider(self, name: str) -> None:
        """Dispose and evict the cached instance of ``name``."""
        provider = self._providers.pop(name, None)
        if provider is not None:
            await provider.dispose()

    async def clear_all(self) -> None:
        """Dispose and evict every cached provider."""
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await provider.dispose()

    # ── Catalog ──────────────────────────────────────────────────────

    def get_available_providers(self) -> list[str]:
        """Names of every provider in the catalog."""
        names = dict.fromkeys(self._manifests)
        names.update(dict.fromkeys(self._factories))
        return list(names)

    def get_supported_providers(self) -> list[str]:
        """Names of catalog providers that run on the current platform."""
        return [
            name
            for name in self.get_available_providers()
            if (manifest := self._manifests.get(name)) is None or manifest.supports(self.platform)
        ]


# ── Built-in catalog ─────────────────────────────────────────────────


def _lazy(module: str, attr: str) -> ProviderLoader:
    def load() -> ProviderFactory:
        provider_module = importlib.import_module(f"{__package__}.providers.{module}")
        return getattr(provider_module, attr)  # type: ignore[no-any-return]

    return load


def _oauth_instructions(display_name: str, key: str, console: str, extra: str = "") -> str:
    return textwrap.dedent(
        f"""\
        To use {display_name} sign-in:
        1. Register an OAuth application at {console}
        2. Add http://127.0.0.1:8765/callback (or your redirect_uri) as a redirect URL
        3. Configure the provider:
           manager.configure({{"providers": {{"{key}": {{"client_id": "YOUR_CLIENT_ID"{extra}}}}}}})
        """
    )


_OAUTH_SCHEMA = {
    "client_id": {"type": "string", "required": True},
    "client_secret": {"type": "string"},
    "redirect_uri": {"type": "string"},
    "scopes": {"type": "array", "items": "string"},
}

BUILTIN_MANIFESTS: tuple[ProviderManifest, ...] = (
    ProviderManifest(
        name="google",
        display_name="Google",
        setup_instructions=_oauth_instructions("Google", "google", "https://console.cloud.google.com/apis/credentials"),
        config_schema={**_OAUTH_SCHEMA, "hosted_domain": {"type": "string"}},
    ),
    ProviderManifest(
        name="github",
        display_name="GitHub",
        setup_instructions=_oauth_instructions(
            "GitHub", "github", "https://github.com/settings/developers", ', "client_secret": "YOUR_SECRET"'
        ),
        config_schema=_OAUTH_SCHEMA,
    ),
    ProviderManifest(
        name="microsoft",
        display_name="Microsoft",
        setup_instructions=_oauth_instructions(
            "Microsoft", "microsoft", "https://portal.azure.com/ (App registrations)", ', "tenant": "common"'
        ),
        config_schema={**_OAUTH_SCHEMA, "tenant": {"type": "string"}},
    ),
    ProviderManifest(
        name="facebook",
        display_name="Facebook",
        setup_instructions=_oauth_instructions("Facebook", "facebook", "https://developers.facebook.com/apps"),
        config_schema=_OAUTH_SCHEMA,
    ),
    ProviderManifest(
        name="linkedin",
        display_name="LinkedIn",
        setup_instructions=_oauth_instructions("LinkedIn", "linkedin", "https://www.linkedin.com/developers/apps"),
        config_schema=_OAUTH_SCHEMA,
    ),
    ProviderManifest(
        name="slack",
        display_name="Slack",
        setup_instructions=_oauth_instructions("Slack", "slack", "https://api.slack.com/apps"),
        config_schema={**_OAUTH_SCHEMA, "team": {"type": "string"}},
    ),
    ProviderManifest(
        name="apple",
        display_name="Apple",
        setup_instructions=_oauth_instructions(
            "Apple",
            "apple",
            "https://developer.apple.com/account/resources/identifiers (Services IDs)",
            ', "client_secret": "SIGNED_CLIENT_SECRET_JWT"',
        ),
        config_schema={**_OAUTH_SCHEMA, "response_mode": {"type": "string"}},
    ),
    ProviderManifest(
        name="oidc",
        display_name="OpenID Connect",
        setup_instructions=_oauth_instructions(
            "OpenID Connect", "oidc", "your identity provider", ', "issuer_url": "https://issuer.example.com"'
        ),
        config_schema={**_OAUTH_SCHEMA, "issuer_url": {"type": "string", "required": True}},
    ),
    ProviderManifest(
        name="sms",
        display_name="Phone (SMS)",
        setup_instructions=textwrap.dedent(
            """\
            To use SMS sign-in, run a backend that sends and verifies codes, then:
               manager.configure({"providers": {"sms": {
                   "send_code_url": "https://api.example.com/sms/send",
                   "verify_code_url": "https://api.example.com/sms/verify"}}})
            """
        ),
        config_schema={
            "send_code_url": {"type": "string", "required": True},
            "verify_code_url": {"type": "string", "required": True},
            "country_code": {"type": "string"},
        },
    ),
    ProviderManifest(
        name="magic_link",
        display_name="Magic link",
        setup_instructions=textwrap.dedent(
            """\
            To use magic link sign-in, run a backend that emails links, then:
               manager.configure({"providers": {"magic_link": {
                   "send_link_url": "https://api.example.com/magic-link/send",
                   "redirect_url": "https://app.example.com/auth/magic"}}})
            """
        ),
        config_schema={
            "send_link_url": {"type": "string", "required": True},
            "redirect_url": {"type": "string", "required": True},
            "verify_url": {"type": "string"},
        },
    ),
    ProviderManifest(
        name="email_password",
        display_name="Email and password",
        setup_instructions=textwrap.dedent(
            """\
            To use email/password sign-in, point the provider at your auth backend:
               manager.configure({"providers": {"email_password": {"api_url": "https://api.example.com"}}})
            """
        ),
        config_schema={"api_url": {"type": "string", "required": True}},
    ),
    ProviderManifest(
        name="username_password",
        display_name="Username and password",
        setup_instructions=textwrap.dedent(
            """\
            To use username/password sign-in, point the provider at your auth backend
            (it must serve /auth/signin, /auth/signup and /auth/check-username):
               manager.configure({"providers": {"username_password": {"api_url": "https://api.example.com"}}})
            """
        ),
        config_schema={
            "api_url": {"type": "string", "required": True},
            "username_requirements": {"type": "object"},
            "password_requirements": {"type": "object"},
        },
    ),
    ProviderManifest(
        name="biometric",
        display_name="Biometric",
        setup_instructions=textwrap.dedent(
            """\
            Biometric sign-in needs a native integration. Register its provider factory:
               manager.register_provider("biometric", BiometricProvider)
            """
        ),
        platforms=("ios", "android"),
    ),
)

BUILTIN_LOADERS: dict[str, tuple[str, str]] = {
    "google": ("social", "GoogleProvider"),
    "github": ("social", "GitHubProvider"),
    "microsoft": ("social", "MicrosoftProvider"),
    "facebook": ("social", "FacebookProvider"),
    "linkedin": ("social", "LinkedInProvider"),
    "slack": ("social", "SlackProvider"),
    "oidc": ("social", "OIDCProvider"),
    "apple": ("social", "AppleProvider"),
    "sms": ("sms", "SMSProvider"),
    "magic_link": ("magic_link", "MagicLinkProvider"),
    "email_password": ("password", "EmailPasswordProvider"),
    "username_password": ("password", "UsernamePasswordProvider"),
}


def register_builtin_providers(registry: ProviderRegistry) -> None:
    """Register the built-in manifests and lazy loaders on ``registry``."""
    for manifest in BUILTIN_MANIFESTS:
        registry.register_manifest(manifest)
    for name, (module, attr) in BUILTIN_LOADERS.items():
        registry.register_loader(name, _lazy(module, attr))
