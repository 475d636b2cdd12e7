"""Authentication state manager.

``AuthStateManager`` owns the single ``AuthState`` of an application. It
resolves providers through a ``ProviderRegistry``, applies their results,
persists the session in a ``CredentialStore``, refreshes tokens ahead of
expiry and broadcasts every state change to subscribers.

Build one manager per application and pass it by reference::

    auth = AuthStateManager()
    await auth.initialize({"persistence": "memory", "providers": {"github": {...}}})
    result = await auth.sign_in("github")
"""

# pylint: disable=too-many-instance-attributes

from __future__ import annotations

import asyncio
import hashlib
import json
import logging

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from .config import AuthManagerSettings, _snake_keys, deep_merge
from .events import EventBus
from .exceptions import AuthError, AuthErrorCode, ConfigurationError, StorageError
from .log import configure_logging
from .platform import detect_platform
from .registry import ProviderFactory, ProviderManifest, ProviderRegistry
from .storage import CredentialStore, create_credential_store
from .types import (
    AuthCredential,
    AuthResult,
    AuthState,
    AuthStateListener,
    AuthUser,
    SignInOptions,
    SignOutOptions,
    now_ms,
)


if TYPE_CHECKING:
    from .providers.base import AuthProvider


logger = logging.getLogger(__name__)

AUTH_STATE_KEY = "auth_state"


def _options_fingerprint(options: SignInOptions | None) -> str:
    """Digest of the sign-in options, ignoring the provider name."""
    data = asdict(options or SignInOptions())
    data.pop("provider", None)
    encoded = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class _ScheduledRefresh:
    handle: asyncio.TimerHandle
    fire_at: int


class AuthStateManager:
    """Sign-in orchestration, session persistence and token refresh.

    Parameters
    ----------
    config : dict or AuthManagerSettings, optional
        Initial configuration, applied as by ``configure``.
    registry : ProviderRegistry, optional
        Provider registry. A registry with the built-in catalog is created
        when omitted.
    store : CredentialStore, optional
        Credential store. When given (or when a registry is given) it is
        used as is and the ``persistence`` setting no longer swaps it.
    """

    def __init__(
        self,
        config: dict[str, Any] | AuthManagerSettings | None = None,
        *,
        registry: ProviderRegistry | None = None,
        store: CredentialStore | None = None,
    ) -> None:
        self._config: dict[str, Any] = {}
        self._settings = AuthManagerSettings()
        self._store_fixed = store is not None or registry is not None
        if store is None:
            store = registry.store if registry is not None else self._store_from_settings()
        self._store = store
        if registry is None:
            registry = ProviderRegistry(store=store, platform=self._settings.platform)
        registry.store = store
        self._registry = registry

        self._state = AuthState()
        self._state_events: EventBus[AuthState] = EventBus("auth state")
        self._initialized = False
        self._timers: dict[str, _ScheduledRefresh] = {}
        self._tasks: set[asyncio.Future[Any]] = set()
        self._inflight: dict[tuple[str, str], asyncio.Future[Any]] = {}

        if config:
            self.configure(config)

    # ── Configuration ────────────────────────────────────────────────

    @property
    def settings(self) -> AuthManagerSettings:
        """The effective settings after all ``configure`` calls."""
        return self._settings

    @property
    def registry(self) -> ProviderRegistry:
        """The provider registry."""
        return self._registry

    @property
    def store(self) -> CredentialStore:
        """The credential store used for new providers and ``auth_state``."""
        return self._store

    @property
    def is_initialized(self) -> bool:
        """True once ``initialize`` has completed."""
        return self._initialized

    def _store_from_settings(self) -> CredentialStore:
        settings = self._settings
        return create_credential_store(
            settings.persistence,
            prefix=settings.storage_prefix,
            path=settings.storage_path,
            redis_url=settings.redis_url,
        )

    def configure(self, config: dict[str, Any] | AuthManagerSettings) -> None:
        """Merge ``config`` into the current configuration.

        Later values win; nested mappings (such as ``providers``) are merged
        key by key. Logging and persistence follow the new settings at once.
        No session restore happens here.
        """
        if isinstance(config, AuthManagerSettings):
            config = config.model_dump(exclude_unset=True)
        previous = self._settings
        self._config = deep_merge(self._config, _snake_keys(dict(config)))
        self._settings = AuthManagerSettings(**self._config)
        settings = self._settings

        configure_logging(settings.enable_logging, settings.log_level)

        storage_changed = (
            settings.persistence != previous.persistence
            or settings.storage_prefix != previous.storage_prefix
            or settings.storage_path != previous.storage_path
            or settings.redis_url != previous.redis_url
        )
        if storage_changed and not self._store_fixed:
            # providers already loaded keep the store they were built with
            self._store = self._store_from_settings()
            self._registry.store = self._store
            logger.debug("Using %s persistence", settings.persistence)

        if settings.platform is not None:
            self._registry.platform = settings.platform
        elif previous.platform is not None:
            self._registry.platform = detect_platform()

    async def initialize(self, config: dict[str, Any] | AuthManagerSettings | None = None) -> None:
        """Apply ``config`` and restore the persisted session.

        The persisted session is only trusted if its provider still reports
        a current user. A second call without config does nothing.
        """
        if self._initialized and not config:
            return
        if config:
            self.configure(config)
        await self._restore_auth_state()
        self._initialized = True
        logger.info("Auth manager initialized")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self._single_flight("initialize", "", self.initialize)

    # ── State ────────────────────────────────────────────────────────

    def _update_state(self, **changes: Any) -> None:
        state = self._state.evolve(**changes)
        if state.user is None:
            state = state.evolve(is_authenticated=False, provider=None)
        else:
            state = state.evolve(is_authenticated=True)
        self._state = state
        self._state_events.emit(state)

    def get_auth_state(self) -> AuthState:
        """Return the current state snapshot."""
        return self._state

    def get_current_user(self) -> AuthUser | None:
        """Return the signed-in user, or None."""
        return self._state.user

    def is_authenticated(self) -> bool:
        """True while a user is signed in."""
        return self._state.is_authenticated

    def get_current_provider(self) -> str | None:
        """Name of the provider the current user signed in with."""
        return self._state.provider

    def on_auth_state_change(self, listener: AuthStateListener) -> Callable[[], None]:
        """Subscribe to state changes.

        ``listener`` is called immediately with the current state, then with
        every later state until the returned callable is invoked.
        """
        listener(self._state)
        return self._state_events.subscribe(listener)

    # ── Providers ────────────────────────────────────────────────────

    def get_available_providers(self) -> list[str]:
        """Names of every provider in the catalog."""
        return self._registry.get_available_providers()

    def get_supported_providers(self) -> list[str]:
        """Names of the providers that run on this platform."""
        return self._registry.get_supported_providers()

    def is_provider_supported(self, name: str) -> bool:
        """True if ``name`` is in the catalog and runs on this platform."""
        return name in self.get_supported_providers()

    def register_provider(
        self,
        name: str,
        factory: ProviderFactory,
        manifest: ProviderManifest | None = None,
    ) -> None:
        """Register a provider factory (e.g. a native biometric provider)."""
        self._registry.register_provider(name, factory, manifest)

    def _provider_options(self, name: str) -> Any:
        """Return the configured options for ``name``.

        Raises MISSING_CONFIGURATION when nothing is configured and the
        provider needs configuration.
        """
        options = self._settings.provider_options(name)
        if options is not None:
            return options
        manifest = self._registry.get_manifest(name)
        if manifest is not None and not manifest.requires_config:
            return None
        msg = f"Provider '{name}' is not configured. Call configure() first."
        if manifest is not None and manifest.setup_instructions:
            msg = f"{msg}\n\n{manifest.setup_instructions}"
        raise ConfigurationError(AuthErrorCode.MISSING_CONFIGURATION, msg, provider=name)

    async def _get_provider(self, name: str) -> AuthProvider:
        return await self._registry.get_provider(name, self._provider_options(name))

    async def _single_flight(self, kind: str, name: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        key = (kind, name)
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda fut: self._forget_inflight(key, fut))
        return await asyncio.shield(task)

    def _forget_inflight(self, key: tuple[str, str], task: asyncio.Future[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    # ── Sign in / out ────────────────────────────────────────────────

    async def sign_in(
        self,
        provider_or_options: str | SignInOptions,
        options: SignInOptions | None = None,
    ) -> AuthResult:
        """Sign in with a provider.

        Parameters
        ----------
        provider_or_options : str or SignInOptions
            A provider name, or options whose ``provider`` names one.
        options : SignInOptions, optional
            Options for the provider when a name is given.

        Returns
        -------
        AuthResult
            The provider's result. A pending result (code or link sent)
            leaves the state unauthenticated.

        Overlapping calls for the same provider with equal options share
        one flow and one result. Calls with different options (another
        email and password, say) run their own flows.

        Raises
        ------
        AuthError
            Any failure, classified. The state is left as it was.
        """
        if isinstance(provider_or_options, SignInOptions):
            options = provider_or_options
            name = options.provider
        else:
            name = provider_or_options
        if not name:
            raise ConfigurationError(AuthErrorCode.UNSUPPORTED_PROVIDER, "A provider name is required")

        await self._ensure_initialized()
        key = f"{name}:{_options_fingerprint(options)}"
        return await self._single_flight("sign_in", key, lambda: self._sign_in(name, options))

    async def _sign_in(self, name: str, options: SignInOptions | None) -> AuthResult:
        self._update_state(is_loading=True)
        try:
            provider = await self._get_provider(name)
            logger.info("Signing in with %s", name)
            result = await provider.sign_in(options)
            if not result.is_pending:
                await self._persist_state(name, result)
        except asyncio.CancelledError:
            self._update_state(is_loading=False)
            raise
        except Exception as exc:
            self._update_state(is_loading=False)
            error = AuthError.from_exception(exc, provider=name)
            logger.error("Sign in failed for %s: %s", name, error)
            if error is exc:
                raise
            raise error from exc

        if result.is_pending:
            self._update_state(is_loading=False)
            logger.info("Sign in with %s awaits verification", name)
            return result

        self._update_state(user=result.user, provider=name, is_loading=False)
        self._schedule_refresh(name, result.credential)
        return result

    async def sign_out(self, options: SignOutOptions | None = None) -> None:
        """Sign out of the given provider, or the current one.

        Provider failures (revocation, network) are logged; local state is
        cleared regardless. Without a target provider this only warns.
        """
        await self._ensure_initialized()
        name = (options.provider if options else None) or self._state.provider
        if not name:
            logger.warning("No active auth session to sign out from")
            return

        is_current = name == self._state.provider
        self._update_state(is_loading=True)
        try:
            provider = self._registry.get_loaded(name) or await self._get_provider(name)
            await provider.sign_out(options)
        except Exception as exc:
            logger.warning("Provider sign out failed for %s: %s", name, exc)
        finally:
            self._cancel_refresh(name)
            if is_current:
                self._update_state(user=None, is_loading=False)
            else:
                self._update_state(is_loading=False)

        if is_current:
            await self._store.remove(AUTH_STATE_KEY)
        logger.info("Signed out from %s", name)

    # ── Refresh ──────────────────────────────────────────────────────

    async def refresh_token(self, provider: str | None = None) -> AuthResult:
        """Refresh tokens for ``provider`` (default: the current provider).

        Raises
        ------
        AuthError
            ``NO_AUTH_SESSION`` without a target provider, otherwise the
            classified provider failure. The session is kept on failure.
        """
        await self._ensure_initialized()
        name = provider or self._state.provider
        if not name:
            raise AuthError.for_code(AuthErrorCode.NO_AUTH_SESSION, "No active auth session to refresh")
        return await self._single_flight("refresh", name, lambda: self._refresh(name))

    async def _refresh(self, name: str) -> AuthResult:
        self._update_state(is_loading=True)
        try:
            provider = await self._get_provider(name)
            result = await provider.refresh_token()
            is_current = name == self._state.provider
            if is_current and result.user is not None:
                await self._persist_state(name, result)
        except asyncio.CancelledError:
            self._update_state(is_loading=False)
            raise
        except Exception as exc:
            self._update_state(is_loading=False)
            error = AuthError.from_exception(exc, provider=name)
            logger.error("Token refresh failed for %s: %s", name, error)
            if error is exc:
                raise
            raise error from exc

        if is_current and result.user is not None:
            self._update_state(user=result.user, is_loading=False)
        else:
            self._update_state(is_loading=False)
        self._schedule_refresh(name, result.credential)
        logger.debug("Refreshed tokens for %s", name)
        return result

    def _schedule_refresh(self, name: str, credential: AuthCredential | None) -> None:
        self._cancel_refresh(name)
        if not self._settings.auto_refresh_token or credential is None:
            return
        fire_at = credential.refresh_due_at(self._settings.token_refresh_buffer)
        if fire_at is None:
            return
        delay = max(fire_at - now_ms(), 0) / 1000
        handle = asyncio.get_running_loop().call_later(delay, self._start_scheduled_refresh, name)
        self._timers[name] = _ScheduledRefresh(handle=handle, fire_at=fire_at)
        logger.debug("Token refresh for %s scheduled in %.0fs", name, delay)

    def _cancel_refresh(self, name: str) -> None:
        scheduled = self._timers.pop(name, None)
        if scheduled is not None:
            scheduled.handle.cancel()

    def _start_scheduled_refresh(self, name: str) -> None:
        self._timers.pop(name, None)
        task = asyncio.ensure_future(self._auto_refresh(name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _auto_refresh(self, name: str) -> None:
        try:
            await self.refresh_token(name)
        except AuthError as exc:
            logger.error("Automatic token refresh failed for %s: %s", name, exc)

    def has_scheduled_refresh(self, provider: str) -> bool:
        """True if a refresh timer is pending for ``provider``."""
        return provider in self._timers

    def get_refresh_deadline(self, provider: str) -> int | None:
        """Epoch ms at which ``provider``'s refresh timer fires, or None."""
        scheduled = self._timers.get(provider)
        return scheduled.fire_at if scheduled else None

    # ── Persistence ──────────────────────────────────────────────────

    async def _persist_state(self, name: str, result: AuthResult) -> None:
        await self._store.set(
            AUTH_STATE_KEY,
            {
                "user": result.user.to_dict() if result.user else None,
                "provider": name,
                "credential": result.credential.to_dict() if result.credential else None,
            },
        )

    async def _restore_auth_state(self) -> None:
        try:
            stored = await self._store.get(AUTH_STATE_KEY)
        except StorageError as exc:
            logger.error("Failed to read persisted auth state: %s", exc)
            return
        if not isinstance(stored, dict) or not stored.get("user") or not stored.get("provider"):
            return

        name = stored["provider"]
        try:
            options = self._provider_options(name)
        except ConfigurationError:
            logger.debug("Provider %s is not configured; session not restored", name)
            return
        try:
            provider = await self._registry.get_provider(name, options)
            user = await provider.get_current_user()
        except Exception as exc:
            logger.warning("Failed to restore auth session for %s: %s", name, exc)
            user = None
        if user is None:
            logger.info("Discarding persisted session for %s", name)
            await self._store.remove(AUTH_STATE_KEY)
            return

        self._update_state(user=user, provider=name)
        credential = stored.get("credential")
        self._schedule_refresh(name, AuthCredential.from_dict(credential) if isinstance(credential, dict) else None)
        logger.info("Restored session for %s", name)

    # ── Teardown ─────────────────────────────────────────────────────

    async def dispose(self) -> None:
        """Cancel timers and background work, dispose providers, drop listeners."""
        for scheduled in self._timers.values():
            scheduled.handle.cancel()
        self._timers.clear()

        pending = [*self._tasks, *self._inflight.values()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._inflight.clear()

        await self._registry.clear_all()
        await self._store.close()
        self._state_events.clear()
        self._initialized = False
        logger.debug("Auth manager disposed")
