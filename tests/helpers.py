"""Shared helpers for the authmanager test suite."""

from __future__ import annotations

import asyncio
import base64
import json

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl, urlparse

import httpx

from authmanager.exceptions import AuthErrorCode
from authmanager.handshake import CallbackAuthorizer
from authmanager.providers.base import AuthProvider
from authmanager.types import (
    AdditionalUserInfo,
    AuthCredential,
    AuthResult,
    AuthUser,
    SignInOptions,
    SignOutOptions,
    now_ms,
)


Handler = Callable[[httpx.Request], httpx.Response]


def _base_url(url: httpx.URL | str) -> str:
    return str(url).split("?", 1)[0]


class MockBackend:
    """Fake HTTP backend for ``httpx.MockTransport``.

    Routes are keyed by method and URL without query string. Unrouted
    requests get a 404 JSON body. Every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        url: str,
        *,
        status_code: int = 200,
        json: Any = None,
        handler: Handler | None = None,
    ) -> None:
        """Route ``method url`` to ``handler`` or to a canned JSON response."""
        if handler is None:

            def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
                return httpx.Response(status_code, json=json)

        self.routes[(method.upper(), url)] = handler

    def fail(self, method: str, url: str) -> None:
        """Make ``method url`` raise a transport error."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        self.routes[(method.upper(), url)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, _base_url(request.url)))
        if handler is None:
            return httpx.Response(404, json={"error": "not_found"})
        return handler(request)

    def client(self) -> httpx.AsyncClient:
        """A client whose requests are answered by this backend."""
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def sent(self, method: str, url: str) -> list[httpx.Request]:
        """Recorded requests matching ``method url``."""
        return [r for r in self.requests if r.method == method and _base_url(r.url) == url]


def form_data(request: httpx.Request) -> dict[str, str]:
    """Decode a form-encoded request body."""
    return dict(parse_qsl(request.content.decode()))


def json_body(request: httpx.Request) -> Any:
    """Decode a JSON request body."""
    return json.loads(request.content)


def query_params(url: str) -> dict[str, str]:
    """Query parameters of ``url`` as a flat dict."""
    return dict(parse_qsl(urlparse(url).query))


def make_id_token(claims: dict[str, Any]) -> str:
    """Build an unsigned JWT carrying ``claims``."""

    def segment(data: dict[str, Any]) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()

    return f"{segment({'alg': 'none', 'typ': 'JWT'})}.{segment(claims)}.signature"


class RedirectingAuthorizer(CallbackAuthorizer):
    """Answers every authorization URL with a canned redirect.

    The redirect echoes the URL's ``state`` unless ``state`` is given.
    ``extra`` adds fields to every redirect.
    """

    def __init__(
        self,
        code: str = "auth-code",
        state: str | None = None,
        error: str | None = None,
        extra: dict[str, str] | None = None,
    ) -> None:
        super().__init__(self._open)
        self.code = code
        self.state = state
        self.error = error
        self.extra = extra or {}
        self.opened: list[str] = []

    def _open(self, url: str) -> bool:
        self.opened.append(url)
        redirect = {"state": self.state or query_params(url)["state"], **self.extra}
        if self.error:
            redirect["error"] = self.error
        else:
            redirect["code"] = self.code
        self.handle_callback(redirect)
        return True

    @property
    def last_params(self) -> dict[str, str]:
        """Query parameters of the last authorization URL."""
        return query_params(self.opened[-1])


class FakeProvider(AuthProvider):
    """Scripted provider recording every call.

    Tests steer it through attributes: ``delay`` before sign-in returns,
    ``sign_in_error`` / ``refresh_error`` / ``sign_out_error`` to raise,
    ``pending`` for a two-step first result, and ``expires_in`` (ms) for
    the issued credential (None for a non-expiring one).
    """

    provider_id = "fake"
    sign_in_method = "fake"

    def __init__(self, options: Any, store: Any, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(options, store, http_client)
        self.calls: list[str] = []
        self.delay = 0.0
        self.pending = False
        self.expires_in: int | None = 3_600_000
        self.sign_in_error: BaseException | None = None
        self.refresh_error: BaseException | None = None
        self.sign_out_error: BaseException | None = None
        self.initialize_error: BaseException | None = None
        self.disposed = False
        self.refresh_count = 0

    async def initialize(self) -> None:
        self.calls.append("initialize")
        if self.initialize_error is not None:
            raise self.initialize_error
        await super().initialize()

    def _credential(self, token: str) -> AuthCredential:
        return AuthCredential(
            provider_id=self.name,
            sign_in_method=self.sign_in_method,
            access_token=token,
            refresh_token="refresh-1",
            expires_at=None if self.expires_in is None else now_ms() + self.expires_in,
        )

    async def sign_in(self, options: SignInOptions | None = None) -> AuthResult:
        self.calls.append("sign_in")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.sign_in_error is not None:
            raise self.sign_in_error
        if self.pending:
            info = AdditionalUserInfo(provider_id=self.name, pending=True, message="Code sent")
            return AuthResult(user=None, credential=None, additional_user_info=info)
        user = AuthUser(uid=f"{self.name}-user", email="user@example.com", display_name="Test User")
        credential = self._credential("access-1")
        await self._save_credential(credential)
        await self._set_current_user(user)
        return AuthResult(user=user, credential=credential)

    async def sign_out(self, options: SignOutOptions | None = None) -> None:
        self.calls.append("sign_out")
        if self.sign_out_error is not None:
            raise self.sign_out_error
        await self._clear_stored_data()

    async def refresh_token(self) -> AuthResult:
        self.calls.append("refresh_token")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        if self._current_user is None:
            raise self._error(AuthErrorCode.NO_AUTH_SESSION, "No user is signed in")
        self.refresh_count += 1
        credential = self._credential(f"access-{self.refresh_count + 1}")
        await self._save_credential(credential)
        return AuthResult(user=self._current_user, credential=credential, operation_type="refresh")

    async def revoke_access(self) -> None:
        self.calls.append("revoke_access")
        await self._clear_stored_data()

    async def dispose(self) -> None:
        self.disposed = True
        await super().dispose()


class FakeFactory:
    """Provider factory that remembers the instances it built."""

    def __init__(self, provider_cls: type[FakeProvider] = FakeProvider, **attrs: Any) -> None:
        self.provider_cls = provider_cls
        self.attrs = attrs
        self.instances: list[FakeProvider] = []

    def __call__(self, options: Any, store: Any) -> FakeProvider:
        provider = self.provider_cls(options, store)
        for key, value in self.attrs.items():
            setattr(provider, key, value)
        self.instances.append(provider)
        return provider

    @property
    def last(self) -> FakeProvider:
        """Most recently built provider."""
        return self.instances[-1]
