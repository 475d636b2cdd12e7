"""Unit tests for authorization handshakes and authorizers."""

from __future__ import annotations

import asyncio
import socket

from urllib.request import urlopen

import pytest

from authmanager.exceptions import AuthErrorCode, AuthFlowCancelled, AuthFlowTimeout
from authmanager.handshake import (
    AuthorizationHandshake,
    CallbackAuthorizer,
    LoopbackAuthorizer,
    parse_callback,
)
from authmanager.types import AuthorizationResponse, HandshakeState


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


# ── parse_callback ─────────────────────────────────────────────────────


class TestParseCallback:
    """Tests for parse_callback."""

    def test_query_parameters(self) -> None:
        """Code and state are read from the query string."""
        response = parse_callback("myapp://callback?code=abc&state=xyz")
        assert response.code == "abc"
        assert response.state == "xyz"
        assert response.error is None

    def test_fragment_parameters(self) -> None:
        """Fragment parameters are used when the query lacks them."""
        response = parse_callback("https://app.example/cb#code=frag&state=s")
        assert response.code == "frag"

    def test_query_wins_over_fragment(self) -> None:
        """Query parameters take precedence."""
        response = parse_callback("https://app.example/cb?code=query&state=s#code=frag")
        assert response.code == "query"

    def test_error_parameters(self) -> None:
        """Provider errors are extracted."""
        response = parse_callback({"error": "access_denied", "error_description": "No", "state": "s"})
        assert response.error == "access_denied"
        assert response.error_description == "No"


# ── AuthorizationHandshake ─────────────────────────────────────────────


class TestAuthorizationHandshake:
    """Tests for the handshake state machine."""

    def test_deliver_completes(self) -> None:
        """A delivered redirect resolves wait()."""

        async def run() -> None:
            handshake = AuthorizationHandshake(poll_interval=0.01)
            assert handshake.state is HandshakeState.STARTED
            asyncio.get_running_loop().call_later(0.02, handshake.deliver, {"code": "c", "state": "s"})
            response = await handshake.wait()
            assert response.code == "c"
            assert handshake.state is HandshakeState.COMPLETED

        asyncio.run(run())

    def test_deliver_after_finish_ignored(self) -> None:
        """Only the first terminal transition counts."""
        handshake = AuthorizationHandshake()
        assert handshake.deliver({"code": "first"}) is True
        assert handshake.deliver({"code": "second"}) is False
        assert handshake.cancel() is False
        assert asyncio.run(handshake.wait()).code == "first"

    def test_cancel(self) -> None:
        """cancel() makes wait() raise AuthFlowCancelled."""
        handshake = AuthorizationHandshake()
        handshake.cancel()
        with pytest.raises(AuthFlowCancelled) as exc_info:
            asyncio.run(handshake.wait())
        assert exc_info.value.code is AuthErrorCode.USER_CANCELLED
        assert handshake.state is HandshakeState.CANCELLED

    def test_window_closed(self) -> None:
        """A closed window cancels the wait."""
        closed = iter([False, False, True])
        handshake = AuthorizationHandshake(poll_interval=0.01)
        with pytest.raises(AuthFlowCancelled):
            asyncio.run(handshake.wait(lambda: next(closed)))

    def test_timeout(self) -> None:
        """No redirect within the timeout raises AuthFlowTimeout."""
        handshake = AuthorizationHandshake(timeout=0.05, poll_interval=0.01)
        with pytest.raises(AuthFlowTimeout) as exc_info:
            asyncio.run(handshake.wait())
        assert exc_info.value.code is AuthErrorCode.AUTH_TIMEOUT
        assert exc_info.value.timeout == 0.05
        assert handshake.state is HandshakeState.TIMED_OUT


# ── CallbackAuthorizer ─────────────────────────────────────────────────


class TestCallbackAuthorizer:
    """Tests for the application-driven authorizer."""

    def test_redirect_fed_back(self) -> None:
        """handle_callback resolves the pending authorization."""
        opened: list[str] = []

        async def run() -> None:
            authorizer = CallbackAuthorizer(opened.append, poll_interval=0.01)
            task = asyncio.ensure_future(authorizer.authorize("https://idp/auth", "myapp://cb"))
            await asyncio.sleep(0.02)
            assert authorizer.handshake is not None
            assert authorizer.handle_callback("myapp://cb?code=abc&state=s") is True
            response = await task
            assert response.code == "abc"
            assert authorizer.handshake is None

        asyncio.run(run())
        assert opened == ["https://idp/auth"]

    def test_async_open_url(self) -> None:
        """open_url may be a coroutine function."""

        async def run() -> AuthorizationResponse:
            authorizer: CallbackAuthorizer

            async def open_url(url: str) -> bool:
                authorizer.handle_callback({"code": "async", "state": "s"})
                return True

            authorizer = CallbackAuthorizer(open_url)
            return await authorizer.authorize("https://idp/auth", "myapp://cb")

        assert asyncio.run(run()).code == "async"

    def test_popup_blocked(self) -> None:
        """open_url returning False raises POPUP_BLOCKED."""
        authorizer = CallbackAuthorizer(lambda url: False)
        with pytest.raises(AuthFlowCancelled) as exc_info:
            asyncio.run(authorizer.authorize("https://idp/auth", "myapp://cb"))
        assert exc_info.value.code is AuthErrorCode.POPUP_BLOCKED

    def test_window_closed(self) -> None:
        """A closed window raises USER_CANCELLED."""
        authorizer = CallbackAuthorizer(lambda url: True, is_closed=lambda: True, poll_interval=0.01)
        with pytest.raises(AuthFlowCancelled) as exc_info:
            asyncio.run(authorizer.authorize("https://idp/auth", "myapp://cb"))
        assert exc_info.value.code is AuthErrorCode.USER_CANCELLED

    def test_explicit_cancel(self) -> None:
        """cancel() aborts the pending authorization."""

        async def run() -> None:
            authorizer = CallbackAuthorizer(lambda url: None, poll_interval=0.01)
            task = asyncio.ensure_future(authorizer.authorize("https://idp/auth", "myapp://cb"))
            await asyncio.sleep(0.02)
            assert authorizer.cancel() is True
            await task

        with pytest.raises(AuthFlowCancelled):
            asyncio.run(run())

    def test_callback_without_flow(self) -> None:
        """A stray callback is ignored."""
        authorizer = CallbackAuthorizer(lambda url: True)
        assert authorizer.handle_callback("myapp://cb?code=x") is False
        assert authorizer.cancel() is False


# ── LoopbackAuthorizer ─────────────────────────────────────────────────


class TestLoopbackAuthorizer:
    """Tests for the system-browser authorizer."""

    def test_captures_redirect(self) -> None:
        """The loopback server hands the browser redirect to the flow."""
        port = _free_port()
        redirect_uri = f"http://127.0.0.1:{port}/callback"
        opened: list[str] = []

        def browser(url: str) -> bool:
            opened.append(url)
            with urlopen(f"{redirect_uri}?code=loop&state=st", timeout=5) as response:  # noqa: S310
                response.read()
            return True

        authorizer = LoopbackAuthorizer(timeout=5, open_browser=browser)
        response = asyncio.run(authorizer.authorize("https://idp/auth?x=1", redirect_uri))

        assert opened == ["https://idp/auth?x=1"]
        assert response.code == "loop"
        assert response.state == "st"

    def test_timeout_releases_port(self) -> None:
        """A timed-out flow stops the server so the port can be reused."""
        port = _free_port()
        redirect_uri = f"http://127.0.0.1:{port}/callback"
        authorizer = LoopbackAuthorizer(timeout=0.1, open_browser=lambda url: False)

        with pytest.raises(AuthFlowTimeout):
            asyncio.run(authorizer.authorize("https://idp/auth", redirect_uri))

        with socket.socket() as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", port))
