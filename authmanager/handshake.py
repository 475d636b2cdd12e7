"""Authorization handshakes.

An OAuth sign-in opens the provider's authorization page and then waits
for the redirect carrying ``code`` and ``state``. The wait is modelled as
a small state machine::

    STARTED -> AWAITING_CALLBACK -> COMPLETED | CANCELLED | TIMED_OUT

Authorizers decide how the page is shown and how the redirect comes back:
``CallbackAuthorizer`` leaves both to the application (embedded webview,
mobile deep link, web redirect handler); ``LoopbackAuthorizer`` opens the
system browser and captures the redirect on a loopback HTTP server.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import webbrowser

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qsl, urlparse

from .callback_server import OAuthCallbackServer
from .exceptions import AuthErrorCode, AuthFlowCancelled, AuthFlowTimeout
from .types import AuthorizationResponse, HandshakeState


logger = logging.getLogger(__name__)

IsClosed = Callable[[], bool]
OpenUrl = Callable[[str], "bool | None | Awaitable[bool | None]"]


def parse_callback(url_or_params: str | dict[str, Any]) -> AuthorizationResponse:
    """Extract the authorization response from a redirect URL or a mapping.

    Query parameters win over fragment parameters when both are present.
    """
    if isinstance(url_or_params, dict):
        return AuthorizationResponse.from_params(url_or_params)
    parsed = urlparse(url_or_params)
    params = dict(parse_qsl(parsed.fragment, keep_blank_values=True))
    params.update(parse_qsl(parsed.query, keep_blank_values=True))
    return AuthorizationResponse.from_params(params)


class AuthorizationHandshake:
    """One pending authorization redirect.

    Parameters
    ----------
    timeout : float, optional
        Seconds to wait for the redirect. None waits indefinitely.
    poll_interval : float
        Seconds between ``is_closed`` checks (default 0.1).
    """

    def __init__(self, timeout: float | None = None, poll_interval: float = 0.1) -> None:
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._state = HandshakeState.STARTED
        self._response: AuthorizationResponse | None = None
        self._done = asyncio.Event()

    @property
    def state(self) -> HandshakeState:
        """Current handshake state."""
        return self._state

    @property
    def is_finished(self) -> bool:
        """True once the handshake reached a terminal state."""
        return self._state in (HandshakeState.COMPLETED, HandshakeState.CANCELLED, HandshakeState.TIMED_OUT)

    def deliver(self, params: AuthorizationResponse | dict[str, Any] | str) -> bool:
        """Complete the handshake with the redirect parameters.

        Returns
        -------
        bool
            False if the handshake had already finished.
        """
        if self.is_finished:
            return False
        if not isinstance(params, AuthorizationResponse):
            params = parse_callback(params)
        self._response = params
        self._state = HandshakeState.COMPLETED
        self._done.set()
        return True

    def cancel(self) -> bool:
        """Abort the handshake. Returns False if it had already finished."""
        if self.is_finished:
            return False
        self._state = HandshakeState.CANCELLED
        self._done.set()
        return True

    async def wait(self, is_closed: IsClosed | None = None) -> AuthorizationResponse:
        """Wait for the redirect.

        Parameters
        ----------
        is_closed : callable, optional
            Polled every ``poll_interval``; returning True cancels the flow.

        Returns
        -------
        AuthorizationResponse
            The delivered redirect parameters.

        Raises
        ------
        AuthFlowCancelled
            The window was closed or ``cancel()`` was called.
        AuthFlowTimeout
            ``timeout`` elapsed first.
        """
        if self._state is HandshakeState.STARTED:
            self._state = HandshakeState.AWAITING_CALLBACK
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        while not self._done.is_set():
            if is_closed is not None and is_closed():
                self.cancel()
                break
            if deadline is not None and time.monotonic() >= deadline:
                self._state = HandshakeState.TIMED_OUT
                self._done.set()
                break
            wait_for = self.poll_interval
            if deadline is not None:
                wait_for = max(min(wait_for, deadline - time.monotonic()), 0)
            try:
                await asyncio.wait_for(self._done.wait(), timeout=wait_for)
            except asyncio.TimeoutError:
                continue

        if self._state is HandshakeState.TIMED_OUT:
            msg = f"Authorization timed out after {self.timeout}s"
            raise AuthFlowTimeout(AuthErrorCode.AUTH_TIMEOUT, msg, timeout=self.timeout)
        if self._state is HandshakeState.CANCELLED or self._response is None:
            raise AuthFlowCancelled(AuthErrorCode.USER_CANCELLED, "Authorization was cancelled by the user")
        return self._response


class Authorizer(ABC):
    """Shows an authorization URL and returns the redirect parameters."""

    @abstractmethod
    async def authorize(self, url: str, redirect_uri: str) -> AuthorizationResponse:
        """Run one authorization round trip.

        Parameters
        ----------
        url : str
            Fully built authorization URL.
        redirect_uri : str
            Where the provider will send the user back.
        """


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CallbackAuthorizer(Authorizer):
    """Authorizer driven by the host application.

    The application opens the URL in its own surface and feeds the
    redirect back through ``handle_callback``.

    Parameters
    ----------
    open_url : callable
        Opens the URL. Returning ``False`` means the window could not be
        opened. May be sync or async.
    is_closed : callable, optional
        Reports whether the user closed the window.
    timeout : float, optional
        Seconds to wait for the redirect. None waits indefinitely.
    poll_interval : float
        Seconds between ``is_closed`` checks.
    """

    def __init__(
        self,
        open_url: OpenUrl,
        is_closed: IsClosed | None = None,
        timeout: float | None = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._open_url = open_url
        self._is_closed = is_closed
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._handshake: AuthorizationHandshake | None = None

    @property
    def handshake(self) -> AuthorizationHandshake | None:
        """The handshake currently waiting for a redirect, if any."""
        return self._handshake

    async def authorize(self, url: str, redirect_uri: str) -> AuthorizationResponse:
        handshake = AuthorizationHandshake(timeout=self.timeout, poll_interval=self.poll_interval)
        self._handshake = handshake
        try:
            opened = await _maybe_await(self._open_url(url))
            if opened is False:
                handshake.cancel()
                raise AuthFlowCancelled(AuthErrorCode.POPUP_BLOCKED, "The authorization window could not be opened")
            return await handshake.wait(self._is_closed)
        finally:
            if self._handshake is handshake:
                self._handshake = None

    def handle_callback(self, url_or_params: str | dict[str, Any]) -> bool:
        """Deliver a redirect URL (or its parsed parameters).

        Returns
        -------
        bool
            False if no handshake was waiting.
        """
        if self._handshake is None:
            logger.warning("Received an authorization callback with no flow in progress")
            return False
        return self._handshake.deliver(parse_callback(url_or_params))

    def cancel(self) -> bool:
        """Cancel the handshake in progress, if any."""
        return self._handshake.cancel() if self._handshake is not None else False


class LoopbackAuthorizer(Authorizer):
    """Desktop authorizer using the system browser and a loopback server.

    The server binds the host, port and path of ``redirect_uri``, so the
    redirect URI registered with the provider must be a loopback address.

    Parameters
    ----------
    timeout : float, optional
        Seconds to wait for the redirect. None waits indefinitely.
    open_browser : callable
        Opens a URL; defaults to ``webbrowser.open``.
    """

    def __init__(
        self,
        timeout: float | None = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
    ) -> None:
        self.timeout = timeout
        self._open_browser = open_browser
        self._handshake: AuthorizationHandshake | None = None

    async def authorize(self, url: str, redirect_uri: str) -> AuthorizationResponse:
        target = urlparse(redirect_uri)
        host = target.hostname or "127.0.0.1"
        port = target.port or 80
        loop = asyncio.get_running_loop()

        handshake = AuthorizationHandshake(timeout=self.timeout)
        self._handshake = handshake

        def on_result(params: dict[str, Any]) -> None:
            loop.call_soon_threadsafe(handshake.deliver, params)

        server = OAuthCallbackServer(host=host, port=port, path=target.path or "/", on_result=on_result)
        server.start()
        try:
            opened = await loop.run_in_executor(None, self._open_browser, url)
            if not opened:
                logger.info("Open this URL to sign in: %s", url)
            return await handshake.wait()
        finally:
            self._handshake = None
            await loop.run_in_executor(None, server.stop)

    def cancel(self) -> bool:
        """Cancel the handshake in progress, if any."""
        return self._handshake.cancel() if self._handshake is not None else False
