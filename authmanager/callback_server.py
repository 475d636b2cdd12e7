"""Loopback HTTP server that captures an OAuth redirect.

Listens on the host, port and path of a desktop redirect URI, answers the
browser with a small HTML page, and hands the parameters of the first
matching request (query string, or form body for ``form_post``) to a
callback.
"""

# pylint: disable=C0103

from __future__ import annotations

import html
import logging
import threading

from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qsl, urlparse


logger = logging.getLogger(__name__)

_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title>
<style>
  body {{ font-family: system-ui, sans-serif; display: flex; align-items: center;
         justify-content: center; height: 100vh; margin: 0; background: #f5f5f7; }}
  main {{ text-align: center; padding: 2rem 3rem; background: #fff; border-radius: 10px; }}
  h1 {{ font-size: 1.4rem; color: {color}; }}
</style></head>
<body><main><h1>{title}</h1><p>{body}</p></main></body></html>"""


def _render(title: str, body: str, color: str = "#1d1d1f") -> str:
    return _PAGE.format(
        title=html.escape(title),
        body=html.escape(body, quote=True),
        color=color,
    )


class OAuthCallbackServer:
    """Loopback server for one authorization redirect.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` picks a free port).
    path : str
        Redirect path to capture (default ``"/callback"``).
    on_result : callable, optional
        Called from the server thread with the redirect's query parameters.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        path: str = "/callback",
        on_result: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._path = path or "/"
        self._on_result = on_result
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._result: dict[str, Any] | None = None
        self._received = threading.Event()

    @property
    def port(self) -> int:
        """Bound port, once started."""
        if self._server is None:
            return self._port
        return int(self._server.server_address[1])

    @property
    def redirect_uri(self) -> str:
        """Redirect URI served by this instance."""
        return f"http://{self._host}:{self.port}{self._path}"

    @property
    def result(self) -> dict[str, Any] | None:
        """Captured query parameters, if a redirect has arrived."""
        return self._result

    def _capture(self, params: dict[str, Any]) -> bool:
        if self._received.is_set():
            return False
        self._result = params
        self._received.set()
        if self._on_result is not None:
            self._on_result(params)
        return True

    def start(self) -> str:
        """Start serving on a daemon thread.

        Returns
        -------
        str
            The redirect URI being served.
        """
        owner = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path != owner._path:
                    self.send_error(404)
                    return
                self._complete(dict(parse_qsl(parsed.query, keep_blank_values=True)))

            def do_POST(self) -> None:
                # response_mode=form_post delivers the parameters in the body
                parsed = urlparse(self.path)
                if parsed.path != owner._path:
                    self.send_error(404)
                    return
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length).decode("utf-8") if length else ""
                params = dict(parse_qsl(parsed.query, keep_blank_values=True))
                params.update(parse_qsl(body, keep_blank_values=True))
                self._complete(params)

            def _complete(self, params: dict[str, Any]) -> None:
                first = owner._capture(params)
                if params.get("error"):
                    reason = params.get("error_description") or params["error"]
                    self._send(_render("Sign-in failed", str(reason), color="#c62828"))
                else:
                    self._send(_render("Signed in", "You can close this window."))
                if first:
                    threading.Thread(target=owner._shutdown, daemon=True).start()

            def _send(self, page: str) -> None:
                encoded = page.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header("Content-Security-Policy", "default-src 'none'; style-src 'unsafe-inline'")
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                if args:
                    logger.debug("Callback server: %s", args[0] % args[1:])

        self._server = HTTPServer((self._host, self._port), _Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Callback server listening on %s", self.redirect_uri)
        return self.redirect_uri

    def _shutdown(self) -> None:
        if self._server is not None:
            self._server.shutdown()

    def stop(self) -> None:
        """Shut the server down and release the port."""
        server, thread = self._server, self._thread
        if server is not None:
            if thread is not None and thread.is_alive():
                server.shutdown()
                thread.join(timeout=5)
            server.server_close()
        self._server = None
        self._thread = None
