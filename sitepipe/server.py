"""Development server for Sitepipe.

Serves the revisioned site over HTTPS with live reload:
- Injects a reload script into HTML responses.
- Answers every unmatched request with the pre-read not-found page and a 404.
- Redirects ``.../index.html`` to its directory URL with a 302.
- Resolves extension-less requests by trying ``.html`` then ``.xml``.

Starting a server returns an explicit ServerHandle; reload and stop go
through that handle. A ServerSlot keeps at most one handle alive and stops
the previous one before starting a new one.

Key classes:
- ServerSettings: Host, ports, certificate pair and not-found page.
- DevServer: Validates settings and starts the listeners.
- ServerHandle: A running server (reload, stop).
- ServerSlot: Holds at most one running ServerHandle.
- _ReloadHandler: HTTP request handler implementing the rules above.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import posixpath
import ssl
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import websockets

from .errors import ServerError

logger = logging.getLogger(__name__)

# Extensions tried, in order, for requests without one.
FALLBACK_EXTENSIONS = (".html", ".xml")


class _ReloadHandler(SimpleHTTPRequestHandler):
    """HTTP request handler for the development server.

    Attributes:
        reload_script: JavaScript reloading the page on a websocket message.
        not_found_body: Pre-read content of the not-found page.
    """

    reload_script_template = """
    <script>
    (() => {{
      const ws = new WebSocket('wss://' + location.hostname + ':{ws_port}');
      ws.onmessage = (event) => {{
        const data = JSON.parse(event.data || '{{}}');
        if (data.type === 'reload') location.reload();
      }};
    }})();
    </script>
    """
    reload_script = reload_script_template.format(ws_port=4001)
    not_found_body = "<h1>Not Found</h1>"

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def list_directory(self, path):  # pragma: no cover - exercised via send_head
        # Never expose directory listings; treat as missing content.
        return self._serve_404()

    def _inject(self, content: str) -> bytes:
        if "</body>" in content:
            content = content.replace("</body>", f"{self.reload_script}</body>", 1)
        else:
            content += self.reload_script
        return content.encode("utf-8")

    def _send_html(self, status: int, content: str):
        encoded = self._inject(content)
        self.send_response(status)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(encoded)
        return None

    def _serve_404(self):
        """Serve the pre-read not-found page with a 404 status."""
        return self._send_html(404, self.not_found_body)

    def _redirect(self, status: int, location: str):
        self.send_response(status)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()
        return None

    def _resolve(self, url_path: str) -> Path | None:
        """Map a request path to a file, or None when nothing matches."""
        path = Path(self.translate_path(url_path))
        if path.is_dir():
            index = path / "index.html"
            return index if index.is_file() else None
        if path.is_file():
            return path
        if not path.suffix:
            for ext in FALLBACK_EXTENSIONS:
                candidate = path.with_name(path.name + ext)
                if candidate.is_file():
                    return candidate
        return None

    def send_head(self):
        parts = urlsplit(self.path)
        url_path = parts.path or "/"
        query = f"?{parts.query}" if parts.query else ""

        if posixpath.basename(url_path) == "index.html":
            return self._redirect(302, url_path[: -len("index.html")] + query)

        target = self._resolve(url_path)
        if target is None:
            return self._serve_404()
        if target.name == "index.html" and not url_path.endswith("/"):
            return self._redirect(301, url_path + "/" + query)
        if target.suffix == ".html":
            return self._send_html(200, target.read_text(encoding="utf-8", errors="replace"))
        return self._send_file(target)

    def _send_file(self, target: Path):
        f = open(target, "rb")
        try:
            stat = target.stat()
            self.send_response(200)
            self.send_header("Content-type", self.guess_type(str(target)))
            self.send_header("Content-Length", str(stat.st_size))
            self.send_header("Last-Modified", self.date_time_string(stat.st_mtime))
            self.end_headers()
        except Exception:
            f.close()
            raise
        return f


@dataclass(frozen=True)
class ServerSettings:
    """Settings of the development server.

    Attributes:
        host: Interface to bind.
        port: HTTPS port.
        ws_port: Live reload websocket port.
        cert: Certificate file (PEM).
        key: Private key file (PEM).
        not_found: Not-found page, relative to the served directory.
    """

    host: str = "localhost"
    port: int = 4000
    ws_port: int = 4001
    cert: Path = Path("certs/localhost.crt")
    key: Path = Path("certs/localhost.key")
    not_found: str = "404.html"

    @classmethod
    def from_config(
        cls,
        project_root: Path,
        config: dict[str, Any],
        port: int | None = None,
        ws_port: int | None = None,
    ) -> ServerSettings:
        settings = config.get("server", {})
        http_port = int(port or settings.get("port", 4000))
        if ws_port is None:
            ws_port = settings.get("ws_port") or http_port + 1
        return cls(
            host=settings.get("host", "localhost"),
            port=http_port,
            ws_port=int(ws_port),
            cert=project_root / settings.get("cert", "certs/localhost.crt"),
            key=project_root / settings.get("key", "certs/localhost.key"),
            not_found=settings.get("not_found", "404.html"),
        )


class DevServer:
    """Development server over HTTPS with live reload.

    Attributes:
        serve_dir: Directory being served.
        settings: Server settings.
    """

    def __init__(self, serve_dir: Path, settings: ServerSettings):
        self.serve_dir = serve_dir
        self.settings = settings

    def read_not_found(self) -> str:
        """Read the not-found page.

        Raises:
            ServerError: If the page is missing or unreadable.
        """
        page = self.serve_dir / self.settings.not_found
        try:
            return page.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ServerError(page, f"cannot read not-found page ({exc.strerror or exc})") from exc

    def ssl_context(self) -> ssl.SSLContext:
        """Create the TLS context from the certificate pair.

        Raises:
            ServerError: If either file is missing or invalid.
        """
        for path in (self.settings.cert, self.settings.key):
            if not path.is_file():
                raise ServerError(path, "certificate file not found")
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(str(self.settings.cert), str(self.settings.key))
        except ssl.SSLError as exc:
            raise ServerError(self.settings.cert, f"invalid certificate pair: {exc}") from exc
        return context

    def handler_class(self, not_found_body: str) -> type[_ReloadHandler]:
        return type(
            "_ReloadHandlerForSite",
            (_ReloadHandler,),
            {
                "reload_script": _ReloadHandler.reload_script_template.format(
                    ws_port=self.settings.ws_port
                ),
                "not_found_body": not_found_body,
            },
        )

    def start(self) -> ServerHandle:  # pragma: no cover - integration path
        """Start the HTTPS and websocket listeners.

        Returns:
            Handle of the running server.

        Raises:
            ServerError: If the not-found page or certificates are unusable.
        """
        not_found = self.read_not_found()
        context = self.ssl_context()
        handler_cls = self.handler_class(not_found)
        handler = functools.partial(handler_cls, directory=str(self.serve_dir))
        httpd = ThreadingHTTPServer((self.settings.host, self.settings.port), handler)
        httpd.socket = context.wrap_socket(httpd.socket, server_side=True)
        handle = ServerHandle(self, httpd, handler_cls, context)
        handle.start()
        logger.info(
            "Serving %s at https://%s:%d", self.serve_dir, self.settings.host, self.settings.port
        )
        return handle


class ServerHandle:
    """A running development server.

    Attributes:
        server: The DevServer this handle was started from.
    """

    def __init__(
        self,
        server: DevServer,
        httpd: ThreadingHTTPServer | None,
        handler_cls: type[_ReloadHandler],
        context: ssl.SSLContext | None = None,
    ):
        self.server = server
        self._httpd = httpd
        self._handler_cls = handler_cls
        self._context = context
        self._ws_clients: set = set()
        self._loop = asyncio.new_event_loop()
        # Created up front so a stop that lands before the listener binds is kept.
        self._ws_stop: asyncio.Future = self._loop.create_future()
        self._threads: list[threading.Thread] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:  # pragma: no cover - integration path
        self._running = True
        http_thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        ws_thread = threading.Thread(target=self._start_ws, daemon=True)
        self._threads = [http_thread, ws_thread]
        for thread in self._threads:
            thread.start()

    def reload(self) -> None:
        """Re-read the not-found page and tell connected browsers to reload."""
        try:
            self._handler_cls.not_found_body = self.server.read_not_found()
        except ServerError as exc:
            logger.warning("Keeping previous not-found page: %s", exc)
        self._broadcast_reload()

    def stop(self) -> None:
        """Stop both listeners. Safe to call more than once."""
        if not self._running:
            return
        self._running = False
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._finish_ws)
        for thread in self._threads:
            thread.join(timeout=5)

    def _finish_ws(self) -> None:
        if not self._ws_stop.done():
            self._ws_stop.set_result(None)

    def _start_ws(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as exc:
            logger.error(
                "WebSocket server failed to start (port %d): %s", self.server.settings.ws_port, exc
            )
        finally:
            self._loop.close()

    async def _run_ws_server(self) -> None:
        if self._ws_stop.done():
            return
        settings = self.server.settings
        async with websockets.serve(
            self._ws_handler, settings.host, settings.ws_port, ssl=self._context
        ):
            await self._ws_stop

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    def _broadcast_reload(self) -> None:
        if self._loop.is_closed() or not self._loop.is_running():
            return
        message = json.dumps({"type": "reload"})
        asyncio.run_coroutine_threadsafe(self._async_broadcast(message), self._loop)

    async def _async_broadcast(self, message: str) -> None:
        stale = set()
        for ws in self._ws_clients:
            try:
                await ws.send(message)
            except Exception:
                stale.add(ws)
        for ws in stale:
            self._ws_clients.discard(ws)


class ServerSlot:
    """Holds at most one running server.

    Starting a server through the slot stops the one already running.
    """

    def __init__(self, factory: Callable[[Path, ServerSettings], ServerHandle] | None = None):
        self._factory = factory or (lambda serve_dir, settings: DevServer(serve_dir, settings).start())
        self._handle: ServerHandle | None = None

    @property
    def handle(self) -> ServerHandle | None:
        return self._handle

    def start(self, serve_dir: Path, settings: ServerSettings) -> ServerHandle:
        self.stop()
        self._handle = self._factory(serve_dir, settings)
        return self._handle

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.stop()
            self._handle = None
