import asyncio
import io
import threading
from pathlib import Path

import pytest

from sitepipe.errors import ServerError
from sitepipe.server import DevServer, ServerHandle, ServerSettings, ServerSlot, _ReloadHandler

NOT_FOUND = "<html><body><h1>Lost</h1></body></html>"


def make_site(root: Path) -> Path:
    (root / "blog").mkdir(parents=True)
    (root / "index.html").write_text("<html><body>Home</body></html>", encoding="utf-8")
    (root / "about.html").write_text("<html><body>About</body></html>", encoding="utf-8")
    (root / "feed.xml").write_text("<feed/>", encoding="utf-8")
    (root / "blog" / "index.html").write_text("<html><body>Blog</body></html>", encoding="utf-8")
    (root / "site.css").write_text("body{}", encoding="utf-8")
    (root / "404.html").write_text(NOT_FOUND, encoding="utf-8")
    return root


def make_handler(serve_dir: Path, path: str, command: str = "GET", ws_port: int = 4443):
    server = DevServer(serve_dir, ServerSettings(ws_port=ws_port))
    handler_cls = server.handler_class(server.read_not_found())
    handler = handler_cls.__new__(handler_cls)
    handler.path = path
    handler.directory = str(serve_dir)
    handler.command = command
    handler.request_version = "HTTP/1.1"
    handler.wfile = io.BytesIO()
    handler._headers_buffer = []
    handler.status = None
    handler.headers_sent = {}

    def send_response(code, message=None):
        handler.status = code

    def send_header(key, value):
        handler.headers_sent[key] = value

    handler.send_response = send_response
    handler.send_header = send_header
    return handler


def test_index_html_redirects_to_directory(tmp_path):
    handler = make_handler(make_site(tmp_path), "/blog/index.html?ref=nav")
    assert handler.send_head() is None
    assert handler.status == 302
    assert handler.headers_sent["Location"] == "/blog/?ref=nav"

    root = make_handler(tmp_path, "/index.html")
    root.send_head()
    assert root.status == 302
    assert root.headers_sent["Location"] == "/"


def test_missing_path_serves_not_found_page(tmp_path):
    handler = make_handler(make_site(tmp_path), "/nope/missing.css")
    assert handler.send_head() is None
    body = handler.wfile.getvalue()
    assert handler.status == 404
    assert b"<h1>Lost</h1>" in body
    assert b"wss://" in body and b":4443" in body
    assert handler.headers_sent["Cache-Control"].startswith("no-cache")


def test_head_request_sends_no_body(tmp_path):
    handler = make_handler(make_site(tmp_path), "/nope", command="HEAD")
    handler.send_head()
    assert handler.status == 404
    assert b"Lost" not in handler.wfile.getvalue()


@pytest.mark.parametrize(
    ("path", "expected"),
    [("/about", b"About"), ("/", b"Home")],
)
def test_html_resolution_injects_reload_script(tmp_path, path, expected):
    handler = make_handler(make_site(tmp_path), path)
    assert handler.send_head() is None
    body = handler.wfile.getvalue()
    assert handler.status == 200
    assert expected in body
    assert body.index(b"<script>") < body.index(b"</body>")


def test_extensionless_request_falls_back_to_xml(tmp_path):
    handler = make_handler(make_site(tmp_path), "/feed")
    f = handler.send_head()
    try:
        assert f.read() == b"<feed/>"
    finally:
        f.close()
    assert handler.status == 200
    assert handler.headers_sent["Content-type"] in {"application/xml", "text/xml"}


def test_static_file_is_streamed(tmp_path):
    handler = make_handler(make_site(tmp_path), "/site.css")
    f = handler.send_head()
    try:
        assert f.read() == b"body{}"
    finally:
        f.close()
    assert handler.headers_sent["Content-Length"] == "6"


def test_directory_without_slash_redirects(tmp_path):
    handler = make_handler(make_site(tmp_path), "/blog")
    handler.send_head()
    assert handler.status == 301
    assert handler.headers_sent["Location"] == "/blog/"


def test_directory_without_index_is_not_found(tmp_path):
    make_site(tmp_path)
    (tmp_path / "empty").mkdir()
    handler = make_handler(tmp_path, "/empty/")
    handler.send_head()
    assert handler.status == 404


def test_missing_not_found_page_fails_fast(tmp_path):
    server = DevServer(tmp_path, ServerSettings())
    with pytest.raises(ServerError, match="404.html"):
        server.read_not_found()


def test_missing_or_invalid_certificates(tmp_path):
    settings = ServerSettings(cert=tmp_path / "site.crt", key=tmp_path / "site.key")
    server = DevServer(tmp_path, settings)
    with pytest.raises(ServerError, match="certificate file not found"):
        server.ssl_context()

    settings.cert.write_text("not a certificate", encoding="utf-8")
    settings.key.write_text("not a key", encoding="utf-8")
    with pytest.raises(ServerError, match="invalid certificate pair"):
        server.ssl_context()


def test_settings_from_config(tmp_path):
    config = {"server": {"port": 8443, "cert": "tls/dev.crt", "not_found": "missing.html"}}
    settings = ServerSettings.from_config(tmp_path, config)
    assert settings.port == 8443
    assert settings.ws_port == 8444
    assert settings.cert == tmp_path / "tls" / "dev.crt"
    assert settings.not_found == "missing.html"

    override = ServerSettings.from_config(tmp_path, config, port=5055, ws_port=6000)
    assert (override.port, override.ws_port) == (5055, 6000)


def test_reload_rereads_not_found_page(tmp_path):
    make_site(tmp_path)
    server = DevServer(tmp_path, ServerSettings())
    handler_cls = server.handler_class(server.read_not_found())
    handle = ServerHandle(server, None, handler_cls)

    (tmp_path / "404.html").write_text("<p>Gone</p>", encoding="utf-8")
    handle.reload()
    assert handler_cls.not_found_body == "<p>Gone</p>"

    (tmp_path / "404.html").unlink()
    handle.reload()
    assert handler_cls.not_found_body == "<p>Gone</p>"
    assert _ReloadHandler.not_found_body == "<h1>Not Found</h1>"
    handle.stop()
    assert not handle.running


def test_async_broadcast_drops_stale_clients(tmp_path):
    handle = ServerHandle(DevServer(tmp_path, ServerSettings()), None, _ReloadHandler)

    class GoodWS:
        def __init__(self):
            self.messages = []

        async def send(self, msg):
            self.messages.append(msg)

    class BadWS:
        async def send(self, msg):
            raise ConnectionError("closed")

    good, bad = GoodWS(), BadWS()
    handle._ws_clients = {good, bad}
    asyncio.run(handle._async_broadcast('{"type": "reload"}'))
    assert good.messages == ['{"type": "reload"}']
    assert handle._ws_clients == {good}


def test_server_slot_stops_previous_handle(tmp_path):
    class FakeHandle:
        def __init__(self, serve_dir):
            self.serve_dir = serve_dir
            self.stopped = 0

        def stop(self):
            self.stopped += 1

    slot = ServerSlot(factory=lambda serve_dir, settings: FakeHandle(serve_dir))
    first = slot.start(tmp_path / "a", ServerSettings())
    second = slot.start(tmp_path / "b", ServerSettings())
    assert first.stopped == 1
    assert second.stopped == 0
    assert slot.handle is second

    slot.stop()
    slot.stop()
    assert second.stopped == 1
    assert slot.handle is None


def test_html_that_is_not_utf8_is_still_served(tmp_path):
    make_site(tmp_path)
    (tmp_path / "legacy.html").write_bytes("<html><body>Café</body></html>".encode("latin-1"))
    handler = make_handler(tmp_path, "/legacy")
    assert handler.send_head() is None
    body = handler.wfile.getvalue()
    assert handler.status == 200
    assert "Caf\ufffd".encode("utf-8") in body
    assert b"<script>" in body


def test_stop_before_websocket_listener_binds(tmp_path, monkeypatch):
    served = []
    monkeypatch.setattr(
        "sitepipe.server.websockets.serve", lambda *args, **kwargs: served.append(args)
    )
    handle = ServerHandle(DevServer(tmp_path, ServerSettings()), None, _ReloadHandler)
    handle._running = True

    handle.stop()
    listener = threading.Thread(target=handle._start_ws)
    listener.start()
    listener.join(5)

    assert served == []
    assert handle._loop.is_closed()
    assert not handle.running
