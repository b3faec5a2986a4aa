"""
server.py: static file server with live reload over a WebSocket.

One listening socket does both jobs: plain GET requests are answered from
the site directory by ``process_request``, and upgrade requests for
``/__reload`` become WebSocket clients of the broadcast hub.
"""

import asyncio
import http
import logging
import mimetypes
import os
import urllib.parse

import websockets
from websockets.asyncio.server import serve
from websockets.datastructures import Headers
from websockets.http11 import Response

from .build import run_build
from .hub import Hub
from .protocol import MessageError, UnknownMessageType, decode_message
from .watch import ConfigError, watch_rule


logger = logging.getLogger(__name__)

HERE = os.path.dirname(os.path.abspath(__file__))

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 3000
RELOAD_PATH = "/__reload"
FAVICON_PATH = "/favicon.ico"
INDEX_FILE = "index.html"
INJECT_BEFORE = (b"</head>", b"</body>", b"</html>")


def _read_bundled(name):
    with open(os.path.join(HERE, name), "rb") as f:
        return f.read()


EMBED_SCRIPT = b"<script>" + _read_bundled("embed.js") + b"</script>"
FAVICON = _read_bundled("favicon.png")


# ─────────────────────────────────────────────────────────────────────────────
# STATIC FILES
# ─────────────────────────────────────────────────────────────────────────────

def inject_script(html, snippet=EMBED_SCRIPT):
    """Splice ``snippet`` in before the first ``</head>``, ``</body>`` or ``</html>``.

    Tags are tried in that order of preference. Without any of them the
    document is returned unchanged.
    """
    for tag in INJECT_BEFORE:
        point = html.find(tag)
        if point >= 0:
            return html[:point] + snippet + html[point:]
    return html


def resolve_path(root, url, push_state=False):
    """Map a request URL to a file under ``root``, or None if it escapes it.

    Extension-less paths try ``<path>.html``, then ``<path>/index.html``,
    then the root ``index.html``. In push-state mode a missing ``.html``
    file also falls back to the root ``index.html``.
    """
    path = urllib.parse.unquote(urllib.parse.urlsplit(url).path)
    file = os.path.normpath(os.path.join(root, path.lstrip("/")))
    if file != root and not file.startswith(root + os.sep):
        return None

    index = os.path.join(root, INDEX_FILE)
    ext = os.path.splitext(path)[1]
    if not ext:
        candidates = []
        if path.strip("/") and not path.endswith("/"):
            candidates.append(file + ".html")
        candidates.append(os.path.join(file, INDEX_FILE))
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return index

    if push_state and ext == ".html" and not os.path.exists(file):
        return index
    return file


def content_type(file):
    kind, _ = mimetypes.guess_type(file)
    return kind or "application/octet-stream"


def http_response(status, kind, body):
    headers = Headers([
        ("Content-Type", kind),
        ("Content-Length", str(len(body))),
        ("Cache-Control", "no-store"),
        ("Connection", "close"),
    ])
    return Response(status, http.HTTPStatus(status).phrase, headers, body)


def error_response(status, url):
    body = f"{status} {http.HTTPStatus(status).phrase} {url}".encode()
    return http_response(status, "text/plain", body)


def serve_file(root, url, push_state=False, snippet=EMBED_SCRIPT):
    """Build the HTTP response for ``url``.

    Missing files are 404 (except the favicon, which falls back to the
    bundled one), other I/O errors are 400. HTML gets the reload script.
    """
    try:
        file = resolve_path(root, url, push_state)
        if file is None:
            raise FileNotFoundError(url)
        with open(file, "rb") as f:
            body = f.read()
    except FileNotFoundError:
        if urllib.parse.urlsplit(url).path == FAVICON_PATH:
            return http_response(200, "image/png", FAVICON)
        logger.info("404 %s", url)
        return error_response(404, url)
    except (OSError, ValueError) as e:
        logger.warning("400 %s: %s", url, e)
        return error_response(400, url)

    kind = content_type(file)
    if kind == "text/html":
        body = inject_script(body, snippet)
    return http_response(200, kind, body)


# ─────────────────────────────────────────────────────────────────────────────
# DEV SERVER
# ─────────────────────────────────────────────────────────────────────────────

class DevServer:
    """Serves ``root``, runs watch rules and pushes reloads to every open page.

    Use as an async context manager, or call ``run()`` to serve until
    cancelled.
    """

    def __init__(self, root, rules=(), host=DEFAULT_HOST, port=DEFAULT_PORT,
                 push_state=False, stderr_fails=True):
        self.root = os.path.abspath(root)
        self.rules = tuple(rules)
        self.host = host
        self.port = port
        self.push_state = push_state
        self.stderr_fails = stderr_fails
        self.hub = Hub()
        self.server = None
        self._stop = None
        self._watchers = []
        self._builds = set()

    def check(self):
        """Raise ``ConfigError`` for a bad root or an unwatchable rule."""
        if not os.path.isdir(self.root):
            raise ConfigError(f"root directory does not exist: {self.root}")
        for rule in self.rules:
            rule.check()

    # ── transport ───────────────────────────────────────────────────────────

    async def process_request(self, connection, request):
        """Answer everything but the reload socket as a static file request."""
        if urllib.parse.urlsplit(request.path).path == RELOAD_PATH:
            return None
        return await asyncio.to_thread(serve_file, self.root, request.path, self.push_state)

    async def handler(self, connection):
        """Handle one connected page (or publisher) for its whole lifetime."""
        peer = getattr(connection, "remote_address", None)
        await self.hub.client_connected(connection)
        try:
            async for raw in connection:
                await self.receive(raw)
        except websockets.ConnectionClosedError as e:
            logger.debug("Client %s closed with error: %s", peer, e)
        finally:
            await self.hub.client_disconnected(connection)

    async def receive(self, raw):
        """Broadcast a reload message sent in by a peer, such as a build tool."""
        try:
            result = decode_message(raw)
        except UnknownMessageType as e:
            logger.warning("Reload failed (%s)", e)
            return
        except MessageError as e:
            logger.warning("Ignoring malformed message: %s", e)
            return
        await self.hub.record_and_broadcast(result)

    # ── watching and building ───────────────────────────────────────────────

    def on_change(self, rule, path):
        task = asyncio.create_task(self.build(rule, path))
        self._builds.add(task)
        task.add_done_callback(self._builds.discard)

    async def build(self, rule, path):
        try:
            result = await run_build(rule, path, self.stderr_fails)
        except Exception:
            logger.exception("Build for %s crashed", path)
            return
        if result is not None:
            await self.hub.record_and_broadcast(result)

    def _watcher_done(self, task):
        if not task.cancelled() and task.exception() is not None:
            logger.error("Watcher stopped: %s", task.exception())

    # ── lifecycle ───────────────────────────────────────────────────────────

    async def start(self):
        self.check()
        self._stop = asyncio.Event()
        self.server = await serve(
            self.handler, self.host, self.port,
            process_request=self.process_request,
        )
        if self.port == 0:
            self.port = self.server.sockets[0].getsockname()[1]
        for rule in self.rules:
            task = asyncio.create_task(watch_rule(rule, self.on_change, self._stop))
            task.add_done_callback(self._watcher_done)
            self._watchers.append(task)
        logger.info("Serving %s at http://%s:%s", self.root, self.host, self.port)

    async def close(self):
        if self._stop is not None:
            self._stop.set()
        for task in [*self._watchers, *self._builds]:
            task.cancel()
        await asyncio.gather(*self._watchers, *self._builds, return_exceptions=True)
        self._watchers = []
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def run(self):
        async with self:
            await asyncio.Future()  # run forever
