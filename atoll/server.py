"""Development server for Atoll.

Renders everything on request so edits show up on the next page load:
- Pages and documents are re-discovered and rendered per request.
- ``/styles.css`` and ``/islands/<name>.js|css`` are compiled per request.
- A live-reload script is injected into every HTML response.
- Missing paths get the project's 404 page with a 404 status.

The live-reload channel is a websocket server on its own asyncio loop. A
reload requested while no browser is connected is remembered and delivered
to the next client that connects, so a page that was mid-reload during a
server restart still refreshes.

Key classes:
- ReloadChannel: Websocket clients plus the pending-reload flag.
- ServerContext: Routes requests against the project.
- DevServer: Wires the HTTP server and the reload channel together.
"""

from __future__ import annotations

import asyncio
import functools
import json
import mimetypes
import re
import threading
from dataclasses import dataclass, field
from http.server import HTTPServer, SimpleHTTPRequestHandler
from pathlib import Path
from urllib.parse import unquote, urlsplit

import websockets

from .build import Site
from .config import resolve_ports
from .content import PostDocument, find_post
from .errors import BuildError, ConfigError
from .islands import generate_wrapper
from .pages import NOT_FOUND_PAGE, PageDefinition, discover_pages
from .protocols import Bundler
from .utils import strip_base_path

HEALTH_PATH = "/__health__"
RELOAD_PATH = "/__reload__"
STYLESHEET_PATH = "/styles.css"

CONNECTED_MESSAGE = "connected"
RELOAD_MESSAGE = "reload"

_ISLAND_ROUTE_RE = re.compile(r"^/islands/([A-Za-z][\w-]*)\.(js|css)$")

RELOAD_SCRIPT_TEMPLATE = """
<script>
(() => {{
  let connected = false;
  let reloadOnConnect = false;
  const connect = () => {{
    const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
    ws.onmessage = (event) => {{
      if (event.data === '{reload}' || (event.data === '{connected}' && reloadOnConnect)) {{
        location.reload();
        return;
      }}
      if (event.data === '{connected}') connected = true;
    }};
    ws.onclose = () => {{
      if (!connected) return;
      reloadOnConnect = true;
      setTimeout(connect, 250);
    }};
  }};
  connect();
}})();
</script>
"""


def reload_script(ws_port: int) -> str:
    """Client script that follows the live-reload channel on ``ws_port``."""
    return RELOAD_SCRIPT_TEMPLATE.format(
        ws_port=ws_port, reload=RELOAD_MESSAGE, connected=CONNECTED_MESSAGE
    )


class ReloadChannel:
    """Live-reload websocket clients and the pending-reload flag.

    All state is touched only from the channel's event loop; other threads go
    through ``request_reload``.

    Attributes:
        clients: Connected websockets.
        pending_reload: True when a reload was requested with no client to
            receive it.
    """

    def __init__(self):
        self.clients: set = set()
        self.pending_reload = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopped: asyncio.Event | None = None
        self._thread: threading.Thread | None = None

    async def handler(self, websocket) -> None:
        """Greet a new client, then hold it until it disconnects."""
        if self.pending_reload:
            self.pending_reload = False
            message = RELOAD_MESSAGE
        else:
            message = CONNECTED_MESSAGE
        self.clients.add(websocket)
        try:
            await websocket.send(message)
            await websocket.wait_closed()
        except websockets.ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)

    async def broadcast(self) -> int:
        """Send a reload to every client.

        Returns:
            Number of clients the message reached. When none, the reload is
            kept pending for the next client.
        """
        delivered = 0
        stale = set()
        for ws in list(self.clients):
            try:
                await ws.send(RELOAD_MESSAGE)
            except Exception:
                stale.add(ws)
            else:
                delivered += 1
        self.clients -= stale
        if not delivered:
            self.pending_reload = True
        return delivered

    def start(self, host: str, port: int) -> None:  # pragma: no cover - integration path
        """Run the websocket server on a background thread."""
        ready = threading.Event()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run, args=(host, port, ready), daemon=True
        )
        self._thread.start()
        ready.wait(timeout=5)

    def _run(self, host: str, port: int, ready: threading.Event) -> None:  # pragma: no cover
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._serve(host, port, ready))
        except OSError as exc:
            print(f"WebSocket server failed to start (port {port}): {exc}")
        finally:
            ready.set()

    async def _serve(self, host: str, port: int, ready: threading.Event) -> None:  # pragma: no cover
        self._stopped = asyncio.Event()
        async with websockets.serve(self.handler, host, port):
            ready.set()
            await self._stopped.wait()

    def request_reload(self, timeout: float = 5.0) -> int:
        """Broadcast a reload from another thread and wait for the result."""
        if self._loop is None or not self._loop.is_running():
            self.pending_reload = True
            return 0
        future = asyncio.run_coroutine_threadsafe(self.broadcast(), self._loop)
        return future.result(timeout=timeout)

    def stop(self) -> None:
        if self._loop is not None and self._stopped is not None:
            self._loop.call_soon_threadsafe(self._stopped.set)
        if self._thread is not None:
            self._thread.join(timeout=5)


@dataclass
class DevResponse:
    """A response produced by the router rather than a public file."""

    status: int
    body: bytes
    content_type: str = "text/html; charset=utf-8"
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def text(cls, status: int, text: str, content_type: str) -> DevResponse:
        return cls(status, text.encode("utf-8"), content_type)


class ServerContext:
    """Routes dev-server requests against one project.

    Attributes:
        site: Project collaborators, built once at start.
        channel: Live-reload channel.
        live_reload: Script injected into HTML responses.
        stylesheet: Last compiled site stylesheet.
        posts: Documents from the most recent request that loaded them.
        pages: Page registry from the most recent request.
    """

    def __init__(self, site: Site, channel: ReloadChannel, ws_port: int):
        self.site = site
        self.channel = channel
        self.live_reload = reload_script(ws_port)
        self.stylesheet = ""
        self.posts: list[PostDocument] = []
        self.pages: dict[str, PageDefinition] = {}

    @property
    def base_path(self) -> str:
        return self.site.config.get("base_path", "")

    def local_path(self, raw_path: str) -> str | None:
        """Request path without query, base path or trailing slash.

        Returns None for paths outside the base path.
        """
        path = unquote(urlsplit(raw_path).path) or "/"
        local = strip_base_path(path, self.base_path)
        if local is None:
            return None
        if len(local) > 1:
            local = local.rstrip("/") or "/"
        return local

    def refresh_styles(self) -> str:
        self.stylesheet = self.site.styles.stylesheet(minify=False)
        return self.stylesheet

    def route(self, method: str, raw_path: str) -> DevResponse | None:
        """Resolve a request.

        The health and reload endpoints answer at the server root as well as
        under the base path.

        Returns:
            A DevResponse, or None to fall back to files in ``public/``.
        """
        control = unquote(urlsplit(raw_path).path).rstrip("/")
        path = self.local_path(raw_path)
        if control == RELOAD_PATH or path == RELOAD_PATH:
            if method != "POST":
                return DevResponse.text(405, "Method Not Allowed", "text/plain")
            return self.reload()
        if control == HEALTH_PATH or path == HEALTH_PATH:
            if method == "POST":
                return self.not_found()
            return DevResponse.text(200, "ok", "text/plain; charset=utf-8")
        if path is None or method == "POST":
            return self.not_found()
        try:
            if path == STYLESHEET_PATH:
                return DevResponse.text(
                    200, self.refresh_styles(), "text/css; charset=utf-8"
                )
            match = _ISLAND_ROUTE_RE.match(path)
            if match:
                return self.island(match.group(1), match.group(2))
            return self.page(path) or self.document(path)
        except (BuildError, ConfigError) as exc:
            print(f"Error rendering {path}: {exc}")
            return DevResponse.text(500, str(exc), "text/plain; charset=utf-8")

    def reload(self) -> DevResponse:
        """Recompile styles and tell browsers to reload."""
        self.refresh_styles()
        delivered = self.channel.request_reload()
        if delivered:
            print(f"Reload sent to {delivered} client(s)")
        else:
            print("No clients connected; reload deferred")
        payload = json.dumps({"delivered": delivered})
        return DevResponse.text(200, payload, "application/json")

    def island(self, name: str, kind: str) -> DevResponse | None:
        island = self.site.islands.get(name)
        if island is None:
            return self.not_found()
        wrapper = generate_wrapper(island, self.site.paths.src_dir)
        result = self.site.island_bundler.bundle(
            name, wrapper, self.site.externals_for(island), target="dev"
        )
        if not result.success:
            print(f"Failed to bundle island {name}:")
            if result.logs:
                print(result.logs)
            return DevResponse.text(
                500, result.logs or f"Failed to bundle {name}", "text/plain; charset=utf-8"
            )
        output = result.output(kind)
        text = output.text if output else ""
        content_type = (
            "text/javascript; charset=utf-8" if kind == "js" else "text/css; charset=utf-8"
        )
        return DevResponse.text(200, text, content_type)

    def html(self, markup: str, status: int = 200) -> DevResponse:
        html = self.site.assembler().assemble(markup, live_reload=self.live_reload)
        return DevResponse.text(status, html, "text/html; charset=utf-8")

    def page(self, path: str) -> DevResponse | None:
        self.pages = discover_pages(self.site.engine)
        name = path.strip("/") or "index"
        page = self.pages.get(name)
        if page is None or name == NOT_FOUND_PAGE:
            return None
        self.posts = self.site.load_posts()
        return self.html(page.render(posts=self.posts))

    def document(self, path: str) -> DevResponse | None:
        parts = path.strip("/").split("/")
        if not parts[0]:
            return None
        self.posts = self.site.load_posts()
        post = find_post(self.posts, parts[0])
        if post is None:
            return None
        if len(parts) == 1:
            return self.html(self.site.render_post(post, posts=self.posts))
        if len(parts) == 2:
            for asset in post.assets():
                if asset.name == parts[1]:
                    content_type = mimetypes.guess_type(asset.name)[0]
                    return DevResponse(
                        200, asset.read_bytes(), content_type or "application/octet-stream"
                    )
        return None

    def not_found(self) -> DevResponse | None:
        """The project's 404 page with a 404 status, or None if it has none."""
        self.pages = discover_pages(self.site.engine)
        page = self.pages.get(NOT_FOUND_PAGE)
        if page is None:
            return None
        try:
            return self.html(page.render(posts=self.site.load_posts()), status=404)
        except (BuildError, ConfigError) as exc:
            print(f"Error rendering 404 page: {exc}")
            return None


class _DevRequestHandler(SimpleHTTPRequestHandler):
    """Routes through ServerContext, then serves ``public/`` files.

    Attributes:
        context: Shared server context; set on a per-server subclass.
    """

    context: ServerContext

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def list_directory(self, path):  # pragma: no cover - exercised via send_head
        return self._serve_404()

    def _send(self, response: DevResponse):
        self.send_response(response.status)
        self.send_header("Content-type", response.content_type)
        self.send_header("Content-Length", str(len(response.body)))
        for key, value in response.headers.items():
            self.send_header(key, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)
        return None

    def _serve_404(self):
        response = self.context.not_found()
        if response is not None:
            return self._send(response)
        self.send_error(404, "File not found")
        return None

    def send_head(self):
        response = self.context.route("GET", self.path)
        if response is not None:
            return self._send(response)
        local = self.context.local_path(self.path)
        path_obj = Path(self.translate_path(local or "/"))
        if local is None or not path_obj.is_file():
            return self._serve_404()
        # Serve the public file relative to the base path.
        self.path = local
        return super().send_head()

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        if length:
            self.rfile.read(length)
        response = self.context.route("POST", self.path)
        if response is None:
            self._serve_404()
            return
        self._send(response)

    def log_message(self, format, *args):  # noqa: A002 - stdlib signature
        if self.path.endswith(HEALTH_PATH):
            return
        super().log_message(format, *args)


class DevServer:
    """Development server with live reload.

    Attributes:
        site: Project collaborators.
        http_port: Port for HTTP requests.
        ws_port: Port for the live-reload websocket.
        channel: Live-reload channel.
        context: Request router.
    """

    def __init__(
        self,
        project_root: Path,
        http_port: int | None = None,
        ws_port: int | None = None,
        bundler: Bundler | None = None,
    ):
        self.project_root = project_root
        self.site = Site.load(project_root, bundler)
        self.http_port, self.ws_port = resolve_ports(self.site.config, http_port, ws_port)
        self.channel = ReloadChannel()
        self.context = ServerContext(self.site, self.channel, self.ws_port)
        self._httpd: HTTPServer | None = None

    def handler_class(self):
        handler_cls = type(
            "_DevRequestHandlerWithContext",
            (_DevRequestHandler,),
            {"context": self.context},
        )
        return functools.partial(handler_cls, directory=str(self.site.paths.public_dir))

    def start(self) -> None:  # pragma: no cover - integration path
        # Writes the class-name mapping before the first template render.
        self.context.refresh_styles()
        self.site.island_bundler.cleanup_stale_wrappers(self.site.islands)
        self.channel.start("0.0.0.0", self.ws_port)
        self._httpd = HTTPServer(("", self.http_port), self.handler_class())
        print(f"Serving {self.project_root} at http://localhost:{self.http_port}")
        try:
            self._httpd.serve_forever()
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.server_close()
            self._httpd = None
        self.channel.stop()
