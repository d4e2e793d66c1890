import asyncio
import io
import json

import pytest

from atoll.build import Site
from atoll.server import (
    CONNECTED_MESSAGE,
    RELOAD_MESSAGE,
    DevServer,
    ReloadChannel,
    ServerContext,
    _DevRequestHandler,
    reload_script,
)

from conftest import FakeBundler


class FakeWebSocket:
    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    async def send(self, message):
        if self.fail:
            raise RuntimeError("gone")
        self.messages.append(message)

    async def wait_closed(self):
        return None


@pytest.fixture
def context(project):
    site = Site.load(project, FakeBundler(styled={"chart"}))
    return ServerContext(site, ReloadChannel(), ws_port=3101)


def test_channel_greets_with_connected():
    channel = ReloadChannel()
    ws = FakeWebSocket()
    asyncio.run(channel.handler(ws))
    assert ws.messages == [CONNECTED_MESSAGE]
    assert ws not in channel.clients


def test_broadcast_without_clients_marks_pending_for_next_client():
    channel = ReloadChannel()
    assert asyncio.run(channel.broadcast()) == 0
    assert channel.pending_reload is True

    first = FakeWebSocket()
    asyncio.run(channel.handler(first))
    assert first.messages == [RELOAD_MESSAGE]
    assert channel.pending_reload is False

    second = FakeWebSocket()
    asyncio.run(channel.handler(second))
    assert second.messages == [CONNECTED_MESSAGE]


def test_broadcast_drops_stale_clients():
    channel = ReloadChannel()
    good, bad = FakeWebSocket(), FakeWebSocket(fail=True)
    channel.clients = {good, bad}
    assert asyncio.run(channel.broadcast()) == 1
    assert good.messages == [RELOAD_MESSAGE]
    assert channel.clients == {good}
    assert channel.pending_reload is False


def test_broadcast_with_only_stale_clients_stays_pending():
    channel = ReloadChannel()
    channel.clients = {FakeWebSocket(fail=True)}
    assert asyncio.run(channel.broadcast()) == 0
    assert channel.pending_reload is True
    assert not channel.clients


def test_request_reload_without_running_loop_defers():
    channel = ReloadChannel()
    assert channel.request_reload() == 0
    assert channel.pending_reload is True


def test_reload_script_uses_ws_port():
    script = reload_script(4321)
    assert ":4321'" in script
    assert "'reload'" in script
    assert "reloadOnConnect" in script


def test_health(context):
    response = context.route("GET", "/__health__")
    assert response.status == 200
    assert response.body == b"ok"


def test_reload_endpoint_recompiles_styles_and_defers(context, capsys):
    assert context.route("GET", "/__reload__").status == 405
    response = context.route("POST", "/__reload__")
    assert response.status == 200
    assert json.loads(response.body) == {"delivered": 0}
    assert ".card_title" in context.stylesheet
    assert context.channel.pending_reload is True
    assert "deferred" in capsys.readouterr().out


def test_stylesheet_is_recompiled_per_request(context, project):
    first = context.route("GET", "/styles.css")
    assert first.content_type.startswith("text/css")
    assert b".card_title" in first.body

    (project / "src" / "components" / "card.module.css").write_text(".fresh { color: blue; }")
    second = context.route("GET", "/styles.css")
    assert b".card_fresh" in second.body
    assert b".card_title" not in second.body


def test_island_routes_build_on_demand(context):
    js = context.route("GET", "/islands/counter.js")
    assert js.status == 200
    assert js.content_type.startswith("text/javascript")
    assert b"createRoot" in js.body
    call = context.site.bundler.calls[-1]
    assert call["minify"] is False
    assert call["define"] == {"process.env.NODE_ENV": '"development"'}

    css = context.route("GET", "/islands/chart.css")
    assert css.body == b".chart{color:red}"
    unstyled = context.route("GET", "/islands/counter.css")
    assert unstyled.status == 200 and unstyled.body == b""
    assert not (context.site.paths.output_dir / "islands").exists()


def test_island_route_failure_returns_logs(project):
    site = Site.load(project, FakeBundler(failing={"counter"}))
    context = ServerContext(site, ReloadChannel(), ws_port=3101)
    response = context.route("GET", "/islands/counter.js")
    assert response.status == 500
    assert b"could not build counter" in response.body


def test_unknown_island_is_not_found(context):
    response = context.route("GET", "/islands/ghost.js")
    assert response.status == 404


def test_page_routes_include_live_reload(context, project):
    context.refresh_styles()
    response = context.route("GET", "/")
    html = response.body.decode()
    assert response.status == 200
    assert '<h1 class="card_title">Home</h1>' in html
    assert "new WebSocket" in html
    # islands link every stylesheet in dev
    assert '<link rel="stylesheet" href="/islands/counter.css">' in html

    (project / "src" / "pages" / "new.html.jinja").write_text("<p>new page</p>")
    fresh = context.route("GET", "/new/?q=1")
    assert "<p>new page</p>" in fresh.body.decode()
    assert "new" in context.pages


def test_document_routes_and_assets(context, project):
    response = context.route("GET", "/hello")
    html = response.body.decode()
    assert '<h1 id="hello">Hello</h1>' in html
    assert '"d3-scale"' in html

    asset = context.route("GET", "/hello/photo.png")
    assert asset.body == b"png"
    assert asset.content_type == "image/png"

    (project / "src" / "posts" / "later.md").write_text(
        "---\ntitle: Later\npublishedAt: 2024-07-01\n---\nLater text\n"
    )
    assert context.route("GET", "/later").status == 200
    assert context.posts[0].slug == "later"


def test_unmatched_routes_fall_back(context):
    assert context.route("GET", "/robots.txt") is None
    assert context.route("GET", "/hello/missing.png") is None


def test_base_path_is_stripped(project):
    config = (project / "atoll.yaml").read_text()
    (project / "atoll.yaml").write_text(config + "base_path: /blog\n")
    site = Site.load(project, FakeBundler())
    context = ServerContext(site, ReloadChannel(), ws_port=3101)

    assert context.local_path("/blog/about/") == "/about"
    assert context.local_path("/blog") == "/"
    assert context.local_path("/about") is None
    assert context.route("GET", "/blog/about").status == 200
    outside = context.route("GET", "/about")
    assert outside.status == 404
    assert "<p>Missing</p>" in outside.body.decode()


def test_control_endpoints_answer_at_root_under_base_path(project):
    config = (project / "atoll.yaml").read_text()
    (project / "atoll.yaml").write_text(config + "base_path: /blog\n")
    site = Site.load(project, FakeBundler())
    context = ServerContext(site, ReloadChannel(), ws_port=3101)

    health = context.route("GET", "/__health__")
    assert health.status == 200
    assert health.body == b"ok"
    assert context.route("GET", "/blog/__health__").status == 200
    assert context.route("GET", "/__reload__").status == 405
    reload = context.route("POST", "/__reload__")
    assert reload.status == 200
    assert json.loads(reload.body) == {"delivered": 0}
    assert context.channel.pending_reload is True


def test_not_found_without_404_page(context, project):
    (project / "src" / "pages" / "404.html.jinja").unlink()
    assert context.not_found() is None


def _handler(context, path, command="GET"):
    handler_cls = type("_Handler", (_DevRequestHandler,), {"context": context})
    handler = handler_cls.__new__(handler_cls)
    handler.path = path
    handler.directory = str(context.site.paths.public_dir)
    handler.command = command
    handler.request_version = "HTTP/1.1"
    handler.requestline = f"{command} {path} HTTP/1.1"
    handler.client_address = ("127.0.0.1", 0)
    handler.server_version = ""
    handler.sys_version = ""
    handler.wfile = io.BytesIO()
    handler._headers_buffer = []
    handler.headers = {}
    handler.log_message = lambda *args: None
    return handler


def test_handler_serves_rendered_pages(context):
    handler = _handler(context, "/about")
    assert handler.send_head() is None
    output = handler.wfile.getvalue()
    assert b"200" in output.split(b"\r\n", 1)[0]
    assert b"<p>About</p>" in output
    assert b"Cache-Control: no-cache" in output


def test_handler_serves_404_page(context):
    handler = _handler(context, "/nope")
    assert handler.send_head() is None
    output = handler.wfile.getvalue()
    assert b"404" in output.split(b"\r\n", 1)[0]
    assert b"<p>Missing</p>" in output


def test_handler_head_omits_body(context):
    handler = _handler(context, "/about", command="HEAD")
    handler.send_head()
    assert b"<p>About</p>" not in handler.wfile.getvalue()


def test_handler_serves_public_files(context):
    handler = _handler(context, "/robots.txt")
    public_file = handler.send_head()
    try:
        assert public_file.read() == b"User-agent: *\n"
    finally:
        public_file.close()


def test_dev_server_port_override(project):
    server = DevServer(project, http_port=5055, bundler=FakeBundler())
    assert (server.http_port, server.ws_port) == (5055, 5056)

    explicit = DevServer(project, http_port=5055, ws_port=6000, bundler=FakeBundler())
    assert explicit.ws_port == 6000
    assert ":6000'" in explicit.context.live_reload

    default = DevServer(project, bundler=FakeBundler())
    assert (default.http_port, default.ws_port) == (3100, 3101)
