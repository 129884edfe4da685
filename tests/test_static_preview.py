"""
Static fallback app and preview registry tests.
"""
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from streambuild.bootstrap.previews import MAX_PREVIEWS, PreviewRegistry, normalize_preview_url
from streambuild.bootstrap.static_server import build_static_app
from streambuild.core.config import SandboxSettings
from streambuild.lib.events import EventBus
from streambuild.sandbox.base import PortEvent
from streambuild.sandbox.file_store import FilesStore
from streambuild.sandbox.virtual_fs import VirtualFileTree
from tests.utils.fake_sandbox import FakeSandbox

ROOT = "/home/project"


def make_files(sandbox=None, **files):
    tree = VirtualFileTree(SandboxSettings())
    for path, content in files.items():
        tree.write(f"{ROOT}/{path}", content)
    return FilesStore(tree, sandbox, debounce=0.0)


def client_for(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://preview")


# ════════════════════════════════════════════════════════════════════
# STATIC APP
# ════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_index_and_assets_served_from_tree():
    files = make_files(**{"index.html": "<h1>hi</h1>", "app.js": "console.log(1)"})

    async with client_for(build_static_app(files, ROOT)) as client:
        index = await client.get("/")
        script = await client.get("/app.js")
        missing = await client.get("/missing.png")

    assert index.status_code == 200
    assert index.text == "<h1>hi</h1>"
    assert index.headers["content-type"].startswith("text/html")
    assert script.text == "console.log(1)"
    assert "javascript" in script.headers["content-type"]
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_client_routes_fall_back_to_index():
    files = make_files(**{"index.html": "<div id=root></div>"})

    async with client_for(build_static_app(files, ROOT)) as client:
        response = await client.get("/dashboard/settings")

    assert response.status_code == 200
    assert response.text == "<div id=root></div>"


@pytest.mark.asyncio
async def test_diagnostic_page_at_root_links_to_files():
    files = make_files(**{"index.html": "<h1>hi</h1>"})

    async with client_for(build_static_app(files, ROOT, "Error: <boom>")) as client:
        root = await client.get("/")
        index = await client.get("/index.html")

    assert "Dev server could not start" in root.text
    assert "Error: &lt;boom&gt;" in root.text
    assert 'href="/index.html"' in root.text
    assert index.text == "<h1>hi</h1>"


@pytest.mark.asyncio
async def test_subdirectory_root():
    files = make_files(**{"web/index.html": "web", "other.txt": "secret"})

    async with client_for(build_static_app(files, f"{ROOT}/web")) as client:
        index = await client.get("/")
        escape = await client.get("/../other.txt")

    assert index.text == "web"
    assert escape.text != "secret"


@pytest.mark.asyncio
async def test_binary_files_read_from_sandbox():
    sandbox = FakeSandbox()
    png = b"\x89PNG\r\n\x1a\n\x00\x00\x00"
    sandbox.files[f"{ROOT}/logo.png"] = png
    files = make_files(sandbox, **{"index.html": "x"})
    files.tree.write(f"{ROOT}/logo.png", png)

    async with client_for(build_static_app(files, ROOT)) as client:
        response = await client.get("/logo.png")

    assert response.status_code == 200
    assert response.content == png
    assert response.headers["content-type"] == "image/png"


# ════════════════════════════════════════════════════════════════════
# PREVIEW REGISTRY
# ════════════════════════════════════════════════════════════════════

def test_preview_urls_use_localhost():
    assert normalize_preview_url("http://0.0.0.0:5174") == "http://localhost:5174"
    assert normalize_preview_url("http://127.0.0.1:3000/") == "http://localhost:3000/"
    assert normalize_preview_url("https://preview.example.com") == "https://preview.example.com"


@pytest.mark.asyncio
async def test_ready_announced_once_per_port():
    bus = EventBus("s")
    events = []
    bus.subscribe(events.append)
    registry = PreviewRegistry(bus)

    registry.mark_ready(5174, "http://0.0.0.0:5174")
    registry.mark_ready(5174, "http://0.0.0.0:5174")
    registry.handle_port_event(PortEvent(port=5174, type="close", url="http://0.0.0.0:5174"))
    registry.handle_port_event(PortEvent(port=5174, type="open", url="http://0.0.0.0:5174"))

    assert [(e.port, e.url) for e in events] == [(5174, "http://localhost:5174")] * 2


def test_priority_ports_come_first():
    registry = PreviewRegistry()
    registry.mark_ready(5174)
    registry.mark_ready(3000)

    assert registry.primary.port == 3000
    assert [p["port"] for p in registry.list()] == [3000, 5174]


def test_registry_is_bounded():
    registry = PreviewRegistry()
    for port in range(4000, 4000 + MAX_PREVIEWS + 2):
        registry.mark_ready(port)

    ports = [p["port"] for p in registry.list()]
    assert len(ports) == MAX_PREVIEWS
    assert ports[0] == 4002
    assert ports[-1] == 4000 + MAX_PREVIEWS + 1
