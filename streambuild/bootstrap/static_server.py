# streambuild/bootstrap/static_server.py
"""
Static fallback server.

Serves the project straight from the in-memory tree when no dev server can
run. With a failure diagnostic the root page explains what went wrong; the
project's own files stay reachable underneath it.
"""
import asyncio
import html
import mimetypes
import posixpath
from typing import Optional

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route

from streambuild.core.logging import log
from streambuild.sandbox.file_store import FilesStore

DIAGNOSTIC_PAGE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>Preview unavailable</title>
    <style>
      body {{ font-family: system-ui, sans-serif; margin: 2rem; color: #1f2937; }}
      pre {{ background: #111827; color: #f9fafb; padding: 1rem; overflow: auto; font-size: 12px; }}
      a {{ color: #2563eb; }}
    </style>
  </head>
  <body>
    <h1>Dev server could not start</h1>
    <p>The project is served as static files instead. Fix the problem below and
    save a change to retry.</p>
    {entry_link}
    <pre>{diagnostic}</pre>
  </body>
</html>
"""


def render_diagnostic(diagnostic: str, entry_url: Optional[str] = None) -> str:
    entry_link = f'<p><a href="{html.escape(entry_url)}">Open static files</a></p>' if entry_url else ""
    return DIAGNOSTIC_PAGE.format(entry_link=entry_link, diagnostic=html.escape(diagnostic or "No output captured"))


def build_static_app(files: FilesStore, root: str, diagnostic: Optional[str] = None) -> Starlette:
    """ASGI app serving ``root`` of the tree, SPA style."""
    index_path = posixpath.join(root, "index.html")

    async def serve(request: Request) -> Response:
        rel = request.path_params.get("path", "").strip("/")

        if not rel and diagnostic is not None:
            entry = "/index.html" if files.tree.get_file(index_path) is not None else None
            return HTMLResponse(render_diagnostic(diagnostic, entry))

        path = posixpath.normpath(posixpath.join(root, rel)) if rel else index_path
        if path != root and not path.startswith(root.rstrip("/") + "/"):
            return PlainTextResponse("Not found", status_code=404)

        entry = files.tree.get_file(path)
        if entry is None:
            entry = files.tree.get_file(posixpath.join(path, "index.html"))
        if entry is None and not posixpath.splitext(rel)[1]:
            # Client-side routes fall through to the entry page
            path, entry = index_path, files.tree.get_file(index_path)
        if entry is None:
            if diagnostic is not None:
                return HTMLResponse(render_diagnostic(diagnostic), status_code=404)
            return PlainTextResponse("Not found", status_code=404)

        media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        if entry.is_binary:
            if files.sandbox is None or not await files.sandbox.exists(path):
                return PlainTextResponse("Binary file not available", status_code=404)
            return Response(await files.sandbox.read_file(path), media_type=media_type)
        return Response(entry.content, media_type=media_type)

    return Starlette(routes=[
        Route("/", serve),
        Route("/{path:path}", serve),
    ])


class StaticPreviewServer:
    """One uvicorn server per session, running inside the host loop."""

    def __init__(self, files: FilesStore, port: int = 4173, session_id: Optional[str] = None):
        self.files = files
        self.port = port
        self.session_id = session_id
        self.root: Optional[str] = None
        self.diagnostic: Optional[str] = None
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    async def start(self, root: str, diagnostic: Optional[str] = None) -> None:
        await self.stop()
        self.root = root
        self.diagnostic = diagnostic

        app = build_static_app(self.files, root, diagnostic)
        self._server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=self.port, log_level="warning"))
        self._task = asyncio.create_task(self._serve(self._server))
        log("STATIC", f"Serving {root} on port {self.port}", session_id=self.session_id)

    async def _serve(self, server: uvicorn.Server) -> None:
        try:
            await server.serve()
        except SystemExit:
            # uvicorn exits the process on bind failure
            log("STATIC", f"❌ Could not bind port {self.port}", session_id=self.session_id, level="error")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except asyncio.TimeoutError:
                self._task.cancel()
            log("STATIC", "Static server stopped", session_id=self.session_id)
        self._server = None
        self._task = None
