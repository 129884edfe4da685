# streambuild/sandbox/file_store.py
"""
Files store - the session's single write path for project files.

Every write lands in the VirtualFileTree immediately (that is what the UI and
the static server read) and reaches the sandbox after a short per-path quiet
window. Rapid edits to one path collapse into one sandbox write carrying the
latest content; every caller waiting on that path gets the same result.
"""
import asyncio
import posixpath
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from streambuild.core.logging import log
from streambuild.sandbox.base import Sandbox
from streambuild.sandbox.paths import WORK_DIR, abs_in_workdir
from streambuild.sandbox.virtual_fs import VirtualFileTree

MutationListener = Callable[[str], Union[None, Awaitable[None]]]

FALLBACK_README = """# Project in Fallback Mode

The execution sandbox failed to start, but files generated by the model are
still collected here and shown in the file tree.

Shell commands are not executed in this mode. To run the project, download
the files and start it locally with your preferred dev server.
"""


@dataclass
class PendingWrite:
    content: str
    future: asyncio.Future
    handle: Optional[asyncio.TimerHandle] = None
    waiters: int = 0


class FilesStore:
    def __init__(
        self,
        tree: VirtualFileTree,
        sandbox: Optional[Sandbox] = None,
        debounce: float = 0.1,
        session_id: Optional[str] = None,
    ) -> None:
        self.tree = tree
        self.sandbox = sandbox
        self.debounce = debounce
        self.session_id = session_id
        self.work_dir = sandbox.work_dir if sandbox else WORK_DIR
        self._pending: Dict[str, PendingWrite] = {}
        self._flushes: Set[asyncio.Task] = set()
        self._listeners: List[MutationListener] = []
        # Paths whose tree content never reached the sandbox
        self._unflushed: Set[str] = set()
        self.writes = 0

    @property
    def available(self) -> bool:
        return self.sandbox is not None

    def on_mutation(self, listener: MutationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self, path: str) -> None:
        for listener in list(self._listeners):
            result = listener(path)
            if result is not None:
                await result

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def write(self, path: str, content: str) -> bool:
        """
        Write ``content`` to ``path``. Returns False when the content is
        unchanged and nothing was written.
        """
        path = abs_in_workdir(path, self.work_dir)
        current = self.tree.get_file(path)
        if (
            current is not None
            and current.content == content
            and path not in self._pending
            and path not in self._unflushed
        ):
            log("FILES", f"Unchanged, skipping {path}", session_id=self.session_id)
            return False

        self.tree.write(path, content)

        if self.sandbox is None:
            self.writes += 1
            await self._notify(path)
            return True

        loop = asyncio.get_running_loop()
        pending = self._pending.get(path)
        if pending is None:
            pending = PendingWrite(content=content, future=loop.create_future())
            self._pending[path] = pending
        else:
            pending.content = content
            if pending.handle:
                pending.handle.cancel()
        pending.handle = loop.call_later(self.debounce, self._schedule_flush, path)

        pending.waiters += 1
        return await asyncio.shield(pending.future)

    async def mkdir(self, path: str) -> None:
        path = abs_in_workdir(path, self.work_dir)
        self.tree.mkdir(path)
        if self.sandbox is not None:
            await self.sandbox.mkdir(path)

    async def read(self, path: str) -> Optional[str]:
        path = abs_in_workdir(path, self.work_dir)
        entry = self.tree.get_file(path)
        if entry is not None:
            return entry.content
        if self.sandbox is not None and await self.sandbox.exists(path):
            data = await self.sandbox.read_file(path)
            return data.decode("utf-8", errors="replace")
        return None

    async def flush_all(self) -> None:
        """Flush every pending write now. Used on shutdown."""
        for path, pending in list(self._pending.items()):
            if pending.handle:
                pending.handle.cancel()
            await self._flush(path)
        if self._flushes:
            await asyncio.gather(*self._flushes, return_exceptions=True)

    def seed_fallback(self) -> None:
        """Degraded mode: explain in the tree why nothing runs."""
        readme = posixpath.join(self.work_dir, "README.md")
        if self.tree.get_file(readme) is None:
            self.tree.write(readme, FALLBACK_README)
            self.tree.reset_modifications()

    # =========================================================================
    # FLUSH
    # =========================================================================

    def _schedule_flush(self, path: str) -> None:
        task = asyncio.create_task(self._flush(path))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _flush(self, path: str) -> None:
        pending = self._pending.pop(path, None)
        if pending is None:
            return

        try:
            await self.sandbox.mkdir(posixpath.dirname(path))
            await self.sandbox.write_file(path, pending.content)
        except Exception as e:
            log("FILES", f"❌ Failed to write {path}: {e}", session_id=self.session_id, level="error")
            self._unflushed.add(path)
            if not pending.future.done():
                pending.future.set_exception(e)
            return

        self._unflushed.discard(path)
        self.writes += 1
        if pending.waiters > 1:
            log("FILES", f"Coalesced {pending.waiters} writes to {path}", session_id=self.session_id)
        if not pending.future.done():
            pending.future.set_result(True)
        await self._notify(path)
