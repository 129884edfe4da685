# streambuild/sandbox/local.py
"""
Local Sandbox
Maps the virtual work dir onto a real directory and runs commands there.

Processes are started with subprocess.Popen and read from a worker thread,
which works on any event loop type. Each command gets its own process group
so kill() also takes down dev servers spawned by package-manager wrappers.
"""

import asyncio
import os
import signal
import subprocess
import tempfile
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Set, Union

import aiofiles
import httpx

from streambuild.core.config import SandboxSettings
from streambuild.core.exceptions import SandboxError
from streambuild.core.logging import log
from streambuild.sandbox.base import PortEvent, Sandbox, SandboxProcess
from streambuild.sandbox.paths import WORK_DIR, abs_in_workdir, rel_to_workdir


class LocalProcess(SandboxProcess):
    def __init__(self, process: subprocess.Popen, command: str):
        self._process = process
        self.pid = process.pid
        self.command = command

    async def output(self) -> AsyncIterator[str]:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            # Read line in thread to avoid blocking
            line = await asyncio.to_thread(stream.readline)
            if not line:
                break  # process exited
            yield line

    async def wait(self) -> int:
        return await asyncio.to_thread(self._process.wait)

    def kill(self) -> None:
        if self._process.poll() is not None:
            return
        try:
            os.killpg(os.getpgid(self._process.pid), signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            self._process.kill()
        log("SANDBOX", f"Killed pid {self.pid}: {self.command[:60]}")

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll()


class PortWatcher:
    """
    Polls a port over HTTP and reports transitions.

    Any HTTP response counts as open; a refused connection counts as closed.
    """

    def __init__(self, sandbox: "LocalSandbox", port: int, interval: float):
        self.sandbox = sandbox
        self.port = port
        self.interval = interval
        self.is_open = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _probe(self, client: httpx.AsyncClient) -> bool:
        try:
            await client.get(f"http://127.0.0.1:{self.port}/")
            return True
        except (httpx.ConnectError, httpx.ConnectTimeout):
            return False
        except httpx.HTTPError:
            # Something answered, even if badly
            return True

    async def _run(self) -> None:
        url = f"http://localhost:{self.port}"
        async with httpx.AsyncClient(timeout=2.0) as client:
            while True:
                is_open = await self._probe(client)
                if is_open != self.is_open:
                    self.is_open = is_open
                    event_type = "open" if is_open else "close"
                    log("SANDBOX", f"Port {self.port} {event_type}")
                    await self.sandbox.emit_port(PortEvent(port=self.port, type=event_type, url=url))
                await asyncio.sleep(self.interval)


class LocalSandbox(Sandbox):
    def __init__(
        self,
        root_dir: Optional[Union[str, Path]] = None,
        config: Optional[SandboxSettings] = None,
        work_dir: str = WORK_DIR,
    ) -> None:
        super().__init__()
        self.config = config or SandboxSettings()
        self.work_dir = work_dir
        self._tmp: Optional[tempfile.TemporaryDirectory] = None
        if root_dir is None:
            self._tmp = tempfile.TemporaryDirectory(prefix="streambuild-")
            root_dir = self._tmp.name
        self.root = Path(root_dir).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._processes: Dict[int, LocalProcess] = {}
        self._watchers: Dict[int, PortWatcher] = {}
        self._reapers: Set[asyncio.Task] = set()
        print(f"[SANDBOX] LocalSandbox rooted at {self.root}")

    def real_path(self, path: str) -> Path:
        rel = rel_to_workdir(abs_in_workdir(path, self.work_dir), self.work_dir)
        return self.root / rel if rel else self.root

    # =========================================================================
    # FILES
    # =========================================================================

    async def read_file(self, path: str) -> bytes:
        real = self.real_path(path)
        try:
            async with aiofiles.open(real, "rb") as f:
                return await f.read()
        except OSError as e:
            raise SandboxError(path, str(e)) from e

    async def write_file(self, path: str, content: Union[str, bytes]) -> None:
        real = self.real_path(path)
        real.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content
        try:
            async with aiofiles.open(real, "wb") as f:
                await f.write(data)
        except OSError as e:
            raise SandboxError(path, str(e)) from e

    async def mkdir(self, path: str) -> None:
        self.real_path(path).mkdir(parents=True, exist_ok=True)

    async def exists(self, path: str) -> bool:
        return self.real_path(path).exists()

    # =========================================================================
    # PROCESSES
    # =========================================================================

    async def spawn(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> LocalProcess:
        real_cwd = self.real_path(cwd or self.work_dir)
        real_cwd.mkdir(parents=True, exist_ok=True)
        full_env = {**os.environ, **(env or {})}

        def start_process():
            return subprocess.Popen(
                [self.config.shell, "-c", command],
                cwd=str(real_cwd),
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered
                start_new_session=True,
            )

        try:
            popen = await asyncio.to_thread(start_process)
        except OSError as e:
            raise SandboxError(command, f"spawn failed: {e}") from e

        process = LocalProcess(popen, command)
        self._processes[process.pid] = process
        reaper = asyncio.create_task(self._reap(process))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)
        log("SANDBOX", f"Spawned pid {process.pid} in {cwd or self.work_dir}: {command[:80]}")
        return process

    async def _reap(self, process: LocalProcess) -> None:
        code = await process.wait()
        self._processes.pop(process.pid, None)
        log("SANDBOX", f"pid {process.pid} exited with {code}")

    # =========================================================================
    # PORTS
    # =========================================================================

    def watch_port(self, port: int) -> None:
        watcher = self._watchers.get(port)
        if watcher is None:
            watcher = PortWatcher(self, port, self.config.port_poll_interval)
            self._watchers[port] = watcher
        watcher.start()

    def unwatch_port(self, port: int) -> None:
        watcher = self._watchers.pop(port, None)
        if watcher:
            watcher.stop()

    async def close(self) -> None:
        for watcher in list(self._watchers.values()):
            watcher.stop()
        self._watchers.clear()
        for process in list(self._processes.values()):
            process.kill()
        self._processes.clear()
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None
        print(f"[SANDBOX] LocalSandbox at {self.root} closed")
