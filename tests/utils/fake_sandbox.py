# tests/utils/fake_sandbox.py
"""
Scripted in-memory sandbox for tests.

Commands are matched against registered scripts (regex search, first match
wins) that decide the output chunks, the exit code and whether the process
keeps running until killed.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from streambuild.core.exceptions import SandboxError
from streambuild.sandbox.base import PortEvent, Sandbox, SandboxProcess


@dataclass
class Script:
    pattern: str
    output: List[str] = field(default_factory=list)
    exit_code: int = 0
    delay: float = 0.0
    hang: bool = False


class FakeProcess(SandboxProcess):
    def __init__(self, command: str, script: Script, pid: int):
        self.command = command
        self.pid = pid
        self.script = script
        self.killed = False
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._done = asyncio.Event()
        self._returncode: Optional[int] = None
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        for chunk in self.script.output:
            if self.script.delay:
                await asyncio.sleep(self.script.delay)
            await self._queue.put(chunk)
        if self.script.hang:
            await self._done.wait()
        else:
            if self.script.delay:
                await asyncio.sleep(self.script.delay)
            self._finish(self.script.exit_code)

    def _finish(self, code: int) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self._queue.put_nowait(None)
        self._done.set()

    async def output(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def wait(self) -> int:
        await self._done.wait()
        return self._returncode

    def kill(self) -> None:
        if self._returncode is not None:
            return
        self.killed = True
        self._finish(-9)
        self._task.cancel()

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode


class FakeSandbox(Sandbox):
    def __init__(self) -> None:
        super().__init__()
        self.files: Dict[str, bytes] = {}
        self.dirs = {self.work_dir}
        self.scripts: List[Script] = []
        self.spawned: List[Tuple[str, Optional[str], Dict[str, str]]] = []
        self.processes: List[FakeProcess] = []
        self.writes: List[Tuple[str, str]] = []
        self.watched: set = set()
        self.fail_writes = False
        self.closed = False

    def script(self, pattern: str, output: Optional[List[str]] = None, exit_code: int = 0,
               delay: float = 0.0, hang: bool = False) -> Script:
        script = Script(pattern, list(output or []), exit_code, delay, hang)
        self.scripts.append(script)
        return script

    def commands(self) -> List[str]:
        return [command for command, _, _ in self.spawned]

    async def read_file(self, path: str) -> bytes:
        if path not in self.files:
            raise SandboxError(path, "no such file")
        return self.files[path]

    async def write_file(self, path: str, content: Union[str, bytes]) -> None:
        if self.fail_writes:
            raise SandboxError(path, "write failed")
        data = content.encode("utf-8") if isinstance(content, str) else content
        self.files[path] = data
        self.writes.append((path, data.decode("utf-8", errors="replace")))

    async def mkdir(self, path: str) -> None:
        while path.startswith(self.work_dir):
            self.dirs.add(path)
            path = path.rsplit("/", 1)[0]

    async def exists(self, path: str) -> bool:
        return path in self.files or path in self.dirs

    async def spawn(self, command: str, cwd: Optional[str] = None,
                    env: Optional[Dict[str, str]] = None) -> FakeProcess:
        self.spawned.append((command, cwd, dict(env or {})))
        script = next((s for s in self.scripts if re.search(s.pattern, command)), Script(".*"))
        process = FakeProcess(command, script, pid=1000 + len(self.processes))
        self.processes.append(process)
        return process

    def watch_port(self, port: int) -> None:
        self.watched.add(port)

    def unwatch_port(self, port: int) -> None:
        self.watched.discard(port)

    async def open_port(self, port: int) -> None:
        await self.emit_port(PortEvent(port=port, type="open", url=f"http://0.0.0.0:{port}"))

    async def close(self) -> None:
        self.closed = True
        for process in self.processes:
            process.kill()
