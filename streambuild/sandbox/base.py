# streambuild/sandbox/base.py
"""
Sandbox contract.

A sandbox owns a file tree rooted at the work directory, runs shell commands
with piped combined output, and reports ports that start or stop accepting
connections.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from streambuild.sandbox.paths import WORK_DIR


@dataclass
class PortEvent:
    port: int
    type: str  # "open" or "close"
    url: str


PortListener = Callable[[PortEvent], Union[None, Awaitable[None]]]


class SandboxProcess(ABC):
    """Handle to a spawned command."""

    pid: Optional[int] = None
    command: str = ""

    @abstractmethod
    def output(self) -> AsyncIterator[str]:
        """Combined stdout/stderr chunks until the process exits."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for exit and return the exit code."""

    @abstractmethod
    def kill(self) -> None:
        """Terminate the process and its children. Safe to call twice."""

    @property
    @abstractmethod
    def returncode(self) -> Optional[int]:
        """Exit code, or None while running."""


class Sandbox(ABC):
    work_dir: str = WORK_DIR

    def __init__(self) -> None:
        self._port_listeners: List[PortListener] = []

    # =========================================================================
    # FILES
    # =========================================================================

    @abstractmethod
    async def read_file(self, path: str) -> bytes: ...

    @abstractmethod
    async def write_file(self, path: str, content: Union[str, bytes]) -> None: ...

    @abstractmethod
    async def mkdir(self, path: str) -> None:
        """Recursive; no error when the directory exists."""

    @abstractmethod
    async def exists(self, path: str) -> bool: ...

    # =========================================================================
    # PROCESSES
    # =========================================================================

    @abstractmethod
    async def spawn(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> SandboxProcess: ...

    # =========================================================================
    # PORTS
    # =========================================================================

    def on_port(self, listener: PortListener) -> Callable[[], None]:
        """Subscribe to port events. Returns an unsubscribe callable."""
        self._port_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._port_listeners:
                self._port_listeners.remove(listener)

        return unsubscribe

    async def emit_port(self, event: PortEvent) -> None:
        for listener in list(self._port_listeners):
            result = listener(event)
            if result is not None:
                await result

    @abstractmethod
    def watch_port(self, port: int) -> None:
        """Start reporting open/close events for ``port``."""

    @abstractmethod
    def unwatch_port(self, port: int) -> None: ...

    @abstractmethod
    async def close(self) -> None:
        """Kill every process and stop port watchers."""
