# streambuild/lib/events.py
"""
Typed session events and the bus that carries them to UI collaborators.

Publishers never know who is listening: the WebSocket bridge, the API and
the tests all subscribe to the same bus.
"""
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field

from streambuild.core.logging import log


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionEvent(BaseModel):
    type: str
    session_id: Optional[str] = None
    timestamp: str = Field(default_factory=_now)


class ArtifactOpenEvent(SessionEvent):
    type: Literal["artifact_open"] = "artifact_open"
    turn_id: str
    artifact_id: str
    title: str


class ArtifactCloseEvent(SessionEvent):
    type: Literal["artifact_close"] = "artifact_close"
    turn_id: str
    artifact_id: str
    title: str


class ActionOpenEvent(SessionEvent):
    type: Literal["action_open"] = "action_open"
    turn_id: str
    artifact_id: str
    action_id: str
    key: str
    kind: str
    file_path: Optional[str] = None


class ActionCloseEvent(SessionEvent):
    type: Literal["action_close"] = "action_close"
    turn_id: str
    artifact_id: str
    action_id: str
    key: str
    kind: str
    file_path: Optional[str] = None
    content: str = ""


class ActionStatusEvent(SessionEvent):
    type: Literal["action_status"] = "action_status"
    key: str
    status: str
    error: Optional[str] = None


class TerminalOutputEvent(SessionEvent):
    type: Literal["terminal_output"] = "terminal_output"
    terminal_id: str
    data: str


class FileChangedEvent(SessionEvent):
    type: Literal["file_changed"] = "file_changed"
    path: str


class PreviewReadyEvent(SessionEvent):
    type: Literal["preview_ready"] = "preview_ready"
    port: int
    url: str


class BootstrapModeEvent(SessionEvent):
    type: Literal["bootstrap_mode"] = "bootstrap_mode"
    mode: str
    diagnostic: Optional[str] = None


Listener = Callable[[SessionEvent], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self, session_id: Optional[str] = None) -> None:
        self.session_id = session_id
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        """
        Deliver ``event`` to every listener. Coroutine listeners are scheduled
        on the running loop; a failing listener never blocks the others.
        """
        if event.session_id is None:
            event.session_id = self.session_id

        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception as e:
                log("SESSION", f"Event listener failed on {event.type}: {e}", session_id=self.session_id, level="error")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log("SESSION", f"Async event listener failed: {task.exception()}", session_id=self.session_id, level="error")

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
