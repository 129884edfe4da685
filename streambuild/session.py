# streambuild/session.py
"""
Build Session

One conversation's worth of state: the parser fed by the model stream, the
action chain, the files, the terminals and the bootstrap supervisor. Each
session owns its collaborators; nothing here is module-global except the
registry of live sessions.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from streambuild.core.config import Settings, SandboxSettings, settings as default_settings
from streambuild.core.logging import log
from streambuild.bootstrap.previews import PreviewRegistry
from streambuild.bootstrap.supervisor import BootstrapSupervisor
from streambuild.lib.events import (
    ActionCloseEvent,
    ActionOpenEvent,
    ArtifactCloseEvent,
    ArtifactOpenEvent,
    EventBus,
    FileChangedEvent,
)
from streambuild.runtime.action_runner import ActionRunner
from streambuild.runtime.action_store import ActionStore, action_key
from streambuild.runtime.message_parser import (
    ActionCallbackData,
    ArtifactCallbackData,
    ParserCallbacks,
    StreamingMessageParser,
)
from streambuild.runtime.terminal import TerminalHub
from streambuild.sandbox.base import Sandbox
from streambuild.sandbox.factory import boot_sandbox
from streambuild.sandbox.file_store import FilesStore
from streambuild.sandbox.virtual_fs import VirtualFileTree

MAIN_TERMINAL = "main"


@dataclass
class ArtifactRecord:
    turn_id: str
    id: str
    title: str
    closed: bool = False
    action_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "turn_id": self.turn_id,
            "id": self.id,
            "title": self.title,
            "closed": self.closed,
            "actions": list(self.action_keys),
        }


class BuildSession:
    def __init__(
        self,
        session_id: Optional[str] = None,
        config: Optional[Settings] = None,
        boot: Optional[Callable[[SandboxSettings], "asyncio.Future"]] = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.config = config or default_settings
        self._boot = boot

        self.bus = EventBus(self.session_id)
        self.tree = VirtualFileTree(self.config.sandbox, self.config.sandbox.work_dir)
        self.terminals = TerminalHub(self.bus, session_id=self.session_id)
        self.terminals.attach(MAIN_TERMINAL)
        self.store = ActionStore(self.bus, self.session_id)
        self.previews = PreviewRegistry(self.bus, self.session_id)
        self.artifacts: Dict[str, ArtifactRecord] = {}

        self.parser = StreamingMessageParser(
            callbacks=ParserCallbacks(
                on_artifact_open=self._on_artifact_open,
                on_artifact_close=self._on_artifact_close,
                on_action_open=self._on_action_open,
                on_action_close=self._on_action_close,
            ),
            config=self.config.parser,
        )

        # Built in start(), once we know whether a sandbox exists
        self.sandbox: Optional[Sandbox] = None
        self.files: Optional[FilesStore] = None
        self.supervisor: Optional[BootstrapSupervisor] = None
        self.runner: Optional[ActionRunner] = None
        self.started = False

    @property
    def degraded(self) -> bool:
        return self.started and self.sandbox is None

    async def start(self) -> "BuildSession":
        if self.started:
            return self

        self.sandbox = await boot_sandbox(self.config.sandbox, self._boot, self.session_id)
        self.files = FilesStore(
            self.tree,
            self.sandbox,
            debounce=self.config.sandbox.write_debounce,
            session_id=self.session_id,
        )
        self.files.on_mutation(lambda path: self.bus.publish(FileChangedEvent(path=path)))

        self.supervisor = BootstrapSupervisor(
            self.files,
            self.terminals,
            bus=self.bus,
            previews=self.previews,
            config=self.config.bootstrap,
            runtime_config=self.config.runtime,
            session_id=self.session_id,
        )
        self.supervisor.start()
        self.runner = ActionRunner(
            self.store,
            self.files,
            self.supervisor,
            self.terminals,
            config=self.config.runtime,
            session_id=self.session_id,
        )

        if self.sandbox is None:
            self.files.seed_fallback()

        self.started = True
        log("SESSION", f"Session started ({'degraded' if self.sandbox is None else 'sandbox'})", session_id=self.session_id)
        return self

    # =========================================================================
    # INPUT
    # =========================================================================

    def feed(self, turn_id: str, text: str) -> str:
        """Parse the cumulative model output for ``turn_id``; returns display-safe text."""
        if not self.started:
            raise RuntimeError("Session not started")
        return self.parser.parse(turn_id, text)

    def abort(self, key: str) -> bool:
        return self.runner.abort(key) if self.runner else False

    async def wait_idle(self) -> None:
        if self.runner is not None:
            await self.runner.wait_idle()
        await self.bus.drain()

    # =========================================================================
    # PARSER CALLBACKS
    # =========================================================================

    @staticmethod
    def _artifact_key(turn_id: str, artifact_id: str) -> str:
        return f"{turn_id}:{artifact_id}"

    def _on_artifact_open(self, data: ArtifactCallbackData) -> None:
        key = self._artifact_key(data.turn_id, data.id)
        self.artifacts.setdefault(key, ArtifactRecord(turn_id=data.turn_id, id=data.id, title=data.title))
        self.bus.publish(ArtifactOpenEvent(turn_id=data.turn_id, artifact_id=data.id, title=data.title))

    def _on_artifact_close(self, data: ArtifactCallbackData) -> None:
        record = self.artifacts.get(self._artifact_key(data.turn_id, data.id))
        if record is not None:
            record.closed = True
        self.bus.publish(ArtifactCloseEvent(turn_id=data.turn_id, artifact_id=data.id, title=data.title))

    def _on_action_open(self, data: ActionCallbackData) -> None:
        record = self.artifacts.get(self._artifact_key(data.turn_id, data.artifact_id))
        key = action_key(data.turn_id, data.action_id)
        if record is not None and record.closed:
            log("SESSION", f"Action {key} after artifact {record.id} closed, ignoring", session_id=self.session_id, level="warning")
            return
        if record is not None and key not in record.action_keys:
            record.action_keys.append(key)

        self.runner.add_action(data)
        self.bus.publish(ActionOpenEvent(
            turn_id=data.turn_id,
            artifact_id=data.artifact_id,
            action_id=data.action_id,
            key=key,
            kind=data.action.kind,
            file_path=data.action.file_path,
        ))

    def _on_action_close(self, data: ActionCallbackData) -> None:
        key = action_key(data.turn_id, data.action_id)
        if key not in self.store:
            return
        self.bus.publish(ActionCloseEvent(
            turn_id=data.turn_id,
            artifact_id=data.artifact_id,
            action_id=data.action_id,
            key=key,
            kind=data.action.kind,
            file_path=data.action.file_path,
            content=data.action.content,
        ))
        self.runner.run_action(data)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def reset(self) -> None:
        """Abort actions, stop servers and forget parser state. Files are kept."""
        self.parser.reset()
        self.artifacts.clear()
        if self.runner is not None:
            await self.runner.reset()
        if self.supervisor is not None:
            await self.supervisor.reset()
        log("SESSION", "Session reset", session_id=self.session_id)

    async def close(self) -> None:
        await self.reset()
        if self.files is not None:
            await self.files.flush_all()
        if self.supervisor is not None:
            await self.supervisor.close()
        if self.sandbox is not None:
            await self.sandbox.close()
        log("SESSION", "Session closed", session_id=self.session_id)

    def snapshot(self) -> dict:
        return {
            "session_id": self.session_id,
            "degraded": self.degraded,
            "artifacts": [record.to_dict() for record in self.artifacts.values()],
            "actions": [action.to_dict() for action in self.store.all()],
            "bootstrap": self.supervisor.status() if self.supervisor else None,
            "previews": self.previews.list(),
        }


class SessionManager:
    """Registry of live sessions."""

    def __init__(self) -> None:
        self.sessions: Dict[str, BuildSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, config: Optional[Settings] = None, session_id: Optional[str] = None) -> BuildSession:
        session = BuildSession(session_id=session_id, config=config)
        await session.start()
        async with self._lock:
            self.sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[BuildSession]:
        return self.sessions.get(session_id)

    async def remove(self, session_id: str) -> bool:
        async with self._lock:
            session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        for session_id in list(self.sessions):
            await self.remove(session_id)


session_manager = SessionManager()
