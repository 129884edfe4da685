# streambuild/runtime/action_store.py
"""
Ordered registry of every action seen in a session.
"""
import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from streambuild.core.logging import log
from streambuild.lib.events import ActionStatusEvent, EventBus
from streambuild.sandbox.base import SandboxProcess


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = {ActionStatus.COMPLETE, ActionStatus.FAILED, ActionStatus.ABORTED}


def action_key(turn_id: str, action_id: str) -> str:
    return f"{turn_id}:{action_id}"


@dataclass
class ActionState:
    key: str
    turn_id: str
    artifact_id: str
    action_id: str
    kind: str
    content: str = ""
    file_path: Optional[str] = None
    status: ActionStatus = ActionStatus.PENDING
    executed: bool = False
    error: Optional[str] = None
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    process: Optional[SandboxProcess] = None

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "turn_id": self.turn_id,
            "artifact_id": self.artifact_id,
            "action_id": self.action_id,
            "kind": self.kind,
            "file_path": self.file_path,
            "content": self.content,
            "status": self.status.value,
            "executed": self.executed,
            "error": self.error,
        }


class ActionStore:
    def __init__(self, bus: Optional[EventBus] = None, session_id: Optional[str] = None) -> None:
        self.bus = bus
        self.session_id = session_id
        self._actions: "OrderedDict[str, ActionState]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def get(self, key: str) -> Optional[ActionState]:
        return self._actions.get(key)

    def all(self) -> List[ActionState]:
        return list(self._actions.values())

    def add(self, action: ActionState) -> bool:
        """Register once. Returns False when the key is already known."""
        if action.key in self._actions:
            return False
        self._actions[action.key] = action
        return True

    def update(self, key: str, **changes: Any) -> Optional[ActionState]:
        action = self._actions.get(key)
        if action is None:
            log("RUNNER", f"Update for unknown action {key}", session_id=self.session_id, level="warning")
            return None

        status = changes.pop("status", None)
        if "executed" in changes and not changes["executed"]:
            # executed never goes back to False
            changes.pop("executed")

        for name, value in changes.items():
            setattr(action, name, value)

        if status is not None:
            self._set_status(action, ActionStatus(status))
        return action

    def abort(self, key: str) -> bool:
        action = self._actions.get(key)
        if action is None or action.finished:
            return False

        action.abort_event.set()
        if action.process is not None:
            action.process.kill()
        self._set_status(action, ActionStatus.ABORTED)
        log("RUNNER", f"Aborted action {key}", session_id=self.session_id)
        return True

    def abort_all(self) -> int:
        return sum(1 for key in list(self._actions) if self.abort(key))

    def clear(self) -> None:
        self._actions.clear()

    def _set_status(self, action: ActionState, status: ActionStatus) -> None:
        if action.status == status:
            return
        if action.finished:
            log(
                "RUNNER",
                f"Ignoring {status.value} for {action.key}, already {action.status.value}",
                session_id=self.session_id,
            )
            return

        action.status = status
        if self.bus is not None:
            self.bus.publish(ActionStatusEvent(key=action.key, status=status.value, error=action.error))
