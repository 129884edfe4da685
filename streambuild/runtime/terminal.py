# streambuild/runtime/terminal.py
"""
Terminal Hub
Fans process output out to every attached terminal view.

Each terminal keeps a bounded scrollback so a view that attaches late still
sees recent output.
"""
from collections import deque
from typing import Deque, Dict, List, Optional

from streambuild.core.logging import log
from streambuild.lib.events import EventBus, TerminalOutputEvent

DEFAULT_SCROLLBACK = 500


class TerminalHub:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        scrollback: int = DEFAULT_SCROLLBACK,
        session_id: Optional[str] = None,
    ) -> None:
        self.bus = bus
        self.scrollback = scrollback
        self.session_id = session_id
        self._terminals: Dict[str, Deque[str]] = {}

    def attach(self, terminal_id: str) -> List[str]:
        """Attach a terminal and return its scrollback."""
        buffer = self._terminals.get(terminal_id)
        if buffer is None:
            buffer = deque(maxlen=self.scrollback)
            self._terminals[terminal_id] = buffer
            log("TERMINAL", f"Attached terminal {terminal_id}", session_id=self.session_id)
        return list(buffer)

    def detach(self, terminal_id: str) -> None:
        self._terminals.pop(terminal_id, None)

    @property
    def terminal_ids(self) -> List[str]:
        return list(self._terminals)

    def write(self, data: str) -> None:
        if not data:
            return
        for terminal_id, buffer in self._terminals.items():
            buffer.append(data)
            if self.bus is not None:
                self.bus.publish(TerminalOutputEvent(terminal_id=terminal_id, data=data))

    def history(self, terminal_id: str) -> str:
        return "".join(self._terminals.get(terminal_id, ()))
