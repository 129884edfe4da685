# streambuild/bootstrap/previews.py
"""
Preview Registry
Tracks which sandbox ports serve a previewable page.
"""
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Set

from streambuild.core.logging import log
from streambuild.lib.events import EventBus, PreviewReadyEvent
from streambuild.sandbox.base import PortEvent

MAX_PREVIEWS = 10
# Conventional app ports take precedence over whatever opened first
PRIORITY_PORTS = (3000, 8000, 8080)

_LOOPBACK_HOST = re.compile(r"^(https?://)(?:0\.0\.0\.0|127\.0\.0\.1|\[::\]|\[::1\])(?=[:/]|$)")


def normalize_preview_url(url: str) -> str:
    return _LOOPBACK_HOST.sub(r"\1localhost", url.strip())


@dataclass
class PreviewInfo:
    port: int
    ready: bool
    base_url: str

    def to_dict(self) -> dict:
        return {"port": self.port, "ready": self.ready, "url": self.base_url}


class PreviewRegistry:
    """Manages preview URLs for one session."""

    def __init__(self, bus: Optional[EventBus] = None, session_id: Optional[str] = None):
        self.bus = bus
        self.session_id = session_id
        self.active_previews: "OrderedDict[int, PreviewInfo]" = OrderedDict()
        self.ready_ports: Set[int] = set()

    def mark_ready(self, port: int, url: Optional[str] = None) -> PreviewInfo:
        """Register ``port`` as serving. Announces each port once until it closes."""
        base_url = normalize_preview_url(url or f"http://localhost:{port}")
        info = self.active_previews.get(port)
        if info is None:
            info = PreviewInfo(port=port, ready=True, base_url=base_url)
            self.active_previews[port] = info
            if port in PRIORITY_PORTS:
                self.active_previews.move_to_end(port, last=False)
            while len(self.active_previews) > MAX_PREVIEWS:
                evicted = next(p for p in self.active_previews if p != port and p not in PRIORITY_PORTS)
                self.active_previews.pop(evicted)
                self.ready_ports.discard(evicted)
        else:
            info.ready = True
            info.base_url = base_url

        if port not in self.ready_ports:
            self.ready_ports.add(port)
            log("PREVIEW", f"Preview ready: {base_url}", session_id=self.session_id)
            if self.bus is not None:
                self.bus.publish(PreviewReadyEvent(port=port, url=base_url))
        return info

    def remove(self, port: int) -> None:
        if self.active_previews.pop(port, None) is not None:
            log("PREVIEW", f"Stopped tracking preview on port {port}", session_id=self.session_id)
        self.ready_ports.discard(port)

    def handle_port_event(self, event: PortEvent) -> None:
        if event.type == "close":
            self.remove(event.port)
        elif event.type == "open":
            self.mark_ready(event.port, event.url)

    @property
    def primary(self) -> Optional[PreviewInfo]:
        for info in self.active_previews.values():
            if info.ready:
                return info
        return None

    def list(self) -> List[dict]:
        return [info.to_dict() for info in self.active_previews.values()]

    def clear(self) -> None:
        self.active_previews.clear()
        self.ready_ports.clear()
