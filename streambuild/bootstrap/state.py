# streambuild/bootstrap/state.py
"""
Per-session bootstrap state.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Set

from streambuild.sandbox.base import SandboxProcess


class BootstrapPhase(str, Enum):
    IDLE = "idle"
    INSTALLING = "installing"
    STARTING = "starting"
    DEV_RUNNING = "dev_running"
    STATIC_FALLBACK = "static_fallback"


@dataclass
class BootstrapState:
    phase: BootstrapPhase = BootstrapPhase.IDLE
    project_root: Optional[str] = None
    framework: Optional[str] = None
    start_command: Optional[str] = None

    # Kept after exit so callers can read the exit code
    dev_process: Optional[SandboxProcess] = None
    dev_started_at: Optional[float] = None
    ready: bool = False

    # Install ladder memory: manifests (by sha256) that already failed
    install_failed: bool = False
    failed_signatures: Set[str] = field(default_factory=set)
    failure_signature: Optional[str] = None
    failure_diagnostic: Optional[str] = None

    # Guards; overlapping triggers are skipped, not queued
    running: bool = False
    installing: bool = False

    attempts: int = 0

    @property
    def mode(self) -> str:
        if self.phase == BootstrapPhase.STATIC_FALLBACK:
            return "static"
        if self.dev_alive:
            return "dev"
        return "idle"

    @property
    def dev_alive(self) -> bool:
        return self.dev_process is not None and self.dev_process.returncode is None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "mode": self.mode,
            "project_root": self.project_root,
            "framework": self.framework,
            "start_command": self.start_command,
            "ready": self.ready,
            "install_failed": self.install_failed,
            "failure_signature": self.failure_signature,
            "failure_diagnostic": self.failure_diagnostic,
            "running": self.running,
            "installing": self.installing,
            "attempts": self.attempts,
        }
