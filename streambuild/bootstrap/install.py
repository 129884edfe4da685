# streambuild/bootstrap/install.py
"""
Install Ladder

Dependency installation with progressively more permissive strategies:

    1. plain install
    2. lifecycle scripts disabled
    3. engine constraints removed from the manifest, engine-strict off
    4. malformed ranges replaced, missing peers injected, peer checks off

Each step runs under a watchdog that kills a hung installer and keeps only
the last lines of output for diagnostics. The first step that exits 0 wins.
"""
import asyncio
import posixpath
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from streambuild.core.config import BootstrapSettings
from streambuild.core.exceptions import InstallFailure
from streambuild.core.logging import log
from streambuild.bootstrap.manifest import (
    MANIFEST_NAME,
    dump_manifest,
    inject_peer_packages,
    load_manifest,
    manifest_signature,
    relax_engines,
    sanitize_dependencies,
)
from streambuild.runtime.terminal import TerminalHub
from streambuild.sandbox.base import Sandbox
from streambuild.sandbox.file_store import FilesStore

# Per package manager flags for each ladder step
INSTALL_FLAGS: Dict[str, Dict[str, str]] = {
    "pnpm": {
        "no_scripts": "--ignore-scripts",
        "no_engines": "--config.engine-strict=false",
        "loose_peers": "--config.strict-peer-dependencies=false --config.auto-install-peers=true",
    },
    "npm": {
        "no_scripts": "--ignore-scripts",
        "no_engines": "--engine-strict=false",
        "loose_peers": "--legacy-peer-deps",
    },
    "yarn": {
        "no_scripts": "--ignore-scripts",
        "no_engines": "--ignore-engines",
        "loose_peers": "--ignore-engines",
    },
}


@dataclass
class InstallStep:
    name: str
    flags: List[str]
    prepare: Optional[Callable[[dict], bool]] = None


@dataclass
class InstallResult:
    success: bool
    step: Optional[str] = None
    exit_code: Optional[int] = None
    tail: List[str] = field(default_factory=list)

    @property
    def diagnostic(self) -> str:
        return "".join(self.tail)


def _sanitize_and_inject(pkg: dict) -> bool:
    fixed = sanitize_dependencies(pkg)
    added = inject_peer_packages(pkg)
    if fixed:
        log("INSTALL", f"Replaced malformed ranges with latest: {', '.join(fixed)}")
    if added:
        log("INSTALL", f"Injected missing peers: {', '.join(added)}")
    return bool(fixed or added)


class InstallLadder:
    def __init__(
        self,
        sandbox: Sandbox,
        files: FilesStore,
        terminals: TerminalHub,
        package_manager: str = "pnpm",
        config: Optional[BootstrapSettings] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.sandbox = sandbox
        self.files = files
        self.terminals = terminals
        self.package_manager = package_manager
        self.config = config or BootstrapSettings()
        self.session_id = session_id

    def steps(self) -> List[InstallStep]:
        flags = INSTALL_FLAGS.get(self.package_manager, INSTALL_FLAGS["pnpm"])
        return [
            InstallStep("plain", []),
            InstallStep("no-scripts", [flags["no_scripts"]]),
            InstallStep("no-engines", [flags["no_scripts"], flags["no_engines"]], prepare=relax_engines),
            InstallStep(
                "sanitized",
                [flags["no_scripts"], flags["no_engines"], flags["loose_peers"]],
                prepare=_sanitize_and_inject,
            ),
        ]

    def command(self, step: InstallStep) -> str:
        return " ".join([f"{self.package_manager} install", *step.flags])

    async def run(self, root: str) -> InstallResult:
        """
        Climb the ladder in ``root``. Raises InstallFailure carrying the
        signature of the manifest as it was before the first step.
        """
        manifest_path = posixpath.join(root, MANIFEST_NAME)
        original = await self.files.read(manifest_path) or ""
        signature = manifest_signature(original)

        result = InstallResult(success=False)
        for index, step in enumerate(self.steps(), start=1):
            if step.prepare is not None:
                await self._rewrite_manifest(manifest_path, step.prepare)

            command = self.command(step)
            log("INSTALL", f"Step {index}/4 ({step.name}): {command}", session_id=self.session_id)
            self.terminals.write(f"\r\n$ {command}\r\n")

            result = await self._run_step(step, command, root)
            if result.success:
                log("INSTALL", f"✅ Dependencies installed ({step.name})", session_id=self.session_id)
                return result

            log(
                "INSTALL",
                f"⚠️ Step {step.name} failed with exit code {result.exit_code}",
                session_id=self.session_id,
                level="warning",
            )

        raise InstallFailure(signature, result.diagnostic or "Install failed without output")

    async def _rewrite_manifest(self, manifest_path: str, prepare: Callable[[dict], bool]) -> None:
        content = await self.files.read(manifest_path)
        pkg = load_manifest(content or "")
        if pkg is None:
            return
        if prepare(pkg):
            await self.files.write(manifest_path, dump_manifest(pkg))

    async def _run_step(self, step: InstallStep, command: str, root: str) -> InstallResult:
        tail: Deque[str] = deque(maxlen=self.config.output_tail_lines)
        process = await self.sandbox.spawn(command, cwd=root, env={"npm_config_yes": "true", "CI": "true"})

        async def pump() -> None:
            async for chunk in process.output():
                self.terminals.write(chunk)
                tail.append(chunk)

        pump_task = asyncio.create_task(pump())
        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=self.config.install_timeout)
        except asyncio.TimeoutError:
            process.kill()
            tail.append(f"\n[install] {step.name} timed out after {self.config.install_timeout:.0f}s\n")
            exit_code = -1
        finally:
            # Output of a killed installer may never reach EOF
            done, _ = await asyncio.wait({pump_task}, timeout=2.0)
            if not done:
                pump_task.cancel()
            elif pump_task.exception() is not None:
                log("INSTALL", f"Output stream failed: {pump_task.exception()}", session_id=self.session_id, level="warning")

        return InstallResult(success=exit_code == 0, step=step.name, exit_code=exit_code, tail=list(tail))
