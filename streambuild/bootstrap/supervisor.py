# streambuild/bootstrap/supervisor.py
"""
Bootstrap Supervisor

Turns a tree of generated files into a running preview:

    idle -> installing -> starting -> dev_running
                 \\            \\
                  `------------`--> static_fallback

A bootstrap is scheduled (debounced) on every file mutation while no dev
server is alive. Overlapping bootstraps and installs are skipped, never
queued; the next mutation retries.
"""
import asyncio
import posixpath
import re
from typing import Callable, List, Optional

from streambuild.core.config import BootstrapSettings, RuntimeSettings
from streambuild.core.exceptions import InstallFailure
from streambuild.core.logging import log, log_section
from streambuild.bootstrap.install import InstallLadder
from streambuild.bootstrap.manifest import (
    MANIFEST_NAME,
    StartCommand,
    build_start_command,
    detect_framework,
    dump_manifest,
    find_project_root,
    find_static_entry,
    load_manifest,
    manifest_signature,
    normalize_dev_script,
    scaffold_files,
)
from streambuild.bootstrap.previews import PreviewRegistry
from streambuild.bootstrap.remediation import FailureClassifier, RemediationBudget, Remediator
from streambuild.bootstrap.state import BootstrapPhase, BootstrapState
from streambuild.bootstrap.static_server import StaticPreviewServer
from streambuild.lib.events import BootstrapModeEvent, EventBus
from streambuild.runtime.terminal import TerminalHub
from streambuild.sandbox.base import PortEvent, SandboxProcess
from streambuild.sandbox.file_store import FilesStore

# ═══════════════════════════════════════════════════════════════════════════════
# READINESS
# ═══════════════════════════════════════════════════════════════════════════════

READINESS_PATTERNS = [
    re.compile(r"Local:\s+https?://", re.IGNORECASE),
    re.compile(r"\bready in \d+", re.IGNORECASE),
    re.compile(r"ready - started server on", re.IGNORECASE),
    re.compile(r"\blistening on\b", re.IGNORECASE),
    re.compile(r"\b(?:running|available) (?:at|on)\b", re.IGNORECASE),
    re.compile(r"compiled successfully", re.IGNORECASE),
]

_HOST_PORT = re.compile(r"(?:https?://)?(?:localhost|0\.0\.0\.0|127\.0\.0\.1|\[::1?\]):(\d{2,5})\b")
_ANSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)


def detect_ready_port(output: str, default_port: int) -> Optional[int]:
    """
    Port the dev server reports as serving, or None when the output shows no
    readiness yet. Only a ``host:port`` echo on a line with a readiness phrase
    counts; a phrase without a port means ``default_port``.
    """
    ready_lines = [
        line for line in output.splitlines()
        if any(pattern.search(line) for pattern in READINESS_PATTERNS)
    ]
    for line in ready_lines:
        echo = _HOST_PORT.search(line)
        if echo:
            return int(echo.group(1))
    return default_port if ready_lines else None


class BootstrapSupervisor:
    def __init__(
        self,
        files: FilesStore,
        terminals: TerminalHub,
        bus: Optional[EventBus] = None,
        previews: Optional[PreviewRegistry] = None,
        config: Optional[BootstrapSettings] = None,
        runtime_config: Optional[RuntimeSettings] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.files = files
        self.sandbox = files.sandbox
        self.terminals = terminals
        self.bus = bus
        self.previews = previews or PreviewRegistry(bus, session_id)
        self.config = config or BootstrapSettings()
        self.runtime_config = runtime_config or RuntimeSettings()
        self.session_id = session_id

        self.state = BootstrapState()
        self.static = StaticPreviewServer(files, self.config.static_port, session_id)
        self.remediator = Remediator(
            files,
            RemediationBudget(max_remediations=self.config.max_remediations),
            cooldown=self.config.remediation_cooldown,
            session_id=session_id,
        )
        self.ladder: Optional[InstallLadder] = None
        if self.sandbox is not None:
            self.ladder = InstallLadder(
                self.sandbox, files, terminals, self.runtime_config.package_manager, self.config, session_id
            )

        self._start: Optional[StartCommand] = None
        self._recent = ""
        self._ready_event = asyncio.Event()
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._inflight: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._remediation_task: Optional[asyncio.Task] = None
        self._retrigger = False
        self._unsubscribers: List[Callable[[], None]] = []

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        self._unsubscribers.append(self.files.on_mutation(self._on_mutation))
        if self.sandbox is not None:
            self._unsubscribers.append(self.sandbox.on_port(self._on_port))

    async def reset(self) -> None:
        """Stop every server, release guards, forget failures, back to idle."""
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        for task in (self._inflight, self._remediation_task):
            if task is not None and not task.done():
                task.cancel()
        self._inflight = None
        self._remediation_task = None

        await self._stop_dev()
        await self.static.stop()
        self.previews.clear()
        self.remediator.reset()
        self._ready_event.clear()
        self._recent = ""
        self._retrigger = False
        self.state = BootstrapState()
        self._set_phase(BootstrapPhase.IDLE)
        log("BOOTSTRAP", "Reset to idle", session_id=self.session_id)

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.reset()

    def status(self) -> dict:
        return {
            **self.state.to_dict(),
            "preview_port": self.config.preview_port,
            "ready_ports": sorted(self.previews.ready_ports),
            "static_running": self.static.running,
            "remediations_remaining": self.remediator.budget.remaining,
        }

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def _on_mutation(self, path: str) -> None:
        if "/node_modules/" in path or self.state.dev_alive:
            return
        self.schedule()

    def _on_port(self, event: PortEvent) -> None:
        self.previews.handle_port_event(event)
        if event.port != self.config.preview_port:
            return
        if event.type == "open" and self.state.dev_alive:
            self._mark_ready(event.port, event.url)
        elif event.type == "close":
            self.state.ready = False

    def schedule(self) -> None:
        loop = asyncio.get_running_loop()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = loop.call_later(self.config.debounce, self.trigger)

    def trigger(self, force_install: bool = False) -> Optional[asyncio.Task]:
        self._debounce_handle = None
        if self.state.running:
            log("BOOTSTRAP", "Bootstrap already running, skipping trigger", session_id=self.session_id)
            return None
        if self._remediation_task is not None and not self._remediation_task.done():
            return None
        if self.state.dev_alive and not force_install:
            return None
        self._inflight = asyncio.create_task(self.try_bootstrap(force_install=force_install))
        return self._inflight

    async def try_bootstrap(self, force_install: bool = False) -> None:
        if self.state.running:
            return
        self.state.running = True
        try:
            await self._bootstrap(force_install)
        except Exception as e:
            log("BOOTSTRAP", f"❌ Bootstrap failed: {e}", session_id=self.session_id, level="error")
            self.terminals.write(f"\r\n[bootstrap] {e}\r\n")
        finally:
            self.state.running = False

        if self._retrigger:
            self._retrigger = False
            self.schedule()

    async def ensure_dev_server(self) -> Optional[SandboxProcess]:
        """
        Run (or join) a bootstrap and return the dev process it spawned.
        None when nothing was started: deferred, static fallback or no sandbox.
        The returned process may already have exited.
        """
        if self.sandbox is None:
            return None
        if self.state.dev_alive:
            return self.state.dev_process

        before = self.state.dev_process
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._inflight is None or self._inflight.done():
            self.trigger()
        if self._inflight is not None:
            await asyncio.shield(self._inflight)

        process = self.state.dev_process
        if process is not None and (process is not before or self.state.dev_alive):
            return process
        return None

    async def wait_ready(self) -> None:
        await self._ready_event.wait()

    # =========================================================================
    # BOOTSTRAP
    # =========================================================================

    async def _bootstrap(self, force_install: bool = False) -> None:
        tree = self.files.tree
        root = find_project_root(tree)
        if root is None:
            entry = find_static_entry(tree)
            if entry is None:
                log("BOOTSTRAP", "No package.json or index.html yet, deferring", session_id=self.session_id)
                return
            await self._serve_static(posixpath.dirname(entry))
            return

        self.state.project_root = root
        manifest_path = posixpath.join(root, MANIFEST_NAME)
        content = await self.files.read(manifest_path) or ""
        signature = manifest_signature(content)

        if signature in self.state.failed_signatures:
            log("BOOTSTRAP", "Manifest unchanged since failed install, staying static", session_id=self.session_id)
            if not self.static.running:
                await self._serve_static(root, self.state.failure_diagnostic)
            return

        if self.sandbox is None or self.ladder is None:
            await self._serve_static(root, "Execution sandbox unavailable; files are served statically.")
            return

        log_section("BOOTSTRAP", f"Bootstrapping {root}", self.session_id)
        self.state.attempts += 1

        needs_install = force_install or not await self.sandbox.exists(posixpath.join(root, "node_modules"))
        if needs_install and not await self._install(root, manifest_path):
            return

        pkg = load_manifest(await self.files.read(manifest_path) or "") or {}
        framework = detect_framework(pkg)
        if normalize_dev_script(pkg, framework):
            await self.files.write(manifest_path, dump_manifest(pkg))
        for path, text in scaffold_files(tree, root, pkg, framework).items():
            log("BOOTSTRAP", f"Scaffolding {path}", session_id=self.session_id)
            await self.files.write(path, text)

        self.state.framework = framework
        start = build_start_command(framework, self.runtime_config.package_manager, self.config.preview_port)
        await self._start_dev(root, start)

    async def _install(self, root: str, manifest_path: str) -> bool:
        if self.state.installing:
            log("INSTALL", "Install already running, skipping", session_id=self.session_id)
            return False

        self.state.installing = True
        self._set_phase(BootstrapPhase.INSTALLING)
        try:
            await self.ladder.run(root)
        except InstallFailure as failure:
            current = manifest_signature(await self.files.read(manifest_path) or "")
            self.state.failed_signatures.update({failure.signature, current})
            self.state.install_failed = True
            self.state.failure_signature = failure.signature
            self.state.failure_diagnostic = failure.diagnostic
            log("INSTALL", "❌ Install ladder exhausted", session_id=self.session_id, level="error")

            outcome = await self.remediator.remediate(failure.diagnostic, root)
            if outcome is not None and outcome.next_step == "reinstall":
                self._retrigger = True
            await self._serve_static(root, failure.diagnostic)
            return False
        finally:
            self.state.installing = False

        self.state.install_failed = False
        return True

    # =========================================================================
    # DEV SERVER
    # =========================================================================

    async def _start_dev(self, root: str, start: StartCommand) -> None:
        await self._stop_dev()
        await self.static.stop()

        self._start = start
        self._recent = ""
        self._ready_event.clear()
        self.state.start_command = start.command
        self.state.ready = False
        self._set_phase(BootstrapPhase.STARTING)

        log("DEVSERVER", f"Starting: {start.command}", session_id=self.session_id)
        self.terminals.write(f"\r\n$ {start.command}\r\n")

        process = await self.sandbox.spawn(start.command, cwd=root, env=start.env)
        self.state.dev_process = process
        self.state.dev_started_at = asyncio.get_running_loop().time()
        self.sandbox.watch_port(self.config.preview_port)

        self._monitor_task = asyncio.create_task(self._monitor(process, root))
        self._watchdog_task = asyncio.create_task(self._ready_watchdog(process, root))

    async def _stop_dev(self) -> None:
        current = asyncio.current_task()
        for task in (self._monitor_task, self._watchdog_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._monitor_task = None
        self._watchdog_task = None

        process = self.state.dev_process
        if process is not None and process.returncode is None:
            log("DEVSERVER", "Stopping dev server", session_id=self.session_id)
            process.kill()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                log("DEVSERVER", "Dev server did not exit after kill", session_id=self.session_id, level="warning")

        if self.sandbox is not None:
            self.sandbox.unwatch_port(self.config.preview_port)
        self.previews.remove(self.config.preview_port)
        self.state.ready = False

    async def _monitor(self, process: SandboxProcess, root: str) -> None:
        async for chunk in process.output():
            self.terminals.write(chunk)
            self._recent = (self._recent + strip_ansi(chunk))[-self.config.recent_output_chars:]

            if not self.state.ready:
                port = detect_ready_port(self._recent, self.config.preview_port)
                if port is not None:
                    self._mark_ready(port, f"http://localhost:{port}")

            self._maybe_remediate(root)

        exit_code = await process.wait()
        if self.state.dev_process is not process:
            return

        started = self.state.dev_started_at or 0.0
        elapsed = asyncio.get_running_loop().time() - started
        log("DEVSERVER", f"Dev server exited with code {exit_code} after {elapsed:.1f}s", session_id=self.session_id)

        if self._remediation_task is not None and not self._remediation_task.done():
            return
        if exit_code != 0 and not self.state.ready and elapsed <= self.config.startup_window:
            await self._serve_static(root, self._recent or f"Dev server exited with code {exit_code}")
        else:
            self.state.ready = False
            self._set_phase(BootstrapPhase.IDLE)

    async def _ready_watchdog(self, process: SandboxProcess, root: str) -> None:
        await asyncio.sleep(self.config.ready_timeout)
        if self.state.dev_process is not process or self.state.ready or process.returncode is not None:
            return
        log(
            "DEVSERVER",
            f"⚠️ No readiness after {self.config.ready_timeout:.0f}s, falling back to static",
            session_id=self.session_id,
            level="warning",
        )
        await self._serve_static(root, self._recent or "Dev server did not become ready")

    def _mark_ready(self, port: int, url: str) -> None:
        self.state.ready = True
        self._set_phase(BootstrapPhase.DEV_RUNNING)
        self._ready_event.set()
        self.previews.mark_ready(port, url)

    # =========================================================================
    # REMEDIATION
    # =========================================================================

    def _maybe_remediate(self, root: str) -> None:
        if self._remediation_task is not None and not self._remediation_task.done():
            return
        if not self.remediator.budget.can_remediate():
            return
        if FailureClassifier.classify(self._recent) is None:
            return
        self._remediation_task = asyncio.create_task(self._remediate(root, self._recent))

    async def _remediate(self, root: str, output: str) -> None:
        outcome = await self.remediator.remediate(output, root)
        if outcome is None:
            return

        self._recent = ""
        self.terminals.write(f"\r\n[bootstrap] {outcome.description}\r\n")
        if outcome.next_step == "reinstall":
            await self._stop_dev()
            await self.try_bootstrap(force_install=True)
        elif self._start is not None:
            await self._start_dev(root, self._start)

    # =========================================================================
    # STATIC FALLBACK
    # =========================================================================

    async def _serve_static(self, root: str, diagnostic: Optional[str] = None) -> None:
        await self._stop_dev()
        if diagnostic:
            self.terminals.write("\r\n[bootstrap] Dev server unavailable, serving static preview\r\n")

        await self.static.start(root, diagnostic)
        self.previews.mark_ready(self.static.port, self.static.url)
        self._set_phase(BootstrapPhase.STATIC_FALLBACK, diagnostic)

    def _set_phase(self, phase: BootstrapPhase, diagnostic: Optional[str] = None) -> None:
        changed = self.state.phase != phase
        self.state.phase = phase
        if self.bus is not None and (changed or diagnostic):
            self.bus.publish(BootstrapModeEvent(mode=phase.value, diagnostic=diagnostic))
