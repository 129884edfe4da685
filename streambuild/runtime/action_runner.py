# streambuild/runtime/action_runner.py
"""
Action Runner

Executes parsed actions one at a time, in the order the model emitted them.

- file actions are cleaned up and written through the files store
- shell actions are normalized to the configured package manager and run
- dev server commands are handed to the bootstrap supervisor; a watcher
  settles the action without holding up the rest of the chain
"""
import asyncio
from typing import Dict, Optional, Set

from streambuild.core.config import RuntimeSettings
from streambuild.core.exceptions import ActionExecutionError, StreamBuildError
from streambuild.core.logging import log
from streambuild.bootstrap.manifest import find_project_root, is_manifest_path, repair_manifest
from streambuild.bootstrap.supervisor import BootstrapSupervisor
from streambuild.runtime.action_store import ActionState, ActionStatus, ActionStore, action_key
from streambuild.runtime.message_parser import DEFAULT_FILE_PATH, ActionCallbackData
from streambuild.runtime.sanitize import extract_code
from streambuild.runtime.shell import is_bare_install, is_server_command, normalize_command
from streambuild.runtime.terminal import TerminalHub
from streambuild.sandbox.base import SandboxProcess
from streambuild.sandbox.file_store import FilesStore

SERVER_EXIT_HINT = "Dev server failed to start - dependencies may be missing. Run `{pm} install` first."
DEGRADED_NOTICE = "\r\n[runtime] Sandbox unavailable: files are kept in memory and commands are skipped\r\n"


class ActionRunner:
    def __init__(
        self,
        store: ActionStore,
        files: FilesStore,
        supervisor: BootstrapSupervisor,
        terminals: TerminalHub,
        config: Optional[RuntimeSettings] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.store = store
        self.files = files
        self.sandbox = files.sandbox
        self.supervisor = supervisor
        self.terminals = terminals
        self.config = config or RuntimeSettings()
        self.session_id = session_id

        self._chain: Optional[asyncio.Task] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._watchers: Set[asyncio.Task] = set()
        self._degraded_notified = False

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def add_action(self, data: ActionCallbackData) -> ActionState:
        """Register a pending action. Repeated calls return the first registration."""
        key = action_key(data.turn_id, data.action_id)
        existing = self.store.get(key)
        if existing is not None:
            return existing

        action = ActionState(
            key=key,
            turn_id=data.turn_id,
            artifact_id=data.artifact_id,
            action_id=data.action_id,
            kind=data.action.kind,
            content=data.action.content,
            file_path=data.action.file_path,
        )
        self.store.add(action)
        return action

    def run_action(self, data: ActionCallbackData) -> Optional[asyncio.Task]:
        """
        Queue ``data`` behind every earlier action. Returns the task running it;
        a second call for the same action returns the first task.
        """
        key = action_key(data.turn_id, data.action_id)
        action = self.store.get(key) or self.add_action(data)
        if action.executed:
            log("RUNNER", f"Action {key} already executed, skipping", session_id=self.session_id)
            return self._tasks.get(key)

        # Close-tag data is authoritative
        self.store.update(
            key,
            kind=data.action.kind,
            content=data.action.content,
            file_path=data.action.file_path,
            executed=True,
        )

        task = asyncio.create_task(self._execute_after(self._chain, key))
        task.add_done_callback(self._on_done)
        self._chain = task
        self._tasks[key] = task
        return task

    async def wait_idle(self) -> None:
        """Wait for the chain and every server watcher to settle."""
        while True:
            chain = self._chain
            if chain is not None and not chain.done():
                await asyncio.wait({chain})
                continue
            if self._watchers:
                await asyncio.wait(set(self._watchers))
                continue
            return

    def abort(self, key: str) -> bool:
        return self.store.abort(key)

    async def reset(self) -> None:
        self.store.abort_all()
        for task in [*self._tasks.values(), *self._watchers]:
            if not task.done():
                task.cancel()
        self._chain = None
        self._tasks.clear()
        self._watchers.clear()
        self.store.clear()

    # =========================================================================
    # CHAIN
    # =========================================================================

    async def _execute_after(self, previous: Optional[asyncio.Task], key: str) -> None:
        if previous is not None and not previous.done():
            # Settled either way; a failed action does not stop the chain
            await asyncio.wait({previous})
        await self._execute(key)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log("RUNNER", f"Action failed: {error}", session_id=self.session_id, level="warning")

    async def _execute(self, key: str) -> None:
        action = self.store.get(key)
        if action is None or action.aborted or action.finished:
            return

        self.store.update(key, status=ActionStatus.RUNNING)
        log("RUNNER", f"▶ {action.kind} {action.file_path or action.content.strip()[:60]}", session_id=self.session_id)

        try:
            if action.kind == "file":
                settled = await self._run_file(action)
            elif action.kind == "shell":
                if is_server_command(action.content):
                    settled = self._start_server(action)
                else:
                    settled = await self._run_shell(action)
            else:
                raise ActionExecutionError(key, f"Unknown action type: {action.kind}")
        except Exception as e:
            if action.aborted:
                return
            message = e.message if isinstance(e, StreamBuildError) else str(e)
            self.store.update(key, status=ActionStatus.FAILED, error=message)
            raise

        if settled and not action.aborted:
            self.store.update(key, status=ActionStatus.COMPLETE)

    # =========================================================================
    # FILE
    # =========================================================================

    async def _run_file(self, action: ActionState) -> bool:
        path = action.file_path or DEFAULT_FILE_PATH
        content = extract_code(action.content)

        if is_manifest_path(path):
            content = repair_manifest(content)
        elif content and not content.endswith("\n"):
            content += "\n"

        if not self.files.available:
            self._notify_degraded()

        await self.files.write(path, content)
        return True

    def _notify_degraded(self) -> None:
        if self._degraded_notified:
            return
        self._degraded_notified = True
        log("RUNNER", "⚠️ Sandbox unavailable, running in degraded mode", session_id=self.session_id, level="warning")
        self.terminals.write(DEGRADED_NOTICE)

    # =========================================================================
    # SHELL
    # =========================================================================

    async def _run_shell(self, action: ActionState) -> bool:
        if self.sandbox is None:
            self._notify_degraded()
            self.terminals.write(f"[runtime] Skipped: {action.content.strip()}\r\n")
            return True

        pm = self.config.package_manager
        command = normalize_command(action.content, pm)
        if not command:
            return True

        cwd = self.files.work_dir
        if is_bare_install(command, pm):
            cwd = find_project_root(self.files.tree) or cwd

        self.terminals.write(f"\r\n$ {command}\r\n")
        process = await self.sandbox.spawn(command, cwd=cwd, env={"HOST": "0.0.0.0", "npm_config_yes": "true"})
        self.store.update(action.key, process=process)
        if action.aborted:
            process.kill()

        try:
            async for chunk in process.output():
                self.terminals.write(chunk)
            exit_code = await process.wait()
        finally:
            self.store.update(action.key, process=None)

        if action.aborted:
            return False
        if exit_code != 0:
            self.terminals.write(f"\r\n⚠️ Command exited with code {exit_code}: {command}\r\n")
            raise ActionExecutionError(action.key, f"exit code {exit_code}: {command}", exit_code)
        return True

    # =========================================================================
    # DEV SERVER
    # =========================================================================

    def _start_server(self, action: ActionState) -> bool:
        watcher = asyncio.create_task(self._watch_server(action))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return False

    async def _watch_server(self, action: ActionState) -> None:
        try:
            await self._settle_server(action)
        except Exception as e:
            log("RUNNER", f"❌ Server watcher failed: {e}", session_id=self.session_id, level="error")
            self.store.update(action.key, status=ActionStatus.FAILED, error=str(e))

    async def _settle_server(self, action: ActionState) -> None:
        key = action.key
        process = await self.supervisor.ensure_dev_server()
        if process is None:
            mode = self.supervisor.state.mode
            note = "serving static preview" if mode == "static" else "dev server deferred until the project is runnable"
            self.terminals.write(f"\r\n[runtime] {note}\r\n")
            self.store.update(key, status=ActionStatus.COMPLETE)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.server_ready_timeout

        while True:
            started = self.supervisor.state.dev_started_at or loop.time()
            self.store.update(key, process=process)
            exit_code = await self._race(action, process, max(0.0, deadline - loop.time()))

            if action.aborted:
                return
            if exit_code is None:
                # Ready, or still running at the ceiling
                self.store.update(key, status=ActionStatus.COMPLETE, process=None)
                return

            # Restarted by remediation; follow the new process
            current = self.supervisor.state.dev_process
            if current is not None and current is not process and current.returncode is None:
                process = current
                continue

            self.store.update(key, process=None)
            if exit_code == 0:
                self.store.update(key, status=ActionStatus.COMPLETE)
                return

            if loop.time() - started <= self.config.fast_exit_window:
                message = SERVER_EXIT_HINT.format(pm=self.config.package_manager)
            else:
                message = f"Dev server exited with code {exit_code}"
            self.terminals.write(f"\r\n❌ {message}\r\n")
            self.store.update(key, status=ActionStatus.FAILED, error=message)
            return

    async def _race(self, action: ActionState, process: SandboxProcess, timeout: float) -> Optional[int]:
        """Exit code if the process exited before readiness, else None."""
        ready = asyncio.create_task(self.supervisor.wait_ready())
        exited = asyncio.create_task(process.wait())
        aborted = asyncio.create_task(action.abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, exited, aborted},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready, exited, aborted):
                if not task.done():
                    task.cancel()

        if exited in done and ready not in done:
            return exited.result()
        return None
