# streambuild/sandbox/factory.py
"""
Sandbox boot with retries.

boot_sandbox() returns None when the sandbox is disabled or every attempt
failed; callers then run the session on the in-memory tree.
"""
import asyncio
import errno
import shutil
from typing import Callable, Optional

from streambuild.core.config import SandboxSettings
from streambuild.core.exceptions import SandboxError, SandboxUnavailable
from streambuild.core.logging import log
from streambuild.sandbox.base import Sandbox
from streambuild.sandbox.local import LocalSandbox

# Errors that will not go away by retrying
_RESOURCE_ERRNOS = {errno.ENOMEM, errno.ENOSPC, errno.EMFILE, errno.ENFILE, errno.EAGAIN}


def _is_resource_error(error: BaseException) -> bool:
    # SandboxError wraps the OSError that carries the errno
    cause = error.__cause__ if isinstance(error, SandboxError) else error
    if isinstance(cause, MemoryError):
        return True
    return isinstance(cause, OSError) and cause.errno in _RESOURCE_ERRNOS


async def _boot_local(config: SandboxSettings) -> Sandbox:
    if shutil.which(config.shell) is None:
        raise SandboxUnavailable(f"shell {config.shell} not found")

    sandbox = LocalSandbox(root_dir=config.root_dir, config=config)
    # Smoke test the file system before handing it out
    probe = f"{sandbox.work_dir}/.streambuild-probe"
    await sandbox.write_file(probe, "ok")
    await sandbox.read_file(probe)
    sandbox.real_path(probe).unlink()
    return sandbox


async def boot_sandbox(
    config: Optional[SandboxSettings] = None,
    boot: Optional[Callable[[SandboxSettings], "asyncio.Future"]] = None,
    session_id: Optional[str] = None,
) -> Optional[Sandbox]:
    config = config or SandboxSettings()
    boot = boot or _boot_local

    if not config.enabled:
        log("SANDBOX", "Sandbox disabled by configuration, using in-memory tree", session_id=session_id)
        return None

    last_error: Optional[BaseException] = None
    for attempt in range(config.boot_attempts):
        try:
            log("SANDBOX", f"🔄 Booting sandbox (attempt {attempt + 1}/{config.boot_attempts})", session_id=session_id)
            sandbox = await asyncio.wait_for(boot(config), timeout=config.boot_timeout)
            log("SANDBOX", "✅ Sandbox ready", session_id=session_id)
            return sandbox
        except asyncio.TimeoutError as e:
            last_error = e
            log("SANDBOX", f"Boot attempt {attempt + 1} timed out", session_id=session_id, level="warning")
        except (OSError, MemoryError, SandboxError, SandboxUnavailable) as e:
            last_error = e
            log("SANDBOX", f"❌ Boot attempt {attempt + 1} failed: {e}", session_id=session_id, level="warning")
            if _is_resource_error(e):
                log("SANDBOX", "⛔ Halting retries due to resource constraint", session_id=session_id)
                break

        if attempt < config.boot_attempts - 1:
            await asyncio.sleep(config.boot_backoff * (attempt + 1))

    log(
        "SANDBOX",
        f"All boot attempts failed, running on the in-memory tree: {last_error}",
        session_id=session_id,
        level="error",
    )
    return None
