"""
LocalSandbox against a real temporary directory and /bin/sh.
"""
import asyncio
import errno
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from streambuild.core.config import SandboxSettings
from streambuild.core.exceptions import SandboxError
from streambuild.sandbox.factory import boot_sandbox
from streambuild.sandbox.local import LocalSandbox


@pytest.fixture
def sandbox(tmp_path):
    return LocalSandbox(root_dir=tmp_path, config=SandboxSettings(shell="/bin/sh"))


async def collect(process) -> str:
    chunks = []
    async for chunk in process.output():
        chunks.append(chunk)
    return "".join(chunks)


@pytest.mark.asyncio
async def test_files_map_onto_root(sandbox, tmp_path):
    await sandbox.write_file("/home/project/src/a.txt", "hello")

    assert (tmp_path / "src" / "a.txt").read_text() == "hello"
    assert await sandbox.read_file("src/a.txt") == b"hello"
    assert await sandbox.exists("/home/project/src")
    assert not await sandbox.exists("/home/project/missing")


@pytest.mark.asyncio
async def test_missing_file_raises(sandbox):
    with pytest.raises(SandboxError):
        await sandbox.read_file("nope.txt")


def test_paths_cannot_escape_root(sandbox):
    with pytest.raises(SandboxError):
        sandbox.real_path("../../etc/passwd")


@pytest.mark.asyncio
async def test_spawn_streams_output_and_exit_code(sandbox):
    process = await sandbox.spawn("echo one; echo two 1>&2; exit 3", env={"GREETING": "hi"})

    output = await collect(process)

    assert output == "one\ntwo\n"
    assert await process.wait() == 3
    assert process.returncode == 3


@pytest.mark.asyncio
async def test_spawn_uses_cwd_and_env(sandbox):
    await sandbox.mkdir("/home/project/app")
    process = await sandbox.spawn('pwd; echo "$GREETING"', cwd="/home/project/app", env={"GREETING": "hi"})

    lines = (await collect(process)).splitlines()

    assert lines[0].endswith("/app")
    assert lines[1] == "hi"


@pytest.mark.asyncio
async def test_kill_stops_long_running_process(sandbox):
    process = await sandbox.spawn("sleep 30")
    process.kill()

    code = await asyncio.wait_for(process.wait(), timeout=5.0)

    assert code != 0
    await sandbox.close()


@pytest.mark.asyncio
async def test_exited_processes_are_forgotten(sandbox):
    process = await sandbox.spawn("exit 0")
    await process.wait()

    for _ in range(100):
        if process.pid not in sandbox._processes:
            break
        await asyncio.sleep(0.01)
    assert sandbox._processes == {}


@pytest.mark.asyncio
async def test_boot_retries_then_gives_up():
    attempts = []

    async def boot(config):
        attempts.append(config)
        raise OSError("no sandbox today")

    config = SandboxSettings(enabled=True, boot_attempts=3, boot_backoff=0.0)
    assert await boot_sandbox(config, boot) is None
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_resource_errors_are_not_retried():
    attempts = []

    async def boot(config):
        attempts.append(config)
        raise MemoryError()

    config = SandboxSettings(enabled=True, boot_attempts=3, boot_backoff=0.0)
    assert await boot_sandbox(config, boot) is None
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_disabled_sandbox_never_boots():
    async def boot(config):
        raise AssertionError("should not boot")

    assert await boot_sandbox(SandboxSettings(enabled=False), boot) is None


@pytest.mark.asyncio
async def test_failed_smoke_test_falls_back_to_memory(tmp_path):
    # The smoke test file cannot be written over a directory
    (tmp_path / ".streambuild-probe").mkdir()
    config = SandboxSettings(enabled=True, root_dir=str(tmp_path), shell="/bin/sh", boot_attempts=1)

    assert await boot_sandbox(config) is None


@pytest.mark.asyncio
async def test_wrapped_resource_errors_are_not_retried():
    attempts = []

    async def boot(config):
        attempts.append(config)
        try:
            raise OSError(errno.ENOSPC, "No space left on device")
        except OSError as e:
            raise SandboxError("/home/project/.streambuild-probe", str(e)) from e

    config = SandboxSettings(enabled=True, boot_attempts=3, boot_backoff=0.0)
    assert await boot_sandbox(config, boot) is None
    assert len(attempts) == 1
