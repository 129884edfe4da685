"""
Bootstrap supervisor tests: deferral, install ladder, readiness, fallback,
remediation and reset.
"""
import asyncio
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from streambuild.bootstrap.install import InstallLadder
from streambuild.bootstrap.manifest import manifest_signature
from streambuild.bootstrap.state import BootstrapPhase
from streambuild.bootstrap.supervisor import detect_ready_port, strip_ansi
from streambuild.core.config import BootstrapSettings, SandboxSettings
from streambuild.core.exceptions import InstallFailure
from streambuild.runtime.terminal import TerminalHub
from streambuild.sandbox.file_store import FilesStore
from streambuild.sandbox.virtual_fs import VirtualFileTree

ROOT = "/home/project"

VITE_MANIFEST = json.dumps({
    "name": "demo",
    "scripts": {"dev": "vite"},
    "devDependencies": {"vite": "^5.0.0"},
})

REACT_MANIFEST = json.dumps({
    "name": "demo",
    "scripts": {"dev": "vite"},
    "dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0"},
    "devDependencies": {"vite": "^5.0.0", "@vitejs/plugin-react": "^4.0.0"},
})

LADDER = [
    "pnpm install",
    "pnpm install --ignore-scripts",
    "pnpm install --ignore-scripts --config.engine-strict=false",
    "pnpm install --ignore-scripts --config.engine-strict=false "
    "--config.strict-peer-dependencies=false --config.auto-install-peers=true",
]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def dev_spawns(sandbox):
    return [c for c in sandbox.commands() if "run dev" in c]


def installs(sandbox):
    return [c for c in sandbox.commands() if c.startswith("pnpm install")]


@pytest.fixture
def supervisor(session):
    # Tests drive bootstraps by hand
    session.supervisor.config.debounce = 5.0
    return session.supervisor


# ════════════════════════════════════════════════════════════════════
# DEFERRAL AND TRIGGERS
# ════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_scenario_d_defers_without_attempt(supervisor, fake_sandbox):
    await supervisor.try_bootstrap()

    assert supervisor.state.attempts == 0
    assert supervisor.state.phase == BootstrapPhase.IDLE
    assert fake_sandbox.spawned == []


@pytest.mark.asyncio
async def test_static_entry_without_manifest_is_served_statically(session, supervisor, no_static_server):
    await session.files.write("index.html", "<h1>hi</h1>")
    await supervisor.try_bootstrap()

    no_static_server.assert_awaited_with(ROOT, None)
    assert supervisor.state.mode == "static"
    assert supervisor.state.attempts == 0


@pytest.mark.asyncio
async def test_file_mutation_schedules_bootstrap(session, fake_sandbox):
    fake_sandbox.dirs.add(f"{ROOT}/node_modules")
    fake_sandbox.script(r"run dev", hang=True)

    await session.files.write("package.json", VITE_MANIFEST)
    await wait_until(lambda: dev_spawns(fake_sandbox))

    assert session.supervisor.state.attempts == 1
    assert session.supervisor.state.dev_alive


@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped(session, supervisor, fake_sandbox):
    await session.files.write("package.json", VITE_MANIFEST)
    supervisor.state.running = True

    assert supervisor.trigger() is None
    supervisor.state.running = False


# ════════════════════════════════════════════════════════════════════
# INSTALL
# ════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_missing_node_modules_installs_then_starts_and_scaffolds(session, supervisor, fake_sandbox):
    fake_sandbox.script(r"run dev", hang=True)
    await session.files.write("package.json", VITE_MANIFEST)

    await supervisor.try_bootstrap()

    commands = fake_sandbox.commands()
    assert commands[0] == "pnpm install"
    assert commands[1].startswith("pnpm run dev --host 0.0.0.0 --port 5174")
    assert fake_sandbox.spawned[1][1] == ROOT
    assert fake_sandbox.spawned[1][2]["PORT"] == "5174"
    assert f"{ROOT}/src/main.js" in fake_sandbox.files
    assert b"/src/main.js" in fake_sandbox.files[f"{ROOT}/index.html"]
    assert supervisor.state.framework == "vite"
    assert supervisor.state.phase == BootstrapPhase.STARTING


@pytest.mark.asyncio
async def test_failed_ladder_falls_back_and_is_not_retried_for_same_manifest(
    session, supervisor, fake_sandbox, no_static_server
):
    fake_sandbox.script(r"install", output=["ERR_PNPM boom\n"], exit_code=1)
    await session.files.write("package.json", VITE_MANIFEST)

    await supervisor.try_bootstrap()

    assert installs(fake_sandbox) == LADDER
    assert dev_spawns(fake_sandbox) == []
    assert supervisor.state.install_failed
    assert supervisor.state.mode == "static"
    assert manifest_signature(session.tree.get_file(f"{ROOT}/package.json").content) in supervisor.state.failed_signatures
    no_static_server.assert_awaited_with(ROOT, "ERR_PNPM boom\n")

    await supervisor.try_bootstrap()
    assert len(installs(fake_sandbox)) == 4
    assert supervisor.state.attempts == 1

    await session.files.write("package.json", VITE_MANIFEST.replace("demo", "demo-2"))
    await supervisor.try_bootstrap()
    assert len(installs(fake_sandbox)) == 8


@pytest.mark.asyncio
async def test_unknown_package_is_substituted_and_bootstrap_rescheduled(session, supervisor, fake_sandbox):
    fake_sandbox.script(
        r"install",
        output=[" ERR_PNPM_FETCH_404  GET https://registry.npmjs.org/react-query: Not Found - 404\n"],
        exit_code=1,
    )
    manifest = json.dumps({
        "name": "demo",
        "scripts": {"dev": "vite"},
        "dependencies": {"react-query": "^3.39.0"},
        "devDependencies": {"vite": "^5.0.0"},
    })
    await session.files.write("package.json", manifest)

    await supervisor.try_bootstrap()

    pkg = json.loads(session.tree.get_file(f"{ROOT}/package.json").content)
    assert "react-query" not in pkg["dependencies"]
    assert pkg["dependencies"]["@tanstack/react-query"] == "latest"
    assert supervisor._debounce_handle is not None
    assert supervisor.remediator.budget.used == 1


@pytest.mark.asyncio
async def test_hung_installer_is_killed_and_ladder_moves_on(fake_sandbox):
    fake_sandbox.script(r"install", output=["Progress: resolved 1\n"], hang=True)
    files = FilesStore(VirtualFileTree(SandboxSettings()), fake_sandbox, debounce=0.0)
    await files.write("package.json", VITE_MANIFEST)
    ladder = InstallLadder(fake_sandbox, files, TerminalHub(), config=BootstrapSettings(install_timeout=0.05))

    with pytest.raises(InstallFailure) as excinfo:
        await ladder.run(ROOT)

    assert installs(fake_sandbox) == LADDER
    assert [p.killed for p in fake_sandbox.processes] == [True] * 4
    assert "sanitized timed out after" in excinfo.value.diagnostic
    assert excinfo.value.signature == manifest_signature(VITE_MANIFEST)


# ════════════════════════════════════════════════════════════════════
# READINESS AND FALLBACK
# ════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_port_open_marks_dev_server_ready(session, supervisor, fake_sandbox):
    fake_sandbox.dirs.add(f"{ROOT}/node_modules")
    fake_sandbox.script(r"run dev", hang=True)
    await session.files.write("package.json", VITE_MANIFEST)
    await supervisor.try_bootstrap()

    assert 5174 in fake_sandbox.watched
    await fake_sandbox.open_port(5174)

    assert supervisor.state.ready
    assert supervisor.state.phase == BootstrapPhase.DEV_RUNNING
    assert supervisor.previews.primary.base_url == "http://localhost:5174"
    await asyncio.wait_for(supervisor.wait_ready(), timeout=0.1)


@pytest.mark.asyncio
async def test_readiness_watchdog_falls_back_to_static(session, supervisor, fake_sandbox, no_static_server):
    fake_sandbox.dirs.add(f"{ROOT}/node_modules")
    fake_sandbox.script(r"run dev", hang=True)
    await session.files.write("package.json", VITE_MANIFEST)
    await supervisor.try_bootstrap()

    await wait_until(lambda: supervisor.state.phase == BootstrapPhase.STATIC_FALLBACK)

    assert fake_sandbox.processes[0].killed
    no_static_server.assert_awaited_with(ROOT, "Dev server did not become ready")


@pytest.mark.asyncio
async def test_fast_crash_falls_back_to_static_with_output(session, supervisor, fake_sandbox, no_static_server):
    fake_sandbox.dirs.add(f"{ROOT}/node_modules")
    fake_sandbox.script(r"run dev", output=["Error: boom\n"], exit_code=1)
    await session.files.write("package.json", VITE_MANIFEST)
    await supervisor.try_bootstrap()

    await wait_until(lambda: supervisor.state.phase == BootstrapPhase.STATIC_FALLBACK)

    no_static_server.assert_awaited_with(ROOT, "Error: boom\n")
    assert supervisor.previews.primary.port == 4173
    assert "Error: boom" in session.terminals.history("main")


@pytest.mark.asyncio
async def test_degraded_manifest_is_served_statically(degraded_session, no_static_server):
    supervisor = degraded_session.supervisor
    supervisor.config.debounce = 5.0
    await degraded_session.files.write("package.json", VITE_MANIFEST)

    await supervisor.try_bootstrap()

    no_static_server.assert_awaited_with(ROOT, "Execution sandbox unavailable; files are served statically.")
    assert supervisor.state.attempts == 0


# ════════════════════════════════════════════════════════════════════
# REMEDIATION
# ════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_missing_import_gets_stub_and_restart(session, supervisor, fake_sandbox):
    fake_sandbox.dirs.add(f"{ROOT}/node_modules")
    fake_sandbox.script(
        r"run dev",
        output=['[vite] Internal server error: Failed to resolve import "./components/Header" from "src/App.jsx". '
                "Does the file exist?\n"],
        hang=True,
    )
    await session.files.write("package.json", REACT_MANIFEST)
    await session.files.write("index.html", '<script type="module" src="/src/main.jsx"></script>')
    await session.files.write("src/main.jsx", "import App from './App';")
    await session.files.write("src/App.jsx", "import Header from './components/Header';")

    await supervisor.try_bootstrap()
    await wait_until(lambda: len(dev_spawns(fake_sandbox)) == 2)

    stub = session.tree.get_file(f"{ROOT}/src/components/Header.jsx")
    assert stub is not None
    assert "export default function Header()" in stub.content
    assert fake_sandbox.processes[0].killed
    assert "Created stub" in session.terminals.history("main")


# ════════════════════════════════════════════════════════════════════
# RESET
# ════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_reset_stops_dev_server_and_forgets_failures(session, supervisor, fake_sandbox):
    fake_sandbox.dirs.add(f"{ROOT}/node_modules")
    fake_sandbox.script(r"run dev", hang=True)
    await session.files.write("package.json", VITE_MANIFEST)
    await supervisor.try_bootstrap()
    await fake_sandbox.open_port(5174)
    supervisor.state.failed_signatures.add("deadbeef")

    await supervisor.reset()

    assert fake_sandbox.processes[0].killed
    assert supervisor.state.phase == BootstrapPhase.IDLE
    assert supervisor.state.failed_signatures == set()
    assert supervisor.previews.list() == []
    assert supervisor.status()["remediations_remaining"] == 6


# ════════════════════════════════════════════════════════════════════
# READINESS DETECTION
# ════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("output,port", [
    ("  ➜  Local:   http://localhost:5175/\n", 5175),
    ("ready - started server on 0.0.0.0:3000, url: http://localhost:3000", 3000),
    ("  VITE v5.0.0  ready in 312 ms\n", 5174),
    ("Compiled successfully!\n", 5174),
    ("Server listening on http://127.0.0.1:8080", 8080),
])
def test_ready_port_detection(output, port):
    assert detect_ready_port(output, 5174) == port


def test_no_readiness_in_plain_output():
    assert detect_ready_port("> vite\n\nresolving dependencies...\n", 5174) is None


def test_port_echo_without_readiness_phrase_is_ignored():
    output = "Error: connect ECONNREFUSED 127.0.0.1:5432\n"
    assert detect_ready_port(output, 5174) is None
    assert detect_ready_port(output + "  VITE v5.0.0  ready in 90 ms\n", 5174) == 5174


def test_echo_on_later_ready_line_wins():
    output = "  VITE v5.0.0  ready in 90 ms\n\n  ➜  Local:   http://localhost:5175/\n"
    assert detect_ready_port(output, 5174) == 5175


def test_ansi_codes_are_stripped():
    assert strip_ansi("\x1b[32m➜\x1b[39m  \x1b[1mLocal\x1b[22m") == "➜  Local"
