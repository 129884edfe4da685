# tests/conftest.py
"""
Shared pytest fixtures for StreamBuild tests.

Provides:
- Settings with short timeouts
- A scripted fake sandbox and a started session on top of it
- Static server patched out (no real port binding)
- An httpx client over the ASGI app
"""
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

# Ensure streambuild/ and tests/ are importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from streambuild.core.config import (
    BootstrapSettings,
    ParserSettings,
    RuntimeSettings,
    SandboxSettings,
    Settings,
)
from streambuild.session import BuildSession
from tests.utils.fake_sandbox import FakeSandbox


# ═══════════════════════════════════════════════════════
# FIXTURES - Configuration
# ═══════════════════════════════════════════════════════

@pytest.fixture
def fast_settings():
    """Settings with timeouts small enough for unit tests."""
    return Settings(
        parser=ParserSettings(max_turns_in_memory=100, strip_markdown_fences=True),
        sandbox=SandboxSettings(enabled=True, boot_attempts=2, boot_timeout=1.0, boot_backoff=0.0, write_debounce=0.01),
        runtime=RuntimeSettings(package_manager="pnpm", fast_exit_window=1.0, server_ready_timeout=1.0),
        bootstrap=BootstrapSettings(
            preview_port=5174,
            static_port=4173,
            debounce=0.01,
            install_timeout=1.0,
            ready_timeout=0.5,
            startup_window=1.0,
            remediation_cooldown=0.0,
            max_remediations=6,
        ),
    )


# ═══════════════════════════════════════════════════════
# FIXTURES - Sandbox and session
# ═══════════════════════════════════════════════════════

@pytest.fixture
def fake_sandbox():
    return FakeSandbox()


@pytest.fixture
def no_static_server():
    """Static fallback without binding a port."""
    with patch(
        "streambuild.bootstrap.static_server.StaticPreviewServer.start", new_callable=AsyncMock
    ) as start, patch(
        "streambuild.bootstrap.static_server.StaticPreviewServer.stop", new_callable=AsyncMock
    ):
        yield start


@pytest_asyncio.fixture
async def session(fake_sandbox, fast_settings, no_static_server):
    """Started session running on the fake sandbox."""
    async def boot(config):
        return fake_sandbox

    build_session = BuildSession(session_id="test-session", config=fast_settings, boot=boot)
    await build_session.start()
    yield build_session
    await build_session.close()


@pytest_asyncio.fixture
async def degraded_session(fast_settings, no_static_server):
    """Started session whose sandbox never boots."""
    async def boot(config):
        raise OSError("boot failed")

    build_session = BuildSession(session_id="degraded-session", config=fast_settings, boot=boot)
    await build_session.start()
    yield build_session
    await build_session.close()


# ═══════════════════════════════════════════════════════
# FIXTURES - API
# ═══════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def async_client(no_static_server):
    from streambuild.core.config import settings
    from streambuild.main import app
    from streambuild.session import session_manager

    with patch.object(settings.sandbox, "enabled", False):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
        await session_manager.close_all()
