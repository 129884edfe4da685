import sys
import os
from datetime import datetime
from typing import Any, Optional


# ═══════════════════════════════════════════════════════════════════════════════
# LOG FILTERING
# ═══════════════════════════════════════════════════════════════════════════════
# Only these scopes are shown at INFO level
# Everything else is gated behind STREAMBUILD_DEBUG

INFO_SCOPES = {
    "SESSION",      # Session lifecycle
    "RUNNER",       # Action execution
    "BOOTSTRAP",    # Supervisor state changes
    "INSTALL",      # Install ladder
    "DEVSERVER",    # Dev process lifecycle
    "PREVIEW",      # Preview URLs
    "STATIC",       # Static fallback
    "REMEDIATE",    # Automatic fixes
}

# DEBUG-only scopes (hidden by default)
DEBUG_SCOPES = {
    "PARSER",
    "SANDBOX",
    "FILES",
    "TERMINAL",
    "API",
    "WS",
}

DEBUG_MODE = os.getenv("STREAMBUILD_DEBUG", "false").lower() == "true"

# Warnings and errors bypass the scope filter
_ALWAYS_SHOWN = {"warning", "error"}


def log(
    scope: str,
    message: str,
    data: Any = None,
    session_id: Optional[str] = None,
    level: str = "info",
) -> None:
    """
    Unified logging function for StreamBuild.

    Only INFO_SCOPES are shown by default.
    Set STREAMBUILD_DEBUG=true to see all scopes.
    """
    if not DEBUG_MODE and scope not in INFO_SCOPES and level not in _ALWAYS_SHOWN:
        return

    timestamp = datetime.now().strftime("%H:%M:%S")
    prefix = f"[{timestamp}] [{scope}]"

    if session_id:
        prefix += f" [{session_id[:8]}]"

    if level in _ALWAYS_SHOWN:
        prefix += f" {level.upper()}:"

    print(f"{prefix} {message}")

    if data:
        print(f"  Data: {data}")

    sys.stdout.flush()


def log_section(scope: str, title: str, session_id: Optional[str] = None) -> None:
    """
    Log a section header with visual separator.
    """
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"\n{'='*60}")
    if session_id:
        print(f"[{timestamp}] [{scope}] [{session_id[:8]}] {title}")
    else:
        print(f"[{timestamp}] [{scope}] {title}")
    print(f"{'='*60}")
    sys.stdout.flush()
