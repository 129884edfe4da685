# streambuild/core/__init__.py
"""
Core module - configuration, logging and the exception hierarchy.
"""
from .config import settings, Settings
from .exceptions import (
    StreamBuildError,
    ParseError,
    ActionExecutionError,
    SandboxUnavailable,
    SandboxError,
    InstallFailure,
)
from .logging import log, log_section

__all__ = [
    "settings",
    "Settings",
    "StreamBuildError",
    "ParseError",
    "ActionExecutionError",
    "SandboxUnavailable",
    "SandboxError",
    "InstallFailure",
    "log",
    "log_section",
]
