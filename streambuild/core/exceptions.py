# streambuild/core/exceptions.py
"""
Custom exceptions for the application.
"""
from typing import Optional, Dict, Any


class StreamBuildError(Exception):
    """Base exception for all StreamBuild errors."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ParseError(StreamBuildError):
    """Malformed directive in the model stream."""
    pass


class ActionExecutionError(StreamBuildError):
    """A file or shell action failed."""
    def __init__(self, action_key: str, message: str, exit_code: Optional[int] = None):
        super().__init__(
            f"Action {action_key} failed: {message}",
            {"action": action_key, "exit_code": exit_code}
        )
        self.action_key = action_key
        self.exit_code = exit_code


class SandboxUnavailable(StreamBuildError):
    """Sandbox could not be booted; session runs on the in-memory tree."""
    def __init__(self, message: str, attempts: int = 0):
        super().__init__(
            f"Sandbox unavailable: {message}",
            {"attempts": attempts}
        )
        self.attempts = attempts


class SandboxError(StreamBuildError):
    """A sandbox primitive failed."""
    def __init__(self, target: str, message: str):
        super().__init__(
            f"Sandbox error for {target}: {message}",
            {"target": target}
        )
        self.target = target


class InstallFailure(StreamBuildError):
    """Every step of the install ladder failed."""
    def __init__(self, signature: str, diagnostic: str):
        super().__init__(
            "Dependency installation failed after all strategies",
            {"signature": signature}
        )
        self.signature = signature
        self.diagnostic = diagnostic
