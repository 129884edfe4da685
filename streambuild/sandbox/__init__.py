# streambuild/sandbox/__init__.py
"""
StreamBuild - Execution Sandbox
File system, processes and port events, with an in-memory fallback tree.
"""
from .base import Sandbox, SandboxProcess, PortEvent
from .local import LocalSandbox
from .factory import boot_sandbox
from .virtual_fs import VirtualFileTree
from .file_store import FilesStore

__all__ = [
    "Sandbox",
    "SandboxProcess",
    "PortEvent",
    "LocalSandbox",
    "boot_sandbox",
    "VirtualFileTree",
    "FilesStore",
]
