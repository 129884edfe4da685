# streambuild/core/config.py
"""
Application configuration - single source of truth for all settings.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class ParserSettings:
    """Streaming directive parser configuration."""
    max_turns_in_memory: int = field(default_factory=lambda: int(os.getenv("PARSER_MAX_TURNS", "100")))
    strip_markdown_fences: bool = field(default_factory=lambda: _env_bool("PARSER_STRIP_FENCES", "true"))


@dataclass
class SandboxSettings:
    """Execution sandbox configuration."""
    enabled: bool = field(default_factory=lambda: _env_bool("SANDBOX_ENABLED", "true"))
    work_dir: str = "/home/project"
    # Real directory the virtual work dir is mapped onto. None = temp dir per session.
    root_dir: Optional[str] = field(default_factory=lambda: os.getenv("SANDBOX_ROOT"))
    shell: str = field(default_factory=lambda: os.getenv("SANDBOX_SHELL", "/bin/sh"))

    boot_attempts: int = 2
    boot_timeout: float = 30.0
    boot_backoff: float = 1.0

    # Virtual tree limits
    max_files: int = 1000
    max_file_size: int = 10 * 1024 * 1024
    max_content_length: int = 1024 * 1024

    write_debounce: float = 0.1
    port_poll_interval: float = 0.5


@dataclass
class RuntimeSettings:
    """Action execution configuration."""
    package_manager: str = field(default_factory=lambda: os.getenv("PACKAGE_MANAGER", "pnpm"))
    # Non-zero exit within this window is treated as a missing-dependency crash
    fast_exit_window: float = 1.0
    server_ready_timeout: float = 30.0


@dataclass
class BootstrapSettings:
    """Dev server bootstrap configuration."""
    preview_port: int = field(default_factory=lambda: int(os.getenv("PREVIEW_PORT", "5174")))
    static_port: int = field(default_factory=lambda: int(os.getenv("STATIC_PORT", "4173")))
    debounce: float = 0.4
    install_timeout: float = 180.0
    ready_timeout: float = 45.0
    startup_window: float = 5.0
    output_tail_lines: int = 40
    recent_output_chars: int = 8000
    remediation_cooldown: float = 10.0
    max_remediations: int = 6


@dataclass
class Settings:
    """Main application settings."""
    parser: ParserSettings = field(default_factory=ParserSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    bootstrap: BootstrapSettings = field(default_factory=BootstrapSettings)
    port: int = field(default_factory=lambda: int(os.getenv("PORT", 8000)))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG", "false"))
    cors_origins: List[str] = field(default_factory=lambda: (
        os.getenv("CORS_ORIGINS", "*").split(",") if os.getenv("CORS_ORIGINS", "*") != "*" else ["*"]
    ))


# Singleton instance
settings = Settings()
