# streambuild/sandbox/virtual_fs.py
"""
In-memory mirror of the project tree.

Always populated, sandbox or not: the UI and the static fallback server read
from here, and in degraded mode it is the only copy of the project.
"""
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple, Union

from streambuild.core.config import SandboxSettings
from streambuild.core.logging import log
from streambuild.sandbox.paths import WORK_DIR, parent_dirs


@dataclass
class FileEntry:
    content: str
    is_binary: bool = False
    size: int = 0


@dataclass
class FolderEntry:
    pass


Entry = Union[FileEntry, FolderEntry]

BINARY_SAMPLE_SIZE = 1024


def is_binary(data: bytes) -> bool:
    """Best guess from the first 1KB: NUL bytes or undecodable UTF-8."""
    sample = data[:BINARY_SAMPLE_SIZE]
    if b"\x00" in sample:
        return True
    try:
        sample.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte sequence cut at the sample boundary is still text
        return e.start < len(sample) - 4
    return False


class VirtualFileTree:
    """
    Path-keyed map of files and folders with memory limits.

    - Files above ``max_file_size`` bytes are skipped with a warning.
    - Text above ``max_content_length`` bytes is kept as a size notice only.
    - Beyond ``max_files`` files the oldest ones are evicted.
    """

    def __init__(self, config: Optional[SandboxSettings] = None, work_dir: str = WORK_DIR):
        self.config = config or SandboxSettings()
        self.work_dir = work_dir
        self._entries: "OrderedDict[str, Entry]" = OrderedDict()
        # path -> content before the first modification since last reset
        self._modified: Dict[str, str] = {}

    # =========================================================================
    # READ
    # =========================================================================

    def get(self, path: str) -> Optional[Entry]:
        return self._entries.get(path)

    def get_file(self, path: str) -> Optional[FileEntry]:
        entry = self._entries.get(path)
        return entry if isinstance(entry, FileEntry) else None

    def exists(self, path: str) -> bool:
        return path in self._entries

    def files(self) -> Iterator[Tuple[str, FileEntry]]:
        for path, entry in list(self._entries.items()):
            if isinstance(entry, FileEntry):
                yield path, entry

    def find(self, basename: str) -> List[str]:
        """All file paths whose last segment equals ``basename``, shallowest first."""
        matches = [p for p, _ in self.files() if p.rsplit("/", 1)[-1] == basename]
        return sorted(matches, key=lambda p: (p.count("/"), p))

    @property
    def file_count(self) -> int:
        return sum(1 for _ in self.files())

    def snapshot(self) -> Dict[str, dict]:
        result = {}
        for path, entry in self._entries.items():
            if isinstance(entry, FileEntry):
                result[path] = {"type": "file", "content": entry.content, "isBinary": entry.is_binary}
            else:
                result[path] = {"type": "folder"}
        return result

    # =========================================================================
    # WRITE
    # =========================================================================

    def mkdir(self, path: str) -> None:
        for parent in parent_dirs(path + "/x", self.work_dir):
            if parent not in self._entries:
                self._entries[parent] = FolderEntry()

    def write(self, path: str, content: Union[str, bytes]) -> bool:
        """
        Store ``content`` at ``path``. Returns False when the write was skipped
        because the file is too large.
        """
        data = content.encode("utf-8") if isinstance(content, str) else content
        size = len(data)

        if size > self.config.max_file_size:
            log("FILES", f"⚠️ {path} exceeds size limit ({size} bytes), skipping", level="warning")
            return False

        binary = is_binary(data)
        if binary:
            text = ""
        elif size > self.config.max_content_length:
            text = f"[File too large to display: {size} bytes]"
        else:
            text = data.decode("utf-8", errors="replace") if isinstance(content, bytes) else content

        for parent in parent_dirs(path, self.work_dir):
            if parent not in self._entries:
                self._entries[parent] = FolderEntry()

        previous = self.get_file(path)
        if previous is not None and path not in self._modified:
            self._modified[path] = previous.content

        is_new = previous is None
        self._entries[path] = FileEntry(content=text, is_binary=binary, size=size)

        if is_new:
            self._enforce_limits()
        return True

    def remove(self, path: str) -> None:
        self._entries.pop(path, None)
        self._modified.pop(path, None)
        prefix = path + "/"
        for other in [p for p in self._entries if p.startswith(prefix)]:
            self._entries.pop(other, None)
            self._modified.pop(other, None)

    def clear(self) -> None:
        self._entries.clear()
        self._modified.clear()

    # =========================================================================
    # MODIFICATIONS
    # =========================================================================

    def modifications(self) -> Dict[str, dict]:
        """Files changed since the last reset, with their original content."""
        result = {}
        for path, original in self._modified.items():
            current = self.get_file(path)
            if current is not None and current.content != original:
                result[path] = {"original": original, "current": current.content}
        return result

    def reset_modifications(self) -> None:
        self._modified.clear()

    def _enforce_limits(self) -> None:
        file_paths = [p for p, _ in self.files()]
        excess = len(file_paths) - self.config.max_files
        if excess <= 0:
            return
        for path in file_paths[:excess]:
            self._entries.pop(path, None)
            self._modified.pop(path, None)
        log("FILES", f"Removed {excess} files to enforce memory limits", level="warning")
