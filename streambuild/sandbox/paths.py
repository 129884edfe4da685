# streambuild/sandbox/paths.py
"""
Virtual path helpers.

Every sandbox path is a POSIX absolute path under the work directory
(``/home/project`` by default). Model output uses project-relative paths,
so everything funnels through these helpers before touching a sandbox.
"""
import posixpath

from streambuild.core.exceptions import SandboxError

WORK_DIR = "/home/project"


def abs_in_workdir(path: str, work_dir: str = WORK_DIR) -> str:
    """
    Resolve a model-supplied path to an absolute path inside the work dir.

    Raises SandboxError when the path escapes the work dir.
    """
    path = (path or "").strip().replace("\\", "/")
    if path.startswith(work_dir + "/") or path == work_dir:
        candidate = path
    else:
        candidate = posixpath.join(work_dir, path.lstrip("/"))

    normalized = posixpath.normpath(candidate)
    if normalized != work_dir and not normalized.startswith(work_dir + "/"):
        raise SandboxError(path, "path escapes the work directory")
    return normalized


def rel_to_workdir(path: str, work_dir: str = WORK_DIR) -> str:
    """Inverse of abs_in_workdir. Returns '' for the work dir itself."""
    normalized = abs_in_workdir(path, work_dir)
    if normalized == work_dir:
        return ""
    return normalized[len(work_dir) + 1:]


def parent_dirs(path: str, work_dir: str = WORK_DIR) -> list:
    """Ancestors of ``path`` strictly below the work dir, shallowest first."""
    parents = []
    current = posixpath.dirname(path)
    while current.startswith(work_dir + "/"):
        parents.append(current)
        current = posixpath.dirname(current)
    parents.reverse()
    return parents


def depth(path: str, work_dir: str = WORK_DIR) -> int:
    rel = rel_to_workdir(path, work_dir)
    return rel.count("/") if rel else 0
