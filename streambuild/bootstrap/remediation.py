# streambuild/bootstrap/remediation.py
"""
Dev server failure classification and automatic remediation.

Output is matched against an ordered list of known failure signatures. The
first match wins and gets exactly one fix per cooldown window:

    missing local/aliased file   -> create a stub, restart
    missing third-party package  -> add to manifest, reinstall, restart
    malformed build-tool config  -> regenerate config, restart
    package absent from registry -> substitute or remove, reinstall, restart

Anything else is logged and left alone. Every fix is spent from a per-session
budget so a project that keeps breaking cannot loop forever.
"""
import posixpath
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import unquote

from streambuild.core.logging import log
from streambuild.bootstrap.manifest import (
    MANIFEST_NAME,
    add_dependency,
    all_dependencies,
    dump_manifest,
    load_manifest,
    package_name,
    remove_dependency,
)
from streambuild.sandbox.file_store import FilesStore


class FailureKind(str, Enum):
    MISSING_FILE = "missing_file"
    MISSING_DEPENDENCY = "missing_dependency"
    MALFORMED_CONFIG = "malformed_config"
    UNKNOWN_PACKAGE = "unknown_package"


# Packages models reach for that do not exist (or no longer work).
# None means drop the dependency.
PACKAGE_SUBSTITUTIONS: Dict[str, Optional[str]] = {
    "react-beautiful-dnd": "@hello-pangea/dnd",
    "@types/react-beautiful-dnd": None,
    "react-query": "@tanstack/react-query",
    "node-sass": "sass",
    "@heroicons/react/solid": "@heroicons/react",
    "@heroicons/react/outline": "@heroicons/react",
    "react-icons/fa": "react-icons",
    "lucide": "lucide-react",
    "@shadcn/ui": None,
    "shadcn-ui": None,
    "@radix-ui/react-all": None,
    "tailwindcss-animate-plugin": "tailwindcss-animate",
    "framer-motion-3d": None,
    "react-router-dom-v6": "react-router-dom",
    "@types/tailwindcss": None,
}

NODE_BUILTINS = {
    "assert", "buffer", "child_process", "crypto", "events", "fs", "http", "https",
    "module", "net", "os", "path", "process", "querystring", "readline", "stream",
    "tls", "url", "util", "worker_threads", "zlib",
}

SOURCE_EXTENSIONS = (".tsx", ".jsx", ".ts", ".js", ".mjs", ".cjs")
STYLE_EXTENSIONS = (".css", ".scss", ".sass", ".less")


@dataclass
class FailureMatch:
    kind: FailureKind
    target: str
    importer: Optional[str] = None
    version_only: bool = False

    @property
    def signature(self) -> str:
        return f"{self.kind.value}:{self.target}"


@dataclass
class RemediationOutcome:
    signature: str
    next_step: str  # "restart" | "reinstall"
    description: str


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFIER
# ═══════════════════════════════════════════════════════════════════════════════

class FailureClassifier:
    """
    Ordered (kind, pattern) rules over dev server and installer output.

    Import errors share one pattern set; the shape of the specifier decides
    between a missing file ("./x", "@/x") and a missing package ("lodash").
    """

    IMPORT_PATTERNS: List[Pattern] = [
        re.compile(r'Failed to resolve import "([^"]+)" from "([^"]+)"'),
        re.compile(r"Module not found: (?:Error: )?Can't resolve '([^']+)'(?: in '([^']+)')?"),
        re.compile(r"Cannot find module '([^']+)'(?: imported from (\S+))?"),
        re.compile(r'Could not resolve "([^"]+)"(?: from "([^"]+)")?'),
    ]

    CONFIG_PATTERNS: List[Pattern] = [
        re.compile(r"failed to load config from (\S*?((?:vite|vitest)\.config\.[cm]?[jt]s))"),
        re.compile(r"(?:Failed to load|Error loading|Invalid) (\S*?(next\.config\.[cm]?js))"),
        re.compile(r"SyntaxError[^\n]*?(\S*?((?:vite|next|postcss)\.config\.[cm]?[jt]s))"),
    ]

    REGISTRY_PATTERNS: List[Tuple[Pattern, bool]] = [
        (re.compile(r"ERR_PNPM_FETCH_404[^\n]*?registry\.npmjs\.org/([^\s:]+?)(?::|\s|$)"), False),
        (re.compile(r"404 Not Found - GET https?://registry\.npmjs\.org/(\S+?)(?:\s|$)"), False),
        (re.compile(r"404\s+'?(@?[^@\s']+)@\S*'? is not in (?:this|the npm) registry"), False),
        (re.compile(r'registry\.yarnpkg\.com/([^":\s]+)'), False),
        (re.compile(r"No matching version found for (@?[^@\s]+)@"), True),
        (re.compile(r"ERR_PNPM_NO_MATCHING_VERSION[^\n]*?for (@?[^@\s]+)@"), True),
    ]

    @classmethod
    def classify(cls, output: str) -> Optional[FailureMatch]:
        for pattern in cls.IMPORT_PATTERNS:
            match = pattern.search(output)
            if not match:
                continue
            specifier = match.group(1)
            importer = match.group(2) if match.lastindex and match.lastindex >= 2 else None
            if specifier.startswith((".", "@/", "~/")):
                return FailureMatch(FailureKind.MISSING_FILE, specifier, importer)
            name = package_name(specifier)
            if name and name.replace("node:", "") not in NODE_BUILTINS:
                return FailureMatch(FailureKind.MISSING_DEPENDENCY, name, importer)

        for pattern in cls.CONFIG_PATTERNS:
            match = pattern.search(output)
            if match:
                return FailureMatch(FailureKind.MALFORMED_CONFIG, match.group(2))

        for pattern, version_only in cls.REGISTRY_PATTERNS:
            match = pattern.search(output)
            if match:
                name = unquote(match.group(1)).rstrip("/")
                name = package_name(name) or name
                return FailureMatch(FailureKind.UNKNOWN_PACKAGE, name, version_only=version_only)

        return None


# ═══════════════════════════════════════════════════════════════════════════════
# BUDGET
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RemediationBudget:
    """
    Per-session cap on automatic fixes.

    When exhausted, remediation stops and the failure is left to the static
    fallback and the terminal output.
    """

    max_remediations: int = 6
    used: int = 0
    call_log: list = field(default_factory=list)
    _lock: RLock = field(default_factory=RLock)

    def reset(self):
        with self._lock:
            self.used = 0
            self.call_log.clear()

    @property
    def remaining(self) -> int:
        with self._lock:
            return max(0, self.max_remediations - self.used)

    def can_remediate(self) -> bool:
        return self.remaining > 0

    def use(self, signature: str) -> bool:
        with self._lock:
            if self.used >= self.max_remediations:
                log("REMEDIATE", f"🛑 Remediation DENIED ({signature}) - budget exhausted")
                return False
            self.used += 1
            self.call_log.append({
                "signature": signature,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
            log("REMEDIATE", f"📊 Remediation used ({signature}): {self.used}/{self.max_remediations}")
            return True


# ═══════════════════════════════════════════════════════════════════════════════
# STUBS AND CONFIGS
# ═══════════════════════════════════════════════════════════════════════════════

def _component_name(path: str) -> str:
    stem = posixpath.splitext(posixpath.basename(path))[0]
    if stem == "index":
        stem = posixpath.basename(posixpath.dirname(path)) or "Component"
    name = "".join(part[:1].upper() + part[1:] for part in re.split(r"[^A-Za-z0-9]+", stem) if part)
    return name if name and not name[0].isdigit() else f"Component{name}"


def stub_content(path: str) -> str:
    ext = posixpath.splitext(path)[1]
    if ext in STYLE_EXTENSIONS:
        return "/* placeholder */\n"
    if ext == ".json":
        return "{}\n"
    if ext == ".svg":
        return '<svg xmlns="http://www.w3.org/2000/svg" width="1" height="1"></svg>\n'
    if ext in (".tsx", ".jsx"):
        name = _component_name(path)
        return f"export default function {name}() {{\n  return null;\n}}\n"
    if ext in SOURCE_EXTENSIONS:
        return "export default {};\n"
    return ""


def vite_config(uses_react: bool) -> str:
    if uses_react:
        return (
            "import { defineConfig } from 'vite';\n"
            "import react from '@vitejs/plugin-react';\n\n"
            "export default defineConfig({\n"
            "  plugins: [react()],\n"
            "});\n"
        )
    return "import { defineConfig } from 'vite';\n\nexport default defineConfig({});\n"


def next_config(filename: str) -> str:
    if filename.endswith(".mjs"):
        return "/** @type {import('next').NextConfig} */\nconst nextConfig = {};\n\nexport default nextConfig;\n"
    return "/** @type {import('next').NextConfig} */\nconst nextConfig = {};\n\nmodule.exports = nextConfig;\n"


def postcss_config(filename: str) -> str:
    if filename.endswith(".cjs") or filename.endswith(".js"):
        return "module.exports = {\n  plugins: {},\n};\n"
    return "export default {\n  plugins: {},\n};\n"


# ═══════════════════════════════════════════════════════════════════════════════
# REMEDIATOR
# ═══════════════════════════════════════════════════════════════════════════════

class Remediator:
    def __init__(
        self,
        files: FilesStore,
        budget: Optional[RemediationBudget] = None,
        cooldown: float = 10.0,
        substitutions: Optional[Dict[str, Optional[str]]] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.files = files
        self.budget = budget or RemediationBudget()
        self.cooldown = cooldown
        self.substitutions = {**PACKAGE_SUBSTITUTIONS, **(substitutions or {})}
        self.session_id = session_id
        self._last_applied: Dict[str, float] = {}
        self._handlers = {
            FailureKind.MISSING_FILE: self._create_stub,
            FailureKind.MISSING_DEPENDENCY: self._add_dependency,
            FailureKind.MALFORMED_CONFIG: self._regenerate_config,
            FailureKind.UNKNOWN_PACKAGE: self._replace_package,
        }

    def reset(self) -> None:
        self._last_applied.clear()
        self.budget.reset()

    async def remediate(self, output: str, root: str) -> Optional[RemediationOutcome]:
        match = FailureClassifier.classify(output)
        if match is None:
            return None

        now = time.monotonic()
        last = self._last_applied.get(match.signature)
        if last is not None and now - last < self.cooldown:
            log("REMEDIATE", f"Cooling down {match.signature}", session_id=self.session_id)
            return None

        self._last_applied[match.signature] = now
        if not self.budget.use(match.signature):
            return None

        outcome = await self._handlers[match.kind](match, root)
        if outcome is not None:
            log("REMEDIATE", f"🔧 {outcome.description}", session_id=self.session_id)
        return outcome

    # ─────────────────────────────────────────────────────────
    # Manifest helpers
    # ─────────────────────────────────────────────────────────

    async def _load(self, root: str) -> Tuple[str, Optional[dict]]:
        path = posixpath.join(root, MANIFEST_NAME)
        return path, load_manifest(await self.files.read(path) or "")

    def _tree_files_under(self, root: str) -> List[str]:
        prefix = root.rstrip("/") + "/"
        return [p for p, _ in self.files.tree.files() if p.startswith(prefix) and "/node_modules/" not in p]

    def _locate_importer(self, importer: Optional[str], root: str) -> Optional[str]:
        """Map an importer path printed by the tool (often a real path) to the tree."""
        if not importer:
            return None
        importer = importer.split("?")[0].rstrip("'\"")
        best = None
        for path in self._tree_files_under(root):
            rel = path[len(root.rstrip("/")) + 1:]
            if importer.endswith("/" + rel) or importer == rel:
                if best is None or len(path) > len(best):
                    best = path
        return best

    # ─────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────

    async def _create_stub(self, match: FailureMatch, root: str) -> Optional[RemediationOutcome]:
        specifier = match.target.split("?")[0]
        importer = self._locate_importer(match.importer, root)
        has_src = any(p.startswith(posixpath.join(root, "src") + "/") for p in self._tree_files_under(root))

        if specifier.startswith(("@/", "~/")):
            base = posixpath.join(root, "src") if has_src else root
            rel = specifier[2:]
        else:
            if importer is not None:
                base = posixpath.dirname(importer)
            else:
                base = posixpath.join(root, "src") if has_src else root
            rel = specifier

        path = posixpath.normpath(posixpath.join(base, rel))
        if not path.startswith(root.rstrip("/") + "/"):
            log("REMEDIATE", f"Refusing stub outside project: {path}", session_id=self.session_id, level="warning")
            return None

        if not posixpath.splitext(path)[1]:
            importer_ext = posixpath.splitext(importer or "")[1]
            path += importer_ext if importer_ext in SOURCE_EXTENSIONS else ".js"

        if self.files.tree.get_file(path) is not None:
            return None

        await self.files.write(path, stub_content(path))
        return RemediationOutcome(match.signature, "restart", f"Created stub for missing file {path}")

    async def _add_dependency(self, match: FailureMatch, root: str) -> Optional[RemediationOutcome]:
        manifest_path, pkg = await self._load(root)
        if pkg is None:
            return None

        name = match.target
        if name in self.substitutions:
            replacement = self.substitutions[name]
            if replacement is None:
                return None
            name = replacement

        if add_dependency(pkg, name):
            await self.files.write(manifest_path, dump_manifest(pkg))
            description = f"Added missing dependency {name}"
        else:
            description = f"Dependency {name} declared but not installed"
        return RemediationOutcome(match.signature, "reinstall", description)

    async def _regenerate_config(self, match: FailureMatch, root: str) -> Optional[RemediationOutcome]:
        filename = match.target
        manifest_path, pkg = await self._load(root)
        deps = all_dependencies(pkg or {})
        next_step = "restart"

        if filename.startswith(("vite.", "vitest.")):
            uses_react = "react" in deps
            if uses_react and pkg is not None and "@vitejs/plugin-react" not in deps:
                pkg.setdefault("devDependencies", {})["@vitejs/plugin-react"] = "latest"
                await self.files.write(manifest_path, dump_manifest(pkg))
                next_step = "reinstall"
            content = vite_config(uses_react)
        elif filename.startswith("next."):
            content = next_config(filename)
        elif filename.startswith("postcss."):
            content = postcss_config(filename)
        else:
            return None

        await self.files.write(posixpath.join(root, filename), content)
        return RemediationOutcome(match.signature, next_step, f"Regenerated {filename}")

    async def _replace_package(self, match: FailureMatch, root: str) -> Optional[RemediationOutcome]:
        manifest_path, pkg = await self._load(root)
        if pkg is None:
            return None

        name = match.target
        deps = all_dependencies(pkg)
        if name not in deps:
            return None

        if match.version_only and deps[name] != "latest":
            for section in ("dependencies", "devDependencies"):
                if name in pkg.get(section, {}):
                    pkg[section][name] = "latest"
            description = f"Relaxed {name} to latest"
        elif name in self.substitutions and self.substitutions[name] is not None:
            replacement = self.substitutions[name]
            remove_dependency(pkg, name)
            add_dependency(pkg, replacement)
            description = f"Replaced unknown package {name} with {replacement}"
        else:
            remove_dependency(pkg, name)
            description = f"Removed unknown package {name}"

        await self.files.write(manifest_path, dump_manifest(pkg))
        return RemediationOutcome(match.signature, "reinstall", description)
