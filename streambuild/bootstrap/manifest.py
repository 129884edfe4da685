# streambuild/bootstrap/manifest.py
"""
Project manifest (package.json) tooling.

Locating the project, fingerprinting its manifest, detecting the framework,
repairing what the model got wrong, and computing a start command that the
preview can reach.
"""
import hashlib
import json
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from streambuild.core.exceptions import SandboxError
from streambuild.core.logging import log
from streambuild.runtime.sanitize import extract_code, safe_json_parse
from streambuild.sandbox.paths import rel_to_workdir
from streambuild.sandbox.virtual_fs import VirtualFileTree

MANIFEST_NAME = "package.json"
STATIC_ENTRY_NAME = "index.html"

FALLBACK_MANIFEST = {
    "name": "app",
    "private": True,
    "version": "0.0.0",
    "scripts": {"dev": "vite"},
    "devDependencies": {"vite": "latest"},
}

# Checked in order; meta-frameworks first since several of them ship vite
FRAMEWORK_MARKERS = [
    ("next", ["next"]),
    ("remix", ["@remix-run/dev", "@remix-run/react"]),
    ("nuxt", ["nuxt"]),
    ("sveltekit", ["@sveltejs/kit"]),
    ("astro", ["astro"]),
    ("angular", ["@angular/core", "@angular/cli"]),
    ("gatsby", ["gatsby"]),
    ("react-scripts", ["react-scripts"]),
    ("vite", ["vite"]),
]

DEV_SCRIPTS = {
    "next": "next dev",
    "remix": "remix dev",
    "nuxt": "nuxt dev",
    "sveltekit": "vite dev",
    "astro": "astro dev",
    "angular": "ng serve",
    "gatsby": "gatsby develop",
    "react-scripts": "react-scripts start",
    "vite": "vite",
}

# dev script binary -> framework, for manifests without recognizable dependencies
SCRIPT_BINARIES = {
    "next": "next",
    "remix": "remix",
    "nuxt": "nuxt",
    "nuxi": "nuxt",
    "astro": "astro",
    "ng": "angular",
    "gatsby": "gatsby",
    "react-scripts": "react-scripts",
    "vite": "vite",
}

# framework -> CLI flags binding host and port
HOST_PORT_ARGS = {
    "vite": "--host 0.0.0.0 --port {port}",
    "sveltekit": "--host 0.0.0.0 --port {port}",
    "astro": "--host 0.0.0.0 --port {port}",
    "nuxt": "--host 0.0.0.0 --port {port}",
    "angular": "--host 0.0.0.0 --port {port}",
    "next": "-H 0.0.0.0 -p {port}",
    "gatsby": "-H 0.0.0.0 -p {port}",
}

# Frameworks whose binary we can call directly when the dev script is broken
DIRECT_FALLBACK = {
    "vite": "vite",
    "next": "next dev",
}

# package -> packages it does not work without
PEER_PACKAGES = {
    "react": ["react-dom"],
    "next": ["react", "react-dom"],
    "@vitejs/plugin-react": ["vite"],
    "@vitejs/plugin-react-swc": ["vite"],
    "@sveltejs/kit": ["svelte", "vite"],
    "@sveltejs/vite-plugin-svelte": ["svelte", "vite"],
}

_COMPARATOR = re.compile(
    r"^(?:[\^~]|[<>]=?|=)?v?(?:\d+|[xX*])(?:\.(?:\d+|[xX*])){0,2}(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
)
_PROTOCOL = re.compile(r"^(?:npm|workspace|file|link|git|git\+https|git\+ssh|github|https?):")
_DIST_TAG = re.compile(r"^[a-z][a-z0-9.-]*$")
_GITHUB_SHORTHAND = re.compile(r"^[\w.-]+/[\w.-]+(?:#\S+)?$")

DEPENDENCY_FIELDS = ("dependencies", "devDependencies")


@dataclass
class StartCommand:
    command: str
    env: Dict[str, str] = field(default_factory=dict)


def _ignored(path: str) -> bool:
    return "/node_modules/" in path or "/.git/" in path


# ═══════════════════════════════════════════════════════════════════════════════
# LOCATING
# ═══════════════════════════════════════════════════════════════════════════════

def is_manifest_path(path: str) -> bool:
    try:
        rel = rel_to_workdir(path)
    except SandboxError:
        return False
    return rel == MANIFEST_NAME or rel.endswith("/" + MANIFEST_NAME)


def find_project_root(tree: VirtualFileTree) -> Optional[str]:
    """Directory of the shallowest package.json."""
    candidates = [p for p in tree.find(MANIFEST_NAME) if not _ignored(p)]
    return posixpath.dirname(candidates[0]) if candidates else None


def find_static_entry(tree: VirtualFileTree) -> Optional[str]:
    candidates = [p for p in tree.find(STATIC_ENTRY_NAME) if not _ignored(p)]
    return candidates[0] if candidates else None


def manifest_signature(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def load_manifest(content: str) -> Optional[Dict[str, Any]]:
    data = safe_json_parse(content)
    return data if isinstance(data, dict) else None


def dump_manifest(pkg: Dict[str, Any]) -> str:
    return json.dumps(pkg, indent=2) + "\n"


def all_dependencies(pkg: Dict[str, Any]) -> Dict[str, Any]:
    deps: Dict[str, Any] = {}
    for name in DEPENDENCY_FIELDS:
        section = pkg.get(name)
        if isinstance(section, dict):
            deps.update(section)
    return deps


def repair_manifest(content: str) -> str:
    """
    Make whatever the model wrote into a usable manifest: fall back to a
    minimal vite skeleton when it is not a JSON object, and always provide
    a dev script.
    """
    pkg = load_manifest(extract_code(content))
    if pkg is None:
        pkg = json.loads(json.dumps(FALLBACK_MANIFEST))
        log("RUNNER", "Generated minimal package.json due to invalid input")

    if not isinstance(pkg.get("scripts"), dict):
        pkg["scripts"] = {}
    pkg["scripts"].setdefault("dev", "vite")
    return dump_manifest(pkg)


# ═══════════════════════════════════════════════════════════════════════════════
# FRAMEWORK
# ═══════════════════════════════════════════════════════════════════════════════

def detect_framework(pkg: Dict[str, Any]) -> str:
    deps = all_dependencies(pkg)
    for framework, markers in FRAMEWORK_MARKERS:
        if any(marker in deps for marker in markers):
            return framework

    scripts = pkg.get("scripts") if isinstance(pkg.get("scripts"), dict) else {}
    binary = str(scripts.get("dev") or "").split(" ", 1)[0]
    return SCRIPT_BINARIES.get(binary, "unknown")


def normalize_dev_script(pkg: Dict[str, Any], framework: str) -> bool:
    """Give the manifest a dev script that starts ``framework``. Returns True on change."""
    scripts = pkg.get("scripts")
    if not isinstance(scripts, dict):
        scripts = pkg["scripts"] = {}

    expected = DEV_SCRIPTS.get(framework)
    current = str(scripts.get("dev") or "").strip()

    if not current:
        scripts["dev"] = expected or (scripts.get("start") or "vite")
        return True

    # react-scripts projects often ship only "start"
    if framework == "react-scripts" and "react-scripts" not in current:
        scripts["dev"] = expected
        return True

    # Strip host/port flags; the start command sets its own
    cleaned = re.sub(r"\s+(?:--host|--port|-H|-p)(?:[= ](?!-)\S+)?", "", current).strip()
    if cleaned != current:
        scripts["dev"] = cleaned
        return True
    return False


def build_start_command(framework: str, package_manager: str, port: int) -> StartCommand:
    env = {"HOST": "0.0.0.0", "PORT": str(port), "BROWSER": "none"}
    args = HOST_PORT_ARGS.get(framework, "").format(port=port)

    run_dev = f"{package_manager} run dev"
    if args:
        run_dev += (" -- " if package_manager == "npm" else " ") + args

    fallback = DIRECT_FALLBACK.get(framework)
    if fallback:
        exec_cmd = "npx" if package_manager == "npm" else f"{package_manager} exec"
        run_dev = f"{run_dev} || {exec_cmd} {fallback} {args}".strip()

    return StartCommand(command=run_dev, env=env)


# ═══════════════════════════════════════════════════════════════════════════════
# REPAIRS
# ═══════════════════════════════════════════════════════════════════════════════

def relax_engines(pkg: Dict[str, Any]) -> bool:
    changed = False
    for key in ("engines", "engineStrict"):
        if key in pkg:
            pkg.pop(key)
            changed = True
    return changed


def is_valid_range(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    value = value.strip()
    if _PROTOCOL.match(value) or _DIST_TAG.match(value) or _GITHUB_SHORTHAND.match(value):
        return True

    for alternative in value.split("||"):
        tokens = [t for t in re.split(r"\s+", alternative.strip()) if t and t != "-"]
        if not tokens:
            return False
        # ">= 1.2" is written with a space often enough
        merged: List[str] = []
        for token in tokens:
            if merged and re.fullmatch(r"[<>]=?|=|[\^~]", merged[-1]):
                merged[-1] += token
            else:
                merged.append(token)
        if not all(_COMPARATOR.match(t) for t in merged):
            return False
    return True


def sanitize_dependencies(pkg: Dict[str, Any]) -> List[str]:
    """Replace malformed version ranges with "latest". Returns the fixed names."""
    fixed = []
    for section_name in DEPENDENCY_FIELDS:
        section = pkg.get(section_name)
        if not isinstance(section, dict):
            if section is not None:
                pkg[section_name] = {}
            continue
        for name, version in list(section.items()):
            if not is_valid_range(version):
                section[name] = "latest"
                fixed.append(name)
    return fixed


def inject_peer_packages(pkg: Dict[str, Any]) -> List[str]:
    deps = all_dependencies(pkg)
    added = []
    for package, peers in PEER_PACKAGES.items():
        if package not in deps:
            continue
        for peer in peers:
            if peer in deps or peer in added:
                continue
            section = "devDependencies" if peer == "vite" else "dependencies"
            pkg.setdefault(section, {})[peer] = "latest"
            added.append(peer)
    return added


def add_dependency(pkg: Dict[str, Any], name: str, version: str = "latest") -> bool:
    if name in all_dependencies(pkg):
        return False
    pkg.setdefault("dependencies", {})[name] = version
    return True


def remove_dependency(pkg: Dict[str, Any], name: str) -> bool:
    removed = False
    for section_name in DEPENDENCY_FIELDS:
        section = pkg.get(section_name)
        if isinstance(section, dict) and name in section:
            section.pop(name)
            removed = True
    return removed


def package_name(specifier: str) -> Optional[str]:
    """'@scope/pkg/sub' -> '@scope/pkg', 'lodash/fp' -> 'lodash'."""
    specifier = specifier.strip()
    if not specifier or specifier.startswith((".", "/", "node:", "@/", "~/")):
        return None
    parts = specifier.split("/")
    if specifier.startswith("@"):
        return "/".join(parts[:2]) if len(parts) >= 2 else None
    return parts[0]


# ═══════════════════════════════════════════════════════════════════════════════
# SCAFFOLDING
# ═══════════════════════════════════════════════════════════════════════════════

VITE_INDEX_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/{entry}"></script>
  </body>
</html>
"""

REACT_MAIN = """import React from 'react';
import ReactDOM from 'react-dom/client';
import App from './App';

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>
);
"""

REACT_APP = """export default function App() {
  return <h1>App</h1>;
}
"""

VANILLA_MAIN = """document.getElementById('root').textContent = 'App';
"""

NEXT_LAYOUT = """export default function RootLayout({ children }) {
  return (
    <html lang="en">
      <body>{children}</body>
    </html>
  );
}
"""

NEXT_PAGE = """export default function Page() {
  return <h1>App</h1>;
}
"""

ENTRY_CANDIDATES = ("main.tsx", "main.jsx", "main.ts", "main.js", "index.tsx", "index.jsx", "index.ts", "index.js")


def scaffold_files(tree: VirtualFileTree, root: str, pkg: Dict[str, Any], framework: str) -> Dict[str, str]:
    """Minimal files the dev server needs to render anything. Only missing ones."""
    files: Dict[str, str] = {}
    deps = all_dependencies(pkg)
    uses_react = "react" in deps

    def missing(rel: str) -> bool:
        return tree.get_file(posixpath.join(root, rel)) is None

    if framework == "vite":
        entry = next((name for name in ENTRY_CANDIDATES if not missing(f"src/{name}")), None)
        if entry is None:
            entry = "main.jsx" if uses_react else "main.js"
            files[f"src/{entry}"] = REACT_MAIN if uses_react else VANILLA_MAIN
            if uses_react and all(missing(f"src/App.{ext}") for ext in ("tsx", "jsx", "ts", "js")):
                files["src/App.jsx"] = REACT_APP
        if missing("index.html"):
            files["index.html"] = VITE_INDEX_HTML.format(entry=entry)

    elif framework == "next":
        has_app_dir = any(not missing(f"app/page.{ext}") for ext in ("tsx", "jsx", "js", "ts"))
        has_src_app = any(not missing(f"src/app/page.{ext}") for ext in ("tsx", "jsx", "js", "ts"))
        has_pages = any(
            not missing(f"{base}pages/index.{ext}")
            for base in ("", "src/")
            for ext in ("tsx", "jsx", "js", "ts")
        )
        if not (has_app_dir or has_src_app or has_pages):
            files["app/page.jsx"] = NEXT_PAGE
            if all(missing(f"app/layout.{ext}") for ext in ("tsx", "jsx", "js", "ts")):
                files["app/layout.jsx"] = NEXT_LAYOUT

    return {posixpath.join(root, rel): content for rel, content in files.items()}
