# streambuild/runtime/shell.py
"""
Shell command classification and normalization.

Model output mixes npm, yarn and npx freely, doubles up tool prefixes
("npm pnpm install") and uses redirections the sandbox shell does not
need. Everything is rewritten to the configured package manager.
"""
import re
from typing import Dict, List

PACKAGE_MANAGERS = ("npm", "yarn", "pnpm")

# Commands that start a long-running dev/preview server
SERVER_COMMAND_PATTERNS = [
    re.compile(r"\bnpm\s+run\s+dev\b"),
    re.compile(r"\bpnpm\s+run\s+dev\b"),
    re.compile(r"\byarn\s+dev\b"),
    re.compile(r"\bpnpm\s+dev\b"),
    re.compile(r"\bvite\s*$"),
    re.compile(r"\bvite\s+dev\b"),
    re.compile(r"\bnext\s+dev\b"),
    re.compile(r"\bnext\s+start\b"),
    re.compile(r"\bpnpm\s+run\s+start\b"),
    re.compile(r"\bnpm\s+run\s+start\b"),
    re.compile(r"\byarn\s+start\b"),
    re.compile(r"\bremix\s+dev\b"),
    re.compile(r"\bnuxt\s+dev\b"),
    re.compile(r"\bsvelte-kit\s+dev\b"),
    re.compile(r"\bastro\s+dev\b"),
    re.compile(r"\bng\s+serve\b"),
    re.compile(r"\bgatsby\s+develop\b"),
]

# Verb spelling per package manager
VERBS: Dict[str, Dict[str, str]] = {
    "pnpm": {"install": "pnpm install", "add": "pnpm add", "run": "pnpm run", "dlx": "pnpm dlx"},
    "npm": {"install": "npm install", "add": "npm install", "run": "npm run", "dlx": "npx"},
    "yarn": {"install": "yarn install", "add": "yarn add", "run": "yarn run", "dlx": "yarn dlx"},
}

_RESIDUAL_TAGS = re.compile(r"</?(?:action|artifact)[^>]*>", re.IGNORECASE)
_DUPLICATE_PREFIX = re.compile(r"^(?:(?:npm|yarn|pnpm)\s+)+(npm|yarn|pnpm)\s+", re.IGNORECASE)

_REDIRECTIONS = [
    (re.compile(r"\s*\d+>&\d+"), ""),       # 2>&1
    (re.compile(r"\s*>&\d+"), ""),          # >&2
    (re.compile(r"\s*\d+>(?!&)"), " >"),    # 2> file  ->  > file
    (re.compile(r"\s*[>&]+\d+\s*$"), ""),   # dangling >&56
    (re.compile(r"\|\s*tee\s+[^|&;]+"), ""),
]


def is_server_command(command: str) -> bool:
    command = command.strip()
    return any(pattern.search(command) for pattern in SERVER_COMMAND_PATTERNS)


def strip_residual_tags(command: str) -> str:
    return _RESIDUAL_TAGS.sub("", command)


def _translate(line: str, pm: str) -> str:
    verbs = VERBS.get(pm, VERBS["pnpm"])
    line = _DUPLICATE_PREFIX.sub(r"\1 ", line)

    match = re.match(r"^(npm|yarn|pnpm)\s+(install|i|add)\b\s*(.*)$", line, re.IGNORECASE)
    if match:
        verb, args = match.group(2).lower(), match.group(3).strip()
        if not args:
            return verbs["install"]
        if verb == "add" or any(not token.startswith("-") for token in args.split()):
            return f"{verbs['add']} {args}"
        return f"{verbs['install']} {args}"

    match = re.match(r"^(npm\s+run|yarn(?:\s+run)?|pnpm(?:\s+run)?)\s+(dev|start|build|preview)\b(.*)$", line, re.IGNORECASE)
    if match:
        return f"{verbs['run']} {match.group(2).lower()}{match.group(3)}"

    if re.match(r"^npx\b", line, re.IGNORECASE):
        return re.sub(r"^npx\b", verbs["dlx"], line, flags=re.IGNORECASE)

    if not re.match(rf"^{pm}\b", line):
        for other in PACKAGE_MANAGERS:
            if other != pm:
                line = re.sub(rf"\b{other}\b(?!-)", pm, line)
        if pm != "npm":
            line = re.sub(r"\bnpx\b", verbs["dlx"], line)
    return line


def _strip_redirections(line: str) -> str:
    for pattern, replacement in _REDIRECTIONS:
        line = pattern.sub(replacement, line)
    return re.sub(r"\s+", " ", line).strip()


def normalize_command(command: str, package_manager: str = "pnpm") -> str:
    """
    Rewrite ``command`` for the sandbox shell.

    Each line is normalized on its own; multiple lines are chained with &&.
    """
    command = strip_residual_tags(command)
    lines: List[str] = []
    for raw_line in command.splitlines():
        line = re.sub(r"[ \t]+", " ", raw_line).strip()
        if not line or line.startswith("#"):
            continue
        parts = [
            _strip_redirections(_translate(part.strip(), package_manager))
            for part in re.split(r"\s&&\s", line)
        ]
        lines.append(" && ".join(p for p in parts if p))
    return " && ".join(lines)


def is_bare_install(command: str, package_manager: str = "pnpm") -> bool:
    """True for a plain dependency install, optionally after a cd."""
    last = command.split("&&")[-1].strip()
    return bool(re.fullmatch(rf"{package_manager}\s+(?:install|i)", last))
