"""
Shell command classification and normalization tests.
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from streambuild.runtime.sanitize import extract_code, safe_json_parse
from streambuild.runtime.shell import is_bare_install, is_server_command, normalize_command


@pytest.mark.parametrize("command", [
    "npm run dev",
    "pnpm run dev",
    "pnpm dev",
    "yarn dev",
    "yarn start",
    "npm run start",
    "vite",
    "npx vite",
    "vite dev --open",
    "next dev",
    "remix dev",
    "nuxt dev",
    "astro dev",
    "ng serve",
    "gatsby develop",
    "cd app && npm run dev",
])
def test_server_commands_are_detected(command):
    assert is_server_command(command)


@pytest.mark.parametrize("command", [
    "npm install",
    "pnpm build",
    "next build",
    "vite build",
    "ls -la",
    "npm run develop",
    "pnpm run devtools",
    "yarn starter",
])
def test_ordinary_commands_are_not_servers(command):
    assert not is_server_command(command)


def test_npm_install_becomes_canonical_install():
    assert normalize_command("npm install") == "pnpm install"
    assert normalize_command("npm i") == "pnpm install"


@pytest.mark.parametrize("command,expected", [
    ("npm install react react-dom", "pnpm add react react-dom"),
    ("npm i -D vite", "pnpm add -D vite"),
    ("npm install --frozen-lockfile", "pnpm install --frozen-lockfile"),
    ("yarn add zustand", "pnpm add zustand"),
    ("npm pnpm install", "pnpm install"),
    ("yarn start", "pnpm run start"),
    ("npx create-vite@latest app", "pnpm dlx create-vite@latest app"),
    ("npm test 2>&1 | tee log.txt", "pnpm test"),
    ("echo hi >&2", "echo hi"),
])
def test_commands_are_rewritten_for_pnpm(command, expected):
    assert normalize_command(command) == expected


def test_npm_as_configured_manager():
    assert normalize_command("pnpm add lodash", "npm") == "npm install lodash"
    assert normalize_command("npx tsc", "npm") == "npx tsc"


def test_lines_are_chained_and_comments_dropped():
    command = "# set up\ncd app\n\nnpm install"
    assert normalize_command(command) == "cd app && pnpm install"


def test_leaked_directive_tags_are_removed():
    assert normalize_command("ls -la</action>") == "ls -la"


def test_bare_install_detection():
    assert is_bare_install("pnpm install")
    assert is_bare_install("cd app && pnpm install")
    assert not is_bare_install("pnpm add react")
    assert not is_bare_install("pnpm install --frozen-lockfile")


# ════════════════════════════════════════════════════════════════════
# CONTENT SANITIZATION
# ════════════════════════════════════════════════════════════════════

def test_fenced_file_body_is_unwrapped():
    assert extract_code("```jsx\nconst a = 1;\n```") == "const a = 1;"


def test_inner_fences_are_kept():
    readme = "# Title\n\n```bash\npnpm dev\n```\n\nMore text"
    assert extract_code(readme) == readme


def test_directive_tags_are_stripped_from_content():
    assert extract_code('body</action><artifact id="x">') == "body"


def test_safe_json_parse_falls_back():
    assert safe_json_parse('{"a": 1}') == {"a": 1}
    assert safe_json_parse("{broken", fallback={}) == {}
