# streambuild/runtime/sanitize.py
"""
Content sanitization for model-written files.
"""
import json
import re
from typing import Any, Optional

DIRECTIVE_TAG_REGEX = re.compile(r"</?(?:action|artifact)(?=[\s>/])[^>]*>", re.IGNORECASE)


def extract_code(content: str, lang_hint: Optional[str] = None) -> str:
    """
    Unwrap a file body the model fenced by mistake and drop leaked directive
    tags. Fences inside the file (a README with examples) are left alone.
    """
    lang = re.escape(lang_hint) if lang_hint else r"[a-zA-Z0-9_+-]*"
    stripped = content.strip()
    match = re.fullmatch(rf"```{lang}[ \t]*\n([\s\S]*?)\n?```", stripped)
    body = match.group(1) if match else stripped
    return DIRECTIVE_TAG_REGEX.sub("", body).strip()


def safe_json_parse(text: str, fallback: Any = None) -> Any:
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return fallback
