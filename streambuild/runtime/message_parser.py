# streambuild/runtime/message_parser.py
"""
Streaming Directive Parser

Turns the cumulative text of a model turn into:
  1. artifact/action callbacks, each fired exactly once per directive
  2. display-safe output where every artifact is replaced by a placeholder

parse() is called again and again with the growing text of the same turn.
The scan resumes at the last committed cursor and halts on any tag that is
not complete yet, so the callbacks and the output do not depend on how the
stream was chunked.

Wire format:
    <artifact title="..." id="...">
      <action type="file" filePath="src/App.tsx">...</action>
      <action type="shell">pnpm install</action>
    </artifact>
"""
import json
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, NamedTuple, Optional

from streambuild.core.config import ParserSettings
from streambuild.core.exceptions import ParseError
from streambuild.core.logging import log

ARTIFACT_TAG_OPEN = "<artifact"
ARTIFACT_TAG_CLOSE = "</artifact>"
ACTION_TAG_OPEN = "<action"
ACTION_TAG_CLOSE = "</action>"

DEFAULT_FILE_PATH = "untitled.txt"

# Fence line directly before an artifact tag, e.g. ```xml\n<artifact
_FENCE_OPEN = re.compile(r"```[a-zA-Z0-9_-]*(\s*)")
# Closing fence directly after </artifact>
_FENCE_CLOSE = re.compile(r"\s*\n```")
_FENCE_CLOSE_PARTIAL = re.compile(r"\s*(?:\n`{1,2})?")


# ═══════════════════════════════════════════════════════════════════════════════
# DATA
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ArtifactData:
    id: str
    title: str


@dataclass
class ActionData:
    kind: str  # "file" | "shell" | whatever the model wrote
    content: str = ""
    file_path: Optional[str] = None


@dataclass
class ArtifactCallbackData:
    turn_id: str
    id: str
    title: str


@dataclass
class ActionCallbackData:
    turn_id: str
    artifact_id: str
    action_id: str
    action: ActionData


@dataclass
class ParserCallbacks:
    on_artifact_open: Optional[Callable[[ArtifactCallbackData], None]] = None
    on_artifact_close: Optional[Callable[[ArtifactCallbackData], None]] = None
    on_action_open: Optional[Callable[[ActionCallbackData], None]] = None
    on_action_close: Optional[Callable[[ActionCallbackData], None]] = None


class Phase(str, Enum):
    OUTSIDE = "outside"
    INSIDE_ARTIFACT = "inside_artifact"
    INSIDE_ACTION = "inside_action"


@dataclass
class ParserState:
    processed_length: int = 0
    phase: Phase = Phase.OUTSIDE
    current_artifact: Optional[ArtifactData] = None
    current_action: Optional[ActionData] = None
    action_counter: int = 0
    fence: Optional[str] = None  # "open" while a fenced artifact is parsed, "close" after it
    output: str = ""
    last_accessed: float = field(default_factory=time.time)


class Step(NamedTuple):
    cursor: int
    emitted: str = ""
    halt: bool = False
    # Shown after the committed output but not committed; a fence may still vanish
    provisional: bool = False


def create_artifact_element(turn_id: str) -> str:
    return f'<div class="__artifact__" data-turn-id={json.dumps(turn_id)}></div>'


def extract_attribute(tag: str, name: str) -> Optional[str]:
    """Double quotes, then single quotes, then a bare value. Case-insensitive."""
    prefix = rf"(?<![\w-]){re.escape(name)}\s*="
    for pattern in (prefix + r'\s*"([^"]*)"', prefix + r"\s*'([^']*)'", prefix + r"\s*([^\s>\"']+)"):
        match = re.search(pattern, tag, re.IGNORECASE)
        if match:
            return match.group(1)
    return None


# ═══════════════════════════════════════════════════════════════════════════════
# PARSER
# ═══════════════════════════════════════════════════════════════════════════════

class StreamingMessageParser:
    def __init__(
        self,
        callbacks: Optional[ParserCallbacks] = None,
        artifact_element: Callable[[str], str] = create_artifact_element,
        config: Optional[ParserSettings] = None,
        strip_markdown_fences: Optional[bool] = None,
    ) -> None:
        config = config or ParserSettings()
        self.callbacks = callbacks or ParserCallbacks()
        self.artifact_element = artifact_element
        self.max_turns = config.max_turns_in_memory
        self.strip_markdown_fences = (
            config.strip_markdown_fences if strip_markdown_fences is None else strip_markdown_fences
        )
        self._states: "OrderedDict[str, ParserState]" = OrderedDict()

        # Transition table: phase -> scanning step
        self._steps: Dict[Phase, Callable[[str, ParserState, str, int], Step]] = {
            Phase.OUTSIDE: self._scan_outside,
            Phase.INSIDE_ARTIFACT: self._scan_artifact,
            Phase.INSIDE_ACTION: self._scan_action,
        }

    @property
    def turn_count(self) -> int:
        return len(self._states)

    def reset(self, turn_id: Optional[str] = None) -> None:
        if turn_id is None:
            self._states.clear()
        else:
            self._states.pop(turn_id, None)

    def parse(self, turn_id: str, text: str) -> str:
        try:
            state = self._state_for(turn_id, len(text))

            tail = ""
            i = state.processed_length
            while i < len(text):
                step = self._steps[state.phase](turn_id, state, text, i)
                state.output += step.emitted
                i = state.processed_length = step.cursor
                if step.halt:
                    if step.provisional:
                        tail = text[i:]
                    break

            return state.output + tail
        except Exception as e:
            log("PARSER", f"Error parsing turn {turn_id}: {e}", level="error")
            # Raw input so nothing the model wrote is lost
            return text

    # =========================================================================
    # STATE
    # =========================================================================

    def _state_for(self, turn_id: str, length: int) -> ParserState:
        state = self._states.get(turn_id)
        if state is None:
            state = ParserState()
            self._states[turn_id] = state
            while len(self._states) > self.max_turns:
                evicted, _ = self._states.popitem(last=False)
                log("PARSER", f"Evicted parser state for turn {evicted}")
            return state

        self._states.move_to_end(turn_id)
        if length < state.processed_length:
            # Final message replaced the streamed one; start over
            log("PARSER", f"Input shrank for turn {turn_id}, resetting")
            state = ParserState()
            self._states[turn_id] = state
        else:
            state.last_accessed = time.time()
        return state

    # =========================================================================
    # STEPS
    # =========================================================================

    def _scan_outside(self, turn_id: str, state: ParserState, text: str, i: int) -> Step:
        if state.fence == "close":
            step = self._close_fence(state, text, i)
            if step is not None:
                return step

        lt = text.find("<", i)
        fence = text.find("```", i) if self.strip_markdown_fences else -1
        if fence != -1 and (lt == -1 or fence < lt):
            if fence > i:
                return Step(fence, text[i:fence])
            return self._open_fence(state, text, i)

        if lt == -1:
            end = len(text)
            if self.strip_markdown_fences:
                # Trailing backticks may grow into a fence
                end = max(len(text.rstrip("`")), i)
            if end < len(text):
                return Step(end, text[i:end], halt=True, provisional=True)
            return Step(len(text), text[i:])
        if lt > i:
            return Step(lt, text[i:lt])

        candidate = text[i:i + len(ARTIFACT_TAG_OPEN)]
        if not ARTIFACT_TAG_OPEN.startswith(candidate):
            return Step(i + 1, "<")
        if len(candidate) < len(ARTIFACT_TAG_OPEN):
            # Could still become an artifact tag
            return Step(i, halt=True)

        after = i + len(ARTIFACT_TAG_OPEN)
        if after < len(text) and text[after] != ">" and not text[after].isspace():
            # <artifacts, <artifact-foo ... plain text
            return Step(after, text[i:after])

        tag_end = text.find(">", after)
        if tag_end == -1:
            return Step(i, halt=True)

        tag = text[i:tag_end + 1]
        title = extract_attribute(tag, "title")
        artifact_id = extract_attribute(tag, "id")
        if not title:
            log("PARSER", "Artifact title missing", level="warning")
        if not artifact_id:
            log("PARSER", "Artifact id missing", level="warning")

        artifact = ArtifactData(
            id=artifact_id or f"artifact_{int(time.time() * 1000)}",
            title=title or "Untitled",
        )
        state.phase = Phase.INSIDE_ARTIFACT
        state.current_artifact = artifact

        if self.callbacks.on_artifact_open:
            self.callbacks.on_artifact_open(ArtifactCallbackData(turn_id, artifact.id, artifact.title))

        return Step(tag_end + 1, self.artifact_element(turn_id))

    def _scan_artifact(self, turn_id: str, state: ParserState, text: str, i: int) -> Step:
        artifact = self._require_artifact(state)

        action_idx = text.find(ACTION_TAG_OPEN, i)
        close_idx = text.find(ARTIFACT_TAG_CLOSE, i)

        if action_idx != -1 and (close_idx == -1 or action_idx < close_idx):
            after = action_idx + len(ACTION_TAG_OPEN)
            if after >= len(text):
                return Step(i, halt=True)
            if text[after] != ">" and not text[after].isspace():
                return Step(after)

            tag_end = text.find(">", after)
            if tag_end == -1:
                return Step(i, halt=True)

            action = self._parse_action_tag(text[action_idx:tag_end + 1])
            action_id = str(state.action_counter)
            state.action_counter += 1
            state.current_action = action
            state.phase = Phase.INSIDE_ACTION

            if self.callbacks.on_action_open:
                self.callbacks.on_action_open(ActionCallbackData(turn_id, artifact.id, action_id, action))
            return Step(tag_end + 1)

        if close_idx != -1:
            state.phase = Phase.OUTSIDE
            state.current_artifact = None
            if state.fence == "open":
                state.fence = "close"
            if self.callbacks.on_artifact_close:
                self.callbacks.on_artifact_close(ArtifactCallbackData(turn_id, artifact.id, artifact.title))
            return Step(close_idx + len(ARTIFACT_TAG_CLOSE))

        return Step(i, halt=True)

    def _scan_action(self, turn_id: str, state: ParserState, text: str, i: int) -> Step:
        artifact = self._require_artifact(state)
        action = state.current_action
        if action is None:
            raise ParseError("Action state lost", {"turn_id": turn_id})

        close_idx = text.find(ACTION_TAG_CLOSE, i)
        if close_idx == -1:
            return Step(i, halt=True)

        content = (action.content + text[i:close_idx]).strip()
        if action.kind == "file":
            content += "\n"
        action.content = content

        state.phase = Phase.INSIDE_ARTIFACT
        state.current_action = None

        if self.callbacks.on_action_close:
            self.callbacks.on_action_close(
                ActionCallbackData(turn_id, artifact.id, str(state.action_counter - 1), action)
            )
        return Step(close_idx + len(ACTION_TAG_CLOSE))

    def _open_fence(self, state: ParserState, text: str, i: int) -> Step:
        """Drop a fence line that opens an artifact; anything else stays text."""
        match = _FENCE_OPEN.match(text, i)
        after = match.end()
        if after >= len(text):
            return Step(i, halt=True, provisional=True)
        if "\n" not in match.group(1):
            return Step(i + 3, "```")

        head = text[after:after + len(ARTIFACT_TAG_OPEN)]
        if not ARTIFACT_TAG_OPEN.startswith(head):
            return Step(i + 3, "```")
        boundary = after + len(ARTIFACT_TAG_OPEN)
        if boundary >= len(text):
            return Step(i, halt=True, provisional=True)
        if text[boundary] != ">" and not text[boundary].isspace():
            return Step(i + 3, "```")

        state.fence = "open"
        return Step(after)

    def _close_fence(self, state: ParserState, text: str, i: int) -> Optional[Step]:
        match = _FENCE_CLOSE.match(text, i)
        if match:
            state.fence = None
            return Step(match.end())
        if _FENCE_CLOSE_PARTIAL.fullmatch(text, i):
            return Step(i, halt=True, provisional=True)
        state.fence = None
        return None

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _require_artifact(state: ParserState) -> ArtifactData:
        if state.current_artifact is None:
            raise ParseError("Artifact not initialized", {"phase": state.phase.value})
        return state.current_artifact

    @staticmethod
    def _parse_action_tag(tag: str) -> ActionData:
        kind = extract_attribute(tag, "type") or ""
        action = ActionData(kind=kind)

        if kind == "file":
            # Case-insensitive, so filepath= works too
            file_path = extract_attribute(tag, "filePath")
            if not file_path:
                log("PARSER", "File path not specified, using default")
                file_path = DEFAULT_FILE_PATH
            action.file_path = file_path
        elif kind != "shell":
            log("PARSER", f"Unknown action type '{kind}'", level="warning")

        return action
