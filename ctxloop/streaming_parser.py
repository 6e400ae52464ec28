"""Incremental extraction of inline JSON tool calls from a streamed response.

A tool call is a JSON object of the form ``{"tool": "<name>", "args": {...}}``
that starts at the beginning of a line (only spaces or tabs may precede the
brace). Anything else that merely looks like a call, such as an example in a
code comment or inside a fenced code block, is treated as plain text.

The parser only decides when the buffered text is sufficient to decide, so the
result never depends on where the stream was split into chunks.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .logger import get_logger
from .messages import ToolCall

_log = get_logger(__name__)

__all__ = [
    "ParserState", "StreamingToolParser", "find_json_object_end",
    "clean_llm_tokens", "TOOL_CALL_ANCHORS",
]

TOOL_CALL_ANCHORS = ('{"tool":', '{ "tool":', '{"tool" :', '{ "tool" :')

# Characters that may open a continuation line of a JSON object.
_JSON_LINE_STARTS = set('"{}[]:,-0123456789tfn')

_PROSE_KEY_MARKERS = ("I'll", "Let me", "Here's", "I can", "I need", "First", "Now", "The ")

_CHAT_TEMPLATE_TOKENS = ("<|im_end|>", "</s>", "[/INST]", "<</SYS>>")

_WAIT = object()
_INVALIDATED = object()


def find_json_object_end(text: str, start: int) -> Optional[int]:
    """Index of the brace closing the object opened at ``text[start]``.

    Braces inside JSON strings are ignored. Returns None if the object is
    not closed within ``text``.
    """
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def clean_llm_tokens(text: str) -> str:
    """Strip chat-template control tokens some backends leak into content."""
    for token in _CHAT_TEMPLATE_TOKENS:
        text = text.replace(token, "")
    return text


def _match_anchor(buf: str, pos: int) -> Optional[bool]:
    """True if an anchor starts at ``pos``, None if more text is needed."""
    need_more = False
    for pattern in TOOL_CALL_ANCHORS:
        segment = buf[pos:pos + len(pattern)]
        if segment == pattern:
            return True
        if len(segment) < len(pattern) and pattern.startswith(segment):
            need_more = True
    return None if need_more else False


def _is_prose_key(key: str) -> bool:
    return len(key) > 100 or "\n" in key or key.startswith(_PROSE_KEY_MARKERS)


@dataclass
class ParserState:
    """Everything the parser knows about the current response."""
    buffer: str = ""
    # Idle scanning
    scan_pos: int = 0
    at_line_start: bool = True
    in_fence: bool = False
    # Capturing
    capturing: bool = False
    capture_start: int = 0
    capture_pos: int = 0
    depth: int = 0
    in_string: bool = False
    escape: bool = False
    # Output
    spans: List[Tuple[int, int]] = field(default_factory=list)
    calls: List[ToolCall] = field(default_factory=list)
    consumed: int = 0
    native_ids: set = field(default_factory=set)

    def start_capture(self, pos: int) -> None:
        self.capturing = True
        self.capture_start = pos
        self.capture_pos = pos
        self.depth = 0
        self.in_string = False
        self.escape = False


class StreamingToolParser:
    def __init__(self):
        self.state = ParserState()
        self._next_id = 0

    def reset(self) -> None:
        """Forget the current response. Call between model turns."""
        self.state = ParserState()

    def process_chunk(self, text: str,
                      native_tool_calls: Optional[Sequence[ToolCall]] = None) -> List[ToolCall]:
        """Feed one streamed fragment; return calls completed by it."""
        state = self.state
        completed: List[ToolCall] = []

        for call in native_tool_calls or ():
            if call.id in state.native_ids:
                continue
            state.native_ids.add(call.id)
            state.calls.append(call)
            completed.append(call)

        if text:
            state.buffer += text

        while True:
            if state.capturing:
                outcome = self._scan_capture()
                if outcome is _WAIT:
                    break
                if isinstance(outcome, ToolCall):
                    completed.append(outcome)
                continue
            if not self._scan_idle():
                break

        return completed

    # ── Queries ──

    @property
    def tool_calls(self) -> List[ToolCall]:
        return list(self.state.calls)

    def has_incomplete_tool_call(self) -> bool:
        """A line-anchored candidate is open and unbalanced."""
        return self.state.capturing

    def incomplete_tool_call_text(self) -> str:
        state = self.state
        return state.buffer[state.capture_start:] if state.capturing else ""

    def has_unexecuted_tool_call(self) -> bool:
        """A complete call was parsed but not yet marked as dispatched."""
        return len(self.state.calls) > self.state.consumed

    def mark_tool_calls_consumed(self) -> None:
        self.state.consumed = len(self.state.calls)

    def unconsumed_tool_calls(self) -> List[ToolCall]:
        return self.state.calls[self.state.consumed:]

    def get_text_content(self) -> str:
        """Response text with the JSON of parsed calls (and any open candidate) removed."""
        state = self.state
        end = state.capture_start if state.capturing else len(state.buffer)
        pieces = []
        cursor = 0
        for start, stop in state.spans:
            if start >= end:
                break
            pieces.append(state.buffer[cursor:start])
            cursor = stop
        if cursor < end:
            pieces.append(state.buffer[cursor:end])
        return "".join(pieces)

    @property
    def raw_text(self) -> str:
        return self.state.buffer

    def text_before_tool_calls(self) -> str:
        state = self.state
        if not state.spans:
            return self.get_text_content()
        return state.buffer[:state.spans[0][0]]

    # ── Scanning ──

    def _scan_idle(self) -> bool:
        """Look for an anchor. Returns True once a capture has started."""
        state = self.state
        buf = state.buffer
        while state.scan_pos < len(buf):
            if not state.at_line_start:
                nl = buf.find("\n", state.scan_pos)
                if nl == -1:
                    state.scan_pos = len(buf)
                    return False
                state.scan_pos = nl + 1
                state.at_line_start = True
                continue

            k = state.scan_pos
            while k < len(buf) and buf[k] in " \t":
                k += 1
            if k == len(buf):
                return False
            ch = buf[k]
            if ch == "\n":
                state.scan_pos = k + 1
                continue

            if ch == "`":
                fence = buf[k:k + 3]
                if fence == "```":
                    state.in_fence = not state.in_fence
                elif len(fence) < 3 and "```".startswith(fence):
                    return False
            elif ch == "{" and not state.in_fence:
                anchored = _match_anchor(buf, k)
                if anchored is None:
                    return False
                if anchored:
                    state.start_capture(k)
                    return True

            state.scan_pos = k
            state.at_line_start = False
        return False

    def _scan_capture(self):
        state = self.state
        buf = state.buffer
        i = state.capture_pos
        while i < len(buf):
            ch = buf[i]
            if state.in_string:
                if state.escape:
                    state.escape = False
                elif ch == "\\":
                    state.escape = True
                elif ch == '"':
                    state.in_string = False
                elif ch == "\n":
                    return self._invalidate(i, "raw newline inside a string")
            elif ch == '"':
                state.in_string = True
            elif ch == "{":
                state.depth += 1
            elif ch == "}":
                state.depth -= 1
                if state.depth == 0:
                    return self._complete(i)
            elif ch == "\n":
                verdict = self._newline_verdict(i + 1)
                if verdict is _WAIT:
                    state.capture_pos = i
                    return _WAIT
                if verdict is _INVALIDATED:
                    return self._invalidate(i, "prose after newline")
                if verdict is not None:
                    _log.debug("Tool call restarted at offset %d, dropping partial call", verdict)
                    state.start_capture(verdict)
                    i = verdict
                    continue
            i += 1
        state.capture_pos = i
        return _WAIT

    def _newline_verdict(self, pos: int):
        """Decide what the line after a newline inside a candidate means.

        Returns None to keep capturing, the offset of a new anchor (stutter),
        ``_INVALIDATED``, or ``_WAIT`` when the line is not visible yet.
        """
        buf = self.state.buffer
        k = pos
        while k < len(buf) and buf[k] in " \t\n":
            k += 1
        if k == len(buf):
            return _WAIT
        ch = buf[k]
        if ch == "{":
            anchored = _match_anchor(buf, k)
            if anchored is None:
                return _WAIT
            return k if anchored else None
        if ch in _JSON_LINE_STARTS:
            return None
        return _INVALIDATED

    def _invalidate(self, newline_pos: int, reason: str):
        state = self.state
        _log.debug("Discarding tool call candidate at %d: %s", state.capture_start, reason)
        state.capturing = False
        state.scan_pos = newline_pos + 1
        state.at_line_start = True
        return _INVALIDATED

    def _complete(self, end: int):
        state = self.state
        start = state.capture_start
        raw = state.buffer[start:end + 1]
        state.capturing = False
        state.capture_pos = end + 1
        state.scan_pos = end + 1
        state.at_line_start = False

        call = self._build_call(raw)
        if call is None:
            return _INVALIDATED
        state.spans.append((start, end + 1))
        state.calls.append(call)
        return call

    def _build_call(self, raw: str) -> Optional[ToolCall]:
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            _log.debug("Tool call candidate is not valid JSON: %s", e)
            return None
        if not isinstance(obj, dict) or not isinstance(obj.get("tool"), str):
            return None
        args: Any = obj.get("args", {})
        if args is None:
            args = {}
        if not isinstance(args, dict):
            return None
        if any(_is_prose_key(k) for k in list(obj) + list(args)):
            _log.debug("Tool call candidate rejected: prose-like key")
            return None

        self._next_id += 1
        return ToolCall(id=f"tool_{self._next_id}", name=obj["tool"], arguments=args)

    def snapshot(self) -> Dict[str, Any]:
        """Diagnostic view of the parser state."""
        state = self.state
        return {
            "buffer_len": len(state.buffer),
            "capturing": state.capturing,
            "depth": state.depth,
            "calls": len(state.calls),
            "consumed": state.consumed,
        }
