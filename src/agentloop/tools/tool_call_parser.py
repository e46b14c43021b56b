"""
Lenient parser for model-generated tool inputs.

Models frequently emit tool inputs that are *almost* JSON, for example
    {'detectorName': 'abc', 'indices': 'sample-data' }
with single quotes, or with Python-style triple-quoted strings.  :func:`parse_action_input` accepts
strict JSON first and falls back to a shallow, quote-agnostic reader.  Every value is delivered
as a string: quoted scalars lose their quotes, nested objects and lists keep their raw text.
"""

import json
from typing import (
    Dict,
    List,
    Tuple,
)


class ToolCallParseError(RuntimeError):
    """Raised when an action input cannot be read as a flat key/value object."""


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
_WS = " \t\r\n"
_QUOTE_SET = {"'", '"'}
_CLOSERS = {"{": "}", "[": "]"}


def _skip_ws(s: str, i: int) -> int:
    while i < len(s) and s[i] in _WS:
        i += 1
    return i


def _read_quoted(s: str, i: int) -> Tuple[str, int]:
    """Read a quoted string starting at *i*, honouring back-slash escapes and triple quotes."""
    triple = s[i : i + 3]
    if triple in ("'''", '"""'):
        end = s.find(triple, i + 3)
        if end < 0:
            raise ToolCallParseError("unterminated triple-quoted string")
        return s[i + 3 : end], end + 3

    quote = s[i]
    if quote not in _QUOTE_SET:
        raise ToolCallParseError(f"expected quote at pos {i}")
    i += 1
    out: List[str] = []
    while i < len(s):
        ch = s[i]
        if ch == "\\" and i + 1 < len(s):
            out.append(s[i + 1])
            i += 2
            continue
        if ch == quote:
            return "".join(out), i + 1
        out.append(ch)
        i += 1
    raise ToolCallParseError("unterminated string literal")


def _find_closing(s: str, i: int) -> int:
    """Given an opening bracket at ``s[i]``, return the index just past its matching closer."""
    stack: List[str] = []
    while i < len(s):
        ch = s[i]
        if ch in _QUOTE_SET:
            _, i = _read_quoted(s, i)
            continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                return i + 1
        i += 1
    raise ToolCallParseError("unbalanced brackets")


def _read_key(s: str, i: int) -> Tuple[str, int]:
    i = _skip_ws(s, i)
    if s[i] in _QUOTE_SET:
        key, i = _read_quoted(s, i)
    else:
        # tolerate bare identifiers: {name: 'x'}
        start = i
        while i < len(s) and s[i] not in ":" + _WS:
            i += 1
        key = s[start:i]
    i = _skip_ws(s, i)
    if i >= len(s) or s[i] != ":":
        raise ToolCallParseError(f"missing ':' after key {key!r}")
    return key, i + 1


def _read_value(s: str, i: int) -> Tuple[str, int]:
    i = _skip_ws(s, i)
    if i >= len(s):
        raise ToolCallParseError("unexpected end of input while reading value")

    if s[i] in _QUOTE_SET:
        return _read_quoted(s, i)
    if s[i] in _CLOSERS:
        j = _find_closing(s, i)
        return s[i:j], j  # keep nested containers as raw text

    # bare scalar: read until the top-level comma or closing brace
    start = i
    while i < len(s) and s[i] not in ",}":
        i += 1
    return s[start:i].strip(), i


def _parse_shallow_dict(s: str) -> Dict[str, str]:
    """Read ``{k: v, ...}`` keeping every value as a string."""
    i = _skip_ws(s, 0)
    if not s.startswith("{", i):
        raise ToolCallParseError("object must start with '{'")
    out: Dict[str, str] = {}
    i = _skip_ws(s, i + 1)
    while not s.startswith("}", i):
        if i >= len(s):
            raise ToolCallParseError("unexpected end of input in object")
        key, i = _read_key(s, i)
        out[key], i = _read_value(s, i)
        i = _skip_ws(s, i)
        if s.startswith(",", i):
            i = _skip_ws(s, i + 1)
    return out


def _stringify(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------
def parse_action_input(text: str) -> Dict[str, str]:
    """
    Read *text* as a flat key/value object.

    Strict JSON is tried first; anything else goes through the shallow reader, which accepts
    single quotes and bare keys.  Nested values are returned as their JSON (or raw) text.

    Raises
    ------
    ToolCallParseError
        If *text* is not an object in either syntax.
    """
    stripped = text.strip()
    if not stripped.startswith("{"):
        raise ToolCallParseError("action input is not an object")

    try:
        decoded = json.loads(stripped)
    except json.JSONDecodeError:
        return _parse_shallow_dict(stripped)

    if not isinstance(decoded, dict):
        raise ToolCallParseError("action input is not an object")
    return {str(key): _stringify(value) for key, value in decoded.items()}
