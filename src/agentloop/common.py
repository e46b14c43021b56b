"""Common utility functions for the project."""

import json
import re
from enum import Enum
from typing import (
    Any,
    Container,
    List,
    Mapping,
    Tuple,
)

PARAMETERS_PREFIX = "${parameters."
"""Placeholder prefix used by prompt templates and tool input templates."""


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


# ---------------------------------------------------------------------------
# Placeholder substitution
# ---------------------------------------------------------------------------
def _placeholder_pattern(prefix: str) -> "re.Pattern[str]":
    # ${parameters.key} or ${parameters.key:-default}
    return re.compile(re.escape(prefix) + r"([^}:]+?)(?::-([^}]*))?\}")


def to_output_string(output: Any) -> str:
    """Render a tool or model output as text; containers are serialized to JSON."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


def substitute(
    template: str | None,
    values: Mapping[str, Any],
    prefix: str = PARAMETERS_PREFIX,
    *,
    blank_missing: bool = False,
    keep: Container[str] = (),
) -> str:
    """
    Replace ``<prefix>key}`` placeholders in *template* with entries of *values*.

    Substitution is a single pass: inserted values are never rescanned, so a value that
    happens to contain placeholder syntax is kept literally.

    Parameters
    ----------
    template:
        Text containing placeholders.  ``None`` renders as an empty string.
    values:
        Mapping of placeholder keys to replacement values.  Non-string values are
        serialized with :func:`to_output_string`.
    prefix:
        Opening sequence of a placeholder (the closing one is always ``}``).
    blank_missing:
        When *True*, placeholders without a value and without a ``:-default`` render as
        ``""``; otherwise they are left untouched for a later pass.
    keep:
        Keys that are never blanked, even with *blank_missing* set.
    """
    if not template:
        return ""

    def _replace(match: "re.Match[str]") -> str:
        key, default = match.group(1), match.group(2)
        value = values.get(key)
        if value is not None:
            return to_output_string(value)
        if default is not None:
            return default
        if blank_missing and key not in keep:
            return ""
        return match.group(0)

    return _placeholder_pattern(prefix).sub(_replace, template)


# ---------------------------------------------------------------------------
# Path reads over decoded JSON
# ---------------------------------------------------------------------------
_PATH_TOKEN = re.compile(r"\[(\d+|\*)\]|\.?([^.\[\]]+)")


def _tokenize_path(path: str) -> List[Tuple[str, str]]:
    path = path.strip()
    if path.startswith("$"):
        path = path[1:]
    return [(m.group(1) or "", m.group(2) or "") for m in _PATH_TOKEN.finditer(path)]


def _walk(node: Any, tokens: List[Tuple[str, str]]) -> Any:
    for pos, (index, key) in enumerate(tokens):
        if node is None:
            return None
        if index == "*":
            if not isinstance(node, list):
                return None
            rest = tokens[pos + 1 :]
            matches = [_walk(item, rest) for item in node]
            return [item for item in matches if item is not None]
        if index:
            i = int(index)
            node = node[i] if isinstance(node, list) and i < len(node) else None
        else:
            node = node.get(key) if isinstance(node, Mapping) else None
    return node


def read_path(data: Any, path: str | None) -> Any:
    """
    Read a value out of decoded JSON using a small JSONPath subset.

    Supported forms: ``$.a.b``, ``a.b``, ``a[0]``, and the ``[*]`` wildcard which maps
    the rest of the path over a list and drops items where it does not resolve.
    Returns *None* when any step is missing.
    """
    if not path:
        return None
    return _walk(data, _tokenize_path(path))
