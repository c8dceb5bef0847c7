"""
Delimiter escaping for ctxlog field values.

A persisted line is "<number>|<content>", and a content starting with "@"
opens a new section. Any user-controlled string (ids, free text, metadata
keys and values) therefore has to be escaped before it becomes part of a
line, or it could forge line numbers, split a record across lines, or
inject a fake section header.

Escapes applied by sanitize(), in order:
    \\         -> \\\\
    |          -> \\|
    CR         -> \\r
    LF         -> \\n
    @TAG       -> \\@TAG      (any run of [A-Z_] after "@")

unescape() is the exact inverse: unescape(sanitize(s)) == s for every
string s. Escaping the backslash itself is what makes that hold for input
that already contains text such as "\\n".
"""

import re
from typing import Any

_TAG_PATTERN = re.compile(r"@(?=[A-Z_])")

_UNESCAPES = {
    "\\": "\\",
    "|": "|",
    "n": "\n",
    "r": "\r",
    "@": "@",
}


def sanitize(value: Any) -> str:
    """
    Escape a value so it is safe inside a single pipe-delimited line.

    Args:
        value: Any value; None becomes "", non-strings go through str()

    Returns:
        The escaped string (never contains a raw newline or bare "|")

    Examples:
        sanitize("a|b") -> "a\\|b"
        sanitize("line1\\nline2") -> "line1\\\\nline2"
        sanitize("see @DECISIONS") -> "see \\@DECISIONS"
    """
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)

    text = (
        text.replace("\\", "\\\\")
        .replace("|", "\\|")
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )
    return _TAG_PATTERN.sub(r"\\@", text)


def unescape(value: str) -> str:
    """
    Reverse sanitize().

    Unknown escape sequences (possible in hand-edited files) and a trailing
    lone backslash are kept verbatim rather than rejected.
    """
    if "\\" not in value:
        return value

    out: list[str] = []
    i = 0
    length = len(value)
    while i < length:
        char = value[i]
        if char == "\\" and i + 1 < length:
            nxt = value[i + 1]
            replacement = _UNESCAPES.get(nxt)
            if replacement is not None:
                out.append(replacement)
                i += 2
                continue
        out.append(char)
        i += 1
    return "".join(out)


def contains_injection(value: Any) -> bool:
    """Report whether a raw value would change under sanitize()."""
    if value is None:
        return False
    text = value if isinstance(value, str) else str(value)
    return sanitize(text) != text

