"""
The PARSE template engine.

A template is a blank-separated list of tokens. Numeric tokens move a cursor,
name tokens bind pieces of the source string. The cursor is used both as a
character offset (for positional pieces) and as a word index (for word
pieces); scripts in the wild rely on that, so it is kept as is.
"""
import math
from typing import Callable, List

from arexx.arexx_datatypes import Value, js_substring, to_number

PLACEHOLDER = "."


def _position(token: str):
    """Numeric value of a template token, or None for names."""
    n = to_number(token)
    if isinstance(n, float) and math.isnan(n):
        return None
    return n


def parse_template(source: str, template: str, assign: Callable[[str, Value], None]) -> List[str]:
    """Binds pieces of `source` per `template` through `assign`; returns the bound names."""
    tokens = template.split()
    cursor = 0
    bound = []
    words = None

    for i, token in enumerate(tokens):
        pos = _position(token)
        if pos is not None:
            cursor = int(pos) - 1
            continue

        nxt = _position(tokens[i + 1]) if i + 1 < len(tokens) else None
        if nxt is not None:
            # Name followed by a position: substring up to that position.
            piece = js_substring(source, cursor, int(nxt) - 1)
        else:
            if words is None:
                words = source.split()
            if cursor < len(words):
                piece = words[cursor] if cursor >= 0 else ""
                cursor += 1
            else:
                piece = ""

        if token != PLACEHOLDER:
            assign(token, piece)
            bound.append(token.upper())
    return bound
