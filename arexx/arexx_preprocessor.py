"""
Turns raw script text into the ordered line list the executor walks, and
indexes labels for SIGNAL. Also holds the small lexical helpers shared by the
evaluator (block matching, top-level splitting, parenthesis matching).
"""
import re
from typing import List, Optional

from arexx.arexx_datatypes import PreparedScript

LABEL_RE = re.compile(r"^[A-Za-z_@#$!?.][\w@#$!?.]*:$")

# Keywords that open a block closed by END.
BLOCK_OPENERS = ("DO", "SELECT", "PROCEDURE")


def is_label(line: str) -> bool:
    return bool(LABEL_RE.match(line))


def is_comment(line: str) -> bool:
    return line.startswith("/*") or line.startswith("//")


def first_word(line: str) -> str:
    """Uppercased first blank-delimited word of a line."""
    parts = line.split(None, 1)
    return parts[0].upper() if parts else ""


def after_keyword(line: str) -> str:
    """The text following the first word, stripped."""
    parts = line.strip().split(None, 1)
    return parts[1].strip() if len(parts) > 1 else ""


def preprocess(source: str) -> PreparedScript:
    """Filters comments and blanks, keeping source line numbers, then indexes labels."""
    script = PreparedScript(source=source)
    in_block = False
    for lineno, raw in enumerate(source.split("\n"), start=1):
        line = raw
        cut = line.find("//")
        if cut != -1:
            line = line[:cut]
        line = line.strip()
        if in_block:
            if "*/" in line:
                in_block = False
            continue
        if not line:
            continue
        if line.startswith("/*"):
            if "*/" not in line[2:]:
                in_block = True
            continue
        if line.endswith("*/"):
            continue
        script.lines.append(line)
        script.line_numbers.append(lineno)
    script.labels = index_labels(script.lines)
    return script


def index_labels(lines: List[str]) -> dict:
    labels = {}
    for i, line in enumerate(lines):
        if is_label(line):
            labels[line[:-1].upper()] = i
    return labels


def find_matching_end(lines: List[str], start: int) -> int:
    """Index of the END closing the block opened at `start`, or -1."""
    depth = 1
    for i in range(start + 1, len(lines)):
        word = first_word(lines[i])
        if word in BLOCK_OPENERS:
            depth += 1
        elif word == "END":
            depth -= 1
            if depth == 0:
                return i
    return -1


def closing_paren(text: str, open_index: int) -> Optional[int]:
    """Index of the parenthesis closing the one at `open_index`, skipping quoted text."""
    depth = 0
    quote = None
    for i in range(open_index, len(text)):
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    return None


def split_top_level(text: str, sep: str) -> List[str]:
    """Splits on `sep` wherever it occurs outside quotes and parentheses."""
    parts = []
    current = []
    depth = 0
    quote = None
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif depth == 0 and text.startswith(sep, i):
            parts.append("".join(current))
            current = []
            i += len(sep)
            continue
        current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts
