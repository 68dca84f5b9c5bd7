"""
Defines the core data types for the AREXX runtime.

This module provides the value coercion rules, the variable tables and the
scope stack shared by every component during one script run, the procedure
record, the transient execution flags, and the error taxonomy.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# =================================================================
# Errors
# =================================================================

class ArexxError(Exception):
    """Base class for every failure raised while running a script."""
    kind = 'internal'
    label = 'InternalError'
    # Procedure frames active where the error was raised (outermost first).
    call_stack = None


class ShapeError(ArexxError):
    """A malformed construct: bad DO/PROCEDURE/PARSE/IF clause, stray END, ..."""
    kind = 'shape'
    label = 'ShapeError'


class UnknownSymbolError(ArexxError):
    """An unresolved function/procedure name or SIGNAL target."""
    kind = 'unknown-symbol'
    label = 'UnknownSymbol'

    def __init__(self, message: str, symbol: str):
        super().__init__(message)
        self.symbol = symbol


class RecursionLimitError(ArexxError):
    kind = 'resource-limit'
    label = 'RecursionLimit'

    def __init__(self, limit: int):
        super().__init__(f"Maximum recursion depth exceeded ({limit})")
        self.limit = limit


class HostFunctionError(ArexxError):
    """An exception escaped from a host-provided BBS function."""
    kind = 'host'
    label = 'HostError'

    def __init__(self, function: str, cause: BaseException):
        super().__init__(f"{function}: {cause}")
        self.function = function
        self.cause = cause


# =================================================================
# Values and coercion
# =================================================================

# None stands for "undefined" (an unbound name, a procedure without RETURN).
Value = Union[str, int, float, bool, None]

_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_INT_RE = re.compile(r"[+-]?\d+")


def parse_number(text: str) -> Union[int, float, None]:
    """Parses a decimal literal, returning None when the text is not one."""
    s = text.strip()
    if not _NUMBER_RE.fullmatch(s):
        return None
    if _INT_RE.fullmatch(s):
        return int(s)
    return float(s)


def to_number(value: Value) -> Union[int, float]:
    """Numeric coercion used by ordering comparisons and numeric built-ins."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return math.nan
    s = str(value)
    if not s.strip():
        return 0
    n = parse_number(s)
    return math.nan if n is None else n


def to_string(value: Value) -> str:
    """String coercion used by SAY, concatenation and string built-ins."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def truthy(value: Value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return not (value == 0 or math.isnan(value))
    return str(value) != ""


def loose_equals(a: Value, b: Value) -> bool:
    """Equality with coercion: strings compare exactly, anything else numerically."""
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    return to_number(a) == to_number(b)


def to_int(value: Value) -> int:
    """Truncating integer coercion for positions, counts and character codes."""
    n = to_number(value)
    if isinstance(n, float):
        if math.isnan(n):
            return 0
        if math.isinf(n):
            raise ValueError(f"{to_string(value)} is not a whole number")
    return int(n)


def js_substring(s: str, start: Any, end: Any = None) -> str:
    """Substring with clamped bounds, swapping them when reversed."""
    n = len(s)
    a = min(max(to_int(start), 0), n)
    b = n if end is None else min(max(to_int(end), 0), n)
    if a > b:
        a, b = b, a
    return s[a:b]


# =================================================================
# Variables and scopes
# =================================================================

class VariableTable:
    """A case-insensitive variable table; keys are stored uppercased."""

    def __init__(self):
        self.vars: Dict[str, Value] = {}

    def set(self, name: str, value: Value):
        self.vars[name.strip().upper()] = value

    def get(self, name: str) -> Value:
        return self.vars.get(name.strip().upper())

    def has(self, name: str) -> bool:
        return name.strip().upper() in self.vars

    def delete(self, name: str):
        self.vars.pop(name.strip().upper(), None)

    def clear(self):
        self.vars.clear()

    def snapshot(self) -> Dict[str, Value]:
        return dict(self.vars)

    def __len__(self) -> int:
        return len(self.vars)

    def __repr__(self):
        return f"<VariableTable {self.vars!r}>"


class ScopeStack:
    """The stack of variable tables for one script run.

    The bottom table is the top-level script scope and lives for the whole
    run. Every active procedure invocation owns exactly one table above it.
    All reads and writes go to the current (top) table only, so a procedure
    can never see or change its caller's variables.
    """

    def __init__(self):
        self.tables: List[VariableTable] = [VariableTable()]

    @property
    def current(self) -> VariableTable:
        return self.tables[-1]

    @property
    def root(self) -> VariableTable:
        return self.tables[0]

    @property
    def depth(self) -> int:
        return len(self.tables)

    def set(self, name: str, value: Value):
        self.current.set(name, value)

    def get(self, name: str) -> Value:
        return self.current.get(name)

    def has(self, name: str) -> bool:
        return self.current.has(name)

    def delete(self, name: str):
        self.current.delete(name)

    def clear(self):
        self.current.clear()

    def push_scope(self, params: List[str], args: List[Value]) -> VariableTable:
        table = VariableTable()
        for i, param in enumerate(params):
            table.set(param, args[i] if i < len(args) else "")
        self.tables.append(table)
        return table

    def pop_scope(self) -> VariableTable:
        if len(self.tables) == 1:
            raise ArexxError("cannot pop the root scope")
        return self.tables.pop()


# =================================================================
# Procedures and execution state
# =================================================================

@dataclass
class Procedure:
    """A user-defined callable; the body is the line range (start, end)."""
    name: str
    params: List[str]
    start: int
    end: int


@dataclass
class ExecutionFlags:
    """Transient flags set by a statement and consumed by an enclosing construct."""
    leave: bool = False
    iterate: bool = False
    returning: bool = False
    return_value: Value = None
    signal_label: Optional[str] = None
    exiting: bool = False

    @property
    def pending(self) -> bool:
        return (
            self.leave or self.iterate or self.returning
            or self.exiting or self.signal_label is not None
        )

    @property
    def unwinding(self) -> bool:
        """True when the flag must pass through loops unconsumed."""
        return self.returning or self.exiting or self.signal_label is not None

    def reset(self):
        self.leave = False
        self.iterate = False
        self.returning = False
        self.return_value = None
        self.signal_label = None
        self.exiting = False


@dataclass
class PreparedScript:
    """The preprocessed form of a script: kept lines plus the label table."""
    lines: List[str] = field(default_factory=list)
    line_numbers: List[int] = field(default_factory=list)
    labels: Dict[str, int] = field(default_factory=dict)
    source: str = ""

    def source_line(self, index: Optional[int]) -> Optional[int]:
        if index is None or index < 0 or index >= len(self.line_numbers):
            return None
        return self.line_numbers[index]
