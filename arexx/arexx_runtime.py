import inspect
import math
import os
import random
import re
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from arexx.arexx_datatypes import (
    ArexxError, Value, js_substring, to_int, to_number, to_string,
)
from arexx.arexx_preprocessor import preprocess
from arexx.arexx_interpreter import Evaluator
from arexx.arexx_host import host_functions

# ===================================================================
# 1. Built-in function library
# ===================================================================

_HEX_PREFIX_RE = re.compile(r"\s*([+-]?)(?:0[xX])?([0-9a-fA-F]+)")
_WHOLE_RE = re.compile(r"[+-]?\d+")
_NUM_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
MONTHS = ["January", "February", "March", "April", "May", "June",
          "July", "August", "September", "October", "November", "December"]


def _numbers(args) -> List[float]:
    return [to_number(a) for a in args]


class BuiltinFunctions:
    """Python implementations of the pure AREXX built-ins.

    Every `_name` method is exposed to scripts as NAME. Arguments arrive as
    script values and are coerced here; a wrong argument count surfaces as a
    TypeError, which the evaluator reports as invalid arguments.
    """

    def __init__(self, rng: Optional[random.Random] = None, clock: Optional[Callable[[], float]] = None):
        self.rng = rng or random.Random()
        self.clock = clock or time.time

    def bindings(self) -> Dict[str, Callable]:
        table = {}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                table[name[1:].upper()] = member
        return table

    # --- Strings ---
    def _upper(self, s): return to_string(s).upper()
    def _lower(self, s): return to_string(s).lower()
    def _length(self, s): return len(to_string(s))
    def _reverse(self, s): return to_string(s)[::-1]

    def _left(self, s, n):
        return js_substring(to_string(s), 0, n)

    def _right(self, s, n):
        s = to_string(s)
        return js_substring(s, len(s) - to_int(n))

    def _substr(self, s, start, length=None):
        begin = to_int(start) - 1
        if length is None:
            return js_substring(to_string(s), begin)
        return js_substring(to_string(s), begin, begin + to_int(length))

    def _pos(self, needle, haystack):
        # 1-based; 0 when absent
        return to_string(haystack).find(to_string(needle)) + 1

    def _word(self, s, n):
        words = to_string(s).split()
        i = to_int(n) - 1
        return words[i] if 0 <= i < len(words) else ""

    def _words(self, s):
        return len(to_string(s).split())

    def _strip(self, s, option="B", char=" "):
        s = to_string(s)
        option = (to_string(option) or "B")[0].upper()
        char = (to_string(char) or " ")[:1]
        if option == "L":
            return s.lstrip(char)
        if option == "T":
            return s.rstrip(char)
        if option != "B":
            raise ValueError(f"STRIP option must be B, L or T, got {option!r}")
        return s.strip(char)

    def _copies(self, s, n):
        count = to_int(n)
        if count < 0:
            raise ValueError("COPIES count must not be negative")
        return to_string(s) * count

    def _datatype(self, s, kind=None):
        s = to_string(s)
        if kind is None:
            return "NUM" if _NUM_RE.fullmatch(s.strip()) else "CHAR"
        kind = to_string(kind).upper()[:1]
        checks = {
            "N": lambda: bool(_NUM_RE.fullmatch(s.strip())),
            "W": lambda: bool(_WHOLE_RE.fullmatch(s.strip())),
            "A": lambda: s.isalnum(),
            "M": lambda: s.isalpha(),
            "U": lambda: s.isalpha() and s.isupper(),
            "L": lambda: s.isalpha() and s.islower(),
            "X": lambda: bool(re.fullmatch(r"[0-9A-Fa-f]*", s)),
            "B": lambda: bool(re.fullmatch(r"[01]*", s)),
        }
        if kind not in checks:
            raise ValueError(f"unknown DATATYPE type {kind!r}")
        return 1 if checks[kind]() else 0

    # --- Conversions ---
    def _d2c(self, n):
        return chr(to_int(n) & 0xFFFF)

    def _c2d(self, c):
        s = to_string(c)
        return ord(s[0]) if s else math.nan

    def _d2x(self, n):
        return format(to_int(n), "X")

    def _x2d(self, h):
        m = _HEX_PREFIX_RE.match(to_string(h))
        if not m:
            return math.nan
        value = int(m.group(2), 16)
        return -value if m.group(1) == "-" else value

    def _c2x(self, s):
        return to_string(s).encode("latin-1", "replace").hex().upper()

    def _x2c(self, h):
        digits = re.sub(r"\s+", "", to_string(h))
        if len(digits) % 2:
            digits = "0" + digits
        return bytes.fromhex(digits).decode("latin-1")

    # --- Numbers ---
    def _abs(self, n):
        return abs(to_number(n))

    def _sign(self, n):
        v = to_number(n)
        if math.isnan(v):
            raise ValueError(f"{to_string(n)!r} is not a number")
        return 0 if v == 0 else (1 if v > 0 else -1)

    def _trunc(self, n, digits=0):
        v = to_number(n)
        if math.isnan(v) or math.isinf(v):
            raise ValueError(f"{to_string(n)!r} is not a finite number")
        places = to_int(digits)
        if places <= 0:
            return int(v)
        factor = 10 ** places
        return math.trunc(v * factor) / factor

    def _max(self, *args):
        values = _numbers(args)
        if not values:
            return -math.inf
        if any(math.isnan(v) for v in values):
            return math.nan
        return max(values)

    def _min(self, *args):
        values = _numbers(args)
        if not values:
            return math.inf
        if any(math.isnan(v) for v in values):
            return math.nan
        return min(values)

    def _random(self, low=None, high=None):
        if low is None:
            return self.rng.random()
        if high is None:
            return math.floor(self.rng.random() * to_number(low))
        lo, hi = to_number(low), to_number(high)
        return math.floor(self.rng.random() * (hi - lo + 1)) + lo

    # --- Time and date ---
    def _time(self, fmt=None):
        now_ts = self.clock()
        now = datetime.fromtimestamp(now_ts)
        option = to_string(fmt).upper() if fmt is not None else ""
        if option in ("H", "HOURS"):
            return str(now.hour)
        if option in ("M", "MINUTES"):
            return str(now.hour * 60 + now.minute)
        if option in ("S", "SECONDS"):
            return str(int(now_ts))
        return now.strftime("%H:%M:%S")

    def _date(self, fmt=None):
        now_ts = self.clock()
        now = datetime.fromtimestamp(now_ts)
        option = to_string(fmt).upper() if fmt is not None else ""
        if option in ("D", "DAYS"):
            return str(int(now_ts // 86400))
        if option in ("W", "WEEKDAY"):
            return WEEKDAYS[now.weekday()]
        if option in ("M", "MONTH"):
            return MONTHS[now.month - 1]
        return now.strftime("%a %b %d %Y")


# ===================================================================
# 2. Configuration
# ===================================================================

@dataclass
class EngineConfig:
    """Per-engine settings; every run gets the same ones."""
    max_recursion_depth: int = 100
    trace: bool = False
    bbs_name: str = "AmiExpress Web"
    version: str = "1.0"

    @classmethod
    def from_env(cls, environ=None) -> 'EngineConfig':
        env = os.environ if environ is None else environ
        cfg = cls()
        try:
            raw = env.get("AREXX_MAX_RECURSION")
            if raw is not None:
                cfg.max_recursion_depth = int(raw)
        except Exception:
            cfg.max_recursion_depth = 100
        trace = env.get("AREXX_TRACE")
        if trace is not None:
            cfg.trace = trace.strip().lower() in ("1", "true", "yes", "on")
        return cfg


# ===================================================================
# 3. Script execution
# ===================================================================

# Python frames one script-level procedure call may occupy (walker, nested
# DO/SELECT/IF bodies, evaluation, resolution).
FRAMES_PER_CALL = 50
FRAME_HEADROOM = 1000

# The interpreter's recursion limit is process-wide; runs in flight each
# register what they need and the limit is the largest of them.
_base_recursion_limit = None
_active_run_limits: List[int] = []


def _push_recursion_limit(needed: int):
    global _base_recursion_limit
    if not _active_run_limits:
        _base_recursion_limit = sys.getrecursionlimit()
    _active_run_limits.append(needed)
    sys.setrecursionlimit(max(_base_recursion_limit, *_active_run_limits))


def _pop_recursion_limit(needed: int):
    _active_run_limits.remove(needed)
    sys.setrecursionlimit(max(_base_recursion_limit, *_active_run_limits))

@dataclass
class ExecutionResult:
    """The structured result of a script run."""
    success: bool
    output: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_line: Optional[int] = None
    value: Value = None
    variables: Dict[str, Value] = field(default_factory=dict)
    side_effects: List[Dict] = field(default_factory=list)
    peak_depth: int = 0
    context: str = ""
    stacktrace: str = ""

    @property
    def status(self) -> str:
        return 'success' if self.success else 'error'

    def format_error(self) -> str:
        """Formats the error with its source line, context and procedure stack."""
        if self.success:
            return ""
        msg = str(self.error or "Unknown error")
        if self.error_line is not None and not msg.startswith("Error on line "):
            msg = f"Error on line {self.error_line}: {msg}"
        if self.context:
            msg = f"{msg}\n{self.context}"
        if self.stacktrace:
            msg = f"{msg}\n{self.stacktrace}"
        return msg


class Interpreter:
    """Preprocesses and executes AREXX scripts against an optional BBS host."""

    def __init__(self, host: Any = None, args: Optional[List[Any]] = None, config: Optional[EngineConfig] = None):
        self.host = host
        self.args = list(args or [])
        self.config = config or EngineConfig.from_env()
        self.builtins = BuiltinFunctions()
        # The evaluator of the latest run, kept for inspection.
        self.evaluator: Optional[Evaluator] = None

    def _initial_variables(self) -> Dict[str, Value]:
        values: Dict[str, Value] = {}
        user = getattr(self.host, "user", None)
        if user is not None:
            values["USERNAME"] = user.username
            values["USERLEVEL"] = user.sec_level
            values["USERID"] = user.id
        session = getattr(self.host, "session", None)
        if session is not None:
            values["CONFERENCE"] = session.current_conf
            values["MSGBASE"] = session.current_msg_base
        values["BBSNAME"] = self.config.bbs_name
        values["VERSION"] = self.config.version
        return values

    def _source_context(self, source: str, line: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
        return "\n".join(out)

    def _format_stacktrace(self, frames) -> str:
        if not frames:
            return ""
        shown = []
        for frame in frames[-5:]:
            args = " ".join(repr(a) if isinstance(a, str) else to_string(a) for a in frame.get('args') or [])
            shown.append(f"({frame.get('name')}{' ' + args if args else ''})")
        more = len(frames) - len(shown)
        prefix = f"... {more} more " if more > 0 else ""
        return "AREXX stacktrace: " + prefix + " ".join(shown)

    def _format_runtime_error(self, e: BaseException) -> tuple[str, str]:
        match e:
            case ArexxError():
                return f"{e.label}: {e}", e.kind
            case RecursionError():
                # Python's own stack gave out first (e.g. self-INTERPRETing code)
                return f"RecursionLimit: {e}", 'resource-limit'
            case _:
                return f"InternalError: {type(e).__name__}: {e}", 'internal'

    async def execute(self, script: str) -> ExecutionResult:
        """The main entry point to run a script. Never raises."""
        # The procedure ceiling must be reachable before Python's own stack limit.
        depth = min(max(0, self.config.max_recursion_depth), 100_000)
        needed = depth * FRAMES_PER_CALL + FRAME_HEADROOM
        _push_recursion_limit(needed)
        try:
            return await self._execute(script)
        finally:
            _pop_recursion_limit(needed)

    async def _execute(self, script: str) -> ExecutionResult:
        ev = None
        try:
            prepared = preprocess(script)
            ev = Evaluator(
                prepared,
                args=self.args,
                host_functions=host_functions(self.host),
                builtins=self.builtins.bindings(),
                sink=getattr(self.host, "write", None),
                max_recursion_depth=self.config.max_recursion_depth,
                trace=self.config.trace,
            )
            self.evaluator = ev
            for name, value in self._initial_variables().items():
                ev.scopes.root.set(name, value)

            value = await ev.run()
            return ExecutionResult(
                success=True,
                output=ev.output,
                value=value,
                variables=ev.scopes.root.snapshot(),
                side_effects=ev.side_effects,
                peak_depth=ev.peak_depth,
            )
        except Exception as e:
            err_msg, kind = self._format_runtime_error(e)
            line = None
            if ev is not None:
                line = ev.script.source_line(ev.current_index)
            where = f"Error on line {line}: " if line is not None else ""
            side_effects = ev.side_effects if ev is not None else []
            side_effects.append({'topics': ['stderr'], 'message': where + err_msg})
            if ev is not None:
                ev._dbg("run failed:", err_msg)
            return ExecutionResult(
                success=False,
                output=ev.output if ev is not None else [],
                error=err_msg,
                error_kind=kind,
                error_line=line,
                variables=ev.scopes.root.snapshot() if ev is not None else {},
                side_effects=side_effects,
                peak_depth=ev.peak_depth if ev is not None else 0,
                context=self._source_context(script, line),
                stacktrace=self._format_stacktrace(getattr(e, 'call_stack', None)),
            )


async def run_script(script: str, argv=(), host: Any = None, config: Optional[EngineConfig] = None) -> ExecutionResult:
    """Runs `script` once with a fresh Interpreter."""
    return await Interpreter(host, list(argv), config).execute(script)
