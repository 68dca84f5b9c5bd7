"""
The core AREXX interpreter, containing the Evaluator.

The Evaluator walks the preprocessed line list by index (there is no AST).
Block constructs (DO, SELECT, PROCEDURE) are located by a depth-counted scan
for their END, and non-local control flow (BREAK, ITERATE, RETURN, SIGNAL,
EXIT) is carried by ExecutionFlags that each enclosing construct inspects
after every statement.
"""
import asyncio
import inspect
import re
from typing import Any, Callable, Dict, List, Optional

from arexx.arexx_datatypes import (
    ArexxError, ShapeError, UnknownSymbolError, RecursionLimitError, HostFunctionError,
    ScopeStack, Procedure, ExecutionFlags, PreparedScript, Value,
    parse_number, to_number, to_string, truthy, loose_equals,
)
from arexx.arexx_preprocessor import (
    BLOCK_OPENERS, is_label, is_comment, first_word, after_keyword,
    find_matching_end, closing_paren, split_top_level,
)
from arexx.arexx_parse import parse_template

ASSIGN_RE = re.compile(r"^([A-Za-z_@#$!?][\w.@#$!?]*)\s*=(?!=)(.*)$", re.S)
CALL_EXPR_RE = re.compile(r"^(\w+)\((.*)\)$", re.S)
CALL_STMT_RE = re.compile(r"^(\w+)\s*(.*)$", re.S)
IF_RE = re.compile(r"^IF\s+(.+?)\s+THEN\s+(.+)$", re.I | re.S)
THEN_RE = re.compile(r"\s+THEN(?:\s+|$)", re.I)
DO_TO_RE = re.compile(r"^(\w+)\s*=\s*(.+?)\s+TO\s+(.+?)(?:\s+BY\s+(.+))?$", re.I)
PROCEDURE_RE = re.compile(r"^(\w+)(?:\s*\((.*?)\))?")
PARSE_RE = re.compile(r"^(UPPER\s+)?(VAR|VALUE|ARG)\b\s*(.*)$", re.I | re.S)
WITH_RE = re.compile(r"(?:^|\s+)WITH(?:\s+|$)", re.I)
NOT_EQUAL_RE = re.compile(r"~=|!=|<>")
ARG_NAMES_RE = re.compile(r"[\s,]+")

# Loops hand control back to the event loop this often.
YIELD_EVERY = 100


def _is_quoted(expr: str) -> bool:
    if len(expr) < 2:
        return False
    q = expr[0]
    return q in ("'", '"') and expr[-1] == q and q not in expr[1:-1]


def _split_then(text: str):
    m = THEN_RE.search(text)
    if not m:
        return text, None
    return text[:m.start()], (text[m.end():].strip() or None)


class Evaluator:
    """The AREXX execution engine for one script run."""

    def __init__(
        self,
        script: PreparedScript,
        *,
        args: Optional[List[Any]] = None,
        host_functions: Optional[Dict[str, Callable]] = None,
        builtins: Optional[Dict[str, Callable]] = None,
        sink: Optional[Callable[[str], Any]] = None,
        max_recursion_depth: int = 100,
        trace: bool = False,
    ):
        self.script = script
        self.scopes = ScopeStack()
        self.procedures: Dict[str, Procedure] = {}
        self.flags = ExecutionFlags()
        self.args: List[str] = [to_string(a) for a in (args or [])]
        self.host_functions: Dict[str, Callable] = dict(host_functions or {})
        self.builtins: Dict[str, Callable] = dict(builtins or {})
        self.sink = sink
        self.max_recursion_depth = max_recursion_depth
        self.depth = 0
        self.peak_depth = 0
        self.call_stack: List[Dict[str, Any]] = []
        self.output: List[str] = []
        self.side_effects: List[Dict] = []
        self.trace_enabled = trace
        self.trace_mode = "ON" if trace else "OFF"
        self.options: set = set()
        self.current_index: Optional[int] = None
        self._iterations = 0

        for i, arg in enumerate(self.args, start=1):
            self.scopes.set(f"ARG{i}", arg)
        self.scopes.set("ARGCOUNT", len(self.args))

    def _dbg(self, *parts):
        import os, sys
        if os.environ.get("AREXX_DEBUG"):
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    def _emit(self, topics: List[str], message: str):
        self.side_effects.append({"topics": topics, "message": message})

    def _trace(self, message: str):
        self._emit(["trace"], message)
        self._dbg(message)

    # ===================================================================
    # Top level and the line walker
    # ===================================================================

    async def run(self) -> Value:
        """Executes the whole script; returns the top-level RETURN/EXIT value."""
        await self.execute_range(0, len(self.script.lines))
        flags = self.flags
        if flags.leave or flags.iterate:
            raise ShapeError("BREAK/ITERATE outside of a DO loop")
        if flags.returning or flags.exiting:
            return flags.return_value
        return None

    async def execute_range(self, start: int, end: int) -> int:
        """Walks lines [start, end) until the range ends or a flag interrupts it."""
        lines = self.script.lines
        labels = self.script.labels
        i = start
        while True:
            flags = self.flags
            if flags.signal_label is not None:
                target = labels.get(flags.signal_label)
                if target is None:
                    raise UnknownSymbolError(f"SIGNAL label not found: {flags.signal_label}", flags.signal_label)
                if not (start <= target < end):
                    # Not ours: let an enclosing walker relocate.
                    break
                self._dbg("SIGNAL", flags.signal_label, "->", target)
                flags.signal_label = None
                i = target + 1
                continue
            if flags.pending or i >= end:
                break

            line = lines[i]
            self.current_index = i
            if is_label(line) or is_comment(line):
                i += 1
                continue
            if self.trace_enabled:
                self._trace(f"[TRACE] Line {self.script.source_line(i)}: {line}")

            word = first_word(line)
            if word == "DO":
                i = await self.execute_do(i)
            elif word == "SELECT":
                i = await self.execute_select(i)
            elif word == "PROCEDURE":
                i = self.define_procedure(i)
            elif word in ("END", "WHEN", "OTHERWISE"):
                raise ShapeError(f"{word} without matching DO/SELECT")
            else:
                await self.execute_statement(line)
                i += 1
        return i

    # ===================================================================
    # Block constructs
    # ===================================================================

    async def _run_body(self, start: int, end: int) -> bool:
        """Runs one loop pass. Returns True when the loop must stop."""
        await self.execute_range(start, end)
        flags = self.flags
        flags.iterate = False
        if flags.leave:
            flags.leave = False
            return True
        if flags.unwinding:
            return True
        self._iterations += 1
        if self._iterations % YIELD_EVERY == 0:
            await asyncio.sleep(0)
        return False

    async def execute_do(self, index: int) -> int:
        lines = self.script.lines
        clause = after_keyword(lines[index])
        end = find_matching_end(lines, index)
        if end == -1:
            raise ShapeError("DO without matching END")
        body = index + 1
        kind = first_word(clause)

        if not clause or kind == "FOREVER":
            while not await self._run_body(body, end):
                pass
        elif kind == "WHILE":
            cond = after_keyword(clause)
            while await self.evaluate_condition(cond):
                if await self._run_body(body, end):
                    break
        elif kind == "UNTIL":
            cond = after_keyword(clause)
            while True:
                if await self._run_body(body, end):
                    break
                if await self.evaluate_condition(cond):
                    break
        elif "=" in clause:
            m = DO_TO_RE.match(clause)
            if not m:
                raise ShapeError(f"Invalid DO loop syntax: {lines[index]}")
            var, start_expr, end_expr, step_expr = m.groups()
            value = to_number(await self.evaluate(start_expr))
            last = to_number(await self.evaluate(end_expr))
            step = to_number(await self.evaluate(step_expr)) if step_expr else 1
            if step == 0:
                raise ShapeError(f"DO loop step must not be zero: {lines[index]}")
            while (value <= last) if step > 0 else (value >= last):
                self.scopes.set(var, value)
                if await self._run_body(body, end):
                    break
                value += step
        else:
            count = to_number(await self.evaluate(clause))
            done = 0
            while done < count:
                if await self._run_body(body, end):
                    break
                done += 1
        return end + 1

    async def execute_select(self, index: int) -> int:
        lines = self.script.lines
        end = find_matching_end(lines, index)
        if end == -1:
            raise ShapeError("SELECT without matching END")

        # Only clauses at this SELECT's own nesting level count.
        clauses = []
        depth = 0
        for j in range(index + 1, end):
            word = first_word(lines[j])
            if word in BLOCK_OPENERS:
                depth += 1
            elif word == "END":
                depth -= 1
            elif depth == 0 and word in ("WHEN", "OTHERWISE"):
                clauses.append(j)

        for k, j in enumerate(clauses):
            stop = clauses[k + 1] if k + 1 < len(clauses) else end
            self.current_index = j
            rest = after_keyword(lines[j])
            if first_word(lines[j]) == "WHEN":
                if not rest:
                    raise ShapeError("WHEN without a condition")
                cond, inline = _split_then(rest)
                matched = await self.evaluate_condition(cond)
                if self.flags.pending:
                    break
                if not matched:
                    continue
            else:
                inline = rest or None
            if inline:
                await self.execute_statement(inline)
            await self.execute_range(j + 1, stop)
            break
        return end + 1

    def define_procedure(self, index: int) -> int:
        lines = self.script.lines
        m = PROCEDURE_RE.match(after_keyword(lines[index]))
        if not m:
            raise ShapeError(f"Invalid PROCEDURE syntax: {lines[index]}")
        name, params_text = m.groups()
        params = [p.strip() for p in params_text.split(",") if p.strip()] if params_text else []
        end = find_matching_end(lines, index)
        if end == -1:
            raise ShapeError("PROCEDURE without matching END")
        name = name.upper()
        self.procedures[name] = Procedure(name, params, index, end)
        self._dbg("PROCEDURE", name, params, "lines", index, end)
        return end + 1

    # ===================================================================
    # Single statements
    # ===================================================================

    async def execute_statement(self, line: str):
        line = line.strip()
        word = first_word(line)
        rest = after_keyword(line)
        flags = self.flags

        if word in ("BREAK", "LEAVE"):
            flags.leave = True
            return
        if word in ("ITERATE", "CONTINUE"):
            flags.iterate = True
            return
        if word == "RETURN":
            flags.return_value = await self.evaluate(rest) if rest else None
            flags.returning = True
            return
        if word == "EXIT":
            flags.return_value = await self.evaluate(rest) if rest else None
            flags.exiting = True
            return
        if word == "NOP":
            return
        if word == "SIGNAL":
            label = rest.upper()
            if not label:
                raise ShapeError("SIGNAL requires a label")
            if label not in self.script.labels:
                raise UnknownSymbolError(f"SIGNAL label not found: {rest}", label)
            flags.signal_label = label
            return
        if word == "ARG":
            self._execute_arg(rest)
            return
        if word == "INTERPRET":
            code = to_string(await self.evaluate(rest))
            self._dbg("INTERPRET", code)
            await self.execute_statement(code)
            return
        if word == "OPTIONS":
            self._execute_options(rest)
            return
        if word == "TRACE":
            self._execute_trace(rest)
            return
        if word == "PARSE":
            await self._execute_parse(rest, line)
            return
        if word in BLOCK_OPENERS or word in ("END", "WHEN", "OTHERWISE"):
            raise ShapeError(f"{word} cannot be used as a single statement")

        m = ASSIGN_RE.match(line)
        if m:
            self.scopes.set(m.group(1), await self.evaluate(m.group(2)))
            return
        if word == "SAY":
            await self._execute_say(rest)
            return
        if word == "CALL":
            await self._execute_call(rest, line)
            return
        if word == "IF":
            await self._execute_if(line)
            return

        m = CALL_EXPR_RE.match(line)
        if m and closing_paren(line, len(m.group(1))) == len(line) - 1:
            await self.evaluate(line)
            return
        raise ShapeError(f"Unrecognized statement: {line}")

    def _execute_arg(self, rest: str):
        names = [n for n in ARG_NAMES_RE.split(rest) if n]
        if not names:
            raise ShapeError("ARG requires at least one variable name")
        for i, name in enumerate(names):
            self.scopes.set(name, self.args[i] if i < len(self.args) else "")

    def _execute_options(self, rest: str):
        for option in rest.upper().split():
            if option == "TRACE":
                self.trace_enabled = True
            elif option == "NOTRACE":
                self.trace_enabled = False
            elif option in ("RESULTS", "NORESULTS"):
                self.options.discard("NORESULTS" if option == "RESULTS" else "RESULTS")
                self.options.add(option)
            elif self.trace_enabled:
                self._trace(f"[OPTIONS] Unknown option: {option}")

    def _execute_trace(self, rest: str):
        mode = rest.upper() or "ON"
        self.trace_mode = mode
        if mode in ("ON", "ALL", "RESULTS", "A", "R"):
            self.trace_enabled = True
            self._trace("[TRACE] Tracing enabled")
        elif mode in ("OFF", "O"):
            self.trace_enabled = False
            self._trace("[TRACE] Tracing disabled")
        else:
            self.trace_enabled = True
            self._trace(f"[TRACE] Trace mode: {mode}")

    async def _execute_parse(self, rest: str, line: str):
        m = PARSE_RE.match(rest)
        if not m:
            raise ShapeError(f"Invalid PARSE syntax: {line}")
        upper, source_kind, tail = m.group(1), m.group(2).upper(), m.group(3)
        if source_kind == "VAR":
            parts = tail.split(None, 1)
            if not parts:
                raise ShapeError(f"PARSE VAR requires a variable name: {line}")
            value = to_string(self.scopes.get(parts[0]))
            template = parts[1] if len(parts) > 1 else ""
        elif source_kind == "VALUE":
            w = WITH_RE.search(tail)
            if not w:
                raise ShapeError(f"PARSE VALUE requires WITH: {line}")
            value = to_string(await self.evaluate(tail[:w.start()]))
            template = tail[w.end():]
        else:
            value = " ".join(self.args)
            template = tail
        if upper:
            value = value.upper()
        bound = parse_template(value, template, self.scopes.set)
        self._dbg("PARSE", source_kind, repr(value), "->", bound)

    async def _execute_say(self, rest: str):
        text = to_string(await self.evaluate(rest)) if rest else ""
        self.output.append(text)
        self._emit(["stdout"], text)
        if self.sink is not None:
            try:
                res = self.sink(text)
                if inspect.isawaitable(res):
                    await res
            except ArexxError:
                raise
            except Exception as e:
                raise HostFunctionError("SAY", e) from e

    async def _execute_call(self, rest: str, line: str):
        m = CALL_STMT_RE.match(rest)
        if not m:
            raise ShapeError(f"Invalid CALL statement: {line}")
        name, tail = m.group(1), m.group(2).strip()
        if tail.startswith("(") and closing_paren(tail, 0) == len(tail) - 1:
            tail = tail[1:-1]
        args = await self.parse_arguments(tail)
        await self.call_function(name, args)

    async def _execute_if(self, line: str):
        m = IF_RE.match(line)
        if not m:
            raise ShapeError(f"Invalid IF statement: {line}")
        cond, action = m.groups()
        if await self.evaluate_condition(cond) and not self.flags.pending:
            await self.execute_statement(action)

    # ===================================================================
    # Expressions and conditions
    # ===================================================================

    async def evaluate(self, expr: str) -> Value:
        """Resolves an expression: literal, variable, call, concatenation, or bare text."""
        expr = expr.strip()
        if not expr:
            return ""
        if _is_quoted(expr):
            return expr[1:-1]
        num = parse_number(expr)
        if num is not None:
            return num
        if self.scopes.has(expr):
            return self.scopes.get(expr)
        m = CALL_EXPR_RE.match(expr)
        if m and closing_paren(expr, len(m.group(1))) == len(expr) - 1:
            args = await self.parse_arguments(m.group(2))
            return await self.call_function(m.group(1), args)
        if "||" in expr:
            parts = split_top_level(expr, "||")
            if len(parts) > 1:
                pieces = [to_string(await self.evaluate(p)) for p in parts]
                return "".join(pieces)
        # An unbound bareword is its own value.
        return expr

    async def evaluate_condition(self, condition: str) -> bool:
        """Operator detection is a plain substring search in fixed priority order."""
        if ">=" in condition:
            left, right = condition.split(">=")[:2]
            return to_number(await self.evaluate(left)) >= to_number(await self.evaluate(right))
        if "<=" in condition:
            left, right = condition.split("<=")[:2]
            return to_number(await self.evaluate(left)) <= to_number(await self.evaluate(right))
        if "~=" in condition or "!=" in condition or "<>" in condition:
            left, right = NOT_EQUAL_RE.split(condition)[:2]
            return not loose_equals(await self.evaluate(left), await self.evaluate(right))
        if "==" in condition:
            left, right = condition.split("==")[:2]
            return loose_equals(await self.evaluate(left), await self.evaluate(right))
        if "=" in condition:
            left, right = condition.split("=")[:2]
            return loose_equals(await self.evaluate(left), await self.evaluate(right))
        if ">" in condition:
            left, right = condition.split(">")[:2]
            return to_number(await self.evaluate(left)) > to_number(await self.evaluate(right))
        if "<" in condition:
            left, right = condition.split("<")[:2]
            return to_number(await self.evaluate(left)) < to_number(await self.evaluate(right))
        return truthy(await self.evaluate(condition))

    async def parse_arguments(self, text: str) -> List[Value]:
        """Splits an argument list on top-level commas and evaluates left to right."""
        if not text.strip():
            return []
        pieces = split_top_level(text, ",")
        if not pieces[-1].strip():
            pieces.pop()
        return [await self.evaluate(p) for p in pieces]

    # ===================================================================
    # Function resolution and procedures
    # ===================================================================

    async def call_function(self, name: str, args: List[Value]) -> Value:
        """Resolves `name` against procedures, then host functions, then built-ins."""
        key = name.upper()
        self._dbg("call", key, "argc", len(args))

        proc = self.procedures.get(key)
        if proc is not None:
            return await self.call_procedure(proc, args)

        func = self.host_functions.get(key)
        if func is not None:
            try:
                result = func(*args)
                if inspect.isawaitable(result):
                    result = await result
            except ArexxError:
                raise
            except Exception as e:
                raise HostFunctionError(key, e) from e
            return result

        func = self.builtins.get(key)
        if func is not None:
            try:
                return func(*args)
            except ArexxError:
                raise
            except (TypeError, ValueError, OverflowError, IndexError) as e:
                raise ShapeError(f"Invalid arguments to {key}: {e}") from e

        raise UnknownSymbolError(f"Unknown function: {key}", key)

    async def call_procedure(self, proc: Procedure, args: List[Value]) -> Value:
        self.depth += 1
        try:
            if self.depth > self.max_recursion_depth:
                raise RecursionLimitError(self.max_recursion_depth)
            self.peak_depth = max(self.peak_depth, self.depth)
            self.call_stack.append({
                "name": proc.name,
                "args": list(args),
                "call_site": self.script.source_line(self.current_index),
            })
            self.scopes.push_scope(proc.params, args)
            try:
                await self.execute_range(proc.start + 1, proc.end)
                flags = self.flags
                if flags.leave or flags.iterate:
                    raise ShapeError("BREAK/ITERATE outside of a DO loop")
                if not flags.returning:
                    return None
                value = flags.return_value
                flags.returning = False
                flags.return_value = None
                return value
            except ArexxError as e:
                if e.call_stack is None:
                    e.call_stack = [dict(f) for f in self.call_stack]
                raise
            finally:
                # A SIGNAL leaving the procedure unwinds its scope too.
                self.scopes.pop_scope()
                self.call_stack.pop()
        finally:
            self.depth -= 1
