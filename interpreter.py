from __future__ import annotations
import json
import re
import sys
import threading
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from hooks import HookRegistry, StepContext
from lexer import APError, APParseError, APRuntimeError, ExpressionError, SourceLocation
from parser import (
    BinaryOp,
    CallExpression,
    Comparison,
    Expression,
    Identifier,
    IndexExpression,
    ListLiteral,
    Literal,
    LogicalOp,
    UnaryOp,
    parse_expression,
)
from program import (
    KIND_TIMES,
    KIND_UNTIL,
    Assignment,
    BlankStatement,
    CallStatement,
    DisplayStatement,
    ElseStatement,
    EndIfStatement,
    EndProcedureStatement,
    EndRepeatStatement,
    IfStatement,
    Line,
    ProcedureDef,
    ProcedureStatement,
    Program,
    RepeatTimesStatement,
    RepeatUntilStatement,
    ReturnStatement,
    Statement,
    load_program,
)


TYPE_NUM = "NUM"
TYPE_STR = "STR"
TYPE_BOOL = "BOOL"
TYPE_LST = "LST"

TYPE_NAMES = {
    TYPE_NUM: "number",
    TYPE_STR: "string",
    TYPE_BOOL: "boolean",
    TYPE_LST: "list",
}

STATUS_PARSING = "Parsing"
STATUS_RUNNING = "Running"
STATUS_STOPPED = "Stopped"
STATUS_CRASHED = "Crashed"
STATUS_FINISHED = "Finished"

OUTPUT_NORMAL = "normal"
OUTPUT_SYSTEM = "system"
OUTPUT_ERROR = "error"

DEFAULT_MAX_STEPS = 20000
DEFAULT_MAX_CALL_DEPTH = 100

TOP_LEVEL = "<top-level>"

_NUMERIC_STRING = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)\s*$")


@dataclass
class Value:
    type: str
    value: Any


def number(x: Any) -> Value:
    return Value(TYPE_NUM, np.float64(x))


class ArityError(APRuntimeError):
    """Raised when a call supplies the wrong number of arguments."""

    kind = "ArityError"


class UnknownStatementError(APRuntimeError):
    """Raised when a line matches no statement form."""

    kind = "UnknownStatementError"


class InputCancelled(APRuntimeError):
    """Raised by an input provider when the user declines to answer."""

    kind = "InputCancelled"

    def __init__(self, message: str = "Input cancelled", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class StepLimitExceeded(APRuntimeError):
    kind = "StepLimitExceeded"


class ReturnSignal(Exception):
    def __init__(self, value: Optional[Value]) -> None:
        super().__init__(value)
        self.value = value


class StopSignal(Exception):
    pass


def format_number(x: float) -> str:
    if np.isnan(x):
        return "NaN"
    if np.isinf(x):
        return "Infinity" if x > 0 else "-Infinity"
    if x == int(x) and abs(x) < 1e21:
        return str(int(x))
    if 1e-7 <= abs(x) < 1e21:
        return np.format_float_positional(x, trim="-")
    return np.format_float_scientific(x, trim="-", exp_digits=1)


def render_value(value: Value) -> str:
    if value.type == TYPE_NUM:
        return format_number(value.value)
    if value.type == TYPE_BOOL:
        return "true" if value.value else "false"
    if value.type == TYPE_LST:
        return "[" + ", ".join(_render_item(item) for item in value.value) + "]"
    return str(value.value)


def _render_item(value: Value) -> str:
    if value.type == TYPE_STR:
        return '"' + str(value.value) + '"'
    return render_value(value)


def whole_number(value: Value, rule: str) -> int:
    if value.type != TYPE_NUM or not float(value.value).is_integer():
        raise ExpressionError(f"{rule} expects a whole number but got {render_value(value)}", rule=rule)
    return int(value.value)


def list_position(value: Value, size: int, rule: str, *, allow_end: bool = False) -> int:
    """Convert a 1-based index into a 0-based offset into a sequence of ``size`` items.

    ``allow_end`` also accepts ``size + 1``, the slot just past the last item.
    """
    position = whole_number(value, rule)
    upper = size + 1 if allow_end else size
    if position < 1 or position > upper:
        raise ExpressionError(f"{rule} index {position} is out of range for a list of length {size}", rule=rule)
    return position - 1


def console_input_provider(prompt: Optional[str]) -> str:
    try:
        return input(f"{prompt}: " if prompt else "> ")
    except (EOFError, KeyboardInterrupt):
        raise InputCancelled()


def console_output_sink(text: str, kind: str) -> None:
    if kind == OUTPUT_NORMAL:
        print(text)
    else:
        print(text, file=sys.stderr)


@dataclass
class Environment:
    parent: Optional["Environment"] = None
    values: Dict[str, Value] = field(default_factory=dict)

    def _find_env(self, name: str) -> Optional["Environment"]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.values:
                return env
            env = env.parent
        return None

    def set(self, name: str, value: Value) -> None:
        # Writes never fall through to an outer scope.
        self.values[name] = value

    def get(self, name: str) -> Value:
        env = self._find_env(name)
        if env is not None:
            return env.values[name]
        raise ExpressionError(f"Undefined identifier '{name}'", rule="IDENT")

    def get_optional(self, name: str) -> Optional[Value]:
        env = self._find_env(name)
        if env is not None:
            return env.values[name]
        return None

    def has(self, name: str) -> bool:
        return self._find_env(name) is not None

    def snapshot(self) -> Dict[str, str]:
        def _render(val: Value) -> str:
            rendered = render_value(val)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{val.type}:{rendered}"

        return {k: _render(v) for k, v in self.values.items()}


@dataclass
class LoopState:
    kind: str
    count: int = 0
    limit: float = 0.0
    condition: Optional[Expression] = None


@dataclass
class Frame:
    name: str
    env: Environment
    frame_id: str
    call_location: Optional[SourceLocation]
    # Loop control state keyed by the REPEAT line index, kept out of env.
    loops: Dict[int, LoopState] = field(default_factory=dict)


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, Any]]
    detail: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        statement: Optional[str],
        detail: Optional[Dict[str, Any]] = None,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            detail=detail,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


BuiltinImpl = Callable[["Interpreter", List[Value], Optional[SourceLocation]], Optional[Value]]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: int
    impl: BuiltinImpl

    def validate(self, supplied: int) -> None:
        if supplied < self.min_args:
            raise ArityError(f"{self.name} expects at least {self.min_args} argument(s) but received {supplied}", rule=self.name)
        if supplied > self.max_args:
            raise ArityError(f"{self.name} expects at most {self.max_args} argument(s) but received {supplied}", rule=self.name)


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self._register("INPUT", 0, 1, self._input)
        self._register("APPEND", 2, 2, self._append)
        self._register("INSERT", 3, 3, self._insert)
        self._register("REMOVE", 2, 2, self._remove)
        self._register("LENGTH", 1, 1, self._length)
        self._register("RANDOM", 2, 2, self._random)

    def _register(self, name: str, min_args: int, max_args: int, impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def invoke(
        self,
        interpreter: "Interpreter",
        name: str,
        args: List[Value],
        location: Optional[SourceLocation],
    ) -> Optional[Value]:
        builtin = self.table.get(name)
        if builtin is None:
            raise ExpressionError(f"Unknown function '{name}'", location=location)
        builtin.validate(len(args))
        return builtin.impl(interpreter, args, location)

    # Helpers
    def _expect_list(self, value: Value, rule: str) -> List[Value]:
        if value.type != TYPE_LST:
            raise ExpressionError(f"{rule} expects a list but got a {TYPE_NAMES[value.type]}", rule=rule)
        return value.value

    def _input(self, interpreter: "Interpreter", args: List[Value], location: Optional[SourceLocation]) -> Value:
        prompt: Optional[str] = render_value(args[0]) if args else None
        text = interpreter.input_provider(prompt)
        record: Dict[str, Any] = {"event": "INPUT", "text": text}
        if prompt is not None:
            record["prompt"] = prompt
        interpreter.io_log.append(record)
        return Value(TYPE_STR, str(text))

    def _append(self, _: "Interpreter", args: List[Value], __: Optional[SourceLocation]) -> None:
        self._expect_list(args[0], "APPEND").append(args[1])

    def _insert(self, _: "Interpreter", args: List[Value], __: Optional[SourceLocation]) -> None:
        items = self._expect_list(args[0], "INSERT")
        position = list_position(args[1], len(items), "INSERT", allow_end=True)
        items.insert(position, args[2])

    def _remove(self, _: "Interpreter", args: List[Value], __: Optional[SourceLocation]) -> None:
        items = self._expect_list(args[0], "REMOVE")
        position = list_position(args[1], len(items), "REMOVE")
        del items[position]

    def _length(self, _: "Interpreter", args: List[Value], __: Optional[SourceLocation]) -> Value:
        target = args[0]
        if target.type not in (TYPE_LST, TYPE_STR):
            raise ExpressionError(f"LENGTH expects a list or string but got a {TYPE_NAMES[target.type]}", rule="LENGTH")
        return number(len(target.value))

    def _random(self, interpreter: "Interpreter", args: List[Value], __: Optional[SourceLocation]) -> Value:
        low = whole_number(args[0], "RANDOM")
        high = whole_number(args[1], "RANDOM")
        if low > high:
            raise ExpressionError(f"RANDOM range is empty: {low} > {high}", rule="RANDOM")
        return number(interpreter.rng.integers(low, high, endpoint=True))


@dataclass
class RunOutcome:
    status: str
    output: List[str]
    error: Optional[APError]
    steps: int


class Interpreter:
    """Runs pseudocode programs one line at a time.

    An instance owns all of its run state; ``run`` may be called repeatedly
    and ``stop`` may be called from hooks, sinks or another thread.
    """

    def __init__(
        self,
        *,
        filename: str = "<string>",
        verbose: bool = False,
        hooks: Optional[HookRegistry] = None,
        input_provider: Optional[Callable[[Optional[str]], str]] = None,
        output_sink: Optional[Callable[[str, str], None]] = None,
        status_observer: Optional[Callable[[str], None]] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
        seed: Optional[int] = None,
    ) -> None:
        self.filename = filename
        self.verbose = verbose
        self.hooks = hooks or HookRegistry()
        self.input_provider = input_provider or console_input_provider
        self.output_sink = output_sink or console_output_sink
        self.status_observer = status_observer
        self.max_steps = max_steps
        self.max_call_depth = max_call_depth
        self.seed = seed
        self.builtins = Builtins()
        self.status = STATUS_PARSING
        self._stop_event = threading.Event()
        self._reset()

    def _reset(self) -> None:
        self.program: Optional[Program] = None
        self.global_env = Environment()
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.logger = StateLogger(verbose=self.verbose)
        self.io_log: List[Dict[str, Any]] = []
        self.output: List[str] = []
        self.last_return: Optional[Value] = None
        self.rng = np.random.default_rng(self.seed)
        self._expr_cache: Dict[Tuple[int, str], Expression] = {}
        self._stop_event.clear()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run(self, source: str) -> RunOutcome:
        self._reset()
        self._set_status(STATUS_PARSING)
        try:
            self.program = load_program(source, builtin_names=self.builtins.table.keys())
        except APParseError as error:
            return self._finish(STATUS_CRASHED, error)

        top = self._new_frame(TOP_LEVEL, self.global_env, None)
        self.call_stack.append(top)
        try:
            self._set_status(STATUS_RUNNING)
            self._emit_event("program_start", self, self.program, self.global_env)
            self._execute_range(0, len(self.program.statements), top)
        except StopSignal:
            self._notice("Program stopped", OUTPUT_SYSTEM)
            return self._finish(STATUS_STOPPED, None)
        except (InputCancelled, StepLimitExceeded) as error:
            return self._finish(STATUS_STOPPED, error)
        except APRuntimeError as error:
            return self._finish(STATUS_CRASHED, error)
        except RecursionError:
            wrapped = APRuntimeError("Maximum recursion depth exceeded", location=self._last_location(), rule="CALL")
            return self._finish(STATUS_CRASHED, wrapped)
        except Exception as exc:
            wrapped = APRuntimeError(f"Internal interpreter error: {exc}", location=self._last_location(), rule="internal")
            return self._finish(STATUS_CRASHED, wrapped)
        self.call_stack.pop()
        return self._finish(STATUS_FINISHED, None)

    def _finish(self, status: str, error: Optional[APError]) -> RunOutcome:
        if error is not None:
            if isinstance(error, APRuntimeError) and error.step_index is None and self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            self._notice(self.format_error(error), OUTPUT_ERROR)
            self._emit_event("on_error", self, error)
        outcome = RunOutcome(
            status=status,
            output=list(self.output),
            error=error,
            steps=self.logger.next_state_index,
        )
        self._set_status(status)
        self._emit_event("program_end", self, outcome)
        return outcome

    def format_error(self, error: APError) -> str:
        line: Optional[int] = None
        if isinstance(error, APParseError):
            line = error.line
        elif isinstance(error, APRuntimeError) and error.location is not None:
            line = error.location.line
        text = f"{error.kind}: {error.message}"
        return text if line is None else f"Line {line}: {text}"

    def _set_status(self, status: str) -> None:
        self.status = status
        if self.status_observer is not None:
            self.status_observer(status)
        self._emit_event("status_changed", self, status)

    def _notice(self, text: str, kind: str) -> None:
        self.output_sink(text, kind)

    def _display(self, value: Value) -> None:
        text = render_value(value)
        self.output.append(text)
        self.io_log.append({"event": "DISPLAY", "text": text})
        self.output_sink(text, OUTPUT_NORMAL)

    def _location(self, line: Line) -> SourceLocation:
        return SourceLocation(file=self.filename, line=line.number, column=1, statement=line.text)

    def _last_location(self) -> Optional[SourceLocation]:
        if self.logger.entries:
            return self.logger.entries[-1].source_location
        return None

    def _execute_range(self, start: int, end: int, frame: Frame) -> None:
        assert self.program is not None
        statements = self.program.statements
        emit_event = self._emit_event
        pc = start
        while pc < end:
            if self._stop_event.is_set():
                raise StopSignal()
            statement = statements[pc]
            pc += 1
            if isinstance(statement, BlankStatement):
                continue
            location = self._location(statement.line)
            self._log_step(rule=statement.__class__.__name__, location=location, frame=frame)
            emit_event("before_statement", self, statement.line, frame.env)
            try:
                pc = self._execute_statement(statement, frame, pc)
            except APRuntimeError as error:
                if error.location is None:
                    error.location = location
                raise
            emit_event("after_statement", self, statement.line, frame.env)

    def _execute_statement(self, statement: Statement, frame: Frame, pc: int) -> int:
        assert self.program is not None
        env = frame.env
        blocks = self.program.blocks
        index = statement.line.index
        if isinstance(statement, DisplayStatement):
            self._display(self._evaluate(statement.expression, statement.line, env))
            return pc
        if isinstance(statement, Assignment):
            self._execute_assignment(statement, env)
            return pc
        if isinstance(statement, IfStatement):
            info = blocks.for_opening(index)
            if self._truthy(self._evaluate(statement.condition, statement.line, env)):
                return pc
            target = info.else_index if info.else_index is not None else info.end_index
            return target + 1
        if isinstance(statement, ElseStatement):
            # Only reached by running off the end of a true IF body.
            return blocks.for_closing(index).end_index + 1
        if isinstance(statement, EndIfStatement):
            return pc
        if isinstance(statement, RepeatTimesStatement):
            state = frame.loops.get(index)
            if state is None:
                limit = self._evaluate(statement.count, statement.line, env)
                if limit.type != TYPE_NUM:
                    raise ExpressionError(
                        f"REPEAT count must be a number but got a {TYPE_NAMES[limit.type]}",
                        rule="REPEAT",
                    )
                state = LoopState(kind=KIND_TIMES, limit=float(limit.value))
                frame.loops[index] = state
            state.count += 1
            if state.count > state.limit:
                del frame.loops[index]
                return blocks.for_opening(index).end_index + 1
            return pc
        if isinstance(statement, RepeatUntilStatement):
            condition = self._parse(statement.condition, statement.line)
            frame.loops[index] = LoopState(kind=KIND_UNTIL, condition=condition)
            return pc
        if isinstance(statement, EndRepeatStatement):
            info = blocks.for_closing(index)
            if info.kind == KIND_TIMES:
                return info.opening
            state = frame.loops.get(info.opening)
            if state is None or state.condition is None:
                raise APRuntimeError("END REPEAT reached without entering its REPEAT UNTIL", rule="REPEAT")
            if self._truthy(self._evaluate_expression(state.condition, env)):
                del frame.loops[info.opening]
                return pc
            return info.opening + 1
        if isinstance(statement, ProcedureStatement):
            return self.program.procedures_by_header[index].end_index + 1
        if isinstance(statement, EndProcedureStatement):
            return pc
        if isinstance(statement, ReturnStatement):
            if frame.name == TOP_LEVEL:
                raise APRuntimeError("RETURN outside of procedure", rule="RETURN")
            value = None
            if statement.expression is not None:
                value = self._evaluate(statement.expression, statement.line, env)
            raise ReturnSignal(value)
        if isinstance(statement, CallStatement):
            expression = self._parse(statement.expression, statement.line)
            if not isinstance(expression, CallExpression):
                raise ExpressionError(f"Expected a call to {statement.name}", rule="CALL")
            self._evaluate_call(expression, env, want_value=False)
            return pc
        raise UnknownStatementError(f"Unrecognized statement: {statement.line.text}", rule="UNKNOWN")

    def _execute_assignment(self, statement: Assignment, env: Environment) -> None:
        if statement.index is None:
            env.set(statement.target, self._evaluate(statement.expression, statement.line, env))
            return
        container = env.get(statement.target)
        if container.type != TYPE_LST:
            raise ExpressionError(
                f"Indexed assignment requires a list but '{statement.target}' is a {TYPE_NAMES[container.type]}",
                rule="ASSIGN",
            )
        position_value = self._evaluate(statement.index, statement.line, env)
        position = list_position(position_value, len(container.value), "ASSIGN")
        container.value[position] = self._evaluate(statement.expression, statement.line, env)

    def _parse(self, text: str, line: Line) -> Expression:
        key = (line.index, text)
        cached = self._expr_cache.get(key)
        if cached is None:
            cached = parse_expression(text)
            self._expr_cache[key] = cached
        return cached

    def _evaluate(self, text: str, line: Line, env: Environment) -> Value:
        return self._evaluate_expression(self._parse(text, line), env)

    def _evaluate_expression(self, expression: Expression, env: Environment) -> Value:
        if isinstance(expression, Literal):
            if expression.literal_type == TYPE_NUM:
                return number(expression.value)
            return Value(expression.literal_type, expression.value)
        if isinstance(expression, Identifier):
            return env.get(expression.name)
        if isinstance(expression, ListLiteral):
            return Value(TYPE_LST, [self._evaluate_expression(item, env) for item in expression.items])
        if isinstance(expression, IndexExpression):
            return self._evaluate_index(expression, env)
        if isinstance(expression, CallExpression):
            result = self._evaluate_call(expression, env, want_value=True)
            assert result is not None
            return result
        if isinstance(expression, UnaryOp):
            operand = self._evaluate_expression(expression.operand, env)
            if expression.op == "NOT":
                return Value(TYPE_BOOL, not self._truthy(operand))
            value = self._expect_number(operand, expression.op)
            return number(-value if expression.op == "-" else value)
        if isinstance(expression, LogicalOp):
            left = self._truthy(self._evaluate_expression(expression.left, env))
            if expression.op == "AND" and not left:
                return Value(TYPE_BOOL, False)
            if expression.op == "OR" and left:
                return Value(TYPE_BOOL, True)
            return Value(TYPE_BOOL, self._truthy(self._evaluate_expression(expression.right, env)))
        if isinstance(expression, Comparison):
            left = self._evaluate_expression(expression.operands[0], env)
            for op, operand in zip(expression.operators, expression.operands[1:]):
                right = self._evaluate_expression(operand, env)
                if not self._compare(op, left, right):
                    return Value(TYPE_BOOL, False)
                left = right
            return Value(TYPE_BOOL, True)
        if isinstance(expression, BinaryOp):
            left = self._evaluate_expression(expression.left, env)
            right = self._evaluate_expression(expression.right, env)
            return self._binary(expression.op, left, right)
        raise ExpressionError("Unsupported expression", rule="EVAL")

    def _evaluate_index(self, expression: IndexExpression, env: Environment) -> Value:
        base = self._evaluate_expression(expression.base, env)
        index_value = self._evaluate_expression(expression.index, env)
        if base.type == TYPE_LST:
            return base.value[list_position(index_value, len(base.value), "INDEX")]
        if base.type == TYPE_STR:
            return Value(TYPE_STR, base.value[list_position(index_value, len(base.value), "INDEX")])
        raise ExpressionError(f"Cannot index into a {TYPE_NAMES[base.type]}", rule="INDEX")

    def _evaluate_call(self, expression: CallExpression, env: Environment, *, want_value: bool) -> Optional[Value]:
        assert self.program is not None
        name = expression.name
        procedure = self.program.procedures.get(name)
        if procedure is None and name not in self.builtins.table:
            raise ExpressionError(f"Unknown procedure '{name}'", rule="CALL")
        # Arguments are evaluated left to right in the caller's scope.
        args = [self._evaluate_expression(arg, env) for arg in expression.args]
        if procedure is not None:
            result = self._call_procedure(procedure, args)
        else:
            location = self._last_location()
            self._emit_event("before_call", self, name, args, env, location)
            result = self.builtins.invoke(self, name, args, location)
            self._emit_event("after_call", self, name, result, env, location)
        if want_value and result is None:
            raise ExpressionError(f"{name} does not return a value", rule="CALL")
        return result

    def _call_procedure(self, procedure: ProcedureDef, args: List[Value]) -> Optional[Value]:
        if len(args) != len(procedure.params):
            raise ArityError(
                f"Procedure {procedure.name} expects {len(procedure.params)} argument(s) but received {len(args)}",
                rule=procedure.name,
            )
        if len(self.call_stack) > self.max_call_depth:
            raise APRuntimeError(f"Maximum call depth of {self.max_call_depth} exceeded", rule="CALL")
        call_location = self._last_location()
        env = Environment(parent=self.global_env)
        for param, arg in zip(procedure.params, args):
            env.set(param, arg)
        frame = self._new_frame(procedure.name, env, call_location)
        self.call_stack.append(frame)
        self._emit_event("before_call", self, procedure.name, args, env, call_location)
        try:
            self._execute_range(procedure.body_start, procedure.body_end + 1, frame)
        except ReturnSignal as signal:
            result = signal.value
        else:
            result = None
        self.call_stack.pop()
        self.last_return = result
        self._emit_event("after_call", self, procedure.name, result, env, call_location)
        return result

    def _binary(self, op: str, left: Value, right: Value) -> Value:
        if op == "+" and (left.type == TYPE_STR or right.type == TYPE_STR):
            return Value(TYPE_STR, render_value(left) + render_value(right))
        if left.type != TYPE_NUM or right.type != TYPE_NUM:
            raise ExpressionError(
                f"Cannot apply '{op}' to {TYPE_NAMES[left.type]} and {TYPE_NAMES[right.type]}",
                rule="ARITH",
            )
        a = left.value
        b = right.value
        with np.errstate(over="ignore", invalid="ignore"):
            if op == "+":
                return number(a + b)
            if op == "-":
                return number(a - b)
            if op == "*":
                return number(a * b)
            if b == 0:
                raise ExpressionError("Division by zero", rule="DIV" if op == "/" else "MOD")
            if op == "/":
                return number(a / b)
            return number(np.fmod(a, b))

    def _compare(self, op: str, left: Value, right: Value) -> bool:
        if op == "==":
            return self._values_equal(left, right)
        if op == "!=":
            return not self._values_equal(left, right)
        a, b = self._ordering_operands(op, left, right)
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        return a >= b

    def _ordering_operands(self, op: str, left: Value, right: Value) -> Tuple[Any, Any]:
        if left.type == TYPE_STR and right.type == TYPE_STR:
            return left.value, right.value
        a = self._numeric_view(left)
        b = self._numeric_view(right)
        if a is None or b is None:
            raise ExpressionError(
                f"Cannot compare {TYPE_NAMES[left.type]} and {TYPE_NAMES[right.type]} with '{op}'",
                rule="COMPARE",
            )
        return a, b

    def _numeric_view(self, value: Value) -> Optional[np.float64]:
        if value.type == TYPE_NUM:
            return value.value
        if value.type == TYPE_STR and _NUMERIC_STRING.match(value.value):
            return np.float64(value.value.strip())
        return None

    def _values_equal(self, left: Value, right: Value) -> bool:
        if left.type == right.type:
            if left.type == TYPE_LST:
                return len(left.value) == len(right.value) and all(
                    self._values_equal(a, b) for a, b in zip(left.value, right.value)
                )
            return bool(left.value == right.value)
        if {left.type, right.type} == {TYPE_NUM, TYPE_STR}:
            a = self._numeric_view(left)
            b = self._numeric_view(right)
            return a is not None and b is not None and bool(a == b)
        return False

    def _truthy(self, value: Value) -> bool:
        if value.type == TYPE_BOOL:
            return bool(value.value)
        if value.type == TYPE_NUM:
            return not (value.value == 0 or np.isnan(value.value))
        if value.type == TYPE_STR:
            return value.value != ""
        return True

    def _expect_number(self, value: Value, op: str) -> np.float64:
        if value.type != TYPE_NUM:
            raise ExpressionError(f"Cannot apply unary '{op}' to a {TYPE_NAMES[value.type]}", rule="ARITH")
        return value.value

    def _new_frame(self, name: str, env: Environment, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, env=env, frame_id=frame_id, call_location=call_location)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hooks.emit(event, *args, **kwargs)
        except APRuntimeError:
            raise
        except Exception as exc:
            raise APRuntimeError(f"Hook '{event}' failed: {exc}", location=self._last_location(), rule="HOOK")

    def _log_step(self, *, rule: str, location: SourceLocation, frame: Frame) -> None:
        if self.logger.next_state_index >= self.max_steps:
            raise StepLimitExceeded(
                f"Step limit of {self.max_steps} exceeded; the program may never terminate",
                location=location,
                rule="STEP",
            )
        env_snapshot = frame.env.snapshot() if self.verbose else None
        entry = self.logger.record(
            frame=frame,
            location=location,
            statement=location.statement,
            env_snapshot=env_snapshot,
            detail={"rule": rule},
        )
        try:
            self.hooks.after_step(self, StepContext(step_index=entry.step_index, rule=rule, location=location, extra=None))
        except APRuntimeError:
            raise
        except Exception as exc:
            raise APRuntimeError(f"Step rule failed: {exc}", location=location, rule="HOOK")




@dataclass
class TraceLine:
    procedure: str
    line: Optional[Line]
    called_from: Optional[int]
    entry: Optional[StateEntry]


class TracebackFormatter:
    """Renders the procedure calls that were active when a run failed.

    Each frame points at the source line it was executing, so the outermost
    frame shows the call site and the innermost shows the failing statement.
    """

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def _source_line(self, location: Optional[SourceLocation]) -> Optional[Line]:
        program = self.interpreter.program
        if program is None or location is None:
            return None
        return program.lines[location.line - 1]

    def _signature(self, name: str) -> str:
        program = self.interpreter.program
        if program is None or name not in program.procedures:
            return name
        return f"{name}({', '.join(program.procedures[name].params)})"

    def trace(self) -> List[TraceLine]:
        trace: List[TraceLine] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            trace.append(
                TraceLine(
                    procedure=self._signature(frame.name),
                    line=self._source_line(location),
                    called_from=frame.call_location.line if frame.call_location else None,
                    entry=entry,
                )
            )
        return trace

    def format_text(self, error: APError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for item in self.trace():
            if item.line is None:
                lines.append(f"  in {item.procedure}")
            else:
                lines.append(f"  Line {item.line.number}, in {item.procedure}")
                lines.append(f"    {item.line.text}")
            if item.entry is not None:
                lines.append(f"    step {item.entry.state_id}")
                if verbose and item.entry.env_snapshot:
                    variables = ", ".join(f"{k}={v}" for k, v in item.entry.env_snapshot.items())
                    lines.append(f"    variables: {variables}")
        lines.append(f"{error.kind}: {error.message}")
        return "\n".join(lines)

    def to_json(self, error: APError) -> str:
        frames: List[Dict[str, Any]] = []
        for depth, item in enumerate(self.trace()):
            frame: Dict[str, Any] = {"depth": depth, "procedure": item.procedure}
            if item.line is not None:
                frame["line"] = item.line.number
                frame["source"] = item.line.text
            if item.called_from is not None:
                frame["called_from"] = item.called_from
            if item.entry is not None:
                frame["step"] = item.entry.step_index
                frame["state_id"] = item.entry.state_id
                if item.entry.env_snapshot is not None:
                    frame["variables"] = item.entry.env_snapshot
            frames.append(frame)
        location = getattr(error, "location", None)
        data = {
            "error": {
                "type": error.kind,
                "message": error.message,
                "line": location.line if location is not None else getattr(error, "line", None),
                "rule": getattr(error, "rule", None),
                "step": getattr(error, "step_index", None),
            },
            "traceback": frames,
        }
        return json.dumps(data, indent=2)
