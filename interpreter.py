from __future__ import annotations
import json
import re
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from canvas import TurtleCanvas, TurtleState
from evaluator import (
    LITERAL_PREFIX,
    VARIABLE_PREFIX,
    ExpressionEvaluator,
    LogoRuntimeError,
    Value,
    exactly,
    expect_bool,
    expect_int,
    expect_word,
    make_int,
)
from hooks import HookRegistry
from lexer import (
    ADDASSIGN,
    BACK,
    BUILTIN_COMMANDS,
    COMMENT,
    END,
    FORWARD,
    IF,
    LEFT,
    MAKE,
    PENDOWN,
    PENUP,
    RIGHT,
    SETHEADING,
    SETPENCOLOR,
    SETX,
    SETY,
    TO,
    TURN,
    WHILE,
    Lexer,
    LogoError,
    LogoSyntaxError,
    SourceLocation,
    Statement,
    position_after,
)


# Ceiling on WHILE iterations; the loop ends quietly when reached.
MAX_LOOP_ITERATIONS = 1000

TOP_LEVEL = "<top-level>"

RESERVED_NAMES = BUILTIN_COMMANDS | {MAKE, ADDASSIGN, IF, WHILE, TO, END, COMMENT}

_WORD_RE = re.compile(r"\S+")


def _describe(values: Dict[str, Value]) -> Dict[str, str]:
    return {name: f"{value.type}:{value.render()}" for name, value in values.items()}


@dataclass
class VariableTable:
    """Program-lifetime bindings shared by every frame."""

    values: Dict[str, Value] = field(default_factory=dict)
    lock: Any = field(default_factory=threading.RLock, repr=False)

    def set(self, name: str, value: Value) -> None:
        with self.lock:
            self.values[name] = value

    def get_optional(self, name: str) -> Optional[Value]:
        with self.lock:
            return self.values.get(name)

    def add(self, name: str, delta: int, location: Optional[SourceLocation]) -> Value:
        with self.lock:
            existing = self.values.get(name)
            if existing is None:
                raise LogoRuntimeError(
                    f"Variable not found: '{name}' must be set with MAKE before ADDASSIGN",
                    location=location,
                    rewrite_rule=ADDASSIGN,
                )
            updated = make_int(expect_int(existing, ADDASSIGN, location) + delta)
            self.values[name] = updated
            return updated

    def snapshot(self) -> Dict[str, str]:
        with self.lock:
            return _describe(self.values)


@dataclass
class Procedure:
    name: str
    params: List[str]
    body: str
    line: int
    column: int


@dataclass
class ProcedureRegistry:
    procedures: Dict[str, Procedure] = field(default_factory=dict)
    lock: Any = field(default_factory=threading.RLock, repr=False)

    def define(self, procedure: Procedure) -> None:
        with self.lock:
            self.procedures[procedure.name] = procedure

    def get_optional(self, name: str) -> Optional[Procedure]:
        with self.lock:
            return self.procedures.get(name)

    def names(self) -> List[str]:
        with self.lock:
            return sorted(self.procedures)


@dataclass
class Frame:
    name: str
    arguments: Dict[str, Value]
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class Step:
    """One executed statement, with the turtle as it stood before it ran."""

    index: int
    rule: str
    frame_id: Optional[str]
    location: Optional[SourceLocation]
    turtle: TurtleState
    variables: Optional[Dict[str, str]] = None
    detail: Dict[str, Any] = field(default_factory=dict)


class StepLog:
    def __init__(self) -> None:
        self.entries: List[Step] = []
        self._by_frame: Dict[str, Step] = {}

    def append(self, step: Step) -> None:
        self.entries.append(step)
        if step.frame_id is not None:
            self._by_frame[step.frame_id] = step

    def last(self) -> Optional[Step]:
        return self.entries[-1] if self.entries else None

    def last_in_frame(self, frame_id: str) -> Optional[Step]:
        return self._by_frame.get(frame_id)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class BuiltinCommand:
    name: str
    arity: int
    impl: Callable[..., None]


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        canvas: TurtleCanvas,
        filename: str = "<string>",
        verbose: bool = False,
        max_loop_iterations: int = MAX_LOOP_ITERATIONS,
        hooks: Optional[HookRegistry] = None,
    ) -> None:
        if max_loop_iterations < 0:
            raise ValueError("max_loop_iterations must be non-negative")
        self.source = source
        self.filename = filename
        self.canvas = canvas
        self.verbose = verbose
        self.max_loop_iterations = max_loop_iterations
        self.hooks = hooks if hooks is not None else HookRegistry()

        self.variables = VariableTable()
        self.procedures = ProcedureRegistry()
        self.evaluator = ExpressionEvaluator()
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.log = StepLog()

        self.queries: Dict[str, Callable[[], int]] = {
            "XCOR": lambda: canvas.x,
            "YCOR": lambda: canvas.y,
            "HEADING": lambda: canvas.heading,
            "COLOR": lambda: canvas.color,
        }
        self.builtins: Dict[str, BuiltinCommand] = {}
        self._register_builtin(PENUP, 0, canvas.pen_up)
        self._register_builtin(PENDOWN, 0, canvas.pen_down)
        self._register_builtin(FORWARD, 1, canvas.draw_forward)
        self._register_builtin(BACK, 1, canvas.draw_backward)
        self._register_builtin(LEFT, 1, canvas.draw_left)
        self._register_builtin(RIGHT, 1, canvas.draw_right)
        self._register_builtin(SETX, 1, lambda x: canvas.set_pos(x, canvas.y))
        self._register_builtin(SETY, 1, lambda y: canvas.set_pos(canvas.x, y))
        self._register_builtin(SETHEADING, 1, canvas.set_heading)
        self._register_builtin(TURN, 1, canvas.turn_degree)
        self._register_builtin(SETPENCOLOR, 1, canvas.set_color)

        self.statements: Dict[str, Callable[[Statement], None]] = {
            MAKE: self._execute_make,
            ADDASSIGN: self._execute_addassign,
            IF: self._execute_if,
            WHILE: self._execute_while,
            TO: self._execute_to,
        }

    def _register_builtin(self, name: str, arity: int, impl: Callable[..., None]) -> None:
        self.builtins[name] = BuiltinCommand(name=name, arity=arity, impl=impl)

    def run(self) -> None:
        self.execute(self.source)

    def execute(self, text: str) -> None:
        """Run ``text`` as a top-level program against this session's tables and canvas.

        On failure the frames that were active stay on ``call_stack`` for the
        traceback; the next call starts from a fresh top-level frame.
        """
        self.call_stack = [self._new_frame(TOP_LEVEL, {}, None)]
        self.hooks.emit("program_start", self)
        try:
            self._execute_block(text, 1, 1)
        except LogoError as error:
            self._fail(error)
            raise
        except RecursionError as exc:
            error = LogoRuntimeError("Maximum recursion depth exceeded", rewrite_rule="CALL")
            self._fail(error)
            raise error from exc
        except Exception as exc:
            error = LogoRuntimeError(f"Internal interpreter error: {exc}", rewrite_rule="internal")
            self._fail(error)
            raise error from exc
        self.call_stack.pop()
        self.hooks.emit("program_end", self)

    def _fail(self, error: LogoError) -> None:
        if isinstance(error, LogoRuntimeError):
            last = self.log.last()
            if last is not None:
                error.step_index = last.index
                if error.location is None:
                    error.location = last.location
        self.hooks.emit("on_error", self, error)

    def _execute_block(self, text: str, line: int, column: int) -> None:
        """Run every statement of ``text`` with a fresh cursor in the current frame."""
        lexer = Lexer(text, self.filename, line=line, column=column)
        emit = self.hooks.emit
        while True:
            statement = lexer.next_statement()
            if statement is None:
                return
            emit("before_statement", self, statement)
            self._execute_statement(statement)
            emit("after_statement", self, statement)

    def _execute_statement(self, statement: Statement) -> None:
        token = statement.token
        if token.startswith(COMMENT):
            return
        if token == END:
            raise LogoSyntaxError(
                f"END without matching TO at {statement.location.file}:{statement.location.line}:{statement.location.column}"
            )
        try:
            builtin = self.builtins.get(token)
            if builtin is not None:
                self._log_step(token, statement.location)
                self._execute_builtin(builtin, statement)
                return
            handler = self.statements.get(token)
            if handler is not None:
                self._log_step(token, statement.location)
                handler(statement)
                return
            self._log_step("CALL", statement.location, procedure=token)
            self._call_procedure(statement)
        except LogoRuntimeError as err:
            if err.location is None:
                err.location = statement.location
            raise

    def _evaluate(self, text: str, location: Optional[SourceLocation]) -> List[Value]:
        return self.evaluator.evaluate(text, resolve=self._resolve, queries=self.queries, location=location)

    def _resolve(self, name: str, location: Optional[SourceLocation]) -> Value:
        frame = self.call_stack[-1]
        value = frame.arguments.get(name)
        if value is not None:
            return value
        value = self.variables.get_optional(name)
        if value is not None:
            return value
        raise LogoRuntimeError(f"Undefined variable '{name}'", location=location, rewrite_rule="VAR")

    def _execute_builtin(self, builtin: BuiltinCommand, statement: Statement) -> None:
        location = statement.location
        values = exactly(self._evaluate(statement.body, location), builtin.arity, builtin.name, location)
        args = [expect_int(v, builtin.name, location) for v in values]
        builtin.impl(*args)

    def _execute_make(self, statement: Statement) -> None:
        location = statement.location
        name_val, value = exactly(self._evaluate(statement.body, location), 2, MAKE, location)
        self.variables.set(expect_word(name_val, MAKE, location), value)

    def _execute_addassign(self, statement: Statement) -> None:
        location = statement.location
        name_val, delta = exactly(self._evaluate(statement.body, location), 2, ADDASSIGN, location)
        name = expect_word(name_val, ADDASSIGN, location)
        self.variables.add(name, expect_int(delta, ADDASSIGN, location), location)

    def _split_block(self, statement: Statement) -> Tuple[str, str, int, int]:
        body = statement.body
        open_at = body.find("[")
        if open_at == -1:
            loc = statement.location
            raise LogoSyntaxError(f"{statement.token} expects a [ block ] at {loc.file}:{loc.line}:{loc.column}")
        line, column = position_after(body[: open_at + 1], statement.body_line, statement.body_column)
        return body[:open_at], body[open_at + 1 :], line, column

    def _condition(self, text: str, rule: str, location: SourceLocation) -> bool:
        (value,) = exactly(self._evaluate(text, location), 1, rule, location)
        return expect_bool(value, rule, location)

    def _execute_if(self, statement: Statement) -> None:
        condition, block, line, column = self._split_block(statement)
        if self._condition(condition, IF, statement.location):
            self._execute_block(block, line, column)

    def _execute_while(self, statement: Statement) -> None:
        condition, block, line, column = self._split_block(statement)
        iterations = 0
        while self._condition(condition, WHILE, statement.location):
            if iterations >= self.max_loop_iterations:
                self._log_step("WHILE_CAP", statement.location, iterations=iterations)
                return
            self._execute_block(block, line, column)
            iterations += 1

    def _execute_to(self, statement: Statement) -> None:
        body = statement.body
        loc = statement.location
        words = list(_WORD_RE.finditer(body))
        if not words:
            raise LogoSyntaxError(f"TO expects a procedure name at {loc.file}:{loc.line}:{loc.column}")
        name = words[0].group()
        if name in RESERVED_NAMES or name in self.queries or name in self.evaluator.operators:
            raise LogoRuntimeError(f"Procedure name '{name}' conflicts with a built-in", location=loc, rewrite_rule=TO)
        if name[0] in (LITERAL_PREFIX, VARIABLE_PREFIX):
            raise LogoSyntaxError(f"Invalid procedure name '{name}' at {loc.file}:{loc.line}:{loc.column}")
        params: List[str] = []
        header_end = words[0].end()
        for match in words[1:]:
            word = match.group()
            if word[0] not in (LITERAL_PREFIX, VARIABLE_PREFIX):
                break
            if len(word) == 1:
                raise LogoSyntaxError(f"Empty parameter name in TO {name} at {loc.file}:{loc.line}:{loc.column}")
            params.append(word[1:])
            header_end = match.end()
        if len(set(params)) != len(params):
            raise LogoRuntimeError(f"Duplicate parameter name in TO {name}", location=loc, rewrite_rule=TO)
        line, column = position_after(body[:header_end], statement.body_line, statement.body_column)
        self.procedures.define(Procedure(name=name, params=params, body=body[header_end:], line=line, column=column))

    def _call_procedure(self, statement: Statement) -> None:
        location = statement.location
        procedure = self.procedures.get_optional(statement.token)
        if procedure is None:
            raise LogoRuntimeError(f"Unknown procedure '{statement.token}'", location=location, rewrite_rule="CALL")
        args = self._evaluate(statement.body, location)
        if len(args) != len(procedure.params):
            raise LogoRuntimeError(
                f"Invalid number of arguments: {procedure.name} expects {len(procedure.params)} but received {len(args)}",
                location=location,
                rewrite_rule=procedure.name,
            )
        frame = self._new_frame(procedure.name, dict(zip(procedure.params, args)), location)
        self.call_stack.append(frame)
        self._execute_block(procedure.body, procedure.line, procedure.column)
        # Failed calls keep their frame so the traceback can show it.
        self.call_stack.pop()
        self.hooks.emit("after_call", self, procedure.name, frame.arguments, location)

    def _new_frame(self, name: str, arguments: Dict[str, Value], call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, arguments=arguments, frame_id=frame_id, call_location=call_location)

    def _log_step(self, rule: str, location: Optional[SourceLocation], **detail: Any) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        step = Step(
            index=len(self.log),
            rule=rule,
            frame_id=frame.frame_id if frame else None,
            location=location,
            turtle=self.canvas.state(),
            variables=self.variables.snapshot() if self.verbose else None,
            detail=detail,
        )
        self.log.append(step)
        self.hooks.after_step(self, step)


@dataclass
class TracebackFrame:
    name: str
    arguments: Dict[str, str]
    location: Optional[SourceLocation]
    step: Optional[Step]


class TracebackFormatter:
    """Renders the frames left on the call stack after a failure.

    Each frame shows its procedure arguments and where it stood, with the
    turtle as it was when that frame's last statement began.
    """

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def frames(self) -> List[TracebackFrame]:
        log = self.interpreter.log
        result: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            step = log.last_in_frame(frame.frame_id)
            result.append(
                TracebackFrame(
                    name=frame.name,
                    arguments=_describe(frame.arguments),
                    location=step.location if step else frame.call_location,
                    step=step,
                )
            )
        return result

    def format_text(self, error: LogoRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.frames():
            title = frame.name
            if frame.arguments:
                title += " " + " ".join(f":{k}={v}" for k, v in frame.arguments.items())
            if frame.location:
                lines.append(f'  File "{frame.location.file}", line {frame.location.line}, in {title}')
                lines.append(f"    {frame.location.statement}")
            else:
                lines.append(f"  <unknown location> in {title}")
            if frame.step:
                lines.append(f"    step {frame.step.index}, turtle {frame.step.turtle.describe()}")
                if verbose and frame.step.variables is not None:
                    shown = ", ".join(f"{k}={v}" for k, v in frame.step.variables.items())
                    lines.append(f"    variables: {shown}")
        lines.append(f"Turtle at failure: {self.interpreter.canvas.state().describe()}")
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {error.rewrite_rule or 'runtime'})")
        return "\n".join(lines)

    def to_json(self, error: LogoRuntimeError) -> str:
        traceback: List[Dict[str, Any]] = []
        for frame in self.frames():
            entry: Dict[str, Any] = {"name": frame.name, "arguments": frame.arguments}
            if frame.location:
                entry["location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.step:
                entry["step"] = frame.step.index
                entry["rule"] = frame.step.rule
                entry["turtle"] = asdict(frame.step.turtle)
                if frame.step.variables is not None:
                    entry["variables"] = frame.step.variables
            traceback.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rewrite_rule,
                "step": error.step_index,
                "turtle": asdict(self.interpreter.canvas.state()),
            },
            "traceback": traceback,
        }
        return json.dumps(data, indent=2)
