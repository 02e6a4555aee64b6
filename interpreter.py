from __future__ import annotations
import json
import sys
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from lexer import MetalError, SourceLocation
from parser import (
    Accept,
    And,
    Bexp,
    BoolLiteral,
    Call,
    Comp,
    DerivedSymbol,
    Eq,
    FuncDecl,
    If,
    Le,
    Literal,
    MoveLeft,
    MoveRight,
    Ne,
    Not,
    Or,
    Param,
    PrintRead,
    PrintStr,
    Read,
    Reject,
    Statement,
    Var,
    VarDecl,
    While,
    Write,
)
from tape import Tape


STATUS_RUNNING = "RUNNING"
STATUS_ACCEPT = "ACCEPT"
STATUS_REJECT = "REJECT"
STATUS_ERROR = "ERROR"

# Each nested Metal call costs about a dozen Python frames.
RECURSION_LIMIT = 100_000
EVAL_STACK_SIZE = 512 * 1024 * 1024


class MetalRuntimeError(MetalError):
    """Raised for runtime faults."""

    kind = "runtime"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        kind: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        if kind is not None:
            self.kind = kind
        self.step_index: Optional[int] = None


class UndefVar(MetalRuntimeError):
    kind = "UndefVar"

    def __init__(self, name: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(f"Undefined variable '{name}'", location=location)
        self.name = name


class UndefFunc(MetalRuntimeError):
    kind = "UndefFunc"

    def __init__(self, name: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(f"Undefined function '{name}'", location=location)
        self.name = name


class CallArityError(MetalRuntimeError):
    kind = "WrongNumArgs"

    def __init__(
        self,
        name: str,
        declared: Tuple[Param, ...],
        supplied: Tuple[DerivedSymbol, ...],
        *,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(
            f"Function {name} expects {len(declared)} arguments but received {len(supplied)}",
            location=location,
        )
        self.name = name
        self.declared = declared
        self.supplied = supplied


class CallDepthExceeded(MetalRuntimeError):
    kind = "CallDepthExceeded"


@dataclass(frozen=True)
class Function:
    name: str
    params: Tuple[Param, ...]
    body: Statement


@dataclass(frozen=True)
class Environment:
    """One frame of run-time bindings plus a link to the enclosing frame.

    Environments are values: adding a binding returns a new environment and
    leaves this one untouched, so restoring a saved environment undoes every
    binding made since.
    """

    parent: Optional["Environment"] = None
    variables: Mapping[str, str] = field(default_factory=dict)
    functions: Mapping[str, Function] = field(default_factory=dict)

    def add_var(self, name: str, symbol: str) -> "Environment":
        return replace(self, variables={**self.variables, name: symbol})

    def add_func(self, function: Function) -> "Environment":
        return replace(self, functions={**self.functions, function.name: function})

    def push(self, variables: Optional[Mapping[str, str]] = None) -> "Environment":
        return Environment(parent=self, variables=dict(variables or {}))

    def pop(self) -> "Environment":
        if self.parent is None:
            raise MetalRuntimeError("Cannot pop the global frame", kind="internal")
        return self.parent

    def lookup_var(self, name: str) -> Optional[str]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.variables:
                return env.variables[name]
            env = env.parent
        return None

    def lookup_func(self, name: str) -> Optional[Function]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.functions:
                return env.functions[name]
            env = env.parent
        return None

    @property
    def depth(self) -> int:
        depth = 0
        env: Optional[Environment] = self
        while env is not None:
            depth += 1
            env = env.parent
        return depth

    def snapshot(self) -> Dict[str, str]:
        visible: Dict[str, str] = {}
        env: Optional[Environment] = self
        while env is not None:
            for name, symbol in env.variables.items():
                visible.setdefault(name, repr(symbol))
            for name, function in env.functions.items():
                visible.setdefault(name, f"<func/{len(function.params)}>")
            env = env.parent
        return visible


@dataclass(frozen=True)
class Configuration:
    tape: Tape = field(default_factory=Tape.blank)
    env: Environment = field(default_factory=Environment)
    status: str = STATUS_RUNNING
    output: Tuple[str, ...] = ()

    @classmethod
    def initial(cls, tape: str = "", head: int = 0) -> "Configuration":
        return cls(tape=Tape.from_string(tape, head))

    @property
    def halted(self) -> bool:
        return self.status != STATUS_RUNNING

    @property
    def head(self) -> int:
        return self.tape.head

    def _running(self, **changes: Any) -> "Configuration":
        # Once halted, nothing about the machine may change.
        if self.halted:
            return self
        return replace(self, **changes)

    def left(self) -> "Configuration":
        return self._running(tape=self.tape.left())

    def right(self) -> "Configuration":
        return self._running(tape=self.tape.right())

    def read(self) -> str:
        return self.tape.read()

    def write(self, symbol: str) -> "Configuration":
        return self._running(tape=self.tape.write(symbol))

    def accept(self) -> "Configuration":
        return self._running(status=STATUS_ACCEPT)

    def reject(self) -> "Configuration":
        return self._running(status=STATUS_REJECT)

    def emit(self, text: str) -> "Configuration":
        return self._running(output=self.output + (text,))

    def with_env(self, env: Environment) -> "Configuration":
        return replace(self, env=env)


def with_overlay(
    config: Configuration,
    bindings: Mapping[str, str],
    body: Callable[[Configuration], Configuration],
) -> Configuration:
    """Runs ``body`` with a fresh frame of ``bindings`` and then drops the frame.

    The caller's environment comes back whether the body finished normally,
    accepted or rejected; the tape, head, halt status and output the body
    produced are kept.
    """
    inner = body(config.with_env(config.env.push(bindings)))
    return inner.with_env(config.env)


@dataclass(frozen=True)
class Machine:
    status: str
    config: Configuration
    error: Optional[MetalRuntimeError] = None

    @property
    def accepted(self) -> bool:
        return self.status == STATUS_ACCEPT

    @property
    def rejected(self) -> bool:
        return self.status == STATUS_REJECT

    @property
    def failed(self) -> bool:
        return self.status == STATUS_ERROR

    @property
    def output(self) -> Tuple[str, ...]:
        return self.config.output


@dataclass
class Frame:
    name: str
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rule: str


class StateLogger:
    """Numbers every executed statement.

    Full entries are only retained when ``verbose``; otherwise only the last
    entry per frame is kept, so long-running loops do not grow memory.
    """

    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.last_entry: Optional[StateEntry] = None
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
            rule=rule,
        )
        if self.verbose:
            self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_entry = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)


def _with_deep_stack(function: Callable[[], Configuration]) -> Configuration:
    """Calls ``function`` on a worker thread with a large stack and a raised recursion limit.

    Recursive Metal functions map onto Python recursion, so the default limit
    would cut a recursive tape scan off after a few dozen calls. Whatever
    ``function`` raises is raised again in the calling thread.
    """
    outcome: Dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["result"] = function()
        except BaseException as exc:
            outcome["error"] = exc

    previous_limit = sys.getrecursionlimit()
    previous_size = threading.stack_size(EVAL_STACK_SIZE)
    sys.setrecursionlimit(max(previous_limit, RECURSION_LIMIT))
    try:
        worker = threading.Thread(target=target, name="metal-eval", daemon=True)
        worker.start()
        worker.join()
    finally:
        threading.stack_size(previous_size)
        sys.setrecursionlimit(previous_limit)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


class Interpreter:
    def __init__(
        self,
        *,
        filename: str = "<string>",
        verbose: bool = False,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.filename = filename
        self.verbose = verbose
        self.output_sink = output_sink
        self.logger = StateLogger(verbose=verbose)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.last_config: Optional[Configuration] = None
        self.base_depth = 1

    def run(self, statement: Optional[Statement], config: Optional[Configuration] = None) -> Machine:
        """Evaluates ``statement`` and reports how the machine ended.

        Runtime errors are returned as a ``Machine`` with status ERROR rather
        than raised, so callers can tell a failing program from a rejecting one.
        """
        config = config if config is not None else Configuration()
        self.last_config = config
        self.base_depth = config.env.depth
        self.call_stack = [self._new_frame("<top-level>", None)]
        try:
            if statement is None:
                final = config
            else:
                final = _with_deep_stack(lambda: self.execute(statement, config))
        except MetalRuntimeError as error:
            return self._failure(error)
        except RecursionError:
            return self._failure(CallDepthExceeded("Maximum call depth exceeded"))
        except Exception as exc:
            # Surface unexpected Python-level failures as interpreter errors.
            loc = self.logger.last_entry.source_location if self.logger.last_entry else None
            return self._failure(MetalRuntimeError(f"Internal interpreter error: {exc}", location=loc, kind="internal"))
        self.call_stack.pop()
        return Machine(status=final.status, config=final)

    def _failure(self, error: MetalRuntimeError) -> Machine:
        if self.logger.last_entry is not None:
            error.step_index = self.logger.last_entry.step_index
            if error.location is None:
                error.location = self.logger.last_entry.source_location
        assert self.last_config is not None
        # Drop the block and call frames that were live when the error hit.
        env = self.last_config.env
        for _ in range(env.depth - self.base_depth):
            env = env.pop()
        return Machine(status=STATUS_ERROR, config=self.last_config.with_env(env), error=error)

    def execute(self, statement: Statement, config: Configuration) -> Configuration:
        """Applies ``statement`` to ``config``; raises ``MetalRuntimeError`` on failure.

        ``Comp`` chains are unrolled onto an explicit stack. Before every
        statement a halted configuration is returned unchanged.
        """
        pending: List[Statement] = [statement]
        while pending:
            if config.halted:
                return config
            current = pending.pop()
            if isinstance(current, Comp):
                pending.append(current.second)
                pending.append(current.first)
                continue
            config = self._execute_statement(current, config)
            self.last_config = config
        return config

    def _execute_statement(self, statement: Statement, config: Configuration) -> Configuration:
        self._log_step(rule=statement.__class__.__name__, location=statement.location, config=config)
        if isinstance(statement, MoveLeft):
            return config.left()
        if isinstance(statement, MoveRight):
            return config.right()
        if isinstance(statement, Write):
            return config.write(self.symbol_value(statement.symbol, config))
        if isinstance(statement, Accept):
            return config.accept()
        if isinstance(statement, Reject):
            return config.reject()
        if isinstance(statement, If):
            return self._execute_if(statement, config)
        if isinstance(statement, While):
            return self._execute_while(statement, config)
        if isinstance(statement, VarDecl):
            symbol = self.symbol_value(statement.symbol, config)
            return config.with_env(config.env.add_var(statement.name, symbol))
        if isinstance(statement, FuncDecl):
            function = Function(name=statement.name, params=statement.params, body=statement.body)
            return config.with_env(config.env.add_func(function))
        if isinstance(statement, Call):
            return self._execute_call(statement, config)
        if isinstance(statement, PrintRead):
            return self._emit(config, config.read())
        if isinstance(statement, PrintStr):
            return self._emit(config, statement.text)
        if isinstance(statement, Comp):
            return self.execute(statement, config)
        raise MetalRuntimeError(
            f"Unsupported statement {statement.__class__.__name__}", location=statement.location, kind="internal"
        )

    def _emit(self, config: Configuration, text: str) -> Configuration:
        if self.output_sink is not None:
            self.output_sink(text)
        return config.emit(text)

    def _block(self, body: Statement, config: Configuration) -> Configuration:
        return with_overlay(config, {}, lambda inner: self.execute(body, inner))

    def _execute_if(self, statement: If, config: Configuration) -> Configuration:
        for branch in statement.clauses():
            if self.condition_value(branch.condition, config):
                return self._block(branch.body, config)
        return config

    def _execute_while(self, statement: While, config: Configuration) -> Configuration:
        while not config.halted and self.condition_value(statement.condition, config):
            config = self._block(statement.body, config)
            self.last_config = config
        return config

    def _execute_call(self, statement: Call, config: Configuration) -> Configuration:
        function = config.env.lookup_func(statement.name)
        if function is None:
            raise UndefFunc(statement.name, location=statement.location)
        if len(statement.args) != len(function.params):
            raise CallArityError(statement.name, function.params, statement.args, location=statement.location)
        # Arguments are evaluated against the caller's bindings.
        bindings = {
            param.name: self.symbol_value(arg, config) for param, arg in zip(function.params, statement.args)
        }
        frame = self._new_frame(function.name, statement.location)
        self.call_stack.append(frame)
        result = with_overlay(config, bindings, lambda inner: self.execute(function.body, inner))
        # Frames still on the stack after an error keep their entries for the traceback.
        self.call_stack.pop()
        self.logger.forget_frame(frame.frame_id)
        return result

    def symbol_value(self, symbol: DerivedSymbol, config: Configuration) -> str:
        if isinstance(symbol, Read):
            return config.read()
        if isinstance(symbol, Literal):
            return symbol.symbol
        if isinstance(symbol, Var):
            value = config.env.lookup_var(symbol.name)
            if value is None:
                raise UndefVar(symbol.name, location=symbol.location)
            return value
        raise MetalRuntimeError(f"Unsupported symbol {symbol!r}", location=symbol.location, kind="internal")

    def condition_value(self, condition: Bexp, config: Configuration) -> bool:
        if isinstance(condition, BoolLiteral):
            return condition.value
        if isinstance(condition, Not):
            return not self.condition_value(condition.operand, config)
        if isinstance(condition, And):
            return self.condition_value(condition.left, config) and self.condition_value(condition.right, config)
        if isinstance(condition, Or):
            return self.condition_value(condition.left, config) or self.condition_value(condition.right, config)
        if isinstance(condition, (Eq, Le, Ne)):
            left = self.symbol_value(condition.left, config)
            right = self.symbol_value(condition.right, config)
            if isinstance(condition, Eq):
                return left == right
            if isinstance(condition, Le):
                return left <= right
            return left != right
        raise MetalRuntimeError(f"Unsupported condition {condition!r}", location=condition.location, kind="internal")

    def _new_frame(self, name: str, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_location=call_location)

    def _log_step(self, *, rule: str, location: Optional[SourceLocation], config: Configuration) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = config.env.snapshot() if self.verbose else None
        self.logger.record(frame=frame, location=location, rule=rule, env_snapshot=env_snapshot)


def evaluate(
    statement: Optional[Statement],
    config: Optional[Configuration] = None,
    *,
    output_sink: Optional[Callable[[str], None]] = None,
    verbose: bool = False,
    filename: str = "<string>",
) -> Machine:
    interpreter = Interpreter(filename=filename, verbose=verbose, output_sink=output_sink)
    return interpreter.run(statement, config)


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    entry: Optional[StateEntry]

    def to_dict(self, index: int) -> Dict[str, Any]:
        data: Dict[str, Any] = {"frame_index": index, "name": self.name}
        if self.location:
            data["location"] = {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
                "statement": self.location.statement,
            }
        if self.entry:
            data["state_id"] = self.entry.state_id
            data["step_index"] = self.entry.step_index
            data["rule"] = self.entry.rule
            if self.entry.env_snapshot is not None:
                data["env_snapshot"] = self.entry.env_snapshot
        return data


class TracebackFormatter:
    """Renders a runtime error with the Metal call stack and the machine it stopped on.

    Only the innermost ``MAX_FRAMES`` calls are shown; runaway recursion can
    leave thousands on the stack.
    """

    MAX_FRAMES = 20

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        logger = self.interpreter.logger
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            frames.append(TracebackFrame(name=frame.name, location=location, entry=entry))
        return frames

    def _innermost(self) -> Tuple[int, List[TracebackFrame]]:
        frames = self.build_frames()
        omitted = max(0, len(frames) - self.MAX_FRAMES)
        return omitted, frames[omitted:]

    def machine_summary(self) -> Optional[Dict[str, Any]]:
        config = self.interpreter.last_config
        if config is None:
            return None
        start, text = config.tape.span()
        return {"head": config.head, "tape_start": start, "tape": text}

    def format_text(self, error: MetalRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        omitted, frames = self._innermost()
        if omitted:
            lines.append(f"  ... {omitted} earlier calls omitted")
        for frame in frames:
            if frame.location:
                where = f"{frame.location.file}:{frame.location.line}:{frame.location.column}"
            else:
                where = "<unknown location>"
            lines.append(f"  {where} in {frame.name}")
            if frame.location and frame.location.statement:
                lines.append(f"    {frame.location.statement}")
            if frame.entry:
                lines.append(f"    step {frame.entry.step_index} ({frame.entry.rule})")
                if verbose and frame.entry.env_snapshot:
                    bindings = ", ".join(f"{k}={v}" for k, v in frame.entry.env_snapshot.items())
                    lines.append(f"    bindings: {bindings}")
        machine = self.machine_summary()
        if machine is not None:
            lines.append(f"Machine: head at {machine['head']}, tape {machine['tape']!r} from {machine['tape_start']}")
        lines.append(f"{error.__class__.__name__}: {error.message} (kind: {error.kind})")
        return "\n".join(lines)

    def to_json(self, error: MetalRuntimeError) -> str:
        omitted, frames = self._innermost()
        data = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "failing_step_index": error.step_index,
            },
            "machine": self.machine_summary(),
            "omitted_frames": omitted,
            "traceback": [frame.to_dict(omitted + index) for index, frame in enumerate(frames)],
        }
        return json.dumps(data, indent=2)
