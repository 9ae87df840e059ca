from __future__ import annotations
import json
import sys
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Deque, Dict, List, Optional, Tuple

from compiler import Compiler
from extensions import HookRegistry, RuntimeServices, StepContext
from instructions import COMMANDS, IRProgram, OpKind
from lexer import (
    BFError,
    BFIOError,
    BFRuntimeError,
    SourceBuffer,
    SourceLocation,
    load_file,
    load_stream,
    load_string,
    unmatched_loop_end,
    unmatched_loop_start,
)
from tape import DEFAULT_HEAP_SIZE, CELL_MASK, ExecutionState, TapeOutOfRange


# Value stored by ',' once the input boundary is exhausted.
EOF_SENTINEL = 0xFF

DEFAULT_LOG_CAPACITY = 32

# Pending output is handed to the stream once it grows past this size.
OUTPUT_FLUSH_THRESHOLD = 8192

_OPEN = ord("[")
_CLOSE = ord("]")


class ExecuteMode(Enum):
    NORMAL = "normal"
    COMPILED = "compiled"


class ByteIO:
    """Byte-level input/output boundary.

    Output is buffered and always flushed before a blocking read, so prompt
    text reaches the terminal before the program waits for input.
    """

    def __init__(self, stdin: Optional[BinaryIO] = None, stdout: Optional[BinaryIO] = None) -> None:
        self._stdin = stdin
        self._stdout = stdout
        self._pending = bytearray()

    @property
    def stdin(self) -> BinaryIO:
        return self._stdin if self._stdin is not None else sys.stdin.buffer

    @property
    def stdout(self) -> BinaryIO:
        return self._stdout if self._stdout is not None else sys.stdout.buffer

    def write_byte(self, value: int) -> None:
        pending = self._pending
        pending.append(int(value))
        if len(pending) >= OUTPUT_FLUSH_THRESHOLD:
            self.flush()

    def write(self, data: bytes) -> None:
        self._pending.extend(data)
        if len(self._pending) >= OUTPUT_FLUSH_THRESHOLD:
            self.flush()

    def flush(self) -> None:
        out = self.stdout
        data = bytes(self._pending)
        self._pending.clear()
        try:
            if data:
                out.write(data)
            out.flush()
        except OSError as exc:
            raise BFIOError(f"Failed to write output: {exc}") from exc

    def read_byte(self) -> int:
        self.flush()
        try:
            data = self.stdin.read(1)
        except OSError as exc:
            raise BFIOError(f"Failed to read input: {exc}") from exc
        if not data:
            return EOF_SENTINEL
        return data[0]


@dataclass
class StateEntry:
    step_index: int
    pc: int
    op: str
    head: int


class StateLogger:
    """Counts executed steps and keeps the most recent ones.

    Only the last ``capacity`` steps are retained so that long-running
    programs do not grow the log without bound; capacity 0 only counts.
    """

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        self.capacity = capacity
        self._recent: Deque[Tuple[int, int, OpKind, int]] = deque(maxlen=max(capacity, 1))
        self.steps = 0

    @property
    def enabled(self) -> bool:
        return self.capacity > 0

    def reset(self) -> None:
        self._recent.clear()
        self.steps = 0

    def record(self, step_index: int, pc: int, op: OpKind, head: int) -> None:
        self._recent.append((step_index, pc, op, head))

    @property
    def entries(self) -> List[StateEntry]:
        if not self.enabled:
            return []
        return [StateEntry(step, pc, op.value, head) for step, pc, op, head in self._recent]


def _run_step_rules(hooks: HookRegistry, owner: Any, ctx: StepContext) -> None:
    # Rules run before the step is counted, so the failing step is ctx.step_index.
    try:
        hooks.after_step(owner, ctx)
    except BFRuntimeError as error:
        if error.step_index is None:
            error.step_index = ctx.step_index
        raise
    except BFError:
        raise
    except Exception as exc:
        wrapped = BFRuntimeError(f"Extension step rule failed: {exc}", rewrite_rule="EXT")
        wrapped.step_index = ctx.step_index
        raise wrapped from exc


def run_source(
    source: SourceBuffer,
    state: ExecutionState,
    io: ByteIO,
    *,
    logger: Optional[StateLogger] = None,
    hooks: Optional[HookRegistry] = None,
    owner: Any = None,
) -> ExecutionState:
    """Execute program text directly, matching brackets by scanning."""
    data = source.data
    n = len(data)
    commands = COMMANDS
    tape = state.tape
    cells = tape.cells
    size = tape.size
    head = tape.head
    pc = state.pc
    steps = state.steps
    recording = logger is not None and logger.enabled
    stepping = hooks is not None and hooks.has_step_rules
    kind: Optional[OpKind] = None

    try:
        while pc < n:
            kind = commands.get(data[pc])
            if kind is None:
                pc += 1
                continue
            if recording:
                logger.record(steps, pc, kind, head)  # type: ignore[union-attr]
            if stepping:
                _run_step_rules(hooks, owner, StepContext(steps, kind.value, pc, head))  # type: ignore[arg-type]
            steps += 1

            if kind is OpKind.ADD:
                cells[head] = (int(cells[head]) + 1) & CELL_MASK
            elif kind is OpKind.SUB:
                cells[head] = (int(cells[head]) - 1) & CELL_MASK
            elif kind is OpKind.MOVE_RIGHT:
                if head + 1 >= size:
                    tape.head = head
                    tape.move(1, kind.value)
                head += 1
            elif kind is OpKind.MOVE_LEFT:
                if head - 1 < 0:
                    tape.head = head
                    tape.move(-1, kind.value)
                head -= 1
            elif kind is OpKind.OUTPUT:
                io.write_byte(cells[head])
            elif kind is OpKind.INPUT:
                cells[head] = io.read_byte()
            elif kind is OpKind.LOOP_START:
                if cells[head] == 0:
                    depth = 1
                    j = pc + 1
                    while depth:
                        if j >= n:
                            raise unmatched_loop_start(source, pc)
                        byte = data[j]
                        if byte == _OPEN:
                            depth += 1
                        elif byte == _CLOSE:
                            depth -= 1
                        j += 1
                    # j is just past the matching ']'.
                    pc = j
                    continue
            elif kind is OpKind.LOOP_END:
                if cells[head] != 0:
                    depth = 1
                    j = pc - 1
                    while True:
                        if j < 0:
                            raise unmatched_loop_end(source, pc)
                        byte = data[j]
                        if byte == _CLOSE:
                            depth += 1
                        elif byte == _OPEN:
                            depth -= 1
                            if depth == 0:
                                break
                        j -= 1
                    # Resume at the matching '[' so its test runs again.
                    pc = j
                    continue
            else:
                raise BFRuntimeError(f"Unhandled instruction kind {kind!r}", rewrite_rule="internal")
            pc += 1
    except BFRuntimeError as error:
        _annotate(error, kind, steps - 1, source.locate(pc) if pc < n else None)
        raise
    finally:
        tape.head = head
        state.pc = pc
        state.steps = steps
        if logger is not None:
            logger.steps = steps
    return state


def run_ircode(
    program: IRProgram,
    state: ExecutionState,
    io: ByteIO,
    *,
    source: Optional[SourceBuffer] = None,
    logger: Optional[StateLogger] = None,
    hooks: Optional[HookRegistry] = None,
    owner: Any = None,
) -> ExecutionState:
    """Execute compiled IR; loop jumps use the resolved targets."""
    ircode = program.ircode
    n = len(ircode)
    tape = state.tape
    cells = tape.cells
    size = tape.size
    head = tape.head
    pc = state.pc
    steps = state.steps
    recording = logger is not None and logger.enabled
    stepping = hooks is not None and hooks.has_step_rules
    kind: Optional[OpKind] = None

    try:
        while pc < n:
            inst = ircode[pc]
            kind = inst.kind
            if recording:
                logger.record(steps, pc, kind, head)  # type: ignore[union-attr]
            if stepping:
                _run_step_rules(hooks, owner, StepContext(steps, kind.value, pc, head))  # type: ignore[arg-type]
            steps += 1

            if kind is OpKind.ADD:
                cells[head] = (int(cells[head]) + inst.operand) & CELL_MASK
            elif kind is OpKind.SUB:
                cells[head] = (int(cells[head]) - inst.operand) & CELL_MASK
            elif kind is OpKind.MOVE_RIGHT:
                if head + inst.operand >= size:
                    tape.head = head
                    tape.move(inst.operand, kind.value)
                head += inst.operand
            elif kind is OpKind.MOVE_LEFT:
                if head - inst.operand < 0:
                    tape.head = head
                    tape.move(-inst.operand, kind.value)
                head -= inst.operand
            elif kind is OpKind.OUTPUT:
                io.write_byte(cells[head])
            elif kind is OpKind.INPUT:
                cells[head] = io.read_byte()
            elif kind is OpKind.LOOP_START:
                if cells[head] == 0:
                    pc = inst.operand
            elif kind is OpKind.LOOP_END:
                if cells[head] != 0:
                    pc = inst.operand
            elif kind is OpKind.ASSIGN_ZERO:
                cells[head] = 0
            else:
                raise BFRuntimeError(f"Unhandled instruction kind {kind!r}", rewrite_rule="internal")
            pc += 1
    except BFRuntimeError as error:
        location = None
        if source is not None and pc < n and ircode[pc].offset >= 0:
            location = source.locate(ircode[pc].offset)
        _annotate(error, kind, steps - 1, location)
        raise
    finally:
        tape.head = head
        state.pc = pc
        state.steps = steps
        if logger is not None:
            logger.steps = steps
    return state


def _annotate(error: BFRuntimeError, kind: Optional[OpKind], step_index: int, location: Optional[SourceLocation]) -> None:
    if error.rewrite_rule is None and kind is not None:
        error.rewrite_rule = kind.value
    if error.step_index is None:
        error.step_index = max(step_index, 0)
    if error.location is None:
        error.location = location


class Brainfuck:
    """Loads, compiles and executes one program at a time.

    The loaded source and its IR are kept between calls; every execute
    builds a fresh ExecutionState, so a failed run leaves nothing behind
    for the next one.
    """

    def __init__(
        self,
        *,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        services: Optional[RuntimeServices] = None,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
    ) -> None:
        self.io = ByteIO(stdin, stdout)
        self.services = services or RuntimeServices()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.logger = StateLogger(log_capacity)
        self.source: Optional[SourceBuffer] = None
        self.program: Optional[IRProgram] = None
        self.mode = ExecuteMode.NORMAL

    def load(self, source: SourceBuffer) -> None:
        self.source = source
        self.program = None
        self.mode = ExecuteMode.NORMAL

    def load_file(self, path: str) -> None:
        self.load(load_file(path))

    def load_stream(self, stream: BinaryIO, name: str = "<stdin>") -> None:
        self.load(load_stream(stream, name))

    def load_string(self, text: Any, name: str = "<string>") -> None:
        self.load(load_string(text, name))

    def compile(self) -> IRProgram:
        self.program = Compiler(self._require_source()).compile()
        self.mode = ExecuteMode.COMPILED
        return self.program

    def execute(self, heap_size: int = DEFAULT_HEAP_SIZE, mode: Optional[ExecuteMode] = None) -> ExecutionState:
        source = self._require_source()
        mode = self.mode if mode is None else mode
        if mode is ExecuteMode.COMPILED and self.program is None:
            self.compile()
        state = ExecutionState.fresh(heap_size)
        self.logger.reset()
        self._emit_event("program_start", self, state)
        try:
            if mode is ExecuteMode.COMPILED:
                assert self.program is not None
                run_ircode(
                    self.program,
                    state,
                    self.io,
                    source=source,
                    logger=self.logger,
                    hooks=self.hook_registry,
                    owner=self,
                )
            else:
                run_source(source, state, self.io, logger=self.logger, hooks=self.hook_registry, owner=self)
            self.io.write(b"\n")
        except BFRuntimeError as error:
            error.tape_window = state.tape.render_window()
            self._emit_event("on_error", self, error)
            raise
        except BFError as error:
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Python-level faults are reported like interpreter faults.
            wrapped = BFRuntimeError(f"Internal interpreter error: {exc}", rewrite_rule="internal")
            wrapped.step_index = self.logger.steps
            wrapped.tape_window = state.tape.render_window()
            raise wrapped from exc
        finally:
            self.io.flush()
        self._emit_event("program_end", self, state)
        return state

    def _require_source(self) -> SourceBuffer:
        if self.source is None:
            raise BFRuntimeError("No program loaded", rewrite_rule="LOAD")
        return self.source

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except BFError:
            raise
        except Exception as exc:
            raise BFRuntimeError(f"Extension hook '{event}' failed: {exc}", rewrite_rule="EXT") from exc


class TracebackFormatter:
    def __init__(self, interpreter: Brainfuck) -> None:
        self.interpreter = interpreter

    def _source_line(self, location: SourceLocation) -> Optional[str]:
        source = self.interpreter.source
        if source is None or source.name != location.file:
            return None
        lines = source.data.split(b"\n")
        if location.line > len(lines):
            return None
        return lines[location.line - 1].decode("utf-8", errors="replace").rstrip("\r")

    def format_text(self, error: BFRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        rule = error.rewrite_rule or "runtime"
        location = error.location
        if location is not None:
            lines.append(f"  File \"{location.file}\", line {location.line}, column {location.column}, in {rule}")
            text = self._source_line(location)
            if text is not None:
                lines.append(f"    {text.strip()}")
        else:
            lines.append(f"  <unknown location> in {rule}")
        if error.step_index is not None:
            lines.append(f"    State log index: {error.step_index}")
        if verbose:
            for entry in self.interpreter.logger.entries:
                lines.append(f"    step {entry.step_index}: pc={entry.pc} {entry.op} head={entry.head}")
            if error.tape_window:
                lines.append(f"    Tape: {error.tape_window}")
        lines.append(f"{error.__class__.__name__}: {error.message} (rewrite: {rule})")
        return "\n".join(lines)

    def to_json(self, error: BFRuntimeError) -> str:
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rewrite_rule": error.rewrite_rule,
                "failing_step_index": error.step_index,
            },
            "recent_steps": [
                {"step_index": e.step_index, "pc": e.pc, "op": e.op, "head": e.head}
                for e in self.interpreter.logger.entries
            ],
        }
        if error.location is not None:
            data["error"]["source_location"] = {
                "file": error.location.file,
                "line": error.location.line,
                "column": error.location.column,
                "offset": error.location.offset,
            }
        if isinstance(error, TapeOutOfRange):
            data["error"]["head"] = error.head
            data["error"]["heap_size"] = error.size
        return json.dumps(data, indent=2)
