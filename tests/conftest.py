import io
from typing import Optional, Tuple

import pytest

from compiler import Compiler
from interpreter import ByteIO, run_ircode, run_source
from lexer import BFRuntimeError, load_string
from tape import ExecutionState


RunResult = Tuple[bytes, ExecutionState, Optional[BFRuntimeError]]


def _run(text, mode="direct", heap_size=64, stdin=b"") -> RunResult:
    out = io.BytesIO()
    boundary = ByteIO(io.BytesIO(stdin), out)
    source = load_string(text)
    state = ExecutionState.fresh(heap_size)
    error = None
    try:
        if mode == "direct":
            run_source(source, state, boundary)
        else:
            run_ircode(Compiler(source).compile(), state, boundary, source=source)
    except BFRuntimeError as exc:
        error = exc
    finally:
        boundary.flush()
    return out.getvalue(), state, error


@pytest.fixture
def run_program():
    """Run program text in "direct" or "ir" mode; returns (output, state, error)."""
    return _run


HELLO = "++++++++[>++++[>++>+++>+++>+<<<<-]>+>+>->>+[<]<-]>>.>---.+++++++..+++."


@pytest.fixture
def hello_source():
    return HELLO
