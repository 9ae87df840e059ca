from __future__ import annotations
import os
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Union

from instructions import COMMANDS, OpKind


# Chunk size used when draining a stream into a source buffer.
READ_CHUNK_SIZE = 65536


class BFError(Exception):
    """Base class for interpreter errors."""

    def __init__(self, message: str, *, location: Optional["SourceLocation"] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def __str__(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.message} at {self.location}"


class BFCompileError(BFError):
    """Raised when the loop structure of a program is broken."""


class BFConfigError(BFError):
    """Raised for invalid run parameters (heap size, optimize level)."""


class BFRuntimeError(BFError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional["SourceLocation"] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message, location=location)
        self.rewrite_rule = rewrite_rule
        self.step_index: Optional[int] = None
        # Rendered cells around the head pointer when the fault happened.
        self.tape_window: Optional[str] = None


class BFIOError(BFRuntimeError):
    """Raised when the input or output boundary fails."""


@dataclass(frozen=True)
class SourceLocation:
    file: str
    offset: int
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass(frozen=True)
class SourceBuffer:
    data: bytes
    name: str = "<string>"

    def __len__(self) -> int:
        return len(self.data)

    def locate(self, offset: int) -> SourceLocation:
        # Lines are only counted when an error needs to be reported.
        data = self.data
        line = data.count(b"\n", 0, offset) + 1
        last_newline = data.rfind(b"\n", 0, offset)
        return SourceLocation(self.name, offset, line, offset - last_newline)


def load_file(path: str) -> SourceBuffer:
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except OSError as exc:
        raise BFIOError(f"Failed to read {path}: {exc}", rewrite_rule="LOAD") from exc
    return SourceBuffer(data, os.path.abspath(path))


def load_stream(stream: BinaryIO, name: str = "<stdin>") -> SourceBuffer:
    # Text streams (sys.stdin) expose their bytes through .buffer.
    raw = getattr(stream, "buffer", stream)
    chunks: List[bytes] = []
    try:
        while True:
            chunk = raw.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
    except OSError as exc:
        raise BFIOError(f"Failed to read {name}: {exc}", rewrite_rule="LOAD") from exc
    return SourceBuffer(b"".join(chunks), name)


def load_string(text: Union[str, bytes], name: str = "<string>") -> SourceBuffer:
    data = text if isinstance(text, bytes) else text.encode("utf-8")
    return SourceBuffer(data, name)


@dataclass
class Token:
    kind: OpKind
    offset: int


class Lexer:
    """Splits a source buffer into command tokens, dropping comment bytes."""

    def __init__(self, source: SourceBuffer) -> None:
        self.source = source

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        commands = COMMANDS
        for offset, byte in enumerate(self.source.data):
            kind = commands.get(byte)
            if kind is not None:
                tokens_append(Token(kind, offset))
        return tokens


def unmatched_loop_start(source: SourceBuffer, offset: int) -> BFCompileError:
    return BFCompileError("Unmatched loop start '['", location=source.locate(offset))


def unmatched_loop_end(source: SourceBuffer, offset: int) -> BFCompileError:
    return BFCompileError("Unmatched loop end ']'", location=source.locate(offset))
