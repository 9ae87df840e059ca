from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
from numpy.typing import NDArray

from lexer import BFConfigError, BFRuntimeError, SourceLocation


DEFAULT_HEAP_SIZE = 65536
CELL_MASK = 0xFF


class TapeOutOfRange(BFRuntimeError):
    """Raised when the head pointer leaves [0, heap_size)."""

    def __init__(
        self,
        head: int,
        size: int,
        *,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Head pointer moved to {head}, outside tape of {size} cells",
            location=location,
            rewrite_rule=rewrite_rule,
        )
        self.head = head
        self.size = size


def check_heap_size(heap_size: Any) -> int:
    if isinstance(heap_size, bool) or not isinstance(heap_size, (int, np.integer)):
        raise BFConfigError(f"Heap size must be an integer, got {heap_size!r}")
    if heap_size <= 0:
        raise BFConfigError(f"Heap size must be positive, got {heap_size}")
    return int(heap_size)


@dataclass
class Tape:
    """Fixed-size array of 8-bit cells and the head pointer.

    Cell arithmetic wraps modulo 256. The head pointer never wraps: a move
    that leaves the tape raises TapeOutOfRange and leaves the head where it
    was, so the fault can be reported against the last valid cell.
    """

    size: int
    cells: NDArray[np.uint8] = field(init=False, repr=False)
    head: int = 0

    def __post_init__(self) -> None:
        self.size = check_heap_size(self.size)
        self.cells = np.zeros(self.size, dtype=np.uint8)

    def move(self, delta: int, rule: Optional[str] = None) -> None:
        target = self.head + delta
        if target < 0 or target >= self.size:
            raise TapeOutOfRange(target, self.size, rewrite_rule=rule)
        self.head = target

    def to_bytes(self) -> bytes:
        return self.cells.tobytes()

    def window(self, radius: int = 8) -> Dict[int, int]:
        lo = max(self.head - radius, 0)
        hi = min(self.head + radius + 1, self.size)
        return {index: int(value) for index, value in zip(range(lo, hi), self.cells[lo:hi])}

    def render_window(self, radius: int = 8) -> str:
        parts: List[str] = []
        for index, value in self.window(radius).items():
            cell = f"{value:02x}"
            parts.append(f"[{cell}]" if index == self.head else cell)
        return " ".join(parts)


@dataclass
class ExecutionState:
    tape: Tape
    pc: int = 0
    steps: int = 0

    @classmethod
    def fresh(cls, heap_size: int = DEFAULT_HEAP_SIZE) -> "ExecutionState":
        return cls(tape=Tape(heap_size))

    @property
    def head(self) -> int:
        return self.tape.head
