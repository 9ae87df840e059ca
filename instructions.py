from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Tuple


class OpKind(Enum):
    ADD = "ADD"
    SUB = "SUB"
    MOVE_RIGHT = "MOVE_RIGHT"
    MOVE_LEFT = "MOVE_LEFT"
    OUTPUT = "OUTPUT"
    INPUT = "INPUT"
    LOOP_START = "LOOP_START"
    LOOP_END = "LOOP_END"
    ASSIGN_ZERO = "ASSIGN_ZERO"


# Command byte -> instruction kind. Every other byte is a comment.
COMMANDS: Dict[int, OpKind] = {
    ord("+"): OpKind.ADD,
    ord("-"): OpKind.SUB,
    ord(">"): OpKind.MOVE_RIGHT,
    ord("<"): OpKind.MOVE_LEFT,
    ord("."): OpKind.OUTPUT,
    ord(","): OpKind.INPUT,
    ord("["): OpKind.LOOP_START,
    ord("]"): OpKind.LOOP_END,
}

# Kinds whose operand is a repeat count >= 1.
COUNTED_KINDS = frozenset({OpKind.ADD, OpKind.SUB, OpKind.MOVE_RIGHT, OpKind.MOVE_LEFT})

# Kinds whose operand is the index of the matching bracket.
JUMP_KINDS = frozenset({OpKind.LOOP_START, OpKind.LOOP_END})


@dataclass(frozen=True)
class Instruction:
    kind: OpKind
    operand: int = 0
    # Offset of the first source byte this instruction was lowered from.
    offset: int = -1

    def __str__(self) -> str:
        if self.kind in COUNTED_KINDS or self.kind in JUMP_KINDS:
            return f"{self.kind.value} {self.operand}"
        return self.kind.value


@dataclass(frozen=True)
class IRProgram:
    ircode: Tuple[Instruction, ...]
    name: str = "<string>"

    def __len__(self) -> int:
        return len(self.ircode)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self.ircode)

    def __getitem__(self, index: int) -> Instruction:
        return self.ircode[index]
