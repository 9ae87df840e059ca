"""Lowering of program text into counted IR instructions."""

from __future__ import annotations
from dataclasses import replace
from typing import List

from instructions import COUNTED_KINDS, IRProgram, Instruction, OpKind
from lexer import BFCompileError, Lexer, SourceBuffer, Token, unmatched_loop_end, unmatched_loop_start


class Compiler:
    """Single pass lowering with run-length merging and the [-] peephole.

    Loop targets are resolved with an explicit stack of pending LOOP_START
    indices; each LOOP_START is emitted as a placeholder and patched when
    its matching ']' is reached.
    """

    def __init__(self, source: SourceBuffer) -> None:
        self.source = source

    def compile(self) -> IRProgram:
        source = self.source
        tokens = Lexer(source).tokenize()
        ircode: List[Instruction] = []
        emit = ircode.append
        loop_stack: List[int] = []
        i = 0
        n = len(tokens)

        while i < n:
            token = tokens[i]
            kind = token.kind
            if kind in COUNTED_KINDS:
                count = self._run_length(tokens, i)
                emit(Instruction(kind, count, offset=token.offset))
                i += count
                continue
            if kind is OpKind.LOOP_START:
                if self._is_clear_loop(tokens, i):
                    emit(Instruction(OpKind.ASSIGN_ZERO, offset=token.offset))
                    i += 3
                    continue
                loop_stack.append(len(ircode))
                emit(Instruction(OpKind.LOOP_START, offset=token.offset))
            elif kind is OpKind.LOOP_END:
                if not loop_stack:
                    raise unmatched_loop_end(source, token.offset)
                start = loop_stack.pop()
                ircode[start] = replace(ircode[start], operand=len(ircode))
                emit(Instruction(OpKind.LOOP_END, start, offset=token.offset))
            else:
                emit(Instruction(kind, offset=token.offset))
            i += 1

        if loop_stack:
            raise unmatched_loop_start(source, ircode[loop_stack[-1]].offset)

        program = IRProgram(tuple(ircode), source.name)
        validate_ircode(program)
        return program

    @staticmethod
    def _run_length(tokens: List[Token], start: int) -> int:
        # Only bytes adjacent in the source merge; comments break a run.
        first = tokens[start]
        count = 1
        n = len(tokens)
        while start + count < n:
            token = tokens[start + count]
            if token.kind is not first.kind or token.offset != first.offset + count:
                break
            count += 1
        return count

    @staticmethod
    def _is_clear_loop(tokens: List[Token], start: int) -> bool:
        # Exactly the three source bytes "[-]".
        if start + 2 >= len(tokens):
            return False
        offset = tokens[start].offset
        minus, close = tokens[start + 1], tokens[start + 2]
        return (
            minus.kind is OpKind.SUB
            and close.kind is OpKind.LOOP_END
            and minus.offset == offset + 1
            and close.offset == offset + 2
        )


def compile_source(source: SourceBuffer) -> IRProgram:
    return Compiler(source).compile()


def validate_ircode(program: IRProgram) -> None:
    """Check loop pairing, proper nesting and counted operands."""
    open_loops: List[int] = []
    size = len(program)
    for index, inst in enumerate(program):
        kind = inst.kind
        if kind in COUNTED_KINDS:
            if inst.operand < 1:
                raise BFCompileError(f"{kind.value} at {index} has repeat count {inst.operand}")
        elif kind is OpKind.LOOP_START:
            target = inst.operand
            if not (index < target < size) or program[target].kind is not OpKind.LOOP_END:
                raise BFCompileError(f"LOOP_START at {index} does not point at a LOOP_END")
            if program[target].operand != index:
                raise BFCompileError(f"LOOP_START at {index} and LOOP_END at {target} are not paired")
            open_loops.append(index)
        elif kind is OpKind.LOOP_END:
            if not open_loops or open_loops[-1] != inst.operand:
                raise BFCompileError(f"LOOP_END at {index} closes a loop that is not innermost")
            open_loops.pop()
    if open_loops:
        raise BFCompileError(f"LOOP_START at {open_loops[-1]} is never closed")


def disassemble(program: IRProgram) -> str:
    width = len(str(max(len(program) - 1, 0)))
    return "\n".join(f"{index:>{width}}  {inst}" for index, inst in enumerate(program))
