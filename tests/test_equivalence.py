"""Direct and IR execution must agree on output and final tape."""

import random

import pytest

from tape import TapeOutOfRange


def _segment(rng, depth):
    ops = []
    for _ in range(rng.randint(1, 6)):
        roll = rng.random()
        if roll < 0.4:
            ops.append(rng.choice("+-") * rng.randint(1, 4))
        elif roll < 0.5:
            ops.append(".")
        elif roll < 0.55:
            ops.append(",")
        elif roll < 0.65:
            ops.append(rng.choice([" ", "x", "\n", "#"]))
        elif roll < 0.75:
            ops.append("[-]")
        elif depth < 2:
            ops.append(_loop(rng, depth + 1))
    return "".join(ops)


def _loop(rng, depth):
    # The counter is set to a small value and only touched by the final '-';
    # the body works on cells to the right and returns, so the loop ends.
    shift = rng.randint(1, 3)
    body = ">" * shift + _segment(rng, depth) + "<" * shift
    return "[-]" + "+" * rng.randint(1, 6) + "[" + body + "-]"


def random_program(rng):
    parts = []
    for _ in range(rng.randint(1, 8)):
        if rng.random() < 0.3:
            parts.append(rng.choice("><") * rng.randint(1, 3))
        else:
            parts.append(_segment(rng, 0))
    return "".join(parts)


@pytest.mark.parametrize("seed", range(200))
def test_direct_and_ir_agree(run_program, seed):
    rng = random.Random(seed)
    text = random_program(rng)
    heap_size = rng.randint(1, 24)
    stdin = bytes(rng.randrange(256) for _ in range(rng.randint(0, 4)))

    direct_out, direct_state, direct_error = run_program(text, "direct", heap_size, stdin)
    ir_out, ir_state, ir_error = run_program(text, "ir", heap_size, stdin)

    assert direct_out == ir_out
    assert direct_state.tape.to_bytes() == ir_state.tape.to_bytes()
    assert type(direct_error) is type(ir_error)
    if direct_error is None:
        assert direct_state.head == ir_state.head
    else:
        assert isinstance(direct_error, TapeOutOfRange)


@pytest.mark.parametrize(
    "text",
    [
        "++++++++[>++++[>++>+++>+++>+<<<<-]>+>+>->>+[<]<-]>>.>---.+++++++..+++.",
        "+++++[>+++++<-]>[<+>-]<.",
        ">+++[<++>-]<[-]>[-]+.",
        "++[>+[>+<-]<-]>>.",
        ",+[-.,+]",
    ],
)
def test_known_programs_agree(run_program, text):
    stdin = b"abc"
    direct = run_program(text, "direct", 16, stdin)
    ir = run_program(text, "ir", 16, stdin)
    assert direct[0] == ir[0]
    assert direct[1].tape.to_bytes() == ir[1].tape.to_bytes()
    assert direct[2] is None and ir[2] is None
