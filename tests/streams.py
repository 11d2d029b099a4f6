"""Ingest documents shared by the test modules."""

from __future__ import annotations

import random
from typing import Any, Dict, List

from ssalift.ingest import SemanticsStream
from ssalift.knowledge import CallingConvention, OpcodeTable, PipelineSettings
from ssalift.optimizer import PassContext


def stream(operations: Dict[int, List[Dict[str, Any]]], transfers=(), entry=None) -> SemanticsStream:
    document: Dict[str, Any] = {
        "operations": {hex(address): ops for address, ops in operations.items()},
        "transfers": [
            {"source": hex(source), "kind": kind, "target": hex(target) if target is not None else None}
            for source, kind, target in transfers
        ],
    }
    if entry is not None:
        document["entry"] = hex(entry)
    return SemanticsStream.from_json(document)


def assign(dest: str, *operands: Any, opcode: str = "mov") -> Dict[str, Any]:
    return {"kind": "assign", "dest": dest, "opcode": opcode, "operands": list(operands)}


def compare(dest: str, lhs: Any, rhs: Any, opcode: str = "eq") -> Dict[str, Any]:
    return {"kind": "compare", "dest": dest, "opcode": opcode, "operands": [lhs, rhs]}


def store(target: str, value: Any) -> Dict[str, Any]:
    return {"kind": "store", "operands": [target, value]}


def load(dest: str, source: str) -> Dict[str, Any]:
    return {"kind": "load", "dest": dest, "operands": [source]}


def branch(*operands: Any) -> Dict[str, Any]:
    return {"kind": "branch", "operands": list(operands)}


def diamond() -> SemanticsStream:
    """``if (rdi == 0) rax = 2 else rax = 1; return``."""

    return stream(
        {
            0x1000: [compare("tmp_zf", "rdi", 0), branch("tmp_zf")],
            0x1004: [assign("rax", 1), branch()],
            0x1010: [assign("rax", 2)],
            0x1014: [],
        },
        [
            (0x1000, "cbranch-true", 0x1010),
            (0x1004, "jump", 0x1014),
            (0x1014, "return", None),
        ],
    )


def counting_loop(latch_value: Any = None) -> SemanticsStream:
    """``rcx = 0; while (rdi != 10) rcx = rcx + 1; return``.

    With ``latch_value`` the latch assigns that literal instead of
    incrementing.
    """

    latch = assign("rcx", "rcx", 1, opcode="add") if latch_value is None else assign("rcx", latch_value)
    return stream(
        {
            0x2000: [assign("rcx", 0)],
            0x2004: [compare("tmp_c", "rdi", 10), branch("tmp_c")],
            0x2008: [latch, branch()],
            0x2010: [],
        },
        [
            (0x2004, "cbranch-true", 0x2010),
            (0x2008, "jump", 0x2004),
            (0x2010, "return", None),
        ],
    )


_REGISTERS = ("rax", "rbx", "rcx", "rdx", "rdi")
_OPCODES = ("add", "sub", "xor", "and", "mul")


def _random_operation(rng: random.Random) -> Dict[str, Any]:
    roll = rng.random()
    if roll < 0.15:
        return store("[rbp-0x8]", rng.choice(_REGISTERS))
    if roll < 0.25:
        return load(rng.choice(_REGISTERS), "[rbp-0x8]")
    if roll < 0.30:
        return store("[rsi+0x10]", rng.choice(_REGISTERS))
    if roll < 0.35:
        return load(rng.choice(_REGISTERS), "[rsi]")
    if roll < 0.55:
        source = rng.choice(_REGISTERS) if rng.random() < 0.6 else rng.randrange(0, 16)
        return assign(rng.choice(_REGISTERS), source)
    lhs = rng.choice(_REGISTERS)
    rhs = rng.choice(_REGISTERS) if rng.random() < 0.5 else rng.randrange(0, 16)
    return assign(rng.choice(_REGISTERS), lhs, rhs, opcode=rng.choice(_OPCODES))


def random_stream(seed: int, size: int = 8) -> SemanticsStream:
    """Random function body whose jumps freely create irreducible loops."""

    rng = random.Random(seed)
    addresses = [0x1000 + 4 * index for index in range(size)]
    operations: Dict[int, List[Dict[str, Any]]] = {}
    transfers = []
    for position, address in enumerate(addresses):
        ops = [_random_operation(rng) for _ in range(rng.randrange(0, 3))]
        last = position == len(addresses) - 1
        roll = rng.random()
        if last or roll < 0.1:
            transfers.append((address, "return", None))
        elif roll < 0.35:
            ops.append(compare("tmp_flag", rng.choice(_REGISTERS), rng.randrange(0, 4)))
            ops.append(branch("tmp_flag"))
            transfers.append((address, "cbranch-true", rng.choice(addresses)))
        elif roll < 0.5:
            ops.append(branch())
            transfers.append((address, "jump", rng.choice(addresses)))
        elif roll < 0.6:
            transfers.append((address, "call", 0x9000))
        operations[address] = ops
    return stream(operations, transfers)


def pass_context(**settings: Any) -> PassContext:
    """Context for applying a single pass outside of a manager."""

    return PassContext(
        opcodes=OpcodeTable.default(),
        convention=CallingConvention.sysv_amd64(),
        settings=PipelineSettings(**settings),
    )
