import json
from pathlib import Path

import pytest

from ssalift.errors import MalformedInput
from ssalift.ingest import Operand, OperandKind, OpKind, PrimitiveOp, SemanticsStream, TransferKind, load_stream
from ssalift.ir import CFGBuilder


@pytest.mark.parametrize(
    "token, kind, name, value",
    [
        ("rax", OperandKind.REGISTER, "rax", 0),
        ("tmp_zf", OperandKind.TEMPORARY, "tmp_zf", 0),
        ("0x10", OperandKind.IMMEDIATE, None, 16),
        ("-3", OperandKind.IMMEDIATE, None, -3),
        ("[rbp-0x8]", OperandKind.MEMORY, "rbp", -8),
        ("[rsi + 16]", OperandKind.MEMORY, "rsi", 16),
        ("[0x601000]", OperandKind.MEMORY, None, 0x601000),
    ],
)
def test_operand_tokens(token, kind, name, value):
    operand = Operand.from_json(token)
    assert operand.kind is kind
    assert operand.name == name
    assert operand.value == value


def test_operand_objects_carry_width():
    operand = Operand.from_json({"reg": "eax", "width": 32})
    assert operand.kind is OperandKind.REGISTER
    assert operand.width == 32
    memory = Operand.from_json({"mem": {"base": "rbp", "offset": "-0x10"}, "width": 8})
    assert memory.is_memory
    assert memory.value == -16
    assert memory.width == 8


def test_assign_defaults_to_mov():
    op = PrimitiveOp.from_json({"kind": "assign", "dest": "rax", "operands": ["rbx"]})
    assert op.kind is OpKind.ASSIGN
    assert op.effective_opcode == "mov"
    assert op.describe() == "rax = mov(rbx)"


def test_compare_result_is_one_bit():
    op = PrimitiveOp.from_json({"kind": "compare", "dest": "zf", "opcode": "eq", "operands": ["rax", 0]})
    assert op.result_width == 1


@pytest.mark.parametrize(
    "entry",
    [
        {"kind": "assign", "operands": ["rbx"]},
        {"kind": "assign", "dest": "rax", "operands": []},
        {"kind": "assign", "dest": "[rbp-8]", "operands": ["rbx"]},
        {"kind": "load", "dest": "rax", "operands": ["rbx"]},
        {"kind": "store", "operands": ["rax", "rbx"]},
        {"kind": "compare", "dest": "zf", "operands": ["rax", "rbx"]},
        {"kind": "branch", "operands": ["rax", "rbx"]},
    ],
)
def test_invalid_operations_are_malformed(entry):
    op = PrimitiveOp.from_json(entry)
    with pytest.raises(MalformedInput):
        op.validate(0x1000)


def test_unknown_kinds_are_malformed():
    with pytest.raises(MalformedInput):
        PrimitiveOp.from_json({"kind": "explode"})
    with pytest.raises(MalformedInput):
        SemanticsStream.from_json(
            {"operations": {"0x0": []}, "transfers": [{"source": "0x0", "kind": "teleport"}]}
        )


def test_stream_from_json():
    data = {
        "entry": "0x1004",
        "operations": {
            "0x1000": [{"kind": "assign", "dest": "rax", "operands": [1]}],
            "0x1004": [],
        },
        "transfers": [{"source": "0x1004", "kind": "return"}],
    }
    stream = SemanticsStream.from_json(data)
    assert stream.entry_address == 0x1004
    assert sorted(stream.operations) == [0x1000, 0x1004]
    assert stream.transfers[0].kind is TransferKind.RETURN
    assert stream.transfers[0].target is None


def test_load_stream(tmp_path: Path):
    path = tmp_path / "func.json"
    path.write_text(json.dumps({"operations": {"0x10": []}}), "utf-8")
    assert load_stream(path).entry_address == 0x10

    with pytest.raises(MalformedInput):
        load_stream(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{", "utf-8")
    with pytest.raises(MalformedInput):
        load_stream(broken)


def test_entry_defaults_to_the_lowest_address():
    stream = SemanticsStream.from_json(
        {"operations": {"0x20": [], "0x10": []}, "transfers": [{"source": "0x20", "kind": "return"}]}
    )
    assert stream.entry_address == 0x10
    graph = CFGBuilder().build(stream)
    assert graph.blocks[graph.entry].start == 0x10
