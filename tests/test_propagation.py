import itertools
import random

import pytest

from ssalift.ir import CFGBuilder, Constant, EdgeKind, IRGraph, NodeKind, SSAConstructor
from ssalift.knowledge import OpcodeTable
from ssalift.optimizer import ConstantPropagation, CopyPropagation, Verifier, eliminate_trivial_phis

from streams import assign, pass_context, random_stream, stream


def _signed(value, width):
    value &= (1 << width) - 1
    return value - (1 << width) if value >> (width - 1) else value


def _trunc_div(lhs, rhs):
    quotient = abs(lhs) // abs(rhs)
    return quotient if (lhs < 0) == (rhs < 0) else -quotient


def _reference(opcode, values, widths, width):
    """Plain Python meaning of each built-in opcode; ``None`` is undefined."""

    top = (1 << width) - 1
    a = values[0]
    b = values[1] if len(values) > 1 else None
    sa = _signed(a, widths[0])
    sb = _signed(b, widths[1]) if b is not None else None
    if opcode == "add":
        return (a + b) % (top + 1)
    if opcode == "sub":
        return (a - b) % (top + 1)
    if opcode == "mul":
        return (a * b) % (top + 1)
    if opcode in {"udiv", "umod"}:
        if b == 0:
            return None
        return (a // b if opcode == "udiv" else a % b) & top
    if opcode == "sdiv":
        if sb == 0 or _trunc_div(sa, sb) > (1 << (width - 1)) - 1:
            return None
        return _trunc_div(sa, sb) & top
    if opcode == "smod":
        if sb == 0:
            return None
        return (sa - sb * _trunc_div(sa, sb)) & top
    if opcode == "and":
        return a & b & top
    if opcode == "or":
        return (a | b) & top
    if opcode == "xor":
        return (a ^ b) & top
    if opcode in {"shl", "shr", "sar"}:
        if b >= width:
            return None
        if opcode == "shl":
            return (a * 2 ** b) & top
        if opcode == "shr":
            return (a // 2 ** b) & top
        return (sa // 2 ** b) & top
    if opcode == "not":
        return (top - a) & top
    if opcode == "neg":
        return (top + 1 - a) & top
    if opcode == "lnot":
        return int(a == 0)
    if opcode == "inc":
        return (a + 1) & top
    if opcode == "dec":
        return (a + top) & top
    if opcode in {"mov", "copy", "zext", "trunc"}:
        return a & top
    if opcode == "sext":
        return sa & top
    comparisons = {
        "eq": a == b,
        "ne": a != b,
        "ult": a < b,
        "ule": a <= b,
        "ugt": a > b,
        "uge": a >= b,
        "slt": sa < sb if sb is not None else None,
        "sle": sa <= sb if sb is not None else None,
        "sgt": sa > sb if sb is not None else None,
        "sge": sa >= sb if sb is not None else None,
    }
    return int(comparisons[opcode])


def _samples(rng, width):
    top = (1 << width) - 1
    edges = [0, 1, 2, top, top - 1, 1 << (width - 1), (1 << (width - 1)) - 1]
    return edges + [rng.randrange(top + 1) for _ in range(6)]


_TABLE = OpcodeTable.default()
_FOLDABLE = [name for name in _TABLE.names() if _TABLE.get(name).foldable]


@pytest.mark.parametrize("opcode", _FOLDABLE)
@pytest.mark.parametrize("width", [8, 32, 64])
def test_constant_folding_is_sound(opcode, width):
    rng = random.Random(f"{opcode}:{width}")
    info = _TABLE.get(opcode)
    result_width = info.result_width or width
    samples = _samples(rng, width)
    if info.arity == 1:
        cases = [(value,) for value in samples]
    else:
        cases = list(itertools.product(samples[:8], repeat=2)) + [
            (rng.choice(samples), rng.randrange(0, width + 2)) for _ in range(8)
        ]
    for values in cases:
        widths = [width] * len(values)
        ok, folded = _TABLE.fold(opcode, list(values), widths, result_width)
        assert ok
        assert folded == _reference(opcode, list(values), widths, result_width), (opcode, values)


@pytest.mark.parametrize("opcode", _FOLDABLE)
def test_constant_folding_with_mixed_widths(opcode):
    rng = random.Random(f"mixed:{opcode}")
    info = _TABLE.get(opcode)
    for _ in range(40):
        widths = [rng.choice([1, 8, 16, 32, 64]) for _ in range(info.arity)]
        width = info.result_width or rng.choice([8, 16, 32, 64])
        values = [rng.choice(_samples(rng, bits)) & ((1 << bits) - 1) for bits in widths]
        if opcode in {"shl", "shr", "sar"}:
            values[1] = rng.randrange(0, width + 2) & ((1 << widths[1]) - 1)
        ok, folded = _TABLE.fold(opcode, values, widths, width)
        assert ok
        assert folded == _reference(opcode, values, widths, width), (opcode, values, widths, width)


def test_extensions_and_signed_operations_on_narrow_operands():
    assert _TABLE.fold("sext", [0x80], [8], 64) == (True, 0xFFFFFFFFFFFFFF80)
    assert _TABLE.fold("sext", [0x7F], [8], 64) == (True, 0x7F)
    assert _TABLE.fold("zext", [0x80], [8], 64) == (True, 0x80)
    assert _TABLE.fold("trunc", [0x1234], [64], 8) == (True, 0x34)
    assert _TABLE.fold("sar", [0x80, 1], [8, 8], 8) == (True, 0xC0)
    assert _TABLE.fold("sar", [0x80, 1], [8, 8], 64) == (True, 0xFFFFFFFFFFFFFFC0)
    assert _TABLE.fold("slt", [0xFF, 1], [8, 64], 1) == (True, 1)
    assert _TABLE.fold("ult", [0xFF, 1], [8, 64], 1) == (True, 0)
    assert _TABLE.fold("sdiv", [0xFC, 2], [8, 8], 64) == (True, 0xFFFFFFFFFFFFFFFE)


def test_fold_rejects_wrong_arity_and_unknown_opcodes():
    assert _TABLE.fold("add", [1], [64], 64) == (False, None)
    assert _TABLE.fold("frobnicate", [1, 2], [64, 64], 64) == (False, None)
    assert _TABLE.fold("load", [1, 2], [64, 64], 64) == (False, None)


def _folding_graph(opcode, values, width=32):
    graph = IRGraph()
    graph.add_block(0)
    operands = [graph.add_constant(0, value, width).id for value in values]
    node = graph.add_operation(0, opcode, operands, width)
    graph.add_operation(0, "return", [node.id], 0)
    return graph, node.id


def test_constant_propagation_rewrites_in_place():
    graph, node_id = _folding_graph("sub", [3, 5])
    result = ConstantPropagation().apply(graph, pass_context())
    assert result.changed
    folded = graph.node(node_id)
    assert isinstance(folded, Constant)
    assert folded.value == 0xFFFFFFFE
    assert folded.width == 32


def test_undefined_fold_result_becomes_unknown_constant():
    graph, node_id = _folding_graph("udiv", [3, 0])
    ConstantPropagation().apply(graph, pass_context())
    folded = graph.node(node_id)
    assert isinstance(folded, Constant)
    assert folded.unknown
    assert folded.value is None


def test_unknown_operand_poisons_the_fold():
    graph = IRGraph()
    graph.add_block(0)
    unknown = graph.add_constant(0, None, 64, unknown=True)
    one = graph.add_constant(0, 1, 64)
    node = graph.add_operation(0, "add", [unknown.id, one.id], 64)
    ConstantPropagation().apply(graph, pass_context())
    assert graph.node(node.id).unknown


def test_copy_propagation_forwards_moves():
    semantics = stream(
        {0x10: [assign("rbx", "rdi"), assign("rax", "rbx", 1, opcode="add")], 0x14: []},
        [(0x14, "return", None)],
    )
    graph = CFGBuilder().build(semantics)
    SSAConstructor().construct(graph)
    (add,) = [node for node in graph.live_nodes() if getattr(node, "opcode", None) == "add"]
    result = CopyPropagation().apply(graph, pass_context())
    assert result.changed
    assert graph.node(add.operands[0]).kind is NodeKind.UNDEFINED


# ----------------------------------------------------------------------
# trivial phis
# ----------------------------------------------------------------------
def _irreducible_phis() -> IRGraph:
    """Two-entry loop between bb1 and bb2 whose phis only carry ``c``."""

    graph = IRGraph()
    for _ in range(5):
        graph.add_block(None)
    graph.add_edge(0, 1, EdgeKind.BRANCH_TRUE)
    graph.add_edge(0, 2, EdgeKind.BRANCH_FALSE)
    graph.add_edge(1, 2, EdgeKind.JUMP)
    graph.add_edge(2, 1, EdgeKind.JUMP)
    graph.add_edge(1, 3, EdgeKind.BRANCH_TRUE)
    graph.add_edge(2, 3, EdgeKind.BRANCH_TRUE)
    graph.add_edge(3, 4, EdgeKind.RETURN)

    c = graph.add_constant(0, 7, 64).id
    other = graph.add_constant(0, 7, 64).id
    p1 = graph.add_phi(1, None, 64).id
    q1 = graph.add_phi(1, None, 64).id
    p2 = graph.add_phi(2, None, 64).id
    p3 = graph.add_phi(3, None, 64).id
    for phi, operands in (
        (p1, [c, p2]),
        (q1, [c, p2]),
        (p2, [c, q1]),
        (p3, [p1, p2]),
    ):
        for index, operand in enumerate(operands):
            graph.set_operand(phi, index, operand)
    k1 = graph.add_phi(2, None, 64).id
    graph.set_operand(k1, 0, other)
    graph.set_operand(k1, 1, c)
    graph.add_operation(2, "store", [c, k1], 64)
    graph.add_operation(3, "return", [p3], 0)
    return graph


def test_trivial_phis_collapse_through_the_irreducible_loop():
    graph = _irreducible_phis()
    removed = eliminate_trivial_phis(graph)
    assert removed == 5
    assert graph.count(NodeKind.PHI) == 0
    (ret,) = [node for node in graph.live_nodes() if getattr(node, "opcode", None) == "return"]
    first = graph.node(ret.operands[0])
    assert isinstance(first, Constant) and first.value == 7
    (kept,) = [node for node in graph.live_nodes() if getattr(node, "opcode", None) == "store"]
    second = graph.node(kept.operands[1])
    assert isinstance(second, Constant) and second.value == 7 and second.block == 2
    assert Verifier().violations(graph) == []


def test_trivial_phi_elimination_is_confluent():
    phis = [node.id for node in _irreducible_phis().live_nodes() if node.kind is NodeKind.PHI]
    shapes = set()
    for order in itertools.permutations(phis):
        graph = _irreducible_phis()
        eliminate_trivial_phis(graph, order=order)
        shapes.add(graph.shape())
    assert len(shapes) == 1


@pytest.mark.parametrize("seed", range(30))
def test_trivial_phi_elimination_is_confluent_on_random_functions(seed):
    semantics = random_stream(seed, size=6 + seed % 6)
    shapes = set()
    for attempt in range(4):
        graph = CFGBuilder().build(semantics)
        SSAConstructor().construct(graph)
        phis = [node.id for node in graph.live_nodes() if node.kind is NodeKind.PHI]
        random.Random(attempt).shuffle(phis)
        eliminate_trivial_phis(graph, order=phis)
        assert Verifier().violations(graph) == []
        shapes.add(graph.shape())
    assert len(shapes) == 1
