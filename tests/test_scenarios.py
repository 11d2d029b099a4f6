"""End-to-end behaviour on small hand-written functions."""

from ssalift.diagnostics import DiagnosticKind
from ssalift.ir import CFGBuilder, Constant, NodeKind, Operation, SSAConstructor, StorageLocation
from ssalift.optimizer import Verifier, build_default_manager
from ssalift.pipeline import decompile

from streams import assign, branch, counting_loop, diamond, store, stream


def _phis(graph, location=None):
    return [
        node
        for node in graph.live_nodes()
        if node.kind is NodeKind.PHI and (location is None or node.location == location)
    ]


def test_diamond_merge():
    graph = CFGBuilder().build(diamond())
    SSAConstructor().construct(graph)
    (phi,) = _phis(graph)
    assert phi.block == 3
    assert len(phi.operands) == 2

    result = decompile(diamond())
    assert result.copies == 2
    assert not _phis(result.graph)
    variables = [node for node in result.graph.live_nodes() if getattr(node, "opcode", None) == "var"]
    assert [node.block for node in variables] == [3]


def test_counting_loop_keeps_its_induction_phi():
    result = decompile(counting_loop(), finalize=False)
    rcx = StorageLocation.register("rcx")
    (phi,) = _phis(result.graph)
    assert phi.location == rcx
    assert phi.block == 1
    latch = result.graph.node(phi.operands[1])
    assert latch.opcode == "add" and latch.operands[0] == phi.id
    assert Verifier().violations(result.graph) == []


def test_loop_with_constant_latch_loses_its_phi():
    result = decompile(counting_loop(latch_value=0), finalize=False)
    assert not _phis(result.graph)
    (ret,) = [node for node in result.graph.live_nodes() if getattr(node, "opcode", None) == "return"]
    rcx = result.graph.node(ret.operands[ret.attrs["reads"].index(StorageLocation.register("rcx"))])
    assert isinstance(rcx, Constant) and rcx.value == 0
    assert Verifier().violations(result.graph) == []


def test_dead_store_is_eliminated():
    semantics = stream(
        {0x3000: [assign("rbx", 1), store("[0x601000]", "rdi"), assign("rbx", 2)], 0x3004: []},
        [(0x3004, "return", None)],
    )
    graph = CFGBuilder().build(semantics)
    SSAConstructor().construct(graph)
    first, second = [
        node.id
        for node in graph.live_nodes()
        if isinstance(node, Operation) and node.location == StorageLocation.register("rbx")
    ]
    (kept,) = [node.id for node in graph.live_nodes() if getattr(node, "opcode", None) == "store"]

    build_default_manager().run(graph)
    assert graph.node(first).kind is NodeKind.REMOVED
    assert graph.is_live(second)
    assert graph.is_live(kept)
    assert graph.node(kept).attrs["slot"] == "@0x601000"


def test_indirect_call_stays_conservative():
    semantics = stream(
        {0x4000: [assign("rdi", 5), branch("rax")], 0x4004: []},
        [(0x4000, "call", None), (0x4004, "return", None)],
    )
    result = decompile(semantics, finalize=False)
    (diagnostic,) = result.diagnostics.filter(DiagnosticKind.LOW_CONFIDENCE_CALL)
    (call,) = [node for node in result.graph.live_nodes() if getattr(node, "opcode", None) == "call"]
    assert diagnostic.node == call.id
    assert call.attrs["model"] == "conservative"
    clobbers = [node for node in result.graph.live_nodes() if getattr(node, "opcode", None) == "clobber"]
    assert clobbers
    assert all(node.operands[0] == call.id for node in clobbers)
