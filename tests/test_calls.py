from ssalift.diagnostics import DiagnosticKind
from ssalift.ir import CFGBuilder, Operation, SSAConstructor, StorageLocation
from ssalift.optimizer import CallSiteRecovery, Verifier

from streams import assign, pass_context, stream


def _call_graph(*ops):
    semantics = stream(
        {0x10: list(ops), 0x14: []},
        [(0x10, "call", 0x5000), (0x14, "return", None)],
    )
    graph = CFGBuilder().build(semantics)
    SSAConstructor().construct(graph)
    return graph


def _single(graph, opcode):
    (node,) = [node for node in graph.live_nodes() if isinstance(node, Operation) and node.opcode == opcode]
    return node


def test_resolved_call_is_promoted_to_the_convention():
    graph = _call_graph(assign("rdi", 1), assign("rbx", 7))
    context = pass_context()
    context.symbols = {0x5000: "puts"}
    result = CallSiteRecovery().apply(graph, context)
    assert result.changed
    assert not result.diagnostics

    call = _single(graph, "call")
    assert call.attrs["model"] == "precise"
    assert call.attrs["arguments"] == ("rdi",)
    assert call.attrs["symbol"] == "puts"
    assert len(call.operands) == 2

    ret = _single(graph, "return")
    reads = ret.attrs["reads"]
    rbx = graph.node(ret.operands[reads.index(StorageLocation.register("rbx"))])
    assert rbx.opcode == "mov" and graph.node(rbx.operands[0]).value == 7
    rax = graph.node(ret.operands[reads.index(StorageLocation.register("rax"))])
    assert rax.opcode == "call.result"
    assert rax.operands == [call.id]
    assert Verifier().violations(graph) == []


def test_remaining_clobbers_keep_only_the_call():
    graph = _call_graph(assign("rdi", 1))
    CallSiteRecovery().apply(graph, pass_context())
    call = _single(graph, "call")
    clobbers = [node for node in graph.live_nodes() if getattr(node, "opcode", None) == "clobber"]
    assert clobbers
    assert all(node.operands == [call.id] for node in clobbers)
    names = {node.location.name for node in clobbers if node.location.space.value == "reg"}
    assert "rbx" not in names
    assert "rax" not in names


def test_argument_gap_keeps_the_call_conservative():
    graph = _call_graph(assign("rsi", 1))
    pass_ = CallSiteRecovery()
    result = pass_.apply(graph, pass_context())
    assert not result.changed
    (diagnostic,) = result.diagnostics
    assert diagnostic.kind is DiagnosticKind.LOW_CONFIDENCE_CALL
    assert "argument registers" in diagnostic.message
    call = _single(graph, "call")
    assert call.attrs["model"] == "conservative"

    # reported once per call
    again = pass_.apply(graph, pass_context())
    assert not again.diagnostics


def test_unknown_target_is_reported():
    semantics = stream(
        {0x10: [assign("rdi", 5)], 0x14: []},
        [(0x10, "call", None), (0x14, "return", None)],
    )
    graph = CFGBuilder().build(semantics)
    SSAConstructor().construct(graph)
    result = CallSiteRecovery().apply(graph, pass_context())
    (diagnostic,) = result.diagnostics
    assert "unresolved target" in diagnostic.message
    call = _single(graph, "call")
    assert graph.node(call.operands[0]).unknown
