from ssalift.ir import IRGraph, StorageLocation
from ssalift.knowledge import OpcodeTable
from ssalift.optimizer import classify_node_traits


def _graph():
    graph = IRGraph()
    graph.add_block(0)
    return graph


def test_store_is_a_side_effect() -> None:
    graph = _graph()
    value = graph.add_constant(0, 1, 64)
    store = graph.add_operation(0, "store", [value.id, value.id], 64)
    traits = classify_node_traits(store)
    assert traits.side_effect
    assert not traits.removable
    assert not traits.terminator


def test_move_is_a_removable_copy() -> None:
    graph = _graph()
    value = graph.add_constant(0, 1, 64)
    move = graph.add_operation(0, "mov", [value.id], 64)
    traits = classify_node_traits(move)
    assert traits.copy
    assert traits.removable


def test_branch_terminates_the_block() -> None:
    graph = _graph()
    flag = graph.add_undefined(StorageLocation.register("rdi"), 64)
    branch = graph.add_operation(0, "branch", [flag.id], 0)
    traits = classify_node_traits(branch)
    assert traits.terminator
    assert traits.side_effect


def test_values_have_no_traits() -> None:
    graph = _graph()
    traits = classify_node_traits(graph.add_constant(0, 1, 64))
    assert not traits.side_effect
    assert not traits.copy


def test_unknown_opcode_is_kept_alive() -> None:
    graph = _graph()
    node = graph.add_operation(0, "rdtsc", [], 64)
    assert classify_node_traits(node, OpcodeTable.default()).side_effect
