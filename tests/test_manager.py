import pytest

from ssalift.diagnostics import DiagnosticKind, DiagnosticLog
from ssalift.errors import CyclicDependency, InvariantViolation, PipelineConfigurationError, UnknownPass
from ssalift.ir import EdgeKind, IRGraph
from ssalift.knowledge import PipelineSettings
from ssalift.optimizer import (
    DominatorAnalysis,
    OptimizationPass,
    PassDescriptor,
    PassManager,
    PassResult,
    build_default_manager,
)


class _Noop(OptimizationPass):
    def __init__(self, name, deps=(), **flags):
        self.descriptor = PassDescriptor(name=name, deps=tuple(deps), **flags)

    def apply(self, graph, context):
        return PassResult.unchanged()


class _Churn(OptimizationPass):
    """Never settles: every application adds a node."""

    descriptor = PassDescriptor(name="churn", convergent=True)

    def apply(self, graph, context):
        graph.add_constant(graph.entry, 1, 64)
        return PassResult(changed=True, changes=1)


class _Reshape(OptimizationPass):
    descriptor = PassDescriptor(name="reshape", deps=("dominators",))

    def apply(self, graph, context):
        context.dominators()
        block = graph.add_block(None)
        graph.add_edge(graph.entry, block.id, EdgeKind.JUMP)
        return PassResult(changed=True, structural=True, changes=1)


class _Reader(OptimizationPass):
    descriptor = PassDescriptor(name="reader", deps=("dominators", "reshape"))

    def __init__(self):
        self.seen = None

    def apply(self, graph, context):
        tree = context.dominators()
        self.seen = (tree.is_stale(graph), len(tree.reachable))
        return PassResult.unchanged()


class _Corrupt(OptimizationPass):
    descriptor = PassDescriptor(name="corrupt")

    def apply(self, graph, context):
        constant = graph.add_constant(graph.entry, 1, 64)
        graph.add_operation(graph.entry, "return", [constant.id], 0)
        graph.tombstone(constant.id)
        return PassResult(changed=True, changes=1)


def _graph():
    graph = IRGraph()
    graph.add_block(0)
    return graph


def test_cycle_is_rejected():
    manager = PassManager()
    manager.register(_Noop("a", ("b",)))
    manager.register(_Noop("b", ("a",)))
    manager.register(_Noop("c"))
    with pytest.raises(CyclicDependency) as excinfo:
        manager.schedule()
    assert excinfo.value.passes == ("a", "b")


def test_unknown_dependency_is_rejected():
    manager = PassManager()
    manager.register(_Noop("a"), ("missing",))
    with pytest.raises(UnknownPass) as excinfo:
        manager.schedule()
    assert excinfo.value.name == "missing"
    assert excinfo.value.required_by == "a"


def test_duplicate_registration_is_rejected():
    manager = PassManager()
    manager.register(_Noop("a"))
    with pytest.raises(PipelineConfigurationError):
        manager.register(_Noop("a"))


def test_ties_keep_registration_order():
    manager = PassManager()
    manager.register(_Noop("b"))
    manager.register(_Noop("a"))
    manager.register(_Noop("c", ("a",)))
    assert manager.schedule() == ("b", "a", "c")


def test_default_schedule():
    assert build_default_manager().schedule() == (
        "dominators",
        "simplify",
        "constant-propagation",
        "copy-propagation",
        "branch-folding",
        "call-recovery",
        "dead-code",
    )


def test_convergent_group_reports_non_convergence():
    manager = PassManager(settings=PipelineSettings(max_iterations=3))
    manager.register(_Churn())
    log = DiagnosticLog()
    state = manager.run(_graph(), log)
    assert not state.converged
    assert state.convergence_sweeps == 3
    assert state.runs["churn"] == 3
    (diagnostic,) = log.filter(DiagnosticKind.NON_CONVERGENCE)
    assert "churn" in diagnostic.message
    assert "not converged" in state.describe()


def test_structural_change_recomputes_dominators():
    manager = PassManager()
    reader = _Reader()
    manager.register(DominatorAnalysis())
    manager.register(_Reshape())
    manager.register(reader)
    state = manager.run(_graph())
    assert state.schedule == ("dominators", "reshape", "reader")
    assert state.mutation_counter == 1
    assert state.runs["dominators"] == 2
    assert reader.seen == (False, 2)


def test_validation_mode_catches_a_broken_pass():
    manager = PassManager(settings=PipelineSettings(validate=True))
    manager.register(_Corrupt())
    with pytest.raises(InvariantViolation) as excinfo:
        manager.run(_graph())
    assert excinfo.value.invariant == "tombstone-closure"


def test_without_validation_the_broken_pass_goes_unnoticed():
    manager = PassManager()
    manager.register(_Corrupt())
    state = manager.run(_graph())
    assert state.runs["corrupt"] == 1
