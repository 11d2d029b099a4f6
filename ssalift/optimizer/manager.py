"""Pass registration, scheduling and execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..diagnostics import DiagnosticKind, DiagnosticLog
from ..errors import CyclicDependency, PipelineConfigurationError, UnknownPass
from ..ir.dominators import DominatorTree, compute
from ..ir.model import IRGraph
from ..knowledge import CallingConvention, OpcodeTable, PipelineSettings
from .base import OptimizationPass, PassContext, PassDescriptor, PassResult
from .branches import BranchFolding
from .calls import CallSiteRecovery
from .dce import DeadCodeEliminator
from .propagation import ConstantPropagation, CopyPropagation
from .simplifier import ExpressionSimplifier
from .verifier import Verifier


logger = logging.getLogger(__name__)


class DominatorAnalysis(OptimizationPass):
    """Publish the dominator tree; recomputed after structural mutations."""

    descriptor = PassDescriptor(name="dominators", reads_structure=True, analysis=True)

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:
        return PassResult.unchanged(value=compute(graph))


@dataclass
class PipelineState:
    """Mutable bookkeeping of one :meth:`PassManager.run` invocation."""

    schedule: Tuple[str, ...]
    valid: Dict[str, bool] = field(default_factory=dict)
    mutation_counter: int = 0
    analyses: Dict[str, Any] = field(default_factory=dict)
    runs: Dict[str, int] = field(default_factory=dict)
    changes: Dict[str, int] = field(default_factory=dict)
    last_revision: Dict[str, int] = field(default_factory=dict)
    convergence_sweeps: int = 0
    converged: bool = True

    def describe(self) -> str:
        lines = [f"schedule: {' -> '.join(self.schedule)}"]
        lines.append(f"mutations: {self.mutation_counter}")
        for name in self.schedule:
            lines.append(
                f"  {name}: runs={self.runs.get(name, 0)} changes={self.changes.get(name, 0)}"
            )
        if self.convergence_sweeps:
            status = "converged" if self.converged else "not converged"
            lines.append(f"convergent sweeps: {self.convergence_sweeps} ({status})")
        return "\n".join(lines)


class PassManager:
    """Run registered passes in dependency order."""

    def __init__(
        self,
        opcodes: Optional[OpcodeTable] = None,
        convention: Optional[CallingConvention] = None,
        settings: Optional[PipelineSettings] = None,
        *,
        symbols: Optional[Mapping[int, str]] = None,
        verifier: Optional[Verifier] = None,
    ) -> None:
        self.opcodes = opcodes or OpcodeTable.default()
        self.convention = convention or CallingConvention.sysv_amd64()
        self.settings = settings or PipelineSettings()
        self.symbols = dict(symbols or {})
        self.verifier = verifier or Verifier()
        self._passes: Dict[str, OptimizationPass] = {}
        self._deps: Dict[str, Tuple[str, ...]] = {}

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------
    def register(self, pass_: OptimizationPass, dependencies: Iterable[str] = ()) -> None:
        name = pass_.descriptor.name
        if name in self._passes:
            raise PipelineConfigurationError(f"pass {name!r} registered twice")
        deps = tuple(dict.fromkeys((*pass_.descriptor.deps, *dependencies)))
        self._passes[name] = pass_
        self._deps[name] = deps

    @property
    def passes(self) -> Tuple[str, ...]:
        return tuple(self._passes)

    def descriptor(self, name: str) -> PassDescriptor:
        return self._passes[name].descriptor

    def schedule(self) -> Tuple[str, ...]:
        """Topologically order the passes; ties keep registration order."""

        for name, deps in self._deps.items():
            for dep in deps:
                if dep not in self._passes:
                    raise UnknownPass(dep, name)
        indegree = {name: len(deps) for name, deps in self._deps.items()}
        dependents: Dict[str, List[str]] = {name: [] for name in self._passes}
        for name, deps in self._deps.items():
            for dep in deps:
                dependents[dep].append(name)
        rank = {name: index for index, name in enumerate(self._passes)}
        ready = sorted((name for name, count in indegree.items() if count == 0), key=rank.__getitem__)
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for dependent in dependents[current]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    ready.append(dependent)
            ready.sort(key=rank.__getitem__)
        if len(order) != len(self._passes):
            raise CyclicDependency(sorted(name for name, count in indegree.items() if count > 0))
        return tuple(order)

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    def run(self, graph: IRGraph, diagnostics: Optional[DiagnosticLog] = None) -> PipelineState:
        log = diagnostics if diagnostics is not None else DiagnosticLog()
        state = PipelineState(schedule=self.schedule())
        state.valid = {name: False for name in state.schedule}
        context = PassContext(
            opcodes=self.opcodes,
            convention=self.convention,
            settings=self.settings,
            symbols=self.symbols,
            analyses=state.analyses,
            resolve=lambda name: self._resolve(name, graph, state, context, log),
        )

        group = [name for name in state.schedule if self.descriptor(name).convergent]
        for name in state.schedule:
            descriptor = self.descriptor(name)
            if descriptor.convergent:
                if name == group[0]:
                    self._run_convergent(group, graph, state, context, log)
                continue
            if descriptor.analysis:
                self._resolve(name, graph, state, context, log)
                continue
            self._execute(name, graph, state, context, log)
        logger.debug("pipeline finished after %d mutations", state.mutation_counter)
        return state

    def _run_convergent(
        self,
        group: Sequence[str],
        graph: IRGraph,
        state: PipelineState,
        context: PassContext,
        log: DiagnosticLog,
    ) -> None:
        limit = self.settings.max_iterations
        for sweep in range(1, limit + 1):
            state.convergence_sweeps = sweep
            changed = False
            for name in group:
                result = self._execute(name, graph, state, context, log, force=True)
                changed = changed or result.changed
            if not changed:
                state.converged = True
                return
        state.converged = False
        log.record(
            DiagnosticKind.NON_CONVERGENCE,
            f"{', '.join(group)} still changing after {limit} iterations",
        )
        logger.warning("convergent passes %s did not settle within %d iterations", list(group), limit)

    def _execute(
        self,
        name: str,
        graph: IRGraph,
        state: PipelineState,
        context: PassContext,
        log: DiagnosticLog,
        *,
        force: bool = False,
    ) -> PassResult:
        pass_ = self._passes[name]
        descriptor = pass_.descriptor
        if (
            not force
            and descriptor.idempotent
            and state.last_revision.get(name) == graph.revision
        ):
            logger.debug("skipping %s: graph unchanged since last run", name)
            return PassResult.unchanged()

        for dep in self._deps[name]:
            if self.descriptor(dep).analysis:
                self._resolve(dep, graph, state, context, log)

        result = pass_.apply(graph, context)
        state.runs[name] = state.runs.get(name, 0) + 1
        state.changes[name] = state.changes.get(name, 0) + result.changes
        log.extend(result.diagnostics)
        logger.debug("pass %s: changed=%s changes=%d", name, result.changed, result.changes)

        if result.structural:
            state.mutation_counter += 1
            for other in state.schedule:
                if self.descriptor(other).reads_structure:
                    state.valid[other] = False
        state.valid[name] = True
        if result.changed and self.settings.validate:
            self.verifier.verify(graph, self._fresh_tree(graph, state))
        state.last_revision[name] = graph.revision
        return result

    def _resolve(
        self,
        name: str,
        graph: IRGraph,
        state: PipelineState,
        context: PassContext,
        log: DiagnosticLog,
    ) -> Any:
        if name not in self._passes:
            raise UnknownPass(name, "<context>")
        cached = state.analyses.get(name)
        stale = isinstance(cached, DominatorTree) and cached.is_stale(graph)
        if state.valid.get(name) and not stale and name in state.analyses:
            return cached
        result = self._passes[name].apply(graph, context)
        state.runs[name] = state.runs.get(name, 0) + 1
        state.analyses[name] = result.value
        state.valid[name] = True
        log.extend(result.diagnostics)
        return result.value

    @staticmethod
    def _fresh_tree(graph: IRGraph, state: PipelineState) -> Optional[DominatorTree]:
        cached = state.analyses.get("dominators")
        if isinstance(cached, DominatorTree) and not cached.is_stale(graph):
            return cached
        return None


def build_default_manager(
    opcodes: Optional[OpcodeTable] = None,
    convention: Optional[CallingConvention] = None,
    settings: Optional[PipelineSettings] = None,
    *,
    symbols: Optional[Mapping[int, str]] = None,
) -> PassManager:
    """Register the standard optimisation pipeline."""

    manager = PassManager(opcodes, convention, settings, symbols=symbols)
    manager.register(DominatorAnalysis())
    manager.register(ExpressionSimplifier(), ("dominators",))
    manager.register(ConstantPropagation(), ("simplify",))
    manager.register(CopyPropagation(), ("simplify",))
    manager.register(BranchFolding(), ("constant-propagation", "copy-propagation"))
    manager.register(CallSiteRecovery(), ("branch-folding",))
    manager.register(DeadCodeEliminator(), ("call-recovery",))
    return manager


__all__ = ["DominatorAnalysis", "PassManager", "PipelineState", "build_default_manager"]
