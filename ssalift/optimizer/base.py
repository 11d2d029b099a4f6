"""Pass interface shared by every transformation and analysis."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..diagnostics import Diagnostic, DiagnosticKind
from ..ir.dominators import DominatorTree
from ..ir.model import IRGraph
from ..knowledge import CallingConvention, OpcodeTable, PipelineSettings


@dataclass(frozen=True)
class PassDescriptor:
    """Static description of a pass used when building the schedule.

    ``reads_structure`` marks passes whose cached result depends on the CFG
    shape; a structural mutation clears their validity bit.  ``convergent``
    passes are re-run as a group until a sweep reports no change.  ``analysis``
    passes do not mutate the graph and only publish a cached value.
    """

    name: str
    deps: Tuple[str, ...] = ()
    reads_structure: bool = False
    idempotent: bool = True
    convergent: bool = False
    analysis: bool = False


@dataclass(frozen=True)
class PassResult:
    """Outcome of one pass application."""

    changed: bool = False
    structural: bool = False
    changes: int = 0
    diagnostics: Tuple[Diagnostic, ...] = ()
    value: Any = None

    @classmethod
    def unchanged(cls, value: Any = None) -> "PassResult":
        return cls(value=value)


@dataclass
class PassContext:
    """Shared read-only tables plus access to cached analyses."""

    opcodes: OpcodeTable
    convention: CallingConvention
    settings: PipelineSettings
    symbols: Mapping[int, str] = field(default_factory=dict)
    analyses: Dict[str, Any] = field(default_factory=dict)
    resolve: Optional[Callable[[str], Any]] = None

    def analysis(self, name: str) -> Any:
        if self.resolve is not None:
            return self.resolve(name)
        return self.analyses[name]

    def dominators(self) -> DominatorTree:
        return self.analysis("dominators")


class DiagnosticCollector:
    """Small helper used by passes to build their diagnostic tuple."""

    def __init__(self) -> None:
        self._entries: list = []

    def record(
        self,
        kind: DiagnosticKind,
        message: str,
        *,
        node: Optional[int] = None,
        block: Optional[int] = None,
    ) -> None:
        self._entries.append(Diagnostic(kind=kind, message=message, node=node, block=block))

    def freeze(self) -> Tuple[Diagnostic, ...]:
        return tuple(self._entries)


class OptimizationPass:
    """Base class; subclasses set ``descriptor`` and implement :meth:`apply`."""

    descriptor: PassDescriptor = PassDescriptor(name="pass")

    @property
    def name(self) -> str:
        return self.descriptor.name

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:  # pragma: no cover - interface
        raise NotImplementedError


__all__ = [
    "DiagnosticCollector",
    "OptimizationPass",
    "PassContext",
    "PassDescriptor",
    "PassResult",
]
