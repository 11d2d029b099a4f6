"""End-to-end decompilation sessions.

A session owns one :class:`IRGraph` from CFG assembly to De-SSA.  The
:class:`KnowledgeBase` it reads from is immutable, so any number of sessions
may run side by side and share it by reference.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .diagnostics import DiagnosticLog
from .ingest import SemanticsStream
from .ir.cfg import CFGBuilder
from .ir.model import IRGraph
from .ir.ssa import SSAConstructor
from .knowledge import KnowledgeBase
from .optimizer.dessa import DeSSAFinalizer
from .optimizer.manager import PassManager, PipelineState, build_default_manager
from .optimizer.verifier import Verifier


logger = logging.getLogger(__name__)


@dataclass
class DecompilationResult:
    """Optimised graph plus everything the session reported about it."""

    graph: IRGraph
    diagnostics: DiagnosticLog
    state: Optional[PipelineState] = None
    copies: int = 0

    def describe(self) -> str:
        blocks = len(self.graph.blocks)
        nodes = sum(len(block.nodes) for block in self.graph.blocks.values())
        return f"{blocks} blocks, {nodes} nodes, {len(self.diagnostics)} diagnostics"


class Session:
    """Run CFG assembly, SSA construction, the pass schedule and De-SSA."""

    def __init__(
        self,
        knowledge: Optional[KnowledgeBase] = None,
        *,
        manager: Optional[PassManager] = None,
    ) -> None:
        self.knowledge = knowledge or KnowledgeBase()
        self.manager = manager or build_default_manager(
            self.knowledge.opcodes,
            self.knowledge.convention,
            self.knowledge.settings,
            symbols=self.knowledge.symbols,
        )

    def run(self, stream: SemanticsStream, *, finalize: bool = True) -> DecompilationResult:
        knowledge = self.knowledge
        diagnostics = DiagnosticLog()

        graph = CFGBuilder().build(stream)
        SSAConstructor(knowledge.opcodes, knowledge.convention, knowledge.settings).construct(
            graph, diagnostics=diagnostics
        )
        if knowledge.settings.validate:
            Verifier().verify(graph)

        state = self.manager.run(graph, diagnostics)

        copies = 0
        if finalize:
            copies = DeSSAFinalizer(knowledge.opcodes, knowledge.settings).finalize(graph)

        result = DecompilationResult(graph=graph, diagnostics=diagnostics, state=state, copies=copies)
        logger.debug("session finished: %s", result.describe())
        return result


def decompile(
    stream: SemanticsStream,
    knowledge: Optional[KnowledgeBase] = None,
    *,
    finalize: bool = True,
) -> DecompilationResult:
    """Decompile one function with a fresh :class:`Session`."""

    return Session(knowledge).run(stream, finalize=finalize)


def decompile_many(
    jobs: Iterable[SemanticsStream],
    knowledge: Optional[KnowledgeBase] = None,
    *,
    workers: int = 4,
    finalize: bool = True,
) -> List[DecompilationResult]:
    """Decompile independent functions in parallel; results keep job order.

    Every job gets its own session and pass manager.  Only the knowledge base
    is shared.
    """

    shared = knowledge or KnowledgeBase()
    streams = list(jobs)
    if not streams:
        return []
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = [executor.submit(decompile, stream, shared, finalize=finalize) for stream in streams]
        return [future.result() for future in futures]


__all__ = ["DecompilationResult", "Session", "decompile", "decompile_many"]
