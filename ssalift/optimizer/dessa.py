"""Leave SSA form by turning phis into copies on predecessor edges.

Every phi is assigned a variable.  The phis of a block define one parallel
copy per incoming edge; the copies are sequentialised so that no variable is
overwritten while a later copy still needs its old value, using a temporary
to break cycles (the swap problem).  Critical edges are split first so the
copies run only on the edge they belong to.  Finally each phi is rewritten
in place into a ``var`` read of its variable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from ..ir.model import Edge, IRGraph, Phi
from ..knowledge import OpcodeTable, PipelineSettings
from .traits import classify_node_traits


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariableSource:
    """Old value of a variable that is also written by the same parallel copy."""

    name: str


CopySource = Union[int, VariableSource]


def sequentialize(
    copies: List[Tuple[str, CopySource]], new_temporary
) -> List[Tuple[str, CopySource]]:
    """Order the parallel copy ``dest <- source`` pairs.

    ``new_temporary`` returns a fresh variable name whenever a cycle has to be
    broken.  Self copies are dropped.
    """

    pending: Dict[str, CopySource] = {}
    for dest, source in copies:
        if isinstance(source, VariableSource) and source.name == dest:
            continue
        pending[dest] = source
    ordered: List[Tuple[str, CopySource]] = []
    while pending:
        still_read = {
            source.name for source in pending.values() if isinstance(source, VariableSource)
        }
        ready = sorted(dest for dest in pending if dest not in still_read)
        if ready:
            dest = ready[0]
            ordered.append((dest, pending.pop(dest)))
            continue
        victim = min(pending)
        temporary = new_temporary()
        ordered.append((temporary, VariableSource(victim)))
        for dest, source in list(pending.items()):
            if isinstance(source, VariableSource) and source.name == victim:
                pending[dest] = VariableSource(temporary)
    return ordered


class DeSSAFinalizer:
    """Replace every phi with explicit ``copy`` operations."""

    def __init__(
        self,
        opcodes: Optional[OpcodeTable] = None,
        settings: Optional[PipelineSettings] = None,
    ) -> None:
        self.opcodes = opcodes or OpcodeTable.default()
        self.settings = settings or PipelineSettings()

    def finalize(self, graph: IRGraph) -> int:
        """Return the number of copy operations inserted."""

        if self.settings.split_critical_edges:
            split = self._split_critical_edges(graph)
            if split:
                logger.debug("de-ssa: split %d critical edges", split)

        variables: Dict[int, str] = {}
        for block in graph.block_order():
            for phi_id in graph.phis(block.id):
                variables[phi_id] = self._variable_name(graph.node(phi_id))

        temporaries = [0]

        def new_temporary() -> str:
            temporaries[0] += 1
            return f"tmp{temporaries[0]}"

        inserted = 0
        plans: List[Tuple[Edge, List[Tuple[str, CopySource]], Dict[str, int]]] = []
        for block in graph.block_order():
            phis = graph.phis(block.id)
            if not phis:
                continue
            for index, edge in enumerate(block.predecessors):
                copies: List[Tuple[str, CopySource]] = []
                widths: Dict[str, int] = {}
                for phi_id in phis:
                    phi = graph.node(phi_id)
                    operand = phi.operands[index]
                    source: CopySource = operand
                    if operand in variables and graph.node(operand).block == block.id:
                        source = VariableSource(variables[operand])
                    copies.append((variables[phi_id], source))
                    widths[variables[phi_id]] = phi.width
                plans.append((edge, sequentialize(copies, new_temporary), widths))

        for edge, ordered, widths in plans:
            inserted += self._emit(graph, edge, ordered, widths, variables)

        for phi_id, name in variables.items():
            node = graph.rewrite_operation(phi_id, "var", [])
            node.variable = name
        logger.debug("de-ssa: removed %d phis, inserted %d copies", len(variables), inserted)
        return inserted

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _variable_name(phi: Phi) -> str:
        if phi.location is not None:
            return f"{phi.location.name}.{phi.id}"
        return f"v{phi.id}"

    @staticmethod
    def _split_critical_edges(graph: IRGraph) -> int:
        critical = [
            edge
            for block in graph.block_order()
            if graph.phis(block.id) and len(block.predecessors) > 1
            for edge in block.predecessors
            if len(graph.blocks[edge.source].successors) > 1
        ]
        for edge in critical:
            graph.split_edge(edge)
        return len(critical)

    def _emit(
        self,
        graph: IRGraph,
        edge: Edge,
        ordered: List[Tuple[str, CopySource]],
        widths: Dict[str, int],
        variables: Dict[int, str],
    ) -> int:
        by_name = {name: phi_id for phi_id, name in variables.items()}
        holders: Dict[str, int] = {}
        block = graph.blocks[edge.source]
        position: Optional[int] = None
        if block.nodes and classify_node_traits(graph.node(block.nodes[-1]), self.opcodes).terminator:
            position = len(block.nodes) - 1
        for dest, source in ordered:
            if isinstance(source, VariableSource):
                operand = holders.get(source.name, by_name.get(source.name))
                width = widths.get(source.name) or graph.node(operand).width
            else:
                operand = source
                width = widths.get(dest) or graph.node(operand).width
            copy = graph.add_operation(
                block.id,
                "copy",
                [operand],
                widths.get(dest, width),
                position=position,
                variable=dest,
                attrs={"edge": edge.kind.value, "successor": edge.target},
            )
            if position is not None:
                position += 1
            holders[dest] = copy.id
        return len(ordered)


def finalize(graph: IRGraph, settings: Optional[PipelineSettings] = None) -> int:
    """Convenience wrapper around :class:`DeSSAFinalizer`."""

    return DeSSAFinalizer(settings=settings).finalize(graph)


__all__ = ["DeSSAFinalizer", "VariableSource", "finalize", "sequentialize"]
