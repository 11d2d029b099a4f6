"""Fold conditional branches whose condition is a known constant."""

from __future__ import annotations

import logging

from ..ir.model import Constant, EdgeKind, IRGraph, Operation
from .base import OptimizationPass, PassContext, PassDescriptor, PassResult
from .propagation import eliminate_trivial_phis


logger = logging.getLogger(__name__)


class BranchFolding(OptimizationPass):
    """Drop the untaken edge of constant branches and detach dead blocks."""

    descriptor = PassDescriptor(name="branch-folding")

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:
        folded = 0
        for node in list(graph.live_nodes()):
            if not isinstance(node, Operation) or node.opcode != "branch" or not node.operands:
                continue
            condition = graph.node(node.operands[0])
            if not isinstance(condition, Constant) or condition.unknown:
                continue
            block = graph.blocks[node.block]
            taken = EdgeKind.BRANCH_TRUE if condition.value else EdgeKind.BRANCH_FALSE
            untaken = EdgeKind.BRANCH_FALSE if condition.value else EdgeKind.BRANCH_TRUE
            if not any(edge.kind is taken for edge in block.successors):
                continue
            for edge in [edge for edge in block.successors if edge.kind is untaken]:
                graph.remove_edge(edge)
            graph.tombstone(node.id)
            folded += 1

        if not folded:
            return PassResult.unchanged()

        reachable = graph.reachable()
        detached = 0
        for block in graph.block_order():
            if block.id in reachable:
                continue
            for edge in list(block.successors):
                graph.remove_edge(edge)
                detached += 1
        removed = eliminate_trivial_phis(graph)
        logger.debug(
            "branch-folding: folded %d branches, detached %d edges, removed %d phis",
            folded,
            detached,
            removed,
        )
        return PassResult(changed=True, structural=True, changes=folded + detached + removed)


__all__ = ["BranchFolding"]
