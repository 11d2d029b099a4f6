"""Dead code elimination."""

from __future__ import annotations

import logging
from typing import List, Set

from ..ir.model import IRGraph, NodeKind
from .base import OptimizationPass, PassContext, PassDescriptor, PassResult
from .traits import classify_node_traits


logger = logging.getLogger(__name__)


class DeadCodeEliminator(OptimizationPass):
    """Tombstone every node not transitively used by a side-effecting node.

    Marking from the roots removes dead phi cycles in one sweep, so a second
    application finds nothing left to remove.
    """

    descriptor = PassDescriptor(name="dead-code", idempotent=True)

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:
        live: Set[int] = set()
        worklist: List[int] = []
        for node in graph.live_nodes():
            if classify_node_traits(node, context.opcodes).side_effect:
                live.add(node.id)
                worklist.append(node.id)
        while worklist:
            node = graph.node(worklist.pop())
            for operand in node.operands:
                if operand >= 0 and operand not in live and graph.is_live(operand):
                    live.add(operand)
                    worklist.append(operand)

        dead = [node.id for node in graph.live_nodes() if node.id not in live]
        for node_id in dead:
            graph.tombstone(node_id)
        if dead:
            phis = sum(1 for node_id in dead if graph.node(node_id).former is NodeKind.PHI)
            logger.debug("dead-code: removed %d nodes (%d phis)", len(dead), phis)
        return PassResult(changed=bool(dead), changes=len(dead))


__all__ = ["DeadCodeEliminator"]
