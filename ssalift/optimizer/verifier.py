"""Structural invariant checks for the SSA graph.

The verifier is only wired into the pass manager in validation mode.  A
failure always points at a defect in a pass; ingest problems are reported much
earlier as :class:`~ssalift.errors.MalformedInput`.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..errors import InvariantViolation
from ..ir.dominators import DominatorTree, compute
from ..ir.model import IRGraph, NodeKind, Phi


logger = logging.getLogger(__name__)


class Verifier:
    """Check single assignment, dominance, phi arity and tombstone closure."""

    def violations(self, graph: IRGraph, tree: Optional[DominatorTree] = None) -> List[InvariantViolation]:
        tree = tree if tree is not None and not tree.is_stale(graph) else compute(graph)
        problems: List[InvariantViolation] = []
        positions: Dict[int, tuple] = {}

        for block in graph.block_order():
            seen_non_phi = False
            for index, node_id in enumerate(block.nodes):
                if node_id in positions:
                    problems.append(
                        InvariantViolation(
                            "node listed more than once",
                            node=node_id,
                            block=block.id,
                            invariant="single-assignment",
                        )
                    )
                    continue
                positions[node_id] = (block.id, index)
                if not 0 <= node_id < len(graph.nodes):
                    problems.append(
                        InvariantViolation("unknown node id", node=node_id, block=block.id, invariant="single-assignment")
                    )
                    continue
                node = graph.node(node_id)
                if not node.is_live:
                    problems.append(
                        InvariantViolation("block lists a tombstone", node=node_id, block=block.id, invariant="tombstone-closure")
                    )
                if node.block != block.id:
                    problems.append(
                        InvariantViolation(
                            f"node claims block {node.block}",
                            node=node_id,
                            block=block.id,
                            invariant="single-assignment",
                        )
                    )
                if node.kind is NodeKind.PHI:
                    if seen_non_phi:
                        problems.append(
                            InvariantViolation("phi after a non-phi node", node=node_id, block=block.id, invariant="phi-placement")
                        )
                else:
                    seen_non_phi = True

        for block in graph.block_order():
            for edge in block.successors:
                if edge not in graph.blocks[edge.target].predecessors:
                    problems.append(
                        InvariantViolation(f"dangling edge {edge.describe()}", block=block.id, invariant="cfg")
                    )
            for node_id in block.nodes:
                if node_id not in positions or not graph.is_live(node_id):
                    continue
                node = graph.node(node_id)
                if isinstance(node, Phi):
                    problems.extend(self._check_phi(graph, tree, node, positions))
                    continue
                for operand in node.operands:
                    problem = self._check_operand(graph, tree, node_id, operand, positions)
                    if problem is not None:
                        problems.append(problem)
        return problems

    def verify(self, graph: IRGraph, tree: Optional[DominatorTree] = None) -> None:
        problems = self.violations(graph, tree)
        if problems:
            for problem in problems[1:]:
                logger.debug("additional violation: %s", problem)
            raise problems[0]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _check_phi(self, graph: IRGraph, tree: DominatorTree, phi: Phi, positions) -> List[InvariantViolation]:
        problems: List[InvariantViolation] = []
        block = graph.blocks[phi.block]
        expected = block.predecessor_blocks()
        if len(phi.operands) != len(expected) or list(phi.incoming) != expected:
            problems.append(
                InvariantViolation(
                    f"phi has {len(phi.operands)} operands for {len(expected)} predecessors",
                    node=phi.id,
                    block=phi.block,
                    invariant="phi-arity",
                )
            )
            return problems
        for pred, operand in zip(expected, phi.operands):
            if operand < 0 or not graph.is_live(operand):
                problems.append(
                    InvariantViolation(
                        f"phi operand n{operand} is not live",
                        node=phi.id,
                        block=phi.block,
                        invariant="tombstone-closure",
                    )
                )
                continue
            if pred not in tree or phi.block not in tree:
                continue
            definition = positions.get(operand)
            if definition is None or not tree.dominates(definition[0], pred):
                problems.append(
                    InvariantViolation(
                        f"phi operand n{operand} does not dominate predecessor bb{pred}",
                        node=phi.id,
                        block=phi.block,
                        invariant="dominance",
                    )
                )
        return problems

    def _check_operand(
        self, graph: IRGraph, tree: DominatorTree, user: int, operand: int, positions
    ) -> Optional[InvariantViolation]:
        use_block, use_index = positions[user]
        if operand < 0 or not graph.is_live(operand):
            return InvariantViolation(
                f"operand n{operand} is not live", node=user, block=use_block, invariant="tombstone-closure"
            )
        if use_block not in tree:
            return None
        definition = positions.get(operand)
        if definition is None:
            return InvariantViolation(
                f"operand n{operand} is not placed in a block", node=user, block=use_block, invariant="dominance"
            )
        def_block, def_index = definition
        if def_block == use_block:
            if def_index < use_index:
                return None
        elif tree.strictly_dominates(def_block, use_block):
            return None
        return InvariantViolation(
            f"operand n{operand} does not dominate its use", node=user, block=use_block, invariant="dominance"
        )


__all__ = ["Verifier"]
