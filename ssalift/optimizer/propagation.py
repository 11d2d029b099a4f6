"""Constant folding, copy forwarding and trivial-phi elimination.

Both passes belong to the convergent group: the pass manager re-runs them
together until a full sweep changes nothing.

Trivial phis are removed per strongly connected component of the phi
subgraph, operands first (Braun et al., "Simple and Efficient Construction of
Static Single Assignment Form", section 3.2).  A component whose operands
from outside the component all resolve to one value is replaced by that value.
Operands that are distinct constant nodes with the same value and width count
as one value; the phis of such a component are rewritten in place into
constants because no single one of those nodes dominates the merge.  Phis of
one block with identical operand lists collapse into the lowest id.  Every
decision depends on node ids only, never on the order in which phis are
visited.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from ..ir.model import Constant, IRGraph, NodeKind, Operation, Phi
from .base import OptimizationPass, PassContext, PassDescriptor, PassResult
from .traits import classify_node_traits


logger = logging.getLogger(__name__)


class ConstantPropagation(OptimizationPass):
    """Fold operations whose operands are all constants."""

    descriptor = PassDescriptor(name="constant-propagation", convergent=True)

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:
        opcodes = context.opcodes
        folded = 0
        for node in list(graph.live_nodes()):
            if not isinstance(node, Operation) or not node.operands:
                continue
            if opcodes.has_side_effect(node.opcode):
                continue
            info = opcodes.get(node.opcode)
            if info is None or info.fold is None:
                continue
            operands = [graph.node(operand) for operand in node.operands]
            if not all(isinstance(operand, Constant) for operand in operands):
                continue
            if any(operand.unknown for operand in operands):
                graph.rewrite_constant(node.id, None, node.width, unknown=True)
                folded += 1
                continue
            ok, value = opcodes.fold(
                node.opcode,
                [operand.value for operand in operands],
                [operand.width for operand in operands],
                node.width,
            )
            if not ok:
                continue
            graph.rewrite_constant(node.id, value, node.width, unknown=value is None)
            folded += 1
        if folded:
            logger.debug("constant-propagation: folded %d nodes", folded)
        return PassResult(changed=bool(folded), changes=folded)


class CopyPropagation(OptimizationPass):
    """Forward pure moves and remove trivial phis."""

    descriptor = PassDescriptor(name="copy-propagation", convergent=True)

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:
        forwarded = 0
        for node in list(graph.live_nodes()):
            if not classify_node_traits(node, context.opcodes).copy:
                continue
            source = node.operands[0]
            if graph.node(source).width != node.width:
                continue
            if graph.replace_all_uses(node.id, source):
                forwarded += 1
        removed = eliminate_trivial_phis(graph)
        if forwarded or removed:
            logger.debug("copy-propagation: forwarded %d copies, removed %d phis", forwarded, removed)
        total = forwarded + removed
        return PassResult(changed=bool(total), changes=total)


# ----------------------------------------------------------------------
# trivial phis
# ----------------------------------------------------------------------
def eliminate_trivial_phis(graph: IRGraph, order: Optional[Sequence[int]] = None) -> int:
    """Remove redundant phis; ``order`` only changes the discovery order."""

    removed = 0
    while True:
        step = _remove_redundant_components(graph, order)
        step += _merge_duplicate_phis(graph)
        if not step:
            return removed
        removed += step


def _live_phis(graph: IRGraph, order: Optional[Sequence[int]]) -> List[int]:
    everything = [node.id for node in graph.live_nodes() if node.kind is NodeKind.PHI]
    if order is None:
        return everything
    present = set(everything)
    ordered = [node_id for node_id in order if node_id in present]
    listed = set(ordered)
    return ordered + [node_id for node_id in everything if node_id not in listed]


def _remove_redundant_components(graph: IRGraph, order: Optional[Sequence[int]]) -> int:
    phis = _live_phis(graph, order)
    members = set(phis)
    removed = 0
    for component in _strongly_connected(graph, phis, members):
        removed += _process_component(graph, component)
    return removed


def _process_component(graph: IRGraph, component: List[int]) -> int:
    members = set(component)
    outer: List[int] = []
    for phi_id in component:
        outer.extend(operand for operand in graph.node(phi_id).operands if operand not in members)
    keys = {_value_key(graph, operand) for operand in outer}
    if len(keys) == 1:
        return _replace_component(graph, component, outer)
    if len(component) == 1 or not keys:
        return 0
    inner = [
        phi_id
        for phi_id in component
        if all(operand in members for operand in graph.node(phi_id).operands)
    ]
    removed = 0
    inner_members = set(inner)
    for sub in _strongly_connected(graph, inner, inner_members):
        removed += _process_component(graph, sub)
    return removed


def _replace_component(graph: IRGraph, component: List[int], outer: List[int]) -> int:
    distinct = sorted(set(outer))
    if len(distinct) == 1:
        target = distinct[0]
        for phi_id in component:
            graph.replace_all_uses(phi_id, target)
        for phi_id in component:
            graph.tombstone(phi_id)
        return len(component)

    sample = graph.node(distinct[0])
    touched: Set[int] = set()
    for phi_id in sorted(component):
        block = graph.node(phi_id).block
        graph.rewrite_constant(phi_id, sample.value, sample.width)
        others = [node_id for node_id in graph.blocks[block].nodes if node_id != phi_id]
        leading = 0
        while leading < len(others) and graph.node(others[leading]).kind is NodeKind.PHI:
            leading += 1
        graph.move_node(phi_id, block, leading)
        touched.add(block)
    for block in touched:
        _sort_leading_constants(graph, block)
    return len(component)


def _sort_leading_constants(graph: IRGraph, block: int) -> None:
    nodes = graph.blocks[block].nodes
    start = len(graph.phis(block))
    end = start
    while end < len(nodes) and graph.node(nodes[end]).kind is NodeKind.CONSTANT:
        end += 1
    run = nodes[start:end]
    if run != sorted(run):
        graph.reorder_nodes(block, start, sorted(run))


def _merge_duplicate_phis(graph: IRGraph) -> int:
    merged = 0
    for block in graph.block_order():
        keepers = {}
        for phi_id in graph.phis(block.id):
            key = tuple(graph.node(phi_id).operands)
            keepers.setdefault(key, []).append(phi_id)
        for duplicates in keepers.values():
            if len(duplicates) < 2:
                continue
            keeper = min(duplicates)
            for phi_id in sorted(duplicates):
                if phi_id == keeper:
                    continue
                graph.replace_all_uses(phi_id, keeper)
                graph.tombstone(phi_id)
                merged += 1
    return merged


def _value_key(graph: IRGraph, operand: int) -> Tuple:
    node = graph.node(operand)
    if isinstance(node, Constant) and not node.unknown:
        return ("const", node.value, node.width)
    return ("node", operand)


def _strongly_connected(
    graph: IRGraph, roots: Iterable[int], members: Set[int]
) -> List[List[int]]:
    """Tarjan's algorithm over phi -> phi operand edges, operands first."""

    index = {}
    low = {}
    on_stack: Set[int] = set()
    stack: List[int] = []
    components: List[List[int]] = []
    counter = 0

    def successors(node_id: int) -> List[int]:
        node = graph.node(node_id)
        assert isinstance(node, Phi)
        return [operand for operand in node.operands if operand in members]

    for root in roots:
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work: List[Tuple[int, int]] = [(root, 0)]
        while work:
            node_id, position = work[-1]
            edges = successors(node_id)
            if position < len(edges):
                work[-1] = (node_id, position + 1)
                target = edges[position]
                if target not in index:
                    index[target] = low[target] = counter
                    counter += 1
                    stack.append(target)
                    on_stack.add(target)
                    work.append((target, 0))
                elif target in on_stack:
                    low[node_id] = min(low[node_id], index[target])
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node_id])
            if low[node_id] == index[node_id]:
                component: List[int] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node_id:
                        break
                components.append(sorted(component))
    return components


__all__ = ["ConstantPropagation", "CopyPropagation", "eliminate_trivial_phis"]
