"""Algebraic simplification driven by an opcode keyed rule table.

Every rule looks at one operation and either returns ``None`` or rewrites the
node in place.  Rules never look further than the direct operands, and each
node is rewritten at most ``max_rewrites_per_node`` times per application.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from ..ir.model import Constant, IRGraph, Operation
from ..knowledge import OpcodeTable, mask, to_signed
from .base import OptimizationPass, PassContext, PassDescriptor, PassResult


logger = logging.getLogger(__name__)

Rule = Callable[["_Rewriter", Operation], Optional[str]]


class _Rewriter:
    """Operand helpers shared by the rules."""

    def __init__(self, graph: IRGraph, opcodes: OpcodeTable) -> None:
        self.graph = graph
        self.opcodes = opcodes

    def constant(self, node_id: int) -> Optional[int]:
        node = self.graph.node(node_id)
        if isinstance(node, Constant) and not node.unknown:
            return node.value
        return None

    def width(self, node_id: int) -> int:
        return self.graph.node(node_id).width

    def forward(self, node: Operation, source: int) -> Optional[str]:
        if self.width(source) != node.width:
            return None
        self.graph.rewrite_operation(node.id, "mov", [source])
        return "mov"

    def fold_to(self, node: Operation, value: int) -> str:
        self.graph.rewrite_constant(node.id, mask(value, node.width), node.width)
        return "const"

    def materialise(self, node: Operation, value: int, width: int) -> int:
        position = self.graph.position(node.id)
        return self.graph.add_constant(
            node.block, mask(value, width), width, position=position, address=node.address
        ).id


def _binary(node: Operation) -> Optional[Tuple[int, int]]:
    if len(node.operands) != 2:
        return None
    return node.operands[0], node.operands[1]


def _power_of_two(value: Optional[int]) -> Optional[int]:
    if value is None or value <= 1 or value & (value - 1):
        return None
    return value.bit_length() - 1


# ----------------------------------------------------------------------
# rules
# ----------------------------------------------------------------------
def _constant_right(rw: _Rewriter, node: Operation) -> Optional[str]:
    pair = _binary(node)
    if pair is None or not rw.opcodes.is_commutative(node.opcode):
        return None
    left, right = pair
    if rw.constant(left) is not None and rw.constant(right) is None:
        rw.graph.set_operands(node.id, [right, left])
        return "swap"
    return None


def _identity(neutral: Callable[[int], int], signed: bool = False) -> Rule:
    def rule(rw: _Rewriter, node: Operation) -> Optional[str]:
        pair = _binary(node)
        if pair is None:
            return None
        left, right = pair
        value = rw.constant(right)
        # Constants are zero extended, so the unmasked value has to match.
        if value is None or value != mask(neutral(node.width), node.width):
            return None
        if signed and to_signed(value, rw.width(right)) != neutral(node.width):
            return None
        return rw.forward(node, left)

    return rule


def _idempotent(rw: _Rewriter, node: Operation) -> Optional[str]:
    pair = _binary(node)
    if pair is not None and pair[0] == pair[1]:
        return rw.forward(node, pair[0])
    return None


def _annihilator(value: int) -> Rule:
    def rule(rw: _Rewriter, node: Operation) -> Optional[str]:
        pair = _binary(node)
        if pair is not None and rw.constant(pair[1]) == value:
            return rw.fold_to(node, 0)
        return None

    return rule


def _self_cancel(rw: _Rewriter, node: Operation) -> Optional[str]:
    pair = _binary(node)
    if pair is not None and pair[0] == pair[1]:
        return rw.fold_to(node, 0)
    return None


def _self_compare(result: int) -> Rule:
    def rule(rw: _Rewriter, node: Operation) -> Optional[str]:
        pair = _binary(node)
        if pair is not None and pair[0] == pair[1]:
            return rw.fold_to(node, result)
        return None

    return rule


def _involution(rw: _Rewriter, node: Operation) -> Optional[str]:
    if len(node.operands) != 1:
        return None
    inner = rw.graph.node(node.operands[0])
    if not isinstance(inner, Operation) or inner.opcode != node.opcode or len(inner.operands) != 1:
        return None
    if inner.width != node.width:
        return None
    return rw.forward(node, inner.operands[0])


def _reassociate(rw: _Rewriter, node: Operation) -> Optional[str]:
    pair = _binary(node)
    if pair is None:
        return None
    left, right = pair
    outer = rw.constant(right)
    inner = rw.graph.node(left)
    if outer is None or not isinstance(inner, Operation) or inner.opcode != node.opcode:
        return None
    inner_pair = _binary(inner)
    if inner_pair is None:
        return None
    value = rw.constant(inner_pair[1])
    width = node.width
    if value is None or inner.width != width or rw.width(right) != width:
        return None
    ok, combined = rw.opcodes.fold(node.opcode, [value, outer], [width, width], width)
    if not ok or combined is None:
        return None
    constant = rw.materialise(node, combined, width)
    rw.graph.set_operands(node.id, [inner_pair[0], constant])
    return "reassociate"


def _strength(new_opcode: str, operand: Callable[[int, int], int]) -> Rule:
    def rule(rw: _Rewriter, node: Operation) -> Optional[str]:
        pair = _binary(node)
        if pair is None:
            return None
        shift = _power_of_two(rw.constant(pair[1]))
        if shift is None or shift >= node.width:
            return None
        width = rw.width(pair[1])
        constant = rw.materialise(node, operand(shift, width), width)
        rw.graph.rewrite_operation(node.id, new_opcode, [pair[0], constant])
        return new_opcode

    return rule


def _all_ones(width: int) -> int:
    return -1


def _zero(width: int) -> int:
    return 0


def _one(width: int) -> int:
    return 1


RULES: Dict[str, Tuple[Rule, ...]] = {
    "add": (_constant_right, _identity(_zero), _reassociate),
    "sub": (_identity(_zero), _self_cancel),
    "mul": (
        _constant_right,
        _identity(_one),
        _annihilator(0),
        _reassociate,
        _strength("shl", lambda shift, width: shift),
    ),
    "udiv": (_identity(_one), _strength("shr", lambda shift, width: shift)),
    "sdiv": (_identity(_one, signed=True),),
    "umod": (_annihilator(1), _strength("and", lambda shift, width: (1 << shift) - 1)),
    "and": (_constant_right, _identity(_all_ones), _annihilator(0), _idempotent, _reassociate),
    "or": (_constant_right, _identity(_zero), _idempotent, _reassociate),
    "xor": (_constant_right, _identity(_zero), _self_cancel, _reassociate),
    "shl": (_identity(_zero),),
    "shr": (_identity(_zero),),
    "sar": (_identity(_zero),),
    "not": (_involution,),
    "neg": (_involution,),
    "eq": (_constant_right, _self_compare(1)),
    "ne": (_constant_right, _self_compare(0)),
    "ule": (_self_compare(1),),
    "uge": (_self_compare(1),),
    "sle": (_self_compare(1),),
    "sge": (_self_compare(1),),
    "ult": (_self_compare(0),),
    "ugt": (_self_compare(0),),
    "slt": (_self_compare(0),),
    "sgt": (_self_compare(0),),
}


class ExpressionSimplifier(OptimizationPass):
    """Rewrite each operation to a local fixed point of :data:`RULES`."""

    descriptor = PassDescriptor(name="simplify")

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:
        rewriter = _Rewriter(graph, context.opcodes)
        limit = context.settings.max_rewrites_per_node
        rewrites = 0
        for node in list(graph.live_nodes()):
            rewrites += self.simplify_node(rewriter, node.id, limit)
        if rewrites:
            logger.debug("simplify: applied %d rewrites", rewrites)
        return PassResult(changed=bool(rewrites), changes=rewrites)

    @staticmethod
    def simplify_node(rewriter: _Rewriter, node_id: int, limit: int) -> int:
        applied: List[str] = []
        for _ in range(limit):
            node = rewriter.graph.node(node_id)
            if not isinstance(node, Operation):
                break
            opcode = rewriter.opcodes.canonical(node.opcode)
            for rule in RULES.get(opcode, ()):
                outcome = rule(rewriter, node)
                if outcome is not None:
                    applied.append(outcome)
                    break
            else:
                break
        return len(applied)


def simplify_graph(graph: IRGraph, opcodes: Optional[OpcodeTable] = None, limit: int = 16) -> int:
    """Run the rule table over ``graph`` outside of a pass manager."""

    rewriter = _Rewriter(graph, opcodes or OpcodeTable.default())
    return sum(
        ExpressionSimplifier.simplify_node(rewriter, node.id, limit) for node in list(graph.live_nodes())
    )


__all__ = ["ExpressionSimplifier", "RULES", "simplify_graph"]
