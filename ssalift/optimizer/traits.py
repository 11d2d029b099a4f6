"""Helpers describing optimisation-relevant traits for IR nodes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..ir.model import Node, NodeKind, Operation
from ..knowledge import OpcodeTable


TERMINATOR_OPCODES = frozenset({"branch", "jump", "return"})


@dataclass(frozen=True)
class IRNodeTraits:
    """Lightweight classification exposing optimiser friendly hints.

    ``side_effect``
        The node is observable outside the graph (stores, calls, returns,
        control transfers and every opcode the table does not know).  Such
        nodes are the roots of dead-code elimination.

    ``terminator``
        The node transfers control and must stay last in its block; copies
        inserted on an outgoing edge go in front of it.

    ``copy``
        A pure single-operand move whose uses may be forwarded.
    """

    side_effect: bool = False
    terminator: bool = False
    copy: bool = False

    @property
    def removable(self) -> bool:
        return not self.side_effect


def classify_node_traits(node: Node, opcodes: Optional[OpcodeTable] = None) -> IRNodeTraits:
    """Return optimisation traits for ``node``."""

    if node.kind is not NodeKind.OPERATION:
        return IRNodeTraits()
    assert isinstance(node, Operation)
    table = opcodes or OpcodeTable.default()
    opcode = table.canonical(node.opcode)
    return IRNodeTraits(
        side_effect=table.has_side_effect(opcode),
        terminator=opcode in TERMINATOR_OPCODES,
        copy=table.is_copy(opcode) and len(node.operands) == 1,
    )


__all__ = ["IRNodeTraits", "TERMINATOR_OPCODES", "classify_node_traits"]
