"""Promote conservative call nodes to the calling-convention model.

A freshly constructed call reads every tracked location and clobbers every
register, absolute slot and the memory state.  When the call target is a
resolved constant and the argument registers that hold a definition form a
gap-free prefix of the convention's argument list, the call is rewritten to
``call(target, args..., memory)``:

* clobbers of callee-saved registers forward to the value before the call;
* the clobber of the return register becomes ``call.result(call)``;
* every other clobber keeps only the call as operand.

Calls that cannot be promoted keep the conservative model and are reported
once as ``LowConfidenceCall``.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from ..diagnostics import DiagnosticKind
from ..ir.model import MEMORY_STATE, Constant, IRGraph, Operation, StorageLocation, StorageSpace, Undefined
from ..knowledge import CallingConvention
from .base import DiagnosticCollector, OptimizationPass, PassContext, PassDescriptor, PassResult


logger = logging.getLogger(__name__)


class CallSiteRecovery(OptimizationPass):
    descriptor = PassDescriptor(name="call-recovery")

    def apply(self, graph: IRGraph, context: PassContext) -> PassResult:
        diagnostics = DiagnosticCollector()
        promoted = 0
        for node in list(graph.live_nodes()):
            if not isinstance(node, Operation) or not node.is_call:
                continue
            if node.attrs.get("model") != "conservative":
                continue
            reason = self._blocker(graph, node, context.convention)
            if reason is None:
                self._promote(graph, node, context)
                promoted += 1
                continue
            if not node.attrs.get("low_confidence"):
                node.attrs["low_confidence"] = True
                diagnostics.record(
                    DiagnosticKind.LOW_CONFIDENCE_CALL,
                    f"call kept conservative: {reason}",
                    node=node.id,
                    block=node.block,
                )
                logger.warning("low confidence call n%d in bb%d: %s", node.id, node.block, reason)
        return PassResult(
            changed=bool(promoted),
            changes=promoted,
            diagnostics=diagnostics.freeze(),
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _reaching(node: Operation) -> List[Tuple[StorageLocation, int]]:
        reads = node.attrs.get("reads", ())
        return list(zip(reads, node.operands[1:]))

    def _arguments(
        self, graph: IRGraph, node: Operation, convention: CallingConvention
    ) -> Tuple[List[int], bool]:
        """Return the defined argument prefix and whether it has gaps."""

        reaching = {location: value for location, value in self._reaching(node)}
        defined: List[Optional[int]] = []
        for name in convention.arguments:
            value = reaching.get(StorageLocation.register(name))
            if value is not None and isinstance(graph.node(value), Undefined):
                value = None
            defined.append(value)
        prefix: List[int] = []
        for value in defined:
            if value is None:
                break
            prefix.append(value)
        gaps = any(value is not None for value in defined[len(prefix):])
        return prefix, gaps

    def _blocker(self, graph: IRGraph, node: Operation, convention: CallingConvention) -> Optional[str]:
        target = graph.node(node.operands[0])
        if not isinstance(target, Constant) or target.unknown:
            return "unresolved target"
        _, gaps = self._arguments(graph, node, convention)
        if gaps:
            return f"argument registers do not match {convention.name}"
        return None

    def _promote(self, graph: IRGraph, node: Operation, context: PassContext) -> None:
        convention = context.convention
        arguments, _ = self._arguments(graph, node, convention)
        reaching = dict(self._reaching(node))
        operands = [node.operands[0], *arguments]
        reads = [StorageLocation.register(name) for name in convention.arguments[: len(arguments)]]
        if MEMORY_STATE in reaching:
            operands.append(reaching[MEMORY_STATE])
            reads.append(MEMORY_STATE)
        graph.set_operands(node.id, operands)
        target = graph.node(node.operands[0]).value
        node.attrs.update(
            {
                "model": "precise",
                "reads": tuple(reads),
                "arguments": tuple(convention.arguments[: len(arguments)]),
            }
        )
        symbol = context.symbols.get(target)
        if symbol is not None:
            node.attrs["symbol"] = symbol

        for user in graph.users(node.id):
            clobber = graph.node(user)
            if not isinstance(clobber, Operation) or clobber.opcode != "clobber":
                continue
            location = clobber.location
            is_register = location is not None and location.space is StorageSpace.REGISTER
            if is_register and location.name in convention.callee_saved:
                graph.replace_all_uses(clobber.id, clobber.operands[1])
                graph.tombstone(clobber.id)
            elif is_register and location.name == convention.return_slot:
                graph.rewrite_operation(clobber.id, "call.result", [node.id])
            else:
                graph.set_operands(clobber.id, [node.id])
        logger.debug("promoted call n%d to %s with %d arguments", node.id, convention.name, len(arguments))


__all__ = ["CallSiteRecovery"]
