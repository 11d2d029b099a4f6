"""SSA construction over a freshly built control-flow graph.

The constructor lowers the primitive operations stored on every block into
IR nodes while renaming storage locations:

* phis are placed at the iterated dominance frontier of every location's
  defining blocks (at most one phi per block and location);
* a preorder walk of the dominator tree keeps one definition stack per
  location, and fills the phi slots of every successor edge on block exit;
* reads without a reaching definition resolve to one shared
  :class:`~ssalift.ir.model.Undefined` node per location and are reported as
  ``UnresolvedStorage``.

Calls start out in the conservative model: the call node reads every tracked
location that has a definition, and each location the call may clobber gets a
``clobber(call, previous)`` projection.  Returns read every escaping location.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import DefaultDict, Dict, Iterable, List, Optional, Set, Tuple

from ..diagnostics import DiagnosticKind, DiagnosticLog
from ..ingest import Operand, OperandKind, OpKind, PrimitiveOp
from ..knowledge import CallingConvention, OpcodeTable, PipelineSettings, mask
from .dominators import DominatorTree, compute
from .model import (
    MEMORY_STATE,
    PENDING,
    Block,
    EdgeKind,
    IRGraph,
    StorageLocation,
    StorageSpace,
)


logger = logging.getLogger(__name__)

_NO_PHI_BLOCKS = {"exit", "unknown"}
_CONDITIONAL_EDGES = {EdgeKind.BRANCH_TRUE, EdgeKind.BRANCH_FALSE}


class SSAConstructor:
    """Turn the blocks of an :class:`IRGraph` into SSA form in place."""

    def __init__(
        self,
        opcodes: Optional[OpcodeTable] = None,
        convention: Optional[CallingConvention] = None,
        settings: Optional[PipelineSettings] = None,
    ) -> None:
        self.opcodes = opcodes or OpcodeTable.default()
        self.convention = convention or CallingConvention.sysv_amd64()
        self.settings = settings or PipelineSettings()

    def construct(
        self, graph: IRGraph, *, diagnostics: Optional[DiagnosticLog] = None
    ) -> DiagnosticLog:
        log = diagnostics if diagnostics is not None else DiagnosticLog()
        tree = compute(graph)
        _RenameSession(self, graph, tree, log).run()
        logger.debug(
            "constructed ssa: %d nodes, %d phis, %d unresolved locations",
            len(graph.nodes),
            sum(len(graph.phis(block)) for block in graph.blocks),
            len(log.filter(DiagnosticKind.UNRESOLVED_STORAGE)),
        )
        return log

    # ------------------------------------------------------------------
    # storage mapping
    # ------------------------------------------------------------------
    def location_of(self, operand: Operand) -> Optional[StorageLocation]:
        """Storage location an operand names, ``None`` for indirect memory."""

        if operand.kind is OperandKind.REGISTER:
            return StorageLocation.register(operand.name, operand.width)
        if operand.kind is OperandKind.TEMPORARY:
            return StorageLocation.temporary(operand.name, operand.width)
        if operand.kind is OperandKind.MEMORY:
            if operand.name is None or operand.name in self.settings.frame_registers:
                return StorageLocation.slot(operand.name, operand.value, operand.width)
        return None

    def convention_locations(self) -> Set[StorageLocation]:
        names = {*self.convention.arguments, self.convention.return_slot, *self.convention.callee_saved}
        return {StorageLocation.register(name) for name in names}


class _RenameSession:
    """State of one renaming traversal, discarded when it finishes."""

    def __init__(
        self,
        owner: SSAConstructor,
        graph: IRGraph,
        tree: DominatorTree,
        diagnostics: DiagnosticLog,
    ) -> None:
        self.owner = owner
        self.opcodes = owner.opcodes
        self.graph = graph
        self.tree = tree
        self.diagnostics = diagnostics
        self.stacks: DefaultDict[StorageLocation, List[int]] = defaultdict(list)
        self.undefined: Dict[StorageLocation, int] = {}
        self.reported: Set[StorageLocation] = set()
        self.tracked: List[StorageLocation] = []
        self.widest: Dict[StorageLocation, StorageLocation] = {}
        self.clobbered: List[StorageLocation] = []

    def run(self) -> None:
        definitions = self._collect()
        self._place_phis(definitions)

        pushed: Dict[int, List[StorageLocation]] = {}
        walk: List[Tuple[int, bool]] = [(self.tree.entry, False)]
        while walk:
            block_id, leaving = walk.pop()
            if leaving:
                self._release(pushed.pop(block_id))
                continue
            pushed[block_id] = self._rename_block(self.graph.blocks[block_id])
            walk.append((block_id, True))
            for child in reversed(self.tree.children[block_id]):
                walk.append((child, False))

        for block in self.graph.block_order():
            if block.id not in self.tree:
                self._release(self._rename_block(block))

        self._fill_pending()
        self.graph.locations = tuple(self.tracked)

    # ------------------------------------------------------------------
    # collection and phi placement
    # ------------------------------------------------------------------
    def _collect(self) -> Dict[StorageLocation, Set[int]]:
        definitions: DefaultDict[StorageLocation, Set[int]] = defaultdict(set)
        seen: Dict[StorageLocation, StorageLocation] = {}

        def track(location: StorageLocation) -> None:
            current = seen.get(location)
            if current is None or location.width > current.width:
                seen[location] = location

        def touch_memory(operand: Operand, block: int, writes: bool) -> None:
            slot = self.owner.location_of(operand)
            if slot is not None:
                track(slot)
                if writes:
                    definitions[slot].add(block)
                return
            track(StorageLocation.register(operand.name))
            track(MEMORY_STATE)
            if writes:
                definitions[MEMORY_STATE].add(block)

        call_blocks: List[int] = []
        for block in self.graph.block_order():
            for _, op in block.operations:
                if op.kind is OpKind.STORE:
                    touch_memory(op.operands[0], block.id, True)
                    track(MEMORY_STATE)
                    definitions[MEMORY_STATE].add(block.id)
                    sources: Iterable[Operand] = op.operands[1:]
                else:
                    sources = op.operands
                for operand in sources:
                    if operand.is_memory:
                        touch_memory(operand, block.id, False)
                    elif operand.kind is not OperandKind.IMMEDIATE:
                        track(self.owner.location_of(operand))
                if op.dest is not None:
                    location = self.owner.location_of(op.dest)
                    track(location)
                    definitions[location].add(block.id)
            if block.call is not None:
                call_blocks.append(block.id)

        if call_blocks:
            for location in self.owner.convention_locations():
                track(location)
            track(MEMORY_STATE)
        self.widest = seen
        self.tracked = sorted(seen.values(), key=StorageLocation.sort_key)
        self.clobbered = [
            location
            for location in self.tracked
            if location.space is StorageSpace.REGISTER or location.escapes
        ]
        for block_id in call_blocks:
            for location in self.clobbered:
                definitions[location].add(block_id)
        return definitions

    def _place_phis(self, definitions: Dict[StorageLocation, Set[int]]) -> None:
        for location in sorted(definitions, key=StorageLocation.sort_key):
            for block_id in sorted(self.tree.iterated_frontier(definitions[location])):
                block = self.graph.blocks[block_id]
                if block.synthetic in _NO_PHI_BLOCKS:
                    continue
                if any(
                    self.graph.node(phi).location == location for phi in self.graph.phis(block_id)
                ):
                    continue
                widest = self.widest.get(location, location)
                self.graph.add_phi(block_id, widest, widest.width)

    # ------------------------------------------------------------------
    # renaming
    # ------------------------------------------------------------------
    def _rename_block(self, block: Block) -> List[StorageLocation]:
        pushed: List[StorageLocation] = []
        for phi_id in self.graph.phis(block.id):
            self._define(self.graph.node(phi_id).location, phi_id, pushed)

        transfer_value: Optional[int] = None
        has_transfer_op = False
        for address, op in block.operations:
            if op.kind is OpKind.BRANCH:
                has_transfer_op = True
                if op.operands:
                    transfer_value = self._value(op.operands[0], block.id, address)
                continue
            self._lower(op, block.id, address, pushed)

        if block.call is not None:
            self._lower_call(block, transfer_value, pushed)
        elif block.returns:
            self._lower_return(block)
        elif any(edge.kind in _CONDITIONAL_EDGES for edge in block.successors):
            operands = [transfer_value] if transfer_value is not None else []
            self.graph.add_operation(block.id, "branch", operands, 0, address=self._last(block))
        elif transfer_value is not None or (has_transfer_op and self._leaves_indirectly(block)):
            operands = [transfer_value] if transfer_value is not None else []
            self.graph.add_operation(block.id, "jump", operands, 0, address=self._last(block))

        if block.id not in self.tree:
            # slots fed by unreachable predecessors resolve to Undefined
            return pushed
        for edge in block.successors:
            target = self.graph.blocks[edge.target]
            index = target.predecessors.index(edge)
            for phi_id in self.graph.phis(edge.target):
                location = self.graph.node(phi_id).location
                value = self._current(location)
                if value is None:
                    value = self._undefined(location, block.id, report=False)
                self.graph.set_operand(phi_id, index, value)
        return pushed

    def _lower(self, op: PrimitiveOp, block: int, address: int, pushed: List[StorageLocation]) -> None:
        graph = self.graph
        if op.kind is OpKind.STORE:
            target, source = op.operands
            value = self._value(source, block, address)
            slot = self.owner.location_of(target)
            memory = self._read(MEMORY_STATE, block)
            if slot is not None:
                store = graph.add_operation(
                    block,
                    "store",
                    [memory, value],
                    source.width,
                    location=MEMORY_STATE,
                    address=address,
                    attrs={"slot": slot.name},
                )
                self._define(MEMORY_STATE, store.id, pushed)
                self._define(slot, value, pushed)
            else:
                pointer = self._pointer(target, block, address)
                store = graph.add_operation(
                    block,
                    "store",
                    [memory, pointer, value],
                    source.width,
                    location=MEMORY_STATE,
                    address=address,
                )
                self._define(MEMORY_STATE, store.id, pushed)
            return

        destination = self.owner.location_of(op.dest)
        if op.kind is OpKind.LOAD:
            source = op.operands[0]
            slot = self.owner.location_of(source)
            if slot is not None:
                node = graph.add_operation(
                    block,
                    "mov",
                    [self._read(slot, block)],
                    op.result_width,
                    location=destination,
                    address=address,
                )
            else:
                pointer = self._pointer(source, block, address)
                node = graph.add_operation(
                    block,
                    "load",
                    [self._read(MEMORY_STATE, block), pointer],
                    op.result_width,
                    location=destination,
                    address=address,
                )
        else:
            opcode = self.opcodes.canonical(op.effective_opcode)
            values = [self._value(operand, block, address) for operand in op.operands]
            node = graph.add_operation(
                block,
                opcode,
                values,
                self.opcodes.result_width(opcode, op.result_width),
                location=destination,
                address=address,
            )
        self._define(destination, node.id, pushed)

    def _lower_call(
        self, block: Block, transfer_value: Optional[int], pushed: List[StorageLocation]
    ) -> None:
        site = block.call
        if site.target is not None:
            target = self.graph.add_constant(block.id, site.target, 64, address=site.address).id
        elif transfer_value is not None:
            target = transfer_value
        else:
            target = self.graph.add_constant(block.id, None, 64, unknown=True, address=site.address).id

        reads = [
            location
            for location in self.tracked
            if location.space is not StorageSpace.TEMPORARY and self._current(location) is not None
        ]
        call = self.graph.add_operation(
            block.id,
            "call",
            [target, *(self._current(location) for location in reads)],
            64,
            address=site.address,
            attrs={"reads": tuple(reads), "model": "conservative", "target": site.target},
        )
        for location in self.clobbered:
            previous = self._current(location)
            if previous is None:
                previous = self._undefined(location, block.id, report=False)
            clobber = self.graph.add_operation(
                block.id,
                "clobber",
                [call.id, previous],
                location.width,
                location=location,
                address=site.address,
            )
            self._define(location, clobber.id, pushed)

    def _lower_return(self, block: Block) -> None:
        reads = [
            location
            for location in self.tracked
            if location.escapes and self._current(location) is not None
        ]
        self.graph.add_operation(
            block.id,
            "return",
            [self._current(location) for location in reads],
            0,
            address=self._last(block),
            attrs={"reads": tuple(reads)},
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _value(self, operand: Operand, block: int, address: int) -> int:
        if operand.kind is OperandKind.IMMEDIATE:
            return self.graph.add_constant(
                block, mask(operand.value, operand.width), operand.width, address=address
            ).id
        location = self.owner.location_of(operand)
        if location is not None:
            return self._read(location, block)
        pointer = self._pointer(operand, block, address)
        return self.graph.add_operation(
            block,
            "load",
            [self._read(MEMORY_STATE, block), pointer],
            operand.width,
            address=address,
        ).id

    def _pointer(self, operand: Operand, block: int, address: int) -> int:
        base = self._read(StorageLocation.register(operand.name), block)
        if operand.value == 0:
            return base
        offset = self.graph.add_constant(block, mask(operand.value, 64), 64, address=address)
        return self.graph.add_operation(block, "add", [base, offset.id], 64, address=address).id

    def _define(self, location: StorageLocation, node_id: int, pushed: List[StorageLocation]) -> None:
        self.stacks[location].append(node_id)
        pushed.append(location)

    def _release(self, pushed: List[StorageLocation]) -> None:
        for location in reversed(pushed):
            self.stacks[location].pop()

    def _current(self, location: StorageLocation) -> Optional[int]:
        stack = self.stacks.get(location)
        return stack[-1] if stack else None

    def _read(self, location: StorageLocation, block: int) -> int:
        value = self._current(location)
        if value is None:
            value = self._undefined(location, block, report=True)
        return value

    def _undefined(self, location: StorageLocation, block: int, *, report: bool) -> int:
        node_id = self.undefined.get(location)
        if node_id is None:
            widest = self.widest.get(location, location)
            node_id = self.graph.add_undefined(widest, widest.width).id
            self.undefined[location] = node_id
        if report and location not in self.reported:
            self.reported.add(location)
            self.diagnostics.record(
                DiagnosticKind.UNRESOLVED_STORAGE,
                f"read of {location.describe()} has no reaching definition",
                node=node_id,
                block=block,
            )
        return node_id

    def _fill_pending(self) -> None:
        for block in self.graph.block_order():
            for phi_id in self.graph.phis(block.id):
                phi = self.graph.node(phi_id)
                for index, operand in enumerate(phi.operands):
                    if operand == PENDING:
                        value = self._undefined(phi.location, block.id, report=False)
                        self.graph.set_operand(phi_id, index, value)

    @staticmethod
    def _last(block: Block) -> Optional[int]:
        return block.operations[-1][0] if block.operations else block.start

    @staticmethod
    def _leaves_indirectly(block: Block) -> bool:
        return any(edge.kind is EdgeKind.INDIRECT for edge in block.successors)


def construct_ssa(
    graph: IRGraph,
    *,
    opcodes: Optional[OpcodeTable] = None,
    convention: Optional[CallingConvention] = None,
    settings: Optional[PipelineSettings] = None,
    diagnostics: Optional[DiagnosticLog] = None,
) -> DiagnosticLog:
    """Convenience wrapper around :class:`SSAConstructor`."""

    return SSAConstructor(opcodes, convention, settings).construct(graph, diagnostics=diagnostics)


__all__ = ["SSAConstructor", "construct_ssa"]
