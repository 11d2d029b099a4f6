"""Control-flow graph construction from the ingest stream."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import DefaultDict, Dict, List, Sequence, Set, Tuple

from ..errors import MalformedInput
from ..ingest import PrimitiveOp, SemanticsStream, Transfer, TransferKind
from .model import Block, CallSite, EdgeKind, IRGraph


logger = logging.getLogger(__name__)


_EDGE_FOR_TRANSFER = {
    TransferKind.FALLTHROUGH: EdgeKind.FALLTHROUGH,
    TransferKind.JUMP: EdgeKind.JUMP,
    TransferKind.CBRANCH_TRUE: EdgeKind.BRANCH_TRUE,
    TransferKind.CBRANCH_FALSE: EdgeKind.BRANCH_FALSE,
    TransferKind.INDIRECT: EdgeKind.INDIRECT,
}


class CFGBuilder:
    """Split a :class:`SemanticsStream` into blocks and link them.

    Blocks are created in ascending address order.  Synthetic blocks are added
    on demand: ``exit`` collects every return edge, ``unknown`` is the sink for
    indirect or unresolved destinations and ``entry`` precedes the first
    address when a loop branches back to it.
    """

    def build(self, stream: SemanticsStream) -> IRGraph:
        addresses = sorted(stream.operations)
        if not addresses:
            raise MalformedInput("empty operation stream")
        for address in addresses:
            for op in stream.operations[address]:
                op.validate(address)

        entry = stream.entry_address
        if entry not in stream.operations:
            raise MalformedInput("entry is not a stream address", address=entry)

        transfers = self._group_transfers(stream.transfers, stream.operations)
        starts = self._discover_block_starts(addresses, entry, transfers)
        graph = IRGraph()
        block_by_address = self._materialise_blocks(graph, stream, addresses, starts)
        graph.entry = block_by_address[entry].id
        self._link_edges(graph, addresses, block_by_address, transfers)
        if graph.blocks[graph.entry].predecessors:
            # loop back to the first address; keep the entry free of incoming edges
            start = graph.add_block(None, synthetic="entry")
            graph.add_edge(start.id, graph.entry, EdgeKind.FALLTHROUGH)
            graph.entry = start.id
        logger.debug(
            "built cfg with %d blocks from %d addresses", len(graph.blocks), len(addresses)
        )
        return graph

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _group_transfers(
        transfers: Sequence[Transfer], operations
    ) -> Dict[int, List[Transfer]]:
        grouped: DefaultDict[int, List[Transfer]] = defaultdict(list)
        for transfer in transfers:
            if transfer.source not in operations:
                raise MalformedInput("transfer source is not a stream address", address=transfer.source)
            if (
                transfer.kind is not TransferKind.CALL
                and transfer.target is not None
                and transfer.target not in operations
            ):
                raise MalformedInput(
                    f"{transfer.kind.value} target 0x{transfer.target:X} cannot be resolved",
                    address=transfer.source,
                )
            if transfer not in grouped[transfer.source]:
                grouped[transfer.source].append(transfer)
        return dict(grouped)

    @staticmethod
    def _discover_block_starts(
        addresses: Sequence[int], entry: int, transfers: Dict[int, List[Transfer]]
    ) -> Set[int]:
        index = {address: idx for idx, address in enumerate(addresses)}
        starts: Set[int] = {addresses[0], entry}
        for source, outgoing in transfers.items():
            position = index[source]
            if position + 1 < len(addresses):
                starts.add(addresses[position + 1])
            for transfer in outgoing:
                if transfer.kind is TransferKind.CALL or transfer.target is None:
                    continue
                starts.add(transfer.target)
        return starts

    @staticmethod
    def _materialise_blocks(
        graph: IRGraph,
        stream: SemanticsStream,
        addresses: Sequence[int],
        starts: Set[int],
    ) -> Dict[int, Block]:
        """Return a map from every stream address to its owning block."""

        runs: List[Tuple[int, List[int]]] = []
        for address in addresses:
            if not runs or address in starts:
                runs.append((address, []))
            runs[-1][1].append(address)
        owner: Dict[int, Block] = {}
        for start, members in runs:
            operations: List[Tuple[int, PrimitiveOp]] = [
                (address, op) for address in members for op in stream.operations[address]
            ]
            block = graph.add_block(start, operations)
            for address in members:
                owner[address] = block
        return owner

    def _link_edges(
        self,
        graph: IRGraph,
        addresses: Sequence[int],
        block_by_address: Dict[int, Block],
        transfers: Dict[int, List[Transfer]],
    ) -> None:
        sinks: Dict[str, Block] = {}

        def sink(name: str) -> Block:
            if name not in sinks:
                sinks[name] = graph.add_block(None, synthetic=name)
            return sinks[name]

        index = {address: idx for idx, address in enumerate(addresses)}
        last_address: Dict[int, int] = {}
        for address in addresses:
            last_address[block_by_address[address].id] = address
        for block in graph.block_order():
            if block.id not in last_address:
                continue
            last = last_address[block.id]
            following = addresses[index[last] + 1] if index[last] + 1 < len(addresses) else None
            outgoing = transfers.get(last, [])
            if not outgoing:
                if following is not None:
                    graph.add_edge(block.id, block_by_address[following].id, EdgeKind.FALLTHROUGH)
                continue

            conditional = False
            has_false_arm = False
            for transfer in outgoing:
                kind = transfer.kind
                if kind is TransferKind.RETURN:
                    block.returns = True
                    graph.add_edge(block.id, sink("exit").id, EdgeKind.RETURN)
                elif kind is TransferKind.CALL:
                    block.call = CallSite(address=last, target=transfer.target)
                    if following is not None:
                        graph.add_edge(block.id, block_by_address[following].id, EdgeKind.CALL)
                elif kind is TransferKind.FALLTHROUGH:
                    target = transfer.target if transfer.target is not None else following
                    if target is not None:
                        graph.add_edge(block.id, block_by_address[target].id, EdgeKind.FALLTHROUGH)
                else:
                    if kind in {TransferKind.CBRANCH_TRUE, TransferKind.CBRANCH_FALSE}:
                        conditional = True
                        has_false_arm = has_false_arm or kind is TransferKind.CBRANCH_FALSE
                    if transfer.target is None:
                        graph.add_edge(block.id, sink("unknown").id, EdgeKind.INDIRECT)
                    else:
                        graph.add_edge(
                            block.id,
                            block_by_address[transfer.target].id,
                            _EDGE_FOR_TRANSFER[kind],
                        )
            if conditional and not has_false_arm:
                if following is not None:
                    graph.add_edge(block.id, block_by_address[following].id, EdgeKind.BRANCH_FALSE)
                else:
                    graph.add_edge(block.id, sink("unknown").id, EdgeKind.INDIRECT)


def build_cfg(stream: SemanticsStream) -> IRGraph:
    """Convenience wrapper around :class:`CFGBuilder`."""

    return CFGBuilder().build(stream)


__all__ = ["CFGBuilder", "build_cfg"]
