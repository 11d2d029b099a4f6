"""Data structures describing the SSA intermediate representation.

The graph is an arena: every node is addressed by a stable integer id that is
never reused, and every edge (operand, phi slot, block edge) is stored as ids
rather than object references.  Phi nodes may therefore close cycles across
loop back-edges without any special casing, and removing a node is a matter of
replacing its arena slot with a :class:`Removed` tombstone.

All mutation goes through :class:`IRGraph` so that the use index and the
revision counters stay consistent.  ``revision`` changes on every mutation,
``cfg_revision`` only when blocks or edges change; dominator trees remember the
``cfg_revision`` they were computed at.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    ClassVar,
    DefaultDict,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from ..ingest import PrimitiveOp


PENDING = -1
"""Placeholder operand of a phi slot that renaming has not reached yet."""


class StorageSpace(Enum):
    """Namespace of a :class:`StorageLocation`."""

    REGISTER = "reg"
    TEMPORARY = "tmp"
    SLOT = "slot"
    MEMORY = "mem"


@dataclass(frozen=True)
class StorageLocation:
    """Abstract identity of a register or disambiguated memory slot.

    Identity is ``(space, name)``; the width is informational so that ``eax``
    written with 32 bits and read with 64 bits still aliases.
    """

    space: StorageSpace
    name: str
    width: int = field(default=64, compare=False, hash=False)

    @classmethod
    def register(cls, name: str, width: int = 64) -> "StorageLocation":
        return cls(StorageSpace.REGISTER, name, width)

    @classmethod
    def temporary(cls, name: str, width: int = 64) -> "StorageLocation":
        return cls(StorageSpace.TEMPORARY, name, width)

    @classmethod
    def slot(cls, base: Optional[str], offset: int, width: int = 64) -> "StorageLocation":
        if base is None:
            return cls(StorageSpace.SLOT, f"@0x{offset:X}", width)
        if offset == 0:
            return cls(StorageSpace.SLOT, base, width)
        sign = "-" if offset < 0 else "+"
        return cls(StorageSpace.SLOT, f"{base}{sign}0x{abs(offset):X}", width)

    @classmethod
    def memory(cls) -> "StorageLocation":
        return cls(StorageSpace.MEMORY, "mem", 0)

    @property
    def is_absolute_slot(self) -> bool:
        return self.space is StorageSpace.SLOT and self.name.startswith("@")

    @property
    def escapes(self) -> bool:
        """True when the location is observable after the function returns."""

        if self.space in {StorageSpace.REGISTER, StorageSpace.MEMORY}:
            return True
        return self.is_absolute_slot

    def sort_key(self) -> Tuple[str, str]:
        return (self.space.value, self.name)

    def describe(self) -> str:
        if self.space is StorageSpace.REGISTER:
            return self.name
        if self.space is StorageSpace.SLOT:
            return f"[{self.name}]"
        if self.space is StorageSpace.MEMORY:
            return "mem"
        return f"%{self.name}"


MEMORY_STATE = StorageLocation.memory()


class EdgeKind(Enum):
    """Reason control flows along a block edge."""

    FALLTHROUGH = "fallthrough"
    JUMP = "jump"
    BRANCH_TRUE = "branch-true"
    BRANCH_FALSE = "branch-false"
    CALL = "call"
    RETURN = "return"
    INDIRECT = "indirect"


@dataclass(frozen=True)
class Edge:
    source: int
    target: int
    kind: EdgeKind

    def describe(self) -> str:
        return f"bb{self.source} -{self.kind.value}-> bb{self.target}"


@dataclass(frozen=True)
class CallSite:
    """Call transfer terminating a block."""

    address: int
    target: Optional[int]


@dataclass
class Block:
    """Basic block owning an ordered list of node ids."""

    id: int
    start: Optional[int]
    operations: Tuple[Tuple[int, PrimitiveOp], ...] = field(default_factory=tuple)
    nodes: List[int] = field(default_factory=list)
    predecessors: List[Edge] = field(default_factory=list)
    successors: List[Edge] = field(default_factory=list)
    synthetic: Optional[str] = None
    call: Optional[CallSite] = None
    returns: bool = False

    @property
    def label(self) -> str:
        if self.synthetic:
            return f"bb{self.id}.{self.synthetic}"
        if self.start is not None:
            return f"bb{self.id}@0x{self.start:X}"
        return f"bb{self.id}"

    @property
    def addresses(self) -> Tuple[int, ...]:
        seen: List[int] = []
        for address, _ in self.operations:
            if not seen or seen[-1] != address:
                seen.append(address)
        return tuple(seen)

    def predecessor_blocks(self) -> List[int]:
        return [edge.source for edge in self.predecessors]

    def successor_blocks(self) -> List[int]:
        return [edge.target for edge in self.successors]


class NodeKind(Enum):
    CONSTANT = "constant"
    OPERATION = "operation"
    PHI = "phi"
    UNDEFINED = "undefined"
    REMOVED = "removed"


@dataclass(eq=False)
class Node:
    """Base node.  ``operands`` is empty for constants and placeholders."""

    kind: ClassVar[NodeKind]

    id: int
    block: int
    width: int = 64
    location: Optional[StorageLocation] = None
    address: Optional[int] = None
    operands: List[int] = field(default_factory=list)

    @property
    def is_live(self) -> bool:
        return self.kind is not NodeKind.REMOVED

    def name(self) -> str:
        return f"n{self.id}"

    def describe(self) -> str:
        return f"{self.name()} = {self.kind.value}"


@dataclass(eq=False)
class Constant(Node):
    kind: ClassVar[NodeKind] = NodeKind.CONSTANT

    value: Optional[int] = 0
    unknown: bool = False

    def describe(self) -> str:
        if self.unknown:
            return f"{self.name()} = const ?:{self.width}"
        return f"{self.name()} = const 0x{self.value:X}:{self.width}"


@dataclass(eq=False)
class Operation(Node):
    kind: ClassVar[NodeKind] = NodeKind.OPERATION

    opcode: str = ""
    attrs: Dict[str, Any] = field(default_factory=dict)
    variable: Optional[str] = None

    @property
    def is_call(self) -> bool:
        return self.opcode == "call"

    def describe(self) -> str:
        args = ", ".join(f"n{operand}" for operand in self.operands)
        target = self.variable or self.name()
        suffix = f" ; {self.location.describe()}" if self.location is not None else ""
        return f"{target} = {self.opcode}({args}):{self.width}{suffix}"


@dataclass(eq=False)
class Phi(Node):
    kind: ClassVar[NodeKind] = NodeKind.PHI

    incoming: List[int] = field(default_factory=list)

    def describe(self) -> str:
        pairs = ", ".join(
            f"bb{block}: n{operand}" for block, operand in zip(self.incoming, self.operands)
        )
        suffix = f" ; {self.location.describe()}" if self.location is not None else ""
        return f"{self.name()} = phi [{pairs}]{suffix}"


@dataclass(eq=False)
class Undefined(Node):
    kind: ClassVar[NodeKind] = NodeKind.UNDEFINED

    def describe(self) -> str:
        suffix = f" ; {self.location.describe()}" if self.location is not None else ""
        return f"{self.name()} = undef{suffix}"


@dataclass(eq=False)
class Removed(Node):
    kind: ClassVar[NodeKind] = NodeKind.REMOVED

    former: Optional[NodeKind] = None

    def describe(self) -> str:
        return f"{self.name()} = removed"


class IRGraph:
    """Arena of blocks and nodes mutated in place by every pipeline stage."""

    def __init__(self) -> None:
        self.nodes: List[Node] = []
        self.blocks: Dict[int, Block] = {}
        self.entry: int = 0
        self.revision = 0
        self.cfg_revision = 0
        self.locations: Tuple[StorageLocation, ...] = tuple()
        self._users: DefaultDict[int, Counter] = defaultdict(Counter)
        self._next_block = 0

    # ------------------------------------------------------------------
    # blocks and edges
    # ------------------------------------------------------------------
    def add_block(
        self,
        start: Optional[int],
        operations: Sequence[Tuple[int, PrimitiveOp]] = (),
        *,
        synthetic: Optional[str] = None,
    ) -> Block:
        block = Block(
            id=self._next_block,
            start=start,
            operations=tuple(operations),
            synthetic=synthetic,
        )
        self.blocks[block.id] = block
        self._next_block += 1
        self._touch(cfg=True)
        return block

    def block(self, block_id: int) -> Block:
        return self.blocks[block_id]

    def block_order(self) -> List[Block]:
        return [self.blocks[key] for key in sorted(self.blocks)]

    def add_edge(self, source: int, target: int, kind: EdgeKind) -> Edge:
        edge = Edge(source, target, kind)
        src = self.blocks[source]
        if edge in src.successors:
            return edge
        src.successors.append(edge)
        self.blocks[target].predecessors.append(edge)
        self._touch(cfg=True)
        return edge

    def remove_edge(self, edge: Edge) -> None:
        """Detach ``edge`` and drop the matching phi slot in its target."""

        target = self.blocks[edge.target]
        index = target.predecessors.index(edge)
        for phi_id in self.phis(edge.target):
            phi = self.nodes[phi_id]
            operand = phi.operands.pop(index)
            phi.incoming.pop(index)
            self._unlink(phi_id, operand)
        del target.predecessors[index]
        self.blocks[edge.source].successors.remove(edge)
        self._touch(cfg=True)

    def split_edge(self, edge: Edge) -> Block:
        """Insert an empty block on ``edge`` keeping phi slot order intact."""

        middle = self.add_block(None, synthetic="split")
        source = self.blocks[edge.source]
        target = self.blocks[edge.target]
        into_middle = Edge(edge.source, middle.id, edge.kind)
        out_of_middle = Edge(middle.id, edge.target, EdgeKind.FALLTHROUGH)
        source.successors[source.successors.index(edge)] = into_middle
        middle.predecessors.append(into_middle)
        middle.successors.append(out_of_middle)
        index = target.predecessors.index(edge)
        target.predecessors[index] = out_of_middle
        for phi_id in self.phis(edge.target):
            self.nodes[phi_id].incoming[index] = middle.id
        self._touch(cfg=True)
        return middle

    def reachable(self) -> Set[int]:
        seen: Set[int] = set()
        stack = [self.entry]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.blocks[current].successor_blocks())
        return seen

    # ------------------------------------------------------------------
    # node lookup
    # ------------------------------------------------------------------
    def node(self, node_id: int) -> Node:
        return self.nodes[node_id]

    def __contains__(self, node_id: int) -> bool:
        return 0 <= node_id < len(self.nodes) and self.nodes[node_id].is_live

    def is_live(self, node_id: int) -> bool:
        return node_id in self

    def live_nodes(self) -> Iterator[Node]:
        for block in self.block_order():
            for node_id in block.nodes:
                yield self.nodes[node_id]

    def phis(self, block_id: int) -> List[int]:
        result: List[int] = []
        for node_id in self.blocks[block_id].nodes:
            if self.nodes[node_id].kind is not NodeKind.PHI:
                break
            result.append(node_id)
        return result

    def position(self, node_id: int) -> int:
        node = self.nodes[node_id]
        return self.blocks[node.block].nodes.index(node_id)

    def users(self, node_id: int) -> List[int]:
        return sorted(self._users.get(node_id, ()))

    def use_count(self, node_id: int) -> int:
        counter = self._users.get(node_id)
        return sum(counter.values()) if counter else 0

    def count(self, kind: NodeKind) -> int:
        return sum(1 for node in self.live_nodes() if node.kind is kind)

    # ------------------------------------------------------------------
    # node creation
    # ------------------------------------------------------------------
    def _allocate(self, node: Node, position: Optional[int]) -> Node:
        self.nodes.append(node)
        owner = self.blocks[node.block].nodes
        if position is None:
            owner.append(node.id)
        else:
            owner.insert(position, node.id)
        for operand in node.operands:
            self._link(node.id, operand)
        self._touch()
        return node

    @property
    def next_id(self) -> int:
        return len(self.nodes)

    def add_constant(
        self,
        block: int,
        value: Optional[int],
        width: int,
        *,
        unknown: bool = False,
        position: Optional[int] = None,
        address: Optional[int] = None,
    ) -> Constant:
        node = Constant(
            id=self.next_id,
            block=block,
            width=width,
            address=address,
            value=None if unknown else value,
            unknown=unknown,
        )
        return self._allocate(node, position)

    def add_operation(
        self,
        block: int,
        opcode: str,
        operands: Sequence[int],
        width: int,
        *,
        position: Optional[int] = None,
        location: Optional[StorageLocation] = None,
        address: Optional[int] = None,
        attrs: Optional[Dict[str, Any]] = None,
        variable: Optional[str] = None,
    ) -> Operation:
        node = Operation(
            id=self.next_id,
            block=block,
            width=width,
            location=location,
            address=address,
            operands=list(operands),
            opcode=opcode,
            attrs=dict(attrs or {}),
            variable=variable,
        )
        return self._allocate(node, position)

    def add_phi(self, block: int, location: Optional[StorageLocation], width: int) -> Phi:
        """Create a phi at the end of the block's phi run with pending slots."""

        owner = self.blocks[block]
        node = Phi(
            id=self.next_id,
            block=block,
            width=width,
            location=location,
            operands=[PENDING] * len(owner.predecessors),
            incoming=owner.predecessor_blocks(),
        )
        self.nodes.append(node)
        owner.nodes.insert(len(self.phis(block)), node.id)
        self._touch()
        return node

    def add_undefined(self, location: Optional[StorageLocation], width: int) -> Undefined:
        """Create a placeholder right after the entry block's phis."""

        node = Undefined(id=self.next_id, block=self.entry, width=width, location=location)
        return self._allocate(node, len(self.phis(self.entry)))

    # ------------------------------------------------------------------
    # mutation
    # ------------------------------------------------------------------
    def set_operand(self, node_id: int, index: int, value: int) -> None:
        node = self.nodes[node_id]
        previous = node.operands[index]
        if previous == value:
            return
        node.operands[index] = value
        self._unlink(node_id, previous)
        self._link(node_id, value)
        self._touch()

    def set_operands(self, node_id: int, values: Sequence[int]) -> None:
        node = self.nodes[node_id]
        for operand in node.operands:
            self._unlink(node_id, operand)
        node.operands = list(values)
        for operand in node.operands:
            self._link(node_id, operand)
        self._touch()

    def replace_all_uses(self, old: int, new: int) -> int:
        """Rewrite every operand reference to ``old`` into ``new``."""

        if old == new:
            return 0
        rewritten = 0
        for user in self.users(old):
            node = self.nodes[user]
            for index, operand in enumerate(node.operands):
                if operand == old:
                    node.operands[index] = new
                    rewritten += 1
            self._link(user, new, self._users[old][user])
            del self._users[old][user]
        if rewritten:
            self._touch()
        return rewritten

    def rewrite_constant(
        self, node_id: int, value: Optional[int], width: int, *, unknown: bool = False
    ) -> Constant:
        """Turn ``node_id`` into a constant in place; uses stay valid."""

        node = self.nodes[node_id]
        for operand in node.operands:
            self._unlink(node_id, operand)
        replacement = Constant(
            id=node.id,
            block=node.block,
            width=width,
            location=node.location,
            address=node.address,
            value=None if unknown else value,
            unknown=unknown,
        )
        self.nodes[node_id] = replacement
        self._touch()
        return replacement

    def rewrite_operation(
        self, node_id: int, opcode: str, operands: Sequence[int], width: Optional[int] = None
    ) -> Operation:
        """Turn ``node_id`` into ``opcode(operands)`` in place."""

        node = self.nodes[node_id]
        if isinstance(node, Operation):
            node.opcode = opcode
            if width is not None:
                node.width = width
            self.set_operands(node_id, operands)
            return node
        for operand in node.operands:
            self._unlink(node_id, operand)
        replacement = Operation(
            id=node.id,
            block=node.block,
            width=node.width if width is None else width,
            location=node.location,
            address=node.address,
            operands=list(operands),
            opcode=opcode,
        )
        self.nodes[node_id] = replacement
        for operand in replacement.operands:
            self._link(node_id, operand)
        self._touch()
        return replacement

    def move_node(self, node_id: int, block: int, position: Optional[int] = None) -> None:
        node = self.nodes[node_id]
        self.blocks[node.block].nodes.remove(node_id)
        owner = self.blocks[block].nodes
        if position is None:
            owner.append(node_id)
        else:
            owner.insert(position, node_id)
        node.block = block
        self._touch()

    def reorder_nodes(self, block_id: int, start: int, node_ids: Sequence[int]) -> None:
        """Replace ``nodes[start:start + len(node_ids)]`` with a permutation."""

        owner = self.blocks[block_id].nodes
        end = start + len(node_ids)
        if sorted(owner[start:end]) != sorted(node_ids):
            raise ValueError("reorder_nodes expects a permutation of the slice")
        owner[start:end] = list(node_ids)
        self._touch()

    def tombstone(self, node_id: int) -> None:
        """Replace ``node_id`` with a :class:`Removed` marker.

        The id stays allocated; the block no longer lists it.  Callers are
        responsible for rewriting remaining uses first.
        """

        node = self.nodes[node_id]
        if not node.is_live:
            return
        for operand in node.operands:
            self._unlink(node_id, operand)
        owner = self.blocks[node.block].nodes
        if node_id in owner:
            owner.remove(node_id)
        self.nodes[node_id] = Removed(
            id=node.id,
            block=node.block,
            width=node.width,
            location=node.location,
            address=node.address,
            former=node.kind,
        )
        self._touch()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _link(self, user: int, operand: int, count: int = 1) -> None:
        if operand >= 0:
            self._users[operand][user] += count

    def _unlink(self, user: int, operand: int) -> None:
        if operand < 0:
            return
        counter = self._users.get(operand)
        if not counter:
            return
        counter[user] -= 1
        if counter[user] <= 0:
            del counter[user]

    def _touch(self, *, cfg: bool = False) -> None:
        self.revision += 1
        if cfg:
            self.cfg_revision += 1

    def shape(self) -> Tuple[Tuple[int, Tuple[str, ...]], ...]:
        """Canonical description of the graph used to compare results."""

        rendered = []
        for block in self.block_order():
            rendered.append((block.id, tuple(self.nodes[node_id].describe() for node_id in block.nodes)))
        return tuple(rendered)


__all__ = [
    "Block",
    "CallSite",
    "Constant",
    "Edge",
    "EdgeKind",
    "IRGraph",
    "MEMORY_STATE",
    "Node",
    "NodeKind",
    "Operation",
    "PENDING",
    "Phi",
    "Removed",
    "StorageLocation",
    "StorageSpace",
    "Undefined",
]
