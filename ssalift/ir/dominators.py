"""Dominator tree and dominance frontiers for an :class:`IRGraph`.

Immediate dominators are computed with the iterative reverse-postorder
algorithm of Cooper, Harvey and Kennedy; frontiers are derived afterwards by
walking from each predecessor towards the immediate dominator of the join.
Only blocks reachable from the entry take part.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .model import IRGraph


@dataclass(frozen=True)
class DominatorTree:
    """Immutable dominance summary tied to one ``cfg_revision``."""

    entry: int
    immediate: Mapping[int, Optional[int]]
    children: Mapping[int, Tuple[int, ...]]
    frontier: Mapping[int, FrozenSet[int]]
    reverse_postorder: Tuple[int, ...]
    cfg_revision: int
    _intervals: Mapping[int, Tuple[int, int]]

    @staticmethod
    def freeze(
        entry: int,
        immediate: Mapping[int, Optional[int]],
        frontier: Mapping[int, Iterable[int]],
        reverse_postorder: Sequence[int],
        cfg_revision: int,
    ) -> "DominatorTree":
        order = {block: index for index, block in enumerate(reverse_postorder)}
        children: Dict[int, List[int]] = {block: [] for block in reverse_postorder}
        for block, parent in immediate.items():
            if parent is not None:
                children[parent].append(block)
        frozen_children = {
            block: tuple(sorted(kids, key=order.__getitem__)) for block, kids in children.items()
        }

        intervals: Dict[int, Tuple[int, int]] = {}
        counter = 0
        stack: List[Tuple[int, bool]] = [(entry, False)]
        entered: Dict[int, int] = {}
        while stack:
            block, done = stack.pop()
            if done:
                intervals[block] = (entered[block], counter)
                counter += 1
                continue
            entered[block] = counter
            counter += 1
            stack.append((block, True))
            for child in reversed(frozen_children[block]):
                stack.append((child, False))

        return DominatorTree(
            entry=entry,
            immediate=MappingProxyType(dict(immediate)),
            children=MappingProxyType(frozen_children),
            frontier=MappingProxyType(
                {block: frozenset(frontier.get(block, ())) for block in reverse_postorder}
            ),
            reverse_postorder=tuple(reverse_postorder),
            cfg_revision=cfg_revision,
            _intervals=MappingProxyType(intervals),
        )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def __contains__(self, block: int) -> bool:
        return block in self.immediate

    @property
    def reachable(self) -> FrozenSet[int]:
        return frozenset(self.immediate)

    def idom(self, block: int) -> Optional[int]:
        return self.immediate.get(block)

    def dominates(self, a: int, b: int) -> bool:
        """True when every path from the entry to ``b`` passes through ``a``."""

        if a not in self._intervals or b not in self._intervals:
            return False
        a_in, a_out = self._intervals[a]
        b_in, b_out = self._intervals[b]
        return a_in <= b_in and b_out <= a_out

    def strictly_dominates(self, a: int, b: int) -> bool:
        return a != b and self.dominates(a, b)

    def iterated_frontier(self, blocks: Iterable[int]) -> Set[int]:
        result: Set[int] = set()
        worklist = [block for block in blocks if block in self]
        seen = set(worklist)
        while worklist:
            block = worklist.pop()
            for join in self.frontier.get(block, ()):
                if join in result:
                    continue
                result.add(join)
                if join not in seen:
                    seen.add(join)
                    worklist.append(join)
        return result

    def preorder(self) -> List[int]:
        return sorted(self._intervals, key=lambda block: self._intervals[block][0])

    def is_stale(self, graph: IRGraph) -> bool:
        return graph.cfg_revision != self.cfg_revision

    def describe(self) -> str:
        lines = [f"dominators (entry=bb{self.entry})"]
        for block in self.reverse_postorder:
            parent = self.immediate[block]
            frontier = ", ".join(f"bb{item}" for item in sorted(self.frontier[block]))
            parent_text = f"bb{parent}" if parent is not None else "-"
            lines.append(f"  bb{block}: idom={parent_text} df=[{frontier}]")
        return "\n".join(lines)


def _postorder(graph: IRGraph) -> List[int]:
    order: List[int] = []
    visited: Set[int] = {graph.entry}
    stack: List[Tuple[int, int]] = [(graph.entry, 0)]
    while stack:
        block, index = stack[-1]
        successors = graph.blocks[block].successor_blocks()
        if index < len(successors):
            stack[-1] = (block, index + 1)
            target = successors[index]
            if target not in visited:
                visited.add(target)
                stack.append((target, 0))
            continue
        stack.pop()
        order.append(block)
    return order


def compute(graph: IRGraph) -> DominatorTree:
    """Compute the dominator tree of the blocks reachable from the entry."""

    postorder = _postorder(graph)
    number = {block: index for index, block in enumerate(postorder)}
    rpo = list(reversed(postorder))
    entry = graph.entry

    idom: Dict[int, Optional[int]] = {entry: entry}

    def intersect(a: int, b: int) -> int:
        while a != b:
            while number[a] < number[b]:
                a = idom[a]
            while number[b] < number[a]:
                b = idom[b]
        return a

    changed = True
    while changed:
        changed = False
        for block in rpo[1:]:
            candidate: Optional[int] = None
            for pred in graph.blocks[block].predecessor_blocks():
                if pred not in idom:
                    continue
                candidate = pred if candidate is None else intersect(pred, candidate)
            if candidate is not None and idom.get(block) != candidate:
                idom[block] = candidate
                changed = True

    immediate: Dict[int, Optional[int]] = {block: idom[block] for block in rpo}
    immediate[entry] = None

    frontier: Dict[int, Set[int]] = {block: set() for block in rpo}
    for block in rpo:
        for pred in graph.blocks[block].predecessor_blocks():
            if pred not in immediate:
                continue
            runner: Optional[int] = pred
            while runner is not None and runner != immediate[block]:
                frontier[runner].add(block)
                runner = immediate[runner]

    return DominatorTree.freeze(entry, immediate, frontier, rpo, graph.cfg_revision)


__all__ = ["DominatorTree", "compute"]
