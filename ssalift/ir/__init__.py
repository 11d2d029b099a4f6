"""Public exports for the SSA intermediate representation."""

from .cfg import CFGBuilder, build_cfg
from .dominators import DominatorTree, compute
from .model import (
    MEMORY_STATE,
    Block,
    CallSite,
    Constant,
    Edge,
    EdgeKind,
    IRGraph,
    Node,
    NodeKind,
    Operation,
    Phi,
    Removed,
    StorageLocation,
    StorageSpace,
    Undefined,
)
from .printer import IRTextRenderer
from .serialize import serialize_graph
from .ssa import SSAConstructor, construct_ssa

__all__ = [
    "CFGBuilder",
    "build_cfg",
    "DominatorTree",
    "compute",
    "SSAConstructor",
    "construct_ssa",
    "IRGraph",
    "IRTextRenderer",
    "serialize_graph",
    "Block",
    "CallSite",
    "Edge",
    "EdgeKind",
    "Node",
    "NodeKind",
    "Constant",
    "Operation",
    "Phi",
    "Undefined",
    "Removed",
    "StorageLocation",
    "StorageSpace",
    "MEMORY_STATE",
]
