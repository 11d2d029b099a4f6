"""Helpers to serialise the finished IR for an external renderer."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..diagnostics import DiagnosticLog
from .model import Block, Constant, IRGraph, Node, Operation, Phi, Removed, StorageLocation, Undefined


def serialize_graph(graph: IRGraph, diagnostics: Optional[DiagnosticLog] = None) -> Dict[str, Any]:
    """Convert a graph into a JSON-serialisable mapping."""

    payload: Dict[str, Any] = {
        "entry": graph.entry,
        "blocks": [serialize_block(graph, block) for block in graph.block_order()],
    }
    if diagnostics is not None:
        payload["diagnostics"] = [entry.to_dict() for entry in diagnostics]
    return payload


def serialize_block(graph: IRGraph, block: Block) -> Dict[str, Any]:
    """Serialise a :class:`Block` with its nodes in order."""

    return {
        "id": block.id,
        "start": block.start,
        "synthetic": block.synthetic,
        "predecessors": [
            {"block": edge.source, "kind": edge.kind.value} for edge in block.predecessors
        ],
        "successors": [
            {"block": edge.target, "kind": edge.kind.value} for edge in block.successors
        ],
        "nodes": [serialize_node(graph.node(node_id)) for node_id in block.nodes],
    }


def serialize_node(node: Node) -> Dict[str, Any]:
    """Serialise an IR node into a dictionary with explicit type tags."""

    base: Dict[str, Any] = {"id": node.id, "width": node.width}
    if node.location is not None:
        base["location"] = serialize_location(node.location)
    if isinstance(node, Constant):
        base.update({"op": "constant", "value": node.value, "unknown": node.unknown})
        return base
    if isinstance(node, Phi):
        base.update(
            {
                "op": "phi",
                "incoming": [
                    {"block": block, "value": operand}
                    for block, operand in zip(node.incoming, node.operands)
                ],
            }
        )
        return base
    if isinstance(node, Operation):
        base.update({"op": node.opcode, "operands": list(node.operands)})
        if node.variable is not None:
            base["variable"] = node.variable
        attrs = {key: _plain(value) for key, value in node.attrs.items()}
        if attrs:
            base["attrs"] = attrs
        return base
    if isinstance(node, Undefined):
        base["op"] = "undefined"
        return base
    if isinstance(node, Removed):
        base["op"] = "removed"
        return base
    raise TypeError(f"unsupported IR node type: {type(node)!r}")


def serialize_location(location: StorageLocation) -> Dict[str, Any]:
    """Serialise a :class:`StorageLocation` into a simple mapping."""

    return {"space": location.space.value, "name": location.name}


def _plain(value: Any) -> Any:
    if isinstance(value, StorageLocation):
        return value.describe()
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


__all__ = ["serialize_block", "serialize_graph", "serialize_location", "serialize_node"]
