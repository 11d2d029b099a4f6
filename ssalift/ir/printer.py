"""Stable textual dump of an :class:`IRGraph`."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from ..diagnostics import DiagnosticLog
from .model import Block, IRGraph


class IRTextRenderer:
    """Render graphs into a stable textual form for debugging and golden files."""

    def render(self, graph: IRGraph, diagnostics: Optional[DiagnosticLog] = None) -> str:
        lines: List[str] = []
        lines.extend(self._render_summary(graph))
        if diagnostics is not None:
            lines.extend(self._render_diagnostics(diagnostics))
        for block in graph.block_order():
            lines.extend(self._render_block(graph, block))
        return "\n".join(lines) + "\n"

    def write(
        self, graph: IRGraph, output_path: Path, diagnostics: Optional[DiagnosticLog] = None
    ) -> None:
        output_path.write_text(self.render(graph, diagnostics), "utf-8")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _render_summary(self, graph: IRGraph) -> Iterable[str]:
        live = sum(len(block.nodes) for block in graph.blocks.values())
        yield f"; graph entry=bb{graph.entry} blocks={len(graph.blocks)} nodes={live}"
        if graph.locations:
            yield "; locations: " + " ".join(location.describe() for location in graph.locations)
        yield ""

    def _render_diagnostics(self, diagnostics: DiagnosticLog) -> Iterable[str]:
        yield "; diagnostics"
        if not len(diagnostics):
            yield ";   (none)"
        for entry in diagnostics:
            yield f";   {entry.describe()}"
        yield ""

    def _render_block(self, graph: IRGraph, block: Block) -> Iterable[str]:
        preds = ", ".join(f"bb{source}" for source in block.predecessor_blocks())
        yield f"block {block.label} preds=[{preds}]"
        if block.call is not None:
            target = f"0x{block.call.target:X}" if block.call.target is not None else "?"
            yield f"  ; call at 0x{block.call.address:X} target={target}"
        for node_id in block.nodes:
            yield f"  {graph.node(node_id).describe()}"
        for edge in block.successors:
            yield f"  ; {edge.kind.value} -> bb{edge.target}"


__all__ = ["IRTextRenderer"]
