"""Non-fatal diagnostics attached to a decompilation result."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple


class DiagnosticKind(Enum):
    """Anomalies that degrade a session instead of aborting it."""

    UNRESOLVED_STORAGE = "UnresolvedStorage"
    NON_CONVERGENCE = "NonConvergence"
    LOW_CONFIDENCE_CALL = "LowConfidenceCall"


@dataclass(frozen=True)
class Diagnostic:
    """Single diagnostic record carrying the offending node/block ids."""

    kind: DiagnosticKind
    message: str
    node: Optional[int] = None
    block: Optional[int] = None

    def describe(self) -> str:
        location = []
        if self.block is not None:
            location.append(f"block={self.block}")
        if self.node is not None:
            location.append(f"node={self.node}")
        suffix = f" ({', '.join(location)})" if location else ""
        return f"{self.kind.value}: {self.message}{suffix}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "node": self.node,
            "block": self.block,
        }


@dataclass
class DiagnosticLog:
    """Ordered collection of diagnostics produced during one session."""

    entries: List[Diagnostic] = field(default_factory=list)

    def record(
        self,
        kind: DiagnosticKind,
        message: str,
        *,
        node: Optional[int] = None,
        block: Optional[int] = None,
    ) -> Diagnostic:
        entry = Diagnostic(kind=kind, message=message, node=node, block=block)
        self.entries.append(entry)
        return entry

    def extend(self, entries: Iterable[Diagnostic]) -> None:
        self.entries.extend(entries)

    def filter(self, kind: DiagnosticKind) -> Tuple[Diagnostic, ...]:
        return tuple(entry for entry in self.entries if entry.kind is kind)

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {kind.value: 0 for kind in DiagnosticKind}
        for entry in self.entries:
            counts[entry.kind.value] += 1
        return counts

    def describe(self) -> str:
        rendered = " ".join(f"{name}={count}" for name, count in self.summary().items())
        lines = ["Diagnostics:", "  summary: " + rendered]
        for entry in self.entries:
            lines.append("  " + entry.describe())
        return "\n".join(lines)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


__all__ = ["Diagnostic", "DiagnosticKind", "DiagnosticLog"]
