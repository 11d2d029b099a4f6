"""Exception hierarchy shared by the SSA recovery pipeline."""

from __future__ import annotations

from typing import Optional


class SSALiftError(Exception):
    """Base class for every error raised by :mod:`ssalift`."""


class MalformedInput(SSALiftError, ValueError):
    """Raised when the ingest data cannot be turned into a control-flow graph.

    The error aborts the session before SSA construction starts.  ``address``
    points at the offending stream address when one is known.
    """

    def __init__(self, message: str, *, address: Optional[int] = None) -> None:
        if address is not None:
            message = f"{message} (address 0x{address:X})"
        super().__init__(message)
        self.address = address


class PipelineConfigurationError(SSALiftError):
    """Raised while registering or scheduling passes."""


class CyclicDependency(PipelineConfigurationError):
    """No topological order exists for the registered passes."""

    def __init__(self, passes) -> None:
        self.passes = tuple(passes)
        names = ", ".join(self.passes)
        super().__init__(f"cyclic pass dependencies between: {names}")


class UnknownPass(PipelineConfigurationError):
    """A pass declared a dependency on a name that was never registered."""

    def __init__(self, name: str, required_by: str) -> None:
        self.name = name
        self.required_by = required_by
        super().__init__(f"pass {required_by!r} depends on unknown pass {name!r}")


class InvariantViolation(SSALiftError):
    """A structural IR invariant does not hold.

    Only raised in validation mode.  The failure always indicates a defect in
    a pass, never bad input.
    """

    def __init__(
        self,
        message: str,
        *,
        node: Optional[int] = None,
        block: Optional[int] = None,
        invariant: Optional[str] = None,
    ) -> None:
        details = []
        if invariant:
            details.append(invariant)
        if node is not None:
            details.append(f"node={node}")
        if block is not None:
            details.append(f"block={block}")
        if details:
            message = f"{message} [{', '.join(details)}]"
        super().__init__(message)
        self.node = node
        self.block = block
        self.invariant = invariant


__all__ = [
    "SSALiftError",
    "MalformedInput",
    "PipelineConfigurationError",
    "CyclicDependency",
    "UnknownPass",
    "InvariantViolation",
]
