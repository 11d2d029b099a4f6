"""Shape of the semantic input consumed by the SSA recovery core.

The decoder and the semantics expander live outside of this package.  What
reaches the core is a per-address list of :class:`PrimitiveOp` entries and a
table of :class:`Transfer` records describing how control leaves an address.
Both are immutable; the caller owns them.

The JSON form accepted by :meth:`SemanticsStream.from_json` mirrors the
dataclasses::

    {
      "entry": "0x1000",
      "operations": {
        "0x1000": [{"kind": "assign", "dest": "rax", "operands": ["5"]}],
        "0x1004": [{"kind": "compare", "dest": "zf", "opcode": "eq",
                    "operands": ["rax", "0"]}]
      },
      "transfers": [{"source": "0x1004", "kind": "cbranch-true",
                     "target": "0x1010"}]
    }

Operands are either explicit objects (``{"reg": "rax", "width": 64}``,
``{"imm": 5}``, ``{"tmp": "t0"}``, ``{"mem": {"base": "rbp", "offset": -8}}``)
or short tokens: numbers become immediates, ``tmp_*`` names temporaries,
``[base+off]`` memory references and everything else a register.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import MalformedInput


DEFAULT_WIDTH = 64

_MEMORY_TOKEN_RE = re.compile(
    r"^\[\s*(?:(?P<base>[A-Za-z_][A-Za-z0-9_]*)\s*)?(?P<offset>[+-]?\s*(?:0x[0-9A-Fa-f]+|\d+))?\s*\]$"
)


class OperandKind(Enum):
    """Where an operand value lives."""

    REGISTER = "register"
    MEMORY = "memory"
    IMMEDIATE = "immediate"
    TEMPORARY = "temporary"


class OpKind(Enum):
    """Primitive operation families produced by the semantics expander."""

    ASSIGN = "assign"
    LOAD = "load"
    STORE = "store"
    COMPARE = "compare"
    BRANCH = "branch"


class TransferKind(Enum):
    """Ways control can leave an address."""

    FALLTHROUGH = "fallthrough"
    JUMP = "jump"
    CBRANCH_TRUE = "cbranch-true"
    CBRANCH_FALSE = "cbranch-false"
    CALL = "call"
    RETURN = "return"
    INDIRECT = "indirect"


@dataclass(frozen=True)
class Operand:
    """Operand of a primitive operation.

    ``name`` holds the register or temporary name, or the base register of a
    memory expression.  ``value`` is the immediate value, or the displacement
    (absolute address when ``name`` is ``None``) of a memory expression.
    """

    kind: OperandKind
    name: Optional[str] = None
    value: int = 0
    width: int = DEFAULT_WIDTH

    @classmethod
    def register(cls, name: str, width: int = DEFAULT_WIDTH) -> "Operand":
        return cls(OperandKind.REGISTER, name=name, width=width)

    @classmethod
    def temporary(cls, name: str, width: int = DEFAULT_WIDTH) -> "Operand":
        return cls(OperandKind.TEMPORARY, name=name, width=width)

    @classmethod
    def immediate(cls, value: int, width: int = DEFAULT_WIDTH) -> "Operand":
        return cls(OperandKind.IMMEDIATE, value=value, width=width)

    @classmethod
    def memory(
        cls, base: Optional[str] = None, offset: int = 0, width: int = DEFAULT_WIDTH
    ) -> "Operand":
        return cls(OperandKind.MEMORY, name=base, value=offset, width=width)

    @property
    def is_memory(self) -> bool:
        return self.kind is OperandKind.MEMORY

    def describe(self) -> str:
        if self.kind is OperandKind.IMMEDIATE:
            return f"0x{self.value:X}" if self.value >= 0 else str(self.value)
        if self.kind is OperandKind.MEMORY:
            if self.name is None:
                return f"[0x{self.value:X}]"
            if self.value == 0:
                return f"[{self.name}]"
            sign = "-" if self.value < 0 else "+"
            return f"[{self.name}{sign}0x{abs(self.value):X}]"
        return str(self.name)

    @classmethod
    def from_json(cls, entry: Any) -> "Operand":
        """Parse an operand from its JSON object or short token form."""

        if isinstance(entry, bool):
            raise MalformedInput(f"invalid operand {entry!r}")
        if isinstance(entry, int):
            return cls.immediate(entry)
        if isinstance(entry, str):
            return cls._from_token(entry.strip())
        if not isinstance(entry, Mapping):
            raise MalformedInput(f"invalid operand {entry!r}")

        width = int(entry.get("width", DEFAULT_WIDTH))
        if "reg" in entry:
            return cls.register(str(entry["reg"]), width)
        if "tmp" in entry:
            return cls.temporary(str(entry["tmp"]), width)
        if "imm" in entry:
            return cls.immediate(parse_int(entry["imm"]), width)
        if "mem" in entry:
            mem = entry["mem"]
            if isinstance(mem, str):
                parsed = cls._from_token(mem)
                if not parsed.is_memory:
                    raise MalformedInput(f"invalid memory operand {mem!r}")
                return replace_width(parsed, width)
            if not isinstance(mem, Mapping):
                raise MalformedInput(f"invalid memory operand {mem!r}")
            base = mem.get("base")
            offset = parse_int(mem.get("offset", 0))
            return cls.memory(str(base) if base is not None else None, offset, width)
        raise MalformedInput(f"operand has no recognised kind: {dict(entry)!r}")

    @classmethod
    def _from_token(cls, token: str) -> "Operand":
        if not token:
            raise MalformedInput("empty operand token")
        match = _MEMORY_TOKEN_RE.match(token)
        if match:
            base = match.group("base")
            raw_offset = (match.group("offset") or "0").replace(" ", "")
            return cls.memory(base, parse_int(raw_offset))
        try:
            return cls.immediate(parse_int(token))
        except MalformedInput:
            pass
        if token.startswith("tmp"):
            return cls.temporary(token)
        return cls.register(token)


def replace_width(operand: Operand, width: int) -> Operand:
    return Operand(operand.kind, name=operand.name, value=operand.value, width=width)


def parse_int(value: Any) -> int:
    """Parse decimal or ``0x`` prefixed integers used throughout the JSON."""

    if isinstance(value, bool):
        raise MalformedInput(f"expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        negative = text.startswith("-")
        if negative or text.startswith("+"):
            text = text[1:]
        try:
            number = int(text, 16) if text.startswith("0x") else int(text, 10)
        except ValueError as exc:
            raise MalformedInput(f"expected an integer, got {value!r}") from exc
        return -number if negative else number
    raise MalformedInput(f"expected an integer, got {value!r}")


@dataclass(frozen=True)
class PrimitiveOp:
    """Single primitive read/write operation of an instruction.

    ``ASSIGN``
        ``dest = opcode(operands...)``; ``opcode`` defaults to ``mov``.
    ``LOAD``
        ``dest = *operands[0]`` where the operand is a memory expression.
    ``STORE``
        ``*operands[0] = operands[1]``.
    ``COMPARE``
        ``dest = opcode(lhs, rhs)`` producing a one bit flag.
    ``BRANCH``
        Marks the control transfer of the instruction.  The optional operand
        is the branch condition (conditional transfers) or the jump target
        (indirect transfers).
    """

    kind: OpKind
    dest: Optional[Operand] = None
    operands: Tuple[Operand, ...] = field(default_factory=tuple)
    opcode: Optional[str] = None
    width: Optional[int] = None

    @property
    def effective_opcode(self) -> str:
        if self.opcode:
            return self.opcode
        if self.kind is OpKind.ASSIGN:
            return "mov"
        return self.kind.value

    @property
    def result_width(self) -> int:
        if self.kind is OpKind.COMPARE:
            return 1
        if self.width is not None:
            return self.width
        if self.dest is not None:
            return self.dest.width
        return DEFAULT_WIDTH

    def validate(self, address: Optional[int] = None) -> None:
        """Raise :class:`MalformedInput` for structurally unusable operations."""

        kind = self.kind
        if kind in {OpKind.ASSIGN, OpKind.LOAD, OpKind.COMPARE}:
            if self.dest is None:
                raise MalformedInput(f"{kind.value} without destination", address=address)
            if self.dest.kind not in {OperandKind.REGISTER, OperandKind.TEMPORARY}:
                raise MalformedInput(
                    f"{kind.value} destination must be a register or temporary",
                    address=address,
                )
        if kind is OpKind.ASSIGN:
            if not self.operands:
                raise MalformedInput("assign without operands", address=address)
            if self.effective_opcode == "mov" and len(self.operands) != 1:
                raise MalformedInput("mov expects exactly one operand", address=address)
        elif kind is OpKind.LOAD:
            if len(self.operands) != 1 or not self.operands[0].is_memory:
                raise MalformedInput("load expects one memory operand", address=address)
        elif kind is OpKind.STORE:
            if len(self.operands) != 2 or not self.operands[0].is_memory:
                raise MalformedInput(
                    "store expects a memory operand and a value", address=address
                )
        elif kind is OpKind.COMPARE:
            if not self.opcode:
                raise MalformedInput("compare without opcode", address=address)
            if len(self.operands) not in {1, 2}:
                raise MalformedInput("compare expects one or two operands", address=address)
        elif kind is OpKind.BRANCH:
            if len(self.operands) > 1:
                raise MalformedInput("branch takes at most one operand", address=address)
        for operand in (self.dest, *self.operands):
            if operand is None:
                continue
            if operand.kind in {OperandKind.REGISTER, OperandKind.TEMPORARY} and not operand.name:
                raise MalformedInput("unnamed register operand", address=address)
            if operand.width <= 0:
                raise MalformedInput("operand width must be positive", address=address)

    def describe(self) -> str:
        args = ", ".join(operand.describe() for operand in self.operands)
        if self.kind is OpKind.STORE:
            return f"store {args}"
        if self.kind is OpKind.BRANCH:
            return f"branch {args}".rstrip()
        dest = self.dest.describe() if self.dest is not None else "?"
        return f"{dest} = {self.effective_opcode}({args})"

    @classmethod
    def from_json(cls, entry: Mapping[str, Any]) -> "PrimitiveOp":
        if not isinstance(entry, Mapping):
            raise MalformedInput(f"operation must be an object, got {entry!r}")
        try:
            kind = OpKind(str(entry.get("kind", "")).lower())
        except ValueError as exc:
            raise MalformedInput(f"unknown operation kind {entry.get('kind')!r}") from exc
        dest_entry = entry.get("dest")
        dest = Operand.from_json(dest_entry) if dest_entry is not None else None
        operands = tuple(Operand.from_json(item) for item in entry.get("operands", ()))
        width = entry.get("width")
        return cls(
            kind=kind,
            dest=dest,
            operands=operands,
            opcode=entry.get("opcode"),
            width=int(width) if width is not None else None,
        )


@dataclass(frozen=True)
class Transfer:
    """Control transfer leaving ``source``; ``target`` is ``None`` if unknown."""

    source: int
    kind: TransferKind
    target: Optional[int] = None

    def describe(self) -> str:
        target = f"0x{self.target:X}" if self.target is not None else "?"
        return f"0x{self.source:X} -{self.kind.value}-> {target}"

    @classmethod
    def from_json(cls, entry: Mapping[str, Any]) -> "Transfer":
        if not isinstance(entry, Mapping):
            raise MalformedInput(f"transfer must be an object, got {entry!r}")
        try:
            kind = TransferKind(str(entry.get("kind", "")).lower())
        except ValueError as exc:
            raise MalformedInput(f"unknown transfer kind {entry.get('kind')!r}") from exc
        if "source" not in entry:
            raise MalformedInput("transfer without source")
        target = entry.get("target")
        return cls(
            source=parse_int(entry["source"]),
            kind=kind,
            target=parse_int(target) if target is not None else None,
        )


OperationMap = Mapping[int, Tuple[PrimitiveOp, ...]]


@dataclass(frozen=True)
class SemanticsStream:
    """Complete ingest document for one function."""

    operations: OperationMap
    transfers: Tuple[Transfer, ...] = field(default_factory=tuple)
    entry: Optional[int] = None

    @classmethod
    def create(
        cls,
        operations: Union[Mapping[int, Sequence[PrimitiveOp]], Iterable[Tuple[int, Sequence[PrimitiveOp]]]],
        transfers: Iterable[Transfer] = (),
        *,
        entry: Optional[int] = None,
    ) -> "SemanticsStream":
        items = operations.items() if isinstance(operations, Mapping) else operations
        frozen: Dict[int, Tuple[PrimitiveOp, ...]] = {}
        for address, ops in items:
            frozen[int(address)] = tuple(ops)
        return cls(
            operations=MappingProxyType(frozen),
            transfers=tuple(transfers),
            entry=entry,
        )

    @property
    def entry_address(self) -> Optional[int]:
        if self.entry is not None:
            return self.entry
        if not self.operations:
            return None
        return min(self.operations)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "SemanticsStream":
        if not isinstance(data, Mapping):
            raise MalformedInput("ingest document must be a JSON object")
        raw_operations = data.get("operations")
        if not isinstance(raw_operations, Mapping):
            raise MalformedInput("ingest document is missing the 'operations' mapping")
        operations: List[Tuple[int, Tuple[PrimitiveOp, ...]]] = []
        for address, ops in raw_operations.items():
            if not isinstance(ops, list):
                raise MalformedInput("operations must be lists", address=parse_int(address))
            operations.append((parse_int(address), tuple(PrimitiveOp.from_json(op) for op in ops)))
        transfers = tuple(Transfer.from_json(item) for item in data.get("transfers", ()))
        entry = data.get("entry")
        return cls.create(
            operations,
            transfers,
            entry=parse_int(entry) if entry is not None else None,
        )

    @classmethod
    def load(cls, path: Path) -> "SemanticsStream":
        """Load an ingest document from ``path``."""

        try:
            data = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as exc:
            raise MalformedInput(f"{path}: invalid JSON ({exc.msg})") from exc
        return cls.from_json(data)


def load_stream(path: Path) -> SemanticsStream:
    """Load one ingest document; a missing file is malformed input."""

    if not path.exists():
        raise MalformedInput(f"missing ingest document: {path}")
    return SemanticsStream.load(path)


__all__ = [
    "DEFAULT_WIDTH",
    "OpKind",
    "Operand",
    "OperandKind",
    "OperationMap",
    "PrimitiveOp",
    "SemanticsStream",
    "Transfer",
    "TransferKind",
    "load_stream",
    "parse_int",
]
