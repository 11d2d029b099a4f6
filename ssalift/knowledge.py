"""Immutable configuration tables consumed by every session.

Three pieces of knowledge steer the core:

``OpcodeTable``
    Per opcode fold function, side-effect flag, commutativity flag and copy
    flag.  The built-in table covers the arithmetic, logic and comparison
    operators emitted by the semantics expander (``+ - * / % & | ^ << >>``,
    the comparisons and the unary ``! ++ --`` family) under explicit names.

``CallingConvention``
    Ordered argument slots, the return slot and the callee-saved set used by
    call-site recovery.

``PipelineSettings``
    Iteration ceiling of the convergent passes, validation mode and the other
    scheduling knobs.

:class:`KnowledgeBase` bundles the three so a single object can be loaded once
per process and shared by reference between sessions.  JSON documents may
override individual opcode flags and may link a custom opcode to a built-in
fold through the ``"semantics"`` field, the same way annotation entries link
to each other by name.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple


FoldFunction = Callable[[Sequence[int], Sequence[int], int], Optional[int]]
"""``fold(values, operand_widths, result_width)``.

``values`` are unsigned and already masked to their operand widths.  The
function returns the unsigned result masked to ``result_width`` or ``None``
when the opcode declares the result undefined for these inputs.
"""


def mask(value: int, width: int) -> int:
    return value & ((1 << width) - 1)


def to_signed(value: int, width: int) -> int:
    value = mask(value, width)
    if value >> (width - 1):
        return value - (1 << width)
    return value


# ---------------------------------------------------------------------------
# built-in fold functions
# ---------------------------------------------------------------------------


def _fold_add(values, widths, width):
    return mask(values[0] + values[1], width)


def _fold_sub(values, widths, width):
    return mask(values[0] - values[1], width)


def _fold_mul(values, widths, width):
    return mask(values[0] * values[1], width)


def _fold_udiv(values, widths, width):
    if values[1] == 0:
        return None
    return mask(values[0] // values[1], width)


def _fold_umod(values, widths, width):
    if values[1] == 0:
        return None
    return mask(values[0] % values[1], width)


def _signed_pair(values, widths):
    return to_signed(values[0], widths[0]), to_signed(values[1], widths[1])


def _fold_sdiv(values, widths, width):
    lhs, rhs = _signed_pair(values, widths)
    if rhs == 0:
        return None
    quotient = abs(lhs) // abs(rhs)
    if (lhs < 0) != (rhs < 0):
        quotient = -quotient
    if quotient >= 1 << (width - 1):
        # MIN / -1 does not fit the signed result range.
        return None
    return mask(quotient, width)


def _fold_smod(values, widths, width):
    lhs, rhs = _signed_pair(values, widths)
    if rhs == 0:
        return None
    remainder = abs(lhs) % abs(rhs)
    if lhs < 0:
        remainder = -remainder
    return mask(remainder, width)


def _fold_and(values, widths, width):
    return mask(values[0] & values[1], width)


def _fold_or(values, widths, width):
    return mask(values[0] | values[1], width)


def _fold_xor(values, widths, width):
    return mask(values[0] ^ values[1], width)


def _fold_shl(values, widths, width):
    if values[1] >= width:
        return None
    return mask(values[0] << values[1], width)


def _fold_shr(values, widths, width):
    if values[1] >= width:
        return None
    return mask(values[0] >> values[1], width)


def _fold_sar(values, widths, width):
    if values[1] >= width:
        return None
    return mask(to_signed(values[0], widths[0]) >> values[1], width)


def _fold_not(values, widths, width):
    return mask(~values[0], width)


def _fold_neg(values, widths, width):
    return mask(-values[0], width)


def _fold_lnot(values, widths, width):
    return 1 if values[0] == 0 else 0


def _fold_inc(values, widths, width):
    return mask(values[0] + 1, width)


def _fold_dec(values, widths, width):
    return mask(values[0] - 1, width)


def _fold_copy(values, widths, width):
    return mask(values[0], width)


def _fold_sext(values, widths, width):
    return mask(to_signed(values[0], widths[0]), width)


def _compare(predicate: Callable[[int, int], bool], signed: bool) -> FoldFunction:
    def fold(values, widths, width):
        lhs, rhs = values[0], values[1]
        if signed:
            lhs, rhs = _signed_pair(values, widths)
        return 1 if predicate(lhs, rhs) else 0

    return fold


@dataclass(frozen=True)
class OpcodeSemantics:
    """Semantics of one opcode as seen by the optimisation passes."""

    name: str
    arity: Optional[int] = None
    fold: Optional[FoldFunction] = field(default=None, compare=False)
    side_effect: bool = False
    commutative: bool = False
    copy: bool = False
    result_width: Optional[int] = None

    @property
    def foldable(self) -> bool:
        return self.fold is not None


def _entry(name: str, arity: Optional[int], fold: Optional[FoldFunction] = None, **flags: Any) -> OpcodeSemantics:
    return OpcodeSemantics(name=name, arity=arity, fold=fold, **flags)


_BUILTIN_OPCODES: Tuple[OpcodeSemantics, ...] = (
    _entry("add", 2, _fold_add, commutative=True),
    _entry("sub", 2, _fold_sub),
    _entry("mul", 2, _fold_mul, commutative=True),
    _entry("udiv", 2, _fold_udiv),
    _entry("umod", 2, _fold_umod),
    _entry("sdiv", 2, _fold_sdiv),
    _entry("smod", 2, _fold_smod),
    _entry("and", 2, _fold_and, commutative=True),
    _entry("or", 2, _fold_or, commutative=True),
    _entry("xor", 2, _fold_xor, commutative=True),
    _entry("shl", 2, _fold_shl),
    _entry("shr", 2, _fold_shr),
    _entry("sar", 2, _fold_sar),
    _entry("not", 1, _fold_not),
    _entry("neg", 1, _fold_neg),
    _entry("lnot", 1, _fold_lnot, result_width=1),
    _entry("inc", 1, _fold_inc),
    _entry("dec", 1, _fold_dec),
    _entry("zext", 1, _fold_copy),
    _entry("trunc", 1, _fold_copy),
    _entry("sext", 1, _fold_sext),
    _entry("mov", 1, _fold_copy, copy=True),
    _entry("copy", 1, _fold_copy, copy=True),
    _entry("eq", 2, _compare(lambda a, b: a == b, False), commutative=True, result_width=1),
    _entry("ne", 2, _compare(lambda a, b: a != b, False), commutative=True, result_width=1),
    _entry("ult", 2, _compare(lambda a, b: a < b, False), result_width=1),
    _entry("ule", 2, _compare(lambda a, b: a <= b, False), result_width=1),
    _entry("ugt", 2, _compare(lambda a, b: a > b, False), result_width=1),
    _entry("uge", 2, _compare(lambda a, b: a >= b, False), result_width=1),
    _entry("slt", 2, _compare(lambda a, b: a < b, True), result_width=1),
    _entry("sle", 2, _compare(lambda a, b: a <= b, True), result_width=1),
    _entry("sgt", 2, _compare(lambda a, b: a > b, True), result_width=1),
    _entry("sge", 2, _compare(lambda a, b: a >= b, True), result_width=1),
    _entry("load", None),
    _entry("store", None, side_effect=True),
    _entry("call", None, side_effect=True),
    _entry("return", None, side_effect=True),
    _entry("branch", None, side_effect=True),
    _entry("jump", None, side_effect=True),
    _entry("clobber", None),
    _entry("call.result", 1),
    _entry("var", 0),
)

# Operator spellings produced by the expander, mapped onto canonical names.
_BUILTIN_ALIASES: Mapping[str, str] = {
    "+": "add",
    "-": "sub",
    "*": "mul",
    "/": "udiv",
    "%": "umod",
    "div": "udiv",
    "mod": "umod",
    "&": "and",
    "|": "or",
    "^": "xor",
    "<<": "shl",
    ">>": "shr",
    "==": "eq",
    "!=": "ne",
    "<": "slt",
    "<=": "sle",
    ">": "sgt",
    ">=": "sge",
    "lt": "slt",
    "le": "sle",
    "gt": "sgt",
    "ge": "sge",
    "!": "lnot",
    "~": "not",
    "++": "inc",
    "--": "dec",
    "=": "mov",
}

# Opcodes whose side effects cannot be switched off by configuration.
ALWAYS_EFFECTFUL = frozenset({"store", "call", "return", "branch", "jump"})


class OpcodeTable:
    """Read-only lookup of :class:`OpcodeSemantics` by opcode name.

    Unknown opcodes have no fold semantics and are treated as side-effecting so
    that noisy expander output never causes code to disappear.
    """

    def __init__(
        self,
        entries: Iterable[OpcodeSemantics],
        *,
        aliases: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._entries: Mapping[str, OpcodeSemantics] = MappingProxyType(
            {entry.name: entry for entry in entries}
        )
        self._aliases: Mapping[str, str] = MappingProxyType(dict(aliases or {}))

    @classmethod
    def default(cls) -> "OpcodeTable":
        return cls(_BUILTIN_OPCODES, aliases=_BUILTIN_ALIASES)

    def canonical(self, opcode: str) -> str:
        return self._aliases.get(opcode, opcode)

    def get(self, opcode: Optional[str]) -> Optional[OpcodeSemantics]:
        if opcode is None:
            return None
        return self._entries.get(self.canonical(opcode))

    def __contains__(self, opcode: str) -> bool:
        return self.get(opcode) is not None

    def names(self) -> Tuple[str, ...]:
        return tuple(self._entries)

    def has_side_effect(self, opcode: Optional[str]) -> bool:
        if opcode is None:
            return False
        if self.canonical(opcode) in ALWAYS_EFFECTFUL:
            return True
        info = self.get(opcode)
        if info is None:
            return True
        return info.side_effect

    def is_commutative(self, opcode: Optional[str]) -> bool:
        info = self.get(opcode)
        return bool(info and info.commutative)

    def is_copy(self, opcode: Optional[str]) -> bool:
        info = self.get(opcode)
        return bool(info and info.copy)

    def result_width(self, opcode: str, default: int) -> int:
        info = self.get(opcode)
        if info is not None and info.result_width is not None:
            return info.result_width
        return default

    def fold(
        self, opcode: str, values: Sequence[int], widths: Sequence[int], width: int
    ) -> Tuple[bool, Optional[int]]:
        """Fold ``opcode`` over constant ``values``.

        Returns ``(False, None)`` when the opcode has no fold semantics or the
        operand count does not match its arity, ``(True, None)`` when the
        result is declared undefined and ``(True, value)`` otherwise.
        """

        info = self.get(opcode)
        if info is None or info.fold is None:
            return False, None
        if info.arity is not None and len(values) != info.arity:
            return False, None
        masked = [mask(value, bits) for value, bits in zip(values, widths)]
        return True, info.fold(masked, widths, width)

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> "OpcodeTable":
        """Return a new table with JSON style ``overrides`` applied."""

        entries: Dict[str, OpcodeSemantics] = dict(self._entries)
        aliases: Dict[str, str] = dict(self._aliases)
        for name, spec in overrides.items():
            if not isinstance(spec, Mapping):
                continue
            linked = spec.get("semantics")
            base = entries.get(self.canonical(str(linked))) if linked else entries.get(name)
            if base is None:
                base = OpcodeSemantics(name=name, side_effect=True)
            updated = replace(
                base,
                name=name,
                arity=spec.get("arity", base.arity),
                side_effect=bool(spec.get("side_effect", base.side_effect)),
                commutative=bool(spec.get("commutative", base.commutative)),
                copy=bool(spec.get("copy", base.copy)),
                result_width=spec.get("result_width", base.result_width),
            )
            entries[name] = updated
            aliases.pop(name, None)
            for alias in spec.get("aliases", ()):
                aliases[str(alias)] = name
        return OpcodeTable(entries.values(), aliases=aliases)


@dataclass(frozen=True)
class CallingConvention:
    """Register-level description of a calling convention."""

    name: str
    arguments: Tuple[str, ...]
    return_slot: str
    callee_saved: FrozenSet[str] = frozenset()

    @classmethod
    def sysv_amd64(cls) -> "CallingConvention":
        return cls(
            name="sysv-amd64",
            arguments=("rdi", "rsi", "rdx", "rcx", "r8", "r9"),
            return_slot="rax",
            callee_saved=frozenset({"rbx", "rbp", "rsp", "r12", "r13", "r14", "r15"}),
        )

    @classmethod
    def from_json(cls, entry: Mapping[str, Any]) -> "CallingConvention":
        try:
            arguments = tuple(str(slot) for slot in entry["arguments"])
            return_slot = str(entry["return"])
        except KeyError as exc:
            raise ValueError(f"calling convention is missing {exc.args[0]!r}") from exc
        return cls(
            name=str(entry.get("name", "custom")),
            arguments=arguments,
            return_slot=return_slot,
            callee_saved=frozenset(str(slot) for slot in entry.get("callee_saved", ())),
        )

    @classmethod
    def load(cls, path: Path) -> "CallingConvention":
        return cls.from_json(json.loads(path.read_text("utf-8")))


@dataclass(frozen=True)
class PipelineSettings:
    """Knobs shared by the pass manager and the individual passes."""

    max_iterations: int = 16
    validate: bool = False
    max_rewrites_per_node: int = 16
    frame_registers: FrozenSet[str] = frozenset({"rsp", "rbp", "esp", "ebp", "sp", "fp"})
    split_critical_edges: bool = True

    @classmethod
    def from_json(cls, entry: Mapping[str, Any]) -> "PipelineSettings":
        defaults = cls()
        frame = entry.get("frame_registers")
        return cls(
            max_iterations=max(1, int(entry.get("max_iterations", defaults.max_iterations))),
            validate=bool(entry.get("validate", defaults.validate)),
            max_rewrites_per_node=max(
                1, int(entry.get("max_rewrites_per_node", defaults.max_rewrites_per_node))
            ),
            frame_registers=(
                frozenset(str(name) for name in frame) if frame is not None else defaults.frame_registers
            ),
            split_critical_edges=bool(
                entry.get("split_critical_edges", defaults.split_critical_edges)
            ),
        )


class KnowledgeBase:
    """Bundle of the immutable tables shared by decompilation sessions."""

    def __init__(
        self,
        opcodes: Optional[OpcodeTable] = None,
        convention: Optional[CallingConvention] = None,
        settings: Optional[PipelineSettings] = None,
        *,
        symbols: Optional[Mapping[int, str]] = None,
    ) -> None:
        self.opcodes = opcodes or OpcodeTable.default()
        self.convention = convention or CallingConvention.sysv_amd64()
        self.settings = settings or PipelineSettings()
        self._symbols: Mapping[int, str] = MappingProxyType(
            {int(address): name for address, name in (symbols or {}).items()}
        )

    @classmethod
    def load(cls, path: Path) -> "KnowledgeBase":
        """Load a knowledge base; a missing file yields the built-in defaults."""

        if not path.exists():
            return cls()

        data = json.loads(path.read_text("utf-8"))
        if not isinstance(data, Mapping):
            raise ValueError(f"{path}: knowledge base must be a JSON object")

        opcodes = OpcodeTable.default()
        overrides = data.get("opcodes")
        if isinstance(overrides, Mapping):
            opcodes = opcodes.with_overrides(overrides)

        convention = None
        if isinstance(data.get("convention"), Mapping):
            convention = CallingConvention.from_json(data["convention"])

        settings = None
        if isinstance(data.get("pipeline"), Mapping):
            settings = PipelineSettings.from_json(data["pipeline"])

        symbols: Dict[int, str] = {}
        raw_symbols = data.get("symbols")
        if isinstance(raw_symbols, Mapping):
            for key, value in raw_symbols.items():
                try:
                    symbols[int(str(key), 0)] = str(value)
                except ValueError:
                    continue

        return cls(opcodes, convention, settings, symbols=symbols)

    @property
    def symbols(self) -> Mapping[int, str]:
        return self._symbols

    def with_settings(self, settings: PipelineSettings) -> "KnowledgeBase":
        return KnowledgeBase(self.opcodes, self.convention, settings, symbols=self._symbols)

    def symbol_for(self, address: Optional[int]) -> Optional[str]:
        """Resolve a call target to a symbolic name if one is known."""

        if address is None:
            return None
        return self._symbols.get(address)


__all__ = [
    "ALWAYS_EFFECTFUL",
    "CallingConvention",
    "FoldFunction",
    "KnowledgeBase",
    "OpcodeSemantics",
    "OpcodeTable",
    "PipelineSettings",
    "mask",
    "to_signed",
]
