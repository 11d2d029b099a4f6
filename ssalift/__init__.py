"""Public package exports for the SSA recovery core."""

from .diagnostics import Diagnostic, DiagnosticKind, DiagnosticLog
from .errors import (
    CyclicDependency,
    InvariantViolation,
    MalformedInput,
    PipelineConfigurationError,
    SSALiftError,
    UnknownPass,
)
from .ingest import Operand, OpKind, PrimitiveOp, SemanticsStream, Transfer, TransferKind, load_stream
from .ir import CFGBuilder, IRGraph, IRTextRenderer, SSAConstructor, serialize_graph
from .knowledge import CallingConvention, KnowledgeBase, OpcodeTable, PipelineSettings
from .optimizer import DeSSAFinalizer, PassManager, build_default_manager
from .pipeline import DecompilationResult, Session, decompile, decompile_many

__all__ = [
    "CFGBuilder",
    "CallingConvention",
    "CyclicDependency",
    "DeSSAFinalizer",
    "DecompilationResult",
    "Diagnostic",
    "DiagnosticKind",
    "DiagnosticLog",
    "IRGraph",
    "IRTextRenderer",
    "InvariantViolation",
    "KnowledgeBase",
    "MalformedInput",
    "OpKind",
    "OpcodeTable",
    "Operand",
    "PassManager",
    "PipelineConfigurationError",
    "PipelineSettings",
    "PrimitiveOp",
    "SSAConstructor",
    "SSALiftError",
    "SemanticsStream",
    "Session",
    "Transfer",
    "TransferKind",
    "UnknownPass",
    "build_default_manager",
    "decompile",
    "decompile_many",
    "load_stream",
    "serialize_graph",
]
