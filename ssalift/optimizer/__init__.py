"""Optimisation passes, pass scheduling and SSA finalisation."""

from .base import DiagnosticCollector, OptimizationPass, PassContext, PassDescriptor, PassResult
from .branches import BranchFolding
from .calls import CallSiteRecovery
from .dce import DeadCodeEliminator
from .dessa import DeSSAFinalizer, VariableSource, finalize, sequentialize
from .manager import DominatorAnalysis, PassManager, PipelineState, build_default_manager
from .propagation import ConstantPropagation, CopyPropagation, eliminate_trivial_phis
from .simplifier import ExpressionSimplifier, simplify_graph
from .traits import IRNodeTraits, classify_node_traits
from .verifier import Verifier

__all__ = [
    "BranchFolding",
    "CallSiteRecovery",
    "ConstantPropagation",
    "CopyPropagation",
    "DeSSAFinalizer",
    "DeadCodeEliminator",
    "DiagnosticCollector",
    "DominatorAnalysis",
    "ExpressionSimplifier",
    "IRNodeTraits",
    "OptimizationPass",
    "PassContext",
    "PassDescriptor",
    "PassManager",
    "PassResult",
    "PipelineState",
    "VariableSource",
    "Verifier",
    "build_default_manager",
    "classify_node_traits",
    "eliminate_trivial_phis",
    "finalize",
    "sequentialize",
    "simplify_graph",
]
