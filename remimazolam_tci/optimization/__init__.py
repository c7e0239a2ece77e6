"""
Optimization module: induction dose search and step-down maintenance.
"""

from .dose_optimizer import DoseOptimizer, OptimizationResult, ConcentrationCategory
from .step_down import StepDownProtocol, ProtocolResult, DosageAdjustment, ProtocolState

__all__ = [
    "DoseOptimizer",
    "OptimizationResult",
    "ConcentrationCategory",
    "StepDownProtocol",
    "ProtocolResult",
    "DosageAdjustment",
    "ProtocolState",
]
