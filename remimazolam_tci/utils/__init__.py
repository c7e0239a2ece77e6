"""
Utilities module for the Remimazolam TCI Engine
================================================

Contains:
    - config: Engine configuration dataclasses and YAML loader
    - logger: colorlog setup and run summary logging
    - diagnostics: Structured diagnostic records and sinks
    - exceptions: Exception hierarchy and validators
    - metrics: Protocol performance metrics (MDPE, MDAPE, Wobble, etc.)
"""

from .config import EngineConfig, load_config
from .diagnostics import RecordingSink, NullSink, LoggingSink
from .exceptions import RemimazolamTCIError, ValidationError, SafetyError
from .metrics import calculate_mdpe, calculate_mdape, calculate_wobble

__all__ = [
    "EngineConfig",
    "load_config",
    "RecordingSink",
    "NullSink",
    "LoggingSink",
    "RemimazolamTCIError",
    "ValidationError",
    "SafetyError",
    "calculate_mdpe",
    "calculate_mdape",
    "calculate_wobble",
]
