"""
Custom Exceptions for the Remimazolam TCI Engine
=================================================

Defines the exception classes raised by the PK/PD engine.

Exception Hierarchy:
--------------------
RemimazolamTCIError (base)
├── ModelError
│   ├── ValidationError
│   └── SafetyError
├── NumericalError
│   ├── NumericIntegrationFailure
│   ├── RootFindingFailure
│   └── CubicRootError
└── ConfigurationError

Propagation:
------------
ValidationError and SafetyError reach the caller. NumericIntegrationFailure
and RootFindingFailure are caught inside the engine, where a fallback
(RK4 integration, regression ke0) takes over and a diagnostic is emitted.

Usage:
------
    from remimazolam_tci.utils.exceptions import ValidationError, SafetyError

    if not (18 <= age <= 100):
        raise ValidationError(f"Invalid age: {age}. Must be between 18 and 100 years.")
"""

import math
from typing import List, Optional


class RemimazolamTCIError(Exception):
    """Base exception for all remimazolam TCI engine errors."""
    pass


# ============================================================================
# Model Errors
# ============================================================================

class ModelError(RemimazolamTCIError):
    """Base exception for model-related errors."""
    pass


class ValidationError(ModelError):
    """
    Exception raised when an input is outside its accepted range.

    Inputs are never clamped silently; the current call fails instead.

    Examples:
        - Patient age outside 18-100 years
        - Dose event with negative bolus
        - Effect-site input series with non-increasing time points
    """
    pass


class SafetyError(ModelError):
    """
    Exception raised when a computed physiological output leaves its safe band.

    Examples:
        - ke0 outside the configured band after all fallbacks
        - Derived volume or clearance that is not strictly positive
    """

    def __init__(self, message: str, value: Optional[float] = None,
                 band: Optional[tuple] = None):
        super().__init__(message)
        self.value = value
        self.band = band


# ============================================================================
# Numerical Errors
# ============================================================================

class NumericalError(RemimazolamTCIError):
    """Base exception for numerical method errors."""
    pass


class NumericIntegrationFailure(NumericalError):
    """
    Exception raised when the adaptive integrator cannot finish a sub-interval.

    Callers are expected to retry the sub-interval with the fixed-step RK4
    integrator.

    Examples:
        - Step size fell below the machine-epsilon scaled floor
        - Maximum number of steps per output interval exceeded
        - Non-finite derivative
    """

    def __init__(
        self,
        message: str,
        t_start: Optional[float] = None,
        t_end: Optional[float] = None,
        time: Optional[float] = None,
        step_size: Optional[float] = None,
        reason: str = "step_size"
    ):
        super().__init__(message)
        self.t_start = t_start
        self.t_end = t_end
        self.time = time
        self.step_size = step_size
        self.reason = reason


class RootFindingFailure(NumericalError):
    """
    Exception raised when every exact ke0 root-finding strategy failed.

    Examples:
        - No sign change in any bracket
        - Root found outside the validation band
    """

    def __init__(self, message: str, attempts: Optional[List] = None):
        super().__init__(message)
        self.attempts = list(attempts or [])


class CubicRootError(NumericalError):
    """
    Exception raised when the characteristic polynomial has no valid real roots.

    Complex roots cannot occur for positive rate constants, so this marks a
    defect in the inputs rather than a recoverable condition.
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(RemimazolamTCIError):
    """
    Exception raised for configuration errors.

    Examples:
        - Unknown configuration section or key
        - Tolerance that is not positive
        - Safe band with lower bound above upper bound
    """
    pass


# ============================================================================
# Helper Functions
# ============================================================================

def validate_finite(value: float, name: str = "value") -> None:
    """
    Validate that a value is a finite number.

    Raises:
        ValidationError: If value is NaN or Inf
    """
    if value is None or math.isnan(value) or math.isinf(value):
        raise ValidationError(f"{name} is NaN or Inf: {value}")


def validate_positive(value: float, name: str = "value") -> None:
    """
    Validate that a value is finite and strictly positive.

    Raises:
        ValidationError: If value is not finite or not > 0
    """
    validate_finite(value, name)
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def validate_range(
    value: float,
    min_value: float,
    max_value: float,
    name: str = "value",
    unit: str = ""
) -> None:
    """
    Validate that a value lies in [min_value, max_value].

    Raises:
        ValidationError: If value is not finite or out of range
    """
    validate_finite(value, name)
    if not (min_value <= value <= max_value):
        suffix = f" {unit}" if unit else ""
        raise ValidationError(
            f"Invalid {name}: {value}. Must be between {min_value} and {max_value}{suffix}."
        )


def validate_concentration(
    concentration: float,
    name: str = "concentration",
    min_value: float = 0.0,
    max_value: float = 100.0
) -> None:
    """
    Validate a drug concentration (μg/mL).

    Raises:
        ValidationError: If concentration is invalid
    """
    validate_finite(concentration, name)
    if not (min_value <= concentration <= max_value):
        raise ValidationError(
            f"{name} out of valid range [{min_value}, {max_value}]: {concentration}"
        )
