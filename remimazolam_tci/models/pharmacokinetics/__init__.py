"""
Pharmacokinetic models.

Contains:
    - base: PatientParameters, validation and body-size helpers
    - masui_model: Masui covariate model, rate constants, state-space form
"""

from .base import (
    PatientParameters,
    Sex,
    ASAClass,
    BasePKModel,
    validate_patient_parameters,
    calculate_ideal_body_weight,
    calculate_adjusted_body_weight,
)
from .masui_model import (
    MasuiModel,
    MasuiParameters,
    PKParameters,
    RateConstants,
    derive_pk_parameters,
    derive_rate_constants,
)

__all__ = [
    "PatientParameters",
    "Sex",
    "ASAClass",
    "BasePKModel",
    "validate_patient_parameters",
    "calculate_ideal_body_weight",
    "calculate_adjusted_body_weight",
    "MasuiModel",
    "MasuiParameters",
    "PKParameters",
    "RateConstants",
    "derive_pk_parameters",
    "derive_rate_constants",
]
