"""
Common Base Classes and Utilities for PK/PD Models
===================================================

This module provides the patient description, its validation, body-size
helpers and the base class shared by pharmacokinetic models.
"""

import numpy as np
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Tuple, Dict, Union
from dataclasses import dataclass

from ...utils.exceptions import ValidationError, validate_range


# Accepted clinical ranges (inclusive)
AGE_RANGE = (18.0, 100.0)        # years
WEIGHT_RANGE = (30.0, 200.0)     # kg
HEIGHT_RANGE = (120.0, 220.0)    # cm
BMI_RANGE = (12.0, 50.0)         # kg/m²


class Sex(IntEnum):
    """Sex covariate coding used by the Masui model."""
    MALE = 0
    FEMALE = 1


class ASAClass(IntEnum):
    """ASA physical status covariate coding used by the Masui model."""
    I_II = 0
    III_IV = 1


def _coerce_sex(value: Union[Sex, int, str]) -> Sex:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ('m', 'male'):
            return Sex.MALE
        if normalized in ('f', 'female'):
            return Sex.FEMALE
        raise ValidationError(f"Sex must be 'M'/'male' or 'F'/'female', got {value!r}")
    if isinstance(value, bool) or value not in (0, 1):
        raise ValidationError(f"Sex must be 0 (male) or 1 (female), got {value!r}")
    return Sex(int(value))


def _coerce_asa(value: Union[ASAClass, int]) -> ASAClass:
    if isinstance(value, bool) or value not in (0, 1):
        raise ValidationError(f"ASA class must be 0 (I-II) or 1 (III-IV), got {value!r}")
    return ASAClass(int(value))


@dataclass(frozen=True)
class PatientParameters:
    """
    Patient demographic parameters for PK/PD model individualization.

    Values are validated at construction and never clamped.

    Attributes:
        age: Patient age in years (18-100)
        weight: Total body weight in kg (30-200)
        height: Height in cm (120-220)
        sex: Sex.MALE (0) or Sex.FEMALE (1); 'M'/'F' strings accepted
        asa_ps: ASAClass.I_II (0) or ASAClass.III_IV (1)

    Raises:
        ValidationError: If any value is outside its accepted range
    """
    age: float = 45.0
    weight: float = 70.0
    height: float = 170.0
    sex: Sex = Sex.MALE
    asa_ps: ASAClass = ASAClass.I_II

    def __post_init__(self):
        """Normalize categorical fields and validate ranges."""
        object.__setattr__(self, 'sex', _coerce_sex(self.sex))
        object.__setattr__(self, 'asa_ps', _coerce_asa(self.asa_ps))
        for name in ('age', 'weight', 'height'):
            object.__setattr__(self, name, float(getattr(self, name)))
        validate_patient_parameters(self)

    @property
    def bmi(self) -> float:
        """Body mass index (kg/m²)."""
        height_m = self.height / 100.0
        return self.weight / (height_m ** 2)

    @property
    def ideal_body_weight(self) -> float:
        """Ideal body weight in kg."""
        return calculate_ideal_body_weight(self.height, self.sex)

    @property
    def adjusted_body_weight(self) -> float:
        """Adjusted body weight in kg."""
        return calculate_adjusted_body_weight(self.weight, self.height, self.sex)

    def cache_key(self) -> Tuple[float, float, float, int, int]:
        """Key identifying the demographics for ke0 caching."""
        return (self.age, self.weight, self.height, int(self.sex), int(self.asa_ps))

    def to_dict(self) -> Dict[str, float]:
        return {
            'age': self.age,
            'weight': self.weight,
            'height': self.height,
            'sex': int(self.sex),
            'asa_ps': int(self.asa_ps),
        }


class BasePKModel(ABC):
    """
    Abstract base class for pharmacokinetic models.

    Models expose a mass-based state-space form so that integrators stay
    independent of the covariate model used.
    """

    @abstractmethod
    def get_state_space_matrices(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Get state-space representation matrices A and B.

        For the 3-compartment model: ẋ = Ax + Bu
        where x = [A1, A2, A3] (drug masses, mg) and u is mg/min.

        Returns:
            Tuple of (A, B):
                - A: 3x3 state transition matrix (1/min)
                - B: 3-vector input matrix
        """
        pass

    @abstractmethod
    def get_rate_constants(self) -> Dict[str, float]:
        """
        Get all rate constants as a dictionary.

        Returns:
            Dictionary containing k10, k12, k13, k21, k31
        """
        pass

    @abstractmethod
    def get_volumes(self) -> Dict[str, float]:
        """
        Get compartment volumes as a dictionary.

        Returns:
            Dictionary containing V1, V2, V3
        """
        pass


def validate_patient_parameters(patient: PatientParameters) -> None:
    """
    Validate patient parameters are within accepted clinical ranges.

    Args:
        patient: PatientParameters object

    Raises:
        ValidationError: If parameters are out of valid ranges
    """
    validate_range(patient.age, *AGE_RANGE, name="age", unit="years")
    validate_range(patient.weight, *WEIGHT_RANGE, name="weight", unit="kg")
    validate_range(patient.height, *HEIGHT_RANGE, name="height", unit="cm")
    validate_range(patient.bmi, *BMI_RANGE, name="BMI", unit="kg/m²")
    _coerce_sex(patient.sex)
    _coerce_asa(patient.asa_ps)


def calculate_ideal_body_weight(height: float, sex: Union[Sex, int]) -> float:
    """
    Calculate ideal body weight.

    IBW = 45.4 + 0.89·(height - 152.4) + 4.5·(1 - sex)

    Args:
        height: Height (cm)
        sex: 0 for male, 1 for female

    Returns:
        Ideal body weight in kg
    """
    return 45.4 + 0.89 * (height - 152.4) + 4.5 * (1 - int(sex))


def calculate_adjusted_body_weight(
    weight: float,
    height: float,
    sex: Union[Sex, int]
) -> float:
    """
    Calculate adjusted body weight.

    ABW = IBW + 0.4·(TBW - IBW)

    Args:
        weight: Total body weight (kg)
        height: Height (cm)
        sex: 0 for male, 1 for female

    Returns:
        Adjusted body weight in kg
    """
    ibw = calculate_ideal_body_weight(height, sex)
    return ibw + 0.4 * (weight - ibw)
