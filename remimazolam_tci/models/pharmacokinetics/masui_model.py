"""
Masui PK Model for Remimazolam
==============================

Implements the three-compartment pharmacokinetic model for remimazolam
following the Masui population covariate model with allometric scaling on
adjusted body weight.

References:
-----------
- Masui K, et al. "Population pharmacokinetics and pharmacodynamics of
  remimazolam in Japanese patients undergoing general anesthesia."
  Journal of Anesthesia. 2022.
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple, Dict

from .base import BasePKModel, PatientParameters
from ...utils.exceptions import ValidationError


@dataclass(frozen=True)
class MasuiParameters:
    """
    Masui model population parameters for remimazolam.

    Attributes:
        theta_1 to theta_10: Covariate model coefficients (θ7 belongs to the
            PD model and is not used here)
        standard_weight: Reference adjusted body weight (kg)
        standard_age: Reference age (years)
        allometric_exponent: Exponent applied to clearances
        t_peak: Time to peak effect-site concentration after a bolus (min)
    """
    theta_1: float = 3.57     # V1 (L)
    theta_2: float = 11.3     # V2 (L)
    theta_3: float = 27.2     # V3 (L)
    theta_4: float = 1.03     # CL (L/min)
    theta_5: float = 1.10     # Q2 (L/min)
    theta_6: float = 0.401    # Q3 (L/min)
    theta_8: float = 0.308    # V3 age coefficient
    theta_9: float = 0.146    # CL sex coefficient
    theta_10: float = -0.184  # CL ASA coefficient

    standard_weight: float = 67.3
    standard_age: float = 54.0
    allometric_exponent: float = 0.75
    t_peak: float = 2.6


@dataclass(frozen=True)
class PKParameters:
    """
    Individual PK parameters derived from demographics.

    Attributes:
        ibw: Ideal body weight (kg)
        abw: Adjusted body weight (kg)
        v1, v2, v3: Compartment volumes (L)
        cl: Elimination clearance (L/min)
        q2, q3: Inter-compartmental clearances (L/min)
    """
    ibw: float
    abw: float
    v1: float
    v2: float
    v3: float
    cl: float
    q2: float
    q3: float

    def __post_init__(self):
        for name in ('abw', 'v1', 'v2', 'v3', 'cl', 'q2', 'q3'):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise ValidationError(f"PK parameter {name} must be positive, got {value}")

    def to_dict(self) -> Dict[str, float]:
        return {
            'IBW': self.ibw, 'ABW': self.abw,
            'V1': self.v1, 'V2': self.v2, 'V3': self.v3,
            'CL': self.cl, 'Q2': self.q2, 'Q3': self.q3,
        }


@dataclass(frozen=True)
class RateConstants:
    """
    First-order rate constants of the 3-compartment model (1/min).

    Attributes:
        k10: Elimination from central
        k12: Central to rapid peripheral
        k13: Central to slow peripheral
        k21: Rapid peripheral to central
        k31: Slow peripheral to central
    """
    k10: float
    k12: float
    k13: float
    k21: float
    k31: float

    def __post_init__(self):
        for name in ('k10', 'k12', 'k13', 'k21', 'k31'):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise ValidationError(f"Rate constant {name} must be positive, got {value}")

    def to_dict(self) -> Dict[str, float]:
        return {
            'k10': self.k10, 'k12': self.k12, 'k13': self.k13,
            'k21': self.k21, 'k31': self.k31,
        }


def derive_pk_parameters(
    patient: PatientParameters,
    params: Optional[MasuiParameters] = None
) -> PKParameters:
    """
    Apply the Masui covariate model.

    Volume Equations:
        V1 = θ1 · ABW/67.3
        V2 = θ2 · ABW/67.3
        V3 = (θ3 + θ8·(age - 54)) · ABW/67.3

    Clearance Equations:
        CL = (θ4 + θ9·sex + θ10·ASA) · (ABW/67.3)^0.75
        Q2 = θ5 · (ABW/67.3)^0.75
        Q3 = θ6 · (ABW/67.3)^0.75

    Args:
        patient: Validated patient demographics
        params: Population parameters (published values if None)

    Returns:
        PKParameters, all strictly positive

    Raises:
        ValidationError: If a derived value is not strictly positive
    """
    p = params or MasuiParameters()

    ibw = patient.ideal_body_weight
    abw = patient.adjusted_body_weight
    size = abw / p.standard_weight
    allometric = size ** p.allometric_exponent

    v1 = p.theta_1 * size
    v2 = p.theta_2 * size
    v3 = (p.theta_3 + p.theta_8 * (patient.age - p.standard_age)) * size

    cl = (p.theta_4 + p.theta_9 * int(patient.sex) + p.theta_10 * int(patient.asa_ps)) * allometric
    q2 = p.theta_5 * allometric
    q3 = p.theta_6 * allometric

    return PKParameters(ibw=ibw, abw=abw, v1=v1, v2=v2, v3=v3, cl=cl, q2=q2, q3=q3)


def derive_rate_constants(pk: PKParameters) -> RateConstants:
    """
    Convert volumes and clearances to rate constants.

        k10 = CL/V1, k12 = Q2/V1, k13 = Q3/V1, k21 = Q2/V2, k31 = Q3/V3
    """
    return RateConstants(
        k10=pk.cl / pk.v1,
        k12=pk.q2 / pk.v1,
        k13=pk.q3 / pk.v1,
        k21=pk.q2 / pk.v2,
        k31=pk.q3 / pk.v3,
    )


class MasuiModel(BasePKModel):
    """
    Masui PK model for remimazolam.

    Bundles the patient, the derived PK parameters and rate constants, and
    the mass-based state-space matrices used by the integrators.

    Mathematical Formulation:
        dA1/dt = R(t) - (k10 + k12 + k13)·A1 + k21·A2 + k31·A3
        dA2/dt = k12·A1 - k21·A2
        dA3/dt = k13·A1 - k31·A3
        Cp = A1 / V1   (mg/L = μg/mL)

    Example:
        >>> patient = PatientParameters(age=45, weight=70, height=170, sex='M')
        >>> model = MasuiModel(patient)
        >>> A, B = model.get_state_space_matrices()
        >>> print(f"A shape: {A.shape}, B shape: {B.shape}")
        A shape: (3, 3), B shape: (3,)
    """

    def __init__(
        self,
        patient: PatientParameters,
        params: Optional[MasuiParameters] = None
    ):
        self.patient = patient
        self.params = params or MasuiParameters()
        self.pk = derive_pk_parameters(patient, self.params)
        self.rate_constants = derive_rate_constants(self.pk)

    def get_rate_constants(self) -> Dict[str, float]:
        return self.rate_constants.to_dict()

    def get_volumes(self) -> Dict[str, float]:
        return {'V1': self.pk.v1, 'V2': self.pk.v2, 'V3': self.pk.v3}

    def get_state_space_matrices(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Get the mass-based state-space matrices.

        A = [-(k10+k12+k13)  k21   k31 ]
            [k12            -k21   0   ]
            [k13             0    -k31 ]

        B = [1, 0, 0]ᵀ  (infusion enters the central compartment, mg/min)

        Returns:
            Tuple of (A_matrix, B_vector)
        """
        return state_space_matrices(self.rate_constants)

    def plasma_concentration(self, central_mass: float) -> float:
        """Convert a central-compartment mass (mg) to concentration (μg/mL)."""
        return central_mass / self.pk.v1


def state_space_matrices(rc: RateConstants) -> Tuple[np.ndarray, np.ndarray]:
    """Mass-based A and B for a set of rate constants."""
    A = np.array([
        [-(rc.k10 + rc.k12 + rc.k13), rc.k21, rc.k31],
        [rc.k12, -rc.k21, 0.0],
        [rc.k13, 0.0, -rc.k31]
    ])
    B = np.array([1.0, 0.0, 0.0])
    return A, B
