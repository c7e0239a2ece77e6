"""
Models module for the Remimazolam TCI Engine
=============================================

Contains:
    - pharmacokinetics: Patient parameters and the Masui 3-compartment model
    - pharmacodynamics: ke0 solver and effect-site concentration methods
"""

from .pharmacokinetics import PatientParameters, MasuiModel
from .pharmacodynamics import Ke0Solver, calculate_effect_site_vhac

__all__ = ["PatientParameters", "MasuiModel", "Ke0Solver", "calculate_effect_site_vhac"]
