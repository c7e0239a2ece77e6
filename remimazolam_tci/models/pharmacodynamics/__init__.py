"""
Pharmacodynamic link: ke0 and effect-site concentration.
"""

from .ke0_solver import Ke0Solver, Ke0Result, Ke0Method, regression_ke0
from .effect_site import (
    calculate_effect_site,
    calculate_effect_site_vhac,
    calculate_effect_site_euler,
    calculate_effect_site_discrete,
)

__all__ = [
    "Ke0Solver",
    "Ke0Result",
    "Ke0Method",
    "regression_ke0",
    "calculate_effect_site",
    "calculate_effect_site_vhac",
    "calculate_effect_site_euler",
    "calculate_effect_site_discrete",
]
