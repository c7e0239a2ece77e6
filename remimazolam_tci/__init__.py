"""
Remimazolam Target-Controlled Infusion Engine
==============================================

PK/PD calculation engine for remimazolam TCI based on the Masui
three-compartment model with an effect-site compartment.

Modules:
    - models: Patient demographics, PK parameter derivation, ke0 and
      effect-site calculations
    - simulation: Dose events, compartment integrators, monitoring and the
      per-patient session
    - optimization: Induction dose optimizer and step-down protocol
    - utils: Configuration, logging, diagnostics, exceptions and metrics
"""

__version__ = "0.1.0"
__author__ = "Remimazolam TCI Team"

from .models.pharmacokinetics.base import PatientParameters, Sex, ASAClass
from .simulation.dosing import DoseEvent, DosingSchedule
from .simulation.session import TCISession, Ke0Cache

__all__ = [
    "PatientParameters",
    "Sex",
    "ASAClass",
    "DoseEvent",
    "DosingSchedule",
    "TCISession",
    "Ke0Cache",
]
