"""
Simulation module for the Remimazolam TCI Engine
=================================================

Contains:
    - dosing: Dose events, schedules and the unit convention
    - integrator: Adams, RK4 and odeint compartment integrators
    - monitoring: Cp/Ce simulation and integrator comparison
    - session: Per-patient session with the ke0 cache
"""

from .dosing import DoseEvent, DosingSchedule
from .integrator import (
    AdamsIntegrator,
    RK4Integrator,
    OdeintIntegrator,
    IntegrationResult,
    integrate_with_fallback,
    solve_reference,
)
from .monitoring import MonitoringSimulator, SimulationResult
from .session import TCISession, Ke0Cache

__all__ = [
    "DoseEvent",
    "DosingSchedule",
    "AdamsIntegrator",
    "RK4Integrator",
    "OdeintIntegrator",
    "IntegrationResult",
    "integrate_with_fallback",
    "solve_reference",
    "MonitoringSimulator",
    "SimulationResult",
    "TCISession",
    "Ke0Cache",
]
