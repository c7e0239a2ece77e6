"""
Monitoring Simulation
=====================

Forward simulation of plasma and effect-site concentrations for a list of
dose events: the compartment system is integrated on a fine grid (Adams
with RK4 fallback) and Ce follows from Cp by the VHAC method.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from .dosing import DoseEvent, DosingSchedule, time_grid
from .integrator import (
    INTEGRATORS, IntegrationStats, integrate_schedule, integrate_with_fallback
)
from ..models.pharmacodynamics.effect_site import calculate_effect_site_vhac
from ..models.pharmacokinetics.masui_model import PKParameters, RateConstants
from ..utils.config import EngineConfig
from ..utils.diagnostics import (
    DiagnosticCategory, DiagnosticSeverity, DiagnosticSink, ensure_sink
)
from ..utils.exceptions import ValidationError
from ..utils.logger import get_logger, SimulationLogger

logger = get_logger(__name__)

# Simulated time after the last dose event when no duration is given (min)
DEFAULT_TAIL = 60.0


@dataclass
class SimulationResult:
    """
    Concentration time courses of one simulation.

    Attributes:
        times: Output times (min)
        plasma_concentrations: Cp (μg/mL)
        effect_site_concentrations: Ce (μg/mL)
        masses: Compartment masses (n, 3) in mg
        ke0: Effect-site rate constant used (1/min)
        method: Integrator(s) that produced the result
        stats: Integration counters
    """
    times: np.ndarray
    plasma_concentrations: np.ndarray
    effect_site_concentrations: np.ndarray
    masses: np.ndarray
    ke0: float
    method: str
    stats: IntegrationStats

    @property
    def max_plasma_concentration(self) -> float:
        return float(np.max(self.plasma_concentrations))

    @property
    def max_effect_site_concentration(self) -> float:
        return float(np.max(self.effect_site_concentrations))

    @property
    def time_to_peak_effect(self) -> float:
        return float(self.times[int(np.argmax(self.effect_site_concentrations))])

    def concentrations_at(self, t: float) -> tuple:
        """(Cp, Ce) at time t, linearly interpolated between outputs."""
        cp = float(np.interp(t, self.times, self.plasma_concentrations))
        ce = float(np.interp(t, self.times, self.effect_site_concentrations))
        return cp, ce

    def per_minute(self) -> List[Dict[str, float]]:
        """Samples at whole minutes."""
        samples = []
        for i, t in enumerate(self.times):
            if abs(t - round(t)) < 1e-9:
                samples.append({
                    'time': float(round(t)),
                    'cp': float(self.plasma_concentrations[i]),
                    'ce': float(self.effect_site_concentrations[i]),
                })
        return samples


@dataclass(frozen=True)
class MethodComparison:
    """Differences between one integrator and the odeint reference."""
    method: str
    max_abs_cp_difference: float
    max_rel_cp_difference: float
    max_abs_ce_difference: float
    steps: int
    function_evaluations: int


class MonitoringSimulator:
    """
    Simulates Cp and Ce for arbitrary dose events.

    Example:
        >>> simulator = MonitoringSimulator(pk, rate_constants, ke0=0.22, weight=70)
        >>> result = simulator.run([DoseEvent(0, bolus=6, continuous_rate=1.0)], duration=60)
        >>> result.max_effect_site_concentration
    """

    def __init__(
        self,
        pk: PKParameters,
        rate_constants: RateConstants,
        ke0: float,
        weight: float,
        config: Optional[EngineConfig] = None,
        sink: Optional[DiagnosticSink] = None,
        sim_logger: Optional[SimulationLogger] = None
    ):
        self.pk = pk
        self.rate_constants = rate_constants
        self.ke0 = ke0
        self.weight = weight
        self.config = config or EngineConfig()
        self.sink = ensure_sink(sink)
        self.sim_logger = sim_logger

    def _grid(self, schedule: DosingSchedule, duration: Optional[float],
              time_step: Optional[float]) -> np.ndarray:
        if duration is None:
            duration = schedule.last_event_time + DEFAULT_TAIL
        if duration <= 0:
            raise ValidationError(f"duration must be positive, got {duration}")
        return time_grid(duration, time_step or self.config.integrator.output_step)

    def run(
        self,
        dose_events: Sequence[DoseEvent],
        duration: Optional[float] = None,
        time_step: Optional[float] = None
    ) -> SimulationResult:
        """
        Simulate a list of dose events from t=0.

        Args:
            dose_events: Dose events (any order)
            duration: Simulated time (min); last event + 60 min if None
            time_step: Output spacing (min); config output_step if None

        Returns:
            SimulationResult

        Raises:
            ValidationError: On invalid events or grid
        """
        schedule = DosingSchedule(dose_events, self.weight)
        times = self._grid(schedule, duration, time_step)

        integration = integrate_with_fallback(
            self.rate_constants, self.pk.v1, schedule, times,
            config=self.config.integrator, sink=self.sink
        )
        cp = integration.plasma_concentrations
        ce = calculate_effect_site_vhac(cp, times, self.ke0)

        result = SimulationResult(
            times=times,
            plasma_concentrations=cp,
            effect_site_concentrations=ce,
            masses=integration.masses,
            ke0=self.ke0,
            method=integration.stats.method,
            stats=integration.stats,
        )
        self._check_limits(result)

        if self.sim_logger is not None:
            self.sim_logger.log_simulation(
                duration=float(times[-1]),
                max_cp=result.max_plasma_concentration,
                max_ce=result.max_effect_site_concentration,
                method=result.method,
                steps=result.stats.steps,
                rejected=result.stats.rejected_steps,
            )
        return result

    def _check_limits(self, result: SimulationResult) -> None:
        limit = self.config.safety.max_plasma_concentration
        if result.max_plasma_concentration > limit:
            logger.warning(
                f"Plasma concentration {result.max_plasma_concentration:.3f} μg/mL "
                f"exceeds the {limit} μg/mL limit"
            )
            self.sink.report(
                DiagnosticCategory.SAFETY,
                "Simulated plasma concentration exceeds the safety limit",
                source="MonitoringSimulator",
                severity=DiagnosticSeverity.HIGH,
                max_cp=result.max_plasma_concentration,
                limit=limit,
            )

    def compare_methods(
        self,
        dose_events: Sequence[DoseEvent],
        duration: Optional[float] = None,
        time_step: Optional[float] = None
    ) -> Dict[str, MethodComparison]:
        """
        Run every integrator on the same schedule and compare with odeint.

        Returns:
            Mapping of integrator name to its MethodComparison
        """
        schedule = DosingSchedule(dose_events, self.weight)
        times = self._grid(schedule, duration, time_step)

        curves = {}
        for name, integrator_cls in INTEGRATORS.items():
            integrator = integrator_cls(
                self.rate_constants, self.pk.v1, self.config.integrator, self.sink
            )
            integration = integrate_schedule([integrator], schedule, times, sink=self.sink)
            cp = integration.plasma_concentrations
            curves[name] = (cp, calculate_effect_site_vhac(cp, times, self.ke0), integration.stats)

        ref_cp, ref_ce, _ = curves['odeint']
        scale = max(float(np.max(np.abs(ref_cp))), np.finfo(float).tiny)

        comparison = {}
        for name, (cp, ce, stats) in curves.items():
            abs_cp = float(np.max(np.abs(cp - ref_cp)))
            comparison[name] = MethodComparison(
                method=name,
                max_abs_cp_difference=abs_cp,
                max_rel_cp_difference=abs_cp / scale,
                max_abs_ce_difference=float(np.max(np.abs(ce - ref_ce))),
                steps=stats.steps,
                function_evaluations=stats.function_evaluations,
            )
            logger.debug(
                f"{name:>7}: max |ΔCp| {abs_cp:.3e} μg/mL, "
                f"{stats.steps} steps, {stats.function_evaluations} evaluations"
            )
        return comparison
