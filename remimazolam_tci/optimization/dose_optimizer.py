"""
Induction Dose Optimizer
========================

Finds the continuous infusion rate that, after a fixed induction bolus at
t=0, brings the effect-site concentration to a target at a target time.

Search:
    1. Category of the target fixes the bolus factor and static rate bounds
    2. Dynamic bounds around the steady-state rate, intersected with (1)
    3. Coarse grid across the bounds
    4. Fine grid around the best coarse rate
    5. Bisection polish on the bracket where Ce crosses the target

The minimum absolute error wins; ties go to the smaller rate.

Steady-state rate (units as in simulation.dosing):
    rate_ss [mg/kg/hr] = target [mg/L] · CL [L/hr] / weight [kg]
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..models.pharmacodynamics.effect_site import calculate_effect_site_vhac
from ..models.pharmacokinetics.masui_model import PKParameters, RateConstants
from ..simulation.dosing import DoseEvent, DosingSchedule, clearance_l_per_hr, time_grid
from ..simulation.integrator import integrate_with_fallback
from ..utils.config import EngineConfig, SafetyLimits
from ..utils.diagnostics import (
    DiagnosticCategory, DiagnosticSeverity, DiagnosticSink, ensure_sink
)
from ..utils.exceptions import validate_positive, validate_range
from ..utils.logger import get_logger, SimulationLogger

logger = get_logger(__name__)

SOURCE = "DoseOptimizer"

# Lower limit of the dynamic search bounds (mg/kg/hr)
MIN_SEARCH_RATE = 0.01


class ConcentrationCategory(Enum):
    """
    Target Ce categories.

    Each member carries (label, upper Ce limit, bolus factor, rate bounds).
    """
    ULTRA_LOW = ('ultraLow', 0.5, 0.3, (0.05, 3.0))
    LOW = ('low', 1.5, 0.6, (0.1, 8.0))
    MEDIUM = ('medium', 3.0, 0.8, (0.2, 12.0))
    HIGH = ('high', math.inf, 1.0, (0.5, 15.0))

    def __init__(self, label: str, upper: float, bolus_factor: float,
                 rate_bounds: Tuple[float, float]):
        self.label = label
        self.upper = upper
        self.bolus_factor = bolus_factor
        self.rate_bounds = rate_bounds

    @classmethod
    def for_target(cls, target_ce: float) -> 'ConcentrationCategory':
        for category in cls:
            if target_ce <= category.upper:
                return category
        return cls.HIGH


def recommended_bolus(
    target_ce: float,
    bolus_range: Tuple[float, float] = (2.0, 7.0),
    max_bolus: float = 10.0
) -> float:
    """
    Induction bolus for a target: low + (high - low)·factor, capped.

    With the default range this is min(2 + 5·factor, 10) mg.
    """
    factor = ConcentrationCategory.for_target(target_ce).bolus_factor
    low, high = bolus_range
    return min(low + (high - low) * factor, max_bolus)


def steady_state_rate(target_ce: float, pk: PKParameters, weight: float) -> float:
    """Infusion rate (mg/kg/hr) that holds Cp at target_ce at steady state."""
    return target_ce * clearance_l_per_hr(pk.cl) / weight


def search_bounds(
    target_ce: float,
    pk: PKParameters,
    weight: float,
    max_rate: float = 20.0
) -> Tuple[float, float]:
    """
    Rate search bounds (mg/kg/hr).

        dynamic = [max(0.1·ss, 0.01), min(5·ss, max_rate)]
        bounds  = dynamic ∩ category static bounds

    Falls back to the static bounds when the intersection is empty.
    """
    ss = steady_state_rate(target_ce, pk, weight)
    static_low, static_high = ConcentrationCategory.for_target(target_ce).rate_bounds
    low = max(0.1 * ss, MIN_SEARCH_RATE, static_low)
    high = min(5.0 * ss, max_rate, static_high)
    if low >= high:
        return static_low, min(static_high, max_rate)
    return low, high


def validate_safety_limits(
    bolus: float,
    rate: float,
    predicted_ce: float,
    limits: Optional[SafetyLimits] = None
) -> List[str]:
    """Warnings for doses or concentrations beyond the safety limits."""
    limits = limits or SafetyLimits()
    warnings = []
    if bolus > limits.max_bolus:
        warnings.append(f"Bolus {bolus:.2f} mg exceeds the {limits.max_bolus} mg limit")
    if rate > limits.max_continuous_rate:
        warnings.append(
            f"Rate {rate:.3f} mg/kg/hr exceeds the {limits.max_continuous_rate} mg/kg/hr limit"
        )
    if predicted_ce > limits.max_plasma_concentration:
        warnings.append(
            f"Predicted Ce {predicted_ce:.3f} μg/mL exceeds the "
            f"{limits.max_plasma_concentration} μg/mL limit"
        )
    return warnings


@dataclass
class OptimizationResult:
    """
    Outcome of an induction dose optimization.

    Attributes:
        target_ce: Target effect-site concentration (μg/mL)
        target_time: Time at which the target should be reached (min)
        bolus: Induction bolus (mg)
        rate: Continuous rate (mg/kg/hr)
        predicted_ce: Ce at target_time for (bolus, rate)
        absolute_error: |predicted - target| (μg/mL)
        relative_error: absolute_error / target (0 for a zero target)
        within_target: relative_error <= tolerance
        converged: relative_error <= tolerance, the convergence verdict
        category: Target category label
        bounds: Rate search bounds
        evaluations: Forward simulations performed
        zero_target_bypass: True when the search was skipped for a zero target
        budget_exhausted: True when the search stopped at max_evaluations
        warnings: Safety warnings
    """
    target_ce: float
    target_time: float
    bolus: float
    rate: float
    predicted_ce: float
    absolute_error: float
    relative_error: float
    within_target: bool
    converged: bool
    category: str
    bounds: Tuple[float, float]
    evaluations: int
    zero_target_bypass: bool = False
    budget_exhausted: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'target_ce': self.target_ce,
            'target_time': self.target_time,
            'bolus': self.bolus,
            'rate': self.rate,
            'predicted_ce': self.predicted_ce,
            'absolute_error': self.absolute_error,
            'relative_error': self.relative_error,
            'within_target': self.within_target,
            'converged': self.converged,
            'category': self.category,
            'bounds': list(self.bounds),
            'evaluations': self.evaluations,
            'zero_target_bypass': self.zero_target_bypass,
            'budget_exhausted': self.budget_exhausted,
            'warnings': list(self.warnings),
        }


class DoseOptimizer:
    """
    Bolus plus continuous-rate optimizer for reaching a target Ce.

    Example:
        >>> optimizer = DoseOptimizer(pk, rate_constants, ke0=0.22, weight=70)
        >>> result = optimizer.optimize(target_ce=1.0, target_time=20.0)
        >>> result.converged
        True
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
        validate_positive(ke0, "ke0")
        validate_positive(weight, "weight")
        self.pk = pk
        self.rate_constants = rate_constants
        self.ke0 = ke0
        self.weight = weight
        self.config = config or EngineConfig()
        self.sink = ensure_sink(sink)
        self.sim_logger = sim_logger
        self.evaluations = 0
        self._budget_exhausted = False

    def predict_ce(self, bolus: float, rate: float, target_time: float) -> float:
        """
        Ce at target_time after a bolus and a constant rate started at t=0.

        Each call is one forward simulation and counts as an evaluation.
        """
        schedule = DosingSchedule([DoseEvent(0.0, bolus=bolus, continuous_rate=rate)], self.weight)
        times = time_grid(target_time, self.config.optimizer.time_step)
        integration = integrate_with_fallback(
            self.rate_constants, self.pk.v1, schedule, times,
            config=self.config.integrator, sink=self.sink
        )
        ce = calculate_effect_site_vhac(integration.plasma_concentrations, times, self.ke0)
        self.evaluations += 1
        return float(ce[-1])

    def optimize(
        self,
        target_ce: float,
        target_time: Optional[float] = None,
        bolus_mg: Optional[float] = None
    ) -> OptimizationResult:
        """
        Search the continuous rate for a target Ce at target_time.

        Args:
            target_ce: Target effect-site concentration (μg/mL), >= 0
            target_time: Time to reach it (min); config default if None
            bolus_mg: Induction bolus (mg); category recommendation if None

        Returns:
            OptimizationResult; non-convergence is reported there, not raised

        Raises:
            ValidationError: On invalid target, time or bolus
        """
        cfg = self.config.optimizer
        limits = self.config.safety
        target_time = cfg.target_time if target_time is None else target_time
        validate_range(target_ce, 0.0, limits.max_plasma_concentration,
                       name="target Ce", unit="μg/mL")
        validate_range(target_time, cfg.time_step, 1440.0, name="target time", unit="min")

        self.evaluations = 0
        self._budget_exhausted = False
        category = ConcentrationCategory.for_target(target_ce)

        if target_ce == 0:
            logger.info("Zero target Ce: no dosing required")
            return OptimizationResult(
                target_ce=0.0, target_time=target_time, bolus=0.0, rate=0.0,
                predicted_ce=0.0, absolute_error=0.0, relative_error=0.0,
                within_target=True, converged=True, category=category.label,
                bounds=(0.0, 0.0), evaluations=0, zero_target_bypass=True,
            )

        if bolus_mg is None:
            bolus = recommended_bolus(target_ce, cfg.bolus_range, limits.max_bolus)
        else:
            validate_range(bolus_mg, 0.0, 100.0, name="bolus", unit="mg")
            bolus = float(bolus_mg)

        bounds = search_bounds(target_ce, self.pk, self.weight, limits.max_continuous_rate)
        logger.debug(
            f"Optimizing target {target_ce} μg/mL at {target_time} min: category "
            f"{category.label}, bolus {bolus:.2f} mg, bounds [{bounds[0]:.3f}, {bounds[1]:.3f}]"
        )

        evaluated: Dict[float, float] = {}

        def evaluate(rate: float) -> Optional[float]:
            if rate in evaluated:
                return evaluated[rate]
            if self.evaluations >= cfg.max_evaluations:
                self._budget_exhausted = True
                return None
            evaluated[rate] = self.predict_ce(bolus, rate, target_time)
            return evaluated[rate]

        # Coarse grid
        low, high = bounds
        for rate in np.linspace(low, high, cfg.coarse_points):
            evaluate(float(rate))
        best_rate = self._best(evaluated, target_ce)

        # Fine grid around the best coarse rate
        coarse_step = (high - low) / (cfg.coarse_points - 1)
        fine_low = max(low, best_rate - cfg.fine_span * coarse_step)
        fine_high = min(high, best_rate + cfg.fine_span * coarse_step)
        for rate in np.linspace(fine_low, fine_high, cfg.fine_points):
            evaluate(float(rate))

        # Bisection polish where Ce crosses the target
        bracket = self._crossing(evaluated, target_ce)
        if bracket is not None:
            below, above = bracket
            for _ in range(cfg.polish_iterations):
                mid = 0.5 * (below + above)
                ce = evaluate(mid)
                if ce is None:
                    break
                if ce < target_ce:
                    below = mid
                else:
                    above = mid

        best_rate = self._best(evaluated, target_ce)
        predicted = evaluated[best_rate]
        absolute_error = abs(predicted - target_ce)
        relative_error = absolute_error / target_ce
        within_target = relative_error <= cfg.tolerance
        converged = within_target

        if self._budget_exhausted:
            self.sink.report(
                DiagnosticCategory.PROTOCOL,
                f"Optimizer stopped at the {cfg.max_evaluations}-evaluation cap",
                source=SOURCE,
                severity=DiagnosticSeverity.LOW,
                evaluations=self.evaluations,
            )
        if not within_target:
            logger.warning(
                f"Optimizer did not reach target {target_ce} μg/mL: best {predicted:.4f} "
                f"at {best_rate:.3f} mg/kg/hr ({relative_error * 100:.1f}% error)"
            )
            self.sink.report(
                DiagnosticCategory.PROTOCOL,
                "Dose optimization did not converge within tolerance",
                source=SOURCE,
                severity=DiagnosticSeverity.MEDIUM,
                target_ce=target_ce,
                predicted_ce=predicted,
                relative_error=relative_error,
                rate=best_rate,
                bounds=bounds,
            )

        warnings = validate_safety_limits(bolus, best_rate, predicted, limits)
        for message in warnings:
            self.sink.report(
                DiagnosticCategory.SAFETY, message, source=SOURCE,
                severity=DiagnosticSeverity.HIGH, bolus=bolus, rate=best_rate,
            )

        result = OptimizationResult(
            target_ce=target_ce,
            target_time=target_time,
            bolus=bolus,
            rate=best_rate,
            predicted_ce=predicted,
            absolute_error=absolute_error,
            relative_error=relative_error,
            within_target=within_target,
            converged=converged,
            category=category.label,
            bounds=bounds,
            evaluations=self.evaluations,
            budget_exhausted=self._budget_exhausted,
            warnings=warnings,
        )

        if self.sim_logger is not None:
            self.sim_logger.log_optimization(
                target=target_ce, bolus=bolus, rate=best_rate, predicted=predicted,
                relative_error=relative_error * 100, converged=converged,
                evaluations=self.evaluations,
            )
        return result

    @staticmethod
    def _best(evaluated: Dict[float, float], target_ce: float) -> float:
        """Rate with the smallest absolute error, the smaller rate on ties."""
        return min(evaluated, key=lambda rate: (abs(evaluated[rate] - target_ce), rate))

    @staticmethod
    def _crossing(evaluated: Dict[float, float], target_ce: float) -> Optional[Tuple[float, float]]:
        """Adjacent evaluated rates (below, above) with Ce on either side of the target."""
        rates = sorted(evaluated)
        for lower, upper in zip(rates, rates[1:]):
            if evaluated[lower] < target_ce <= evaluated[upper]:
                return lower, upper
        return None
