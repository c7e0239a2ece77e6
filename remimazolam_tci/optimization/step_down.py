"""
Step-Down Maintenance Protocol
==============================

After induction, the continuous rate is reduced whenever the predicted
effect-site concentration climbs above the target band.

State machine (per simulated time point):
    STABLE     --[Ce >= ratio·target AND interval elapsed AND rate > floor]-->
               rate := max(floor, rate·factor), enter COOL_DOWN
    COOL_DOWN  --[interval elapsed since last reduction]--> STABLE

A rate change alters the whole trajectory after it, so the timeline is
re-simulated from t=0 after every reduction until no further trigger is
found (or the reduction cap is reached).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models.pharmacodynamics.effect_site import calculate_effect_site_vhac
from ..models.pharmacokinetics.masui_model import PKParameters, RateConstants
from ..simulation.dosing import DosingSchedule, TIME_EPSILON, time_grid
from ..simulation.integrator import integrate_with_fallback
from ..utils.config import EngineConfig
from ..utils.diagnostics import (
    DiagnosticCategory, DiagnosticSeverity, DiagnosticSink, ensure_sink
)
from ..utils.exceptions import validate_positive, validate_range
from ..utils.logger import get_logger
from ..utils.metrics import ProtocolPerformance, evaluate_protocol_performance

logger = get_logger(__name__)

SOURCE = "StepDownProtocol"


class ProtocolState(Enum):
    """Step-down controller state."""
    STABLE = "stable"
    COOL_DOWN = "cool_down"


@dataclass(frozen=True)
class DosageAdjustment:
    """
    One rate reduction.

    Attributes:
        time: When the reduction takes effect (min)
        old_rate: Rate before (mg/kg/hr)
        new_rate: Rate after (mg/kg/hr)
        ce_at_event: Ce that triggered the reduction (μg/mL)
        adjustment_number: 1-based sequence number
    """
    time: float
    old_rate: float
    new_rate: float
    ce_at_event: float
    adjustment_number: int

    def to_dict(self) -> Dict:
        return {
            'time': self.time,
            'old_rate': self.old_rate,
            'new_rate': self.new_rate,
            'ce_at_event': self.ce_at_event,
            'adjustment_number': self.adjustment_number,
        }


@dataclass(frozen=True)
class ScheduleEntry:
    """One line of a dosing schedule for display."""
    time: float
    action: str          # 'bolus', 'start_continuous' or 'adjustment'
    bolus: float = 0.0
    rate: float = 0.0
    description: str = ""


@dataclass
class ProtocolResult:
    """
    Outcome of a step-down protocol run.

    Attributes:
        target_ce: Target Ce (μg/mL)
        bolus: Induction bolus (mg)
        initial_rate: Starting continuous rate (mg/kg/hr)
        times: Time points (min)
        plasma_concentrations: Cp (μg/mL)
        effect_site_concentrations: Ce (μg/mL)
        rates: Rate in force at each time point (mg/kg/hr)
        states: Controller state at each time point
        adjustments: Rate reductions in time order
        performance: Metrics over the maintenance window
        simulations: Forward simulations run
        method: Integrator(s) used by the final simulation
    """
    target_ce: float
    bolus: float
    initial_rate: float
    times: np.ndarray
    plasma_concentrations: np.ndarray
    effect_site_concentrations: np.ndarray
    rates: np.ndarray
    states: List[ProtocolState]
    adjustments: List[DosageAdjustment]
    performance: ProtocolPerformance
    simulations: int
    method: str
    schedule: List[ScheduleEntry] = field(default_factory=list)

    @property
    def final_rate(self) -> float:
        return float(self.rates[-1])


def generate_protocol_schedule(
    bolus: float,
    initial_rate: float,
    adjustments: Sequence[DosageAdjustment]
) -> List[ScheduleEntry]:
    """Ordered schedule: bolus, start of the infusion, then each reduction."""
    entries = []
    if bolus > 0:
        entries.append(ScheduleEntry(0.0, 'bolus', bolus=bolus,
                                     description=f"Induction bolus {bolus:.1f} mg"))
    entries.append(ScheduleEntry(0.0, 'start_continuous', rate=initial_rate,
                                 description=f"Start infusion {initial_rate:.3f} mg/kg/hr"))
    for adjustment in adjustments:
        entries.append(ScheduleEntry(
            adjustment.time, 'adjustment', rate=adjustment.new_rate,
            description=(
                f"Reduce {adjustment.old_rate:.3f} -> {adjustment.new_rate:.3f} mg/kg/hr "
                f"(Ce {adjustment.ce_at_event:.3f} μg/mL)"
            ),
        ))
    return entries


class StepDownProtocol:
    """
    Generates a step-down maintenance protocol for a target Ce.

    Example:
        >>> protocol = StepDownProtocol(pk, rate_constants, ke0=0.22, weight=70)
        >>> result = protocol.generate(target_ce=1.0, bolus=5.0, initial_rate=1.5)
        >>> [a.time for a in result.adjustments]
    """

    def __init__(
        self,
        pk: PKParameters,
        rate_constants: RateConstants,
        ke0: float,
        weight: float,
        config: Optional[EngineConfig] = None,
        sink: Optional[DiagnosticSink] = None
    ):
        validate_positive(ke0, "ke0")
        self.pk = pk
        self.rate_constants = rate_constants
        self.ke0 = ke0
        self.weight = weight
        self.config = config or EngineConfig()
        self.sink = ensure_sink(sink)

    def _simulate(self, bolus: float, rate_changes: List[Tuple[float, float]],
                  times: np.ndarray):
        schedule = DosingSchedule.from_protocol(bolus, rate_changes, self.weight)
        integration = integrate_with_fallback(
            self.rate_constants, self.pk.v1, schedule, times,
            config=self.config.integrator, sink=self.sink
        )
        cp = integration.plasma_concentrations
        ce = calculate_effect_site_vhac(cp, times, self.ke0)
        return cp, ce, integration.stats.method

    def generate(self, target_ce: float, bolus: float, initial_rate: float) -> ProtocolResult:
        """
        Run the step-down controller.

        Args:
            target_ce: Target Ce (μg/mL)
            bolus: Induction bolus at t=0 (mg)
            initial_rate: Starting continuous rate (mg/kg/hr)

        Returns:
            ProtocolResult

        Raises:
            ValidationError: On invalid inputs
        """
        cfg = self.config.step_down
        validate_positive(target_ce, "target Ce")
        validate_range(bolus, 0.0, 100.0, name="bolus", unit="mg")
        validate_range(initial_rate, 0.0, 20.0, name="initial rate", unit="mg/kg/hr")

        times = time_grid(cfg.duration, cfg.time_step)
        threshold = cfg.upper_threshold_ratio * target_ce
        rate_changes: List[Tuple[float, float]] = [(0.0, initial_rate)]
        adjustments: List[DosageAdjustment] = []
        last_adjustment = -cfg.adjustment_interval
        simulations = 0

        while True:
            cp, ce, method = self._simulate(bolus, rate_changes, times)
            simulations += 1

            current_rate = rate_changes[-1][1]
            trigger = None
            for i, t in enumerate(times):
                if t <= last_adjustment + TIME_EPSILON:
                    continue
                if (ce[i] >= threshold
                        and t - last_adjustment >= cfg.adjustment_interval - TIME_EPSILON
                        and current_rate > cfg.minimum_rate):
                    trigger = i
                    break

            if trigger is None:
                break
            if len(adjustments) >= cfg.max_adjustments:
                logger.warning(f"Step-down stopped at the {cfg.max_adjustments}-reduction cap")
                self.sink.report(
                    DiagnosticCategory.PROTOCOL,
                    "Step-down protocol reached its reduction cap",
                    source=SOURCE,
                    severity=DiagnosticSeverity.LOW,
                    max_adjustments=cfg.max_adjustments,
                    time=float(times[trigger]),
                )
                break

            t_event = float(times[trigger])
            new_rate = max(cfg.minimum_rate, current_rate * cfg.reduction_factor)
            adjustment = DosageAdjustment(
                time=t_event,
                old_rate=current_rate,
                new_rate=new_rate,
                ce_at_event=float(ce[trigger]),
                adjustment_number=len(adjustments) + 1,
            )
            adjustments.append(adjustment)
            rate_changes.append((t_event, new_rate))
            last_adjustment = t_event
            logger.debug(
                f"Adjustment {adjustment.adjustment_number} at {t_event:.1f} min: "
                f"{current_rate:.3f} -> {new_rate:.3f} mg/kg/hr (Ce {adjustment.ce_at_event:.3f})"
            )
            self.sink.report(
                DiagnosticCategory.PROTOCOL,
                "Infusion rate reduced",
                source=SOURCE,
                resolved=True,
                **adjustment.to_dict(),
            )

        rates = self._rate_series(times, rate_changes)
        states = self._state_series(times, adjustments, cfg.adjustment_interval)
        performance = evaluate_protocol_performance(
            times, ce, target_ce,
            total_adjustments=len(adjustments),
            maintenance_start=cfg.maintenance_start,
            band=cfg.accuracy_band,
            rate_values=rates,
            weight=self.weight,
            bolus_total=bolus,
        )
        logger.info(
            f"Step-down protocol: {len(adjustments)} adjustments, final Ce "
            f"{performance.final_ce:.3f} μg/mL, accuracy {performance.target_accuracy:.1f}%"
        )

        return ProtocolResult(
            target_ce=target_ce,
            bolus=bolus,
            initial_rate=initial_rate,
            times=times,
            plasma_concentrations=cp,
            effect_site_concentrations=ce,
            rates=rates,
            states=states,
            adjustments=adjustments,
            performance=performance,
            simulations=simulations,
            method=method,
            schedule=generate_protocol_schedule(bolus, initial_rate, adjustments),
        )

    @staticmethod
    def _rate_series(times: np.ndarray, rate_changes: List[Tuple[float, float]]) -> np.ndarray:
        rates = np.empty_like(times)
        for i, t in enumerate(times):
            rate = 0.0
            for change_time, change_rate in rate_changes:
                if change_time <= t + TIME_EPSILON:
                    rate = change_rate
            rates[i] = rate
        return rates

    @staticmethod
    def _state_series(times: np.ndarray, adjustments: Sequence[DosageAdjustment],
                      interval: float) -> List[ProtocolState]:
        states = []
        for t in times:
            state = ProtocolState.STABLE
            for adjustment in adjustments:
                if adjustment.time - TIME_EPSILON <= t < adjustment.time + interval - TIME_EPSILON:
                    state = ProtocolState.COOL_DOWN
            states.append(state)
        return states
