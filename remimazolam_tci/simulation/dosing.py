"""
Dose Events and Dosing Schedules
================================

Unit convention (used everywhere in the engine):
    - time: minutes
    - bolus: mg, added instantly to the central compartment mass
    - continuous infusion: mg/kg/hr at the interface, mg/min inside the
      derivative:  R [mg/min] = rate [mg/kg/hr] · weight [kg] / 60
    - clearance: L/min inside the model, L/hr only for rate estimates:
      CL [L/hr] = CL [L/min] · 60
    - concentration: mg/L = μg/mL  (Cp = A1 / V1)
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..utils.exceptions import ValidationError, validate_range


# Accepted dosing ranges
BOLUS_RANGE = (0.0, 100.0)        # mg
RATE_RANGE = (0.0, 20.0)          # mg/kg/hr
TIME_RANGE = (0.0, 1440.0)        # min

# Times closer than this are treated as the same instant
TIME_EPSILON = 1e-9

MINUTES_PER_HOUR = 60.0


def infusion_rate_mg_per_min(rate_mg_kg_hr: float, weight: float) -> float:
    """Convert a weight-normalized hourly rate to mg/min."""
    return rate_mg_kg_hr * weight / MINUTES_PER_HOUR


def infusion_rate_mg_kg_hr(rate_mg_per_min: float, weight: float) -> float:
    """Convert mg/min back to mg/kg/hr."""
    return rate_mg_per_min * MINUTES_PER_HOUR / weight


def clearance_l_per_hr(clearance_l_per_min: float) -> float:
    """Convert a clearance from L/min to L/hr."""
    return clearance_l_per_min * MINUTES_PER_HOUR


def time_grid(duration: float, step: float, start: float = 0.0) -> np.ndarray:
    """
    Evenly spaced output times from `start` to `start + duration` inclusive.

    Times are rounded to 1e-9 min so that grid points coincide exactly with
    event times typed as decimals (e.g. 0.3).
    """
    if step <= 0 or duration <= 0:
        raise ValidationError("duration and step must be positive")
    n = int(round(duration / step))
    return np.round(start + np.linspace(0.0, n * step, n + 1), 9)


@dataclass(frozen=True)
class DoseEvent:
    """
    A timestamped dosing instruction.

    Attributes:
        time: Event time (min)
        bolus: Bolus dose (mg), 0 for none
        continuous_rate: Infusion rate from this time on (mg/kg/hr); None
            leaves the running rate unchanged

    Raises:
        ValidationError: If a value is out of range
    """
    time: float
    bolus: float = 0.0
    continuous_rate: Optional[float] = None

    def __post_init__(self):
        validate_range(self.time, *TIME_RANGE, name="event time", unit="min")
        validate_range(self.bolus, *BOLUS_RANGE, name="bolus", unit="mg")
        if self.continuous_rate is not None:
            validate_range(self.continuous_rate, *RATE_RANGE,
                           name="continuous rate", unit="mg/kg/hr")

    @property
    def has_bolus(self) -> bool:
        return self.bolus > 0

    @property
    def sets_rate(self) -> bool:
        return self.continuous_rate is not None

    def continuous_rate_mg_per_min(self, weight: float) -> float:
        return infusion_rate_mg_per_min(self.continuous_rate or 0.0, weight)


class DosingSchedule:
    """
    Time-ordered dose events for one patient.

    Boluses are instantaneous jumps of the central mass. Infusion rates are
    piecewise constant: each rate-setting event holds until the next one.
    Events sharing a timestamp are applied in the order given.

    Example:
        >>> schedule = DosingSchedule([DoseEvent(0, bolus=6, continuous_rate=1.0)], weight=70)
        >>> schedule.infusion_rate_at(10.0)
        1.1666666666666667
    """

    def __init__(self, events: Iterable[DoseEvent], weight: float):
        if not (math.isfinite(weight) and weight > 0):
            raise ValidationError(f"weight must be positive, got {weight}")
        # sorted() is stable, so same-time events keep their input order
        self.events: Tuple[DoseEvent, ...] = tuple(sorted(events, key=lambda e: e.time))
        self.weight = weight

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):
        return iter(self.events)

    def bolus_events(self) -> List[DoseEvent]:
        return [e for e in self.events if e.has_bolus]

    def boluses_in(
        self,
        t_start: float,
        t_end: float,
        include_start: bool = True
    ) -> List[DoseEvent]:
        """
        Bolus events with t_start <= time <= t_end, in time order.

        The lower bound is inclusive by default so a bolus at the very start
        of a span is applied.
        """
        selected = []
        for event in self.bolus_events():
            if include_start:
                after_start = event.time >= t_start - TIME_EPSILON
            else:
                after_start = event.time > t_start + TIME_EPSILON
            if after_start and event.time <= t_end + TIME_EPSILON:
                selected.append(event)
        return selected

    def infusion_rate_at(self, t: float) -> float:
        """Infusion rate (mg/min) in force at time t."""
        rate = 0.0
        for event in self.events:
            if event.time > t + TIME_EPSILON:
                break
            if event.sets_rate:
                rate = event.continuous_rate_mg_per_min(self.weight)
        return rate

    def infusion_rate_mg_kg_hr_at(self, t: float) -> float:
        """Infusion rate (mg/kg/hr) in force at time t."""
        return infusion_rate_mg_kg_hr(self.infusion_rate_at(t), self.weight)

    def event_times(self, t_start: float, t_end: float) -> List[float]:
        """Distinct event times in (t_start, t_end], ascending."""
        times: List[float] = []
        for event in self.events:
            if t_start + TIME_EPSILON < event.time <= t_end + TIME_EPSILON:
                if not times or event.time - times[-1] > TIME_EPSILON:
                    times.append(event.time)
        return times

    def total_bolus(self) -> float:
        return float(sum(e.bolus for e in self.events))

    @property
    def last_event_time(self) -> float:
        return self.events[-1].time if self.events else 0.0

    @classmethod
    def from_protocol(
        cls,
        bolus: float,
        rate_changes: Sequence[Tuple[float, float]],
        weight: float
    ) -> 'DosingSchedule':
        """
        Build a schedule from an induction bolus at t=0 and (time, rate) pairs.

        Args:
            bolus: Bolus at t=0 (mg)
            rate_changes: (time, rate mg/kg/hr) pairs
            weight: Patient weight (kg)
        """
        events = []
        if bolus > 0:
            events.append(DoseEvent(0.0, bolus=bolus))
        events.extend(DoseEvent(t, continuous_rate=r) for t, r in rate_changes)
        return cls(events, weight)
