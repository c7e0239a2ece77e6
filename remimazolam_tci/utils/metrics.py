"""
Performance Metrics for Effect-Site Concentration Control
==========================================================

Metrics used to judge how well a dosing protocol holds the effect-site
concentration (Ce) at its target.

Performance Error (PE) - Base metric:
    PE_t = (Ce_t - Ce_target) / Ce_target × 100 [%]

MDPE (Median Performance Error): bias
    MDPE = Median(PE)
    - Positive: Ce tends to sit above target (overdosing)
    - Negative: Ce tends to sit below target (underdosing)

MDAPE (Median Absolute Performance Error): accuracy
    MDAPE = Median(|PE|)

Wobble: intra-protocol variability
    Wobble = Median(|PE - MDPE|)

Protocol metrics over the maintenance window:
- Final Ce, maximum Ce
- Average absolute deviation from target
- Target accuracy: percentage of samples within ±10 % of target
"""

import numpy as np
from typing import Optional
from dataclasses import dataclass


@dataclass
class ProtocolPerformance:
    """
    Container for step-down protocol performance metrics.

    Attributes:
        final_ce: Effect-site concentration at the end of the protocol (μg/mL)
        max_ce: Highest effect-site concentration over the protocol (μg/mL)
        avg_deviation: Mean |Ce - target| over the maintenance window (μg/mL)
        target_accuracy: Percentage of maintenance samples within the band (%)
        total_adjustments: Number of rate reductions
        mdpe: Median Performance Error over the maintenance window (%)
        mdape: Median Absolute Performance Error over the maintenance window (%)
        wobble: Wobble over the maintenance window (%)
        total_dose: Total drug administered including boluses (mg)
    """
    final_ce: float
    max_ce: float
    avg_deviation: float
    target_accuracy: float
    total_adjustments: int
    mdpe: Optional[float] = None
    mdape: Optional[float] = None
    wobble: Optional[float] = None
    total_dose: Optional[float] = None


def calculate_performance_error(
    ce_values: np.ndarray,
    ce_target: float
) -> np.ndarray:
    """
    Calculate Performance Error (PE) for each time point.

    PE_t = (Ce_t - Ce_target) / Ce_target × 100

    Args:
        ce_values: Effect-site concentrations (μg/mL)
        ce_target: Target effect-site concentration (μg/mL), must be > 0

    Returns:
        Array of PE values in percentage
    """
    ce_values = np.asarray(ce_values, dtype=float)
    return (ce_values - ce_target) / ce_target * 100


def calculate_mdpe(ce_values: np.ndarray, ce_target: float) -> float:
    """MDPE = Median(PE), in percent."""
    pe = calculate_performance_error(ce_values, ce_target)
    return float(np.median(pe))


def calculate_mdape(ce_values: np.ndarray, ce_target: float) -> float:
    """MDAPE = Median(|PE|), in percent."""
    pe = calculate_performance_error(ce_values, ce_target)
    return float(np.median(np.abs(pe)))


def calculate_wobble(ce_values: np.ndarray, ce_target: float) -> float:
    """Wobble = Median(|PE - MDPE|), in percent."""
    pe = calculate_performance_error(ce_values, ce_target)
    mdpe = np.median(pe)
    return float(np.median(np.abs(pe - mdpe)))


def calculate_time_within_band(
    ce_values: np.ndarray,
    ce_target: float,
    band: float = 0.10
) -> float:
    """
    Percentage of samples with |Ce - target| <= band × target.

    Args:
        ce_values: Effect-site concentrations (μg/mL)
        ce_target: Target concentration (μg/mL)
        band: Relative half width of the band

    Returns:
        Percentage of samples in band (0 for an empty series)
    """
    ce_values = np.asarray(ce_values, dtype=float)
    if ce_values.size == 0:
        return 0.0
    within = np.abs(ce_values - ce_target) <= ce_target * band
    return float(np.mean(within) * 100)


def calculate_total_dose(
    rate_values: np.ndarray,
    time_values: np.ndarray,
    weight: float,
    bolus_total: float = 0.0
) -> float:
    """
    Calculate total drug administered.

    Rates are piecewise constant from each sample to the next, matching the
    way the integrator applies them.

    Args:
        rate_values: Continuous infusion rates (mg/kg/hr)
        time_values: Time points (min)
        weight: Patient weight (kg)
        bolus_total: Sum of bolus doses (mg)

    Returns:
        Total dose in mg
    """
    rate_values = np.asarray(rate_values, dtype=float)
    time_values = np.asarray(time_values, dtype=float)
    if len(rate_values) < 2:
        return float(bolus_total)

    dt_hr = np.diff(time_values) / 60.0
    infused = np.sum(rate_values[:-1] * weight * dt_hr)
    return float(infused + bolus_total)


def evaluate_protocol_performance(
    time_values: np.ndarray,
    ce_values: np.ndarray,
    ce_target: float,
    total_adjustments: int = 0,
    maintenance_start: float = 60.0,
    band: float = 0.10,
    rate_values: Optional[np.ndarray] = None,
    weight: Optional[float] = None,
    bolus_total: float = 0.0
) -> ProtocolPerformance:
    """
    Evaluate a protocol over its maintenance window (t >= maintenance_start).

    Args:
        time_values: Time points (min)
        ce_values: Effect-site concentrations (μg/mL)
        ce_target: Target concentration (μg/mL)
        total_adjustments: Number of rate reductions applied
        maintenance_start: Start of the maintenance window (min)
        band: Relative accuracy band
        rate_values: Infusion rates (mg/kg/hr), for the total dose
        weight: Patient weight (kg), for the total dose
        bolus_total: Sum of bolus doses (mg)

    Returns:
        ProtocolPerformance. When the window is empty the deviation is
        infinite and the accuracy zero.
    """
    time_values = np.asarray(time_values, dtype=float)
    ce_values = np.asarray(ce_values, dtype=float)

    total_dose = None
    if rate_values is not None and weight is not None:
        total_dose = calculate_total_dose(rate_values, time_values, weight, bolus_total)

    mask = time_values >= maintenance_start
    maintenance = ce_values[mask]

    if maintenance.size == 0:
        return ProtocolPerformance(
            final_ce=0.0,
            max_ce=0.0,
            avg_deviation=float('inf'),
            target_accuracy=0.0,
            total_adjustments=total_adjustments,
            total_dose=total_dose,
        )

    return ProtocolPerformance(
        final_ce=float(ce_values[-1]),
        max_ce=float(np.max(ce_values)),
        avg_deviation=float(np.mean(np.abs(maintenance - ce_target))),
        target_accuracy=calculate_time_within_band(maintenance, ce_target, band),
        total_adjustments=total_adjustments,
        mdpe=calculate_mdpe(maintenance, ce_target),
        mdape=calculate_mdape(maintenance, ce_target),
        wobble=calculate_wobble(maintenance, ce_target),
        total_dose=total_dose,
    )
