"""
Effect-Site Concentration from a Plasma Series
==============================================

Effect-site dynamics (first-order link):
    dCe/dt = ke0·(Cp(t) - Ce(t)),   Ce(t0) = 0

VHAC treats Cp as linear within each segment [t(i-1), t(i)] and integrates
the link analytically. Per segment, with Δt = t(i) - t(i-1):

    constant Cp (|ΔCp| < 1e-6):
        Ce(i) = Cp(i) + (Ce(i-1) - Cp(i))·e^(-ke0·Δt)

    ramp, small ke0·Δt (< 1e-3), second-order Taylor:
        Ce(i) = Ce(i-1) + Δt·ke0·(Cp(i-1) - Ce(i-1))
                + Δt²/2·ke0·(slope - ke0·(Cp(i-1) - Ce(i-1)))

    ramp, general closed form:
        Ce(i) = Cp(i) + (Ce(i-1) - Cp(i-1) + slope/ke0)·e^(-ke0·Δt) - slope/ke0

Results are clamped to be non-negative.
"""

import math
import numbers
from typing import Sequence

import numpy as np

from ...utils.exceptions import ValidationError


CONSTANT_THRESHOLD = 1e-6
SMALL_STEP_THRESHOLD = 1e-3


def validate_effect_site_inputs(
    plasma_concentrations: Sequence[float],
    time_points: Sequence[float],
    ke0: float
) -> None:
    """
    Validate inputs shared by every effect-site method.

    Raises:
        ValidationError: On length mismatch, non-positive ke0, fewer than two
            points, non-finite values or non-increasing times
    """
    cp = np.asarray(plasma_concentrations, dtype=float)
    t = np.asarray(time_points, dtype=float)

    if cp.ndim != 1 or t.ndim != 1 or cp.shape != t.shape:
        raise ValidationError(
            "Plasma concentrations and time points must be 1-D arrays of equal length"
        )
    if not (isinstance(ke0, numbers.Real) and math.isfinite(ke0) and ke0 > 0):
        raise ValidationError(f"ke0 must be a positive number, got {ke0}")
    if t.size < 2:
        raise ValidationError("At least 2 time points are required")
    if not (np.all(np.isfinite(cp)) and np.all(np.isfinite(t))):
        raise ValidationError("Plasma concentrations and time points must be finite")
    steps = np.diff(t)
    if np.any(steps <= 0):
        index = int(np.argmax(steps <= 0)) + 1
        raise ValidationError(
            f"Time points must be strictly increasing (violation at index {index})"
        )


def calculate_effect_site_vhac(
    plasma_concentrations: Sequence[float],
    time_points: Sequence[float],
    ke0: float
) -> np.ndarray:
    """
    Effect-site concentrations by the piecewise-analytic VHAC method.

    Args:
        plasma_concentrations: Cp series (μg/mL)
        time_points: Strictly increasing times (min)
        ke0: Effect-site equilibration rate (1/min)

    Returns:
        Ce series aligned with the inputs, Ce[0] = 0

    Raises:
        ValidationError: If inputs are invalid
    """
    validate_effect_site_inputs(plasma_concentrations, time_points, ke0)
    cp = np.asarray(plasma_concentrations, dtype=float)
    t = np.asarray(time_points, dtype=float)

    ce = np.zeros_like(cp)
    for i in range(1, len(t)):
        dt = t[i] - t[i - 1]
        cp_prev = cp[i - 1]
        cp_curr = cp[i]
        ce_prev = ce[i - 1]

        if abs(cp_curr - cp_prev) < CONSTANT_THRESHOLD:
            value = cp_curr + (ce_prev - cp_curr) * math.exp(-ke0 * dt)
        else:
            slope = (cp_curr - cp_prev) / dt
            if abs(ke0 * dt) < SMALL_STEP_THRESHOLD:
                gap = cp_prev - ce_prev
                value = (ce_prev + dt * ke0 * gap
                         + 0.5 * dt * dt * ke0 * (slope - ke0 * gap))
            else:
                ratio = slope / ke0
                value = cp_curr + (ce_prev - cp_prev + ratio) * math.exp(-ke0 * dt) - ratio

        ce[i] = max(0.0, value)
    return ce


def calculate_effect_site_euler(
    plasma_concentrations: Sequence[float],
    time_points: Sequence[float],
    ke0: float
) -> np.ndarray:
    """
    Effect-site concentrations by explicit Euler on the link equation.

    First-order accurate; kept as a simple reference and fallback.
    """
    validate_effect_site_inputs(plasma_concentrations, time_points, ke0)
    cp = np.asarray(plasma_concentrations, dtype=float)
    t = np.asarray(time_points, dtype=float)

    ce = np.zeros_like(cp)
    for i in range(1, len(t)):
        dt = t[i] - t[i - 1]
        ce[i] = max(0.0, ce[i - 1] + dt * ke0 * (cp[i] - ce[i - 1]))
    return ce


def calculate_effect_site_discrete(
    plasma_concentrations: Sequence[float],
    time_points: Sequence[float],
    ke0: float,
    dt: float = 0.1
) -> np.ndarray:
    """
    Effect-site concentrations by Euler sub-steps of at most `dt`, with Cp
    interpolated linearly at each sub-step midpoint.
    """
    validate_effect_site_inputs(plasma_concentrations, time_points, ke0)
    if dt <= 0:
        raise ValidationError(f"dt must be positive, got {dt}")
    cp = np.asarray(plasma_concentrations, dtype=float)
    t = np.asarray(time_points, dtype=float)

    ce = np.zeros_like(cp)
    for i in range(1, len(t)):
        span = t[i] - t[i - 1]
        n_sub = max(1, int(math.ceil(span / dt)))
        h = span / n_sub
        value = ce[i - 1]
        for step in range(1, n_sub + 1):
            progress = (step - 0.5) / n_sub
            cp_mid = cp[i - 1] + progress * (cp[i] - cp[i - 1])
            value += h * ke0 * (cp_mid - value)
        ce[i] = value
    return ce


EFFECT_SITE_METHODS = {
    'vhac': calculate_effect_site_vhac,
    'euler': calculate_effect_site_euler,
    'discrete': calculate_effect_site_discrete,
}


def calculate_effect_site(
    plasma_concentrations: Sequence[float],
    time_points: Sequence[float],
    ke0: float,
    method: str = 'vhac'
) -> np.ndarray:
    """
    Dispatch to an effect-site method by name ('vhac', 'euler', 'discrete').

    Raises:
        ValidationError: For an unknown method or invalid inputs
    """
    try:
        func = EFFECT_SITE_METHODS[method]
    except KeyError:
        raise ValidationError(
            f"Unknown effect-site method {method!r}; choose from {sorted(EFFECT_SITE_METHODS)}"
        ) from None
    return func(plasma_concentrations, time_points, ke0)
