"""
Compartment Integrators
=======================

Integrates the mass-based 3-compartment system

    dA1/dt = R(t) - (k10 + k12 + k13)·A1 + k21·A2 + k31·A3
    dA2/dt = k12·A1 - k21·A2
    dA3/dt = k13·A1 - k31·A3

over a dosing schedule. The timeline is cut at every dose event, so each
span sees a constant infusion rate R and starts from a fresh history.
Boluses are applied at span boundaries, and an output time that coincides
with a bolus reports the post-bolus state.

Integrators:
    - AdamsIntegrator: variable-step, variable-order Adams-Bashforth /
      Adams-Moulton predictor-corrector (PECE) with Milne error estimate
    - RK4Integrator: fixed-step classical Runge-Kutta, used as fallback
    - OdeintIntegrator: scipy's LSODA, used as an independent reference

Variable-step Adams weights are computed from the actual node positions.
With normalized nodes s_j = (t_j - t_n)/h the weights w_j satisfy

    Σ_j w_j · s_j^m = 1/(m + 1),   m = 0 .. k-1

so that y(n+1) = y(n) + h · Σ_j w_j · f(t_j) integrates the interpolating
polynomial through the k derivative points exactly over [t_n, t_n + h].
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence

import numpy as np
from numpy.polynomial import polynomial as P
from scipy.integrate import odeint

from .dosing import DosingSchedule, TIME_EPSILON
from ..models.pharmacokinetics.masui_model import RateConstants, state_space_matrices
from ..utils.config import IntegratorConfig
from ..utils.diagnostics import (
    DiagnosticCategory, DiagnosticSeverity, DiagnosticSink, ensure_sink
)
from ..utils.exceptions import NumericIntegrationFailure, ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

EPS = np.finfo(float).eps

# Step controller constants
SAFETY_FACTOR = 0.9
MIN_GROWTH = 0.1
MAX_GROWTH = 2.0
SEVERE_ERROR = 10.0


def adams_weights(nodes: Sequence[float]) -> np.ndarray:
    """
    Quadrature weights over [0, 1] for derivative values at `nodes`.

    Args:
        nodes: Normalized node positions (distinct)

    Returns:
        Weights w with Σ w_j·s_j^m = 1/(m+1) for m < len(nodes)
    """
    s = np.asarray(nodes, dtype=float)
    k = s.size
    vandermonde = np.vander(s, k, increasing=True).T
    moments = 1.0 / np.arange(1, k + 1)
    return np.linalg.solve(vandermonde, moments)


def adams_error_constants(order: int) -> tuple:
    """
    Leading error constants of the order-k Adams-Bashforth and
    Adams-Moulton formulas, (γ_k, γ*_k).

        γ_k  = ∫_0^1  C(s + k - 1, k) ds
        γ*_k = ∫_-1^0 C(s + k - 1, k) ds
    """
    poly = np.array([1.0])
    for i in range(order):
        poly = P.polymul(poly, [float(i), 1.0])
    poly = poly / math.factorial(order)
    integral = P.polyint(poly)
    explicit = P.polyval(1.0, integral) - P.polyval(0.0, integral)
    implicit = P.polyval(0.0, integral) - P.polyval(-1.0, integral)
    return explicit, implicit


def milne_factor(order: int) -> float:
    """Scale turning (corrector - predictor) into the corrector's local error."""
    explicit, implicit = adams_error_constants(order)
    return abs(implicit) / (explicit - implicit)


def proposed_step(err: float, order: int, h: float) -> float:
    """Next step for an order-`order` method whose last step h had error err."""
    if err == 0.0:
        return MAX_GROWTH * h
    growth = SAFETY_FACTOR * err ** (-1.0 / (order + 1))
    return min(MAX_GROWTH, max(MIN_GROWTH, growth)) * h


@dataclass
class IntegrationStats:
    """
    Counters collected while integrating.

    They are reported, never enforced here, so callers can apply their own
    caps on top.
    """
    method: str = ""
    steps: int = 0
    rejected_steps: int = 0
    function_evaluations: int = 0
    order_changes: int = 0
    max_order_used: int = 0
    min_step: float = math.inf
    max_step: float = 0.0
    clipped_values: int = 0
    stiffness_suspected: bool = False
    fallback_segments: int = 0

    def record_step(self, h: float) -> None:
        self.steps += 1
        self.min_step = min(self.min_step, h)
        self.max_step = max(self.max_step, h)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class IntegrationResult:
    """
    Compartment masses on the requested output grid.

    Attributes:
        times: Output times (min)
        masses: Array (n, 3) of A1, A2, A3 (mg)
        v1: Central volume used to convert A1 to Cp (L)
        stats: Integration counters
    """
    times: np.ndarray
    masses: np.ndarray
    v1: float
    stats: IntegrationStats

    @property
    def plasma_concentrations(self) -> np.ndarray:
        """Cp = A1 / V1 (μg/mL)."""
        return self.masses[:, 0] / self.v1

    @property
    def final_state(self) -> np.ndarray:
        return self.masses[-1].copy()


class CompartmentIntegrator(ABC):
    """
    Base class for integrators of the 3-compartment system.

    Subclasses implement `advance`, which integrates one span of constant
    infusion rate. Dose handling lives in `integrate_schedule`.
    """

    name = "base"

    def __init__(
        self,
        rate_constants: RateConstants,
        v1: float,
        config: Optional[IntegratorConfig] = None,
        sink: Optional[DiagnosticSink] = None
    ):
        if not (math.isfinite(v1) and v1 > 0):
            raise ValidationError(f"V1 must be positive, got {v1}")
        self.rate_constants = rate_constants
        self.v1 = v1
        self.A, self.B = state_space_matrices(rate_constants)
        self.config = config or IntegratorConfig()
        self.sink = ensure_sink(sink)

    def derivative(self, y: np.ndarray, rate: float) -> np.ndarray:
        """dA/dt for masses y under infusion rate (mg/min)."""
        return self.A @ y + self.B * rate

    @abstractmethod
    def advance(
        self,
        y0: np.ndarray,
        t0: float,
        targets: np.ndarray,
        rate: float,
        stats: IntegrationStats
    ) -> np.ndarray:
        """
        Integrate from (t0, y0) under a constant rate.

        Args:
            y0: Masses at t0 (mg)
            t0: Span start (min)
            targets: Increasing times > t0 at which the state is returned
            rate: Infusion rate (mg/min)
            stats: Counters updated in place

        Returns:
            Array (len(targets), 3) of masses

        Raises:
            NumericIntegrationFailure: If the span cannot be completed
        """
        pass

    def integrate(
        self,
        schedule: DosingSchedule,
        output_times: Sequence[float],
        initial_state: Optional[Sequence[float]] = None
    ) -> IntegrationResult:
        """Integrate a schedule with this integrator alone (no fallback)."""
        return integrate_schedule([self], schedule, output_times, initial_state, self.sink)

    def _clip_negative(self, y: np.ndarray, t: float, stats: IntegrationStats) -> np.ndarray:
        """Clip negative masses to zero, reporting those beyond round-off."""
        negative = y < 0
        if not negative.any():
            return y
        if np.any(y < -self.config.negative_tolerance):
            logger.warning(f"{self.name}: negative mass {y.tolist()} at t={t:.4f} clipped to zero")
            self.sink.report(
                DiagnosticCategory.NUMERICAL,
                "Negative compartment mass clipped to zero",
                source=self.name,
                severity=DiagnosticSeverity.LOW,
                resolved=True,
                time=t,
                masses=y.tolist(),
            )
        stats.clipped_values += int(negative.sum())
        clipped = y.copy()
        clipped[negative] = 0.0
        return clipped


class AdamsIntegrator(CompartmentIntegrator):
    """
    Variable-step, variable-order Adams PECE integrator.

    Each step predicts with the k-point Adams-Bashforth formula, evaluates,
    corrects with the k-point Adams-Moulton formula, and evaluates again.
    The local error of the corrector is estimated from the predictor gap

        err = ‖ milne(k)·(y_corr - y_pred) / (atol + rtol·|y|) ‖_rms

    Step control:
        - accept when err <= 1, otherwise shrink h by 0.1 (err > 10) or 0.5
        - after an accepted step, estimate err_q for q = k-1, k, k+1 on the
          same step and propose h_q = clamp(0.9·err_q^(-1/(q+1)), 0.1, 2)·h
        - continue with the order whose h_q is largest (ties keep k), with
          h at most h_max
        - fail when h drops below h_min_factor·eps or an output interval
          needs more than mxstep attempts

    Repeated consecutive rejections are reported as suspected stiffness.
    """

    name = "adams"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._milne = {k: milne_factor(k) for k in range(1, self.config.max_order + 1)}

    def advance(self, y0, t0, targets, rate, stats):
        cfg = self.config
        h_min = cfg.h_min_factor * EPS * max(1.0, abs(float(targets[-1])))

        t = float(t0)
        y = np.array(y0, dtype=float)
        hist_t: List[float] = [t]
        hist_f: List[np.ndarray] = [self.derivative(y, rate)]
        stats.function_evaluations += 1

        order = 1
        h = min(cfg.initial_step, cfg.h_max, 0.1 * (float(targets[0]) - t))
        h = max(h, 10.0 * h_min)
        consecutive_rejections = 0
        stiffness_reported = False

        states = np.zeros((len(targets), 3))
        for i, t_out in enumerate(targets):
            attempts = 0
            while t_out - t > TIME_EPSILON:
                attempts += 1
                if attempts > cfg.mxstep:
                    raise NumericIntegrationFailure(
                        f"More than {cfg.mxstep} steps needed to reach t={t_out}",
                        t_start=t0, t_end=float(targets[-1]), time=t,
                        step_size=h, reason="mxstep"
                    )

                # Land on the output without leaving a sliver behind
                remaining = t_out - t
                h_try = min(h, cfg.h_max)
                if remaining <= 1.1 * h_try:
                    h_try = remaining
                elif remaining < 2.0 * h_try:
                    h_try = 0.5 * remaining
                lands = h_try == remaining

                k = min(order, len(hist_t))
                y_corr, err = self._pece_step(t, y, h_try, k, hist_t, hist_f, rate)
                stats.function_evaluations += 1

                if not (math.isfinite(err) and err <= 1.0):
                    stats.rejected_steps += 1
                    consecutive_rejections += 1
                    h = h_try * (0.1 if not math.isfinite(err) or err > SEVERE_ERROR else 0.5)
                    if consecutive_rejections >= 2 and order > 1:
                        order -= 1
                        stats.order_changes += 1
                    if (consecutive_rejections >= cfg.stiffness_rejection_limit
                            and not stiffness_reported):
                        stiffness_reported = True
                        stats.stiffness_suspected = True
                        self.sink.report(
                            DiagnosticCategory.NUMERICAL,
                            "Repeated step rejections; the problem looks stiff "
                            "and needs an implicit (BDF) method",
                            source=self.name,
                            severity=DiagnosticSeverity.MEDIUM,
                            time=t,
                            step_size=h,
                            rejections=consecutive_rejections,
                        )
                    if h < h_min:
                        raise NumericIntegrationFailure(
                            f"Step size {h:.3e} below minimum {h_min:.3e} at t={t:.6f}",
                            t_start=t0, t_end=float(targets[-1]), time=t,
                            step_size=h, reason="step_size"
                        )
                    continue

                # Neighbouring orders are estimated on the step just taken
                proposals = {k: proposed_step(err, k, h_try)}
                for q in (k - 1, k + 1):
                    if 1 <= q <= min(cfg.max_order, len(hist_t)):
                        err_q = self._pece_step(t, y, h_try, q, hist_t, hist_f, rate)[1]
                        stats.function_evaluations += 1
                        proposals[q] = proposed_step(err_q, q, h_try)
                next_order = max(proposals, key=proposals.get)

                t = float(t_out) if lands else t + h_try
                y = self._clip_negative(y_corr, t, stats)
                hist_t.append(t)
                hist_f.append(self.derivative(y, rate))
                stats.function_evaluations += 1
                del hist_t[:-cfg.max_order]
                del hist_f[:-cfg.max_order]

                stats.record_step(h_try)
                stats.max_order_used = max(stats.max_order_used, k)
                consecutive_rejections = 0

                if next_order != k:
                    stats.order_changes += 1
                order = next_order
                h_next = proposals[next_order]
                if h_try < h:
                    # shortened to land on an output, the previous proposal still holds
                    h_next = max(h_next, h)
                h = min(h_next, cfg.h_max)

            states[i] = y
        return states

    def _pece_step(self, t, y, h, k, hist_t, hist_f, rate):
        """One predict-evaluate-correct step of order k; returns (y_corr, err)."""
        nodes = (np.array(hist_t[-k:][::-1]) - t) / h
        f_hist = np.array(hist_f[-k:][::-1])

        y_pred = y + h * (adams_weights(nodes) @ f_hist)
        f_pred = self.derivative(y_pred, rate)

        w_corr = adams_weights(np.concatenate(([1.0], nodes[:k - 1])))
        y_corr = y + h * (w_corr[0] * f_pred + w_corr[1:] @ f_hist[:k - 1])

        if not (np.all(np.isfinite(y_pred)) and np.all(np.isfinite(y_corr))):
            return y_corr, math.inf

        estimate = self._milne[k] * (y_corr - y_pred)
        scale = self.config.atol + self.config.rtol * np.maximum(np.abs(y), np.abs(y_corr))
        err = float(np.sqrt(np.mean((estimate / scale) ** 2)))
        return y_corr, err


class RK4Integrator(CompartmentIntegrator):
    """
    Fixed-step classical Runge-Kutta integrator.

    Each output interval is split into equal steps no longer than rk4_step,
    so outputs land exactly on the requested times.
    """

    name = "rk4"

    def advance(self, y0, t0, targets, rate, stats):
        y = np.array(y0, dtype=float)
        t = float(t0)
        states = np.zeros((len(targets), 3))
        for i, t_out in enumerate(targets):
            span = float(t_out) - t
            n_steps = max(1, int(math.ceil(span / self.config.rk4_step - 1e-9)))
            h = span / n_steps
            for _ in range(n_steps):
                k1 = self.derivative(y, rate)
                k2 = self.derivative(y + 0.5 * h * k1, rate)
                k3 = self.derivative(y + 0.5 * h * k2, rate)
                k4 = self.derivative(y + h * k3, rate)
                y = y + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
                t += h
                if not np.all(np.isfinite(y)):
                    raise NumericIntegrationFailure(
                        f"Non-finite state at t={t:.6f}",
                        t_start=t0, t_end=float(targets[-1]), time=t,
                        step_size=h, reason="non_finite"
                    )
                y = self._clip_negative(y, t, stats)
                stats.record_step(h)
            stats.function_evaluations += 4 * n_steps
            t = float(t_out)
            states[i] = y
        return states


class OdeintIntegrator(CompartmentIntegrator):
    """
    Reference integrator backed by scipy's LSODA (`scipy.integrate.odeint`).

    LSODA switches to BDF on its own when the system turns stiff; that switch
    is reported through `stats.stiffness_suspected`.
    """

    name = "odeint"

    def advance(self, y0, t0, targets, rate, stats):
        def rhs(y, t):
            return self.derivative(y, rate)

        grid = np.concatenate(([float(t0)], np.asarray(targets, dtype=float)))
        solution, info = odeint(
            rhs, np.asarray(y0, dtype=float), grid,
            rtol=self.config.rtol, atol=self.config.atol,
            mxstep=self.config.mxstep, full_output=True
        )
        if info['message'] != 'Integration successful.':
            raise NumericIntegrationFailure(
                f"odeint failed: {info['message']}",
                t_start=t0, t_end=float(targets[-1]), reason="odeint"
            )

        stats.steps += int(info['nst'][-1])
        stats.function_evaluations += int(info['nfe'][-1])
        stats.max_order_used = max(stats.max_order_used, int(np.max(info['nqu'])))
        if np.any(info['mused'] == 2):
            stats.stiffness_suspected = True

        states = solution[1:]
        for i in range(len(states)):
            states[i] = self._clip_negative(states[i], float(grid[i + 1]), stats)
        return states


INTEGRATORS = {
    AdamsIntegrator.name: AdamsIntegrator,
    RK4Integrator.name: RK4Integrator,
    OdeintIntegrator.name: OdeintIntegrator,
}


def _validate_output_times(output_times: Sequence[float]) -> np.ndarray:
    times = np.asarray(output_times, dtype=float)
    if times.ndim != 1 or times.size == 0:
        raise ValidationError("output_times must be a non-empty 1-D sequence")
    if not np.all(np.isfinite(times)) or times[0] < 0:
        raise ValidationError("output_times must be finite and non-negative")
    if np.any(np.diff(times) <= 0):
        raise ValidationError("output_times must be strictly increasing")
    return times


def _validate_initial_state(initial_state: Optional[Sequence[float]]) -> np.ndarray:
    if initial_state is None:
        return np.zeros(3)
    y = np.array(initial_state, dtype=float)
    if y.shape != (3,) or not np.all(np.isfinite(y)) or np.any(y < 0):
        raise ValidationError("initial_state must hold three finite non-negative masses")
    return y


def _advance_with_fallback(
    strategies: Sequence[CompartmentIntegrator],
    y: np.ndarray,
    t0: float,
    targets: np.ndarray,
    rate: float,
    stats: IntegrationStats,
    sink: DiagnosticSink,
    methods_used: List[str]
) -> np.ndarray:
    for position, strategy in enumerate(strategies):
        try:
            states = strategy.advance(y, t0, targets, rate, stats)
        except NumericIntegrationFailure as exc:
            if position == len(strategies) - 1:
                raise
            successor = strategies[position + 1].name
            logger.warning(
                f"{strategy.name} failed on [{t0:.3f}, {targets[-1]:.3f}] ({exc.reason}); "
                f"retrying with {successor}"
            )
            sink.report(
                DiagnosticCategory.NUMERICAL,
                f"{strategy.name} integration failed; sub-interval retried with {successor}",
                source=strategy.name,
                severity=DiagnosticSeverity.HIGH,
                resolved=True,
                fallback_applied=True,
                t_start=t0,
                t_end=float(targets[-1]),
                failure_time=exc.time,
                reason=exc.reason,
            )
            continue
        if position > 0:
            stats.fallback_segments += 1
        if strategy.name not in methods_used:
            methods_used.append(strategy.name)
        return states


def integrate_schedule(
    strategies: Sequence[CompartmentIntegrator],
    schedule: DosingSchedule,
    output_times: Sequence[float],
    initial_state: Optional[Sequence[float]] = None,
    sink: Optional[DiagnosticSink] = None
) -> IntegrationResult:
    """
    Integrate a dosing schedule over the output grid.

    The first output time is the start of the simulation. Boluses at or after
    it (up to the last output) are applied; the infusion rate in force at the
    start includes changes scheduled before it. Each span between dose
    events is integrated by the first strategy that succeeds.

    Args:
        strategies: Integrators tried in order for every span
        schedule: Dose events
        output_times: Strictly increasing output times (min)
        initial_state: Masses at the first output time (zeros if None)
        sink: Diagnostics sink for fallback reports

    Returns:
        IntegrationResult on the output grid

    Raises:
        ValidationError: On invalid output times or initial state
        NumericIntegrationFailure: If every strategy fails on a span
    """
    if not strategies:
        raise ValidationError("At least one integrator is required")
    sink = ensure_sink(sink)
    times = _validate_output_times(output_times)
    y = _validate_initial_state(initial_state)

    stats = IntegrationStats()
    methods_used: List[str] = []
    masses = np.zeros((times.size, 3))

    t = float(times[0])
    # Inclusive lower bound: a bolus at the first output time is applied
    for event in schedule.boluses_in(t, t):
        y[0] += event.bolus
    masses[0] = y
    rate = schedule.infusion_rate_at(t)

    if times.size > 1:
        boundaries = schedule.event_times(t, float(times[-1]))
        if not boundaries or boundaries[-1] < times[-1] - TIME_EPSILON:
            boundaries.append(float(times[-1]))

        index = 1
        for boundary in boundaries:
            stop = index
            while stop < times.size and times[stop] <= boundary + TIME_EPSILON:
                stop += 1
            targets = list(times[index:stop])
            if not targets or targets[-1] < boundary - TIME_EPSILON:
                targets.append(boundary)

            states = _advance_with_fallback(
                strategies, y, t, np.asarray(targets), rate, stats, sink, methods_used
            )
            masses[index:stop] = states[:stop - index]
            # Boundaries are event times, so these all sit at the boundary
            boluses = schedule.boluses_in(t, boundary, include_start=False)
            y = states[-1].copy()
            t = boundary

            if boluses:
                y[0] += sum(event.bolus for event in boluses)
                if stop > index and abs(times[stop - 1] - boundary) <= TIME_EPSILON:
                    masses[stop - 1] = y
            rate = schedule.infusion_rate_at(boundary)
            index = stop

    stats.method = "+".join(methods_used) or strategies[0].name
    logger.debug(
        f"Integrated {times.size} outputs over [{times[0]:.2f}, {times[-1]:.2f}] min "
        f"with {stats.method}: {stats.steps} steps, {stats.rejected_steps} rejected"
    )
    return IntegrationResult(times=times, masses=masses, v1=strategies[0].v1, stats=stats)


def integrate_with_fallback(
    rate_constants: RateConstants,
    v1: float,
    schedule: DosingSchedule,
    output_times: Sequence[float],
    config: Optional[IntegratorConfig] = None,
    sink: Optional[DiagnosticSink] = None,
    initial_state: Optional[Sequence[float]] = None,
    chain: Sequence[str] = ("adams", "rk4")
) -> IntegrationResult:
    """
    Integrate with the Adams integrator, retrying failed spans with RK4.

    Args:
        chain: Integrator names tried in order (see INTEGRATORS)
    """
    unknown = [name for name in chain if name not in INTEGRATORS]
    if unknown:
        raise ValidationError(f"Unknown integrators {unknown}; choose from {sorted(INTEGRATORS)}")
    strategies = [INTEGRATORS[name](rate_constants, v1, config, sink) for name in chain]
    return integrate_schedule(strategies, schedule, output_times, initial_state, sink)


def solve_reference(
    rate_constants: RateConstants,
    v1: float,
    schedule: DosingSchedule,
    output_times: Sequence[float],
    config: Optional[IntegratorConfig] = None
) -> IntegrationResult:
    """Integrate with scipy's odeint only, for cross-checking the engine."""
    integrator = OdeintIntegrator(rate_constants, v1, config)
    return integrator.integrate(schedule, output_times)
