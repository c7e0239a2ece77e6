"""
Effect-Site Equilibration Constant (ke0) for the Masui Model
=============================================================

ke0 is computed two independent ways and the results are reconciled.

Method A - exact solve:
    1. Rate constants → characteristic polynomial
           x³ + a2·x² + a1·x + a0 = 0
           a2 = k10 + k12 + k13 + k21 + k31
           a1 = (k10 + k13)·k21 + (k10 + k12)·k31 + k21·k31
           a0 = k10·k21·k31
       whose roots are -α, -β, -γ (α > β > γ > 0).
    2. Partial fractions of the unit-bolus plasma response
           Cp(t)·V1 = A·e^(-αt) + B·e^(-βt) + C·e^(-γt)
    3. ke0 makes the effect-site curve peak at t_peak:
           f(ke0) = Σ ke0·coeff/(ke0 - λ) · (λ·e^(-λ·t_peak) - ke0·e^(-ke0·t_peak)) = 0
    4. Weighted-average initial guess, Newton refinement, then the ordered
       root-finding chain Brent (narrow) → bisection → Brent (wide).

Method B - regression:
    Published polynomial in transformed age, weight, height, sex and ASA.

Reconciliation:
    Exact if available and inside the safe band, else regression if inside
    the band, else SafetyError.
"""

import math
from dataclasses import astuple, dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy.optimize import brentq, bisect

from ..pharmacokinetics.base import PatientParameters
from ..pharmacokinetics.masui_model import (
    MasuiParameters,
    PKParameters,
    RateConstants,
    derive_pk_parameters,
    derive_rate_constants,
)
from ...utils.config import Ke0SolverConfig
from ...utils.diagnostics import (
    DiagnosticCategory,
    DiagnosticSeverity,
    DiagnosticSink,
    ensure_sink,
)
from ...utils.exceptions import CubicRootError, RootFindingFailure, SafetyError
from ...utils.logger import get_logger

logger = get_logger(__name__)

SOURCE = "Ke0Solver"


# ============================================================================
# Characteristic polynomial
# ============================================================================

def cubic_coefficients(rc: RateConstants) -> Tuple[float, float, float]:
    """Return (a2, a1, a0) of x³ + a2·x² + a1·x + a0 for the rate constants."""
    a2 = rc.k10 + rc.k12 + rc.k13 + rc.k21 + rc.k31
    a1 = (rc.k10 + rc.k13) * rc.k21 + (rc.k10 + rc.k12) * rc.k31 + rc.k21 * rc.k31
    a0 = rc.k10 * rc.k21 * rc.k31
    return a2, a1, a0


def solve_cubic_roots(
    a2: float,
    a1: float,
    a0: float,
    tol: float = 1e-10
) -> Tuple[float, float, float]:
    """
    Solve x³ + a2·x² + a1·x + a0 = 0 in closed form and return the decay
    rates (negated roots) ordered largest first.

    The branch is chosen by the discriminant of the depressed cubic
    t³ + p·t + q = 0:
        - disc < -tol: three distinct real roots (trigonometric form)
        - |disc| <= tol: repeated root
        - disc > tol: one real and two complex roots

    Args:
        a2, a1, a0: Polynomial coefficients
        tol: Discriminant threshold for the repeated-root branch

    Returns:
        (α, β, γ) with α >= β >= γ

    Raises:
        CubicRootError: For complex roots or non-positive decay rates
    """
    p = a1 - a2 * a2 / 3.0
    q = (2.0 * a2 ** 3 - 9.0 * a2 * a1 + 27.0 * a0) / 27.0
    disc = (q / 2.0) ** 2 + (p / 3.0) ** 3
    shift = a2 / 3.0

    if disc > tol:
        raise CubicRootError(
            f"Characteristic polynomial has complex roots (discriminant={disc:.3e})"
        )

    if abs(disc) <= tol:
        if abs(p) <= tol:
            roots = [-shift] * 3
        else:
            single = 3.0 * q / p - shift
            double = -3.0 * q / (2.0 * p) - shift
            roots = [single, double, double]
    else:
        rho = math.sqrt(-(p / 3.0) ** 3)
        cos_arg = min(1.0, max(-1.0, -q / (2.0 * rho)))
        theta = math.acos(cos_arg)
        amplitude = 2.0 * math.sqrt(-p / 3.0)
        roots = [
            amplitude * math.cos((theta + 2.0 * math.pi * k) / 3.0) - shift
            for k in range(3)
        ]

    rates = sorted((-r for r in roots), reverse=True)
    if rates[-1] <= 0 or not all(math.isfinite(r) for r in rates):
        raise CubicRootError(f"Decay rates must be positive, got {rates}")
    return rates[0], rates[1], rates[2]


@dataclass(frozen=True)
class PlasmaCoefficients:
    """
    Tri-exponential unit-bolus response of the central compartment.

    Cp(t)·V1 / dose = A·e^(-αt) + B·e^(-βt) + C·e^(-γt)

    Attributes:
        alpha, beta, gamma: Decay rates (1/min), alpha > beta > gamma > 0
        A, B, C: Matching coefficients (sum to 1)
    """
    alpha: float
    beta: float
    gamma: float
    A: float
    B: float
    C: float

    @classmethod
    def from_rate_constants(
        cls,
        rc: RateConstants,
        distinct_tol: float = 1e-9
    ) -> 'PlasmaCoefficients':
        """
        Compute exponents and partial-fraction coefficients.

        Raises:
            CubicRootError: If the roots are complex, non-positive or not
                distinct enough for a partial-fraction decomposition
        """
        alpha, beta, gamma = solve_cubic_roots(*cubic_coefficients(rc))
        if min(alpha - beta, beta - gamma) <= distinct_tol * alpha:
            raise CubicRootError(
                f"Repeated decay rates ({alpha:.6g}, {beta:.6g}, {gamma:.6g}); "
                "tri-exponential decomposition undefined"
            )

        A = (rc.k21 - alpha) * (rc.k31 - alpha) / ((beta - alpha) * (gamma - alpha))
        B = (rc.k21 - beta) * (rc.k31 - beta) / ((alpha - beta) * (gamma - beta))
        C = (rc.k21 - gamma) * (rc.k31 - gamma) / ((alpha - gamma) * (beta - gamma))
        return cls(alpha=alpha, beta=beta, gamma=gamma, A=A, B=B, C=C)

    def terms(self) -> Tuple[Tuple[float, float], ...]:
        """((λ, coeff), ...) pairs, largest rate first."""
        return ((self.alpha, self.A), (self.beta, self.B), (self.gamma, self.C))

    def impulse_response(self, t: np.ndarray) -> np.ndarray:
        """Unit-bolus central response A·e^(-αt) + B·e^(-βt) + C·e^(-γt)."""
        t = np.asarray(t, dtype=float)
        return (self.A * np.exp(-self.alpha * t)
                + self.B * np.exp(-self.beta * t)
                + self.C * np.exp(-self.gamma * t))


# ============================================================================
# ke0 equation
# ============================================================================

def ke0_equation(
    ke0: float,
    coefficients: PlasmaCoefficients,
    t_peak: float = 2.6,
    singular_threshold: float = 1e-8,
    stable_threshold: float = 0.01
) -> float:
    """
    Evaluate f(ke0), zero where the effect-site curve peaks at t_peak.

    Each term g·h has a removable 0/0 at ke0 = λ. Within singular_threshold
    the limit -ke0·coeff·(1 - λt)·e^(-λt) is used; within stable_threshold h
    is evaluated through expm1.
    """
    result = 0.0
    for lam, coeff in coefficients.terms():
        if abs(ke0 - lam) < singular_threshold:
            result += -ke0 * coeff * (1.0 - lam * t_peak) * math.exp(-lam * t_peak)
            continue

        exp_ke0 = math.exp(-ke0 * t_peak)
        exp_lam = math.exp(-lam * t_peak)
        if abs(lam - ke0) < stable_threshold:
            h = (lam - ke0) * exp_lam + ke0 * exp_ke0 * math.expm1((ke0 - lam) * t_peak)
        else:
            h = lam * exp_lam - ke0 * exp_ke0
        g = ke0 * coeff / (ke0 - lam)
        result += g * h
    return result


def ke0_equation_derivative(
    ke0: float,
    coefficients: PlasmaCoefficients,
    t_peak: float = 2.6,
    singular_threshold: float = 1e-8
) -> float:
    """Analytic df/dke0 used for the Newton refinement."""
    result = 0.0
    for lam, coeff in coefficients.terms():
        exp_lam = math.exp(-lam * t_peak)
        if abs(ke0 - lam) < singular_threshold:
            # d/dke0 of ke0·coeff·(H'(λ) + H''(λ)·(ke0 - λ)/2) with H(x) = λe^(-λt) - x·e^(-xt)
            result += (-coeff * (1.0 - lam * t_peak) * exp_lam
                       + ke0 * coeff * t_peak * exp_lam * (2.0 - lam * t_peak) / 2.0)
            continue

        exp_ke0 = math.exp(-ke0 * t_peak)
        g = ke0 * coeff / (ke0 - lam)
        g_prime = -coeff * lam / (ke0 - lam) ** 2
        h = lam * exp_lam - ke0 * exp_ke0
        h_prime = (ke0 * t_peak - 1.0) * exp_ke0
        result += g_prime * h + g * h_prime
    return result


def initial_ke0_guess(
    coefficients: PlasmaCoefficients,
    t_peak: float = 2.6,
    band: Tuple[float, float] = (0.05, 0.5)
) -> float:
    """
    Weighted average of the decay rates, corrected for t_peak.

    guess = (Aα + Bβ + Cγ)/(A + B + C) · (1 + 0.1·ln(t_peak)/t_peak)
    """
    c = coefficients
    weighted = (c.A * c.alpha + c.B * c.beta + c.C * c.gamma) / (c.A + c.B + c.C)
    estimate = weighted * (1.0 + 0.1 * math.log(t_peak) / t_peak)
    return min(band[1], max(band[0], estimate))


def refine_ke0_guess(
    guess: float,
    f: Callable[[float], float],
    f_prime: Callable[[float], float],
    max_iterations: int = 3,
    band: Tuple[float, float] = (0.05, 0.5)
) -> float:
    """Newton iterations on f, clamped to the band after every step."""
    x = guess
    for _ in range(max_iterations):
        fpx = f_prime(x)
        if abs(fpx) < 1e-14:
            logger.debug("Newton refinement stopped: derivative too small at %.6f", x)
            break
        delta = f(x) / fpx
        x = min(band[1], max(band[0], x - delta))
        if abs(delta) < 1e-10:
            break
    return x


# ============================================================================
# Root-finding chain
# ============================================================================

@dataclass(frozen=True)
class RootAttempt:
    """Outcome of one root-finding strategy."""
    strategy: str
    bracket: Tuple[float, float]
    root: Optional[float] = None
    converged: bool = False
    accepted: bool = False
    iterations: int = 0
    function_calls: int = 0
    residual: Optional[float] = None
    message: str = ""


def _run_bracketing(
    strategy: str,
    method: Callable,
    f: Callable[[float], float],
    bracket: Tuple[float, float],
    band: Tuple[float, float],
    **kwargs
) -> RootAttempt:
    a, b = bracket
    if not a < b:
        return RootAttempt(strategy, bracket, message="empty bracket")
    try:
        root, info = method(f, a, b, full_output=True, disp=False, **kwargs)
    except ValueError as e:
        # No sign change across the bracket
        return RootAttempt(strategy, bracket, message=str(e))

    residual = abs(f(root))
    in_band = band[0] <= root <= band[1] and math.isfinite(root)
    accepted = bool(info.converged) and in_band
    if not info.converged:
        message = f"not converged after {info.iterations} iterations"
    elif not in_band:
        message = f"root {root:.6g} outside validation band {band}"
    else:
        message = "ok"
    return RootAttempt(
        strategy=strategy,
        bracket=bracket,
        root=float(root),
        converged=bool(info.converged),
        accepted=accepted,
        iterations=int(info.iterations),
        function_calls=int(info.function_calls),
        residual=residual,
        message=message,
    )


def find_ke0_root(
    coefficients: PlasmaCoefficients,
    config: Optional[Ke0SolverConfig] = None
) -> Tuple[float, List[RootAttempt]]:
    """
    Locate the exact ke0 through the ordered strategy chain.

    Returns:
        (ke0, attempts) for the first accepted strategy

    Raises:
        RootFindingFailure: When no strategy produced an accepted root
    """
    cfg = config or Ke0SolverConfig()
    band = cfg.validation_band

    def f(k: float) -> float:
        return ke0_equation(k, coefficients, cfg.t_peak,
                            cfg.singular_threshold, cfg.stable_threshold)

    def f_prime(k: float) -> float:
        return ke0_equation_derivative(k, coefficients, cfg.t_peak, cfg.singular_threshold)

    guess = initial_ke0_guess(coefficients, cfg.t_peak, band)
    refined = refine_ke0_guess(guess, f, f_prime, cfg.newton_iterations, band)
    narrow = (max(band[0], refined - cfg.brent_half_width),
              min(band[1], refined + cfg.brent_half_width))
    logger.debug("ke0 initial guess %.6f, refined %.6f, bracket [%.6f, %.6f]",
                 guess, refined, narrow[0], narrow[1])

    strategies = [
        ("brent", brentq, narrow,
         dict(xtol=cfg.brent_tol, rtol=cfg.brent_tol, maxiter=cfg.brent_max_iter)),
        ("bisection", bisect, tuple(cfg.bisection_bracket),
         dict(xtol=cfg.bisection_tol, maxiter=cfg.bisection_max_iter)),
        ("brent_wide", brentq, tuple(cfg.wide_bracket),
         dict(xtol=cfg.wide_tol, maxiter=cfg.brent_max_iter)),
    ]

    attempts: List[RootAttempt] = []
    for name, method, bracket, kwargs in strategies:
        attempt = _run_bracketing(name, method, f, bracket, band, **kwargs)
        attempts.append(attempt)
        if attempt.accepted:
            return attempt.root, attempts
        logger.debug("ke0 strategy %s failed: %s", name, attempt.message)

    raise RootFindingFailure(
        "All exact ke0 strategies failed: "
        + "; ".join(f"{a.strategy}: {a.message}" for a in attempts),
        attempts=attempts,
    )


# ============================================================================
# Regression model
# ============================================================================

def regression_ke0(patient: PatientParameters) -> float:
    """
    Method B: ke0 from the published multiple regression.

    Auxiliary transforms:
        F(age)    = 0.228 - 2.72e-5·age + 2.96e-7·(age-55)² - 4.34e-9·(age-55)³ + 5.05e-11·(age-55)⁴
        F(TBW)    = 0.196 + 3.53e-4·TBW - 7.91e-7·(TBW-90)²
        F(height) = 0.148 + 4.73e-4·height - 1.43e-6·(height-167.5)²
        F(sex)    = 0.237 - 2.16e-2·sex
        F(ASA)    = 0.214 + 2.41e-2·ASA
    Centered transforms F2 subtract 0.227 (age, TBW) or 0.226 (others).
    """
    age = patient.age
    tbw = patient.weight
    height = patient.height
    sex = int(patient.sex)
    asa = int(patient.asa_ps)

    f_age = (0.228 - 2.72e-5 * age + 2.96e-7 * (age - 55) ** 2
             - 4.34e-9 * (age - 55) ** 3 + 5.05e-11 * (age - 55) ** 4)
    f_tbw = 0.196 + 3.53e-4 * tbw - 7.91e-7 * (tbw - 90) ** 2
    f_height = 0.148 + 4.73e-4 * height - 1.43e-6 * (height - 167.5) ** 2
    f_sex = 0.237 - 2.16e-2 * sex
    f_asa = 0.214 + 2.41e-2 * asa

    a = f_age - 0.227
    w = f_tbw - 0.227
    h = f_height - 0.226
    s = f_sex - 0.226
    p = f_asa - 0.226

    return (-0.930582 + f_age + f_tbw + f_height + 0.999 * f_sex + f_asa
            - 4.50 * a * w - 4.51 * a * h + 2.46 * a * s + 3.35 * a * p
            - 12.6 * w * h + 0.394 * w * s + 2.06 * w * p + 0.390 * h * s
            + 2.07 * h * p + 5.03 * s * p
            + 99.8 * a * w * h + 5.11 * w * h * s - 39.4 * w * h * p
            - 5.00 * w * s * p - 5.04 * h * s * p)


# ============================================================================
# Reconciliation
# ============================================================================

class Ke0Method(Enum):
    """Which computation produced a ke0 value."""
    EXACT = "exact"
    REGRESSION = "regression"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Ke0Estimate:
    """Candidate ke0 from one method; value is None when unavailable."""
    method: Ke0Method
    value: Optional[float] = None
    attempts: Tuple[RootAttempt, ...] = ()
    detail: str = ""

    @property
    def available(self) -> bool:
        return self.method is not Ke0Method.UNAVAILABLE and self.value is not None


@dataclass(frozen=True)
class Ke0Selection:
    """Reconciled ke0 and the reason for any fallback."""
    method: Ke0Method
    value: float
    fallback_reason: Optional[str] = None


def _in_band(value: Optional[float], band: Tuple[float, float]) -> bool:
    return value is not None and math.isfinite(value) and band[0] <= value <= band[1]


def reconcile_ke0(
    exact: Ke0Estimate,
    regression: Ke0Estimate,
    safe_band: Tuple[float, float]
) -> Ke0Selection:
    """
    Choose the authoritative ke0.

    Args:
        exact: Method A estimate (possibly unavailable)
        regression: Method B estimate
        safe_band: (low, high) accepted ke0 band (1/min)

    Returns:
        Ke0Selection

    Raises:
        SafetyError: If neither estimate lies inside the band
    """
    if exact.available and _in_band(exact.value, safe_band):
        return Ke0Selection(Ke0Method.EXACT, exact.value)

    if not exact.available:
        reason = f"exact solve unavailable ({exact.detail})"
    else:
        reason = f"exact ke0 {exact.value:.6f} outside safe band {safe_band}"

    if regression.available and _in_band(regression.value, safe_band):
        return Ke0Selection(Ke0Method.REGRESSION, regression.value, fallback_reason=reason)

    raise SafetyError(
        f"No ke0 inside safe band {safe_band}: {reason}; "
        f"regression ke0 {regression.value}",
        value=regression.value,
        band=safe_band,
    )


@dataclass(frozen=True)
class Ke0Result:
    """
    Full outcome of a ke0 computation for one patient.

    Attributes:
        patient: Patient demographics
        pk: Derived PK parameters
        rate_constants: Derived rate constants
        coefficients: Plasma coefficients (None if the cubic failed)
        ke0: Authoritative ke0 (1/min)
        method: Method that produced ke0
        exact: Method A estimate
        regression: Method B estimate
        fallback_reason: Why the exact value was not used, if it was not
    """
    patient: PatientParameters
    pk: PKParameters
    rate_constants: RateConstants
    coefficients: Optional[PlasmaCoefficients]
    ke0: float
    method: Ke0Method
    exact: Ke0Estimate
    regression: Ke0Estimate
    fallback_reason: Optional[str] = None

    @property
    def relative_difference(self) -> Optional[float]:
        """|exact - regression| / exact, or None when exact is unavailable."""
        if not (self.exact.available and self.regression.available):
            return None
        return abs(self.exact.value - self.regression.value) / self.exact.value


class Ke0Solver:
    """
    Computes and reconciles ke0 for a patient.

    Example:
        >>> solver = Ke0Solver()
        >>> result = solver.solve(PatientParameters(age=50, weight=70, height=170, sex='M'))
        >>> result.method, round(result.ke0, 4)
        (<Ke0Method.EXACT: 'exact'>, 0.2207)
    """

    def __init__(
        self,
        config: Optional[Ke0SolverConfig] = None,
        sink: Optional[DiagnosticSink] = None,
        params: Optional[MasuiParameters] = None
    ):
        self.config = config or Ke0SolverConfig()
        self.sink = ensure_sink(sink)
        self.params = params or MasuiParameters()

    def cache_key(self, patient: PatientParameters) -> tuple:
        """Key for a ke0 result: the demographics plus everything the solver reads."""
        settings = tuple(tuple(v) if isinstance(v, list) else v for v in astuple(self.config))
        return patient.cache_key(), settings, self.params

    def solve_exact(self, rate_constants: RateConstants) -> Tuple[Optional[PlasmaCoefficients], Ke0Estimate]:
        """Method A; never raises for numerical failures."""
        try:
            coefficients = PlasmaCoefficients.from_rate_constants(rate_constants)
        except CubicRootError as e:
            self.sink.report(
                DiagnosticCategory.NUMERICAL, f"Cubic solve failed: {e}",
                source=SOURCE, severity=DiagnosticSeverity.HIGH,
                **rate_constants.to_dict(),
            )
            return None, Ke0Estimate(Ke0Method.UNAVAILABLE, detail=str(e))

        try:
            ke0, attempts = find_ke0_root(coefficients, self.config)
        except RootFindingFailure as e:
            self.sink.report(
                DiagnosticCategory.NUMERICAL, "Exact ke0 root finding exhausted its fallback chain",
                source=SOURCE, severity=DiagnosticSeverity.HIGH,
                attempts=[a.strategy for a in e.attempts],
                messages=[a.message for a in e.attempts],
            )
            return coefficients, Ke0Estimate(
                Ke0Method.UNAVAILABLE, attempts=tuple(e.attempts), detail="root finding failed"
            )

        if len(attempts) > 1:
            self.sink.report(
                DiagnosticCategory.NUMERICAL,
                f"ke0 root found by fallback strategy '{attempts[-1].strategy}'",
                source=SOURCE, severity=DiagnosticSeverity.LOW,
                resolved=True, fallback_applied=True,
                ke0=ke0, failed=[a.strategy for a in attempts[:-1]],
            )
        return coefficients, Ke0Estimate(Ke0Method.EXACT, ke0, attempts=tuple(attempts))

    def solve(self, patient: PatientParameters) -> Ke0Result:
        """
        Compute both estimates and reconcile them.

        Raises:
            SafetyError: If no estimate lies inside the configured safe band
        """
        pk = derive_pk_parameters(patient, self.params)
        rate_constants = derive_rate_constants(pk)

        coefficients, exact = self.solve_exact(rate_constants)
        regression = Ke0Estimate(Ke0Method.REGRESSION, regression_ke0(patient))

        try:
            selection = reconcile_ke0(exact, regression, self.config.safe_band)
        except SafetyError:
            self.sink.report(
                DiagnosticCategory.SAFETY, "ke0 outside safe band after all fallbacks",
                source=SOURCE, severity=DiagnosticSeverity.CRITICAL,
                exact=exact.value, regression=regression.value,
                safe_band=self.config.safe_band, **patient.to_dict(),
            )
            raise

        if selection.method is Ke0Method.REGRESSION:
            logger.warning("ke0 fell back to regression (%.6f): %s",
                           selection.value, selection.fallback_reason)
            self.sink.report(
                DiagnosticCategory.PHARMACOKINETIC, "ke0 fell back to regression model",
                source=SOURCE, severity=DiagnosticSeverity.MEDIUM,
                resolved=True, fallback_applied=True,
                ke0=selection.value, reason=selection.fallback_reason,
            )

        result = Ke0Result(
            patient=patient,
            pk=pk,
            rate_constants=rate_constants,
            coefficients=coefficients,
            ke0=selection.value,
            method=selection.method,
            exact=exact,
            regression=regression,
            fallback_reason=selection.fallback_reason,
        )
        self.sink.report(
            DiagnosticCategory.PHARMACOKINETIC, "ke0 computed",
            source=SOURCE, ke0=result.ke0, method=result.method.value,
            relative_difference=result.relative_difference,
        )
        return result
