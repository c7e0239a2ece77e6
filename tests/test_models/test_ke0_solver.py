"""
Unit Tests for the ke0 Solver
==============================

Tests the characteristic cubic, the tri-exponential decomposition, the
exact root-finding chain, the regression model and their reconciliation.
"""

import math

import pytest
import numpy as np

from remimazolam_tci.models.pharmacokinetics.base import PatientParameters
from remimazolam_tci.models.pharmacokinetics.masui_model import (
    derive_pk_parameters,
    derive_rate_constants,
)
from remimazolam_tci.models.pharmacodynamics.ke0_solver import (
    Ke0Estimate,
    Ke0Method,
    Ke0Solver,
    PlasmaCoefficients,
    find_ke0_root,
    ke0_equation,
    ke0_equation_derivative,
    reconcile_ke0,
    regression_ke0,
    solve_cubic_roots,
)
from remimazolam_tci.utils.config import Ke0SolverConfig, WIDE_KE0_BAND
from remimazolam_tci.utils.diagnostics import DiagnosticCategory
from remimazolam_tci.utils.exceptions import CubicRootError, RootFindingFailure, SafetyError
from remimazolam_tci.validation import (
    REFERENCE_PATIENTS,
    patient_from_reference,
    validate_reference_battery,
)


# (age, weight, height, sex, asa) -> (exact ke0, regression ke0)
REFERENCE_KE0 = [
    ((50, 70, 170, 0, 0), 0.220650, 0.195232),
    ((45, 70, 170, 0, 0), 0.220815, 0.195395),
    ((40, 60, 160, 0, 0), 0.212154, 0.186531),
    ((25, 90, 185, 0, 0), 0.234928, 0.209777),
    ((75, 45, 155, 1, 1), 0.203513, 0.177829),
    ((30, 55, 160, 1, 0), 0.190437, 0.164821),
    ((65, 80, 175, 0, 1), 0.251621, 0.226248),
    ((18, 40, 150, 1, 0), 0.178749, 0.153267),
    ((90, 120, 190, 0, 1), 0.270002, 0.244650),
]


def _patient(values):
    age, weight, height, sex, asa = values
    return PatientParameters(age=age, weight=weight, height=height, sex=sex, asa_ps=asa)


def _coefficients(patient):
    return PlasmaCoefficients.from_rate_constants(
        derive_rate_constants(derive_pk_parameters(patient))
    )


class TestCubicSolver:
    """Test suite for the closed-form cubic solver."""

    def test_distinct_roots(self):
        """(x+1)(x+2)(x+3) has decay rates 3, 2, 1."""
        assert solve_cubic_roots(6, 11, 6) == pytest.approx((3.0, 2.0, 1.0))

    def test_double_root(self):
        """(x+1)²(x+2) takes the repeated-root branch."""
        assert solve_cubic_roots(4, 5, 2) == pytest.approx((2.0, 1.0, 1.0))

    def test_triple_root(self):
        """(x+1)³ has a triple root."""
        assert solve_cubic_roots(3, 3, 1) == pytest.approx((1.0, 1.0, 1.0))

    def test_complex_roots_raise(self):
        """(x+1)(x²+1) has complex roots."""
        with pytest.raises(CubicRootError):
            solve_cubic_roots(1, 1, 1)

    def test_positive_root_rejected(self):
        """(x-1)(x+2)(x+3) has a growing mode."""
        with pytest.raises(CubicRootError):
            solve_cubic_roots(4, 1, -6)


class TestPlasmaCoefficients:
    """Test suite for the tri-exponential decomposition."""

    def test_standard_patient(self, standard_patient):
        """Test exponents and coefficients for the standard patient."""
        c = _coefficients(standard_patient)

        assert c.alpha == pytest.approx(0.75668, abs=1e-4)
        assert c.beta == pytest.approx(0.054428, abs=1e-5)
        assert c.gamma == pytest.approx(0.010526, abs=1e-5)
        assert c.A == pytest.approx(0.93272, abs=1e-4)
        assert c.B == pytest.approx(0.054256, abs=1e-5)
        assert c.C == pytest.approx(0.013021, abs=1e-5)

    @pytest.mark.parametrize("reference", REFERENCE_PATIENTS, ids=lambda r: r['name'])
    def test_ordering_and_unit_sum(self, reference):
        """Roots are ordered and the coefficients sum to one."""
        c = _coefficients(patient_from_reference(reference))

        assert c.alpha > c.beta > c.gamma > 0
        assert c.A + c.B + c.C == pytest.approx(1.0, abs=1e-9)

    def test_impulse_response_matches_matrix_exponential(self, standard_patient):
        """The unit-bolus response equals expm(A·t) applied to a unit mass."""
        from scipy.linalg import expm
        from remimazolam_tci.models.pharmacokinetics.masui_model import state_space_matrices

        rc = derive_rate_constants(derive_pk_parameters(standard_patient))
        c = PlasmaCoefficients.from_rate_constants(rc)
        A, _ = state_space_matrices(rc)

        for t in (0.5, 5.0, 60.0):
            exact = expm(A * t) @ np.array([1.0, 0.0, 0.0])
            assert c.impulse_response(t) == pytest.approx(exact[0], rel=1e-9)


class TestKe0Equation:
    """Test suite for the ke0 peak-time equation."""

    def test_continuous_near_eigenvalue(self, standard_patient):
        """The singular substitute and the stable branch agree across λ."""
        c = _coefficients(standard_patient)
        lam = c.beta
        left = ke0_equation(lam - 1e-7, c)
        at = ke0_equation(lam, c)
        right = ke0_equation(lam + 1e-7, c)

        assert math.isfinite(at)
        assert at == pytest.approx(left, rel=1e-4, abs=1e-9)
        assert at == pytest.approx(right, rel=1e-4, abs=1e-9)

    def test_derivative_matches_finite_difference(self, standard_patient):
        """Analytic derivative agrees with a central difference."""
        c = _coefficients(standard_patient)
        ke0, h = 0.2, 1e-6
        numeric = (ke0_equation(ke0 + h, c) - ke0_equation(ke0 - h, c)) / (2 * h)

        assert ke0_equation_derivative(ke0, c) == pytest.approx(numeric, rel=1e-5)

    def test_derivative_at_eigenvalue(self, standard_patient):
        """The removable-singularity limit of the derivative is continuous."""
        c = _coefficients(standard_patient)
        h = 1e-4
        for lam in (c.alpha, c.beta, c.gamma):
            numeric = (ke0_equation(lam + h, c) - ke0_equation(lam - h, c)) / (2 * h)
            assert ke0_equation_derivative(lam, c) == pytest.approx(numeric, rel=1e-5, abs=1e-9)

    def test_root_is_zero(self, standard_patient):
        """The exact ke0 zeroes the equation."""
        c = _coefficients(standard_patient)
        ke0, attempts = find_ke0_root(c)

        assert abs(ke0_equation(ke0, c)) < 1e-10
        assert attempts[-1].accepted


class TestKe0Values:
    """Test suite for exact and regression ke0 values."""

    @pytest.mark.parametrize("demographics,exact,regression", REFERENCE_KE0)
    def test_reference_values(self, demographics, exact, regression):
        """Both methods reproduce the reference values."""
        result = Ke0Solver().solve(_patient(demographics))

        assert result.method is Ke0Method.EXACT
        assert result.exact.value == pytest.approx(exact, abs=1e-4)
        assert result.regression.value == pytest.approx(regression, abs=1e-5)

    @pytest.mark.parametrize("reference", REFERENCE_PATIENTS, ids=lambda r: r['name'])
    def test_band_and_agreement(self, reference):
        """ke0 lies in the safe band and the methods agree within 15%."""
        result = Ke0Solver().solve(patient_from_reference(reference))

        assert 0.05 <= result.ke0 <= 0.5
        assert result.relative_difference <= 0.15

    def test_regression_function(self, standard_patient):
        """regression_ke0 is usable on its own."""
        assert regression_ke0(standard_patient) == pytest.approx(0.195232, abs=1e-5)

    def test_battery(self, recording_sink):
        """Every reference patient passes the battery."""
        entries = validate_reference_battery(sink=recording_sink)

        assert len(entries) == len(REFERENCE_PATIENTS)
        assert all(entry.passed for entry in entries)

    def test_deterministic(self, standard_patient):
        """Repeated solves are bit-identical."""
        first = Ke0Solver().solve(standard_patient)
        second = Ke0Solver().solve(standard_patient)

        assert first.ke0 == second.ke0


class TestFallbackChain:
    """Test suite for root-finding fallbacks and reconciliation."""

    def test_bisection_fallback(self, standard_patient, recording_sink):
        """A narrow bracket without a sign change falls through to bisection."""
        # Unrefined guess clamps to 0.5, far from the root
        config = Ke0SolverConfig(newton_iterations=0, brent_half_width=1e-6)
        result = Ke0Solver(config, recording_sink).solve(standard_patient)

        assert result.method is Ke0Method.EXACT
        assert [a.strategy for a in result.exact.attempts] == ['brent', 'bisection']
        assert result.ke0 == pytest.approx(0.220650, abs=1e-4)
        fallbacks = recording_sink.filter(category=DiagnosticCategory.NUMERICAL,
                                          fallback_applied=True)
        assert len(fallbacks) == 1

    def test_exhausted_chain_uses_regression(self, standard_patient, recording_sink):
        """When every strategy fails, the regression value is used."""
        config = Ke0SolverConfig(
            newton_iterations=0,
            brent_half_width=1e-6,
            bisection_bracket=(0.3, 0.4),
            wide_bracket=(0.3, 0.5),
        )
        result = Ke0Solver(config, recording_sink).solve(standard_patient)

        assert result.method is Ke0Method.REGRESSION
        assert result.ke0 == pytest.approx(0.195232, abs=1e-5)
        assert not result.exact.available
        assert result.fallback_reason is not None
        assert recording_sink.filter(category=DiagnosticCategory.PHARMACOKINETIC,
                                     fallback_applied=True)

    def test_exhausted_chain_raises_directly(self, standard_patient):
        """find_ke0_root reports every failed attempt."""
        config = Ke0SolverConfig(
            newton_iterations=0,
            brent_half_width=1e-6,
            bisection_bracket=(0.3, 0.4),
            wide_bracket=(0.3, 0.5),
        )
        with pytest.raises(RootFindingFailure) as excinfo:
            find_ke0_root(_coefficients(standard_patient), config)
        assert len(excinfo.value.attempts) == 3

    def test_reconcile_prefers_exact(self):
        exact = Ke0Estimate(Ke0Method.EXACT, 0.22)
        regression = Ke0Estimate(Ke0Method.REGRESSION, 0.19)

        selection = reconcile_ke0(exact, regression, (0.05, 0.5))
        assert selection.method is Ke0Method.EXACT
        assert selection.value == 0.22

    def test_reconcile_out_of_band_exact(self):
        exact = Ke0Estimate(Ke0Method.EXACT, 0.7)
        regression = Ke0Estimate(Ke0Method.REGRESSION, 0.19)

        selection = reconcile_ke0(exact, regression, (0.05, 0.5))
        assert selection.method is Ke0Method.REGRESSION
        assert "outside" in selection.fallback_reason

    def test_reconcile_raises_safety_error(self):
        exact = Ke0Estimate(Ke0Method.UNAVAILABLE)
        regression = Ke0Estimate(Ke0Method.REGRESSION, 0.7)

        with pytest.raises(SafetyError):
            reconcile_ke0(exact, regression, (0.05, 0.5))

    def test_wide_band_accepts_more(self):
        exact = Ke0Estimate(Ke0Method.EXACT, 0.7)
        regression = Ke0Estimate(Ke0Method.REGRESSION, 0.19)

        assert reconcile_ke0(exact, regression, WIDE_KE0_BAND).method is Ke0Method.EXACT

    def test_solver_safety_error(self, standard_patient, recording_sink):
        """A band excluding both estimates surfaces a SafetyError."""
        config = Ke0SolverConfig(safe_band=(0.3, 0.5))

        with pytest.raises(SafetyError):
            Ke0Solver(config, recording_sink).solve(standard_patient)
        assert recording_sink.filter(category=DiagnosticCategory.SAFETY)
