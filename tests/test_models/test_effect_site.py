"""
Unit Tests for Effect-Site Concentration Methods
=================================================

Tests the VHAC piecewise-analytic method and the Euler references.
"""

import math

import pytest
import numpy as np

from remimazolam_tci.models.pharmacodynamics.effect_site import (
    calculate_effect_site,
    calculate_effect_site_discrete,
    calculate_effect_site_euler,
    calculate_effect_site_vhac,
)
from remimazolam_tci.utils.exceptions import ValidationError


KE0 = 0.22


class TestVHAC:
    """Test suite for the VHAC effect-site method."""

    def test_starts_at_zero(self):
        """Ce[0] is zero whatever Cp[0] is."""
        ce = calculate_effect_site_vhac([2.0, 2.0, 2.0], [0.0, 1.0, 2.0], KE0)
        assert ce[0] == 0.0

    def test_constant_plasma_exact(self):
        """Constant Cp gives the exact exponential approach."""
        t = np.linspace(0, 30, 301)
        cp = np.full_like(t, 1.5)
        ce = calculate_effect_site_vhac(cp, t, KE0)

        expected = 1.5 * (1 - np.exp(-KE0 * t))
        np.testing.assert_allclose(ce, expected, rtol=1e-9, atol=1e-12)

    def test_monotonic_convergence(self):
        """Ce rises monotonically toward a constant Cp and stays below it."""
        t = np.linspace(0, 60, 601)
        ce = calculate_effect_site_vhac(np.ones_like(t), t, KE0)

        assert np.all(np.diff(ce) > 0)
        assert np.all(ce < 1.0)
        assert ce[-1] == pytest.approx(1.0, abs=1e-5)

    def test_linear_ramp_exact(self):
        """A linear Cp ramp is integrated exactly by the closed form."""
        slope = 0.05
        t = np.linspace(0, 20, 41)
        ce = calculate_effect_site_vhac(slope * t, t, KE0)

        expected = slope * (t + np.expm1(-KE0 * t) / KE0)
        np.testing.assert_allclose(ce, expected, rtol=1e-9, atol=1e-12)

    def test_small_step_branch(self):
        """Tiny ke0·Δt uses the Taylor branch without blowing up."""
        ke0 = 1e-5
        t = np.linspace(0, 10, 101)
        cp = 0.1 * t
        ce = calculate_effect_site_vhac(cp, t, ke0)

        expected = 0.1 * (t + np.expm1(-ke0 * t) / ke0)
        assert np.all(np.isfinite(ce))
        np.testing.assert_allclose(ce, expected, rtol=1e-4, atol=1e-12)

    def test_non_negative(self):
        """Results are clamped to zero."""
        t = np.linspace(0, 10, 11)
        cp = np.zeros_like(t)
        ce = calculate_effect_site_vhac(cp, t, KE0)

        assert np.all(ce >= 0)
        assert np.all(ce == 0)

    def test_decay_after_stop(self):
        """Ce falls once Cp drops to zero."""
        t = np.linspace(0, 40, 401)
        cp = np.where(t <= 20, 1.0, 0.0)
        ce = calculate_effect_site_vhac(cp, t, KE0)

        peak = int(np.argmax(ce))
        assert t[peak] == pytest.approx(20.0, abs=0.15)
        assert np.all(np.diff(ce[peak:]) <= 0)

    def test_deterministic(self):
        """Identical inputs give identical outputs."""
        t = np.linspace(0, 10, 101)
        cp = np.sin(t) ** 2
        np.testing.assert_array_equal(
            calculate_effect_site_vhac(cp, t, KE0),
            calculate_effect_site_vhac(cp, t, KE0),
        )


class TestInputValidation:
    """Test suite for shared input validation."""

    def test_length_mismatch(self):
        with pytest.raises(ValidationError):
            calculate_effect_site_vhac([1.0, 2.0], [0.0, 1.0, 2.0], KE0)

    @pytest.mark.parametrize("ke0", [0.0, -0.1, math.nan, math.inf])
    def test_invalid_ke0(self, ke0):
        with pytest.raises(ValidationError):
            calculate_effect_site_vhac([1.0, 2.0], [0.0, 1.0], ke0)

    def test_too_few_points(self):
        with pytest.raises(ValidationError):
            calculate_effect_site_vhac([1.0], [0.0], KE0)

    def test_non_increasing_times(self):
        with pytest.raises(ValidationError):
            calculate_effect_site_vhac([1.0, 1.0, 1.0], [0.0, 1.0, 1.0], KE0)

    def test_non_finite_values(self):
        with pytest.raises(ValidationError):
            calculate_effect_site_vhac([1.0, math.nan], [0.0, 1.0], KE0)


class TestReferenceMethods:
    """Test suite for the Euler references and the dispatcher."""

    def test_methods_agree_on_fine_grid(self):
        """Euler methods approach VHAC as the grid is refined."""
        t = np.linspace(0, 30, 3001)
        cp = 2.0 * np.exp(-0.1 * t)
        vhac = calculate_effect_site_vhac(cp, t, KE0)

        np.testing.assert_allclose(calculate_effect_site_euler(cp, t, KE0), vhac, atol=5e-3)
        np.testing.assert_allclose(calculate_effect_site_discrete(cp, t, KE0), vhac, atol=5e-3)

    def test_dispatcher(self):
        t = np.linspace(0, 5, 51)
        cp = np.ones_like(t)

        np.testing.assert_array_equal(
            calculate_effect_site(cp, t, KE0),
            calculate_effect_site_vhac(cp, t, KE0),
        )
        np.testing.assert_array_equal(
            calculate_effect_site(cp, t, KE0, method='euler'),
            calculate_effect_site_euler(cp, t, KE0),
        )

    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            calculate_effect_site([1.0, 1.0], [0.0, 1.0], KE0, method='spline')

    def test_discrete_invalid_dt(self):
        with pytest.raises(ValidationError):
            calculate_effect_site_discrete([1.0, 1.0], [0.0, 1.0], KE0, dt=0)
