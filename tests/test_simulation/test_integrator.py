"""
Unit Tests for the Compartment Integrators
===========================================

Tests the Adams PECE integrator, the RK4 fallback and the odeint reference
against closed-form solutions of the linear 3-compartment system.
"""

import pytest
import numpy as np
from scipy.linalg import expm

from remimazolam_tci.models.pharmacokinetics.masui_model import (
    derive_pk_parameters,
    derive_rate_constants,
    state_space_matrices,
)
from remimazolam_tci.simulation.dosing import DoseEvent, DosingSchedule, time_grid
from remimazolam_tci.simulation.integrator import (
    AdamsIntegrator,
    IntegrationStats,
    RK4Integrator,
    adams_weights,
    integrate_schedule,
    integrate_with_fallback,
    milne_factor,
    proposed_step,
    solve_reference,
)
from remimazolam_tci.utils.config import IntegratorConfig
from remimazolam_tci.utils.diagnostics import DiagnosticCategory
from remimazolam_tci.utils.exceptions import NumericIntegrationFailure, ValidationError


@pytest.fixture
def pk(patient):
    return derive_pk_parameters(patient)


@pytest.fixture
def rate_constants(pk):
    return derive_rate_constants(pk)


def exact_masses(rate_constants, times, y0, rate=0.0):
    """Closed-form masses for a constant infusion rate (mg/min) from t=0."""
    A, B = state_space_matrices(rate_constants)
    steady = np.linalg.solve(A, -B * rate)
    y0 = np.asarray(y0, dtype=float)
    return np.array([steady + expm(A * t) @ (y0 - steady) for t in times])


def assert_close_to(actual, expected, rel=1e-3):
    scale = float(np.max(np.abs(expected)))
    np.testing.assert_allclose(actual, expected, atol=rel * scale)


class TestAdamsCoefficients:
    """Test suite for the Adams weight and error-constant helpers."""

    def test_euler_weight(self):
        np.testing.assert_allclose(adams_weights([0.0]), [1.0])

    def test_two_step_bashforth(self):
        """Equal steps give the classical AB2 weights."""
        np.testing.assert_allclose(adams_weights([0.0, -1.0]), [1.5, -0.5])

    def test_trapezoid(self):
        np.testing.assert_allclose(adams_weights([1.0, 0.0]), [0.5, 0.5])

    def test_milne_factors(self):
        assert milne_factor(1) == pytest.approx(0.5)
        assert milne_factor(2) == pytest.approx(1.0 / 6.0)

    def test_proposed_step(self):
        """0.9·err^(-1/(q+1)) growth, clamped to [0.1, 2]."""
        assert proposed_step(1.0, 2, 0.01) == pytest.approx(0.009)
        assert proposed_step(0.0, 3, 0.01) == pytest.approx(0.02)
        assert proposed_step(1e-12, 1, 0.01) == pytest.approx(0.02)
        assert proposed_step(1e6, 1, 0.01) == pytest.approx(0.001)
        assert proposed_step(8.0, 2, 0.01) == pytest.approx(0.0045)


class TestAdamsIntegrator:
    """Test suite for the adaptive Adams integrator."""

    def test_zero_dosing_stays_zero(self, pk, rate_constants):
        schedule = DosingSchedule([], weight=70)
        result = AdamsIntegrator(rate_constants, pk.v1).integrate(schedule, time_grid(30, 0.1))

        assert np.all(result.masses == 0.0)
        assert np.all(result.plasma_concentrations == 0.0)

    def test_bolus_at_start(self, pk, rate_constants):
        """A bolus at t=0 is in the first output."""
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        result = AdamsIntegrator(rate_constants, pk.v1).integrate(schedule, time_grid(10, 0.1))

        assert result.masses[0, 0] == 5.0
        assert result.plasma_concentrations[0] == pytest.approx(5.0 / pk.v1)

    def test_bolus_matches_closed_form(self, pk, rate_constants):
        times = time_grid(60, 0.1)
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        result = AdamsIntegrator(rate_constants, pk.v1).integrate(schedule, times)

        assert_close_to(result.masses, exact_masses(rate_constants, times, [5.0, 0, 0]))

    def test_infusion_matches_closed_form(self, pk, rate_constants):
        times = time_grid(120, 0.5)
        schedule = DosingSchedule([DoseEvent(0, continuous_rate=1.2)], weight=70)
        result = AdamsIntegrator(rate_constants, pk.v1).integrate(schedule, times)

        expected = exact_masses(rate_constants, times, [0, 0, 0], rate=1.2 * 70 / 60)
        assert_close_to(result.masses, expected)

    def test_stats_reported(self, pk, rate_constants):
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0, continuous_rate=1.0)], weight=70)
        result = AdamsIntegrator(rate_constants, pk.v1).integrate(schedule, time_grid(30, 0.1))
        stats = result.stats

        assert stats.method == "adams"
        assert stats.steps > 0
        assert stats.function_evaluations >= 2 * stats.steps
        assert 1 <= stats.max_order_used <= 5
        assert 0 < stats.min_step <= stats.max_step <= 1.0

    def test_adams_carries_standard_dosing(self, pk, rate_constants, recording_sink):
        """A bolus plus infusion runs on Adams alone, above order 1."""
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0, continuous_rate=1.0)], weight=70)
        result = integrate_with_fallback(rate_constants, pk.v1, schedule, time_grid(20, 0.1),
                                         sink=recording_sink)
        stats = result.stats

        assert stats.method == "adams"
        assert stats.fallback_segments == 0
        assert stats.max_order_used >= 2
        assert stats.order_changes >= 1
        assert stats.steps < 1000
        assert not stats.stiffness_suspected
        assert not recording_sink.filter(fallback_applied=True)

    def test_bolus_reaches_higher_order(self, pk, rate_constants):
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        result = AdamsIntegrator(rate_constants, pk.v1).integrate(schedule, time_grid(10, 0.1))

        assert result.stats.max_order_used >= 2
        assert result.stats.rejected_steps < result.stats.steps

    def test_strict_mxstep_raises(self, pk, rate_constants):
        """Without a fallback, exhausting mxstep is an error."""
        config = IntegratorConfig(mxstep=1)
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        integrator = AdamsIntegrator(rate_constants, pk.v1, config)

        with pytest.raises(NumericIntegrationFailure) as excinfo:
            integrator.integrate(schedule, time_grid(5, 0.1))
        assert excinfo.value.reason == "mxstep"


class TestScheduleHandling:
    """Test suite for dose events inside the timeline."""

    def test_output_at_bolus_is_post_bolus(self, pk, rate_constants):
        times = time_grid(20, 0.1)
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0), DoseEvent(10, bolus=3.0)], weight=70)
        result = integrate_with_fallback(rate_constants, pk.v1, schedule, times)

        index = int(np.where(times == 10.0)[0][0])
        before = exact_masses(rate_constants, [10.0], [5.0, 0, 0])[0]
        assert result.masses[index, 0] == pytest.approx(before[0] + 3.0, abs=1e-3)

    def test_bolus_between_outputs(self, pk, rate_constants):
        """A bolus off the output grid still enters the state."""
        times = time_grid(10, 1.0)
        schedule = DosingSchedule([DoseEvent(2.5, bolus=4.0)], weight=70)
        result = integrate_with_fallback(rate_constants, pk.v1, schedule, times)

        assert result.masses[2, 0] == 0.0
        expected = exact_masses(rate_constants, [0.5], [4.0, 0, 0])[0]
        assert_close_to(result.masses[3], expected)

    def test_rate_change(self, pk, rate_constants):
        """A rate change restarts the span from the current state."""
        times = time_grid(40, 0.5)
        schedule = DosingSchedule([
            DoseEvent(0, continuous_rate=2.0),
            DoseEvent(20, continuous_rate=0.0),
        ], weight=70)
        result = integrate_with_fallback(rate_constants, pk.v1, schedule, times)

        at_switch = exact_masses(rate_constants, [20.0], [0, 0, 0], rate=2.0 * 70 / 60)[0]
        after = exact_masses(rate_constants, times[times >= 20] - 20.0, at_switch)
        assert_close_to(result.masses[times >= 20], after)

    def test_continuation_from_state(self, pk, rate_constants):
        """Splitting a run and continuing from the final state matches one run."""
        events = [DoseEvent(0, bolus=5.0, continuous_rate=1.0)]
        schedule = DosingSchedule(events, weight=70)
        whole = integrate_with_fallback(rate_constants, pk.v1, schedule, time_grid(20, 0.5))

        first = integrate_with_fallback(rate_constants, pk.v1, schedule, time_grid(10, 0.5))
        second = integrate_with_fallback(
            rate_constants, pk.v1, schedule, time_grid(10, 0.5, start=10.0),
            initial_state=first.final_state
        )
        np.testing.assert_allclose(second.final_state, whole.final_state, rtol=1e-4)

    def test_no_negative_masses(self, pk, rate_constants):
        schedule = DosingSchedule([DoseEvent(0, bolus=50.0), DoseEvent(1, bolus=0.5)], weight=70)
        result = integrate_with_fallback(rate_constants, pk.v1, schedule, time_grid(300, 1.0))

        assert np.all(result.masses >= 0.0)

    def test_deterministic(self, pk, rate_constants):
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0, continuous_rate=1.3)], weight=70)
        first = integrate_with_fallback(rate_constants, pk.v1, schedule, time_grid(30, 0.1))
        second = integrate_with_fallback(rate_constants, pk.v1, schedule, time_grid(30, 0.1))

        np.testing.assert_array_equal(first.masses, second.masses)

    @pytest.mark.parametrize("times", [
        [],
        [0.0, 1.0, 1.0],
        [0.0, 2.0, 1.0],
        [-1.0, 0.0],
        [0.0, float('nan')],
    ])
    def test_invalid_output_times(self, pk, rate_constants, times):
        schedule = DosingSchedule([], weight=70)
        with pytest.raises(ValidationError):
            integrate_with_fallback(rate_constants, pk.v1, schedule, times)

    def test_invalid_initial_state(self, pk, rate_constants):
        schedule = DosingSchedule([], weight=70)
        with pytest.raises(ValidationError):
            integrate_with_fallback(rate_constants, pk.v1, schedule, [0.0, 1.0],
                                    initial_state=[-1.0, 0.0, 0.0])

    def test_unknown_integrator(self, pk, rate_constants):
        schedule = DosingSchedule([], weight=70)
        with pytest.raises(ValidationError):
            integrate_with_fallback(rate_constants, pk.v1, schedule, [0.0, 1.0], chain=("euler",))


class TestFallback:
    """Test suite for the RK4 fallback and the odeint reference."""

    def test_rk4_matches_closed_form(self, pk, rate_constants):
        times = time_grid(30, 0.1)
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        result = RK4Integrator(rate_constants, pk.v1).integrate(schedule, times)

        assert_close_to(result.masses, exact_masses(rate_constants, times, [5.0, 0, 0]), rel=1e-6)

    def test_failed_span_retried_with_rk4(self, pk, rate_constants, recording_sink):
        config = IntegratorConfig(mxstep=1)
        times = time_grid(10, 0.1)
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        result = integrate_with_fallback(
            rate_constants, pk.v1, schedule, times, config=config, sink=recording_sink
        )

        assert "rk4" in result.stats.method
        assert result.stats.fallback_segments >= 1
        assert_close_to(result.masses, exact_masses(rate_constants, times, [5.0, 0, 0]))

        fallbacks = recording_sink.filter(category=DiagnosticCategory.NUMERICAL,
                                          fallback_applied=True)
        assert fallbacks
        assert all(record.resolved for record in fallbacks)

    def test_reference_agrees_with_adams(self, pk, rate_constants):
        times = time_grid(60, 0.1)
        schedule = DosingSchedule([
            DoseEvent(0, bolus=6.0, continuous_rate=1.5),
            DoseEvent(15, continuous_rate=0.8),
        ], weight=70)

        adams = integrate_with_fallback(rate_constants, pk.v1, schedule, times)
        reference = solve_reference(rate_constants, pk.v1, schedule, times)

        assert reference.stats.method == "odeint"
        assert_close_to(adams.plasma_concentrations, reference.plasma_concentrations)

    def test_clip_negative_reports_large_values(self, pk, rate_constants, recording_sink):
        integrator = AdamsIntegrator(rate_constants, pk.v1, sink=recording_sink)
        stats = IntegrationStats()

        clipped = integrator._clip_negative(np.array([-1e-12, 1.0, 2.0]), 1.0, stats)
        assert clipped[0] == 0.0
        assert not recording_sink.records

        clipped = integrator._clip_negative(np.array([1.0, -1e-3, 2.0]), 2.0, stats)
        assert clipped[1] == 0.0
        assert stats.clipped_values == 2
        assert len(recording_sink.filter(category=DiagnosticCategory.NUMERICAL)) == 1


class TestStiffnessDetection:
    """Test suite for the repeated-rejection stiffness report."""

    @pytest.fixture
    def unreachable_config(self):
        # No step can meet these tolerances, so every attempt is rejected
        return IntegratorConfig(rtol=1e-30, atol=1e-30, stiffness_rejection_limit=3)

    def test_adams_flags_and_fails(self, pk, rate_constants, recording_sink, unreachable_config):
        integrator = AdamsIntegrator(rate_constants, pk.v1, unreachable_config, recording_sink)
        stats = IntegrationStats()

        with pytest.raises(NumericIntegrationFailure) as excinfo:
            integrator.advance(np.array([5.0, 0.0, 0.0]), 0.0, np.array([0.1]), 0.0, stats)

        assert excinfo.value.reason == "step_size"
        assert stats.stiffness_suspected
        assert stats.steps == 0
        assert stats.rejected_steps >= 3

        reports = recording_sink.filter(category=DiagnosticCategory.NUMERICAL, source="adams")
        assert len(reports) == 1
        assert "stiff" in reports[0].message
        assert reports[0].context['rejections'] == 3

    def test_reported_through_fallback(self, pk, rate_constants, recording_sink,
                                       unreachable_config):
        times = time_grid(1, 0.1)
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        result = integrate_with_fallback(rate_constants, pk.v1, schedule, times,
                                         config=unreachable_config, sink=recording_sink)

        assert result.stats.stiffness_suspected
        assert result.stats.method == "rk4"
        assert_close_to(result.masses, exact_masses(rate_constants, times, [5.0, 0, 0]))

        messages = [r.message for r in recording_sink.filter(category=DiagnosticCategory.NUMERICAL)]
        assert any("stiff" in message for message in messages)
        assert any("retried with rk4" in message for message in messages)

    def test_default_tolerances_not_flagged(self, pk, rate_constants, recording_sink):
        schedule = DosingSchedule([DoseEvent(0, bolus=5.0)], weight=70)
        result = integrate_with_fallback(rate_constants, pk.v1, schedule, time_grid(10, 0.1),
                                         sink=recording_sink)

        assert not result.stats.stiffness_suspected
        assert not recording_sink.filter(category=DiagnosticCategory.NUMERICAL)


class TestBolusWindows:
    """Test suite for which boluses a run applies."""

    def test_bolus_at_later_start_applied(self, pk, rate_constants):
        """A run starting at a bolus time includes that bolus."""
        schedule = DosingSchedule([DoseEvent(10, bolus=4.0)], weight=70)
        strategies = [AdamsIntegrator(rate_constants, pk.v1)]
        times = time_grid(5, 0.5, start=10.0)
        result = integrate_schedule(strategies, schedule, times)

        assert result.masses[0, 0] == 4.0
        assert_close_to(result.masses, exact_masses(rate_constants, times - 10.0, [4.0, 0, 0]))

    def test_bolus_before_start_ignored(self, pk, rate_constants):
        schedule = DosingSchedule([DoseEvent(5, bolus=4.0)], weight=70)
        strategies = [RK4Integrator(rate_constants, pk.v1)]
        result = integrate_schedule(strategies, schedule, time_grid(5, 0.5, start=10.0))

        assert np.all(result.masses == 0.0)

    def test_same_time_boluses_summed(self, pk, rate_constants):
        schedule = DosingSchedule([DoseEvent(2, bolus=1.0), DoseEvent(2, bolus=2.5)], weight=70)
        strategies = [RK4Integrator(rate_constants, pk.v1)]
        times = time_grid(4, 0.5)
        result = integrate_schedule(strategies, schedule, times)

        index = int(np.where(times == 2.0)[0][0])
        assert result.masses[index - 1, 0] == 0.0
        assert result.masses[index, 0] == pytest.approx(3.5)
