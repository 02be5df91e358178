"""Tests for vipmod.tuning module."""
import numpy as np
import pandas as pd
import pytest

from vipmod.config import TUNING_P0, TUNING_MAXFEV, CURVE_POINTS, SEM_RESPONSE_COL
from vipmod.tuning import (
    erf_difference,
    fit_tuning_curve,
    fit_tuning_groups,
    fits_to_frame,
    surround_suppression_index,
    preferred_size,
    TuningFit,
)
from vipmod.validation import (
    InsufficientData, DegenerateInput, ConvergenceFailure, AnalysisError,
    LOG_COLUMNS,
)


# =============================================================================
# Fixtures
# =============================================================================

SATURATING_X = np.array([0, 5, 10, 20, 40, 80], dtype=float)
SATURATING_Y = np.array([0, 2, 5, 9, 9.5, 9.6])

TRUE_PARAMS = np.array([8.0, 15.0, 0.4, 60.0, 0.5])


@pytest.fixture
def suppressed_data():
    """Noise-free surround-suppressed tuning curve."""
    x = np.array([2, 5, 8, 12, 20, 30, 45, 60, 90, 120], dtype=float)
    return x, erf_difference(x, *TRUE_PARAMS)


@pytest.fixture
def tuning_table():
    """Long-format tuning table with four conditions."""
    x = np.array([2, 5, 8, 12, 20, 30, 45, 60, 90, 120], dtype=float)
    rows = []
    for exp_type, gain in [('control', 1.0), ('caspase', 0.6)]:
        for state, offset in [('active', 0.5), ('quiescent', 0.0)]:
            params = TRUE_PARAMS * [gain, 1, 1, 1, 1] + [0, 0, 0, 0, offset]
            y = erf_difference(x, *params)
            for xi, yi in zip(x, y):
                rows.append({
                    'exp_type': exp_type, 'state': state, 'stim_size': xi,
                    'mean_response': yi, 'sem_response': 0.1,
                })
    return pd.DataFrame(rows)


# =============================================================================
# Model
# =============================================================================

class TestErfDifference:
    def test_zero_at_origin(self):
        assert erf_difference(0.0, 10, 22, 10, 800, 0) == 0.0

    def test_offset(self):
        assert erf_difference(0.0, 10, 22, 10, 800, 1.5) == 1.5

    def test_saturates_without_suppression(self):
        y = erf_difference(np.array([1000.0]), 3.0, 10.0, 0.0, 50.0, 0.0)
        np.testing.assert_allclose(y, 3.0)

    def test_vectorized(self):
        x = np.linspace(0, 100, 11)
        assert erf_difference(x, *TUNING_P0).shape == x.shape


# =============================================================================
# Fitting
# =============================================================================

class TestFitTuningCurve:
    def test_recovers_noise_free_curve(self, suppressed_data):
        x, y = suppressed_data
        fit = fit_tuning_curve(x, y, p0=TRUE_PARAMS * 1.1)
        np.testing.assert_allclose(fit.predict(x), y, atol=1e-3)

    def test_curve_spans_zero_to_max(self, suppressed_data):
        x, y = suppressed_data
        fit = fit_tuning_curve(x, y, p0=TRUE_PARAMS * 1.1)
        assert len(fit.curve_x) == CURVE_POINTS
        assert len(fit.curve_y) == CURVE_POINTS
        assert fit.curve_x[0] == 0
        assert fit.curve_x[-1] == x.max()
        assert np.all(np.diff(fit.curve_x) > 0)

    def test_custom_curve_resolution(self, suppressed_data):
        x, y = suppressed_data
        fit = fit_tuning_curve(x, y, p0=TRUE_PARAMS * 1.1, n_points=50)
        assert fit.curve_x.shape == (50,)
        np.testing.assert_allclose(fit.curve_y, fit.predict(fit.curve_x))

    def test_saturating_curve_default_guess(self):
        """Saturating data converge from the default guess within the default budget."""
        fit = fit_tuning_curve(SATURATING_X, SATURATING_Y)
        assert len(fit.params) == 5
        assert np.all(np.isfinite(fit.params))
        assert 0 < fit.n_evaluations <= TUNING_MAXFEV
        # Levenberg-Marquardt only accepts steps that lower the residual
        initial_sse = np.sum((erf_difference(SATURATING_X, *TUNING_P0) - SATURATING_Y) ** 2)
        fitted_sse = np.sum((fit.predict(SATURATING_X) - SATURATING_Y) ** 2)
        assert fitted_sse < initial_sse
        assert fit.curve_x[-1] == 80

    def test_deterministic(self):
        fit1 = fit_tuning_curve(SATURATING_X, SATURATING_Y)
        fit2 = fit_tuning_curve(SATURATING_X, SATURATING_Y)
        np.testing.assert_array_equal(fit1.params, fit2.params)
        np.testing.assert_array_equal(fit1.curve_y, fit2.curve_y)

    def test_solver_default_budget_too_small(self):
        # scipy's own 200 * (n + 1) evaluations run out from the default guess
        with pytest.raises(ConvergenceFailure) as exc:
            fit_tuning_curve(SATURATING_X, SATURATING_Y, maxfev=None)
        assert exc.value.n_evaluations == 1200

    def test_repeated_sizes(self, suppressed_data):
        """Repeated measurements at the same size are allowed."""
        x, y = suppressed_data
        x2 = np.concatenate([x, x])
        y2 = np.concatenate([y + 0.05, y - 0.05])
        fit = fit_tuning_curve(x2, y2, p0=TRUE_PARAMS * 1.1)
        np.testing.assert_allclose(fit.predict(x), y, atol=0.05)

    def test_reports_evaluations(self, suppressed_data):
        x, y = suppressed_data
        fit = fit_tuning_curve(x, y, p0=TRUE_PARAMS * 1.1)
        assert fit.n_evaluations > 0
        assert isinstance(fit.message, str)
        assert isinstance(fit.warnings, list)

    def test_insufficient_data(self):
        with pytest.raises(InsufficientData) as exc:
            fit_tuning_curve([1, 2, 3, 4], [1, 2, 3, 4])
        assert exc.value.n_points == 4
        assert exc.value.n_required == 5

    def test_non_finite_points_dropped_before_count(self):
        x = [1, 2, 3, 4, 5, 6]
        y = [1, 2, np.nan, 4, np.nan, 6]
        with pytest.raises(InsufficientData):
            fit_tuning_curve(x, y)

    def test_degenerate_input(self):
        with pytest.raises(DegenerateInput):
            fit_tuning_curve(np.full(8, 20.0), np.arange(8.0))

    def test_convergence_failure(self, suppressed_data):
        x, y = suppressed_data
        with pytest.raises(ConvergenceFailure) as exc:
            fit_tuning_curve(x, y, maxfev=1)
        assert exc.value.n_evaluations == 1

    def test_errors_share_base_class(self):
        with pytest.raises(AnalysisError):
            fit_tuning_curve([1, 2], [1, 2])

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            fit_tuning_curve([1, 2, 3, 4, 5], [1, 2, 3, 4])

    def test_bad_initial_guess(self, suppressed_data):
        x, y = suppressed_data
        with pytest.raises(ValueError):
            fit_tuning_curve(x, y, p0=[1, 2, 3])


# =============================================================================
# Derived measures
# =============================================================================

class TestSurroundSuppression:
    def test_no_suppression_is_zero(self):
        fit = TuningFit.from_params([5.0, 20.0, 0.0, 100.0, 0.0], x_max=200)
        assert surround_suppression_index(fit) == pytest.approx(0.0)

    def test_suppressed_curve_positive(self):
        fit = TuningFit.from_params([10.0, 20.0, 0.5, 100.0, 0.0], x_max=200)
        ssi = surround_suppression_index(fit)
        assert 0 < ssi < 1

    def test_negative_peak_is_nan(self):
        fit = TuningFit.from_params([-5.0, 20.0, 0.0, 100.0, 0.0], x_max=200)
        assert np.isnan(surround_suppression_index(fit))

    def test_preferred_size_of_suppressed_curve(self):
        fit = TuningFit.from_params([10.0, 20.0, 0.5, 100.0, 0.0], x_max=200)
        size = preferred_size(fit)
        assert 0 < size < 200
        assert float(fit.predict(size)) == pytest.approx(fit.curve_y.max())

    def test_to_series(self):
        fit = TuningFit.from_params(TRUE_PARAMS, x_max=120)
        series = fit.to_series()
        assert list(series.index[:5]) == ['a', 'b', 'c', 'd', 'e']
        assert 'ssi' in series.index
        assert 'preferred_size' in series.index


# =============================================================================
# Per-condition fits
# =============================================================================

class TestFitTuningGroups:
    def test_fits_every_condition(self, tuning_table):
        fits = fit_tuning_groups(tuning_table, p0=TRUE_PARAMS * 1.1)
        assert set(fits.keys()) == {
            ('caspase', 'active'), ('caspase', 'quiescent'),
            ('control', 'active'), ('control', 'quiescent'),
        }

    def test_failed_group_logged(self, tuning_table):
        # Truncate one condition below the minimum number of points
        drop = (tuning_table['exp_type'] == 'caspase') & (tuning_table['state'] == 'active')
        df = pd.concat([tuning_table[~drop], tuning_table[drop].iloc[:3]])
        exlog = []
        fits = fit_tuning_groups(df, p0=TRUE_PARAMS * 1.1, exlog=exlog)
        assert ('caspase', 'active') not in fits
        assert len(fits) == 3
        assert len(exlog) == 1
        assert exlog[0]['group'] == ('caspase', 'active')
        assert exlog[0]['error_type'] == 'InsufficientData'
        assert list(exlog[0].keys()) == LOG_COLUMNS

    def test_failed_group_raises_without_log(self, tuning_table):
        df = tuning_table.groupby(['exp_type', 'state']).head(3)
        with pytest.raises(InsufficientData):
            fit_tuning_groups(df)

    def test_weighted_by_sem(self, tuning_table):
        fits = fit_tuning_groups(tuning_table, sem_col=SEM_RESPONSE_COL, p0=TRUE_PARAMS * 1.1)
        assert len(fits) == 4

    def test_fits_to_frame(self, tuning_table):
        fits = fit_tuning_groups(tuning_table, p0=TRUE_PARAMS * 1.1)
        df = fits_to_frame(fits)
        assert len(df) == 4
        assert {'exp_type', 'state', 'a', 'ssi'}.issubset(df.columns)
