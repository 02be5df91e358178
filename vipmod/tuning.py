"""
Size Tuning Module

Fits the double error-function model of surround suppression to size-tuning
data and derives summary measures from the fitted curve:
- Nonlinear least-squares fit with a fixed, configurable initial guess
- Dense prediction curve for plotting
- Surround suppression index and preferred size
- Per-condition fits over a long-format tuning table
"""
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.optimize import curve_fit
from scipy.special import erf
from tqdm import tqdm

from vipmod.config import (
    TUNING_P0, TUNING_PARAM_NAMES, MIN_TUNING_POINTS, CURVE_POINTS, TUNING_MAXFEV,
    STIM_SIZE_COL, MEAN_RESPONSE_COL, EXPTYPE_COL, STATE_COL,
)
from vipmod.validation import (
    InsufficientData, DegenerateInput, ConvergenceFailure, exception_logger,
)


def erf_difference(x, a, b, c, d, e):
    """Difference of error functions: a * (erf(x / b) - c * erf(x / d)) + e."""
    return a * (erf(x / b) - c * erf(x / d)) + e


@dataclass
class TuningFit:
    """Fitted size-tuning curve for one condition."""
    params: np.ndarray
    curve_x: np.ndarray
    curve_y: np.ndarray
    pcov: np.ndarray = None
    n_evaluations: int = None
    message: str = ''
    warnings: list = field(default_factory=list)

    @classmethod
    def from_params(cls, params, x_max, n_points=CURVE_POINTS):
        params = np.asarray(params, dtype=float)
        curve_x = np.linspace(0, x_max, n_points)
        return cls(params=params, curve_x=curve_x, curve_y=erf_difference(curve_x, *params))

    def predict(self, x):
        """Evaluate the fitted model at x."""
        return erf_difference(np.asarray(x, dtype=float), *self.params)

    @property
    def perr(self) -> np.ndarray:
        """One standard deviation errors on the parameters."""
        if self.pcov is None:
            return np.full(len(self.params), np.nan)
        return np.sqrt(np.diag(self.pcov))

    def to_dict(self) -> dict:
        d = dict(zip(TUNING_PARAM_NAMES, self.params.tolist()))
        d.update({
            'ssi': surround_suppression_index(self),
            'preferred_size': preferred_size(self),
            'n_evaluations': self.n_evaluations,
            'n_warnings': len(self.warnings),
        })
        return d

    def to_series(self) -> pd.Series:
        return pd.Series(self.to_dict())


def _format_warning(w):
    return f"{w.category.__name__}: {w.message}"


def fit_tuning_curve(x, y, p0=TUNING_P0, n_points=CURVE_POINTS, sigma=None,
                     maxfev=TUNING_MAXFEV):
    """
    Fit the double error-function model to size-tuning data.

    Parameters
    ----------
    x : array-like
        Stimulus sizes, may contain repeats.
    y : array-like
        Mean responses matched to x.
    p0 : sequence of 5 floats
        Initial guess for (a, b, c, d, e). The same guess is always used, no
        restarts are attempted.
    n_points : int
        Number of evenly spaced samples in the returned curve.
    sigma : array-like, optional
        Uncertainty in y (e.g. SEM) used to weight the residuals.
    maxfev : int, optional
        Maximum number of function evaluations; scipy's 200 * (n + 1) if None.

    Returns
    -------
    TuningFit
        Fitted parameters, a curve over [0, max(x)] and solver diagnostics.

    Raises
    ------
    InsufficientData
        Fewer finite (x, y) pairs than model parameters.
    DegenerateInput
        All x values are identical.
    ConvergenceFailure
        The solver did not converge or returned non-finite parameters.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    p0 = np.asarray(p0, dtype=float)
    if x.ndim != 1 or y.ndim != 1 or len(x) != len(y):
        raise ValueError(f"x and y must be 1D and of equal length, got {x.shape} and {y.shape}")
    if len(p0) != MIN_TUNING_POINTS:
        raise ValueError(f"p0 must have {MIN_TUNING_POINTS} values, got {len(p0)}")
    if n_points < 2:
        raise ValueError(f"n_points must be at least 2, got {n_points}")

    valid = np.isfinite(x) & np.isfinite(y)
    if sigma is not None:
        sigma = np.asarray(sigma, dtype=float)
        if sigma.shape != x.shape:
            raise ValueError(f"sigma must match x, got {sigma.shape} and {x.shape}")
        valid &= np.isfinite(sigma) & (sigma > 0)
        sigma = sigma[valid]
    x, y = x[valid], y[valid]

    if len(x) < MIN_TUNING_POINTS:
        raise InsufficientData(len(x), MIN_TUNING_POINTS)
    if np.ptp(x) == 0:
        raise DegenerateInput(x[0])
    if x.max() <= 0:
        raise ValueError("Stimulus sizes must include a positive value")

    if maxfev is None:
        maxfev = 200 * (len(p0) + 1)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        try:
            popt, pcov, infodict, mesg, ier = curve_fit(
                erf_difference, x, y, p0=p0, sigma=sigma,
                full_output=True, maxfev=maxfev
            )
        except RuntimeError as e:
            raise ConvergenceFailure(str(e), n_evaluations=maxfev) from e
    n_evaluations = int(infodict['nfev'])
    if not np.all(np.isfinite(popt)):
        raise ConvergenceFailure(
            f"Non-finite parameters {popt.tolist()}: {mesg}",
            n_evaluations=n_evaluations
        )

    curve_x = np.linspace(0, x.max(), n_points)
    return TuningFit(
        params=popt,
        curve_x=curve_x,
        curve_y=erf_difference(curve_x, *popt),
        pcov=pcov,
        n_evaluations=n_evaluations,
        message=mesg,
        warnings=[_format_warning(w) for w in caught],
    )


def surround_suppression_index(fit):
    """
    Surround suppression index of a fitted tuning curve.

    SSI = (R_peak - R_largest) / R_peak, where R_peak is the maximum of the
    fitted curve and R_largest its value at the largest stimulus size. Returns
    NaN when the peak response is not positive.
    """
    r_peak = np.max(fit.curve_y)
    r_largest = fit.curve_y[-1]
    if r_peak <= 0:
        return np.nan
    return float((r_peak - r_largest) / r_peak)


def preferred_size(fit):
    """Stimulus size at the peak of the fitted curve."""
    return float(fit.curve_x[np.argmax(fit.curve_y)])


@exception_logger
def _fit_group(key, df_group, x_col, y_col, sem_col=None, **fit_kwargs):
    sigma = df_group[sem_col].values if sem_col is not None else None
    return fit_tuning_curve(
        df_group[x_col].values, df_group[y_col].values, sigma=sigma, **fit_kwargs
    )


def fit_tuning_groups(df, groupby=(EXPTYPE_COL, STATE_COL), x_col=STIM_SIZE_COL,
                      y_col=MEAN_RESPONSE_COL, sem_col=None, exlog=None,
                      verbose=False, **fit_kwargs):
    """
    Fit one tuning curve per condition in a long-format tuning table.

    Parameters
    ----------
    df : pd.DataFrame
        One row per (condition, stimulus size) with x_col and y_col columns.
    groupby : sequence of str
        Columns defining a condition, by default experiment type and
        behavioral state.
    sem_col : str, optional
        Column used to weight the fit; unweighted if None.
    exlog : list, optional
        If given, failed groups are logged here and skipped instead of raising.
    verbose : bool
        Print a line per fitted group.
    **fit_kwargs
        Passed to fit_tuning_curve (p0, n_points, maxfev).

    Returns
    -------
    dict
        Group key tuple -> TuningFit.
    """
    fits = {}
    groups = df.groupby(list(groupby), observed=True, sort=True)
    for key, df_group in tqdm(groups, total=groups.ngroups, disable=not verbose):
        key = key if isinstance(key, tuple) else (key,)
        fit = _fit_group(key, df_group, x_col, y_col, sem_col=sem_col,
                         exlog=exlog, **fit_kwargs)
        if fit is None:
            if verbose:
                print(f"{key}: fit failed")
            continue
        fits[key] = fit
        if verbose:
            print(f"{key}: params={np.round(fit.params, 3).tolist()}, "
                  f"{len(fit.warnings)} warnings")
    return fits


def fits_to_frame(fits, groupby=(EXPTYPE_COL, STATE_COL)):
    """Tabulate parameters and derived measures of fits keyed by group."""
    rows = []
    for key, fit in fits.items():
        row = dict(zip(groupby, key))
        row.update(fit.to_dict())
        rows.append(row)
    return pd.DataFrame(rows)
