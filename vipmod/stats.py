"""
Modulation Statistics Module

Linear mixed-effects analysis of per-cell modulation indices, with a random
intercept for each field of view nested within mouse:
    response ~ exp_type + (1 | mouse:fov)
"""
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy.stats import sem as scipy_sem
from tqdm import tqdm

from vipmod.config import (
    RESPONSE_COL, EXPTYPE_COL, MOUSE_COL, FOV_COL, GROUP_COL, SIGNIF_COL,
    POPULATION_COL, NEST_SEP, LME_FORMULA, LME_METHOD, SINGULAR_TOL, CI_ALPHA,
)
from vipmod.validation import InvalidGrouping, SingularFit, exception_logger, make_log_entry


# =============================================================================
# Data preparation
# =============================================================================

def nest_ids(outer, inner, sep=NEST_SEP):
    """
    Combine outer and inner ids into globally unique nested labels.

    Use this when inner ids are only meaningful within their parent, e.g. field
    of view numbering that restarts for every mouse.
    """
    return np.array([f'{o}{sep}{i}' for o, i in zip(outer, inner)])


def build_modulation_table(response, fixed_factor, group_outer, group_inner,
                           signif=None, exptype_labels=None):
    """
    Organize modulation indices and recording info into a table.

    Parameters
    ----------
    response : array-like
        Modulation index per cell.
    fixed_factor : array-like
        Experiment type per cell.
    group_outer, group_inner : array-like
        Mouse and field-of-view id per cell.
    signif : array-like of bool, optional
        Whether each cell is significantly modulated.
    exptype_labels : dict, optional
        Mapping applied to fixed_factor, e.g. {0: 'control', 1: 'caspase'}.

    Returns
    -------
    pd.DataFrame
        One row per cell with finite response; id columns are categorical and
        GROUP_COL holds the mouse:fov label.
    """
    columns = {
        RESPONSE_COL: response,
        EXPTYPE_COL: fixed_factor,
        MOUSE_COL: group_outer,
        FOV_COL: group_inner,
    }
    if signif is not None:
        columns[SIGNIF_COL] = signif
    lengths = {k: len(v) for k, v in columns.items()}
    if len(set(lengths.values())) != 1:
        raise ValueError(f"Input arrays must have equal length, got {lengths}")

    df = pd.DataFrame({k: np.asarray(v) for k, v in columns.items()})
    df[RESPONSE_COL] = df[RESPONSE_COL].astype(float)
    if exptype_labels is not None:
        df[EXPTYPE_COL] = df[EXPTYPE_COL].map(exptype_labels)
    if signif is not None:
        df[SIGNIF_COL] = df[SIGNIF_COL].astype(bool)
    df = df[np.isfinite(df[RESPONSE_COL])].reset_index(drop=True)

    df[GROUP_COL] = nest_ids(df[MOUSE_COL], df[FOV_COL])
    for col in [EXPTYPE_COL, MOUSE_COL, FOV_COL, GROUP_COL]:
        df[col] = pd.Categorical(df[col])
    return df


def validate_nesting(df, outer_col=MOUSE_COL, inner_col=FOV_COL):
    """Raise InvalidGrouping if any inner id occurs under more than one outer id."""
    n_parents = df.groupby(inner_col, observed=True)[outer_col].nunique()
    bad = n_parents[n_parents > 1].index
    if len(bad) > 0:
        conflicts = {
            inner: set(df.loc[df[inner_col] == inner, outer_col])
            for inner in bad
        }
        raise InvalidGrouping(conflicts)
    return None


# =============================================================================
# Mixed-effects model
# =============================================================================

@dataclass
class LMEResult:
    """Fixed effects, variance components and diagnostics of a fitted model."""
    coefs: pd.DataFrame
    re_var: float
    resid_var: float
    n_obs: int
    n_groups: int
    formula: str = LME_FORMULA
    converged: bool = True
    singular: bool = False
    llf: float = np.nan
    warnings: list = field(default_factory=list)

    @property
    def effect(self) -> pd.DataFrame:
        """Coefficient rows for the experiment type contrasts."""
        return self.coefs.drop(index='Intercept')

    def __str__(self) -> str:
        return (f"Formula: {self.formula}\n"
                f"Observations: {self.n_obs}, groups: {self.n_groups}\n"
                f"Random effect variance: {self.re_var:.4g}\n"
                f"Residual variance: {self.resid_var:.4g}\n"
                f"{self.coefs.to_string()}")


def _sig_stars(p):
    if not np.isfinite(p):
        return ''
    if p < 0.001:
        return '***'
    if p < 0.01:
        return '**'
    if p < 0.05:
        return '*'
    if p < 0.1:
        return '.'
    return ''


def _no_between_group_excess(df):
    """
    True when the between-group mean square of the fixed-effect residuals does
    not exceed the within-group mean square, i.e. the moment estimate of the
    random-intercept variance is zero or negative.
    """
    resid = df[RESPONSE_COL] - df.groupby(EXPTYPE_COL, observed=True)[RESPONSE_COL].transform('mean')
    by_group = resid.groupby(df[GROUP_COL], observed=True)
    n_obs, n_groups = len(df), by_group.ngroups
    df_between = n_groups - df[EXPTYPE_COL].nunique()
    if df_between < 1:
        return False
    ms_between = np.sum(by_group.size() * by_group.mean() ** 2) / df_between
    ms_within = np.sum((resid - by_group.transform('mean')) ** 2) / (n_obs - n_groups)
    return ms_between <= ms_within


def fit_lme_table(df, reference=None, reml=True, method=LME_METHOD, maxiter=None,
                  allow_singular=True, singular_tol=SINGULAR_TOL, verbose=False):
    """
    Fit response ~ exp_type + (1 | mouse:fov) to a modulation table.

    Parameters
    ----------
    df : pd.DataFrame
        Output of build_modulation_table.
    reference : optional
        Experiment type used as the baseline level; the first sorted level if
        None.
    reml : bool
        Restricted maximum likelihood (True) or maximum likelihood.
    method : str or list of str
        Optimizer(s) tried in order by statsmodels.
    maxiter : int, optional
        Iteration cap passed to the optimizer; its default if None.
    allow_singular : bool
        If False, a random-effect variance on the zero boundary raises
        SingularFit instead of being flagged.
    singular_tol : float
        Random-effect variance, relative to the residual variance, at or below
        which the fit counts as being on the boundary.
    verbose : bool
        Print the fitted model.

    Returns
    -------
    LMEResult

    Notes
    -----
    The fit is on the boundary when the fitted variance ratio is within
    singular_tol of zero, or when the between-group mean square of the data
    does not exceed the within-group mean square (the variance has no positive
    estimate, wherever the optimizer stopped).
    """
    validate_nesting(df)
    n_groups = df[GROUP_COL].nunique()
    if n_groups < 2:
        raise SingularFit(
            f"Random intercept is unidentifiable with {n_groups} {MOUSE_COL}{NEST_SEP}{FOV_COL} group"
        )
    if n_groups >= len(df):
        raise SingularFit(
            f"Random intercept is confounded with the residual: {n_groups} groups "
            f"for {len(df)} observations"
        )
    levels = sorted(df[EXPTYPE_COL].unique().tolist())
    if len(levels) < 2:
        raise SingularFit(f"Fixed effect {EXPTYPE_COL} needs 2 or more levels, got {levels}")
    if reference is not None:
        if reference not in levels:
            raise ValueError(f"Reference {reference} not in {levels}")
        levels = [reference] + [lvl for lvl in levels if lvl != reference]

    df = df.assign(**{EXPTYPE_COL: pd.Categorical(df[EXPTYPE_COL], categories=levels)})
    model = smf.mixedlm(
        f"{RESPONSE_COL} ~ {EXPTYPE_COL}", data=df, groups=df[GROUP_COL].astype(str).values
    )
    fit_kwargs = {} if maxiter is None else {'maxiter': maxiter}
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        try:
            result = model.fit(reml=reml, method=method, **fit_kwargs)
        except np.linalg.LinAlgError as e:
            raise SingularFit(f"Singular design matrix: {e}") from e
    model_warnings = [f"{w.category.__name__}: {w.message}" for w in caught]
    if not np.isfinite(result.llf) or not np.all(np.isfinite(result.fe_params)):
        raise SingularFit(
            f"Degenerate fit (log-likelihood {result.llf}) with optimizer {method}"
        )

    # Fixed effects come first in the parameter vector, variance components after
    fe_names = list(model.exog_names)
    k_fe = len(fe_names)
    ci = np.asarray(result.conf_int(alpha=CI_ALPHA))[:k_fe]
    coefs = pd.DataFrame({
        'Estimate': np.asarray(result.fe_params),
        '2.5_ci': ci[:, 0],
        '97.5_ci': ci[:, 1],
        'SE': np.asarray(result.bse_fe),
        'Z-stat': np.asarray(result.tvalues)[:k_fe],
        'P-val': np.asarray(result.pvalues)[:k_fe],
    }, index=fe_names)
    coefs['Sig'] = coefs['P-val'].apply(_sig_stars)
    converged = bool(result.converged)
    if not np.all(np.isfinite(coefs[['SE', 'P-val']].values)):
        converged = False
        model_warnings.append("fixed-effect standard errors could not be estimated")

    re_var = float(np.asarray(result.cov_re)[0, 0])
    resid_var = float(result.scale)
    singular = bool(re_var <= singular_tol * resid_var or _no_between_group_excess(df))
    if singular:
        msg = f"boundary (singular) fit: random-effect variance {re_var:.3g}"
        if not allow_singular:
            raise SingularFit(msg)
        model_warnings.append(msg)

    lme = LMEResult(
        coefs=coefs,
        re_var=re_var,
        resid_var=resid_var,
        n_obs=len(df),
        n_groups=n_groups,
        converged=converged,
        singular=singular,
        llf=float(result.llf),
        warnings=model_warnings,
    )
    if verbose:
        print(f"LMM: {LME_FORMULA}")
        print(lme)
        for w in model_warnings:
            print(f"WARNING: {w}")
    return lme


def fit_modulation_lme(response, fixed_factor, group_outer, group_inner, **kwargs):
    """
    Test whether experiment type explains modulation index variance.

    Builds the modulation table from parallel arrays, checks that every field
    of view belongs to exactly one mouse and fits
    response ~ exp_type + (1 | mouse:fov). Keyword arguments are passed to
    fit_lme_table.

    Raises
    ------
    InvalidGrouping
        A field-of-view id occurs under more than one mouse id.
    SingularFit
        The random or fixed effect cannot be estimated.
    """
    df = build_modulation_table(response, fixed_factor, group_outer, group_inner)
    return fit_lme_table(df, **kwargs)


@exception_logger
def _fit_lme_group(key, df_group, **kwargs):
    return fit_lme_table(df_group, **kwargs)


def fit_lme_groups(df, by=POPULATION_COL, exlog=None, verbose=False, **kwargs):
    """
    Fit the modulation model separately for each population.

    Returns a dict of population -> LMEResult; populations that fail are
    logged in exlog (if given) and left out. Boundary fits are kept but also
    logged, with error_type 'SingularFitWarning'.
    """
    results = {}
    groups = df.groupby(by, observed=True, sort=True)
    for key, df_group in tqdm(groups, total=groups.ngroups, disable=not verbose):
        if verbose:
            print(f"\n===== {key} =====")
        lme = _fit_lme_group(key, df_group, exlog=exlog, verbose=verbose, **kwargs)
        if lme is None:
            continue
        if lme.singular and exlog is not None:
            exlog.append(make_log_entry(
                key, error_type='SingularFitWarning', error_message=lme.warnings[-1]
            ))
        results[key] = lme
    return results


# =============================================================================
# Summaries
# =============================================================================

def summarize_modulation(df):
    """
    Per experiment type counts and descriptive statistics of modulation indices.

    Returns
    -------
    pd.DataFrame
        Indexed by experiment type with n_cells, mean, sem, median, n_mice,
        n_fovs and, when significance is available, n_significant and
        frac_significant.
    """
    rows = {}
    for exp_type, group in df.groupby(EXPTYPE_COL, observed=True, sort=True):
        values = group[RESPONSE_COL].values
        row = {
            'n_cells': len(group),
            'mean': np.mean(values),
            'sem': scipy_sem(values) if len(values) > 1 else np.nan,
            'median': np.median(values),
            'n_mice': group[MOUSE_COL].nunique(),
            'n_fovs': group[GROUP_COL].nunique(),
        }
        if SIGNIF_COL in group.columns:
            row['n_significant'] = int(group[SIGNIF_COL].sum())
            row['frac_significant'] = row['n_significant'] / len(group)
        rows[exp_type] = row
    df_summary = pd.DataFrame.from_dict(rows, orient='index')
    df_summary.index.name = EXPTYPE_COL
    return df_summary
