"""Custom exceptions and error-log helpers for tuning fits and mixed-effects models."""
import traceback as tb_module
from functools import wraps


LOG_COLUMNS = ['group', 'error_type', 'error_message', 'traceback']


class AnalysisError(Exception):
    """Base class for fit and model failures."""


# =============================================================================
# Exceptions — size tuning fit
# =============================================================================

class InsufficientData(AnalysisError):
    """Fewer data points than free parameters in the model."""
    def __init__(self, n_points, n_required):
        self.n_points = n_points
        self.n_required = n_required
        super().__init__(f"Got {n_points} points, need at least {n_required}")

class DegenerateInput(AnalysisError):
    """Independent variable has zero variance."""
    def __init__(self, value):
        self.value = value
        super().__init__(f"All x values are identical ({value})")

class ConvergenceFailure(AnalysisError):
    """Least-squares solver did not converge."""
    def __init__(self, msg, n_evaluations=None):
        self.n_evaluations = n_evaluations
        super().__init__(msg)


# =============================================================================
# Exceptions — mixed-effects model
# =============================================================================

class InvalidGrouping(AnalysisError):
    """Inner grouping ids are not nested within a single outer id.

    Carries conflicts: mapping of each offending inner id to the outer ids it
    was found under.
    """
    def __init__(self, conflicts):
        self.conflicts = conflicts
        desc = '; '.join(f"{k} in {sorted(map(str, v))}" for k, v in conflicts.items())
        super().__init__(f"Ids found under more than one parent: {desc}")

class SingularFit(AnalysisError):
    """Random- or fixed-effect design is rank-deficient."""


# =============================================================================
# Logging helpers
# =============================================================================

def make_log_entry(key, error=None, error_type=None, error_message=None):
    """Build one error-log row (keys are LOG_COLUMNS) for a failed or flagged group.

    An exception fills type, message and traceback itself. Conditions that are
    recorded without raising, such as a boundary fit, pass error_type and
    error_message instead and carry no traceback.
    """
    if error is None and error_type is None:
        raise ValueError("Provide either error or error_type")
    traceback = None
    if error is not None:
        error_type, error_message = type(error).__name__, str(error)
        traceback = ''.join(
            tb_module.format_exception(type(error), error, error.__traceback__)
        )
    return dict(zip(LOG_COLUMNS, [key, error_type, error_message, traceback]))


def exception_logger(func):
    """
    Decorator that allows per-group fitting functions to log exceptions.
    Use exlog parameter to capture errors instead of raising them.

    The wrapped function must take the group key as its first argument; it is
    used for the log entry and None is returned on error.
    """
    @wraps(func)
    def wrapper(key, *args, exlog=None, **kwargs):
        try:
            return func(key, *args, **kwargs)
        except Exception as e:
            if exlog is not None:
                exlog.append(make_log_entry(key, error=e))
                return None
            else:
                raise
    return wrapper
