import numpy as np

# Size tuning fit: f(x) = a * (erf(x / b) - c * erf(x / d)) + e
# Initial guess suited to z-scored calcium responses and stimulus sizes up to
# several hundred degrees; override via the p0 argument for other scales
TUNING_P0 = (10., 22., 10., 800., 0.)
TUNING_PARAM_NAMES = ['a', 'b', 'c', 'd', 'e']
MIN_TUNING_POINTS = len(TUNING_P0)
CURVE_POINTS = 2000  # resolution of the overlay curve
# Evaluation budget of the Levenberg-Marquardt solve; scipy's 200 * (n + 1)
# stops short on saturating data fitted from TUNING_P0
TUNING_MAXFEV = 20000

# Long-format tuning table columns
STIM_SIZE_COL = 'stim_size'
MEAN_RESPONSE_COL = 'mean_response'
SEM_RESPONSE_COL = 'sem_response'
EXPTYPE_COL = 'exp_type'
STATE_COL = 'state'

# Modulation table columns
RESPONSE_COL = 'response'
MOUSE_COL = 'mouse'
FOV_COL = 'fov'
GROUP_COL = 'group'
SIGNIF_COL = 'signif'
POPULATION_COL = 'population'
NEST_SEP = ':'

# Linear mixed-effects model
LME_FORMULA = f'{RESPONSE_COL} ~ {EXPTYPE_COL} + (1 | {MOUSE_COL}{NEST_SEP}{FOV_COL})'
LME_METHOD = ['bfgs', 'lbfgs', 'cg']  # statsmodels default, tried in order
SINGULAR_TOL = 1e-4  # random-effect variance, relative to residual variance
CI_ALPHA = 0.05

EXPTYPE2LABEL = {
    0: 'control',
    1: 'caspase',
}

# Plotting defaults
EXPTYPE2COLOR = {
    'control': 'black',
    'caspase': '#d6604dff',
}

MI_HIST_BINS = np.linspace(-1, 1, 41)
MI_XLABEL = 'Modulation index'
MI_YLABEL = 'Cells'
SIZE_XLABEL = 'Stimulus size (deg)'
SIZE_YLABEL = 'Response (z-score)'
