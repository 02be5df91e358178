import numpy as np
from matplotlib import pyplot as plt

from vipmod.config import (
    EXPTYPE_COL, RESPONSE_COL, EXPTYPE2COLOR, MI_HIST_BINS, MI_XLABEL,
    MI_YLABEL, SIZE_XLABEL, SIZE_YLABEL,
)

LABELFONTSIZE = 12
plt.rcParams['axes.labelsize'] = LABELFONTSIZE
plt.rcParams['axes.titlesize'] = LABELFONTSIZE
plt.rcParams['xtick.labelsize'] = LABELFONTSIZE
plt.rcParams['ytick.labelsize'] = LABELFONTSIZE
plt.rcParams['legend.fontsize'] = LABELFONTSIZE


def plot_modulation_histogram(ax, values, signif, bins=MI_HIST_BINS, color='black',
                              title=None, xlabel=MI_XLABEL, ylabel=MI_YLABEL):
    """
    Histogram of modulation indices with significantly modulated cells filled.

    Parameters
    ----------
    ax : matplotlib.axes.Axes
        The axes to draw on.
    values : array-like
        Modulation index per cell.
    signif : array-like of bool
        Significance of each cell's modulation.
    bins : array-like
        Bin edges shared by both histograms.

    Returns
    -------
    ax : matplotlib.axes.Axes
    """
    values = np.asarray(values, dtype=float)
    signif = np.asarray(signif, dtype=bool)
    counts, _, _ = ax.hist(values, bins=bins, histtype='step', color=color)
    ax.hist(values[signif], bins=bins, histtype='stepfilled', color=color)
    # Leave 20% headroom above the tallest bin
    y_max = counts.max() + round(0.2 * counts.max())
    ax.set_ylim([0, max(y_max, 1)])
    ax.set_xlim([bins[0], bins[-1]])
    if title is not None:
        ax.set_title(title)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    return ax


def plot_modulation_boxplot(ax, df, order=None, colors=None, ylabel=MI_XLABEL):
    """Box and whisker plot of modulation indices per experiment type."""
    if order is None:
        order = sorted(df[EXPTYPE_COL].unique().tolist())
    if colors is None:
        colors = [EXPTYPE2COLOR.get(exp_type, 'black') for exp_type in order]
    data = [df.loc[df[EXPTYPE_COL] == exp_type, RESPONSE_COL].values for exp_type in order]
    boxes = ax.boxplot(data, positions=np.arange(len(order)), widths=0.5,
                       showfliers=False)
    for i, color in enumerate(colors):
        for key in ['boxes', 'medians']:
            boxes[key][i].set_color(color)
        for key in ['whiskers', 'caps']:
            # two of each per box
            boxes[key][2 * i].set_color(color)
            boxes[key][2 * i + 1].set_color(color)
    ax.set_xticks(np.arange(len(order)))
    ax.set_xticklabels([str(exp_type) for exp_type in order])
    ax.set_ylabel(ylabel)
    return ax


def plot_tuning_fit(ax, x, y, fit, yerr=None, color='black', label=None, ls='-',
                    xlabel=SIZE_XLABEL, ylabel=SIZE_YLABEL):
    """Mean (± SEM) responses per stimulus size with the fitted curve overlaid."""
    ax.errorbar(x, y, yerr=yerr, fmt='o', ms=4, color=color, capsize=2)
    ax.plot(fit.curve_x, fit.curve_y, color=color, ls=ls, label=label)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    if label is not None:
        ax.legend(loc='upper right', frameon=False)
    return ax
