"""
Visualization Module
====================

Style setup plus the standard Q-analysis plots: scree with parallel
analysis, loadings heatmap, factor array grid and bootstrap intervals.
Plot functions return the figure; saving is left to output.save_figure.
"""

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend for saving plots

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from . import config


def setup_style() -> None:
    """
    Configure matplotlib and seaborn style settings.

    Sets:
    - Seaborn whitegrid style
    - Consistent font sizes
    """
    sns.set_style('whitegrid')
    plt.rcParams.update({
        'figure.figsize': (10, 6),
        'font.size': 10,
        'axes.titlesize': 12,
        'axes.labelsize': 11,
        'legend.fontsize': 10,
    })


def get_colors() -> dict:
    """
    Return consistent color palette for plots.

    Returns:
        Dictionary with named colors
    """
    return {
        'primary': '#3498db',      # Blue
        'secondary': '#2ecc71',    # Green
        'accent': '#e74c3c',       # Red
        'neutral': '#95a5a6',      # Gray
        'highlight': '#f39c12',    # Orange
    }


def get_cmap(style: str = 'diverging') -> str:
    """
    Return appropriate colormap name.

    Parameters:
        style: 'diverging' for correlation/loadings, 'sequential' for counts

    Returns:
        Colormap name string
    """
    if style == 'diverging':
        return 'RdBu_r'
    elif style == 'sequential':
        return 'Blues'
    else:
        return 'viridis'


def plot_scree(eigenvalues: np.ndarray, n_factors: int = None, parallel_thresholds: np.ndarray = None) -> plt.Figure:
    """
    Scree plot with the Kaiser line and, optionally, parallel-analysis thresholds.

    Parameters:
        eigenvalues: Descending eigenvalue spectrum
        n_factors: Number of retained factors to mark
        parallel_thresholds: Percentile of permuted eigenvalues per position

    Returns:
        Figure
    """
    colors = get_colors()
    x = np.arange(1, len(eigenvalues) + 1)
    fig, ax = plt.subplots(figsize=(10, 6))

    ax.plot(x, eigenvalues, 'o-', color=colors['primary'], linewidth=2, markersize=8, label='Observed')
    ax.axhline(y=config.KAISER_THRESHOLD, color=colors['accent'], linestyle='--',
               label=f'Kaiser Criterion (eigenvalue={config.KAISER_THRESHOLD:g})')
    if parallel_thresholds is not None:
        ax.plot(x, parallel_thresholds, 's--', color=colors['neutral'], label='Parallel analysis')
    if n_factors:
        ax.axvline(x=n_factors + 0.5, color=colors['highlight'], linestyle=':', label=f'{n_factors} factors retained')

    ax.set_xlabel('Factor Number')
    ax.set_ylabel('Eigenvalue')
    ax.set_title('Scree Plot')
    ax.legend()
    ax.grid(True, alpha=0.3)
    ax.set_xticks(x)
    return fig


def plot_loadings_heatmap(loadings, title: str = 'Rotated Factor Loadings') -> plt.Figure:
    """
    Heatmap of respondent loadings.

    Parameters:
        loadings: DataFrame of loadings (respondents x factors)
        title: Plot title

    Returns:
        Figure
    """
    height = max(4, 0.3 * len(loadings) + 2)
    fig, ax = plt.subplots(figsize=(2 + 1.5 * loadings.shape[1], height))
    sns.heatmap(loadings, annot=True, cmap=get_cmap('diverging'), center=0,
                fmt='.2f', linewidths=0.5, vmin=-1, vmax=1, ax=ax)
    ax.set_title(title)
    return fig


def plot_factor_array(array, statements, grid) -> plt.Figure:
    """
    Draw one factor array as the filled sorting grid.

    Each column is a grid value; statements are stacked by descending z-score.

    Parameters:
        array: FactorArray
        statements: StatementSet
        grid: GridDistribution

    Returns:
        Figure
    """
    colors = get_colors()
    values = list(grid.values)
    height = int(grid.capacities.max())
    fig, ax = plt.subplots(figsize=(1.1 * len(values) + 1, 0.5 * height + 1.5))

    for col, value in enumerate(values):
        members = np.flatnonzero(array.ranks == value)
        members = members[np.argsort(-array.z_scores[members], kind='stable')]
        for row, idx in enumerate(members):
            ax.add_patch(plt.Rectangle((col, height - row - 1), 0.95, 0.9,
                                       facecolor=colors['primary'] if value > 0 else
                                       colors['accent'] if value < 0 else colors['neutral'],
                                       alpha=0.35))
            ax.text(col + 0.475, height - row - 0.55, str(statements[int(idx)].id),
                    ha='center', va='center', fontsize=9)

    ax.set_xlim(0, len(values))
    ax.set_ylim(0, height)
    ax.set_xticks(np.arange(len(values)) + 0.475)
    ax.set_xticklabels([f'{v:+d}' for v in values])
    ax.set_yticks([])
    ax.set_title(f'{array.label} Array ({array.n_defining} defining sorts)')
    ax.grid(False)
    return fig


def plot_bootstrap_intervals(result, factor: int, statements, top: int = None) -> plt.Figure:
    """
    Bootstrap z-score intervals for one factor.

    Parameters:
        result: BootstrapResult
        factor: Zero-based factor index
        statements: StatementSet (labels)
        top: Only plot the statements with the widest spread of z-scores

    Returns:
        Figure
    """
    colors = get_colors()
    lower = result.zscore_lower[:, factor]
    upper = result.zscore_upper[:, factor]
    centre = (lower + upper) / 2
    order = np.argsort(centre)
    if top:
        order = order[np.argsort(-np.abs(centre[order]), kind='stable')[:top]]
        order = order[np.argsort(centre[order])]

    fig, ax = plt.subplots(figsize=(8, max(4, 0.25 * len(order) + 1)))
    y = np.arange(len(order))
    ax.hlines(y, lower[order], upper[order], color=colors['primary'], linewidth=2)
    ax.plot(centre[order], y, 'o', color=colors['primary'], markersize=4)
    ax.axvline(0, color=colors['neutral'], linestyle='--', alpha=0.7)
    ax.set_yticks(y)
    ax.set_yticklabels([str(statements[int(i)].id) for i in order])
    ax.set_xlabel('z-score')
    ax.set_ylabel('Statement')
    ax.set_title(f'Factor_{factor + 1} z-score {result.confidence:.0%} Intervals '
                 f'({result.n_successful} resamples)')
    return fig
