"""
Correlation Module
==================

Pearson correlation between respondents' Q-sorts.

Rank data is integer valued, so the sums of products are computed exactly
in int64 before the single floating-point division. Identical sorts
therefore correlate at exactly 1.0 and mirrored sorts on a symmetric grid
at exactly -1.0.
"""

import numpy as np

from .data import build_sort_matrix
from .errors import DistributionMismatchError
from .models import CorrelationMatrix, GridDistribution, QSort, StatementSet


def correlate_matrix(sort_matrix: np.ndarray) -> np.ndarray:
    """
    Correlate the rows of a respondent x statement matrix.

    Parameters:
        sort_matrix: M x N rank matrix (integer or float)

    Returns:
        M x M symmetric correlation array with a unit diagonal
    """
    X = np.asarray(sort_matrix)
    if np.issubdtype(X.dtype, np.integer):
        X = X.astype(np.int64)
    else:
        X = X.astype(float)
    n_statements = X.shape[1]

    sums = X.sum(axis=1)
    products = X @ X.T
    # N * sum(xy) - sum(x) * sum(y), exact for integer input
    num = n_statements * products - np.outer(sums, sums)
    var = np.diag(num)
    if np.any(var <= 0):
        flat = [int(i) for i in np.flatnonzero(var <= 0)]
        raise DistributionMismatchError("Sort(s) with zero variance cannot be correlated", rows=flat)

    num = num.astype(float)
    var = var.astype(float)
    corr = num / np.sqrt(np.outer(var, var))

    # Upper triangle is authoritative; mirror it so the result is exactly symmetric
    upper = np.triu(corr, k=1)
    corr = upper + upper.T
    np.fill_diagonal(corr, 1.0)
    return np.clip(corr, -1.0, 1.0)


def correlate_sorts(
    sorts: list[QSort],
    statements: StatementSet,
    grid: GridDistribution,
) -> CorrelationMatrix:
    """
    Validate sorts and build the respondent correlation matrix.

    Parameters:
        sorts: Q-sorts, one per participant
        statements: Statement set
        grid: Sorting grid

    Returns:
        CorrelationMatrix labelled with participant ids
    """
    matrix, participants = build_sort_matrix(sorts, statements, grid)
    return CorrelationMatrix(correlate_matrix(matrix), participants)


def print_correlation_summary(corr: CorrelationMatrix) -> None:
    """Print a short summary of the off-diagonal correlations."""
    values = corr.values[np.triu_indices(corr.size, k=1)]

    print("\n" + "=" * 60)
    print("CORRELATION MATRIX")
    print("=" * 60)
    print(f"\nRespondents: {corr.size}")
    if len(values) == 0:
        return
    print(f"  Mean r:  {values.mean():.3f}")
    print(f"  Min r:   {values.min():.3f}")
    print(f"  Max r:   {values.max():.3f}")
