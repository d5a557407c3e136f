"""
Factor Array Module
===================

Defining-sort selection, weighted factor scores and the mapping of factor
z-scores back onto the sorting grid.
"""

import logging

import numpy as np
import pandas as pd

from . import config
from .data import standardize_sorts
from .errors import NoDefiningSortsError
from .models import (
    DefiningSortPolicy,
    FactorArray,
    GridDistribution,
    RotatedSolution,
    StatementSet,
    factor_labels,
)

logger = logging.getLogger(__name__)


def select_defining_sorts(
    loadings: np.ndarray,
    n_statements: int,
    policy: DefiningSortPolicy = None,
) -> dict[int, list[int]]:
    """
    Assign each respondent to at most one factor it defines.

    A respondent defines factor f when loading^2 exceeds the policy
    threshold and no other factor has a larger absolute loading (ties go to
    the lowest factor index). The policy can add PQMethod's significance
    test |loading| > 1.96 / sqrt(N) and the requirement that the factor
    explains more than half of the respondent's communality.

    Parameters:
        loadings: M x K rotated loadings
        n_statements: Number of statements N
        policy: Selection thresholds. Defaults to loading^2 > 0.5

    Returns:
        Dictionary mapping factor index to the list of respondent indices
    """
    if policy is None:
        policy = DefiningSortPolicy()

    L = np.asarray(loadings, dtype=float)
    n_factors = L.shape[1]
    significance = config.SIGNIFICANCE_Z / np.sqrt(n_statements)
    communalities = (L ** 2).sum(axis=1)

    defining = {f: [] for f in range(n_factors)}
    for i, row in enumerate(L):
        f = int(np.argmax(np.abs(row)))
        loading = row[f]
        if loading ** 2 <= policy.min_loading_squared:
            continue
        if policy.require_significance and abs(loading) <= significance:
            continue
        if policy.require_communality_majority and loading ** 2 <= communalities[i] / 2:
            continue
        defining[f].append(i)
    return defining


def factor_scores(z_ranks: np.ndarray, loadings: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Weighted average of standardized sorts and its z-score across statements.

    Parameters:
        z_ranks: D x N standardized ranks of the defining sorts
        loadings: D loadings of the defining sorts on the factor

    Returns:
        Tuple of (weighted scores, z-scores), each of length N
    """
    loadings = np.asarray(loadings, dtype=float)
    weighted = loadings @ np.asarray(z_ranks, dtype=float) / np.abs(loadings).sum()
    sd = weighted.std()
    if sd <= config.ZERO_VARIANCE_TOLERANCE * max(1.0, float(np.abs(weighted).max())):
        logger.warning("Weighted factor scores have zero variance; z-scores set to 0")
        return weighted, np.zeros_like(weighted)
    return weighted, (weighted - weighted.mean()) / sd


def ranks_from_scores(z_scores: np.ndarray, grid: GridDistribution) -> np.ndarray:
    """
    Map z-scores onto the grid.

    Statements are ordered by z-score (descending, ties by statement
    index) and fill the grid columns from the highest value down.

    Parameters:
        z_scores: Length-N factor z-scores
        grid: Sorting grid with N placements

    Returns:
        Length-N integer rank array satisfying the grid capacities
    """
    z_scores = np.asarray(z_scores, dtype=float)
    order = np.lexsort((np.arange(len(z_scores)), -z_scores))
    slots = np.repeat(grid.values[::-1], grid.capacities[::-1])
    ranks = np.empty(len(z_scores), dtype=int)
    ranks[order] = slots
    return ranks


def build_factor_arrays(
    rotated: RotatedSolution,
    sort_matrix: np.ndarray,
    statements: StatementSet,
    grid: GridDistribution,
    policy: DefiningSortPolicy = None,
) -> tuple:
    """
    Build one factor array per rotated factor.

    Parameters:
        rotated: Rotated solution (pattern loadings for oblique methods)
        sort_matrix: M x N rank matrix in the same respondent order
        statements: Statement set
        grid: Sorting grid
        policy: Defining-sort policy

    Returns:
        Tuple of FactorArray, one per factor

    Raises:
        NoDefiningSortsError: a factor has no defining sorts
    """
    defining = select_defining_sorts(rotated.loadings, len(statements), policy)
    empty = [f + 1 for f, rows in defining.items() if not rows]
    if empty:
        raise NoDefiningSortsError(
            f"Factor(s) {empty} have no defining sorts",
            factors=empty, n_factors=rotated.n_factors,
        )

    z_ranks = standardize_sorts(sort_matrix)
    arrays = []
    for f, rows in defining.items():
        rows = np.array(rows, dtype=int)
        loadings = rotated.loadings[rows, f]
        weighted, z = factor_scores(z_ranks[rows], loadings)
        arrays.append(FactorArray(
            factor=f,
            statement_ids=statements.ids,
            defining_sorts=rows,
            defining_loadings=loadings,
            weighted_scores=weighted,
            z_scores=z,
            ranks=ranks_from_scores(z, grid),
        ))
    return tuple(arrays)


def zscore_matrix(arrays: tuple) -> np.ndarray:
    """N x K matrix of factor z-scores."""
    return np.column_stack([a.z_scores for a in arrays])


def factor_arrays_frame(arrays: tuple, statements: StatementSet) -> pd.DataFrame:
    """
    Wide table of z-scores and grid ranks per statement.

    Returns:
        DataFrame indexed by statement id with the statement text, then
        {Factor_k}_z and {Factor_k}_rank columns
    """
    df = pd.DataFrame({'statement': statements.texts}, index=pd.Index(statements.ids, name='id'))
    for array in arrays:
        df[f'{array.label}_z'] = array.z_scores
        df[f'{array.label}_rank'] = array.ranks
    return df


def defining_sorts_frame(arrays: tuple, rotated: RotatedSolution) -> pd.DataFrame:
    """Loadings table with an 'X' flag next to each defining loading (PQMethod style)."""
    labels = factor_labels(rotated.n_factors)
    df = pd.DataFrame(rotated.loadings, index=list(rotated.participants), columns=labels)
    for array, label in zip(arrays, labels):
        flags = np.full(len(df), '', dtype=object)
        flags[list(array.defining_sorts)] = 'X'
        df[f'{label}_defining'] = flags
    return df


def print_factor_arrays(arrays: tuple, statements: StatementSet, top: int = 5) -> None:
    """Print defining sorts and the extreme statements of each factor."""
    print("\n" + "=" * 60)
    print("FACTOR ARRAYS")
    print("=" * 60)

    for array in arrays:
        print(f"\n{array.label}: {array.n_defining} defining sort(s)")
        print("-" * 50)
        order = np.lexsort((np.arange(len(array.z_scores)), -array.z_scores))
        for idx in list(order[:top]) + list(order[-top:]):
            stmt = statements[int(idx)]
            print(f"  {array.ranks[idx]:+d}  {array.z_scores[idx]:6.2f}  {stmt.id}: {stmt.text[:60]}")
