"""
Data Loading and Validation Module
==================================

Functions for loading Q-sorts, checking them against the statement set and
grid, and building the respondent x statement rank matrix used by every
later stage.
"""

import logging

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler

from . import config
from .errors import DistributionMismatchError, IncompleteSortError, InvalidConfigurationError
from .models import GridDistribution, QSort, StatementSet

logger = logging.getLogger(__name__)


def load_csv(filepath: str, participant_col: str = None) -> pd.DataFrame:
    """
    Load a wide CSV of sorts (one row per participant, one column per statement).

    Parameters:
        filepath: Path to CSV file
        participant_col: Column holding participant ids. Defaults to config.PARTICIPANT_COLUMN

    Returns:
        DataFrame indexed by participant id
    """
    if participant_col is None:
        participant_col = config.PARTICIPANT_COLUMN

    df = pd.read_csv(filepath)
    if participant_col not in df.columns:
        raise InvalidConfigurationError(
            f"Column '{participant_col}' not found in {filepath}", field='participant_col'
        )
    df = df.set_index(participant_col)
    print(f"Loaded {len(df):,} sorts over {len(df.columns)} statements from {filepath}")
    return df


def sorts_from_frame(df: pd.DataFrame, statements: StatementSet) -> list[QSort]:
    """
    Convert a wide sort table into QSort records.

    Columns are matched to statement ids by their string form, so a CSV
    header of "1", "2", ... matches integer ids 1, 2, ...
    Missing cells are left out of the placements and reported by validation.

    Parameters:
        df: DataFrame indexed by participant id
        statements: Statement set the columns refer to

    Returns:
        List of QSort, in row order
    """
    by_name = {str(stmt_id): stmt_id for stmt_id in statements.ids}
    sorts = []
    for participant, row in df.iterrows():
        placements = {}
        for column, value in row.items():
            if pd.isna(value):
                continue
            placements[by_name.get(str(column), column)] = value
        sorts.append(QSort(str(participant), placements))
    return sorts


def _is_integral(value) -> bool:
    try:
        return float(value).is_integer()
    except (TypeError, ValueError):
        return False


def find_incomplete_sorts(sorts: list[QSort], statements: StatementSet) -> dict:
    """
    Return {participant_id: {'missing': [...], 'unknown': [...]}} for every bad sort.
    """
    expected = set(statements.ids)
    offenders = {}
    for qsort in sorts:
        placed = set(qsort.placements)
        missing = [s for s in statements.ids if s not in placed]
        unknown = sorted((s for s in placed if s not in expected), key=str)
        if missing or unknown:
            offenders[qsort.participant_id] = {'missing': missing, 'unknown': unknown}
    return offenders


def find_distribution_mismatches(sorts: list[QSort], statements: StatementSet,
                                 grid: GridDistribution) -> dict:
    """
    Return {participant_id: [reason, ...]} for sorts that do not fit the grid.

    Checks integer values, the grid value range, the per-column capacities
    (forced grids only) and non-zero variance.
    """
    expected_counts = grid.expected_counts()
    offenders = {}
    for qsort in sorts:
        reasons = []
        values = [qsort.placements[s] for s in statements.ids if s in qsort.placements]
        non_integer = [v for v in values if not _is_integral(v)]
        if non_integer:
            reasons.append(f"non-integer values {non_integer}")
            offenders[qsort.participant_id] = reasons
            continue

        values = [int(v) for v in values]
        outside = sorted({v for v in values if v < grid.min_value or v > grid.max_value})
        if outside:
            reasons.append(f"values outside grid range {grid.min_value}..{grid.max_value}: {outside}")

        if grid.forced and not outside:
            counts = pd.Series(values, dtype=int).value_counts().to_dict()
            wrong = {v: (counts.get(v, 0), cap) for v, cap in expected_counts.items()
                     if counts.get(v, 0) != cap}
            extra = {v: (n, 0) for v, n in counts.items() if v not in expected_counts}
            wrong.update(extra)
            if wrong:
                detail = ', '.join(f"{v:+d}: {got} (expected {cap})" for v, (got, cap) in sorted(wrong.items()))
                reasons.append(f"column counts differ from grid ({detail})")

        if values and len(set(values)) == 1:
            reasons.append("zero variance (every statement has the same value)")

        if reasons:
            offenders[qsort.participant_id] = reasons
    return offenders


def validate_sorts(sorts: list[QSort], statements: StatementSet, grid: GridDistribution) -> None:
    """
    Validate every sort before any computation starts.

    All offenders are collected and reported together in the error details.

    Raises:
        InvalidConfigurationError: duplicate participant ids or a grid that
            does not hold exactly one placement per statement
        IncompleteSortError: missing or unknown placements
        DistributionMismatchError: values that do not fit the grid
    """
    ids = [s.participant_id for s in sorts]
    duplicates = sorted({p for p in ids if ids.count(p) > 1})
    if duplicates:
        raise InvalidConfigurationError(f"Duplicate participant ids: {duplicates}", participants=duplicates)

    if grid.n_placements != len(statements):
        raise DistributionMismatchError(
            f"Grid holds {grid.n_placements} placements but there are {len(statements)} statements",
            grid_placements=grid.n_placements, n_statements=len(statements),
        )

    incomplete = find_incomplete_sorts(sorts, statements)
    if incomplete:
        raise IncompleteSortError(
            f"{len(incomplete)} sort(s) have missing or unknown placements: {sorted(incomplete)}",
            participants=incomplete,
        )

    mismatched = find_distribution_mismatches(sorts, statements, grid)
    if mismatched:
        raise DistributionMismatchError(
            f"{len(mismatched)} sort(s) do not fit the grid: {sorted(mismatched)}",
            participants=mismatched,
        )


def build_sort_matrix(
    sorts: list[QSort],
    statements: StatementSet,
    grid: GridDistribution,
    exclude_invalid: bool = False,
) -> tuple[np.ndarray, tuple]:
    """
    Build the respondent x statement integer rank matrix.

    Parameters:
        sorts: Q-sorts to include
        statements: Statement set defining the column order
        grid: Sorting grid
        exclude_invalid: Drop offending sorts (with a warning) instead of raising

    Returns:
        Tuple of (M x N int64 matrix, participant ids)
    """
    if exclude_invalid:
        bad = set(find_incomplete_sorts(sorts, statements))
        complete = [s for s in sorts if s.participant_id not in bad]
        bad |= set(find_distribution_mismatches(complete, statements, grid))
        if bad:
            logger.warning("Excluding %d invalid sort(s): %s", len(bad), sorted(bad))
        sorts = [s for s in sorts if s.participant_id not in bad]

    validate_sorts(sorts, statements, grid)

    matrix = np.array(
        [[int(qsort.placements[stmt_id]) for stmt_id in statements.ids] for qsort in sorts],
        dtype=np.int64,
    ).reshape(len(sorts), len(statements))
    participants = tuple(s.participant_id for s in sorts)
    return matrix, participants


def standardize_sorts(sort_matrix: np.ndarray) -> np.ndarray:
    """
    Z-score each respondent's sort against its own mean and population sd.

    Parameters:
        sort_matrix: Respondent x statement rank matrix

    Returns:
        Respondent x statement array of standardized ranks
    """
    # StandardScaler works per column, so scale the statement x respondent view
    scaler = StandardScaler()
    return scaler.fit_transform(np.asarray(sort_matrix, dtype=float).T).T


def sort_matrix_frame(sort_matrix: np.ndarray, participants: tuple, statements: StatementSet) -> pd.DataFrame:
    """Wide DataFrame view of a rank matrix (the load_csv layout)."""
    df = pd.DataFrame(sort_matrix, index=list(participants), columns=statements.ids)
    df.index.name = config.PARTICIPANT_COLUMN
    return df
