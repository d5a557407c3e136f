"""
Statement Significance Module
=============================

Distinguishing and consensus statements from pairwise z-score differences
between factor arrays, using PQMethod's standard errors.
"""

from itertools import combinations

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats

from .models import SignificanceConfig, SignificanceLevel, StatementSignificance

TABLE_COLUMNS = [
    'statement', 'statement_index', 'factor_a', 'factor_b', 'z_a', 'z_b',
    'difference', 'se', 'z', 'p_value', 'level', 'marker',
]


def composite_reliability(n_defining: int, sort_reliability: float = 0.80) -> float:
    """
    Reliability of a factor array built from n defining sorts.

    r = rho * n / (1 + (n - 1) * rho), with rho the assumed average
    reliability of a single Q-sort.
    """
    return sort_reliability * n_defining / (1 + (n_defining - 1) * sort_reliability)


def factor_standard_error(z_scores: np.ndarray, n_defining: int, sort_reliability: float = 0.80) -> float:
    """Standard error of a factor's z-scores: sd * sqrt(1 - reliability)."""
    sd = float(np.std(z_scores))
    return sd * np.sqrt(1 - composite_reliability(n_defining, sort_reliability))


def significance_level(p_value: float, significance_config: SignificanceConfig = None) -> SignificanceLevel:
    if significance_config is None:
        significance_config = SignificanceConfig()
    if p_value < significance_config.alpha_strict:
        return SignificanceLevel.P01
    if p_value < significance_config.alpha:
        return SignificanceLevel.P05
    return SignificanceLevel.NONE


def classify_statements(arrays: tuple, significance_config: SignificanceConfig = None) -> StatementSignificance:
    """
    Test every statement's z-score difference for every pair of factors.

    SE_diff = sqrt(SE_a^2 + SE_b^2) and p is the two-tailed normal
    probability of |z_a - z_b| / SE_diff. A statement is consensus when
    no pair differs at the configured alpha; with a single factor every
    statement is consensus.

    Parameters:
        arrays: Factor arrays, one per factor
        significance_config: Alpha levels and assumed sort reliability

    Returns:
        StatementSignificance with the long pairwise table and consensus flags
    """
    if significance_config is None:
        significance_config = SignificanceConfig()

    statement_ids = list(arrays[0].statement_ids)
    errors = [
        factor_standard_error(a.z_scores, a.n_defining, significance_config.sort_reliability)
        for a in arrays
    ]

    frames = []
    for a, b in combinations(range(len(arrays)), 2):
        z_a = arrays[a].z_scores
        z_b = arrays[b].z_scores
        difference = z_a - z_b
        se = np.sqrt(errors[a] ** 2 + errors[b] ** 2)
        if se > 0:
            z = difference / se
            p_values = 2 * scipy_stats.norm.sf(np.abs(z))
        else:
            z = np.where(difference == 0, 0.0, np.sign(difference) * np.inf)
            p_values = np.where(difference == 0, 1.0, 0.0)
        levels = [significance_level(p, significance_config) for p in p_values]
        frames.append(pd.DataFrame({
            'statement': statement_ids,
            'statement_index': np.arange(len(statement_ids)),
            'factor_a': arrays[a].label,
            'factor_b': arrays[b].label,
            'z_a': z_a,
            'z_b': z_b,
            'difference': difference,
            'se': se,
            'z': z,
            'p_value': p_values,
            'level': [lvl.value for lvl in levels],
            'marker': [lvl.marker for lvl in levels],
        }))

    if frames:
        table = pd.concat(frames, ignore_index=True)
    else:
        table = pd.DataFrame(columns=TABLE_COLUMNS)

    significant = table.loc[table['level'] != SignificanceLevel.NONE.value, 'statement_index']
    consensus = pd.Series(True, index=pd.Index(statement_ids, name='statement'), name='consensus')
    consensus.iloc[sorted(set(int(i) for i in significant))] = False

    return StatementSignificance(table=table, consensus=consensus, n_factors=len(arrays))


def distinguishing_statements(significance: StatementSignificance, arrays: tuple) -> dict[str, pd.DataFrame]:
    """
    Statements on which one factor differs significantly from every other factor.

    Parameters:
        significance: Output of classify_statements()
        arrays: The factor arrays that were classified

    Returns:
        Dictionary mapping factor label to a DataFrame of its distinguishing
        statements (statement, z_score, rank, marker), strongest first
    """
    table = significance.table
    views = {}
    for array in arrays:
        involved = table[(table['factor_a'] == array.label) | (table['factor_b'] == array.label)]
        rows = []
        if not involved.empty:
            for idx, group in involved.groupby('statement_index'):
                levels = set(group['level'])
                if SignificanceLevel.NONE.value in levels:
                    continue
                marker = '**' if levels == {SignificanceLevel.P01.value} else '*'
                rows.append({
                    'statement': array.statement_ids[idx],
                    'statement_index': int(idx),
                    'z_score': array.z_scores[idx],
                    'rank': int(array.ranks[idx]),
                    'marker': marker,
                })
        df = pd.DataFrame(rows, columns=['statement', 'statement_index', 'z_score', 'rank', 'marker'])
        if not df.empty:
            df = df.reindex(df['z_score'].abs().sort_values(ascending=False).index).reset_index(drop=True)
        views[array.label] = df
    return views


def consensus_frame(significance: StatementSignificance, arrays: tuple) -> pd.DataFrame:
    """Consensus statements with their z-scores and ranks on every factor."""
    ids = significance.consensus_statements
    position = {stmt_id: i for i, stmt_id in enumerate(arrays[0].statement_ids)}
    rows = []
    for stmt_id in ids:
        row = {'statement': stmt_id}
        for array in arrays:
            row[f'{array.label}_z'] = array.z_scores[position[stmt_id]]
            row[f'{array.label}_rank'] = int(array.ranks[position[stmt_id]])
        rows.append(row)
    columns = ['statement'] + [c for a in arrays for c in (f'{a.label}_z', f'{a.label}_rank')]
    return pd.DataFrame(rows, columns=columns)


def print_significance_summary(significance: StatementSignificance, arrays: tuple) -> None:
    """Print distinguishing counts per factor and the consensus statements."""
    print("\n" + "=" * 60)
    print("DISTINGUISHING AND CONSENSUS STATEMENTS")
    print("=" * 60)

    print(f"\nPairwise tests: {len(significance.table):,}")
    print(f"Significant differences: {len(significance.distinguishing):,}")

    for label, df in distinguishing_statements(significance, arrays).items():
        print(f"\n{label}: {len(df)} distinguishing statement(s)")
        for _, row in df.head(10).iterrows():
            print(f"  {row['statement']}: z={row['z_score']:.2f} rank={row['rank']:+d} {row['marker']}")

    consensus = significance.consensus_statements
    print(f"\nConsensus statements: {len(consensus)}")
    if consensus:
        print("  " + ", ".join(str(s) for s in consensus))
