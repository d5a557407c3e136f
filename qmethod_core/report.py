"""
Interpretation Report Module
============================

Crib sheets, factor characteristics, run comparisons and the plain-text
run report.
"""

import numpy as np
import pandas as pd

from . import config
from .models import factor_labels
from .rotation import rotation_quality, suggest_rotations
from .stats import composite_reliability, distinguishing_statements, factor_standard_error


def _statement_rows(run, indices, array) -> pd.DataFrame:
    rows = []
    for idx in indices:
        stmt = run.statements[int(idx)]
        rows.append({
            'statement': stmt.id,
            'text': stmt.text,
            'rank': int(array.ranks[idx]),
            'z_score': float(array.z_scores[idx]),
        })
    return pd.DataFrame(rows, columns=['statement', 'text', 'rank', 'z_score'])


def crib_sheet(run, factor: int, top: int = 5) -> dict:
    """
    Crib sheet for one factor.

    Parameters:
        run: AnalysisRun
        factor: Zero-based factor index
        top: Statements to list at each end of the array

    Returns:
        Dictionary of DataFrames: most_agree, most_disagree, ranked_higher
        (higher here than in every other factor), ranked_lower,
        distinguishing and consensus
    """
    array = run.factor_arrays[factor]
    others = [a for a in run.factor_arrays if a.factor != factor]
    order = np.lexsort((np.arange(len(array.z_scores)), -array.z_scores))

    if others:
        other_ranks = np.column_stack([a.ranks for a in others])
        higher = [i for i in order if array.ranks[i] > other_ranks[i].max()]
        lower = [i for i in order[::-1] if array.ranks[i] < other_ranks[i].min()]
    else:
        higher, lower = [], []

    consensus_ids = set(run.significance.consensus_statements)
    consensus = [i for i, stmt in enumerate(run.statements) if stmt.id in consensus_ids]

    distinguishing = distinguishing_statements(run.significance, run.factor_arrays)[array.label]

    return {
        'most_agree': _statement_rows(run, order[:top], array),
        'most_disagree': _statement_rows(run, order[::-1][:top], array),
        'ranked_higher': _statement_rows(run, higher, array),
        'ranked_lower': _statement_rows(run, lower, array),
        'distinguishing': distinguishing,
        'consensus': _statement_rows(run, consensus, array),
    }


def crib_sheets(run, top: int = 5) -> dict:
    """Crib sheet per factor label."""
    return {a.label: crib_sheet(run, a.factor, top) for a in run.factor_arrays}


def factor_characteristics(run) -> pd.DataFrame:
    """
    PQMethod's factor characteristics table.

    Returns:
        DataFrame indexed by factor label with defining sorts, factor
        eigenvalue, explained variance, composite reliability and the
        standard error of the factor z-scores
    """
    rho = run.config.significance.sort_reliability
    rotated = run.rotation
    rows = []
    for array, variance in zip(run.factor_arrays, rotated.explained_variance):
        rows.append({
            'defining_sorts': array.n_defining,
            'eigenvalue': float((rotated.loadings[:, array.factor] ** 2).sum()),
            'explained_variance': float(variance),
            'composite_reliability': composite_reliability(array.n_defining, rho),
            'standard_error': factor_standard_error(array.z_scores, array.n_defining, rho),
        })
    return pd.DataFrame(rows, index=[a.label for a in run.factor_arrays])


def factor_score_correlations(run) -> pd.DataFrame:
    """Correlations between factor z-scores."""
    labels = [a.label for a in run.factor_arrays]
    Z = np.column_stack([a.z_scores for a in run.factor_arrays])
    return pd.DataFrame(np.corrcoef(Z, rowvar=False).reshape(len(labels), len(labels)),
                        index=labels, columns=labels)


def compare_runs(run_a, run_b, rank_threshold: int = 2) -> dict:
    """
    Compare two runs of the same study (e.g. two rotations).

    Factors are matched by index; only the first min(K_a, K_b) are compared.

    Parameters:
        run_a: First AnalysisRun
        run_b: Second AnalysisRun
        rank_threshold: Report statements whose rank moves by more than this

    Returns:
        Dictionary with per-factor loading correlations, consensus overlap
        (Jaccard index) and a DataFrame of rank differences
    """
    n_factors = min(run_a.n_factors, run_b.n_factors)
    labels = factor_labels(n_factors)

    loading_correlation = {}
    if run_a.participants == run_b.participants:
        for f, label in enumerate(labels):
            a = run_a.rotation.loadings[:, f]
            b = run_b.rotation.loadings[:, f]
            if np.std(a) > 0 and np.std(b) > 0:
                loading_correlation[label] = float(np.corrcoef(a, b)[0, 1])
            else:
                loading_correlation[label] = np.nan

    consensus_a = set(run_a.significance.consensus_statements)
    consensus_b = set(run_b.significance.consensus_statements)
    union = consensus_a | consensus_b
    overlap = len(consensus_a & consensus_b) / len(union) if union else 1.0

    rows = []
    for f, label in enumerate(labels):
        ranks_a = run_a.factor_arrays[f].ranks
        ranks_b = run_b.factor_arrays[f].ranks
        for idx in np.flatnonzero(np.abs(ranks_a - ranks_b) > rank_threshold):
            rows.append({
                'factor': label,
                'statement': run_a.statements[int(idx)].id,
                'rank_a': int(ranks_a[idx]),
                'rank_b': int(ranks_b[idx]),
                'difference': int(ranks_b[idx] - ranks_a[idx]),
            })

    return {
        'loading_correlation': loading_correlation,
        'consensus_overlap': overlap,
        'consensus_only_a': sorted(consensus_a - consensus_b, key=str),
        'consensus_only_b': sorted(consensus_b - consensus_a, key=str),
        'rank_differences': pd.DataFrame(
            rows, columns=['factor', 'statement', 'rank_a', 'rank_b', 'difference']
        ),
    }


def generate_report(run, title: str = None, top: int = 5) -> str:
    """Generate text report summarizing a run."""
    if title is None:
        title = run.study_id
    cfg = run.config
    lines = [
        "=" * 70,
        f"Q-METHODOLOGY ANALYSIS REPORT: {title}",
        "=" * 70,
        "",
        "CONFIGURATION",
        "-" * 50,
        f"Run: {run.run_id} (version {run.version})",
        f"Created: {run.created_at:%Y-%m-%d %H:%M:%S} UTC",
        f"Respondents: {len(run.participants)}",
        f"Statements: {len(run.statements)}",
        f"Extraction: {run.extraction.method.value} ({cfg.extraction.factor_count.policy} factor count)",
        f"Rotation: {run.rotation.method.value}",
        f"Factors: {run.n_factors}",
        f"Defining threshold: loading^2 > {cfg.defining.min_loading_squared}",
        "",
    ]

    if run.factorability is not None:
        f = run.factorability
        lines.extend([
            "FACTORABILITY",
            "-" * 50,
            f"Bartlett's test: p={f['bartlett_p_value']:.2e} ({'PASS' if f['bartlett_pass'] else 'FAIL'})",
            f"KMO: {f['kmo_overall']:.3f} ({f['kmo_label']})",
            "",
        ])

    lines.extend([
        "FACTOR CHARACTERISTICS",
        "-" * 50,
        factor_characteristics(run).round(3).to_string(),
        "",
        f"Total variance explained: {run.rotation.explained_variance.sum():.1f}%",
        "",
    ])

    quality = rotation_quality(run.rotation.loadings)
    lines.extend([
        "ROTATION QUALITY",
        "-" * 50,
        f"Simplicity index: {quality['simplicity_index']:.2f}",
        f"Cross loadings: {quality['cross_loadings']}",
        f"Hyperplane rows (all |loading| < {config.HYPERPLANE_LOADING}): {quality['hyperplane_count']}",
    ])
    suggestions = suggest_rotations(run.rotation.loadings)
    for _, row in suggestions.iterrows():
        lines.append(f"  Suggestion: {row['reason']}; try {row['angle_degrees']:.1f} degrees")
    lines.append("")

    for label, sheet in crib_sheets(run, top).items():
        lines.extend([f"CRIB SHEET: {label}", "-" * 50])
        for key, heading in (('most_agree', 'Most agree'), ('most_disagree', 'Most disagree'),
                             ('ranked_higher', 'Ranked higher than in other factors'),
                             ('ranked_lower', 'Ranked lower than in other factors')):
            df = sheet[key]
            if df.empty:
                continue
            lines.append(f"\n{heading}:")
            for _, row in df.iterrows():
                lines.append(f"  {row['rank']:+d} ({row['z_score']:+.2f}) {row['statement']}: {row['text']}")
        dist = sheet['distinguishing']
        if not dist.empty:
            lines.append("\nDistinguishing:")
            for _, row in dist.iterrows():
                lines.append(f"  {row['rank']:+d} ({row['z_score']:+.2f}) {row['statement']} {row['marker']}")
        lines.append("")

    consensus = run.significance.consensus_statements
    lines.extend([
        "CONSENSUS STATEMENTS",
        "-" * 50,
        ", ".join(str(s) for s in consensus) if consensus else "(none)",
        "",
    ])

    if run.bootstrap is not None:
        b = run.bootstrap
        lines.extend([
            "BOOTSTRAP",
            "-" * 50,
            f"Resamples: {b.n_successful}/{b.n_requested} ({b.n_dropped} dropped)",
            b.stability().round(3).to_string() if b.n_successful else "(no accepted resamples)",
            "",
        ])

    lines.append("=" * 70)
    return "\n".join(lines)
