"""
Factor Extraction Module
========================

Factorability testing, factor-count criteria and unrotated factor
extraction (principal components and Brown's centroid method) from a
respondent correlation matrix.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from scipy import linalg
from factor_analyzer.factor_analyzer import calculate_bartlett_sphericity, calculate_kmo

from . import config
from .correlation import correlate_matrix
from .errors import (
    InsufficientFactorCountError,
    InvalidConfigurationError,
    NonConvergenceError,
    SingularMatrixError,
)
from .models import (
    CancellationToken,
    CorrelationMatrix,
    ExtractionConfig,
    ExtractionMethod,
    FactorCountPolicy,
    FactorSolution,
    check_cancelled,
)

logger = logging.getLogger(__name__)


def check_factorability(sort_matrix: np.ndarray, participants: tuple, verbose: bool = True) -> Optional[dict]:
    """
    Test whether the respondent correlations are suitable for factoring.

    Performs:
    - Bartlett's Test of Sphericity: Should be significant (p < 0.05)
    - KMO (Kaiser-Meyer-Olkin): Should be > 0.6, ideally > 0.8

    Respondents are the variables and statements the observations, so the
    tests need more statements than respondents. Otherwise they are skipped.

    Parameters:
        sort_matrix: Respondent x statement rank matrix
        participants: Participant ids (variable names)
        verbose: Print the results banner

    Returns:
        Dictionary with test results and interpretations, or None if skipped
    """
    n_respondents, n_statements = sort_matrix.shape
    if n_respondents >= n_statements:
        logger.info(
            "Skipping factorability tests: %d respondents but only %d statements",
            n_respondents, n_statements,
        )
        return None

    data = np.asarray(sort_matrix, dtype=float).T
    try:
        chi_square, p_value = calculate_bartlett_sphericity(data)
        kmo_all, kmo_model = calculate_kmo(data)
    except np.linalg.LinAlgError as exc:
        raise SingularMatrixError(f"Factorability tests failed: {exc}", stage='factorability') from exc

    results = {
        'bartlett_chi_square': chi_square,
        'bartlett_p_value': p_value,
        'bartlett_pass': p_value < 0.05,
        'kmo_overall': kmo_model,
        'kmo_label': config.get_kmo_label(kmo_model),
        'kmo_per_respondent': dict(zip(participants, kmo_all)),
    }

    if verbose:
        print("\n" + "=" * 60)
        print("FACTORABILITY TESTS")
        print("=" * 60)

        print(f"\nBartlett's Test of Sphericity:")
        print(f"  Chi-square: {chi_square:,.2f}")
        print(f"  p-value: {p_value:.2e}")
        print(f"  Result: {'PASS' if results['bartlett_pass'] else 'FAIL'}")

        print(f"\nKaiser-Meyer-Olkin (KMO) Measure:")
        print(f"  Overall KMO: {kmo_model:.3f} ({results['kmo_label']})")

    return results


def get_factorability_summary(results: dict) -> pd.DataFrame:
    """
    Convert factorability results to a summary DataFrame.

    Parameters:
        results: Output from check_factorability()

    Returns:
        DataFrame with factorability test results
    """
    rows = [
        {'Test': 'Bartlett_Chi_Square', 'Value': results['bartlett_chi_square'], 'Interpretation': ''},
        {'Test': 'Bartlett_p_value', 'Value': results['bartlett_p_value'],
         'Interpretation': 'PASS' if results['bartlett_pass'] else 'FAIL'},
        {'Test': 'KMO_Overall', 'Value': results['kmo_overall'], 'Interpretation': results['kmo_label']},
    ]

    for participant, kmo in results['kmo_per_respondent'].items():
        rows.append({
            'Test': f'KMO_{participant}',
            'Value': kmo,
            'Interpretation': config.get_kmo_label(kmo),
        })

    return pd.DataFrame(rows)


# =============================================================================
# EIGEN DECOMPOSITION AND FACTOR COUNT
# =============================================================================
def eigen_decomposition(R: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Eigenvalues (descending) and matching eigenvectors of a correlation matrix.

    Raises:
        SingularMatrixError: non-finite, non-square or not positive semi-definite input
    """
    R = np.asarray(R, dtype=float)
    if R.ndim != 2 or R.shape[0] != R.shape[1]:
        raise SingularMatrixError(f"Correlation matrix must be square, got shape {R.shape}")
    if not np.all(np.isfinite(R)):
        raise SingularMatrixError("Correlation matrix contains non-finite values")

    try:
        eigenvalues, eigenvectors = linalg.eigh(R)
    except linalg.LinAlgError as exc:
        raise SingularMatrixError(f"Eigendecomposition failed: {exc}") from exc
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    if eigenvalues[-1] < -config.PSD_TOLERANCE:
        raise SingularMatrixError(
            f"Correlation matrix is not positive semi-definite (min eigenvalue {eigenvalues[-1]:.3e})",
            min_eigenvalue=float(eigenvalues[-1]),
        )
    # Round-off below the tolerance is clamped so the spectrum stays non-negative
    eigenvalues = np.where(eigenvalues < 0, 0.0, eigenvalues)
    return eigenvalues, eigenvectors


def kaiser_count(eigenvalues: np.ndarray, threshold: float = None) -> int:
    """Number of eigenvalues above the Kaiser threshold (default 1.0)."""
    if threshold is None:
        threshold = config.KAISER_THRESHOLD
    return int(np.sum(np.asarray(eigenvalues) > threshold))


def parallel_analysis(
    sort_matrix: np.ndarray,
    permutations: int = None,
    percentile: float = None,
    seed: Optional[int] = None,
    cancel_token: CancellationToken = None,
) -> dict:
    """
    Horn's parallel analysis with grid-preserving permutations.

    Each respondent's sort is shuffled independently, which keeps every
    sort on the grid while destroying the shared structure. Leading
    factors are retained while the observed eigenvalue exceeds the chosen
    percentile of the permuted eigenvalues.

    Parameters:
        sort_matrix: Respondent x statement rank matrix
        permutations: Number of permuted data sets. Defaults to config.PARALLEL_PERMUTATIONS
        percentile: Percentile of permuted eigenvalues to beat. Defaults to config.PARALLEL_PERCENTILE
        seed: Random seed
        cancel_token: Checked between permutations

    Returns:
        Dictionary with observed eigenvalues, thresholds, mean random
        eigenvalues and the suggested number of factors
    """
    if permutations is None:
        permutations = config.PARALLEL_PERMUTATIONS
    if percentile is None:
        percentile = config.PARALLEL_PERCENTILE

    X = np.asarray(sort_matrix)
    observed, _ = eigen_decomposition(correlate_matrix(X))

    rng = np.random.default_rng(seed)
    random_eigenvalues = np.empty((permutations, X.shape[0]))
    for r in range(permutations):
        check_cancelled(cancel_token, 'parallel analysis')
        shuffled = rng.permuted(X, axis=1)
        values = linalg.eigvalsh(correlate_matrix(shuffled))
        random_eigenvalues[r] = values[::-1]

    thresholds = np.percentile(random_eigenvalues, percentile, axis=0)
    n_factors = 0
    for obs, threshold in zip(observed, thresholds):
        if obs <= threshold:
            break
        n_factors += 1

    return {
        'observed': observed,
        'thresholds': thresholds,
        'random_mean': random_eigenvalues.mean(axis=0),
        'percentile': percentile,
        'permutations': permutations,
        'n_factors': n_factors,
    }


def determine_factor_count(
    policy: FactorCountPolicy,
    eigenvalues: np.ndarray,
    sort_matrix: np.ndarray = None,
    cancel_token: CancellationToken = None,
) -> tuple[int, dict]:
    """
    Apply a factor-count policy.

    Parameters:
        policy: Kaiser, parallel or explicit policy
        eigenvalues: Full descending eigenvalue spectrum
        sort_matrix: Rank matrix, required for parallel analysis
        cancel_token: Passed on to parallel analysis

    Returns:
        Tuple of (number of factors, criteria dict with every computed suggestion)
    """
    criteria = {'kaiser': kaiser_count(eigenvalues)}

    if policy.policy == 'explicit':
        return policy.n_factors, criteria

    if policy.policy == 'kaiser':
        return criteria['kaiser'], criteria

    if sort_matrix is None:
        raise InvalidConfigurationError("Parallel analysis needs the sort matrix", field='factor_count')
    pa = parallel_analysis(sort_matrix, policy.permutations, policy.percentile, policy.seed, cancel_token)
    criteria['parallel'] = pa['n_factors']
    criteria['parallel_thresholds'] = pa['thresholds']
    return pa['n_factors'], criteria


def _check_factor_count(n_factors: int, n_respondents: int) -> None:
    if n_factors < 1 or n_factors >= n_respondents:
        raise InsufficientFactorCountError(
            f"Cannot extract {n_factors} factor(s) from {n_respondents} respondents "
            f"(need 1 <= K < {n_respondents})",
            n_factors=n_factors, n_respondents=n_respondents,
        )


# =============================================================================
# EXTRACTION METHODS
# =============================================================================
def canonicalize_signs(loadings: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Flip every factor whose largest-magnitude loading is negative.

    Returns:
        Tuple of (sign-corrected loadings, +1/-1 sign per factor)
    """
    loadings = np.array(loadings, dtype=float)
    if loadings.shape[0] == 0:
        return loadings, np.ones(loadings.shape[1])
    peak_rows = np.argmax(np.abs(loadings), axis=0)
    peaks = loadings[peak_rows, np.arange(loadings.shape[1])]
    signs = np.where(peaks < 0, -1.0, 1.0)
    return loadings * signs, signs


def _off_diagonal_max(R: np.ndarray) -> float:
    if R.shape[0] < 2:
        return 0.0
    off = R[~np.eye(R.shape[0], dtype=bool)]
    return float(np.max(np.abs(off)))


def extract_pca(R: np.ndarray, n_factors: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Principal component loadings.

    Parameters:
        R: Correlation matrix
        n_factors: Number of components to keep

    Returns:
        Tuple of (full eigenvalue spectrum, M x K loadings)
    """
    eigenvalues, eigenvectors = eigen_decomposition(R)
    _check_factor_count(n_factors, R.shape[0])

    retained = eigenvalues[:n_factors]
    if np.any(retained <= config.MIN_FACTOR_EIGENVALUE):
        raise SingularMatrixError(
            f"Factor {int(np.argmax(retained <= config.MIN_FACTOR_EIGENVALUE)) + 1} "
            f"has a non-positive eigenvalue",
            eigenvalues=[float(v) for v in retained],
        )
    loadings = eigenvectors[:, :n_factors] * np.sqrt(retained)
    return eigenvalues, loadings


def _reflect(residual: np.ndarray, max_passes: int, factor: int,
             cancel_token: CancellationToken = None) -> tuple[np.ndarray, int]:
    """
    Reflect columns until two consecutive passes flip nothing.

    One pass sweeps every column, most negative signed off-diagonal sum
    first (ties to the lowest index), and reflects each column whose sum
    is still negative when its turn comes. Every reflection raises the
    reflected grand total, so the sweeps terminate.
    """
    n = residual.shape[0]
    off = residual.copy()
    np.fill_diagonal(off, 0.0)
    signs = np.ones(n)
    stable = 0
    passes = 0
    while stable < config.CENTROID_STABLE_PASSES:
        check_cancelled(cancel_token, 'centroid extraction')
        if passes >= max_passes:
            raise NonConvergenceError(
                f"Centroid reflection for factor {factor + 1} did not settle in {max_passes} passes",
                stage='centroid', iterations=passes, residual=_off_diagonal_max(residual),
                factor=factor + 1,
            )
        passes += 1
        column_sums = signs * (off @ signs)
        flipped = False
        for j in np.argsort(column_sums, kind='stable'):
            if signs[j] * (off[j] @ signs) < 0:
                signs[j] = -signs[j]
                flipped = True
        stable = 0 if flipped else stable + 1
    return signs, passes


def extract_centroid(
    R: np.ndarray,
    n_factors: int,
    max_passes: int = None,
    cancel_token: CancellationToken = None,
) -> tuple[np.ndarray, int, float]:
    """
    Brown's centroid extraction with column reflection.

    For each factor the residual diagonal is replaced by the largest
    absolute off-diagonal residual in its column, columns are reflected,
    loadings are the reflected column sums over the square root of the
    grand total, and the residual is deflated by the loading outer product.

    Parameters:
        R: Correlation matrix
        n_factors: Number of factors to extract
        max_passes: Reflection pass cap per factor. Defaults to config.CENTROID_MAX_PASSES
        cancel_token: Checked between reflection passes

    Returns:
        Tuple of (M x K loadings, total reflection passes, final max residual)
    """
    if max_passes is None:
        max_passes = config.CENTROID_MAX_PASSES
    _check_factor_count(n_factors, R.shape[0])

    residual = np.array(R, dtype=float)
    n = residual.shape[0]
    loadings = np.zeros((n, n_factors))
    total_passes = 0

    for k in range(n_factors):
        off = np.abs(residual)
        np.fill_diagonal(off, 0.0)
        np.fill_diagonal(residual, off.max(axis=0))

        signs, passes = _reflect(residual, max_passes, k, cancel_token)
        total_passes += passes

        reflected = residual * np.outer(signs, signs)
        column_sums = reflected.sum(axis=0)
        total = column_sums.sum()
        if total <= config.MIN_FACTOR_EIGENVALUE:
            raise SingularMatrixError(
                f"Centroid factor {k + 1} has a non-positive grand total ({total:.3e})",
                factor=k + 1, total=float(total),
            )
        loadings[:, k] = signs * column_sums / np.sqrt(total)
        residual = residual - np.outer(loadings[:, k], loadings[:, k])

    return loadings, total_passes, _off_diagonal_max(residual)


def extract_factors(
    corr: CorrelationMatrix,
    extraction_config: ExtractionConfig = None,
    sort_matrix: np.ndarray = None,
    cancel_token: CancellationToken = None,
) -> tuple[FactorSolution, dict]:
    """
    Extract unrotated factors from a correlation matrix.

    Parameters:
        corr: Respondent correlation matrix
        extraction_config: Method and factor-count policy. Defaults to PCA with Kaiser
        sort_matrix: Rank matrix, needed only for parallel analysis
        cancel_token: Cooperative cancellation

    Returns:
        Tuple of (FactorSolution, factor-count criteria dict)
    """
    if extraction_config is None:
        extraction_config = ExtractionConfig()

    R = corr.values
    eigenvalues, _ = eigen_decomposition(R)
    n_factors, criteria = determine_factor_count(
        extraction_config.factor_count, eigenvalues, sort_matrix, cancel_token
    )
    _check_factor_count(n_factors, corr.size)

    if extraction_config.method is ExtractionMethod.PCA:
        eigenvalues, loadings = extract_pca(R, n_factors)
        iterations = 0
        residual = _off_diagonal_max(R - loadings @ loadings.T)
    else:
        loadings, iterations, residual = extract_centroid(
            R, n_factors, extraction_config.max_passes, cancel_token
        )

    loadings, _ = canonicalize_signs(loadings)
    solution = FactorSolution(
        method=extraction_config.method,
        eigenvalues=eigenvalues,
        loadings=loadings,
        participants=corr.participants,
        iterations=iterations,
        residual=residual,
    )
    return solution, criteria


def print_extraction_summary(solution: FactorSolution, criteria: dict = None) -> None:
    """Print eigenvalues, factor-count criteria and unrotated loadings."""
    print("\n" + "=" * 60)
    print(f"FACTOR EXTRACTION ({solution.method.value}, {solution.n_factors} factors)")
    print("=" * 60)

    kaiser = kaiser_count(solution.eigenvalues)
    print(f"\nEigenvalues:")
    for i, ev in enumerate(solution.eigenvalues[:max(solution.n_factors + 2, kaiser)], 1):
        marker = " <-- Kaiser cutoff" if i == kaiser and ev > config.KAISER_THRESHOLD else ""
        print(f"  Factor {i}: {ev:.3f}{marker}")

    if criteria:
        print(f"\nKaiser Criterion (eigenvalue > {config.KAISER_THRESHOLD}): {criteria['kaiser']} factors")
        if 'parallel' in criteria:
            print(f"Parallel Analysis: {criteria['parallel']} factors")

    scree = solution.scree_frame()
    print(f"\nCumulative variance explained:")
    for i in range(min(solution.n_factors + 1, len(scree))):
        print(f"  {i+1} factor(s): {scree['cumulative_pct'].iloc[i]:.1f}%")

    print("\nUnrotated Loadings:")
    print("-" * 50)
    print(solution.to_frame().round(3).to_string())
