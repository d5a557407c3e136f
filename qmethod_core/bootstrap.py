"""
Bootstrap Validation Module
===========================

Resamples respondents with replacement, re-runs the analysis on each
resample and aligns the result to the original solution, giving
percentile confidence intervals for loadings and factor z-scores.

Resamples run in a thread pool. Each task owns its data and its random
generator (spawned from one SeedSequence), so results do not depend on
scheduling and a seed reproduces the whole run.
"""

import logging
import warnings
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

import numpy as np
from scipy.linalg import orthogonal_procrustes

from .arrays import build_factor_arrays, zscore_matrix
from .correlation import correlate_matrix
from .errors import AnalysisCancelledError, BootstrapFailureError, QMethodError
from .extraction import extract_factors
from .models import (
    AnalysisConfig,
    BootstrapConfig,
    BootstrapResult,
    CancellationToken,
    CorrelationMatrix,
    ExtractionConfig,
    ExtractionMethod,
    FactorCountPolicy,
    GridDistribution,
    RotatedSolution,
    RotationConfig,
    RotationMethod,
    RotationState,
    StatementSet,
    check_cancelled,
)
from .rotation import rotate

logger = logging.getLogger(__name__)


def tucker_congruence(a: np.ndarray, b: np.ndarray) -> float:
    """Tucker's congruence coefficient between two score vectors."""
    denom = np.sqrt(np.sum(a ** 2) * np.sum(b ** 2))
    return float(np.sum(a * b) / denom) if denom > 0 else np.nan


def procrustes_align(loadings: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Rotate loadings orthogonally to best match target (least squares)."""
    Q, _ = orthogonal_procrustes(loadings, target)
    return loadings @ Q


def run_resample(
    seed: np.random.SeedSequence,
    sort_matrix: np.ndarray,
    statements: StatementSet,
    grid: GridDistribution,
    rotated: RotatedSolution,
    original_zscores: np.ndarray,
    extraction_method: ExtractionMethod,
    analysis_config: AnalysisConfig,
    cancel_token: CancellationToken = None,
) -> dict:
    """
    One bootstrap replicate.

    Parameters:
        seed: Child seed for this replicate
        sort_matrix: Original M x N rank matrix
        statements: Statement set
        grid: Sorting grid
        rotated: Original rotated solution (the alignment target)
        original_zscores: Original N x K factor z-scores
        extraction_method: Method used for the original extraction
        analysis_config: Original analysis configuration
        cancel_token: Checked before the replicate starts

    Returns:
        Dictionary with M x K loadings (NaN for respondents not drawn),
        N x K z-scores and per-factor congruence with the original arrays
    """
    check_cancelled(cancel_token, 'bootstrap')

    rng = np.random.default_rng(seed)
    n_respondents = sort_matrix.shape[0]
    n_factors = rotated.n_factors
    idx = rng.integers(0, n_respondents, size=n_respondents)

    sample = sort_matrix[idx]
    participants = tuple(rotated.participants[i] for i in idx)
    corr = CorrelationMatrix(correlate_matrix(sample), participants)

    extraction_config = ExtractionConfig(
        method=extraction_method,
        factor_count=FactorCountPolicy.explicit(n_factors),
        max_passes=analysis_config.extraction.max_passes,
    )
    solution, _ = extract_factors(corr, extraction_config)

    if rotated.method.is_automatic:
        rotation_config = analysis_config.rotation
    else:
        rotation_config = RotationConfig(method=RotationMethod.NONE)
    resampled = rotate(solution, rotation_config)

    aligned = procrustes_align(np.asarray(resampled.loadings), np.asarray(rotated.loadings)[idx])
    aligned_solution = RotatedSolution(
        method=rotated.method,
        state=RotationState.CONVERGED,
        loadings=aligned,
        rotation_matrix=np.eye(n_factors),
        participants=participants,
    )
    arrays = build_factor_arrays(aligned_solution, sample, statements, grid, analysis_config.defining)
    zscores = zscore_matrix(arrays)

    loadings = np.full((n_respondents, n_factors), np.nan)
    drawn, first = np.unique(idx, return_index=True)
    loadings[drawn] = aligned[first]

    congruence = np.array([
        tucker_congruence(zscores[:, f], original_zscores[:, f]) for f in range(n_factors)
    ])
    return {'loadings': loadings, 'zscores': zscores, 'congruence': congruence}


def _percentile_bounds(samples: np.ndarray, confidence: float, shape: tuple) -> tuple:
    if len(samples) == 0:
        nan = np.full(shape, np.nan)
        return nan, nan.copy(), nan.copy()
    alpha = 1 - confidence
    with warnings.catch_warnings():
        # Respondents never drawn leave all-NaN slices
        warnings.simplefilter('ignore', RuntimeWarning)
        lower = np.nanpercentile(samples, 100 * alpha / 2, axis=0)
        upper = np.nanpercentile(samples, 100 * (1 - alpha / 2), axis=0)
        se = np.nanstd(samples, axis=0)
    return lower, upper, se


def run_bootstrap(
    sort_matrix: np.ndarray,
    statements: StatementSet,
    grid: GridDistribution,
    rotated: RotatedSolution,
    arrays: tuple,
    extraction_method: ExtractionMethod,
    analysis_config: AnalysisConfig = None,
    bootstrap_config: BootstrapConfig = None,
    cancel_token: Optional[CancellationToken] = None,
) -> BootstrapResult:
    """
    Bootstrap confidence intervals for a completed analysis.

    Parameters:
        sort_matrix: Original M x N rank matrix
        statements: Statement set
        grid: Sorting grid
        rotated: Original rotated solution
        arrays: Original factor arrays
        extraction_method: Method used for the original extraction
        analysis_config: Configuration of the original run
        bootstrap_config: Resample count, confidence, drop threshold, workers and seed
        cancel_token: Cancels pending resamples

    Returns:
        BootstrapResult with accepted samples, intervals and failure counts

    Raises:
        BootstrapFailureError: dropped fraction above bootstrap_config.max_drop_rate
        AnalysisCancelledError: cancelled before completion
    """
    if analysis_config is None:
        analysis_config = AnalysisConfig()
    if bootstrap_config is None:
        bootstrap_config = BootstrapConfig()

    n_resamples = bootstrap_config.resamples
    n_respondents, n_factors = np.asarray(rotated.loadings).shape
    n_statements = len(statements)
    original_zscores = zscore_matrix(arrays)
    seeds = np.random.SeedSequence(bootstrap_config.seed).spawn(n_resamples)

    results = {}
    failures = Counter()
    if n_resamples > 0:
        with ThreadPoolExecutor(max_workers=bootstrap_config.workers) as executor:
            futures = {
                executor.submit(
                    run_resample, seeds[b], sort_matrix, statements, grid, rotated,
                    original_zscores, extraction_method, analysis_config, cancel_token,
                ): b
                for b in range(n_resamples)
            }
            for future in as_completed(futures):
                b = futures[future]
                try:
                    results[b] = future.result()
                except AnalysisCancelledError:
                    for pending in futures:
                        pending.cancel()
                    raise
                except QMethodError as exc:
                    failures[exc.kind] += 1
                    logger.debug("Bootstrap resample %d dropped: %s", b, exc.message)
                except Exception as exc:
                    # Numerical errors from scipy or factor_analyzer on a degenerate resample
                    failures[type(exc).__name__] += 1
                    logger.debug("Bootstrap resample %d dropped: %r", b, exc, exc_info=True)
                if cancel_token is not None and cancel_token.cancelled:
                    for pending in futures:
                        pending.cancel()
                    raise AnalysisCancelledError("bootstrap cancelled", stage='bootstrap',
                                                 completed=len(results))

    n_dropped = sum(failures.values())
    if n_dropped:
        logger.warning("Dropped %d of %d bootstrap resamples: %s", n_dropped, n_resamples, dict(failures))
    if n_resamples and n_dropped / n_resamples > bootstrap_config.max_drop_rate:
        raise BootstrapFailureError(
            f"{n_dropped} of {n_resamples} bootstrap resamples failed "
            f"(limit {bootstrap_config.max_drop_rate:.0%})",
            requested=n_resamples, dropped=n_dropped, failures=dict(failures),
        )

    order = sorted(results)
    if order:
        loading_samples = np.stack([results[b]['loadings'] for b in order])
        zscore_samples = np.stack([results[b]['zscores'] for b in order])
        congruence = np.stack([results[b]['congruence'] for b in order])
    else:
        loading_samples = np.empty((0, n_respondents, n_factors))
        zscore_samples = np.empty((0, n_statements, n_factors))
        congruence = np.empty((0, n_factors))

    loading_lower, loading_upper, _ = _percentile_bounds(
        loading_samples, bootstrap_config.confidence, (n_respondents, n_factors)
    )
    zscore_lower, zscore_upper, zscore_se = _percentile_bounds(
        zscore_samples, bootstrap_config.confidence, (n_statements, n_factors)
    )

    return BootstrapResult(
        n_requested=n_resamples,
        n_successful=len(order),
        n_dropped=n_dropped,
        failures=dict(failures),
        confidence=bootstrap_config.confidence,
        participants=rotated.participants,
        statement_ids=statements.ids,
        loading_samples=loading_samples,
        zscore_samples=zscore_samples,
        loading_lower=loading_lower,
        loading_upper=loading_upper,
        zscore_lower=zscore_lower,
        zscore_upper=zscore_upper,
        zscore_se=zscore_se,
        congruence=congruence,
    )


def print_bootstrap_summary(result: BootstrapResult) -> None:
    """Print resample counts, failures and factor stability."""
    print("\n" + "=" * 60)
    print(f"BOOTSTRAP ({result.n_requested} resamples, {result.confidence:.0%} intervals)")
    print("=" * 60)

    print(f"\nSuccessful: {result.n_successful}")
    print(f"Dropped:    {result.n_dropped} ({result.drop_rate:.1%})")
    for kind, count in sorted(result.failures.items()):
        print(f"  {kind}: {count}")

    if result.n_successful:
        print("\nFactor stability (Tucker congruence with original arrays):")
        print("-" * 50)
        print(result.stability().round(3).to_string())
        width = result.zscore_upper - result.zscore_lower
        print(f"\nMean z-score interval width: {np.nanmean(width):.3f}")
