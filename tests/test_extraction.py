"""Tests for qmethod_core.extraction: factor counts, PCA and centroid extraction."""

from __future__ import annotations

import numpy as np
import pytest
from scipy import linalg

from qmethod_core.correlation import correlate_matrix
from qmethod_core.errors import (
    AnalysisCancelledError,
    InsufficientFactorCountError,
    InvalidConfigurationError,
    SingularMatrixError,
)
from qmethod_core.extraction import (
    canonicalize_signs,
    check_factorability,
    determine_factor_count,
    eigen_decomposition,
    extract_centroid,
    extract_factors,
    extract_pca,
    get_factorability_summary,
    kaiser_count,
    parallel_analysis,
)
from qmethod_core.models import (
    CancellationToken,
    CorrelationMatrix,
    ExtractionConfig,
    ExtractionMethod,
    FactorCountPolicy,
)


def _block_matrix(sizes: list[int], r: float) -> np.ndarray:
    """Correlation matrix with r inside each block and 0 between blocks."""
    n = sum(sizes)
    R = np.zeros((n, n))
    start = 0
    for size in sizes:
        R[start:start + size, start:start + size] = r
        start += size
    np.fill_diagonal(R, 1.0)
    return R


def _corr(R: np.ndarray) -> CorrelationMatrix:
    return CorrelationMatrix(R, tuple(f"p{i}" for i in range(R.shape[0])))


# ---------------------------------------------------------------------------
# Eigen decomposition and factor counts
# ---------------------------------------------------------------------------


class TestEigenDecomposition:

    def test_descending_and_sum_to_trace(self, sort_matrix) -> None:
        R = correlate_matrix(sort_matrix)
        values, vectors = eigen_decomposition(R)
        assert np.all(np.diff(values) <= 0)
        assert values.sum() == pytest.approx(R.shape[0])
        np.testing.assert_allclose(vectors.T @ vectors, np.eye(R.shape[0]), atol=1e-10)

    def test_not_positive_semi_definite(self) -> None:
        a = 0.9
        R = np.array([[1, a, -a], [a, 1, a], [-a, a, 1]])
        with pytest.raises(SingularMatrixError):
            eigen_decomposition(R)

    def test_non_finite_rejected(self) -> None:
        R = np.array([[1.0, np.nan], [np.nan, 1.0]])
        with pytest.raises(SingularMatrixError):
            eigen_decomposition(R)

    def test_solver_failure_is_typed(self, monkeypatch) -> None:
        def failing_eigh(*args, **kwargs):
            raise linalg.LinAlgError("eigenvalues did not converge")

        monkeypatch.setattr(linalg, "eigh", failing_eigh)
        with pytest.raises(SingularMatrixError) as exc_info:
            extract_factors(_corr(_block_matrix([3, 3], 0.8)))
        assert isinstance(exc_info.value.__cause__, linalg.LinAlgError)


class TestFactorCount:

    def test_kaiser_counts_blocks(self) -> None:
        values, _ = eigen_decomposition(_block_matrix([3, 3], 0.8))
        assert values[:2] == pytest.approx([2.6, 2.6])
        assert kaiser_count(values) == 2

    def test_kaiser_on_orthogonal_study(self, orthogonal_study) -> None:
        grid = orthogonal_study["grid"]
        assert grid.expected_counts() == {-3: 1, -2: 2, -1: 4, 0: 6, 1: 4, 2: 2, 3: 1}
        sort_matrix = np.array([
            [s.placements[sid] for sid in orthogonal_study["statements"].ids]
            for s in orthogonal_study["sorts"]
        ])
        assert sort_matrix.shape == (15, 20)

        R = correlate_matrix(sort_matrix)
        values, _ = eigen_decomposition(R)
        expected = np.r_[6.0, 5.0, 4.0, np.zeros(12)]
        np.testing.assert_allclose(values, expected, atol=1e-10)
        assert kaiser_count(values) == 3

        solution, criteria = extract_factors(_corr(R))
        assert criteria["kaiser"] == 3
        assert solution.n_factors == 3
        np.testing.assert_allclose(solution.factor_eigenvalues, [6.0, 5.0, 4.0], atol=1e-10)

    def test_explicit_policy(self) -> None:
        values = np.array([3.0, 1.5, 0.5])
        k, criteria = determine_factor_count(FactorCountPolicy.explicit(1), values)
        assert k == 1
        assert criteria["kaiser"] == 2

    def test_parallel_needs_sort_matrix(self) -> None:
        with pytest.raises(InvalidConfigurationError):
            determine_factor_count(FactorCountPolicy.parallel(), np.array([2.0, 1.0]))

    def test_parallel_analysis_is_seeded(self, sort_matrix) -> None:
        first = parallel_analysis(sort_matrix, permutations=20, seed=3)
        second = parallel_analysis(sort_matrix, permutations=20, seed=3)
        np.testing.assert_array_equal(first["thresholds"], second["thresholds"])
        assert first["n_factors"] == second["n_factors"]
        assert first["n_factors"] >= 1
        assert len(first["thresholds"]) == sort_matrix.shape[0]

    def test_parallel_policy_reports_both_criteria(self, sort_matrix) -> None:
        values, _ = eigen_decomposition(correlate_matrix(sort_matrix))
        policy = FactorCountPolicy.parallel(permutations=10, seed=1)
        k, criteria = determine_factor_count(policy, values, sort_matrix)
        assert k == criteria["parallel"]
        assert "kaiser" in criteria

    def test_parallel_analysis_cancellation(self, sort_matrix) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelledError):
            parallel_analysis(sort_matrix, permutations=5, cancel_token=token)

    def test_invalid_policy_values(self) -> None:
        with pytest.raises(InvalidConfigurationError):
            FactorCountPolicy("scree")
        with pytest.raises(InvalidConfigurationError):
            FactorCountPolicy.explicit(0)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class TestPca:

    def test_loadings_carry_eigenvalues(self, sort_matrix) -> None:
        R = correlate_matrix(sort_matrix)
        values, loadings = extract_pca(R, 3)
        np.testing.assert_allclose((loadings ** 2).sum(axis=0), values[:3], rtol=1e-10)

    def test_too_many_factors(self) -> None:
        R = _block_matrix([2, 2], 0.5)
        with pytest.raises(InsufficientFactorCountError):
            extract_pca(R, 4)


class TestCentroid:

    def test_single_block_loadings(self) -> None:
        R = _block_matrix([4], 0.8)
        loadings, passes, _ = extract_centroid(R, 1)
        np.testing.assert_allclose(loadings[:, 0], np.sqrt(0.8), rtol=1e-12)
        assert passes == 2

    def test_reflection_of_negative_respondent(self) -> None:
        signs = np.array([1, 1, 1, -1])
        R = 0.8 * np.outer(signs, signs)
        np.fill_diagonal(R, 1.0)
        loadings, passes, _ = extract_centroid(R, 1)
        np.testing.assert_allclose(loadings[:, 0], signs * np.sqrt(0.8), rtol=1e-12)
        assert passes > 2

    def test_sweeps_flip_several_columns(self) -> None:
        signs = np.array([1, -1, 1, -1, -1, 1])
        R = 0.7 * np.outer(signs, signs)
        np.fill_diagonal(R, 1.0)
        loadings, passes, _ = extract_centroid(R, 1)
        np.testing.assert_allclose(np.abs(loadings[:, 0]), np.sqrt(0.7), rtol=1e-12)
        assert passes == 3

    def test_large_study_settles(self, large_sort_matrix) -> None:
        R = correlate_matrix(large_sort_matrix)
        assert R.shape == (240, 240)
        loadings, passes, residual = extract_centroid(R, 3)
        assert loadings.shape == (240, 3)
        assert np.all(np.isfinite(loadings))
        assert passes < 3 * 20
        assert residual < np.abs(R - np.eye(240)).max()

    def test_cancellation(self) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelledError):
            extract_centroid(_block_matrix([4], 0.8), 1, cancel_token=token)


class TestExtractFactors:

    def test_kaiser_default(self) -> None:
        solution, criteria = extract_factors(_corr(_block_matrix([3, 3], 0.8)))
        assert solution.method is ExtractionMethod.PCA
        assert solution.n_factors == 2
        assert criteria["kaiser"] == 2
        assert solution.factor_eigenvalues.sum() == pytest.approx(5.2)

    def test_kaiser_finding_nothing_raises(self) -> None:
        with pytest.raises(InsufficientFactorCountError):
            extract_factors(_corr(np.eye(4)))

    def test_signs_are_canonical(self, sort_matrix) -> None:
        corr = _corr(correlate_matrix(sort_matrix))
        for method in ("pca", "centroid"):
            cfg = ExtractionConfig(method=method, factor_count=FactorCountPolicy.explicit(3))
            solution, _ = extract_factors(corr, cfg)
            L = solution.loadings
            peaks = L[np.argmax(np.abs(L), axis=0), np.arange(L.shape[1])]
            assert np.all(peaks > 0)

    def test_explicit_factor_count_must_be_below_respondents(self) -> None:
        cfg = ExtractionConfig(factor_count=FactorCountPolicy.explicit(6))
        with pytest.raises(InsufficientFactorCountError):
            extract_factors(_corr(_block_matrix([3, 3], 0.8)), cfg)

    def test_unknown_method_rejected(self) -> None:
        with pytest.raises(InvalidConfigurationError):
            ExtractionConfig(method="ml")


class TestCanonicalizeSigns:

    def test_flips_negative_peak(self) -> None:
        L = np.array([[-0.9, 0.2], [0.1, 0.8]])
        fixed, signs = canonicalize_signs(L)
        np.testing.assert_array_equal(signs, [-1.0, 1.0])
        assert fixed[0, 0] == pytest.approx(0.9)


# ---------------------------------------------------------------------------
# Factorability
# ---------------------------------------------------------------------------


class TestFactorability:

    def test_results_and_summary(self, sort_matrix, participants) -> None:
        results = check_factorability(sort_matrix, participants, verbose=False)
        assert 0 <= results["kmo_overall"] <= 1
        assert set(results["kmo_per_respondent"]) == set(participants)
        summary = get_factorability_summary(results)
        assert len(summary) == 3 + len(participants)

    def test_skipped_when_too_few_statements(self, sort_matrix, participants) -> None:
        assert check_factorability(sort_matrix[:, :10], participants) is None
