"""Tests for qmethod_core.correlation: respondent correlation matrix."""

from __future__ import annotations

import numpy as np
import pytest

from qmethod_core.correlation import correlate_matrix, correlate_sorts
from qmethod_core.errors import DistributionMismatchError, IncompleteSortError
from qmethod_core.models import QSort


class TestCorrelateMatrix:

    def test_symmetric_unit_diagonal_bounded(self, sort_matrix) -> None:
        R = correlate_matrix(sort_matrix)
        assert R.shape == (sort_matrix.shape[0],) * 2
        assert np.array_equal(R, R.T)
        assert np.all(np.diag(R) == 1.0)
        assert np.all(R <= 1.0) and np.all(R >= -1.0)

    def test_identical_sorts_correlate_exactly_one(self, sort_matrix) -> None:
        X = np.vstack([sort_matrix[0], sort_matrix[0], sort_matrix[1]])
        R = correlate_matrix(X)
        assert R[0, 1] == 1.0

    def test_inverted_sort_on_symmetric_grid_is_minus_one(self, sort_matrix, grid) -> None:
        assert grid.is_symmetric
        X = np.vstack([sort_matrix[0], -sort_matrix[0]])
        R = correlate_matrix(X)
        assert R[0, 1] == -1.0

    def test_matches_numpy_corrcoef(self, sort_matrix) -> None:
        R = correlate_matrix(sort_matrix)
        np.testing.assert_allclose(R, np.corrcoef(sort_matrix), atol=1e-12)

    def test_float_input(self) -> None:
        X = np.array([[1.0, 2.0, 3.0], [3.0, 2.0, 1.0]])
        R = correlate_matrix(X)
        assert R[0, 1] == pytest.approx(-1.0)

    def test_zero_variance_row_rejected(self) -> None:
        X = np.array([[0, 0, 0], [-1, 0, 1]])
        with pytest.raises(DistributionMismatchError) as exc_info:
            correlate_matrix(X)
        assert exc_info.value.details["rows"] == [0]


class TestCorrelateSorts:

    def test_labels_follow_participants(self, sorts, statements, grid, participants) -> None:
        corr = correlate_sorts(sorts, statements, grid)
        assert corr.participants == participants
        assert corr.size == len(participants)
        assert list(corr.to_frame().index) == list(participants)

    def test_values_are_read_only(self, sorts, statements, grid) -> None:
        corr = correlate_sorts(sorts, statements, grid)
        with pytest.raises(ValueError):
            corr.values[0, 1] = 0.5

    def test_validation_runs_first(self, sorts, statements, grid) -> None:
        with pytest.raises(IncompleteSortError):
            correlate_sorts(sorts + [QSort("x", {})], statements, grid)
