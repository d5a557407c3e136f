"""Tests for qmethod_core.arrays: defining sorts and factor arrays."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from qmethod_core.arrays import (
    build_factor_arrays,
    defining_sorts_frame,
    factor_arrays_frame,
    factor_scores,
    ranks_from_scores,
    select_defining_sorts,
    zscore_matrix,
)
from qmethod_core.data import standardize_sorts
from qmethod_core.errors import InsufficientFactorCountError, NoDefiningSortsError
from qmethod_core.models import DefiningSortPolicy, GridDistribution


# ---------------------------------------------------------------------------
# Defining sorts
# ---------------------------------------------------------------------------


class TestSelectDefiningSorts:

    def test_default_threshold(self) -> None:
        L = np.array([[0.8, 0.1], [0.3, 0.75], [0.5, 0.5], [0.6, 0.6]])
        assert select_defining_sorts(L, 40) == {0: [0], 1: [1]}

    def test_negative_loading_defines(self) -> None:
        L = np.array([[-0.9, 0.1], [0.1, 0.2]])
        assert select_defining_sorts(L, 40) == {0: [0], 1: []}

    def test_significance_requirement(self) -> None:
        L = np.array([[0.8, 0.1]])
        policy = DefiningSortPolicy(require_significance=True)
        # 1.96 / sqrt(4) = 0.98
        assert select_defining_sorts(L, 4, policy) == {0: [], 1: []}
        assert select_defining_sorts(L, 40, policy) == {0: [0], 1: []}

    def test_communality_majority(self) -> None:
        L = np.array([[0.72, 0.6, 0.6], [0.72, 0.3, 0.3]])
        policy = DefiningSortPolicy(require_communality_majority=True)
        assert select_defining_sorts(L, 40, policy)[0] == [1]

    def test_each_respondent_defines_at_most_one_factor(self, run) -> None:
        seen = [i for a in run.factor_arrays for i in a.defining_sorts]
        assert len(seen) == len(set(seen))


# ---------------------------------------------------------------------------
# Scores and ranks
# ---------------------------------------------------------------------------


class TestFactorScores:

    def test_single_sort_reproduces_standardized_sort(self, sort_matrix) -> None:
        z_ranks = standardize_sorts(sort_matrix[:1])
        _, z = factor_scores(z_ranks, np.array([0.9]))
        np.testing.assert_allclose(z, z_ranks[0], atol=1e-12)

    def test_zero_variance_scores(self, sort_matrix) -> None:
        row = standardize_sorts(sort_matrix[:1])[0]
        weighted, z = factor_scores(np.vstack([row, -row]), np.array([0.8, 0.8]))
        np.testing.assert_allclose(weighted, 0, atol=1e-12)
        assert np.all(z == 0)

    def test_round_off_variance_is_flat(self, caplog) -> None:
        row = np.array([1.0, -1.0, 0.5, -0.5])
        z_ranks = np.vstack([row, -row * (1 + 1e-15)])
        with caplog.at_level(logging.WARNING, logger="qmethod_core.arrays"):
            _, z = factor_scores(z_ranks, np.array([0.7, 0.7]))
        assert np.all(z == 0)
        assert "zero variance" in caplog.text

    def test_small_real_variance_is_kept(self) -> None:
        z_ranks = np.array([[1e-6, -1e-6, 0.0]])
        _, z = factor_scores(z_ranks, np.array([0.9]))
        assert z.std() == pytest.approx(1.0)


class TestRanksFromScores:

    def test_fills_grid_from_the_top(self) -> None:
        grid = GridDistribution.from_dict({-1: 1, 0: 3, 1: 1})
        ranks = ranks_from_scores(np.array([0.1, 2.0, -3.0, 0.5, 0.0]), grid)
        np.testing.assert_array_equal(ranks, [0, 1, -1, 0, 0])

    def test_ties_broken_by_statement_index(self) -> None:
        grid = GridDistribution.from_dict({-1: 1, 0: 3, 1: 1})
        ranks = ranks_from_scores(np.zeros(5), grid)
        np.testing.assert_array_equal(ranks, [1, 0, 0, 0, -1])


class TestBuildFactorArrays:

    def test_arrays_fill_grid_exactly(self, run, grid) -> None:
        for array in run.factor_arrays:
            values, counts = np.unique(array.ranks, return_counts=True)
            assert dict(zip(values.tolist(), counts.tolist())) == grid.expected_counts()

    def test_zscores_standardized(self, run) -> None:
        for array in run.factor_arrays:
            assert array.z_scores.mean() == pytest.approx(0, abs=1e-12)
            assert array.z_scores.std() == pytest.approx(1)

    def test_ranks_follow_zscores(self, run) -> None:
        for array in run.factor_arrays:
            order = np.argsort(-array.z_scores, kind="stable")
            assert np.all(np.diff(array.ranks[order]) <= 0)

    def test_no_defining_sorts(self, run, statements, grid) -> None:
        policy = DefiningSortPolicy(min_loading_squared=0.99)
        with pytest.raises(NoDefiningSortsError) as exc_info:
            build_factor_arrays(run.rotation, run.sort_matrix, statements, grid, policy)
        assert isinstance(exc_info.value, InsufficientFactorCountError)
        assert exc_info.value.details["factors"] == [1, 2, 3]


class TestFrames:

    def test_factor_arrays_frame(self, run, statements) -> None:
        df = factor_arrays_frame(run.factor_arrays, statements)
        assert list(df.columns) == [
            "statement", "Factor_1_z", "Factor_1_rank", "Factor_2_z",
            "Factor_2_rank", "Factor_3_z", "Factor_3_rank",
        ]
        assert list(df.index) == statements.ids

    def test_defining_flags(self, run) -> None:
        df = defining_sorts_frame(run.factor_arrays, run.rotation)
        for array in run.factor_arrays:
            flagged = df.index[df[f"{array.label}_defining"] == "X"].tolist()
            assert flagged == [run.participants[i] for i in array.defining_sorts]

    def test_zscore_matrix_shape(self, run, statements) -> None:
        assert zscore_matrix(run.factor_arrays).shape == (len(statements), 3)
