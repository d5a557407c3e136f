"""Tests for qmethod_core.data: sort validation and the rank matrix."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from qmethod_core.data import (
    build_sort_matrix,
    find_distribution_mismatches,
    find_incomplete_sorts,
    load_csv,
    sort_matrix_frame,
    sorts_from_frame,
    standardize_sorts,
    validate_sorts,
)
from qmethod_core.errors import DistributionMismatchError, IncompleteSortError, InvalidConfigurationError
from qmethod_core.models import GridDistribution, QSort, StatementSet


def _small_study():
    statements = StatementSet.from_texts(["a", "b", "c", "d", "e"])
    grid = GridDistribution.from_dict({-1: 1, 0: 3, 1: 1})
    return statements, grid


# ---------------------------------------------------------------------------
# validate_sorts
# ---------------------------------------------------------------------------


class TestValidateSorts:

    def test_valid_sorts_pass(self, sorts, statements, grid) -> None:
        validate_sorts(sorts, statements, grid)

    def test_missing_placement_raises_incomplete(self) -> None:
        statements, grid = _small_study()
        bad = QSort("p1", {1: -1, 2: 0, 3: 0, 4: 1})
        with pytest.raises(IncompleteSortError) as exc_info:
            validate_sorts([bad], statements, grid)
        assert exc_info.value.details["participants"]["p1"]["missing"] == [5]

    def test_unknown_statement_raises_incomplete(self) -> None:
        statements, grid = _small_study()
        bad = QSort("p1", {1: -1, 2: 0, 3: 0, 4: 1, 5: 0, 99: 0})
        with pytest.raises(IncompleteSortError) as exc_info:
            validate_sorts([bad], statements, grid)
        assert exc_info.value.details["participants"]["p1"]["unknown"] == [99]

    def test_all_offenders_reported_together(self) -> None:
        statements, grid = _small_study()
        sorts = [QSort("p1", {1: 0}), QSort("p2", {2: 0})]
        with pytest.raises(IncompleteSortError) as exc_info:
            validate_sorts(sorts, statements, grid)
        assert set(exc_info.value.details["participants"]) == {"p1", "p2"}

    def test_wrong_column_counts_raise_mismatch(self) -> None:
        statements, grid = _small_study()
        bad = QSort.from_ranks("p1", [-1, -1, 0, 0, 1], statements)
        with pytest.raises(DistributionMismatchError):
            validate_sorts([bad], statements, grid)

    def test_value_outside_range_raises_mismatch(self) -> None:
        statements, grid = _small_study()
        bad = QSort.from_ranks("p1", [-2, 0, 0, 0, 1], statements)
        with pytest.raises(DistributionMismatchError) as exc_info:
            validate_sorts([bad], statements, grid)
        assert "p1" in exc_info.value.details["participants"]

    def test_non_integer_value_raises_mismatch(self) -> None:
        statements, grid = _small_study()
        bad = QSort.from_ranks("p1", [-1, 0, 0.5, 0, 1], statements)
        with pytest.raises(DistributionMismatchError):
            validate_sorts([bad], statements, grid)

    def test_free_grid_accepts_other_counts(self) -> None:
        statements = StatementSet.from_texts(["a", "b", "c", "d", "e"])
        grid = GridDistribution.from_dict({-1: 1, 0: 3, 1: 1}, forced=False)
        ok = QSort.from_ranks("p1", [-1, -1, 0, 1, 1], statements)
        validate_sorts([ok], statements, grid)

    def test_free_grid_rejects_zero_variance(self) -> None:
        statements = StatementSet.from_texts(["a", "b", "c", "d", "e"])
        grid = GridDistribution.from_dict({-1: 1, 0: 3, 1: 1}, forced=False)
        flat = QSort.from_ranks("p1", [0, 0, 0, 0, 0], statements)
        with pytest.raises(DistributionMismatchError):
            validate_sorts([flat], statements, grid)

    def test_grid_size_must_match_statements(self) -> None:
        statements = StatementSet.from_texts(["a", "b", "c"])
        grid = GridDistribution.from_dict({-1: 1, 0: 3, 1: 1})
        with pytest.raises(DistributionMismatchError):
            validate_sorts([], statements, grid)

    def test_duplicate_participants_rejected(self) -> None:
        statements, grid = _small_study()
        sort = QSort.from_ranks("p1", [-1, 0, 0, 0, 1], statements)
        with pytest.raises(InvalidConfigurationError):
            validate_sorts([sort, sort], statements, grid)


class TestFindOffenders:

    def test_incomplete_lists_only_offenders(self, sorts, statements) -> None:
        assert find_incomplete_sorts(sorts, statements) == {}

    def test_mismatch_reasons_are_strings(self) -> None:
        statements, grid = _small_study()
        bad = QSort.from_ranks("p1", [1, 1, 0, 0, -1], statements)
        reasons = find_distribution_mismatches([bad], statements, grid)["p1"]
        assert any("column counts" in r for r in reasons)


# ---------------------------------------------------------------------------
# build_sort_matrix
# ---------------------------------------------------------------------------


class TestBuildSortMatrix:

    def test_shape_and_order(self, sorts, statements, grid, sort_matrix, participants) -> None:
        matrix, ids = build_sort_matrix(sorts, statements, grid)
        assert matrix.dtype == np.int64
        assert ids == participants
        np.testing.assert_array_equal(matrix, sort_matrix)

    def test_exclude_invalid_drops_offenders(self, sorts, statements, grid) -> None:
        bad = QSort("broken", {statements.ids[0]: 0})
        matrix, ids = build_sort_matrix(sorts + [bad], statements, grid, exclude_invalid=True)
        assert "broken" not in ids
        assert matrix.shape == (len(sorts), len(statements))

    def test_invalid_raises_without_exclusion(self, sorts, statements, grid) -> None:
        bad = QSort("broken", {statements.ids[0]: 0})
        with pytest.raises(IncompleteSortError):
            build_sort_matrix(sorts + [bad], statements, grid)


class TestStandardizeSorts:

    def test_rows_have_zero_mean_unit_sd(self, sort_matrix) -> None:
        z = standardize_sorts(sort_matrix)
        np.testing.assert_allclose(z.mean(axis=1), 0, atol=1e-12)
        np.testing.assert_allclose(z.std(axis=1), 1, atol=1e-12)


# ---------------------------------------------------------------------------
# CSV round trip
# ---------------------------------------------------------------------------


class TestCsv:

    def test_frame_round_trip(self, tmp_path, sort_matrix, participants, statements, grid) -> None:
        df = sort_matrix_frame(sort_matrix, participants, statements)
        path = tmp_path / "sorts.csv"
        df.to_csv(path)

        loaded = load_csv(str(path))
        sorts = sorts_from_frame(loaded, statements)
        matrix, ids = build_sort_matrix(sorts, statements, grid)
        assert ids == participants
        np.testing.assert_array_equal(matrix, sort_matrix)

    def test_missing_participant_column(self, tmp_path) -> None:
        path = tmp_path / "bad.csv"
        pd.DataFrame({"x": [1]}).to_csv(path, index=False)
        with pytest.raises(InvalidConfigurationError):
            load_csv(str(path))

    def test_blank_cells_become_missing_placements(self, statements) -> None:
        df = pd.DataFrame([[0.0] * (len(statements) - 1) + [np.nan]],
                          index=["p1"], columns=[str(i) for i in statements.ids])
        sorts = sorts_from_frame(df, statements)
        assert statements.ids[-1] not in sorts[0].placements
        assert len(sorts[0].placements) == len(statements) - 1
