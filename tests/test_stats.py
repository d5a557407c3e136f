"""Tests for qmethod_core.stats: distinguishing and consensus statements."""

from __future__ import annotations

import math

import numpy as np
import pytest

from qmethod_core.errors import InvalidConfigurationError
from qmethod_core.models import FactorArray, SignificanceConfig, SignificanceLevel
from qmethod_core.stats import (
    TABLE_COLUMNS,
    classify_statements,
    composite_reliability,
    consensus_frame,
    distinguishing_statements,
    factor_standard_error,
    significance_level,
)

IDS = (1, 2, 3, 4, 5)


def _array(factor: int, z: list[float], n_defining: int = 4) -> FactorArray:
    z = np.asarray(z, dtype=float)
    ranks = np.empty(len(z), dtype=int)
    ranks[np.argsort(-z, kind="stable")] = [2, 1, 0, -1, -2]
    return FactorArray(
        factor=factor,
        statement_ids=IDS,
        defining_sorts=tuple(range(n_defining)),
        defining_loadings=np.full(n_defining, 0.8),
        weighted_scores=z,
        z_scores=z,
        ranks=ranks,
    )


@pytest.fixture
def opposed_arrays() -> tuple:
    base = np.array([2.0, 1.0, 0.0, -1.0, -2.0]) / math.sqrt(2)
    return (_array(0, base), _array(1, base[::-1]))


# ---------------------------------------------------------------------------
# Reliability and standard errors
# ---------------------------------------------------------------------------


class TestReliability:

    def test_single_sort(self) -> None:
        assert composite_reliability(1) == pytest.approx(0.8)

    def test_several_sorts(self) -> None:
        assert composite_reliability(3) == pytest.approx(2.4 / 2.6)

    def test_standard_error(self) -> None:
        z = np.array([1.0, -1.0])
        assert factor_standard_error(z, 1) == pytest.approx(math.sqrt(0.2))

    def test_levels(self) -> None:
        assert significance_level(0.001) is SignificanceLevel.P01
        assert significance_level(0.03) is SignificanceLevel.P05
        assert significance_level(0.2) is SignificanceLevel.NONE
        assert SignificanceLevel.P01.marker == "**"
        assert SignificanceLevel.NONE.marker == ""

    def test_invalid_alphas(self) -> None:
        with pytest.raises(InvalidConfigurationError):
            SignificanceConfig(alpha=0.01, alpha_strict=0.05)


# ---------------------------------------------------------------------------
# classify_statements
# ---------------------------------------------------------------------------


class TestClassifyStatements:

    def test_table_layout(self, opposed_arrays) -> None:
        sig = classify_statements(opposed_arrays)
        assert list(sig.table.columns) == TABLE_COLUMNS
        assert len(sig.table) == 5
        assert sig.n_factors == 2

    def test_standard_error_of_difference(self, opposed_arrays) -> None:
        sig = classify_statements(opposed_arrays)
        se = factor_standard_error(opposed_arrays[0].z_scores, 4)
        assert sig.table["se"].iloc[0] == pytest.approx(math.sqrt(2) * se)

    def test_only_middle_statement_is_consensus(self, opposed_arrays) -> None:
        sig = classify_statements(opposed_arrays)
        assert sig.consensus_statements == [3]
        assert list(sig.distinguishing["statement"]) == [1, 2, 4, 5]
        assert set(sig.distinguishing["marker"]) == {"**"}

    def test_single_factor_everything_is_consensus(self, opposed_arrays) -> None:
        sig = classify_statements(opposed_arrays[:1])
        assert sig.table.empty
        assert sig.consensus_statements == list(IDS)

    def test_identical_arrays_have_no_differences(self) -> None:
        z = [1.2, 0.6, 0.0, -0.6, -1.2]
        sig = classify_statements((_array(0, z), _array(1, z)))
        assert sig.consensus_statements == list(IDS)
        assert (sig.table["p_value"] == 1.0).all()

    def test_run_consensus_matches_table(self, run) -> None:
        sig = run.significance
        assert len(sig.table) == len(run.statements) * 3
        for stmt_id in sig.consensus_statements:
            rows = sig.table[sig.table["statement"] == stmt_id]
            assert (rows["level"] == SignificanceLevel.NONE.value).all()


class TestDistinguishingViews:

    def test_strongest_first(self, opposed_arrays) -> None:
        sig = classify_statements(opposed_arrays)
        views = distinguishing_statements(sig, opposed_arrays)
        first = views["Factor_1"]
        assert set(first["statement"][:2]) == {1, 5}
        assert set(first["statement"]) == {1, 2, 4, 5}
        assert list(first.columns) == ["statement", "statement_index", "z_score", "rank", "marker"]

    def test_consensus_frame(self, opposed_arrays) -> None:
        sig = classify_statements(opposed_arrays)
        df = consensus_frame(sig, opposed_arrays)
        assert list(df["statement"]) == [3]
        assert df["Factor_1_rank"].iloc[0] == 0
