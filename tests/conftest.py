"""Shared fixtures: a seeded synthetic study and a hand-derived benchmark study."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from qmethod_core import config
from qmethod_core.models import (
    AnalysisConfig,
    ExtractionConfig,
    FactorCountPolicy,
    GridDistribution,
    QSort,
    StatementSet,
)
from qmethod_core.pipeline import run_analysis
from qmethod_core.pqmethod import import_study

DATA_DIR = Path(__file__).parent / "data"


def make_sort_matrix(
    grid: GridDistribution,
    n_prototypes: int = 3,
    per_prototype: int = 6,
    swaps: int = 2,
    seed: int = 7,
) -> np.ndarray:
    """
    Respondents built from a few prototype sorts.

    Each respondent is a prototype with a handful of placements swapped,
    which keeps every sort on the grid.
    """
    rng = np.random.default_rng(seed)
    slots = np.repeat(grid.values, grid.capacities)
    prototypes = [rng.permutation(slots) for _ in range(n_prototypes)]
    rows = []
    for prototype in prototypes:
        for _ in range(per_prototype):
            row = prototype.copy()
            for _ in range(swaps):
                i, j = rng.choice(len(row), size=2, replace=False)
                row[i], row[j] = row[j], row[i]
            rows.append(row)
    return np.array(rows, dtype=np.int64)


@pytest.fixture
def grid() -> GridDistribution:
    return GridDistribution.from_dict(config.DEFAULT_GRID)


@pytest.fixture
def statements(grid: GridDistribution) -> StatementSet:
    return StatementSet.from_texts([f"Statement text {k}" for k in range(1, grid.n_placements + 1)])


@pytest.fixture
def sort_matrix(grid: GridDistribution) -> np.ndarray:
    return make_sort_matrix(grid)


@pytest.fixture
def large_sort_matrix(grid: GridDistribution) -> np.ndarray:
    """240 respondents, three viewpoints, noisier sorts."""
    return make_sort_matrix(grid, per_prototype=80, swaps=6, seed=3)


@pytest.fixture
def participants(sort_matrix: np.ndarray) -> tuple:
    return tuple(f"P{i + 1:02d}" for i in range(sort_matrix.shape[0]))


@pytest.fixture
def sorts(sort_matrix: np.ndarray, participants: tuple, statements: StatementSet) -> list[QSort]:
    return [
        QSort.from_ranks(p, [int(v) for v in row], statements)
        for p, row in zip(participants, sort_matrix)
    ]


@pytest.fixture
def three_factor_config() -> AnalysisConfig:
    return AnalysisConfig(extraction=ExtractionConfig(factor_count=FactorCountPolicy.explicit(3)))


@pytest.fixture
def run(statements, sorts, grid, three_factor_config):
    return run_analysis(statements, sorts, grid, three_factor_config, study_id="synthetic")


@pytest.fixture
def orthogonal_study() -> dict:
    """
    15 respondents over 20 statements in blocks of 6, 5 and 4 identical sorts.

    The three block sorts are mutually orthogonal, so the correlation matrix
    is block diagonal with unit blocks and its spectrum is 6, 5, 4 and zeros.
    orthogonal15.lis holds the values a PCA/varimax analysis must produce.
    """
    return import_study(DATA_DIR / "orthogonal15.dat")


@pytest.fixture
def orthogonal_run(orthogonal_study):
    return run_analysis(
        orthogonal_study["statements"], orthogonal_study["sorts"], orthogonal_study["grid"],
        AnalysisConfig(check_factorability=False), study_id="orthogonal15",
    )
