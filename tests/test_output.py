"""Tests for qmethod_core.output and qmethod_core.viz: saved artifacts and plots."""

from __future__ import annotations

import json
from datetime import date

import matplotlib.pyplot as plt
import numpy as np
import pytest

from qmethod_core import output, viz
from qmethod_core.bootstrap import run_bootstrap
from qmethod_core.models import BootstrapConfig


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


class TestOutput:

    def test_dated_directory(self, tmp_path) -> None:
        out = output.get_output_dir("qanalysis", str(tmp_path))
        assert out.name == f"{date.today().isoformat()}-qanalysis"
        assert out.is_dir()

    def test_save_run(self, tmp_path, run) -> None:
        paths = output.save_run(run, tmp_path, "qanalysis")
        assert all(p.exists() for p in paths)
        names = output.list_outputs(tmp_path)
        assert any(n.endswith("-qanalysis-factor-arrays.csv") for n in names)
        assert any(n.endswith("-qanalysis-pqmethod.lis") for n in names)
        run_json = next(p for p in paths if p.suffix == ".json")
        assert json.loads(run_json.read_text(encoding="utf-8"))["study_id"] == "synthetic"

    def test_save_report(self, tmp_path) -> None:
        path = output.save_report("hello", tmp_path, "qanalysis")
        assert path.read_text(encoding="utf-8") == "hello"
        assert path.suffix == ".txt"


class TestViz:

    def test_scree(self, run) -> None:
        thresholds = np.linspace(2.0, 0.1, len(run.participants))
        fig = viz.plot_scree(run.extraction.eigenvalues, run.n_factors, thresholds)
        assert len(fig.axes[0].lines) >= 3

    def test_loadings_heatmap(self, run) -> None:
        fig = viz.plot_loadings_heatmap(run.rotation.to_frame())
        assert fig.axes[0].get_title() == "Rotated Factor Loadings"

    def test_factor_array_places_every_statement(self, run, statements, grid) -> None:
        fig = viz.plot_factor_array(run.factor_arrays[0], statements, grid)
        assert len(fig.axes[0].texts) == len(statements)

    def test_bootstrap_intervals(self, run, statements) -> None:
        result = run_bootstrap(
            run.sort_matrix, run.statements, run.grid, run.rotation, run.factor_arrays,
            run.extraction.method, run.config,
            BootstrapConfig(resamples=3, workers=1, max_drop_rate=1.0),
        )
        fig = viz.plot_bootstrap_intervals(result, 0, statements, top=10)
        assert len(fig.axes[0].get_yticklabels()) == 10

    def test_save_figure(self, tmp_path, run) -> None:
        fig = viz.plot_scree(run.extraction.eigenvalues)
        path = output.save_figure(fig, tmp_path, "qanalysis", "scree", dpi=50)
        assert path.exists()
