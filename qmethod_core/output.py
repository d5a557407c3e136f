"""
Output Naming and Saving Module
===============================

Functions for creating dated output directories and saving results
with consistent naming conventions.

Naming Pattern: {DATE}-{TEST}-{SUFFIX}.{EXT}
Example: 2024-02-09-qanalysis-loadings.csv
"""

import json
import os
from datetime import date
from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd

from . import config
from .arrays import defining_sorts_frame, factor_arrays_frame
from .pqmethod import format_lis
from .report import factor_characteristics


def get_output_dir(test_name: str, base: str = None) -> Path:
    """
    Create and return dated output directory.

    Creates directory: {base}/{DATE}-{test_name}/

    Parameters:
        test_name: Name of the analysis (lowercase-hyphen)
        base: Base output directory. Defaults to config.DEFAULT_OUTPUT_BASE

    Returns:
        Path to created output directory
    """
    if base is None:
        base = config.DEFAULT_OUTPUT_BASE

    today = date.today().isoformat()
    output_dir = Path(base) / f"{today}-{test_name}"
    os.makedirs(output_dir, exist_ok=True)

    print(f"Output directory: {output_dir}")
    return output_dir


def _build_filename(output_dir: Path, test_name: str, suffix: str, ext: str) -> Path:
    """Build dated filename with pattern: {DATE}-{TEST}-{SUFFIX}.{EXT}"""
    today = date.today().isoformat()
    return Path(output_dir) / f"{today}-{test_name}-{suffix}.{ext}"


def save_csv(
    df: pd.DataFrame,
    output_dir: Path,
    test_name: str,
    suffix: str,
    index: bool = False
) -> Path:
    """
    Save DataFrame to CSV with dated filename.

    Parameters:
        df: DataFrame to save
        output_dir: Output directory path
        test_name: Test name for filename
        suffix: Descriptive suffix (e.g., 'loadings', 'arrays')
        index: Whether to include index in output

    Returns:
        Path to saved file
    """
    filepath = _build_filename(output_dir, test_name, suffix, 'csv')
    df.to_csv(filepath, index=index)
    print(f"Saved: {filepath}")
    return filepath


def save_figure(
    fig: plt.Figure,
    output_dir: Path,
    test_name: str,
    suffix: str,
    dpi: int = None
) -> Path:
    """
    Save matplotlib figure with dated filename.

    Parameters:
        fig: Matplotlib figure to save
        output_dir: Output directory path
        test_name: Test name for filename
        suffix: Descriptive suffix (e.g., 'scree', 'loadings')
        dpi: Resolution. Defaults to config.DEFAULT_DPI

    Returns:
        Path to saved file
    """
    if dpi is None:
        dpi = config.DEFAULT_DPI

    filepath = _build_filename(output_dir, test_name, suffix, 'png')
    fig.savefig(filepath, dpi=dpi, bbox_inches='tight', facecolor='white')
    plt.close(fig)
    print(f"Saved: {filepath}")
    return filepath


def save_report(
    text: str,
    output_dir: Path,
    test_name: str,
    suffix: str = 'report',
    ext: str = 'txt'
) -> Path:
    """
    Save text report with dated filename.

    Parameters:
        text: Text content to save
        output_dir: Output directory path
        test_name: Test name for filename
        suffix: Descriptive suffix
        ext: File extension ('txt', or 'lis' for PQMethod reports)

    Returns:
        Path to saved file
    """
    filepath = _build_filename(output_dir, test_name, suffix, ext)
    with open(filepath, 'w', encoding='utf-8') as f:
        f.write(text)
    print(f"Saved: {filepath}")
    return filepath


def save_json(
    payload: dict,
    output_dir: Path,
    test_name: str,
    suffix: str = 'run'
) -> Path:
    """Save a JSON-serialisable dict with dated filename."""
    filepath = _build_filename(output_dir, test_name, suffix, 'json')
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2)
    print(f"Saved: {filepath}")
    return filepath


def save_run(run, output_dir: Path, test_name: str) -> list[Path]:
    """
    Save every tabular artifact of an AnalysisRun.

    Writes correlations, unrotated and rotated loadings, factor arrays,
    pairwise significance, consensus flags, factor characteristics,
    bootstrap intervals (when present), the PQMethod .LIS report and the
    full run as JSON.

    Returns:
        List of saved paths
    """
    paths = [
        save_csv(run.correlation.to_frame(), output_dir, test_name, 'correlations', index=True),
        save_csv(run.extraction.to_frame(), output_dir, test_name, 'unrotated-loadings', index=True),
        save_csv(run.extraction.scree_frame(), output_dir, test_name, 'eigenvalues'),
        save_csv(defining_sorts_frame(run.factor_arrays, run.rotation), output_dir, test_name,
                 'rotated-loadings', index=True),
        save_csv(factor_arrays_frame(run.factor_arrays, run.statements), output_dir, test_name,
                 'factor-arrays', index=True),
        save_csv(run.significance.table, output_dir, test_name, 'significance'),
        save_csv(run.significance.consensus.to_frame(), output_dir, test_name, 'consensus', index=True),
        save_csv(factor_characteristics(run), output_dir, test_name, 'characteristics', index=True),
    ]
    if run.bootstrap is not None:
        paths.append(save_csv(run.bootstrap.zscore_intervals(), output_dir, test_name, 'bootstrap-zscores'))
        paths.append(save_csv(run.bootstrap.loading_intervals(), output_dir, test_name, 'bootstrap-loadings'))
    paths.append(save_report(format_lis(run, run.study_id), output_dir, test_name, 'pqmethod', ext='lis'))
    paths.append(save_json(run.to_dict(), output_dir, test_name))
    return paths


def list_outputs(output_dir: Path) -> list[str]:
    """List all files in the output directory."""
    output_dir = Path(output_dir)
    if output_dir.exists():
        return sorted(os.listdir(output_dir))
    return []


def print_summary(output_dir: Path) -> None:
    """Print summary of all output files."""
    files = list_outputs(output_dir)
    if files:
        print(f"\nFiles generated in {output_dir}:")
        for f in files:
            print(f"  - {f}")
    else:
        print(f"\nNo files generated in {output_dir}")
