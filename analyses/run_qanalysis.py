#!/usr/bin/env python3
"""
Q-Methodology Analysis Script
=============================

Runs a full Q-methodology analysis on a PQMethod study (or a wide CSV of
sorts) and writes every result to a dated output directory.

Parameters:
    sorts_file      - .DAT file (or .csv with a participant column)
    statements_file - .STA file (None = generic statement names)
    extraction      - 'pca' or 'centroid'
    factor_count    - 'kaiser' or 'parallel' (ignored when n_factors is set)
    n_factors       - Number of factors (None = use factor_count)
    rotation        - varimax, quartimax, equamax, promax, oblimin or none
    resamples       - Bootstrap resamples (0 = skip bootstrap)
    reference_file  - PQMethod .LIS to check compliance against (None = skip)

Outputs:
    - Scree plot (PNG)
    - Rotated loadings heatmap (PNG)
    - Factor array grids (PNG)
    - Bootstrap z-score intervals (PNG)
    - Correlations, loadings, factor arrays, significance (CSV)
    - PQMethod-style report (LIS)
    - Full run (JSON)
    - Text report (TXT)
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import logging
import warnings
warnings.filterwarnings('ignore')

from qmethod_core import config, data, extraction, rotation, arrays, stats, bootstrap, pqmethod, report, viz, output
from qmethod_core.models import (
    AnalysisConfig,
    BootstrapConfig,
    ExtractionConfig,
    FactorCountPolicy,
    GridDistribution,
    RotationConfig,
    StatementSet,
)
from qmethod_core.pipeline import print_run_summary, run_analysis as run_pipeline

# =============================================================================
# PARAMETERS
# =============================================================================
DEFAULTS = {
    'sorts_file': config.DEFAULT_SORTS_FILE,
    'statements_file': config.DEFAULT_STATEMENTS_FILE,
    'extraction': config.DEFAULT_EXTRACTION,
    'factor_count': 'kaiser',
    'n_factors': None,  # None = use factor_count policy
    'rotation': config.DEFAULT_ROTATION,
    'resamples': config.BOOTSTRAP_RESAMPLES,
    'seed': config.RANDOM_SEED,
    'reference_file': None,
    'output_base': config.DEFAULT_OUTPUT_BASE,
}

TEST_NAME = 'qanalysis'


def load_study(params: dict) -> dict:
    """Load statements, sorts and grid from PQMethod files or a CSV."""
    sorts_file = params['sorts_file']
    if str(sorts_file).lower().endswith('.csv'):
        df = data.load_csv(sorts_file)
        if params['statements_file']:
            statements = pqmethod.read_sta(params['statements_file'])
        else:
            statements = StatementSet.from_texts([f"Statement {c}" for c in df.columns], ids=list(df.columns))
        grid = GridDistribution.from_dict(config.DEFAULT_GRID)
        return {
            'title': Path(sorts_file).stem,
            'statements': statements,
            'sorts': data.sorts_from_frame(df, statements),
            'grid': grid,
        }
    return pqmethod.import_study(sorts_file, params['statements_file'])


def build_config(params: dict) -> AnalysisConfig:
    if params['n_factors']:
        policy = FactorCountPolicy.explicit(params['n_factors'])
    elif params['factor_count'] == 'parallel':
        policy = FactorCountPolicy.parallel(seed=params['seed'])
    else:
        policy = FactorCountPolicy.kaiser()

    boot = None
    if params['resamples']:
        boot = BootstrapConfig(resamples=params['resamples'], seed=params['seed'])

    return AnalysisConfig(
        extraction=ExtractionConfig(method=params['extraction'], factor_count=policy),
        rotation=RotationConfig(method=params['rotation']),
        bootstrap=boot,
    )


# =============================================================================
# MAIN ANALYSIS
# =============================================================================
def run_analysis(params: dict) -> dict:
    """
    Run the Q-analysis pipeline.

    Parameters:
        params: Dictionary with analysis parameters

    Returns:
        Dictionary with the AnalysisRun, compliance report and output directory
    """
    print("=" * 70)
    print("Q-METHODOLOGY ANALYSIS")
    print("=" * 70)

    output_dir = output.get_output_dir(TEST_NAME, params['output_base'])

    # Step 1: Load study
    print("\n" + "=" * 70)
    print("STEP 1: LOADING STUDY")
    print("=" * 70)

    study = load_study(params)
    analysis_config = build_config(params)

    # Step 2: Full pipeline
    print("\n" + "=" * 70)
    print("STEP 2: RUNNING ANALYSIS")
    print("=" * 70)

    run = run_pipeline(study['statements'], study['sorts'], study['grid'], analysis_config, study['title'])

    # Step 3: Factorability (computed by the pipeline)
    print("\n" + "=" * 70)
    print("STEP 3: FACTORABILITY")
    print("=" * 70)

    if run.factorability is not None:
        summary = extraction.get_factorability_summary(run.factorability)
        print(summary.to_string(index=False))
        output.save_csv(summary, output_dir, TEST_NAME, 'factorability')
    else:
        print("Skipped (more respondents than statements, or singular correlations)")

    extraction.print_extraction_summary(run.extraction, run.factor_count_criteria)
    rotation.print_rotation_summary(run.rotation)
    arrays.print_factor_arrays(run.factor_arrays, run.statements)
    stats.print_significance_summary(run.significance, run.factor_arrays)
    if run.bootstrap is not None:
        bootstrap.print_bootstrap_summary(run.bootstrap)

    # Step 4: Plots
    print("\n" + "=" * 70)
    print("STEP 4: PLOTS")
    print("=" * 70)

    viz.setup_style()
    fig = viz.plot_scree(run.extraction.eigenvalues, run.n_factors,
                         run.factor_count_criteria.get('parallel_thresholds'))
    output.save_figure(fig, output_dir, TEST_NAME, 'scree')
    output.save_figure(viz.plot_loadings_heatmap(run.rotation.to_frame()), output_dir, TEST_NAME, 'loadings')
    for array in run.factor_arrays:
        fig = viz.plot_factor_array(array, run.statements, run.grid)
        output.save_figure(fig, output_dir, TEST_NAME, f'array-{array.factor + 1}')
        if run.bootstrap is not None and run.bootstrap.n_successful:
            fig = viz.plot_bootstrap_intervals(run.bootstrap, array.factor, run.statements, top=20)
            output.save_figure(fig, output_dir, TEST_NAME, f'bootstrap-{array.factor + 1}')

    # Step 5: Compliance against PQMethod
    print("\n" + "=" * 70)
    print("STEP 5: PQMETHOD COMPLIANCE")
    print("=" * 70)

    compliance = None
    if params['reference_file']:
        reference = pqmethod.read_lis(params['reference_file'])
        compliance = pqmethod.validate_against_reference(run, reference)
        pqmethod.print_compliance_report(compliance)
        output.save_csv(compliance.to_frame(), output_dir, TEST_NAME, 'compliance')

    # Step 6: Save everything
    print("\n" + "=" * 70)
    print("STEP 6: SAVING RESULTS")
    print("=" * 70)

    output.save_run(run, output_dir, TEST_NAME)
    output.save_report(report.generate_report(run), output_dir, TEST_NAME)

    print_run_summary(run)

    print("\n" + "=" * 70)
    print("ANALYSIS COMPLETE")
    print("=" * 70)
    output.print_summary(output_dir)

    return {
        'run': run,
        'compliance': compliance,
        'output_dir': output_dir,
    }


# =============================================================================
# ENTRY POINT
# =============================================================================
if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')
    params = {**DEFAULTS}
    results = run_analysis(params)
