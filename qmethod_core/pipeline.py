"""
Analysis Pipeline Module
========================

Runs the stages in order (validation, correlation, extraction, rotation,
factor arrays, significance, optional bootstrap) and records everything in
an immutable, versioned AnalysisRun.

Re-rotating or saving a manual rotation never edits a run: it derives a
new run that shares the read-only extraction of its parent.
"""

import dataclasses
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import numpy as np

from .arrays import build_factor_arrays, factor_arrays_frame
from .bootstrap import run_bootstrap
from .correlation import correlate_matrix
from .data import build_sort_matrix
from .errors import InvalidConfigurationError, SingularMatrixError
from .extraction import check_factorability, extract_factors
from .models import (
    AnalysisConfig,
    BootstrapResult,
    CancellationToken,
    CorrelationMatrix,
    FactorSolution,
    GridDistribution,
    QSort,
    RotatedSolution,
    RotationConfig,
    StatementSet,
    StatementSignificance,
    _readonly,
    check_cancelled,
)
from .rotation import ManualRotationSession, rotate
from .stats import classify_statements

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class AnalysisRun:
    """Every artifact of one analysis, keyed by (study_id, run_id)."""

    study_id: str
    run_id: str
    version: int
    created_at: datetime
    config: AnalysisConfig
    statements: StatementSet
    grid: GridDistribution
    sort_matrix: np.ndarray
    correlation: CorrelationMatrix
    extraction: FactorSolution
    factor_count_criteria: dict
    rotation: RotatedSolution
    factor_arrays: tuple
    significance: StatementSignificance
    bootstrap: Optional[BootstrapResult] = None
    factorability: Optional[dict] = None
    parent_run_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'sort_matrix', _readonly(self.sort_matrix, dtype=np.int64))
        object.__setattr__(self, 'factor_arrays', tuple(self.factor_arrays))

    @property
    def key(self) -> tuple:
        return (self.study_id, self.run_id)

    @property
    def participants(self) -> tuple:
        return self.correlation.participants

    @property
    def n_factors(self) -> int:
        return self.rotation.n_factors

    def to_dict(self) -> dict:
        """JSON-serialisable view of the run (NaN becomes None)."""
        arrays_df = factor_arrays_frame(self.factor_arrays, self.statements)
        payload = {
            'study_id': self.study_id,
            'run_id': self.run_id,
            'version': self.version,
            'parent_run_id': self.parent_run_id,
            'created_at': self.created_at.isoformat(),
            'config': dataclasses.asdict(self.config),
            'statements': [{'id': s.id, 'text': s.text} for s in self.statements],
            'participants': list(self.participants),
            'grid': {'columns': self.grid.expected_counts(), 'forced': self.grid.forced},
            'correlation': self.correlation.values,
            'extraction': {
                'method': self.extraction.method,
                'eigenvalues': self.extraction.eigenvalues,
                'factor_eigenvalues': self.extraction.factor_eigenvalues,
                'explained_variance': self.extraction.explained_variance,
                'loadings': self.extraction.loadings,
                'iterations': self.extraction.iterations,
                'residual': self.extraction.residual,
                'criteria': self.factor_count_criteria,
            },
            'rotation': {
                'method': self.rotation.method,
                'state': self.rotation.state,
                'loadings': self.rotation.loadings,
                'rotation_matrix': self.rotation.rotation_matrix,
                'factor_correlations': self.rotation.factor_correlations,
                'structure': self.rotation.structure,
                'iterations': self.rotation.iterations,
                'criterion': self.rotation.criterion,
                'history': [dataclasses.asdict(step) for step in self.rotation.history],
            },
            'factor_arrays': [
                {
                    'factor': a.label,
                    'defining_sorts': [self.participants[i] for i in a.defining_sorts],
                    'z_scores': a.z_scores,
                    'ranks': a.ranks,
                }
                for a in self.factor_arrays
            ],
            'factor_arrays_table': arrays_df.reset_index().to_dict(orient='records'),
            'significance': {
                'pairs': self.significance.table.to_dict(orient='records'),
                'consensus': self.significance.consensus_statements,
            },
            'factorability': self.factorability,
            'bootstrap': None,
        }
        if self.bootstrap is not None:
            payload['bootstrap'] = {
                'requested': self.bootstrap.n_requested,
                'successful': self.bootstrap.n_successful,
                'dropped': self.bootstrap.n_dropped,
                'failures': dict(self.bootstrap.failures),
                'confidence': self.bootstrap.confidence,
                'zscore_lower': self.bootstrap.zscore_lower,
                'zscore_upper': self.bootstrap.zscore_upper,
                'zscore_se': self.bootstrap.zscore_se,
                'loading_lower': self.bootstrap.loading_lower,
                'loading_upper': self.bootstrap.loading_upper,
            }
        return _jsonable(payload)


def _jsonable(value):
    if isinstance(value, dict):
        return {(k if isinstance(k, str) else str(k)): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return _jsonable(value.tolist())
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, np.generic):
        return _jsonable(value.item())
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _derive_run(
    statements: StatementSet,
    grid: GridDistribution,
    sort_matrix: np.ndarray,
    correlation: CorrelationMatrix,
    extraction: FactorSolution,
    criteria: dict,
    rotated: RotatedSolution,
    analysis_config: AnalysisConfig,
    study_id: str,
    version: int = 1,
    parent_run_id: str = None,
    factorability: dict = None,
    cancel_token: CancellationToken = None,
) -> AnalysisRun:
    """Factor arrays, significance and bootstrap for a rotated solution."""
    arrays = build_factor_arrays(rotated, sort_matrix, statements, grid, analysis_config.defining)
    significance = classify_statements(arrays, analysis_config.significance)

    bootstrap = None
    if analysis_config.bootstrap is not None:
        check_cancelled(cancel_token, 'bootstrap')
        bootstrap = run_bootstrap(
            sort_matrix, statements, grid, rotated, arrays, extraction.method,
            analysis_config, analysis_config.bootstrap, cancel_token,
        )

    return AnalysisRun(
        study_id=study_id,
        run_id=uuid.uuid4().hex,
        version=version,
        created_at=datetime.now(timezone.utc),
        config=analysis_config,
        statements=statements,
        grid=grid,
        sort_matrix=sort_matrix,
        correlation=correlation,
        extraction=extraction,
        factor_count_criteria=criteria,
        rotation=rotated,
        factor_arrays=arrays,
        significance=significance,
        bootstrap=bootstrap,
        factorability=factorability,
        parent_run_id=parent_run_id,
    )


def run_analysis(
    statements: StatementSet,
    sorts: list[QSort],
    grid: GridDistribution,
    analysis_config: AnalysisConfig = None,
    study_id: str = 'study',
    cancel_token: CancellationToken = None,
) -> AnalysisRun:
    """
    Run the full analysis.

    All inputs are validated before any computation starts.

    Parameters:
        statements: Statement set
        sorts: One Q-sort per participant
        grid: Sorting grid
        analysis_config: Stage configuration. Defaults to PCA, Kaiser, varimax
        study_id: Study key recorded on the run
        cancel_token: Cooperative cancellation for the long-running stages

    Returns:
        AnalysisRun (version 1)
    """
    if analysis_config is None:
        analysis_config = AnalysisConfig()
    if not isinstance(analysis_config, AnalysisConfig):
        raise InvalidConfigurationError("analysis_config must be an AnalysisConfig", field='analysis_config')

    sort_matrix, participants = build_sort_matrix(sorts, statements, grid)
    check_cancelled(cancel_token, 'analysis')

    factorability = None
    if analysis_config.check_factorability:
        try:
            factorability = check_factorability(sort_matrix, participants, verbose=False)
        except SingularMatrixError as exc:
            logger.warning("Factorability tests skipped: %s", exc.message)

    correlation = CorrelationMatrix(correlate_matrix(sort_matrix), participants)
    extraction, criteria = extract_factors(correlation, analysis_config.extraction, sort_matrix, cancel_token)
    rotated = rotate(extraction, analysis_config.rotation, cancel_token)

    run = _derive_run(
        statements, grid, sort_matrix, correlation, extraction, criteria, rotated,
        analysis_config, study_id, factorability=factorability, cancel_token=cancel_token,
    )
    logger.info("Completed run %s for study %s (%d factors)", run.run_id, study_id, run.n_factors)
    return run


def rerotate(
    run: AnalysisRun,
    rotation_config: RotationConfig,
    cancel_token: CancellationToken = None,
) -> AnalysisRun:
    """New run with a different automatic rotation of the same extraction."""
    rotated = rotate(run.extraction, rotation_config, cancel_token)
    analysis_config = dataclasses.replace(run.config, rotation=rotation_config)
    return _derive_run(
        run.statements, run.grid, run.sort_matrix, run.correlation, run.extraction,
        run.factor_count_criteria, rotated, analysis_config, run.study_id,
        version=run.version + 1, parent_run_id=run.run_id,
        factorability=run.factorability, cancel_token=cancel_token,
    )


def apply_rotation(
    run: AnalysisRun,
    rotated: RotatedSolution,
    cancel_token: CancellationToken = None,
) -> AnalysisRun:
    """
    New run from an externally produced rotation, such as a saved manual session.

    The rotation must belong to the run's extraction (same respondents and factor count).
    """
    if rotated.participants != run.extraction.participants:
        raise InvalidConfigurationError("Rotation belongs to different respondents", field='rotated')
    if rotated.loadings.shape != run.extraction.loadings.shape:
        raise InvalidConfigurationError(
            f"Rotation has shape {rotated.loadings.shape}, extraction has {run.extraction.loadings.shape}",
            field='rotated',
        )
    return _derive_run(
        run.statements, run.grid, run.sort_matrix, run.correlation, run.extraction,
        run.factor_count_criteria, rotated, run.config, run.study_id,
        version=run.version + 1, parent_run_id=run.run_id,
        factorability=run.factorability, cancel_token=cancel_token,
    )


def start_interactive_rotation(run: AnalysisRun) -> ManualRotationSession:
    """Manual session starting from the run's rotation (or its extraction if oblique)."""
    if run.rotation.is_oblique:
        return ManualRotationSession(run.extraction)
    return ManualRotationSession(run.rotation)


def print_run_summary(run: AnalysisRun) -> None:
    """Print the headline numbers of a run."""
    print("\n" + "=" * 60)
    print(f"ANALYSIS RUN {run.study_id} v{run.version}")
    print("=" * 60)
    print(f"\nRun id:      {run.run_id}")
    print(f"Created:     {run.created_at:%Y-%m-%d %H:%M:%S} UTC")
    print(f"Respondents: {len(run.participants)}")
    print(f"Statements:  {len(run.statements)}")
    print(f"Extraction:  {run.extraction.method.value} ({run.extraction.n_factors} factors)")
    print(f"Rotation:    {run.rotation.method.value}")
    for array, variance in zip(run.factor_arrays, run.rotation.explained_variance):
        print(f"  {array.label}: {array.n_defining} defining sorts, {variance:.1f}% variance")
    print(f"Consensus statements: {len(run.significance.consensus_statements)}")
    if run.bootstrap is not None:
        print(f"Bootstrap: {run.bootstrap.n_successful}/{run.bootstrap.n_requested} resamples")
