"""
Data Model Module
=================

Immutable records passed between analysis stages, plus the closed
per-stage configuration objects.

Derived records (correlation matrix through bootstrap result) are frozen
dataclasses whose numpy arrays are flagged read-only, so a single run can
be read from several threads without copying or locking.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

import numpy as np
import pandas as pd

from . import config
from .errors import AnalysisCancelledError, InvalidConfigurationError

StatementId = Union[str, int]


def _readonly(values, dtype=float) -> np.ndarray:
    """Return a read-only copy of ``values``."""
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


def _coerce(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(m.value for m in enum_cls)
        raise InvalidConfigurationError(
            f"Unknown {name} '{value}' (expected one of: {allowed})",
            field=name, value=value,
        ) from None


def factor_labels(n_factors: int) -> list[str]:
    """Column labels used for every factor-indexed table."""
    return [f'Factor_{i+1}' for i in range(n_factors)]


# =============================================================================
# ENUMERATIONS
# =============================================================================
class ExtractionMethod(str, Enum):
    PCA = 'pca'
    CENTROID = 'centroid'


class RotationMethod(str, Enum):
    VARIMAX = 'varimax'
    QUARTIMAX = 'quartimax'
    EQUAMAX = 'equamax'
    PROMAX = 'promax'
    OBLIMIN = 'oblimin'
    MANUAL = 'manual'
    NONE = 'none'

    @property
    def is_oblique(self) -> bool:
        return self in (RotationMethod.PROMAX, RotationMethod.OBLIMIN)

    @property
    def is_automatic(self) -> bool:
        return self not in (RotationMethod.MANUAL, RotationMethod.NONE)


class RotationState(str, Enum):
    UNROTATED = 'unrotated'
    ROTATING = 'rotating'
    MANUAL_SESSION = 'manual_session'
    CONVERGED = 'converged'


class SignificanceLevel(str, Enum):
    P01 = 'p<0.01'
    P05 = 'p<0.05'
    NONE = 'none'

    @property
    def marker(self) -> str:
        return {'p<0.01': '**', 'p<0.05': '*'}.get(self.value, '')


# =============================================================================
# STUDY INPUTS
# =============================================================================
@dataclass(frozen=True)
class Statement:
    id: StatementId
    text: str
    index: int


@dataclass(frozen=True)
class StatementSet:
    """Ordered statements; ``index`` is the row identity in every matrix."""

    statements: tuple

    def __post_init__(self):
        statements = tuple(self.statements)
        object.__setattr__(self, 'statements', statements)
        if not statements:
            raise InvalidConfigurationError("Statement set is empty")
        for position, stmt in enumerate(statements):
            if stmt.index != position:
                raise InvalidConfigurationError(
                    f"Statement {stmt.id!r} has index {stmt.index}, expected {position}",
                    statement_id=stmt.id,
                )
        ids = [s.id for s in statements]
        if len(set(ids)) != len(ids):
            raise InvalidConfigurationError("Statement ids must be unique")

    @classmethod
    def from_texts(cls, texts: list[str], ids: list[StatementId] = None) -> 'StatementSet':
        """Build a set numbered 1..N (PQMethod convention) unless ids are given."""
        if ids is None:
            ids = list(range(1, len(texts) + 1))
        if len(ids) != len(texts):
            raise InvalidConfigurationError("Need exactly one id per statement text")
        return cls(tuple(Statement(id=i, text=t, index=n) for n, (i, t) in enumerate(zip(ids, texts))))

    def __len__(self) -> int:
        return len(self.statements)

    def __iter__(self):
        return iter(self.statements)

    def __getitem__(self, index: int) -> Statement:
        return self.statements[index]

    @property
    def ids(self) -> list:
        return [s.id for s in self.statements]

    @property
    def texts(self) -> list[str]:
        return [s.text for s in self.statements]


@dataclass(frozen=True)
class GridColumn:
    value: int
    capacity: int


@dataclass(frozen=True)
class GridDistribution:
    """
    Sorting grid: one column per rank value with a placement capacity.

    ``forced=False`` declares a free distribution. Sorts are then only
    checked against the value range, but factor arrays are still mapped
    onto the declared capacities.
    """

    columns: tuple
    forced: bool = True

    def __post_init__(self):
        columns = tuple(sorted(self.columns, key=lambda c: c.value))
        object.__setattr__(self, 'columns', columns)
        if not columns:
            raise InvalidConfigurationError("Grid distribution has no columns")
        values = [c.value for c in columns]
        if len(set(values)) != len(values):
            raise InvalidConfigurationError("Grid values must be unique", values=values)
        if any(c.capacity < 0 for c in columns):
            raise InvalidConfigurationError("Grid capacities must be non-negative")
        if sum(c.capacity for c in columns) == 0:
            raise InvalidConfigurationError("Grid has no placements")

    @classmethod
    def from_dict(cls, capacities: Mapping[int, int], forced: bool = True) -> 'GridDistribution':
        return cls(tuple(GridColumn(int(v), int(c)) for v, c in capacities.items()), forced=forced)

    @classmethod
    def from_range(cls, min_value: int, capacities: list[int], forced: bool = True) -> 'GridDistribution':
        """Grid whose columns run min_value, min_value + 1, ... (PQMethod layout)."""
        return cls(tuple(GridColumn(min_value + i, int(c)) for i, c in enumerate(capacities)), forced=forced)

    @property
    def values(self) -> np.ndarray:
        return np.array([c.value for c in self.columns], dtype=int)

    @property
    def capacities(self) -> np.ndarray:
        return np.array([c.capacity for c in self.columns], dtype=int)

    @property
    def n_placements(self) -> int:
        return int(self.capacities.sum())

    @property
    def min_value(self) -> int:
        return int(self.values[0])

    @property
    def max_value(self) -> int:
        return int(self.values[-1])

    @property
    def is_symmetric(self) -> bool:
        values, caps = self.values, self.capacities
        return bool(np.array_equal(values, -values[::-1]) and np.array_equal(caps, caps[::-1]))

    def expected_counts(self) -> dict[int, int]:
        return {c.value: c.capacity for c in self.columns}


@dataclass(frozen=True)
class QSort:
    """One participant's placement of every statement onto the grid."""

    participant_id: str
    placements: Mapping

    def __post_init__(self):
        object.__setattr__(self, 'placements', MappingProxyType(dict(self.placements)))

    @classmethod
    def from_ranks(cls, participant_id: str, ranks: list, statements: StatementSet) -> 'QSort':
        """Build a sort from rank values listed in statement order."""
        return cls(participant_id, dict(zip(statements.ids, ranks)))


# =============================================================================
# DERIVED RESULTS
# =============================================================================
@dataclass(frozen=True, eq=False)
class CorrelationMatrix:
    values: np.ndarray
    participants: tuple

    def __post_init__(self):
        object.__setattr__(self, 'values', _readonly(self.values))
        object.__setattr__(self, 'participants', tuple(self.participants))

    @property
    def size(self) -> int:
        return self.values.shape[0]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=list(self.participants), columns=list(self.participants))


@dataclass(frozen=True, eq=False)
class FactorSolution:
    """Unrotated factors plus the full eigenvalue spectrum of the correlation matrix."""

    method: ExtractionMethod
    eigenvalues: np.ndarray
    loadings: np.ndarray
    participants: tuple
    iterations: int = 0
    residual: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, 'eigenvalues', _readonly(self.eigenvalues))
        object.__setattr__(self, 'loadings', _readonly(self.loadings))
        object.__setattr__(self, 'participants', tuple(self.participants))

    @property
    def n_factors(self) -> int:
        return self.loadings.shape[1]

    @property
    def factor_eigenvalues(self) -> np.ndarray:
        """Variance explained by each extracted factor (column sums of squares)."""
        return (self.loadings ** 2).sum(axis=0)

    @property
    def communalities(self) -> np.ndarray:
        return (self.loadings ** 2).sum(axis=1)

    @property
    def explained_variance(self) -> np.ndarray:
        """Percent of total variance explained by each extracted factor."""
        return self.factor_eigenvalues / self.loadings.shape[0] * 100

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.loadings, index=list(self.participants), columns=factor_labels(self.n_factors))

    def scree_frame(self) -> pd.DataFrame:
        total = self.eigenvalues.sum()
        pct = self.eigenvalues / total * 100 if total > 0 else np.zeros_like(self.eigenvalues)
        return pd.DataFrame({
            'factor': np.arange(1, len(self.eigenvalues) + 1),
            'eigenvalue': self.eigenvalues,
            'variance_pct': pct,
            'cumulative_pct': np.cumsum(pct),
        })


@dataclass(frozen=True)
class ManualRotationStep:
    factor_a: int
    factor_b: int
    angle_degrees: float


@dataclass(frozen=True, eq=False)
class RotatedSolution:
    method: RotationMethod
    state: RotationState
    loadings: np.ndarray
    rotation_matrix: np.ndarray
    participants: tuple
    iterations: int = 0
    criterion: Optional[float] = None
    factor_correlations: Optional[np.ndarray] = None
    structure: Optional[np.ndarray] = None
    history: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, 'loadings', _readonly(self.loadings))
        object.__setattr__(self, 'rotation_matrix', _readonly(self.rotation_matrix))
        object.__setattr__(self, 'participants', tuple(self.participants))
        object.__setattr__(self, 'history', tuple(self.history))
        if self.factor_correlations is not None:
            object.__setattr__(self, 'factor_correlations', _readonly(self.factor_correlations))
        if self.structure is not None:
            object.__setattr__(self, 'structure', _readonly(self.structure))

    @property
    def n_factors(self) -> int:
        return self.loadings.shape[1]

    @property
    def is_oblique(self) -> bool:
        return self.factor_correlations is not None

    @property
    def communalities(self) -> np.ndarray:
        return (self.loadings ** 2).sum(axis=1)

    @property
    def explained_variance(self) -> np.ndarray:
        return (self.loadings ** 2).sum(axis=0) / self.loadings.shape[0] * 100

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.loadings, index=list(self.participants), columns=factor_labels(self.n_factors))


@dataclass(frozen=True, eq=False)
class FactorArray:
    """Idealised Q-sort of one factor."""

    factor: int
    statement_ids: tuple
    defining_sorts: tuple
    defining_loadings: np.ndarray
    weighted_scores: np.ndarray
    z_scores: np.ndarray
    ranks: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'statement_ids', tuple(self.statement_ids))
        object.__setattr__(self, 'defining_sorts', tuple(int(i) for i in self.defining_sorts))
        object.__setattr__(self, 'defining_loadings', _readonly(self.defining_loadings))
        object.__setattr__(self, 'weighted_scores', _readonly(self.weighted_scores))
        object.__setattr__(self, 'z_scores', _readonly(self.z_scores))
        object.__setattr__(self, 'ranks', _readonly(self.ranks, dtype=int))

    @property
    def label(self) -> str:
        return f'Factor_{self.factor + 1}'

    @property
    def n_defining(self) -> int:
        return len(self.defining_sorts)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {'z_score': self.z_scores, 'rank': self.ranks},
            index=pd.Index(list(self.statement_ids), name='statement'),
        )


@dataclass(frozen=True, eq=False)
class StatementSignificance:
    """
    Pairwise significance of z-score differences.

    ``table`` has one row per statement per factor pair; ``consensus`` is a
    boolean Series indexed by statement id.
    """

    table: pd.DataFrame
    consensus: pd.Series
    n_factors: int

    @property
    def distinguishing(self) -> pd.DataFrame:
        return self.table[self.table['level'] != SignificanceLevel.NONE.value].reset_index(drop=True)

    @property
    def consensus_statements(self) -> list:
        return list(self.consensus[self.consensus].index)


@dataclass(frozen=True, eq=False)
class BootstrapResult:
    n_requested: int
    n_successful: int
    n_dropped: int
    failures: Mapping
    confidence: float
    participants: tuple
    statement_ids: tuple
    loading_samples: np.ndarray
    zscore_samples: np.ndarray
    loading_lower: np.ndarray
    loading_upper: np.ndarray
    zscore_lower: np.ndarray
    zscore_upper: np.ndarray
    zscore_se: np.ndarray
    congruence: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'failures', MappingProxyType(dict(self.failures)))
        object.__setattr__(self, 'participants', tuple(self.participants))
        object.__setattr__(self, 'statement_ids', tuple(self.statement_ids))
        for name in ('loading_samples', 'zscore_samples', 'loading_lower', 'loading_upper',
                     'zscore_lower', 'zscore_upper', 'zscore_se', 'congruence'):
            object.__setattr__(self, name, _readonly(getattr(self, name)))

    @property
    def drop_rate(self) -> float:
        return self.n_dropped / self.n_requested if self.n_requested else 0.0

    @property
    def is_complete(self) -> bool:
        return self.n_dropped == 0

    def stability(self, threshold: float = 0.90) -> pd.DataFrame:
        """Mean Tucker congruence with the original factor arrays, and the share above threshold."""
        n_factors = self.congruence.shape[1] if self.congruence.ndim == 2 else 0
        if len(self.congruence) == 0:
            mean = rate = np.full(n_factors, np.nan)
        else:
            mean = np.abs(self.congruence).mean(axis=0)
            rate = (np.abs(self.congruence) >= threshold).mean(axis=0)
        return pd.DataFrame(
            {'mean_congruence': mean, f'rate_{int(round(threshold * 100))}': rate},
            index=factor_labels(n_factors),
        )

    def zscore_intervals(self) -> pd.DataFrame:
        """Long table of z-score confidence intervals per statement per factor."""
        n_factors = self.zscore_lower.shape[1] if self.zscore_lower.ndim == 2 else 0
        rows = []
        for f, label in enumerate(factor_labels(n_factors)):
            for s, stmt_id in enumerate(self.statement_ids):
                rows.append({
                    'statement': stmt_id,
                    'factor': label,
                    'lower': self.zscore_lower[s, f],
                    'upper': self.zscore_upper[s, f],
                    'se': self.zscore_se[s, f],
                })
        return pd.DataFrame(rows, columns=['statement', 'factor', 'lower', 'upper', 'se'])

    def loading_intervals(self) -> pd.DataFrame:
        n_factors = self.loading_lower.shape[1] if self.loading_lower.ndim == 2 else 0
        rows = []
        for f, label in enumerate(factor_labels(n_factors)):
            for p, participant in enumerate(self.participants):
                rows.append({
                    'participant': participant,
                    'factor': label,
                    'lower': self.loading_lower[p, f],
                    'upper': self.loading_upper[p, f],
                })
        return pd.DataFrame(rows, columns=['participant', 'factor', 'lower', 'upper'])


@dataclass(frozen=True)
class ComplianceReport:
    loading_correlation: float
    eigenvalue_delta: float
    loading_delta: float
    zscore_delta: float
    tolerances: Mapping
    checks: Mapping
    flipped_factors: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, 'tolerances', MappingProxyType(dict(self.tolerances)))
        object.__setattr__(self, 'checks', MappingProxyType(dict(self.checks)))

    @property
    def passed(self) -> bool:
        return all(self.checks.values())

    @property
    def failures(self) -> list[str]:
        return [name for name, ok in self.checks.items() if not ok]

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for name in ('loading_correlation', 'eigenvalue_delta', 'loading_delta', 'zscore_delta'):
            rows.append({
                'Metric': name,
                'Value': getattr(self, name),
                'Target': self.tolerances[name],
                'Result': 'PASS' if self.checks[name] else 'FAIL',
            })
        return pd.DataFrame(rows)


# =============================================================================
# STAGE CONFIGURATION
# =============================================================================
@dataclass(frozen=True)
class FactorCountPolicy:
    """How many factors to extract: 'kaiser', 'parallel' or 'explicit'."""

    policy: str = 'kaiser'
    n_factors: Optional[int] = None
    permutations: int = config.PARALLEL_PERMUTATIONS
    percentile: float = config.PARALLEL_PERCENTILE
    seed: Optional[int] = config.RANDOM_SEED

    def __post_init__(self):
        if self.policy not in ('kaiser', 'parallel', 'explicit'):
            raise InvalidConfigurationError(f"Unknown factor-count policy '{self.policy}'", field='policy')
        if self.policy == 'explicit' and self.n_factors is None:
            raise InvalidConfigurationError("Explicit factor-count policy needs n_factors", field='n_factors')
        if self.n_factors is not None and self.n_factors < 1:
            raise InvalidConfigurationError("n_factors must be at least 1", field='n_factors')
        if self.permutations < 1:
            raise InvalidConfigurationError("permutations must be at least 1", field='permutations')
        if not 0 < self.percentile < 100:
            raise InvalidConfigurationError("percentile must be in (0, 100)", field='percentile')

    @classmethod
    def kaiser(cls) -> 'FactorCountPolicy':
        return cls('kaiser')

    @classmethod
    def parallel(cls, permutations: int = config.PARALLEL_PERMUTATIONS,
                 percentile: float = config.PARALLEL_PERCENTILE,
                 seed: Optional[int] = config.RANDOM_SEED) -> 'FactorCountPolicy':
        return cls('parallel', permutations=permutations, percentile=percentile, seed=seed)

    @classmethod
    def explicit(cls, n_factors: int) -> 'FactorCountPolicy':
        return cls('explicit', n_factors=n_factors)


@dataclass(frozen=True)
class ExtractionConfig:
    method: ExtractionMethod = config.DEFAULT_EXTRACTION
    factor_count: FactorCountPolicy = field(default_factory=FactorCountPolicy)
    max_passes: int = config.CENTROID_MAX_PASSES

    def __post_init__(self):
        object.__setattr__(self, 'method', _coerce(ExtractionMethod, self.method, 'extraction method'))
        if self.max_passes < 1:
            raise InvalidConfigurationError("max_passes must be at least 1", field='max_passes')


@dataclass(frozen=True)
class RotationConfig:
    method: RotationMethod = config.DEFAULT_ROTATION
    normalize: bool = config.KAISER_NORMALIZE
    tolerance: float = config.ROTATION_TOLERANCE
    max_sweeps: int = config.ROTATION_MAX_SWEEPS
    kappa: float = config.PROMAX_KAPPA
    gamma: float = config.OBLIMIN_GAMMA
    oblimin_max_iter: int = config.OBLIMIN_MAX_ITER

    def __post_init__(self):
        object.__setattr__(self, 'method', _coerce(RotationMethod, self.method, 'rotation method'))
        if self.tolerance <= 0:
            raise InvalidConfigurationError("tolerance must be positive", field='tolerance')
        if self.max_sweeps < 1:
            raise InvalidConfigurationError("max_sweeps must be at least 1", field='max_sweeps')
        if self.kappa <= 1:
            raise InvalidConfigurationError("Promax kappa must be greater than 1", field='kappa')
        if not -1 <= self.gamma <= 1:
            raise InvalidConfigurationError("Oblimin gamma must be between -1 and 1", field='gamma')


@dataclass(frozen=True)
class DefiningSortPolicy:
    min_loading_squared: float = config.DEFINING_LOADING_SQUARED
    require_significance: bool = False
    require_communality_majority: bool = False

    def __post_init__(self):
        if not 0 <= self.min_loading_squared < 1:
            raise InvalidConfigurationError("min_loading_squared must be in [0, 1)", field='min_loading_squared')


@dataclass(frozen=True)
class SignificanceConfig:
    alpha: float = config.ALPHA
    alpha_strict: float = config.ALPHA_STRICT
    sort_reliability: float = config.AVERAGE_SORT_RELIABILITY

    def __post_init__(self):
        if not 0 < self.alpha_strict < self.alpha < 1:
            raise InvalidConfigurationError("Need 0 < alpha_strict < alpha < 1", field='alpha')
        if not 0 < self.sort_reliability < 1:
            raise InvalidConfigurationError("sort_reliability must be in (0, 1)", field='sort_reliability')


@dataclass(frozen=True)
class BootstrapConfig:
    resamples: int = config.BOOTSTRAP_RESAMPLES
    confidence: float = config.BOOTSTRAP_CONFIDENCE
    max_drop_rate: float = config.BOOTSTRAP_MAX_DROP_RATE
    workers: Optional[int] = config.BOOTSTRAP_WORKERS
    seed: Optional[int] = config.RANDOM_SEED

    def __post_init__(self):
        if self.resamples < 0:
            raise InvalidConfigurationError("resamples cannot be negative", field='resamples')
        if not 0 < self.confidence < 1:
            raise InvalidConfigurationError("confidence must be in (0, 1)", field='confidence')
        if not 0 <= self.max_drop_rate <= 1:
            raise InvalidConfigurationError("max_drop_rate must be in [0, 1]", field='max_drop_rate')
        if self.workers is not None and self.workers < 1:
            raise InvalidConfigurationError("workers must be at least 1", field='workers')


@dataclass(frozen=True)
class AnalysisConfig:
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    rotation: RotationConfig = field(default_factory=RotationConfig)
    defining: DefiningSortPolicy = field(default_factory=DefiningSortPolicy)
    significance: SignificanceConfig = field(default_factory=SignificanceConfig)
    bootstrap: Optional[BootstrapConfig] = None
    check_factorability: bool = True

    def __post_init__(self):
        if self.rotation.method is RotationMethod.MANUAL:
            raise InvalidConfigurationError(
                "Manual rotation is interactive; run with another method and start a session",
                field='rotation',
            )


# =============================================================================
# CANCELLATION
# =============================================================================
class CancellationToken:
    """Cooperative cancellation flag checked between iterations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(f"{stage} cancelled", stage=stage)


def check_cancelled(token: Optional[CancellationToken], stage: str) -> None:
    if token is not None:
        token.raise_if_cancelled(stage)
