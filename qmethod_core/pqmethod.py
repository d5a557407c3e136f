"""
PQMethod Compatibility Module
=============================

Reading and writing PQMethod's fixed-width files and checking our results
against a PQMethod reference run.

File layouts:
    .STA  one statement per line, in statement order
    .DAT  line 1: "  0", statement count (3 columns), space, study title
          line 2: grid minimum, maximum, then one capacity per column (3 columns each)
          then one line per sort: 8-column participant name, 2 columns per statement
    .LIS  fixed-width analysis report (correlations x100, eigenvalues,
          loadings, z-scores, Q-sort values, distinguishing and consensus statements)
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from . import config
from .errors import InvalidFileFormatError, ReferenceMismatchError
from .models import (
    ComplianceReport,
    GridDistribution,
    QSort,
    StatementSet,
    factor_labels,
    _readonly,
)
from .stats import distinguishing_statements

logger = logging.getLogger(__name__)

NAME_WIDTH = 8
VALUE_WIDTH = 2
HEADER_WIDTH = 3
# Slack on tolerance comparisons for values rounded to the reference precision
COMPARISON_SLACK = 1e-9

LIS_CORRELATIONS = 'Correlation Matrix Between Sorts (x100)'
LIS_UNROTATED = 'Unrotated Factor Matrix'
LIS_EIGENVALUES = 'Eigenvalues'
LIS_LOADINGS = 'Factor Matrix with an X Indicating a Defining Sort'
LIS_ZSCORES = 'Factor Scores (z-scores)'
LIS_QSORT_VALUES = 'Factor Q-Sort Values for Statements'
LIS_DISTINGUISHING = 'Distinguishing Statements for'
LIS_CONSENSUS = 'Consensus Statements'


@dataclass(frozen=True, eq=False)
class DatFile:
    """Contents of a .DAT raw data file."""

    title: str
    grid: GridDistribution
    participants: tuple
    sort_matrix: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'participants', tuple(self.participants))
        object.__setattr__(self, 'sort_matrix', _readonly(self.sort_matrix, dtype=np.int64))

    @property
    def n_statements(self) -> int:
        return self.sort_matrix.shape[1]


@dataclass(frozen=True, eq=False)
class ReferenceOutput:
    """Eigenvalues, rotated loadings and z-scores of one analysis, ours or PQMethod's."""

    eigenvalues: np.ndarray
    loadings: np.ndarray
    zscores: np.ndarray
    participants: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, 'eigenvalues', _readonly(self.eigenvalues))
        object.__setattr__(self, 'loadings', _readonly(self.loadings))
        object.__setattr__(self, 'zscores', _readonly(self.zscores))
        object.__setattr__(self, 'participants', tuple(self.participants))

    @property
    def n_factors(self) -> int:
        return self.loadings.shape[1]


# =============================================================================
# STATEMENTS (.STA)
# =============================================================================
def format_sta(statements: StatementSet) -> str:
    for stmt in statements:
        if '\n' in stmt.text or '\r' in stmt.text:
            raise InvalidFileFormatError(f"Statement {stmt.id} spans several lines", statement_id=stmt.id)
    return ''.join(f"{text}\n" for text in statements.texts)


def parse_sta(text: str) -> StatementSet:
    """Parse .STA content; statements are numbered 1..N and blank lines skipped."""
    texts = [line.rstrip() for line in text.splitlines() if line.strip()]
    if not texts:
        raise InvalidFileFormatError("Statement file is empty", line=1)
    return StatementSet.from_texts(texts)


def write_sta(path: Union[str, Path], statements: StatementSet) -> Path:
    path = Path(path)
    path.write_text(format_sta(statements), encoding='utf-8')
    return path


def read_sta(path: Union[str, Path]) -> StatementSet:
    return parse_sta(Path(path).read_text(encoding='utf-8'))


# =============================================================================
# RAW DATA (.DAT)
# =============================================================================
def format_dat(
    sort_matrix: np.ndarray,
    participants: tuple,
    grid: GridDistribution,
    title: str = '',
) -> str:
    """
    Render sorts as .DAT content.

    Parameters:
        sort_matrix: M x N integer rank matrix
        participants: Participant names (truncated to 8 characters)
        grid: Sorting grid; must span a contiguous value range
        title: Study title

    Returns:
        File content
    """
    X = np.asarray(sort_matrix)
    n_statements = X.shape[1]
    values = grid.values
    if not np.array_equal(values, np.arange(grid.min_value, grid.max_value + 1)):
        raise InvalidFileFormatError("PQMethod grids must cover a contiguous value range",
                                     values=[int(v) for v in values])
    if X.size and (X.min() < -9 or X.max() > 99):
        raise InvalidFileFormatError("Sort values must fit in two columns (-9..99)",
                                     min_value=int(X.min()), max_value=int(X.max()))

    names = []
    for participant in participants:
        name = str(participant)
        if len(name) > NAME_WIDTH:
            logger.warning("Participant name '%s' truncated to %d characters", name, NAME_WIDTH)
            name = name[:NAME_WIDTH]
        names.append(name)
    if len(set(names)) != len(names):
        raise InvalidFileFormatError("Participant names are not unique within 8 characters")

    lines = [f"  0{n_statements:>{HEADER_WIDTH}} {title}".rstrip()]
    lines.append(
        f"{grid.min_value:>{HEADER_WIDTH}}{grid.max_value:>{HEADER_WIDTH}}"
        + ''.join(f"{c:>{HEADER_WIDTH}}" for c in grid.capacities)
    )
    for name, row in zip(names, X):
        lines.append(f"{name:<{NAME_WIDTH}}" + ''.join(f"{int(v):>{VALUE_WIDTH}}" for v in row))
    return '\n'.join(lines) + '\n'


def _int_field(field: str, line_no: int, what: str) -> int:
    try:
        return int(field)
    except ValueError:
        raise InvalidFileFormatError(f"Line {line_no}: cannot read {what} from '{field}'",
                                     line=line_no) from None


def parse_dat(text: str) -> DatFile:
    """
    Parse .DAT content.

    Raises:
        InvalidFileFormatError: with the offending line number in details
    """
    lines = text.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    if len(lines) < 2:
        raise InvalidFileFormatError("DAT file needs a header and a grid line", line=len(lines) + 1)

    header = lines[0]
    if header[:HEADER_WIDTH].strip() != '0':
        raise InvalidFileFormatError("Line 1: expected '  0' in columns 1-3", line=1)
    n_statements = _int_field(header[HEADER_WIDTH:2 * HEADER_WIDTH], 1, 'statement count')
    if n_statements < 1:
        raise InvalidFileFormatError("Line 1: statement count must be positive", line=1)
    title = header[2 * HEADER_WIDTH + 1:].rstrip()

    grid_line = lines[1].rstrip()
    fields = [grid_line[i:i + HEADER_WIDTH] for i in range(0, len(grid_line), HEADER_WIDTH)]
    if len(fields) < 3:
        raise InvalidFileFormatError("Line 2: expected minimum, maximum and capacities", line=2)
    numbers = [_int_field(f, 2, 'grid value') for f in fields]
    low, high, capacities = numbers[0], numbers[1], numbers[2:]
    if high < low or len(capacities) != high - low + 1:
        raise InvalidFileFormatError(
            f"Line 2: {len(capacities)} capacities for grid range {low}..{high}", line=2
        )
    if sum(capacities) != n_statements:
        raise InvalidFileFormatError(
            f"Line 2: capacities sum to {sum(capacities)}, expected {n_statements}", line=2
        )
    grid = GridDistribution.from_range(low, capacities)

    participants = []
    rows = []
    width = NAME_WIDTH + VALUE_WIDTH * n_statements
    for line_no, line in enumerate(lines[2:], start=3):
        if not line.strip():
            continue
        if len(line.rstrip()) < width:
            raise InvalidFileFormatError(
                f"Line {line_no}: expected {n_statements} sort values", line=line_no
            )
        participants.append(line[:NAME_WIDTH].strip())
        rows.append([
            _int_field(line[NAME_WIDTH + VALUE_WIDTH * k:NAME_WIDTH + VALUE_WIDTH * (k + 1)], line_no, 'sort value')
            for k in range(n_statements)
        ])

    matrix = np.array(rows, dtype=np.int64).reshape(len(rows), n_statements)
    return DatFile(title=title, grid=grid, participants=participants, sort_matrix=matrix)


def write_dat(path: Union[str, Path], sort_matrix: np.ndarray, participants: tuple,
              grid: GridDistribution, title: str = '') -> Path:
    path = Path(path)
    path.write_text(format_dat(sort_matrix, participants, grid, title), encoding='utf-8')
    return path


def read_dat(path: Union[str, Path]) -> DatFile:
    return parse_dat(Path(path).read_text(encoding='utf-8'))


def import_study(dat_path: Union[str, Path], sta_path: Union[str, Path] = None) -> dict:
    """
    Load a PQMethod study.

    Parameters:
        dat_path: Path to the .DAT file
        sta_path: Optional .STA file; without it statements are named "Statement k"

    Returns:
        Dictionary with title, statements, sorts (QSort list) and grid
    """
    dat = read_dat(dat_path)
    if sta_path is not None:
        statements = read_sta(sta_path)
        if len(statements) != dat.n_statements:
            raise InvalidFileFormatError(
                f"STA has {len(statements)} statements but DAT expects {dat.n_statements}",
                line=len(statements),
            )
    else:
        statements = StatementSet.from_texts([f"Statement {k}" for k in range(1, dat.n_statements + 1)])

    sorts = [QSort.from_ranks(p, [int(v) for v in row], statements)
             for p, row in zip(dat.participants, dat.sort_matrix)]
    print(f"Imported {len(sorts)} sorts over {len(statements)} statements from {dat_path}")
    return {'title': dat.title, 'statements': statements, 'sorts': sorts, 'grid': dat.grid}


# =============================================================================
# ANALYSIS REPORT (.LIS)
# =============================================================================
def _section(title: str) -> list[str]:
    return ['', title, '-' * len(title)]


def _factor_header(prefix_width: int, n_factors: int, width: int) -> str:
    return ' ' * prefix_width + ''.join(f"{f'F{k + 1}':>{width}}" for k in range(n_factors))


def format_lis(run, title: str = '') -> str:
    """
    Render an analysis run as a PQMethod-style .LIS report.

    Parameters:
        run: AnalysisRun
        title: Study title for the first line

    Returns:
        Report text
    """
    statements = run.statements
    participants = run.correlation.participants
    solution = run.extraction
    rotated = run.rotation
    arrays = run.factor_arrays
    n_factors = rotated.n_factors

    lines = [f"PQMethod-compatible analysis  {title}".rstrip(),
             f"Extraction: {solution.method.value}   Rotation: {rotated.method.value}   Factors: {n_factors}"]

    lines += _section(LIS_CORRELATIONS)
    lines.append(' ' * 13 + ''.join(f"{k + 1:>4d}" for k in range(len(participants))))
    for i, name in enumerate(participants):
        values = np.rint(run.correlation.values[i] * 100).astype(int)
        lines.append(f"{i + 1:>4d} {str(name)[:NAME_WIDTH]:<8}" + ''.join(f"{v:>4d}" for v in values))

    lines += _section(LIS_UNROTATED)
    lines.append(_factor_header(13, n_factors, 9))
    for i, name in enumerate(participants):
        lines.append(f"{i + 1:>4d} {str(name)[:NAME_WIDTH]:<8}"
                     + ''.join(f"{v:>8.4f} " for v in solution.loadings[i]))

    lines += _section(LIS_EIGENVALUES)
    lines.append(_factor_header(13, n_factors, 9))
    lines.append(f"{'Eigenvalue':<13}" + ''.join(f"{v:>8.4f} " for v in solution.factor_eigenvalues))
    lines.append(f"{'% expl.Var.':<13}" + ''.join(f"{v:>8.4f} " for v in rotated.explained_variance))

    defining = [set(a.defining_sorts) for a in arrays]
    lines += _section(LIS_LOADINGS)
    lines.append(_factor_header(13, n_factors, 9))
    for i, name in enumerate(participants):
        cells = ''.join(
            f"{rotated.loadings[i, f]:>8.4f}{'X' if i in defining[f] else ' '}" for f in range(n_factors)
        )
        lines.append(f"{i + 1:>4d} {str(name)[:NAME_WIDTH]:<8}" + cells)

    lines += _section(LIS_ZSCORES)
    lines.append(_factor_header(5, n_factors, 7))
    for s, stmt in enumerate(statements):
        lines.append(f"{s + 1:>4d} " + ''.join(f"{a.z_scores[s]:>7.3f}" for a in arrays) + f"  {stmt.text[:50]}")

    lines += _section(LIS_QSORT_VALUES)
    lines.append(_factor_header(56, n_factors, 4))
    for s, stmt in enumerate(statements):
        lines.append(f"{s + 1:>4d} {stmt.text[:50]:<50} " + ''.join(f"{int(a.ranks[s]):>4d}" for a in arrays))

    for label, df in distinguishing_statements(run.significance, arrays).items():
        lines += _section(f"{LIS_DISTINGUISHING} {label}")
        for _, row in df.iterrows():
            idx = int(row['statement_index'])
            cells = ''.join(f"{int(a.ranks[idx]):>4d}{a.z_scores[idx]:>7.2f}" for a in arrays)
            lines.append(f"{idx + 1:>4d} {statements[idx].text[:50]:<50} {cells} {row['marker']}")

    lines += _section(LIS_CONSENSUS)
    consensus_ids = set(run.significance.consensus_statements)
    for s, stmt in enumerate(statements):
        if stmt.id in consensus_ids:
            cells = ''.join(f"{int(a.ranks[s]):>4d}{a.z_scores[s]:>7.2f}" for a in arrays)
            lines.append(f"{s + 1:>4d} {stmt.text[:50]:<50} {cells}")

    return '\n'.join(lines) + '\n'


def write_lis(path: Union[str, Path], run, title: str = '') -> Path:
    path = Path(path)
    path.write_text(format_lis(run, title), encoding='utf-8')
    return path


_NUMBER = re.compile(r'-?\d+\.\d+')


def _section_lines(lines: list[str], title: str) -> list[tuple[int, str]]:
    """Numbered body lines of a section: after its underline, up to the next blank line."""
    for i, line in enumerate(lines):
        if line.strip() == title:
            body = []
            for j in range(i + 2, len(lines)):
                if not lines[j].strip():
                    break
                body.append((j + 1, lines[j]))
            return body
    raise InvalidFileFormatError(f"Section '{title}' not found", section=title)


def parse_lis(text: str) -> ReferenceOutput:
    """
    Read eigenvalues, rotated loadings and z-scores back from a .LIS report.

    Raises:
        InvalidFileFormatError: a section is missing or a row is malformed
    """
    lines = text.splitlines()

    participants = []
    loadings = []
    for line_no, line in _section_lines(lines, LIS_LOADINGS)[1:]:
        values = _NUMBER.findall(line[13:])
        if not values:
            raise InvalidFileFormatError(f"Line {line_no}: no loadings found", line=line_no)
        participants.append(line[5:13].strip())
        loadings.append([float(v) for v in values])
    if len({len(row) for row in loadings}) != 1:
        raise InvalidFileFormatError("Loading rows have different factor counts", section=LIS_LOADINGS)
    n_factors = len(loadings[0])

    eigenvalues = None
    for line_no, line in _section_lines(lines, LIS_EIGENVALUES):
        if line.startswith('Eigenvalue'):
            eigenvalues = [float(v) for v in _NUMBER.findall(line[13:])]
    if eigenvalues is None or len(eigenvalues) != n_factors:
        raise InvalidFileFormatError("Eigenvalue row missing or incomplete", section=LIS_EIGENVALUES)

    zscores = []
    for line_no, line in _section_lines(lines, LIS_ZSCORES)[1:]:
        try:
            zscores.append([float(line[5 + 7 * k:5 + 7 * (k + 1)]) for k in range(n_factors)])
        except ValueError:
            raise InvalidFileFormatError(f"Line {line_no}: cannot read z-scores", line=line_no) from None

    return ReferenceOutput(
        eigenvalues=np.array(eigenvalues),
        loadings=np.array(loadings),
        zscores=np.array(zscores),
        participants=participants,
    )


def read_lis(path: Union[str, Path]) -> ReferenceOutput:
    return parse_lis(Path(path).read_text(encoding='utf-8'))


# =============================================================================
# COMPLIANCE
# =============================================================================
def reference_from_run(run) -> ReferenceOutput:
    """Our own results in ReferenceOutput form."""
    return ReferenceOutput(
        eigenvalues=run.extraction.factor_eigenvalues,
        loadings=run.rotation.loadings,
        zscores=np.column_stack([a.z_scores for a in run.factor_arrays]),
        participants=run.rotation.participants,
    )


def validate_against_reference(
    own,
    reference: ReferenceOutput,
    tolerances: Optional[dict] = None,
    raise_on_failure: bool = False,
) -> ComplianceReport:
    """
    Compare our results with a PQMethod reference.

    Factor signs are aligned first: a factor whose loadings point the
    opposite way from the reference is flipped (loadings and z-scores).

    Parameters:
        own: AnalysisRun or ReferenceOutput
        reference: Parsed PQMethod output
        tolerances: Overrides for config.COMPLIANCE_TOLERANCES
        raise_on_failure: Raise ReferenceMismatchError instead of returning a failing report

    Returns:
        ComplianceReport
    """
    if not isinstance(own, ReferenceOutput):
        own = reference_from_run(own)
    limits = dict(config.COMPLIANCE_TOLERANCES)
    if tolerances:
        limits.update(tolerances)

    shapes_match = (
        own.loadings.shape == reference.loadings.shape
        and own.zscores.shape == reference.zscores.shape
        and own.eigenvalues.shape == reference.eigenvalues.shape
    )
    if not shapes_match:
        report = ComplianceReport(
            loading_correlation=np.nan, eigenvalue_delta=np.nan, loading_delta=np.nan,
            zscore_delta=np.nan, tolerances=limits,
            checks={name: False for name in ('loading_correlation', 'eigenvalue_delta',
                                             'loading_delta', 'zscore_delta')},
        )
    else:
        signs = np.where(np.sum(own.loadings * reference.loadings, axis=0) < 0, -1.0, 1.0)
        loadings = own.loadings * signs
        zscores = own.zscores * signs

        a, b = loadings.ravel(), reference.loadings.ravel()
        if np.std(a) == 0 or np.std(b) == 0:
            loading_correlation = np.nan
        else:
            loading_correlation = float(np.corrcoef(a, b)[0, 1])
        eigenvalue_delta = float(np.max(np.abs(own.eigenvalues - reference.eigenvalues)))
        loading_delta = float(np.max(np.abs(loadings - reference.loadings)))
        zscore_delta = float(np.max(np.abs(zscores - reference.zscores)))

        report = ComplianceReport(
            loading_correlation=loading_correlation,
            eigenvalue_delta=eigenvalue_delta,
            loading_delta=loading_delta,
            zscore_delta=zscore_delta,
            tolerances=limits,
            checks={
                'loading_correlation': bool(loading_correlation >= limits['loading_correlation'] - COMPARISON_SLACK),
                'eigenvalue_delta': eigenvalue_delta <= limits['eigenvalue_delta'] + COMPARISON_SLACK,
                'loading_delta': loading_delta <= limits['loading_delta'] + COMPARISON_SLACK,
                'zscore_delta': zscore_delta <= limits['zscore_delta'] + COMPARISON_SLACK,
            },
            flipped_factors=tuple(int(f) for f in np.flatnonzero(signs < 0)),
        )

    if raise_on_failure and not report.passed:
        raise ReferenceMismatchError(
            f"Results differ from the reference: {', '.join(report.failures)}",
            report=report, failures=report.failures,
        )
    return report


def print_compliance_report(report: ComplianceReport) -> None:
    print("\n" + "=" * 60)
    print("PQMETHOD COMPLIANCE")
    print("=" * 60)
    print(report.to_frame().to_string(index=False))
    if report.flipped_factors:
        labels = factor_labels(max(report.flipped_factors) + 1)
        print(f"\nSign-aligned factors: {', '.join(labels[f] for f in report.flipped_factors)}")
    print(f"\nOverall: {'PASS' if report.passed else 'FAIL'}")
