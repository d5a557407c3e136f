"""
Error Taxonomy
==============

Typed failures raised by the analysis stages. Every error carries a
``details`` dict with the diagnostic payload (offending participants,
iteration counts, residuals, line numbers) so callers can build their
own messages without parsing exception text.
"""


class QMethodError(Exception):
    """Base class for all analysis engine errors."""

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message, 'details': self.details}


class InvalidConfigurationError(QMethodError, ValueError):
    """A stage configuration value is out of range or unknown."""


class IncompleteSortError(QMethodError):
    """One or more participants have missing or unknown placements."""


class DistributionMismatchError(QMethodError):
    """A sort's value multiset does not fit the configured grid."""


class SingularMatrixError(QMethodError):
    """The correlation or fitting matrix is singular or not positive semi-definite."""


class NonConvergenceError(QMethodError):
    """An iterative stage exceeded its iteration cap."""

    def __init__(self, message: str, stage: str, iterations: int, residual: float, **details):
        super().__init__(message, stage=stage, iterations=iterations, residual=residual, **details)
        self.stage = stage
        self.iterations = iterations
        self.residual = residual


class InsufficientFactorCountError(QMethodError):
    """Requested factor count is < 1 or not smaller than the number of respondents."""


class NoDefiningSortsError(InsufficientFactorCountError):
    """A factor has no defining sorts, so no factor array can be built."""


class InvalidFileFormatError(QMethodError):
    """A PQMethod file could not be parsed."""


class ReferenceMismatchError(QMethodError):
    """Compliance validation against a reference output fell below tolerance."""

    def __init__(self, message: str, report=None, **details):
        super().__init__(message, **details)
        self.report = report


class BootstrapFailureError(QMethodError):
    """Too many bootstrap resamples failed for the result to be trusted."""


class AnalysisCancelledError(QMethodError):
    """A long-running stage was cancelled by its caller."""
