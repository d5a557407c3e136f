"""
Factor Rotation Module
======================

Orthogonal rotations of the orthomax family (varimax, quartimax, equamax)
by pairwise Jacobi sweeps, Promax and direct oblimin oblique rotations,
and interactive two-factor manual rotation with undo/redo.

Every rotation is reported as a K x K matrix T with rotated = unrotated @ T.
"""

import logging
import math
import threading
from typing import Optional, Union

import numpy as np
import pandas as pd
from factor_analyzer.rotator import Rotator

from . import config
from .errors import InvalidConfigurationError, NonConvergenceError, SingularMatrixError
from .extraction import canonicalize_signs
from .models import (
    CancellationToken,
    FactorSolution,
    ManualRotationStep,
    RotatedSolution,
    RotationConfig,
    RotationMethod,
    RotationState,
    check_cancelled,
    factor_labels,
)

logger = logging.getLogger(__name__)

# Pair angles below this are treated as no rotation
_MIN_ANGLE = 1e-12


# =============================================================================
# ORTHOMAX FAMILY
# =============================================================================
def orthomax_gamma(method: RotationMethod, n_factors: int) -> float:
    """Orthomax weight: varimax 1, quartimax 0, equamax K/2."""
    method = RotationMethod(method)
    if method is RotationMethod.VARIMAX:
        return 1.0
    if method is RotationMethod.QUARTIMAX:
        return 0.0
    if method is RotationMethod.EQUAMAX:
        return n_factors / 2.0
    raise InvalidConfigurationError(f"{method.value} is not an orthomax rotation", field='method')


def orthomax_criterion(loadings: np.ndarray, gamma: float) -> float:
    """Orthomax criterion sum_j [sum_i l^4 - (gamma / n) (sum_i l^2)^2]."""
    sq = loadings ** 2
    n = loadings.shape[0]
    return float(np.sum(np.sum(sq ** 2, axis=0) - (gamma / n) * np.sum(sq, axis=0) ** 2))


def _kaiser_normalize(loadings: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    h = np.sqrt((loadings ** 2).sum(axis=1))
    h = np.where(h == 0, 1.0, h)
    return loadings / h[:, None], h


def pair_angle(x: np.ndarray, y: np.ndarray, gamma: float) -> float:
    """
    Angle (radians) that maximises the orthomax criterion for one factor pair.

    Parameters:
        x: Loadings on the first factor
        y: Loadings on the second factor
        gamma: Orthomax weight

    Returns:
        Rotation angle phi for new_x = cos(phi) x + sin(phi) y
    """
    n = len(x)
    u = x ** 2 - y ** 2
    v = 2 * x * y
    A = u.sum()
    B = v.sum()
    C = np.sum(u ** 2 - v ** 2)
    D = np.sum(2 * u * v)
    num = D - 2 * gamma * A * B / n
    den = C - gamma * (A ** 2 - B ** 2) / n
    return math.atan2(num, den) / 4


def _givens(loadings: np.ndarray, i: int, j: int, phi: float) -> None:
    """Rotate columns i and j in place by phi."""
    c, s = math.cos(phi), math.sin(phi)
    col_i = loadings[:, i].copy()
    col_j = loadings[:, j]
    loadings[:, i] = c * col_i + s * col_j
    loadings[:, j] = -s * col_i + c * col_j


def orthomax(
    loadings: np.ndarray,
    gamma: float,
    normalize: bool = True,
    tolerance: float = None,
    max_sweeps: int = None,
    cancel_token: CancellationToken = None,
) -> tuple[np.ndarray, np.ndarray, int, float]:
    """
    Orthomax rotation by pairwise Jacobi sweeps.

    Parameters:
        loadings: M x K unrotated loadings
        gamma: Orthomax weight (see orthomax_gamma)
        normalize: Kaiser row normalisation during rotation
        tolerance: Criterion change that counts as converged. Defaults to config.ROTATION_TOLERANCE
        max_sweeps: Sweep cap. Defaults to config.ROTATION_MAX_SWEEPS
        cancel_token: Checked between sweeps

    Returns:
        Tuple of (rotated loadings, rotation matrix, sweeps, final criterion)
    """
    if tolerance is None:
        tolerance = config.ROTATION_TOLERANCE
    if max_sweeps is None:
        max_sweeps = config.ROTATION_MAX_SWEEPS

    L = np.array(loadings, dtype=float)
    n_factors = L.shape[1]
    if normalize:
        L, h = _kaiser_normalize(L)

    T = np.eye(n_factors)
    criterion = orthomax_criterion(L, gamma)
    change = np.inf
    for sweep in range(1, max_sweeps + 1):
        check_cancelled(cancel_token, 'rotation')
        for i in range(n_factors - 1):
            for j in range(i + 1, n_factors):
                phi = pair_angle(L[:, i], L[:, j], gamma)
                if abs(phi) < _MIN_ANGLE:
                    continue
                _givens(L, i, j, phi)
                _givens(T, i, j, phi)
        new_criterion = orthomax_criterion(L, gamma)
        change = abs(new_criterion - criterion)
        criterion = new_criterion
        if change < tolerance:
            break
    else:
        raise NonConvergenceError(
            f"Orthomax rotation did not converge in {max_sweeps} sweeps (last change {change:.2e})",
            stage='rotation', iterations=max_sweeps, residual=float(change),
        )

    rotated = np.asarray(loadings, dtype=float) @ T
    return rotated, T, sweep, criterion


# =============================================================================
# OBLIQUE ROTATIONS
# =============================================================================
def promax(
    loadings: np.ndarray,
    kappa: float = None,
    normalize: bool = True,
    tolerance: float = None,
    max_sweeps: int = None,
    cancel_token: CancellationToken = None,
) -> dict:
    """
    Promax rotation (same contract as R's stats::promax).

    Varimax first, then a least-squares fit towards the target
    loadings * |loadings|^(kappa - 1), rescaled so the factor correlation
    matrix has a unit diagonal.

    Parameters:
        loadings: M x K unrotated loadings
        kappa: Target power, must exceed 1. Defaults to config.PROMAX_KAPPA

    Returns:
        Dictionary with pattern, structure, rotation matrix, factor
        correlations and varimax sweeps
    """
    if kappa is None:
        kappa = config.PROMAX_KAPPA
    if kappa <= 1:
        raise InvalidConfigurationError("Promax kappa must be greater than 1", field='kappa')

    x, T_varimax, sweeps, _ = orthomax(loadings, 1.0, normalize, tolerance, max_sweeps, cancel_token)
    target = x * np.abs(x) ** (kappa - 1)

    norms = np.linalg.norm(target, axis=0)
    if np.any(norms < config.PROMAX_MIN_TARGET_NORM):
        bad = [int(i) + 1 for i in np.flatnonzero(norms < config.PROMAX_MIN_TARGET_NORM)]
        raise SingularMatrixError(f"Promax target degenerates to zero for factor(s) {bad}", factors=bad)

    normal = x.T @ x
    if np.linalg.cond(normal) > 1 / config.PROMAX_RCOND:
        logger.warning("Promax normal matrix is near-singular; using pseudo-inverse fit")
        U = np.linalg.pinv(x, rcond=config.PROMAX_RCOND) @ target
    else:
        U = np.linalg.solve(normal, x.T @ target)

    try:
        d = np.diag(np.linalg.inv(U.T @ U))
    except np.linalg.LinAlgError as exc:
        raise SingularMatrixError("Promax transformation is singular", stage='promax') from exc
    if np.any(d <= 0):
        raise SingularMatrixError("Promax column rescaling is not positive", stage='promax')
    U = U @ np.diag(np.sqrt(d))

    pattern = x @ U
    T = T_varimax @ U
    try:
        T_inv = np.linalg.inv(T)
    except np.linalg.LinAlgError as exc:
        raise SingularMatrixError("Promax rotation matrix is singular", stage='promax') from exc
    phi = T_inv @ T_inv.T

    return {
        'pattern': pattern,
        'structure': pattern @ phi,
        'rotation_matrix': T,
        'phi': phi,
        'sweeps': sweeps,
    }


def oblimin(
    loadings: np.ndarray,
    gamma: float = None,
    normalize: bool = True,
    max_iter: int = None,
    tolerance: float = None,
) -> dict:
    """
    Direct oblimin by gradient projection (factor_analyzer's Rotator).

    Parameters:
        loadings: M x K unrotated loadings
        gamma: Obliqueness weight in [-1, 1]; 0 is direct quartimin. Defaults to config.OBLIMIN_GAMMA

    Returns:
        Dictionary with pattern, structure, rotation matrix and factor correlations
    """
    if gamma is None:
        gamma = config.OBLIMIN_GAMMA
    if max_iter is None:
        max_iter = config.OBLIMIN_MAX_ITER
    if tolerance is None:
        tolerance = config.ROTATION_TOLERANCE

    L = np.asarray(loadings, dtype=float)
    rotator = Rotator(method='oblimin', normalize=normalize, gamma=gamma, max_iter=max_iter, tol=tolerance)
    pattern = rotator.fit_transform(L)
    if not np.all(np.isfinite(pattern)):
        raise SingularMatrixError("Oblimin rotation produced non-finite loadings", stage='oblimin')

    # Recover T with pattern = L @ T; exact because L has full column rank
    T = np.linalg.lstsq(L, pattern, rcond=None)[0]
    try:
        phi = np.linalg.inv(T.T @ T)
    except np.linalg.LinAlgError as exc:
        raise SingularMatrixError("Oblimin rotation matrix is singular", stage='oblimin') from exc

    return {
        'pattern': pattern,
        'structure': pattern @ phi,
        'rotation_matrix': T,
        'phi': phi,
    }


# =============================================================================
# DISPATCH
# =============================================================================
def _canonicalize(loadings, rotation_matrix, phi=None, structure=None):
    """Flip factors with a negative peak loading, keeping T and phi consistent."""
    loadings, signs = canonicalize_signs(loadings)
    rotation_matrix = rotation_matrix * signs
    if phi is not None:
        phi = phi * np.outer(signs, signs)
    if structure is not None:
        structure = structure * signs
    return loadings, rotation_matrix, phi, structure


def rotate(
    solution: FactorSolution,
    rotation_config: RotationConfig = None,
    cancel_token: CancellationToken = None,
) -> RotatedSolution:
    """
    Rotate an unrotated factor solution.

    Parameters:
        solution: Extracted factors
        rotation_config: Method and convergence settings. Defaults to varimax
        cancel_token: Checked between sweeps

    Returns:
        RotatedSolution in the converged state ('none' stays unrotated)
    """
    if rotation_config is None:
        rotation_config = RotationConfig()
    method = rotation_config.method
    L = np.asarray(solution.loadings, dtype=float)
    n_factors = L.shape[1]

    if method is RotationMethod.MANUAL:
        raise InvalidConfigurationError(
            "Manual rotation runs through ManualRotationSession", field='method'
        )

    if method is RotationMethod.NONE:
        return RotatedSolution(
            method=method,
            state=RotationState.UNROTATED,
            loadings=L,
            rotation_matrix=np.eye(n_factors),
            participants=solution.participants,
        )

    phi = structure = None
    criterion = None
    iterations = 0
    if method in (RotationMethod.VARIMAX, RotationMethod.QUARTIMAX, RotationMethod.EQUAMAX):
        gamma = orthomax_gamma(method, n_factors)
        rotated, T, iterations, criterion = orthomax(
            L, gamma, rotation_config.normalize, rotation_config.tolerance,
            rotation_config.max_sweeps, cancel_token,
        )
    elif method is RotationMethod.PROMAX:
        result = promax(
            L, rotation_config.kappa, rotation_config.normalize, rotation_config.tolerance,
            rotation_config.max_sweeps, cancel_token,
        )
        rotated, T, phi, structure = result['pattern'], result['rotation_matrix'], result['phi'], result['structure']
        iterations = result['sweeps']
    else:
        check_cancelled(cancel_token, 'rotation')
        result = oblimin(
            L, rotation_config.gamma, rotation_config.normalize,
            rotation_config.oblimin_max_iter, rotation_config.tolerance,
        )
        rotated, T, phi, structure = result['pattern'], result['rotation_matrix'], result['phi'], result['structure']

    rotated, T, phi, structure = _canonicalize(rotated, T, phi, structure)
    return RotatedSolution(
        method=method,
        state=RotationState.CONVERGED,
        loadings=rotated,
        rotation_matrix=T,
        participants=solution.participants,
        iterations=iterations,
        criterion=criterion,
        factor_correlations=phi,
        structure=structure,
    )


# =============================================================================
# MANUAL ROTATION
# =============================================================================
class ManualRotationSession:
    """
    Interactive two-factor rotation with undo and redo.

    Each accepted rotation appends a RotatedSolution node; the cursor marks
    the current node. Rotating after an undo discards the redo branch.
    All operations are serialised by a per-session lock.
    """

    def __init__(self, start: Union[FactorSolution, RotatedSolution]):
        if isinstance(start, RotatedSolution) and start.is_oblique:
            raise InvalidConfigurationError("Manual rotation needs an orthogonal starting solution")
        loadings = np.asarray(start.loadings, dtype=float)
        if isinstance(start, RotatedSolution):
            T = np.asarray(start.rotation_matrix, dtype=float)
        else:
            T = np.eye(loadings.shape[1])
        root = RotatedSolution(
            method=RotationMethod.MANUAL,
            state=RotationState.MANUAL_SESSION,
            loadings=loadings,
            rotation_matrix=T,
            participants=start.participants,
        )
        self._nodes = [root]
        self._cursor = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> RotatedSolution:
        with self._lock:
            return self._nodes[self._cursor]

    @property
    def history(self) -> tuple:
        return self.current.history

    @property
    def can_undo(self) -> bool:
        with self._lock:
            return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        with self._lock:
            return self._cursor < len(self._nodes) - 1

    def rotate(self, factor_a: int, factor_b: int, angle_degrees: float) -> RotatedSolution:
        """
        Rotate factor_a towards factor_b by angle_degrees.

        Only the two affected loading columns are recomputed.

        Parameters:
            factor_a: Zero-based index of the first factor
            factor_b: Zero-based index of the second factor
            angle_degrees: Counter-clockwise angle in degrees

        Returns:
            The new current solution
        """
        with self._lock:
            node = self._nodes[self._cursor]
            n_factors = node.n_factors
            if factor_a == factor_b or not (0 <= factor_a < n_factors and 0 <= factor_b < n_factors):
                raise InvalidConfigurationError(
                    f"Invalid factor pair ({factor_a}, {factor_b}) for {n_factors} factors",
                    factor_a=factor_a, factor_b=factor_b,
                )
            if not math.isfinite(angle_degrees):
                raise InvalidConfigurationError("Rotation angle must be finite", angle=angle_degrees)

            phi = math.radians(angle_degrees)
            loadings = np.array(node.loadings)
            T = np.array(node.rotation_matrix)
            _givens(loadings, factor_a, factor_b, phi)
            _givens(T, factor_a, factor_b, phi)

            step = ManualRotationStep(factor_a, factor_b, float(angle_degrees))
            new_node = RotatedSolution(
                method=RotationMethod.MANUAL,
                state=RotationState.MANUAL_SESSION,
                loadings=loadings,
                rotation_matrix=T,
                participants=node.participants,
                history=node.history + (step,),
            )
            del self._nodes[self._cursor + 1:]
            self._nodes.append(new_node)
            self._cursor += 1
            return new_node

    def undo(self) -> RotatedSolution:
        """Step back one rotation; a no-op at the start of the session."""
        with self._lock:
            if self._cursor > 0:
                self._cursor -= 1
            return self._nodes[self._cursor]

    def redo(self) -> RotatedSolution:
        """Step forward one rotation; a no-op at the end of the branch."""
        with self._lock:
            if self._cursor < len(self._nodes) - 1:
                self._cursor += 1
            return self._nodes[self._cursor]

    def save(self) -> RotatedSolution:
        """Return the current node, sign-canonicalised, in the converged state."""
        with self._lock:
            node = self._nodes[self._cursor]
            loadings, T, _, _ = _canonicalize(node.loadings, node.rotation_matrix)
            return RotatedSolution(
                method=RotationMethod.MANUAL,
                state=RotationState.CONVERGED,
                loadings=loadings,
                rotation_matrix=T,
                participants=node.participants,
                history=node.history,
            )


# =============================================================================
# ROTATION QUALITY
# =============================================================================
def rotation_quality(
    loadings: np.ndarray,
    salient: float = None,
    hyperplane: float = None,
) -> dict:
    """
    Simple-structure summary of a loading matrix.

    Parameters:
        loadings: M x K loadings
        salient: Loading magnitude counted as salient. Defaults to config.SALIENT_LOADING
        hyperplane: Magnitude below which a loading lies in the hyperplane. Defaults to config.HYPERPLANE_LOADING

    Returns:
        Dictionary with simplicity index, hyperplane count, cross loadings
        and mean complexity
    """
    if salient is None:
        salient = config.SALIENT_LOADING
    if hyperplane is None:
        hyperplane = config.HYPERPLANE_LOADING

    L = np.abs(np.asarray(loadings, dtype=float))
    n_salient = (L > salient).sum(axis=1)
    cross = int(np.sum(n_salient > 1))
    return {
        'simplicity_index': 1 - cross / L.shape[0],
        'hyperplane_count': int(np.sum(np.all(L < hyperplane, axis=1))),
        'cross_loadings': cross,
        'complexity_index': float(n_salient.mean()),
        'hyperplane_loadings': int(np.sum(L < hyperplane)),
    }


def suggest_rotations(
    loadings: np.ndarray,
    low: float = 0.3,
    high: float = 0.7,
    max_suggestions: int = 3,
) -> pd.DataFrame:
    """
    Suggest manual rotations for factor pairs whose loading columns correlate moderately.

    Parameters:
        loadings: M x K loadings
        low: Lower bound on |r|
        high: Upper bound on |r|
        max_suggestions: Keep at most this many, strongest first

    Returns:
        DataFrame with factor_a, factor_b, correlation, angle_degrees and reason
    """
    L = np.asarray(loadings, dtype=float)
    rows = []
    for i in range(L.shape[1] - 1):
        for j in range(i + 1, L.shape[1]):
            if np.std(L[:, i]) == 0 or np.std(L[:, j]) == 0:
                continue
            r = float(np.corrcoef(L[:, i], L[:, j])[0, 1])
            if low < abs(r) < high:
                rows.append({
                    'factor_a': i,
                    'factor_b': j,
                    'correlation': r,
                    'angle_degrees': math.degrees(math.atan(r)),
                    'reason': f"Factors {i + 1} and {j + 1} show moderate correlation (r={r:.2f})",
                })
    df = pd.DataFrame(rows, columns=['factor_a', 'factor_b', 'correlation', 'angle_degrees', 'reason'])
    if df.empty:
        return df
    order = df['correlation'].abs().sort_values(ascending=False).index
    return df.loc[order].head(max_suggestions).reset_index(drop=True)


def print_rotation_summary(rotated: RotatedSolution) -> None:
    """Print rotated loadings, factor correlations and the quality summary."""
    print("\n" + "=" * 60)
    print(f"ROTATION ({rotated.method.value}, {rotated.n_factors} factors)")
    print("=" * 60)

    if rotated.iterations:
        print(f"\nSweeps: {rotated.iterations}")
    if rotated.criterion is not None:
        print(f"Criterion: {rotated.criterion:.6f}")
    if rotated.history:
        print(f"Manual steps: {len(rotated.history)}")

    print("\nRotated Loadings:")
    print("-" * 50)
    print(rotated.to_frame().round(3).to_string())

    if rotated.is_oblique:
        labels = factor_labels(rotated.n_factors)
        print("\nFactor Correlations:")
        print("-" * 50)
        print(pd.DataFrame(rotated.factor_correlations, index=labels, columns=labels).round(3).to_string())

    quality = rotation_quality(rotated.loadings)
    print(f"\nSimplicity index: {quality['simplicity_index']:.2f}")
    print(f"Cross loadings:   {quality['cross_loadings']}")
    print(f"Hyperplane rows:  {quality['hyperplane_count']}")
