"""Small dense linear algebra helpers for the 13-state filter."""

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from .errors import SingularInnovation


MIN_VARIANCE = 1e-8
REGULARIZATION = 1e-6


def symmetrize(P: NDArray[np.float64]) -> NDArray[np.float64]:
    """Return 0.5 * (P + P.T)."""
    return 0.5 * (P + P.T)


def floor_diagonal(P: NDArray[np.float64], floor: float = MIN_VARIANCE) -> NDArray[np.float64]:
    """Raise diagonal entries below floor up to floor, in place."""
    idx = np.diag_indices_from(P)
    P[idx] = np.maximum(P[idx], floor)
    return P


def condition_covariance(P: NDArray[np.float64]) -> NDArray[np.float64]:
    """Symmetrize and floor the diagonal of a covariance matrix."""
    return floor_diagonal(symmetrize(P))


def spd_inverse(
    S: NDArray[np.float64],
    regularization: float = REGULARIZATION
) -> NDArray[np.float64]:
    """Invert a symmetric positive definite matrix.

    Cholesky first. If S is singular, retry once on S + regularization * I,
    then fall back to a symmetric eigendecomposition of the regularized
    matrix.

    Args:
        S: Square symmetric matrix.
        regularization: Diagonal load used for the retry.

    Returns:
        Inverse of S (or of its regularized form).

    Raises:
        SingularInnovation: If no positive definite inverse exists.
    """
    if S.ndim != 2 or S.shape[0] != S.shape[1]:
        raise SingularInnovation(f"Innovation covariance is not square: {S.shape}")
    if not np.all(np.isfinite(S)):
        raise SingularInnovation("Innovation covariance contains non-finite values")

    S = symmetrize(S)
    identity = np.eye(S.shape[0])

    try:
        return cho_solve(cho_factor(S), identity)
    except LinAlgError:
        pass

    S_reg = S + regularization * identity
    try:
        return cho_solve(cho_factor(S_reg), identity)
    except LinAlgError:
        pass

    eigvals, eigvecs = np.linalg.eigh(S_reg)
    if eigvals.min() <= regularization * 1e-3:
        raise SingularInnovation(
            f"Innovation covariance singular after regularization "
            f"(min eigenvalue {eigvals.min():.3e})"
        )
    return eigvecs @ np.diag(1.0 / eigvals) @ eigvecs.T


def is_finite(*arrays: NDArray[np.float64]) -> bool:
    """True if every entry of every array is finite."""
    return all(bool(np.all(np.isfinite(a))) for a in arrays)
