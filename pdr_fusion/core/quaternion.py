"""Quaternion operations and utilities."""

import numpy as np
from numpy.typing import NDArray
from ahrs.common.orientation import q2euler, q2R, q_conj, q_prod

from .types import Quaternion


IDENTITY = np.array([1.0, 0.0, 0.0, 0.0])


class QuaternionOps:
    """Static methods for quaternion operations on [w, x, y, z] arrays."""

    @staticmethod
    def multiply(p: NDArray[np.float64], q: NDArray[np.float64]) -> NDArray[np.float64]:
        """Hamilton product p ⊗ q."""
        return np.asarray(q_prod(p, q), dtype=np.float64)

    @staticmethod
    def conjugate(q: NDArray[np.float64]) -> NDArray[np.float64]:
        """Conjugate (inverse of a unit quaternion)."""
        return np.asarray(q_conj(q), dtype=np.float64)

    @staticmethod
    def normalize(q: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return q scaled to unit norm, identity for a degenerate input."""
        n = float(np.linalg.norm(q))
        if n < 1e-10 or not np.isfinite(n):
            return IDENTITY.copy()
        return q / n

    @staticmethod
    def rotation_matrix(q: NDArray[np.float64]) -> NDArray[np.float64]:
        """Rotation matrix of a device to world quaternion."""
        return np.asarray(q2R(q), dtype=np.float64)

    @staticmethod
    def rotate(q: NDArray[np.float64], v: NDArray[np.float64]) -> NDArray[np.float64]:
        """Rotate vector v from device to world frame: q ⊗ v ⊗ q*."""
        v_quat = np.array([0.0, v[0], v[1], v[2]])
        rotated = QuaternionOps.multiply(QuaternionOps.multiply(q, v_quat), QuaternionOps.conjugate(q))
        return rotated[1:4]

    @staticmethod
    def to_euler(q: NDArray[np.float64]) -> NDArray[np.float64]:
        """Convert quaternion to [roll, pitch, yaw] in radians (ZYX)."""
        return np.asarray(q2euler(QuaternionOps.normalize(q)), dtype=np.float64)

    @staticmethod
    def to_dataclass(q: NDArray[np.float64]) -> Quaternion:
        """Wrap a quaternion array for reporting."""
        return Quaternion.from_array(q)
