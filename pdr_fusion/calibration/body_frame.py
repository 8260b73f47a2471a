"""Body-to-device frame calibration.

A short static window of accelerometer samples gives the mean measured
gravity; the body-to-device rotation R_bd is the rotation that takes it onto
world -z. The solve is a pure function; BodyFrameCalibrator only gathers and
filters samples under a hard time budget.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from numpy.typing import NDArray
from scipy.spatial.transform import Rotation

from ..core.config import CalibrationConfig
from ..core.errors import CalibrationTimeout
from ..core.types import NS_PER_S

logger = logging.getLogger(__name__)

WORLD_DOWN = np.array([0.0, 0.0, -1.0])


@dataclass
class CalibrationResult:
    """Result of a body-frame calibration."""
    rotation: NDArray[np.float64]       # R_bd, 3x3
    mean_gravity: NDArray[np.float64]   # mean accelerometer vector (m/s^2)
    num_samples: int
    duration_s: float

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "rotation": self.rotation.tolist(),
            "mean_gravity": self.mean_gravity.tolist(),
            "num_samples": self.num_samples,
            "duration_s": self.duration_s,
        }


def solve_body_rotation(acc_samples: NDArray[np.float64]) -> NDArray[np.float64]:
    """Rotation taking the mean measured gravity direction onto world -z.

    Args:
        acc_samples: Accelerometer samples, shape (n, 3), in m/s^2.

    Returns:
        3x3 rotation matrix R_bd. Identity if gravity is already aligned.

    Raises:
        ValueError: If there are no samples or the mean vector is zero.
    """
    samples = np.atleast_2d(np.asarray(acc_samples, dtype=np.float64))
    if samples.shape[0] == 0 or samples.shape[1] != 3:
        raise ValueError(f"Expected (n, 3) samples, got {samples.shape}")

    mean = np.mean(samples, axis=0)
    norm = float(np.linalg.norm(mean))
    if norm < 1e-9:
        raise ValueError("Mean acceleration is zero; gravity direction undefined")

    g_unit = mean / norm
    alignment = float(g_unit @ WORLD_DOWN)

    if alignment >= 1.0 - 1e-12:
        return np.eye(3)
    if alignment <= -1.0 + 1e-12:
        # Upside down: half turn about x
        return np.diag([1.0, -1.0, -1.0])

    rotation, _ = Rotation.align_vectors(WORLD_DOWN[np.newaxis, :], g_unit[np.newaxis, :])
    return rotation.as_matrix()


class BodyFrameCalibrator:
    """Collects static samples for one calibration session.

    Samples are kept only while the accelerometer magnitude is within
    gravity_threshold of gravity and the gyro magnitude is below
    gyro_threshold. A session that has not reached samples_required within
    duration_s + 1 s raises CalibrationTimeout.
    """

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self._cfg = config if config is not None else CalibrationConfig()
        self._samples: List[NDArray[np.float64]] = []
        self._start_ns: Optional[int] = None
        self.rejected = 0

    @property
    def is_active(self) -> bool:
        return self._start_ns is not None

    @property
    def budget_ns(self) -> int:
        return int((self._cfg.duration_s + 1.0) * NS_PER_S)

    def start(self, t_ns: int) -> None:
        """Begin a new session, discarding any previous samples."""
        self._samples = []
        self._start_ns = t_ns
        self.rejected = 0
        logger.info("Body-frame calibration started")

    def cancel(self) -> None:
        """Abandon the current session."""
        self._samples = []
        self._start_ns = None

    def add_sample(
        self,
        acc: NDArray[np.float64],
        gyro: NDArray[np.float64],
        t_ns: int
    ) -> Optional[CalibrationResult]:
        """Offer one sample to the active session.

        Returns:
            CalibrationResult once enough samples are collected, else None.

        Raises:
            CalibrationTimeout: If the time budget is exhausted.
        """
        if self._start_ns is None:
            return None

        elapsed_ns = t_ns - self._start_ns
        if elapsed_ns > self.budget_ns:
            collected = len(self._samples)
            self.cancel()
            raise CalibrationTimeout(
                f"Calibration collected {collected}/{self._cfg.samples_required} "
                f"samples in {elapsed_ns / NS_PER_S:.2f}s"
            )

        acc_norm = float(np.linalg.norm(acc))
        gyro_norm = float(np.linalg.norm(gyro))
        if (abs(acc_norm - self._cfg.gravity_nominal) > self._cfg.gravity_threshold
                or gyro_norm > self._cfg.gyro_threshold):
            self.rejected += 1
            return None

        self._samples.append(np.asarray(acc, dtype=np.float64).copy())
        if len(self._samples) < self._cfg.samples_required:
            return None

        samples = np.array(self._samples)
        result = CalibrationResult(
            rotation=solve_body_rotation(samples),
            mean_gravity=np.mean(samples, axis=0),
            num_samples=len(samples),
            duration_s=elapsed_ns / NS_PER_S,
        )
        self.cancel()
        return result
