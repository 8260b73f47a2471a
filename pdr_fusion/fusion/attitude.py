"""Device-to-world attitude tracking with a Madgwick gradient-descent filter.

The accelerometer convention is that of the sensor layer: a device lying flat
and at rest reads (0, 0, -9.81). Incoming vectors are first rotated by the
body-to-device matrix R_bd found by the last calibration.

Besides the quaternion the tracker watches a rolling window of samples to
decide when the device is at rest, and uses long rest periods to re-solve
R_bd.
"""

import logging
from collections import deque
from typing import Callable, Deque, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.spatial.transform import Rotation

from ..calibration.body_frame import BodyFrameCalibrator, CalibrationResult
from ..core.config import AttitudeConfig, CalibrationConfig
from ..core.errors import CalibrationTimeout
from ..core.quaternion import IDENTITY, QuaternionOps
from ..core.types import NS_PER_S, AttitudeStatus, ns_to_s
from .mag_health import MagneticConfidence

logger = logging.getLogger(__name__)

DiagnosticSink = Callable[..., None]


def madgwick_gradient(
    q: NDArray[np.float64],
    acc_unit: NDArray[np.float64],
    mag_unit: Optional[NDArray[np.float64]] = None
) -> NDArray[np.float64]:
    """Normalized gradient of the Madgwick objective function.

    Args:
        q: Current quaternion [w, x, y, z].
        acc_unit: Unit "up" vector measured in the device frame.
        mag_unit: Unit magnetic field in the device frame, or None for the
            gravity-only objective.

    Returns:
        Step direction s (zero vector when the gradient vanishes).
    """
    q0, q1, q2, q3 = q
    ax, ay, az = acc_unit

    f = [
        2.0 * (q1 * q3 - q0 * q2) - ax,
        2.0 * (q0 * q1 + q2 * q3) - ay,
        2.0 * (0.5 - q1 * q1 - q2 * q2) - az,
    ]
    J = [
        [-2.0 * q2, 2.0 * q3, -2.0 * q0, 2.0 * q1],
        [2.0 * q1, 2.0 * q0, 2.0 * q3, 2.0 * q2],
        [0.0, -4.0 * q1, -4.0 * q2, 0.0],
    ]

    if mag_unit is not None:
        mx, my, mz = mag_unit
        # Earth field reference: horizontal component on x, vertical on z
        h = QuaternionOps.rotate(q, mag_unit)
        bx = float(np.hypot(h[0], h[1]))
        bz = float(h[2])

        f += [
            2.0 * bx * (0.5 - q2 * q2 - q3 * q3) + 2.0 * bz * (q1 * q3 - q0 * q2) - mx,
            2.0 * bx * (q1 * q2 - q0 * q3) + 2.0 * bz * (q0 * q1 + q2 * q3) - my,
            2.0 * bx * (q0 * q2 + q1 * q3) + 2.0 * bz * (0.5 - q1 * q1 - q2 * q2) - mz,
        ]
        J += [
            [-2.0 * bz * q2, 2.0 * bz * q3,
             -4.0 * bx * q2 - 2.0 * bz * q0, -4.0 * bx * q3 + 2.0 * bz * q1],
            [-2.0 * bx * q3 + 2.0 * bz * q1, 2.0 * bx * q2 + 2.0 * bz * q0,
             2.0 * bx * q1 + 2.0 * bz * q3, -2.0 * bx * q0 + 2.0 * bz * q2],
            [2.0 * bx * q2, 2.0 * bx * q3 - 4.0 * bz * q1,
             2.0 * bx * q0 - 4.0 * bz * q2, 2.0 * bx * q1],
        ]

    step = np.asarray(J).T @ np.asarray(f)
    norm = float(np.linalg.norm(step))
    if norm < 1e-12:
        return np.zeros(4)
    return step / norm


class AttitudeTracker:
    """Madgwick AHRS with stability detection and auto-recalibration.

    Usage:
        tracker = AttitudeTracker(config.attitude, config.calibration)
        status = tracker.update(acc, gyro, mag, dt=0.02, t_ns=t)
        vertical = tracker.to_world_vertical(acc)
    """

    def __init__(
        self,
        config: Optional[AttitudeConfig] = None,
        calibration: Optional[CalibrationConfig] = None,
        emit: Optional[DiagnosticSink] = None
    ):
        """Initialize tracker at identity attitude.

        Args:
            config: Filter and stability settings.
            calibration: Settings for the recalibration sessions.
            emit: Diagnostic sink called as emit(kind, message, **data).
        """
        self._cfg = config if config is not None else AttitudeConfig()
        self._cal_cfg = calibration if calibration is not None else CalibrationConfig()
        self._emit = emit

        self.mag_confidence = MagneticConfidence(
            expected_norm=self._cfg.expected_mag_norm,
            history_size=self._cfg.mag_history_size,
            min_samples=self._cfg.mag_min_samples,
        )
        self.calibrator = BodyFrameCalibrator(self._cal_cfg)

        self.q: NDArray[np.float64] = IDENTITY.copy()
        self.R_bd: NDArray[np.float64] = np.eye(3)
        self.R_db: NDArray[np.float64] = np.eye(3)

        # (t_ns, |acc|, |gyro|)
        self._window: Deque[Tuple[int, float, float]] = deque()
        self.is_stable = False
        self._stable_since_ns: Optional[int] = None
        self._last_t_ns: Optional[int] = None

        self.last_recalibration_ns: Optional[int] = None
        self._last_attempt_ns: Optional[int] = None
        self.last_calibration: Optional[CalibrationResult] = None

        self.sample_count = 0
        self.gyro_only_updates = 0

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(
        self,
        acc: NDArray[np.float64],
        gyro: NDArray[np.float64],
        mag: Optional[NDArray[np.float64]] = None,
        dt: float = 0.0,
        t_ns: int = 0
    ) -> AttitudeStatus:
        """Process one sample set.

        Args:
            acc: Accelerometer [ax, ay, az] in m/s^2.
            gyro: Gyroscope [gx, gy, gz] in rad/s.
            mag: Magnetometer [mx, my, mz] in uT, or None.
            dt: Seconds since the previous update; no integration if <= 0.
            t_ns: Sensor timestamp in monotonic nanoseconds.

        Returns:
            Current AttitudeStatus.
        """
        acc = np.asarray(acc, dtype=np.float64)
        gyro = np.asarray(gyro, dtype=np.float64)
        self.sample_count += 1
        self._last_t_ns = t_ns

        if mag is not None:
            self.mag_confidence.update(mag)

        if dt > 0.0 and np.isfinite(dt):
            mag_device = None if mag is None else self.R_bd @ np.asarray(mag, dtype=np.float64)
            self._madgwick_step(self.R_bd @ acc, self.R_bd @ gyro, mag_device, dt)

        self._update_stability(acc, gyro, t_ns)

        if self._cfg.auto_recalibration:
            self._check_recalibration(acc, gyro, t_ns)

        return self.status()

    def _madgwick_step(
        self,
        acc: NDArray[np.float64],
        gyro: NDArray[np.float64],
        mag: Optional[NDArray[np.float64]],
        dt: float
    ) -> None:
        q = self.q
        q_dot = 0.5 * QuaternionOps.multiply(q, np.array([0.0, gyro[0], gyro[1], gyro[2]]))

        acc_norm = float(np.linalg.norm(acc))
        if acc_norm == 0.0 or not np.isfinite(acc_norm):
            self.gyro_only_updates += 1
            self.q = QuaternionOps.normalize(q + q_dot * dt)
            return

        # Sensor reports gravity, the objective wants the "up" direction
        acc_unit = -acc / acc_norm

        beta = self._cfg.beta
        mag_unit = None
        confidence = self.mag_confidence.confidence
        if mag is not None and confidence > self._cfg.mag_confidence_threshold:
            mag_norm = float(np.linalg.norm(mag))
            if mag_norm > 0.0:
                mag_unit = mag / mag_norm
                beta *= 1.0 + confidence

        step = madgwick_gradient(q, acc_unit, mag_unit)
        self.q = QuaternionOps.normalize(q + (q_dot - beta * step) * dt)

    # ------------------------------------------------------------------
    # Stability
    # ------------------------------------------------------------------

    def _update_stability(self, acc: NDArray[np.float64], gyro: NDArray[np.float64], t_ns: int) -> None:
        self._window.append((t_ns, float(np.linalg.norm(acc)), float(np.linalg.norm(gyro))))
        horizon = t_ns - int(self._cfg.stability_window_s * NS_PER_S)
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

        if len(self._window) < self._cfg.stability_min_samples:
            return

        window = np.array([(a, g) for _, a, g in self._window])
        variance = float(np.var(window[:, 0]))
        mean_gyro = float(np.mean(window[:, 1]))
        stable = (variance < self._cfg.accel_variance_threshold
                  and mean_gyro < self._cfg.gyro_mean_threshold)

        if stable == self.is_stable:
            return

        self.is_stable = stable
        self._stable_since_ns = t_ns if stable else None
        message = "Device stable" if stable else "Device moving"
        logger.debug("%s: variance=%.4f mean_gyro=%.4f", message, variance, mean_gyro)
        if self._emit is not None:
            self._emit("stability_changed", message,
                       is_stable=stable, variance=variance, mean_gyro=mean_gyro)

    def stable_duration_s(self, t_ns: Optional[int] = None) -> float:
        """Seconds spent in the current stable period (0 when moving)."""
        if not self.is_stable or self._stable_since_ns is None:
            return 0.0
        now = t_ns if t_ns is not None else self._last_t_ns
        if now is None:
            return 0.0
        return max(0.0, ns_to_s(now - self._stable_since_ns))

    # ------------------------------------------------------------------
    # Recalibration
    # ------------------------------------------------------------------

    def _check_recalibration(self, acc: NDArray[np.float64], gyro: NDArray[np.float64], t_ns: int) -> None:
        if self.calibrator.is_active:
            self._feed_calibrator(acc, gyro, t_ns)
            return

        if not self.is_stable or self.stable_duration_s(t_ns) < self._cfg.stability_duration_s:
            return

        interval_ns = int(self._cfg.recalibration_interval_s * NS_PER_S)
        if self._last_attempt_ns is not None and t_ns - self._last_attempt_ns < interval_ns:
            return

        self._last_attempt_ns = t_ns
        self.calibrator.start(t_ns)
        self._feed_calibrator(acc, gyro, t_ns)

    def _feed_calibrator(self, acc: NDArray[np.float64], gyro: NDArray[np.float64], t_ns: int) -> None:
        try:
            result = self.calibrator.add_sample(acc, gyro, t_ns)
        except CalibrationTimeout as exc:
            logger.warning("Recalibration abandoned: %s", exc)
            if self._emit is not None:
                self._emit(exc.kind, str(exc))
            return

        if result is not None:
            self.apply_calibration(result, t_ns)

    def apply_calibration(self, result: CalibrationResult, t_ns: int) -> None:
        """Install a new R_bd while keeping the world mapping continuous."""
        rotation = np.asarray(result.rotation, dtype=np.float64)
        # R(q_new) @ R_new = R(q_old) @ R_old
        delta = self.R_bd @ rotation.T
        xyzw = Rotation.from_matrix(delta).as_quat()
        delta_q = np.array([xyzw[3], xyzw[0], xyzw[1], xyzw[2]])
        self.q = QuaternionOps.normalize(QuaternionOps.multiply(self.q, delta_q))

        self.R_bd = rotation
        self.R_db = rotation.T.copy()
        self.last_recalibration_ns = t_ns
        self.last_calibration = result

        logger.info("Body frame recalibrated from %d samples", result.num_samples)
        if self._emit is not None:
            self._emit("calibration_applied", "Body frame recalibrated", **result.to_dict())

    # ------------------------------------------------------------------
    # Frame helpers
    # ------------------------------------------------------------------

    def body_to_world(self, vec: NDArray[np.float64]) -> NDArray[np.float64]:
        """Rotate a raw sensor vector into the world frame."""
        device = self.R_bd @ np.asarray(vec, dtype=np.float64)
        return QuaternionOps.rotate(self.q, device)

    def to_world_vertical(self, acc: NDArray[np.float64]) -> float:
        """Vertical acceleration in m/s^2 with gravity removed."""
        world = self.body_to_world(acc)
        return float(world[2] + self._cal_cfg.gravity_nominal)

    def euler(self) -> NDArray[np.float64]:
        """[roll, pitch, yaw] in radians."""
        return QuaternionOps.to_euler(self.q)

    def status(self) -> AttitudeStatus:
        """Current attitude snapshot."""
        roll, pitch, yaw = self.euler()
        return AttitudeStatus(
            quaternion=QuaternionOps.to_dataclass(self.q),
            roll=float(roll),
            pitch=float(pitch),
            yaw=float(yaw),
            is_stable=self.is_stable,
            stable_duration_s=self.stable_duration_s(),
            mag_confidence=self.mag_confidence.confidence,
            sample_count=self.sample_count,
            last_recalibration_ns=self.last_recalibration_ns,
        )

    def reset(self) -> None:
        """Identity attitude and R_bd, empty buffers and timers."""
        self.q = IDENTITY.copy()
        self.R_bd = np.eye(3)
        self.R_db = np.eye(3)
        self._window.clear()
        self.is_stable = False
        self._stable_since_ns = None
        self._last_t_ns = None
        self.last_recalibration_ns = None
        self._last_attempt_ns = None
        self.last_calibration = None
        self.calibrator.cancel()
        self.mag_confidence.reset()
        self.sample_count = 0
        self.gyro_only_updates = 0
