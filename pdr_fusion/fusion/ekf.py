"""Extended Kalman filter for pedestrian position, altitude and heading.

State vector (13 dimensions):
    [x, y, z, vx, vy, vz, yaw, roll, pitch, omega, bias_ax, bias_ay, bias_gz]

The filter fuses PDR step increments in its motion model and corrects with
barometric altitude, compass heading, PDR position, zero-velocity updates and
corridor snapping. Angles are kept in (-pi, pi]. After every mutating
operation the covariance is symmetric with every diagonal entry >= 1e-8.
"""

import functools
import logging
from collections import deque
from typing import Callable, Deque, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import block_diag

from ..core.angles import wrap_angle
from ..core.config import EkfConfig
from ..core.errors import FusionError, InvalidDimension, SingularInnovation, UpdateStatus
from ..core.linalg import condition_covariance, is_finite, spd_inverse
from ..core.types import FullState, MotionMode, PdrIncrement, Pose
from ..core.validation import validate_dt, validate_measurement, validate_state
from .vector_map import VectorMap

logger = logging.getLogger(__name__)

DiagnosticSink = Callable[..., None]

# State slots
X, Y, Z = 0, 1, 2
VX, VY, VZ = 3, 4, 5
YAW, ROLL, PITCH = 6, 7, 8
OMEGA = 9
BIAS_AX, BIAS_AY, BIAS_GZ = 10, 11, 12

STATE_DIM = 13
ANGLE_SLOTS = (YAW, ROLL, PITCH)

DEFAULT_COVARIANCE_DIAG = np.array([
    0.1, 0.1, 0.1,        # position, altitude
    0.01, 0.01, 0.01,     # velocity
    0.05, 0.05, 0.05,     # yaw, roll, pitch
    0.01,                 # yaw rate
    0.01, 0.01, 0.01,     # biases
])

PROCESS_NOISE_FACTORS = np.array([
    0.5, 0.5,             # position x, y
    0.05,                 # altitude
    1.0, 1.0, 1.0,        # velocity
    0.1,                  # yaw
    0.15, 0.15,           # roll, pitch
    0.2,                  # yaw rate
    0.01, 0.01,           # accel bias
    0.005,                # gyro bias
])

PDR_WEIGHT_WALKING = 0.7
PDR_WEIGHT_CRAWLING = 0.3
ZUPT_VELOCITY_DAMPING = 0.05
ZUPT_POSITION_SHRINK = 0.5
ZUPT_YAW_SHRINK = 0.7
ZUPT_MAG_CONFIDENCE = 0.7


def pressure_to_altitude(pressure_hpa: float, sea_level_hpa: float = 1013.25) -> float:
    """Barometric altitude in metres from pressure in hPa."""
    return 44330.0 * (1.0 - (pressure_hpa / sea_level_hpa) ** 0.1903)


def altitude_to_pressure(altitude_m: float, sea_level_hpa: float = 1013.25) -> float:
    """Inverse of pressure_to_altitude()."""
    return sea_level_hpa * (1.0 - altitude_m / 44330.0) ** (1.0 / 0.1903)


def confidence_from_uncertainty(total: float) -> float:
    """Piecewise map from weighted uncertainty to a confidence in [0, 1]."""
    if total < 0.5:
        confidence = 0.90 - total * 0.3
    elif total < 2.0:
        confidence = 0.75 - (total - 0.5) * 0.3
    elif total < 5.0:
        confidence = 0.50 - (total - 2.0) * 0.1
    else:
        confidence = max(0.10, 0.20 - total * 0.02)
    return float(np.clip(confidence, 0.0, 1.0))


def _exclusive(method):
    """Drop calls that arrive while another mutating operation runs."""

    @functools.wraps(method)
    def wrapper(self: "PdrEKF", *args, **kwargs):
        if self._is_updating:
            self._report(
                "update_dropped",
                f"{method.__name__} dropped: update already in progress",
                level=logging.WARNING,
            )
            return UpdateStatus.BUSY
        self._is_updating = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._is_updating = False

    return wrapper


class PdrEKF:
    """13-state EKF for indoor pedestrian navigation.

    Owns the state x and covariance P. Only predict() and the update
    operations mutate them; every mutating operation returns an UpdateStatus
    instead of raising.

    Usage:
        ekf = PdrEKF(config.ekf)
        ekf.set_mode(MotionMode.WALKING)
        ekf.predict(0.5, PdrIncrement(dx=0.0, dy=0.75))
        ekf.update_barometer(1013.0)
        pose = ekf.get_pose()
    """

    def __init__(
        self,
        config: Optional[EkfConfig] = None,
        emit: Optional[DiagnosticSink] = None
    ):
        """Initialize filter at the origin.

        Args:
            config: Filter configuration. Defaults apply if None.
            emit: Diagnostic sink called as emit(kind, message, **data).
        """
        self._cfg = config if config is not None else EkfConfig()
        self._emit = emit

        self.x: NDArray[np.float64] = np.zeros(STATE_DIM)
        self.P: NDArray[np.float64] = np.diag(DEFAULT_COVARIANCE_DIAG)
        self.Q: NDArray[np.float64] = np.zeros((STATE_DIM, STATE_DIM))

        self.mode = MotionMode.STATIONARY
        self.zupt_active = False
        self._zupt_applied = False
        self._last_mag_confidence = 0.0
        self._is_updating = False

        self.vector_map: Optional[VectorMap] = None

        self.innovation_history: Deque[float] = deque(maxlen=self._cfg.innovation_history)
        self._last_auto_correction_ns: Optional[int] = None

        # Statistics
        self.update_count = 0
        self.covariance_resets = 0

        self._update_process_noise()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_mode(self, mode: MotionMode) -> None:
        """Change locomotion mode and its process noise.

        Leaving stationary re-arms the first-application ZUPT gain.
        """
        mode = MotionMode.parse(mode)
        previous = self.mode
        self.mode = mode

        if previous is MotionMode.STATIONARY and mode is not MotionMode.STATIONARY:
            self._zupt_applied = False
            self.zupt_active = False

        self._update_process_noise()

    def _update_process_noise(self) -> None:
        noise = self._cfg.process_noise
        if self.mode in (MotionMode.WALKING, MotionMode.RUNNING):
            base = noise.walking
        elif self.mode is MotionMode.CRAWLING:
            base = noise.crawling
        else:
            base = noise.stationary
        self.Q = np.diag(base * PROCESS_NOISE_FACTORS)

    def set_vector_map(self, vector_map: Optional[VectorMap]) -> None:
        """Install (or clear with None) the corridor map used for snapping."""
        self.vector_map = vector_map
        if vector_map is not None:
            logger.info(
                "Vector map loaded: %d corridors, %d walls",
                len(vector_map.corridors), len(vector_map.walls)
            )

    @_exclusive
    def reset(self, x: float = 0.0, y: float = 0.0, z: float = 0.0, theta: float = 0.0) -> UpdateStatus:
        """Restore defaults at the given pose."""
        self.x = np.zeros(STATE_DIM)
        self.x[X], self.x[Y], self.x[Z] = x, y, z
        self.x[YAW] = wrap_angle(theta)
        self.P = np.diag(DEFAULT_COVARIANCE_DIAG)

        self.mode = MotionMode.STATIONARY
        self.zupt_active = False
        self._zupt_applied = False
        self._last_mag_confidence = 0.0
        self._last_auto_correction_ns = None
        self.innovation_history.clear()
        self._update_process_noise()

        logger.info(
            "EKF reset at (%.2f, %.2f, %.2f) yaw=%.3f, confidence=%.2f",
            x, y, z, self.x[YAW], self.get_confidence()
        )
        return UpdateStatus.APPLIED

    # ------------------------------------------------------------------
    # Predict
    # ------------------------------------------------------------------

    @_exclusive
    def predict(self, dt: float, increment: Optional[PdrIncrement] = None) -> UpdateStatus:
        """Propagate the state with the kinematic + PDR motion model.

        Args:
            dt: Time step in seconds, must be > 0.
            increment: Step displacement since the last predict.

        Returns:
            APPLIED, REJECTED for a bad dt, RECOVERED if the state had to be
            repaired first.
        """
        check = validate_dt(dt)
        if not check.is_valid:
            self._report("stale_tick", "; ".join(check.errors))
            return UpdateStatus.REJECTED

        state_check = validate_state(self.x, self.P)
        if not state_check.is_valid:
            self._reset_covariance("; ".join(state_check.errors))
            return UpdateStatus.RECOVERED

        inc = increment if increment is not None else PdrIncrement.zero()
        state = self.x.copy()
        x, y, z = state[X], state[Y], state[Z]
        theta, roll, pitch, omega = state[YAW], state[ROLL], state[PITCH], state[OMEGA]

        if self.mode is MotionMode.STATIONARY or self.zupt_active:
            new_x, new_y, new_z = x, y, z
            new_theta = theta + omega * dt
        else:
            if self.mode is MotionMode.CRAWLING:
                if np.hypot(state[VX], state[VY]) < 0.01:
                    crawl = self._cfg.max_crawling_speed
                    state[VX] = crawl * np.cos(theta)
                    state[VY] = crawl * np.sin(theta)
                    logger.debug("Crawling velocity seeded: vx=%.3f vy=%.3f",
                                 state[VX], state[VY])
                weight = PDR_WEIGHT_CRAWLING
            else:
                weight = PDR_WEIGHT_WALKING

            vx, vy, vz = state[VX], state[VY], state[VZ]
            new_x = weight * (x + inc.dx) + (1 - weight) * (x + vx * dt)
            new_y = weight * (y + inc.dy) + (1 - weight) * (y + vy * dt)
            new_z = weight * (z + inc.dz) + (1 - weight) * (z + vz * dt)
            new_theta = theta + inc.dtheta + omega * dt

        max_speed = self._max_speed()
        speed = np.hypot(new_x - x, new_y - y) / dt
        if speed > max_speed:
            scale = max_speed / speed
            new_x = x + (new_x - x) * scale
            new_y = y + (new_y - y) * scale

        state[X], state[Y], state[Z] = new_x, new_y, new_z
        state[YAW] = wrap_angle(new_theta)
        state[ROLL] = wrap_angle(roll + 0.1 * omega * dt)
        state[PITCH] = wrap_angle(pitch + 0.1 * omega * dt)

        state[VX] = (new_x - x) / dt
        state[VY] = (new_y - y) / dt
        state[VZ] = (new_z - z) / dt

        F = self.transition_jacobian(dt)
        P = condition_covariance(F @ self.P @ F.T + self.Q * dt)
        if not is_finite(state, P):
            # The previous state is kept
            self._reset_covariance("non-finite state after predict")
            return UpdateStatus.RECOVERED
        self.x = state
        self.P = P

        if self.vector_map is not None:
            self._snap_to_map()

        return UpdateStatus.APPLIED

    @staticmethod
    def transition_jacobian(dt: float) -> NDArray[np.float64]:
        """State transition Jacobian F (13x13)."""
        F = np.eye(STATE_DIM)
        F[X, VX] = dt
        F[Y, VY] = dt
        F[Z, VZ] = dt
        F[YAW, OMEGA] = dt
        # Roll and pitch follow the yaw rate weakly
        F[ROLL, OMEGA] = 0.1 * dt
        F[PITCH, OMEGA] = 0.1 * dt
        return F

    def _max_speed(self) -> float:
        if self.mode is MotionMode.CRAWLING:
            return self._cfg.max_crawling_speed
        return self._cfg.max_walking_speed

    # ------------------------------------------------------------------
    # Measurement updates
    # ------------------------------------------------------------------

    @_exclusive
    def update(self, z: NDArray[np.float64], H: NDArray[np.float64], R: NDArray[np.float64]) -> UpdateStatus:
        """Generic measurement update with z = H x + v, v ~ N(0, R)."""
        return self._update(z, H, R)

    @_exclusive
    def update_batch(
        self,
        measurements: Sequence[Tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]]
    ) -> UpdateStatus:
        """Apply several (z, H, R) measurements as one stacked update."""
        if not measurements:
            return UpdateStatus.SKIPPED
        try:
            z = np.concatenate([np.atleast_1d(np.asarray(m[0], dtype=np.float64)) for m in measurements])
            H = np.vstack([np.atleast_2d(np.asarray(m[1], dtype=np.float64)) for m in measurements])
            R = block_diag(*[np.atleast_2d(np.asarray(m[2], dtype=np.float64)) for m in measurements])
        except ValueError as exc:
            self._report("invalid_dimension", f"Batch cannot be stacked: {exc}")
            return UpdateStatus.REJECTED
        return self._update(z, H, R)

    @_exclusive
    def update_barometer(self, pressure_hpa: float) -> UpdateStatus:
        """Altitude update from a pressure reading in hPa."""
        if not np.isfinite(pressure_hpa) or pressure_hpa <= 0:
            self._report("invalid_dimension", f"Invalid pressure: {pressure_hpa}")
            return UpdateStatus.REJECTED

        altitude = pressure_to_altitude(pressure_hpa, self._cfg.sea_level_pressure_hpa)
        H = np.zeros((1, STATE_DIM))
        H[0, Z] = 1.0
        R = np.array([[self._cfg.barometer_noise ** 2]])
        return self._update(np.array([altitude]), H, R)

    @_exclusive
    def update_heading(self, heading: float, confidence: float = 1.0) -> UpdateStatus:
        """Yaw update from a compass heading in radians.

        Measurement noise is magnetometer_noise^2 / confidence; an invalid
        confidence skips the update.
        """
        if not np.isfinite(heading) or not np.isfinite(confidence) or not 0.0 < confidence <= 1.0:
            logger.debug("Heading update skipped: heading=%s confidence=%s", heading, confidence)
            return UpdateStatus.SKIPPED

        H = np.zeros((1, STATE_DIM))
        H[0, YAW] = 1.0
        R = np.array([[self._cfg.magnetometer_noise ** 2 / confidence]])
        status = self._update(np.array([wrap_angle(heading)]), H, R)
        if status.applied:
            self._last_mag_confidence = confidence
        return status

    @_exclusive
    def update_pdr(
        self,
        position: Sequence[float],
        yaw: Optional[float] = None,
        mode: Optional[MotionMode] = None
    ) -> UpdateStatus:
        """Position (and optionally yaw) update from the dead-reckoned track.

        Args:
            position: PDR position (x, y) in metres.
            yaw: PDR heading in radians, or None for position only.
            mode: Mode used to pick the noise; defaults to the filter mode.
        """
        mode = MotionMode.parse(mode) if mode is not None else self.mode
        pos_sigma, yaw_sigma = self._pdr_noise(mode)

        rows = 2 if yaw is None else 3
        H = np.zeros((rows, STATE_DIM))
        H[0, X] = 1.0
        H[1, Y] = 1.0
        z = np.zeros(rows)
        z[0], z[1] = float(position[0]), float(position[1])
        sigmas = [pos_sigma, pos_sigma]
        if yaw is not None:
            H[2, YAW] = 1.0
            z[2] = wrap_angle(yaw)
            sigmas.append(yaw_sigma)

        R = np.diag(np.square(sigmas))
        return self._update(z, H, R)

    def _pdr_noise(self, mode: MotionMode) -> Tuple[float, float]:
        noise = self._cfg.pdr_noise
        table = {
            MotionMode.STATIONARY: (noise.position_stationary, noise.yaw_stationary),
            MotionMode.WALKING: (noise.position_walking, noise.yaw_walking),
            MotionMode.RUNNING: (noise.position_running, noise.yaw_running),
            MotionMode.CRAWLING: (noise.position_crawling, noise.yaw_crawling),
        }
        return table.get(mode, (noise.position_default, noise.yaw_default))

    @_exclusive
    def apply_zupt(self) -> UpdateStatus:
        """Zero-velocity pseudo-measurement.

        Velocities are damped by 0.05 on every call. On the first call of a
        stationary interval the position variances are also halved, and the
        yaw variance is scaled by 0.7 when the last heading update had
        confidence above 0.7. While stationary the yaw rate is also observed
        as zero.
        """
        self.zupt_active = True
        self.x[VX:VZ + 1] *= ZUPT_VELOCITY_DAMPING

        first = self.mode is MotionMode.STATIONARY and not self._zupt_applied
        if first:
            self._zupt_applied = True
            self.P[X, X] *= ZUPT_POSITION_SHRINK
            self.P[Y, Y] *= ZUPT_POSITION_SHRINK
            if self._last_mag_confidence > ZUPT_MAG_CONFIDENCE:
                self.P[YAW, YAW] *= ZUPT_YAW_SHRINK
            self._report(
                "zupt", "ZUPT applied at stationary transition",
                level=logging.DEBUG,
                position_uncertainty=float(self.P[X, X] + self.P[Y, Y]),
            )

        rows = [VX, VY, VZ]
        if self.mode is MotionMode.STATIONARY:
            # Zero angular rate at rest
            rows.append(OMEGA)
        H = np.zeros((len(rows), STATE_DIM))
        H[np.arange(len(rows)), rows] = 1.0
        R = np.eye(len(rows)) * self._cfg.zupt_noise ** 2
        return self._update(np.zeros(len(rows)), H, R)

    @_exclusive
    def apply_map_match(self) -> UpdateStatus:
        """Snap the position toward the nearest corridor."""
        return self._snap_to_map()

    def _snap_to_map(self) -> UpdateStatus:
        if self.vector_map is None or self.vector_map.is_empty():
            return UpdateStatus.SKIPPED

        cfg = self._cfg.map_matching
        x, y = self.x[X], self.x[Y]
        projection = self.vector_map.nearest(x, y)

        if projection is None or projection.distance >= cfg.threshold_m:
            # MapProjectionFailure is the expected outcome away from corridors
            return UpdateStatus.SKIPPED

        weight = cfg.weight * (1.0 - projection.distance / cfg.threshold_m)
        new_x = x * (1.0 - weight) + projection.point[0] * weight
        new_y = y * (1.0 - weight) + projection.point[1] * weight

        if cfg.wall_veto and self.vector_map.crosses_wall((x, y), (new_x, new_y)):
            logger.debug("Map snap vetoed by wall at (%.2f, %.2f)", x, y)
            return UpdateStatus.SKIPPED

        self.x[X], self.x[Y] = new_x, new_y
        self.P[X, X] *= 1.0 - 0.5 * weight
        self.P[Y, Y] *= 1.0 - 0.5 * weight
        self.P = condition_covariance(self.P)

        self._report(
            "map_snap", "Map matching applied",
            level=logging.DEBUG,
            distance=projection.distance, weight=weight, corridor=projection.corridor,
        )
        return UpdateStatus.APPLIED

    # ------------------------------------------------------------------
    # Recovery site
    # ------------------------------------------------------------------

    def _update(self, z: NDArray[np.float64], H: NDArray[np.float64], R: NDArray[np.float64]) -> UpdateStatus:
        """Run one Kalman update and turn numeric failures into a status."""
        try:
            self._kalman_update(
                np.asarray(z, dtype=np.float64),
                np.asarray(H, dtype=np.float64),
                np.asarray(R, dtype=np.float64),
            )
        except InvalidDimension as exc:
            if not validate_state(self.x, self.P).is_valid:
                self._reset_covariance(str(exc))
                return UpdateStatus.RECOVERED
            self._report(exc.kind, str(exc))
            return UpdateStatus.REJECTED
        except SingularInnovation as exc:
            self._report(exc.kind, str(exc))
            return UpdateStatus.SKIPPED
        except FusionError as exc:
            self._reset_covariance(str(exc))
            return UpdateStatus.RECOVERED

        self.update_count += 1
        return UpdateStatus.APPLIED

    def _kalman_update(self, z: NDArray[np.float64], H: NDArray[np.float64], R: NDArray[np.float64]) -> None:
        state_check = validate_state(self.x, self.P)
        if not state_check.is_valid:
            raise InvalidDimension("; ".join(state_check.errors))

        meas_check = validate_measurement(z, H, R)
        if not meas_check.is_valid:
            raise InvalidDimension("; ".join(meas_check.errors))

        innovation = z - H @ self.x
        angle_rows = np.any(H[:, list(ANGLE_SLOTS)] != 0.0, axis=1)
        for i in np.flatnonzero(angle_rows):
            innovation[i] = wrap_angle(innovation[i])

        S = H @ self.P @ H.T + R
        K = self.P @ H.T @ spd_inverse(S)

        x_new = self.x + K @ innovation
        P_new = condition_covariance((np.eye(STATE_DIM) - K @ H) @ self.P)

        if not is_finite(x_new, P_new):
            raise FusionError("non-finite posterior")

        for slot in ANGLE_SLOTS:
            x_new[slot] = wrap_angle(x_new[slot])
        max_speed = self._max_speed()
        x_new[VX:VZ + 1] = np.clip(x_new[VX:VZ + 1], -max_speed, max_speed)

        self.x = x_new
        self.P = P_new
        self.innovation_history.append(float(np.linalg.norm(innovation)))

    def _reset_covariance(self, reason: str) -> None:
        """Re-initialize P to defaults (and x if it is unusable)."""
        self.covariance_resets += 1
        if self.x.shape != (STATE_DIM,):
            self.x = np.zeros(STATE_DIM)
        self.P = np.diag(DEFAULT_COVARIANCE_DIAG)
        self._report("covariance_reset", f"Covariance re-initialized: {reason}",
                     level=logging.WARNING)

    def _report(self, kind: str, message: str, level: int = logging.WARNING, **data) -> None:
        logger.log(level, "%s", message)
        if self._emit is not None:
            self._emit(kind, message, **data)

    # ------------------------------------------------------------------
    # Periodic maintenance
    # ------------------------------------------------------------------

    @_exclusive
    def periodic_check(self, t_ns: int) -> UpdateStatus:
        """Bound runaway uncertainty every auto_correction_interval_s.

        Driven by sensor time. The first call only starts the clock.

        Returns:
            APPLIED if a correction pass ran, SKIPPED otherwise.
        """
        if self._last_auto_correction_ns is None:
            self._last_auto_correction_ns = t_ns
            return UpdateStatus.SKIPPED

        interval_ns = int(self._cfg.auto_correction_interval_s * 1e9)
        if t_ns - self._last_auto_correction_ns < interval_ns:
            return UpdateStatus.SKIPPED
        self._last_auto_correction_ns = t_ns

        position_uncertainty = self.P[X, X] + self.P[Y, Y]
        if position_uncertainty > 10.0:
            self.P[X, X] = min(self.P[X, X], 2.0)
            self.P[Y, Y] = min(self.P[Y, Y], 2.0)
            self._report("auto_correction",
                         f"Position uncertainty {position_uncertainty:.2f} capped",
                         level=logging.INFO)

        if self.P[YAW, YAW] > 5.0:
            self._report("auto_correction",
                         f"Yaw uncertainty {self.P[YAW, YAW]:.2f} capped",
                         level=logging.INFO)
            self.P[YAW, YAW] = 1.0

        if self.mode is MotionMode.STATIONARY:
            self.P[X, X] *= 0.95
            self.P[Y, Y] *= 0.95
            self.P[YAW, YAW] *= 0.95

        self.P = condition_covariance(self.P)
        return UpdateStatus.APPLIED

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_confidence(self) -> float:
        """Scalar confidence in [0, 1] derived from P."""
        P = self.P
        total = (
            min(P[X, X] + P[Y, Y], 10.0) * 1.0
            + min(P[YAW, YAW], 3.0) * 0.5
            + min(P[ROLL, ROLL], 2.0) * 0.2
            + min(P[PITCH, PITCH], 2.0) * 0.2
        )
        confidence = confidence_from_uncertainty(total)

        if self.mode is MotionMode.STATIONARY:
            confidence = min(1.0, confidence * 1.1)
        elif self.zupt_active:
            confidence = min(1.0, confidence * 1.05)
        return confidence

    def get_pose(self, timestamp: int = 0) -> Pose:
        """Current (x, y, z, yaw, confidence) with mode and timestamp."""
        return Pose(
            x=float(self.x[X]),
            y=float(self.x[Y]),
            z=float(self.x[Z]),
            yaw=float(self.x[YAW]),
            confidence=self.get_confidence(),
            mode=self.mode,
            timestamp=timestamp,
        )

    def get_full_state(self) -> FullState:
        """Complete state snapshot."""
        return FullState(
            position=self.x[X:Z + 1].copy(),
            velocity=self.x[VX:VZ + 1].copy(),
            yaw=float(self.x[YAW]),
            roll=float(self.x[ROLL]),
            pitch=float(self.x[PITCH]),
            omega=float(self.x[OMEGA]),
            accel_bias=self.x[BIAS_AX:BIAS_AY + 1].copy(),
            gyro_bias_z=float(self.x[BIAS_GZ]),
            mode=self.mode,
            zupt_active=self.zupt_active,
            confidence=self.get_confidence(),
        )

    def is_healthy(self) -> bool:
        """True if state and covariance are well-formed and finite."""
        return validate_state(self.x, self.P).is_valid

    def mean_innovation(self) -> float:
        """Mean innovation norm over the recent history."""
        if not self.innovation_history:
            return 0.0
        return float(np.mean(list(self.innovation_history)))

    @property
    def last_mag_confidence(self) -> float:
        return self._last_mag_confidence

    @_exclusive
    def set_mag_confidence(self, confidence: float) -> UpdateStatus:
        """Record the magnetometer confidence used by the ZUPT yaw gain."""
        self._last_mag_confidence = float(np.clip(confidence, 0.0, 1.0))
        return UpdateStatus.APPLIED
