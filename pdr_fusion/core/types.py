"""Data types for pedestrian dead-reckoning fusion."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np
from numpy.typing import NDArray


NS_PER_S = 1_000_000_000


def ns_to_s(t_ns: int) -> float:
    """Convert monotonic nanoseconds to seconds."""
    return t_ns / NS_PER_S


class MotionMode(str, Enum):
    """Locomotion mode owned by the engine."""
    STATIONARY = "stationary"
    WALKING = "walking"
    RUNNING = "running"
    CRAWLING = "crawling"

    @classmethod
    def parse(cls, value: "str | MotionMode") -> "MotionMode":
        """Accept either an enum member or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown motion mode: {value!r}") from None


class SensorKind(str, Enum):
    """Tag of a sample pushed into the engine queue."""
    ACCEL = "accel"
    GYRO = "gyro"
    MAG = "mag"
    BARO = "baro"
    COMPASS_HEADING = "compass_heading"
    STEP_EVENT = "step_event"


@dataclass(frozen=True)
class SensorSample:
    """One queued sensor sample.

    Payload shape depends on kind:
    - accel, gyro, mag: 3-vector in m/s^2, rad/s, uT
    - baro: pressure in hPa
    - compass_heading: CompassReading
    - step_event: StepInput
    """
    kind: SensorKind
    payload: Any
    t_ns: int


@dataclass(frozen=True)
class CompassReading:
    """Native compass heading with its reported accuracy (degrees)."""
    heading: Optional[float]
    accuracy: float = 0.0


@dataclass(frozen=True)
class StepInput:
    """Step reported by an external pedometer source."""
    length: Optional[float] = None
    heading: Optional[float] = None


@dataclass(frozen=True)
class StepEvent:
    """A validated step with its displacement."""
    t_ns: int
    length: float
    dx: float
    dy: float
    heading: float
    confidence: float
    source: str = "detector"


@dataclass(frozen=True)
class PdrIncrement:
    """Displacement accumulated since the previous predict."""
    dx: float = 0.0
    dy: float = 0.0
    dz: float = 0.0
    dtheta: float = 0.0

    @classmethod
    def zero(cls) -> "PdrIncrement":
        return cls()


@dataclass(frozen=True)
class Pose:
    """Pose published at the end of a tick."""
    x: float
    y: float
    z: float
    yaw: float
    confidence: float
    mode: MotionMode
    timestamp: int

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "x": self.x,
            "y": self.y,
            "z": self.z,
            "yaw": self.yaw,
            "confidence": self.confidence,
            "mode": self.mode.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class FullState:
    """Complete EKF state snapshot."""
    position: NDArray[np.float64]   # [x, y, z] in m
    velocity: NDArray[np.float64]   # [vx, vy, vz] in m/s
    yaw: float
    roll: float
    pitch: float
    omega: float
    accel_bias: NDArray[np.float64]  # [bx, by]
    gyro_bias_z: float
    mode: MotionMode
    zupt_active: bool
    confidence: float

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "position": {
                "x": float(self.position[0]),
                "y": float(self.position[1]),
                "z": float(self.position[2]),
            },
            "velocity": {
                "vx": float(self.velocity[0]),
                "vy": float(self.velocity[1]),
                "vz": float(self.velocity[2]),
            },
            "orientation": {
                "yaw": self.yaw,
                "roll": self.roll,
                "pitch": self.pitch,
                "omega": self.omega,
            },
            "biases": {
                "acc_x": float(self.accel_bias[0]),
                "acc_y": float(self.accel_bias[1]),
                "gyro_z": self.gyro_bias_z,
            },
            "mode": self.mode.value,
            "zupt_active": self.zupt_active,
            "confidence": self.confidence,
        }


@dataclass
class Quaternion:
    """Unit quaternion representing device to world rotation.

    Convention: [w, x, y, z] where w is the scalar component.
    """
    w: float
    x: float
    y: float
    z: float

    @classmethod
    def identity(cls) -> "Quaternion":
        """Return identity quaternion (no rotation)."""
        return cls(w=1.0, x=0.0, y=0.0, z=0.0)

    @classmethod
    def from_array(cls, arr: NDArray[np.float64]) -> "Quaternion":
        """Create from numpy array [w, x, y, z]."""
        return cls(w=float(arr[0]), x=float(arr[1]),
                   y=float(arr[2]), z=float(arr[3]))

    def to_array(self) -> NDArray[np.float64]:
        """Convert to numpy array [w, x, y, z]."""
        return np.array([self.w, self.x, self.y, self.z], dtype=np.float64)

    @property
    def norm(self) -> float:
        """Euclidean norm of quaternion."""
        return float(np.sqrt(self.w**2 + self.x**2 + self.y**2 + self.z**2))


@dataclass(frozen=True)
class AttitudeStatus:
    """Snapshot of the attitude tracker."""
    quaternion: Quaternion
    roll: float
    pitch: float
    yaw: float
    is_stable: bool
    stable_duration_s: float
    mag_confidence: float
    sample_count: int
    last_recalibration_ns: Optional[int]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "qw": self.quaternion.w,
            "qx": self.quaternion.x,
            "qy": self.quaternion.y,
            "qz": self.quaternion.z,
            "roll_deg": float(np.rad2deg(self.roll)),
            "pitch_deg": float(np.rad2deg(self.pitch)),
            "yaw_deg": float(np.rad2deg(self.yaw)),
            "is_stable": self.is_stable,
            "stable_duration_s": self.stable_duration_s,
            "mag_confidence": self.mag_confidence,
            "sample_count": self.sample_count,
            "last_recalibration_ns": self.last_recalibration_ns,
        }


@dataclass(frozen=True)
class DriftEvent:
    """Persistent compass inaccuracy notification."""
    mean_accuracy: float
    t_ns: int


@dataclass(frozen=True)
class HeadingEstimate:
    """Output of the orientation smoother."""
    heading: float     # radians, (-pi, pi]
    confidence: float
    drift: Optional[DriftEvent] = None


@dataclass
class ValidationResult:
    """Result of input validation."""
    is_valid: bool
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    def add_error(self, message: str) -> None:
        """Add validation error."""
        self.is_valid = False
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        """Add validation warning."""
        self.warnings.append(message)
