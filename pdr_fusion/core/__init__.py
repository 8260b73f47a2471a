"""Core types, configuration and numeric helpers."""

from .types import (
    CompassReading,
    FullState,
    MotionMode,
    PdrIncrement,
    Pose,
    Quaternion,
    SensorKind,
    SensorSample,
    StepEvent,
    StepInput,
    ValidationResult,
)
from .errors import (
    CalibrationTimeout,
    EngineCorrupt,
    FusionError,
    InvalidDimension,
    MapProjectionFailure,
    SingularInnovation,
    StaleTick,
    UpdateStatus,
)
from .quaternion import QuaternionOps
from .config import Config, load_config

__all__ = [
    "CompassReading",
    "FullState",
    "MotionMode",
    "PdrIncrement",
    "Pose",
    "Quaternion",
    "SensorKind",
    "SensorSample",
    "StepEvent",
    "StepInput",
    "ValidationResult",
    "CalibrationTimeout",
    "EngineCorrupt",
    "FusionError",
    "InvalidDimension",
    "MapProjectionFailure",
    "SingularInnovation",
    "StaleTick",
    "UpdateStatus",
    "QuaternionOps",
    "Config",
    "load_config",
]
