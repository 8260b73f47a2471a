"""Sensor-fusion core for indoor pedestrian dead reckoning."""

from .core import Config, MotionMode, Pose, SensorKind, load_config
from .fusion import FusionEngine, PdrEKF, VectorMap

__version__ = "0.1.0"

__all__ = [
    "Config",
    "FusionEngine",
    "MotionMode",
    "PdrEKF",
    "Pose",
    "SensorKind",
    "VectorMap",
    "load_config",
]
