"""Fusion components for pedestrian dead reckoning."""

from .vector_map import VectorMap, Projection
from .ekf import PdrEKF
from .mag_health import MagneticConfidence, MagConfidenceStatus
from .attitude import AttitudeTracker
from .orientation import OrientationSmoother
from .step_detector import StepDetector
from .engine import FusionEngine, EngineStatus

__all__ = [
    "VectorMap",
    "Projection",
    "PdrEKF",
    "MagneticConfidence",
    "MagConfidenceStatus",
    "AttitudeTracker",
    "OrientationSmoother",
    "StepDetector",
    "FusionEngine",
    "EngineStatus",
]
