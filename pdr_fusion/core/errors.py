"""Error taxonomy for the fusion core.

Only EngineCorrupt reaches the host. The other errors are raised by the
numeric routines and converted into an UpdateStatus plus a diagnostic event
by the component that owns the state.
"""

from enum import Enum


class FusionError(Exception):
    """Base class for fusion core errors."""

    kind = "fusion_error"


class InvalidDimension(FusionError):
    """Measurement, H or R sizes are inconsistent with the state."""

    kind = "invalid_dimension"


class SingularInnovation(FusionError):
    """Innovation covariance could not be inverted, even regularized."""

    kind = "singular_innovation"


class StaleTick(FusionError):
    """Non-positive dt or out-of-order timestamp."""

    kind = "stale_tick"


class MapProjectionFailure(FusionError):
    """No corridor lies within the snapping threshold."""

    kind = "map_projection_failure"


class CalibrationTimeout(FusionError):
    """Calibration did not gather enough samples within its time budget."""

    kind = "calibration_timeout"


class EngineCorrupt(FusionError):
    """State is still non-finite after recovery. The host must reset."""

    kind = "engine_corrupt"


class UpdateStatus(str, Enum):
    """Outcome of a mutating filter operation."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    RECOVERED = "recovered"
    BUSY = "busy"

    @property
    def applied(self) -> bool:
        return self is UpdateStatus.APPLIED
