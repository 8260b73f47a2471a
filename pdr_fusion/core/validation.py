"""Input validation for samples, time steps and filter measurements."""

import numbers
from typing import Any

import numpy as np

from .types import CompassReading, SensorKind, StepInput, ValidationResult


STATE_DIM = 13


def validate_dt(dt: float, max_dt_s: float = 1.0) -> ValidationResult:
    """Validate time step for a filter predict.

    Args:
        dt: Time step in seconds.
        max_dt_s: Steps above this are accepted with a warning.

    Returns:
        ValidationResult with status.
    """
    result = ValidationResult(is_valid=True)

    if not np.isfinite(dt):
        result.add_error(f"Non-finite dt: {dt}")
    elif dt <= 0:
        result.add_error(f"Non-positive dt: {dt}")
    elif dt > max_dt_s:
        result.add_warning(f"dt too large: {dt*1000:.1f}ms")

    return result


def validate_state(x: np.ndarray, P: np.ndarray) -> ValidationResult:
    """Check the filter state has the expected shape and is finite."""
    result = ValidationResult(is_valid=True)

    if x.shape != (STATE_DIM,):
        result.add_error(f"State has shape {x.shape}, expected ({STATE_DIM},)")
    elif not np.all(np.isfinite(x)):
        result.add_error("State contains non-finite values")

    if P.shape != (STATE_DIM, STATE_DIM):
        result.add_error(f"Covariance has shape {P.shape}, expected ({STATE_DIM}, {STATE_DIM})")
    elif not np.all(np.isfinite(P)):
        result.add_error("Covariance contains non-finite values")

    return result


def validate_measurement(z: np.ndarray, H: np.ndarray, R: np.ndarray) -> ValidationResult:
    """Check that z, H and R agree with each other and with the state.

    Args:
        z: Measurement vector of length m.
        H: Observation matrix, m x 13.
        R: Noise covariance, m x m.
    """
    result = ValidationResult(is_valid=True)

    if H.ndim != 2 or H.shape[1] != STATE_DIM:
        result.add_error(f"H has shape {H.shape}, expected (m, {STATE_DIM})")
        return result

    m = H.shape[0]
    if z.shape != (m,):
        result.add_error(f"Measurement has shape {z.shape}, expected ({m},)")
    if R.shape != (m, m):
        result.add_error(f"R has shape {R.shape}, expected ({m}, {m})")

    if result.is_valid and not (np.all(np.isfinite(z)) and np.all(np.isfinite(R))):
        result.add_error("Measurement or R contains non-finite values")

    return result


def validate_sample(kind: SensorKind, payload: Any) -> ValidationResult:
    """Check that a pushed payload matches its sensor kind."""
    result = ValidationResult(is_valid=True)

    if kind in (SensorKind.ACCEL, SensorKind.GYRO, SensorKind.MAG):
        try:
            vec = np.asarray(payload, dtype=np.float64)
        except (TypeError, ValueError):
            result.add_error(f"{kind.value} payload is not numeric: {payload!r}")
            return result
        if vec.shape != (3,):
            result.add_error(f"{kind.value} payload has shape {vec.shape}, expected (3,)")
        elif not np.all(np.isfinite(vec)):
            result.add_error(f"{kind.value} payload contains non-finite values")

    elif kind is SensorKind.BARO:
        if not isinstance(payload, numbers.Real) or not np.isfinite(payload):
            result.add_error(f"baro payload must be a finite pressure: {payload!r}")
        elif payload <= 0:
            result.add_error(f"Non-positive pressure: {payload}")

    elif kind is SensorKind.COMPASS_HEADING:
        if not isinstance(payload, CompassReading):
            result.add_error(f"compass_heading payload must be CompassReading: {payload!r}")
        else:
            if payload.heading is not None and not _is_finite_number(payload.heading):
                result.add_error(f"Invalid compass heading: {payload.heading!r}")
            if not _is_finite_number(payload.accuracy):
                result.add_error(f"Invalid compass accuracy: {payload.accuracy!r}")

    elif kind is SensorKind.STEP_EVENT:
        if not isinstance(payload, StepInput):
            result.add_error(f"step_event payload must be StepInput: {payload!r}")
        else:
            if payload.length is not None and not (_is_finite_number(payload.length) and payload.length > 0):
                result.add_error(f"Invalid step length: {payload.length!r}")
            if payload.heading is not None and not _is_finite_number(payload.heading):
                result.add_error(f"Invalid step heading: {payload.heading!r}")

    return result


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool) and bool(np.isfinite(value))
