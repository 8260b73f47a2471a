"""Body-frame calibration."""

from .body_frame import BodyFrameCalibrator, CalibrationResult, solve_body_rotation

__all__ = ["BodyFrameCalibrator", "CalibrationResult", "solve_body_rotation"]
