"""Magnetometer trust estimation.

The confidence is the product of two scores over a rolling window of field
magnitudes:
- stability: low variance means no nearby disturbance
- accuracy: the mean should sit near the Earth field magnitude
"""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class MagConfidenceStatus:
    """Result of one magnetometer confidence update."""
    confidence: float
    magnitude: float
    mean_magnitude: float
    variance: float
    stability_score: float
    accuracy_score: float
    failure_reason: Optional[str] = None

    @property
    def is_trusted(self) -> bool:
        return self.failure_reason is None and self.confidence > 0.0


class MagneticConfidence:
    """Rolling magnetometer confidence in [0, 1]."""

    def __init__(
        self,
        expected_norm: float = 50.0,
        history_size: int = 50,
        min_samples: int = 10,
        variance_scale: float = 5.0
    ):
        """Initialize confidence tracker.

        Args:
            expected_norm: Expected Earth field magnitude in uT.
            history_size: Number of magnitudes kept.
            min_samples: Samples needed before confidence is non-zero.
            variance_scale: Variance (uT^2) at which stability reaches zero.
        """
        self.expected_norm = expected_norm
        self.min_samples = min_samples
        self.variance_scale = variance_scale

        self.magnitude_history: Deque[float] = deque(maxlen=history_size)
        self.confidence = 0.0

        # Running statistics
        self.total_checks = 0
        self.failures = 0

    def update(self, mag: NDArray[np.float64]) -> MagConfidenceStatus:
        """Add a magnetometer reading and recompute confidence.

        Args:
            mag: Magnetometer reading [mx, my, mz] in uT.
        """
        self.total_checks += 1
        mag = np.asarray(mag, dtype=np.float64)

        if not np.all(np.isfinite(mag)):
            self.failures += 1
            return self._status(float("nan"), 0.0, 0.0, "non_finite_values")

        magnitude = float(np.linalg.norm(mag))
        self.magnitude_history.append(magnitude)

        if len(self.magnitude_history) < self.min_samples:
            self.confidence = 0.0
            return self._status(magnitude, 0.0, 0.0, "insufficient_history")

        history = np.array(self.magnitude_history)
        mean = float(np.mean(history))
        variance = float(np.var(history))

        stability = max(0.0, 1.0 - variance / self.variance_scale)
        accuracy = max(0.0, 1.0 - abs(mean - self.expected_norm) / self.expected_norm)
        self.confidence = stability * accuracy

        return MagConfidenceStatus(
            confidence=self.confidence,
            magnitude=magnitude,
            mean_magnitude=mean,
            variance=variance,
            stability_score=stability,
            accuracy_score=accuracy,
        )

    def _status(
        self,
        magnitude: float,
        stability: float,
        accuracy: float,
        reason: str
    ) -> MagConfidenceStatus:
        history = list(self.magnitude_history)
        return MagConfidenceStatus(
            confidence=self.confidence,
            magnitude=magnitude,
            mean_magnitude=float(np.mean(history)) if history else 0.0,
            variance=float(np.var(history)) if history else 0.0,
            stability_score=stability,
            accuracy_score=accuracy,
            failure_reason=reason,
        )

    def get_stats(self) -> dict:
        """Get tracker statistics."""
        return {
            "confidence": self.confidence,
            "history_size": len(self.magnitude_history),
            "total_checks": self.total_checks,
            "failures": self.failures,
        }

    def reset(self) -> None:
        """Reset tracker state."""
        self.magnitude_history.clear()
        self.confidence = 0.0
