"""Continuous heading from a native compass source.

Raw headings are smoothed along the shortest arc and their reported accuracy
is watched for persistent drift. A short history of smoothed headings lets the
step detector look up the heading at the time a step happened.
"""

import logging
import math
from collections import deque
from typing import Callable, Deque, Optional, Tuple

import numpy as np

from ..core.angles import angle_diff, interpolate_angle, wrap_angle
from ..core.config import OrientationConfig
from ..core.types import NS_PER_S, DriftEvent, HeadingEstimate

logger = logging.getLogger(__name__)

DiagnosticSink = Callable[..., None]


class OrientationSmoother:
    """Shortest-arc exponential smoothing of compass headings.

    Args:
        config: Smoothing and drift settings.
        emit: Diagnostic sink called as emit(kind, message, **data).
    """

    def __init__(
        self,
        config: Optional[OrientationConfig] = None,
        emit: Optional[DiagnosticSink] = None
    ):
        self._cfg = config if config is not None else OrientationConfig()
        self._emit = emit

        self.heading: Optional[float] = None
        self.confidence = 0.0
        self._accuracies: Deque[float] = deque(maxlen=self._cfg.accuracy_window)
        self._history: Deque[Tuple[int, float]] = deque()
        self._last_drift_ns: Optional[int] = None

        self.update_count = 0
        self.drift_count = 0

    @property
    def alpha(self) -> float:
        return self._cfg.alpha

    def update(
        self,
        h_raw: Optional[float],
        accuracy: float,
        t_ns: int
    ) -> Optional[HeadingEstimate]:
        """Fold one compass reading into the smoothed heading.

        Args:
            h_raw: Raw heading, degrees or radians per configuration. None
                when the compass has nothing to report.
            accuracy: Reported accuracy in degrees (larger is worse).
            t_ns: Sensor timestamp in monotonic nanoseconds.

        Returns:
            HeadingEstimate, or None when the reading carried no heading.
        """
        if h_raw is None or not math.isfinite(h_raw):
            return None

        measured = math.radians(h_raw) if self._cfg.heading_in_degrees else float(h_raw)
        measured = wrap_angle(measured)

        if self.heading is None:
            self.heading = measured
        else:
            self.heading = wrap_angle(self.heading + self._cfg.alpha * angle_diff(measured, self.heading))

        accuracy = float(accuracy) if accuracy is not None and math.isfinite(accuracy) else 0.0
        threshold = self._cfg.drift_threshold_deg
        self.confidence = float(np.clip(1.0 - abs(accuracy) / threshold, 0.0, 1.0))

        self._remember(self.heading, t_ns)
        self.update_count += 1

        drift = self._check_drift(abs(accuracy), t_ns)
        return HeadingEstimate(heading=self.heading, confidence=self.confidence, drift=drift)

    def _remember(self, heading: float, t_ns: int) -> None:
        self._history.append((t_ns, heading))
        horizon = t_ns - int(self._cfg.history_s * NS_PER_S)
        while len(self._history) > 1 and self._history[0][0] < horizon:
            self._history.popleft()

    def _check_drift(self, accuracy: float, t_ns: int) -> Optional[DriftEvent]:
        self._accuracies.append(accuracy)
        if len(self._accuracies) < self._accuracies.maxlen:
            return None

        mean = float(np.mean(self._accuracies))
        if mean <= self._cfg.drift_threshold_deg:
            return None

        interval_ns = int(self._cfg.notification_interval_s * NS_PER_S)
        if self._last_drift_ns is not None and t_ns - self._last_drift_ns < interval_ns:
            return None

        self._last_drift_ns = t_ns
        self.drift_count += 1
        logger.warning("Persistent compass drift: mean accuracy %.1f deg", mean)
        if self._emit is not None:
            self._emit("drift", "Persistent compass drift", mean_accuracy=mean)
        return DriftEvent(mean_accuracy=mean, t_ns=t_ns)

    def heading_at(self, t_ns: int) -> Optional[float]:
        """Smoothed heading at t_ns, interpolated on the circle.

        Times outside the history are clamped to its ends.
        """
        if not self._history:
            return self.heading

        first_t, first_h = self._history[0]
        if t_ns <= first_t:
            return first_h

        prev_t, prev_h = first_t, first_h
        for cur_t, cur_h in self._history:
            if cur_t >= t_ns:
                if cur_t == prev_t:
                    return cur_h
                fraction = (t_ns - prev_t) / (cur_t - prev_t)
                return interpolate_angle(prev_h, cur_h, fraction)
            prev_t, prev_h = cur_t, cur_h
        return prev_h

    def reset_drift_history(self) -> None:
        """Forget accuracy readings and the last drift notification."""
        self._accuracies.clear()
        self._last_drift_ns = None

    def status(self) -> dict:
        """Smoother state for host reporting."""
        return {
            "heading": self.heading,
            "heading_deg": None if self.heading is None else math.degrees(self.heading),
            "confidence": self.confidence,
            "mean_accuracy": float(np.mean(self._accuracies)) if self._accuracies else 0.0,
            "update_count": self.update_count,
            "drift_count": self.drift_count,
        }

    def reset(self) -> None:
        """Forget the heading and all history."""
        self.heading = None
        self.confidence = 0.0
        self._history.clear()
        self.reset_drift_history()
        self.update_count = 0
        self.drift_count = 0
