"""Step detection and pedestrian dead reckoning.

Steps are found as peaks of the detrended vertical acceleration. Each step
gets a length, either reported by an external pedometer or derived from the
cadence, and a heading looked up in the smoothed-heading history. The
resulting displacement is accumulated until the filter consumes it at predict
time.
"""

import logging
import math
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from ..core.angles import angle_diff, wrap_angle
from ..core.config import StepConfig
from ..core.types import MotionMode, PdrIncrement, StepEvent, StepInput, ns_to_s

logger = logging.getLogger(__name__)

HeadingLookup = Callable[[int], Optional[float]]

MIN_PEAK_SAMPLES = 5
STEP_HISTORY_SIZE = 100
MAX_CONFIDENCE = 0.95


def detrend(values: NDArray[np.float64], window: int) -> NDArray[np.float64]:
    """Absolute deviation from a trailing moving average.

    Args:
        values: Signal samples, oldest first.
        window: Moving average length (shorter at the start of the signal).
    """
    csum = np.cumsum(np.insert(values, 0, 0.0))
    idx = np.arange(1, len(values) + 1)
    start = np.maximum(idx - window, 0)
    trend = (csum[idx] - csum[start]) / (idx - start)
    return np.abs(values - trend)


def length_factor(cadence: float) -> float:
    """Biomechanical step-length factor k(c), clamped to [0.6, 1.4]."""
    if cadence > 2.5:
        k = 0.85 + 0.1 * (3.0 - cadence)
    elif cadence < 1.0:
        k = 1.15 + 0.2 * (1.0 - cadence)
    else:
        k = 1.15 - (cadence - 1.0) * (0.25 / 1.5)
    return float(np.clip(k, 0.6, 1.4))


class StepDetector:
    """Adaptive-threshold peak detector with PDR integration.

    Usage:
        detector = StepDetector(config.step)
        event = detector.add_sample(vertical_acc, t_ns, mode, smoother.heading_at)
        increment = detector.take_increment()
    """

    def __init__(self, config: Optional[StepConfig] = None):
        self._cfg = config if config is not None else StepConfig()

        self._buffer: Deque[Tuple[int, float]] = deque(maxlen=self._cfg.buffer_size)
        self.steps: Deque[StepEvent] = deque(maxlen=STEP_HISTORY_SIZE)
        self._step_times: Deque[int] = deque(maxlen=self._cfg.cadence_steps)
        self.step_count = 0
        self.total_distance = 0.0
        self.last_threshold: Optional[float] = None
        self.last_step_ns: Optional[int] = None
        self.rejected_steps = 0

        # Step cap state for the current stationary interval
        self._mode: Optional[MotionMode] = None
        self._stationary_steps = 0

        self._gyro_norms: Deque[float] = deque(maxlen=self._cfg.gyro_buffer_size)

        self.pdr_position = np.zeros(2)
        self.pdr_heading = 0.0
        self._pending = np.zeros(4)  # dx, dy, dz, dtheta

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def add_sample(
        self,
        vertical_acc: float,
        t_ns: int,
        mode: MotionMode = MotionMode.WALKING,
        heading_fn: Optional[HeadingLookup] = None
    ) -> Optional[StepEvent]:
        """Add one vertical acceleration sample and test for a step.

        The candidate is the sample two positions back from the newest, so
        that it has two neighbours on either side.

        Returns:
            StepEvent if the candidate was accepted as a step.
        """
        if not math.isfinite(vertical_acc):
            return None
        self._observe_mode(mode)
        self._buffer.append((t_ns, float(vertical_acc)))
        if len(self._buffer) < MIN_PEAK_SAMPLES:
            return None

        times = [t for t, _ in self._buffer]
        signal = detrend(np.array([v for _, v in self._buffer]), self._cfg.detrend_window)
        i = len(signal) - 3

        if not self._is_peak(signal, i, mode):
            return None

        t_step = times[i]
        if not self._interval_ok(t_step, mode):
            return None
        if not self._accept(t_step, mode, check_gyro=True):
            return None

        mean, std = float(np.mean(signal)), float(np.std(signal))
        coherence = 1.0 if std == 0.0 else min(1.0, (signal[i] - mean) / (3.0 * std))
        heading = self._lookup_heading(t_step, heading_fn)
        return self._register_step(t_step, None, heading, coherence, "detector")

    def _threshold(self, mean: float, std: float, mode: MotionMode) -> float:
        cfg = self._cfg
        k = {
            MotionMode.WALKING: cfg.k_walking,
            MotionMode.RUNNING: cfg.k_running,
            MotionMode.CRAWLING: cfg.k_crawling,
        }.get(mode, cfg.k_default)
        if self.step_count < 10:
            k *= 0.9
        return float(np.clip(mean + k * std, cfg.absolute_floor, cfg.threshold_ceiling))

    def _is_peak(self, signal: NDArray[np.float64], i: int, mode: MotionMode) -> bool:
        mean, std = float(np.mean(signal)), float(np.std(signal))
        threshold = self._threshold(mean, std, mode)
        self.last_threshold = threshold

        current = signal[i]
        neighbours = np.concatenate([signal[i - 2:i], signal[i + 1:i + 3]])
        if not np.all(current > neighbours):
            return False
        if current <= threshold:
            return False
        if current <= self._cfg.neighbor_ratio * 0.5 * (signal[i - 1] + signal[i + 1]):
            return False
        return current > mean + self._cfg.strong_peak_sigma * std

    def _interval_ok(self, t_ns: int, mode: MotionMode) -> bool:
        if self.last_step_ns is None:
            return True
        cfg = self._cfg
        min_ms = {
            MotionMode.RUNNING: cfg.min_interval_running_ms,
            MotionMode.CRAWLING: cfg.min_interval_crawling_ms,
        }.get(mode, cfg.min_interval_walking_ms)
        return (t_ns - self.last_step_ns) >= min_ms * 1e6

    # ------------------------------------------------------------------
    # Acceptance guards
    # ------------------------------------------------------------------

    def add_gyro(self, gyro: NDArray[np.float64]) -> None:
        """Record a gyroscope sample (rad/s) for step confirmation."""
        norm = float(np.linalg.norm(gyro))
        if math.isfinite(norm):
            self._gyro_norms.append(norm)

    def _observe_mode(self, mode: MotionMode) -> None:
        if mode is MotionMode.STATIONARY and self._mode is not MotionMode.STATIONARY:
            self._stationary_steps = 0
        self._mode = mode

    def _accept(self, t_ns: int, mode: MotionMode, check_gyro: bool) -> bool:
        """Stationary cap, then the physiological guard once past the first steps."""
        cfg = self._cfg
        if mode is MotionMode.STATIONARY and self._stationary_steps >= cfg.stationary_step_limit:
            return self._reject("stationary step limit reached")
        if self.step_count <= cfg.guard_after_steps:
            return True

        frequency = self._frequency_with(t_ns)
        max_frequency = self.max_frequency(mode)
        if frequency > max_frequency:
            return self._reject(f"step frequency {frequency:.2f} Hz > {max_frequency:.1f} Hz")
        if check_gyro and cfg.gyro_confirmation and not self._gyro_confirms():
            return self._reject("no rotation to confirm the step")
        return True

    def _reject(self, reason: str) -> bool:
        self.rejected_steps += 1
        logger.debug("Step rejected: %s", reason)
        return False

    def max_frequency(self, mode: MotionMode) -> float:
        """Highest plausible step frequency in Hz for a mode."""
        cfg = self._cfg
        return {
            MotionMode.WALKING: cfg.max_frequency_walking_hz,
            MotionMode.RUNNING: cfg.max_frequency_running_hz,
            MotionMode.STATIONARY: cfg.max_frequency_stationary_hz,
        }.get(mode, cfg.max_frequency_default_hz)

    def _frequency_with(self, t_ns: int) -> float:
        # Recent steps plus the candidate
        times = list(self._step_times)[-(self._cfg.cadence_steps - 1):] + [t_ns]
        span = ns_to_s(times[-1] - times[0])
        if len(times) < 2 or span <= 0.0:
            return 0.0
        return (len(times) - 1) / span

    def _gyro_confirms(self) -> bool:
        cfg = self._cfg
        if len(self._gyro_norms) < cfg.gyro_min_samples:
            return True
        recent = list(self._gyro_norms)[-cfg.gyro_window:]
        threshold = cfg.gyro_confirmation_threshold
        return max(recent) > threshold or float(np.mean(recent)) > 0.5 * threshold

    def add_external(
        self,
        step: StepInput,
        t_ns: int,
        mode: MotionMode = MotionMode.WALKING,
        heading_fn: Optional[HeadingLookup] = None
    ) -> Optional[StepEvent]:
        """Register a step reported by an external pedometer.

        Missing length falls back to the cadence model, missing heading to
        the smoothed-heading history. The stationary cap and the step
        frequency guard apply; gyro confirmation does not.
        """
        self._observe_mode(mode)
        if not self._accept(t_ns, mode, check_gyro=False):
            return None
        if step.heading is not None:
            heading = wrap_angle(step.heading)
        else:
            heading = self._lookup_heading(t_ns, heading_fn)
        return self._register_step(t_ns, step.length, heading, 1.0, "external")

    def _lookup_heading(self, t_ns: int, heading_fn: Optional[HeadingLookup]) -> float:
        if heading_fn is not None:
            heading = heading_fn(t_ns)
            if heading is not None:
                return heading
        return self.pdr_heading

    # ------------------------------------------------------------------
    # PDR integration
    # ------------------------------------------------------------------

    def _register_step(
        self,
        t_ns: int,
        length: Optional[float],
        heading: float,
        coherence: float,
        source: str
    ) -> StepEvent:
        self.step_count += 1
        if self._mode is MotionMode.STATIONARY:
            self._stationary_steps += 1
        self.last_step_ns = t_ns
        self._step_times.append(t_ns)

        cadence = self.cadence
        if length is None:
            length = self.step_length(cadence)

        dx = length * math.sin(heading)
        dy = length * math.cos(heading)

        plausibility = 1.0 if 0.5 <= cadence <= 3.5 else 0.5
        confidence = float(np.clip(0.5 * plausibility + 0.5 * coherence, 0.0, MAX_CONFIDENCE))

        self._pending += (dx, dy, 0.0, angle_diff(heading, self.pdr_heading))
        self.pdr_position += (dx, dy)
        self.pdr_heading = heading
        self.total_distance += length

        event = StepEvent(t_ns=t_ns, length=length, dx=dx, dy=dy, heading=heading,
                          confidence=confidence, source=source)
        self.steps.append(event)
        logger.debug("Step %d (%s): length=%.2f m heading=%.3f cadence=%.2f",
                     self.step_count, source, length, heading, cadence)
        return event

    @property
    def cadence(self) -> float:
        """Steps per second over the most recent steps."""
        times = self._step_times
        if len(times) < 2:
            return self._cfg.default_cadence
        span = ns_to_s(times[-1] - times[0])
        if span <= 0.0:
            return self._cfg.default_cadence
        return (len(times) - 1) / span

    def step_length(self, cadence: Optional[float] = None) -> float:
        """Adaptive step length in metres for the given cadence."""
        c = self.cadence if cadence is None else cadence
        base = self._cfg.height_ratio * self._cfg.user_height_m
        return base * length_factor(c)

    def step_times_since(self, t_ns: int) -> List[int]:
        """Timestamps of recorded steps strictly after t_ns."""
        return [s.t_ns for s in self.steps if s.t_ns > t_ns]

    def take_increment(self) -> PdrIncrement:
        """Return and clear the displacement accumulated since the last call."""
        dx, dy, dz, dtheta = self._pending
        self._pending = np.zeros(4)
        return PdrIncrement(dx=float(dx), dy=float(dy), dz=float(dz), dtheta=float(dtheta))

    def status(self) -> dict:
        """Detector state for host reporting."""
        return {
            "step_count": self.step_count,
            "rejected_steps": self.rejected_steps,
            "cadence": self.cadence,
            "step_length": self.step_length(),
            "total_distance": self.total_distance,
            "last_threshold": self.last_threshold,
            "pdr_position": self.pdr_position.tolist(),
            "pdr_heading": self.pdr_heading,
        }

    def reset(self, x: float = 0.0, y: float = 0.0, heading: float = 0.0) -> None:
        """Clear buffers and restart the dead-reckoned track at (x, y)."""
        self._buffer.clear()
        self.steps.clear()
        self._step_times.clear()
        self.step_count = 0
        self.total_distance = 0.0
        self.last_threshold = None
        self.last_step_ns = None
        self.rejected_steps = 0
        self._mode = None
        self._stationary_steps = 0
        self._gyro_norms.clear()
        self.pdr_position = np.array([x, y], dtype=np.float64)
        self.pdr_heading = wrap_angle(heading)
        self._pending = np.zeros(4)
