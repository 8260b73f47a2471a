"""Fusion coordinator.

Main interface combining:
- OrientationSmoother for the compass heading
- AttitudeTracker for the device attitude and rest detection
- StepDetector for step events and the dead-reckoned track
- PdrEKF for the fused pose

Samples are pushed into a bounded, time-ordered queue and consumed by tick().
Within a tick the filter runs predict, barometer, heading, PDR position, ZUPT
and map matching, in that order.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Optional, Union

import numpy as np
from numpy.typing import NDArray

from ..core.config import Config
from ..core.errors import EngineCorrupt
from ..core.linalg import is_finite
from ..core.types import (
    NS_PER_S,
    AttitudeStatus,
    HeadingEstimate,
    MotionMode,
    Pose,
    SensorKind,
    SensorSample,
    StepEvent,
    ns_to_s,
)
from ..core.validation import validate_sample
from ..monitoring.diagnostics import DiagnosticLog
from ..monitoring.metrics import PerformanceMonitor, PerformanceStats
from .attitude import AttitudeTracker
from .ekf import PdrEKF
from .orientation import OrientationSmoother
from .step_detector import StepDetector
from .vector_map import VectorMap

logger = logging.getLogger(__name__)


@dataclass
class EngineStatus:
    """Current status of the fusion engine."""
    pose: Pose
    mode: MotionMode
    manual_mode: bool
    tick_count: int
    queue_depth: int
    zupt_count: int
    mean_innovation: float
    attitude: AttitudeStatus
    heading: dict
    steps: dict
    diagnostics: dict
    performance: PerformanceStats
    healthy: bool
    stopped: bool

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "pose": self.pose.to_dict(),
            "mode": self.mode.value,
            "manual_mode": self.manual_mode,
            "tick_count": self.tick_count,
            "queue_depth": self.queue_depth,
            "zupt_count": self.zupt_count,
            "mean_innovation": self.mean_innovation,
            "attitude": self.attitude.to_dict(),
            "heading": self.heading,
            "steps": self.steps,
            "diagnostics": self.diagnostics,
            "performance": self.performance.to_dict(),
            "healthy": self.healthy,
            "stopped": self.stopped,
        }


class FusionEngine:
    """Engine handle owning every fusion component.

    Usage:
        engine = FusionEngine(load_config())
        engine.push_sample("accel", (0.0, 0.0, -9.81), t_ns)
        engine.push_sample("gyro", (0.0, 0.0, 0.0), t_ns)
        pose = engine.tick(t_ns)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        vector_map: Optional[Union[VectorMap, dict]] = None
    ):
        """Initialize engine.

        Args:
            config: Complete configuration. Defaults apply if None.
            vector_map: Optional corridor map, as a VectorMap or a mapping
                with "corridors" and "walls".
        """
        self.config = config if config is not None else Config()
        cfg = self.config

        self.diagnostics = DiagnosticLog(cfg.monitoring.diagnostics_size)
        self.metrics = PerformanceMonitor(cfg.monitoring)
        self._clock_ns = 0

        self.ekf = PdrEKF(cfg.ekf, emit=self._emit)
        self.attitude = AttitudeTracker(cfg.attitude, cfg.calibration, emit=self._emit)
        self.smoother = OrientationSmoother(cfg.orientation, emit=self._emit)
        self.detector = StepDetector(cfg.step)

        self._queue: Deque[SensorSample] = deque()
        self._last_pushed_ns: Optional[int] = None
        self._last_tick_ns: Optional[int] = None

        self.mode = MotionMode.parse(cfg.engine.initial_mode)
        self._manual_mode: Optional[MotionMode] = None
        self.ekf.set_mode(self.mode)

        # Latest inputs between ticks
        self._gyro: NDArray[np.float64] = np.zeros(3)
        self._mag: Optional[NDArray[np.float64]] = None
        self._last_imu_ns: Optional[int] = None
        self._pending_baro: Optional[float] = None
        self._pending_heading: Optional[HeadingEstimate] = None
        self._steps_this_tick = 0

        self._last_pose = self.ekf.get_pose(0)
        self._stopped = False
        self._corrupt = False
        self.tick_count = 0
        self.zupt_count = 0

        if vector_map is not None:
            self.set_vector_map(vector_map)

    def _emit(self, kind: str, message: str, **data) -> None:
        # An explicit t_ns stamps the event, otherwise the current tick time
        t_ns = data.pop("t_ns", self._clock_ns)
        self.diagnostics.record(kind, message, t_ns, **data)

    # ------------------------------------------------------------------
    # Host interface
    # ------------------------------------------------------------------

    def push_sample(self, kind: Union[SensorKind, str], payload: Any, t_ns: int) -> bool:
        """Queue one sensor sample.

        Args:
            kind: Sensor kind or its string value.
            payload: Kind-specific payload (see SensorSample).
            t_ns: Sensor timestamp in monotonic nanoseconds.

        Returns:
            True if the sample was queued.
        """
        if self._stopped:
            return False

        kind = SensorKind(kind)
        check = validate_sample(kind, payload)
        if not check.is_valid:
            logger.warning("Sample rejected: %s", "; ".join(check.errors))
            self._emit("invalid_dimension", "; ".join(check.errors), sensor=kind.value)
            self.metrics.record_dropped()
            return False

        if self._last_pushed_ns is not None and t_ns < self._last_pushed_ns:
            logger.warning("Out-of-order %s sample dropped (%d < %d)",
                           kind.value, t_ns, self._last_pushed_ns)
            self._emit("stale_sample", "Out-of-order sample dropped",
                       sensor=kind.value, t_ns=t_ns)
            self.metrics.record_dropped()
            return False

        if len(self._queue) >= self.config.engine.queue_size:
            dropped = self._queue.popleft()
            logger.warning("Sample queue full, dropping oldest %s sample", dropped.kind.value)
            self._emit("queue_overflow", "Sample queue full",
                       sensor=dropped.kind.value, t_ns=dropped.t_ns)
            self.metrics.record_dropped()

        if kind in (SensorKind.ACCEL, SensorKind.GYRO, SensorKind.MAG):
            payload = np.asarray(payload, dtype=np.float64)
        elif kind is SensorKind.BARO:
            payload = float(payload)

        self._queue.append(SensorSample(kind=kind, payload=payload, t_ns=t_ns))
        self._last_pushed_ns = t_ns
        return True

    def tick(self, t_ns: int) -> Pose:
        """Consume queued samples up to t_ns and run one filter cycle.

        Returns:
            The pose after this tick, or the previous pose when the tick is
            stale or the engine is stopped.

        Raises:
            EngineCorrupt: If the filter state is non-finite after recovery.
        """
        if self._corrupt:
            raise EngineCorrupt("Engine state is corrupt; reset() required")
        if self._stopped:
            return self._last_pose

        if self._last_tick_ns is not None and t_ns <= self._last_tick_ns:
            message = f"Non-increasing tick time {t_ns} <= {self._last_tick_ns}"
            logger.warning("%s", message)
            self._emit("stale_tick", message, t_ns=t_ns)
            return self._last_pose

        self._clock_ns = t_ns
        self.metrics.start_tick()
        drained = self._drain(t_ns)

        if self._last_tick_ns is None:
            # First tick only establishes the time base
            self._last_tick_ns = t_ns
            self.ekf.periodic_check(t_ns)
            self._steps_this_tick = 0
            self._last_pose = self.ekf.get_pose(t_ns)
            self.metrics.end_tick(t_ns, drained)
            return self._last_pose

        dt = ns_to_s(t_ns - self._last_tick_ns)
        self._last_tick_ns = t_ns

        self._classify_mode(t_ns)
        self._run_filter(dt)
        self.ekf.periodic_check(t_ns)

        self._check_health(t_ns)
        self.tick_count += 1
        self._last_pose = self.ekf.get_pose(t_ns)
        self.metrics.end_tick(t_ns, drained)
        return self._last_pose

    def _run_filter(self, dt: float) -> None:
        ekf = self.ekf
        ekf.predict(dt, self.detector.take_increment())

        if self._pending_baro is not None:
            ekf.update_barometer(self._pending_baro)
            self._pending_baro = None

        heading = self._pending_heading
        if heading is not None and heading.confidence > self.config.engine.heading_confidence_threshold:
            ekf.update_heading(heading.heading, heading.confidence)
        self._pending_heading = None

        if self.config.engine.pdr_position_update and self._steps_this_tick:
            ekf.update_pdr(self.detector.pdr_position, self.detector.pdr_heading, self.mode)
        self._steps_this_tick = 0

        if self.mode is MotionMode.STATIONARY:
            if ekf.apply_zupt().applied:
                self.zupt_count += 1

        ekf.apply_map_match()

    def _check_health(self, t_ns: int) -> None:
        if is_finite(self.ekf.x, self.ekf.P):
            return
        self._corrupt = True
        message = "Filter state non-finite after recovery"
        logger.error("%s", message)
        self._emit("engine_corrupt", message, t_ns=t_ns)
        raise EngineCorrupt(message)

    # ------------------------------------------------------------------
    # Sample dispatch
    # ------------------------------------------------------------------

    def _drain(self, t_ns: int) -> int:
        count = 0
        while self._queue and self._queue[0].t_ns <= t_ns:
            self._dispatch(self._queue.popleft())
            count += 1
        return count

    def _dispatch(self, sample: SensorSample) -> None:
        kind = sample.kind
        if kind is SensorKind.ACCEL:
            self._on_accel(sample.payload, sample.t_ns)
        elif kind is SensorKind.GYRO:
            self._gyro = sample.payload
            self.detector.add_gyro(sample.payload)
        elif kind is SensorKind.MAG:
            self._mag = sample.payload
        elif kind is SensorKind.BARO:
            self._pending_baro = sample.payload
        elif kind is SensorKind.COMPASS_HEADING:
            estimate = self.smoother.update(sample.payload.heading, sample.payload.accuracy, sample.t_ns)
            if estimate is not None:
                self._pending_heading = estimate
        elif kind is SensorKind.STEP_EVENT:
            event = self.detector.add_external(sample.payload, sample.t_ns, self.mode,
                                               self.smoother.heading_at)
            self._on_step(event)

    def _on_accel(self, acc: NDArray[np.float64], t_ns: int) -> None:
        if self._last_imu_ns is None:
            # Nominal sample period until a second sample arrives
            dt = 1.0 / self.config.attitude.update_rate_hz
        else:
            dt = ns_to_s(t_ns - self._last_imu_ns)
        self._last_imu_ns = t_ns

        # A magnetometer sample is folded in once
        self.attitude.update(acc, self._gyro, self._mag, dt, t_ns)
        self._mag = None

        vertical = self.attitude.to_world_vertical(acc)
        event = self.detector.add_sample(vertical, t_ns, self.mode, self.smoother.heading_at)
        self._on_step(event)

    def _on_step(self, event: Optional[StepEvent]) -> None:
        if event is None:
            return
        self._steps_this_tick += 1
        self._emit("step", "Step detected", length=event.length, heading=event.heading,
                   confidence=event.confidence, source=event.source)

    # ------------------------------------------------------------------
    # Mode
    # ------------------------------------------------------------------

    def _classify_mode(self, t_ns: int) -> None:
        if self._manual_mode is not None:
            self._apply_mode(self._manual_mode)
            return

        window_s = self.config.engine.mode_window_s
        recent = self.detector.step_times_since(t_ns - int(window_s * NS_PER_S))
        if recent:
            rate = len(recent) / window_s
            if rate >= self.config.engine.running_cadence:
                mode = MotionMode.RUNNING
            else:
                mode = MotionMode.WALKING
        elif self.attitude.is_stable:
            mode = MotionMode.STATIONARY
        else:
            mode = self.mode
        self._apply_mode(mode)

    def _apply_mode(self, mode: MotionMode) -> None:
        if mode is self.mode:
            return
        previous = self.mode
        self.mode = mode
        self.ekf.set_mode(mode)
        logger.info("Mode changed: %s -> %s", previous.value, mode.value)
        self._emit("mode_changed", f"{previous.value} -> {mode.value}",
                   previous=previous.value, mode=mode.value)

    def set_mode(self, mode: Optional[Union[MotionMode, str]]) -> None:
        """Force a mode, or pass None to return to automatic classification."""
        if mode is None:
            self._manual_mode = None
            logger.info("Mode classification back to automatic")
            return
        self._manual_mode = MotionMode.parse(mode)
        self._apply_mode(self._manual_mode)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_vector_map(self, vector_map: Optional[Union[VectorMap, dict]]) -> None:
        """Install a corridor map (VectorMap or mapping), or clear it with None."""
        if isinstance(vector_map, dict):
            vector_map = VectorMap.from_dict(vector_map)
        self.ekf.set_vector_map(vector_map)

    def reset(self, x: float = 0.0, y: float = 0.0, z: float = 0.0, theta: float = 0.0) -> None:
        """Restart the pose at (x, y, z, theta).

        Queued samples, the time base and the attitude are kept.
        """
        self.ekf.reset(x, y, z, theta)
        self.ekf.set_mode(self.mode)
        self.detector.reset(x, y, theta)
        self._pending_baro = None
        self._pending_heading = None
        self._steps_this_tick = 0
        self._corrupt = False
        self._last_pose = self.ekf.get_pose(self._last_tick_ns or 0)
        logger.info("Engine reset at (%.2f, %.2f, %.2f) theta=%.3f", x, y, z, theta)

    def stop(self) -> None:
        """Stop processing; later ticks return the last pose."""
        self._stopped = True
        logger.info("Fusion engine stopped after %d ticks", self.tick_count)

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def last_pose(self) -> Pose:
        return self._last_pose

    def status(self) -> EngineStatus:
        """Complete engine status."""
        return EngineStatus(
            pose=self._last_pose,
            mode=self.mode,
            manual_mode=self._manual_mode is not None,
            tick_count=self.tick_count,
            queue_depth=len(self._queue),
            zupt_count=self.zupt_count,
            mean_innovation=self.ekf.mean_innovation(),
            attitude=self.attitude.status(),
            heading=self.smoother.status(),
            steps=self.detector.status(),
            diagnostics=self.diagnostics.counts(),
            performance=self.metrics.get_stats(),
            healthy=self.ekf.is_healthy() and not self._corrupt,
            stopped=self._stopped,
        )
