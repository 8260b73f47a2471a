"""Performance metrics for the fusion tick loop."""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import numpy as np

from ..core.config import MonitoringConfig
from ..core.types import NS_PER_S

logger = logging.getLogger(__name__)


@dataclass
class TickMetrics:
    """Metrics for a single tick."""
    t_ns: int
    dt_ms: float
    processing_ms: float
    samples: int
    iteration: int


@dataclass
class PerformanceStats:
    """Aggregated performance statistics."""
    mean_dt_ms: float
    std_dt_ms: float
    max_dt_ms: float
    mean_processing_ms: float
    max_processing_ms: float
    effective_rate_hz: float
    dropped_samples: int
    total_ticks: int
    total_samples: int

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "rate_hz": self.effective_rate_hz,
            "dt_mean_ms": self.mean_dt_ms,
            "dt_std_ms": self.std_dt_ms,
            "dt_max_ms": self.max_dt_ms,
            "processing_mean_ms": self.mean_processing_ms,
            "processing_max_ms": self.max_processing_ms,
            "dropped_samples": self.dropped_samples,
            "total_ticks": self.total_ticks,
            "total_samples": self.total_samples,
        }


class PerformanceMonitor:
    """Tracks tick timing in sensor time and processing cost in wall time.

    Statistics are logged every log_interval_s of sensor time.
    """

    def __init__(self, config: Optional[MonitoringConfig] = None):
        self._cfg = config if config is not None else MonitoringConfig()

        window = self._cfg.window_size
        self._dt_history: Deque[float] = deque(maxlen=window)
        self._processing_history: Deque[float] = deque(maxlen=window)

        self._ticks = 0
        self._samples = 0
        self._dropped_samples = 0
        self._last_t_ns: Optional[int] = None
        self._last_log_ns: Optional[int] = None
        self._tick_start: Optional[float] = None

    def start_tick(self) -> None:
        """Mark the start of a tick."""
        self._tick_start = time.perf_counter()

    def end_tick(self, t_ns: int, samples: int = 0) -> TickMetrics:
        """Mark the end of a tick and compute its metrics.

        Args:
            t_ns: Sensor time of the tick.
            samples: Number of samples drained during the tick.
        """
        processing_ms = 0.0
        if self._tick_start is not None:
            processing_ms = (time.perf_counter() - self._tick_start) * 1000
            self._tick_start = None

        dt_ms = 0.0
        if self._last_t_ns is not None:
            dt_ms = (t_ns - self._last_t_ns) / 1e6
            self._dt_history.append(dt_ms)

        self._processing_history.append(processing_ms)
        self._last_t_ns = t_ns
        self._ticks += 1
        self._samples += samples

        self._maybe_log_stats(t_ns)

        return TickMetrics(
            t_ns=t_ns,
            dt_ms=dt_ms,
            processing_ms=processing_ms,
            samples=samples,
            iteration=self._ticks,
        )

    def record_dropped(self, count: int = 1) -> None:
        """Count samples dropped before reaching the filter."""
        self._dropped_samples += count

    def _maybe_log_stats(self, t_ns: int) -> None:
        if self._last_log_ns is None:
            self._last_log_ns = t_ns
            return
        if t_ns - self._last_log_ns < self._cfg.log_interval_s * NS_PER_S:
            return

        stats = self.get_stats()
        logger.info(
            "Performance: rate=%.1f Hz, dt=%.2f+/-%.2f ms, tick=%.3f ms, dropped=%d",
            stats.effective_rate_hz,
            stats.mean_dt_ms,
            stats.std_dt_ms,
            stats.mean_processing_ms,
            stats.dropped_samples,
        )
        self._last_log_ns = t_ns

    def get_stats(self) -> PerformanceStats:
        """Aggregated statistics over the current window."""
        if not self._dt_history:
            return PerformanceStats(
                mean_dt_ms=0.0,
                std_dt_ms=0.0,
                max_dt_ms=0.0,
                mean_processing_ms=float(np.mean(self._processing_history)) if self._processing_history else 0.0,
                max_processing_ms=float(np.max(self._processing_history)) if self._processing_history else 0.0,
                effective_rate_hz=0.0,
                dropped_samples=self._dropped_samples,
                total_ticks=self._ticks,
                total_samples=self._samples,
            )

        dt_array = np.array(self._dt_history)
        processing = np.array(self._processing_history)
        mean_dt = float(np.mean(dt_array))

        return PerformanceStats(
            mean_dt_ms=mean_dt,
            std_dt_ms=float(np.std(dt_array)),
            max_dt_ms=float(np.max(dt_array)),
            mean_processing_ms=float(np.mean(processing)),
            max_processing_ms=float(np.max(processing)),
            effective_rate_hz=1000.0 / mean_dt if mean_dt > 0 else 0.0,
            dropped_samples=self._dropped_samples,
            total_ticks=self._ticks,
            total_samples=self._samples,
        )

    def reset(self) -> None:
        """Reset all metrics."""
        self._dt_history.clear()
        self._processing_history.clear()
        self._ticks = 0
        self._samples = 0
        self._dropped_samples = 0
        self._last_t_ns = None
        self._last_log_ns = None
        self._tick_start = None
