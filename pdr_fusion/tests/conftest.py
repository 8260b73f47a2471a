"""Pytest fixtures for the PDR fusion tests."""

from typing import List, Tuple

import numpy as np
import pytest

from pdr_fusion.core.config import Config
from pdr_fusion.core.types import NS_PER_S
from pdr_fusion.fusion.ekf import PdrEKF
from pdr_fusion.fusion.engine import FusionEngine
from pdr_fusion.fusion.vector_map import VectorMap


class EventSink:
    """Collects diagnostic events as (kind, message, data) tuples."""

    def __init__(self):
        self.events: List[Tuple[str, str, dict]] = []

    def __call__(self, kind: str, message: str, **data) -> None:
        self.events.append((kind, message, data))

    def kinds(self) -> List[str]:
        return [kind for kind, _, _ in self.events]


def seconds(t: float) -> int:
    """Seconds to monotonic nanoseconds."""
    return int(round(t * NS_PER_S))


@pytest.fixture
def config() -> Config:
    """Create default configuration for tests."""
    return Config()


@pytest.fixture
def sink() -> EventSink:
    """Diagnostic sink recording every event."""
    return EventSink()


@pytest.fixture
def ekf(config: Config, sink: EventSink) -> PdrEKF:
    """Filter at the origin with default settings."""
    return PdrEKF(config.ekf, emit=sink)


@pytest.fixture
def engine(config: Config) -> FusionEngine:
    """Engine with default settings and no map."""
    return FusionEngine(config)


@pytest.fixture
def corridor_map() -> VectorMap:
    """A single north-south corridor along x = 0."""
    return VectorMap(corridors=[[(0.0, 0.0), (0.0, 100.0)]])


@pytest.fixture
def rest_samples():
    """Device lying flat at rest, sampled at 50 Hz.

    Returns a function giving a list of (t_ns, acc, gyro) tuples.
    """
    def make(duration_s: float, start_s: float = 0.0, rate_hz: float = 50.0):
        count = int(round(duration_s * rate_hz)) + 1
        acc = np.array([0.0, 0.0, -9.81])
        gyro = np.zeros(3)
        return [(seconds(start_s + i / rate_hz), acc, gyro) for i in range(count)]

    return make
