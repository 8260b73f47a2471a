"""Tests for the fusion engine."""

import json
import math

import numpy as np
import pytest

from pdr_fusion.core.config import Config
from pdr_fusion.core.errors import EngineCorrupt
from pdr_fusion.core.types import CompassReading, MotionMode, SensorKind, StepInput
from pdr_fusion.fusion.ekf import altitude_to_pressure
from pdr_fusion.fusion.engine import FusionEngine

MS = 1_000_000
SECOND = 1_000_000_000


def walk(engine, headings, length=0.75, interval_ns=500 * MS, start_ns=0):
    """Push one external step per heading and tick at each step time."""
    pose = None
    for k, heading in enumerate(headings, start=1):
        t = start_ns + k * interval_ns
        engine.push_sample(SensorKind.STEP_EVENT, StepInput(length=length, heading=heading), t)
        pose = engine.tick(t)
    return pose


def hold_still(engine, duration_s, start_ns=0, rate_hz=50):
    """Push level rest samples and tick at each one."""
    pose = None
    step = int(SECOND / rate_hz)
    for k in range(int(duration_s * rate_hz) + 1):
        t = start_ns + k * step
        engine.push_sample("accel", (0.0, 0.0, -9.81), t)
        engine.push_sample("gyro", (0.0, 0.0, 0.0), t)
        pose = engine.tick(t)
    return pose


class TestScenarios:
    """End-to-end behaviour on synthetic inputs."""

    def test_stationary_hold(self, engine):
        """Ten seconds at rest: no drift, high confidence, ZUPT applied."""
        pose = hold_still(engine, 10.0)

        assert math.hypot(pose.x, pose.y) <= 0.01
        assert abs(pose.z) <= 0.01
        assert pose.confidence >= 0.90
        assert pose.mode is MotionMode.STATIONARY
        assert engine.zupt_count >= 1
        assert engine.attitude.is_stable

    def test_straight_walk(self, engine):
        """Twenty 0.75 m steps north."""
        engine.tick(0)
        pose = walk(engine, [0.0] * 20)

        assert pose.x == pytest.approx(0.0, abs=0.3)
        assert pose.y == pytest.approx(15.0, abs=0.3)
        assert pose.z == pytest.approx(0.0, abs=1e-9)
        assert pose.yaw == pytest.approx(0.0, abs=1e-6)
        assert pose.mode is MotionMode.WALKING
        assert engine.diagnostics.counts()["step"] == 20

    def test_right_angle_turn(self, engine):
        """Ten steps north then ten steps east."""
        engine.tick(0)
        pose = walk(engine, [0.0] * 10 + [math.pi / 2] * 10)

        assert pose.x == pytest.approx(7.5, abs=0.3)
        assert pose.y == pytest.approx(7.5, abs=0.3)
        assert pose.yaw == pytest.approx(math.pi / 2, abs=0.05)

    def test_barometric_descent(self, engine):
        """Three metres down over a minute."""
        for k in range(601):
            t = k * 100 * MS
            truth = -3.0 * k / 600
            engine.push_sample("baro", altitude_to_pressure(truth), t)
            pose = engine.tick(t)
            if k >= 10:
                assert pose.z == pytest.approx(truth, abs=0.2)

        assert pose.z == pytest.approx(-3.0, abs=0.2)

    def test_map_snap(self, config):
        """A position 0.8 m off the corridor is pulled into (0.3, 0.5)."""
        engine = FusionEngine(config, vector_map={"corridors": [[[0.0, 0.0], [0.0, 100.0]]]})
        engine.reset(0.8, 50.0)
        p_before = engine.ekf.P[0, 0]

        engine.tick(0)
        pose = engine.tick(100 * MS)

        assert 0.3 < pose.x < 0.5
        assert pose.y == pytest.approx(50.0)
        assert engine.ekf.P[0, 0] < p_before
        assert engine.diagnostics.counts()["map_snap"] == 2

    def test_compass_heading(self, engine):
        """A confident compass reading turns the yaw."""
        engine.tick(0)
        engine.push_sample("compass_heading", CompassReading(90.0, 5.0), 50 * MS)
        pose = engine.tick(100 * MS)
        assert 0.0 < pose.yaw < math.pi / 2

    def test_low_confidence_heading_ignored(self, engine):
        engine.tick(0)
        engine.push_sample("compass_heading", CompassReading(90.0, 15.0), 50 * MS)
        pose = engine.tick(100 * MS)
        assert pose.yaw == 0.0

    def test_steps_from_accelerometer(self, engine):
        """Heel strikes every 0.56 s while turning slowly about the vertical."""
        pulse = {-1: 1.0, 0: 3.0, 1: 1.0}
        pose = None
        for k in range(500):
            t = k * 20 * MS
            offset = (k - 10) % 28 if k >= 9 else None
            if offset is not None and offset > 14:
                offset -= 28
            vertical = pulse.get(offset, 0.0)
            engine.push_sample("gyro", (0.0, 0.0, 0.5), t)
            engine.push_sample("accel", (0.0, 0.0, -9.81 + vertical), t)
            pose = engine.tick(t)

        assert engine.detector.step_count >= 15
        assert engine.detector.rejected_steps == 0
        assert all(e.source == "detector" for e in engine.detector.steps)
        assert pose.mode is MotionMode.WALKING
        assert pose.y > 5.0
        assert abs(pose.x) < 1.0


class TestSampleQueue:
    """Tests for push_sample() and draining."""

    def test_invalid_payload(self, engine):
        assert engine.push_sample("accel", (1.0, 2.0), 0) is False
        assert engine.diagnostics.counts()["invalid_dimension"] == 1
        assert engine.queue_depth == 0

    @pytest.mark.parametrize("kind,payload", [
        ("step_event", StepInput(length=0.75, heading=float("nan"))),
        ("step_event", StepInput(length=float("inf"))),
        ("compass_heading", CompassReading(float("nan"), 5.0)),
        ("compass_heading", CompassReading(90.0, float("nan"))),
    ])
    def test_non_finite_payload(self, engine, kind, payload):
        """Rejected at the queue, so the filter never sees the value."""
        engine.tick(0)
        assert engine.push_sample(kind, payload, 50 * MS) is False
        assert engine.diagnostics.counts()["invalid_dimension"] == 1

        pose = engine.tick(100 * MS)
        assert np.isfinite([pose.x, pose.y, pose.yaw]).all()
        assert engine.detector.step_count == 0
        assert engine.status().healthy

    def test_unknown_kind(self, engine):
        with pytest.raises(ValueError):
            engine.push_sample("lidar", (1.0, 2.0, 3.0), 0)

    def test_out_of_order_dropped(self, engine):
        assert engine.push_sample("gyro", (0.0, 0.0, 0.0), 100 * MS)
        assert engine.push_sample("gyro", (0.0, 0.0, 0.0), 50 * MS) is False

        event = engine.diagnostics.recent("stale_sample")[0]
        assert event.t_ns == 50 * MS
        assert engine.metrics.get_stats().dropped_samples == 1

    def test_overflow_drops_oldest(self):
        config = Config()
        config.engine.queue_size = 2
        engine = FusionEngine(config)

        for k in range(3):
            assert engine.push_sample("baro", 1000.0 + k, k * MS)

        assert engine.queue_depth == 2
        overflow = engine.diagnostics.recent("queue_overflow")
        assert len(overflow) == 1
        assert overflow[0].t_ns == 0
        assert engine.metrics.get_stats().dropped_samples == 1

    def test_future_samples_stay_queued(self, engine):
        engine.push_sample("baro", 1000.0, 50 * MS)
        engine.push_sample("baro", 1000.0, 200 * MS)
        engine.tick(100 * MS)
        assert engine.queue_depth == 1


class TestTicks:
    """Tests for tick ordering and failure handling."""

    def test_stale_tick_returns_last_pose(self, engine):
        engine.tick(0)
        pose = engine.tick(100 * MS)

        assert engine.tick(100 * MS) is pose
        assert engine.tick(50 * MS) is pose
        assert engine.diagnostics.counts()["stale_tick"] == 2
        assert engine.tick_count == 1

    def test_first_tick_sets_time_base(self, engine):
        pose = engine.tick(5 * SECOND)
        assert pose.timestamp == 5 * SECOND
        assert engine.tick_count == 0

    def test_first_imu_sample_integrated(self, engine):
        """The first sample is integrated over the nominal sample period."""
        engine.push_sample("gyro", (0.0, 0.0, 1.0), 0)
        engine.push_sample("accel", (0.0, 0.0, -9.81), 0)
        engine.tick(0)

        yaw = engine.attitude.euler()[2]
        assert yaw == pytest.approx(1.0 / engine.config.attitude.update_rate_hz, rel=1e-3)

    def test_corrupt_state(self, engine):
        """Non-finite state surfaces as EngineCorrupt until reset."""
        engine.tick(0)
        engine.ekf.x[0] = np.nan

        with pytest.raises(EngineCorrupt):
            engine.tick(100 * MS)
        with pytest.raises(EngineCorrupt):
            engine.tick(200 * MS)
        assert engine.diagnostics.counts()["engine_corrupt"] == 1
        assert not engine.status().healthy

        engine.reset(1.0, 2.0)
        pose = engine.tick(300 * MS)
        assert (pose.x, pose.y) == pytest.approx((1.0, 2.0))
        assert engine.status().healthy

    def test_stop(self, engine):
        engine.tick(0)
        pose = engine.tick(100 * MS)
        engine.stop()

        assert engine.is_stopped
        assert engine.push_sample("baro", 1000.0, 200 * MS) is False
        assert engine.tick(200 * MS) is pose


class TestMode:
    """Tests for mode classification."""

    def test_initial_mode(self, engine):
        assert engine.mode is MotionMode.STATIONARY
        assert engine.ekf.mode is MotionMode.STATIONARY

    def test_walking_then_running(self, engine):
        engine.tick(0)
        walk(engine, [0.0] * 2)
        assert engine.mode is MotionMode.WALKING

        walk(engine, [0.0] * 8, interval_ns=300 * MS, start_ns=SECOND)
        assert engine.mode is MotionMode.RUNNING
        assert engine.ekf.mode is MotionMode.RUNNING

        changes = [e.data["mode"] for e in engine.diagnostics.recent("mode_changed")]
        assert changes == ["walking", "running"]

    def test_mode_kept_without_evidence(self, engine):
        """No steps and no rest leaves the mode alone."""
        engine.tick(0)
        walk(engine, [0.0] * 2)
        engine.tick(10 * SECOND)
        assert engine.mode is MotionMode.WALKING

    def test_rest_returns_to_stationary(self, engine):
        engine.tick(0)
        walk(engine, [0.0] * 2)
        hold_still(engine, 1.0, start_ns=5 * SECOND)
        assert engine.mode is MotionMode.STATIONARY

    def test_walk_rest_walk(self, engine):
        """Each rest starts a new stationary interval for the step cap."""
        engine.tick(0)
        walk(engine, [0.0] * 12)
        hold_still(engine, 3.0, start_ns=7 * SECOND)
        assert engine.mode is MotionMode.STATIONARY

        pose = walk(engine, [0.0] * 10, start_ns=10 * SECOND)

        assert engine.detector.step_count == 22
        assert engine.detector.rejected_steps == 0
        assert pose.mode is MotionMode.WALKING
        assert engine.detector.pdr_position[1] == pytest.approx(16.5)
        assert pose.y == pytest.approx(16.5, abs=0.5)

    def test_manual_override(self, engine):
        engine.set_mode("crawling")
        engine.tick(0)
        walk(engine, [0.0] * 4)

        assert engine.mode is MotionMode.CRAWLING
        assert engine.status().manual_mode

        engine.set_mode(None)
        walk(engine, [0.0] * 2, start_ns=2 * SECOND)
        assert engine.mode is MotionMode.WALKING
        assert not engine.status().manual_mode

    def test_bad_mode(self, engine):
        with pytest.raises(ValueError):
            engine.set_mode("flying")


class TestLifecycle:
    """Tests for reset and status."""

    def test_reset_keeps_queue(self, engine):
        engine.push_sample("baro", 1000.0, 500 * MS)
        engine.reset(3.0, 4.0, 1.0, 0.5)

        pose = engine.last_pose
        assert (pose.x, pose.y, pose.z, pose.yaw) == (3.0, 4.0, 1.0, 0.5)
        assert engine.queue_depth == 1
        assert engine.detector.pdr_position.tolist() == [3.0, 4.0]

    def test_status_serializable(self, engine):
        hold_still(engine, 0.5)
        status = engine.status()
        data = json.loads(json.dumps(status.to_dict()))

        assert data["mode"] == "stationary"
        assert data["tick_count"] == status.tick_count
        assert data["healthy"] is True
        assert data["mean_innovation"] == pytest.approx(status.mean_innovation)
        assert "zupt" in data["diagnostics"]
