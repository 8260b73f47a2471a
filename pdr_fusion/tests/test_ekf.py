"""Tests for the 13-state PDR EKF."""

import copy
import math

import numpy as np
import pytest
from numpy.testing import assert_allclose

from pdr_fusion.core.errors import UpdateStatus
from pdr_fusion.core.types import MotionMode, PdrIncrement
from pdr_fusion.fusion.ekf import (
    DEFAULT_COVARIANCE_DIAG,
    OMEGA,
    STATE_DIM,
    VX,
    VY,
    VZ,
    YAW,
    PdrEKF,
    altitude_to_pressure,
    confidence_from_uncertainty,
    pressure_to_altitude,
)
from pdr_fusion.fusion.vector_map import VectorMap


def assert_covariance_ok(P):
    assert np.max(np.abs(P - P.T)) < 1e-10
    assert np.all(np.diag(P) >= 1e-8)


class TestInitialization:
    """Initial state and reset."""

    def test_initial_state(self, ekf):
        assert_allclose(ekf.x, np.zeros(STATE_DIM))
        assert_allclose(np.diag(ekf.P), DEFAULT_COVARIANCE_DIAG)
        assert ekf.mode is MotionMode.STATIONARY
        assert_covariance_ok(ekf.P)

    def test_reset_pose_exact(self, ekf):
        """Pose after reset carries exactly the given values."""
        ekf.predict(0.1, PdrIncrement(dx=1.0))
        ekf.reset(1.5, -2.0, 3.25, 0.5)
        pose = ekf.get_pose()

        assert (pose.x, pose.y, pose.z, pose.yaw) == (1.5, -2.0, 3.25, 0.5)
        assert pose.confidence > 0.7
        assert pose.confidence == pytest.approx(0.909, abs=1e-3)

    def test_reset_wraps_theta(self, ekf):
        ekf.reset(theta=3 * math.pi / 2)
        assert ekf.get_pose().yaw == pytest.approx(-math.pi / 2)


class TestPredict:
    """Tests for the motion model."""

    @pytest.mark.parametrize("dt", [0.0, -0.5, float("nan")])
    def test_bad_dt_rejected(self, ekf, sink, dt):
        """Non-positive dt leaves the state untouched."""
        before = ekf.x.copy()
        assert ekf.predict(dt) is UpdateStatus.REJECTED
        assert_allclose(ekf.x, before)
        assert "stale_tick" in sink.kinds()

    def test_stationary_holds_position(self, ekf):
        ekf.reset(2.0, 3.0)
        assert ekf.predict(0.1, PdrIncrement(dx=1.0, dy=1.0)) is UpdateStatus.APPLIED
        pose = ekf.get_pose()
        assert (pose.x, pose.y) == (2.0, 3.0)

    def test_walking_blends_increment(self, ekf):
        """Walking takes 0.7 of the PDR increment plus 0.3 of the velocity."""
        ekf.set_mode(MotionMode.WALKING)
        ekf.predict(0.5, PdrIncrement(dy=0.75))

        assert ekf.x[1] == pytest.approx(0.525)
        assert ekf.x[VY] == pytest.approx(1.05)

    def test_increment_turns_yaw(self, ekf):
        ekf.reset(theta=3.0)
        ekf.set_mode(MotionMode.WALKING)
        ekf.predict(0.1, PdrIncrement(dtheta=0.5))
        assert ekf.x[YAW] == pytest.approx(3.5 - 2 * math.pi)

    def test_speed_cap(self, ekf):
        """Horizontal speed is clamped to the walking limit."""
        ekf.set_mode(MotionMode.WALKING)
        ekf.predict(0.1, PdrIncrement(dx=5.0))

        speed = math.hypot(ekf.x[VX], ekf.x[VY])
        assert speed <= 2.0 + 1e-9
        assert ekf.x[0] == pytest.approx(0.2)

    def test_crawling_seeds_velocity(self, ekf):
        """Crawling from rest starts at the crawl speed along the heading."""
        ekf.set_mode(MotionMode.CRAWLING)
        ekf.predict(0.1)

        assert ekf.x[0] == pytest.approx(0.7 * 0.5 * 0.1)
        assert math.hypot(ekf.x[VX], ekf.x[VY]) <= 0.5 + 1e-9

    def test_process_noise_by_mode(self, ekf):
        """Walking inflates P faster than stationary."""
        ekf.predict(1.0)
        stationary = ekf.P[0, 0]
        ekf.reset()
        ekf.set_mode(MotionMode.WALKING)
        ekf.predict(1.0)
        assert ekf.P[0, 0] > stationary

    def test_corrupt_state_recovered(self, ekf, sink):
        """A non-finite covariance is re-initialized."""
        ekf.P[2, 2] = np.nan
        assert ekf.predict(0.1) is UpdateStatus.RECOVERED
        assert_allclose(np.diag(ekf.P), DEFAULT_COVARIANCE_DIAG)
        assert "covariance_reset" in sink.kinds()
        assert ekf.covariance_resets == 1

    def test_non_finite_increment_skipped(self, ekf, sink):
        """A predict that would produce a non-finite state keeps the old state."""
        ekf.set_mode(MotionMode.WALKING)
        ekf.predict(0.5, PdrIncrement(dy=0.75))
        before = ekf.x.copy()

        status = ekf.predict(0.5, PdrIncrement(dy=0.75, dtheta=float("nan")))

        assert status is UpdateStatus.RECOVERED
        assert_allclose(ekf.x, before)
        assert_allclose(np.diag(ekf.P), DEFAULT_COVARIANCE_DIAG)
        assert "covariance_reset" in sink.kinds()
        assert ekf.is_healthy()


class TestMeasurementUpdates:
    """Tests for barometer, heading, PDR and generic updates."""

    def test_pressure_round_trip(self):
        for altitude in (-10.0, 0.0, 120.0):
            assert pressure_to_altitude(altitude_to_pressure(altitude)) == pytest.approx(altitude, abs=1e-6)

    def test_barometer(self, ekf):
        """Altitude moves most of the way toward the barometric value."""
        status = ekf.update_barometer(altitude_to_pressure(5.0))

        assert status is UpdateStatus.APPLIED
        assert ekf.x[2] == pytest.approx(5.0 * 0.1 / 0.11, rel=1e-6)
        assert ekf.P[2, 2] < 0.1

    def test_barometer_invalid(self, ekf, sink):
        assert ekf.update_barometer(-5.0) is UpdateStatus.REJECTED
        assert "invalid_dimension" in sink.kinds()

    def test_heading_step(self, ekf):
        """Heading of 1 rad at confidence 0.9 from yaw 0."""
        p_before = ekf.P[YAW, YAW]
        assert ekf.update_heading(1.0, 0.9) is UpdateStatus.APPLIED

        assert 0.5 <= ekf.x[YAW] <= 1.0
        assert ekf.x[YAW] == pytest.approx(0.05 / (0.05 + 0.04 / 0.9))
        assert ekf.P[YAW, YAW] < p_before
        assert ekf.last_mag_confidence == pytest.approx(0.9)

    def test_heading_across_branch_cut(self, ekf):
        """Innovation uses the shortest arc through pi."""
        ekf.reset(theta=3.0)
        ekf.update_heading(-3.0, 1.0)

        gain = 0.05 / (0.05 + 0.04)
        expected = 3.0 + gain * (2 * math.pi - 6.0) - 2 * math.pi
        assert ekf.x[YAW] == pytest.approx(expected)

    @pytest.mark.parametrize("confidence", [0.0, -0.5, 1.5, float("nan")])
    def test_heading_bad_confidence_skipped(self, ekf, confidence):
        assert ekf.update_heading(1.0, confidence) is UpdateStatus.SKIPPED
        assert ekf.x[YAW] == 0.0

    def test_pdr_update(self, ekf):
        """PDR position pulls the state toward the dead-reckoned track."""
        ekf.set_mode(MotionMode.WALKING)
        status = ekf.update_pdr((1.0, 2.0), 0.3)

        assert status is UpdateStatus.APPLIED
        assert ekf.x[0] == pytest.approx(0.1 / (0.1 + 0.05 ** 2))
        assert ekf.x[1] == pytest.approx(2.0 * 0.1 / (0.1 + 0.05 ** 2))
        assert ekf.x[YAW] == pytest.approx(0.3 * 0.05 / (0.05 + 0.05 ** 2))

    def test_pdr_position_only(self, ekf):
        ekf.update_pdr((1.0, 0.0))
        assert ekf.x[YAW] == 0.0
        assert ekf.x[0] > 0.9

    def test_invalid_dimension_rejected(self, ekf, sink):
        """Mismatched H and R leave the state untouched."""
        H = np.zeros((2, STATE_DIM))
        assert ekf.update(np.zeros(2), H, np.eye(3)) is UpdateStatus.REJECTED
        assert "invalid_dimension" in sink.kinds()
        assert_allclose(ekf.x, np.zeros(STATE_DIM))

    def test_singular_innovation_skipped(self, ekf, sink):
        """A negative definite S is skipped after regularization fails."""
        H = np.zeros((1, STATE_DIM))
        assert ekf.update(np.array([1.0]), H, np.array([[-1.0]])) is UpdateStatus.SKIPPED
        assert "singular_innovation" in sink.kinds()

    def test_singular_regularized(self, ekf):
        """A zero S is regularized and applied without moving the state."""
        H = np.zeros((1, STATE_DIM))
        assert ekf.update(np.array([1.0]), H, np.zeros((1, 1))) is UpdateStatus.APPLIED
        assert_allclose(ekf.x, np.zeros(STATE_DIM))

    def test_batch_update(self, ekf):
        """Stacked barometer and yaw rows match their separate effect."""
        H_z = np.zeros((1, STATE_DIM))
        H_z[0, 2] = 1.0
        H_yaw = np.zeros((1, STATE_DIM))
        H_yaw[0, YAW] = 1.0

        status = ekf.update_batch([
            (np.array([2.0]), H_z, np.array([[0.01]])),
            (np.array([0.4]), H_yaw, np.array([[0.05]])),
        ])
        assert status is UpdateStatus.APPLIED
        assert ekf.x[2] == pytest.approx(2.0 * 0.1 / 0.11)
        assert ekf.x[YAW] == pytest.approx(0.2)

    def test_empty_batch(self, ekf):
        assert ekf.update_batch([]) is UpdateStatus.SKIPPED

    def test_reentrant_call_dropped(self, config):
        """A call made while an update runs returns BUSY."""
        kinds = []
        nested = []

        def emit(kind, message, **data):
            kinds.append(kind)
            if kind == "zupt":
                nested.append(ekf.predict(0.1))

        ekf = PdrEKF(config.ekf, emit=emit)
        assert ekf.apply_zupt() is UpdateStatus.APPLIED
        assert nested == [UpdateStatus.BUSY]
        assert "update_dropped" in kinds

    @pytest.mark.parametrize("call", [
        lambda ekf: ekf.reset(5.0, 5.0),
        lambda ekf: ekf.periodic_check(0),
        lambda ekf: ekf.set_mag_confidence(0.9),
    ])
    def test_maintenance_calls_guarded(self, config, call):
        """Reset and maintenance calls also respect the in-progress flag."""
        nested = []

        def emit(kind, message, **data):
            if kind == "zupt":
                nested.append(call(ekf))

        ekf = PdrEKF(config.ekf, emit=emit)
        ekf.apply_zupt()

        assert nested == [UpdateStatus.BUSY]
        assert ekf.x[0] == 0.0
        assert ekf.last_mag_confidence == 0.0


class TestZupt:
    """Tests for zero-velocity updates."""

    def test_velocity_damped(self, ekf):
        ekf.set_mode(MotionMode.WALKING)
        ekf.x[VX:VZ + 1] = [1.2, -0.8, 0.3]
        before = np.linalg.norm(ekf.x[VX:VZ + 1])
        ekf.set_mode(MotionMode.STATIONARY)
        ekf.apply_zupt()

        assert np.linalg.norm(ekf.x[VX:VZ + 1]) <= 0.05 * before
        assert ekf.zupt_active

    def test_first_application_shrinks_position(self, ekf, sink):
        """Only the first call per stationary interval halves P[0,0] and P[1,1]."""
        ekf.apply_zupt()
        assert ekf.P[0, 0] == pytest.approx(0.05)
        assert ekf.P[1, 1] == pytest.approx(0.05)

        ekf.apply_zupt()
        assert ekf.P[0, 0] == pytest.approx(0.05)
        assert sink.kinds().count("zupt") == 1

    def test_rearmed_after_motion(self, ekf, sink):
        ekf.apply_zupt()
        ekf.set_mode(MotionMode.WALKING)
        ekf.set_mode(MotionMode.STATIONARY)
        ekf.apply_zupt()
        assert sink.kinds().count("zupt") == 2

    def test_yaw_shrink_with_trusted_compass(self, ekf):
        ekf.set_mag_confidence(0.9)
        ekf.apply_zupt()
        assert ekf.P[YAW, YAW] == pytest.approx(0.05 * 0.7)

    def test_yaw_kept_without_compass(self, ekf):
        ekf.apply_zupt()
        assert ekf.P[YAW, YAW] == pytest.approx(0.05)

    def test_yaw_rate_observed_at_rest(self, ekf):
        ekf.x[OMEGA] = 0.2
        ekf.apply_zupt()
        assert abs(ekf.x[OMEGA]) < 0.01


class TestMapMatching:
    """Tests for corridor snapping."""

    def test_snap_weight(self, ekf, corridor_map):
        """Distance 0.8 from the corridor snaps 30% of the way."""
        ekf.set_vector_map(corridor_map)
        ekf.reset(0.8, 50.0)

        assert ekf.apply_map_match() is UpdateStatus.APPLIED
        assert ekf.x[0] == pytest.approx(0.56)
        assert ekf.P[0, 0] < 0.1

    def test_predict_then_match(self, ekf, corridor_map):
        """Snapping runs in predict and again in the map-match stage."""
        ekf.set_vector_map(corridor_map)
        ekf.reset(0.8, 50.0)
        ekf.predict(0.1)
        ekf.apply_map_match()

        assert 0.3 < ekf.x[0] < 0.5
        assert ekf.x[0] == pytest.approx(0.3584)

    def test_beyond_threshold_skipped(self, ekf, corridor_map):
        ekf.set_vector_map(corridor_map)
        ekf.reset(2.5, 50.0)
        assert ekf.apply_map_match() is UpdateStatus.SKIPPED
        assert ekf.x[0] == 2.5

    def test_wall_veto(self, ekf):
        """A wall between the position and the corridor blocks the snap."""
        vmap = VectorMap(corridors=[[(0.0, 0.0), (0.0, 100.0)]],
                         walls=[[(0.7, 40.0), (0.7, 60.0)]])
        ekf.set_vector_map(vmap)
        ekf.reset(0.8, 50.0)

        assert ekf.apply_map_match() is UpdateStatus.SKIPPED
        assert ekf.x[0] == 0.8

    def test_no_map(self, ekf):
        assert ekf.apply_map_match() is UpdateStatus.SKIPPED

    def test_snap_deterministic(self, ekf, corridor_map):
        """Two snaps from the same state give the same pose."""
        ekf.set_vector_map(corridor_map)
        ekf.reset(0.8, 50.0)
        twin = copy.deepcopy(ekf)

        ekf.apply_map_match()
        twin.apply_map_match()
        a, b = ekf.get_pose(), twin.get_pose()
        assert abs(a.x - b.x) < 1e-9
        assert abs(a.y - b.y) < 1e-9


class TestMaintenance:
    """Tests for periodic_check() and confidence."""

    def test_first_call_starts_clock(self, ekf):
        assert ekf.periodic_check(0) is UpdateStatus.SKIPPED

    def test_caps_runaway_uncertainty(self, ekf, sink):
        ekf.periodic_check(0)
        ekf.P[0, 0] = ekf.P[1, 1] = 8.0
        ekf.P[YAW, YAW] = 6.0

        assert ekf.periodic_check(5 * 10**9) is UpdateStatus.SKIPPED
        assert ekf.periodic_check(10 * 10**9) is UpdateStatus.APPLIED
        assert ekf.P[0, 0] == pytest.approx(1.9)
        assert ekf.P[1, 1] == pytest.approx(1.9)
        assert ekf.P[YAW, YAW] == pytest.approx(0.95)
        assert sink.kinds().count("auto_correction") == 2

    @pytest.mark.parametrize("total,expected", [
        (0.0, 0.90),
        (1.0, 0.60),
        (3.0, 0.40),
        (20.0, 0.10),
    ])
    def test_confidence_map(self, total, expected):
        assert confidence_from_uncertainty(total) == pytest.approx(expected)

    def test_full_state(self, ekf):
        state = ekf.get_full_state().to_dict()
        assert state["mode"] == "stationary"
        assert set(state) >= {"position", "velocity", "orientation", "biases"}


class TestInvariants:
    """Randomized sequences of operations."""

    def test_covariance_and_angles(self, ekf):
        """P stays symmetric and floored, angles stay wrapped."""
        rng = np.random.default_rng(7)
        modes = list(MotionMode)

        for _ in range(200):
            ekf.set_mode(modes[rng.integers(len(modes))])
            op = rng.integers(5)
            if op == 0:
                ekf.predict(0.05, PdrIncrement(dx=rng.normal(0, 0.5), dy=rng.normal(0, 0.5),
                                               dtheta=rng.normal(0, 1.0)))
            elif op == 1:
                ekf.update_heading(rng.uniform(-math.pi, math.pi), rng.uniform(0.1, 1.0))
            elif op == 2:
                ekf.update_barometer(altitude_to_pressure(rng.normal(0, 3)))
            elif op == 3:
                ekf.update_pdr(rng.normal(0, 5, size=2), rng.uniform(-4, 4))
            else:
                ekf.apply_zupt()

            assert_covariance_ok(ekf.P)
            for slot in (6, 7, 8):
                assert -math.pi < ekf.x[slot] <= math.pi
            speed = math.hypot(ekf.x[VX], ekf.x[VY])
            if op == 0:
                limit = 0.5 if ekf.mode is MotionMode.CRAWLING else 2.0
                assert speed <= limit + 1e-9
