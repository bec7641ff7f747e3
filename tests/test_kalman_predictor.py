"""
Unit tests for the Kalman predictor and the constant-velocity model.

Tests cover:
- Per-peer track creation, incremental updates and eviction
- Prediction along a steady track; confidence floor from the linear model
- Covariance health: symmetry, PSD, repair of degenerate matrices
- Innovation gating and reset after repeated gated measurements
- Re-anchoring of the tangent plane on long tracks
- Linear fallback on numeric failure
- Device-reported velocity updates; bad leading fixes
"""

from dataclasses import replace

import numpy as np
import pytest

from mesh_predict.errors import DegenerateCovarianceError
from mesh_predict.localization import destination_point, haversine_m
from mesh_predict.metrics import get_metrics
from mesh_predict.prediction import KalmanPredictor, KalmanPredictorConfig
from mesh_predict.prediction.constant_velocity import (
    check_covariance,
    directional_sigma,
    ellipse_axes,
    process_noise,
    propagate,
    repair_covariance,
    stabilize_covariance,
)
from mesh_predict.proto import LocationSample, PredictionConfig, PredictionModel

from conftest import T0_MS, end_time_ms


@pytest.fixture
def predictor(clock) -> KalmanPredictor:
    return KalmanPredictor(clock=clock)


def assert_symmetric_psd(P: np.ndarray):
    np.testing.assert_allclose(P, P.T, atol=1e-9)
    assert np.min(np.linalg.eigvalsh(P)) >= -1e-9


class TestTrackLifecycle:
    """Tests for per-peer track handling."""

    def test_first_prediction_creates_track(self, predictor, walking_track, prediction_config):
        """A first prediction initialises and stores the peer's track."""
        prediction = predictor.predict(walking_track, prediction_config, now_ms=end_time_ms(walking_track))

        assert prediction.prediction_model == PredictionModel.KALMAN_FILTER
        assert prediction.kalman_state is not None
        assert "peer-1" in predictor.tracks
        assert predictor.state_for("peer-1").last_update_time == walking_track[-1].timestamp
        assert get_metrics().get_counter('kalman_initialized') == 1
        assert get_metrics().get_counter('kalman_updates') == len(walking_track) - 1

    def test_incremental_update(self, predictor, make_track, prediction_config):
        """Only samples newer than the track are processed on later calls."""
        track = make_track(n=11)
        predictor.predict(track[:10], prediction_config, now_ms=track[9].timestamp)
        updates_before = get_metrics().get_counter('kalman_updates')

        predictor.predict(track, prediction_config, now_ms=track[10].timestamp)

        assert get_metrics().get_counter('kalman_updates') == updates_before + 1
        assert get_metrics().get_counter('kalman_initialized') == 1

    def test_prediction_does_not_advance_track(self, predictor, walking_track, prediction_config):
        """Predicting to a future target leaves the stored state untouched."""
        now = end_time_ms(walking_track)
        predictor.predict(walking_track, prediction_config, now_ms=now)
        before = predictor.state_for("peer-1")

        predictor.predict(walking_track, prediction_config, target_timestamp=now + 3_600_000, now_ms=now)

        assert predictor.state_for("peer-1") == before

    def test_forget(self, predictor, walking_track, prediction_config):
        """forget() evicts the track; unknown peers report False."""
        predictor.predict(walking_track, prediction_config, now_ms=end_time_ms(walking_track))

        assert predictor.forget("peer-1") is True
        assert predictor.state_for("peer-1") is None
        assert predictor.forget("peer-1") is False

    def test_insufficient_history(self, predictor, walking_track, prediction_config):
        """Too few samples gives a zero-confidence KALMAN_FILTER result and no track."""
        prediction = predictor.predict(walking_track[:2], prediction_config, now_ms=walking_track[1].timestamp)

        assert prediction.confidence == 0.0
        assert prediction.prediction_model == PredictionModel.KALMAN_FILTER
        assert predictor.state_for("peer-1") is None


class TestPrediction:
    """Tests for prediction output."""

    def test_highway_extrapolation(self, predictor, highway_track, prediction_config):
        """A steady 30 m/s track predicts about 9 km ahead in 5 minutes."""
        last = highway_track[-1]

        prediction = predictor.predict(highway_track, prediction_config, now_ms=last.timestamp)

        distance = haversine_m(last.latitude, last.longitude, prediction.latitude, prediction.longitude)
        assert distance == pytest.approx(9000.0, rel=0.05)
        assert prediction.velocity.heading == pytest.approx(90.0, abs=2.0)
        assert prediction.velocity.speed == pytest.approx(30.0, rel=0.05)

    def test_confidence_floor(self, predictor, walking_track, prediction_config):
        """Confidence is at least half the linear confidence."""
        now = end_time_ms(walking_track)
        linear = predictor.linear.predict(walking_track, prediction_config, now_ms=now)

        prediction = predictor.predict(walking_track, prediction_config, now_ms=now)

        assert prediction.confidence >= 0.5 * linear.confidence - 1e-12
        assert 0.0 < prediction.confidence <= 1.0

    def test_longer_horizon_less_confident(self, predictor, highway_track):
        """Propagated covariance grows with the horizon."""
        now = end_time_ms(highway_track)
        short = predictor.predict(highway_track, PredictionConfig(prediction_horizon_minutes=1.0), now_ms=now)
        long = predictor.predict(highway_track, PredictionConfig(prediction_horizon_minutes=60.0), now_ms=now)

        assert long.confidence <= short.confidence

    def test_covariance_symmetric_psd(self, predictor, erratic_track, prediction_config):
        """The stored covariance stays symmetric positive semi-definite."""
        predictor.predict(erratic_track, prediction_config, now_ms=end_time_ms(erratic_track))

        assert_symmetric_psd(predictor.state_for("erratic-1").covariance_matrix())

    def test_process_noise_follows_pattern(self, predictor, highway_track, walking_track, prediction_config):
        """Stored process noise density differs by movement pattern."""
        predictor.predict(highway_track, prediction_config, now_ms=end_time_ms(highway_track))
        predictor.predict(walking_track, prediction_config, now_ms=end_time_ms(walking_track))

        assert predictor.state_for("car-1").process_noise_density > 0
        assert predictor.state_for("peer-1").process_noise_density != \
            predictor.state_for("car-1").process_noise_density


class TestGating:
    """Tests for innovation gating."""

    def _offset_samples(self, track, count: int, offset_m: float = 300.0):
        last = track[-1]
        samples = []
        for k in range(1, count + 1):
            lat, lon = destination_point(last.latitude, last.longitude, 14.0 * k, 0.0)
            lat, lon = destination_point(lat, lon, offset_m, 90.0)
            samples.append(LocationSample(last.peer_id, lat, lon, last.timestamp + k * 10_000, 5.0))
        return samples

    def test_outlier_gated(self, predictor, walking_track, prediction_config):
        """A single far-off sample is rejected by the gate."""
        predictor.predict(walking_track, prediction_config, now_ms=end_time_ms(walking_track))
        before = predictor.state_for("peer-1")
        samples = walking_track + self._offset_samples(walking_track, 1)

        predictor.predict(samples, prediction_config, now_ms=samples[-1].timestamp)

        assert get_metrics().get_drop_count('innovation_gated') == 1
        after = predictor.state_for("peer-1")
        moved = haversine_m(before.origin_lat, before.origin_lon, after.origin_lat, after.origin_lon)
        assert moved == 0.0
        assert abs(after.east - before.east) < 50.0

    def test_reset_after_repeated_gating(self, predictor, walking_track, prediction_config):
        """Three gated measurements in a row snap the track to the measurements."""
        predictor.predict(walking_track, prediction_config, now_ms=end_time_ms(walking_track))
        offsets = self._offset_samples(walking_track, 3)
        samples = walking_track + offsets

        predictor.predict(samples, prediction_config, now_ms=samples[-1].timestamp)

        assert get_metrics().get_drop_count('innovation_gated') == 3
        assert get_metrics().get_counter('kalman_resets') == 1
        state = predictor.state_for("peer-1")
        e, n = state.east, state.north
        track = predictor.tracks.get("peer-1")
        expected_e, expected_n = track.plane.to_enu(offsets[-1].latitude, offsets[-1].longitude)
        assert e == pytest.approx(expected_e, abs=1e-6)
        assert n == pytest.approx(expected_n, abs=1e-6)


class TestReanchoring:
    """Tests for re-anchoring the tangent plane."""

    def test_long_track_reanchors(self, clock, make_track, prediction_config):
        """A 17 km track re-anchors; results agree with a never-re-anchored filter."""
        track = make_track(peer_id="long-1", n=60, speed_mps=30.0, heading_deg=90.0)
        now = end_time_ms(track)

        anchored = KalmanPredictor(clock=clock).predict(track, prediction_config, now_ms=now)
        reanchors = get_metrics().get_counter('kalman_reanchors')
        fixed = KalmanPredictor(KalmanPredictorConfig(reanchor_distance_m=1e9), clock=clock).predict(
            track, prediction_config, now_ms=now)

        assert reanchors > 0
        assert haversine_m(anchored.latitude, anchored.longitude, fixed.latitude, fixed.longitude) < 500.0

    def test_origin_stays_near_track(self, predictor, make_track, prediction_config):
        """After re-anchoring the origin is within the re-anchor distance of the newest sample."""
        track = make_track(peer_id="long-1", n=60, speed_mps=30.0, heading_deg=90.0)

        predictor.predict(track, prediction_config, now_ms=end_time_ms(track))

        state = predictor.state_for("long-1")
        last = track[-1]
        assert haversine_m(state.origin_lat, state.origin_lon, last.latitude, last.longitude) <= 5000.0 + 1.0


class TestFallback:
    """Tests for the linear fallback."""

    def test_numeric_failure_falls_back_to_linear(self, predictor, walking_track, prediction_config, monkeypatch):
        """A degenerate covariance evicts the track and returns the linear prediction."""
        now = end_time_ms(walking_track)
        predictor.predict(walking_track, prediction_config, now_ms=now)

        def broken(*args, **kwargs):
            raise DegenerateCovarianceError("boom")

        monkeypatch.setattr(predictor, '_sync_track', broken)
        prediction = predictor.predict(walking_track, prediction_config, now_ms=now)

        assert prediction.prediction_model == PredictionModel.LINEAR
        assert prediction.kalman_state is None
        assert get_metrics().get_counter('linear_fallbacks') == 1
        assert predictor.state_for("peer-1") is None


class TestInputQuality:
    """Tests for device-reported velocity and bad fixes."""

    def test_device_velocity_updates(self, predictor, walking_track, prediction_config):
        """Samples carrying ground speed/track feed the velocity update directly."""
        device_track = [replace(s, ground_speed_mps=1.4, ground_track_deg=0.0) for s in walking_track]

        prediction = predictor.predict(device_track, prediction_config, now_ms=end_time_ms(walking_track))

        state = predictor.state_for("peer-1")
        assert get_metrics().get_counter('kalman_device_velocity_updates') == len(walking_track) - 1
        assert state.v_north == pytest.approx(1.4, abs=0.2)
        assert abs(state.v_east) < 0.2
        assert prediction.confidence > 0

    def test_bad_leading_fix(self, predictor, walking_track, prediction_config):
        """A bogus first fix is skipped and the track starts at the first good sample."""
        samples = [LocationSample("peer-1", 0.0, 0.0, T0_MS - 10_000)] + walking_track[:8]

        prediction = predictor.predict(samples, prediction_config, now_ms=end_time_ms(samples))

        assert prediction.confidence > 0
        assert predictor.state_for("peer-1").origin_lat == walking_track[0].latitude


class TestConstantVelocityModel:
    """Tests for the motion model helpers."""

    def test_propagate_moves_position(self):
        """Position advances by velocity * dt and covariance grows."""
        x = np.array([0.0, 0.0, 2.0, -1.0])
        P = np.eye(4)

        x_pred, P_pred = propagate(x, P, 10.0, 0.01)

        np.testing.assert_allclose(x_pred, [20.0, -10.0, 2.0, -1.0])
        assert P_pred[0, 0] > P[0, 0]
        assert_symmetric_psd(P_pred)

    def test_propagate_zero_dt_copies(self):
        """dt <= 0 returns copies, not the inputs."""
        x = np.zeros(4)
        P = np.eye(4)

        x_pred, P_pred = propagate(x, P, 0.0, 1.0)

        assert x_pred is not x and P_pred is not P
        np.testing.assert_array_equal(P_pred, P)

    def test_process_noise_blocks(self):
        """Q follows the white-noise-acceleration structure."""
        Q = process_noise(2.0, 3.0)

        assert Q[0, 0] == pytest.approx(3.0 * 8.0 / 3.0)
        assert Q[0, 2] == pytest.approx(3.0 * 4.0 / 2.0)
        assert Q[2, 2] == pytest.approx(6.0)
        assert Q[0, 1] == 0.0

    def test_check_rejects_non_psd(self):
        """A matrix with a negative eigenvalue is degenerate."""
        P = np.diag([1.0, 1.0, -5.0, 1.0])
        with pytest.raises(DegenerateCovarianceError) as exc_info:
            check_covariance(P)
        assert exc_info.value.min_eigenvalue == pytest.approx(-5.0)

    def test_check_rejects_non_finite(self):
        """NaN entries are degenerate."""
        P = np.eye(4)
        P[1, 1] = np.nan
        with pytest.raises(DegenerateCovarianceError):
            check_covariance(P)

    def test_repair(self):
        """Repair yields a symmetric PSD matrix and keeps healthy directions."""
        P = np.diag([4.0, 1.0, -2.0, 1.0])
        P[0, 1] = 0.5

        repaired = repair_covariance(P)

        assert_symmetric_psd(repaired)
        check_covariance(repaired)
        assert repaired[0, 0] == pytest.approx(4.0, abs=0.1)

    def test_stabilize_counts_repairs(self):
        """stabilize_covariance repairs degenerate input and counts it."""
        healthy = np.eye(4)
        np.testing.assert_array_equal(stabilize_covariance(healthy), healthy)
        assert get_metrics().get_counter('covariance_repairs') == 0

        stabilize_covariance(np.diag([1.0, -1.0, 1.0, 1.0]))
        assert get_metrics().get_counter('covariance_repairs') == 1

    def test_directional_sigma_and_axes(self):
        """Axis-aligned covariance gives per-axis sigmas and a north major axis."""
        P_pos = np.diag([4.0, 9.0])

        assert directional_sigma(P_pos, (1.0, 0.0)) == pytest.approx(2.0)
        assert directional_sigma(P_pos, (0.0, 1.0)) == pytest.approx(3.0)
        major, minor, bearing = ellipse_axes(P_pos)
        assert (major, minor) == (pytest.approx(3.0), pytest.approx(2.0))
        assert bearing == pytest.approx(0.0)
