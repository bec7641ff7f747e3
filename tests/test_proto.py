"""
Unit tests for the data model.

Tests cover:
- LocationSample validation, wire parsing and device velocity fields
- PeerLocationHistory ordering, bounding, windows and immutability
- PredictionConfig validation
- LocationPrediction validation and zero-confidence construction
- KalmanState array conversion
- ConfidenceCone shape validation and polygon
"""

import numpy as np
import pytest

from mesh_predict.errors import StaleSampleError
from mesh_predict.proto import (
    ConfidenceCone,
    KalmanState,
    LocationPrediction,
    LocationSample,
    MovementPattern,
    Particle,
    PeerLocationHistory,
    PredictionConfig,
    PredictionModel,
    VelocityVector,
    create_zero_confidence,
)

from conftest import T0_MS


def sample(ts_offset_s: float = 0.0, lat: float = 22.29, lon: float = 114.17, peer: str = "p") -> LocationSample:
    return LocationSample(peer, lat, lon, T0_MS + int(ts_offset_s * 1000), 5.0)


class TestLocationSample:
    """Tests for sample validation."""

    @pytest.mark.parametrize("lat,lon", [
        (91.0, 0.0), (-91.0, 0.0), (0.0, 181.0), (float('nan'), 0.0), (0.0, float('inf')),
    ])
    def test_rejects_invalid_coordinates(self, lat, lon):
        """Out-of-range or non-finite coordinates raise ValueError."""
        with pytest.raises(ValueError):
            LocationSample("p", lat, lon, T0_MS)

    def test_rejects_negative_accuracy(self):
        """Negative accuracy raises ValueError."""
        with pytest.raises(ValueError):
            LocationSample("p", 0.0, 0.0, T0_MS, -1.0)

    def test_from_dict(self):
        """Wire dict with string numbers parses; accuracy optional."""
        parsed = LocationSample.from_dict({
            'peer_id': 'alpha', 'latitude': '22.29', 'longitude': 114.17, 'timestamp': T0_MS,
        })

        assert parsed.peer_id == 'alpha'
        assert parsed.latitude == 22.29
        assert parsed.accuracy_m is None
        assert parsed.time_s == T0_MS / 1000.0

    def test_from_dict_missing_field(self):
        """Missing fields raise KeyError."""
        with pytest.raises(KeyError):
            LocationSample.from_dict({'peer_id': 'alpha', 'latitude': 1.0})

    def test_device_velocity_fields(self):
        """Ground speed/track and GPS time parse, serialise and normalise."""
        parsed = LocationSample.from_dict({
            'peer_id': 'alpha', 'latitude': 22.29, 'longitude': 114.17, 'timestamp': T0_MS,
            'ground_speed_mps': '4.5', 'ground_track_deg': -90, 'gps_timestamp': T0_MS - 800,
        })

        assert parsed.has_velocity
        assert parsed.device_velocity == (4.5, 270.0)
        assert parsed.best_timestamp == T0_MS - 800
        assert parsed.to_dict()['ground_track_deg'] == -90.0
        assert LocationSample.from_dict(parsed.to_dict()) == parsed

    def test_partial_device_velocity(self):
        """Speed without track is not usable velocity; receive time is the fallback."""
        partial = LocationSample("p", 0.0, 0.0, T0_MS, ground_speed_mps=3.0)

        assert not partial.has_velocity
        assert partial.device_velocity is None
        assert partial.best_timestamp == T0_MS

    @pytest.mark.parametrize("speed,track", [(-1.0, 0.0), (float('nan'), 0.0), (1.0, float('inf'))])
    def test_rejects_invalid_device_velocity(self, speed, track):
        """Negative or non-finite ground speed/track raise ValueError."""
        with pytest.raises(ValueError):
            LocationSample("p", 0.0, 0.0, T0_MS, ground_speed_mps=speed, ground_track_deg=track)



class TestPeerLocationHistory:
    """Tests for per-peer history."""

    def test_append_returns_new_history(self):
        """append() leaves the original untouched."""
        empty = PeerLocationHistory("p")
        one = empty.append(sample(0))

        assert len(empty) == 0
        assert len(one) == 1
        assert one.latest == sample(0)

    def test_equal_timestamp_accepted(self):
        """Samples with the newest timestamp are not stale."""
        history = PeerLocationHistory("p").append(sample(10)).append(sample(10, lat=22.30))
        assert len(history) == 2

    def test_stale_sample_raises_and_leaves_history_unchanged(self):
        """Older timestamps raise StaleSampleError."""
        history = PeerLocationHistory.from_samples("p", [sample(0), sample(10)])

        with pytest.raises(StaleSampleError) as exc_info:
            history.append(sample(5))

        assert exc_info.value.timestamp == T0_MS + 5000
        assert exc_info.value.last_timestamp == T0_MS + 10000
        assert len(history) == 2
        assert history.is_chronological()

    def test_bounded_by_max_entries(self):
        """Oldest samples are dropped beyond max_entries."""
        history = PeerLocationHistory.from_samples("p", [sample(i) for i in range(8)], max_entries=5)

        assert len(history) == 5
        assert history.entries[0].timestamp == T0_MS + 3000

    def test_invalid_max_entries(self):
        """max_entries must be positive."""
        with pytest.raises(ValueError):
            PeerLocationHistory("p", max_entries=0)

    def test_window_by_age(self):
        """window() keeps samples no older than the bound."""
        history = PeerLocationHistory.from_samples("p", [sample(i * 60) for i in range(10)])
        now = T0_MS + 9 * 60_000

        window = history.window(3.0, now)

        assert len(window) == 4
        assert window.earliest.timestamp == T0_MS + 6 * 60_000
        assert window.latest.timestamp == now
        assert window.span_s == 180.0
        assert [s.timestamp for s in window] == [s.timestamp for s in window[:]]
        assert window[-1] == window.latest

    def test_window_empty_when_all_expired(self):
        """A window far in the future is empty."""
        history = PeerLocationHistory.from_samples("p", [sample(0), sample(10)])

        window = history.window(1.0, T0_MS + 3_600_000)

        assert len(window) == 0
        assert window.latest is None
        with pytest.raises(IndexError):
            window[0]

    def test_without_entries_before(self):
        """Trimming keeps samples at or after the cutoff."""
        history = PeerLocationHistory.from_samples("p", [sample(i) for i in range(5)])

        trimmed = history.without_entries_before(T0_MS + 2000)

        assert [s.timestamp for s in trimmed.entries] == [T0_MS + 2000, T0_MS + 3000, T0_MS + 4000]
        assert history.without_entries_before(T0_MS) is history


class TestPredictionConfig:
    """Tests for prediction config validation."""

    @pytest.mark.parametrize("kwargs", [
        {'prediction_horizon_minutes': 0.0},
        {'min_history_entries': 1},
        {'max_history_age_minutes': -5.0},
    ])
    def test_rejects_invalid(self, kwargs):
        """Invalid values raise ValueError."""
        with pytest.raises(ValueError):
            PredictionConfig(**kwargs)

    def test_horizon_ms_and_from_dict_defaults(self):
        """Missing keys take defaults."""
        config = PredictionConfig.from_dict({'prediction_horizon_minutes': 2})

        assert config.horizon_ms == 120_000
        assert config.min_history_entries == 3
        assert config.max_history_age_minutes == 30.0


class TestLocationPrediction:
    """Tests for prediction validation."""

    def _kalman_state(self) -> KalmanState:
        return KalmanState.from_arrays((22.29, 114.17), np.array([1.0, 2.0, 3.0, 4.0]), np.eye(4), T0_MS, 0.01)

    @pytest.mark.parametrize("confidence", [-0.01, 1.01])
    def test_confidence_range(self, confidence):
        """Confidence outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            LocationPrediction("p", 0.0, 0.0, T0_MS, T0_MS, confidence, PredictionModel.LINEAR)

    def test_kalman_state_requires_kalman_model(self):
        """Kalman state on a LINEAR prediction is rejected."""
        with pytest.raises(ValueError):
            LocationPrediction("p", 0.0, 0.0, T0_MS, T0_MS, 0.5, PredictionModel.LINEAR,
                               kalman_state=self._kalman_state())

    def test_particles_require_particle_model(self):
        """Particles on a KALMAN_FILTER prediction are rejected."""
        particle = Particle(0.0, 0.0, 0.0, 0.0, 1.0, 0.0)
        with pytest.raises(ValueError):
            LocationPrediction("p", 0.0, 0.0, T0_MS, T0_MS, 0.5, PredictionModel.KALMAN_FILTER,
                               particles=(particle,))

    def test_zero_confidence_at_last_known(self):
        """Zero-confidence predictions sit at the last known position."""
        prediction = create_zero_confidence(
            "p", PredictionModel.PARTICLE_FILTER, T0_MS, T0_MS + 300_000,
            last_known=(22.29, 114.17), last_sample_timestamp=T0_MS,
        )

        assert not prediction.is_valid
        assert (prediction.latitude, prediction.longitude) == (22.29, 114.17)
        assert prediction.horizon_s == 300.0
        assert prediction.prediction_model == PredictionModel.PARTICLE_FILTER

    def test_to_dict_is_field_for_field(self):
        """Serialized prediction restores the same value."""
        prediction = LocationPrediction(
            "p", 22.3, 114.2, T0_MS, T0_MS + 60_000, 0.75, PredictionModel.KALMAN_FILTER,
            velocity=VelocityVector(12.0, 90.0, 4.0),
            kalman_state=self._kalman_state(),
            movement_pattern=MovementPattern.URBAN_DRIVING,
            noise_scale=1.8,
            last_known_lat=22.29, last_known_lon=114.17, last_sample_timestamp=T0_MS,
        )

        restored = LocationPrediction.from_dict(prediction.to_dict())

        assert restored == prediction
        assert restored.to_dict()['prediction_model'] == 'KALMAN_FILTER'


class TestKalmanState:
    """Tests for Kalman state conversion."""

    def test_arrays(self):
        """State vector and covariance come back as numpy arrays."""
        P = np.diag([1.0, 2.0, 3.0, 4.0])
        state = KalmanState.from_arrays((0.0, 0.0), np.array([5.0, 6.0, 7.0, 8.0]), P, T0_MS)

        np.testing.assert_array_equal(state.state_vector(), [5.0, 6.0, 7.0, 8.0])
        np.testing.assert_array_equal(state.covariance_matrix(), P)

    def test_covariance_size_checked(self):
        """Covariance must have 16 entries."""
        with pytest.raises(ValueError):
            KalmanState(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, (1.0,) * 9, T0_MS)


class TestVelocityVector:
    """Tests for velocity components."""

    def test_components(self):
        """Heading 90 is due east."""
        v = VelocityVector(10.0, 90.0)
        assert v.v_east == pytest.approx(10.0)
        assert v.v_north == pytest.approx(0.0, abs=1e-12)


class TestConfidenceCone:
    """Tests for cone shape."""

    def test_mismatched_lengths_rejected(self):
        """All point sequences must match in length."""
        with pytest.raises(ValueError):
            ConfidenceCone(((0.0, 0.0),), (), ((0.0, 0.0),), (1.0,), 0.8, 0.0)

    def test_empty(self):
        """Empty cone has no points."""
        cone = ConfidenceCone.empty()
        assert cone.is_empty
        assert cone.polygon() == ()

    def test_polygon_order(self):
        """Polygon runs out along the left boundary and back along the right."""
        cone = ConfidenceCone(
            center_line=((0.0, 0.0), (1.0, 0.0)),
            left_boundary=((0.0, -0.1), (1.0, -0.2)),
            right_boundary=((0.0, 0.1), (1.0, 0.2)),
            half_widths=(10.0, 20.0),
            confidence_level=0.8,
            max_distance=111_000.0,
        )

        assert cone.polygon() == ((0.0, -0.1), (1.0, -0.2), (1.0, 0.2), (0.0, 0.1))
        assert ConfidenceCone.from_dict(cone.to_dict()) == cone
