"""
Kalman Filter Predictor (Constant-Velocity).

Keeps one 4D constant-velocity Kalman filter per peer across calls, running in
a local tangent plane anchored near the peer.

State: [E, N, vE, vN] (2D position + velocity)

Per new sample:
1. Re-anchor the plane to the sample if the origin is too far away
2. Predict: x = F x, P = F P F^T + Q(q * noise_scale, dt)
3. Gate: Mahalanobis distance of the innovation vs chi2 (99%, 2 dof)
4. Update: Joseph-form covariance update
5. Velocity measurement (gated at 95%): the device-reported ground
   speed/track when present, else a finite-difference pseudo-measurement

Prediction to a future target is a predict-only step on a copy; the stored
track is not modified. Numeric failure evicts the track and falls back to the
linear prediction.

Not thread-safe per peer: callers serialise calls for the same peer.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from mesh_predict.errors import DegenerateCovarianceError, InsufficientHistoryError
from mesh_predict.history.history_store import wall_clock_ms
from mesh_predict.localization import LocalTangentPlane
from mesh_predict.metrics import get_metrics
from mesh_predict.proto import (
    ConfidenceCone,
    KalmanState,
    LocationPrediction,
    LocationSample,
    MovementPattern,
    PredictionConfig,
    PredictionModel,
    VelocityVector,
)
from mesh_predict.prediction.base import (
    Clock,
    HistoryLike,
    peer_id_of,
    prediction_window,
    zero_confidence_prediction,
)
from mesh_predict.prediction.cone_generator import ConfidenceConeGenerator
from mesh_predict.prediction.constant_velocity import propagate, stabilize_covariance
from mesh_predict.prediction.linear_predictor import LinearPredictor
from mesh_predict.prediction.motion import (
    MAX_HEADING_STD_DEG,
    MIN_HEADING_STD_DEG,
    estimate_velocity,
    heading_from_velocity,
)
from mesh_predict.prediction.movement_classifier import MovementClassifier, MovementProfile
from mesh_predict.prediction.state_arena import PeerStateArena

logger = logging.getLogger(__name__)

H_POS = np.array([
    [1.0, 0.0, 0.0, 0.0],
    [0.0, 1.0, 0.0, 0.0],
])

H_VEL = np.array([
    [0.0, 0.0, 1.0, 0.0],
    [0.0, 0.0, 0.0, 1.0],
])


def _default_process_noise() -> Dict[MovementPattern, float]:
    # Acceleration spectral density (m^2/s^3) at noise scale 1
    return {
        MovementPattern.STATIONARY: 1e-4,
        MovementPattern.WALKING_HIKING: 2e-3,
        MovementPattern.URBAN_DRIVING: 2e-2,
        MovementPattern.HIGHWAY_DRIVING: 1e-2,
        MovementPattern.BOATING: 5e-3,
        MovementPattern.UNKNOWN: 1e-2,
    }


@dataclass
class KalmanPredictorConfig:
    """
    Configuration for the Kalman predictor.

    Attributes:
        initial_pos_std_m: Initial position uncertainty (m)
        initial_vel_std_m_s: Initial velocity uncertainty (m/s)
        device_vel_std_m_s: Velocity uncertainty of device-reported ground speed/track (m/s),
            used for the initial state and for velocity updates
        default_accuracy_m: Measurement std when a sample has no accuracy (m)
        min_accuracy_m: Floor on measurement std (m)
        process_noise_density: Per-pattern acceleration spectral density (m^2/s^3)
        reanchor_distance_m: Re-anchor the plane when the origin is farther than this
        position_gate_chi2: Mahalanobis gate for position updates (chi2, 2 dof)
        velocity_gate_chi2: Mahalanobis gate for velocity pseudo-measurements
        velocity_update_enabled: Apply finite-difference velocity updates
        min_velocity_std_m_s, max_velocity_std_m_s: Clamp on velocity measurement std
        max_consecutive_gated: Gated measurements in a row before the track resets
        confidence_ceiling_m: Position sigma at which confidence reaches 0
        max_speed_mps: Velocity magnitude cap
    """

    initial_pos_std_m: float = 50.0
    initial_vel_std_m_s: float = 5.0
    device_vel_std_m_s: float = 2.0
    default_accuracy_m: float = 25.0
    min_accuracy_m: float = 3.0
    process_noise_density: Dict[MovementPattern, float] = field(default_factory=_default_process_noise)
    reanchor_distance_m: float = 5000.0
    position_gate_chi2: float = 9.21
    velocity_gate_chi2: float = 5.99
    velocity_update_enabled: bool = True
    min_velocity_std_m_s: float = 0.2
    max_velocity_std_m_s: float = 3.0
    max_consecutive_gated: int = 3
    confidence_ceiling_m: float = 1000.0
    max_speed_mps: float = 100.0


@dataclass
class KalmanTrack:
    """Mutable per-peer filter state."""

    plane: LocalTangentPlane
    x: np.ndarray
    P: np.ndarray
    last_time: int
    last_sample: LocationSample
    q: float = 0.0
    consecutive_gated: int = 0
    updates: int = 0

    def to_state(self) -> KalmanState:
        return KalmanState.from_arrays(self.plane.origin, self.x, self.P, self.last_time, self.q)


class KalmanPredictor:
    """
    Per-peer constant-velocity Kalman filter predictor.

    Usage:
        predictor = KalmanPredictor(linear=LinearPredictor())
        prediction = predictor.predict(history, PredictionConfig())
        cone = predictor.confidence_cone(prediction, history, config)
    """

    model = PredictionModel.KALMAN_FILTER

    def __init__(self, config: Optional[KalmanPredictorConfig] = None,
                 linear: Optional[LinearPredictor] = None,
                 classifier: Optional[MovementClassifier] = None,
                 cone_generator: Optional[ConfidenceConeGenerator] = None,
                 clock: Clock = wall_clock_ms):
        self.config = config or KalmanPredictorConfig()
        self.classifier = classifier or MovementClassifier()
        self.cone_generator = cone_generator or ConfidenceConeGenerator()
        self.linear = linear or LinearPredictor(classifier=self.classifier,
                                                cone_generator=self.cone_generator, clock=clock)
        self.clock = clock
        self.metrics = get_metrics()
        self.tracks: PeerStateArena[KalmanTrack] = PeerStateArena('kalman track')

    def predict(self, history: HistoryLike, config: PredictionConfig,
                target_timestamp: Optional[int] = None,
                now_ms: Optional[int] = None) -> LocationPrediction:
        """
        Bring the peer's filter up to date with history and predict to target.

        Returns:
            LocationPrediction tagged KALMAN_FILTER, or the linear fallback
            (tagged LINEAR) when the filter cannot be used
        """
        if now_ms is None:
            now_ms = self.clock()

        try:
            window = prediction_window(history, config, now_ms, self.config.max_speed_mps)
        except InsufficientHistoryError as e:
            logger.debug(f"Kalman: {e}")
            self.metrics.increment('zero_confidence_predictions')
            return zero_confidence_prediction(history, self.model, config, now_ms, target_timestamp)

        peer_id = peer_id_of(history) or window[-1].peer_id
        linear = self.linear.predict(window, config, target_timestamp, now_ms)
        profile = self.classifier.analyze(window)

        try:
            track = self._sync_track(peer_id, window, profile)
            return self._predict_from_track(track, window, linear, profile, config, target_timestamp, now_ms)
        except (DegenerateCovarianceError, np.linalg.LinAlgError, FloatingPointError, ValueError) as e:
            logger.warning(f"Kalman predictor failed for peer {peer_id}, using linear fallback: {e}")
            self.metrics.increment('linear_fallbacks')
            self.tracks.evict(peer_id)
            return linear

    def confidence_cone(self, prediction: LocationPrediction, history: HistoryLike,
                        config: PredictionConfig) -> ConfidenceCone:
        return self.cone_generator.generate(prediction, history, config)

    def forget(self, peer_id: str) -> bool:
        return self.tracks.evict(peer_id)

    def state_for(self, peer_id: str) -> Optional[KalmanState]:
        """Current (filtered, not propagated) state of a peer's track."""
        track = self.tracks.get(peer_id)
        return track.to_state() if track is not None else None

    def _process_noise_density(self, profile: MovementProfile) -> float:
        base = self.config.process_noise_density.get(
            profile.pattern, self.config.process_noise_density[MovementPattern.UNKNOWN]
        )
        return base * profile.noise_scale

    def _sync_track(self, peer_id: str, window: Sequence[LocationSample],
                    profile: MovementProfile) -> KalmanTrack:
        """Create or advance the peer's track through every unprocessed window sample."""
        q = self._process_noise_density(profile)
        track = self.tracks.get(peer_id)

        if track is None or track.last_time > window[-1].timestamp or track.last_time < window[0].timestamp:
            track = self._initialize_track(window, q)
            pending: List[LocationSample] = list(window[1:])
            self.tracks.put(peer_id, track)
            self.metrics.increment('kalman_initialized')
        else:
            pending = [s for s in window if s.timestamp > track.last_time]

        track.q = q
        for sample in pending:
            self._process_sample(track, sample)
        return track

    def _initialize_track(self, window: Sequence[LocationSample], q: float) -> KalmanTrack:
        """Initialize a track at the oldest window sample with the best window velocity."""
        first = window[0]
        estimate = estimate_velocity(window, self.config.max_speed_mps)
        velocity = estimate.velocity
        vel_std = self.config.device_vel_std_m_s if estimate.from_device else self.config.initial_vel_std_m_s
        plane = LocalTangentPlane(first.latitude, first.longitude)

        x = np.array([0.0, 0.0, velocity.v_east, velocity.v_north])
        P = np.diag([
            self.config.initial_pos_std_m ** 2,
            self.config.initial_pos_std_m ** 2,
            vel_std ** 2,
            vel_std ** 2,
        ])
        return KalmanTrack(plane=plane, x=x, P=P, last_time=first.timestamp, last_sample=first, q=q)

    def _measurement_std(self, sample: LocationSample) -> float:
        accuracy = sample.accuracy_m if sample.accuracy_m is not None else self.config.default_accuracy_m
        return max(accuracy, self.config.min_accuracy_m)

    def _reanchor_if_needed(self, track: KalmanTrack, sample: LocationSample):
        """Move the plane origin to the sample, carrying the state position across."""
        if track.plane.distance_from_origin_m(sample.latitude, sample.longitude) <= self.config.reanchor_distance_m:
            return

        lat, lon = track.plane.to_geodetic(track.x[0], track.x[1])
        track.plane = track.plane.reanchored(sample.latitude, sample.longitude)
        e, n = track.plane.to_enu(lat, lon)
        track.x[0] = e
        track.x[1] = n
        self.metrics.increment('kalman_reanchors')

    def _process_sample(self, track: KalmanTrack, sample: LocationSample):
        """Predict to the sample time and apply position and velocity updates."""
        self._reanchor_if_needed(track, sample)

        dt = (sample.timestamp - track.last_time) / 1000.0
        track.x, track.P = propagate(track.x, track.P, dt, track.q)

        z = np.array(track.plane.to_enu(sample.latitude, sample.longitude))
        r_std = self._measurement_std(sample)
        R = np.eye(2) * r_std ** 2

        if self._update(track, H_POS, z, R, self.config.position_gate_chi2, 'kalman_innovation_m'):
            track.consecutive_gated = 0
        else:
            track.consecutive_gated += 1
            self.metrics.increment_drop('innovation_gated')
            if track.consecutive_gated >= self.config.max_consecutive_gated:
                self._reset_to_measurement(track, z, R)

        if self.config.velocity_update_enabled and dt > 0:
            self._velocity_update(track, sample, dt, r_std)

        self._cap_speed(track)
        track.P = stabilize_covariance(track.P)
        track.last_time = sample.timestamp
        track.last_sample = sample
        track.updates += 1
        self.metrics.increment('kalman_updates')

    def _update(self, track: KalmanTrack, H: np.ndarray, z: np.ndarray, R: np.ndarray,
                gate_chi2: float, histogram: str) -> bool:
        """
        Gated Kalman update.

        Returns:
            True if applied, False if the innovation failed the gate
        """
        y = z - H @ track.x
        S = H @ track.P @ H.T + R
        mahalanobis_sq = float(y @ np.linalg.solve(S, y))

        self.metrics.record_histogram(histogram, float(np.linalg.norm(y)))
        if mahalanobis_sq > gate_chi2:
            logger.debug(f"Gated innovation |y|={np.linalg.norm(y):.2f} d2={mahalanobis_sq:.2f}")
            return False

        K = np.linalg.solve(S, H @ track.P).T
        track.x = track.x + K @ y

        # Joseph form
        I_KH = np.eye(4) - K @ H
        track.P = I_KH @ track.P @ I_KH.T + K @ R @ K.T
        return True

    def _velocity_update(self, track: KalmanTrack, sample: LocationSample, dt: float, r_std: float):
        """Velocity measurement: device-reported when present, else finite differences."""
        if sample.has_velocity:
            speed, track_deg = sample.device_velocity
            heading = math.radians(track_deg)
            v_meas = np.array([speed * math.sin(heading), speed * math.cos(heading)])
            sigma_v = self.config.device_vel_std_m_s
            self.metrics.increment('kalman_device_velocity_updates')
        else:
            prev = track.last_sample
            if prev is sample or prev.timestamp >= sample.timestamp:
                return

            prev_e, prev_n = track.plane.to_enu(prev.latitude, prev.longitude)
            cur_e, cur_n = track.plane.to_enu(sample.latitude, sample.longitude)
            v_meas = np.array([(cur_e - prev_e) / dt, (cur_n - prev_n) / dt])

            prev_std = self._measurement_std(prev)
            sigma_v = math.sqrt(prev_std ** 2 + r_std ** 2) / dt
            sigma_v = min(max(sigma_v, self.config.min_velocity_std_m_s), self.config.max_velocity_std_m_s)

        self._update(track, H_VEL, v_meas, np.eye(2) * sigma_v ** 2,
                     self.config.velocity_gate_chi2, 'kalman_velocity_innovation_m_s')

    def _reset_to_measurement(self, track: KalmanTrack, z: np.ndarray, R: np.ndarray):
        """Snap the track to a persistent measurement after repeated gating."""
        logger.info(f"Resetting Kalman track after {track.consecutive_gated} gated measurements")
        track.x[0:2] = z
        track.P[0:2, :] = 0.0
        track.P[:, 0:2] = 0.0
        track.P[0:2, 0:2] = R
        track.P[2:4, 2:4] = track.P[2:4, 2:4] + np.eye(2) * self.config.initial_vel_std_m_s ** 2
        track.consecutive_gated = 0
        self.metrics.increment('kalman_resets')

    def _cap_speed(self, track: KalmanTrack):
        speed = math.hypot(track.x[2], track.x[3])
        if speed > self.config.max_speed_mps:
            scale = self.config.max_speed_mps / speed
            track.x[2] *= scale
            track.x[3] *= scale

    def _heading_uncertainty(self, x: np.ndarray, P: np.ndarray) -> float:
        """Heading sigma (deg) from velocity covariance via the delta method."""
        speed_sq = x[2] ** 2 + x[3] ** 2
        if speed_sq < 0.01:
            return MAX_HEADING_STD_DEG
        J = np.array([x[3] / speed_sq, -x[2] / speed_sq])
        variance = float(J @ P[2:4, 2:4] @ J)
        sigma = math.degrees(math.sqrt(max(variance, 0.0)))
        return min(max(sigma, MIN_HEADING_STD_DEG), MAX_HEADING_STD_DEG)

    def _predict_from_track(self, track: KalmanTrack, window: Sequence[LocationSample],
                            linear: LocationPrediction, profile: MovementProfile,
                            config: PredictionConfig, target_timestamp: Optional[int],
                            now_ms: int) -> LocationPrediction:
        last = window[-1]
        if target_timestamp is None:
            target_timestamp = last.timestamp + config.horizon_ms

        dt = max(0.0, (target_timestamp - track.last_time) / 1000.0)
        x_pred, P_pred = propagate(track.x, track.P, dt, track.q)
        if not np.all(np.isfinite(x_pred)):
            raise FloatingPointError("Non-finite predicted state")

        lat, lon = track.plane.to_geodetic(x_pred[0], x_pred[1])

        pos_sigma = math.sqrt(max(P_pred[0, 0] + P_pred[1, 1], 0.0))
        confidence = 1.0 - min(pos_sigma / self.config.confidence_ceiling_m, 1.0)
        confidence = min(max(confidence, self.linear.confidence_floor(linear)), 1.0)

        velocity = VelocityVector(
            speed=math.hypot(track.x[2], track.x[3]),
            heading=heading_from_velocity(track.x[2], track.x[3]),
            heading_uncertainty=self._heading_uncertainty(track.x, track.P),
        )

        self.metrics.increment('kalman_predictions')
        logger.debug(
            f"Kalman {last.peer_id}: speed={velocity.speed:.2f}m/s heading={velocity.heading:.1f} "
            f"sigma={pos_sigma:.1f}m confidence={confidence:.3f}"
        )

        return LocationPrediction(
            peer_id=last.peer_id,
            latitude=lat,
            longitude=lon,
            predicted_timestamp=now_ms,
            target_timestamp=target_timestamp,
            confidence=confidence,
            prediction_model=self.model,
            velocity=velocity,
            kalman_state=track.to_state(),
            movement_pattern=profile.pattern,
            noise_scale=profile.noise_scale,
            last_known_lat=last.latitude,
            last_known_lon=last.longitude,
            last_sample_timestamp=last.timestamp,
        )
