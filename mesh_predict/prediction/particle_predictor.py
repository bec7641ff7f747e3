"""
Particle Filter Predictor.

Keeps a fixed-size weighted particle population per peer across calls.
Particles live in a local tangent plane as numpy arrays [E, N, vE, vN].

Per new sample:
1. Seed (uninitialised peers): positions ~ N(sample, accuracy spread),
   velocities ~ window velocity perturbed by the pattern noise profile
2. Propagate: velocity random walk with density q * noise_scale
3. Weight: Gaussian likelihood accumulated as log-weights, normalised by
   subtracting the max log-weight before exponentiating
4. Resample (systematic) when ESS < threshold * N; an ESS collapse emits
   ParticleDegeneracyWarning and forces the resample

Prediction propagates a copy of the population to the target without
reweighting; the weighted mean is the point estimate.

Not thread-safe per peer: callers serialise calls for the same peer.
"""

import logging
import math
import warnings
import zlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from mesh_predict.errors import InsufficientHistoryError, ParticleDegeneracyWarning
from mesh_predict.history.history_store import wall_clock_ms
from mesh_predict.localization import LocalTangentPlane, circular_std_deg
from mesh_predict.metrics import get_metrics
from mesh_predict.proto import (
    ConfidenceCone,
    LocationPrediction,
    LocationSample,
    MovementPattern,
    Particle,
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


@dataclass(frozen=True)
class NoiseProfile:
    """
    Per-pattern particle noise.

    Attributes:
        speed_std_m_s: Seed spread of particle speed
        heading_std_deg: Seed spread of particle heading
        process_density: Velocity random-walk density (m^2/s^3) at noise scale 1
    """

    speed_std_m_s: float
    heading_std_deg: float
    process_density: float


def _default_profiles() -> Dict[MovementPattern, NoiseProfile]:
    return {
        MovementPattern.STATIONARY: NoiseProfile(0.2, 180.0, 1e-4),
        MovementPattern.WALKING_HIKING: NoiseProfile(0.5, 30.0, 2e-3),
        MovementPattern.URBAN_DRIVING: NoiseProfile(2.0, 20.0, 2e-2),
        MovementPattern.HIGHWAY_DRIVING: NoiseProfile(1.5, 5.0, 1e-2),
        MovementPattern.BOATING: NoiseProfile(1.0, 15.0, 5e-3),
        MovementPattern.UNKNOWN: NoiseProfile(2.0, 45.0, 1e-2),
    }


@dataclass
class ParticlePredictorConfig:
    """
    Configuration for the particle predictor.

    Attributes:
        num_particles: Population size (fixed)
        resample_threshold: Resample when ESS < threshold * num_particles
        degeneracy_ess_fraction: ESS below this fraction of N is a collapse
        default_accuracy_m: Measurement std when a sample has no accuracy (m)
        min_accuracy_m: Floor on measurement std (m)
        seed_spread_factor: Seed position std as a multiple of accuracy
        device_seed_scale: Seed speed/heading spread multiplier when the window
            velocity is device-reported
        roughening_m: Position jitter added after resampling (m)
        roughening_m_s: Velocity jitter added after resampling (m/s)
        profiles: Per-pattern noise profiles
        reanchor_distance_m: Re-anchor the plane when the origin is farther than this
        confidence_ceiling_m: Position spread at which confidence reaches 0
        max_speed_mps: Particle speed cap
        seed: RNG seed (None for nondeterministic)
    """

    num_particles: int = 200
    resample_threshold: float = 0.5
    degeneracy_ess_fraction: float = 0.01
    default_accuracy_m: float = 25.0
    min_accuracy_m: float = 3.0
    seed_spread_factor: float = 1.0
    device_seed_scale: float = 0.5
    roughening_m: float = 1.0
    roughening_m_s: float = 0.1
    profiles: Dict[MovementPattern, NoiseProfile] = field(default_factory=_default_profiles)
    reanchor_distance_m: float = 5000.0
    confidence_ceiling_m: float = 1000.0
    max_speed_mps: float = 100.0
    seed: Optional[int] = None


@dataclass
class ParticleCloud:
    """Mutable per-peer particle population in a local tangent plane."""

    plane: LocalTangentPlane
    east: np.ndarray
    north: np.ndarray
    v_east: np.ndarray
    v_north: np.ndarray
    log_weights: np.ndarray
    weights: np.ndarray
    last_time: int
    rng: np.random.Generator
    q: float = 0.0

    @property
    def size(self) -> int:
        return int(self.east.size)

    def effective_sample_size(self) -> float:
        return 1.0 / float(np.sum(self.weights ** 2))

    def weighted_mean(self) -> Tuple[float, float, float, float]:
        w = self.weights
        return (
            float(np.sum(w * self.east)),
            float(np.sum(w * self.north)),
            float(np.sum(w * self.v_east)),
            float(np.sum(w * self.v_north)),
        )

    def copy(self) -> 'ParticleCloud':
        return ParticleCloud(
            plane=self.plane,
            east=self.east.copy(),
            north=self.north.copy(),
            v_east=self.v_east.copy(),
            v_north=self.v_north.copy(),
            log_weights=self.log_weights.copy(),
            weights=self.weights.copy(),
            last_time=self.last_time,
            rng=self.rng,
            q=self.q,
        )


def normalize_log_weights(log_weights: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalise log-weights.

    Returns:
        (weights summing to 1, normalised log-weights); weights are all NaN
        when no log-weight is finite
    """
    max_log = float(np.max(log_weights))
    if not np.isfinite(max_log):
        nan = np.full(log_weights.shape, np.nan)
        return nan, nan
    shifted = np.exp(log_weights - max_log)
    total = float(np.sum(shifted))
    weights = shifted / total
    return weights, log_weights - max_log - math.log(total)


def systematic_resample(weights: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Indices drawn by systematic resampling (one uniform offset, N strata)."""
    n = weights.size
    positions = (rng.random() + np.arange(n)) / n
    cumulative = np.cumsum(weights)
    cumulative[-1] = 1.0
    indices = np.searchsorted(cumulative, positions, side='left')
    return np.minimum(indices, n - 1)


class ParticlePredictor:
    """
    Per-peer particle filter predictor.

    Usage:
        predictor = ParticlePredictor(ParticlePredictorConfig(seed=7))
        prediction = predictor.predict(history, PredictionConfig())
        cone = predictor.confidence_cone(prediction, history, config)
    """

    model = PredictionModel.PARTICLE_FILTER

    def __init__(self, config: Optional[ParticlePredictorConfig] = None,
                 linear: Optional[LinearPredictor] = None,
                 classifier: Optional[MovementClassifier] = None,
                 cone_generator: Optional[ConfidenceConeGenerator] = None,
                 clock: Clock = wall_clock_ms):
        self.config = config or ParticlePredictorConfig()
        if self.config.num_particles < 1:
            raise ValueError(f"num_particles must be positive: {self.config.num_particles}")

        self.classifier = classifier or MovementClassifier()
        self.cone_generator = cone_generator or ConfidenceConeGenerator()
        self.linear = linear or LinearPredictor(classifier=self.classifier,
                                                cone_generator=self.cone_generator, clock=clock)
        self.clock = clock
        self.metrics = get_metrics()
        self.clouds: PeerStateArena[ParticleCloud] = PeerStateArena('particle cloud')

    def predict(self, history: HistoryLike, config: PredictionConfig,
                target_timestamp: Optional[int] = None,
                now_ms: Optional[int] = None) -> LocationPrediction:
        """
        Bring the peer's population up to date with history and predict to target.

        Returns:
            LocationPrediction tagged PARTICLE_FILTER with the propagated
            population, or the linear fallback on numeric failure
        """
        if now_ms is None:
            now_ms = self.clock()

        try:
            window = prediction_window(history, config, now_ms, self.config.max_speed_mps)
        except InsufficientHistoryError as e:
            logger.debug(f"Particle: {e}")
            self.metrics.increment('zero_confidence_predictions')
            return zero_confidence_prediction(history, self.model, config, now_ms, target_timestamp)

        peer_id = peer_id_of(history) or window[-1].peer_id
        linear = self.linear.predict(window, config, target_timestamp, now_ms)
        profile = self.classifier.analyze(window)

        try:
            cloud = self._sync_cloud(peer_id, window, profile)
            return self._predict_from_cloud(cloud, window, linear, profile, config, target_timestamp, now_ms)
        except (FloatingPointError, ValueError, ArithmeticError) as e:
            logger.warning(f"Particle predictor failed for peer {peer_id}, using linear fallback: {e}")
            self.metrics.increment('linear_fallbacks')
            self.clouds.evict(peer_id)
            return linear

    def confidence_cone(self, prediction: LocationPrediction, history: HistoryLike,
                        config: PredictionConfig) -> ConfidenceCone:
        return self.cone_generator.generate(prediction, history, config)

    def forget(self, peer_id: str) -> bool:
        return self.clouds.evict(peer_id)

    def cloud_for(self, peer_id: str) -> Optional[ParticleCloud]:
        return self.clouds.get(peer_id)

    def _profile(self, pattern: MovementPattern) -> NoiseProfile:
        return self.config.profiles.get(pattern, self.config.profiles[MovementPattern.UNKNOWN])

    def _rng_for(self, peer_id: str) -> np.random.Generator:
        if self.config.seed is None:
            return np.random.default_rng()
        return np.random.default_rng([self.config.seed, zlib.crc32(peer_id.encode('utf-8'))])

    def _measurement_std(self, sample: LocationSample) -> float:
        accuracy = sample.accuracy_m if sample.accuracy_m is not None else self.config.default_accuracy_m
        return max(accuracy, self.config.min_accuracy_m)

    def _sync_cloud(self, peer_id: str, window: Sequence[LocationSample],
                    profile: MovementProfile) -> ParticleCloud:
        """Seed or advance the peer's population through every unprocessed window sample."""
        noise = self._profile(profile.pattern)
        q = noise.process_density * profile.noise_scale
        cloud = self.clouds.get(peer_id)

        if cloud is None or cloud.last_time > window[-1].timestamp or cloud.last_time < window[0].timestamp:
            cloud = self._seed(peer_id, window, noise, q)
            pending: List[LocationSample] = list(window[1:])
            self.clouds.put(peer_id, cloud)
            self.metrics.increment('particle_seeded')
        else:
            pending = [s for s in window if s.timestamp > cloud.last_time]

        cloud.q = q
        for sample in pending:
            self._process_sample(cloud, sample)
        return cloud

    def _seed(self, peer_id: str, window: Sequence[LocationSample], noise: NoiseProfile, q: float) -> ParticleCloud:
        """Seed a population around the oldest window sample."""
        first = window[0]
        n = self.config.num_particles
        rng = self._rng_for(peer_id)
        estimate = estimate_velocity(window, self.config.max_speed_mps)
        velocity = estimate.velocity
        spread = self._measurement_std(first) * self.config.seed_spread_factor
        scale = self.config.device_seed_scale if estimate.from_device else 1.0

        speeds = np.clip(velocity.speed + rng.normal(0.0, noise.speed_std_m_s * scale, n),
                         0.0, self.config.max_speed_mps)
        headings = np.radians(velocity.heading + rng.normal(0.0, noise.heading_std_deg * scale, n))

        return ParticleCloud(
            plane=LocalTangentPlane(first.latitude, first.longitude),
            east=rng.normal(0.0, spread, n),
            north=rng.normal(0.0, spread, n),
            v_east=speeds * np.sin(headings),
            v_north=speeds * np.cos(headings),
            log_weights=np.full(n, -math.log(n)),
            weights=np.full(n, 1.0 / n),
            last_time=first.timestamp,
            rng=rng,
            q=q,
        )

    def _reanchor_if_needed(self, cloud: ParticleCloud, sample: LocationSample):
        if cloud.plane.distance_from_origin_m(sample.latitude, sample.longitude) <= self.config.reanchor_distance_m:
            return
        lats, lons = cloud.plane.to_geodetic_arrays(cloud.east, cloud.north)
        cloud.plane = cloud.plane.reanchored(sample.latitude, sample.longitude)
        cloud.east, cloud.north = cloud.plane.to_enu_arrays(lats, lons)
        self.metrics.increment('particle_reanchors')

    def _propagate(self, cloud: ParticleCloud, dt: float):
        """Velocity random walk over dt seconds (in place)."""
        if dt <= 0:
            return
        sigma_v = math.sqrt(cloud.q * dt)
        dv_e = cloud.rng.normal(0.0, sigma_v, cloud.size)
        dv_n = cloud.rng.normal(0.0, sigma_v, cloud.size)
        cloud.east = cloud.east + (cloud.v_east + 0.5 * dv_e) * dt
        cloud.north = cloud.north + (cloud.v_north + 0.5 * dv_n) * dt
        cloud.v_east = cloud.v_east + dv_e
        cloud.v_north = cloud.v_north + dv_n
        self._cap_speed(cloud)

    def _cap_speed(self, cloud: ParticleCloud):
        speed = np.hypot(cloud.v_east, cloud.v_north)
        scale = np.where(speed > self.config.max_speed_mps, self.config.max_speed_mps / np.maximum(speed, 1e-12), 1.0)
        cloud.v_east = cloud.v_east * scale
        cloud.v_north = cloud.v_north * scale

    def _process_sample(self, cloud: ParticleCloud, sample: LocationSample):
        """Propagate to the sample, reweight, and resample if needed."""
        self._reanchor_if_needed(cloud, sample)
        self._propagate(cloud, (sample.timestamp - cloud.last_time) / 1000.0)

        z_e, z_n = cloud.plane.to_enu(sample.latitude, sample.longitude)
        sigma = self._measurement_std(sample)
        d_sq = (cloud.east - z_e) ** 2 + (cloud.north - z_n) ** 2
        cloud.log_weights = cloud.log_weights - d_sq / (2.0 * sigma ** 2)
        cloud.weights, cloud.log_weights = normalize_log_weights(cloud.log_weights)

        ess = cloud.effective_sample_size() if np.all(np.isfinite(cloud.weights)) else 0.0
        self.metrics.record_histogram('particle_ess', ess)

        if ess < self.config.degeneracy_ess_fraction * cloud.size:
            warnings.warn(
                f"Particle population for {sample.peer_id} collapsed (ESS={ess:.2f}); forcing resample",
                ParticleDegeneracyWarning,
                stacklevel=2,
            )
            self.metrics.increment('particle_degeneracies')
            if not np.all(np.isfinite(cloud.weights)):
                uniform = np.full(cloud.size, 1.0 / cloud.size)
                cloud.weights = uniform
            self._resample(cloud, sigma)
        elif ess < self.config.resample_threshold * cloud.size:
            self._resample(cloud, sigma)

        cloud.last_time = sample.timestamp

    def _resample(self, cloud: ParticleCloud, measurement_std: float):
        """Systematic resampling; weights uniform afterwards."""
        idx = systematic_resample(cloud.weights, cloud.rng)
        n = cloud.size
        rough_pos = min(self.config.roughening_m, measurement_std)
        cloud.east = cloud.east[idx] + cloud.rng.normal(0.0, rough_pos, n)
        cloud.north = cloud.north[idx] + cloud.rng.normal(0.0, rough_pos, n)
        cloud.v_east = cloud.v_east[idx] + cloud.rng.normal(0.0, self.config.roughening_m_s, n)
        cloud.v_north = cloud.v_north[idx] + cloud.rng.normal(0.0, self.config.roughening_m_s, n)
        cloud.weights = np.full(n, 1.0 / n)
        cloud.log_weights = np.full(n, -math.log(n))
        self.metrics.increment('particle_resamples')

    def _heading_uncertainty(self, cloud: ParticleCloud) -> float:
        speeds = np.hypot(cloud.v_east, cloud.v_north)
        moving = speeds > 0.1
        if np.count_nonzero(moving) < 2:
            return MAX_HEADING_STD_DEG
        headings = np.degrees(np.arctan2(cloud.v_east[moving], cloud.v_north[moving]))
        sigma = circular_std_deg(headings)
        return min(max(sigma, MIN_HEADING_STD_DEG), MAX_HEADING_STD_DEG)

    def _predict_from_cloud(self, cloud: ParticleCloud, window: Sequence[LocationSample],
                            linear: LocationPrediction, profile: MovementProfile,
                            config: PredictionConfig, target_timestamp: Optional[int],
                            now_ms: int) -> LocationPrediction:
        last = window[-1]
        if target_timestamp is None:
            target_timestamp = last.timestamp + config.horizon_ms

        forecast = cloud.copy()
        self._propagate(forecast, max(0.0, (target_timestamp - cloud.last_time) / 1000.0))

        mean_e, mean_n, mean_ve, mean_vn = forecast.weighted_mean()
        if not all(map(math.isfinite, (mean_e, mean_n, mean_ve, mean_vn))):
            raise FloatingPointError("Non-finite particle mean")

        lat, lon = forecast.plane.to_geodetic(mean_e, mean_n)
        w = forecast.weights
        variance = float(np.sum(w * ((forecast.east - mean_e) ** 2 + (forecast.north - mean_n) ** 2)))
        spread = math.sqrt(max(variance, 0.0))
        confidence = 1.0 - min(spread / self.config.confidence_ceiling_m, 1.0)
        confidence = min(max(confidence, self.linear.confidence_floor(linear)), 1.0)

        velocity = VelocityVector(
            speed=math.hypot(mean_ve, mean_vn),
            heading=heading_from_velocity(mean_ve, mean_vn),
            heading_uncertainty=self._heading_uncertainty(forecast),
        )

        lats, lons = forecast.plane.to_geodetic_arrays(forecast.east, forecast.north)
        particles = tuple(
            Particle(float(la), float(lo), float(ve), float(vn), float(wt), float(lw))
            for la, lo, ve, vn, wt, lw in zip(
                lats, lons, forecast.v_east, forecast.v_north, forecast.weights, forecast.log_weights
            )
        )

        self.metrics.increment('particle_predictions')
        logger.debug(
            f"Particle {last.peer_id}: speed={velocity.speed:.2f}m/s heading={velocity.heading:.1f} "
            f"spread={spread:.1f}m confidence={confidence:.3f}"
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
            particles=particles,
            movement_pattern=profile.pattern,
            noise_scale=profile.noise_scale,
            last_known_lat=last.latitude,
            last_known_lon=last.longitude,
            last_sample_timestamp=last.timestamp,
        )
