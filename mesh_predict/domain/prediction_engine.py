"""
Prediction Engine.

Orchestrates ingest -> history -> predictor -> cone -> publish for every
peer. Each peer's pipeline is serialised by its own re-entrant lock; peers
never share mutable state beyond the lock-guarded dictionaries below.

Recomputation is triggered by a new sample, by periodic re-projection
(target = now + horizon), or by a cancellable batch job after a config or
model change.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from mesh_predict.errors import StaleSampleError
from mesh_predict.history import HistoryStoreConfig, LocationHistoryStore, wall_clock_ms
from mesh_predict.metrics import get_metrics
from mesh_predict.proto import (
    ConfidenceCone,
    LocationPrediction,
    LocationSample,
    PredictionConfig,
    PredictionModel,
)
from mesh_predict.prediction import (
    ClassifierConfig,
    ConeConfig,
    ConfidenceConeGenerator,
    KalmanPredictor,
    KalmanPredictorConfig,
    LinearPredictor,
    LinearPredictorConfig,
    MovementClassifier,
    ParticlePredictor,
    ParticlePredictorConfig,
    PredictorSelector,
)
from mesh_predict.domain.accuracy_tracker import AccuracyTracker, PredictionStats, build_stats

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, LocationPrediction, ConfidenceCone], None]


@dataclass
class EngineConfig:
    """
    Configuration for the prediction engine.

    Attributes:
        reprojection_interval_s: Period of the re-projection thread
        prune_on_reproject: Prune stale peers before each re-projection pass
        accuracy_history_size: Bound on retained accuracy entries
    """

    reprojection_interval_s: float = 30.0
    prune_on_reproject: bool = True
    accuracy_history_size: int = 1000


@dataclass(frozen=True)
class PeerPrediction:
    """Published result for one peer."""

    prediction: LocationPrediction
    cone: ConfidenceCone
    updated_at: int

    def to_dict(self) -> dict:
        return {
            'prediction': self.prediction.to_dict(),
            'cone': self.cone.to_dict(),
            'updated_at': self.updated_at,
        }


class BatchRecomputeJob:
    """
    Background recomputation over a fixed set of peers.

    Takes one peer lock at a time, so ingestion for other peers proceeds.
    cancel() stops the job before the next peer.
    """

    def __init__(self, engine: 'PredictionEngine', peer_ids: List[str]):
        self.engine = engine
        self.peer_ids = list(peer_ids)
        self.completed: List[str] = []
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name='batch-recompute', daemon=True)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done_event.is_set()

    def start(self) -> 'BatchRecomputeJob':
        self._thread.start()
        return self

    def cancel(self):
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job finishes. Returns False on timeout."""
        return self._done_event.wait(timeout)

    def _run(self):
        try:
            for peer_id in self.peer_ids:
                if self._cancel_event.is_set():
                    logger.info(f"Batch recompute cancelled after {len(self.completed)}/{len(self.peer_ids)} peers")
                    break
                self.engine.recompute_peer(peer_id)
                self.completed.append(peer_id)
            else:
                logger.debug(f"Batch recompute finished: {len(self.completed)} peers")
        finally:
            self._done_event.set()


class PredictionEngine:
    """
    Per-peer prediction pipeline with snapshot and subscriber output.

    Usage:
        engine = create_default_engine()
        engine.subscribe(lambda peer_id, prediction, cone: ...)
        engine.ingest(sample)
        engine.start_reprojection()
        ...
        engine.stop()
    """

    def __init__(self, store: LocationHistoryStore, selector: PredictorSelector,
                 prediction_config: Optional[PredictionConfig] = None,
                 config: Optional[EngineConfig] = None,
                 clock: Callable[[], int] = wall_clock_ms):
        self.store = store
        self.selector = selector
        self.config = config or EngineConfig()
        self.clock = clock
        self.metrics = get_metrics()
        self.accuracy = AccuracyTracker(self.config.accuracy_history_size)

        self._prediction_config = prediction_config or PredictionConfig()
        self._config_lock = threading.Lock()

        self._locks_lock = threading.Lock()
        self._peer_locks: Dict[str, threading.RLock] = {}

        self._published_lock = threading.Lock()
        self._published: Dict[str, PeerPrediction] = {}

        self._subscribers: List[Subscriber] = []
        self._jobs: List[BatchRecomputeJob] = []

        self._reprojection_thread: Optional[threading.Thread] = None
        self._reprojection_stop = threading.Event()

        self.store.add_eviction_listener(self._on_peer_evicted)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def prediction_config(self) -> PredictionConfig:
        with self._config_lock:
            return self._prediction_config

    @property
    def model(self) -> PredictionModel:
        return self.selector.model

    def update_config(self, config: PredictionConfig, recompute: bool = False) -> Optional[BatchRecomputeJob]:
        """Swap the prediction config; applies from the next cycle."""
        with self._config_lock:
            self._prediction_config = config
        logger.info(f"Prediction config updated: {config.to_dict()}")
        return self.start_batch_recompute() if recompute else None

    def set_model(self, model: PredictionModel, recompute: bool = False) -> Optional[BatchRecomputeJob]:
        """Switch the active model. Per-peer state of every model is kept."""
        self.selector.set_model(model)
        return self.start_batch_recompute() if recompute else None

    def subscribe(self, callback: Subscriber):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    # ------------------------------------------------------------------
    # Ingest and recompute
    # ------------------------------------------------------------------

    def ingest(self, sample: LocationSample) -> Optional[LocationPrediction]:
        """
        Record a sample and recompute the peer's prediction.

        Returns:
            The new prediction, or None when the sample was dropped
        """
        self.metrics.increment('samples_in')
        peer_id = sample.peer_id

        with self._lock_for(peer_id):
            previous = self._published_for(peer_id)
            try:
                self.store.record(peer_id, sample)
            except StaleSampleError as e:
                logger.warning(f"Dropped sample: {e}")
                self.metrics.increment_drop('out_of_order')
                return None

            if previous is not None:
                self.accuracy.record(previous.prediction, sample)

            published = self._recompute_locked(peer_id, None)

        if published is not None:
            self._notify(peer_id, published)
            return published.prediction
        return None

    def ingest_dict(self, data: dict) -> Optional[LocationPrediction]:
        """Parse a wire dict and ingest it. Malformed input is dropped and counted."""
        try:
            sample = LocationSample.from_dict(data)
        except (KeyError, TypeError) as e:
            self.metrics.increment('samples_in')
            self.metrics.increment_drop('parse_error')
            logger.warning(f"Dropped unparseable sample {data!r}: {e}")
            return None
        except ValueError as e:
            self.metrics.increment('samples_in')
            self.metrics.increment_drop('invalid_sample')
            logger.warning(f"Dropped invalid sample {data!r}: {e}")
            return None
        return self.ingest(sample)

    def recompute_peer(self, peer_id: str, target_timestamp: Optional[int] = None) -> Optional[LocationPrediction]:
        """Recompute one peer from its stored history."""
        with self._lock_for(peer_id):
            published = self._recompute_locked(peer_id, target_timestamp)

        if published is not None:
            self._notify(peer_id, published)
            return published.prediction
        return None

    def reproject_all(self) -> int:
        """
        Refresh every peer's target to now + horizon without new data.

        Returns:
            Number of peers re-projected
        """
        if self.config.prune_on_reproject:
            self.prune()

        count = 0
        for peer_id in self.store.peer_ids():
            target = self.clock() + self.prediction_config.horizon_ms
            if self.recompute_peer(peer_id, target) is not None:
                count += 1
        logger.debug(f"Re-projected {count} peers")
        return count

    def _recompute_locked(self, peer_id: str, target_timestamp: Optional[int]) -> Optional[PeerPrediction]:
        history = self.store.get(peer_id)
        if history is None:
            return None

        config = self.prediction_config
        predictor = self.selector.current_predictor()
        now = self.clock()

        try:
            prediction = predictor.predict(history, config, target_timestamp=target_timestamp, now_ms=now)
            cone = predictor.confidence_cone(prediction, history, config)
        except Exception as e:
            self.metrics.increment('prediction_failures')
            logger.error(f"Prediction failed for peer {peer_id} ({predictor.model.name}): {e}")
            return None

        published = PeerPrediction(prediction=prediction, cone=cone, updated_at=now)
        with self._published_lock:
            self._published[peer_id] = published

        self.metrics.increment('predictions')
        self.metrics.record_histogram('prediction_confidence', prediction.confidence)
        return published

    def _notify(self, peer_id: str, published: PeerPrediction):
        for callback in list(self._subscribers):
            try:
                callback(peer_id, published.prediction, published.cone)
            except Exception as e:
                logger.error(f"Subscriber failed for peer {peer_id}: {e}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def prediction_for(self, peer_id: str) -> Optional[LocationPrediction]:
        with self._lock_for(peer_id):
            published = self._published_for(peer_id)
        return published.prediction if published is not None else None

    def cone_for(self, peer_id: str) -> Optional[ConfidenceCone]:
        with self._lock_for(peer_id):
            published = self._published_for(peer_id)
        return published.cone if published is not None else None

    def snapshot(self) -> Dict[str, PeerPrediction]:
        """Current published result per peer."""
        with self._published_lock:
            peer_ids = list(self._published.keys())

        result = {}
        for peer_id in peer_ids:
            with self._lock_for(peer_id):
                published = self._published_for(peer_id)
            if published is not None:
                result[peer_id] = published
        return result

    def prediction_stats(self) -> PredictionStats:
        predictions = [p.prediction for p in self.snapshot().values()]
        return build_stats(predictions, len(self.store), self.accuracy.mean_error_m())

    def _published_for(self, peer_id: str) -> Optional[PeerPrediction]:
        with self._published_lock:
            return self._published.get(peer_id)

    def _lock_for(self, peer_id: str) -> threading.RLock:
        with self._locks_lock:
            lock = self._peer_locks.get(peer_id)
            if lock is None:
                lock = threading.RLock()
                self._peer_locks[peer_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def prune(self) -> List[str]:
        """Evict peers with no recent sample, along with their predictor state."""
        return self.store.prune(self.prediction_config.max_history_age_minutes, self.clock())

    def forget(self, peer_id: str) -> bool:
        with self._lock_for(peer_id):
            return self.store.forget(peer_id)

    def _on_peer_evicted(self, peer_id: str):
        with self._lock_for(peer_id):
            # A sample ingested between history removal and this callback
            # starts a fresh history; its state and prediction stay.
            if peer_id in self.store:
                logger.debug(f"Peer {peer_id} re-recorded before eviction completed; keeping state")
                self.metrics.increment('evictions_superseded')
                return
            self.selector.forget(peer_id)
            with self._published_lock:
                self._published.pop(peer_id, None)
        self.accuracy.forget(peer_id)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def start_batch_recompute(self, peer_ids: Optional[List[str]] = None,
                              start: bool = True) -> BatchRecomputeJob:
        """Recompute all (or the given) peers on a background thread."""
        if peer_ids is None:
            peer_ids = self.store.peer_ids()
        job = BatchRecomputeJob(self, peer_ids)
        self._jobs = [j for j in self._jobs if not j.done]
        self._jobs.append(job)
        if start:
            job.start()
        return job

    def start_reprojection(self, interval_s: Optional[float] = None):
        """Run reproject_all() periodically on a daemon thread."""
        if self._reprojection_thread is not None and self._reprojection_thread.is_alive():
            logger.warning("Re-projection already running")
            return

        interval = interval_s if interval_s is not None else self.config.reprojection_interval_s
        self._reprojection_stop.clear()
        self._reprojection_thread = threading.Thread(
            target=self._reprojection_loop, args=(interval,), name='reprojection', daemon=True
        )
        self._reprojection_thread.start()
        logger.info(f"Re-projection started (every {interval:.1f}s)")

    def stop_reprojection(self, timeout: float = 5.0):
        if self._reprojection_thread is None:
            return
        self._reprojection_stop.set()
        self._reprojection_thread.join(timeout)
        self._reprojection_thread = None
        logger.info("Re-projection stopped")

    def stop(self):
        """Stop background threads and cancel running batch jobs."""
        self.stop_reprojection()
        for job in self._jobs:
            job.cancel()
        self._jobs = []

    def _reprojection_loop(self, interval: float):
        while not self._reprojection_stop.wait(interval):
            started = time.time()
            try:
                count = self.reproject_all()
            except Exception as e:
                logger.error(f"Re-projection pass failed: {e}")
                continue
            self.metrics.record_histogram('reprojection_ms', (time.time() - started) * 1000)
            logger.debug(f"Re-projection pass: {count} peers")


def create_default_engine(prediction_config: Optional[PredictionConfig] = None,
                          engine_config: Optional[EngineConfig] = None,
                          model: PredictionModel = PredictionModel.KALMAN_FILTER,
                          history_config: Optional[HistoryStoreConfig] = None,
                          classifier_config: Optional[ClassifierConfig] = None,
                          linear_config: Optional[LinearPredictorConfig] = None,
                          kalman_config: Optional[KalmanPredictorConfig] = None,
                          particle_config: Optional[ParticlePredictorConfig] = None,
                          cone_config: Optional[ConeConfig] = None,
                          clock: Callable[[], int] = wall_clock_ms) -> PredictionEngine:
    """
    Build an engine with all three predictors sharing one classifier and cone generator.
    """
    classifier = MovementClassifier(classifier_config)
    cones = ConfidenceConeGenerator(cone_config)
    linear = LinearPredictor(linear_config, classifier, cones, clock)
    kalman = KalmanPredictor(kalman_config, linear, classifier, cones, clock)
    particle = ParticlePredictor(particle_config, linear, classifier, cones, clock)

    selector = PredictorSelector({
        PredictionModel.LINEAR: linear,
        PredictionModel.KALMAN_FILTER: kalman,
        PredictionModel.PARTICLE_FILTER: particle,
    }, default_model=model)

    store = LocationHistoryStore(history_config, clock)
    return PredictionEngine(store, selector, prediction_config, engine_config, clock)
