"""
Peer location prediction replay.

Feeds location samples (JSON lines or a synthetic track) through a
prediction engine, using the sample timestamps as the clock, and prints
predictions and a metrics summary.
"""

import sys
import json
import signal
import logging
import argparse
from typing import Dict, Iterator, Optional

import numpy as np

import config
from mesh_predict.domain import EngineConfig, PredictionEngine, create_default_engine
from mesh_predict.history import HistoryStoreConfig
from mesh_predict.localization import destination_point
from mesh_predict.metrics import get_metrics
from mesh_predict.prediction import KalmanPredictorConfig, ParticlePredictorConfig
from mesh_predict.proto import ConfidenceCone, LocationPrediction, LocationSample, PredictionConfig, PredictionModel

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


class ReplayClock:
    """Clock driven by replayed sample timestamps."""

    def __init__(self, start_ms: int = 0):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance_to(self, timestamp_ms: int):
        self.now_ms = max(self.now_ms, timestamp_ms)


def simulate_track(profile_name: str, seed: Optional[int] = None) -> Iterator[LocationSample]:
    """Generate a noisy synthetic track from SIMULATION_CONFIG."""
    sim = config.SIMULATION_CONFIG
    profile = sim["profiles"][profile_name]
    rng = np.random.default_rng(seed)

    lat, lon = sim["base_lat"], sim["base_lon"]
    heading = profile["heading_deg"]
    timestamp = 0
    interval_ms = int(sim["interval_s"] * 1000)

    for _ in range(sim["num_samples"]):
        noise_e, noise_n = rng.normal(0.0, sim["position_noise_m"], size=2)
        noise_dist = float(np.hypot(noise_e, noise_n))
        noise_bearing = float(np.degrees(np.arctan2(noise_e, noise_n)))
        obs_lat, obs_lon = destination_point(lat, lon, noise_dist, noise_bearing)

        yield LocationSample(
            peer_id=sim["peer_id"],
            latitude=obs_lat,
            longitude=obs_lon,
            timestamp=timestamp,
            accuracy_m=sim["position_noise_m"],
        )

        lat, lon = destination_point(lat, lon, profile["speed_mps"] * sim["interval_s"], heading)
        heading = (heading + profile["turn_deg_per_step"]) % 360.0
        timestamp += interval_ms


def read_jsonl(path: str) -> Iterator[Dict]:
    """Yield decoded records; undecodable lines yield a marker dict."""
    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Line {line_no}: invalid JSON: {e}")
                yield {'_invalid_line': line_no}


def print_prediction(prediction: LocationPrediction, cone: Optional[ConfidenceCone], show_cone: bool):
    """Print a prediction in a fixed console format."""
    print("-" * 60)
    print(f"Peer: {prediction.peer_id}  Model: {prediction.prediction_model.name}  "
          f"Pattern: {prediction.movement_pattern.name}")
    print(f"Target: {prediction.target_timestamp} ms  (+{prediction.horizon_s:.0f} s)")
    print(f"Position: ({prediction.latitude:.6f}, {prediction.longitude:.6f})  "
          f"Confidence: {prediction.confidence:.3f}")
    if prediction.velocity is not None:
        v = prediction.velocity
        print(f"Velocity: {v.speed:.2f} m/s @ {v.heading:.1f} deg (+/- {v.heading_uncertainty:.1f})")
    if cone is not None and not cone.is_empty:
        print(f"Cone: {len(cone.center_line)} points, max half-width {max(cone.half_widths):.1f} m, "
              f"length {cone.max_distance:.1f} m, level {cone.confidence_level:.2f}")
        if show_cone:
            for lat, lon in cone.polygon():
                print(f"  ({lat:.6f}, {lon:.6f})")


class PredictionReplay:
    """Replays samples into an engine and reports results."""

    def __init__(self, engine: PredictionEngine, clock: ReplayClock):
        self.engine = engine
        self.clock = clock
        self.metrics = get_metrics()
        self.running = False

        self.sample_count = 0
        self.prediction_count = 0
        self._cones: Dict[str, ConfidenceCone] = {}

        self.engine.subscribe(self._on_prediction)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self.running = False

    def _on_prediction(self, peer_id: str, prediction: LocationPrediction, cone: ConfidenceCone):
        self._cones[peer_id] = cone

    def run(self, records: Iterator):
        """Ingest records (LocationSample or wire dicts) in order."""
        print_interval = config.OUTPUT_CONFIG["print_interval"]
        show_cone = config.OUTPUT_CONFIG["print_cone"]
        self.running = True
        logger.info(f"Replay started (model={self.engine.model.name})")

        try:
            for record in records:
                if not self.running:
                    break
                self.sample_count += 1
                prediction = self._ingest(record)
                if prediction is None:
                    continue

                self.prediction_count += 1
                if config.OUTPUT_CONFIG["enable_console_print"] and self.sample_count % print_interval == 0:
                    print_prediction(prediction, self._cones.get(prediction.peer_id), show_cone)
        finally:
            self.stop()

    def _ingest(self, record) -> Optional[LocationPrediction]:
        if isinstance(record, LocationSample):
            self.clock.advance_to(record.timestamp)
            return self.engine.ingest(record)

        timestamp = record.get('timestamp') if isinstance(record, dict) else None
        if isinstance(timestamp, (int, float)):
            self.clock.advance_to(int(timestamp))
        return self.engine.ingest_dict(record)

    def stop(self):
        self.running = False
        self.engine.stop()

        stats = self.engine.prediction_stats()
        print("\n" + "=" * 60)
        print("               Replay finished")
        print("=" * 60)
        print(f"Samples: {self.sample_count}  Predictions: {self.prediction_count}")
        snapshot = self.metrics.snapshot()
        reasons = self.metrics.SAMPLE_DROP_REASONS
        print(f"Dropped samples: {snapshot.total_dropped(reasons)} "
              f"({snapshot.drop_rate(self.sample_count, reasons):.1f}%)")
        uptime = self.metrics.get_uptime()
        if uptime > 0:
            print(f"Throughput: {self.sample_count / uptime:.1f} samples/s over {uptime:.1f}s")
        print(f"Peers: {stats.total_peers}  Average confidence: {stats.average_confidence:.3f}")
        print(f"Confidence: {stats.confidence_distribution}")
        if stats.average_error_m is not None:
            print(f"Average error: {stats.average_error_m:.1f} m")
        for model, summary in self.engine.accuracy.summary().items():
            print(f"  {model}: n={summary['count']} mean={summary['mean_error_m']:.1f} m "
                  f"median={summary['median_error_m']:.1f} m")
        print(f"Recommended model: {stats.recommended_model.name}")
        print("=" * 60)

        self.metrics.print_summary()
        logger.info("Replay stopped")


def build_engine(args, clock: ReplayClock) -> PredictionEngine:
    """Build an engine from config.py overridden by command-line arguments."""
    prediction = dict(config.PREDICTION_CONFIG)
    if args.horizon is not None:
        prediction["prediction_horizon_minutes"] = args.horizon
    if args.min_entries is not None:
        prediction["min_history_entries"] = args.min_entries
    if args.max_age is not None:
        prediction["max_history_age_minutes"] = args.max_age

    engine_cfg = config.ENGINE_CONFIG
    model = PredictionModel[args.model or engine_cfg["model"]]

    particle = dict(config.PARTICLE_CONFIG)
    if args.seed is not None:
        particle["seed"] = args.seed

    return create_default_engine(
        prediction_config=PredictionConfig.from_dict(prediction),
        engine_config=EngineConfig(
            reprojection_interval_s=engine_cfg["reprojection_interval_s"],
            prune_on_reproject=engine_cfg["prune_on_reproject"],
            accuracy_history_size=engine_cfg["accuracy_history_size"],
        ),
        model=model,
        history_config=HistoryStoreConfig(
            max_entries_per_peer=engine_cfg["max_entries_per_peer"],
            max_history_age_minutes=prediction["max_history_age_minutes"],
        ),
        kalman_config=KalmanPredictorConfig(**config.KALMAN_CONFIG),
        particle_config=ParticlePredictorConfig(**particle),
        clock=clock,
    )


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description='Peer location prediction replay')
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('--input', '-i', type=str,
                        help='JSON-lines file of location samples')
    source.add_argument('--simulate', '-s', choices=sorted(config.SIMULATION_CONFIG["profiles"]),
                        help='Generate a synthetic track')
    parser.add_argument('--model', '-m', choices=[m.name for m in PredictionModel], default=None,
                        help='Prediction model')
    parser.add_argument('--horizon', type=float, default=None,
                        help='Prediction horizon (minutes)')
    parser.add_argument('--min-entries', type=int, default=None,
                        help='Minimum history entries for a prediction')
    parser.add_argument('--max-age', type=float, default=None,
                        help='Maximum history age (minutes)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed (simulation and particle filter)')
    parser.add_argument('--print-interval', type=int, default=None,
                        help='Print every N samples')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.print_interval:
        config.OUTPUT_CONFIG["print_interval"] = args.print_interval

    clock = ReplayClock()
    try:
        engine = build_engine(args, clock)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.input:
        records = read_jsonl(args.input)
    else:
        records = simulate_track(args.simulate, args.seed)

    replay = PredictionReplay(engine, clock)
    try:
        replay.run(records)
    except OSError as e:
        logger.error(f"Cannot read input: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
