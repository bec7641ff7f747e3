"""
Confidence Cone Generator.

Turns a prediction into a renderable envelope: a center line from the last
known position to the predicted position, plus left/right boundaries offset
by a half-width that never shrinks along the cone.

Half-width per model:
- LINEAR: base + d * tan(k * heading_sigma), d = distance from the apex
- KALMAN_FILTER: k * sigma of the propagated position covariance,
  perpendicular to travel (eigen-decomposition of P_pos)
- PARTICLE_FILTER: weighted percentile of absolute cross-track offsets of the
  particle population at each step

All models emit the same shape (steps + 1 points). Invalid predictions and
numeric failures yield ConfidenceCone.empty(); generation never raises.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from mesh_predict.localization import (
    LocalTangentPlane,
    destination_point,
    haversine_m,
    normalize_angle_360,
    weighted_percentile,
)
from mesh_predict.proto import (
    ConfidenceCone,
    LocationPrediction,
    PredictionConfig,
    PredictionModel,
)
from mesh_predict.prediction.base import HistoryLike, last_known
from mesh_predict.prediction.constant_velocity import directional_sigma, propagate

logger = logging.getLogger(__name__)

ConeHandler = Callable[[LocationPrediction, Tuple[float, float]], Optional[ConfidenceCone]]


@dataclass
class ConeConfig:
    """
    Cone geometry parameters.

    Attributes:
        steps: Segments along the center line (points = steps + 1)
        linear_base_half_width_m: Half-width at the apex for linear cones
        sigma_scale: Sigmas of heading/position uncertainty spanned by the cone
        max_half_angle_deg: Cap on the linear cone half-angle
        particle_confidence: Cross-track mass covered by particle cones
    """

    steps: int = 10
    linear_base_half_width_m: float = 10.0
    sigma_scale: float = 1.5
    max_half_angle_deg: float = 60.0
    particle_confidence: float = 0.8

    @property
    def gaussian_confidence(self) -> float:
        """Probability mass within +/- sigma_scale of a 1D Gaussian."""
        return math.erf(self.sigma_scale / math.sqrt(2.0))


def _enforce_non_decreasing(half_widths: Sequence[float]) -> np.ndarray:
    widths = np.nan_to_num(np.asarray(half_widths, dtype=float), nan=0.0, posinf=0.0, neginf=0.0)
    return np.maximum.accumulate(np.maximum(widths, 0.0))


def _offset_points(plane: LocalTangentPlane, centers_enu: np.ndarray, half_widths: np.ndarray,
                   travel_unit: Tuple[float, float]) -> Tuple[List[Tuple[float, float]], List[Tuple[float, float]]]:
    """Boundary points left/right of ENU center points."""
    ue, un = travel_unit
    left_dir = np.array([-un, ue])
    left, right = [], []
    for (e, n), w in zip(centers_enu, half_widths):
        left.append(plane.to_geodetic(e + left_dir[0] * w, n + left_dir[1] * w))
        right.append(plane.to_geodetic(e - left_dir[0] * w, n - left_dir[1] * w))
    return left, right


def _unit(ve: float, vn: float, min_norm: float = 1e-6) -> Tuple[float, float]:
    norm = math.hypot(ve, vn)
    if norm < min_norm:
        return (0.0, 1.0)
    return (ve / norm, vn / norm)


class ConfidenceConeGenerator:
    """
    Model-dispatching cone generator.

    Usage:
        generator = ConfidenceConeGenerator()
        cone = generator.generate(prediction, history, config)
    """

    def __init__(self, config: Optional[ConeConfig] = None):
        self.config = config or ConeConfig()
        self._handlers: Dict[PredictionModel, ConeHandler] = {
            PredictionModel.LINEAR: self._linear_cone,
            PredictionModel.KALMAN_FILTER: self._kalman_cone,
            PredictionModel.PARTICLE_FILTER: self._particle_cone,
        }
        missing = set(PredictionModel) - set(self._handlers)
        if missing:
            raise ValueError(f"No cone handler for models: {sorted(m.name for m in missing)}")

    def generate(self, prediction: LocationPrediction, history: HistoryLike,
                 config: Optional[PredictionConfig] = None) -> ConfidenceCone:
        """
        Build the cone for a prediction.

        Args:
            prediction: Prediction from any model
            history: Peer history (apex fallback when the prediction lacks one)
            config: Prediction config (unused by current geometry; accepted for
                symmetry with the predictor capability)

        Returns:
            ConfidenceCone (empty for zero-confidence predictions)
        """
        if not prediction.is_valid:
            return ConfidenceCone.empty()

        apex = self._apex(prediction, history)
        if apex is None:
            return ConfidenceCone.empty()

        handler = self._handlers[prediction.prediction_model]
        try:
            cone = handler(prediction, apex)
        except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
            logger.warning(f"Cone generation failed for peer {prediction.peer_id}: {e}")
            return ConfidenceCone.empty()

        return cone if cone is not None else ConfidenceCone.empty()

    def _apex(self, prediction: LocationPrediction, history: HistoryLike) -> Optional[Tuple[float, float]]:
        if prediction.last_known_lat is not None and prediction.last_known_lon is not None:
            return (prediction.last_known_lat, prediction.last_known_lon)
        last = last_known(history)
        return (last.latitude, last.longitude) if last is not None else None

    def _linear_cone(self, prediction: LocationPrediction, apex: Tuple[float, float]) -> Optional[ConfidenceCone]:
        cfg = self.config
        velocity = prediction.velocity
        if velocity is None:
            return None

        max_distance = haversine_m(apex[0], apex[1], prediction.latitude, prediction.longitude)
        half_angle = math.radians(min(cfg.sigma_scale * velocity.heading_uncertainty, cfg.max_half_angle_deg))
        heading = velocity.heading

        center, left, right, widths = [], [], [], []
        for i in range(cfg.steps + 1):
            d = max_distance * i / cfg.steps
            point = destination_point(apex[0], apex[1], d, heading)
            center.append(point)
            widths.append(cfg.linear_base_half_width_m + d * math.tan(half_angle))

        half_widths = _enforce_non_decreasing(widths)
        for point, w in zip(center, half_widths):
            left.append(destination_point(point[0], point[1], float(w), normalize_angle_360(heading - 90.0)))
            right.append(destination_point(point[0], point[1], float(w), normalize_angle_360(heading + 90.0)))

        return ConfidenceCone(
            center_line=tuple(center),
            left_boundary=tuple(left),
            right_boundary=tuple(right),
            half_widths=tuple(float(hw) for hw in half_widths),
            confidence_level=cfg.gaussian_confidence,
            max_distance=max_distance,
        )

    def _kalman_cone(self, prediction: LocationPrediction, apex: Tuple[float, float]) -> Optional[ConfidenceCone]:
        cfg = self.config
        state = prediction.kalman_state
        if state is None:
            return None

        plane = LocalTangentPlane(state.origin_lat, state.origin_lon)
        x = state.state_vector()
        P = state.covariance_matrix()
        total_s = max(0.0, (prediction.target_timestamp - state.last_update_time) / 1000.0)
        travel = _unit(x[2], x[3], min_norm=0.1)
        perpendicular = (travel[1], -travel[0])

        centers, widths = [], []
        for i in range(cfg.steps + 1):
            xi, Pi = propagate(x, P, total_s * i / cfg.steps, state.process_noise_density)
            centers.append((float(xi[0]), float(xi[1])))
            widths.append(cfg.sigma_scale * directional_sigma(Pi[:2, :2], perpendicular))

        half_widths = _enforce_non_decreasing(widths)
        centers_enu = np.asarray(centers)
        left, right = _offset_points(plane, centers_enu, half_widths, travel)
        center_line = [plane.to_geodetic(e, n) for e, n in centers]

        return ConfidenceCone(
            center_line=tuple(center_line),
            left_boundary=tuple(left),
            right_boundary=tuple(right),
            half_widths=tuple(float(hw) for hw in half_widths),
            confidence_level=cfg.gaussian_confidence,
            max_distance=haversine_m(*center_line[0], *center_line[-1]),
        )

    def _particle_cone(self, prediction: LocationPrediction, apex: Tuple[float, float]) -> Optional[ConfidenceCone]:
        cfg = self.config
        particles = prediction.particles
        if not particles:
            return None

        plane = LocalTangentPlane(apex[0], apex[1])
        lats = np.array([p.latitude for p in particles])
        lons = np.array([p.longitude for p in particles])
        ve = np.array([p.v_east for p in particles])
        vn = np.array([p.v_north for p in particles])
        w = np.array([p.weight for p in particles])
        w_sum = float(np.sum(w))
        w = w / w_sum if w_sum > 0 and np.isfinite(w_sum) else np.full(w.size, 1.0 / w.size)

        east, north = plane.to_enu_arrays(lats, lons)
        total_s = prediction.horizon_s
        travel = _unit(float(np.sum(w * ve)), float(np.sum(w * vn)), min_norm=0.1)
        perp_e, perp_n = travel[1], -travel[0]

        # Particles are stored at the target; earlier steps run them back along
        # their own velocity, which is their forward constant-velocity path.
        centers, widths = [], []
        for i in range(cfg.steps + 1):
            back_s = total_s * (1.0 - i / cfg.steps)
            ei = east - ve * back_s
            ni = north - vn * back_s
            ce, cn = float(np.sum(w * ei)), float(np.sum(w * ni))
            cross = np.abs((ei - ce) * perp_e + (ni - cn) * perp_n)
            centers.append((ce, cn))
            widths.append(weighted_percentile(cross, w, cfg.particle_confidence))

        half_widths = _enforce_non_decreasing(widths)
        left, right = _offset_points(plane, np.asarray(centers), half_widths, travel)
        center_line = [plane.to_geodetic(e, n) for e, n in centers]

        return ConfidenceCone(
            center_line=tuple(center_line),
            left_boundary=tuple(left),
            right_boundary=tuple(right),
            half_widths=tuple(float(hw) for hw in half_widths),
            confidence_level=cfg.particle_confidence,
            max_distance=haversine_m(*center_line[0], *center_line[-1]),
        )
