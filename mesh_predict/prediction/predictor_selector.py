"""
Predictor Selector.

Maps PredictionModel to predictor instances. The model is a value: callers
pass it per call, or rely on the selector's current default. Switching the
default never resets any predictor's per-peer state.
"""

import logging
import threading
from typing import Dict, Optional

from mesh_predict.proto import PredictionModel
from mesh_predict.prediction.base import PeerLocationPredictor

logger = logging.getLogger(__name__)


class PredictorSelector:
    """
    Dispatch table over the three motion models.

    Usage:
        selector = PredictorSelector({
            PredictionModel.LINEAR: linear,
            PredictionModel.KALMAN_FILTER: kalman,
            PredictionModel.PARTICLE_FILTER: particle,
        })
        predictor = selector.current_predictor()              # default model
        predictor = selector.current_predictor(PredictionModel.PARTICLE_FILTER)
    """

    def __init__(self, predictors: Dict[PredictionModel, PeerLocationPredictor],
                 default_model: PredictionModel = PredictionModel.KALMAN_FILTER):
        missing = set(PredictionModel) - set(predictors)
        if missing:
            raise ValueError(f"No predictor for models: {sorted(m.name for m in missing)}")

        for model, predictor in predictors.items():
            if predictor.model != model:
                raise ValueError(f"Predictor {type(predictor).__name__} registered for {model.name}")

        self._predictors = dict(predictors)
        self._lock = threading.Lock()
        self._default_model = default_model

    @property
    def model(self) -> PredictionModel:
        with self._lock:
            return self._default_model

    def set_model(self, model: PredictionModel):
        """Hot-swap the default model (takes effect on the next call)."""
        with self._lock:
            previous = self._default_model
            self._default_model = model
        if previous != model:
            logger.info(f"Prediction model changed: {previous.name} -> {model.name}")

    def current_predictor(self, model: Optional[PredictionModel] = None) -> PeerLocationPredictor:
        """Predictor for model, or for the current default when model is None."""
        return self._predictors[model if model is not None else self.model]

    def predictor_for(self, model: PredictionModel) -> PeerLocationPredictor:
        return self._predictors[model]

    def forget(self, peer_id: str):
        """Drop a peer's state from every predictor."""
        for predictor in self._predictors.values():
            predictor.forget(peer_id)
