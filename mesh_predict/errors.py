"""
Prediction error taxonomy.

Every failure here is local to one peer. Callers of the predictors always get
a LocationPrediction back: these exceptions are raised and handled inside the
pipeline, never surfaced to rendering consumers.

- InsufficientHistoryError: too few samples; becomes a zero-confidence prediction
- StaleSampleError: out-of-order timestamp; sample dropped and logged
- DegenerateCovarianceError: non-PSD covariance; repaired by the Kalman predictor
- ParticleDegeneracyWarning: ESS collapse; forces a resample
"""


class PredictionError(Exception):
    """Base class for prediction engine errors."""


class InsufficientHistoryError(PredictionError):
    """Fewer samples available than the configured minimum."""

    def __init__(self, peer_id: str, available: int, required: int):
        self.peer_id = peer_id
        self.available = available
        self.required = required
        super().__init__(
            f"Peer {peer_id}: {available} samples available, {required} required"
        )


class StaleSampleError(PredictionError):
    """Sample timestamp is older than the newest recorded sample."""

    def __init__(self, peer_id: str, timestamp: int, last_timestamp: int):
        self.peer_id = peer_id
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
        super().__init__(
            f"Peer {peer_id}: sample at {timestamp} is older than last sample at {last_timestamp}"
        )


class DegenerateCovarianceError(PredictionError):
    """Covariance matrix lost symmetry/positive semi-definiteness."""

    def __init__(self, message: str, min_eigenvalue: float = float('nan')):
        self.min_eigenvalue = min_eigenvalue
        super().__init__(message)


class ParticleDegeneracyWarning(UserWarning):
    """Effective sample size collapsed; population will be resampled."""
