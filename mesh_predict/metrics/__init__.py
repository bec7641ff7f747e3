"""
Metrics Module: Diagnostics, counters, histograms.

Every dropped sample is counted under a reason code, and the filters record
their health (innovations, ESS, covariance repairs) as histograms:
- Counters: samples_in, samples_recorded, predictions, kalman_updates, etc.
- Drop reasons: out_of_order, invalid_sample, innovation_gated
- Histograms: prediction_confidence, kalman_innovation_m, particle_ess

Usage:
    from mesh_predict.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('samples_in')
    metrics.increment_drop('out_of_order')
    metrics.record_histogram('prediction_confidence', 0.82)
"""

from .counters import MetricsCollector

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'get_metrics', 'reset_metrics']
