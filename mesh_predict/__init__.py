"""
Mesh Peer Location Prediction Core Package.

Projects the likely future position of mesh peers from sparse, noisy,
intermittent position reports, with a quantified uncertainty cone.

Package structure:
- proto: Sample, history, prediction and cone schemas
- localization: Geodesy and local tangent plane transforms
- history: Per-peer location history store
- prediction: Movement classifier, Linear/Kalman/Particle predictors,
  cone generator, predictor selector
- domain: Prediction engine (per-peer orchestration), accuracy tracking
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.1.0"
