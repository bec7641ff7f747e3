"""
Constant-velocity motion model in the local tangent plane.

State: [E, N, vE, vN]. Process noise is the continuous white-noise
acceleration model with spectral density q (m^2/s^3), per axis:

    Q = q * [[dt^3/3, dt^2/2],
             [dt^2/2, dt    ]]

Covariance health: after every propagation the covariance is symmetrised and
checked; a matrix that is not finite or has an eigenvalue below -tolerance
raises DegenerateCovarianceError, which stabilize_covariance() repairs by
eigenvalue clamping.
"""

import logging
import math
from typing import Tuple

import numpy as np

from mesh_predict.errors import DegenerateCovarianceError
from mesh_predict.metrics import get_metrics

logger = logging.getLogger(__name__)

# Eigenvalues above -PSD_TOLERANCE * scale are treated as round-off
PSD_TOLERANCE = 1e-9
MIN_EIGENVALUE = 1e-9


def transition_matrix(dt: float) -> np.ndarray:
    """State transition for dt seconds."""
    F = np.eye(4)
    F[0, 2] = dt
    F[1, 3] = dt
    return F


def process_noise(dt: float, q: float) -> np.ndarray:
    """Discretised process noise for dt seconds with spectral density q."""
    dt = max(dt, 0.0)
    pp = q * dt ** 3 / 3.0
    pv = q * dt ** 2 / 2.0
    vv = q * dt
    return np.array([
        [pp, 0.0, pv, 0.0],
        [0.0, pp, 0.0, pv],
        [pv, 0.0, vv, 0.0],
        [0.0, pv, 0.0, vv],
    ])


def symmetrize(P: np.ndarray) -> np.ndarray:
    return 0.5 * (P + P.T)


def check_covariance(P: np.ndarray):
    """
    Validate a covariance matrix.

    Raises:
        DegenerateCovarianceError: not finite, not symmetric, or not PSD
    """
    if not np.all(np.isfinite(P)):
        raise DegenerateCovarianceError("Covariance contains non-finite values")

    scale = max(float(np.max(np.abs(P))), 1.0)
    if not np.allclose(P, P.T, rtol=0.0, atol=PSD_TOLERANCE * scale):
        raise DegenerateCovarianceError("Covariance is not symmetric")

    min_eig = float(np.min(np.linalg.eigvalsh(P)))
    if min_eig < -PSD_TOLERANCE * scale:
        raise DegenerateCovarianceError(
            f"Covariance not positive semi-definite (min eigenvalue {min_eig:.3e})",
            min_eigenvalue=min_eig,
        )


def repair_covariance(P: np.ndarray, fallback_variance: float = 1e6) -> np.ndarray:
    """
    Nearest symmetric PSD matrix by eigenvalue clamping.

    Non-finite entries are replaced by a large diagonal variance first.
    """
    P = np.array(P, dtype=float)
    if not np.all(np.isfinite(P)):
        P = np.where(np.isfinite(P), P, 0.0)
        P = P + np.eye(P.shape[0]) * fallback_variance

    P = symmetrize(P)
    eigvals, eigvecs = np.linalg.eigh(P)
    eigvals = np.maximum(eigvals, MIN_EIGENVALUE)
    return symmetrize(eigvecs @ np.diag(eigvals) @ eigvecs.T)


def stabilize_covariance(P: np.ndarray) -> np.ndarray:
    """Symmetrise P and repair it if it has degenerated."""
    P = symmetrize(P)
    try:
        check_covariance(P)
    except DegenerateCovarianceError as e:
        logger.warning(f"Repairing covariance: {e}")
        get_metrics().increment('covariance_repairs')
        P = repair_covariance(P)
    return P


def propagate(x: np.ndarray, P: np.ndarray, dt: float, q: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Predict state and covariance forward by dt seconds (pure function).

    Returns:
        (x_pred, P_pred) with P_pred symmetric PSD
    """
    if dt <= 0:
        return x.copy(), P.copy()

    F = transition_matrix(dt)
    x_pred = F @ x
    P_pred = F @ P @ F.T + process_noise(dt, q)
    return x_pred, stabilize_covariance(P_pred)


def directional_sigma(P_pos: np.ndarray, direction: Tuple[float, float]) -> float:
    """
    Standard deviation of a 2x2 position covariance along a unit direction.

    Computed from the eigen-decomposition: sqrt(sum_i lambda_i (u . e_i)^2),
    i.e. the support distance of the 1-sigma ellipse along u.
    """
    u = np.asarray(direction, dtype=float)
    norm = float(np.linalg.norm(u))
    if norm == 0.0:
        return math.sqrt(max(float(np.max(np.linalg.eigvalsh(P_pos))), 0.0))
    u = u / norm

    eigvals, eigvecs = np.linalg.eigh(symmetrize(P_pos))
    eigvals = np.maximum(eigvals, 0.0)
    projections = eigvecs.T @ u
    return math.sqrt(float(np.sum(eigvals * projections ** 2)))


def ellipse_axes(P_pos: np.ndarray) -> Tuple[float, float, float]:
    """
    1-sigma ellipse of a 2x2 position covariance.

    Returns:
        (semi_major_m, semi_minor_m, major_axis_bearing_deg)
    """
    eigvals, eigvecs = np.linalg.eigh(symmetrize(P_pos))
    eigvals = np.maximum(eigvals, 0.0)
    major = eigvecs[:, 1]
    bearing = math.degrees(math.atan2(major[0], major[1])) % 180.0
    return math.sqrt(float(eigvals[1])), math.sqrt(float(eigvals[0])), bearing
