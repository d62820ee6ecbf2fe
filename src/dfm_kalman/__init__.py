"""
dfm-kalman: Kalman filtering, smoothing and EM sufficient statistics for
dynamic factor models with arbitrary patterns of missing data.

Example
-------
>>> from dfm_kalman import kalman_filter, RTSSmoother, estep
>>> stats = estep(X, C, Q, R, A, F0, P0)
>>> stats.log_likelihood
"""

__version__ = "0.1.0"

# Inference algorithms
from dfm_kalman.inference import (
    KalmanFilter,
    FilterResult,
    SystemMatrices,
    RTSSmoother,
    SmootherResult,
    EStepResult,
    kalman_filter,
    kalman_smoother,
    kalman_filter_smoother,
    estep,
    em_converged,
    ForecastResult,
    forecast,
    fitted,
    residuals,
)

# Errors
from dfm_kalman.exceptions import DimensionMismatch, InsufficientObservations

# Utilities
from dfm_kalman import utils

__all__ = [
    # Inference
    "KalmanFilter",
    "FilterResult",
    "SystemMatrices",
    "RTSSmoother",
    "SmootherResult",
    "EStepResult",
    "kalman_filter",
    "kalman_smoother",
    "kalman_filter_smoother",
    "estep",
    "em_converged",
    "ForecastResult",
    "forecast",
    "fitted",
    "residuals",
    # Errors
    "DimensionMismatch",
    "InsufficientObservations",
    # Utilities
    "utils",
    # Metadata
    "__version__",
]
