"""
Inference algorithms for dfm-kalman.

This module contains the state inference recursions:
- KalmanFilter: Forward Kalman filtering with per-step missing data
- RTSSmoother: Rauch-Tung-Striebel backward smoothing with lag-one covariances
- estep: EM sufficient statistics built on filter and smoother output
- forecast, fitted, residuals: extrapolation and decomposition of the data
"""

from dfm_kalman.inference.kalman import (
    KalmanFilter,
    FilterResult,
    SystemMatrices,
    kalman_filter,
    nonfinite,
)
from dfm_kalman.inference.smoother import (
    RTSSmoother,
    SmootherResult,
    kalman_smoother,
    kalman_filter_smoother,
)
from dfm_kalman.inference.estep import (
    EStepResult,
    compute_sufficient_statistics,
    em_converged,
    estep,
)
from dfm_kalman.inference.forecast import (
    ForecastResult,
    fitted,
    forecast,
    residuals,
)

__all__ = [
    "KalmanFilter",
    "FilterResult",
    "SystemMatrices",
    "kalman_filter",
    "nonfinite",
    "RTSSmoother",
    "SmootherResult",
    "kalman_smoother",
    "kalman_filter_smoother",
    "EStepResult",
    "compute_sufficient_statistics",
    "em_converged",
    "estep",
    "ForecastResult",
    "forecast",
    "fitted",
    "residuals",
]
