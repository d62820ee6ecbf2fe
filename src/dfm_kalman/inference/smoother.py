"""
Rauch-Tung-Striebel (RTS) smoother built on top of the Kalman filter.

The smoother consumes a :class:`~dfm_kalman.inference.kalman.FilterResult`
and the system matrices of the :class:`~dfm_kalman.inference.kalman.KalmanFilter`
that produced it. Besides smoothed means and covariances it computes the
lag-one cross-covariances Cov(F_t, F_{t-1} | X) required by the EM E-step.

References
----------
.. [1] Rauch, H. E., Tung, F., & Striebel, C. T. (1965). Maximum likelihood
       estimates of linear dynamic systems. AIAA Journal, 3(8), 1445-1450.
.. [2] Shumway, R. H., & Stoffer, D. S. (1982). An approach to time series
       smoothing and forecasting using the EM algorithm. Journal of Time
       Series Analysis, 3(4), 253-264.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from dfm_kalman.exceptions import DimensionMismatch, InsufficientObservations
from dfm_kalman.inference.kalman import (
    MIN_TIME_STEPS,
    FilterResult,
    KalmanFilter,
    MissingPredicate,
    _inverse,
    masked_loading,
    masked_transition,
    nonfinite,
)


@dataclass
class SmootherResult:
    """Complete RTS smoother results across all time steps.

    Attributes
    ----------
    smoothed_means : NDArray
        Smoothed state means, shape (T, r)
    smoothed_covariances : NDArray
        Smoothed covariances, shape (T, r, r)
    cross_covariances : NDArray
        Lag-one cross-covariances Cov(F_t, F_{t-1} | X), shape (T, r, r).
        The slice at t=0 has no predecessor and is zero.
    smoother_gains : NDArray
        Smoother gains J_t, shape (T, r, r); the last slice is zero.
    log_likelihood : float, optional
        Log-likelihood of the filter pass the smoother was run on
    """
    smoothed_means: NDArray
    smoothed_covariances: NDArray
    cross_covariances: NDArray
    smoother_gains: NDArray
    log_likelihood: Optional[float] = None


def _rts_backward(
    A: NDArray,
    Z: NDArray,
    H: NDArray,
    filtered_means: NDArray,
    predicted_means: NDArray,
    filtered_covs: NDArray,
    predicted_covs: NDArray,
) -> SmootherResult:
    T_len, state_dim = filtered_means.shape
    if T_len < MIN_TIME_STEPS:
        raise InsufficientObservations(
            f"RTS smoother needs at least {MIN_TIME_STEPS} time steps, got {T_len}"
        )

    # Smoother gain: J_t = P_{t|t} A' P_{t+1|t}^{-1}
    gains = np.zeros((T_len, state_dim, state_dim))
    for t in range(T_len - 1):
        gains[t] = filtered_covs[t] @ A.T @ _inverse(predicted_covs[t + 1])

    smoothed_means = np.zeros((T_len, state_dim))
    smoothed_covs = np.zeros((T_len, state_dim, state_dim))
    smoothed_means[-1] = filtered_means[-1]
    smoothed_covs[-1] = filtered_covs[-1]

    for t in range(T_len - 2, -1, -1):
        # F_{t|T} = F_{t|t} + J_t (F_{t+1|T} - F_{t+1|t})
        mean_diff = smoothed_means[t + 1] - predicted_means[t + 1]
        smoothed_means[t] = filtered_means[t] + gains[t] @ mean_diff

        # P_{t|T} = P_{t|t} + J_t (P_{t+1|T} - P_{t+1|t}) J_t'
        cov_diff = smoothed_covs[t + 1] - predicted_covs[t + 1]
        smoothed_covs[t] = filtered_covs[t] + gains[t] @ cov_diff @ gains[t].T

    # Lag-one covariances use the full observation equation, not the
    # per-step restricted one.
    cross_covs = np.zeros((T_len, state_dim, state_dim))
    last_pred = predicted_covs[-1]
    gain_last = last_pred @ Z.T @ _inverse(Z @ last_pred @ Z.T + H)
    cross_covs[-1] = (np.eye(state_dim) - gain_last @ Z) @ A @ filtered_covs[-2]

    # P_{t,t-1|T} = P_{t|t} J_{t-1}' + J_t (P_{t+1,t|T} - A P_{t|t}) J_{t-1}'
    for t in range(T_len - 2, 0, -1):
        cross_covs[t] = (
            filtered_covs[t] @ gains[t - 1].T
            + gains[t] @ (cross_covs[t + 1] - A @ filtered_covs[t]) @ gains[t - 1].T
        )

    return SmootherResult(
        smoothed_means=smoothed_means,
        smoothed_covariances=smoothed_covs,
        cross_covariances=cross_covs,
        smoother_gains=gains,
    )


class RTSSmoother:
    """Rauch-Tung-Striebel smoother for linear Gaussian state space models.

    Computes smoothed state estimates using both forward (filtered) and
    backward information, plus the lag-one cross-covariances needed by EM.

    Parameters
    ----------
    kalman_filter : KalmanFilter
        Filter holding the system matrices the filter pass was run with

    Examples
    --------
    >>> kf = KalmanFilter(C=C, Q=Q, R=R, A=A, initial_mean=F0, initial_covariance=P0)
    >>> filter_result = kf.filter(observations)
    >>> smoother = RTSSmoother(kf)
    >>> smooth_result = smoother.smooth(filter_result)
    """

    def __init__(self, kalman_filter: KalmanFilter):
        self.kf = kalman_filter

    def smooth(self, filter_result: FilterResult) -> SmootherResult:
        """Run RTS smoother on filtered results.

        A two-step series yields only the seeded lag-one term at t=1.

        Parameters
        ----------
        filter_result : FilterResult
            Output from KalmanFilter.filter()

        Returns
        -------
        SmootherResult
            Container with smoothed states, cross-covariances and the
            filter's log-likelihood
        """
        model = self.kf.model
        if filter_result.filtered_means.shape[1] != model.state_dim:
            raise DimensionMismatch(
                f"Filter result has state dimension {filter_result.filtered_means.shape[1]}, "
                f"model has {model.state_dim}"
            )

        result = _rts_backward(
            model.transition,
            model.loading,
            model.R,
            filter_result.filtered_means,
            filter_result.predicted_means,
            filter_result.filtered_covariances,
            filter_result.predicted_covariances,
        )
        result.log_likelihood = filter_result.log_likelihood
        return result


def kalman_smoother(
    A: NDArray,
    C: NDArray,
    R: NDArray,
    filtered_means: NDArray,
    predicted_means: NDArray,
    filtered_covariances: NDArray,
    predicted_covariances: NDArray,
) -> SmootherResult:
    """Run the RTS smoother on raw filter histories.

    A two-step series yields only the seeded lag-one term at t=1.

    Parameters
    ----------
    A : NDArray
        State transition matrix, shape (r, r)
    C : NDArray
        Observation matrix, shape (n, r)
    R : NDArray
        Observation noise covariance, shape (n, n)
    filtered_means, predicted_means : NDArray
        Filter mean histories, shape (T, r)
    filtered_covariances, predicted_covariances : NDArray
        Filter covariance histories, shape (T, r, r)

    Returns
    -------
    SmootherResult
        Smoothed histories; ``log_likelihood`` is left unset
    """
    A = np.asarray(A, dtype=float)
    C = np.asarray(C, dtype=float)
    R = np.asarray(R, dtype=float)
    filtered_means = np.asarray(filtered_means, dtype=float)
    predicted_means = np.asarray(predicted_means, dtype=float)
    filtered_covariances = np.asarray(filtered_covariances, dtype=float)
    predicted_covariances = np.asarray(predicted_covariances, dtype=float)

    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise DimensionMismatch(f"A must be square, got shape {A.shape}")
    r = A.shape[0]
    if C.ndim != 2 or C.shape[1] != r:
        raise DimensionMismatch(f"C must be (n, {r}), got shape {C.shape}")
    n = C.shape[0]
    if R.shape != (n, n):
        raise DimensionMismatch(f"R must be ({n}, {n}), got shape {R.shape}")

    T_len = filtered_means.shape[0]
    for name, history, shape in (
        ("filtered_means", filtered_means, (T_len, r)),
        ("predicted_means", predicted_means, (T_len, r)),
        ("filtered_covariances", filtered_covariances, (T_len, r, r)),
        ("predicted_covariances", predicted_covariances, (T_len, r, r)),
    ):
        if history.shape != shape:
            raise DimensionMismatch(f"{name} must have shape {shape}, got {history.shape}")

    Z = masked_loading(C, A)
    return _rts_backward(
        masked_transition(A), Z, R,
        filtered_means, predicted_means,
        filtered_covariances, predicted_covariances,
    )


def kalman_filter_smoother(
    X: Union[NDArray, pd.DataFrame],
    C: NDArray,
    Q: NDArray,
    R: NDArray,
    A: NDArray,
    F0: NDArray,
    P0: NDArray,
    is_missing: MissingPredicate = nonfinite,
) -> SmootherResult:
    """Run the Kalman filter followed by the RTS smoother.

    Returns the smoothed means/covariances, the lag-one cross-covariances
    and the total log-likelihood of the filter pass.
    """
    kf = KalmanFilter(
        C=C, Q=Q, R=R, A=A,
        initial_mean=F0,
        initial_covariance=P0,
        is_missing=is_missing,
    )
    return RTSSmoother(kf).smooth(kf.filter(X))
