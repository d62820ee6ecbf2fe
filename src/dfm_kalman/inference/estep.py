"""
Expectation step of the EM algorithm for dynamic factor models.

Runs the Kalman filter and RTS smoother with fixed system matrices and
accumulates the sufficient statistics an external M-step needs to rebuild
C, A, Q, R, F0 and P0, following Doz, Giannone & Reichlin (2012) and
Banbura & Modugno (2014).

References
----------
.. [1] Shumway, R. H., & Stoffer, D. S. (1982). An approach to time series
       smoothing and forecasting using the EM algorithm. Journal of Time
       Series Analysis, 3(4), 253-264.
.. [2] Doz, C., Giannone, D., & Reichlin, L. (2012). A quasi-maximum
       likelihood approach for large, approximate dynamic factor models.
       Review of Economics and Statistics, 94(4), 1014-1024.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from dfm_kalman.exceptions import DimensionMismatch
from dfm_kalman.inference.kalman import KalmanFilter, MissingPredicate, nonfinite
from dfm_kalman.inference.smoother import RTSSmoother, SmootherResult
from dfm_kalman.utils import ensure_array


logger = logging.getLogger(__name__)


@dataclass
class EStepResult:
    """Sufficient statistics produced by the E-step.

    Attributes
    ----------
    beta : NDArray
        Σ_{t>=1} E[F_t F_{t-1}'], shape (r, r)
    gamma : NDArray
        Σ_t E[F_t F_t'], shape (r, r)
    delta : NDArray
        Σ_t x_t E[F_t]' with missing cells of x_t set to zero, shape (n, r)
    gamma1 : NDArray
        gamma without the last time step
    gamma2 : NDArray
        gamma without the first time step
    initial_mean : NDArray
        Smoothed state mean at t=0 (updated F0)
    initial_covariance : NDArray
        Smoothed state covariance at t=0 (updated P0)
    log_likelihood : float
        Log-likelihood of the data under the current system matrices
    smoother_result : SmootherResult, optional
        Smoother output the statistics were accumulated from
    """
    beta: NDArray
    gamma: NDArray
    delta: NDArray
    gamma1: NDArray
    gamma2: NDArray
    initial_mean: NDArray
    initial_covariance: NDArray
    log_likelihood: float
    smoother_result: Optional[SmootherResult] = field(default=None, repr=False)


def compute_sufficient_statistics(
    observations: NDArray,
    smoother_result: SmootherResult,
) -> EStepResult:
    """Accumulate E-step statistics from smoothed states.

    Parameters
    ----------
    observations : NDArray
        Observation matrix, shape (T, n), with missing cells already
        replaced by zero
    smoother_result : SmootherResult
        Output of the RTS smoother on the same series

    Returns
    -------
    EStepResult
    """
    means = smoother_result.smoothed_means
    covs = smoother_result.smoothed_covariances
    cross_covs = smoother_result.cross_covariances

    T_len, state_dim = means.shape
    if observations.shape[0] != T_len:
        raise DimensionMismatch(
            f"Observations have {observations.shape[0]} time steps, "
            f"smoothed states have {T_len}"
        )
    obs_dim = observations.shape[1]

    delta = np.zeros((obs_dim, state_dim))
    gamma = np.zeros((state_dim, state_dim))
    beta = np.zeros((state_dim, state_dim))

    for t in range(T_len):
        delta += np.outer(observations[t], means[t])
        # E[F_t F_t'] = P_{t|T} + F_{t|T} F_{t|T}'
        gamma += np.outer(means[t], means[t]) + covs[t]
        if t > 0:
            # E[F_t F_{t-1}'] = P_{t,t-1|T} + F_{t|T} F_{t-1|T}'
            beta += np.outer(means[t], means[t - 1]) + cross_covs[t]

    gamma1 = gamma - np.outer(means[-1], means[-1]) - covs[-1]
    gamma2 = gamma - np.outer(means[0], means[0]) - covs[0]

    return EStepResult(
        beta=beta,
        gamma=gamma,
        delta=delta,
        gamma1=gamma1,
        gamma2=gamma2,
        initial_mean=means[0].copy(),
        initial_covariance=covs[0].copy(),
        log_likelihood=smoother_result.log_likelihood,
        smoother_result=smoother_result,
    )


def estep(
    X: Union[NDArray, pd.DataFrame],
    C: NDArray,
    Q: NDArray,
    R: NDArray,
    A: NDArray,
    F0: NDArray,
    P0: NDArray,
    is_missing: MissingPredicate = nonfinite,
) -> EStepResult:
    """Run the filter and smoother, then accumulate EM sufficient statistics.

    Parameters
    ----------
    X : NDArray or DataFrame
        Observations, shape (T, n); missing cells flagged by ``is_missing``
    C, Q, R, A : NDArray
        System matrices
    F0, P0 : NDArray
        Initial state mean and covariance
    is_missing : callable, optional
        Missing-value predicate, defaults to non-finite cells

    Returns
    -------
    EStepResult
        beta, gamma, delta, gamma1, gamma2, updated F0/P0 and log-likelihood
    """
    observations = ensure_array(X)

    kf = KalmanFilter(
        C=C, Q=Q, R=R, A=A,
        initial_mean=F0,
        initial_covariance=P0,
        is_missing=is_missing,
    )
    filter_result = kf.filter(observations)
    smoother_result = RTSSmoother(kf).smooth(filter_result)

    # Missing cells enter delta as exact zeros
    zero_filled = np.where(filter_result.observed_mask, observations, 0.0)

    result = compute_sufficient_statistics(zero_filled, smoother_result)
    logger.debug(f"E-step done: T={observations.shape[0]}, LL={result.log_likelihood:.6e}")
    return result


def em_converged(
    loglik: float,
    previous_loglik: float,
    tol: float = 1e-4,
    check_decreased: bool = True,
) -> Tuple[bool, bool]:
    """Check EM convergence on the relative change in log-likelihood.

    Convergence occurs when |f(t) - f(t-1)| / avg < tol, where
    avg = (|f(t)| + |f(t-1)| + eps) / 2.

    Parameters
    ----------
    loglik : float
        Log-likelihood from the current EM iteration
    previous_loglik : float
        Log-likelihood from the previous EM iteration
    tol : float
        Convergence threshold
    check_decreased : bool
        Whether to flag (and log) a decrease in log-likelihood

    Returns
    -------
    converged : bool
    decreased : bool
    """
    decreased = False
    if check_decreased and loglik - previous_loglik < -1e-3:
        logger.warning(
            f"Log-likelihood decreased from {previous_loglik:.6e} to {loglik:.6e}"
        )
        decreased = True

    delta_loglik = abs(loglik - previous_loglik)
    avg_loglik = (abs(loglik) + abs(previous_loglik) + np.finfo(float).eps) / 2
    converged = bool(delta_loglik / avg_loglik < tol)
    return converged, decreased
