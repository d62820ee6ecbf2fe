"""Utility functions for dfm-kalman."""

from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import linalg, stats


def ensure_array(data: Union[NDArray, pd.DataFrame, pd.Series]) -> NDArray:
    """Convert pandas DataFrame/Series or array-like to a float numpy array.

    Parameters
    ----------
    data : array-like, DataFrame, or Series
        Input data

    Returns
    -------
    NDArray
        Numpy array of dtype float64
    """
    if isinstance(data, (pd.DataFrame, pd.Series)):
        return data.to_numpy(dtype=float, na_value=np.nan)
    return np.asarray(data, dtype=float)


def stationary_moments(A: NDArray, Q: NDArray) -> Tuple[NDArray, NDArray]:
    """Unconditional mean and covariance of a stable VAR(1) state process.

    Solves the discrete Lyapunov equation ``P = A P A' + Q``. Useful as the
    initial belief ``(F0, P0)`` of the filter.

    Parameters
    ----------
    A : NDArray
        State transition matrix, shape (r, r). All eigenvalues must lie
        inside the unit circle.
    Q : NDArray
        State noise covariance, shape (r, r)

    Returns
    -------
    mean : NDArray
        Zero vector, shape (r,)
    covariance : NDArray
        Stationary covariance, shape (r, r)
    """
    A = np.asarray(A, dtype=float)
    Q = np.asarray(Q, dtype=float)
    if np.max(np.abs(np.linalg.eigvals(A))) >= 1.0:
        raise ValueError("Transition matrix is not stable; no stationary covariance exists")
    covariance = linalg.solve_discrete_lyapunov(A, Q)
    covariance = 0.5 * (covariance + covariance.T)
    return np.zeros(A.shape[0]), covariance


def simulate_state_space(
    A: NDArray,
    C: NDArray,
    Q: NDArray,
    R: NDArray,
    n_steps: int,
    initial_state: Optional[NDArray] = None,
    random_state: Optional[int] = None,
) -> Tuple[NDArray, NDArray]:
    """Draw a trajectory from the linear Gaussian state space model.

        F_t = A F_{t-1} + u_t,  u_t ~ N(0, Q)
        x_t = C F_t + e_t,      e_t ~ N(0, R)

    Parameters
    ----------
    A, C, Q, R : NDArray
        System matrices
    n_steps : int
        Number of time steps T
    initial_state : NDArray, optional
        State at t=0. Defaults to zeros.
    random_state : int, optional
        Random seed for reproducibility

    Returns
    -------
    states : NDArray
        Simulated states, shape (T, r)
    observations : NDArray
        Simulated observations, shape (T, n)
    """
    rng = np.random.default_rng(random_state)
    A = np.asarray(A, dtype=float)
    C = np.asarray(C, dtype=float)
    state_dim = A.shape[0]
    obs_dim = C.shape[0]

    states = np.zeros((n_steps, state_dim))
    observations = np.zeros((n_steps, obs_dim))

    if initial_state is not None:
        states[0] = np.asarray(initial_state, dtype=float)

    for t in range(n_steps):
        if t > 0:
            states[t] = A @ states[t - 1] + rng.multivariate_normal(np.zeros(state_dim), Q)
        observations[t] = C @ states[t] + rng.multivariate_normal(np.zeros(obs_dim), R)

    return states, observations


def is_symmetric(matrices: NDArray, atol: float = 1e-8) -> bool:
    """Check symmetry of a matrix or of every slice of a (T, r, r) stack."""
    matrices = np.asarray(matrices)
    return bool(np.allclose(matrices, np.swapaxes(matrices, -1, -2), atol=atol))


def extract_diagonal(cov: NDArray) -> NDArray:
    """Extract variances from a covariance matrix or a (T, r, r) stack.

    Parameters
    ----------
    cov : NDArray
        Covariance matrix (2D) or sequence of covariance matrices (3D)

    Returns
    -------
    NDArray
        Diagonal elements, shape (r,) or (T, r)
    """
    if cov.ndim == 2:
        return np.diag(cov)
    elif cov.ndim == 3:
        return np.diagonal(cov, axis1=1, axis2=2)
    else:
        raise ValueError(f"Unsupported covariance dimension: {cov.ndim}")


def compute_prediction_intervals(
    mean: NDArray,
    std: NDArray,
    confidence_level: float = 0.95,
) -> Tuple[NDArray, NDArray]:
    """Compute prediction intervals using normal distribution.

    Parameters
    ----------
    mean : NDArray
        Mean estimates
    std : NDArray
        Standard deviation of the estimates
    confidence_level : float, default=0.95
        Confidence level for intervals (e.g., 0.95 for 95% intervals)

    Returns
    -------
    lower : NDArray
        Lower bounds of prediction intervals
    upper : NDArray
        Upper bounds of prediction intervals
    """
    z_score = stats.norm.ppf((1 + confidence_level) / 2)
    lower = mean - z_score * std
    upper = mean + z_score * std
    return lower, upper
