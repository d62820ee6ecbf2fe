"""
Forecasts, fitted values and residuals from estimated factor paths.

All three work on the state means of a filter or smoother pass together with
the transition and observation matrices, using the same masking of non-finite
entries of A as the recursions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from dfm_kalman.exceptions import DimensionMismatch
from dfm_kalman.inference.kalman import (
    FilterResult,
    MissingPredicate,
    masked_loading,
    masked_transition,
    nonfinite,
)
from dfm_kalman.inference.smoother import SmootherResult
from dfm_kalman.utils import ensure_array


logger = logging.getLogger(__name__)

StateResult = Union[FilterResult, SmootherResult]


@dataclass
class ForecastResult:
    """h-step ahead forecasts of the factors and the data.

    Attributes
    ----------
    factor_forecasts : NDArray
        Forecast factor means, shape (h, r)
    data_forecasts : NDArray
        Forecast observations C F, shape (h, n)
    factor_covariances : NDArray, optional
        Forecast factor covariances, shape (h, r, r). Only set when the
        state noise covariance Q was given.
    """
    factor_forecasts: NDArray
    data_forecasts: NDArray
    factor_covariances: Optional[NDArray] = None

    @property
    def horizon(self) -> int:
        return self.factor_forecasts.shape[0]


def state_means(result: StateResult) -> NDArray:
    """Smoothed means of a smoother result, filtered means of a filter result."""
    if isinstance(result, SmootherResult):
        return result.smoothed_means
    if isinstance(result, FilterResult):
        return result.filtered_means
    raise TypeError(
        f"Expected FilterResult or SmootherResult, got {type(result).__name__}"
    )


def _state_covariances(result: StateResult) -> NDArray:
    if isinstance(result, SmootherResult):
        return result.smoothed_covariances
    return result.filtered_covariances


def _check_loading(C: NDArray, A: NDArray, state_dim: int) -> None:
    if A.ndim != 2 or A.shape != (state_dim, state_dim):
        raise DimensionMismatch(f"A must be ({state_dim}, {state_dim}), got shape {A.shape}")
    if C.ndim != 2 or C.shape[1] != state_dim:
        raise DimensionMismatch(f"C must be (n, {state_dim}), got shape {C.shape}")


def forecast(
    result: StateResult,
    A: NDArray,
    C: NDArray,
    h: int = 10,
    Q: Optional[NDArray] = None,
) -> ForecastResult:
    """Iterate the state equation h steps past the end of the series.

    Computes F_{T+i} = A F_{T+i-1} starting from the last estimated state and
    X_{T+i} = C F_{T+i}. When Q is given, covariances follow
    P_{T+i} = A P_{T+i-1} A' + Q.

    Parameters
    ----------
    result : FilterResult or SmootherResult
        State estimates to extrapolate from
    A : NDArray
        State transition matrix, shape (r, r)
    C : NDArray
        Observation matrix, shape (n, r)
    h : int
        Forecast horizon
    Q : NDArray, optional
        State noise covariance, shape (r, r)

    Returns
    -------
    ForecastResult
    """
    if h < 1:
        raise ValueError(f"Forecast horizon must be at least 1, got {h}")

    means = state_means(result)
    state_dim = means.shape[1]
    A = np.asarray(A, dtype=float)
    C = np.asarray(C, dtype=float)
    _check_loading(C, A, state_dim)

    transition = masked_transition(A)
    loading = masked_loading(C, A)

    factor_forecasts = np.zeros((h, state_dim))
    data_forecasts = np.zeros((h, C.shape[0]))
    factor_covariances = None

    current = means[-1]
    for i in range(h):
        current = transition @ current
        factor_forecasts[i] = current
        data_forecasts[i] = loading @ current

    if Q is not None:
        Q = np.asarray(Q, dtype=float)
        if Q.shape != (state_dim, state_dim):
            raise DimensionMismatch(
                f"Q must be ({state_dim}, {state_dim}), got shape {Q.shape}"
            )
        factor_covariances = np.zeros((h, state_dim, state_dim))
        cov = _state_covariances(result)[-1]
        for i in range(h):
            cov = transition @ cov @ transition.T + Q
            factor_covariances[i] = cov

    logger.debug(f"Forecast {h} steps ahead for {C.shape[0]} series")

    return ForecastResult(
        factor_forecasts=factor_forecasts,
        data_forecasts=data_forecasts,
        factor_covariances=factor_covariances,
    )


def fitted(
    result: StateResult,
    C: NDArray,
    A: Optional[NDArray] = None,
    X: Optional[Union[NDArray, pd.DataFrame]] = None,
    is_missing: MissingPredicate = nonfinite,
) -> NDArray:
    """Common component F_t C' of every series.

    Parameters
    ----------
    result : FilterResult or SmootherResult
        State estimates, shape (T, r)
    C : NDArray
        Observation matrix, shape (n, r)
    A : NDArray, optional
        Transition matrix; its first row masks unloaded states
    X : NDArray or DataFrame, optional
        Observations, shape (T, n). Cells missing in X are set to NaN in
        the fitted values.
    is_missing : callable, optional
        Missing-value predicate applied to X

    Returns
    -------
    NDArray
        Fitted values, shape (T, n)
    """
    means = state_means(result)
    C = np.asarray(C, dtype=float)
    if A is not None:
        A = np.asarray(A, dtype=float)
        _check_loading(C, A, means.shape[1])
        C = masked_loading(C, A)
    elif C.ndim != 2 or C.shape[1] != means.shape[1]:
        raise DimensionMismatch(f"C must be (n, {means.shape[1]}), got shape {C.shape}")

    values = means @ C.T
    if X is not None:
        missing = _missing_cells(X, values.shape, is_missing)
        values[missing] = np.nan
    return values


def residuals(
    result: StateResult,
    C: NDArray,
    X: Union[NDArray, pd.DataFrame],
    A: Optional[NDArray] = None,
    is_missing: MissingPredicate = nonfinite,
) -> NDArray:
    """Idiosyncratic component x_t - C F_t, NaN where X is missing.

    Parameters
    ----------
    result : FilterResult or SmootherResult
        State estimates, shape (T, r)
    C : NDArray
        Observation matrix, shape (n, r)
    X : NDArray or DataFrame
        Observations, shape (T, n)
    A : NDArray, optional
        Transition matrix; its first row masks unloaded states
    is_missing : callable, optional
        Missing-value predicate applied to X

    Returns
    -------
    NDArray
        Residuals, shape (T, n)
    """
    observations = ensure_array(X)
    values = fitted(result, C, A=A)
    if observations.shape != values.shape:
        raise DimensionMismatch(
            f"Observations have shape {observations.shape}, fitted values {values.shape}"
        )
    missing = _missing_cells(observations, values.shape, is_missing)
    resid = observations - values
    resid[missing] = np.nan
    return resid


def _missing_cells(X, shape, is_missing: MissingPredicate) -> NDArray:
    observations = ensure_array(X)
    if observations.shape != shape:
        raise DimensionMismatch(
            f"Observations have shape {observations.shape}, expected {shape}"
        )
    missing = np.asarray(is_missing(observations), dtype=bool)
    if missing.shape != shape:
        raise DimensionMismatch(
            f"Missing-value predicate returned shape {missing.shape}, expected {shape}"
        )
    return missing
