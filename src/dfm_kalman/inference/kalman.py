"""
Kalman Filter for Linear Gaussian State Space Models with Missing Data.

Forward recursion for the model

    x_t = C F_t + e_t,      e_t ~ N(0, R)
    F_t = A F_{t-1} + u_t,  u_t ~ N(0, Q)

where any cell of the observation matrix X may be missing. Channels that are
missing at time t are dropped from that step's update: the rows of C and the
rows/columns of R belonging to them are removed, so they contribute neither
information nor likelihood.

References
----------
.. [1] Kalman, R. E. (1960). A new approach to linear filtering and prediction
       problems. Journal of Basic Engineering, 82(1), 35-45.
.. [2] Banbura, M., & Modugno, M. (2014). Maximum likelihood estimation of
       factor models on datasets with arbitrary pattern of missing data.
       Journal of Applied Econometrics, 29(1), 133-160.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from dfm_kalman.exceptions import DimensionMismatch, InsufficientObservations
from dfm_kalman.utils import ensure_array


logger = logging.getLogger(__name__)

MissingPredicate = Callable[[NDArray], NDArray]

MIN_TIME_STEPS = 2


def nonfinite(values: NDArray) -> NDArray:
    """Default missing-value predicate: NaN and +/-inf mark absent cells."""
    return ~np.isfinite(values)


def _inverse(M: NDArray) -> NDArray:
    """Matrix inverse, falling back to the pseudo-inverse when singular."""
    try:
        return np.linalg.inv(M)
    except np.linalg.LinAlgError:
        logger.debug(f"Singular {M.shape} matrix, using pseudo-inverse")
        return np.linalg.pinv(M)


def masked_transition(A: NDArray) -> NDArray:
    """A with non-finite entries replaced by zero."""
    return np.where(np.isfinite(A), A, 0.0)


def masked_loading(C: NDArray, A: NDArray) -> NDArray:
    """C with the columns of state dimensions not finite in ``A[0]`` set to zero."""
    return np.where(np.isfinite(A[0])[np.newaxis, :], C, 0.0)


def _frozen(M: NDArray) -> NDArray:
    M = np.array(M, dtype=float)
    M.setflags(write=False)
    return M


@dataclass(frozen=True, eq=False)
class SystemMatrices:
    """Time-invariant system matrices and initial belief.

    Attributes
    ----------
    C : NDArray
        Observation matrix, shape (n, r)
    Q : NDArray
        State noise covariance, shape (r, r)
    R : NDArray
        Observation noise covariance, shape (n, n)
    A : NDArray
        State transition matrix, shape (r, r)
    initial_mean : NDArray
        Initial state mean F0, shape (r,)
    initial_covariance : NDArray
        Initial state covariance P0, shape (r, r)
    """
    C: NDArray
    Q: NDArray
    R: NDArray
    A: NDArray
    initial_mean: NDArray
    initial_covariance: NDArray

    def __post_init__(self):
        for name in ("C", "Q", "R", "A", "initial_mean", "initial_covariance"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))
        self._validate()

    def _validate(self) -> None:
        A, C = self.A, self.C
        if A.ndim != 2 or A.shape[0] != A.shape[1]:
            raise DimensionMismatch(f"A must be square, got shape {A.shape}")
        r = A.shape[0]
        if C.ndim != 2 or C.shape[1] != r:
            raise DimensionMismatch(f"C must be (n, {r}), got shape {C.shape}")
        n = C.shape[0]
        if self.Q.shape != (r, r):
            raise DimensionMismatch(f"Q must be ({r}, {r}), got shape {self.Q.shape}")
        if self.R.shape != (n, n):
            raise DimensionMismatch(f"R must be ({n}, {n}), got shape {self.R.shape}")
        if self.initial_mean.shape != (r,):
            raise DimensionMismatch(
                f"F0 must have shape ({r},), got {self.initial_mean.shape}"
            )
        if self.initial_covariance.shape != (r, r):
            raise DimensionMismatch(
                f"P0 must be ({r}, {r}), got shape {self.initial_covariance.shape}"
            )

    @property
    def state_dim(self) -> int:
        return self.A.shape[0]

    @property
    def obs_dim(self) -> int:
        return self.C.shape[0]

    @property
    def loaded_states(self) -> NDArray:
        """State dimensions entering the observation equation.

        Derived from the first row of A: non-finite entries mark state
        dimensions excluded from the loading for every time step.
        """
        return np.isfinite(self.A[0])

    @property
    def loading(self) -> NDArray:
        """C with the columns of unloaded state dimensions set to zero."""
        return masked_loading(self.C, self.A)

    @property
    def transition(self) -> NDArray:
        """A with non-finite entries set to zero, used by the state recursion.

        An unloaded state dimension therefore receives no weight from the
        loaded ones.
        """
        return masked_transition(self.A)

    def check_observations(self, observations: NDArray) -> None:
        """Raise if X is not a (T, n) matrix matching C."""
        if observations.ndim != 2:
            raise DimensionMismatch(
                f"Observations must be 2D (T, n), got {observations.ndim}D"
            )
        if observations.shape[1] != self.obs_dim:
            raise DimensionMismatch(
                f"Observations have {observations.shape[1]} columns, "
                f"C has {self.obs_dim} rows"
            )


@dataclass
class FilteredState:
    """Container for Kalman filter output at a single time step.

    Attributes
    ----------
    mean : NDArray
        Filtered state mean, shape (r,)
    covariance : NDArray
        Filtered state covariance, shape (r, r)
    predicted_mean : NDArray
        Predicted state mean before seeing the observation
    predicted_covariance : NDArray
        Predicted state covariance before seeing the observation
    log_likelihood : float
        Log-likelihood contribution from this time step
    """
    mean: NDArray
    covariance: NDArray
    predicted_mean: NDArray
    predicted_covariance: NDArray
    log_likelihood: float


@dataclass
class FilterResult:
    """Complete Kalman filter results across all time steps.

    Attributes
    ----------
    filtered_means : NDArray
        Filtered state means, shape (T, r)
    filtered_covariances : NDArray
        Filtered covariances, shape (T, r, r)
    predicted_means : NDArray
        Predicted state means, shape (T, r)
    predicted_covariances : NDArray
        Predicted covariances, shape (T, r, r)
    log_likelihood : float
        Total log-likelihood
    log_likelihood_contributions : NDArray
        Per-step log-likelihood increments, shape (T,)
    forecast_mean : NDArray
        One-step-ahead predicted mean past the end of the series, shape (r,)
    forecast_covariance : NDArray
        One-step-ahead predicted covariance past the end of the series
    observed_mask : NDArray
        Read-only boolean mask of observed cells, shape (T, n)
    """
    filtered_means: NDArray
    filtered_covariances: NDArray
    predicted_means: NDArray
    predicted_covariances: NDArray
    log_likelihood: float
    log_likelihood_contributions: NDArray
    forecast_mean: NDArray
    forecast_covariance: NDArray
    observed_mask: NDArray

    @property
    def n_steps(self) -> int:
        return self.filtered_means.shape[0]


class KalmanFilter:
    """Kalman filter for a linear Gaussian state space model with missing data.

    Holds the system matrices only; every call to :meth:`filter` allocates
    its own histories, so a single instance can be reused across series.

    Parameters
    ----------
    C : NDArray
        Observation matrix, shape (n, r)
    Q : NDArray
        State noise covariance, shape (r, r)
    R : NDArray
        Observation noise covariance, shape (n, n)
    A : NDArray
        State transition matrix, shape (r, r)
    initial_mean : NDArray
        Initial state mean F0, shape (r,)
    initial_covariance : NDArray
        Initial state covariance P0, shape (r, r)
    is_missing : callable, optional
        Maps the (T, n) observation array to a boolean mask of missing
        cells. Defaults to :func:`nonfinite`.

    Examples
    --------
    >>> kf = KalmanFilter(C=C, Q=Q, R=R, A=A, initial_mean=F0, initial_covariance=P0)
    >>> result = kf.filter(observations)
    >>> result.log_likelihood
    """

    def __init__(
        self,
        C: NDArray,
        Q: NDArray,
        R: NDArray,
        A: NDArray,
        initial_mean: NDArray,
        initial_covariance: NDArray,
        is_missing: MissingPredicate = nonfinite,
    ):
        self.model = SystemMatrices(
            C=C, Q=Q, R=R, A=A,
            initial_mean=initial_mean,
            initial_covariance=initial_covariance,
        )
        self.is_missing = is_missing
        self._loading = self.model.loading
        self._transition = self.model.transition

    @classmethod
    def from_model(
        cls,
        model: SystemMatrices,
        is_missing: MissingPredicate = nonfinite,
    ) -> "KalmanFilter":
        """Build a filter from an existing :class:`SystemMatrices`."""
        return cls(
            C=model.C, Q=model.Q, R=model.R, A=model.A,
            initial_mean=model.initial_mean,
            initial_covariance=model.initial_covariance,
            is_missing=is_missing,
        )

    @property
    def state_dim(self) -> int:
        return self.model.state_dim

    @property
    def obs_dim(self) -> int:
        return self.model.obs_dim

    def observed_mask(self, observations: NDArray) -> NDArray:
        """Boolean (T, n) mask of observed cells, derived once per call."""
        missing = np.asarray(self.is_missing(observations), dtype=bool)
        if missing.shape != observations.shape:
            raise DimensionMismatch(
                f"Missing-value predicate returned shape {missing.shape}, "
                f"expected {observations.shape}"
            )
        observed = ~missing
        observed.setflags(write=False)
        return observed

    def _predict_step(
        self,
        filtered_mean: NDArray,
        filtered_covariance: NDArray,
    ) -> Tuple[NDArray, NDArray]:
        """Kalman filter prediction step.

        Computes:
            F_{t+1|t} = A F_{t|t}
            P_{t+1|t} = A P_{t|t} A' + Q
        """
        A = self._transition
        predicted_mean = A @ filtered_mean
        predicted_cov = A @ filtered_covariance @ A.T + self.model.Q
        return predicted_mean, predicted_cov

    def _update_step(
        self,
        observation: NDArray,
        observed: NDArray,
        predicted_mean: NDArray,
        predicted_covariance: NDArray,
    ) -> FilteredState:
        """Kalman filter update step restricted to the observed channels.

        Computes:
            S^{-1} = (C P_{t|t-1} C' + R)^{-1}
            v_t = x_t - C F_{t|t-1}
            K_t = P_{t|t-1} C' S^{-1}
            F_{t|t} = F_{t|t-1} + K_t v_t
            P_{t|t} = P_{t|t-1} - K_t C P_{t|t-1}
        """
        if not observed.any():
            return FilteredState(
                mean=predicted_mean,
                covariance=predicted_covariance,
                predicted_mean=predicted_mean,
                predicted_covariance=predicted_covariance,
                log_likelihood=0.0,
            )

        Z = self._loading[observed]
        H = self.model.R[np.ix_(observed, observed)]

        innovation_cov_inv = _inverse(Z @ predicted_covariance @ Z.T + H)
        innovation = observation[observed] - Z @ predicted_mean
        kalman_gain = predicted_covariance @ Z.T @ innovation_cov_inv

        filtered_mean = predicted_mean + kalman_gain @ innovation
        filtered_cov = predicted_covariance - kalman_gain @ Z @ predicted_covariance

        # Skip the likelihood term when S is not positive definite
        ll = 0.0
        det_inv = np.linalg.det(innovation_cov_inv)
        if det_inv > 0:
            quad_form = innovation @ innovation_cov_inv @ innovation
            ll = -0.5 * (
                self.obs_dim * np.log(2.0 * np.pi) - np.log(det_inv) + quad_form
            )

        return FilteredState(
            mean=filtered_mean,
            covariance=filtered_cov,
            predicted_mean=predicted_mean,
            predicted_covariance=predicted_covariance,
            log_likelihood=float(ll),
        )

    def filter(self, observations: Union[NDArray, pd.DataFrame]) -> FilterResult:
        """Run the Kalman filter on an observation sequence.

        Parameters
        ----------
        observations : NDArray or DataFrame
            Observation matrix, shape (T, n). Missing cells are flagged by
            the ``is_missing`` predicate.

        Returns
        -------
        FilterResult
            Container with filtered/predicted histories and log-likelihood

        Raises
        ------
        DimensionMismatch
            If the observations do not match the observation matrix
        InsufficientObservations
            If fewer than two time steps are given
        """
        observations = ensure_array(observations)
        self.model.check_observations(observations)

        T_len = observations.shape[0]
        if T_len < MIN_TIME_STEPS:
            raise InsufficientObservations(
                f"Kalman filter needs at least {MIN_TIME_STEPS} time steps, got {T_len}"
            )

        observed = self.observed_mask(observations)
        state_dim = self.state_dim

        logger.debug(
            f"Filtering T={T_len}, obs_dim={self.obs_dim}, state_dim={state_dim}, "
            f"missing cells={int((~observed).sum())}"
        )

        filtered_means = np.zeros((T_len, state_dim))
        predicted_means = np.zeros((T_len, state_dim))
        filtered_covs = np.zeros((T_len, state_dim, state_dim))
        predicted_covs = np.zeros((T_len, state_dim, state_dim))
        ll_contributions = np.zeros(T_len)

        pred_mean = self.model.initial_mean.copy()
        pred_cov = self.model.initial_covariance.copy()

        for t in range(T_len):
            filtered_state = self._update_step(
                observations[t], observed[t], pred_mean, pred_cov
            )

            predicted_means[t] = filtered_state.predicted_mean
            predicted_covs[t] = filtered_state.predicted_covariance
            filtered_means[t] = filtered_state.mean
            filtered_covs[t] = filtered_state.covariance
            ll_contributions[t] = filtered_state.log_likelihood

            pred_mean, pred_cov = self._predict_step(
                filtered_means[t], filtered_covs[t]
            )

        return FilterResult(
            filtered_means=filtered_means,
            filtered_covariances=filtered_covs,
            predicted_means=predicted_means,
            predicted_covariances=predicted_covs,
            log_likelihood=float(ll_contributions.sum()),
            log_likelihood_contributions=ll_contributions,
            forecast_mean=pred_mean,
            forecast_covariance=pred_cov,
            observed_mask=observed,
        )


def kalman_filter(
    X: Union[NDArray, pd.DataFrame],
    C: NDArray,
    Q: NDArray,
    R: NDArray,
    A: NDArray,
    F0: NDArray,
    P0: NDArray,
    is_missing: MissingPredicate = nonfinite,
) -> FilterResult:
    """Run the Kalman filter with the given system matrices.

    Functional form of ``KalmanFilter(...).filter(X)``.
    """
    kf = KalmanFilter(
        C=C, Q=Q, R=R, A=A,
        initial_mean=F0,
        initial_covariance=P0,
        is_missing=is_missing,
    )
    return kf.filter(X)
