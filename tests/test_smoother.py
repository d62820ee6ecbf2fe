"""
Tests for the RTS smoother and the fused filter/smoother.
"""

import numpy as np
import pytest
from scipy import stats

from dfm_kalman.exceptions import DimensionMismatch, InsufficientObservations
from dfm_kalman.inference import (
    KalmanFilter,
    RTSSmoother,
    SmootherResult,
    kalman_filter,
    kalman_filter_smoother,
    kalman_smoother,
)
from dfm_kalman.utils import is_symmetric


def _model_kwargs(data):
    return {key: data[key] for key in ('C', 'Q', 'R', 'A', 'F0', 'P0')}


def _filter_and_smooth(data, X=None):
    kf = KalmanFilter(C=data['C'], Q=data['Q'], R=data['R'], A=data['A'],
                      initial_mean=data['F0'], initial_covariance=data['P0'])
    filter_result = kf.filter(data['observations'] if X is None else X)
    return filter_result, RTSSmoother(kf).smooth(filter_result)


def _joint_gaussian_posterior(x, a, c, q, r, f0, p0):
    """Exact posterior of a scalar state path by direct Gaussian conditioning.

    Builds the joint prior of (F_0, ..., F_{T-1}) and conditions on the
    observed entries of x. Returns posterior means, the full posterior
    covariance of the path and the log-density of the observed entries.
    """
    T_len = len(x)
    prior_mean = f0 * a ** np.arange(T_len)

    variances = np.zeros(T_len)
    variances[0] = p0
    for t in range(1, T_len):
        variances[t] = a**2 * variances[t - 1] + q

    prior_cov = np.zeros((T_len, T_len))
    for s in range(T_len):
        for t in range(T_len):
            lo, hi = min(s, t), max(s, t)
            prior_cov[s, t] = a ** (hi - lo) * variances[lo]

    obs = np.flatnonzero(np.isfinite(x))
    cov_fx = c * prior_cov[:, obs]
    cov_xx = c**2 * prior_cov[np.ix_(obs, obs)] + r * np.eye(len(obs))
    gain = cov_fx @ np.linalg.inv(cov_xx)

    innovation = x[obs] - c * prior_mean[obs]
    post_mean = prior_mean + gain @ innovation
    post_cov = prior_cov - gain @ cov_fx.T
    loglik = stats.multivariate_normal.logpdf(x[obs], c * prior_mean[obs], cov_xx)
    return post_mean, post_cov, loglik


class TestRTSSmoother:
    """Tests for RTSSmoother class."""

    def test_smoother_shapes(self, factor_model):
        filter_result, smoother_result = _filter_and_smooth(factor_model)
        T_len, state_dim = filter_result.filtered_means.shape

        assert isinstance(smoother_result, SmootherResult)
        assert smoother_result.smoothed_means.shape == (T_len, state_dim)
        assert smoother_result.smoothed_covariances.shape == (T_len, state_dim, state_dim)
        assert smoother_result.cross_covariances.shape == (T_len, state_dim, state_dim)
        assert smoother_result.smoother_gains.shape == (T_len, state_dim, state_dim)

    def test_smoother_final_state(self, factor_model):
        """Smoothed state at the last step equals the filtered state."""
        filter_result, smoother_result = _filter_and_smooth(factor_model)

        np.testing.assert_array_equal(
            smoother_result.smoothed_means[-1], filter_result.filtered_means[-1]
        )
        np.testing.assert_array_equal(
            smoother_result.smoothed_covariances[-1], filter_result.filtered_covariances[-1]
        )

    def test_smoother_reduces_variance(self, factor_model):
        """Smoothed covariance should be <= filtered covariance."""
        filter_result, smoother_result = _filter_and_smooth(factor_model)

        for t in range(filter_result.n_steps - 1):
            diff = filter_result.filtered_covariances[t] - smoother_result.smoothed_covariances[t]
            eigvals = np.linalg.eigvalsh(0.5 * (diff + diff.T))
            assert np.all(eigvals >= -1e-10), f"Smoothing increased variance at t={t}"

    def test_smoother_improves_estimates(self, simple_ssm_data):
        """Smoothing should track the true states more closely than filtering."""
        filter_result, smoother_result = _filter_and_smooth(simple_ssm_data)
        states = simple_ssm_data['states']

        filter_mse = np.mean((filter_result.filtered_means - states)**2)
        smoother_mse = np.mean((smoother_result.smoothed_means - states)**2)
        assert smoother_mse < filter_mse

    def test_smoother_gain(self, factor_model):
        filter_result, smoother_result = _filter_and_smooth(factor_model)
        A = factor_model['A']

        for t in (0, 10, filter_result.n_steps - 2):
            expected = (filter_result.filtered_covariances[t] @ A.T
                        @ np.linalg.inv(filter_result.predicted_covariances[t + 1]))
            np.testing.assert_allclose(smoother_result.smoother_gains[t], expected)
        np.testing.assert_array_equal(smoother_result.smoother_gains[-1], 0.0)

    def test_cross_covariance_seed(self, factor_model):
        """The last lag-one covariance uses the full observation matrix."""
        X = factor_model['observations'].copy()
        X[-1, 1] = np.nan
        filter_result, smoother_result = _filter_and_smooth(factor_model, X=X)

        A, C, R = factor_model['A'], factor_model['C'], factor_model['R']
        P = filter_result.predicted_covariances[-1]
        K = P @ C.T @ np.linalg.inv(C @ P @ C.T + R)
        expected = (np.eye(2) - K @ C) @ A @ filter_result.filtered_covariances[-2]

        np.testing.assert_allclose(smoother_result.cross_covariances[-1], expected)

    def test_first_cross_covariance_is_zero(self, factor_model):
        _, smoother_result = _filter_and_smooth(factor_model)
        np.testing.assert_array_equal(smoother_result.cross_covariances[0], 0.0)
        assert np.any(smoother_result.cross_covariances[1] != 0.0)

    def test_symmetric_smoothed_covariances(self, factor_model):
        X = factor_model['observations'].copy()
        X[20:25, 0] = np.nan
        X[70, :] = np.nan
        _, smoother_result = _filter_and_smooth(factor_model, X=X)
        assert is_symmetric(smoother_result.smoothed_covariances)

    def test_log_likelihood_from_filter(self, factor_model):
        filter_result, smoother_result = _filter_and_smooth(factor_model)
        assert smoother_result.log_likelihood == filter_result.log_likelihood

    def test_state_dimension_mismatch(self, factor_model, simple_ssm_data):
        filter_result, _ = _filter_and_smooth(simple_ssm_data)
        d = factor_model
        kf = KalmanFilter(C=d['C'], Q=d['Q'], R=d['R'], A=d['A'],
                          initial_mean=d['F0'], initial_covariance=d['P0'])
        with pytest.raises(DimensionMismatch):
            RTSSmoother(kf).smooth(filter_result)


class TestExactPosterior:
    """Compare smoother output with direct Gaussian conditioning."""

    @pytest.mark.parametrize("x", [
        np.array([0.4, -0.3]),
        np.array([1.0, np.nan, 0.8, 1.2]),
        np.array([0.5, 1.1, np.nan, np.nan, -0.2, 0.3]),
    ])
    def test_scalar_model(self, x):
        a, c, q, r, f0, p0 = 0.8, 1.5, 0.3, 0.4, 0.2, 1.1
        result = kalman_filter_smoother(
            x[:, np.newaxis],
            C=np.array([[c]]), Q=np.array([[q]]), R=np.array([[r]]),
            A=np.array([[a]]), F0=np.array([f0]), P0=np.array([[p0]]),
        )

        post_mean, post_cov, loglik = _joint_gaussian_posterior(x, a, c, q, r, f0, p0)
        T_len = len(x)

        np.testing.assert_allclose(result.smoothed_means[:, 0], post_mean, atol=1e-10)
        np.testing.assert_allclose(
            result.smoothed_covariances[:, 0, 0], np.diag(post_cov), atol=1e-10
        )
        lag_one = np.array([post_cov[t, t - 1] for t in range(1, T_len)])
        np.testing.assert_allclose(result.cross_covariances[1:, 0, 0], lag_one, atol=1e-10)
        np.testing.assert_allclose(result.log_likelihood, loglik, atol=1e-10)


class TestNoiseFree:
    """A noise-free identity model reproduces the data exactly."""

    def test_round_trip(self):
        A = np.array([[0.9, 0.1],
                      [0.0, 0.8]])
        X = np.zeros((6, 2))
        X[0] = [1.0, -2.0]
        for t in range(1, 6):
            X[t] = A @ X[t - 1]

        result = kalman_filter_smoother(
            X, C=np.eye(2), Q=np.zeros((2, 2)), R=np.zeros((2, 2)), A=A,
            F0=np.zeros(2), P0=np.eye(2),
        )

        np.testing.assert_allclose(result.smoothed_means, X, atol=1e-12)
        np.testing.assert_allclose(result.smoothed_covariances, 0.0, atol=1e-12)


class TestShortSeries:
    """Tests for the minimum series length."""

    def test_two_steps(self, factor_model):
        X = factor_model['observations'][:2]
        filter_result, smoother_result = _filter_and_smooth(factor_model, X=X)

        np.testing.assert_array_equal(smoother_result.cross_covariances[0], 0.0)
        assert np.all(np.isfinite(smoother_result.cross_covariances[1]))
        assert np.all(np.isfinite(smoother_result.smoothed_means))

    def test_one_step_rejected(self, factor_model):
        with pytest.raises(InsufficientObservations):
            kalman_filter_smoother(factor_model['observations'][:1], **_model_kwargs(factor_model))

    def test_raw_histories_one_step_rejected(self, factor_model):
        d = factor_model
        with pytest.raises(InsufficientObservations):
            kalman_smoother(
                d['A'], d['C'], d['R'],
                np.zeros((1, 2)), np.zeros((1, 2)),
                np.zeros((1, 2, 2)), np.zeros((1, 2, 2)),
            )


class TestFunctionalInterface:
    """Tests for kalman_smoother and kalman_filter_smoother."""

    def test_kalman_smoother_matches_class(self, factor_model):
        d = factor_model
        X = d['observations'].copy()
        X[15, 2] = np.nan
        filter_result, expected = _filter_and_smooth(d, X=X)

        result = kalman_smoother(
            d['A'], d['C'], d['R'],
            filter_result.filtered_means,
            filter_result.predicted_means,
            filter_result.filtered_covariances,
            filter_result.predicted_covariances,
        )

        np.testing.assert_array_equal(result.smoothed_means, expected.smoothed_means)
        np.testing.assert_array_equal(result.smoothed_covariances, expected.smoothed_covariances)
        np.testing.assert_array_equal(result.cross_covariances, expected.cross_covariances)
        assert result.log_likelihood is None

    def test_kalman_smoother_history_shapes(self, factor_model):
        d = factor_model
        filter_result = kalman_filter(d['observations'], **_model_kwargs(d))
        with pytest.raises(DimensionMismatch):
            kalman_smoother(
                d['A'], d['C'], d['R'],
                filter_result.filtered_means,
                filter_result.predicted_means[:-1],
                filter_result.filtered_covariances,
                filter_result.predicted_covariances,
            )

    def test_kalman_smoother_matrix_shapes(self, factor_model):
        d = factor_model
        filter_result = kalman_filter(d['observations'], **_model_kwargs(d))
        with pytest.raises(DimensionMismatch):
            kalman_smoother(
                d['A'], d['C'], np.eye(3),
                filter_result.filtered_means,
                filter_result.predicted_means,
                filter_result.filtered_covariances,
                filter_result.predicted_covariances,
            )

    def test_fused_matches_composition(self, factor_model):
        d = factor_model
        X = d['observations'].copy()
        X[3:6, 1] = np.nan

        filter_result, expected = _filter_and_smooth(d, X=X)
        result = kalman_filter_smoother(X, **_model_kwargs(d))

        np.testing.assert_array_equal(result.smoothed_means, expected.smoothed_means)
        np.testing.assert_array_equal(result.cross_covariances, expected.cross_covariances)
        assert result.log_likelihood == filter_result.log_likelihood

    def test_unloaded_state(self):
        """A state excluded through A's first row gets no weight from C or A."""
        A = np.array([[0.6, np.nan],
                      [0.0, 0.5]])
        C = np.array([[1.0, 3.0],
                      [0.5, -2.0]])
        common = dict(Q=np.eye(2) * 0.1, R=np.eye(2) * 0.3,
                      F0=np.zeros(2), P0=np.eye(2))
        X = np.array([[0.2, 0.1], [0.4, -0.3], [0.1, 0.5], [np.nan, 0.2], [0.3, 0.0]])

        kf = KalmanFilter(C=C, Q=common['Q'], R=common['R'], A=A,
                          initial_mean=common['F0'], initial_covariance=common['P0'])
        np.testing.assert_array_equal(kf.model.loading[:, 1], 0.0)
        np.testing.assert_array_equal(kf.model.transition, [[0.6, 0.0], [0.0, 0.5]])

        filter_result = kf.filter(X)
        result = RTSSmoother(kf).smooth(filter_result)
        expected = kalman_filter_smoother(
            X, C=np.array([[1.0, 0.0], [0.5, 0.0]]),
            A=np.array([[0.6, 0.0], [0.0, 0.5]]), **common,
        )

        assert np.all(np.isfinite(filter_result.filtered_means))
        assert np.all(np.isfinite(filter_result.predicted_covariances))
        assert np.all(filter_result.log_likelihood_contributions != 0.0)
        np.testing.assert_allclose(result.log_likelihood, expected.log_likelihood)
        np.testing.assert_allclose(result.smoothed_means, expected.smoothed_means)
        np.testing.assert_allclose(result.smoothed_covariances, expected.smoothed_covariances)
        np.testing.assert_allclose(result.cross_covariances, expected.cross_covariances)

        raw = kalman_smoother(
            A, C, common['R'],
            filter_result.filtered_means, filter_result.predicted_means,
            filter_result.filtered_covariances, filter_result.predicted_covariances,
        )
        np.testing.assert_allclose(raw.cross_covariances, expected.cross_covariances)
