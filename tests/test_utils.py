"""
Tests for utility functions.
"""

import numpy as np
import pandas as pd
import pytest

from dfm_kalman.utils import (
    compute_prediction_intervals,
    ensure_array,
    extract_diagonal,
    is_symmetric,
    simulate_state_space,
    stationary_moments,
)


class TestEnsureArray:

    def test_dataframe_missing_values(self):
        frame = pd.DataFrame({'a': [1.0, None], 'b': [2, 3]})
        result = ensure_array(frame)
        assert result.dtype == np.float64
        assert np.isnan(result[1, 0])
        np.testing.assert_array_equal(result[:, 1], [2.0, 3.0])

    def test_nullable_integer_column(self):
        frame = pd.DataFrame({'a': pd.array([1, None, 3], dtype='Int64')})
        result = ensure_array(frame)
        assert np.isnan(result[1, 0])

    def test_list_input(self):
        result = ensure_array([[1, 2], [3, 4]])
        assert result.dtype == np.float64
        assert result.shape == (2, 2)


class TestStationaryMoments:

    def test_lyapunov_solution(self):
        A = np.array([[0.5, 0.1], [0.0, 0.3]])
        Q = np.diag([1.0, 0.5])
        mean, cov = stationary_moments(A, Q)

        np.testing.assert_array_equal(mean, np.zeros(2))
        np.testing.assert_allclose(cov, A @ cov @ A.T + Q)
        np.testing.assert_array_equal(cov, cov.T)

    def test_scalar(self):
        _, cov = stationary_moments(np.array([[0.9]]), np.array([[0.19]]))
        np.testing.assert_allclose(cov, [[1.0]])

    def test_unstable_transition(self):
        with pytest.raises(ValueError):
            stationary_moments(np.eye(2), np.eye(2))


class TestSimulateStateSpace:

    def test_shapes(self):
        states, observations = simulate_state_space(
            np.eye(2) * 0.5, np.ones((3, 2)), np.eye(2), np.eye(3), 25, random_state=0
        )
        assert states.shape == (25, 2)
        assert observations.shape == (25, 3)

    def test_reproducible(self):
        args = (np.eye(2) * 0.5, np.ones((3, 2)), np.eye(2), np.eye(3), 10)
        first = simulate_state_space(*args, random_state=3)
        second = simulate_state_space(*args, random_state=3)
        np.testing.assert_array_equal(first[1], second[1])

    def test_initial_state(self):
        states, _ = simulate_state_space(
            np.eye(2), np.eye(2), np.zeros((2, 2)), np.eye(2), 5,
            initial_state=[1.0, -1.0], random_state=0,
        )
        np.testing.assert_array_equal(states, np.tile([1.0, -1.0], (5, 1)))

    def test_noise_free_observations(self):
        C = np.array([[1.0, 2.0]])
        states, observations = simulate_state_space(
            np.eye(2) * 0.8, C, np.eye(2), np.zeros((1, 1)), 8, random_state=1
        )
        np.testing.assert_allclose(observations, states @ C.T)


class TestCovarianceHelpers:

    def test_is_symmetric(self):
        assert is_symmetric(np.eye(3))
        assert not is_symmetric(np.array([[1.0, 2.0], [0.0, 1.0]]))
        stack = np.stack([np.eye(2), np.array([[2.0, 0.5], [0.5, 1.0]])])
        assert is_symmetric(stack)

    def test_extract_diagonal(self):
        cov = np.array([[2.0, 0.1], [0.1, 3.0]])
        np.testing.assert_array_equal(extract_diagonal(cov), [2.0, 3.0])
        np.testing.assert_array_equal(
            extract_diagonal(np.stack([cov, 2 * cov])), [[2.0, 3.0], [4.0, 6.0]]
        )
        with pytest.raises(ValueError):
            extract_diagonal(np.ones(3))

    def test_prediction_intervals(self):
        lower, upper = compute_prediction_intervals(
            np.zeros(2), np.ones(2), confidence_level=0.95
        )
        np.testing.assert_allclose(upper, 1.959964, atol=1e-6)
        np.testing.assert_allclose(lower, -upper)
