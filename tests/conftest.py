"""
Test configuration and fixtures for dfm-kalman.
"""

import numpy as np
import pytest

from dfm_kalman.utils import simulate_state_space, stationary_moments


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@pytest.fixture
def random_seed():
    """Set random seed for reproducibility."""
    np.random.seed(42)
    return 42


@pytest.fixture
def simple_ssm_data():
    """Generate data from a simple state space model with identity loading."""
    T_len = 100
    state_dim = 3

    A = np.eye(state_dim) * 0.9
    C = np.eye(state_dim)
    Q = np.eye(state_dim) * 0.1
    R = np.eye(state_dim) * 0.2

    states, observations = simulate_state_space(A, C, Q, R, T_len, random_state=42)

    return {
        'states': states,
        'observations': observations,
        'A': A,
        'C': C,
        'Q': Q,
        'R': R,
        'F0': np.zeros(state_dim),
        'P0': np.eye(state_dim),
        'state_dim': state_dim,
        'T_len': T_len,
    }


@pytest.fixture
def factor_model():
    """Two-factor model observed through four series, with stationary initial belief."""
    A = np.array([[0.7, 0.2],
                  [0.0, 0.5]])
    C = np.array([[1.0, 0.0],
                  [0.5, 1.0],
                  [0.3, 0.2],
                  [-0.4, 0.8]])
    Q = np.diag([0.2, 0.1])
    R = np.diag([0.5, 0.4, 0.3, 0.6])
    F0, P0 = stationary_moments(A, Q)

    states, observations = simulate_state_space(A, C, Q, R, 120, random_state=7)

    return {
        'A': A,
        'C': C,
        'Q': Q,
        'R': R,
        'F0': F0,
        'P0': P0,
        'states': states,
        'observations': observations,
    }


@pytest.fixture
def scalar_scenario():
    """Scalar AR(1) state observed once per step, with one missing value."""
    return {
        'X': np.array([[1.0], [np.nan], [0.8], [1.2]]),
        'C': np.array([[1.0]]),
        'Q': np.array([[0.1]]),
        'R': np.array([[0.5]]),
        'A': np.array([[0.9]]),
        'F0': np.array([0.0]),
        'P0': np.array([[1.0]]),
    }
