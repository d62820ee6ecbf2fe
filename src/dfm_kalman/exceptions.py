"""Exceptions raised by dfm-kalman on caller contract violations."""

from __future__ import annotations


class DimensionMismatch(ValueError):
    """System matrices, initial state or data have inconsistent shapes."""


class InsufficientObservations(ValueError):
    """The series is too short for the requested recursion.

    Filtering, smoothing and the E-step all need at least two time steps.
    """
