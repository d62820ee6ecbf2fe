"""
Plots of filtered and smoothed factor trajectories.

Each state dimension gets its own panel showing the smoothed mean with a
normal confidence band and, optionally, the filtered mean for comparison.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray
import matplotlib.pyplot as plt

from dfm_kalman.inference.kalman import FilterResult
from dfm_kalman.inference.smoother import SmootherResult
from dfm_kalman.utils import compute_prediction_intervals, extract_diagonal

logger = logging.getLogger(__name__)

# Colorblind-friendly palette
CMAP_CATEGORICAL = ['#4C72B0', '#DD8452', '#55A868', '#C44E52', '#8172B3', '#937860']


@dataclass
class PlotStyle:
    """Configuration for plot styling."""
    panel_size: Tuple[float, float] = (10, 2.5)
    band_alpha: float = 0.3
    line_width: float = 1.5
    title_fontsize: int = 12
    label_fontsize: int = 10


def plot_smoothed_states(
    smoother_result: SmootherResult,
    filter_result: Optional[FilterResult] = None,
    state_names: Optional[Sequence[str]] = None,
    time_index: Optional[NDArray] = None,
    confidence_level: float = 0.95,
    style: Optional[PlotStyle] = None,
    suptitle: Optional[str] = None,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """Plot smoothed state means with confidence bands, one panel per state.

    Parameters
    ----------
    smoother_result : SmootherResult
        Output of the RTS smoother
    filter_result : FilterResult, optional
        If given, filtered means are overlaid as dashed lines
    state_names : sequence of str, optional
        Panel labels. Defaults to f1, f2, ...
    time_index : NDArray, optional
        Values for the x-axis
    confidence_level : float
        Confidence level of the bands
    style : PlotStyle, optional
        Plot styling configuration
    suptitle : str, optional
        Overall title
    save_path : str or Path, optional
        Path to save figure

    Returns
    -------
    fig : Figure
    """
    style = style or PlotStyle()
    means = smoother_result.smoothed_means
    T_len, state_dim = means.shape

    if state_names is None:
        state_names = [f"f{i + 1}" for i in range(state_dim)]
    elif len(state_names) != state_dim:
        raise ValueError(f"Expected {state_dim} state names, got {len(state_names)}")

    if time_index is None:
        time_index = np.arange(T_len)

    std = np.sqrt(np.maximum(extract_diagonal(smoother_result.smoothed_covariances), 0.0))
    lower, upper = compute_prediction_intervals(means, std, confidence_level)

    width, height = style.panel_size
    fig, axes = plt.subplots(
        state_dim, 1, figsize=(width, height * state_dim), sharex=True, squeeze=False
    )
    axes = list(axes[:, 0])

    for i, ax in enumerate(axes):
        color = CMAP_CATEGORICAL[i % len(CMAP_CATEGORICAL)]
        ax.fill_between(
            time_index, lower[:, i], upper[:, i],
            alpha=style.band_alpha, color=color,
            label=f'{int(round(confidence_level * 100))}% CI',
        )
        ax.plot(time_index, means[:, i], color=color,
                linewidth=style.line_width, label='Smoothed')
        if filter_result is not None:
            ax.plot(time_index, filter_result.filtered_means[:, i], color='black',
                    linestyle='--', linewidth=style.line_width * 0.7, label='Filtered')
        ax.set_ylabel(state_names[i], fontsize=style.label_fontsize)

    axes[0].legend(loc='upper right')
    axes[-1].set_xlabel('Time', fontsize=style.label_fontsize)

    if suptitle:
        fig.suptitle(suptitle, fontsize=style.title_fontsize)

    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches='tight')
        logger.info(f"Saved state plot to {save_path}")

    return fig
