"""
Command-Line Interface for dfm-kalman.

Provides CLI commands running the core recursions on CSV data:
    dfm-kalman filter:   Kalman filter
    dfm-kalman smooth:   Kalman filter followed by the RTS smoother
    dfm-kalman estep:    EM sufficient statistics
    dfm-kalman forecast: h-step forecasts, fitted values and residuals

System matrices are read from a ``.npz`` archive holding the arrays
``C, Q, R, A, F0, P0``; results are written to a ``.npz`` archive.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray


MODEL_KEYS = ("C", "Q", "R", "A", "F0", "P0")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_model(path: str | Path) -> Dict[str, NDArray]:
    """Load system matrices and initial belief from a ``.npz`` archive.

    Raises
    ------
    KeyError
        If any of C, Q, R, A, F0, P0 is absent
    """
    with np.load(path) as data:
        missing = [key for key in MODEL_KEYS if key not in data.files]
        if missing:
            raise KeyError(f"Model file {path} is missing arrays: {', '.join(missing)}")
        model = {key: np.asarray(data[key], dtype=float) for key in MODEL_KEYS}
    model["F0"] = model["F0"].ravel()
    return model


def load_observations(path: str | Path, index_col: Optional[int] = None) -> pd.DataFrame:
    """Read a (T, n) observation table; empty cells become NaN."""
    return pd.read_csv(path, index_col=index_col)


def _build_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Data arguments
    parser.add_argument(
        '--data', '-d',
        type=str,
        required=True,
        help='Path to CSV file with observations (rows = time, columns = series)',
    )
    parser.add_argument(
        '--index-col',
        type=int,
        default=None,
        help='Column number holding the time index, if any',
    )
    parser.add_argument(
        '--model', '-m',
        type=str,
        required=True,
        help='Path to .npz file holding C, Q, R, A, F0, P0',
    )

    # Output arguments
    parser.add_argument(
        '--output', '-o',
        type=str,
        required=True,
        help='Path for output .npz file',
    )
    parser.add_argument(
        '--states-csv',
        type=str,
        default=None,
        help='Optional path for a CSV of estimated state means',
    )

    # Other arguments
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output',
    )
    return parser


def _load_inputs(args: argparse.Namespace, logger: logging.Logger):
    logger.info(f"Loading observations from {args.data}")
    observations = load_observations(args.data, index_col=args.index_col)

    logger.info(f"Loading system matrices from {args.model}")
    model = load_model(args.model)

    logger.info(
        f"Data loaded: T={observations.shape[0]}, n={observations.shape[1]}, "
        f"missing cells={int(observations.isna().to_numpy().sum())}"
    )
    return observations, model


def _write_states(
    path: str,
    means: NDArray,
    index: pd.Index,
    logger: logging.Logger,
) -> None:
    columns = [f"f{i + 1}" for i in range(means.shape[1])]
    pd.DataFrame(means, index=index, columns=columns).to_csv(path)
    logger.info(f"State means saved to {path}")


def filter_command(argv: Optional[Sequence[str]] = None) -> None:
    """Run the Kalman filter on a CSV series."""
    parser = _build_parser('Run the Kalman filter on an observation series')
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    from dfm_kalman.inference import kalman_filter

    observations, model = _load_inputs(args, logger)

    logger.info("Running Kalman filter...")
    result = kalman_filter(observations, **model)

    np.savez(
        args.output,
        filtered_means=result.filtered_means,
        filtered_covariances=result.filtered_covariances,
        predicted_means=result.predicted_means,
        predicted_covariances=result.predicted_covariances,
        forecast_mean=result.forecast_mean,
        forecast_covariance=result.forecast_covariance,
        log_likelihood_contributions=result.log_likelihood_contributions,
        log_likelihood=result.log_likelihood,
    )
    logger.info(f"Filter results saved to {args.output}")

    if args.states_csv:
        _write_states(args.states_csv, result.filtered_means, observations.index, logger)

    logger.info(f"Log-likelihood: {result.log_likelihood:.6f}")


def smooth_command(argv: Optional[Sequence[str]] = None) -> None:
    """Run the Kalman filter and RTS smoother on a CSV series."""
    parser = _build_parser('Run the Kalman filter and RTS smoother on an observation series')
    parser.add_argument(
        '--plot',
        type=str,
        default=None,
        help='Optional path for a PNG plot of the smoothed states',
    )
    parser.add_argument(
        '--confidence-level',
        type=float,
        default=0.95,
        help='Confidence level for the plotted bands',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    from dfm_kalman.inference import KalmanFilter, RTSSmoother

    observations, model = _load_inputs(args, logger)

    logger.info("Running Kalman filter and RTS smoother...")
    kf = KalmanFilter(
        C=model["C"], Q=model["Q"], R=model["R"], A=model["A"],
        initial_mean=model["F0"],
        initial_covariance=model["P0"],
    )
    filter_result = kf.filter(observations)
    smoother_result = RTSSmoother(kf).smooth(filter_result)

    np.savez(
        args.output,
        filtered_means=filter_result.filtered_means,
        filtered_covariances=filter_result.filtered_covariances,
        predicted_means=filter_result.predicted_means,
        predicted_covariances=filter_result.predicted_covariances,
        smoothed_means=smoother_result.smoothed_means,
        smoothed_covariances=smoother_result.smoothed_covariances,
        cross_covariances=smoother_result.cross_covariances,
        log_likelihood=smoother_result.log_likelihood,
    )
    logger.info(f"Smoother results saved to {args.output}")

    if args.states_csv:
        _write_states(args.states_csv, smoother_result.smoothed_means, observations.index, logger)

    if args.plot:
        import matplotlib
        matplotlib.use('Agg')
        import matplotlib.pyplot as plt

        from dfm_kalman.visualization import plot_smoothed_states

        fig = plot_smoothed_states(
            smoother_result,
            filter_result=filter_result,
            confidence_level=args.confidence_level,
            save_path=args.plot,
        )
        plt.close(fig)

    logger.info(f"Log-likelihood: {smoother_result.log_likelihood:.6f}")


def estep_command(argv: Optional[Sequence[str]] = None) -> None:
    """Compute EM sufficient statistics for a CSV series."""
    parser = _build_parser('Compute EM E-step sufficient statistics for an observation series')
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    from dfm_kalman.inference import estep

    observations, model = _load_inputs(args, logger)

    logger.info("Running E-step...")
    result = estep(observations, **model)

    np.savez(
        args.output,
        beta=result.beta,
        gamma=result.gamma,
        delta=result.delta,
        gamma1=result.gamma1,
        gamma2=result.gamma2,
        F0=result.initial_mean,
        P0=result.initial_covariance,
        log_likelihood=result.log_likelihood,
    )
    logger.info(f"E-step statistics saved to {args.output}")

    if args.states_csv:
        _write_states(
            args.states_csv,
            result.smoother_result.smoothed_means,
            observations.index,
            logger,
        )

    logger.info(f"Log-likelihood: {result.log_likelihood:.6f}")


def forecast_command(argv: Optional[Sequence[str]] = None) -> None:
    """Forecast factors and series from smoothed states of a CSV series."""
    parser = _build_parser('Forecast factors and series past the end of an observation series')
    parser.add_argument(
        '--horizon', '-H',
        type=int,
        default=10,
        help='Number of steps to forecast',
    )
    parser.add_argument(
        '--forecast-csv',
        type=str,
        default=None,
        help='Optional path for a CSV of the series forecasts',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    from dfm_kalman.inference import fitted, forecast, kalman_filter_smoother, residuals

    observations, model = _load_inputs(args, logger)

    logger.info("Running Kalman filter and RTS smoother...")
    smoother_result = kalman_filter_smoother(observations, **model)

    logger.info(f"Forecasting {args.horizon} steps ahead...")
    result = forecast(smoother_result, model["A"], model["C"], h=args.horizon, Q=model["Q"])

    np.savez(
        args.output,
        factor_forecasts=result.factor_forecasts,
        data_forecasts=result.data_forecasts,
        factor_covariances=result.factor_covariances,
        fitted=fitted(smoother_result, model["C"], A=model["A"], X=observations),
        residuals=residuals(smoother_result, model["C"], observations, A=model["A"]),
    )
    logger.info(f"Forecasts saved to {args.output}")

    if args.states_csv:
        _write_states(args.states_csv, smoother_result.smoothed_means, observations.index, logger)

    if args.forecast_csv:
        pd.DataFrame(result.data_forecasts, columns=observations.columns).to_csv(
            args.forecast_csv, index_label='step'
        )
        logger.info(f"Series forecasts saved to {args.forecast_csv}")


COMMANDS: Dict[str, Callable[[Optional[Sequence[str]]], None]] = {
    'filter': filter_command,
    'smooth': smooth_command,
    'estep': estep_command,
    'forecast': forecast_command,
}


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else list(argv)

    if not argv:
        print("Usage: dfm-kalman <command> [options]")
        print("\nCommands:")
        print("  filter   Run the Kalman filter")
        print("  smooth   Run the Kalman filter and RTS smoother")
        print("  estep    Compute EM sufficient statistics")
        print("  forecast Forecast factors and series")
        sys.exit(1)

    command = argv[0]
    if command not in COMMANDS:
        print(f"Unknown command: {command}")
        sys.exit(1)

    COMMANDS[command](argv[1:])


if __name__ == '__main__':
    main()
