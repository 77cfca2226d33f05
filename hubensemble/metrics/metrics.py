# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""This module contains the metrics to assess quantile forecast quality."""
from typing import Callable, Sequence

import numpy as np
import pandas as pd


def get_eval_metric_function(metric_name: str) -> Callable:
    """Gets a metric if it is available.

    Args:
        metric_name: Name of the metric.

    Returns:
        Function to calculate the metric.

    Raises:
        KeyError: If the metric is not available.

    """
    evaluation_function = {
        "pinball_loss": pinball_loss,
        "mean_pinball_loss": mean_pinball_loss,
        "interval_coverage": interval_coverage,
        "weighted_interval_score": weighted_interval_score,
    }.get(metric_name, None)

    if evaluation_function is None:
        raise KeyError(f"Unknown evaluation metric function {metric_name}")

    return evaluation_function


def pinball_loss(realised, forecast, quantile: float) -> np.ndarray:
    """Pinball loss per observation, ``(1[y < q] - tau) * (q - y)``.

    Args:
        realised: Observed values.
        forecast: Forecasted quantile values.
        quantile: Quantile level tau of the forecast.

    Returns:
        Loss per observation, NaN where either input is NaN.

    """
    realised = np.asarray(realised, dtype=float)
    forecast = np.asarray(forecast, dtype=float)
    return ((realised < forecast) - quantile) * (forecast - realised)


def mean_pinball_loss(realised, forecast, quantile: float) -> float:
    """Mean pinball loss over the observations with both a forecast and a realisation."""
    return float(np.nanmean(pinball_loss(realised, forecast, quantile)))


def interval_coverage(
    realised: pd.Series, lower: pd.Series, upper: pd.Series
) -> float:
    """Fraction of realisations inside the closed interval [lower, upper]."""
    realised = np.asarray(realised, dtype=float)
    inside = (realised >= np.asarray(lower)) & (realised <= np.asarray(upper))
    return float(np.mean(inside))


def weighted_interval_score(
    realised, forecast: np.ndarray, quantiles: Sequence[float]
) -> np.ndarray:
    """Weighted interval score per observation from a set of quantile forecasts.

    With quantiles forming central intervals plus the median, the weighted
    interval score equals twice the pinball loss averaged over the quantile levels.

    Args:
        realised: Observed values, shape (n,).
        forecast: Quantile forecasts, shape (n, quantile levels).
        quantiles: Quantile levels of the forecast columns.

    """
    realised = np.asarray(realised, dtype=float)[:, None]
    forecast = np.asarray(forecast, dtype=float)
    quantiles = np.asarray(quantiles, dtype=float)[None, :]
    losses = ((realised < forecast) - quantiles) * (forecast - realised)
    return 2 * losses.mean(axis=1)
