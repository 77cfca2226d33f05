# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""Weighted median of model quantiles through a rectangular kernel density estimate.

Each model value ``v_m`` with weight ``w_m`` is smoothed with a rectangular
kernel of width ``r``, so the weighted CDF is a sum of linear ramps of height
``w_m`` over ``[v_m - r/2, v_m + r/2]``. The kernel width follows Silverman's rule
of thumb::

    bandwidth = 0.9 * sd * M ** -0.2
    r = sqrt(12 * bandwidth ** 2)

where ``sd`` is the unweighted or the weighted standard deviation of the ``M``
available model values. Because the CDF is piecewise linear, the point where it
reaches 0.5 can be found exactly: sort the ``2M`` ramp edges, accumulate the CDF
over the edges, binary search the segment that contains 0.5 and interpolate
linearly within it.

When several points have CDF 0.5 (a flat segment) the smallest one is returned,
i.e. ``inf{x : F(x) >= 0.5}``. When the kernel width is zero, because all
values coincide or the weighted standard deviation vanishes, the same rule is
applied to the weighted point masses.

All functions work on rows: ``values`` has shape (cases, models) and ``NaN``
marks a model without a value for that case. Its weight is dropped and the
remaining weights are renormalized per row.
"""
from typing import Optional, Union

import numpy as np

from hubensemble.enums import BandwidthMode
from hubensemble.exceptions import DegenerateInputError

TARGET_PROBABILITY = 0.5
CDF_TOLERANCE = 1e-10
SILVERMAN_FACTOR = 0.9


def _prepare(values, weights):
    values = np.atleast_2d(np.asarray(values, dtype=float))
    if weights is None:
        weights = np.ones(values.shape[1])
    weights = np.broadcast_to(np.asarray(weights, dtype=float), values.shape)
    if not np.all(np.isfinite(weights)) or np.any(weights < 0):
        raise DegenerateInputError("Weights should be finite and non-negative")

    available = ~np.isnan(values)
    effective = np.where(available, weights, 0.0)
    totals = effective.sum(axis=1)
    degenerate = totals <= 0
    normalized = effective / np.where(degenerate, 1.0, totals)[:, None]
    return np.where(available, values, 0.0), normalized, available, totals, degenerate


def _bandwidth(values, normalized, available, bandwidth_mode: BandwidthMode):
    n_available = np.maximum(available.sum(axis=1), 1)
    if bandwidth_mode == BandwidthMode.WEIGHTED:
        mean = (normalized * values).sum(axis=1)
        variance = (normalized * (values - mean[:, None]) ** 2).sum(axis=1)
    else:
        mean = values.sum(axis=1) / n_available
        variance = (available * (values - mean[:, None]) ** 2).sum(
            axis=1
        ) / n_available
    sd = np.sqrt(variance)
    scale = np.sqrt(12.0) * SILVERMAN_FACTOR * n_available**-0.2
    return scale * sd, scale, sd, mean


def _first_reaching(cumulative: np.ndarray, threshold: float) -> np.ndarray:
    """Per row, the first column where a nondecreasing cumulative reaches the threshold.

    Rows are shifted by multiples of 2 so a single binary search over the
    flattened array serves all rows, rows that never reach the threshold give
    the number of columns.
    """
    n_rows, n_cols = cumulative.shape
    offsets = 2.0 * np.arange(n_rows)
    flat = (np.maximum.accumulate(cumulative, axis=1) + offsets[:, None]).ravel()
    positions = np.searchsorted(flat, offsets + threshold, side="left")
    return positions - np.arange(n_rows) * n_cols


def _kernel_median(values, normalized, width):
    n_rows, n_models = values.shape
    rows = np.arange(n_rows)
    safe_width = np.where(width > 0, width, 1.0)[:, None]
    half_width = width[:, None] / 2

    edges = np.concatenate([values - half_width, values + half_width], axis=1)
    slope_changes = np.concatenate(
        [normalized / safe_width, -normalized / safe_width], axis=1
    )
    order = np.argsort(edges, axis=1, kind="stable")
    edges = np.take_along_axis(edges, order, axis=1)
    # slopes[:, i] is the CDF slope between edges i and i + 1
    slopes = np.cumsum(np.take_along_axis(slope_changes, order, axis=1), axis=1)
    cdf = np.concatenate(
        [
            np.zeros((n_rows, 1)),
            np.cumsum(slopes[:, :-1] * np.diff(edges, axis=1), axis=1),
        ],
        axis=1,
    )

    segment_end = _first_reaching(cdf, TARGET_PROBABILITY - CDF_TOLERANCE)
    reached = segment_end < 2 * n_models
    end = np.clip(segment_end, 1, 2 * n_models - 1)
    start = end - 1
    segment_slope = slopes[rows, start]
    step = (TARGET_PROBABILITY - cdf[rows, start]) / np.where(
        segment_slope > 0, segment_slope, 1.0
    )
    median = edges[rows, start] + np.clip(
        step, 0.0, edges[rows, end] - edges[rows, start]
    )
    return median, reached, edges[rows, start], edges[rows, end]


def _point_mass_median(values, normalized, available):
    n_rows, n_models = values.shape
    sortable = np.where(available, values, np.inf)
    order = np.argsort(sortable, axis=1, kind="stable")
    sorted_values = np.take_along_axis(sortable, order, axis=1)
    cumulative = np.cumsum(np.take_along_axis(normalized, order, axis=1), axis=1)

    index = _first_reaching(cumulative, TARGET_PROBABILITY - CDF_TOLERANCE)
    reached = index < n_models
    median = sorted_values[np.arange(n_rows), np.minimum(index, n_models - 1)]
    return median, reached


def _kernel_gradient(
    values,
    normalized,
    available,
    width,
    scale,
    sd,
    mean,
    median,
    segment_start,
    segment_end,
    bandwidth_mode: BandwidthMode,
):
    """Derivative of the kernel median with respect to the normalized weights.

    From the implicit function F(median; w) = 0.5: d median / d w_m equals
    -(dF/dw_m) / (dF/dx), with dF/dx the slope of the segment holding the median.
    In weighted mode the kernel width depends on the weights as well.
    """
    safe_width = np.where(width > 0, width, 1.0)[:, None]
    lower = values - safe_width / 2
    upper = values + safe_width / 2
    coverage = np.clip((median[:, None] - lower) / safe_width, 0.0, 1.0)
    active = (
        (lower <= segment_start[:, None]) & (upper >= segment_end[:, None]) & available
    )
    slope = (normalized * active).sum(axis=1)[:, None] / safe_width

    dcdf_dweights = coverage
    if bandwidth_mode == BandwidthMode.WEIGHTED:
        dcdf_dwidth = (
            -(normalized * active * (median[:, None] - values)).sum(axis=1)[:, None]
            / safe_width**2
        )
        safe_sd = np.where(sd > 0, sd, 1.0)[:, None]
        dsd_dweights = (values - mean[:, None]) ** 2 / (2 * safe_sd)
        dcdf_dweights = dcdf_dweights + dcdf_dwidth * scale[:, None] * dsd_dweights

    return -dcdf_dweights / np.where(slope > 0, slope, 1.0) * available


def weighted_median_rows(
    values,
    weights=None,
    bandwidth_mode: Union[BandwidthMode, str] = BandwidthMode.UNWEIGHTED,
    return_gradient: bool = False,
):
    """Weighted kernel median for every row of a (cases, models) array.

    Args:
        values: Model values, shape (cases, models), NaN for missing.
        weights: Non-negative weights, shape (models,) or (cases, models).
            Defaults to equal weights.
        bandwidth_mode: Standard deviation used for the kernel width, "unweighted"
            or "weighted".
        return_gradient: Also return the derivative of each row's median with
            respect to the given weights.

    Returns:
        tuple:
            - medians, shape (cases,), NaN for degenerate rows
            - degenerate, shape (cases,), True where no value could be produced
            - gradient, shape (cases, models), only if return_gradient is set

    Raises:
        DegenerateInputError: If any weight is negative or not finite.

    """
    bandwidth_mode = BandwidthMode(bandwidth_mode)
    values, normalized, available, totals, degenerate = _prepare(values, weights)
    width, scale, sd, mean = _bandwidth(values, normalized, available, bandwidth_mode)
    kernel_rows = width > 0

    kernel, kernel_reached, segment_start, segment_end = _kernel_median(
        values, normalized, width
    )
    point_mass, point_mass_reached = _point_mass_median(values, normalized, available)

    medians = np.where(kernel_rows, kernel, point_mass)
    degenerate = degenerate | ~np.where(kernel_rows, kernel_reached, point_mass_reached)
    medians[degenerate] = np.nan
    if not return_gradient:
        return medians, degenerate

    gradient = _kernel_gradient(
        values,
        normalized,
        available,
        width,
        scale,
        sd,
        mean,
        np.where(kernel_rows, kernel, 0.0),
        segment_start,
        segment_end,
        bandwidth_mode,
    )
    # Chain rule through the per-row renormalization of the weights
    projected = gradient - (normalized * gradient).sum(axis=1)[:, None]
    safe_totals = np.where(totals > 0, totals, 1.0)[:, None]
    gradient = available * projected / safe_totals
    gradient[~kernel_rows | degenerate] = 0.0
    return medians, degenerate, gradient


def weighted_median(
    values,
    weights=None,
    bandwidth_mode: Union[BandwidthMode, str] = BandwidthMode.UNWEIGHTED,
) -> float:
    """Weighted kernel median of the values of a single case.

    Raises:
        DegenerateInputError: If weights are negative, no model has a value or the
            available weights sum to zero.

    """
    values = np.asarray(values, dtype=float).reshape(1, -1)
    if values.shape[1] == 0:
        raise DegenerateInputError("No model values to combine")
    medians, degenerate = weighted_median_rows(values, weights, bandwidth_mode)
    if degenerate[0]:
        raise DegenerateInputError(
            "Cumulative weight of the available models does not reach 0.5"
        )
    return float(medians[0])


def rectangle_width(
    values,
    weights=None,
    bandwidth_mode: Union[BandwidthMode, str] = BandwidthMode.UNWEIGHTED,
) -> np.ndarray:
    """Kernel width per row, shape (cases,)."""
    values, normalized, available, _, _ = _prepare(values, weights)
    return _bandwidth(values, normalized, available, BandwidthMode(bandwidth_mode))[0]


def weighted_cdf(
    x,
    values,
    weights=None,
    bandwidth_mode: Union[BandwidthMode, str] = BandwidthMode.UNWEIGHTED,
    width: Optional[float] = None,
) -> np.ndarray:
    """Piecewise linear weighted CDF of the values of a single case, evaluated at x."""
    values, normalized, available, _, _ = _prepare(
        np.asarray(values, dtype=float).reshape(1, -1), weights
    )
    if width is None:
        width = _bandwidth(values, normalized, available, BandwidthMode(bandwidth_mode))[
            0
        ][0]
    x = np.atleast_1d(np.asarray(x, dtype=float))[:, None]
    if width > 0:
        ramps = np.clip((x - values + width / 2) / width, 0.0, 1.0)
    else:
        ramps = (x >= values).astype(float)
    return (ramps * normalized * available).sum(axis=1)
