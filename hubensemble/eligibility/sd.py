# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
from typing import Optional, Union

import numpy as np
import pandas as pd

from hubensemble.data_classes.observed_data import ObservedData
from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.eligibility.utils import (
    add_target_info,
    as_observed_data,
    build_verdict_table,
    quantile_level_index,
    require_columns,
)
from hubensemble.exceptions import InsufficientHistoryError
from hubensemble.logging.logger_factory import get_logger
from hubensemble.settings import Settings

# Forecast means and cutoffs are compared at this precision, so that forecasts
# sitting exactly on the cutoff are not excluded because of rounding noise.
COMPARISON_DECIMALS = 8


def sd_check_reason(
    n_back_sd: int, n_back_mean: int, n_sd: int, exclude_above: bool
) -> str:
    direction = "above" if exclude_above else "below"
    return (
        f"mean of next {n_back_mean} forecasted medians more than {n_sd} times"
        f" {n_back_sd}day SD {direction} mean of last {n_back_mean} observations"
    )


def calc_sd_check(
    qfm: QuantileForecastMatrix,
    observed_by_location_target_end_date: Union[pd.DataFrame, ObservedData],
    n_back_sd: Optional[int] = None,
    n_back_mean: Optional[int] = None,
    n_sd: Optional[int] = None,
    exclude_above: bool = False,
    require_full_history: bool = False,
    location_col: str = "location",
    forecast_date_col: str = "forecast_week_end_date",
    target_col: str = "target",
) -> pd.DataFrame:
    """Flag models whose near-term median trajectory is far from the recent observations.

    Steps, per location, forecast date and target quantity:
    1. Take the standard deviation of the last ``n_back_sd`` observations and the
       mean of the last ``n_back_mean`` observations on or before the forecast date.
    2. Average each model's median forecasts over the first ``n_back_mean`` horizons.
    3. Mark the model ineligible if that average is strictly below
       ``mean - n_sd * sd`` or, when ``exclude_above`` is set, strictly above
       ``mean + n_sd * sd``.

    Shorter observation histories are used as available, at least two
    observations are needed to estimate the standard deviation.

    Args:
        qfm: Quantile forecasts with location, forecast date and target id columns
            and a 0.5 quantile level.
        observed_by_location_target_end_date: Observed values, either as lookup or as
            dataframe with columns location, target_end_date and observed.
        n_back_sd: Number of trailing observations for the standard deviation.
        n_back_mean: Number of trailing observations for the mean, and number of
            leading horizons averaged.
        n_sd: Number of standard deviations that define the cutoff.
        exclude_above: Check for forecasts far above instead of far below the
            recent observations.
        require_full_history: Raise instead of using a shorter observation history.
        location_col: Name of the location id column.
        forecast_date_col: Name of the forecast date id column.
        target_col: Name of the target id column.

    Returns:
        Dataframe with columns location, model and ``sd_eligibility``.

    Raises:
        SchemaError: If id columns or the 0.5 quantile level are missing or a target
            can not be parsed.
        InsufficientHistoryError: If require_full_history is set and fewer than
            ``n_back_sd`` observations precede a forecast date.

    """
    logger = get_logger(__name__)
    n_back_sd = Settings.sd_check_n_back_sd if n_back_sd is None else n_back_sd
    n_back_mean = Settings.sd_check_n_back_mean if n_back_mean is None else n_back_mean
    n_sd = Settings.sd_check_n_sd if n_sd is None else n_sd
    reason = sd_check_reason(n_back_sd, n_back_mean, n_sd, exclude_above)

    require_columns(qfm, [location_col, forecast_date_col, target_col])
    medians = qfm.to_numpy()[:, :, quantile_level_index(qfm, 0.5)]
    observed = as_observed_data(observed_by_location_target_end_date, location_col)
    cases = add_target_info(qfm.cases, forecast_date_col, target_col)
    models = qfm.models()

    ineligible = {}
    for (location, forecast_date, _), group in cases.groupby(
        [location_col, "forecast_date", "target_quantity"], sort=True
    ):
        recent_for_sd = observed.trailing(location, n_back_sd, as_of=forecast_date)
        recent_for_mean = observed.trailing(location, n_back_mean, as_of=forecast_date)
        if len(recent_for_sd) < n_back_sd or len(recent_for_mean) < n_back_mean:
            if require_full_history:
                raise InsufficientHistoryError(
                    location, required=n_back_sd, available=len(recent_for_sd)
                )
            logger.warning(
                "Insufficient observation history for sd check, using available",
                location=location,
                forecast_date=str(forecast_date.date()),
                available=len(recent_for_sd),
            )
        if len(recent_for_sd) < 2 or len(recent_for_mean) == 0:
            continue

        observed_sd = recent_for_sd.std(ddof=1)
        observed_mean = recent_for_mean.mean()
        if exclude_above:
            cutoff = observed_mean + n_sd * observed_sd
        else:
            cutoff = observed_mean - n_sd * observed_sd

        first_horizons = group.sort_values(
            "target_end_date", kind="stable"
        ).index.to_numpy()[:n_back_mean]
        forecast_mean = np.round(
            medians[first_horizons].mean(axis=0), COMPARISON_DECIMALS
        )
        cutoff = np.round(cutoff, COMPARISON_DECIMALS)
        if exclude_above:
            outside = forecast_mean > cutoff
        else:
            outside = forecast_mean < cutoff

        for model, is_outside in zip(models, outside):
            if is_outside:
                ineligible[(location, model)] = reason

    logger.info(
        "Calculated sd eligibility",
        exclude_above=exclude_above,
        n_ineligible=len(ineligible),
    )
    return build_verdict_table(qfm, location_col, "sd_eligibility", ineligible)
