# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
from typing import Optional

import numpy as np
import pandas as pd

from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.enums import EligibilityReason
from hubensemble.eligibility.utils import build_verdict_table, require_columns
from hubensemble.logging.logger_factory import get_logger


def calc_forecast_missingness(
    qfm: QuantileForecastMatrix,
    window_size: Optional[int] = None,
    location_col: str = "location",
    forecast_date_col: str = "forecast_week_end_date",
) -> pd.DataFrame:
    """Flag models that miss any quantile forecast in the recent forecast dates.

    For each location the distinct forecast dates are ordered in time and the most
    recent ``window_size + 1`` of them form the window. A single missing cell of a
    model within the window makes the (location, model) ineligible. If fewer
    forecast dates are available, all of them form the window.

    Args:
        qfm: Quantile forecasts with at least a location and a forecast date id column.
        window_size: Number of forecast dates before the most recent one to check.
            ``0`` checks the most recent forecast date only, ``None`` checks every
            forecast date in the matrix.
        location_col: Name of the location id column.
        forecast_date_col: Name of the forecast date id column.

    Returns:
        Dataframe with columns location, model and ``missingness_eligibility``.

    Raises:
        SchemaError: If the id columns are missing.
        ValueError: If window_size is negative.

    """
    logger = get_logger(__name__)
    require_columns(qfm, [location_col, forecast_date_col])
    if window_size is not None and window_size < 0:
        raise ValueError(f"window_size should be non-negative, got {window_size}")

    cases = qfm.cases
    forecast_dates = pd.to_datetime(cases[forecast_date_col])
    # (cases, models): any quantile level missing
    missing_by_case = np.isnan(qfm.to_numpy()).any(axis=2)
    models = qfm.models()

    ineligible = {}
    for location, case_index in cases.groupby(location_col, sort=True).indices.items():
        dates = forecast_dates.iloc[case_index]
        window_dates = np.sort(dates.unique())
        if window_size is not None:
            if len(window_dates) < window_size + 1:
                logger.debug(
                    "Fewer forecast dates than window, using available dates",
                    location=location,
                    window_size=window_size,
                    available=len(window_dates),
                )
            window_dates = window_dates[-(window_size + 1) :]
        in_window = case_index[dates.isin(window_dates).to_numpy()]
        any_missing = missing_by_case[in_window].any(axis=0)
        for model, missing in zip(models, any_missing):
            if missing:
                ineligible[(location, model)] = (
                    EligibilityReason.MISSING_FORECASTS.value
                )

    logger.info(
        "Calculated forecast missingness eligibility",
        window_size=window_size,
        n_ineligible=len(ineligible),
    )
    return build_verdict_table(
        qfm, location_col, "missingness_eligibility", ineligible
    )
