# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
from typing import Union

import numpy as np
import pandas as pd

from hubensemble.data_classes.observed_data import ObservedData
from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.enums import EligibilityReason
from hubensemble.eligibility.utils import (
    add_target_info,
    as_observed_data,
    build_verdict_table,
    quantile_level_index,
    require_columns,
)
from hubensemble.logging.logger_factory import get_logger


def calc_q10_check(
    qfm: QuantileForecastMatrix,
    observed_by_location_target_end_date: Union[pd.DataFrame, ObservedData],
    location_col: str = "location",
    forecast_date_col: str = "forecast_week_end_date",
    target_col: str = "target",
) -> pd.DataFrame:
    """Flag models whose 0.1 quantile at the shortest horizon is below the last observation.

    For every location and forecast date the targets with the nearest target end
    date are selected. If a model's 0.1 quantile for such a target is strictly
    less than the latest observation on or before the forecast date, the
    (location, model) is ineligible. Forecast dates without any prior observation
    are skipped.

    Args:
        qfm: Quantile forecasts with location, forecast date and target id columns
            and a 0.1 quantile level.
        observed_by_location_target_end_date: Observed values, either as lookup or as
            dataframe with columns location, target_end_date and observed.
        location_col: Name of the location id column.
        forecast_date_col: Name of the forecast date id column.
        target_col: Name of the target id column, e.g. "1 wk ahead cum death".

    Returns:
        Dataframe with columns location, model and ``q10_eligibility``.

    Raises:
        SchemaError: If id columns or the 0.1 quantile level are missing or a target
            can not be parsed.

    """
    logger = get_logger(__name__)
    require_columns(qfm, [location_col, forecast_date_col, target_col])
    q10_values = qfm.to_numpy()[:, :, quantile_level_index(qfm, 0.1)]
    observed = as_observed_data(observed_by_location_target_end_date, location_col)
    cases = add_target_info(qfm.cases, forecast_date_col, target_col)
    models = qfm.models()

    ineligible = {}
    for (location, forecast_date), group in cases.groupby(
        [location_col, "forecast_date"], sort=True
    ):
        most_recent = observed.most_recent(location, as_of=forecast_date)
        if np.isnan(most_recent):
            logger.warning(
                "No observation on or before forecast date, skipping q10 check",
                location=location,
                forecast_date=str(forecast_date.date()),
            )
            continue

        first_horizon = group.index.to_numpy()[
            (group["target_end_date"] == group["target_end_date"].min()).to_numpy()
        ]
        below_observed = (q10_values[first_horizon] < most_recent).any(axis=0)
        for model, below in zip(models, below_observed):
            if below:
                ineligible[(location, model)] = (
                    EligibilityReason.Q10_BELOW_OBSERVED.value
                )

    logger.info("Calculated q10 eligibility", n_ineligible=len(ineligible))
    return build_verdict_table(qfm, location_col, "q10_eligibility", ineligible)
