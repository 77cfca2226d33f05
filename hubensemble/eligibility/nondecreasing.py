# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
import numpy as np
import pandas as pd

from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.enums import EligibilityReason
from hubensemble.eligibility.utils import (
    add_target_info,
    build_verdict_table,
    require_columns,
)
from hubensemble.logging.logger_factory import get_logger


def calc_nondecreasing_quantile_check(
    qfm: QuantileForecastMatrix,
    location_col: str = "location",
    forecast_date_col: str = "forecast_week_end_date",
    target_col: str = "target",
) -> pd.DataFrame:
    """Flag models whose quantiles decrease with increasing horizon.

    Targets of one location, forecast date and target quantity are ordered by
    target end date. Any strict decrease between consecutive horizons at any
    quantile level makes the (location, model) ineligible. Missing cells are
    ignored.

    Returns:
        Dataframe with columns location, model and
        ``nondecreasing_quantiles_eligibility``.

    Raises:
        SchemaError: If id columns are missing or a target can not be parsed.

    """
    logger = get_logger(__name__)
    require_columns(qfm, [location_col, forecast_date_col, target_col])
    values = qfm.to_numpy()
    cases = add_target_info(qfm.cases, forecast_date_col, target_col)
    models = qfm.models()

    ineligible = {}
    for (location, _, _), group in cases.groupby(
        [location_col, "forecast_date", "target_quantity"], sort=True
    ):
        by_horizon = group.sort_values("target_end_date", kind="stable").index.to_numpy()
        # (horizons - 1, models, quantile levels), NaN differences compare False
        differences = np.diff(values[by_horizon], axis=0)
        decreasing = (differences < 0).any(axis=(0, 2))
        for model, decrease in zip(models, decreasing):
            if decrease:
                ineligible[(location, model)] = (
                    EligibilityReason.DECREASING_QUANTILES.value
                )

    logger.info(
        "Calculated nondecreasing quantiles eligibility", n_ineligible=len(ineligible)
    )
    return build_verdict_table(
        qfm, location_col, "nondecreasing_quantiles_eligibility", ineligible
    )
