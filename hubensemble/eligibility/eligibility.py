# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""Combine the separate eligibility checks into a single verdict per (location, model)."""
from functools import reduce
from typing import Optional, Union

import numpy as np
import pandas as pd

from hubensemble.data_classes.observed_data import ObservedData
from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.enums import EligibilityReason, SdCheckMode
from hubensemble.eligibility.missingness import calc_forecast_missingness
from hubensemble.eligibility.nondecreasing import calc_nondecreasing_quantile_check
from hubensemble.eligibility.q10 import calc_q10_check
from hubensemble.eligibility.sd import calc_sd_check
from hubensemble.eligibility.utils import as_observed_data
from hubensemble.logging.logger_factory import get_logger

ELIGIBLE = EligibilityReason.ELIGIBLE.value


def calc_model_eligibility(
    qfm: QuantileForecastMatrix,
    observed_by_location_target_end_date: Union[pd.DataFrame, ObservedData, None] = None,
    window_size: Optional[int] = None,
    do_q10_check: bool = True,
    do_nondecreasing_quantile_check: bool = True,
    do_sd_check: Union[SdCheckMode, str, None] = SdCheckMode.EXCLUDE_BELOW,
    location_col: str = "location",
    forecast_date_col: str = "forecast_week_end_date",
    target_col: str = "target",
    **sd_check_kwargs,
) -> pd.DataFrame:
    """Run the selected eligibility checks and intersect their verdicts.

    The missingness check is always run. A (location, model) is eligible overall
    only if every check marks it eligible.

    Args:
        qfm: Quantile forecasts for the current round.
        observed_by_location_target_end_date: Observed values, required by the q10
            and sd checks.
        window_size: Window of the missingness check.
        do_q10_check: Whether to run the q10 check.
        do_nondecreasing_quantile_check: Whether to run the nondecreasing quantiles check.
        do_sd_check: None to skip the sd check, otherwise "exclude_below",
            "exclude_above" or "exclude_both".
        location_col: Name of the location id column.
        forecast_date_col: Name of the forecast date id column.
        target_col: Name of the target id column.
        **sd_check_kwargs: ``n_back_sd``, ``n_back_mean`` and ``n_sd`` passed to the sd check.

    Returns:
        One row per (location, model) with a column per check and
        ``overall_eligibility``, which is "eligible" or the failure reasons joined
        by "; ".

    Raises:
        ValueError: If a check needing observations is requested without them.

    """
    logger = get_logger(__name__)
    do_sd_check = SdCheckMode(do_sd_check) if do_sd_check is not None else None
    if (do_q10_check or do_sd_check is not None) and (
        observed_by_location_target_end_date is None
    ):
        raise ValueError("The q10 and sd checks require observed data")
    observed = (
        as_observed_data(observed_by_location_target_end_date, location_col)
        if observed_by_location_target_end_date is not None
        else None
    )
    target_kwargs = dict(
        location_col=location_col,
        forecast_date_col=forecast_date_col,
        target_col=target_col,
    )

    verdict_tables = [
        calc_forecast_missingness(
            qfm,
            window_size=window_size,
            location_col=location_col,
            forecast_date_col=forecast_date_col,
        )
    ]
    if do_q10_check:
        verdict_tables.append(calc_q10_check(qfm, observed, **target_kwargs))
    if do_nondecreasing_quantile_check:
        verdict_tables.append(
            calc_nondecreasing_quantile_check(qfm, **target_kwargs)
        )
    if do_sd_check is not None:
        verdict_tables.append(
            _calc_sd_checks(
                qfm, observed, do_sd_check, target_kwargs, sd_check_kwargs
            )
        )

    keys = [location_col, qfm.model_col]
    eligibility = reduce(
        lambda left, right: pd.merge(left, right, on=keys, how="outer"),
        verdict_tables,
    )
    eligibility = eligibility.sort_values(keys).reset_index(drop=True)
    check_columns = [col for col in eligibility.columns if col not in keys]
    eligibility[check_columns] = eligibility[check_columns].fillna(ELIGIBLE)
    eligibility["overall_eligibility"] = [
        "; ".join(reason for reason in row if reason != ELIGIBLE) or ELIGIBLE
        for row in eligibility[check_columns].itertuples(index=False, name=None)
    ]

    logger.info(
        "Calculated model eligibility",
        checks=check_columns,
        n_pairs=len(eligibility),
        n_ineligible=int((eligibility["overall_eligibility"] != ELIGIBLE).sum()),
    )
    return eligibility


def _calc_sd_checks(
    qfm: QuantileForecastMatrix,
    observed: ObservedData,
    mode: SdCheckMode,
    target_kwargs: dict,
    sd_check_kwargs: dict,
) -> pd.DataFrame:
    if mode == SdCheckMode.EXCLUDE_BELOW:
        return calc_sd_check(
            qfm, observed, exclude_above=False, **target_kwargs, **sd_check_kwargs
        )
    if mode == SdCheckMode.EXCLUDE_ABOVE:
        return calc_sd_check(
            qfm, observed, exclude_above=True, **target_kwargs, **sd_check_kwargs
        )

    below = calc_sd_check(
        qfm, observed, exclude_above=False, **target_kwargs, **sd_check_kwargs
    )
    above = calc_sd_check(
        qfm, observed, exclude_above=True, **target_kwargs, **sd_check_kwargs
    )
    # Both tables share the (location, model) grid and order
    below["sd_eligibility"] = np.where(
        below["sd_eligibility"] == ELIGIBLE,
        above["sd_eligibility"],
        below["sd_eligibility"],
    )
    return below


def get_eligible_models(
    eligibility: pd.DataFrame,
    location_col: str = "location",
    model_col: str = "model",
) -> dict:
    """Eligible model names per location, from the output of calc_model_eligibility."""
    eligible = eligibility.loc[eligibility["overall_eligibility"] == ELIGIBLE]
    models_by_location = {
        location: [] for location in eligibility[location_col].unique()
    }
    for location, model in zip(eligible[location_col], eligible[model_col]):
        models_by_location[location].append(model)
    return models_by_location


def apply_eligibility(
    qfm: QuantileForecastMatrix,
    eligibility: pd.DataFrame,
    location_col: str = "location",
) -> QuantileForecastMatrix:
    """Mark all cells of ineligible (location, model) pairs as missing.

    Pairs without a verdict are treated as ineligible.
    """
    models_by_location = get_eligible_models(
        eligibility, location_col=location_col, model_col=qfm.model_col
    )
    models = qfm.models()
    eligible = np.array(
        [
            [model in models_by_location.get(location, []) for model in models]
            for location in qfm.cases[location_col]
        ],
        dtype=bool,
    ).reshape(len(qfm), len(models))

    values = qfm.to_numpy()
    values[~eligible] = np.nan
    return QuantileForecastMatrix(
        cases=qfm.cases,
        models=models,
        quantile_levels=qfm.quantile_levels(),
        values=values,
        model_col=qfm.model_col,
        quantile_name_col=qfm.quantile_name_col,
        quantile_value_col=qfm.quantile_value_col,
    )
