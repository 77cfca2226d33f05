# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
from typing import Iterable, Optional, Sequence, Union

import pandas as pd

from hubensemble.data_classes.observed_data import ObservedData
from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.enums import BandwidthMode, SdCheckMode
from hubensemble.eligibility.eligibility import apply_eligibility, calc_model_eligibility
from hubensemble.logging.logger_factory import get_logger
from hubensemble.model.combiners.weighted_median_combiner import (
    Weights,
    combine,
    fit_weights,
)


def create_ensemble_forecast_pipeline(
    qfm: QuantileForecastMatrix,
    observed_by_location_target_end_date: Union[pd.DataFrame, ObservedData, None],
    candidate_models: Optional[Iterable[str]] = None,
    weights: Weights = None,
    train_qfm: Optional[QuantileForecastMatrix] = None,
    train_observed=None,
    quantile_groups: Optional[Sequence[Sequence[float]]] = None,
    bandwidth_mode: Union[BandwidthMode, str, None] = None,
    sort_quantiles: bool = True,
    window_size: Optional[int] = None,
    do_q10_check: bool = True,
    do_nondecreasing_quantile_check: bool = True,
    do_sd_check: Union[SdCheckMode, str, None] = SdCheckMode.EXCLUDE_BELOW,
    location_col: str = "location",
    forecast_date_col: str = "forecast_week_end_date",
    target_col: str = "target",
    **sd_check_kwargs,
) -> tuple[QuantileForecastMatrix, pd.DataFrame]:
    """Create the ensemble forecast of one forecasting round.

    Steps:
    1. Restrict the forecasts to the candidate models.
    2. Run the eligibility checks and mark forecasts of ineligible
       (location, model) pairs as missing.
    3. If no weights are given but training forecasts are, fit the weights on them.
    4. Combine the eligible forecasts into the weighted median ensemble.

    Args:
        qfm: Quantile forecasts of the current round.
        observed_by_location_target_end_date: Observed values used by the q10 and sd checks.
        candidate_models: Names of the models that may be included, default all.
        weights: Weights per model, see :func:`combine`. Equal weights if neither
            weights nor training data are given.
        train_qfm: Past quantile forecasts to fit the weights on.
        train_observed: Observed values for the cases of ``train_qfm``.
        quantile_groups: Quantile levels sharing weights during the fit.
        bandwidth_mode: Kernel width mode of the combiner.
        sort_quantiles: Sort the ensemble quantiles of each case.
        window_size: Window of the missingness check.
        do_q10_check: Whether to run the q10 check.
        do_nondecreasing_quantile_check: Whether to run the nondecreasing quantiles check.
        do_sd_check: Mode of the sd check, None to skip it.
        location_col: Name of the location id column.
        forecast_date_col: Name of the forecast date id column.
        target_col: Name of the target id column.
        **sd_check_kwargs: Parameters of the sd check.

    Returns:
        tuple:
            - Ensemble quantile forecasts, a single model named "ensemble"
            - Eligibility per (location, model)

    """
    logger = get_logger(__name__).bind(n_cases=len(qfm))

    if candidate_models is not None:
        candidate_models = set(candidate_models)
        qfm = qfm.filter_models([m for m in qfm.models() if m in candidate_models])
        logger.info("Restricted forecasts to candidate models", n_models=len(qfm.models()))

    eligibility = calc_model_eligibility(
        qfm,
        observed_by_location_target_end_date,
        window_size=window_size,
        do_q10_check=do_q10_check,
        do_nondecreasing_quantile_check=do_nondecreasing_quantile_check,
        do_sd_check=do_sd_check,
        location_col=location_col,
        forecast_date_col=forecast_date_col,
        target_col=target_col,
        **sd_check_kwargs,
    )
    eligible_qfm = apply_eligibility(qfm, eligibility, location_col=location_col)

    if weights is None and train_qfm is not None:
        train_models = [m for m in qfm.models() if m in train_qfm.models()]
        untrained = [m for m in qfm.models() if m not in train_models]
        if untrained:
            logger.warning(
                "Models without training forecasts are left out of the ensemble",
                models=untrained,
            )
            eligible_qfm = eligible_qfm.filter_models(train_models)
        weights = fit_weights(
            train_qfm.filter_models(train_models),
            train_observed,
            quantile_groups=quantile_groups,
            bandwidth_mode=bandwidth_mode,
        ).weights

    ensemble = combine(
        eligible_qfm,
        weights=weights,
        bandwidth_mode=bandwidth_mode,
        sort_quantiles=sort_quantiles,
    )
    logger.info("Created ensemble forecast", n_models=len(eligible_qfm.models()))
    return ensemble, eligibility
