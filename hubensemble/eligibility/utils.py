# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""Helpers shared by the eligibility checks."""
import re
from typing import Iterable

import numpy as np
import pandas as pd

from hubensemble.data_classes.observed_data import ObservedData
from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.enums import EligibilityReason
from hubensemble.exceptions import SchemaError

TARGET_PATTERN = re.compile(r"^\s*(\d+)\s+(day|wk)\s+ahead\s+(.+?)\s*$")
DAYS_PER_UNIT = {"day": 1, "wk": 7}


def parse_target(target: str) -> tuple[int, str, str]:
    """Split a hub target string into horizon, unit and quantity.

    Example:
        >>> parse_target("2 wk ahead cum death")
        (2, 'wk', 'cum death')

    Raises:
        SchemaError: If the target does not follow "<horizon> <day|wk> ahead <quantity>".

    """
    match = TARGET_PATTERN.match(str(target))
    if match is None:
        raise SchemaError(
            f"Target '{target}' does not follow the format '<horizon> <day|wk> ahead <quantity>'"
        )
    horizon, unit, quantity = match.groups()
    return int(horizon), unit, quantity


def calc_target_end_date(forecast_date, target: str) -> pd.Timestamp:
    """Date a target refers to, ``horizon`` days or weeks after the forecast date."""
    horizon, unit, _ = parse_target(target)
    return pd.Timestamp(forecast_date) + pd.Timedelta(days=horizon * DAYS_PER_UNIT[unit])


def require_columns(qfm: QuantileForecastMatrix, columns: Iterable[str]) -> None:
    missing_columns = [col for col in columns if col not in qfm.id_cols]
    if missing_columns:
        raise SchemaError(
            f"Quantile forecast matrix misses id columns {missing_columns},"
            f" available: {qfm.id_cols}"
        )


def quantile_level_index(qfm: QuantileForecastMatrix, quantile_level: float) -> int:
    levels = np.asarray(qfm.quantile_levels())
    index = np.flatnonzero(np.isclose(levels, quantile_level, rtol=0, atol=1e-9))
    if len(index) == 0:
        raise SchemaError(
            f"Quantile forecast matrix has no quantile level {quantile_level},"
            f" available: {qfm.quantile_levels()}"
        )
    return int(index[0])


def add_target_info(
    cases: pd.DataFrame, forecast_date_col: str, target_col: str
) -> pd.DataFrame:
    """Add forecast date, horizon, quantity and target end date to a case frame.

    Adds the columns ``forecast_date`` (as timestamp), ``horizon``,
    ``target_quantity`` and ``target_end_date``.
    """
    cases = cases.copy()
    parsed = [parse_target(target) for target in cases[target_col]]
    cases["forecast_date"] = pd.to_datetime(cases[forecast_date_col])
    cases["horizon"] = [horizon for horizon, _, _ in parsed]
    cases["target_quantity"] = [quantity for _, _, quantity in parsed]
    cases["target_end_date"] = cases["forecast_date"] + pd.to_timedelta(
        [horizon * DAYS_PER_UNIT[unit] for horizon, unit, _ in parsed], unit="D"
    )
    return cases


def build_verdict_table(
    qfm: QuantileForecastMatrix,
    location_col: str,
    status_col: str,
    ineligible: dict[tuple, str],
) -> pd.DataFrame:
    """Verdict per (location, model), sorted by location and model.

    Args:
        qfm: Matrix the verdicts belong to, it defines the (location, model) grid.
        location_col: Name of the location column.
        status_col: Name of the status column.
        ineligible: Reason per failing (location, model), all other pairs are eligible.

    """
    locations = sorted(qfm.cases[location_col].unique())
    models = sorted(qfm.models())
    verdicts = pd.DataFrame(
        [(location, model) for location in locations for model in models],
        columns=[location_col, qfm.model_col],
    )
    verdicts[status_col] = [
        ineligible.get((location, model), EligibilityReason.ELIGIBLE.value)
        for location, model in zip(verdicts[location_col], verdicts[qfm.model_col])
    ]
    return verdicts


def as_observed_data(
    observed, location_col: str = "location", date_col: str = "target_end_date"
) -> ObservedData:
    """Accept observed values either as lookup or as long dataframe."""
    if isinstance(observed, ObservedData):
        return observed
    return ObservedData.from_frame(
        observed, location_col=location_col, date_col=date_col, value_col="observed"
    )
