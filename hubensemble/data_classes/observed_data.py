# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""Observed ground truth per location, sorted by target end date."""
from typing import Optional, Union

import numpy as np
import pandas as pd

from hubensemble.exceptions import SchemaError

DateLike = Union[str, pd.Timestamp, np.datetime64]


class ObservedData:
    """Lookup of observed values by location and date.

    Observations with a missing value are dropped on construction, so trailing
    windows only count actual observations.
    """

    def __init__(self, series_by_location: dict[str, pd.Series]):
        self._series_by_location = {
            location: series.sort_index() for location, series in series_by_location.items()
        }

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        location_col: str = "location",
        date_col: str = "target_end_date",
        value_col: str = "observed",
    ) -> "ObservedData":
        """Create the lookup from a long dataframe with one row per (location, date).

        Raises:
            SchemaError: If columns are missing or a (location, date) pair occurs twice.

        """
        missing_columns = [
            col for col in [location_col, date_col, value_col] if col not in df.columns
        ]
        if missing_columns:
            raise SchemaError(f"Observed data misses columns: {missing_columns}")

        df = df[[location_col, date_col, value_col]].copy()
        df[date_col] = pd.to_datetime(df[date_col])
        if df.duplicated(subset=[location_col, date_col]).any():
            raise SchemaError(
                "Observed data should contain a single value per location and date"
            )
        df = df.dropna(subset=[value_col])

        return cls(
            {
                location: group.set_index(date_col)[value_col].astype(float)
                for location, group in df.groupby(location_col, sort=True)
            }
        )

    def locations(self) -> list:
        return list(self._series_by_location)

    def series(self, location) -> pd.Series:
        """All observations of a location indexed by date, empty if unknown."""
        series = self._series_by_location.get(location)
        if series is None:
            return pd.Series(dtype=float, index=pd.DatetimeIndex([]))
        return series.copy()

    def trailing(
        self, location, n: int, as_of: Optional[DateLike] = None
    ) -> pd.Series:
        """Last ``n`` observations on or before ``as_of``.

        Fewer than ``n`` observations are returned when the history is shorter.
        """
        series = self.series(location)
        if as_of is not None:
            series = series.loc[series.index <= pd.Timestamp(as_of)]
        if n <= 0:
            return series.iloc[0:0]
        return series.iloc[-n:]

    def most_recent(self, location, as_of: Optional[DateLike] = None) -> float:
        """Latest observation on or before ``as_of``, NaN if there is none."""
        series = self.trailing(location, 1, as_of=as_of)
        if series.empty:
            return np.nan
        return float(series.iloc[-1])
