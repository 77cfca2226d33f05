# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""Dense (case x model x quantile level) representation of quantile forecasts.

A case is a unique combination of the identifying columns supplied by the caller,
for instance ``(location, forecast_week_end_date, target)``. Every
(case, model, quantile level) triple maps to exactly one cell of the value grid.
Cells that do not appear in the source records hold ``NaN``, the missing marker,
and are never imputed.

Example:
    >>> qfm = QuantileForecastMatrix.build(
    ...     forecast_df,
    ...     model_col="model",
    ...     id_cols=["location", "forecast_week_end_date"],
    ...     quantile_name_col="q_prob",
    ...     quantile_value_col="q_val",
    ... )
    >>> qfm.filter(lambda cases: cases["location"] == "b").models()

"""
from typing import Any, Callable, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from hubensemble.exceptions import SchemaError

# Quantile levels are rounded to this number of decimals so that levels parsed
# from text (e.g. "0.025") match levels computed in code.
QUANTILE_LEVEL_DECIMALS = 10

CasePredicate = Union[Callable[[pd.DataFrame], Any], Sequence[bool], np.ndarray]


class QuantileForecastMatrix:
    """Read-only quantile forecasts of several models for a set of cases."""

    def __init__(
        self,
        cases: pd.DataFrame,
        models: Sequence[str],
        quantile_levels: Sequence[float],
        values: np.ndarray,
        model_col: str = "model",
        quantile_name_col: str = "quantile",
        quantile_value_col: str = "value",
    ):
        values = np.array(values, dtype=float)
        expected_shape = (len(cases), len(models), len(quantile_levels))
        if values.shape != expected_shape:
            raise SchemaError(
                f"Value grid has shape {values.shape}, expected {expected_shape}"
            )
        quantile_levels = np.round(
            np.asarray(quantile_levels, dtype=float), QUANTILE_LEVEL_DECIMALS
        )
        if len(quantile_levels) > 1 and np.any(np.diff(quantile_levels) <= 0):
            raise SchemaError("Quantile levels should be strictly increasing")
        if len(set(models)) != len(models):
            raise SchemaError("Model names should be unique")

        self._cases = cases.reset_index(drop=True).copy()
        self._models = list(models)
        self._quantile_levels = quantile_levels
        self._quantile_levels.setflags(write=False)
        self._values = values
        self._values.setflags(write=False)
        self.model_col = model_col
        self.quantile_name_col = quantile_name_col
        self.quantile_value_col = quantile_value_col
        self._case_lookup = None

    @classmethod
    def build(
        cls,
        records: Union[pd.DataFrame, Iterable[dict]],
        model_col: str,
        id_cols: Sequence[str],
        quantile_name_col: str,
        quantile_value_col: str,
        allow_missing_quantiles: bool = False,
    ) -> "QuantileForecastMatrix":
        """Build a matrix from long-format forecast records.

        Records are grouped by the id columns and the model column, the quantile
        level column is pivoted into the quantile axis.

        Args:
            records: Dataframe or iterable of mappings, one row per
                (case, model, quantile level).
            model_col: Column holding the model name.
            id_cols: Columns that jointly identify a case.
            quantile_name_col: Column holding the quantile level, a probability in (0, 1).
            quantile_value_col: Column holding the quantile value, NaN for missing.
            allow_missing_quantiles: If True, (case, model) groups that report a
                different set of quantile levels are pivot-filled with missing
                values instead of being rejected.

        Returns:
            The quantile forecast matrix.

        Raises:
            SchemaError: If required columns are absent, values are not numeric,
                quantile levels fall outside (0, 1), an (id, model, quantile level)
                combination occurs more than once or quantile level sets differ
                across groups.

        """
        df = records if isinstance(records, pd.DataFrame) else pd.DataFrame(records)
        id_cols = list(id_cols)
        if len(id_cols) == 0:
            raise SchemaError("At least one id column is required")
        required_columns = id_cols + [model_col, quantile_name_col, quantile_value_col]
        missing_columns = [col for col in required_columns if col not in df.columns]
        if missing_columns:
            raise SchemaError(f"Forecast records miss columns: {missing_columns}")

        df = df[required_columns].copy()
        try:
            df[quantile_name_col] = np.round(
                df[quantile_name_col].astype(float), QUANTILE_LEVEL_DECIMALS
            )
            df[quantile_value_col] = pd.to_numeric(
                df[quantile_value_col], errors="raise"
            ).astype(float)
        except (TypeError, ValueError) as e:
            raise SchemaError(
                "Quantile levels and quantile values should be numeric"
            ) from e

        levels = df[quantile_name_col]
        if levels.isna().any() or ((levels <= 0) | (levels >= 1)).any():
            raise SchemaError("Quantile levels should lie strictly between 0 and 1")

        key_cols = id_cols + [model_col]
        duplicated = df.duplicated(subset=key_cols + [quantile_name_col])
        if duplicated.any():
            raise SchemaError(
                f"Found {duplicated.sum()} duplicated combinations of"
                f" {key_cols + [quantile_name_col]}, id columns should identify a"
                " unique case per model"
            )

        if not allow_missing_quantiles and len(df) > 0:
            level_sets = df.groupby(key_cols, sort=False, dropna=False)[
                quantile_name_col
            ].agg(lambda s: tuple(sorted(s)))
            if level_sets.nunique() > 1:
                raise SchemaError(
                    "Quantile levels differ across (case, model) groups, found"
                    f" {level_sets.nunique()} distinct sets"
                )

        cases = df[id_cols].drop_duplicates().reset_index(drop=True)
        case_codes = df.groupby(id_cols, sort=False, dropna=False).ngroup().to_numpy()
        model_codes, models = pd.factorize(df[model_col])
        quantile_levels = np.sort(df[quantile_name_col].unique())
        level_codes = np.searchsorted(quantile_levels, df[quantile_name_col].to_numpy())

        values = np.full((len(cases), len(models), len(quantile_levels)), np.nan)
        values[case_codes, model_codes, level_codes] = df[quantile_value_col].to_numpy()

        return cls(
            cases=cases,
            models=list(models),
            quantile_levels=quantile_levels,
            values=values,
            model_col=model_col,
            quantile_name_col=quantile_name_col,
            quantile_value_col=quantile_value_col,
        )

    @property
    def id_cols(self) -> list[str]:
        return list(self._cases.columns)

    @property
    def cases(self) -> pd.DataFrame:
        """Case keys as a dataframe with one column per id column, in case order."""
        return self._cases.copy()

    @property
    def shape(self) -> tuple[int, int, int]:
        return self._values.shape

    def case_keys(self) -> list[tuple]:
        return list(self._cases.itertuples(index=False, name=None))

    def models(self) -> list[str]:
        return list(self._models)

    def quantile_levels(self) -> list[float]:
        return self._quantile_levels.tolist()

    def to_numpy(self) -> np.ndarray:
        """Copy of the value grid with shape (cases, models, quantile levels)."""
        return self._values.copy()

    def model_values(self, model: str) -> pd.DataFrame:
        """Values of a single model, one row per case and one column per quantile level."""
        return pd.DataFrame(
            self._values[:, self._model_index(model), :],
            columns=self.quantile_levels(),
        )

    def values_for(self, case_key: Any, model: str, quantile_level: float) -> float:
        """Look up a single cell.

        Args:
            case_key: Tuple of id column values in id column order, a mapping from
                id column to value, or a scalar if there is a single id column.
            model: Model name.
            quantile_level: Quantile level.

        Returns:
            The quantile value, NaN if the cell is missing or not addressable.

        """
        if self._case_lookup is None:
            self._case_lookup = {key: i for i, key in enumerate(self.case_keys())}
        if isinstance(case_key, dict):
            case_key = tuple(case_key[col] for col in self.id_cols)
        elif not isinstance(case_key, tuple):
            case_key = (case_key,)

        case_index = self._case_lookup.get(case_key)
        if case_index is None or model not in self._models:
            return np.nan
        level_index = np.flatnonzero(
            np.isclose(self._quantile_levels, quantile_level, rtol=0, atol=1e-9)
        )
        if len(level_index) == 0:
            return np.nan
        return float(self._values[case_index, self._models.index(model), level_index[0]])

    def filter(self, predicate: CasePredicate) -> "QuantileForecastMatrix":
        """Restrict the matrix to the cases matching a predicate.

        Args:
            predicate: Callable receiving the case dataframe and returning a boolean
                mask, or the boolean mask itself.

        Returns:
            New matrix holding the matching cases in their original order.

        """
        mask = predicate(self.cases) if callable(predicate) else predicate
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self._cases),):
            raise ValueError(
                f"Case mask has shape {mask.shape}, expected ({len(self._cases)},)"
            )
        return self._copy(
            cases=self._cases.loc[mask], values=self._values[mask, :, :]
        )

    def filter_models(self, models: Iterable[str]) -> "QuantileForecastMatrix":
        """Restrict the matrix to a subset of models, keeping the matrix model order.

        Raises:
            KeyError: If a requested model is not present.

        """
        models = set(models)
        unknown = models - set(self._models)
        if unknown:
            raise KeyError(f"Unknown models: {sorted(unknown)}")
        keep = [i for i, model in enumerate(self._models) if model in models]
        return self._copy(
            models=[self._models[i] for i in keep], values=self._values[:, keep, :]
        )

    def filter_quantile_levels(
        self, quantile_levels: Iterable[float]
    ) -> "QuantileForecastMatrix":
        """Restrict the matrix to a subset of quantile levels.

        Raises:
            KeyError: If a requested quantile level is not present.

        """
        keep = []
        for level in quantile_levels:
            index = np.flatnonzero(
                np.isclose(self._quantile_levels, level, rtol=0, atol=1e-9)
            )
            if len(index) == 0:
                raise KeyError(f"Unknown quantile level: {level}")
            keep.append(index[0])
        keep = sorted(set(keep))
        return self._copy(
            quantile_levels=self._quantile_levels[keep],
            values=self._values[:, :, keep],
        )

    def to_frame(self) -> pd.DataFrame:
        """Long-format records, one row per cell including missing cells."""
        n_cases, n_models, n_levels = self._values.shape
        df = self._cases.loc[np.repeat(np.arange(n_cases), n_models * n_levels)]
        df = df.reset_index(drop=True)
        df[self.model_col] = np.tile(np.repeat(self._models, n_levels), n_cases)
        df[self.quantile_name_col] = np.tile(self._quantile_levels, n_cases * n_models)
        df[self.quantile_value_col] = self._values.reshape(-1)
        return df

    def _model_index(self, model: str) -> int:
        try:
            return self._models.index(model)
        except ValueError:
            raise KeyError(f"Unknown model: {model}") from None

    def _copy(
        self,
        cases: Optional[pd.DataFrame] = None,
        models: Optional[Sequence[str]] = None,
        quantile_levels: Optional[np.ndarray] = None,
        values: Optional[np.ndarray] = None,
    ) -> "QuantileForecastMatrix":
        return QuantileForecastMatrix(
            cases=self._cases if cases is None else cases,
            models=self._models if models is None else models,
            quantile_levels=(
                self._quantile_levels if quantile_levels is None else quantile_levels
            ),
            values=self._values if values is None else values,
            model_col=self.model_col,
            quantile_name_col=self.quantile_name_col,
            quantile_value_col=self.quantile_value_col,
        )

    def __len__(self) -> int:
        return len(self._cases)

    def __repr__(self) -> str:
        n_cases, n_models, n_levels = self._values.shape
        return (
            f"{type(self).__name__}(cases={n_cases}, models={n_models},"
            f" quantile_levels={n_levels}, id_cols={self.id_cols})"
        )
