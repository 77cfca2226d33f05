# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""This module contains the weighted median combiner.

The ensemble quantile at level tau of a case is the weighted kernel median of the
models' tau quantiles, see :mod:`hubensemble.model.combiners.weighted_median`.
Weights are fit by minimizing the mean pinball loss of the ensemble on past cases
with known observations. Weights live on the simplex through a softmax of an
unconstrained vector ``v`` of length ``M - 1``, the last coordinate being fixed
at ``-sum(v)``.
"""
import warnings
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import scipy.optimize
from sklearn.base import BaseEstimator
from sklearn.utils.validation import check_is_fitted

from hubensemble.data_classes.quantile_forecast_matrix import QuantileForecastMatrix
from hubensemble.enums import BandwidthMode
from hubensemble.exceptions import ConvergenceWarning, DegenerateInputError
from hubensemble.logging.logger_factory import get_logger
from hubensemble.metrics.metrics import get_eval_metric_function, pinball_loss
from hubensemble.model.combiners.weighted_median import weighted_median_rows
from hubensemble.settings import Settings

Weights = Union[None, pd.Series, pd.DataFrame]


@dataclass
class WeightFitResult:
    """Fitted weights and convergence diagnostics of a weight fit.

    Attributes:
        weights: Weight per model (index) and quantile level (columns).
        diagnostics: One row per group of quantile levels fit jointly, with the
            final loss, number of iterations, convergence flag and optimizer message.

    """

    weights: pd.DataFrame
    diagnostics: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def converged(self) -> bool:
        return bool(self.diagnostics["converged"].all())


def softmax_weights(parameters: np.ndarray) -> np.ndarray:
    """Map the M - 1 unconstrained parameters to M weights on the simplex."""
    full = np.append(parameters, -np.sum(parameters))
    exponent = np.exp(full - full.max())
    return exponent / exponent.sum()


def _level_positions(
    available_levels: Sequence[float], levels: Sequence[float]
) -> list[int]:
    positions = []
    for level in levels:
        match = np.flatnonzero(
            np.isclose(available_levels, level, rtol=0, atol=1e-9)
        )
        if len(match) == 0:
            raise KeyError(f"Unknown quantile level: {level}")
        positions.append(int(match[0]))
    return positions


def weights_to_array(
    weights: Weights, models: Sequence[str], quantile_levels: Sequence[float]
) -> np.ndarray:
    """Weights as array of shape (models, quantile levels).

    Args:
        weights: None for equal weights, a series indexed by model shared by all
            quantile levels, or a dataframe indexed by model with a column per
            quantile level. Models not in ``models`` are ignored.
        models: Models to get weights for, in order.
        quantile_levels: Quantile levels to get weights for, in order.

    Raises:
        KeyError: If a model or quantile level has no weight.

    """
    if weights is None:
        return np.ones((len(models), len(quantile_levels)))

    missing_models = [model for model in models if model not in weights.index]
    if missing_models:
        raise KeyError(f"No weights for models: {missing_models}")

    if isinstance(weights, pd.Series):
        column = weights.loc[list(models)].to_numpy(dtype=float)
        return np.repeat(column[:, None], len(quantile_levels), axis=1)

    columns = _level_positions(
        np.asarray(weights.columns, dtype=float), quantile_levels
    )
    return weights.loc[list(models)].iloc[:, columns].to_numpy(dtype=float)


def combine(
    qfm: QuantileForecastMatrix,
    weights: Weights = None,
    bandwidth_mode: Union[BandwidthMode, str, None] = None,
    sort_quantiles: bool = True,
    raise_on_degenerate: bool = False,
    model_name: str = "ensemble",
) -> QuantileForecastMatrix:
    """Combine the models of a quantile forecast matrix into an ensemble.

    For every case and quantile level, models with a missing value are left out
    and the weights of the remaining models are renormalized. Cases where no
    weighted value can be formed are left missing.

    Args:
        qfm: Quantile forecasts of the eligible models.
        weights: None for equal weights, a series indexed by model or a dataframe
            indexed by model with a column per quantile level.
        bandwidth_mode: "unweighted" or "weighted" standard deviation for the kernel
            width, defaults to ``Settings.combiner_bandwidth_mode``.
        sort_quantiles: Sort the ensemble quantiles of each case so they never
            cross. Each level gets its own kernel width, so the unsorted values can
            decrease with the level even when every model is monotone. Missing
            levels keep their position.
        raise_on_degenerate: Raise instead of leaving degenerate cases missing.
        model_name: Model name of the ensemble in the returned matrix.

    Returns:
        Matrix with the same cases and quantile levels and a single model.

    Raises:
        DegenerateInputError: If weights are negative, or if raise_on_degenerate is
            set and some case has no usable model values or weights.
        KeyError: If a model has no weight.

    """
    logger = get_logger(__name__)
    bandwidth_mode = BandwidthMode(
        Settings.combiner_bandwidth_mode if bandwidth_mode is None else bandwidth_mode
    )
    levels = qfm.quantile_levels()
    weight_array = weights_to_array(weights, qfm.models(), levels)
    values = qfm.to_numpy()

    ensemble = np.full((len(qfm), len(levels)), np.nan)
    degenerate = np.zeros((len(qfm), len(levels)), dtype=bool)
    for level_index in range(len(levels)):
        if len(qfm.models()) == 0:
            degenerate[:, level_index] = True
            continue
        ensemble[:, level_index], degenerate[:, level_index] = weighted_median_rows(
            values[:, :, level_index],
            weight_array[:, level_index],
            bandwidth_mode=bandwidth_mode,
        )

    if degenerate.any():
        degenerate_cases = [
            key for key, is_degenerate in zip(qfm.case_keys(), degenerate.any(axis=1))
            if is_degenerate
        ]
        if raise_on_degenerate:
            raise DegenerateInputError(
                f"No ensemble value could be formed for {len(degenerate_cases)}"
                f" cases, e.g. {degenerate_cases[:3]}"
            )
        logger.warning(
            "Ensemble values left missing for degenerate cases",
            n_cases=len(degenerate_cases),
            n_values=int(degenerate.sum()),
        )

    if sort_quantiles:
        # np.sort moves NaN to the end of each row, so both masks list the same
        # number of values per row in row order
        ordered = np.sort(ensemble, axis=1)
        ensemble[~np.isnan(ensemble)] = ordered[~np.isnan(ordered)]

    logger.debug(
        "Combined quantile forecasts",
        n_cases=len(qfm),
        n_models=len(qfm.models()),
        bandwidth_mode=bandwidth_mode.value,
    )
    return QuantileForecastMatrix(
        cases=qfm.cases,
        models=[model_name],
        quantile_levels=levels,
        values=ensemble[:, None, :],
        model_col=qfm.model_col,
        quantile_name_col=qfm.quantile_name_col,
        quantile_value_col=qfm.quantile_value_col,
    )


def _observed_per_case(qfm: QuantileForecastMatrix, observed) -> np.ndarray:
    if isinstance(observed, pd.DataFrame):
        join_cols = [col for col in qfm.id_cols if col in observed.columns]
        if not join_cols or "observed" not in observed.columns:
            raise ValueError(
                "Observed dataframe needs an 'observed' column and at least one id column"
            )
        merged = qfm.cases.merge(
            observed[join_cols + ["observed"]], on=join_cols, how="left"
        )
        if len(merged) != len(qfm):
            raise ValueError("Observed dataframe matches some cases more than once")
        return merged["observed"].to_numpy(dtype=float)

    observed = np.asarray(observed, dtype=float)
    if observed.shape != (len(qfm),):
        raise ValueError(
            f"Observed values have shape {observed.shape}, expected ({len(qfm)},)"
        )
    return observed


def _group_objective(values, observed, levels, bandwidth_mode):
    """Mean pinball loss of a group of quantile levels and its gradient in the parameters."""
    n_observations = sum(
        np.count_nonzero(~np.isnan(values[:, :, i]).all(axis=1)) for i in range(len(levels))
    )

    def objective(parameters):
        weights = softmax_weights(parameters)
        loss = 0.0
        gradient = np.zeros_like(weights)
        for level_index, level in enumerate(levels):
            medians, degenerate, dmedian_dweights = weighted_median_rows(
                values[:, :, level_index],
                weights,
                bandwidth_mode=bandwidth_mode,
                return_gradient=True,
            )
            used = ~degenerate
            loss += np.sum(pinball_loss(observed[used], medians[used], level))
            dloss_dmedian = (observed[used] < medians[used]) - level
            gradient += dloss_dmedian @ dmedian_dweights[used]

        loss /= max(n_observations, 1)
        gradient /= max(n_observations, 1)
        # Softmax jacobian, then drop the coordinate fixed by the sum constraint
        dloss_dfull = weights * (gradient - weights @ gradient)
        return loss, dloss_dfull[:-1] - dloss_dfull[-1]

    return objective


def fit_weights(
    qfm: QuantileForecastMatrix,
    observed,
    quantile_groups: Optional[Sequence[Sequence[float]]] = None,
    bandwidth_mode: Union[BandwidthMode, str, None] = None,
    max_iters: Optional[int] = None,
    tolerance: Optional[float] = None,
) -> WeightFitResult:
    """Fit model weights by minimizing the mean pinball loss of the ensemble.

    Args:
        qfm: Past quantile forecasts of the eligible models.
        observed: Observed value per case, either aligned with the cases of ``qfm``
            or a dataframe with (a subset of) the id columns and an ``observed`` column.
            Cases without an observation are not used.
        quantile_groups: Groups of quantile levels that share weights. None fits
            every quantile level separately, levels not in any group get their
            own weights.
        bandwidth_mode: "unweighted" or "weighted", defaults to
            ``Settings.combiner_bandwidth_mode``.
        max_iters: Iteration budget per group, defaults to ``Settings.combiner_max_iters``.
        tolerance: Optimizer tolerance, defaults to ``Settings.combiner_tolerance``.

    Returns:
        Fitted weights and per-group diagnostics. If the optimizer does not
        converge the best weights found are returned with ``converged`` False and a
        ConvergenceWarning is emitted.

    Raises:
        ValueError: If observed values can not be aligned, a quantile level is in
            more than one group, or the matrix has no models.
        KeyError: If a group holds an unknown quantile level.

    """
    logger = get_logger(__name__)
    bandwidth_mode = BandwidthMode(
        Settings.combiner_bandwidth_mode if bandwidth_mode is None else bandwidth_mode
    )
    max_iters = Settings.combiner_max_iters if max_iters is None else max_iters
    tolerance = Settings.combiner_tolerance if tolerance is None else tolerance

    models = qfm.models()
    levels = qfm.quantile_levels()
    if len(models) == 0:
        raise ValueError("Can not fit weights without models")

    observed = _observed_per_case(qfm, observed)
    has_observation = ~np.isnan(observed)
    values = qfm.to_numpy()[has_observation]
    observed = observed[has_observation]

    groups = [_level_positions(levels, group) for group in (quantile_groups or [])]
    grouped = [position for group in groups for position in group]
    if len(grouped) != len(set(grouped)):
        raise ValueError("A quantile level can only be part of one group")
    groups += [[position] for position in range(len(levels)) if position not in grouped]

    weights = pd.DataFrame(
        np.nan, index=pd.Index(models, name=qfm.model_col), columns=levels
    )
    diagnostics = []
    for group in groups:
        group_levels = [levels[position] for position in group]
        if len(models) == 1:
            weights.iloc[:, group] = 1.0
            diagnostics.append(
                dict(
                    quantile_levels=group_levels,
                    loss=np.nan,
                    n_iterations=0,
                    converged=True,
                    message="single model",
                )
            )
            continue

        objective = _group_objective(
            values[:, :, group], observed, group_levels, bandwidth_mode
        )
        best = {"loss": np.inf, "parameters": np.zeros(len(models) - 1)}

        def tracked_objective(parameters):
            loss, gradient = objective(parameters)
            if loss < best["loss"]:
                best.update(loss=loss, parameters=parameters.copy())
            return loss, gradient

        # See https://docs.scipy.org/doc/scipy/reference/optimize.minimize-lbfgsb.html
        result = scipy.optimize.minimize(
            tracked_objective,
            x0=np.zeros(len(models) - 1),
            jac=True,
            method="L-BFGS-B",
            tol=tolerance,
            options={"maxiter": max_iters},
        )
        if not result.success:
            logger.warning(
                "Weight optimizer stopped without convergence",
                quantile_levels=group_levels,
                n_iterations=int(result.nit),
                optimizer_message=str(result.message),
            )
            warnings.warn(
                f"Weight fit for quantile levels {group_levels} did not converge"
                f" within {max_iters} iterations: {result.message}",
                ConvergenceWarning,
            )

        group_weights = softmax_weights(best["parameters"])
        for position in group:
            weights.iloc[:, position] = group_weights
        diagnostics.append(
            dict(
                quantile_levels=group_levels,
                loss=float(best["loss"]),
                n_iterations=int(result.nit),
                converged=bool(result.success),
                message=str(result.message),
            )
        )

    diagnostics = pd.DataFrame(diagnostics)
    logger.info(
        "Fitted ensemble weights",
        n_models=len(models),
        n_cases=int(has_observation.sum()),
        n_groups=len(groups),
        converged=bool(diagnostics["converged"].all()),
    )
    return WeightFitResult(weights=weights, diagnostics=diagnostics)


class WeightedMedianCombiner(BaseEstimator):
    """Weighted median ensemble with weights fit to past pinball loss.

    Example:
        >>> combiner = WeightedMedianCombiner(quantile_groups=[[0.025, 0.5, 0.975]])
        >>> combiner.fit(train_qfm, observed)
        >>> ensemble = combiner.predict(qfm)

    """

    def __init__(
        self,
        quantile_groups: Optional[Sequence[Sequence[float]]] = None,
        bandwidth_mode: Optional[str] = None,
        max_iters: Optional[int] = None,
        tolerance: Optional[float] = None,
        sort_quantiles: bool = True,
    ):
        self.quantile_groups = quantile_groups
        self.bandwidth_mode = bandwidth_mode
        self.max_iters = max_iters
        self.tolerance = tolerance
        self.sort_quantiles = sort_quantiles

    def fit(self, qfm: QuantileForecastMatrix, observed) -> "WeightedMedianCombiner":
        self.fit_result_ = fit_weights(
            qfm,
            observed,
            quantile_groups=self.quantile_groups,
            bandwidth_mode=self.bandwidth_mode,
            max_iters=self.max_iters,
            tolerance=self.tolerance,
        )
        self.weights_ = self.fit_result_.weights
        return self

    @property
    def converged_(self) -> bool:
        check_is_fitted(self, "fit_result_")
        return self.fit_result_.converged

    def predict(self, qfm: QuantileForecastMatrix) -> QuantileForecastMatrix:
        check_is_fitted(self, "weights_")
        return combine(
            qfm,
            weights=self.weights_,
            bandwidth_mode=self.bandwidth_mode,
            sort_quantiles=self.sort_quantiles,
        )

    def score(
        self, qfm: QuantileForecastMatrix, observed, metric: str = "mean_pinball_loss"
    ) -> float:
        """Negative mean loss of the ensemble over its quantile levels, higher is better.

        Args:
            qfm: Quantile forecasts of the models the combiner was fit on.
            observed: Observed value per case, as in :func:`fit_weights`.
                Cases without an observation are ignored.
            metric: Name of a per quantile level metric, see
                :func:`hubensemble.metrics.metrics.get_eval_metric_function`.

        """
        metric_function = get_eval_metric_function(metric)
        ensemble = self.predict(qfm)
        observed = _observed_per_case(qfm, observed)
        values = ensemble.to_numpy()[:, 0, :]
        losses = [
            metric_function(observed, values[:, level_index], level)
            for level_index, level in enumerate(ensemble.quantile_levels())
        ]
        return -float(np.mean(losses))
