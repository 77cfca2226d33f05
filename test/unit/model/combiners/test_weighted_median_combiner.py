# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0

import warnings
from unittest.mock import patch

import numpy as np
import pandas as pd
from sklearn.exceptions import NotFittedError

from hubensemble.exceptions import ConvergenceWarning, DegenerateInputError
from hubensemble.metrics.metrics import pinball_loss
from hubensemble.model.combiners import weighted_median_combiner
from hubensemble.model.combiners.weighted_median_combiner import (
    WeightedMedianCombiner,
    combine,
    fit_weights,
    softmax_weights,
    weights_to_array,
)
from test.unit.utils.base import BaseTestCase
from test.unit.utils.data import TestData

MODELS = ["good", "biased_up", "biased_more"]


def mean_pinball_loss_of(ensemble, observed) -> float:
    values = ensemble.to_numpy()[:, 0, :]
    losses = [
        pinball_loss(observed, values[:, i], level)
        for i, level in enumerate(ensemble.quantile_levels())
    ]
    return float(np.mean(losses))


class TestCombine(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.qfm, self.observed = TestData.location_scale_forecasts()

    def test_combine_shape(self):
        # Act
        ensemble = combine(self.qfm)

        # Assert
        self.assertEqual(ensemble.models(), ["ensemble"])
        self.assertEqual(ensemble.shape, (len(self.qfm), 1, 23))
        self.assertDataframeEqual(ensemble.cases, self.qfm.cases)
        self.assertFalse(np.isnan(ensemble.to_numpy()).any())

    def test_one_hot_weights_reproduce_model(self):
        # Arrange
        weights = pd.Series([0.0, 1.0, 0.0], index=MODELS)

        # Act
        ensemble = combine(self.qfm, weights=weights)

        # Assert
        self.assertArrayAlmostEqual(
            ensemble.to_numpy()[:, 0, :],
            self.qfm.model_values("biased_up").to_numpy(),
            rtol=1e-12,
        )

    def test_weights_per_quantile_level(self):
        # Arrange
        weights = pd.DataFrame(0.0, index=MODELS, columns=self.qfm.quantile_levels())
        weights.iloc[0, :12] = 1.0
        weights.iloc[2, 12:] = 1.0

        # Act
        ensemble = combine(self.qfm, weights=weights).to_numpy()[:, 0, :]

        # Assert
        values = self.qfm.to_numpy()
        self.assertArrayAlmostEqual(ensemble[:, :12], values[:, 0, :12], rtol=1e-12)
        self.assertArrayAlmostEqual(ensemble[:, 12:], values[:, 2, 12:], rtol=1e-12)

    def test_ensemble_quantiles_nondecreasing(self):
        # Arrange
        qfm = TestData.mixed_spread_forecasts()
        rng = np.random.default_rng(5)

        for mode in ["unweighted", "weighted"]:
            for _ in range(5):
                weights = pd.Series(rng.dirichlet(np.ones(4)), index=qfm.models())
                with self.subTest(mode=mode, weights=weights.round(3).tolist()):
                    # Act
                    ensemble = combine(qfm, weights=weights, bandwidth_mode=mode)

                    # Assert
                    differences = np.diff(ensemble.to_numpy()[:, 0, :], axis=1)
                    self.assertTrue(np.all(differences >= 0))

    def test_sorting_keeps_missing_levels_in_place(self):
        # Arrange
        qfm = TestData.mixed_spread_forecasts(n_cases=20)
        values = qfm.to_numpy()
        values[0, :, 3] = np.nan
        qfm = qfm._copy(values=values)

        # Act
        ensemble = combine(qfm).to_numpy()[:, 0, :]

        # Assert
        self.assertIsNAN(ensemble[0, 3])
        present = np.delete(ensemble[0], 3)
        self.assertFalse(np.isnan(present).any())
        self.assertTrue(np.all(np.diff(present) >= 0))
        self.assertTrue(np.all(np.diff(ensemble[1:], axis=1) >= 0))

    def test_missing_model_weights_raise(self):
        # Arrange
        weights = pd.Series([0.5, 0.5], index=MODELS[:2])

        # Act & Assert
        with self.assertRaises(KeyError):
            combine(self.qfm, weights=weights)

    def test_degenerate_cases_left_missing(self):
        # Arrange
        values = self.qfm.to_numpy()
        values[0, :, :] = np.nan
        qfm = self.qfm._copy(values=values)

        # Act
        ensemble = combine(qfm)

        # Assert
        self.assertIsNAN(ensemble.to_numpy()[0])
        self.assertFalse(np.isnan(ensemble.to_numpy()[1:]).any())
        with self.assertRaises(DegenerateInputError):
            combine(qfm, raise_on_degenerate=True)

    def test_sort_quantiles(self):
        # Arrange
        values = self.qfm.to_numpy()
        values[:, :, [3, 4]] = values[:, :, [4, 3]]
        qfm = self.qfm._copy(values=values)

        # Act
        unsorted = combine(qfm, sort_quantiles=False).to_numpy()[:, 0, :]
        ensemble = combine(qfm).to_numpy()[:, 0, :]

        # Assert
        self.assertTrue(np.any(np.diff(unsorted, axis=1) < 0))
        self.assertTrue(np.all(np.diff(ensemble, axis=1) >= 0))

    def test_weights_to_array(self):
        # Assert
        self.assertArrayEqual(weights_to_array(None, MODELS, [0.1, 0.5]), np.ones((3, 2)))
        series = pd.Series([1.0, 2.0, 3.0, 4.0], index=MODELS + ["other"])
        self.assertArrayEqual(
            weights_to_array(series, MODELS[::-1], [0.1, 0.5]),
            np.array([[3.0, 3.0], [2.0, 2.0], [1.0, 1.0]]),
        )


class TestFitWeights(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.qfm, self.observed = TestData.location_scale_forecasts(
            quantile_levels=[0.1, 0.5, 0.9]
        )

    def test_softmax_weights(self):
        # Act
        weights = softmax_weights(np.array([0.0, 0.0]))
        skewed = softmax_weights(np.array([2.0, -1.0]))

        # Assert
        self.assertArrayAlmostEqual(weights, np.full(3, 1 / 3))
        self.assertAlmostEqual(skewed.sum(), 1.0)
        self.assertTrue(np.all(skewed > 0))
        self.assertEqual(int(np.argmax(skewed)), 0)

    def test_fit_prefers_accurate_model(self):
        # Arrange
        equal_weight_loss = mean_pinball_loss_of(combine(self.qfm), self.observed)

        # Act
        result = fit_weights(
            self.qfm, self.observed, quantile_groups=[[0.1, 0.5, 0.9]]
        )

        # Assert
        weights = result.weights
        self.assertEqual(list(weights.index), MODELS)
        self.assertEqual(list(weights.columns), [0.1, 0.5, 0.9])
        self.assertArrayAlmostEqual(weights.sum(axis=0).to_numpy(), np.ones(3))
        self.assertTrue((weights.loc["good"] > weights.loc["biased_up"]).all())
        self.assertTrue((weights.loc["good"] > weights.loc["biased_more"]).all())
        self.assertEqual(len(result.diagnostics), 1)
        self.assertLessEqual(result.diagnostics.loc[0, "loss"], equal_weight_loss + 1e-12)
        fitted_loss = mean_pinball_loss_of(
            combine(self.qfm, weights=weights), self.observed
        )
        self.assertAlmostEqual(fitted_loss, result.diagnostics.loc[0, "loss"])

    def test_quantile_groups_share_weights(self):
        # Act
        result = fit_weights(self.qfm, self.observed, quantile_groups=[[0.1, 0.9]])

        # Assert
        self.assertArrayAlmostEqual(
            result.weights[0.1].to_numpy(), result.weights[0.9].to_numpy()
        )
        self.assertEqual(len(result.diagnostics), 2)
        self.assertEqual(
            result.diagnostics["quantile_levels"].tolist(), [[0.1, 0.9], [0.5]]
        )

    def test_level_in_two_groups(self):
        # Act & Assert
        with self.assertRaises(ValueError):
            fit_weights(self.qfm, self.observed, quantile_groups=[[0.1, 0.5], [0.5]])

    def test_unknown_level_in_group(self):
        # Act & Assert
        with self.assertRaises(KeyError):
            fit_weights(self.qfm, self.observed, quantile_groups=[[0.3]])

    def test_single_model(self):
        # Act
        result = fit_weights(self.qfm.filter_models(["good"]), self.observed)

        # Assert
        self.assertTrue((result.weights == 1.0).all().all())
        self.assertTrue(result.converged)

    def test_observed_as_dataframe(self):
        # Arrange
        observed = pd.DataFrame(dict(case=range(len(self.observed)), observed=self.observed))
        observed.loc[0, "observed"] = np.nan

        # Act
        from_frame = fit_weights(self.qfm, observed, quantile_groups=[[0.1, 0.5, 0.9]])
        from_array = fit_weights(
            self.qfm.filter(np.arange(len(self.qfm)) > 0),
            self.observed[1:],
            quantile_groups=[[0.1, 0.5, 0.9]],
        )

        # Assert
        self.assertArrayAlmostEqual(
            from_frame.weights.to_numpy(), from_array.weights.to_numpy()
        )

    def test_observed_wrong_length(self):
        # Act & Assert
        with self.assertRaises(ValueError):
            fit_weights(self.qfm, self.observed[:-1])

    def test_budget_exhausted_warns(self):
        # Act
        with self.assertWarns(ConvergenceWarning):
            result = fit_weights(
                self.qfm, self.observed, quantile_groups=[[0.1, 0.5, 0.9]], max_iters=1
            )

        # Assert
        self.assertFalse(result.converged)
        self.assertArrayAlmostEqual(result.weights.sum(axis=0).to_numpy(), np.ones(3))


class TestWeightedMedianCombiner(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.qfm, self.observed = TestData.location_scale_forecasts(
            quantile_levels=[0.1, 0.5, 0.9]
        )

    def test_fit_predict(self):
        # Arrange
        combiner = WeightedMedianCombiner(quantile_groups=[[0.1, 0.5, 0.9]])

        # Act
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            combiner.fit(self.qfm, self.observed)
        ensemble = combiner.predict(self.qfm)

        # Assert
        self.assertEqual(ensemble.shape, (len(self.qfm), 1, 3))
        self.assertEqual(list(combiner.weights_.index), MODELS)
        self.assertIsInstance(combiner.converged_, bool)
        self.assertIsNone(combiner.get_params()["bandwidth_mode"])

    def test_predict_before_fit(self):
        # Act & Assert
        with self.assertRaises(NotFittedError):
            WeightedMedianCombiner().predict(self.qfm)

    def test_bandwidth_mode_defaults_to_settings(self):
        # Arrange
        weights = pd.Series([0.6, 0.3, 0.1], index=MODELS)
        combiner = WeightedMedianCombiner()
        combiner.weights_ = weights

        # Act
        with patch.object(
            weighted_median_combiner.Settings, "combiner_bandwidth_mode", "weighted"
        ):
            ensemble = combiner.predict(self.qfm)

        # Assert
        expected = combine(self.qfm, weights=weights, bandwidth_mode="weighted")
        self.assertArrayAlmostEqual(ensemble.to_numpy(), expected.to_numpy())
        unweighted = combine(self.qfm, weights=weights, bandwidth_mode="unweighted")
        self.assertFalse(np.allclose(ensemble.to_numpy(), unweighted.to_numpy()))

    def test_score(self):
        # Arrange
        combiner = WeightedMedianCombiner()
        combiner.weights_ = pd.Series([0.6, 0.3, 0.1], index=MODELS)
        observed = self.observed.copy()
        observed[0] = np.nan

        # Act
        score = combiner.score(self.qfm, observed)

        # Assert
        ensemble = combiner.predict(self.qfm.filter(np.arange(len(self.qfm)) > 0))
        self.assertAlmostEqual(score, -mean_pinball_loss_of(ensemble, self.observed[1:]))
        with self.assertRaises(KeyError):
            combiner.score(self.qfm, observed, metric="crps")
