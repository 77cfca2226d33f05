# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
import unittest

import numpy as np
import pandas as pd

from hubensemble.metrics.metrics import (
    get_eval_metric_function,
    interval_coverage,
    mean_pinball_loss,
    pinball_loss,
    weighted_interval_score,
)


class TestEvalMetricFunction(unittest.TestCase):
    def test_eval_metric(self):
        self.assertEqual(get_eval_metric_function("pinball_loss"), pinball_loss)

    def test_eval_metric_exception(self):
        with self.assertRaises(KeyError):
            get_eval_metric_function("non-existing")


class TestQuantileMetrics(unittest.TestCase):
    def test_pinball_loss(self):
        # Arrange
        realised = np.array([10.0, 10.0, 10.0])
        forecast = np.array([8.0, 10.0, 13.0])

        # Act
        loss = pinball_loss(realised, forecast, 0.1)

        # Assert
        np.testing.assert_allclose(loss, [0.2, 0.0, 2.7])

    def test_mean_pinball_loss_ignores_missing(self):
        # Act
        loss = mean_pinball_loss([10.0, np.nan], [8.0, 9.0], 0.5)

        # Assert
        self.assertAlmostEqual(loss, 1.0)

    def test_interval_coverage(self):
        # Arrange
        realised = pd.Series([1.0, 2.0, 3.0, 4.0])

        # Act
        coverage = interval_coverage(realised, lower=[1.0, 2.5, 2.0, 0.0], upper=[2.0, 3.0, 3.0, 3.0])

        # Assert
        self.assertAlmostEqual(coverage, 0.5)

    def test_weighted_interval_score(self):
        # Arrange
        quantiles = [0.25, 0.5, 0.75]
        forecast = np.array([[8.0, 10.0, 12.0], [8.0, 10.0, 12.0]])
        realised = np.array([10.0, 14.0])

        # Act
        score = weighted_interval_score(realised, forecast, quantiles)

        # Assert
        # Second case: pinball losses 1.5, 2.0 and 1.5
        np.testing.assert_allclose(score, [2 * (0.5 + 0.0 + 0.5) / 3, 2 * 5.0 / 3])
