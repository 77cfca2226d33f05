# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0

from hubensemble.eligibility.missingness import calc_forecast_missingness
from hubensemble.exceptions import SchemaError
from test.unit.utils.base import BaseTestCase
from test.unit.utils.data import TestData

ID_COLS = ["location", "forecast_week_end_date"]
MISSING = "missing required forecasts"
STATUS_COL = "missingness_eligibility"


class TestCalcForecastMissingness(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.forecast_df = TestData.missingness_forecasts()

    def test_none_missing_latest_week(self):
        # Arrange
        qfm = TestData.build_qfm(
            self.forecast_df.loc[self.forecast_df["forecast_week_end_date"] >= "2020-05-02"],
            ID_COLS,
        )

        # Act
        actual = calc_forecast_missingness(qfm)

        # Assert
        self.assertVerdicts(actual, STATUS_COL, set(), MISSING)

    def test_none_missing_last_two_weeks(self):
        # Arrange
        qfm = TestData.build_qfm(
            self.forecast_df.loc[self.forecast_df["forecast_week_end_date"] >= "2020-04-25"],
            ID_COLS,
        )

        # Act
        actual = calc_forecast_missingness(qfm)

        # Assert
        self.assertVerdicts(actual, STATUS_COL, set(), MISSING)

    def test_missing_in_full_history(self):
        # Arrange
        qfm = TestData.build_qfm(self.forecast_df, ID_COLS)

        # Act
        actual = calc_forecast_missingness(qfm)

        # Assert
        self.assertVerdicts(actual, STATUS_COL, {("b", "m2")}, MISSING)

    def test_window_excludes_older_missing_forecast(self):
        # Arrange
        qfm = TestData.build_qfm(self.forecast_df, ID_COLS)

        for window_size in [0, 1]:
            with self.subTest(window_size=window_size):
                # Act
                actual = calc_forecast_missingness(qfm, window_size=window_size)

                # Assert
                self.assertVerdicts(actual, STATUS_COL, set(), MISSING)

    def test_window_includes_missing_forecast(self):
        # Arrange
        qfm = TestData.build_qfm(self.forecast_df, ID_COLS)

        for window_size in [2, 5]:
            with self.subTest(window_size=window_size):
                # Act
                actual = calc_forecast_missingness(qfm, window_size=window_size)

                # Assert
                self.assertVerdicts(actual, STATUS_COL, {("b", "m2")}, MISSING)

    def test_absent_forecasts_count_as_missing(self):
        # Arrange
        forecast_df = self.forecast_df.loc[
            ~(
                (self.forecast_df["location"] == "d")
                & (self.forecast_df["model"] == "m1")
                & (self.forecast_df["forecast_week_end_date"] == "2020-05-02")
            )
        ]
        qfm = TestData.build_qfm(forecast_df, ID_COLS)

        # Act
        actual = calc_forecast_missingness(qfm, window_size=0)

        # Assert
        self.assertVerdicts(actual, STATUS_COL, {("d", "m1")}, MISSING)

    def test_negative_window(self):
        # Arrange
        qfm = TestData.build_qfm(self.forecast_df, ID_COLS)

        # Act & Assert
        with self.assertRaises(ValueError):
            calc_forecast_missingness(qfm, window_size=-1)

    def test_missing_id_column(self):
        # Arrange
        qfm = TestData.build_qfm(self.forecast_df, ID_COLS)

        # Act & Assert
        with self.assertRaises(SchemaError):
            calc_forecast_missingness(qfm, forecast_date_col="date")
