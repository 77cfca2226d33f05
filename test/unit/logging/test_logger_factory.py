# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
from unittest import TestCase

from hubensemble.enums import LoggerType
from hubensemble.logging.logger_factory import get_logger
from hubensemble.logging.standard_logger import StandardLogger
from hubensemble.logging.structlog_logger import StructlogLogger


class TestLoggerFactory(TestCase):
    def test_standard_logger(self):
        # Act
        logger = get_logger("hubensemble.test", LoggerType.STANDARD)

        # Assert
        self.assertIsInstance(logger, StandardLogger)
        with self.assertLogs("hubensemble.test", level="INFO") as logs:
            logger.bind(location="a").info("Checked eligibility", n_ineligible=2)
        self.assertEqual(logs.records[0].location, "a")
        self.assertEqual(logs.records[0].n_ineligible, 2)

    def test_structlog_logger(self):
        # Act
        logger = get_logger("hubensemble.test", LoggerType.STRUCTLOG)
        bound = logger.bind(location="a")

        # Assert
        self.assertIsInstance(logger, StructlogLogger)
        self.assertIsInstance(bound, StructlogLogger)

    def test_unknown_logger_type(self):
        with self.assertRaises(ValueError):
            get_logger("hubensemble.test", "print")
