# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0

from hubensemble.enums import LoggerType
from hubensemble.logging.base_logger import BaseLogger
from hubensemble.logging.standard_logger import StandardLogger
from hubensemble.logging.structlog_logger import StructlogLogger
from hubensemble.settings import Settings


def get_logger(name: str, logger_type: str = None) -> BaseLogger:
    """Create a logger of the configured type.

    Args:
        name: Name of the logger, usually the module __name__.
        logger_type: Overrides ``Settings.logger_type`` when given.

    Raises:
        ValueError: If the logger type is unknown.

    """
    if logger_type is None:
        logger_type = Settings.logger_type
    if logger_type == LoggerType.STANDARD:
        return StandardLogger(name)
    elif logger_type == LoggerType.STRUCTLOG:
        return StructlogLogger(name)
    else:
        raise ValueError(f"Unknown logger type: {logger_type}")
