# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0

import logging
from typing import Any, Optional

from hubensemble.logging.base_logger import BaseLogger
from hubensemble.settings import Settings


class StandardLogger(BaseLogger):
    """Logger backed by the standard library, key/value context goes into extra."""

    def __init__(self, name: str, context: Optional[dict] = None):
        self.name = name
        self.context = context or {}
        self.logger = logging.getLogger(name)
        logging.basicConfig(level=Settings.log_level)

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        self.logger.log(level, message, extra={**self.context, **kwargs})

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs):
        self.logger.exception(message, extra={**self.context, **kwargs})

    def bind(self, **kwargs):
        return StandardLogger(self.name, context={**self.context, **kwargs})
