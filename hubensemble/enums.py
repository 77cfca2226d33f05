# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
from enum import Enum, StrEnum


class Designation(Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    PROPOSED = "proposed"
    OTHER = "other"


class LoggerType(StrEnum):
    """Logging backend, the value is used by the HUBENSEMBLE_LOGGER_TYPE setting."""

    STANDARD = "logging"
    STRUCTLOG = "structlog"


class BandwidthMode(Enum):
    UNWEIGHTED = "unweighted"
    WEIGHTED = "weighted"


class SdCheckMode(Enum):
    EXCLUDE_BELOW = "exclude_below"
    EXCLUDE_ABOVE = "exclude_above"
    EXCLUDE_BOTH = "exclude_both"


class EligibilityReason(str, Enum):
    ELIGIBLE = "eligible"
    MISSING_FORECASTS = "missing required forecasts"
    Q10_BELOW_OBSERVED = (
        "quantile 0.1 of forecast for horizon 1 is less than most recent observed"
    )
    DECREASING_QUANTILES = "decreasing quantiles over time"
