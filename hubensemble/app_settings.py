# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hubensemble.enums import BandwidthMode, LoggerType


class AppSettings(BaseSettings):
    """Global app settings."""

    model_config = SettingsConfigDict(
        env_prefix="hubensemble_", env_file=".env", extra="ignore"
    )

    logger_type: LoggerType = Field(
        LoggerType.STRUCTLOG,
        description="The type of logger to use.",
    )

    # Logging settings.
    log_level: str = Field("INFO", description="Log level used for logging statements.")

    # Eligibility settings.
    sd_check_n_back_sd: int = Field(
        14, description="Number of trailing observations used for the SD of the SD check."
    )
    sd_check_n_back_mean: int = Field(
        7,
        description="Number of trailing observations and leading forecast horizons averaged in the SD check.",
    )
    sd_check_n_sd: int = Field(
        4, description="Number of standard deviations that trigger the SD check."
    )

    # Combiner settings.
    combiner_bandwidth_mode: BandwidthMode = Field(
        BandwidthMode.UNWEIGHTED,
        description="Standard deviation used in the kernel bandwidth: 'unweighted' or 'weighted'.",
    )
    combiner_max_iters: int = Field(
        1000, description="Iteration budget of the weight optimizer."
    )
    combiner_tolerance: float = Field(
        1e-8, description="Convergence tolerance of the weight optimizer."
    )
