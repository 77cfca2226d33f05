# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
"""Specifies the candidate model dataclass."""

from typing import Any

from pydantic import BaseModel, Field

from hubensemble.enums import Designation


class CandidateModelDataClass(BaseModel):
    """Metadata of a model that submitted forecasts to the hub."""

    name: str = Field(..., description="Model name, e.g. 'teamA-modelA'.")
    designation: Designation = Field(
        Designation.OTHER,
        description="Designation of the model. Options are: 'primary', 'secondary', 'proposed', 'other'.",
    )
    is_hub_baseline: bool = Field(
        False, description="Whether the model is the hub baseline model."
    )
    is_hub_ensemble: bool = Field(
        False, description="Whether the model is the official hub ensemble."
    )

    def __getitem__(self, item: str) -> Any:
        """Allows us to use subscription to get the items from the object."""
        return getattr(self, item)
