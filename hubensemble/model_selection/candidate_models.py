# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0
from typing import Iterable, Union

from hubensemble.data_classes.candidate_model import CandidateModelDataClass
from hubensemble.enums import Designation
from hubensemble.logging.logger_factory import get_logger


def get_candidate_models(
    candidates: Iterable[Union[CandidateModelDataClass, dict]],
    include_designations: Iterable[Union[Designation, str]] = (
        Designation.PRIMARY,
        Designation.SECONDARY,
    ),
    include_hub_ensemble: bool = False,
    include_hub_baseline: bool = False,
) -> list[str]:
    """Select the models that may take part in the ensemble.

    Hub baseline and hub ensemble models are selected by their flags only,
    regardless of their designation.

    Args:
        candidates: Metadata of all models that submitted forecasts.
        include_designations: Designations to include, e.g. "primary", "secondary".
        include_hub_ensemble: Whether to include the official hub ensemble.
        include_hub_baseline: Whether to include the hub baseline.

    Returns:
        Sorted names of the selected models.

    """
    logger = get_logger(__name__)
    include_designations = {Designation(d) for d in include_designations}
    candidates = [
        c if isinstance(c, CandidateModelDataClass) else CandidateModelDataClass(**c)
        for c in candidates
    ]

    selected = []
    for candidate in candidates:
        if candidate.is_hub_ensemble:
            include = include_hub_ensemble
        elif candidate.is_hub_baseline:
            include = include_hub_baseline
        else:
            include = candidate.designation in include_designations
        if include:
            selected.append(candidate.name)

    logger.info(
        "Selected candidate models",
        n_candidates=len(candidates),
        n_selected=len(selected),
    )
    return sorted(selected)
