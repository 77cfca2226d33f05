# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0

"""Hubensemble custom exceptions."""


class SchemaError(ValueError):
    """Malformed or inconsistent forecast records."""


class InsufficientHistoryError(Exception):
    """Fewer trailing time points are available than a check requires."""

    def __init__(
        self,
        location: str,
        required: int,
        available: int,
        message: str = "Insufficient history available",
    ):
        self.location = location
        self.required = required
        self.available = available
        self.message = (
            f"{message} for location {location}: required {required},"
            f" available {available}"
        )
        super().__init__(self.message)


class DegenerateInputError(ValueError):
    """Weights or model values do not define a proper weighted distribution."""


class ConvergenceWarning(UserWarning):
    """Weight fitting stopped before the optimizer converged."""
