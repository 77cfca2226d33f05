# SPDX-FileCopyrightText: 2020-2025 Contributors to the hubensemble project
#
# SPDX-License-Identifier: MPL-2.0

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("hubensemble")
except PackageNotFoundError:
    # package is not installed
    pass
