# Copyright Red Hat
#
# imgdelta/__init__.py - Image delta engine package initialisation
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Imgdelta top-level package.
"""
from ._imgdelta import *  # noqa: F401, F403
from ._imgdelta import __all__  # noqa: F401

__version__ = "0.1.0"
