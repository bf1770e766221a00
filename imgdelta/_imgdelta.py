# Copyright Red Hat
#
# imgdelta/_imgdelta.py - Image delta engine global definitions
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level imgdelta package.
"""
import logging
import math
import re

_log = logging.getLogger("imgdelta")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Imgdelta debugging subsystem mask (legacy interface)
IMGDELTA_DEBUG_CACHE = 1
IMGDELTA_DEBUG_DELTA = 2
IMGDELTA_DEBUG_FILTER = 4
IMGDELTA_DEBUG_EXTRACT = 8
IMGDELTA_DEBUG_ALL = (
    IMGDELTA_DEBUG_CACHE
    | IMGDELTA_DEBUG_DELTA
    | IMGDELTA_DEBUG_FILTER
    | IMGDELTA_DEBUG_EXTRACT
)

# Imgdelta debugging subsystem names
IMGDELTA_SUBSYSTEM_CACHE = "imgdelta.cache"
IMGDELTA_SUBSYSTEM_DELTA = "imgdelta.delta"
IMGDELTA_SUBSYSTEM_FILTER = "imgdelta.filter"
IMGDELTA_SUBSYSTEM_EXTRACT = "imgdelta.extract"

_DEBUG_MASK_TO_SUBSYSTEM = {
    IMGDELTA_DEBUG_CACHE: IMGDELTA_SUBSYSTEM_CACHE,
    IMGDELTA_DEBUG_DELTA: IMGDELTA_SUBSYSTEM_DELTA,
    IMGDELTA_DEBUG_FILTER: IMGDELTA_SUBSYSTEM_FILTER,
    IMGDELTA_DEBUG_EXTRACT: IMGDELTA_SUBSYSTEM_EXTRACT,
}

_debug_subsystems = set()

_SIZE_RE = re.compile(r"^(?P<size>[0-9]+)(?P<units>([KMGTPEZkmgtpez]i{,1})?[Bb]{,1})$")

#: All suffixes are expressed in powers of two.
_SIZE_SUFFIXES = {
    "B": 1,
    "K": 2**10,
    "M": 2**20,
    "G": 2**30,
    "T": 2**40,
    "P": 2**50,
    "E": 2**60,
    "Z": 2**70,
}


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        # Always pass non-DEBUG messages.
        if record.levelno != logging.DEBUG:
            return True

        # Always pass DEBUG messages that aren't for a specific subsystem.
        if not hasattr(record, "subsystem"):
            return True

        # For subsystem-specific DEBUG messages, check if the subsystem is enabled.
        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def set_debug_mask(mask):
    """
    Set the debug mask for the ``imgdelta`` package.

    :param mask: the logical OR of the ``IMGDELTA_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > IMGDELTA_DEBUG_ALL:
        raise ValueError(f"Invalid imgdelta debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    imgdelta_log = logging.getLogger("imgdelta")
    for handler in imgdelta_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Imgdelta exception types
#


class ImgDeltaError(Exception):
    """
    Base class for image delta engine errors.
    """


class ImgDeltaSystemError(ImgDeltaError):
    """
    An error when calling the operating system.
    """


class ImgDeltaNotFoundError(ImgDeltaError):
    """
    The requested object does not exist.
    """


class ImgDeltaArgumentError(ImgDeltaError):
    """
    An invalid argument was passed to an imgdelta API call.
    """


class ImgDeltaParseError(ImgDeltaError):
    """
    An error parsing user input or configuration.
    """


class ImgDeltaStreamError(ImgDeltaError):
    """
    An archive stream could not be read: the stream is malformed, truncated
    or the underlying reader failed.
    """


class ImgDeltaCacheError(ImgDeltaError):
    """
    An error reading or writing a disk-backed cache entry.
    """


class ImgDeltaApplyError(ImgDeltaError):
    """
    An error writing archive entries to the destination file system.
    """

    def __init__(self, name: str, where: str, reason: str):
        """
        Initialise a new `ImgDeltaApplyError` exception.

        :param name: The archive member that could not be applied.
        :param where: The destination directory of the apply operation.
        :param reason: A description of the failure.
        """
        self.name, self.where, self.reason = name, where, reason
        msg = f"Failed to apply '{name}' to {where}: {reason}"
        super().__init__(msg)


def size_fmt(value):
    """
    Format a size in bytes as a human readable string.

    :param value: The integer value to format.
    :returns: A human readable string reflecting value.
    """
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB"]
    if value == 0:
        return "0B"
    magnitude = math.floor(math.log(abs(value), 1024))
    val = value / math.pow(1024, magnitude)
    if magnitude > 7:
        return f"{val:.1f}YiB"
    return f"{val:3.1f}{suffixes[magnitude]}"


def parse_size_with_units(value):
    """
    Parse a size string with optional unit suffix and return a value in bytes,

    :param size: The size string to parse.
    :returns: an integer size in bytes.
    :raises: ``ImgDeltaParseError`` if the string could not be parsed as a
             valid size value.
    """
    match = _SIZE_RE.search(value.strip())
    if match is None:
        raise ImgDeltaParseError(f"Malformed size expression: '{value}'")
    (size, unit) = (match.group("size"), match.group("units").upper())
    if not unit:
        return int(size)
    return int(size) * _SIZE_SUFFIXES[unit[0]]


__all__ = [
    "IMGDELTA_DEBUG_CACHE",
    "IMGDELTA_DEBUG_DELTA",
    "IMGDELTA_DEBUG_FILTER",
    "IMGDELTA_DEBUG_EXTRACT",
    "IMGDELTA_DEBUG_ALL",
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    "IMGDELTA_SUBSYSTEM_CACHE",
    "IMGDELTA_SUBSYSTEM_DELTA",
    "IMGDELTA_SUBSYSTEM_FILTER",
    "IMGDELTA_SUBSYSTEM_EXTRACT",
    # Debug logging - legacy interface
    "set_debug_mask",
    "ImgDeltaError",
    "ImgDeltaSystemError",
    "ImgDeltaNotFoundError",
    "ImgDeltaArgumentError",
    "ImgDeltaParseError",
    "ImgDeltaStreamError",
    "ImgDeltaCacheError",
    "ImgDeltaApplyError",
    "size_fmt",
    "parse_size_with_units",
]
