# Copyright Red Hat
#
# imgdelta/image/extract.py - Image extraction orchestrator
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Single pass, filtered extraction of image file systems.
"""
from typing import BinaryIO, Optional, Tuple
from datetime import datetime
import logging

from imgdelta import IMGDELTA_SUBSYSTEM_EXTRACT, size_fmt

from .apply import Applier, TarApplier
from .filters import ExtractionFilter, keep_all
from .options import ExtractOptions
from .source import ImageSource
from .tmpdir import TempDirs, default_tempdirs

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_extract(msg, *args, **kwargs):
    """A wrapper for extract subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": IMGDELTA_SUBSYSTEM_EXTRACT}, **kwargs)


def extract_reader(
    stream: BinaryIO,
    path: str,
    keep: Optional[ExtractionFilter] = None,
    options: Optional[ExtractOptions] = None,
    applier: Optional[Applier] = None,
) -> Tuple[int, str]:
    """
    Apply the archive ``stream`` to the directory ``path``, writing only the
    entries accepted by ``keep``.

    The stream is read once and closed when the pass ends, whether or not
    it succeeded. Entries written before a failure are left in place.

    :param stream: The archive stream.
    :type stream: ``BinaryIO``
    :param path: The destination directory (created if missing).
    :type path: ``str``
    :param keep: The extraction filter (``None`` keeps every entry).
    :type keep: ``Optional[ExtractionFilter]``
    :param options: Ownership handling options.
    :type options: ``Optional[ExtractOptions]``
    :param applier: The apply implementation (default ``TarApplier``).
    :type applier: ``Optional[Applier]``
    :returns: A 2-tuple of the number of bytes written and ``path``.
    :rtype: ``Tuple[int, str]``
    """
    keep = keep or keep_all
    applier = applier or TarApplier()
    start_time = datetime.now()
    _log_debug_extract("Extracting stream to %s with %s", path, applier)
    try:
        written = applier.apply(path, stream, keep, options)
    finally:
        stream.close()
    end_time = datetime.now()
    _log_debug(
        "Extracted %s to %s in %s", size_fmt(written), path, end_time - start_time
    )
    return (written, path)


def extract_to(
    image: ImageSource,
    path: str,
    keep: Optional[ExtractionFilter] = None,
    options: Optional[ExtractOptions] = None,
    applier: Optional[Applier] = None,
) -> Tuple[int, str]:
    """
    Extract the flattened file system of ``image`` to ``path``.

    :param image: The image to extract.
    :type image: ``ImageSource``
    :param path: The destination directory.
    :type path: ``str``
    :returns: A 2-tuple of the number of bytes written and ``path``.
    :rtype: ``Tuple[int, str]``
    """
    _log_info("Extracting %s to %s", image, path)
    return extract_reader(image.open(), path, keep, options, applier)


def extract(
    image: ImageSource,
    keep: Optional[ExtractionFilter] = None,
    tmpdirs: Optional[TempDirs] = None,
    options: Optional[ExtractOptions] = None,
    applier: Optional[Applier] = None,
) -> Tuple[int, str]:
    """
    Extract the flattened file system of ``image`` to a new directory
    allocated from ``tmpdirs``. The caller owns the returned directory.

    Resources held by ``keep`` are not released here: a filter from
    ``build_delta_additions_filter()`` keeps its source name cache until the
    caller calls its ``clean()`` method.

    :param image: The image to extract.
    :type image: ``ImageSource``
    :param keep: The extraction filter (``None`` keeps every entry).
    :type keep: ``Optional[ExtractionFilter]``
    :param tmpdirs: Temporary directory allocator.
    :type tmpdirs: ``Optional[TempDirs]``
    :returns: A 2-tuple of the number of bytes written and the destination.
    :rtype: ``Tuple[int, str]``
    """
    tmpdirs = tmpdirs or default_tempdirs()
    path = tmpdirs.temp_dir("extraction")
    return extract_to(image, path, keep, options, applier)


__all__ = [
    "extract_reader",
    "extract_to",
    "extract",
]
