# Copyright Red Hat
#
# imgdelta/image/filters.py - Extraction filter builder
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Per-entry extraction filters.

An extraction filter is a callable taking one ``tarfile.TarInfo`` header and
returning ``True`` if the entry should be written to disk. Filters are
invoked once per entry, in stream order. A filter signals an error by
raising, which aborts the extraction.

Two builders are provided:

``build_filter()``
    Selects entries by literal path prefix and include/exclude regular
    expressions.

``build_delta_additions_filter()``
    Records every entry name of a source stream and then keeps only the
    destination entries that are new, subject to the same pattern rules.
"""
from typing import BinaryIO, Callable, List, Optional, Pattern, Sequence, Tuple
import posixpath
import tarfile
import logging
import re

from imgdelta import IMGDELTA_SUBSYSTEM_FILTER, ImgDeltaError

from .cache import HybridCache
from .options import CacheOptions
from .source import ImageSource
from .stream import iter_headers
from .tmpdir import TempDirs, default_tempdirs

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_filter(msg, *args, **kwargs):
    """A wrapper for filter subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": IMGDELTA_SUBSYSTEM_FILTER}, **kwargs)


#: An extraction filter: ``True`` keeps the entry.
ExtractionFilter = Callable[[tarfile.TarInfo], bool]

#: When both include and exclude patterns are given, exclude patterns are
#: matched against the entry path without the prefix joined to it. With only
#: exclude patterns they are matched against the prefix-joined path.
EXCLUDES_MATCH_RAW_PATH_WHEN_BOTH_LISTS: bool = True


def keep_all(_header: tarfile.TarInfo) -> bool:
    """An extraction filter that keeps every entry."""
    return True


def join_path(*elems: str) -> str:
    """
    Join path elements with ``/`` and clean the result. Unlike
    ``os.path.join()`` an absolute element does not discard the elements
    before it: ``join_path("/usr", "/usr/bin")`` is ``/usr/usr/bin``.

    :returns: The cleaned path, or ``""`` if every element is empty.
    :rtype: ``str``
    """
    parts = [elem for elem in elems if elem]
    if not parts:
        return ""
    path = posixpath.normpath("/".join(parts))
    if path.startswith("//"):
        path = "/" + path.lstrip("/")
    return path


def compile_patterns(patterns: Sequence[str]) -> Tuple[List[Pattern], List[str]]:
    """
    Compile a list of regular expressions, dropping any that are invalid.

    :param patterns: The expressions to compile.
    :type patterns: ``Sequence[str]``
    :returns: A 2-tuple of the compiled patterns and a list of warning
              strings describing each dropped pattern.
    :rtype: ``Tuple[List[Pattern], List[str]]``
    """
    compiled = []
    warnings = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as err:
            _log_warn("Ignoring invalid filter pattern '%s': %s", pattern, err)
            warnings.append(f"Invalid pattern '{pattern}': {err}")
    return (compiled, warnings)


def _first_match(patterns: List[Pattern], path: str) -> Optional[Pattern]:
    """
    Return the first pattern in ``patterns`` that matches ``path``.
    """
    for pattern in patterns:
        if pattern.search(path):
            return pattern
    return None


class PathFilter:
    """
    Extraction filter selecting entries by literal path prefix and
    include/exclude regular expressions.
    """

    def __init__(
        self,
        prefix_path: str = "",
        includes: Sequence[str] = (),
        excludes: Sequence[str] = (),
    ):
        """
        Initialise a new ``PathFilter``.

        Entry names are made absolute (``/`` joined to the archive name)
        before matching. Patterns are matched with ``re.search()``. The
        branch taken depends on which pattern lists were supplied, even if
        some of their patterns failed to compile.

        :param prefix_path: Keep only paths that begin with this literal
                            string (not a path component test: ``/usr``
                            also matches ``/usrextra``).
        :type prefix_path: ``str``
        :param includes: Regular expressions an entry must match.
        :type includes: ``Sequence[str]``
        :param excludes: Regular expressions an entry must not match.
        :type excludes: ``Sequence[str]``
        """
        self.prefix_path: str = prefix_path or ""
        self.includes: Tuple[str, ...] = tuple(includes or ())
        self.excludes: Tuple[str, ...] = tuple(excludes or ())
        self._include_re, include_warnings = compile_patterns(self.includes)
        self._exclude_re, exclude_warnings = compile_patterns(self.excludes)
        #: Descriptions of patterns dropped because they did not compile
        self.warnings: List[str] = include_warnings + exclude_warnings

    def __repr__(self):
        return (
            f"{self.__class__.__name__}('{self.prefix_path}', "
            f"{list(self.includes)!r}, {list(self.excludes)!r})"
        )

    def _in_prefix(self, file_name: str) -> bool:
        return not self.prefix_path or file_name.startswith(self.prefix_path)

    def _keep(self, file_name: str) -> bool:
        """
        Apply the prefix and pattern rules to the absolute ``file_name``.
        """
        joined = join_path(self.prefix_path, file_name)

        if not self.includes and self.excludes:
            if _first_match(self._exclude_re, joined):
                return False
            return self._in_prefix(file_name)

        if self.includes and not self.excludes:
            if _first_match(self._include_re, joined):
                return self._in_prefix(file_name)
            return False

        if self.includes and self.excludes:
            if not _first_match(self._include_re, joined):
                return False
            exclude_path = (
                file_name if EXCLUDES_MATCH_RAW_PATH_WHEN_BOTH_LISTS else joined
            )
            if _first_match(self._exclude_re, exclude_path):
                return False
            return self._in_prefix(file_name)

        return self._in_prefix(file_name)

    def __call__(self, header: tarfile.TarInfo) -> bool:
        file_name = join_path("/", header.name)
        keep = self._keep(file_name)
        if keep:
            _log_debug_filter("Adding name %s", file_name)
        return keep


class DeltaAdditionsFilter(PathFilter):
    """
    Extraction filter keeping only entries absent from a source stream.
    """

    def __init__(
        self,
        seen: HybridCache,
        includes: Sequence[str] = (),
        excludes: Sequence[str] = (),
    ):
        """
        Initialise a new ``DeltaAdditionsFilter``.

        :param seen: A cache holding every entry name of the source stream.
        :type seen: ``HybridCache``
        :param includes: Regular expressions an entry must match.
        :type includes: ``Sequence[str]``
        :param excludes: Regular expressions an entry must not match.
        :type excludes: ``Sequence[str]``
        """
        super().__init__("", includes, excludes)
        self.seen: HybridCache = seen

    def __call__(self, header: tarfile.TarInfo) -> bool:
        _, exists = self.seen.get(header.name)
        if exists:
            return False
        return super().__call__(header)

    def clean(self):
        """
        Remove the source name cache. The filter must not be used again.
        """
        self.seen.clean()


def build_filter(
    prefix_path: str = "",
    includes: Sequence[str] = (),
    excludes: Sequence[str] = (),
) -> PathFilter:
    """
    Build an extraction filter from a path prefix and pattern lists.

    - no patterns: keep entries under ``prefix_path`` (everything if empty);
    - excludes only: drop entries whose prefix-joined path matches an
      exclude pattern, keep the rest under ``prefix_path``;
    - includes only: keep entries under ``prefix_path`` whose prefix-joined
      path matches an include pattern;
    - both: as includes only, but drop entries whose path (without the
      prefix joined) matches an exclude pattern.

    :param prefix_path: Literal path prefix restricting extraction.
    :type prefix_path: ``str``
    :param includes: Include regular expressions.
    :type includes: ``Sequence[str]``
    :param excludes: Exclude regular expressions.
    :type excludes: ``Sequence[str]``
    :returns: The extraction filter.
    :rtype: ``PathFilter``
    """
    return PathFilter(prefix_path, includes, excludes)


def build_delta_additions_filter(
    source: BinaryIO,
    includes: Sequence[str] = (),
    excludes: Sequence[str] = (),
    tmpdirs: Optional[TempDirs] = None,
    cache_options: Optional[CacheOptions] = None,
) -> DeltaAdditionsFilter:
    """
    Build an extraction filter that keeps only entries not present in the
    ``source`` stream.

    Every entry name in ``source`` is recorded in a ``HybridCache`` placed
    in a fresh directory from ``tmpdirs``. The default cache sizing keeps
    realistic images in memory; promotion to disk only guards against very
    large ones.

    :param source: The source (base) archive stream, read to completion.
    :type source: ``BinaryIO``
    :param includes: Include regular expressions.
    :type includes: ``Sequence[str]``
    :param excludes: Exclude regular expressions.
    :type excludes: ``Sequence[str]``
    :param tmpdirs: Temporary directory allocator for the cache.
    :type tmpdirs: ``Optional[TempDirs]``
    :param cache_options: Cache sizing.
    :type cache_options: ``Optional[CacheOptions]``
    :returns: The extraction filter.
    :rtype: ``DeltaAdditionsFilter``
    :raises: ``ImgDeltaStreamError`` if ``source`` cannot be read.
    """
    tmpdirs = tmpdirs or default_tempdirs()
    cache_options = cache_options or CacheOptions()

    seen = HybridCache(
        tmpdirs.temp_dir("srcfiles"),
        cache_options.max_memory,
        cache_options.max_items,
    )
    count = 0
    try:
        for header in iter_headers(source):
            seen.set(header.name, "")
            count += 1
    except ImgDeltaError:
        seen.clean()
        raise

    _log_debug_filter(
        "Recorded %d source entries (%s)",
        count,
        "disk" if seen.promoted else "memory",
    )
    return DeltaAdditionsFilter(seen, includes, excludes)


def build_delta_additions_filter_from_image(
    image: ImageSource,
    includes: Sequence[str] = (),
    excludes: Sequence[str] = (),
    tmpdirs: Optional[TempDirs] = None,
    cache_options: Optional[CacheOptions] = None,
) -> DeltaAdditionsFilter:
    """
    Build a delta additions filter using the flattened file system of
    ``image`` as the source.

    :param image: The source (base) image.
    :type image: ``ImageSource``
    :returns: The extraction filter.
    :rtype: ``DeltaAdditionsFilter``
    """
    _log_info("Recording source entries from %s", image)
    with image.open() as stream:
        return build_delta_additions_filter(
            stream,
            includes,
            excludes,
            tmpdirs=tmpdirs,
            cache_options=cache_options,
        )


__all__ = [
    "ExtractionFilter",
    "EXCLUDES_MATCH_RAW_PATH_WHEN_BOTH_LISTS",
    "keep_all",
    "join_path",
    "compile_patterns",
    "PathFilter",
    "DeltaAdditionsFilter",
    "build_filter",
    "build_delta_additions_filter",
    "build_delta_additions_filter_from_image",
]
