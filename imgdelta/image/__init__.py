# Copyright Red Hat
#
# imgdelta/image/__init__.py - Image delta engine package
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Image content diffing and selective extraction.

Provides three-way comparison of flattened image file systems, extraction
filters built from path prefixes, regular expressions or a base image, and
a single pass extraction orchestrator. The main entry points are ``delta()``,
``build_filter()``, ``build_delta_additions_filter()`` and ``extract()``.
"""
from .apply import Applier, TarApplier
from .cache import CacheResult, HybridCache
from .delta import (
    ImageDiff,
    ImageDiffNode,
    compare_digest,
    compare_size,
    delta,
    delta_images,
)
from .extract import extract, extract_reader, extract_to
from .filters import (
    EXCLUDES_MATCH_RAW_PATH_WHEN_BOTH_LISTS,
    DeltaAdditionsFilter,
    ExtractionFilter,
    PathFilter,
    build_delta_additions_filter,
    build_delta_additions_filter_from_image,
    build_filter,
    keep_all,
)
from .options import CacheOptions, EngineConfig, ExtractOptions
from .source import (
    BytesImageSource,
    ImageSource,
    LayeredImageSource,
    TarballImageSource,
)
from .stream import iter_headers
from .tmpdir import TempDirs, default_tempdirs

__all__ = [
    "Applier",
    "BytesImageSource",
    "CacheOptions",
    "CacheResult",
    "DeltaAdditionsFilter",
    "EXCLUDES_MATCH_RAW_PATH_WHEN_BOTH_LISTS",
    "EngineConfig",
    "ExtractOptions",
    "ExtractionFilter",
    "HybridCache",
    "ImageDiff",
    "ImageDiffNode",
    "ImageSource",
    "LayeredImageSource",
    "PathFilter",
    "TarApplier",
    "TarballImageSource",
    "TempDirs",
    "build_delta_additions_filter",
    "build_delta_additions_filter_from_image",
    "build_filter",
    "compare_digest",
    "compare_size",
    "default_tempdirs",
    "delta",
    "delta_images",
    "extract",
    "extract_reader",
    "extract_to",
    "iter_headers",
    "keep_all",
]
