# Copyright Red Hat
#
# imgdelta/image/options.py - Image delta engine options
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Cache and extraction options, and engine configuration file support.
"""
from dataclasses import dataclass, field, fields
from configparser import ConfigParser, Error as ConfigParserError
from typing import Optional, Tuple, Union
from argparse import Namespace
from os.path import exists
import logging

from imgdelta import (
    ImgDeltaArgumentError,
    ImgDeltaParseError,
    parse_size_with_units,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Default in-memory read cache ceiling for a promoted cache: 50MiB
DEFAULT_CACHE_MAX_MEMORY: int = 50 * 2**20

#: Default number of entries held in memory before promotion to disk
DEFAULT_CACHE_MAX_ITEMS: int = 10000

#: Configuration section names
_CFG_GLOBAL = "global"
_CFG_CACHE = "cache"
_CFG_EXTRACT = "extract"

#: Configuration option names
_CFG_TMPDIR = "tmpdir"
_CFG_MAX_MEMORY = "max_memory"
_CFG_MAX_ITEMS = "max_items"
_CFG_SAME_OWNER = "same_owner"
_CFG_NUMERIC_OWNER = "numeric_owner"


@dataclass(frozen=True)
class CacheOptions:
    """
    Sizing options for a ``HybridCache``.
    """

    #: Maximum bytes of entry data kept in memory once disk-backed
    max_memory: int = DEFAULT_CACHE_MAX_MEMORY
    #: Entry count at which the cache is promoted to disk (0 disables)
    max_items: int = DEFAULT_CACHE_MAX_ITEMS

    def __post_init__(self):
        if self.max_memory < 0:
            raise ImgDeltaArgumentError(
                f"Cache memory limit cannot be negative: {self.max_memory}"
            )
        if self.max_items < 0:
            raise ImgDeltaArgumentError(
                f"Cache item limit cannot be negative: {self.max_items}"
            )


@dataclass(frozen=True)
class ExtractOptions:
    """
    Image extraction options.
    """

    #: Restore archive ownership when running privileged
    same_owner: bool = True
    #: Use numeric uid/gid values instead of resolving user and group names
    numeric_owner: bool = False
    #: Restrict extraction to paths beginning with this literal prefix
    prefix_path: str = ""
    #: Regular expressions selecting paths to extract
    includes: Tuple[str, ...] = field(default_factory=tuple)
    #: Regular expressions selecting paths to skip
    excludes: Tuple[str, ...] = field(default_factory=tuple)

    def __str__(self):
        """
        Return a human readable string representation of this
        ``ExtractOptions`` instance.

        :returns: A human readable string.
        :rtype: ``str``
        """
        items = [
            (key, val) if not isinstance(val, tuple) else (key, " ".join(val))
            for key, val in self.__dict__.items()
        ]
        return "\n".join(f"{key}={val}" for key, val in items)

    @classmethod
    def from_cmd_args(cls, cmd_args: Namespace) -> "ExtractOptions":
        """
        Initialise ExtractOptions from command line arguments.

        Construct a new ``ExtractOptions`` object from the command line
        arguments in ``cmd_args``.

        :param cmd_args: The command line selection arguments.
        :type cmd_args: ``Namespace``
        :returns: A new ``ExtractOptions`` instance
        :rtype: ``ExtractOptions``
        """

        def get_value(name: str) -> Union[bool, Optional[str], Tuple[str, ...]]:
            """
            Get a value from ``cmd_args``, converting lists to tuples.

            :param name: The name of the argument.
            :type name: ``str``
            :returns: The argument converted to a tuple if appropriate.
            :rtype: ``Union[bool, Optional[str], Tuple[str, ...]]``
            """
            attr = getattr(cmd_args, name)
            if isinstance(attr, list):
                return tuple(attr)
            if attr is None and name in ("includes", "excludes"):
                return ()
            if attr is None and name == "prefix_path":
                return ""
            return attr

        field_names = {f.name for f in fields(cls)}
        kwargs = {
            name: get_value(name) for name in field_names if hasattr(cmd_args, name)
        }
        options = cls(**kwargs)
        _log_debug("Initialised ExtractOptions from arguments: %s", repr(options))
        return options


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine-wide configuration loaded from an INI-style file.
    """

    #: Root directory for scoped temporary directories (``None``: system default)
    tmpdir: Optional[str] = None
    #: Cache sizing used by the delta-additions filter
    cache: CacheOptions = field(default_factory=CacheOptions)
    #: Ownership handling for extraction
    extract: ExtractOptions = field(default_factory=ExtractOptions)

    @classmethod
    def from_file(cls, config_file: str) -> "EngineConfig":
        """
        Load ``EngineConfig`` from an INI-style configuration file located at
        ``config_file``.

        :param config_file: path to the imgdelta configuration file.
        :type config_file: ``str``.
        :returns: An ``EngineConfig`` instance initialised from
                  ``config_file``, or the defaults if it does not exist.
        :rtype: ``EngineConfig``
        """
        if not exists(config_file):
            return EngineConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file])
        except ConfigParserError as err:
            raise ImgDeltaParseError(
                f"Malformed configuration file {config_file}: {err}"
            ) from err

        tmpdir = None
        if cfg.has_option(_CFG_GLOBAL, _CFG_TMPDIR):
            tmpdir = cfg[_CFG_GLOBAL][_CFG_TMPDIR].strip() or None

        max_memory = DEFAULT_CACHE_MAX_MEMORY
        max_items = DEFAULT_CACHE_MAX_ITEMS
        if cfg.has_option(_CFG_CACHE, _CFG_MAX_MEMORY):
            max_memory = parse_size_with_units(cfg[_CFG_CACHE][_CFG_MAX_MEMORY])
        if cfg.has_option(_CFG_CACHE, _CFG_MAX_ITEMS):
            try:
                max_items = cfg.getint(_CFG_CACHE, _CFG_MAX_ITEMS)
            except ValueError as err:
                raise ImgDeltaParseError(
                    f"Invalid {_CFG_MAX_ITEMS} value in {config_file}: {err}"
                ) from err

        same_owner = True
        numeric_owner = False
        try:
            if cfg.has_option(_CFG_EXTRACT, _CFG_SAME_OWNER):
                same_owner = cfg.getboolean(_CFG_EXTRACT, _CFG_SAME_OWNER)
            if cfg.has_option(_CFG_EXTRACT, _CFG_NUMERIC_OWNER):
                numeric_owner = cfg.getboolean(_CFG_EXTRACT, _CFG_NUMERIC_OWNER)
        except ValueError as err:
            raise ImgDeltaParseError(
                f"Invalid boolean value in {config_file}: {err}"
            ) from err

        return EngineConfig(
            tmpdir=tmpdir,
            cache=CacheOptions(max_memory=max_memory, max_items=max_items),
            extract=ExtractOptions(same_owner=same_owner, numeric_owner=numeric_owner),
        )


__all__ = [
    "DEFAULT_CACHE_MAX_MEMORY",
    "DEFAULT_CACHE_MAX_ITEMS",
    "CacheOptions",
    "ExtractOptions",
    "EngineConfig",
]
