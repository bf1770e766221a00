# Copyright Red Hat
#
# imgdelta/image/cache.py - Image delta engine hybrid memory/disk cache
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Key/value cache that starts in memory and spills to disk.

A ``HybridCache`` holds its entries in a dictionary until the entry count
reaches a configured threshold. At that point it is promoted: every entry is
written to a directory, one file per key, and the in-memory store is
discarded. Promotion happens at most once per cache lifetime (``clean()``
starts a new lifetime).

Keys are sanitized to flat file names by replacing each path separator with
``_``. This mapping is lossy: ``a/b`` and ``a_b`` share a file once the cache
is on disk. Names that would exceed the file system name limit are replaced
by a SHA-256 digest of the sanitized key.
"""
from typing import Any, Callable, Dict, Iterator, Tuple
from collections import OrderedDict
from dataclasses import dataclass
from abc import ABC, abstractmethod
from hashlib import sha256
from stat import S_ISDIR, S_ISLNK
import logging
import shutil
import json
import os

from imgdelta import (
    IMGDELTA_SUBSYSTEM_CACHE,
    ImgDeltaArgumentError,
    ImgDeltaCacheError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_cache(msg, *args, **kwargs):
    """A wrapper for cache subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": IMGDELTA_SUBSYSTEM_CACHE}, **kwargs)


#: Disk store directory mode
_CACHE_DIR_MODE: int = 0o700

#: Character substituted for path separators in disk file names
_KEY_FILLER: str = "_"

#: Longest file name (in bytes) written verbatim to the disk store
_NAME_MAX: int = 255

#: Prefix marking hashed file names
_HASHED_PREFIX: str = "sha256-"


def clean_key(key: str) -> str:
    """
    Map a cache key to the file name used by the disk store.

    :param key: The cache key.
    :type key: ``str``
    :returns: A flat file name for ``key``.
    :rtype: ``str``
    """
    name = key.replace(os.sep, _KEY_FILLER)
    if os.altsep:
        name = name.replace(os.altsep, _KEY_FILLER)
    # Never address the store directory itself or its parent.
    if name in ("", ".", ".."):
        name += _KEY_FILLER
    if len(name.encode("utf8", errors="surrogateescape")) > _NAME_MAX:
        digest = sha256(name.encode("utf8", errors="surrogateescape"))
        name = _HASHED_PREFIX + digest.hexdigest()
    return name


@dataclass(frozen=True)
class CacheResult:
    """
    A single cache entry passed to ``HybridCache.all()`` visitors.
    """

    #: The entry key (the sanitized file name once the cache is on disk)
    key: str
    #: The stored value
    value: str

    def unmarshal(self) -> Any:
        """
        Decode a value stored with ``HybridCache.set_value()``.

        :returns: The decoded object.
        :raises: ``ImgDeltaCacheError`` if the value is not valid JSON.
        """
        try:
            return json.loads(self.value)
        except ValueError as err:
            raise ImgDeltaCacheError(
                f"Cannot decode cache value for '{self.key}': {err}"
            ) from err


class CacheStore(ABC):
    """
    Backing store interface shared by the memory and disk variants.
    """

    @abstractmethod
    def get(self, key: str) -> Tuple[str, bool]:
        """Return ``(value, found)`` for ``key``."""

    @abstractmethod
    def set(self, key: str, value: str):
        """Insert or overwrite ``key``."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of entries."""

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, str]]:
        """Iterate over ``(key, value)`` pairs."""


class MemoryStore(CacheStore):
    """
    Dictionary-backed store used before promotion.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Tuple[str, bool]:
        if key in self._data:
            return (self._data[key], True)
        return ("", False)

    def set(self, key: str, value: str):
        self._data[key] = value

    def count(self) -> int:
        return len(self._data)

    def items(self) -> Iterator[Tuple[str, str]]:
        yield from self._data.items()


class DiskStore(CacheStore):
    """
    Directory-backed store: one file per entry, named by ``clean_key()``.

    Values read from or written to disk are kept in a least-recently-used
    read cache bounded by ``max_memory`` bytes.
    """

    def __init__(self, path: str, max_memory: int):
        """
        Initialise a new ``DiskStore`` in directory ``path``, creating it if
        necessary.

        :param path: The store directory.
        :type path: ``str``
        :param max_memory: Read cache ceiling in bytes (0 disables caching).
        :type max_memory: ``int``
        """
        self.path: str = path
        self.max_memory: int = max_memory
        self._read_cache: "OrderedDict[str, str]" = OrderedDict()
        self._cached_bytes: int = 0
        self._check_dir()

    def _check_dir(self):
        """
        Create the store directory, refusing symlinks and non-directories.
        """
        try:
            st = os.lstat(self.path)
            if S_ISLNK(st.st_mode):
                raise ImgDeltaCacheError(
                    f"Cache directory {self.path} is a symlink (not secure)"
                )
            if not S_ISDIR(st.st_mode):
                raise ImgDeltaCacheError(
                    f"Cache directory {self.path} exists but is not a directory"
                )
            return
        except FileNotFoundError:
            pass
        except OSError as err:
            raise ImgDeltaCacheError(
                f"Failed to stat cache directory {self.path}: {err}"
            ) from err
        try:
            os.makedirs(self.path, mode=_CACHE_DIR_MODE, exist_ok=True)
        except OSError as err:
            raise ImgDeltaCacheError(
                f"Failed to create cache directory {self.path}: {err}"
            ) from err

    def _remember(self, name: str, value: str):
        """
        Add ``value`` to the read cache, evicting the oldest entries to stay
        within ``max_memory``.
        """
        self._forget(name)
        size = len(value)
        if size > self.max_memory:
            return
        self._read_cache[name] = value
        self._cached_bytes += size
        while self._cached_bytes > self.max_memory:
            _, evicted = self._read_cache.popitem(last=False)
            self._cached_bytes -= len(evicted)

    def _forget(self, name: str):
        old = self._read_cache.pop(name, None)
        if old is not None:
            self._cached_bytes -= len(old)

    def get(self, key: str) -> Tuple[str, bool]:
        name = clean_key(key)
        if name in self._read_cache:
            self._read_cache.move_to_end(name)
            return (self._read_cache[name], True)
        try:
            path = os.path.join(self.path, name)
            with open(path, "r", encoding="utf8", newline="") as fp:
                value = fp.read()
        except FileNotFoundError:
            return ("", False)
        except (OSError, UnicodeDecodeError) as err:
            raise ImgDeltaCacheError(
                f"Failed to read cache entry '{key}' from {self.path}: {err}"
            ) from err
        self._remember(name, value)
        return (value, True)

    def set(self, key: str, value: str):
        name = clean_key(key)
        try:
            path = os.path.join(self.path, name)
            with open(path, "w", encoding="utf8", newline="") as fp:
                fp.write(value)
        except OSError as err:
            self._forget(name)
            raise ImgDeltaCacheError(
                f"Failed to write cache entry '{key}' to {self.path}: {err}"
            ) from err
        self._remember(name, value)

    def _names(self) -> Iterator[str]:
        try:
            with os.scandir(self.path) as entries:
                for entry in entries:
                    if entry.is_file(follow_symlinks=False):
                        yield entry.name
        except OSError as err:
            raise ImgDeltaCacheError(
                f"Failed to list cache directory {self.path}: {err}"
            ) from err

    def count(self) -> int:
        # Enumerates the whole directory: expensive for large caches.
        return sum(1 for _ in self._names())

    def items(self) -> Iterator[Tuple[str, str]]:
        for name in self._names():
            value, found = self.get(name)
            if found:
                yield (name, value)


class HybridCache:
    """
    Key/value cache that is promoted once from memory to disk.
    """

    def __init__(self, path: str, max_memory: int, max_items: int):
        """
        Initialise a new, empty ``HybridCache`` bound to ``path``.

        Nothing is written to ``path`` until the cache is promoted.

        :param path: Directory used once the cache is disk-backed.
        :type path: ``str``
        :param max_memory: Maximum bytes of entry data to keep cached in
                           memory once disk-backed.
        :type max_memory: ``int``
        :param max_items: Entry count that triggers promotion to disk, or 0
                          to keep the cache in memory forever.
        :type max_items: ``int``
        """
        if max_memory < 0 or max_items < 0:
            raise ImgDeltaArgumentError(
                f"Invalid cache limits: max_memory={max_memory}, max_items={max_items}"
            )
        self.path: str = path
        self.max_memory: int = max_memory
        self.max_items: int = max_items
        self._store: CacheStore = MemoryStore()

    def __repr__(self):
        return (
            f"HybridCache('{self.path}', {self.max_memory}, {self.max_items})"
            f" [{'disk' if self.promoted else 'memory'}]"
        )

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, key: str) -> bool:
        _, found = self.get(key)
        return found

    @property
    def promoted(self) -> bool:
        """
        ``True`` if this cache is disk-backed.
        """
        return isinstance(self._store, DiskStore)

    def _promote(self):
        """
        Move every entry to a new ``DiskStore`` and drop the memory store.
        """
        if self.promoted:
            return
        memory = self._store
        _log_debug_cache(
            "Promoting cache with %d entries to disk at %s", memory.count(), self.path
        )
        disk = DiskStore(self.path, self.max_memory)
        for key, value in memory.items():
            disk.set(key, value)
        self._store = disk

    def set(self, key: str, value: str):
        """
        Insert or overwrite ``key``.

        If the cache is still in memory and already holds ``max_items``
        entries it is promoted before the write.

        :param key: The entry key.
        :type key: ``str``
        :param value: The entry value.
        :type value: ``str``
        """
        if (
            not self.promoted
            and self.max_items != 0
            and self._store.count() >= self.max_items
        ):
            self._promote()
        self._store.set(key, value)

    def set_value(self, key: str, value: Any):
        """
        Store ``value`` encoded as JSON. Use ``CacheResult.unmarshal()`` to
        decode it.

        :param key: The entry key.
        :type key: ``str``
        :param value: A JSON-serializable object.
        """
        try:
            data = json.dumps(value)
        except (TypeError, ValueError) as err:
            raise ImgDeltaCacheError(
                f"Cannot encode cache value for '{key}': {err}"
            ) from err
        self.set(key, data)

    def get(self, key: str) -> Tuple[str, bool]:
        """
        Look up ``key``.

        :param key: The entry key.
        :type key: ``str``
        :returns: A 2-tuple of the value (empty if absent) and a flag that
                  is ``True`` if the key was found.
        :rtype: ``Tuple[str, bool]``
        :raises: ``ImgDeltaCacheError`` if a disk entry exists but cannot
                 be read.
        """
        return self._store.get(key)

    def count(self) -> int:
        """
        Return the number of entries. On disk this enumerates the cache
        directory.

        :rtype: ``int``
        """
        return self._store.count()

    def all(self, visit: Callable[[CacheResult], None]):
        """
        Call ``visit`` once for each entry in the active store.

        :param visit: A callable taking a ``CacheResult``.
        """
        for key, value in self._store.items():
            visit(CacheResult(key, value))

    def clean(self):
        """
        Discard all entries, return to the in-memory state and remove the
        cache directory.
        """
        _log_debug_cache("Cleaning cache at %s", self.path)
        self._store = MemoryStore()
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as err:
            raise ImgDeltaCacheError(
                f"Failed to remove cache directory {self.path}: {err}"
            ) from err


__all__ = [
    "CacheResult",
    "CacheStore",
    "MemoryStore",
    "DiskStore",
    "HybridCache",
    "clean_key",
]
