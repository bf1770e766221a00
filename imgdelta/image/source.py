# Copyright Red Hat
#
# imgdelta/image/source.py - Image content sources
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Image content sources.

An ``ImageSource`` produces one continuous archive stream holding the
flattened file system of an image: all layers merged, upper layers shadowing
lower ones, whiteouts already resolved. The engine reads these streams once,
front to back.
"""
from typing import BinaryIO, Dict, List, Sequence, Set
from abc import ABC, abstractmethod
from io import BytesIO
import posixpath
import tempfile
import tarfile
import logging

import zstandard as zstd

from imgdelta import (
    ImgDeltaNotFoundError,
    ImgDeltaStreamError,
)

from .stream import STREAM_ERRORS, iter_members, open_archive

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Prefix marking a whiteout entry in a layer
WHITEOUT_PREFIX: str = ".wh."

#: Name of the opaque directory marker entry
WHITEOUT_OPAQUE: str = WHITEOUT_PREFIX + WHITEOUT_PREFIX + ".opq"

#: Zstandard frame magic number
_ZSTD_MAGIC: bytes = b"\x28\xb5\x2f\xfd"

#: Flattened archives larger than this are spooled to disk
_SPOOL_MAX_SIZE: int = 64 * 2**20


class ImageSource(ABC):
    """
    Abstract provider of a flattened image file system stream.
    """

    #: A human readable name for this image
    name: str = ""

    def __str__(self):
        return self.name

    @abstractmethod
    def open(self) -> BinaryIO:
        """
        Return a new binary stream holding the flattened image archive. The
        caller is responsible for closing it.
        """


def _open_maybe_zstd(path: str) -> BinaryIO:
    """
    Open the file at ``path`` for reading, transparently decompressing
    zstandard data. Other compression formats are handled by ``tarfile``.

    :param path: The file to open.
    :type path: ``str``
    :returns: A binary stream.
    """
    try:
        # pylint: disable=consider-using-with
        fp = open(path, "rb")
    except FileNotFoundError as err:
        raise ImgDeltaNotFoundError(f"Image archive {path} does not exist") from err
    except OSError as err:
        raise ImgDeltaStreamError(f"Error opening image archive {path}: {err}") from err

    try:
        magic = fp.read(len(_ZSTD_MAGIC))
        fp.seek(0)
    except OSError as err:
        fp.close()
        raise ImgDeltaStreamError(f"Error reading image archive {path}: {err}") from err

    if magic == _ZSTD_MAGIC:
        _log_debug("Opening %s as zstd compressed archive", path)
        dctx = zstd.ZstdDecompressor()
        return dctx.stream_reader(fp, closefd=True)
    return fp


class TarballImageSource(ImageSource):
    """
    An image exported as a single root file system tarball.
    """

    def __init__(self, path: str, name: str = ""):
        """
        Initialise a new ``TarballImageSource``.

        :param path: Path to the exported tarball (plain, gzip, bzip2, xz
                     or zstd compressed).
        :type path: ``str``
        :param name: An optional display name (defaults to ``path``).
        :type name: ``str``
        """
        self.path: str = path
        self.name = name or path

    def open(self) -> BinaryIO:
        return _open_maybe_zstd(self.path)


class BytesImageSource(ImageSource):
    """
    An image archive held in memory.
    """

    def __init__(self, name: str, data: bytes):
        self.name = name
        self.data: bytes = data

    def open(self) -> BinaryIO:
        return BytesIO(self.data)


def _in_whiteout_dir(seen: Dict[str, bool], name: str) -> bool:
    """
    Return ``True`` if any parent directory of ``name`` was hidden by an
    upper layer (a whiteout or a non-directory entry).
    """
    parent = posixpath.dirname(name)
    while parent not in ("", "/", "."):
        if seen.get(parent, False):
            return True
        parent = posixpath.dirname(parent)
    return False


def _in_opaque_dir(opaque: Set[str], name: str) -> bool:
    """
    Return ``True`` if ``name`` lies below a directory made opaque by an
    upper layer.
    """
    parent = posixpath.dirname(name) or "."
    while True:
        if parent in opaque:
            return True
        if parent in ("/", "."):
            return False
        parent = posixpath.dirname(parent) or "."


class LayeredImageSource(ImageSource):
    """
    An image described by an ordered stack of layer archives, flattened on
    demand into a single stream.
    """

    def __init__(self, layers: Sequence[ImageSource], name: str = ""):
        """
        Initialise a new ``LayeredImageSource``.

        :param layers: Layer sources ordered from the base layer upwards.
        :type layers: ``Sequence[ImageSource]``
        :param name: An optional display name.
        :type name: ``str``
        """
        self.layers: List[ImageSource] = list(layers)
        self.name = name or "+".join(str(layer) for layer in self.layers)

    def _flatten_layer(
        self,
        layer: ImageSource,
        out: tarfile.TarFile,
        seen: Dict[str, bool],
        opaque: Set[str],
    ) -> Set[str]:
        """
        Copy the visible entries of one layer into ``out``.

        :returns: The directories this layer marks opaque.
        """
        layer_opaque = set()
        with layer.open() as stream:
            with open_archive(stream) as tar:
                for member in iter_members(tar):
                    member.name = posixpath.normpath(member.name)
                    basename = posixpath.basename(member.name)
                    dirname = posixpath.dirname(member.name)

                    if basename == WHITEOUT_OPAQUE:
                        layer_opaque.add(dirname or ".")
                        continue

                    tombstone = basename.startswith(WHITEOUT_PREFIX)
                    if tombstone:
                        basename = basename[len(WHITEOUT_PREFIX) :]
                    name = posixpath.join(dirname, basename)

                    if name in seen:
                        continue
                    if _in_whiteout_dir(seen, name) or _in_opaque_dir(opaque, name):
                        continue

                    # Non-directories implicitly hide any lower entries below them.
                    seen[name] = tombstone or not member.isdir()
                    if tombstone:
                        continue

                    fileobj = tar.extractfile(member) if member.isreg() else None
                    try:
                        out.addfile(member, fileobj)
                    except STREAM_ERRORS as err:
                        raise ImgDeltaStreamError(
                            f"Error flattening layer {layer}: {err}"
                        ) from err
        return layer_opaque

    def open(self) -> BinaryIO:
        # pylint: disable=consider-using-with
        spool = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_SIZE)
        seen: Dict[str, bool] = {}
        opaque: Set[str] = set()
        try:
            with tarfile.open(fileobj=spool, mode="w", format=tarfile.PAX_FORMAT) as out:
                for layer in reversed(self.layers):
                    _log_debug("Flattening layer %s of %s", layer, self.name)
                    opaque |= self._flatten_layer(layer, out, seen, opaque)
            spool.seek(0)
        except BaseException:
            spool.close()
            raise
        return spool


__all__ = [
    "WHITEOUT_PREFIX",
    "WHITEOUT_OPAQUE",
    "ImageSource",
    "TarballImageSource",
    "BytesImageSource",
    "LayeredImageSource",
]
