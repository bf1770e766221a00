# Copyright Red Hat
#
# imgdelta/image/stream.py - Archive stream reading
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Sequential reading of image archive streams.
"""
from typing import BinaryIO, Iterator
from contextlib import contextmanager
import tarfile
import logging

from imgdelta import ImgDeltaStreamError

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Stream errors raised by ``tarfile`` and the underlying reader
STREAM_ERRORS = (tarfile.TarError, OSError, EOFError)


class _PeekReader:
    """
    Minimal reader wrapper that reports whether the wrapped stream holds
    any data without requiring it to be seekable.
    """

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._head = stream.read(1)

    @property
    def empty(self) -> bool:
        """``True`` if the wrapped stream was empty."""
        return not self._head

    def read(self, size: int = -1) -> bytes:
        if not self._head:
            return self._stream.read(size)
        head, self._head = self._head, b""
        if size is None or size < 0:
            return head + self._stream.read()
        if size == 0:
            self._head = head
            return b""
        return head + self._stream.read(size - 1)


@contextmanager
def open_archive(stream: BinaryIO) -> Iterator[tarfile.TarFile]:
    """
    Open ``stream`` as a sequential tar archive.

    The stream may be uncompressed or gzip, bzip2 or xz compressed. It is
    never seeked. An empty stream is treated as an empty archive.

    :param stream: A binary file-like object.
    :returns: A context manager yielding a ``tarfile.TarFile`` in stream
              mode, or ``None`` for an empty stream.
    :raises: ``ImgDeltaStreamError`` if the archive cannot be opened.
    """
    try:
        reader = _PeekReader(stream)
    except OSError as err:
        raise ImgDeltaStreamError(f"Error reading archive stream: {err}") from err
    if reader.empty:
        yield None
        return
    try:
        tar = tarfile.open(fileobj=reader, mode="r|*")
    except STREAM_ERRORS as err:
        raise ImgDeltaStreamError(f"Error opening archive stream: {err}") from err
    with tar:
        yield tar


def iter_members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    """
    Iterate over the members of a stream-mode ``TarFile``, mapping read
    failures to ``ImgDeltaStreamError``.

    Member content may be read (with ``tar.extractfile()``) or extracted
    before advancing the iterator.

    :param tar: An open archive from ``open_archive()``.
    :returns: An iterator over ``tarfile.TarInfo`` headers.
    """
    if tar is None:
        return
    iterator = iter(tar)
    while True:
        try:
            member = next(iterator)
        except StopIteration:
            break
        except STREAM_ERRORS as err:
            raise ImgDeltaStreamError(f"Error reading archive stream: {err}") from err
        yield member

    # tarfile ends stream-mode iteration quietly when member data is cut
    # short: the next header offset lies beyond the bytes actually read.
    consumed = getattr(tar.fileobj, "pos", None)
    if consumed is not None and consumed < tar.offset:
        raise ImgDeltaStreamError(
            f"Truncated archive stream: expected {tar.offset} bytes, read {consumed}"
        )


def iter_headers(stream: BinaryIO) -> Iterator[tarfile.TarInfo]:
    """
    Iterate over every entry header in an archive stream, front to back.

    End of stream terminates the iteration normally. Any other read failure
    raises ``ImgDeltaStreamError``.

    :param stream: A binary file-like object.
    :returns: An iterator over ``tarfile.TarInfo`` headers.
    """
    with open_archive(stream) as tar:
        yield from iter_members(tar)


__all__ = [
    "STREAM_ERRORS",
    "open_archive",
    "iter_members",
    "iter_headers",
]
