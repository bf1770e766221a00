# Copyright Red Hat
#
# imgdelta/image/delta.py - Image file system delta engine
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Three-way comparison of two image archive streams.
"""
from typing import Any, BinaryIO, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from hashlib import sha256
from datetime import datetime
import logging
import json

from imgdelta import IMGDELTA_SUBSYSTEM_DELTA, ImgDeltaStreamError, ImgDeltaParseError

from .source import ImageSource
from .stream import STREAM_ERRORS, iter_members, open_archive

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_delta(msg, *args, **kwargs):
    """A wrapper for delta subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": IMGDELTA_SUBSYSTEM_DELTA}, **kwargs)


@dataclass(frozen=True)
class ImageDiffNode:
    """
    One file system entry as recorded in an archive header.
    """

    #: The entry name as stored in the archive
    name: str
    #: The entry size in bytes
    size: int
    #: Hex SHA-256 digest of regular file content, if computed
    digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this ``ImageDiffNode`` into a flat dictionary suitable for
        encoding as JSON.

        :returns: A dictionary with ``Name`` and ``Size`` keys, plus
                  ``Digest`` when a digest was computed.
        :rtype: ``Dict[str, Any]``
        """
        out = {"Name": self.name, "Size": self.size}
        if self.digest is not None:
            out["Digest"] = self.digest
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageDiffNode":
        """
        Initialise an ``ImageDiffNode`` from a dictionary produced by
        ``to_dict()``.
        """
        try:
            return cls(str(data["Name"]), int(data["Size"]), data.get("Digest"))
        except (KeyError, TypeError, ValueError) as err:
            raise ImgDeltaParseError(f"Malformed diff node: {data!r}") from err


#: Comparison strategy: returns ``True`` if two nodes differ
CompareFunc = Callable[[ImageDiffNode, ImageDiffNode], bool]


def compare_size(src: ImageDiffNode, dst: ImageDiffNode) -> bool:
    """
    Treat two entries as changed if their recorded sizes differ. Entries of
    equal size are considered unchanged even if their content differs.
    """
    return src.size != dst.size


def compare_digest(src: ImageDiffNode, dst: ImageDiffNode) -> bool:
    """
    Treat two entries as changed if their sizes or content digests differ.
    Entries without a digest on either side are compared by size only.
    """
    if src.size != dst.size:
        return True
    if src.digest is None or dst.digest is None:
        return False
    return src.digest != dst.digest


@dataclass
class ImageDiff:
    """
    Additions, deletions and changes between two image file systems.
    """

    #: Entries present in the destination only
    additions: List[ImageDiffNode] = field(default_factory=list)
    #: Entries present in the source only
    deletions: List[ImageDiffNode] = field(default_factory=list)
    #: Entries present in both that differ (destination node)
    changes: List[ImageDiffNode] = field(default_factory=list)

    def __len__(self):
        """
        Return the total number of differences.
        """
        return len(self.additions) + len(self.deletions) + len(self.changes)

    def __str__(self):
        """
        Return a human readable listing of this ``ImageDiff``.
        """
        lines = []
        for mark, nodes in (
            ("+", self.additions),
            ("-", self.deletions),
            ("~", self.changes),
        ):
            lines.extend(f"{mark} {node.name} ({node.size})" for node in nodes)
        return "\n".join(lines)

    def summary(self) -> str:
        """
        Return a one line summary of this ``ImageDiff``.

        :rtype: ``str``
        """
        return (
            f"{len(self.additions)} added, {len(self.deletions)} removed, "
            f"{len(self.changes)} changed"
        )

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Convert this ``ImageDiff`` into a dictionary suitable for encoding as
        JSON, using the ``Adds``/``Dels``/``Mods`` keys.

        :rtype: ``Dict[str, List[Dict[str, Any]]]``
        """
        return {
            "Adds": [node.to_dict() for node in self.additions],
            "Dels": [node.to_dict() for node in self.deletions],
            "Mods": [node.to_dict() for node in self.changes],
        }

    def json(self, pretty: bool = False) -> str:
        """
        Return the JSON representation of this ``ImageDiff``.

        :rtype: ``str``
        """
        return json.dumps(self.to_dict(), indent=4 if pretty else None)

    @classmethod
    def from_json(cls, value: str) -> "ImageDiff":
        """
        Initialise an ``ImageDiff`` from the output of ``json()``.
        """
        try:
            data = json.loads(value)
        except ValueError as err:
            raise ImgDeltaParseError(f"Malformed image diff JSON: {err}") from err

        def _nodes(key: str) -> List[ImageDiffNode]:
            return [ImageDiffNode.from_dict(node) for node in data.get(key) or []]

        return cls(_nodes("Adds"), _nodes("Dels"), _nodes("Mods"))


def _hash_member(tar, member) -> Optional[str]:
    """
    Return the hex SHA-256 digest of a regular file member's content.
    """
    fileobj = tar.extractfile(member)
    if fileobj is None:
        return None
    hasher = sha256(usedforsecurity=False)
    try:
        for chunk in iter(lambda: fileobj.read(65536), b""):
            hasher.update(chunk)
    except STREAM_ERRORS as err:
        raise ImgDeltaStreamError(
            f"Error reading content of '{member.name}': {err}"
        ) from err
    return hasher.hexdigest()


def read_nodes(stream: BinaryIO, digest: bool = False) -> Dict[str, ImageDiffNode]:
    """
    Read ``stream`` to completion and return a mapping of entry name to
    ``ImageDiffNode``. A name repeated later in the stream replaces the
    earlier entry.

    :param stream: A binary archive stream.
    :type stream: ``BinaryIO``
    :param digest: Compute content digests for regular files.
    :type digest: ``bool``
    :returns: Name to node mapping.
    :rtype: ``Dict[str, ImageDiffNode]``
    """
    nodes = {}
    with open_archive(stream) as tar:
        for member in iter_members(tar):
            content_digest = None
            if digest and member.isreg():
                content_digest = _hash_member(tar, member)
            nodes[member.name] = ImageDiffNode(member.name, member.size, content_digest)
    return nodes


def delta(
    source: BinaryIO,
    dest: BinaryIO,
    compare: CompareFunc = compare_size,
    digest: bool = False,
) -> ImageDiff:
    """
    Compare two archive streams.

    Both streams are read to completion. Destination names missing from the
    source are additions, source names missing from the destination are
    deletions, and names present in both for which ``compare`` reports a
    difference are changes (recorded with the destination node).

    :param source: The source (base) archive stream.
    :type source: ``BinaryIO``
    :param dest: The destination archive stream.
    :type dest: ``BinaryIO``
    :param compare: Comparison strategy for entries present in both.
    :type compare: ``CompareFunc``
    :param digest: Compute content digests (needed by ``compare_digest``).
    :type digest: ``bool``
    :returns: The three-way classification.
    :rtype: ``ImageDiff``
    :raises: ``ImgDeltaStreamError`` if either stream cannot be read.
    """
    start_time = datetime.now()
    files_src = read_nodes(source, digest=digest)
    files_dst = read_nodes(dest, digest=digest)
    _log_debug_delta(
        "Read %d source and %d destination entries", len(files_src), len(files_dst)
    )

    result = ImageDiff()
    for name, node in files_dst.items():
        src_node = files_src.get(name)
        if src_node is None:
            result.additions.append(node)
        elif compare(src_node, node):
            result.changes.append(node)

    for name, node in files_src.items():
        if name not in files_dst:
            result.deletions.append(node)

    end_time = datetime.now()
    _log_debug("Computed delta in %s: %s", end_time - start_time, result.summary())
    return result


def delta_images(
    source: ImageSource,
    dest: ImageSource,
    compare: CompareFunc = compare_size,
    digest: bool = False,
) -> ImageDiff:
    """
    Compare the flattened file systems of two images.

    :param source: The source (base) image.
    :type source: ``ImageSource``
    :param dest: The destination image.
    :type dest: ``ImageSource``
    :returns: The three-way classification.
    :rtype: ``ImageDiff``
    """
    _log_info("Computing delta between %s and %s", source, dest)
    with source.open() as src_stream, dest.open() as dst_stream:
        return delta(src_stream, dst_stream, compare=compare, digest=digest)


__all__ = [
    "ImageDiffNode",
    "ImageDiff",
    "CompareFunc",
    "compare_size",
    "compare_digest",
    "read_nodes",
    "delta",
    "delta_images",
]
