# Copyright Red Hat
#
# imgdelta/image/apply.py - File system apply of archive streams
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Writing filtered archive entries to a destination directory.
"""
from typing import BinaryIO, List, Optional
from abc import ABC, abstractmethod
import posixpath
import tarfile
import logging
import shutil
import os

from imgdelta import IMGDELTA_SUBSYSTEM_EXTRACT, ImgDeltaApplyError

from .filters import ExtractionFilter
from .options import ExtractOptions
from .source import WHITEOUT_OPAQUE, WHITEOUT_PREFIX
from .stream import iter_members, open_archive

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_extract(msg, *args, **kwargs):
    """A wrapper for extract subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": IMGDELTA_SUBSYSTEM_EXTRACT}, **kwargs)


class Applier(ABC):
    """
    Abstract capability writing the entries of an archive stream to disk.
    """

    @abstractmethod
    def apply(
        self,
        path: str,
        stream: BinaryIO,
        keep: ExtractionFilter,
        options: Optional[ExtractOptions] = None,
    ) -> int:
        """
        Write every entry of ``stream`` accepted by ``keep`` below ``path``.

        :param path: The destination directory.
        :type path: ``str``
        :param stream: The archive stream, read once.
        :type stream: ``BinaryIO``
        :param keep: The extraction filter.
        :type keep: ``ExtractionFilter``
        :param options: Apply options.
        :type options: ``Optional[ExtractOptions]``
        :returns: The number of bytes written.
        :rtype: ``int``
        """


def _target_path(dest: str, name: str) -> str:
    """
    Return the location of archive member ``name`` below ``dest``, refusing
    names that resolve outside of it.
    """
    dest_real = os.path.realpath(dest)
    target = os.path.realpath(os.path.join(dest_real, name.lstrip("/")))
    if os.path.commonpath([dest_real, target]) != dest_real:
        raise ImgDeltaApplyError(name, dest, "path is outside the destination")
    return target


def _remove_path(target: str):
    if os.path.isdir(target) and not os.path.islink(target):
        shutil.rmtree(target)
    elif os.path.lexists(target):
        os.unlink(target)


class TarApplier(Applier):
    """
    Apply archive streams with ``tarfile``.

    Modes, timestamps, symbolic and hard links are restored. Ownership is
    restored only when running as root and ``ExtractOptions.same_owner`` is
    set. Directory attributes are applied once the stream is exhausted so
    that read-only directories can still be populated. Whiteout entries
    remove the path they name instead of being written.
    """

    def _filter_member(
        self, member: tarfile.TarInfo, path: str, options: ExtractOptions
    ) -> tarfile.TarInfo:
        """
        Return a copy of ``member`` relative to ``path``, refusing names and
        hard link targets outside of it. Modes are kept as archived.
        """
        name = posixpath.normpath(member.name.lstrip("/") or ".")
        if name == ".." or name.startswith("../"):
            raise ImgDeltaApplyError(
                member.name, path, "path is outside the destination"
            )
        _target_path(path, posixpath.dirname(name))

        changes = {"name": name}
        if member.islnk():
            linkname = posixpath.normpath(member.linkname.lstrip("/"))
            _target_path(path, linkname)
            changes["linkname"] = linkname
        if not options.same_owner:
            changes.update(uid=os.getuid(), gid=os.getgid(), uname=None, gname=None)
        return member.replace(**changes, deep=False)

    def _apply_whiteout(self, path: str, member: tarfile.TarInfo) -> bool:
        """
        Remove the path named by a whiteout ``member``.

        :returns: ``True`` if ``member`` was a whiteout.
        """
        name = posixpath.normpath(member.name)
        basename = posixpath.basename(name)
        if not basename.startswith(WHITEOUT_PREFIX):
            return False

        parent = _target_path(path, posixpath.dirname(name))
        try:
            if basename == WHITEOUT_OPAQUE:
                _log_debug_extract("Clearing opaque directory %s", parent)
                if os.path.isdir(parent):
                    for entry in os.listdir(parent):
                        _remove_path(os.path.join(parent, entry))
            else:
                hidden = basename[len(WHITEOUT_PREFIX) :]
                if hidden in ("", ".", ".."):
                    raise ImgDeltaApplyError(
                        member.name, path, "invalid whiteout name"
                    )
                # The whiteout names the entry itself, never a link target.
                target = os.path.join(parent, hidden)
                _log_debug_extract("Removing whiteout target %s", target)
                _remove_path(target)
        except OSError as err:
            raise ImgDeltaApplyError(member.name, path, str(err)) from err
        return True

    def _finish_dirs(
        self, tar: tarfile.TarFile, path: str, dirs: List[tarfile.TarInfo], options
    ):
        """
        Set ownership, times and modes of extracted directories, deepest
        first.
        """
        dirs.sort(key=lambda member: member.name, reverse=True)
        for member in dirs:
            dirpath = os.path.join(path, member.name)
            try:
                tar.chown(member, dirpath, options.numeric_owner)
                tar.utime(member, dirpath)
                tar.chmod(member, dirpath)
            except (OSError, tarfile.ExtractError) as err:
                raise ImgDeltaApplyError(member.name, path, str(err)) from err

    def apply(
        self,
        path: str,
        stream: BinaryIO,
        keep: ExtractionFilter,
        options: Optional[ExtractOptions] = None,
    ) -> int:
        options = options or ExtractOptions()
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as err:
            raise ImgDeltaApplyError(".", path, str(err)) from err

        written = 0
        kept = 0
        dirs = []
        with open_archive(stream) as tar:
            for member in iter_members(tar):
                if not keep(member):
                    continue
                if self._apply_whiteout(path, member):
                    continue
                try:
                    member = self._filter_member(member, path, options)
                    tar.extract(
                        member,
                        path,
                        set_attrs=not member.isdir(),
                        numeric_owner=options.numeric_owner,
                        filter="fully_trusted",
                    )
                except (OSError, tarfile.TarError) as err:
                    raise ImgDeltaApplyError(member.name, path, str(err)) from err
                if member.isdir():
                    dirs.append(member)
                kept += 1
                written += member.size
            if tar is not None:
                self._finish_dirs(tar, path, dirs, options)

        _log_debug_extract("Applied %d entries (%d bytes) to %s", kept, written, path)
        return written


__all__ = [
    "Applier",
    "TarApplier",
]
