# Copyright Red Hat
#
# tests/image/_util.py - Image delta engine test utilities.
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
import io
import tarfile

_MTIME = 1600000000


def make_tar(entries, fmt=tarfile.PAX_FORMAT, modes=None):
    """
    Build an uncompressed tar archive in memory.

    ``entries`` is a list of ``(name, content)`` pairs where ``content`` is
    ``bytes`` for a regular file, ``None`` for a directory, ``("sym", target)``
    for a symbolic link, ``("lnk", target)`` for a hard link, or an ``int``
    for a regular file of that many ``x`` bytes.
    ``modes`` optionally maps entry names to permission bits.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=fmt) as tar:
        for name, content in entries:
            info = tarfile.TarInfo(name)
            info.mtime = _MTIME
            data = None
            if content is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
            elif isinstance(content, tuple):
                kind, target = content
                info.type = tarfile.SYMTYPE if kind == "sym" else tarfile.LNKTYPE
                info.linkname = target
                info.mode = 0o777
            else:
                if isinstance(content, int):
                    content = b"x" * content
                info.mode = 0o644
                info.size = len(content)
                data = io.BytesIO(content)
            if modes and name in modes:
                info.mode = modes[name]
            tar.addfile(info, data)
    return buf.getvalue()


def make_stream(entries, modes=None):
    """Return a readable stream holding a tar archive of ``entries``."""
    return io.BytesIO(make_tar(entries, modes=modes))


def header(name, size=0, is_dir=False):
    """Return a ``tarfile.TarInfo`` header without an archive."""
    info = tarfile.TarInfo(name)
    info.size = size
    if is_dir:
        info.type = tarfile.DIRTYPE
    return info


def names(stream_or_bytes):
    """Return the member names of an archive as a list."""
    if isinstance(stream_or_bytes, bytes):
        stream_or_bytes = io.BytesIO(stream_or_bytes)
    with tarfile.open(fileobj=stream_or_bytes, mode="r|*") as tar:
        return [member.name for member in tar]
