# Copyright Red Hat
#
# imgdelta/image/tmpdir.py - Scoped temporary directory allocator
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Scoped temporary directories for extraction destinations and cache stores.

Every operation that needs scratch space allocates a fresh directory below a
common root. The owner of the ``TempDirs`` instance removes the whole root
with ``clean()`` when the work is finished.
"""
from typing import Optional
from stat import S_ISDIR, S_ISLNK
import tempfile
import logging
import shutil
import os

from imgdelta import ImgDeltaSystemError

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Name of the default temporary root below the system temporary directory
_TMPDIR_NAME: str = "imgdelta"

#: Temporary root directory mode
_TMPDIR_MODE: int = 0o700

_default_tempdirs: Optional["TempDirs"] = None


class TempDirs:
    """
    Allocator for disposable directories below a common root.
    """

    def __init__(self, root: str):
        """
        Initialise a new ``TempDirs`` allocator rooted at ``root``.

        The root directory is not created until the first allocation.

        :param root: The directory that will contain all allocations.
        :type root: ``str``
        """
        self.root: str = root

    def __str__(self):
        return self.root

    def __repr__(self):
        return f"TempDirs('{self.root}')"

    def _init(self):
        """
        Create the root directory if it does not exist, refusing to use a
        symlink or a non-directory.
        """
        try:
            st = os.lstat(self.root)
            if S_ISLNK(st.st_mode):
                raise ImgDeltaSystemError(
                    f"Temporary root {self.root} is a symlink (not secure)"
                )
            if not S_ISDIR(st.st_mode):
                raise ImgDeltaSystemError(
                    f"Temporary root {self.root} exists but is not a directory"
                )
            return
        except FileNotFoundError:
            pass
        except OSError as err:
            raise ImgDeltaSystemError(
                f"Failed to stat temporary root {self.root}: {err}"
            ) from err

        try:
            os.makedirs(self.root, mode=_TMPDIR_MODE, exist_ok=True)
        except OSError as err:
            raise ImgDeltaSystemError(
                f"Failed to create temporary root {self.root}: {err}"
            ) from err

    def temp_dir(self, pattern: str) -> str:
        """
        Create a new, empty directory below the root.

        :param pattern: A prefix for the directory name.
        :type pattern: ``str``
        :returns: The path to the new directory.
        :rtype: ``str``
        """
        self._init()
        try:
            path = tempfile.mkdtemp(prefix=pattern, dir=self.root)
        except OSError as err:
            raise ImgDeltaSystemError(
                f"Failed to create temporary directory in {self.root}: {err}"
            ) from err
        _log_debug("Allocated temporary directory %s", path)
        return path

    def clean(self):
        """
        Remove the root directory and every allocation below it.
        """
        _log_debug("Removing temporary root %s", self.root)
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError as err:
            raise ImgDeltaSystemError(
                f"Failed to remove temporary root {self.root}: {err}"
            ) from err


def default_tempdirs() -> TempDirs:
    """
    Return the process-wide ``TempDirs`` allocator rooted below the system
    temporary directory.

    :returns: The shared allocator.
    :rtype: ``TempDirs``
    """
    # pylint: disable=global-statement
    global _default_tempdirs
    if _default_tempdirs is None:
        _default_tempdirs = TempDirs(os.path.join(tempfile.gettempdir(), _TMPDIR_NAME))
    return _default_tempdirs


__all__ = [
    "TempDirs",
    "default_tempdirs",
]
