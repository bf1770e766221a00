# Copyright Red Hat
#
# tests/image/test_apply.py - Archive apply tests
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import tempfile
import stat
import os
import io

from imgdelta import ImgDeltaApplyError
from imgdelta.image.apply import TarApplier
from imgdelta.image.filters import keep_all
from imgdelta.image.options import ExtractOptions

from ._util import make_stream


class TestTarApplier(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dest = os.path.join(self._tmp.name, "dest")
        self.applier = TarApplier()

    def tearDown(self):
        for root, dirs, _files in os.walk(self.dest):
            for name in dirs:
                os.chmod(os.path.join(root, name), 0o755)
        self._tmp.cleanup()

    def _path(self, *parts):
        return os.path.join(self.dest, *parts)

    def test_apply_entries(self):
        stream = make_stream(
            [
                ("usr", None),
                ("usr/bin", None),
                ("usr/bin/tool", b"#!/bin/sh\n"),
                ("usr/bin/link", ("sym", "tool")),
                ("usr/bin/hard", ("lnk", "usr/bin/tool")),
            ]
        )
        written = self.applier.apply(self.dest, stream, keep_all)
        self.assertEqual(written, 10)
        with open(self._path("usr", "bin", "tool"), "rb") as fp:
            self.assertEqual(fp.read(), b"#!/bin/sh\n")
        self.assertEqual(os.readlink(self._path("usr", "bin", "link")), "tool")
        self.assertEqual(
            os.stat(self._path("usr", "bin", "hard")).st_ino,
            os.stat(self._path("usr", "bin", "tool")).st_ino,
        )
        self.assertEqual(
            stat.S_IMODE(os.stat(self._path("usr", "bin", "tool")).st_mode), 0o644
        )

    def test_filtered_entries_not_written(self):
        stream = make_stream([("keep", b"1234"), ("drop", b"123456")])
        written = self.applier.apply(
            self.dest, stream, lambda hdr: hdr.name != "drop"
        )
        self.assertEqual(written, 4)
        self.assertTrue(os.path.exists(self._path("keep")))
        self.assertFalse(os.path.exists(self._path("drop")))

    def test_implicit_parents_created(self):
        stream = make_stream([("a/b/c/file", b"x")])
        self.applier.apply(self.dest, stream, keep_all)
        self.assertTrue(os.path.isfile(self._path("a", "b", "c", "file")))

    def test_read_only_directory_populated(self):
        stream = make_stream([("ro", None), ("ro/file", b"data")], modes={"ro": 0o555})
        self.applier.apply(self.dest, stream, keep_all)
        self.assertTrue(os.path.isfile(self._path("ro", "file")))
        self.assertEqual(stat.S_IMODE(os.stat(self._path("ro")).st_mode), 0o555)

    def test_empty_stream(self):
        self.assertEqual(self.applier.apply(self.dest, io.BytesIO(b""), keep_all), 0)
        self.assertTrue(os.path.isdir(self.dest))

    def test_escaping_member_rejected(self):
        stream = make_stream([("../evil", b"x")])
        with self.assertRaises(ImgDeltaApplyError) as ctx:
            self.applier.apply(self.dest, stream, keep_all)
        self.assertEqual(ctx.exception.where, self.dest)
        self.assertFalse(os.path.exists(os.path.join(self._tmp.name, "evil")))

    def test_escaping_whiteout_rejected(self):
        stream = make_stream([("../.wh.victim", b"")])
        victim = os.path.join(self._tmp.name, "victim")
        with open(victim, "w", encoding="utf8") as fp:
            fp.write("x")
        with self.assertRaises(ImgDeltaApplyError):
            self.applier.apply(self.dest, stream, keep_all)
        self.assertTrue(os.path.exists(victim))

    def test_whiteout_removes_target(self):
        self.applier.apply(
            self.dest,
            make_stream([("etc", None), ("etc/motd", b"x"), ("etc/hosts", b"y")]),
            keep_all,
        )
        self.applier.apply(self.dest, make_stream([("etc/.wh.motd", b"")]), keep_all)
        self.assertFalse(os.path.exists(self._path("etc", "motd")))
        self.assertTrue(os.path.exists(self._path("etc", "hosts")))
        self.assertFalse(os.path.exists(self._path("etc", ".wh.motd")))

    def test_opaque_marker_clears_directory(self):
        self.applier.apply(
            self.dest,
            make_stream([("var", None), ("var/a", b"a"), ("var/sub", None), ("var/sub/b", b"b")]),
            keep_all,
        )
        self.applier.apply(
            self.dest, make_stream([("var/.wh..wh..opq", b""), ("var/c", b"c")]), keep_all
        )
        self.assertEqual(os.listdir(self._path("var")), ["c"])

    def test_apply_error_wrapped(self):
        os.makedirs(self.dest)
        # A directory where a regular file is expected.
        os.makedirs(self._path("file", "inner"))
        stream = make_stream([("file", b"x")])
        with self.assertRaises(ImgDeltaApplyError) as ctx:
            self.applier.apply(self.dest, stream, keep_all)
        self.assertEqual(ctx.exception.name, "file")
        self.assertIsNotNone(ctx.exception.__cause__)

    def test_same_owner_disabled(self):
        stream = make_stream([("file", b"x")])
        options = ExtractOptions(same_owner=False, numeric_owner=True)
        self.applier.apply(self.dest, stream, keep_all, options)
        st = os.stat(self._path("file"))
        self.assertEqual(st.st_uid, os.getuid())
        self.assertEqual(st.st_gid, os.getgid())

    def test_special_modes_preserved(self):
        stream = make_stream(
            [("tmp", None), ("usr/bin/su", b"elf"), ("shared", b"s")],
            modes={"tmp": 0o1777, "usr/bin/su": 0o4755, "shared": 0o664},
        )
        self.applier.apply(self.dest, stream, keep_all)
        self.assertEqual(stat.S_IMODE(os.stat(self._path("tmp")).st_mode), 0o1777)
        self.assertEqual(
            stat.S_IMODE(os.stat(self._path("usr", "bin", "su")).st_mode), 0o4755
        )
        self.assertEqual(stat.S_IMODE(os.stat(self._path("shared")).st_mode), 0o664)

    def test_absolute_member_names(self):
        stream = make_stream([("/etc/hosts", b"h"), ("/etc/hosts.lnk", ("lnk", "/etc/hosts"))])
        self.applier.apply(self.dest, stream, keep_all)
        self.assertEqual(
            os.stat(self._path("etc", "hosts")).st_ino,
            os.stat(self._path("etc", "hosts.lnk")).st_ino,
        )

    def test_escaping_hardlink_rejected(self):
        stream = make_stream([("evil", ("lnk", "../outside"))])
        with self.assertRaises(ImgDeltaApplyError):
            self.applier.apply(self.dest, stream, keep_all)

    def test_whiteout_removes_symlink_not_target(self):
        self.applier.apply(
            self.dest,
            make_stream(
                [("usr", None), ("usr/lib", None), ("usr/lib/libc.so", b"c"), ("lib", ("sym", "usr/lib"))]
            ),
            keep_all,
        )
        self.applier.apply(self.dest, make_stream([(".wh.lib", b"")]), keep_all)
        self.assertFalse(os.path.lexists(self._path("lib")))
        self.assertTrue(os.path.isfile(self._path("usr", "lib", "libc.so")))

    def test_whiteout_removes_absolute_symlink(self):
        os.makedirs(self.dest)
        os.symlink("/usr/lib", self._path("lib"))
        self.applier.apply(self.dest, make_stream([(".wh.lib", b"")]), keep_all)
        self.assertFalse(os.path.lexists(self._path("lib")))
