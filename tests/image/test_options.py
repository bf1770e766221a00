# Copyright Red Hat
#
# tests/image/test_options.py - Engine options tests.
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import tempfile
import os
from argparse import Namespace

from imgdelta import ImgDeltaArgumentError, ImgDeltaParseError
from imgdelta.image.options import (
    DEFAULT_CACHE_MAX_ITEMS,
    DEFAULT_CACHE_MAX_MEMORY,
    CacheOptions,
    EngineConfig,
    ExtractOptions,
)


class TestCacheOptions(unittest.TestCase):
    def test_defaults(self):
        opts = CacheOptions()
        self.assertEqual(opts.max_memory, 50 * 2**20)
        self.assertEqual(opts.max_items, 10000)

    def test_negative_limits(self):
        with self.assertRaises(ImgDeltaArgumentError):
            CacheOptions(max_memory=-1)
        with self.assertRaises(ImgDeltaArgumentError):
            CacheOptions(max_items=-1)


class TestExtractOptions(unittest.TestCase):
    def test_ExtractOptions__str__(self):
        opts = ExtractOptions(prefix_path="/usr", includes=("bin", "lib"))
        s = str(opts)
        self.assertIn("prefix_path=/usr", s)
        self.assertIn("includes=bin lib", s)
        self.assertIn("same_owner=True", s)

    def test_from_cmd_args(self):
        """Test initialization from argparse Namespace."""
        args = Namespace(
            numeric_owner=True,
            includes=["^/usr"],
            excludes=None,
            prefix_path=None,
            unknown_arg="ignored",
        )
        opts = ExtractOptions.from_cmd_args(args)

        self.assertTrue(opts.numeric_owner)
        self.assertEqual(opts.includes, ("^/usr",))
        self.assertEqual(opts.excludes, ())
        self.assertEqual(opts.prefix_path, "")
        # Should use defaults for missing args
        self.assertTrue(opts.same_owner)

    def test_frozen(self):
        opts = ExtractOptions()
        with self.assertRaises(AttributeError):
            opts.same_owner = False


class TestEngineConfig(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "imgdelta.conf")

    def tearDown(self):
        self._tmp.cleanup()

    def _write(self, text):
        with open(self.path, "w", encoding="utf8") as fp:
            fp.write(text)

    def test_missing_file_defaults(self):
        cfg = EngineConfig.from_file(self.path)
        self.assertEqual(cfg, EngineConfig())
        self.assertIsNone(cfg.tmpdir)
        self.assertEqual(cfg.cache.max_memory, DEFAULT_CACHE_MAX_MEMORY)
        self.assertEqual(cfg.cache.max_items, DEFAULT_CACHE_MAX_ITEMS)

    def test_from_file(self):
        self._write(
            "[global]\n"
            "tmpdir = /var/tmp/imgdelta\n"
            "[cache]\n"
            "max_memory = 8MiB\n"
            "max_items = 500\n"
            "[extract]\n"
            "same_owner = no\n"
            "numeric_owner = yes\n"
        )
        cfg = EngineConfig.from_file(self.path)
        self.assertEqual(cfg.tmpdir, "/var/tmp/imgdelta")
        self.assertEqual(cfg.cache.max_memory, 8 * 2**20)
        self.assertEqual(cfg.cache.max_items, 500)
        self.assertFalse(cfg.extract.same_owner)
        self.assertTrue(cfg.extract.numeric_owner)

    def test_partial_file(self):
        self._write("[cache]\nmax_items = 0\n")
        cfg = EngineConfig.from_file(self.path)
        self.assertEqual(cfg.cache.max_items, 0)
        self.assertEqual(cfg.cache.max_memory, DEFAULT_CACHE_MAX_MEMORY)
        self.assertTrue(cfg.extract.same_owner)

    def test_malformed_file(self):
        self._write("max_items = 10\n")
        with self.assertRaises(ImgDeltaParseError):
            EngineConfig.from_file(self.path)

    def test_bad_values(self):
        for text in (
            "[cache]\nmax_items = lots\n",
            "[cache]\nmax_memory = 1.5GiB\n",
            "[extract]\nsame_owner = perhaps\n",
        ):
            with self.subTest(text=text):
                self._write(text)
                with self.assertRaises(ImgDeltaParseError):
                    EngineConfig.from_file(self.path)

    def test_negative_items(self):
        self._write("[cache]\nmax_items = -1\n")
        with self.assertRaises(ImgDeltaArgumentError):
            EngineConfig.from_file(self.path)
