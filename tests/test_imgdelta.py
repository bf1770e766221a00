# Copyright Red Hat
#
# tests/test_imgdelta.py - imgdelta package unit tests
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging

import imgdelta
import imgdelta._imgdelta

log = logging.getLogger()


class ImgDeltaTestsSimple(unittest.TestCase):
    """Test imgdelta module"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)

    def tearDown(self):
        imgdelta.set_debug_mask(0)
        log.debug("Tearing down (%s)", self._testMethodName)

    def test_set_debug_mask(self):
        imgdelta.set_debug_mask(imgdelta.IMGDELTA_DEBUG_ALL)
        self.assertEqual(
            imgdelta._imgdelta._debug_subsystems,
            {
                imgdelta.IMGDELTA_SUBSYSTEM_CACHE,
                imgdelta.IMGDELTA_SUBSYSTEM_DELTA,
                imgdelta.IMGDELTA_SUBSYSTEM_FILTER,
                imgdelta.IMGDELTA_SUBSYSTEM_EXTRACT,
            },
        )

    def test_set_debug_mask_subset(self):
        mask = imgdelta.IMGDELTA_DEBUG_CACHE | imgdelta.IMGDELTA_DEBUG_FILTER
        handler = logging.StreamHandler()
        sub_filter = imgdelta.SubsystemFilter("imgdelta")
        handler.addFilter(sub_filter)
        imgdelta_log = logging.getLogger("imgdelta")
        imgdelta_log.addHandler(handler)
        try:
            imgdelta.set_debug_mask(mask)
        finally:
            imgdelta_log.removeHandler(handler)
        self.assertEqual(
            sub_filter.enabled_subsystems,
            {imgdelta.IMGDELTA_SUBSYSTEM_CACHE, imgdelta.IMGDELTA_SUBSYSTEM_FILTER},
        )

    def test_set_debug_mask_bad_mask(self):
        with self.assertRaises(ValueError):
            imgdelta.set_debug_mask(imgdelta.IMGDELTA_DEBUG_ALL + 1)
        with self.assertRaises(ValueError):
            imgdelta.set_debug_mask(-1)

    def test_subsystem_filter(self):
        imgdelta.set_debug_mask(imgdelta.IMGDELTA_DEBUG_DELTA)
        sub_filter = imgdelta.SubsystemFilter("imgdelta")
        record = logging.LogRecord(
            "imgdelta.image.cache", logging.DEBUG, __file__, 1, "msg", (), None
        )
        self.assertTrue(sub_filter.filter(record))

        record.subsystem = imgdelta.IMGDELTA_SUBSYSTEM_CACHE
        self.assertFalse(sub_filter.filter(record))

        record.subsystem = imgdelta.IMGDELTA_SUBSYSTEM_DELTA
        self.assertTrue(sub_filter.filter(record))

        record.levelno = logging.INFO
        record.subsystem = imgdelta.IMGDELTA_SUBSYSTEM_CACHE
        self.assertTrue(sub_filter.filter(record))

    def test_parse_size_with_units(self):
        cases = [
            ("1024", 1024),
            ("10B", 10),
            ("1K", 2**10),
            ("1KiB", 2**10),
            ("50MiB", 50 * 2**20),
            ("2g", 2 * 2**30),
            (" 3TiB ", 3 * 2**40),
        ]
        for value, expected in cases:
            with self.subTest(value=value):
                self.assertEqual(imgdelta.parse_size_with_units(value), expected)

    def test_parse_size_with_units_bad(self):
        for value in ("", "MiB", "1.5GiB", "ten", "10XiB"):
            with self.subTest(value=value):
                with self.assertRaises(imgdelta.ImgDeltaParseError):
                    imgdelta.parse_size_with_units(value)

    def test_size_fmt(self):
        self.assertEqual(imgdelta.size_fmt(0), "0B")
        self.assertEqual(imgdelta.size_fmt(1024), "1.0KiB")
        self.assertEqual(imgdelta.size_fmt(50 * 2**20), "50.0MiB")

    def test_apply_error_message(self):
        err = imgdelta.ImgDeltaApplyError("usr/bin/sh", "/dest", "Permission denied")
        self.assertEqual(err.name, "usr/bin/sh")
        self.assertEqual(err.where, "/dest")
        self.assertIn("usr/bin/sh", str(err))
        self.assertIn("Permission denied", str(err))
        self.assertIsInstance(err, imgdelta.ImgDeltaError)

    def test_error_hierarchy(self):
        for exc in (
            imgdelta.ImgDeltaSystemError,
            imgdelta.ImgDeltaNotFoundError,
            imgdelta.ImgDeltaArgumentError,
            imgdelta.ImgDeltaParseError,
            imgdelta.ImgDeltaStreamError,
            imgdelta.ImgDeltaCacheError,
            imgdelta.ImgDeltaApplyError,
        ):
            self.assertTrue(issubclass(exc, imgdelta.ImgDeltaError))
