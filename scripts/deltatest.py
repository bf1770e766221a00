#!/usr/bin/python3
# Copyright Red Hat
#
# deltatest.py - simple example driver for imgdelta.image
#
# This file is part of the imgdelta project.
#
# SPDX-License-Identifier: Apache-2.0
from argparse import ArgumentParser
import logging
import sys

import imgdelta

from imgdelta.image import (
    EngineConfig,
    ExtractOptions,
    LayeredImageSource,
    TarballImageSource,
    TempDirs,
    build_delta_additions_filter_from_image,
    build_filter,
    delta_images,
    extract_to,
)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_DEFAULT_CONFIG = "/etc/imgdelta/imgdelta.conf"


def _image(paths):
    if len(paths) == 1:
        return TarballImageSource(paths[0])
    return LayeredImageSource([TarballImageSource(path) for path in paths])


def main():
    parser = ArgumentParser(prog="deltatest.py")
    parser.add_argument(
        "-c",
        "--config",
        default=_DEFAULT_CONFIG,
        help="Engine configuration file",
    )
    parser.add_argument(
        "-d",
        "--debug",
        type=int,
        default=0,
        help="Debug subsystem mask",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        default="info",
        help=f"Set log level ({', '.join(LOG_LEVELS.keys())})",
        choices=LOG_LEVELS.keys(),
    )
    parser.add_argument(
        "-j",
        "--json",
        help="Print the delta as JSON",
        action="store_true",
    )
    parser.add_argument(
        "-x",
        "--extract",
        type=str,
        metavar="DEST",
        default=None,
        help="Extract the destination image to DEST",
    )
    parser.add_argument(
        "-a",
        "--additions-only",
        help="Extract only entries that are not in the source image",
        action="store_true",
    )
    parser.add_argument(
        "-p",
        "--prefix-path",
        type=str,
        default=None,
        help="Extract only paths beginning with PREFIX_PATH",
    )
    parser.add_argument(
        "-i",
        "--include",
        type=str,
        action="append",
        metavar="REGEX",
        dest="includes",
        default=None,
        help="Extract only paths matching REGEX",
    )
    parser.add_argument(
        "-e",
        "--exclude",
        type=str,
        action="append",
        metavar="REGEX",
        dest="excludes",
        default=None,
        help="Do not extract paths matching REGEX",
    )
    parser.add_argument(
        "--from",
        type=str,
        action="append",
        metavar="TARBALL",
        dest="source",
        required=True,
        help="Source image tarball or layer (repeat for layers, base first)",
    )
    parser.add_argument(
        "--to",
        type=str,
        action="append",
        metavar="TARBALL",
        dest="dest",
        required=True,
        help="Destination image tarball or layer (repeat for layers, base first)",
    )
    args = parser.parse_args()

    imgdelta_log = logging.getLogger("imgdelta")
    formatter = logging.Formatter('%(levelname)s - %(message)s')
    imgdelta_log.setLevel(LOG_LEVELS[args.log_level])
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(imgdelta.SubsystemFilter("imgdelta"))
    imgdelta_log.addHandler(console_handler)
    imgdelta.set_debug_mask(args.debug)

    try:
        config = EngineConfig.from_file(args.config)
        options = ExtractOptions.from_cmd_args(args)
        source = _image(args.source)
        dest = _image(args.dest)

        diff = delta_images(source, dest)
        if args.json:
            print(diff.json(pretty=True))
        else:
            print(diff)
        print(diff.summary())

        if not args.extract:
            return 0

        tmpdirs = TempDirs(config.tmpdir) if config.tmpdir else None
        if args.additions_only:
            keep = build_delta_additions_filter_from_image(
                source,
                options.includes,
                options.excludes,
                tmpdirs=tmpdirs,
                cache_options=config.cache,
            )
        else:
            keep = build_filter(options.prefix_path, options.includes, options.excludes)
        for warning in keep.warnings:
            print(warning, file=sys.stderr)

        try:
            written, path = extract_to(dest, args.extract, keep, config.extract)
        finally:
            if args.additions_only:
                keep.clean()
        print(f"Extracted {imgdelta.size_fmt(written)} to {path}")
    except imgdelta.ImgDeltaError as err:
        print(err, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
