# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The ``fatlibs clean`` and ``fatlibs distclean`` commands.
"""
from __future__ import annotations

import argparse
import logging
import sys

from . import cache
from .common import FatlibsException, work_dirs
from .registry import load_registry, parse_versions

log = logging.getLogger(__name__)


def setup_parser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """
    Setup the subparsers for the ``clean`` and ``distclean`` commands.

    :param subparsers: The subparsers object returned from ``add_subparsers``
    :type subparsers: argparse._SubParsersAction
    """
    subparser = subparsers.add_parser(
        "clean",
        description=(
            "Remove build, install and dist state, for some products or OSes "
            "only when given. Downloads are kept."
        ),
    )
    subparser.set_defaults(func=main)
    subparser.add_argument(
        "products",
        metavar="PRODUCT",
        nargs="*",
        help="The products to clean [default: everything]",
    )
    subparser.add_argument(
        "--os",
        dest="os_names",
        metavar="OS",
        action="append",
        default=[],
        help="An OS to clean, can use multiple of this argument",
    )
    subparser.add_argument("--root", default=None, help="The working directory root")
    subparser.add_argument(
        "--config", default=None, help="A JSON file overriding products and OS profiles"
    )
    subparser.add_argument(
        "--version",
        dest="versions",
        metavar="PRODUCT=VERSION",
        action="append",
        default=[],
        help="The version of a product to clean [default: the pinned version]",
    )

    subparser = subparsers.add_parser(
        "distclean", description="Remove all generated state including downloads"
    )
    subparser.set_defaults(func=distclean_main)
    subparser.add_argument("--root", default=None, help="The working directory root")


def main(args: argparse.Namespace) -> None:
    """
    The entrypoint to the ``clean`` command.

    :param args: The arguments to the command
    :type args: ``argparse.Namespace``
    """
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    dirs = work_dirs(args.root)
    try:
        registry = load_registry(
            config=args.config, versions=parse_versions(args.versions)
        )
        products = [registry.product(_).basename for _ in args.products]
        sdks = None
        if args.os_names:
            sdks = sorted(
                {sdk for _ in args.os_names for sdk in registry.os_profile(_).sdks}
            )
    except FatlibsException as exc:
        sys.stderr.write(f"{exc}\n")
        sys.exit(1)
    cache.clean(dirs, products=products, os_names=args.os_names, sdks=sdks)


def distclean_main(args: argparse.Namespace) -> None:
    """
    The entrypoint to the ``distclean`` command.

    :param args: The arguments to the command
    :type args: ``argparse.Namespace``
    """
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    cache.distclean(work_dirs(args.root))
