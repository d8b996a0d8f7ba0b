# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The ``fatlibs vars`` command, print resolved paths and flags without building.
"""
from __future__ import annotations

import argparse
import sys
from typing import IO, List, Optional, Sequence, Tuple

from .common import FatlibsException, WorkDirs, work_dirs
from .registry import Registry, add_registry_arguments, registry_from_args
from .targets import ALL, expand


def describe(
    registry: Registry,
    dirs: WorkDirs,
    names: Optional[Sequence[str]] = None,
    sdk_roots: bool = True,
) -> List[Tuple[str, List[Tuple[str, str]]]]:
    """
    Describe the targets and SDK groups behind some target names.

    :param registry: The registry
    :type registry: ``fatlibs.registry.Registry``
    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    :param names: Aggregate target names, defaults to ``all``
    :type names: list, optional
    :param sdk_roots: Resolve SDK roots (with ``xcrun``) to show compiler flags
    :type sdk_roots: bool

    :return: A title and the ordered variables of every target and group
    :rtype: list
    """
    expansion = expand(registry, dirs)
    steps = set(expansion.resolve(list(names or [ALL])))
    sections: List[Tuple[str, List[Tuple[str, str]]]] = []
    for target in expansion.targets:
        if target.step not in steps:
            continue
        values = [
            ("PRODUCT", target.product.name),
            ("VERSION", target.product.version),
            ("OS", target.os.name),
            ("SDK", target.sdk),
            ("ARCH", target.arch),
            ("TARGET_TRIPLE", target.triple),
            ("ARCHIVE", str(target.archive)),
            ("SRCDIR", str(target.srcdir)),
            ("INSTALL", str(target.prefix)),
            ("CC", target.cc),
        ]
        if sdk_roots:
            sdk_root = target.os.sdk_root(target.sdk)
            values.extend(
                [
                    ("SDK_ROOT", sdk_root),
                    ("CFLAGS", target.cflags(sdk_root)),
                    ("LDFLAGS", target.ldflags(sdk_root)),
                ]
            )
        sections.append((target.aggregate, values))
    for group in expansion.groups.values():
        if not steps.intersection(_.step for _ in group.targets):
            continue
        values = [
            ("PRODUCT", group.product.name),
            ("VERSION", group.product.version),
            ("OS", group.os.name),
            ("SDK", group.sdk),
            ("ARCHES", " ".join(group.arches)),
            ("INSTALL", str(group.prefix)),
            ("MERGE_LOG", str(group.merge_log)),
            ("DIST", str(group.dist(registry.build_number))),
        ]
        sections.append((group.aggregate, values))
    return sections


def print_vars(
    sections: Sequence[Tuple[str, Sequence[Tuple[str, str]]]], out: IO[str]
) -> None:
    for title, values in sections:
        out.write(f"{title}:\n")
        for key, value in values:
            out.write(f"    {key}={value}\n")


def setup_parser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """
    Setup the subparser for the ``vars`` command.

    :param subparsers: The subparsers object returned from ``add_subparsers``
    :type subparsers: argparse._SubParsersAction
    """
    subparser = subparsers.add_parser(
        "vars", description="Print the resolved paths and flags of targets"
    )
    subparser.set_defaults(func=main)
    subparser.add_argument(
        "targets", metavar="TARGET", nargs="*", help="Targets to describe [default: all]"
    )
    add_registry_arguments(subparser)
    subparser.add_argument(
        "--no-sdk",
        default=False,
        action="store_true",
        help="Do not resolve SDK roots, compiler flags are left out",
    )


def main(args: argparse.Namespace) -> None:
    """
    The entrypoint to the ``vars`` command.

    :param args: The arguments to the command
    :type args: ``argparse.Namespace``
    """
    try:
        registry = registry_from_args(args)
        sections = describe(
            registry, work_dirs(args.root), args.targets, sdk_roots=not args.no_sdk
        )
    except FatlibsException as exc:
        sys.stderr.write(f"{exc}\n")
        sys.exit(1)
    print_vars(sections, sys.stdout)
