# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Entry points for the ``fatlibs build`` CLI command.
"""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from types import FrameType
from typing import List, Mapping, Optional, Sequence, Tuple

from ..common import FatlibsException, WorkDirs, work_dirs
from ..registry import Registry, add_registry_arguments, registry_from_args
from ..targets import ALL, download_step, expand
from .builder import BuildReport, Builder, plan

log = logging.getLogger(__name__)


def setup_parser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """
    Setup the subparser for the ``build`` command.

    :param subparsers: The subparsers object returned from ``add_subparsers``
    :type subparsers: argparse._SubParsersAction
    """
    build_subparser = subparsers.add_parser(
        "build", description="Build fat static libraries from source"
    )
    build_subparser.set_defaults(func=main)
    build_subparser.add_argument(
        "targets",
        metavar="TARGET",
        nargs="*",
        help=(
            "Products (BZip2), product targets (BZip2-macOS, BZip2-macosx, "
            "BZip2-macosx.arm64), OS names or all [default: all]"
        ),
    )
    add_registry_arguments(build_subparser)
    build_subparser.add_argument(
        "-j",
        "--jobs",
        default=None,
        type=int,
        help="The number of steps run in parallel [default: the cpu count]",
    )
    build_subparser.add_argument(
        "--force-download",
        default=False,
        action="store_true",
        help="Force downloading source tarballs even if they exist",
    )
    build_subparser.add_argument(
        "--download-only",
        default=False,
        action="store_true",
        help="Stop after downloading source tarballs",
    )
    build_subparser.add_argument(
        "--step",
        dest="steps",
        metavar="STEP",
        action="append",
        default=[],
        help=(
            "A step to run alone, can use multiple of this argument. When this option is used to "
            "invoke builds, dependencies of the steps are ignored. This option "
            "should be used with care, as it's easy to request a situation that "
            "has no chance of being successful."
        ),
    )
    build_subparser.add_argument(
        "--no-pretty",
        default=False,
        action="store_true",
        help="Log build output to stdout instead of displaying a simplified status.",
    )
    build_subparser.add_argument(
        "--log-level",
        default="warning",
        choices=(
            "error",
            "warning",
            "info",
            "debug",
        ),
        help="Log level determines how verbose the logs will be.",
    )


def setup_logging(
    dirs: WorkDirs, show_ui: bool, log_level: str
) -> List[logging.Handler]:
    """
    Log to ``logs/build.log`` and, without the progress line, to stderr.

    :return: The handlers added to the root logger
    :rtype: list
    """
    root_log = logging.getLogger(None)
    root_log.setLevel(logging.NOTSET)
    handlers: List[logging.Handler] = []
    if not show_ui:
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(logging.getLevelName(log_level))
        handlers.append(stream_handler)
    os.makedirs(dirs.logs, exist_ok=True)
    file_handler = logging.FileHandler(dirs.logs / "build.log")
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s")
    )
    handlers.append(file_handler)
    for handler in handlers:
        root_log.addHandler(handler)
    return handlers


def select_steps(
    builder: Builder,
    registry: Registry,
    targets: Sequence[str],
    steps: Sequence[str],
    download_only: bool,
) -> Tuple[List[str], bool]:
    """
    Work out which steps of the graph to run.

    :return: The step names and whether their dependencies are ignored
    :rtype: tuple
    """
    if steps:
        return list(steps), True
    if download_only:
        names = {download_step(_) for _ in registry.products.values()}
        return [_ for _ in builder.steps if _ in names], True
    return list(targets), False


def build(
    registry: Registry,
    dirs: WorkDirs,
    targets: Optional[Sequence[str]] = None,
    steps: Optional[Sequence[str]] = None,
    force_download: bool = False,
    download_only: bool = False,
    jobs: Optional[int] = None,
    processes: bool = True,
    show_ui: bool = False,
    log_level: str = "WARNING",
    environ: Optional[Mapping[str, str]] = None,
) -> BuildReport:
    """
    Build targets of a registry.

    :param registry: The registry
    :type registry: ``fatlibs.registry.Registry``
    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    :param targets: Aggregate targets or step names, defaults to ``all``
    :type targets: list, optional
    :param steps: Steps to run alone, their dependencies are ignored
    :type steps: list, optional
    :param force_download: Download source archives even if they exist
    :type force_download: bool
    :param download_only: Only run the download steps
    :type download_only: bool

    :raises ConfigurationError: When a target is unknown, before anything is built

    :return: The build report
    :rtype: ``fatlibs.build.builder.BuildReport``
    """
    expansion = expand(registry, dirs)
    requested = expansion.resolve(list(targets or [ALL]))
    builder = plan(
        registry,
        dirs,
        expansion,
        force_download=force_download,
        environ=dict(environ) if environ is not None else None,
        jobs=jobs,
        processes=processes,
    )
    names, ignore_dependencies = select_steps(
        builder, registry, requested, steps or [], download_only
    )
    return builder.build(
        names,
        ignore_dependencies=ignore_dependencies,
        show_ui=show_ui,
        log_level=log_level,
    )


def main(args: argparse.Namespace) -> None:
    """
    The entrypoint to the ``build`` command.

    :param args: The arguments to the command
    :type args: ``argparse.Namespace``
    """
    show_ui = not args.no_pretty
    log_level = args.log_level.upper()
    dirs = work_dirs(args.root)
    handlers = setup_logging(dirs, show_ui, log_level)

    def signal_handler(_signal: int, frame: FrameType | None) -> None:
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, signal_handler)

    try:
        registry = registry_from_args(args)
        report = build(
            registry,
            dirs,
            targets=args.targets,
            steps=[_.strip() for _ in args.steps],
            force_download=args.force_download,
            download_only=args.download_only,
            jobs=args.jobs,
            show_ui=show_ui,
            log_level=log_level,
        )
    except FatlibsException as exc:
        log.error("%s", exc)
        sys.stderr.write(f"{exc}\n")
        sys.exit(1)
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted\n")
        sys.exit(1)
    finally:
        root_log = logging.getLogger(None)
        for handler in handlers:
            root_log.removeHandler(handler)
            handler.close()
    output = report.format()
    if report.ok:
        sys.stdout.write(output + "\n")
        sys.stdout.flush()
        return
    sys.stderr.write(output + "\n")
    sys.stderr.flush()
    sys.exit(1)
