# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Freshness rules shared by every stage, and scoped cleanup of generated state.

An output is fresh when it exists and is not older than any of the inputs
it was produced from. Every stage of the pipeline checks its outputs with
:func:`is_fresh` before doing any work.
"""
from __future__ import annotations

import datetime
import logging
import os
import pathlib
import shutil
import tempfile
from typing import Iterable, List, Optional, Sequence, Union

from .common import PathLike, WorkDirs

log = logging.getLogger(__name__)

Paths = Union[PathLike, Iterable[PathLike]]


def _as_paths(paths: Paths) -> List[pathlib.Path]:
    if isinstance(paths, (str, os.PathLike)):
        return [pathlib.Path(paths)]
    return [pathlib.Path(_) for _ in paths]


def mtime(path: PathLike) -> Optional[int]:
    """
    The modification time of a path in nanoseconds, or None when it is missing.
    """
    try:
        return os.stat(path).st_mtime_ns
    except FileNotFoundError:
        return None


def is_fresh(outputs: Paths, inputs: Paths) -> bool:
    """
    True when every output exists and none is older than the newest input.

    A missing input makes the outputs stale, the stage has to run (and will
    report what is missing).

    :param outputs: The files produced by a stage
    :type outputs: list
    :param inputs: The files the stage reads
    :type inputs: list
    """
    output_times = [mtime(_) for _ in _as_paths(outputs)]
    if not output_times or None in output_times:
        return False
    input_times = [mtime(_) for _ in _as_paths(inputs)]
    if None in input_times:
        return False
    if not input_times:
        return True
    newest = max(input_times)  # type: ignore[type-var]
    return min(output_times) >= newest  # type: ignore[type-var,operator]


def files_below(paths: Paths) -> List[pathlib.Path]:
    """
    Every regular file below the given paths, sorted.
    """
    found: List[pathlib.Path] = []
    for path in _as_paths(paths):
        if path.is_dir():
            found.extend(_ for _ in path.rglob("*") if _.is_file())
        elif path.exists():
            found.append(path)
    return sorted(found)


def write_marker(path: PathLike, text: Optional[str] = None) -> pathlib.Path:
    """
    Write an inert freshness marker.

    The marker holds ``text``, or the time it was written when no text is
    given. It is created through a temporary file so an interrupted write
    never leaves a marker behind.

    :param path: The marker to write
    :type path: str
    :param text: What the marker records (e.g. the inputs of the stage)
    :type text: str, optional
    """
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if text is None:
        text = datetime.datetime.now().isoformat() + "\n"
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as fp:
            fp.write(text)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    return path


def read_marker(path: PathLike) -> Optional[str]:
    """
    The text of a marker, or None when it is missing.
    """
    try:
        with open(path, "r") as fp:
            return fp.read()
    except FileNotFoundError:
        return None


def touch(path: PathLike) -> None:
    """
    Bump the modification time of a file, creating it when needed.
    """
    pathlib.Path(path).touch()


def invalidate(paths: Paths) -> List[pathlib.Path]:
    """
    Mark outputs as stale without removing them.

    Existing paths get their timestamps reset to the epoch, so any later
    freshness check runs the stage again. The files themselves are left in
    place for inspection.

    :return: The paths that were invalidated
    """
    invalidated = []
    for path in _as_paths(paths):
        if path.exists():
            os.utime(path, ns=(0, 0))
            invalidated.append(path)
    return invalidated


def _remove(path: pathlib.Path) -> None:
    if path.is_dir() and not path.is_symlink():
        log.info("Removing %s", path)
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        log.info("Removing %s", path)
        path.unlink()


def _owned_by(name: str, basename: str) -> bool:
    return name == basename or name.startswith(f"{basename}.")


def clean(
    dirs: WorkDirs,
    products: Optional[Sequence[str]] = None,
    os_names: Optional[Sequence[str]] = None,
    sdks: Optional[Sequence[str]] = None,
) -> List[pathlib.Path]:
    """
    Remove generated build, install and dist state.

    With no scope ``build``, ``install`` and ``dist`` are removed entirely.
    Scoping by product removes only the paths of that product version:
    ``<product>-<version>`` trees, ``<product>-<version>.*`` logs and
    markers, and ``<product>-<version>-*`` archives. Scoping by OS removes
    only the trees below ``build/<OS>`` and ``install/<OS>``, and archives of
    the SDKs found there. Downloads are never removed.

    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    :param products: Product basenames to clean (e.g. ``openssl-3.0.12``)
    :type products: list, optional
    :param os_names: OS names to clean (e.g. ``macOS``)
    :type os_names: list, optional
    :param sdks: The SDKs of those OSes, discovered from the build trees when omitted
    :type sdks: list, optional

    :return: The paths removed
    :rtype: list
    """
    removed: List[pathlib.Path] = []
    if not products and not os_names:
        for path in (dirs.build, dirs.install, dirs.dist):
            if path.exists():
                _remove(path)
                removed.append(path)
        return removed

    roots = (dirs.build, dirs.install)
    if os_names:
        os_roots = [root / name for root in roots for name in os_names]
    else:
        os_roots = [_ for root in roots if root.is_dir() for _ in root.iterdir()]

    found_sdks = set(sdks or ())
    for os_root in os_roots:
        if not os_root.is_dir():
            continue
        for target_dir in sorted(os_root.iterdir()):
            if not target_dir.is_dir():
                continue
            if sdks is None:
                found_sdks.add(target_dir.name.partition(".")[0])
            if not products:
                continue
            for path in sorted(target_dir.iterdir()):
                if any(_owned_by(path.name, _) for _ in products):
                    _remove(path)
                    removed.append(path)
        if not products:
            _remove(os_root)
            removed.append(os_root)

    if dirs.dist.is_dir():
        for path in sorted(dirs.dist.iterdir()):
            if products and not any(
                path.name.startswith(f"{_}-") for _ in products
            ):
                continue
            if os_names and not any(
                path.name.endswith(f"-{_}.tar.gz") for _ in found_sdks
            ):
                continue
            _remove(path)
            removed.append(path)
    return removed


def distclean(dirs: WorkDirs) -> List[pathlib.Path]:
    """
    Remove all generated state including downloaded source archives.
    """
    removed = clean(dirs)
    if dirs.downloads.exists():
        _remove(dirs.downloads)
        removed.append(dirs.downloads)
    return removed
