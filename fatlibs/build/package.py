# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Package merged libraries into distribution archives.
"""
from __future__ import annotations

import gzip
import logging
import os
import pathlib
import tarfile
import tempfile
from typing import List, Optional

from .. import cache
from ..common import MissingInputError, PathLike
from ..targets import SDKGroup
from .adapters import Adapter, get_adapter
from .driver import FRESH, RAN

log = logging.getLogger(__name__)

CONTENTS = ("lib", "include")


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _entries(root: pathlib.Path) -> List[pathlib.Path]:
    entries = []
    for name in CONTENTS:
        top = root / name
        entries.append(top)
        entries.extend(top.rglob("*"))
    return sorted(entries, key=lambda _: _.relative_to(root).as_posix())


def create_archive(dest: PathLike, root: PathLike) -> pathlib.Path:
    """
    Archive the ``lib`` and ``include`` directories of a root.

    Entries are added in sorted order with normalized ownership and the gzip
    header carries no timestamp, so the same tree always produces the same
    archive. The archive is written to a temporary file next to ``dest`` and
    renamed into place, a failure never leaves a partial archive behind.

    :param dest: The archive to create
    :type dest: str
    :param root: The directory holding ``lib`` and ``include``
    :type root: str

    :return: The archive path
    :rtype: ``pathlib.Path``
    """
    dest = pathlib.Path(dest)
    root = pathlib.Path(root)
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{dest.name}-", suffix=".part", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as raw:
            with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
                with tarfile.open(fileobj=gz, mode="w") as tar:
                    for path in _entries(root):
                        arcname = path.relative_to(root).as_posix()
                        log.debug("Adding %s", arcname)
                        tar.add(
                            str(path), arcname=arcname, recursive=False, filter=_normalize
                        )
        os.chmod(tmp, 0o644)
        os.replace(tmp, dest)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    return dest


class Packager:
    """
    Create the distribution archive of a merged SDK group.

    :param group: The SDK group
    :type group: ``fatlibs.targets.SDKGroup``
    :param build_number: The label embedded in the archive name
    :type build_number: str
    :param adapter: The product's adapter, looked up from the product when omitted
    :type adapter: ``fatlibs.build.adapters.Adapter``
    """

    def __init__(
        self, group: SDKGroup, build_number: str, adapter: Optional[Adapter] = None
    ) -> None:
        self.group = group
        self.build_number = build_number
        if adapter is None:
            adapter = get_adapter(group.product.adapter)
        self.adapter = adapter

    @property
    def dest(self) -> pathlib.Path:
        return self.group.dist(self.build_number)

    def __call__(self) -> str:
        """
        Create the archive unless it is fresh.

        :raises MissingInputError: When the group has not been merged

        :return: ``ran`` or ``fresh``
        :rtype: str
        """
        group = self.group
        merged = [group.prefix / "lib" / _ for _ in self.adapter.libraries]
        missing = [_ for _ in merged if not _.exists()]
        if missing or not (group.prefix / "include").is_dir():
            raise MissingInputError(
                "{} has not been merged for {}".format(
                    group.product.basename, group.sdk
                ),
                product=group.product.name,
                os_name=group.os.name,
                sdk=group.sdk,
                log_path=group.merge_log,
            )
        inputs = cache.files_below([group.prefix / _ for _ in CONTENTS])
        if cache.is_fresh([self.dest], inputs):
            log.debug("%s is fresh", self.dest)
            return FRESH
        log.info("Packaging %s", self.dest.name)
        create_archive(self.dest, group.prefix)
        return RAN
