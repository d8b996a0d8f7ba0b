# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Merge the per-architecture installs of an SDK into fat libraries.
"""
from __future__ import annotations

import logging
import os
import pathlib
import shutil
from typing import Dict, List, Mapping, Optional

from .. import cache
from ..common import (
    FatlibsException,
    MissingArtifactError,
    StageError,
    runcmd,
)
from ..targets import SDKGroup
from .adapters import Adapter, get_adapter
from .driver import FRESH, RAN, child_env

log = logging.getLogger(__name__)


class Merger:
    """
    Combine the libraries of every architecture of an SDK group with ``lipo``.

    Headers are copied from the first architecture of the group, they are
    assumed to be the same for every architecture.

    :param group: The SDK group to merge
    :type group: ``fatlibs.targets.SDKGroup``
    :param adapter: The product's adapter, looked up from the product when omitted
    :type adapter: ``fatlibs.build.adapters.Adapter``
    :param environ: The environment the ``lipo`` environment is created from
    :type environ: dict
    """

    def __init__(
        self,
        group: SDKGroup,
        adapter: Optional[Adapter] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.group = group
        if adapter is None:
            adapter = get_adapter(group.product.adapter)
        self.adapter = adapter
        self.environ = environ

    def context(self, arch: str = "") -> Dict[str, str]:
        return {
            "product": self.group.product.name,
            "os_name": self.group.os.name,
            "sdk": self.group.sdk,
            "arch": arch,
        }

    @property
    def outputs(self) -> List[pathlib.Path]:
        return [self.group.prefix / "lib" / _ for _ in self.adapter.libraries]

    @property
    def headers(self) -> List[pathlib.Path]:
        return [self.group.prefix / "include" / _ for _ in self.adapter.headers]

    def inputs(self, library: str) -> List[pathlib.Path]:
        """The per-architecture copies of a library, in declared architecture order."""
        return [_.prefix / "lib" / library for _ in self.group.targets]

    def check_inputs(self) -> None:
        """
        Make sure every architecture of the group is completely installed.

        :raises MissingArtifactError: Naming the first incomplete architecture
        """
        for target in self.group.targets:
            missing = [
                _ for _ in self.adapter.installed(target.prefix) if not _.exists()
            ]
            if missing:
                raise MissingArtifactError(
                    "{} is not installed for {}, missing {}".format(
                        target.product.name,
                        target.arch,
                        ", ".join(str(_) for _ in missing),
                    ),
                    log_path=self.group.merge_log,
                    **self.context(target.arch),
                )

    def arches_text(self) -> str:
        return " ".join(self.group.arches) + "\n"

    def is_fresh(self) -> bool:
        """
        True when the fat libraries are newer than every constituent and were
        created from exactly the declared architectures.
        """
        if not all(_.exists() for _ in self.headers):
            return False
        if cache.read_marker(self.group.arches_marker) != self.arches_text():
            return False
        inputs = [_ for lib in self.adapter.libraries for _ in self.inputs(lib)]
        return cache.is_fresh(self.outputs, inputs)

    def __call__(self) -> str:
        """
        Merge the group unless the fat libraries are fresh.

        :raises MissingArtifactError: When an architecture is not installed
        :raises StageError: When ``lipo`` fails

        :return: ``ran`` or ``fresh``
        :rtype: str
        """
        group = self.group
        self.check_inputs()
        if self.is_fresh():
            log.debug("%s is fresh", group.merge_step)
            return FRESH
        log.info("%s: %s", group.merge_step, " ".join(group.arches))
        env = child_env(group.targets[0], self.environ)
        libdir = group.prefix / "lib"
        libdir.mkdir(parents=True, exist_ok=True)
        group.arches_marker.unlink(missing_ok=True)
        with open(group.merge_log, "a") as logfp:
            logfp.write(
                "Merging {} for {}: {}\n".format(
                    group.product.basename, group.sdk, " ".join(group.arches)
                )
            )
            # Headers first, the libraries and the arches marker mark the
            # merge as complete.
            include = group.prefix / "include"
            try:
                if include.exists():
                    shutil.rmtree(include)
                shutil.copytree(group.targets[0].prefix / "include", include)
            except OSError as exc:
                raise StageError(
                    f"Unable to copy headers: {exc}",
                    log_path=group.merge_log,
                    stage="merge",
                    **self.context(),
                )
            for library in self.adapter.libraries:
                output = libdir / library
                partial = libdir / f".{library}.part"
                try:
                    runcmd(
                        ["lipo", "-create", "-output", str(partial)]
                        + [str(_) for _ in self.inputs(library)],
                        env=env,
                        logfp=logfp,
                    )
                    os.replace(partial, output)
                except (FatlibsException, OSError) as exc:
                    logfp.write(f"{exc}\n")
                    raise StageError(
                        f"Unable to merge {library}: {exc}",
                        log_path=group.merge_log,
                        stage="merge",
                        **self.context(),
                    )
                finally:
                    if partial.exists():
                        partial.unlink()
        cache.write_marker(group.arches_marker, self.arches_text())
        return RAN
