# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Run the unpack, configure, compile and install stages of one build target.
"""
from __future__ import annotations

import datetime
import logging
import os
import pathlib
import shutil
import tarfile
import tempfile
from typing import IO, Dict, List, Mapping, MutableMapping, Optional

from .. import cache
from ..common import (
    PASSTHROUGH_ENV,
    CommandError,
    FatlibsException,
    PatchError,
    StageError,
    UnpackError,
    build_arch,
    extract_archive,
    runcmd,
)
from ..targets import BuildTarget
from .adapters import Adapter, Stage, get_adapter

log = logging.getLogger(__name__)

FRESH = "fresh"
RAN = "ran"


def child_env(
    target: BuildTarget, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Create the base environment of every command run for a target.

    Only a minimal ``PATH``, prefixed with the OS level ``install/<OS>/bin``
    directory, and the variables in
    :data:`fatlibs.common.PASSTHROUGH_ENV` are carried over. The caller's
    environment is never modified.

    :param target: The build target
    :type target: ``fatlibs.targets.BuildTarget``
    :param environ: The environment to copy from, defaults to ``os.environ``
    :type environ: dict

    :return: A new environment
    :rtype: dict
    """
    if environ is None:
        environ = os.environ
    env = {_: environ[_] for _ in PASSTHROUGH_ENV if _ in environ}
    bindir = target.dirs.install / target.os.name / "bin"
    env["PATH"] = os.pathsep.join([str(bindir), target.os.path])
    return env


def _banner(logfp: IO[str], text: str) -> None:
    logfp.write(
        "\n==== {} {} ====\n".format(datetime.datetime.now().isoformat(), text)
    )
    logfp.flush()


class TargetDriver:
    """
    Drive one build target through its pipeline.

    :param target: The build target
    :type target: ``fatlibs.targets.BuildTarget``
    :param adapter: The product's adapter, looked up from the product when omitted
    :type adapter: ``fatlibs.build.adapters.Adapter``
    :param environ: The environment child environments are created from
    :type environ: dict
    """

    def __init__(
        self,
        target: BuildTarget,
        adapter: Optional[Adapter] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.target = target
        if adapter is None:
            adapter = get_adapter(target.product.adapter)
        self.adapter = adapter
        self.environ = environ

    def context(self) -> Dict[str, str]:
        return {
            "product": self.target.product.name,
            "os_name": self.target.os.name,
            "sdk": self.target.sdk,
            "arch": self.target.arch,
        }

    def make_env(self) -> Dict[str, str]:
        """
        Create the environment of this target's commands.
        """
        target = self.target
        env = child_env(target, self.environ)
        sdk_root = target.os.sdk_root(target.sdk, env)
        env["FATLIBS_SDK_ROOT"] = sdk_root
        env["FATLIBS_CC"] = target.cc
        env["FATLIBS_CFLAGS"] = target.cflags(sdk_root)
        env["FATLIBS_LDFLAGS"] = target.ldflags(sdk_root)
        env["FATLIBS_HOST"] = target.triple
        env["FATLIBS_BUILD"] = target.os.triple(build_arch())
        env["FATLIBS_PREFIX"] = str(target.prefix)
        self.adapter.populate_env(env, target)
        return env

    @property
    def unpack_marker(self) -> pathlib.Path:
        return self.target.srcdir / self.adapter.unpack_marker

    def unpack_inputs(self) -> List[pathlib.Path]:
        target = self.target
        return [target.archive] + target.product.patches_for(target.os.name)

    @property
    def patch_record(self) -> pathlib.Path:
        """The file listing the patches applied to the source tree."""
        return self.target.workdir / f"{self.target.product.basename}.patches"

    def patch_list(self) -> str:
        target = self.target
        return "".join(f"{_}\n" for _ in target.product.patches_for(target.os.name))

    def unpack(self, env: MutableMapping[str, str]) -> str:
        """
        Unpack and patch the source tree unless it is already up to date.

        The archive is extracted and patched in a temporary sibling directory
        which replaces the source tree only once every patch applied. The
        applied patches are recorded, and the unpack marker is touched last.
        A tree patched with another list of patches is unpacked again.

        :raises UnpackError: When the archive is missing or can not be extracted
        :raises PatchError: When a patch does not apply
        """
        target = self.target
        if cache.is_fresh(
            [self.unpack_marker], self.unpack_inputs()
        ) and cache.read_marker(self.patch_record) == self.patch_list():
            log.debug("%s is already unpacked", target.srcdir)
            return FRESH
        log_path = target.log_path("unpack")
        if not target.archive.exists():
            raise UnpackError(
                f"Source archive {target.archive} is missing",
                log_path=log_path,
                **self.context(),
            )
        target.workdir.mkdir(parents=True, exist_ok=True)
        tmpdir = pathlib.Path(
            tempfile.mkdtemp(prefix=f".{target.product.basename}-", dir=target.workdir)
        )
        try:
            with open(log_path, "a") as logfp:
                _banner(logfp, f"unpack {target.archive}")
                try:
                    extract_archive(tmpdir, target.archive, strip_components=1)
                except (tarfile.TarError, OSError) as exc:
                    raise UnpackError(
                        f"Unable to extract {target.archive}: {exc}",
                        log_path=log_path,
                        **self.context(),
                    )
                for patch in target.product.patches_for(target.os.name):
                    _banner(logfp, f"patch {patch}")
                    try:
                        runcmd(
                            ["patch", "-p1", "-i", str(patch)],
                            env=env,
                            cwd=tmpdir,
                            logfp=logfp,
                        )
                    except (FatlibsException, OSError) as exc:
                        raise PatchError(
                            f"Patch {patch.name} did not apply: {exc}",
                            patch=patch,
                            log_path=log_path,
                            **self.context(),
                        )
            if not (tmpdir / self.adapter.unpack_marker).exists():
                raise UnpackError(
                    "{} does not contain {}".format(
                        target.archive, self.adapter.unpack_marker
                    ),
                    log_path=log_path,
                    **self.context(),
                )
            if target.srcdir.exists():
                log.debug("Removing stale source tree %s", target.srcdir)
                shutil.rmtree(target.srcdir)
            os.replace(tmpdir, target.srcdir)
        finally:
            if tmpdir.exists():
                shutil.rmtree(tmpdir)
        cache.write_marker(self.patch_record, self.patch_list())
        cache.touch(self.unpack_marker)
        return RAN

    def run_stage(self, stage: Stage, env: MutableMapping[str, str]) -> str:
        """
        Run one stage unless its outputs are fresh.

        On failure the stage's outputs are kept for inspection but
        invalidated, so they are never mistaken for fresh.

        :raises StageError: The stage's error when the command fails or the
            stage did not produce its outputs
        """
        target = self.target
        if cache.is_fresh(stage.outputs, stage.inputs):
            log.debug("%s %s is fresh", target.step, stage.name)
            return FRESH
        log.info("%s %s", target.step, stage.name)
        with open(stage.log, "a") as logfp:
            _banner(logfp, f"{stage.name} {target.product.basename} {target.name}")
            try:
                stage.func(env, target, logfp)
            except (CommandError, OSError) as exc:
                # OSError: the command could not be started at all.
                logfp.write(f"{exc}\n")
                invalidated = cache.invalidate(stage.outputs)
                if invalidated:
                    logfp.write(
                        "Partial {} output left in place and marked stale: {}\n".format(
                            stage.name, ", ".join(str(_) for _ in invalidated)
                        )
                    )
                raise stage.error(
                    f"{target.product.name} {stage.name} failed: {exc}",
                    log_path=stage.log,
                    **self.context(),
                )
            if stage.marker is not None:
                cache.write_marker(stage.marker)
            missing = [_ for _ in stage.outputs if not _.exists()]
            if missing:
                cache.invalidate(stage.outputs)
                raise stage.error(
                    "{} {} did not produce {}".format(
                        target.product.name,
                        stage.name,
                        ", ".join(str(_) for _ in missing),
                    ),
                    log_path=stage.log,
                    **self.context(),
                )
        for output in stage.outputs:
            if output != stage.marker:
                cache.touch(output)
        return RAN

    def __call__(self) -> Dict[str, str]:
        """
        Run every stage of the target.

        :raises StageError: When a stage fails, later stages are not run

        :return: The state of every stage, ``ran`` or ``fresh``
        :rtype: dict
        """
        try:
            env = self.make_env()
        except (FatlibsException, OSError) as exc:
            raise StageError(
                f"Unable to set up the build environment of {self.target.step}: {exc}",
                stage="environment",
                **self.context(),
            )
        summary: Dict[str, str] = {}
        summary["unpack"] = self.unpack(env)
        for stage in self.adapter.stages(self.target):
            summary[stage.name] = self.run_stage(stage, env)
        return summary


def build_target(
    target: BuildTarget, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Build one target, see :class:`TargetDriver`.
    """
    return TargetDriver(target, environ=environ)()
