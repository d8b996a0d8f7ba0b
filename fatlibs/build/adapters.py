# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Build adapters for specific products.

Every adapter describes the stages of one product's native build system:
the file that marks an unpacked source tree, the configure, build and
install commands, and the outputs each of them is expected to produce.
"""
from __future__ import annotations

import logging
import os
import pathlib
from typing import IO, Callable, Dict, List, MutableMapping, Optional, Sequence, Type

from ..common import (
    CompileError,
    ConfigurationError,
    ConfigureError,
    InstallError,
    StageError,
    runcmd,
)
from ..targets import BuildTarget

log = logging.getLogger(__name__)

StageFunc = Callable[[MutableMapping[str, str], BuildTarget, IO[str]], None]


class Stage:
    """
    One skip-if-up-to-date step of a target's pipeline.

    :param name: The stage name (``configure``, ``compile`` or ``install``)
    :type name: str
    :param func: The function running the stage
    :type func: callable
    :param outputs: The files the stage produces
    :type outputs: list
    :param inputs: The files the stage reads
    :type inputs: list
    :param error: The exception raised when the stage fails
    :type error: ``fatlibs.common.StageError``
    :param log: The stage's log file
    :type log: ``pathlib.Path``
    :param marker: An inert file written once the stage succeeded, it is one
        of ``outputs``
    :type marker: ``pathlib.Path``, optional
    """

    def __init__(
        self,
        name: str,
        func: StageFunc,
        outputs: Sequence[pathlib.Path],
        inputs: Sequence[pathlib.Path],
        error: Type[StageError],
        log: pathlib.Path,
        marker: Optional[pathlib.Path] = None,
    ) -> None:
        self.name = name
        self.func = func
        self.outputs = list(outputs)
        if marker is not None and marker not in self.outputs:
            self.outputs.append(marker)
        self.inputs = list(inputs)
        self.error = error
        self.log = log
        self.marker = marker

    def __repr__(self) -> str:
        return f"Stage({self.name!r})"


class Adapter:
    """
    The base class of product adapters.

    :ivar unpack_marker: A file of the unpacked source tree that marks it as unpacked
    :ivar configure_output: A file written by the configure command
    :ivar configure_marker: An inert marker written after configuring, for
        build systems that rewrite their own configuration while building
    :ivar build_outputs: The files the build command produces, relative to the source tree
    :ivar libraries: The static libraries installed into ``lib``
    :ivar headers: Headers installed into ``include`` that mark a complete install
    """

    name = ""
    unpack_marker = "Makefile"
    configure_output: Optional[str] = None
    configure_marker: Optional[str] = None
    build_outputs: Sequence[str] = ()
    libraries: Sequence[str] = ()
    headers: Sequence[str] = ()

    def populate_env(self, env: MutableMapping[str, str], target: BuildTarget) -> None:
        """
        Make adapter specific changes to a child environment.

        The environment already holds the ``FATLIBS_*`` values computed by
        the driver.
        """

    def has_configure(self) -> bool:
        return bool(self.configure_output or self.configure_marker)

    def configure(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        raise NotImplementedError

    def build(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        raise NotImplementedError

    def install(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        raise NotImplementedError

    def installed(self, prefix: pathlib.Path) -> List[pathlib.Path]:
        """
        The files that make up a complete install below a prefix.
        """
        files = [prefix / "lib" / _ for _ in self.libraries]
        files.extend(prefix / "include" / _ for _ in self.headers)
        return files

    def stages(self, target: BuildTarget) -> List[Stage]:
        """
        The configure, compile and install stages of a target, in order.

        Each stage takes the outputs of the previous one (or the unpack
        marker) as its inputs.
        """
        srcdir = target.srcdir
        previous = [srcdir / self.unpack_marker]
        stages = []
        if self.has_configure():
            outputs = []
            if self.configure_output:
                outputs.append(srcdir / self.configure_output)
            marker = None
            if self.configure_marker:
                marker = srcdir / self.configure_marker
            stage = Stage(
                "configure",
                self.configure,
                outputs,
                previous,
                ConfigureError,
                target.log_path("config"),
                marker=marker,
            )
            stages.append(stage)
            previous = stage.outputs
        stage = Stage(
            "compile",
            self.build,
            [srcdir / _ for _ in self.build_outputs],
            previous,
            CompileError,
            target.log_path("build"),
        )
        stages.append(stage)
        stages.append(
            Stage(
                "install",
                self.install,
                self.installed(target.prefix),
                stage.outputs,
                InstallError,
                target.log_path("install"),
            )
        )
        return stages


class BZip2Adapter(Adapter):
    """
    BZip2 ships a plain Makefile, there is nothing to configure.
    """

    name = "bzip2"
    unpack_marker = "Makefile"
    build_outputs = ("libbz2.a",)
    libraries = ("libbz2.a",)
    headers = ("bzlib.h",)

    def _flags(self, env: MutableMapping[str, str]) -> List[str]:
        return [
            "CC={}".format(env["FATLIBS_CC"]),
            "CFLAGS={}".format(env["FATLIBS_CFLAGS"]),
            "LDFLAGS={}".format(env["FATLIBS_LDFLAGS"]),
        ]

    def build(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        cmd = ["make", "libbz2.a", "bzip2", "bzip2recover"] + self._flags(env)
        runcmd(cmd, env=env, cwd=target.srcdir, logfp=logfp)

    def install(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        cmd = ["make", "install", "PREFIX={}".format(env["FATLIBS_PREFIX"])]
        cmd += self._flags(env)
        runcmd(cmd, env=env, cwd=target.srcdir, logfp=logfp)


class XZAdapter(Adapter):
    """
    XZ is an autotools project, configured for a static cross build.
    """

    name = "xz"
    unpack_marker = "configure"
    configure_output = "Makefile"
    build_outputs = (os.path.join("src", "liblzma", ".libs", "liblzma.a"),)
    libraries = ("liblzma.a",)
    headers = ("lzma.h",)

    def configure(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        cmd = [
            "./configure",
            "CC={}".format(env["FATLIBS_CC"]),
            "CFLAGS={}".format(env["FATLIBS_CFLAGS"]),
            "LDFLAGS={}".format(env["FATLIBS_LDFLAGS"]),
            "--disable-shared",
            "--enable-static",
            "--host={}".format(env["FATLIBS_HOST"]),
            "--build={}".format(env["FATLIBS_BUILD"]),
            "--prefix={}".format(env["FATLIBS_PREFIX"]),
        ]
        runcmd(cmd, env=env, cwd=target.srcdir, logfp=logfp)

    def build(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        runcmd(["make"], env=env, cwd=target.srcdir, logfp=logfp)

    def install(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        runcmd(["make", "install"], env=env, cwd=target.srcdir, logfp=logfp)


class OpenSSLAdapter(Adapter):
    """
    OpenSSL, built as static libraries without docs or tests.

    Building OpenSSL rewrites its own Makefile, so configuration is tracked
    with an inert ``is_configured`` marker instead.
    """

    name = "openssl"
    unpack_marker = "Configure"
    configure_marker = "is_configured"
    build_outputs = ("libssl.a", "libcrypto.a")
    libraries = ("libssl.a", "libcrypto.a")
    headers = (os.path.join("openssl", "ssl.h"),)

    def populate_env(self, env: MutableMapping[str, str], target: BuildTarget) -> None:
        sdk_root = pathlib.PurePosixPath(env["FATLIBS_SDK_ROOT"])
        env["CC"] = "{} {}".format(env["FATLIBS_CC"], env["FATLIBS_CFLAGS"])
        env["CROSS_TOP"] = "{}/..".format(sdk_root.parent)
        env["CROSS_SDK"] = sdk_root.name

    def configure(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        cmd = [
            "./Configure",
            target.os.openssl_target(target.arch),
            "no-tests",
            "--prefix={}".format(env["FATLIBS_PREFIX"]),
            "--openssldir=/etc/ssl",
        ]
        runcmd(cmd, env=env, cwd=target.srcdir, logfp=logfp)

    def build(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        # The ``all`` target modifies the Makefile, use the raw targets instead.
        runcmd(["make", "build_sw"], env=env, cwd=target.srcdir, logfp=logfp)

    def install(
        self, env: MutableMapping[str, str], target: BuildTarget, logfp: IO[str]
    ) -> None:
        # Install just the software (not the docs)
        runcmd(["make", "install_sw"], env=env, cwd=target.srcdir, logfp=logfp)


ADAPTERS: Dict[str, Adapter] = {
    _.name: _ for _ in (BZip2Adapter(), XZAdapter(), OpenSSLAdapter())
}


def get_adapter(name: str) -> Adapter:
    """
    Look up a build adapter by name.

    :raises ConfigurationError: If there is no such adapter
    """
    try:
        return ADAPTERS[name]
    except KeyError:
        raise ConfigurationError(
            "Unknown adapter {!r}, expected one of: {}".format(
                name, ", ".join(sorted(ADAPTERS))
            )
        )
