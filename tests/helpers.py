# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
A fake toolchain standing in for patch, configure, make and lipo.
"""
from __future__ import annotations

import io
import os
import pathlib
import tarfile
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from fatlibs.common import CommandError, WorkDirs
from fatlibs.registry import (
    Product,
    Registry,
    default_os_profiles,
    default_products,
)

SDK_ROOT = "/Applications/Xcode.app/Contents/Developer/Platforms/MacOSX.platform/Developer/SDKs/MacOSX.sdk"

# The file marking an unpacked tree and the headers of every product.
SOURCE_FILES = {
    "bzip2": {"Makefile": "all:\n", "bzlib.h": "/* bzlib */\n"},
    "xz": {"configure": "#!/bin/sh\n", "src/liblzma/api/lzma.h": "/* lzma */\n"},
    "openssl": {"Configure": "#!/usr/bin/perl\n", "include/openssl/ssl.h": "/* ssl */\n"},
}


def make_registry(
    products: Optional[Sequence[Product]] = None,
    build_number: str = "custom",
    targets: Optional[Sequence[str]] = None,
) -> Registry:
    """
    The default registry, with an SDK root that needs no xcrun.
    """
    os_profiles = []
    for profile in default_os_profiles():
        kwargs: Dict[str, Any] = {"sdk_roots": {"macosx": SDK_ROOT}}
        if targets is not None:
            kwargs["targets"] = list(targets)
        os_profiles.append(profile.replace(**kwargs))
    if products is None:
        products = default_products()
    return Registry(products, os_profiles, ["macOS"], build_number)


def replace_os(registry: Registry, **kwargs: Any) -> Registry:
    """
    A copy of a registry with attributes of every OS profile changed.
    """
    return Registry(
        list(registry.products.values()),
        [_.replace(**kwargs) for _ in registry.os_profiles.values()],
        registry.os_list,
        registry.build_number,
    )


def make_source_archive(downloads: pathlib.Path, product: Product) -> pathlib.Path:
    """
    Write a tiny source archive for a product, with a top level directory.
    """
    downloads.mkdir(parents=True, exist_ok=True)
    archive = downloads / product.archive_name
    with tarfile.open(archive, "w:gz") as tar:
        for name, text in SOURCE_FILES[product.lower].items():
            data = text.encode()
            info = tarfile.TarInfo(f"{product.basename}/{name}")
            info.size = len(data)
            info.mtime = int(time.time()) - 3600
            tar.addfile(info, io.BytesIO(data))
    return archive


def make_sources(dirs: WorkDirs, registry: Registry) -> None:
    for product in registry.products.values():
        make_source_archive(dirs.downloads, product)


def settle(root: pathlib.Path, age: int = 600) -> None:
    """
    Move every file below a root into the past, keeping them all equally old.
    """
    stamp = time.time_ns() - age * 1_000_000_000
    for path in root.rglob("*"):
        os.utime(path, ns=(stamp, stamp))


def _write(path: pathlib.Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


class FakeToolchain:
    """
    Records every command and creates the files the real tools would.

    Static libraries hold the architecture they were built for, a fat library
    holds the architectures of its inputs, one per line.

    :param fail: Predicates called with the command and its working
        directory, the command fails when any returns true
    :type fail: list
    """

    def __init__(self, fail: Optional[List[Callable[..., bool]]] = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.fail = list(fail or [])

    def commands(self, name: Optional[str] = None) -> List[List[str]]:
        return [
            _["cmd"] for _ in self.calls if name is None or _["cmd"][0] == name
        ]

    def __call__(
        self,
        cmd: Sequence[Any],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[os.PathLike] = None,
        logfp: Optional[io.TextIOBase] = None,
    ) -> None:
        cmd = [str(_) for _ in cmd]
        env = dict(env or {})
        workdir = pathlib.Path(cwd) if cwd is not None else None
        self.calls.append({"cmd": cmd, "cwd": workdir, "env": env})
        if logfp is not None:
            logfp.write(" ".join(cmd) + "\n")
        for predicate in self.fail:
            if predicate(cmd, workdir):
                raise CommandError(cmd, 2)
        handler = getattr(self, "_" + cmd[0].lstrip("./").lower(), None)
        if handler is None:
            raise CommandError(cmd, 127)
        handler(cmd, env, workdir)

    def _patch(self, cmd: List[str], env: Dict[str, str], cwd: pathlib.Path) -> None:
        patch = pathlib.Path(cmd[-1])
        if "bad" in patch.name:
            raise CommandError(cmd, 1)
        with open(cwd / "PATCHES", "a") as fp:
            fp.write(patch.name + "\n")

    def _configure(
        self, cmd: List[str], env: Dict[str, str], cwd: pathlib.Path
    ) -> None:
        _write(cwd / "Makefile", " ".join(cmd) + "\n")

    def _make(self, cmd: List[str], env: Dict[str, str], cwd: pathlib.Path) -> None:
        product = cwd.name.split("-", 1)[0]
        arch = env["FATLIBS_HOST"].split("-", 1)[0] + "\n"
        prefix = pathlib.Path(env["FATLIBS_PREFIX"])
        for arg in cmd:
            if arg.startswith("PREFIX="):
                prefix = pathlib.Path(arg.split("=", 1)[1])
        install = "install" in cmd or "install_sw" in cmd
        if product == "bzip2":
            if install:
                _write(prefix / "lib" / "libbz2.a", (cwd / "libbz2.a").read_text())
                _write(prefix / "include" / "bzlib.h", (cwd / "bzlib.h").read_text())
            else:
                _write(cwd / "libbz2.a", arch)
        elif product == "xz":
            lib = cwd / "src" / "liblzma" / ".libs" / "liblzma.a"
            if install:
                _write(prefix / "lib" / "liblzma.a", lib.read_text())
                _write(prefix / "include" / "lzma.h", "/* lzma */\n")
            else:
                _write(lib, arch)
        elif product == "openssl":
            if install:
                for name in ("libssl.a", "libcrypto.a"):
                    _write(prefix / "lib" / name, (cwd / name).read_text())
                _write(prefix / "include" / "openssl" / "ssl.h", "/* ssl */\n")
            else:
                for name in ("libssl.a", "libcrypto.a"):
                    _write(cwd / name, arch)
        else:
            raise CommandError(cmd, 2)

    def _lipo(self, cmd: List[str], env: Dict[str, str], cwd: Any) -> None:
        output = pathlib.Path(cmd[cmd.index("-output") + 1])
        inputs = cmd[cmd.index("-output") + 2 :]
        _write(output, "".join(pathlib.Path(_).read_text() for _ in inputs))


def install_toolchain(monkeypatch: Any, toolchain: FakeToolchain) -> FakeToolchain:
    for module in ("fatlibs.build.adapters", "fatlibs.build.driver", "fatlibs.build.merge"):
        monkeypatch.setattr(f"{module}.runcmd", toolchain)
    return toolchain


def step_ok(path: str) -> str:
    pathlib.Path(path).write_text("ok")
    return "ran"


def step_fail() -> None:
    raise CommandError(["false"], 1)
