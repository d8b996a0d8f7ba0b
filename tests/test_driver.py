# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import os

import pytest

from fatlibs import cache
from fatlibs.build.adapters import ADAPTERS, get_adapter
from fatlibs.build.driver import TargetDriver, child_env
from fatlibs.common import (
    CompileError,
    ConfigurationError,
    ConfigureError,
    PatchError,
    StageError,
    UnpackError,
)
from fatlibs.targets import expand

from tests.helpers import (
    SDK_ROOT,
    FakeToolchain,
    install_toolchain,
    make_registry,
    replace_os,
)


def _target(registry, dirs, product, arch="arm64"):
    for target in expand(registry, dirs, products=[product]).targets:
        if target.arch == arch:
            return target
    raise AssertionError(arch)


def test_child_env(dirs, registry):
    target = _target(registry, dirs, "XZ")
    env = child_env(target, {"HOME": "/home/me", "LANG": "C", "PYTHONPATH": "/x", "PATH": "/opt/homebrew/bin"})
    assert env == {
        "HOME": "/home/me",
        "LANG": "C",
        "PATH": "{}:/usr/bin:/bin:/usr/sbin:/sbin:/Library/Apple/usr/bin".format(
            dirs.install / "macOS" / "bin"
        ),
    }


def test_child_env_does_not_touch_environ(dirs, registry):
    before = dict(os.environ)
    driver = TargetDriver(_target(registry, dirs, "OpenSSL"))
    env = driver.make_env()
    assert dict(os.environ) == before
    assert env is not os.environ


def test_make_env(dirs, registry):
    target = _target(registry, dirs, "OpenSSL")
    env = TargetDriver(target, environ={}).make_env()
    assert env["FATLIBS_SDK_ROOT"] == SDK_ROOT
    assert env["FATLIBS_CC"] == "xcrun --sdk macosx clang -target arm64-apple-darwin"
    assert env["FATLIBS_CFLAGS"] == f"--sysroot={SDK_ROOT} -mmacosx-version-min=11.0"
    assert env["FATLIBS_LDFLAGS"] == f"-isysroot {SDK_ROOT} -mmacosx-version-min=11.0"
    assert env["FATLIBS_HOST"] == "arm64-apple-darwin"
    assert env["FATLIBS_PREFIX"] == str(target.prefix)
    assert env["CC"] == "{} {}".format(env["FATLIBS_CC"], env["FATLIBS_CFLAGS"])
    assert env["CROSS_TOP"] == (
        "/Applications/Xcode.app/Contents/Developer/Platforms/MacOSX.platform/Developer/SDKs/.."
    )
    assert env["CROSS_SDK"] == "MacOSX.sdk"


def test_bzip2_pipeline(sources, registry, toolchain):
    target = _target(registry, sources, "BZip2")
    summary = TargetDriver(target)()
    assert summary == {"unpack": "ran", "compile": "ran", "install": "ran"}
    assert (target.prefix / "lib" / "libbz2.a").read_text() == "arm64\n"
    assert (target.prefix / "include" / "bzlib.h").exists()
    make, install = toolchain.commands("make")
    assert make[:4] == ["make", "libbz2.a", "bzip2", "bzip2recover"]
    assert "CC=xcrun --sdk macosx clang -target arm64-apple-darwin" in make
    assert f"CFLAGS=--sysroot={SDK_ROOT} -mmacosx-version-min=11.0" in make
    assert f"LDFLAGS=-isysroot {SDK_ROOT} -mmacosx-version-min=11.0" in make
    assert install[:3] == ["make", "install", f"PREFIX={target.prefix}"]
    assert (target.workdir / "bzip2-1.0.8.build.log").exists()
    assert (target.workdir / "bzip2-1.0.8.install.log").exists()


def test_xz_configure(sources, registry, toolchain):
    target = _target(registry, sources, "XZ", arch="x86_64")
    TargetDriver(target)()
    (configure,) = toolchain.commands("./configure")
    assert "--disable-shared" in configure
    assert "--enable-static" in configure
    assert "--host=x86_64-apple-darwin" in configure
    assert f"--prefix={target.prefix}" in configure
    assert any(_.startswith("--build=") and _.endswith("-apple-darwin") for _ in configure)
    assert toolchain.commands("make") == [["make"], ["make", "install"]]
    assert (target.workdir / "xz-5.4.4.config.log").exists()


def test_openssl_marker(sources, registry, toolchain):
    target = _target(registry, sources, "OpenSSL")
    summary = TargetDriver(target)()
    assert summary["configure"] == "ran"
    (configure,) = toolchain.commands("./Configure")
    assert configure == [
        "./Configure",
        "darwin64-arm64-cc",
        "no-tests",
        f"--prefix={target.prefix}",
        "--openssldir=/etc/ssl",
    ]
    marker = target.srcdir / "is_configured"
    assert marker.exists()
    assert toolchain.commands("make") == [["make", "build_sw"], ["make", "install_sw"]]
    marker_mtime = cache.mtime(marker)

    # The build rewriting the Makefile does not invalidate the configuration.
    (target.srcdir / "Makefile").write_text("rewritten by make\n")
    toolchain.calls.clear()
    summary = TargetDriver(target)()
    assert set(summary.values()) == {"fresh"}
    assert toolchain.calls == []
    assert cache.mtime(marker) == marker_mtime


def test_rerun_is_fresh(sources, registry, toolchain):
    target = _target(registry, sources, "XZ")
    TargetDriver(target)()
    toolchain.calls.clear()
    assert TargetDriver(target)() == {
        "unpack": "fresh",
        "configure": "fresh",
        "compile": "fresh",
        "install": "fresh",
    }
    assert toolchain.calls == []


def test_newer_archive_unpacks_again(sources, registry, toolchain):
    target = _target(registry, sources, "BZip2")
    TargetDriver(target)()
    (target.srcdir / "stale").write_text("left over")
    future = cache.mtime(target.srcdir / "Makefile") + 10_000_000_000
    os.utime(target.archive, ns=(future, future))
    summary = TargetDriver(target)()
    assert summary["unpack"] == "ran"
    assert summary["compile"] == "ran"
    assert not (target.srcdir / "stale").exists()


def test_patches_applied_in_order(sources, tmp_path, toolchain):
    patches = []
    for name in ("first.patch", "second.patch"):
        patch = tmp_path / name
        patch.write_text("")
        patches.append(patch)
    products = [
        _.replace(patches={"macOS": [patches[1]], "*": [patches[0]]})
        for _ in make_registry().products.values()
    ]
    registry = make_registry(products)
    target = _target(registry, sources, "XZ")
    TargetDriver(target)()
    assert [_[-1] for _ in toolchain.commands("patch")] == [str(_) for _ in patches]
    assert (target.srcdir / "PATCHES").read_text() == "first.patch\nsecond.patch\n"


def test_removed_patch_unpacks_again(sources, tmp_path, toolchain):
    patch = tmp_path / "first.patch"
    patch.write_text("")
    products = [
        _.replace(patches={"macOS": [patch]}) for _ in make_registry().products.values()
    ]
    target = _target(make_registry(products), sources, "BZip2")
    driver = TargetDriver(target)
    driver()
    assert (target.srcdir / "PATCHES").read_text() == "first.patch\n"
    assert driver.patch_record.read_text() == f"{patch}\n"

    target = _target(make_registry(), sources, "BZip2")
    driver = TargetDriver(target)
    summary = driver()
    assert summary["unpack"] == "ran"
    assert summary["compile"] == "ran"
    assert not (target.srcdir / "PATCHES").exists()
    assert driver.patch_record.read_text() == ""
    assert driver()["unpack"] == "fresh"


def test_patch_failure_is_all_or_nothing(sources, tmp_path, toolchain):
    good = tmp_path / "good.patch"
    bad = tmp_path / "bad.patch"
    good.write_text("")
    bad.write_text("")
    products = [
        _.replace(patches={"macOS": [good, bad]}) for _ in make_registry().products.values()
    ]
    registry = make_registry(products)
    target = _target(registry, sources, "OpenSSL")
    with pytest.raises(PatchError) as exc:
        TargetDriver(target)()
    assert exc.value.patch == str(bad)
    assert exc.value.arch == "arm64"
    assert exc.value.product == "OpenSSL"
    assert exc.value.log_path == target.log_path("unpack")
    assert not target.srcdir.exists()
    assert [_.name for _ in target.workdir.iterdir()] == ["openssl-3.0.12.unpack.log"]


def test_missing_archive(dirs, registry, toolchain):
    target = _target(registry, dirs, "BZip2")
    with pytest.raises(UnpackError):
        TargetDriver(target)()


def test_configure_failure_leaves_stale_output(sources, registry, monkeypatch):
    target = _target(registry, sources, "XZ")

    def fail_configure(cmd, cwd):
        if cmd[0] == "./configure":
            (cwd / "Makefile").write_text("half written")
            return True
        return False

    install_toolchain(monkeypatch, FakeToolchain(fail=[fail_configure]))
    with pytest.raises(ConfigureError) as exc:
        TargetDriver(target)()
    assert exc.value.stage == "configure"
    assert exc.value.log_path == target.log_path("config")
    makefile = target.srcdir / "Makefile"
    assert makefile.read_text() == "half written"
    assert not cache.is_fresh([makefile], [target.srcdir / "configure"])
    assert "marked stale" in target.log_path("config").read_text()

    toolchain = install_toolchain(monkeypatch, FakeToolchain())
    summary = TargetDriver(target)()
    assert summary["configure"] == "ran"
    assert toolchain.commands("./configure")


def test_stage_without_outputs_fails(sources, registry, monkeypatch):
    target = _target(registry, sources, "BZip2")

    class Lazy(FakeToolchain):
        def _make(self, cmd, env, cwd):
            pass

    install_toolchain(monkeypatch, Lazy())
    with pytest.raises(CompileError, match="did not produce"):
        TargetDriver(target)()


def test_adapters_registered():
    assert sorted(ADAPTERS) == ["bzip2", "openssl", "xz"]
    assert get_adapter("bzip2").unpack_marker == "Makefile"
    assert get_adapter("xz").unpack_marker == "configure"
    assert get_adapter("openssl").unpack_marker == "Configure"
    with pytest.raises(ConfigurationError):
        get_adapter("zlib")


def test_adapter_stage_chain(dirs, registry):
    target = _target(registry, dirs, "OpenSSL")
    configure, compile_, install = get_adapter("openssl").stages(target)
    assert configure.inputs == [target.srcdir / "Configure"]
    assert configure.marker == target.srcdir / "is_configured"
    assert configure.outputs == [target.srcdir / "is_configured"]
    assert compile_.inputs == configure.outputs
    assert compile_.outputs == [target.srcdir / "libssl.a", target.srcdir / "libcrypto.a"]
    assert install.inputs == compile_.outputs
    assert target.prefix / "lib" / "libssl.a" in install.outputs


def test_missing_tool_is_a_stage_error(sources, registry):
    # The real runcmd, with a PATH where make can not be found.
    target = _target(replace_os(registry, path="/nonexistent"), sources, "BZip2")
    with pytest.raises(CompileError) as exc:
        TargetDriver(target)()
    assert exc.value.context == {
        "product": "BZip2",
        "os": "macOS",
        "sdk": "macosx",
        "arch": "arm64",
        "stage": "compile",
        "log": str(target.log_path("build")),
    }
    assert "make" in target.log_path("build").read_text()
    assert not (target.srcdir / "libbz2.a").exists()


def test_missing_sdk_is_a_stage_error(sources, registry):
    target = _target(
        replace_os(registry, sdk_roots={}, path="/nonexistent"), sources, "XZ"
    )
    with pytest.raises(StageError) as exc:
        TargetDriver(target)()
    assert exc.value.stage == "environment"
    assert exc.value.product == "XZ"
    assert exc.value.arch == "arm64"
    assert "macosx SDK" in str(exc.value)
    assert not target.workdir.exists()
