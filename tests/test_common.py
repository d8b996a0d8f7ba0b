# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import io
import os
import pathlib
import pickle
import tarfile
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from fatlibs.common import (
    CommandError,
    ConfigureError,
    FatlibsException,
    MissingArtifactError,
    PatchError,
    StageError,
    WorkDirs,
    capture,
    download_url,
    extract_archive,
    fetch_url,
    get_download_location,
    runcmd,
    work_dirs,
    work_root,
)


def test_command_error_message():
    exc = CommandError(["make", "install"], 2)
    assert exc.returncode == 2
    assert str(exc) == "Build cmd 'make install' failed with exit code 2"


def test_stage_error_names_every_location():
    exc = ConfigureError(
        "OpenSSL configure failed",
        product="OpenSSL",
        os_name="macOS",
        sdk="macosx",
        arch="arm64",
        log_path="/tmp/openssl-3.0.12.config.log",
    )
    text = str(exc)
    assert text.startswith("OpenSSL configure failed")
    for value in (
        "product: OpenSSL",
        "os: macOS",
        "sdk: macosx",
        "arch: arm64",
        "stage: configure",
        "log: /tmp/openssl-3.0.12.config.log",
    ):
        assert value in text


def test_stage_error_skips_empty_context():
    exc = MissingArtifactError("missing", product="XZ", sdk="macosx")
    assert "arch:" not in str(exc)
    assert exc.context["stage"] == "merge"


def test_stage_error_stage_override():
    exc = StageError("lipo failed", stage="merge")
    assert exc.stage == "merge"
    assert StageError.stage == "build"


def test_patch_error_context_names_patch():
    exc = PatchError("did not apply", patch="/patches/bad.patch", product="OpenSSL")
    assert exc.context["patch"] == "/patches/bad.patch"
    assert exc.stage == "patch"
    assert "patch: /patches/bad.patch" in str(exc)


def test_work_root_explicit(tmp_path):
    assert work_root(tmp_path) == tmp_path.resolve()


def test_work_root_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("FATLIBS_ROOT", str(tmp_path))
    assert work_root() == tmp_path.resolve()


def test_work_root_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert work_root() == tmp_path.resolve()


def test_work_dirs(tmp_path):
    dirs = work_dirs(tmp_path)
    assert dirs.downloads == tmp_path.resolve() / "downloads"
    assert dirs.build == tmp_path.resolve() / "build"
    assert dirs.install == tmp_path.resolve() / "install"
    assert dirs.dist == tmp_path.resolve() / "dist"
    assert dirs.logs == tmp_path.resolve() / "logs"


def test_work_dirs_pickle(tmp_path):
    dirs = WorkDirs(tmp_path)
    unpickled = pickle.loads(pickle.dumps(dirs))
    assert unpickled.root == dirs.root
    assert unpickled.install == dirs.install


def _make_tar(path: pathlib.Path) -> None:
    with tarfile.open(path, "w:gz") as tar:
        for name in ("pkg-1.0/Makefile", "pkg-1.0/src/main.c"):
            data = name.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))


def test_extract_archive(tmp_path):
    archive = tmp_path / "pkg-1.0.tar.gz"
    _make_tar(archive)
    extract_archive(tmp_path / "out", archive)
    assert (tmp_path / "out" / "pkg-1.0" / "Makefile").exists()


def test_extract_archive_strip_components(tmp_path):
    archive = tmp_path / "pkg-1.0.tar.gz"
    _make_tar(archive)
    extract_archive(tmp_path / "out", archive, strip_components=1)
    assert (tmp_path / "out" / "Makefile").read_text() == "pkg-1.0/Makefile"
    assert (tmp_path / "out" / "src" / "main.c").exists()
    assert not (tmp_path / "out" / "pkg-1.0").exists()


def test_get_download_location(tmp_path):
    assert get_download_location("https://test.com/1.0/test-1.0.tar.gz", tmp_path) == (
        os.path.join(str(tmp_path), "test-1.0.tar.gz")
    )


def test_download_url_renames_complete_download(tmp_path):
    def fake_fetch(url, fp, backoff, timeout):
        fp.write(b"contents")

    with patch("fatlibs.common.fetch_url", side_effect=fake_fetch):
        local = download_url("https://test.com/test-1.0.tar.gz", tmp_path)
    assert pathlib.Path(local).read_bytes() == b"contents"
    assert not (tmp_path / "test-1.0.tar.gz.part").exists()


def test_download_url_failure_leaves_nothing(tmp_path):
    def fake_fetch(url, fp, backoff, timeout):
        fp.write(b"partial")
        raise FatlibsException("connection reset")

    with patch("fatlibs.common.fetch_url", side_effect=fake_fetch):
        with pytest.raises(FatlibsException):
            download_url("https://test.com/test-1.0.tar.gz", tmp_path)
    assert list(tmp_path.iterdir()) == []


def _http_error(code):
    return urllib.error.HTTPError("https://test.com", code, "error", {}, None)


def test_fetch_url_does_not_retry_client_errors():
    with patch("urllib.request.urlopen", side_effect=_http_error(404)) as urlopen:
        with patch("time.sleep") as sleep:
            with pytest.raises(FatlibsException):
                fetch_url("https://test.com/missing.tar.gz", io.BytesIO())
    assert urlopen.call_count == 1
    sleep.assert_not_called()


def test_fetch_url_retries_server_errors():
    response = MagicMock()
    response.read.side_effect = [b"data", b""]
    with patch(
        "urllib.request.urlopen", side_effect=[_http_error(503), response]
    ) as urlopen:
        with patch("time.sleep") as sleep:
            fp = io.BytesIO()
            fetch_url("https://test.com/test.tar.gz", fp)
    assert urlopen.call_count == 2
    sleep.assert_called_once_with(10)
    assert fp.getvalue() == b"data"


def test_fetch_url_gives_up(tmp_path):
    error = urllib.error.URLError("unreachable")
    with patch("urllib.request.urlopen", side_effect=error) as urlopen:
        with patch("time.sleep"):
            with pytest.raises(FatlibsException):
                fetch_url("https://test.com/test.tar.gz", io.BytesIO(), backoff=3)
    assert urlopen.call_count == 3


def test_runcmd_logs_output(tmp_path):
    logfp = io.StringIO()
    runcmd(["sh", "-c", "echo out; echo err >&2"], logfp=logfp, env={"PATH": "/bin:/usr/bin"})
    assert "out\n" in logfp.getvalue()
    assert "err\n" in logfp.getvalue()


def test_runcmd_failure(tmp_path):
    with pytest.raises(CommandError) as exc:
        runcmd(["sh", "-c", "exit 3"], cwd=tmp_path)
    assert exc.value.returncode == 3


def test_runcmd_uses_given_environment(tmp_path):
    logfp = io.StringIO()
    runcmd(
        ["sh", "-c", 'echo "[$FATLIBS_TEST]"'],
        env={"PATH": "/bin:/usr/bin", "FATLIBS_TEST": "value"},
        logfp=logfp,
    )
    assert "[value]" in logfp.getvalue()


def test_capture():
    assert capture(["sh", "-c", "echo '  hello  '"]) == "hello"
