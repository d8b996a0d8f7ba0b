# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
#
import logging
import pathlib
from typing import Iterator

import pytest

from fatlibs.common import WorkDirs
from fatlibs.registry import Registry
from tests.helpers import FakeToolchain, install_toolchain, make_registry, make_sources

log = logging.getLogger(__name__)


@pytest.fixture
def dirs(tmp_path: pathlib.Path) -> WorkDirs:
    return WorkDirs(tmp_path / "root")


@pytest.fixture
def registry() -> Registry:
    return make_registry()


@pytest.fixture
def toolchain(monkeypatch: pytest.MonkeyPatch) -> Iterator[FakeToolchain]:
    yield install_toolchain(monkeypatch, FakeToolchain())


@pytest.fixture
def sources(dirs: WorkDirs, registry: Registry) -> WorkDirs:
    make_sources(dirs, registry)
    return dirs


@pytest.fixture(autouse=True)
def _no_fatlibs_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("FATLIBS_ROOT", "FATLIBS_BUILD_NUMBER", "FATLIBS_OPENSSL_VERSION"):
        monkeypatch.delenv(name, raising=False)
