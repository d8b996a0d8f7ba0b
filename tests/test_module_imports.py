# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
#
from __future__ import annotations

import importlib
import pathlib
from typing import TYPE_CHECKING, List, Sequence

import pytest

if TYPE_CHECKING:
    from _pytest.mark.structures import ParameterSet


def _modules() -> Sequence["ParameterSet"]:
    package_dir = pathlib.Path(__file__).resolve().parents[1] / "fatlibs"
    params: List["ParameterSet"] = []
    for path in sorted(package_dir.rglob("*.py")):
        parts = list(path.relative_to(package_dir.parent).with_suffix("").parts)
        if parts[-1] == "__init__":
            parts.pop()
        module_name = ".".join(parts)
        params.append(pytest.param(module_name, id=module_name))
    return params


@pytest.mark.parametrize("module_name", _modules())
def test_import_module(module_name: str) -> None:
    """
    Ensure every module in the fatlibs package can be imported.
    """
    importlib.import_module(module_name)
