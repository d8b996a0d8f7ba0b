# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Expand the registry into concrete build targets.
"""
from __future__ import annotations

import logging
import pathlib
from typing import Dict, List, Optional, Sequence, Tuple

from .common import ConfigurationError, WorkDirs
from .registry import OSProfile, Product, Registry

log = logging.getLogger(__name__)

ALL = "all"


def download_step(product: Product) -> str:
    return f"download-{product.name}"


class BuildTarget:
    """
    One product built for one architecture of one SDK.

    Every attribute is derived from the (product, OS, SDK, arch) tuple and
    the working directories; nothing is looked up from the environment.

    :param product: The product to build
    :type product: ``fatlibs.registry.Product``
    :param os_profile: The OS being targeted
    :type os_profile: ``fatlibs.registry.OSProfile``
    :param sdk: The SDK being targeted (e.g. ``macosx``)
    :type sdk: str
    :param arch: The architecture being targeted (e.g. ``arm64``)
    :type arch: str
    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    """

    def __init__(
        self,
        product: Product,
        os_profile: OSProfile,
        sdk: str,
        arch: str,
        dirs: WorkDirs,
    ) -> None:
        self.product = product
        self.os = os_profile
        self.sdk = sdk
        self.arch = arch
        self.dirs = dirs

    @property
    def name(self) -> str:
        """The target name, ``<sdk>.<arch>``."""
        return f"{self.sdk}.{self.arch}"

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.product.name, self.os.name, self.sdk, self.arch)

    @property
    def step(self) -> str:
        return f"build-{self.product.name}-{self.name}"

    @property
    def aggregate(self) -> str:
        return f"{self.product.name}-{self.name}"

    @property
    def triple(self) -> str:
        return self.os.triple(self.arch)

    @property
    def workdir(self) -> pathlib.Path:
        """The directory holding the source tree and logs of this target."""
        return self.dirs.build / self.os.name / self.name

    @property
    def srcdir(self) -> pathlib.Path:
        return self.workdir / self.product.basename

    @property
    def prefix(self) -> pathlib.Path:
        """The install directory of this target."""
        return self.dirs.install / self.os.name / self.name / self.product.basename

    @property
    def archive(self) -> pathlib.Path:
        return self.dirs.downloads / self.product.archive_name

    @property
    def cc(self) -> str:
        return self.os.cc(self.sdk, self.arch)

    def cflags(self, sdk_root: str) -> str:
        return f"--sysroot={sdk_root} {self.os.cflags}"

    def ldflags(self, sdk_root: str) -> str:
        return f"-isysroot {sdk_root} {self.os.cflags}"

    def log_path(self, stage: str) -> pathlib.Path:
        return self.workdir / f"{self.product.basename}.{stage}.log"

    def __repr__(self) -> str:
        return "BuildTarget({!r}, {!r}, {!r}, {!r})".format(*self.key)


class SDKGroup:
    """
    Every target of one product for one SDK, the inputs of a merge.

    :param product: The product
    :type product: ``fatlibs.registry.Product``
    :param os_profile: The OS
    :type os_profile: ``fatlibs.registry.OSProfile``
    :param sdk: The SDK
    :type sdk: str
    :param targets: The per architecture targets, in declared order
    :type targets: list
    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    """

    def __init__(
        self,
        product: Product,
        os_profile: OSProfile,
        sdk: str,
        targets: Sequence[BuildTarget],
        dirs: WorkDirs,
    ) -> None:
        self.product = product
        self.os = os_profile
        self.sdk = sdk
        self.targets = list(targets)
        self.dirs = dirs

    @property
    def arches(self) -> List[str]:
        return [_.arch for _ in self.targets]

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.product.name, self.os.name, self.sdk)

    @property
    def merge_step(self) -> str:
        return f"merge-{self.product.name}-{self.sdk}"

    @property
    def package_step(self) -> str:
        return f"package-{self.product.name}-{self.sdk}"

    @property
    def aggregate(self) -> str:
        return f"{self.product.name}-{self.sdk}"

    @property
    def prefix(self) -> pathlib.Path:
        """The install directory of the merged artifact."""
        return self.dirs.install / self.os.name / self.sdk / self.product.basename

    @property
    def merge_log(self) -> pathlib.Path:
        return (
            self.dirs.install / self.os.name / self.sdk / f"{self.product.basename}.lipo.log"
        )

    @property
    def arches_marker(self) -> pathlib.Path:
        """Records the architectures the merged libraries were created from."""
        return (
            self.dirs.install / self.os.name / self.sdk / f"{self.product.basename}.arches"
        )

    def dist(self, build_number: str) -> pathlib.Path:
        """The distribution archive of the merged artifact."""
        return self.dirs.dist / "{}-{}-{}.tar.gz".format(
            self.product.basename, build_number, self.sdk
        )

    def __repr__(self) -> str:
        return "SDKGroup({!r}, {!r}, {!r}, arches={!r})".format(*self.key, self.arches)


class Expansion:
    """
    The result of expanding a registry.

    :ivar targets: Every build target, in registry order
    :ivar groups: The SDK groups keyed by (product, OS, SDK)
    :ivar aggregates: Aggregate target names mapped to their children
    """

    def __init__(self) -> None:
        self.targets: List[BuildTarget] = []
        self.groups: Dict[Tuple[str, str, str], SDKGroup] = {}
        self.aggregates: Dict[str, List[str]] = {}

    @property
    def products(self) -> List[Product]:
        seen: Dict[str, Product] = {}
        for target in self.targets:
            seen.setdefault(target.product.name, target.product)
        return list(seen.values())

    def resolve(self, names: Sequence[str]) -> List[str]:
        """
        Flatten aggregate target names into graph step names.

        Names that are not aggregates are returned as they are, so step names
        can be mixed in.

        :raises ConfigurationError: When a name is neither an aggregate nor a step
        """
        steps: List[str] = []
        known_steps = set(self.steps())

        def visit(name: str) -> None:
            if name in self.aggregates:
                for child in self.aggregates[name]:
                    visit(child)
            elif name in known_steps:
                if name not in steps:
                    steps.append(name)
            else:
                raise ConfigurationError(f"Unknown target {name!r}")

        for name in names:
            visit(name)
        return steps

    def steps(self) -> List[str]:
        names = [download_step(_) for _ in self.products]
        names.extend(_.step for _ in self.targets)
        for group in self.groups.values():
            names.append(group.merge_step)
            names.append(group.package_step)
        return names


def expand(
    registry: Registry,
    dirs: WorkDirs,
    products: Optional[Sequence[str]] = None,
    os_names: Optional[Sequence[str]] = None,
    sdks: Optional[Sequence[str]] = None,
) -> Expansion:
    """
    Generate every build target of a registry.

    For every product, OS and SDK one target is created per distinct
    architecture of the SDK. Three levels of aggregates are added per product
    (``<Product>-<sdk>.<arch>``, ``<Product>-<sdk>``, ``<Product>-<OS>``) along
    with ``<Product>``, ``<OS>`` and ``all``.

    :param registry: The registry to expand
    :type registry: ``fatlibs.registry.Registry``
    :param dirs: The working directories
    :type dirs: ``fatlibs.common.WorkDirs``
    :param products: Restrict the expansion to these products
    :type products: list, optional
    :param os_names: Restrict the expansion to these OSes, defaults to the enabled OS list
    :type os_names: list, optional
    :param sdks: Restrict the expansion to these SDKs
    :type sdks: list, optional

    :raises ConfigurationError: If a requested product, OS or SDK is unknown.
        Everything is validated before any target is created.
    """
    if products is None:
        selected_products = list(registry.products.values())
    else:
        selected_products = [registry.product(_) for _ in products]
    if os_names is None:
        selected_os = registry.enabled
    else:
        selected_os = [registry.os_profile(_) for _ in os_names]
    if sdks is not None:
        available = {sdk for os_profile in selected_os for sdk in os_profile.sdks}
        for sdk in sdks:
            if sdk not in available:
                raise ConfigurationError(f"Unknown SDK {sdk!r}")

    expansion = Expansion()
    for product in selected_products:
        product_children: List[str] = []
        for os_profile in selected_os:
            os_children: List[str] = []
            for sdk in os_profile.sdks:
                if sdks is not None and sdk not in sdks:
                    continue
                targets = [
                    BuildTarget(product, os_profile, sdk, arch, dirs)
                    for arch in os_profile.arches(sdk)
                ]
                group = SDKGroup(product, os_profile, sdk, targets, dirs)
                expansion.targets.extend(targets)
                expansion.groups[group.key] = group
                for target in targets:
                    expansion.aggregates[target.aggregate] = [target.step]
                expansion.aggregates[group.aggregate] = [
                    _.aggregate for _ in targets
                ] + [group.package_step]
                os_children.append(group.aggregate)
            os_aggregate = f"{product.name}-{os_profile.name}"
            expansion.aggregates[os_aggregate] = os_children
            expansion.aggregates.setdefault(os_profile.name, []).append(os_aggregate)
            product_children.append(os_aggregate)
        expansion.aggregates[product.name] = product_children
    expansion.aggregates[ALL] = [_.name for _ in selected_products]
    log.debug(
        "Expanded %d targets in %d SDK groups",
        len(expansion.targets),
        len(expansion.groups),
    )
    return expansion
