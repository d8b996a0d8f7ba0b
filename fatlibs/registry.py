# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The products, versions and target platforms fatlibs knows how to build.

The registry is plain data: a set of :class:`Product` entries and a set of
:class:`OSProfile` entries. Defaults live in this module and can be layered
over with a JSON config file, ``FATLIBS_*`` environment variables and
explicit arguments (see :func:`load_registry`).
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import pathlib
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .common import (
    MINIMAL_PATH,
    ConfigurationError,
    FatlibsException,
    PathLike,
    capture,
)

log = logging.getLogger(__name__)

DEFAULT_BUILD_NUMBER = "custom"

BUILD_NUMBER_ENV = "FATLIBS_BUILD_NUMBER"
VERSION_ENV_TPL = "FATLIBS_{}_VERSION"


class Product:
    """
    A library fatlibs downloads and builds.

    :param name: The display name of the product (e.g. ``OpenSSL``)
    :type name: str
    :param version: The pinned version to build
    :type version: str
    :param url: The source archive url template
    :type url: str
    :param adapter: The name of the build adapter for this product
    :type adapter: str
    :param fallback_url: An alternate url template tried when ``url`` fails
    :type fallback_url: str, optional
    :param checksum: A sha1 or sha256 sum of the source archive
    :type checksum: str, optional
    :param patches: Ordered patch files keyed by OS name
    :type patches: dict, optional
    """

    def __init__(
        self,
        name: str,
        version: str,
        url: str,
        adapter: str,
        fallback_url: Optional[str] = None,
        checksum: Optional[str] = None,
        patches: Optional[Mapping[str, Sequence[PathLike]]] = None,
    ) -> None:
        if not version:
            raise ConfigurationError(f"No version given for {name}")
        self.name = name
        self.version = version
        self.url_tpl = url
        self.adapter = adapter
        self.fallback_url_tpl = fallback_url
        self.checksum = checksum
        self.patches: Dict[str, tuple[str, ...]] = {
            os_name: tuple(str(_) for _ in files)
            for os_name, files in (patches or {}).items()
        }

    @property
    def lower(self) -> str:
        """The name used for directories and archives."""
        return self.name.lower()

    @property
    def series(self) -> str:
        """
        The release series, the first two components of the version.

        ``3.0.12`` and ``1.1.1w`` have series ``3.0`` and ``1.1``.
        """
        match = re.match(r"(\d+)\.(\d+)", self.version)
        if match is None:
            return self.version
        return "{}.{}".format(*match.groups())

    def _format(self, tpl: str) -> str:
        return tpl.format(version=self.version, series=self.series)

    @property
    def url(self) -> str:
        return self._format(self.url_tpl)

    @property
    def fallback_url(self) -> Optional[str]:
        if self.fallback_url_tpl:
            return self._format(self.fallback_url_tpl)
        return None

    @property
    def archive_name(self) -> str:
        """The file name of the source archive."""
        return self.url.rsplit("/", 1)[-1]

    @property
    def basename(self) -> str:
        """``<lower>-<version>``, the name shared by every directory of this product."""
        return f"{self.lower}-{self.version}"

    def patches_for(self, os_name: str) -> List[pathlib.Path]:
        """
        Get the patches applied when unpacking sources for an OS.

        Patches listed under ``*`` apply to every OS and come first.
        """
        files = list(self.patches.get("*", ())) + list(self.patches.get(os_name, ()))
        return [pathlib.Path(_) for _ in files]

    def replace(self, **kwargs: Any) -> "Product":
        """Return a copy of this product with some attributes changed."""
        values: Dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "url": self.url_tpl,
            "adapter": self.adapter,
            "fallback_url": self.fallback_url_tpl,
            "checksum": self.checksum,
            "patches": self.patches,
        }
        values.update(kwargs)
        return Product(**values)

    def __repr__(self) -> str:
        return f"Product({self.name!r}, {self.version!r})"


class OSProfile:
    """
    An operating system fatlibs builds for.

    :param name: The name of the OS (e.g. ``macOS``)
    :type name: str
    :param version_min: The minimum OS version the libraries support
    :type version_min: str
    :param targets: The ``<sdk>.<arch>`` targets built for this OS
    :type targets: list
    :param cflags: Compiler flag template, formatted with ``version_min``
    :type cflags: str
    :param triple: Target triple template, formatted with ``arch``
    :type triple: str
    :param cc: Compiler template, formatted with ``sdk`` and ``triple``
    :type cc: str
    :param openssl_target: OpenSSL ``Configure`` target template, formatted with ``arch``
    :type openssl_target: str
    :param sdk_roots: Explicit SDK root paths, bypassing ``xcrun``
    :type sdk_roots: dict, optional
    :param path: The ``PATH`` given to every build command
    :type path: str
    """

    def __init__(
        self,
        name: str,
        version_min: str,
        targets: Sequence[str],
        cflags: str = "-mmacosx-version-min={version_min}",
        triple: str = "{arch}-apple-darwin",
        cc: str = "xcrun --sdk {sdk} clang -target {triple}",
        openssl_target: str = "darwin64-{arch}-cc",
        sdk_roots: Optional[Mapping[str, str]] = None,
        path: str = MINIMAL_PATH,
    ) -> None:
        for target in targets:
            sdk, _, arch = target.partition(".")
            if not sdk or not arch or "." in arch:
                raise ConfigurationError(
                    f"Target {target!r} of {name} is not of the form <sdk>.<arch>"
                )
        self.name = name
        self.version_min = version_min
        self.targets = tuple(targets)
        self.cflags_tpl = cflags
        self.triple_tpl = triple
        self.cc_tpl = cc
        self.openssl_target_tpl = openssl_target
        self.sdk_roots = dict(sdk_roots or {})
        self.path = path

    @property
    def lower(self) -> str:
        return self.name.lower()

    @property
    def sdks(self) -> List[str]:
        """The distinct SDKs of this OS, sorted."""
        return sorted({_.partition(".")[0] for _ in self.targets})

    def arches(self, sdk: str) -> List[str]:
        """
        The distinct architectures built for an SDK, in declared order.

        :raises ConfigurationError: If the SDK is not part of this OS
        """
        arches: List[str] = []
        for target in self.targets:
            target_sdk, _, arch = target.partition(".")
            if target_sdk == sdk and arch not in arches:
                arches.append(arch)
        if not arches:
            raise ConfigurationError(f"SDK {sdk!r} is not configured for {self.name}")
        return arches

    @property
    def cflags(self) -> str:
        return self.cflags_tpl.format(version_min=self.version_min)

    def triple(self, arch: str) -> str:
        return self.triple_tpl.format(arch=arch, version_min=self.version_min)

    def cc(self, sdk: str, arch: str) -> str:
        return self.cc_tpl.format(sdk=sdk, arch=arch, triple=self.triple(arch))

    def openssl_target(self, arch: str) -> str:
        return self.openssl_target_tpl.format(arch=arch)

    def sdk_root(self, sdk: str, env: Optional[Mapping[str, str]] = None) -> str:
        """
        Resolve the system root of an SDK.

        :raises ConfigurationError: If the SDK root can not be found
        """
        if sdk in self.sdk_roots:
            return self.sdk_roots[sdk]
        try:
            return capture(["xcrun", "--sdk", sdk, "--show-sdk-path"], env=env)
        except FatlibsException as exc:
            raise ConfigurationError(f"Unable to locate the {sdk} SDK: {exc}")

    def replace(self, **kwargs: Any) -> "OSProfile":
        """Return a copy of this profile with some attributes changed."""
        values: Dict[str, Any] = {
            "name": self.name,
            "version_min": self.version_min,
            "targets": self.targets,
            "cflags": self.cflags_tpl,
            "triple": self.triple_tpl,
            "cc": self.cc_tpl,
            "openssl_target": self.openssl_target_tpl,
            "sdk_roots": self.sdk_roots,
            "path": self.path,
        }
        values.update(kwargs)
        return OSProfile(**values)

    def __repr__(self) -> str:
        return f"OSProfile({self.name!r}, {list(self.targets)!r})"


class Registry:
    """
    The complete set of products and OS profiles for a run.

    :param products: The products, in build order
    :type products: list
    :param os_profiles: Every known OS profile
    :type os_profiles: list
    :param os_list: The names of the OS profiles built by default
    :type os_list: list, optional
    :param build_number: The label embedded in distribution archive names
    :type build_number: str
    """

    def __init__(
        self,
        products: Sequence[Product],
        os_profiles: Sequence[OSProfile],
        os_list: Optional[Sequence[str]] = None,
        build_number: str = DEFAULT_BUILD_NUMBER,
    ) -> None:
        self.products: Dict[str, Product] = {_.name: _ for _ in products}
        self.os_profiles: Dict[str, OSProfile] = {_.name: _ for _ in os_profiles}
        if os_list is None:
            os_list = list(self.os_profiles)
        for name in os_list:
            if name not in self.os_profiles:
                raise ConfigurationError(f"Unknown OS {name!r}")
        self.os_list = list(os_list)
        if not build_number:
            raise ConfigurationError("The build number can not be empty")
        self.build_number = build_number

    def product(self, name: str) -> Product:
        """
        Look up a product by name, ignoring case.

        :raises ConfigurationError: If there is no such product
        """
        if name in self.products:
            return self.products[name]
        for product in self.products.values():
            if product.lower == name.lower():
                return product
        raise ConfigurationError(f"Unknown product {name!r}")

    def os_profile(self, name: str) -> OSProfile:
        """
        Look up an OS profile by name.

        :raises ConfigurationError: If there is no such OS
        """
        try:
            return self.os_profiles[name]
        except KeyError:
            raise ConfigurationError(f"Unknown OS {name!r}")

    @property
    def enabled(self) -> List[OSProfile]:
        """The OS profiles built by default."""
        return [self.os_profiles[_] for _ in self.os_list]


def default_products() -> List[Product]:
    return [
        Product(
            "BZip2",
            "1.0.8",
            "https://sourceware.org/pub/bzip2/bzip2-{version}.tar.gz",
            adapter="bzip2",
        ),
        Product(
            "XZ",
            "5.4.4",
            "https://tukaani.org/xz/xz-{version}.tar.gz",
            adapter="xz",
        ),
        # Preference is to use OpenSSL 3; 1.1.1 releases can still be built by
        # overriding the version, they are fetched from the "old" tree.
        Product(
            "OpenSSL",
            "3.0.12",
            "https://openssl.org/source/openssl-{version}.tar.gz",
            adapter="openssl",
            fallback_url="https://openssl.org/source/old/{series}/openssl-{version}.tar.gz",
        ),
    ]


def default_os_profiles() -> List[OSProfile]:
    return [
        OSProfile(
            "macOS",
            version_min="11.0",
            targets=["macosx.x86_64", "macosx.arm64"],
        ),
    ]


def default_registry() -> Registry:
    """
    The registry used when no configuration is given.
    """
    return Registry(default_products(), default_os_profiles(), ["macOS"])


_PRODUCT_KEYS = {"version", "url", "adapter", "fallback_url", "checksum", "patches"}
_OS_KEYS = {
    "version_min",
    "targets",
    "cflags",
    "triple",
    "cc",
    "openssl_target",
    "sdk_roots",
    "path",
}


def _read_config(config: PathLike) -> Dict[str, Any]:
    path = pathlib.Path(config)
    try:
        with open(path, "r") as fp:
            data = json.load(fp)
    except OSError as exc:
        raise ConfigurationError(f"Unable to read config {path}: {exc}")
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid config {path}: {exc}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid config {path}: expected an object")
    return data


def _check_keys(kind: str, name: str, data: Any, allowed: set[str]) -> None:
    if not isinstance(data, dict):
        raise ConfigurationError(f"{kind} {name!r} must be an object")
    unknown = set(data) - allowed
    if unknown:
        raise ConfigurationError(
            "{} {!r} has unknown keys: {}".format(kind, name, ", ".join(sorted(unknown)))
        )


def _resolve_patches(
    name: str, patches: Any, base: pathlib.Path
) -> Dict[str, List[pathlib.Path]]:
    if not isinstance(patches, dict):
        raise ConfigurationError(
            f"Patches of product {name!r} must be an object of OS names to lists"
        )
    resolved: Dict[str, List[pathlib.Path]] = {}
    for os_name, files in patches.items():
        if not isinstance(files, list) or not all(isinstance(_, str) for _ in files):
            raise ConfigurationError(
                f"Patches of product {name!r} for {os_name!r} must be a list of paths"
            )
        resolved[os_name] = [(base / _).resolve() for _ in files]
    return resolved


def apply_config(registry: Registry, config: PathLike) -> Registry:
    """
    Layer a JSON config file over a registry.

    Relative patch paths are resolved against the directory holding the
    config file.

    :param registry: The registry to start from
    :type registry: ``fatlibs.registry.Registry``
    :param config: The path to the config file
    :type config: str

    :return: A new registry
    :rtype: ``fatlibs.registry.Registry``
    """
    data = _read_config(config)
    base = pathlib.Path(config).resolve().parent
    unknown = set(data) - {"build_number", "os_list", "products", "os"}
    if unknown:
        raise ConfigurationError(
            "Unknown config keys: {}".format(", ".join(sorted(unknown)))
        )

    products = dict(registry.products)
    for name, settings in data.get("products", {}).items():
        _check_keys("Product", name, settings, _PRODUCT_KEYS)
        settings = dict(settings)
        if "patches" in settings:
            settings["patches"] = _resolve_patches(name, settings["patches"], base)
        try:
            existing = registry.product(name)
        except ConfigurationError:
            missing = {"version", "url", "adapter"} - set(settings)
            if missing:
                raise ConfigurationError(
                    "New product {!r} requires: {}".format(
                        name, ", ".join(sorted(missing))
                    )
                )
            products[name] = Product(name, **settings)
        else:
            products[existing.name] = existing.replace(**settings)

    os_profiles = dict(registry.os_profiles)
    for name, settings in data.get("os", {}).items():
        _check_keys("OS", name, settings, _OS_KEYS)
        if name in os_profiles:
            os_profiles[name] = os_profiles[name].replace(**settings)
        else:
            missing = {"version_min", "targets"} - set(settings)
            if missing:
                raise ConfigurationError(
                    "New OS {!r} requires: {}".format(name, ", ".join(sorted(missing)))
                )
            os_profiles[name] = OSProfile(name, **settings)

    return Registry(
        list(products.values()),
        list(os_profiles.values()),
        data.get("os_list", registry.os_list),
        data.get("build_number", registry.build_number),
    )


def load_registry(
    config: Optional[PathLike] = None,
    versions: Optional[Mapping[str, str]] = None,
    os_names: Optional[Sequence[str]] = None,
    build_number: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Registry:
    """
    Build the registry for a run.

    Settings are layered, lowest precedence first: the defaults, the JSON
    config file, ``FATLIBS_BUILD_NUMBER`` and ``FATLIBS_<PRODUCT>_VERSION``
    environment variables, then the explicit arguments.

    :param config: A JSON config file
    :type config: str, optional
    :param versions: Product versions keyed by product name
    :type versions: dict, optional
    :param os_names: The OS profiles to build
    :type os_names: list, optional
    :param build_number: The label embedded in archive names
    :type build_number: str, optional
    :param environ: The environment to read overrides from, defaults to ``os.environ``
    :type environ: dict, optional

    :raises ConfigurationError: When any layer is invalid
    """
    if environ is None:
        environ = os.environ
    registry = default_registry()
    if config is not None:
        log.debug("Loading config %s", config)
        registry = apply_config(registry, config)

    overrides: Dict[str, str] = {}
    for product in registry.products.values():
        key = VERSION_ENV_TPL.format(product.lower.upper())
        if environ.get(key):
            overrides[product.name] = environ[key]
    for name, version in (versions or {}).items():
        overrides[registry.product(name).name] = version

    products = []
    for product in registry.products.values():
        if product.name in overrides:
            log.debug("Using %s %s", product.name, overrides[product.name])
            product = product.replace(version=overrides[product.name])
        products.append(product)

    if build_number is None:
        build_number = environ.get(BUILD_NUMBER_ENV) or registry.build_number
    if os_names:
        for name in os_names:
            registry.os_profile(name)
        os_list: Sequence[str] = list(os_names)
    else:
        os_list = registry.os_list
    return Registry(
        products, list(registry.os_profiles.values()), os_list, build_number
    )


def parse_versions(values: Sequence[str]) -> Dict[str, str]:
    """
    Parse ``PRODUCT=VERSION`` command line values.

    :raises ConfigurationError: When a value is not of that form
    """
    versions: Dict[str, str] = {}
    for value in values:
        name, sep, version = value.partition("=")
        if not sep or not name or not version:
            raise ConfigurationError(
                f"Invalid version {value!r}, expected PRODUCT=VERSION"
            )
        versions[name] = version
    return versions


def add_registry_arguments(parser: argparse.ArgumentParser) -> None:
    """
    Add the arguments shared by every command that reads the registry.

    :param parser: The parser of a sub-command
    :type parser: ``argparse.ArgumentParser``
    """
    parser.add_argument(
        "--root",
        default=None,
        help="The working directory root [default: $FATLIBS_ROOT or the current directory]",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="A JSON file overriding products, versions and OS profiles",
    )
    parser.add_argument(
        "--version",
        dest="versions",
        metavar="PRODUCT=VERSION",
        action="append",
        default=[],
        help="Override the version of a product, can use multiple of this argument",
    )
    parser.add_argument(
        "--os",
        dest="os_names",
        metavar="OS",
        action="append",
        default=[],
        help="An OS to build for, can use multiple of this argument [default: every enabled OS]",
    )
    parser.add_argument(
        "--build-number",
        default=None,
        help="The label embedded in archive names [default: $FATLIBS_BUILD_NUMBER or custom]",
    )


def registry_from_args(args: argparse.Namespace) -> Registry:
    """
    Load the registry described by the shared command line arguments.
    """
    return load_registry(
        config=args.config,
        versions=parse_versions(args.versions),
        os_names=args.os_names or None,
        build_number=args.build_number,
    )
