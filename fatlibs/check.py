# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
The ``fatlibs check`` command, look for upstream releases newer than the pinned versions.
"""
from __future__ import annotations

import argparse
import logging
import re
import sys
from html.parser import HTMLParser
from typing import Dict, List, Optional

import requests
from packaging.version import InvalidVersion, Version, parse

from .common import REQUEST_HEADERS
from .registry import Product, load_registry

log = logging.getLogger(__name__)

# Pages listing the release tarballs of each product.
RELEASE_PAGES = {
    "bzip2": "https://sourceware.org/pub/bzip2/",
    "xz": "https://tukaani.org/xz/",
    "openssl": "https://www.openssl.org/source/",
}


def parse_links(text: str) -> List[str]:
    """
    Every ``href`` of the anchors in an html page.
    """

    class HrefParser(HTMLParser):
        def __init__(self) -> None:
            super().__init__()
            self.hrefs: List[str] = []

        def handle_starttag(self, tag: str, attrs: List[tuple]) -> None:
            if tag == "a":
                link = dict(attrs).get("href", "")
                if link:
                    self.hrefs.append(link)

    parser = HrefParser()
    parser.feed(text)
    return parser.hrefs


def tarball_version(product: str, href: str) -> Optional[str]:
    """
    The version of a ``<product>-<version>.tar.gz`` link.
    """
    match = re.search(
        r"(?:^|/){}-([0-9][0-9A-Za-z.]*)\.tar\.gz$".format(re.escape(product)), href
    )
    if match is None:
        return None
    return match.group(1)


def _parse(version: str) -> Optional[Version]:
    # OpenSSL letter releases (1.1.1w, 0.9.8zh) are not PEP 440 versions.
    match = re.match(r"^(\d+(?:\.\d+)*)([a-z]{1,2})$", version)
    if match and match.group(2):
        letters = match.group(2)
        number = 0
        for letter in letters:
            number = number * 26 + (ord(letter) - ord("a") + 1)
        version = f"{match.group(1)}.{number}"
    try:
        return parse(version)
    except InvalidVersion:
        return None


def newer_versions(current: str, found: List[str]) -> List[str]:
    """
    The versions in ``found`` newer than ``current``, sorted.

    Pre-releases are ignored.
    """
    current_version = _parse(current)
    if current_version is None:
        log.warning("Unable to parse version %s", current)
        return []
    newer = {}
    for candidate in found:
        version = _parse(candidate)
        if version is None or version.is_prerelease:
            continue
        if version > current_version:
            newer[version] = candidate
    return [newer[_] for _ in sorted(newer)]


def check_product(product: Product, timeout: float = 30) -> List[str]:
    """
    Fetch the release page of a product and return the newer versions listed.
    """
    location = RELEASE_PAGES.get(product.lower)
    if location is None:
        log.warning("No release page known for %s", product.name)
        return []
    resp = requests.get(location, headers=REQUEST_HEADERS, timeout=timeout)
    resp.raise_for_status()
    versions = []
    for href in parse_links(resp.text):
        version = tarball_version(product.lower, href)
        if version:
            versions.append(version)
    return newer_versions(product.version, versions)


def setup_parser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """
    Setup the subparser for the ``check`` command.

    :param subparsers: The subparsers object returned from ``add_subparsers``
    :type subparsers: argparse._SubParsersAction
    """
    subparser = subparsers.add_parser(
        "check", description="Check for upstream releases newer than the pinned versions"
    )
    subparser.set_defaults(func=main)
    subparser.add_argument(
        "--config", default=None, help="A JSON file overriding products and versions"
    )


def main(args: argparse.Namespace) -> None:
    """
    The entrypoint to the ``check`` command.

    :param args: The arguments to the command
    :type args: ``argparse.Namespace``
    """
    registry = load_registry(config=args.config)
    results: Dict[str, List[str]] = {}
    failed = False
    for product in registry.products.values():
        try:
            results[product.name] = check_product(product)
        except requests.RequestException as exc:
            sys.stderr.write(f"{product.name}: unable to check for releases: {exc}\n")
            failed = True
            continue
        newer = results[product.name]
        if newer:
            print(f"{product.name}: {' '.join(newer)} > {product.version}")
        else:
            print(f"{product.name}: {product.version} is the latest release")
    if failed:
        sys.exit(1)
