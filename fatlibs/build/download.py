# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Download utility class for fetching source archives.
"""
from __future__ import annotations

import hashlib
import logging
import os
import pathlib
from typing import Optional

from ..common import (
    DownloadError,
    FatlibsException,
    PathLike,
    download_url,
)
from ..registry import Product

# Environment flag for CI/CD detection
CICD = "CI" in os.environ

log = logging.getLogger(__name__)


def verify_checksum(file: PathLike, checksum: Optional[str]) -> bool:
    """
    Verify the checksum of a file.

    Supports both SHA-1 (40 hex chars) and SHA-256 (64 hex chars) checksums.
    The hash algorithm is auto-detected based on checksum length.

    :param file: The path to the file to check.
    :type file: str
    :param checksum: The checksum to verify against (SHA-1 or SHA-256)
    :type checksum: str

    :raises FatlibsException: If the checksum verification failed

    :return: True if it succeeded, or False if the checksum was None
    :rtype: bool
    """
    if checksum is None:
        log.error("Can't verify checksum because none was given")
        return False

    # SHA-1: 40 hex chars, SHA-256: 64 hex chars
    if len(checksum) == 64:
        hash_algo = hashlib.sha256()
        hash_name = "sha256"
    elif len(checksum) == 40:
        hash_algo = hashlib.sha1()
        hash_name = "sha1"
    else:
        raise FatlibsException(
            f"Invalid checksum length {len(checksum)}. Expected 40 (SHA-1) or 64 (SHA-256)"
        )

    with open(file, "rb") as fp:
        for block in iter(lambda: fp.read(1024 * 1024), b""):
            hash_algo.update(block)
    file_checksum = hash_algo.hexdigest()
    if checksum.lower() != file_checksum:
        raise FatlibsException(
            f"{hash_name} checksum verification failed. expected={checksum} found={file_checksum}"
        )
    return True


class Download:
    """
    A utility that holds information about a source archive to be downloaded.

    :param name: The name of the download
    :type name: str
    :param url: The url of the download
    :type url: str
    :param fallback_url: The url tried when ``url`` fails, defaults to None
    :type fallback_url: str
    :param destination: The directory to download the file to
    :type destination: str
    :param version: The version of the content to download
    :type version: str
    :param checksum: The sha1 or sha256 sum of the download
    :type checksum: str
    """

    def __init__(
        self,
        name: str,
        url: str,
        fallback_url: Optional[str] = None,
        destination: PathLike = "",
        version: str = "",
        checksum: Optional[str] = None,
        timeout: float = 60,
        backoff: int = 3,
    ) -> None:
        self.name = name
        self.url = url
        self.fallback_url = fallback_url
        self.destination = pathlib.Path(destination)
        self.version = version
        self.checksum = checksum
        self.timeout = timeout
        self.backoff = backoff

    @classmethod
    def from_product(
        cls, product: Product, destination: PathLike, **kwargs: float
    ) -> "Download":
        """
        Create the download of a product's pinned source archive.
        """
        return cls(
            product.name,
            product.url,
            product.fallback_url,
            destination,
            product.version,
            product.checksum,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def filepath(self) -> pathlib.Path:
        """Get the full file path where the download will be saved."""
        _, name = self.url.rsplit("/", 1)
        return self.destination / name

    def exists(self) -> bool:
        """
        True when the artifact already exists on disk.

        :return: True when the artifact already exists on disk
        :rtype: bool
        """
        return self.filepath.exists()

    def _fetch(self, url: str) -> pathlib.Path:
        local = pathlib.Path(
            download_url(
                url, self.destination, CICD, backoff=self.backoff, timeout=self.timeout
            )
        )
        if local != self.filepath:
            # The fallback may live under another file name.
            os.replace(local, self.filepath)
        return self.filepath

    def fetch_file(self) -> pathlib.Path:
        """
        Download the file, trying the fallback url when the primary one fails.

        :raises DownloadError: When no url could be downloaded
        :return: The path to the downloaded content
        :rtype: ``pathlib.Path``
        """
        try:
            return self._fetch(self.url)
        except FatlibsException as exc:
            if not self.fallback_url:
                raise DownloadError(self.name, self.version, self.url, exc)
            log.warning(
                "Download failed %s (%s); trying fallback url %s",
                self.url,
                exc,
                self.fallback_url,
            )
            try:
                return self._fetch(self.fallback_url)
            except FatlibsException as fallback_exc:
                raise DownloadError(
                    self.name, self.version, self.fallback_url, fallback_exc
                )

    @staticmethod
    def validate_checksum(archive: PathLike, checksum: Optional[str]) -> bool:
        """
        True when when the archive matches the checksum.

        :param archive: The path to the archive to validate
        :type archive: str
        :param checksum: The sum to validate against
        :type checksum: str
        :return: True if the sums matched, else False
        :rtype: bool
        """
        try:
            verify_checksum(archive, checksum)
            return True
        except FatlibsException as exc:
            log.error("Checksum validation failed on %s: %s", archive, exc)
            return False

    def __call__(self, force_download: bool = False) -> str:
        """
        Make sure the archive is present, downloading it when needed.

        An archive already on disk is kept unless ``force_download`` is set or
        it does not match the configured checksum.

        :raises DownloadError: When the archive can not be downloaded or does
            not match its checksum
        :return: ``fresh`` when nothing was downloaded, ``ran`` otherwise
        :rtype: str
        """
        os.makedirs(self.destination, exist_ok=True)
        if not force_download and self.exists():
            if self.checksum is None or self.validate_checksum(
                self.filepath, self.checksum
            ):
                log.debug("%s already downloaded, skipping.", self.filepath)
                return "fresh"
            log.warning("Checksum did not match %s, downloading again", self.filepath)
        self.fetch_file()
        if self.checksum is not None and not self.validate_checksum(
            self.filepath, self.checksum
        ):
            # Keep the archive for inspection, but never let it look fresh.
            os.utime(self.filepath, ns=(0, 0))
            raise DownloadError(
                self.name,
                self.version,
                self.url,
                f"checksum did not match {self.checksum}",
            )
        return "ran"
