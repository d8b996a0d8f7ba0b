# Copyright 2022-2026 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Common classes and values used around fatlibs.
"""
from __future__ import annotations

import http.client
import logging
import os
import pathlib
import platform
import selectors
import subprocess
import tarfile
import time
from typing import IO, Any, BinaryIO, Literal, Mapping, Optional, Union, cast

# fatlibs package version
__version__ = "0.3.0"

log = logging.getLogger(__name__)

MODULE_DIR = pathlib.Path(__file__).resolve().parent

ROOT_ENV = "FATLIBS_ROOT"

# Force the path to be minimal. This ensures that anything in the user
# environment (in particular, homebrew and user-provided Python installs)
# isn't inadvertently linked into the libraries being built.
MINIMAL_PATH = "/usr/bin:/bin:/usr/sbin:/sbin:/Library/Apple/usr/bin"

# Variables copied from the caller's environment into every child process.
PASSTHROUGH_ENV = ("HOME", "TMPDIR", "DEVELOPER_DIR", "LANG")

REQUEST_HEADERS = {"User-Agent": f"fatlibs {__version__}"}

PathLike = Union[str, os.PathLike[str]]


class FatlibsException(Exception):
    """
    Base class for exeptions generated from fatlibs.
    """


class ConfigurationError(FatlibsException):
    """
    A product, OS profile or SDK is missing or malformed.
    """


class CommandError(FatlibsException):
    """
    An external command exited with a non zero status.
    """

    def __init__(self, cmd: Any, returncode: int) -> None:
        self.cmd = [str(_) for _ in cmd]
        self.returncode = returncode
        super().__init__(
            "Build cmd '{}' failed with exit code {}".format(
                " ".join(self.cmd), returncode
            )
        )


class DownloadError(FatlibsException):
    """
    A source archive could not be fetched.
    """

    def __init__(self, name: str, version: str, url: str, reason: object) -> None:
        self.name = name
        self.version = version
        self.url = url
        super().__init__(f"Unable to download {name} {version} from {url}: {reason}")


class StageError(FatlibsException):
    """
    A pipeline stage failed for one product.

    The message names the product, OS, SDK, architecture, stage and the log
    holding the stage output so a failure can be traced without re-running.
    """

    stage = "build"

    def __init__(
        self,
        message: str,
        product: str = "",
        os_name: str = "",
        sdk: str = "",
        arch: str = "",
        log_path: Optional[PathLike] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.product = product
        self.os_name = os_name
        self.sdk = sdk
        self.arch = arch
        if stage is not None:
            self.stage = stage
        self.log_path = pathlib.Path(log_path) if log_path else None

    @property
    def context(self) -> dict[str, str]:
        return {
            "product": self.product,
            "os": self.os_name,
            "sdk": self.sdk,
            "arch": self.arch,
            "stage": self.stage,
            "log": str(self.log_path) if self.log_path else "",
        }

    def __str__(self) -> str:
        parts = [self.message]
        for key, value in self.context.items():
            if value:
                parts.append(f"  {key}: {value}")
        return "\n".join(parts)


class PatchError(StageError):
    """
    A patch did not apply to an unpacked source tree.
    """

    stage = "patch"

    def __init__(self, message: str, patch: PathLike = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.patch = str(patch)

    @property
    def context(self) -> dict[str, str]:
        context = super().context
        context["patch"] = self.patch
        return context


class UnpackError(StageError):
    stage = "unpack"


class ConfigureError(StageError):
    stage = "configure"


class CompileError(StageError):
    stage = "compile"


class InstallError(StageError):
    stage = "install"


class MissingArtifactError(StageError):
    """
    A merge was attempted before every architecture was installed.
    """

    stage = "merge"


class MissingInputError(StageError):
    """
    A package was attempted without a merged artifact.
    """

    stage = "package"


def build_arch() -> str:
    """
    Return the current machine.
    """
    machine = platform.machine()
    return machine.lower()


def work_root(root: Optional[PathLike] = None) -> pathlib.Path:
    """
    Get the root directory that all other fatlibs working directories should be based on.

    :param root: An explicitly requested root directory
    :type root: str

    :return: An absolute path to the fatlibs root working directory
    :rtype: ``pathlib.Path``
    """
    if root is not None:
        return pathlib.Path(root).resolve()
    if os.environ.get(ROOT_ENV):
        return pathlib.Path(os.environ[ROOT_ENV]).resolve()
    return pathlib.Path.cwd().resolve()


class WorkDirs:
    """
    Simple class used to hold references to working directories fatlibs uses relative to a given root.

    :param root: The root of the working directories tree
    :type root: str
    """

    def __init__(self: "WorkDirs", root: PathLike) -> None:
        self.root: pathlib.Path = pathlib.Path(root)
        self.downloads: pathlib.Path = self.root / "downloads"
        self.build: pathlib.Path = self.root / "build"
        self.install: pathlib.Path = self.root / "install"
        self.dist: pathlib.Path = self.root / "dist"
        self.logs: pathlib.Path = self.root / "logs"

    def __getstate__(self: "WorkDirs") -> dict[str, pathlib.Path]:
        """
        Return an object used for pickling.

        :return: The picklable state
        """
        return {"root": self.root}

    def __setstate__(self: "WorkDirs", state: Mapping[str, pathlib.Path]) -> None:
        """
        Unwrap the object returned from unpickling.

        :param state: The state to unpickle
        :type state: dict
        """
        self.__init__(state["root"])  # type: ignore[misc]

    def __repr__(self) -> str:
        return f"WorkDirs({str(self.root)!r})"


def work_dirs(root: Optional[PathLike] = None) -> WorkDirs:
    """
    Returns a WorkDirs instance based on the given root.

    :param root: The desired root of fatlibs' working directories
    :type root: str

    :return: A WorkDirs instance based on the given root
    :rtype: ``fatlibs.common.WorkDirs``
    """
    return WorkDirs(work_root(root))


def extract_archive(
    to_dir: PathLike, archive: PathLike, strip_components: int = 0
) -> None:
    """
    Extract an archive to a specific location.

    :param to_dir: The directory to extract to
    :type to_dir: str
    :param archive: The archive to extract
    :type archive: str
    :param strip_components: Leading path components removed from every member
    :type strip_components: int
    """
    archive_path = pathlib.Path(archive)
    archive_str = str(archive_path)
    to_path = pathlib.Path(to_dir)
    TarReadMode = Literal["r:gz", "r:xz", "r:bz2", "r"]
    read_type: TarReadMode = "r"
    if archive_str.endswith(".tgz"):
        log.debug("Found tgz archive")
        read_type = "r:gz"
    elif archive_str.endswith(".tar.gz"):
        log.debug("Found tar.gz archive")
        read_type = "r:gz"
    elif archive_str.endswith(".xz"):
        log.debug("Found xz archive")
        read_type = "r:xz"
    elif archive_str.endswith(".bz2"):
        log.debug("Found bz2 archive")
        read_type = "r:bz2"
    else:
        log.warning("Found unknown archive type: %s", archive_path)
    with tarfile.open(str(archive_path), mode=read_type) as tar:
        if not strip_components:
            tar.extractall(str(to_path))
            return
        members = []
        for member in tar.getmembers():
            parts = pathlib.PurePosixPath(member.name).parts[strip_components:]
            if not parts:
                continue
            member.name = str(pathlib.PurePosixPath(*parts))
            members.append(member)
        tar.extractall(str(to_path), members=members)


def get_download_location(url: str, dest: PathLike) -> str:
    """
    Get the full path to where the url will be downloaded to.

    :param url: The url to donwload
    :type url: str
    :param dest: Where to download the url to
    :type dest: str

    :return: The path to where the url will be downloaded to
    :rtype: str
    """
    return os.path.join(os.fspath(dest), os.path.basename(url))


def fetch_url(url: str, fp: BinaryIO, backoff: int = 3, timeout: float = 30) -> None:
    """
    Fetch the contents of a url.

    This method will store the contents in the given file like object.
    Connection failures and server errors are retried ``backoff`` times,
    client errors (404 and friends) fail straight away.
    """
    import urllib.error
    import urllib.request

    last = time.time()
    attempts = max(backoff, 1)
    response: http.client.HTTPResponse | None = None
    req = urllib.request.Request(url, headers=REQUEST_HEADERS)
    for attempt in range(1, attempts + 1):
        try:
            response = urllib.request.urlopen(req, timeout=timeout)
            break
        except urllib.error.HTTPError as exc:
            if exc.code < 500 or attempt >= attempts:
                raise FatlibsException(f"Error fetching url {url} {exc}")
            log.debug("Server error %s fetching %s", exc.code, url)
            time.sleep(attempt * 10)
        except (urllib.error.URLError, http.client.RemoteDisconnected) as exc:
            if attempt >= attempts:
                raise FatlibsException(f"Error fetching url {url} {exc}")
            log.debug("Unable to connect %s", url)
            time.sleep(attempt * 10)
    if response is None:
        raise FatlibsException(f"Unable to open url {url}")
    log.info("url opened %s", url)
    try:
        total = 0
        block = response.read(1024 * 300)
        while block:
            total += len(block)
            if time.time() - last > 10:
                log.info("%s > %d", url, total)
                last = time.time()
            fp.write(block)
            block = response.read(10240)
    finally:
        response.close()
    log.info("Download complete %s", url)


def download_url(
    url: str,
    dest: PathLike,
    verbose: bool = True,
    backoff: int = 3,
    timeout: float = 60,
) -> str:
    """
    Download the url to the provided destination.

    This method assumes the last part of the url is a filename. (https://foo.com/bar/myfile.tar.gz)
    The content is written next to the destination with a ``.part`` suffix
    and only renamed into place once the transfer completed.

    :param url: The url to download
    :type url: str
    :param dest: Where to download the url to
    :type dest: str
    :param verbose: Log download url and destination
    :type verbose: bool

    :raises FatlibsException: If the url was unable to be downloaded

    :return: The path to the downloaded content
    :rtype: str
    """
    local = get_download_location(url, dest)
    partial = f"{local}.part"
    if verbose:
        log.debug("Downloading %s -> %s", url, local)
    try:
        with open(partial, "wb") as fout:
            fetch_url(url, fout, backoff, timeout)
        os.replace(partial, local)
    except Exception as exc:
        if verbose:
            log.error("Unable to download: %s\n%s", url, exc)
        try:
            os.unlink(partial)
        except OSError:
            pass
        raise
    finally:
        log.debug("Finished downloading %s -> %s", url, local)
    return local


def runcmd(
    cmd: Any,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[PathLike] = None,
    logfp: Optional[IO[str]] = None,
) -> subprocess.Popen[str]:
    """
    Run a command.

    Run the provided command, raising an Exception when the command finishes
    with a non zero exit code. Both output streams are appended line by line
    to ``logfp`` when given.

    :param cmd: The command and its arguments
    :type cmd: list
    :param env: The complete environment of the child process
    :type env: dict
    :param cwd: The working directory of the child process
    :type cwd: str
    :param logfp: A handle for the log file
    :type logfp: file

    :return: The finished process
    :rtype: ``subprocess.Popen``

    :raises CommandError: If the command finishes with a non zero exit code
    """
    if not cmd:
        raise FatlibsException("No command provided to runcmd")
    log.debug("Running command: %s", " ".join(map(str, cmd)))
    p = subprocess.Popen(
        [str(_) for _ in cmd],
        env=dict(env) if env is not None else None,
        cwd=str(cwd) if cwd is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        universal_newlines=True,
    )
    stdout_stream = p.stdout
    stderr_stream = p.stderr
    if stdout_stream is None or stderr_stream is None:
        p.wait()
        raise FatlibsException("Process pipes are unavailable")
    # Read both stdout and stderr simultaneously
    sel = selectors.DefaultSelector()
    sel.register(stdout_stream, selectors.EVENT_READ)
    sel.register(stderr_stream, selectors.EVENT_READ)
    open_streams = 2
    while open_streams:
        for key, _ in sel.select():
            stream = cast(IO[str], key.fileobj)
            line = stream.readline()
            if not line:
                sel.unregister(stream)
                open_streams -= 1
                continue
            if logfp is not None:
                logfp.write(line)
            log.debug(line.rstrip("\n"))
    sel.close()
    p.wait()
    if logfp is not None:
        logfp.flush()
    if p.returncode != 0:
        raise CommandError(cmd, p.returncode)
    return p


def capture(cmd: Any, env: Optional[Mapping[str, str]] = None) -> str:
    """
    Run a command and return its stripped standard output.

    :raises CommandError: If the command finishes with a non zero exit code
    """
    log.debug("Capturing command: %s", " ".join(map(str, cmd)))
    try:
        proc = subprocess.run(
            [str(_) for _ in cmd],
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            universal_newlines=True,
        )
    except OSError as exc:
        raise FatlibsException(f"Unable to run {cmd[0]}: {exc}")
    if proc.returncode != 0:
        log.debug(proc.stderr)
        raise CommandError(cmd, proc.returncode)
    return proc.stdout.strip()
