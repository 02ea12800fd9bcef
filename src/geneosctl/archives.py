"""Locate and open Geneos release archives.

Archives come from one of four places, tried in this order:

* an explicit ``source`` (file, directory, ``http(s)`` URL or ``-`` for stdin),
* the local download cache (``<cache_root>/packages/downloads``) when
  ``local_only`` is set,
* the ITRS resources endpoint,
* a Nexus repository search API.

Downloads are streamed into the cache unless ``no_save`` is set. A cached
file with the same name and length as the remote one is reused instead.
"""
from __future__ import annotations

import logging
import os
import posixpath
import pwd
import re
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import IO, BinaryIO, cast
from urllib.parse import unquote, urljoin, urlparse

import requests

from . import __version__
from .components import ComponentDescriptor, ComponentRegistry
from .config import AppConfig
from .errors import (
    AuthRequiredError,
    DownloadError,
    InvalidArgsError,
    NotExistError,
)
from .options import PackageOptions
from .versions import VersionResolver

_LOG = logging.getLogger(__name__)

ARCHIVE_RE = re.compile(
    r"^geneos-(web-server|fixanalyser2-netprobe|file-agent|\w+)-([\w.-]+?)[.-]?linux"
)
_DISPOSITION_RE = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)

STDIN_SOURCE = "-"
STDIN_FILENAME = "stdin.tar.gz"
CHUNK_SIZE = 1024 * 1024


def parse_archive_name(filename: str) -> tuple[str, str] | None:
    """Split an archive filename into ``(component fragment, version)``."""
    match = ARCHIVE_RE.match(posixpath.basename(filename))
    if match is None:
        return None
    return match.group(1), match.group(2)


def filename_from_response(response: requests.Response) -> str:
    """Return the archive name from ``Content-Disposition`` or the final URL."""
    disposition = response.headers.get("Content-Disposition", "")
    match = _DISPOSITION_RE.search(disposition)
    if match:
        name = posixpath.basename(unquote(match.group(1).strip()))
        if name:
            return name
    name = posixpath.basename(unquote(urlparse(response.url or "").path))
    if not name:
        raise DownloadError(f"Cannot determine an archive filename from {response.url!r}.")
    return name


@dataclass(slots=True)
class OpenedArchive:
    """An open archive stream together with where it came from."""

    stream: IO[bytes]
    filename: str
    origin: str
    size: int | None = None
    path: Path | None = None
    response: requests.Response | None = None

    def close(self) -> None:
        """Close the stream and any HTTP response behind it."""
        try:
            self.stream.close()
        finally:
            if self.response is not None:
                self.response.close()

    def __enter__(self) -> OpenedArchive:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


def build_session() -> requests.Session:
    """Return the HTTP session used for downloads."""
    session = requests.Session()
    session.headers.update({"User-Agent": f"geneosctl/{__version__}"})
    return session


class ArchiveSource:
    """Find release archives for components and open them for unpacking."""

    def __init__(
        self,
        config: AppConfig,
        components: ComponentRegistry,
        *,
        session: requests.Session | None = None,
        stdin: BinaryIO | None = None,
        resolver: VersionResolver | None = None,
    ) -> None:
        """Bind the source to configuration and an HTTP session."""
        self.config = config
        self.components = components
        self.session = session if session is not None else build_session()
        self._stdin = stdin
        self._stdin_spool: Path | None = None
        self.resolver = resolver or VersionResolver()

    @property
    def downloads_dir(self) -> Path:
        """Return the local archive cache directory."""
        return self.config.downloads_dir

    # Entry point -------------------------------------------------------
    def open(
        self,
        component: ComponentDescriptor | None,
        options: PackageOptions,
    ) -> OpenedArchive:
        """Return an open archive for *component* according to *options*.

        *component* may only be ``None`` for an explicit file, URL or stdin
        source, where the archive name identifies the component later.
        """
        directory: Path | None = None
        if options.source:
            opened = self._open_source(options)
            if isinstance(opened, OpenedArchive):
                return opened
            _LOG.debug("source %s is a directory, using local archives", opened)
            directory = opened

        if component is None:
            raise InvalidArgsError("A component is required unless an archive file is given.")

        if options.local_only or directory is not None:
            return self.open_local(component, options, directory or self.downloads_dir)

        response = self._fetch(component, options)
        filename = filename_from_response(response)
        _LOG.debug(
            "download check for %s version %r returned %s (%s bytes)",
            component,
            options.version,
            filename,
            response.headers.get("Content-Length", "unknown"),
        )
        return self._save(component, options, response, filename)

    # Explicit sources --------------------------------------------------
    def _open_source(self, options: PackageOptions) -> OpenedArchive | Path:
        source = options.source
        if source == STDIN_SOURCE:
            path = self._spool_stdin()
            return OpenedArchive(
                stream=path.open("rb"),
                filename=STDIN_FILENAME,
                origin="source",
                size=path.stat().st_size,
            )

        if urlparse(source).scheme in ("http", "https"):
            response = self._request("GET", source, what=f"source {source}")
            if response.status_code > 299:
                response.close()
                raise _status_error(
                    response.status_code,
                    f"cannot download {source}: HTTP {response.status_code} {response.reason}",
                )
            return OpenedArchive(
                stream=_raw_stream(response),
                filename=filename_from_response(response),
                origin="source",
                size=_content_length(response),
                response=response,
            )

        path = Path(source).expanduser()
        if path.is_dir():
            return path
        if not path.exists():
            raise NotExistError(f"Archive source {path} does not exist.")
        return OpenedArchive(
            stream=path.open("rb"),
            filename=path.name,
            origin="source",
            size=path.stat().st_size,
            path=path,
        )

    def _spool_stdin(self) -> Path:
        """Copy standard input to a temporary file once so every host can read it."""
        if self._stdin_spool is not None:
            return self._stdin_spool
        stream = self._stdin if self._stdin is not None else sys.stdin.buffer
        fd, name = tempfile.mkstemp(prefix="geneosctl-stdin-", suffix=".tar.gz")
        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as handle:
                shutil.copyfileobj(stream, handle, CHUNK_SIZE)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        self._stdin_spool = path
        return path

    def close(self) -> None:
        """Remove the spooled copy of standard input, if any."""
        if self._stdin_spool is not None:
            self._stdin_spool.unlink(missing_ok=True)
            self._stdin_spool = None

    # Local cache -------------------------------------------------------
    def local_archives(
        self,
        component: ComponentDescriptor,
        directory: Path,
        platform: str = "",
    ) -> dict[str, str]:
        """Map version to filename for *component* archives in *directory*."""
        try:
            names = sorted(entry.name for entry in directory.iterdir() if entry.is_file())
        except FileNotFoundError:
            return {}
        suffix = f"-{platform}" if platform else ""
        found: dict[str, str] = {}
        platform_specific: set[str] = set()
        for name in names:
            parsed = parse_archive_name(name)
            if parsed is None or parsed[0] != component.archive_name:
                continue
            version = parsed[1]
            if suffix and version.endswith(suffix):
                version = version[: -len(suffix)]
                platform_specific.add(version)
            elif version in platform_specific:
                continue
            found[version] = name
        return found

    def open_local(
        self,
        component: ComponentDescriptor,
        options: PackageOptions,
        directory: Path,
    ) -> OpenedArchive:
        """Open the newest (or requested) cached archive of *component*."""
        archives = self.local_archives(component, directory, options.platform)
        if not archives:
            raise InvalidArgsError(
                f"local installation selected but no suitable file found for {component} "
                f"in {directory}"
            )
        version = self.resolver.resolve(list(archives), options.version)
        path = directory / archives[version]
        _LOG.debug("using local archive %s", path)
        return OpenedArchive(
            stream=path.open("rb"),
            filename=path.name,
            origin="local",
            size=path.stat().st_size,
            path=path,
        )

    # Network backends --------------------------------------------------
    def _fetch(self, component: ComponentDescriptor, options: PackageOptions) -> requests.Response:
        if options.download_type == "nexus":
            response = self._fetch_nexus(component, options)
        else:
            response = self._fetch_resources(component, options)

        if response.status_code > 299:
            response.close()
            raise _status_error(
                response.status_code,
                f"cannot download {component} package version {options.version!r}: "
                f"HTTP {response.status_code} {response.reason}",
            )
        return response

    def _credentials(self, options: PackageOptions) -> tuple[str, str]:
        if options.username:
            return options.username, options.password
        return self.config.download.username, self.config.download.password

    def _fetch_resources(
        self,
        component: ComponentDescriptor,
        options: PackageOptions,
    ) -> requests.Response:
        base = self.config.download.url
        url = urljoin(base if base.endswith("/") else base + "/", component.resources_path)
        platform = options.platform
        params = {"os": "linux"}
        if not options.wants_latest:
            if platform:
                raise InvalidArgsError(
                    f"cannot download a specific version for platform {platform!r}; "
                    "download the archive manually"
                )
            params["title"] = options.version
        elif platform:
            params["title"] = f"-{platform}"

        what = f"{component} package"
        response = self._request("GET", url, params=params, what=what)
        if response.status_code == 404 and platform:
            response.close()
            params.pop("title", None)
            _LOG.debug("platform download failed, retrying %s without platform", url)
            response = self._request("GET", url, params=params, what=what)

        if response.status_code in (401, 403):
            username, password = self._credentials(options)
            if username:
                response.close()
                body = {"username": username, "password": password}
                response = self._request("POST", url, params=params, json=body, what=what)
                if response.status_code == 404 and platform:
                    response.close()
                    params.pop("title", None)
                    _LOG.debug("platform download failed, retrying %s without platform", url)
                    response = self._request("POST", url, params=params, json=body, what=what)
        return response

    def _fetch_nexus(
        self,
        component: ComponentDescriptor,
        options: PackageOptions,
    ) -> requests.Response:
        platform = options.platform
        params = {
            "maven.groupId": self.config.download.nexus_group,
            "maven.extension": "tar.gz",
            "sort": "version",
            "repository": options.download_base,
            "maven.artifactId": component.nexus_artifact,
            "maven.classifier": f"{platform}-linux-x64" if platform else "linux-x64",
        }
        if not options.wants_latest:
            params["maven.baseVersion"] = options.version
        username, password = self._credentials(options)
        auth = (username, password) if username else None
        return self._request(
            "GET",
            self.config.download.nexus_url,
            params=params,
            auth=auth,
            what=f"{component} package",
        )

    def _request(
        self,
        method: str,
        url: str,
        *,
        what: str,
        params: dict[str, str] | None = None,
        json: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> requests.Response:
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                auth=auth,
                stream=True,
                timeout=self.config.download.timeout,
            )
        except requests.RequestException as exc:
            raise DownloadError(f"cannot download {what} from {url}: {exc}") from exc
        _LOG.debug("%s %s -> %s", method, response.url, response.status_code)
        return response

    # Cache -------------------------------------------------------------
    def _save(
        self,
        component: ComponentDescriptor,
        options: PackageOptions,
        response: requests.Response,
        filename: str,
    ) -> OpenedArchive:
        origin = options.download_type
        length = _content_length(response)
        path = self.downloads_dir / filename

        if path.is_file() and length is not None and path.stat().st_size == length:
            _LOG.info("not downloading, %s already exists", path)
            response.close()
            return OpenedArchive(
                stream=path.open("rb"), filename=filename, origin=origin, size=length, path=path
            )

        if options.no_save:
            return OpenedArchive(
                stream=_raw_stream(response),
                filename=filename,
                origin=origin,
                size=length,
                response=response,
            )

        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(f"{path.name}.part")
        _LOG.info("downloading %s package version %r to %s", component, options.version, path)
        started = time.perf_counter()
        written = 0
        try:
            with partial.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        handle.write(chunk)
                        written += len(chunk)
        except requests.RequestException as exc:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"download of {filename} interrupted: {exc}") from exc
        finally:
            response.close()

        if length is not None and written != length:
            partial.unlink(missing_ok=True)
            raise DownloadError(
                f"download of {filename} incomplete: received {written} of {length} bytes"
            )
        os.replace(partial, path)
        elapsed = time.perf_counter() - started
        rate = written / elapsed if elapsed > 0 else 0.0
        _LOG.info("downloaded %d bytes in %.3f seconds (%.0f bytes/sec)", written, elapsed, rate)

        self._chown_download(path, options.local_username or self.config.local_username)
        return OpenedArchive(
            stream=path.open("rb"), filename=filename, origin=origin, size=written, path=path
        )

    @staticmethod
    def _chown_download(path: Path, username: str) -> None:
        if os.geteuid() != 0 or not username:
            return
        try:
            entry = pwd.getpwnam(username)
        except KeyError:
            _LOG.warning("cannot chown %s: unknown user %r", path, username)
            return
        os.chown(path, entry.pw_uid, entry.pw_gid)


def _content_length(response: requests.Response) -> int | None:
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _raw_stream(response: requests.Response) -> IO[bytes]:
    raw = response.raw
    raw.decode_content = True
    return cast(IO[bytes], raw)


def _status_error(status: int, message: str) -> Exception:
    if status in (401, 403):
        return AuthRequiredError(message)
    if status == 404:
        return NotExistError(message)
    return DownloadError(message)


__all__ = [
    "ARCHIVE_RE",
    "ArchiveSource",
    "OpenedArchive",
    "build_session",
    "filename_from_response",
    "parse_archive_name",
]
