"""Tests for locating, downloading and caching release archives."""
from __future__ import annotations

import io
from collections.abc import Iterator
from pathlib import Path

import pytest
import requests

from geneosctl.activation import ActivationManager
from geneosctl.archives import (
    ArchiveSource,
    filename_from_response,
    parse_archive_name,
)
from geneosctl.components import ComponentRegistry
from geneosctl.config import NEXUS_URL, RESOURCES_URL, AppConfig
from geneosctl.errors import (
    AuthRequiredError,
    DownloadError,
    InvalidArgsError,
    NotExistError,
)
from geneosctl.exit_codes import ExitCode
from geneosctl.hosts import Fleet
from geneosctl.options import PackageOptions
from geneosctl.results import ResultStatus
from geneosctl.unarchive import Installer, Unarchiver

GATEWAY_ARCHIVE = "geneos-gateway-5.11.2-linux-x64.tar.gz"


class _Raw(io.BytesIO):
    decode_content = False


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b"",
        *,
        filename: str | None = GATEWAY_ARCHIVE,
        length: int | None = None,
        reason: str = "OK",
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.reason = reason
        self.url = ""
        self.headers: dict[str, str] = {
            "Content-Length": str(len(body) if length is None else length),
        }
        if filename:
            self.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
        self.raw = _Raw(body)
        self.closed = False

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for start in range(0, len(self.body), 4):
            yield self.body[start : start + 4]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, *responses: FakeResponse) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, object]] = []

    def request(self, method: str, url: str, **kwargs: object) -> FakeResponse:
        params = kwargs.get("params")
        self.calls.append(
            {
                "method": method,
                "url": url,
                "params": dict(params) if isinstance(params, dict) else params,
                "json": kwargs.get("json"),
                "auth": kwargs.get("auth"),
                "stream": kwargs.get("stream"),
            }
        )
        if not self.responses:
            raise requests.ConnectionError("no more responses")
        response = self.responses.pop(0)
        response.url = url
        return response


def _source(
    app_config: AppConfig, components: ComponentRegistry, session: FakeSession
) -> ArchiveSource:
    return ArchiveSource(app_config, components, session=session)  # type: ignore[arg-type]


def test_parse_archive_name() -> None:
    assert parse_archive_name(GATEWAY_ARCHIVE) == ("gateway", "5.11.2")
    assert parse_archive_name("/tmp/geneos-web-server-6.0.0-linux-x64.tar.gz") == (
        "web-server",
        "6.0.0",
    )
    assert parse_archive_name("geneos-fixanalyser2-netprobe-5.8.1-linux-x64.tar.gz") == (
        "fixanalyser2-netprobe",
        "5.8.1",
    )
    assert parse_archive_name("geneos-netprobe-6.1.0-el8-linux-x64.tar.gz") == (
        "netprobe",
        "6.1.0-el8",
    )
    assert parse_archive_name("release.tar.gz") is None


def test_filename_falls_back_to_url() -> None:
    response = FakeResponse(filename=None)
    response.url = "https://example.invalid/files/geneos-licd-5.7.0-linux-x64.tar.gz?x=1"

    name = filename_from_response(response)  # type: ignore[arg-type]
    assert name == "geneos-licd-5.7.0-linux-x64.tar.gz"


def test_resources_download_is_saved_to_cache(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    body = b"archive-bytes"
    response = FakeResponse(body=body)
    session = FakeSession(response)

    with _source(app_config, components, session).open(
        components.get("gateway"), PackageOptions()
    ) as archive:
        assert archive.stream.read() == body
        assert archive.filename == GATEWAY_ARCHIVE
        assert archive.origin == "resources"

    [call] = session.calls
    assert call["method"] == "GET"
    assert call["url"] == RESOURCES_URL + "Gateway+2"
    assert call["params"] == {"os": "linux"}
    assert call["stream"] is True
    saved = app_config.downloads_dir / GATEWAY_ARCHIVE
    assert saved.read_bytes() == body
    assert not saved.with_name(GATEWAY_ARCHIVE + ".part").exists()
    assert response.closed


def test_explicit_version_is_sent_as_title(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    session = FakeSession(FakeResponse(body=b"x"))

    _source(app_config, components, session).open(
        components.get("gateway"), PackageOptions(version="5.11.2", no_save=True)
    ).close()

    assert session.calls[0]["params"] == {"os": "linux", "title": "5.11.2"}


def test_platform_download_retries_without_platform(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    missing = FakeResponse(404, reason="Not Found")
    session = FakeSession(missing, FakeResponse(body=b"generic"))

    with _source(app_config, components, session).open(
        components.get("netprobe"), PackageOptions(platform_id="centos8:el8")
    ) as archive:
        assert archive.stream.read() == b"generic"

    assert [call["params"] for call in session.calls] == [
        {"os": "linux", "title": "-el8"},
        {"os": "linux"},
    ]
    assert missing.closed


def test_platform_with_explicit_version_is_rejected(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    session = FakeSession()
    options = PackageOptions(version="6.1.0", platform_id="centos8:el8")

    with pytest.raises(InvalidArgsError, match="el8"):
        _source(app_config, components, session).open(components.get("netprobe"), options)
    assert session.calls == []


def test_credentials_are_posted_after_auth_challenge(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    challenge = FakeResponse(401, reason="Unauthorized")
    session = FakeSession(challenge, FakeResponse(body=b"secret"))
    options = PackageOptions(username="jane", password="pw", no_save=True)

    with _source(app_config, components, session).open(
        components.get("gateway"), options
    ) as archive:
        assert archive.stream.read() == b"secret"

    assert [call["method"] for call in session.calls] == ["GET", "POST"]
    assert session.calls[1]["json"] == {"username": "jane", "password": "pw"}
    assert challenge.closed


def test_auth_challenge_without_credentials(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    session = FakeSession(FakeResponse(403, reason="Forbidden"))

    with pytest.raises(AuthRequiredError, match="403"):
        _source(app_config, components, session).open(components.get("gateway"), PackageOptions())
    assert len(session.calls) == 1


@pytest.mark.parametrize(
    ("status", "error"),
    [(404, NotExistError), (500, DownloadError), (401, AuthRequiredError)],
)
def test_status_codes_map_to_errors(
    app_config: AppConfig,
    components: ComponentRegistry,
    status: int,
    error: type[Exception],
) -> None:
    response = FakeResponse(status, reason="nope")
    session = FakeSession(response)

    with pytest.raises(error):
        _source(app_config, components, session).open(components.get("licd"), PackageOptions())
    assert response.closed


def test_transport_errors_become_download_errors(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    with pytest.raises(DownloadError, match="no more responses"):
        _source(app_config, components, FakeSession()).open(
            components.get("licd"), PackageOptions()
        )


def test_nexus_query(app_config: AppConfig, components: ComponentRegistry) -> None:
    session = FakeSession(FakeResponse(body=b"x"))
    options = PackageOptions(
        version="6.0.0",
        download_type="nexus",
        download_base="snapshots",
        platform_id="rhel9:el9",
        username="svc",
        password="pw",
        no_save=True,
    )

    _source(app_config, components, session).open(components.get("webserver"), options).close()

    [call] = session.calls
    assert call["url"] == NEXUS_URL
    assert call["auth"] == ("svc", "pw")
    assert call["params"] == {
        "maven.groupId": "com.itrsgroup.geneos",
        "maven.extension": "tar.gz",
        "sort": "version",
        "repository": "snapshots",
        "maven.artifactId": "geneos-web-server",
        "maven.classifier": "el9-linux-x64",
        "maven.baseVersion": "6.0.0",
    }


def test_cached_archive_with_same_length_is_reused(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    cached = app_config.downloads_dir / GATEWAY_ARCHIVE
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"cached-bytes")
    response = FakeResponse(body=b"other-bytes!")
    session = FakeSession(response)

    with _source(app_config, components, session).open(
        components.get("gateway"), PackageOptions()
    ) as archive:
        assert archive.stream.read() == b"cached-bytes"
        assert archive.path == cached

    assert response.closed


def test_no_save_streams_without_caching(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    session = FakeSession(FakeResponse(body=b"streamed"))

    with _source(app_config, components, session).open(
        components.get("gateway"), PackageOptions(no_save=True)
    ) as archive:
        assert archive.stream.read() == b"streamed"
        assert archive.path is None

    assert not app_config.downloads_dir.exists()


def test_short_download_is_discarded(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    session = FakeSession(FakeResponse(body=b"short", length=100))

    with pytest.raises(DownloadError, match="incomplete"):
        _source(app_config, components, session).open(components.get("gateway"), PackageOptions())

    assert list(app_config.downloads_dir.iterdir()) == []


def _touch_archives(directory: Path, *names: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(name.encode())


def test_local_only_picks_latest_cached_archive(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    _touch_archives(
        app_config.downloads_dir,
        "geneos-gateway-5.10.0-linux-x64.tar.gz",
        GATEWAY_ARCHIVE,
        "geneos-netprobe-7.0.0-linux-x64.tar.gz",
        "notes.txt",
    )
    session = FakeSession()
    source = _source(app_config, components, session)

    with source.open(components.get("gateway"), PackageOptions(local_only=True)) as archive:
        assert archive.filename == GATEWAY_ARCHIVE
        assert archive.origin == "local"

    options = PackageOptions(local_only=True, version="5.10.0")
    with source.open(components.get("gateway"), options) as archive:
        assert archive.filename == "geneos-gateway-5.10.0-linux-x64.tar.gz"
    assert session.calls == []


def test_local_only_matches_component_exactly(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    _touch_archives(
        app_config.downloads_dir,
        "geneos-fixanalyser2-netprobe-5.8.1-linux-x64.tar.gz",
    )
    source = _source(app_config, components, FakeSession())

    with pytest.raises(InvalidArgsError, match="no suitable file"):
        source.open(components.get("netprobe"), PackageOptions(local_only=True))


def test_local_only_strips_platform_suffix(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    _touch_archives(
        app_config.downloads_dir,
        "geneos-netprobe-6.1.0-el8-linux-x64.tar.gz",
        "geneos-netprobe-6.0.0-linux-x64.tar.gz",
    )
    source = _source(app_config, components, FakeSession())

    assert source.local_archives(components.get("netprobe"), app_config.downloads_dir, "el8") == {
        "6.0.0": "geneos-netprobe-6.0.0-linux-x64.tar.gz",
        "6.1.0": "geneos-netprobe-6.1.0-el8-linux-x64.tar.gz",
    }


def test_explicit_file_and_directory_sources(
    app_config: AppConfig, components: ComponentRegistry, tmp_path: Path
) -> None:
    incoming = tmp_path / "incoming"
    _touch_archives(incoming, "geneos-licd-5.7.0-linux-x64.tar.gz")
    source = _source(app_config, components, FakeSession())
    file_source = str(incoming / "geneos-licd-5.7.0-linux-x64.tar.gz")

    with source.open(None, PackageOptions(source=file_source)) as archive:
        assert archive.filename == "geneos-licd-5.7.0-linux-x64.tar.gz"
        assert archive.origin == "source"

    with source.open(components.get("licd"), PackageOptions(source=str(incoming))) as archive:
        assert archive.origin == "local"

    with pytest.raises(InvalidArgsError, match="component is required"):
        source.open(None, PackageOptions(source=str(incoming)))

    with pytest.raises(NotExistError):
        source.open(None, PackageOptions(source=str(tmp_path / "absent.tar.gz")))


def test_stdin_source_is_spooled_for_repeated_reads(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    stdin = io.BytesIO(b"piped")
    source = ArchiveSource(
        app_config,
        components,
        session=FakeSession(),  # type: ignore[arg-type]
        stdin=stdin,
    )

    for _ in range(2):
        with source.open(None, PackageOptions(source="-")) as archive:
            assert archive.filename == "stdin.tar.gz"
            assert archive.size == 5
            assert archive.stream.read() == b"piped"

    assert not stdin.closed
    spool = source._stdin_spool  # type: ignore[attr-defined]
    assert spool is not None and spool.exists()
    source.close()
    assert not spool.exists()


def test_local_only_prefers_platform_archive_over_generic(
    app_config: AppConfig, components: ComponentRegistry
) -> None:
    platform_build = "geneos-netprobe-6.1.0-el8-linux-x64.tar.gz"
    generic_build = "geneos-netprobe-6.1.0-linux-x64.tar.gz"
    _touch_archives(app_config.downloads_dir, platform_build, generic_build)
    source = _source(app_config, components, FakeSession())
    netprobe = components.get("netprobe")

    assert source.local_archives(netprobe, app_config.downloads_dir, "el8") == {
        "6.1.0": platform_build
    }
    options = PackageOptions(local_only=True, platform_id="rhel:el8")
    with source.open(netprobe, options) as archive:
        assert archive.filename == platform_build

    assert source.local_archives(netprobe, app_config.downloads_dir) == {
        "6.1.0": generic_build,
        "6.1.0-el8": platform_build,
    }
    with source.open(netprobe, PackageOptions(local_only=True)) as archive:
        assert archive.filename == generic_build


def test_download_only_fills_the_cache(
    app_config: AppConfig, components: ComponentRegistry, fleet: Fleet, geneos_root: Path
) -> None:
    session = FakeSession(FakeResponse(body=b"archive-bytes"))
    source = _source(app_config, components, session)
    unarchiver = Unarchiver(components, ActivationManager(components, fleet))
    installer = Installer(fleet, source, unarchiver)

    results = installer.download(components.get("gateway"), PackageOptions(no_save=True))

    saved = app_config.downloads_dir / GATEWAY_ARCHIVE
    assert saved.read_bytes() == b"archive-bytes"
    assert [(item.action, item.status, item.detail) for item in results] == [
        ("download", ResultStatus.CHANGED, f"saved {saved}")
    ]
    assert not (geneos_root / "packages" / "gateway").exists()

    failed = installer.download(components.get("licd"), PackageOptions())

    assert [item.status for item in failed] == [ResultStatus.ERROR]
    assert failed.exit_code() is ExitCode.ENVIRONMENT
